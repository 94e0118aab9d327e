"""
Helpers that keep user-controlled and sensitive values out of the logs.
"""


def sanitize_for_logging(value: str) -> str:
    """Sanitize user-controlled strings for safe logging.

    Prevents log injection attacks by removing newlines and other control characters
    that could be used to forge log entries.

    Args:
        value: String value to sanitize (can be None)

    Returns:
        Sanitized string with newlines replaced by spaces
    """
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    return value.replace("\n", " ").replace("\r", " ").replace("\x00", "")


def mask_email(email: str | None) -> str:
    """
    Mask an email address for logging: ``jane.doe@example.com`` -> ``ja***@example.com``.
    """
    if not email:
        return "<none>"
    email = sanitize_for_logging(email)
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    visible = local[:2] if len(local) > 2 else local[:1]
    return f"{visible}***@{domain}"


def truncate_identifier(identifier: str | None, keep: int = 8) -> str:
    """
    Shorten provider or user identifiers: ``sub_1Nabcdefghijkl`` -> ``sub_1Nab...``.
    """
    if not identifier:
        return "<none>"
    identifier = sanitize_for_logging(identifier)
    if len(identifier) <= keep:
        return identifier
    return f"{identifier[:keep]}..."
