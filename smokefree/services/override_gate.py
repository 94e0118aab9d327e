"""
Local Override Gate

The unlock code lives in the server environment (PREMIUM_UNLOCK_CODE) rather
than in the client bundle. The client keeps the redeemed code and presents it
back; the server re-validates it on every check and never stores the flag.
"""

import logging
import secrets

from smokefree.config import Config

logger = logging.getLogger(__name__)


class OverrideGate:
    def __init__(self, unlock_code: str | None = None):
        self._unlock_code = unlock_code if unlock_code is not None else Config.PREMIUM_UNLOCK_CODE

    @property
    def enabled(self) -> bool:
        return bool(self._unlock_code)

    def validate_code(self, code: str | None) -> bool:
        """Constant-time comparison against the configured code. Always False when disabled."""
        if not self.enabled or not code:
            return False
        valid = secrets.compare_digest(code.strip().encode(), self._unlock_code.encode())
        if not valid:
            logger.info("Rejected premium unlock code attempt")
        return valid

    @staticmethod
    def is_entitled(verdict: bool, override_active: bool) -> bool:
        """Reconciler verdict OR override; either alone is sufficient."""
        return bool(verdict) or bool(override_active)
