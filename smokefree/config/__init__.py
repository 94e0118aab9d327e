from smokefree.config.config import Config

__all__ = ["Config"]
