"""Internal v3 API backend (token_v2 session)."""

from .backend import V3Backend
from .client import V3Client

__all__ = ["V3Backend", "V3Client"]
