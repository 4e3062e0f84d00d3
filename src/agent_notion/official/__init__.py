"""Official public REST API backend."""

from .backend import OfficialBackend
from .client import OfficialClient

__all__ = ["OfficialBackend", "OfficialClient"]
