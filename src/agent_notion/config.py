"""Credentials and backend selection.

Official API token, in order: --token-file, NOTION_API_KEY, NOTION_TOKEN.
v3 session, in order: --session-file (JSON with token_v2, user_id,
space_id), then NOTION_TOKEN_V2 / NOTION_USER_ID / NOTION_SPACE_ID.

Without an explicit --backend, a complete v3 session wins over a token.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .backend import NotionBackend
from .errors import NotionCliError

logger = logging.getLogger("agent-notion")

BACKENDS = ("official", "v3")
SESSION_KEYS = ("token_v2", "user_id", "space_id")


@dataclass
class Settings:
    backend: str
    api_token: Optional[str] = None
    token_v2: Optional[str] = None
    user_id: Optional[str] = None
    space_id: Optional[str] = None

    @property
    def has_session(self) -> bool:
        return bool(self.token_v2 and self.user_id and self.space_id)


def read_token_file(path: str) -> str:
    token_path = Path(path).expanduser()
    if not token_path.exists():
        raise NotionCliError(f"Token file not found: {token_path}")
    token = token_path.read_text().strip()
    if not token:
        raise NotionCliError(f"Token file is empty: {token_path}")
    logger.info(f"Notion token loaded from {token_path}")
    return token


def read_session_file(path: str) -> dict[str, str]:
    session_path = Path(path).expanduser()
    if not session_path.exists():
        raise NotionCliError(f"Session file not found: {session_path}")
    try:
        data = json.loads(session_path.read_text())
    except json.JSONDecodeError as e:
        raise NotionCliError(f"Session file is not valid JSON: {session_path} ({e})") from e
    if not isinstance(data, dict):
        raise NotionCliError(f"Session file must hold a JSON object: {session_path}")
    missing = [k for k in SESSION_KEYS if not data.get(k)]
    if missing:
        raise NotionCliError(f"Session file {session_path} is missing: {', '.join(missing)}")
    logger.info(f"v3 session loaded from {session_path}")
    return {k: str(data[k]) for k in SESSION_KEYS}


def load_settings(
    token_file: Optional[str] = None,
    session_file: Optional[str] = None,
    backend: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None
) -> Settings:
    """Resolve credentials and pick a backend.

    Args:
        token_file: Path to a file holding the official API token.
        session_file: Path to a v3 session JSON file.
        backend: "official" or "v3"; None picks automatically.
        env: Environment to read (defaults to os.environ).

    Raises:
        NotionCliError: Unknown backend, unreadable files, or no credentials
            for the chosen backend.
    """
    env = os.environ if env is None else env
    if backend is not None and backend not in BACKENDS:
        raise NotionCliError(f"Unknown backend {backend!r}. Choose one of: {', '.join(BACKENDS)}")

    api_token = (
        read_token_file(token_file) if token_file
        else env.get("NOTION_API_KEY") or env.get("NOTION_TOKEN")
    )
    if session_file:
        session = read_session_file(session_file)
    else:
        session = {
            "token_v2": env.get("NOTION_TOKEN_V2"),
            "user_id": env.get("NOTION_USER_ID"),
            "space_id": env.get("NOTION_SPACE_ID"),
        }

    settings = Settings(backend=backend or "official", api_token=api_token or None, **session)
    if backend is None and settings.has_session:
        settings.backend = "v3"

    if settings.backend == "official" and not settings.api_token:
        raise NotionCliError(
            "No Notion API token. Pass --token-file <path> or set NOTION_API_KEY."
        )
    if settings.backend == "v3" and not settings.has_session:
        raise NotionCliError(
            "No v3 session. Pass --session-file <path> or set NOTION_TOKEN_V2, "
            "NOTION_USER_ID and NOTION_SPACE_ID."
        )
    return settings


def create_backend(settings: Settings) -> NotionBackend:
    """Build the backend named by `settings.backend`."""
    if settings.backend == "v3":
        from .v3 import V3Backend, V3Client

        client = V3Client(settings.token_v2, settings.user_id, settings.space_id)
        logger.info(f"Using v3 backend (space {settings.space_id})")
        return V3Backend(client)

    from .official import OfficialBackend, OfficialClient

    logger.info("Using official backend")
    return OfficialBackend(OfficialClient(settings.api_token))
