"""Error taxonomy and self-healing error messages.

- NotionCliError: bad input, caught before any request is made.
- BackendCapabilityError: the active backend cannot do this at all.
- RecordNotFoundError: a v3 read returned no record for the id.
- ExportError: an export task failed or did not finish in time.
- NotionApiError / V3HttpError: the remote API said no. Not retried here
  (the official client only retries 429s).
"""

from typing import Optional

import httpx


class NotionCliError(Exception):
    """Invalid input or usage. Every message says what to do instead."""

    code = "INVALID_INPUT"


class BackendCapabilityError(NotionCliError):
    """Operation not available on the active backend."""

    code = "UNSUPPORTED_BY_BACKEND"

    def __init__(self, backend: str, operation: str, hint: Optional[str] = None):
        self.backend = backend
        self.operation = operation
        message = f"'{operation}' is not supported by the {backend} backend"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)


class RecordNotFoundError(NotionCliError):
    """A v3 lookup came back without the requested record."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


class NotionApiError(Exception):
    """Non-2xx response from the official API."""

    def __init__(self, status: int, code: str, message: str):
        self.status = status
        self.code = code
        self.message = message
        super().__init__(f"{status} {code}: {message}")

    @classmethod
    def from_response(cls, response: httpx.Response) -> "NotionApiError":
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        return cls(
            response.status_code,
            body.get("code", "http_error"),
            body.get("message") or response.text[:300],
        )


class V3HttpError(Exception):
    """Non-2xx response from the v3 internal API."""

    def __init__(self, status: int, endpoint: str, message: str):
        self.status = status
        self.endpoint = endpoint
        self.message = message
        super().__init__(f"v3 API error: {status} on {endpoint}: {message}")


class ExportError(Exception):
    """A v3 export task failed, timed out, or produced nothing to download."""

    def __init__(self, message: str, code: str = "EXPORT_FAILED"):
        self.code = code
        super().__init__(message)


# Common error hints
HINTS = {
    "unauthorized": "Token is invalid or expired. Check NOTION_API_KEY or the --token-file contents.",
    "v3_unauthorized": "The token_v2 session expired. Copy a fresh token_v2 into the session file.",
    "forbidden": "Share the page/database with the integration: open in Notion → Share → invite the integration.",
    "not_found": "Check the ID. The object may be deleted, in trash, or not shared with this integration.",
    "rate_limited": "Too many requests. Wait a moment and try again.",
    "validation": "The request body was rejected. Check property names and value shapes against `database schema`.",
    "v3_only": "Use a v3 session (--session-file) for this command.",
    "export_timeout": "The export may still be running on Notion's servers. Retry with a larger --timeout.",
}

_STATUS_CODES = {
    401: ("UNAUTHORIZED", "unauthorized"),
    403: ("FORBIDDEN", "forbidden"),
    404: ("NOT_FOUND", "not_found"),
    429: ("RATE_LIMITED", "rate_limited"),
}


def _error(code: str, message: str, hint: Optional[str] = None) -> dict:
    out = {"error": code, "message": message}
    if hint:
        out["hint"] = hint
    return out


def format_error(exc: BaseException) -> dict:
    """Turn any exception into a JSON-ready error payload with a hint."""
    if isinstance(exc, BackendCapabilityError):
        return _error(exc.code, str(exc))
    if isinstance(exc, RecordNotFoundError):
        return _error(exc.code, str(exc), HINTS["not_found"])
    if isinstance(exc, NotionCliError):
        return _error(exc.code, str(exc))
    if isinstance(exc, ExportError):
        return _error(exc.code, str(exc), HINTS["export_timeout"] if exc.code == "EXPORT_TIMEOUT" else None)
    if isinstance(exc, NotionApiError):
        if exc.code in ("object_not_found",):
            return _error("NOT_FOUND", exc.message, HINTS["not_found"])
        if exc.code == "validation_error":
            return _error("VALIDATION_ERROR", exc.message, HINTS["validation"])
        code, hint = _STATUS_CODES.get(exc.status, ("HTTP_ERROR", None))
        return _error(code, exc.message, HINTS.get(hint) if hint else None)
    if isinstance(exc, V3HttpError):
        if exc.status == 401:
            return _error("UNAUTHORIZED", exc.message, HINTS["v3_unauthorized"])
        code, hint = _STATUS_CODES.get(exc.status, ("HTTP_ERROR", None))
        return _error(code, f"{exc.endpoint}: {exc.message}", HINTS.get(hint) if hint else None)
    if isinstance(exc, httpx.HTTPError):
        return _error("HTTP_ERROR", f"{type(exc).__name__}: {exc}")
    return _error("UNEXPECTED", f"{type(exc).__name__}: {exc}")
