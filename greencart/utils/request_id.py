from __future__ import annotations

import contextvars
import re
import uuid

# Set by the HTTP middleware; read by log_duration so store timings carry the caller's id.
request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)

_REQUEST_ID_RE = re.compile(r"[A-Za-z0-9._-]{1,64}", flags=re.ASCII)


def validate_request_id(value: str | None) -> str | None:
    """Return `value` when it is safe to echo in headers and log lines, else None."""
    if isinstance(value, str) and _REQUEST_ID_RE.fullmatch(value):
        return value
    return None


def resolve_request_id(incoming: str | None) -> str:
    return validate_request_id(incoming) or uuid.uuid4().hex
