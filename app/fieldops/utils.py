from __future__ import annotations

import hashlib
import json
import re
from datetime import datetime, timezone
from typing import Any

from app.fieldops.errors import ValidationError

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns are stored without tz)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def text_field(raw: Any, field: str) -> str | None:
    """Client-supplied text: None passes through, any other non-string is a ValidationError."""
    if raw is None or isinstance(raw, str):
        return raw
    raise ValidationError(f"{field} must be a string.", field=field)


def normalize_email(raw: Any) -> str:
    return (text_field(raw, "email") or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email))


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def dumps_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def loads_json(raw: str | None) -> Any:
    if not raw:
        return None
    return json.loads(raw)
