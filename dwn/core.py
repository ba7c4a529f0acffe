"""Core primitives for the DWN authorization engine.

This module provides the small, dependency-light utilities used throughout
the package:
- Canonical JSON serialization (JCS/RFC8785 subset) for signature payloads
- base64url helpers (strict: no padding, no stray characters)
- RFC3339 timestamp parsing/formatting for `messageTimestamp` and friends
- JSON loading with consistent encoding
- protocol/schema URI normalization

Design principles:
- Pure functions where possible
- No global mutable state
- Explicit error handling
"""

from __future__ import annotations

import base64
import json
import os
import pathlib
import re
from datetime import datetime, timezone
from typing import Any, Dict


PACKAGE_ROOT = pathlib.Path(__file__).resolve().parent

_B64URL_RE = re.compile(r"^[A-Za-z0-9_-]*$")


def load_json(path: pathlib.Path) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Canonical JSON
# ---------------------------------------------------------------------------


def _coerce_json_types(obj: Any, path: str = "$") -> Any:
    """Coerce Python objects into strict JSON types.

    - datetimes become RFC3339 strings with microseconds
    - tuples become lists
    - floats are rejected to avoid non-JCS number edge cases
    """
    if obj is None or isinstance(obj, (str, bool, int)):
        return obj
    if isinstance(obj, float):
        raise ValueError(f"Float not allowed in canonical JSON at {path}")
    if isinstance(obj, datetime):
        return format_timestamp(obj)
    if isinstance(obj, (list, tuple)):
        return [_coerce_json_types(x, f"{path}[{i}]") for i, x in enumerate(obj)]
    if isinstance(obj, dict):
        return {str(k): _coerce_json_types(v, f"{path}.{k}") for k, v in obj.items()}
    raise ValueError(f"Unsupported type {type(obj).__name__} in canonical JSON at {path}")


def jcs_canonicalize(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes (JCS/RFC8785 subset).

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected

    This ensures byte-for-byte reproducibility for signature payloads.
    """
    clean = _coerce_json_types(obj)
    return json.dumps(clean, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


# ---------------------------------------------------------------------------
# base64url
# ---------------------------------------------------------------------------


def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    """Decode unpadded base64url.

    `base64.urlsafe_b64decode` silently discards characters outside the
    alphabet, so the input is checked first.
    """
    if not isinstance(s, str) or not _B64URL_RE.match(s):
        raise ValueError("Invalid base64url: expected A-Z a-z 0-9 _ - with no padding")
    if len(s) % 4 == 1:
        raise ValueError("Invalid base64url: impossible length")
    pad = "=" * ((4 - len(s) % 4) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def parse_timestamp(timestamp: str) -> datetime:
    """Parse an RFC3339 timestamp into an aware UTC datetime.

    Handles:
    - "2026-01-01T00:00:00Z"
    - "2026-01-01T00:00:00.123456Z"
    - "2026-01-01T00:00:00+00:00"

    Timezone-naive strings are rejected: message ordering depends on them.
    """
    if not isinstance(timestamp, str) or not timestamp:
        raise ValueError("Empty timestamp")

    normalized = timestamp.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"

    try:
        dt = datetime.fromisoformat(normalized)
    except ValueError as ex:
        raise ValueError(f"Cannot parse timestamp: {timestamp}") from ex

    if dt.tzinfo is None:
        raise ValueError(f"Timestamp must carry a timezone: {timestamp}")
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """RFC3339 with microsecond precision and a `Z` suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def now_timestamp() -> str:
    """Current time as a message timestamp.

    For reproducible fixtures set `SOURCE_DATE_EPOCH` (seconds since the Unix
    epoch). When unset, uses the wall clock.
    """
    sde = os.environ.get("SOURCE_DATE_EPOCH")
    if sde is not None and str(sde).strip() != "":
        try:
            epoch = int(str(sde).strip(), 10)
        except ValueError as ex:
            raise ValueError("SOURCE_DATE_EPOCH must be an integer (seconds)") from ex
        return format_timestamp(datetime.fromtimestamp(epoch, tz=timezone.utc))
    return format_timestamp(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# URIs
# ---------------------------------------------------------------------------


def clean_url(url: str) -> str:
    """Normalize a protocol or schema URI.

    Scheme-less values get `http://`; trailing slashes are dropped so that
    `https://example.com/chat/` and `https://example.com/chat` are one protocol.
    """
    u = str(url or "").strip()
    if not u:
        raise ValueError("URI is required")
    if "://" not in u:
        u = "http://" + u
    return u.rstrip("/")


def omit_none(d: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of `d` without None-valued entries."""
    return {k: v for k, v in d.items() if v is not None}


