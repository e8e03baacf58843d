"""Small utility helpers."""

from __future__ import annotations

import datetime as dt
import getpass
import os

try:
    import pwd
except ImportError:  # pragma: no cover - non-POSIX platforms
    pwd = None


def last_x(value: str, length: int) -> str:
    """Return the last `length` characters of `value` (all of it when shorter)."""
    if len(value) > length:
        return value[-length:]
    return value


def escape_html(value: str) -> str:
    # Only the four characters PKS escapes; single quotes pass through.
    return (
        value.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def group_fingerprint(fingerprint: str, size: int = 4) -> str:
    return " ".join(fingerprint[i : i + size] for i in range(0, len(fingerprint), size))


def format_utc_date(timestamp: int | float) -> str:
    return dt.datetime.fromtimestamp(timestamp, dt.timezone.utc).strftime("%Y/%m/%d")


def string_up_first(value: str) -> str:
    if not value:
        return value
    return value[0].upper() + value[1:]


def truncate_utf8(value: str, max_bytes: int) -> str:
    """Cut `value` to at most `max_bytes` UTF-8 bytes without splitting a character."""
    encoded = value.encode("utf-8")
    if len(encoded) <= max_bytes:
        return value
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def real_user_name() -> str | None:
    if pwd is None:
        return None
    try:
        gecos = pwd.getpwuid(os.getuid()).pw_gecos
    except KeyError:
        return None
    name = gecos.split(",", 1)[0].strip()
    if not name or name == "Unknown":
        return None
    return name


def resolve_display_name() -> str:
    """Real name from the user database, else the capitalized login name."""
    name = real_user_name()
    if name:
        return name
    return string_up_first(getpass.getuser())
