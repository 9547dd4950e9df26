from __future__ import annotations

import base64
import json
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_FRACTION_PATTERN = re.compile(r"\.(\d+)")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse ISO-8601 with or without fractional seconds; naive values are UTC."""
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    value = _FRACTION_PATTERN.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_epoch(value: Any) -> Optional[datetime]:
    """Unix seconds, milliseconds or nanoseconds to an aware datetime."""
    if isinstance(value, str):
        try:
            value = int(value)
        except ValueError:
            try:
                value = float(value)
            except ValueError:
                return None
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
        return None
    if value > 10**17:
        value = value / 10**9
    elif value > 10**11:
        value = value / 10**3
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def decode_jwt_claims(token: Optional[str]) -> Dict[str, Any]:
    """Read the payload segment of a JWT. Signatures are not checked."""
    if not token:
        return {}
    parts = token.split(".")
    if len(parts) < 2:
        return {}
    payload = parts[1]
    padding = "=" * (-len(payload) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(payload + padding))
    except (ValueError, UnicodeDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def jwt_expiry(token: Optional[str]) -> Optional[datetime]:
    exp = decode_jwt_claims(token).get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    return parse_epoch(exp)


def safe_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, str):
        try:
            value = float(value.strip().replace(",", ""))
        except ValueError:
            return 0
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return 0
        return max(int(value), 0)
    return 0


def safe_float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        try:
            value = float(value)
        except OverflowError:
            return default
        return value if math.isfinite(value) else default
    if isinstance(value, str):
        cleaned = value.strip().replace("$", "").replace(",", "")
        try:
            parsed = float(cleaned)
        except ValueError:
            return default
        return parsed if math.isfinite(parsed) else default
    return default


def format_tokens(tokens: int) -> str:
    if tokens >= 1_000_000_000:
        return f"{tokens / 1_000_000_000:.2f}B"
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.2f}M"
    if tokens >= 1000:
        return f"{tokens / 1000:.1f}k"
    return str(tokens)


def format_relative(dt: Optional[datetime], now: Optional[datetime] = None) -> str:
    if dt is None:
        return "unknown"
    now = now or datetime.now(timezone.utc)
    delta = abs((now - dt).total_seconds())
    if delta < 60:
        return "just now" if dt <= now else "in <1m"
    minutes = int(delta // 60)
    if minutes < 60:
        return f"{minutes}m ago" if dt <= now else f"in {minutes}m"
    hours = int(delta // 3600)
    if hours < 24:
        return f"{hours}h ago" if dt <= now else f"in {hours}h"
    days = int(delta // 86400)
    return f"{days}d ago" if dt <= now else f"in {days}d"


def format_currency(value: Optional[float]) -> str:
    if value is None:
        return "$0.00"
    return f"${value:.2f}"


def format_percent(value: Optional[float]) -> str:
    if value is None:
        return "--"
    return f"{value:.0f}%"


__all__ = [
    "decode_jwt_claims",
    "format_currency",
    "format_percent",
    "format_relative",
    "format_tokens",
    "jwt_expiry",
    "parse_epoch",
    "parse_timestamp",
    "safe_float",
    "safe_int",
]
