"""Helpers shared between the memory and postgres store implementations."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Any, Dict, Iterable, Optional

from sessionguard.storage.models import DeviceInfo


def ensure_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (older rows) to timezone-aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_ip(raw_ip: Any) -> Optional[str]:
    """Return a canonical string form of ``raw_ip`` or None when it does not parse."""
    if raw_ip is None:
        return None
    text = str(raw_ip).strip()
    if not text:
        return None
    try:
        return str(ip_address(text))
    except ValueError:
        return None


def parse_device_info(raw: Any) -> Optional[DeviceInfo]:
    """Parse a device_info column stored as JSON text or a dict."""
    if isinstance(raw, DeviceInfo):
        return raw
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    if isinstance(raw, dict):
        return DeviceInfo.from_dict(raw)
    return None


def dump_device_info(device_info: Optional[DeviceInfo]) -> Optional[str]:
    if device_info is None:
        return None
    return json.dumps(device_info.to_dict())


def usage_stats(rows: Iterable[Any], now: datetime) -> Dict[str, int]:
    """Summarize session/token rows into total/active/expired/inactive counts.

    ``active`` means usable right now; ``expired`` counts rows past expiry
    regardless of the flag; ``inactive`` counts rows that were deactivated.
    """
    stats = {"total": 0, "active": 0, "expired": 0, "inactive": 0}
    for row in rows:
        stats["total"] += 1
        expired = now >= row.expires_at
        if expired:
            stats["expired"] += 1
        if not row.is_active:
            stats["inactive"] += 1
        elif not expired:
            stats["active"] += 1
    return stats
