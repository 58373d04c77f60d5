"""Derive device metadata from request signals.

The fingerprint hash is descriptive only: it is recorded on sessions,
tokens and blacklist entries for analytics and audit, and is never compared
when authorizing a request, so a user whose IP changes is not locked out.
"""

from __future__ import annotations

import hashlib
import hmac

from sessionguard.storage.models import DeviceInfo, RequestContext


def detect_browser(user_agent: str) -> str:
    # Edge and Opera embed "Chrome" in their UA strings, so check them first
    if "Edg" in user_agent:
        return "Edge"
    if "OPR" in user_agent or "Opera" in user_agent:
        return "Opera"
    if "Chrome" in user_agent:
        return "Chrome"
    if "Firefox" in user_agent:
        return "Firefox"
    if "Safari" in user_agent:
        return "Safari"
    return "Unknown"


def detect_os(user_agent: str) -> str:
    if "Windows" in user_agent:
        return "Windows"
    # iOS UAs also contain "Mac OS X"
    if any(marker in user_agent for marker in ("iPhone", "iPad", "iPod")):
        return "iOS"
    if "Mac OS" in user_agent:
        return "macOS"
    if "Android" in user_agent:
        return "Android"
    if "Linux" in user_agent:
        return "Linux"
    return "Unknown"


def detect_device_class(user_agent: str) -> str:
    if "iPad" in user_agent or "Tablet" in user_agent:
        return "Tablet"
    if any(marker in user_agent for marker in ("Mobile", "Android", "iPhone")):
        return "Mobile"
    return "Desktop"


class DeviceFingerprinter:
    """Pure function over :class:`RequestContext`, keyed by the server secret."""

    def __init__(self, server_secret: str) -> None:
        self._key = server_secret.encode()

    def fingerprint_hash(self, context: RequestContext) -> str:
        message = f"{context.user_agent}{context.ip}".encode()
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def fingerprint(self, context: RequestContext) -> DeviceInfo:
        user_agent = context.user_agent or ""
        return DeviceInfo(
            fingerprint=self.fingerprint_hash(context),
            user_agent=user_agent,
            ip=context.ip or "",
            browser=detect_browser(user_agent),
            os=detect_os(user_agent),
            device_class=detect_device_class(user_agent),
        )
