from __future__ import annotations

import re
import uuid

from fastapi import Request

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

_IPV4_RE = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$")
_IPV6_RE = re.compile(r"^[0-9a-fA-F:]+(%[0-9A-Za-z]+)?$")

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
_FORBIDDEN_PATTERNS = (
    # Control characters except tab, LF and CR.
    re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]"),
    re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
)

# Free-text that ends up in Stripe metadata or plan names is held to a wider list.
_STRICT_PATTERNS = _FORBIDDEN_PATTERNS + (
    re.compile(r"<iframe[^>]*>.*?</iframe>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<object[^>]*>.*?</object>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<embed[^>]*>", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
    re.compile(r"&lt;script", re.IGNORECASE),
)

MAX_USER_AGENT_LEN = 500


def is_uuid(value: object) -> bool:
    return isinstance(value, str) and bool(UUID_RE.match(value.strip()))


def new_uuid() -> str:
    return str(uuid.uuid4())


def client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    xff = (request.headers.get("x-forwarded-for") or "").strip()
    ip = xff.split(",")[0].strip() if xff else ""
    if not ip:
        ip = (request.headers.get("x-real-ip") or "").strip()
    if not ip and request.client:
        ip = request.client.host or ""
    return ip or "unknown"


def sanitize_ip_address(value: str | None) -> str:
    ip = str(value or "").strip()
    if not ip:
        return "unknown"
    m = _IPV4_RE.match(ip)
    if m:
        return ip if all(0 <= int(octet) <= 255 for octet in m.groups()) else "unknown"
    if ":" in ip and len(ip) <= 45 and _IPV6_RE.match(ip):
        return ip
    return "unknown"


def sanitize_user_agent(value: str | None) -> str:
    ua = _CONTROL_CHARS_RE.sub("", str(value or "")[:MAX_USER_AGENT_LEN]).strip()
    return ua or "unknown"


def contains_forbidden_pattern(text: str | None, *, strict: bool = False) -> bool:
    if not text:
        return False
    return any(p.search(text) for p in (_STRICT_PATTERNS if strict else _FORBIDDEN_PATTERNS))


def request_fingerprint(request: Request) -> tuple[str, str]:
    """(sanitized ip, sanitized user agent) for audit entries."""
    return (
        sanitize_ip_address(client_ip(request)),
        sanitize_user_agent(request.headers.get("user-agent")),
    )
