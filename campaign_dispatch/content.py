"""Per-recipient email content: templating, link rewriting and unsubscribe compliance."""

from __future__ import annotations

import hashlib
import hmac
import re
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urljoin

UNSUBSCRIBE_MAX_AGE_MS = 30 * 24 * 60 * 60 * 1000
DEFAULT_PHYSICAL_ADDRESS = "ListHit CRM · 123 Main St · Anytown, USA"

_PLACEHOLDER = re.compile(r"{{\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*}}")
_ANCHOR = re.compile(r"<a\b[^>]*>.*?</a>", re.IGNORECASE | re.DOTALL)
_TAG_SPLIT = re.compile(r"(<[^>]+>)")
_URL = re.compile(r"https?://[\w\-._~:/?#\[\]@!$&'()*+,;=%]+")
_BODY_CLOSE = re.compile(r"</body>", re.IGNORECASE)


def build_context(contact: Dict[str, Any]) -> Dict[str, str]:
    """Return the substitution context for a contact, with the usual aliases."""
    first = contact.get("first_name") or contact.get("firstName") or ""
    last = contact.get("last_name") or contact.get("lastName") or ""
    context = {
        "first_name": first,
        "last_name": last,
        "fname": first,
        "lname": last,
        "email": contact.get("email") or "",
    }
    for key, value in (contact.get("context") or {}).items():
        context[str(key)] = "" if value is None else str(value)
    return context


def render_template(template: str, context: Dict[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names render as empty strings."""
    if not template:
        return ""
    return _PLACEHOLDER.sub(lambda m: str(context.get(m.group(1), "") or ""), template)


def linkify_html(html: str) -> str:
    """Wrap bare URLs in anchors, leaving existing anchors and tag attributes untouched."""
    if not html:
        return ""
    anchors: list[str] = []

    def _protect(match: re.Match) -> str:
        anchors.append(match.group(0))
        return f"__LINKIFY_ANCHOR_{len(anchors) - 1}__"

    protected = _ANCHOR.sub(_protect, html)
    segments = []
    for segment in _TAG_SPLIT.split(protected):
        if segment.startswith("<"):
            segments.append(segment)
            continue
        segments.append(
            _URL.sub(lambda m: f'<a href="{m.group(0)}" target="_blank" rel="noopener noreferrer">{m.group(0)}</a>', segment)
        )
    result = "".join(segments)
    for index, anchor in enumerate(anchors):
        result = result.replace(f"__LINKIFY_ANCHOR_{index}__", anchor)
    return result


def _signature(secret: str, recipient_id: str, email: str, timestamp: int) -> str:
    message = f"{recipient_id}:{email.strip().lower()}:{timestamp}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def sign_unsubscribe(secret: str, recipient_id: str, email: str, timestamp: Optional[int] = None) -> Dict[str, str]:
    ts = int(timestamp if timestamp is not None else time.time() * 1000)
    return {"t": str(ts), "s": _signature(secret, recipient_id, email, ts)}


def verify_unsubscribe_signature(
    secret: str,
    recipient_id: str,
    email: str,
    timestamp: Any,
    signature: str,
    now_ms: Optional[int] = None,
) -> bool:
    """Check a signed unsubscribe link; links expire after 30 days."""
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False
    now = int(now_ms if now_ms is not None else time.time() * 1000)
    if ts <= 0 or now - ts > UNSUBSCRIBE_MAX_AGE_MS:
        return False
    expected = _signature(secret, recipient_id, email, ts)
    return hmac.compare_digest(expected, str(signature))


def build_unsubscribe_url(base_url: str, secret: str, recipient_id: str, email: str, timestamp: Optional[int] = None) -> str:
    signed = sign_unsubscribe(secret, recipient_id, email, timestamp)
    query = urlencode({"id": recipient_id, "e": email, "t": signed["t"], "s": signed["s"]})
    return f"{urljoin(base_url.rstrip('/') + '/', 'unsubscribe')}?{query}"


def append_unsubscribe_footer(html: str, unsubscribe_url: str, physical_address: Optional[str] = None) -> str:
    """Insert the compliance footer before ``</body>``, or append it."""
    address = physical_address or DEFAULT_PHYSICAL_ADDRESS
    footer = (
        '\n<div style="margin-top:24px;padding-top:16px;border-top:1px solid #e5e7eb;'
        'font-size:12px;color:#4b5563;line-height:1.5;">\n'
        f'  <p style="margin:0 0 8px 0;">If you no longer wish to receive these emails, '
        f'<a href="{unsubscribe_url}">unsubscribe here</a>.</p>\n'
        f'  <p style="margin:0;">{address}</p>\n'
        "</div>\n"
    )
    if _BODY_CLOSE.search(html):
        return _BODY_CLOSE.sub(lambda m: f"{footer}{m.group(0)}", html, count=1)
    return f"{html}{footer}"
