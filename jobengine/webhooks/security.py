"""
Safety checks for outbound webhook requests.

Webhook targets are tenant-supplied, so URLs are restricted to HTTPS public
hosts and header sets are checked for injection and size before any request
is made.
"""

import ipaddress
import json
import re
from typing import Any
from urllib.parse import urlsplit

from jobengine.constants import (
    WEBHOOK_ALLOWED_SCHEMES,
    WEBHOOK_BLOCKED_HOSTNAMES,
    WEBHOOK_MAX_HEADER_BYTES,
    WEBHOOK_MAX_HEADERS_TOTAL_BYTES,
    WEBHOOK_MAX_PAYLOAD_BYTES,
)
from jobengine.exceptions import WebhookValidationError

_HEADER_NAME_RE = re.compile(r"^[A-Za-z0-9-]+$")
_URL_RE = re.compile(r"https?://\S+")


def validate_webhook_url(url: str) -> None:
    """
    Reject URLs that are malformed, not HTTPS, or aimed at internal hosts.

    Hostnames are not resolved here; only IP literals are range-checked.
    """
    try:
        parts = urlsplit(url)
        hostname = (parts.hostname or "").lower()
    except ValueError as e:
        raise WebhookValidationError("Invalid webhook URL format") from e

    if not parts.scheme or not hostname:
        raise WebhookValidationError("Invalid webhook URL format")

    if parts.scheme.lower() not in WEBHOOK_ALLOWED_SCHEMES:
        raise WebhookValidationError(
            f"Webhook URL must use HTTPS protocol. Found: {parts.scheme}"
        )

    for blocked in WEBHOOK_BLOCKED_HOSTNAMES:
        if hostname == blocked or hostname.endswith(f".{blocked}"):
            raise WebhookValidationError("Webhook URL hostname is not allowed")

    if is_private_address(hostname):
        raise WebhookValidationError("Webhook URL cannot point to private IP addresses")


def is_private_address(host: str) -> bool:
    """True if ``host`` is an IP literal in a loopback, private, link-local or reserved range."""
    try:
        address = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_unspecified
        or address.is_multicast
    )


def validate_headers(headers: dict[str, str]) -> None:
    """Reject header names/values that could inject or overflow a request."""
    total = 0
    for name, value in headers.items():
        if not isinstance(name, str) or not _HEADER_NAME_RE.match(name):
            raise WebhookValidationError(f"Invalid header name: {name!r}")

        value = "" if value is None else str(value)
        if "\r" in value or "\n" in value:
            raise WebhookValidationError("Header value contains invalid characters")

        size = len(name) + len(value)
        if size > WEBHOOK_MAX_HEADER_BYTES:
            raise WebhookValidationError(f'Header "{name}" exceeds maximum size')
        total += size

    if total > WEBHOOK_MAX_HEADERS_TOTAL_BYTES:
        raise WebhookValidationError(
            f"Total headers size exceeds maximum of {WEBHOOK_MAX_HEADERS_TOTAL_BYTES} bytes"
        )


def encode_payload(payload: dict[str, Any]) -> bytes:
    """Serialize a webhook body, enforcing the size limit."""
    body = json.dumps(payload, default=str, ensure_ascii=False).encode("utf-8")
    if len(body) > WEBHOOK_MAX_PAYLOAD_BYTES:
        raise WebhookValidationError(
            f"Webhook payload exceeds maximum size of {WEBHOOK_MAX_PAYLOAD_BYTES} bytes"
        )
    return body


def sanitize_url(url: str) -> str:
    """Strip query string, fragment and credentials for logging."""
    try:
        parts = urlsplit(url)
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        return f"{parts.scheme}://{host}{parts.path}"
    except ValueError:
        return "[INVALID URL]"


def sanitize_error_message(message: str) -> str:
    """Remove URLs from an error message before it is persisted."""
    return _URL_RE.sub("[URL REDACTED]", message)
