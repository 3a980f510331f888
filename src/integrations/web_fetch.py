"""
Web resource fetching with SSRF guards.

Only https URLs whose host resolves exclusively to public IPv4 addresses are
fetched. Redirects are followed by hand so every hop passes the same check.
"""
from __future__ import annotations

import ipaddress
import re
import socket
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urljoin, urlsplit

import httpx
from loguru import logger

from config import get_settings
from src.content.docutil import truncate_utf8
from src.core.errors import WebFetchError

USER_AGENT = "LearnbuildBot/1.0 (learning path builder)"
ACCEPT = "text/html, text/plain, application/pdf;q=0.9, */*;q=0.1"
MAX_REDIRECTS = 6
MIN_MAX_BYTES = 64 * 1024
DNS_TIMEOUT_SECONDS = 2.0
REDIRECT_STATUSES = (301, 302, 303, 307, 308)

Resolver = Callable[[str], list[str]]


@dataclass
class FetchedResource:
    body: bytes
    mime_type: str
    final_url: str


def resolve_host(host: str) -> list[str]:
    """Addresses for ``host``; empty when resolution fails or exceeds the DNS timeout."""
    pool = ThreadPoolExecutor(max_workers=1)
    future = pool.submit(socket.getaddrinfo, host, 443, 0, socket.SOCK_STREAM)
    try:
        infos = future.result(timeout=DNS_TIMEOUT_SECONDS)
    except (OSError, FutureTimeout) as e:
        logger.debug(f"DNS lookup failed for {host}: {e}")
        return []
    finally:
        pool.shutdown(wait=False)
    return list(dict.fromkeys(info[4][0] for info in infos))


def is_private_ip(raw: str) -> bool:
    """
    True for addresses that must never be fetched.

    IPv6 is treated as private across the board, as are loopback, link-local,
    RFC 1918 ranges and the unspecified address.
    """
    try:
        ip = ipaddress.ip_address(raw.split("%", 1)[0])
    except ValueError:
        return True
    if isinstance(ip, ipaddress.IPv6Address):
        mapped = ip.ipv4_mapped
        if mapped is None:
            return True
        ip = mapped
    return (
        ip.is_loopback
        or ip.is_link_local
        or ip.is_unspecified
        or ip in ipaddress.ip_network("10.0.0.0/8")
        or ip in ipaddress.ip_network("172.16.0.0/12")
        or ip in ipaddress.ip_network("192.168.0.0/16")
        or ip in ipaddress.ip_network("169.254.0.0/16")
    )


def is_allowed_web_url(url: str, resolver: Optional[Resolver] = None) -> bool:
    try:
        parts = urlsplit((url or "").strip())
        host = (parts.hostname or "").strip().lower()
    except ValueError:
        return False
    if parts.scheme.lower() != "https" or not host:
        return False
    if host == "localhost" or host.endswith(".local"):
        return False
    try:
        ipaddress.ip_address(host)
    except ValueError:
        pass
    else:
        return not is_private_ip(host)

    addrs = (resolver or resolve_host)(host)
    if not addrs:
        # Unresolvable hosts are blocked.
        return False
    return not any(is_private_ip(a) for a in addrs)


_HTML_PREFIXES = (b"<!doctype html", b"<html", b"<head", b"<body", b"<script", b"<title", b"<div", b"<p", b"<!--")


def sniff_content_type(data: bytes) -> str:
    """Best-effort media type from the first 512 bytes."""
    head = data[:512]
    if head.startswith(b"%PDF-"):
        return "application/pdf"
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if head.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if head.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    lowered = head.lstrip(b" \t\r\n\xef\xbb\xbf").lower()
    if lowered.startswith(_HTML_PREFIXES):
        return "text/html"
    if lowered.startswith(b"<?xml"):
        return "text/xml"
    if b"\x00" not in head:
        try:
            head.decode("utf-8")
        except UnicodeDecodeError:
            # A multi-byte character may straddle the 512-byte cut.
            try:
                head[:-3].decode("utf-8")
            except UnicodeDecodeError:
                return "application/octet-stream"
        return "text/plain"
    return "application/octet-stream"


def fetch_web_resource(
    url: str,
    max_bytes: Optional[int] = None,
    client: Optional[httpx.Client] = None,
    resolver: Optional[Resolver] = None,
) -> FetchedResource:
    """
    GET ``url`` under the SSRF policy.

    Args:
        url: https URL to fetch
        max_bytes: Body size cap (default from settings, at least 64 KiB)
        client: Optional preconfigured httpx client
        resolver: Host-to-addresses lookup (tests inject a fake)

    Returns:
        Body, media type and the URL after redirects

    Raises:
        WebFetchError: Blocked URL or redirect, too many redirects, non-2xx
            status, oversize body, or transport failure
    """
    settings = get_settings()
    if max_bytes is None or max_bytes <= 0:
        max_bytes = settings.web_resources_max_bytes
    max_bytes = max(max_bytes, MIN_MAX_BYTES)

    current = (url or "").strip()
    if not is_allowed_web_url(current, resolver):
        raise WebFetchError(f"web_fetch: blocked url {current}")

    own_client = client is None
    if own_client:
        client = httpx.Client(timeout=httpx.Timeout(settings.web_resources_http_timeout_seconds), follow_redirects=False)
    headers = {"User-Agent": USER_AGENT, "Accept": ACCEPT}
    try:
        for hop in range(MAX_REDIRECTS + 1):
            with client.stream("GET", current, headers=headers, follow_redirects=False) as resp:
                if resp.status_code in REDIRECT_STATUSES and resp.headers.get("location"):
                    if hop >= MAX_REDIRECTS:
                        raise WebFetchError(f"web_fetch: too many redirects fetching {url}")
                    target = urljoin(current, resp.headers["location"].strip())
                    if not is_allowed_web_url(target, resolver):
                        raise WebFetchError(f"web_fetch: redirect blocked: {target}")
                    logger.debug(f"Redirect {resp.status_code}: {current} -> {target}")
                    current = target
                    continue
                if not 200 <= resp.status_code < 300:
                    raise WebFetchError(f"web_fetch: http {resp.status_code} for {current}")

                body = bytearray()
                for chunk in resp.iter_bytes():
                    body.extend(chunk)
                    if len(body) > max_bytes:
                        break
                if len(body) > max_bytes:
                    raise WebFetchError(f"web_fetch: response too large (> {max_bytes} bytes)")

                ctype = resp.headers.get("content-type", "")
                media_type = ctype.split(";", 1)[0].strip().lower()
                if not media_type and body:
                    media_type = sniff_content_type(bytes(body))
                return FetchedResource(body=bytes(body), mime_type=media_type, final_url=str(resp.url) or current)
        raise WebFetchError(f"web_fetch: too many redirects fetching {url}")
    except httpx.HTTPError as e:
        raise WebFetchError(f"web_fetch: {e}") from e
    finally:
        if own_client:
            client.close()


# =============================================================================
# Naming helpers
# =============================================================================


def slugify(s: str) -> str:
    """Lower-case ``[a-z0-9_]`` slug, at most 48 bytes."""
    s = (s or "").strip().lower()
    s = re.sub(r"[ \-_/]", "_", s)
    s = re.sub(r"[^a-z0-9_]", "", s)
    s = re.sub(r"_+", "_", s).strip("_")
    return truncate_utf8(s, 48)


def safe_host_for_name(url: str) -> str:
    try:
        host = (urlsplit((url or "").strip()).hostname or "").strip().lower()
    except ValueError:
        return "site"
    if not host:
        return "site"
    if host.startswith("www."):
        host = host[4:]
    return truncate_utf8(host.replace(".", "_"), 40)


def normalize_fetched_name_and_mime(title: str, final_url: str, content_type: str) -> tuple[str, str]:
    """
    Storage file name and normalized mime for a fetched resource.

    PDF, HTML and plain text keep their type; anything else gets an .html
    name and keeps its content type (text/html when there is none).
    """
    u = (final_url or "").strip()
    ct = (content_type or "").strip().lower()
    if "application/pdf" in ct or u.lower().endswith(".pdf"):
        ext, ct = ".pdf", "application/pdf"
    elif "text/html" in ct:
        ext, ct = ".html", "text/html"
    elif "text/plain" in ct:
        ext, ct = ".txt", "text/plain"
    else:
        ext, ct = ".html", ct or "text/html"

    name = f"web_{safe_host_for_name(u)}_{slugify(title) or 'resource'}{ext}"
    if len(name.encode("utf-8")) > 120:
        name = truncate_utf8(name, 120)
    if "." not in name.rsplit("/", 1)[-1]:
        name += ext
    return name, ct
