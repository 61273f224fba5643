"""
Header transformation for both directions of the proxy.

Response headers are rewritten so that the upstream document can be framed by
the proxy origin and its cookies survive a cross-site embedding:

- hop-by-hop headers and X-Frame-Options are dropped
- Content-Security-Policy gets a frame-ancestors directive admitting the proxy
- Location is routed back through the proxy
- Set-Cookie is forced to SameSite=None (Secure only on secure transport)

Request headers are cleaned of hop-by-hop entries, get X-Forwarded-* added and
have Referer/Origin translated back to the upstream's view.
"""

import logging
from typing import Iterable, List, Optional, Tuple

from embed_proxy.config import RewriteContext
from embed_proxy.proxy.url_rewriter import rewrite_url, unwrap_url

logger = logging.getLogger("uvicorn.error")

HeaderList = List[Tuple[str, str]]

# Hop-by-hop headers that should NOT be forwarded (RFC 7230 section 6.1)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}

FRAME_BLOCKING_HEADERS = {"x-frame-options"}

CSP_HEADERS = {"content-security-policy", "content-security-policy-report-only"}

# Rebuilt by prepare_request_headers
FORWARDED_HEADERS = {
    "x-forwarded-for",
    "x-forwarded-host",
    "x-forwarded-proto",
}

# Only encodings the buffering path can decode
UPSTREAM_ACCEPT_ENCODING = "gzip, deflate"


def _connection_tokens(headers: HeaderList) -> set:
    tokens = set()
    for name, value in headers:
        if name.lower() == "connection":
            tokens.update(t.strip().lower() for t in value.split(",") if t.strip())
    return tokens


def _is_hop_by_hop(name: str, connection_tokens: set) -> bool:
    lowered = name.lower()
    return lowered in HOP_BY_HOP_HEADERS or lowered in connection_tokens


def rewrite_csp(policy: str, proxy_origin: str) -> str:
    """
    Make ``proxy_origin`` an allowed frame ancestor of ``policy``.

    Only the first frame-ancestors directive is edited (``'none'`` is removed
    since it cannot be combined with sources); later duplicates are dropped.
    Without one, a directive is appended. The text of every other directive,
    separators and spacing included, is kept as sent.
    """
    proxy_origin = proxy_origin or "*"
    segments = []
    found = False
    for segment in policy.split(";"):
        tokens = segment.split()
        if not tokens or tokens[0].lower() != "frame-ancestors":
            segments.append(segment)
            continue
        if found:
            # Browsers honour only the first occurrence
            continue
        found = True
        sources = []
        for source in tokens[1:]:
            if source.lower() == "'none'" or source.lower() == proxy_origin.lower():
                continue
            if source not in sources:
                sources.append(source)
        sources.append(proxy_origin)
        leading = segment[: len(segment) - len(segment.lstrip())]
        trailing = segment[len(segment.rstrip()):]
        segments.append(leading + " ".join([tokens[0]] + sources) + trailing)

    result = ";".join(segments)
    if found:
        return result
    directive = f"frame-ancestors {proxy_origin}"
    if not result.strip():
        return directive
    result = result.rstrip()
    return f"{result} {directive}" if result.endswith(";") else f"{result}; {directive}"


def rewrite_set_cookie(set_cookie: str, is_secure_transport: bool) -> str:
    """
    Force a Set-Cookie value to ``SameSite=None``.

    Any existing SameSite attribute is removed first so exactly one remains.
    Under secure transport exactly one ``Secure`` attribute is kept; over plain
    transport ``Secure`` is stripped because the browser would drop the cookie.
    """
    segments = set_cookie.split(";")
    pair = segments[0].strip()
    attributes = []
    for segment in segments[1:]:
        attribute = segment.strip()
        if not attribute:
            continue
        name = attribute.split("=", 1)[0].strip().lower()
        if name in ("samesite", "secure"):
            continue
        attributes.append(attribute)

    attributes.append("SameSite=None")
    if is_secure_transport:
        attributes.append("Secure")
    elif pair.startswith(("__Secure-", "__Host-")):
        logger.warning(
            f"Cookie {pair.split('=', 1)[0]} requires Secure but transport is plain; "
            "the browser will reject it"
        )
    return "; ".join([pair] + attributes)


def transform_response_headers(
    headers: Iterable[Tuple[str, str]],
    context: RewriteContext,
    is_secure_transport: bool,
) -> HeaderList:
    """
    Map an upstream response's headers onto the headers sent to the client.

    The input is a multimap given as ``(name, value)`` pairs; repeated headers
    such as Set-Cookie are preserved one pair per value.
    """
    headers = list(headers)
    connection_tokens = _connection_tokens(headers)
    proxy_origin = context.public_origin
    result: HeaderList = []
    saw_csp = False

    for name, value in headers:
        name_lower = name.lower()

        # Skip hop-by-hop headers
        if _is_hop_by_hop(name_lower, connection_tokens):
            continue

        if name_lower in FRAME_BLOCKING_HEADERS:
            continue

        if name_lower in CSP_HEADERS:
            if name_lower == "content-security-policy":
                saw_csp = True
            value = rewrite_csp(value, proxy_origin)

        # Rewrite Location header for redirects
        elif name_lower == "location":
            value = rewrite_url(value, context)

        elif name_lower == "set-cookie":
            value = rewrite_set_cookie(value, is_secure_transport)

        result.append((name, value))

    if not saw_csp:
        result.append(("content-security-policy", rewrite_csp("", proxy_origin)))

    return result


def prepare_request_headers(
    headers: Iterable[Tuple[str, str]],
    context: RewriteContext,
    client_host: Optional[str],
    scheme: str,
) -> HeaderList:
    """
    Prepare the inbound request's headers for forwarding to the upstream.
    Removes hop-by-hop headers and adds proxy headers.
    """
    headers = list(headers)
    connection_tokens = _connection_tokens(headers)
    result: HeaderList = []
    existing_xff = ""
    inbound_host = ""

    for name, value in headers:
        name_lower = name.lower()
        if _is_hop_by_hop(name_lower, connection_tokens):
            continue
        if name_lower == "host":
            inbound_host = value
            continue
        if name_lower == "x-forwarded-for":
            existing_xff = value
            continue
        if name_lower in FORWARDED_HEADERS or name_lower in (
            "accept-encoding",
            "content-length",
        ):
            continue
        if name_lower == "referer":
            value = unwrap_url(value, context)
            if not value:
                continue
        elif name_lower == "origin":
            value = context.target_origin
        result.append((name, value))

    client_ip = client_host or "unknown"
    result.append(("accept-encoding", UPSTREAM_ACCEPT_ENCODING))
    result.append(("x-forwarded-for", f"{existing_xff}, {client_ip}".strip(", ")))
    if inbound_host:
        result.append(("x-forwarded-host", inbound_host))
    result.append(("x-forwarded-proto", scheme))
    return result
