"""
Translation between upstream references and proxy-relative references.

In query mode an upstream URL is carried as an opaque, fully percent-encoded
``url`` parameter (``/proxy?url=https%3A%2F%2Fexample.com%2Fabout``). In prefix
mode only the path is carried (``/proxy/about``) and the upstream origin is the
configured target.
"""

import logging
from typing import Optional
from urllib.parse import parse_qs, quote, urljoin, urlsplit

from embed_proxy.config import RewriteContext, RoutingMode, origin_of

logger = logging.getLogger("uvicorn.error")

PROXIABLE_SCHEMES = ("http", "https")


def _query_path(context: RewriteContext) -> str:
    return context.path_prefix or "/"


def _same_origin(url: str, origin: str) -> bool:
    if not origin:
        return False
    try:
        return origin_of(url) == origin_of(origin)
    except ValueError:
        return False


def is_proxied_reference(reference: str, context: RewriteContext) -> bool:
    """Whether ``reference`` already addresses the proxy route."""
    candidate = reference.strip()
    try:
        parts = urlsplit(candidate)
    except ValueError:
        return False

    if parts.scheme or parts.netloc:
        if not _same_origin(candidate, context.public_origin):
            return False
    elif not parts.path.startswith("/"):
        return False

    if context.routing_mode == RoutingMode.QUERY:
        return parts.path == _query_path(context) and "url" in parse_qs(parts.query)

    prefix = context.path_prefix
    if not prefix:
        return False
    return parts.path == prefix or parts.path.startswith(prefix + "/")


def unwrap_url(reference: str, context: RewriteContext) -> Optional[str]:
    """
    Decode a proxy-relative reference back into the upstream absolute URL.

    Returns None when the reference does not address the proxy.
    """
    if not is_proxied_reference(reference, context):
        return None
    parts = urlsplit(reference.strip())
    fragment = f"#{parts.fragment}" if parts.fragment else ""

    if context.routing_mode == RoutingMode.QUERY:
        values = parse_qs(
            parts.query,
            keep_blank_values=True,
            encoding="utf-8",
            errors="surrogateescape",
        ).get("url")
        if not values or not values[0]:
            return None
        return values[0] + fragment

    path = parts.path[len(context.path_prefix):] or "/"
    query = f"?{parts.query}" if parts.query else ""
    return f"{context.target_origin}{path}{query}{fragment}"


def _resolve(candidate: str, context: RewriteContext) -> str:
    parts = urlsplit(candidate)
    if parts.scheme and parts.netloc:
        # Already absolute: keep it byte-for-byte so it can be decoded back.
        resolved = candidate
    else:
        resolved = urljoin(context.document_url, candidate)
    # Touch the port so malformed authorities raise here.
    urlsplit(resolved).port
    return resolved


def rewrite_url(reference: str, context: RewriteContext) -> str:
    """
    Rewrite a reference found in an upstream document so it routes through the proxy.

    References that cannot be resolved, use a non-HTTP scheme, are pure
    fragments or already address the proxy are returned unchanged.
    """
    candidate = reference.strip()
    if not candidate or candidate.startswith("#"):
        return reference
    if is_proxied_reference(candidate, context):
        return reference

    try:
        resolved = _resolve(candidate, context)
        parts = urlsplit(resolved)
    except ValueError as e:
        logger.debug(f"Leaving unresolvable reference {reference!r} untouched: {e}")
        return reference

    if parts.scheme.lower() not in PROXIABLE_SCHEMES or not parts.hostname:
        return reference

    if context.routing_mode == RoutingMode.QUERY:
        base, sep, fragment = resolved.partition("#")
        try:
            # Bytes undecodable in the page charset travel as their raw octets
            carried = quote(base, safe="", encoding="utf-8", errors="surrogateescape")
        except UnicodeError as e:
            logger.debug(f"Leaving unencodable reference {reference!r} untouched: {e}")
            return reference
        encoded = f"{_query_path(context)}?url={carried}"
        return f"{encoded}#{fragment}" if sep else encoded

    if not _same_origin(resolved, context.target_origin):
        return reference
    rewritten = context.path_prefix + (parts.path or "/")
    if parts.query:
        rewritten += f"?{parts.query}"
    if parts.fragment:
        rewritten += f"#{parts.fragment}"
    return rewritten
