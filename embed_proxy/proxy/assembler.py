"""
Response assembly: choose between the rewrite path and the passthrough path.

HTML responses are buffered in full, decompressed, rewritten and re-emitted
uncompressed with a fresh Content-Length. Every other response is relayed
chunk by chunk exactly as received, compression included, so the upstream is
only read as fast as the client consumes.
"""

import codecs
import logging
import re
import zlib
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Tuple

import httpx
from fastapi import Request
from fastapi.responses import Response, StreamingResponse
from opentelemetry import trace
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect

from embed_proxy.config import RewriteContext, RewriteOptions
from embed_proxy.proxy.errors import DecodeFailure, UpstreamUnreachable
from embed_proxy.proxy.headers import HeaderList, transform_response_headers
from embed_proxy.proxy.html_rewriter import rewrite_html

logger = logging.getLogger("uvicorn.error")

Release = Callable[[], Awaitable[None]]

# Recomputed on the rewrite path
_BODY_FRAMING_HEADERS = {"content-length", "content-encoding"}

_CHARSET = re.compile(r"""charset\s*=\s*["']?([^"';\s]+)""", re.IGNORECASE)


def should_rewrite(content_type: str) -> bool:
    """Only HTML documents go through the buffering rewrite path."""
    return "text/html" in content_type.lower()


def _gunzip(data: bytes) -> bytes:
    decompressor = zlib.decompressobj(zlib.MAX_WBITS | 16)
    try:
        decoded = decompressor.decompress(data) + decompressor.flush()
    except zlib.error as e:
        raise DecodeFailure(f"Invalid gzip body: {e}")
    if not decompressor.eof:
        raise DecodeFailure("Truncated gzip body")
    return decoded


def _inflate(data: bytes) -> bytes:
    # "deflate" is meant to be zlib-wrapped, but raw deflate streams are common.
    for wbits in (zlib.MAX_WBITS, -zlib.MAX_WBITS):
        decompressor = zlib.decompressobj(wbits)
        try:
            decoded = decompressor.decompress(data) + decompressor.flush()
        except zlib.error:
            continue
        if decompressor.eof:
            return decoded
    raise DecodeFailure("Invalid deflate body")


def decode_content(body: bytes, content_encoding: str) -> bytes:
    """
    Undo the content codings listed in ``content_encoding``.

    Raises DecodeFailure if a coding is unsupported or does not match the bytes.
    """
    if not body:
        return body
    codings = [c.strip().lower() for c in content_encoding.split(",") if c.strip()]
    # Codings are listed in the order they were applied
    for coding in reversed(codings):
        if coding == "identity":
            continue
        if coding in ("gzip", "x-gzip"):
            body = _gunzip(body)
        elif coding == "deflate":
            body = _inflate(body)
        else:
            raise DecodeFailure(f"Unsupported content-encoding: {coding}")
    return body


def charset_of(content_type: str) -> str:
    match = _CHARSET.search(content_type)
    charset = match.group(1) if match else "utf-8"
    try:
        codecs.lookup(charset)
    except LookupError:
        logger.warning(f"Unknown charset {charset!r}, falling back to utf-8")
        charset = "utf-8"
    return charset


def decode_text(body: bytes, charset: str) -> str:
    # surrogateescape keeps undecodable bytes so untouched regions survive exactly
    return body.decode(charset, errors="surrogateescape")


def encode_text(text: str, charset: str) -> bytes:
    try:
        return text.encode(charset, errors="surrogateescape")
    except UnicodeEncodeError:
        return text.encode(charset, errors="xmlcharrefreplace")


def upstream_headers(upstream: httpx.Response) -> HeaderList:
    """Upstream headers as ``(name, value)`` pairs, decoded losslessly."""
    return [
        (name.decode("latin-1"), value.decode("latin-1"))
        for name, value in upstream.headers.raw
    ]


def _encode_headers(headers: HeaderList) -> List[Tuple[bytes, bytes]]:
    return [
        (name.lower().encode("latin-1"), value.encode("latin-1", errors="replace"))
        for name, value in headers
    ]


async def read_body(upstream: httpx.Response, request: Optional[Request] = None) -> bytes:
    """
    Buffer the raw upstream body.

    Raises ClientDisconnect as soon as the client is gone so the fetch can be
    abandoned, and UpstreamUnreachable if the upstream breaks off mid-body.
    """
    chunks = []
    try:
        async for chunk in upstream.aiter_raw():
            chunks.append(chunk)
            if request is not None and await request.is_disconnected():
                raise ClientDisconnect()
    except httpx.RequestError as e:
        raise UpstreamUnreachable(
            f"Upstream failed while sending the body: {e}", target_url=str(upstream.url)
        )
    return b"".join(chunks)


async def relay(upstream: httpx.Response, release: Release) -> AsyncIterator[bytes]:
    """Yield raw upstream chunks as the client pulls them."""
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    except httpx.RequestError as e:
        logger.error(f"Upstream stream for {upstream.url} broke off: {e}")
    finally:
        await release()


async def assemble_response(
    upstream: httpx.Response,
    context: RewriteContext,
    is_secure_transport: bool,
    release: Release,
    options: Optional[RewriteOptions] = None,
    request: Optional[Request] = None,
    method: str = "GET",
) -> Response:
    """
    Build the client response for an upstream response opened in stream mode.

    ``release`` closes the upstream response and its client; it is awaited
    exactly when the body has been consumed (or abandoned) on either path.
    """
    span = trace.get_current_span()
    content_type = upstream.headers.get("content-type", "")
    headers = transform_response_headers(
        upstream_headers(upstream), context, is_secure_transport
    )

    if method == "HEAD" or not should_rewrite(content_type):
        span.set_attribute("proxy.rewritten", False)
        response = StreamingResponse(
            relay(upstream, release),
            status_code=upstream.status_code,
            background=BackgroundTask(release),
        )
        response.raw_headers.extend(_encode_headers(headers))
        return response

    span.set_attribute("proxy.rewritten", True)
    try:
        raw = await read_body(upstream, request)
    finally:
        await release()

    body = decode_content(raw, upstream.headers.get("content-encoding", ""))
    charset = charset_of(content_type)
    rewritten = encode_text(
        rewrite_html(decode_text(body, charset), context, options), charset
    )
    logger.debug(
        f"Rewrote {upstream.url}: {len(raw)} raw bytes -> {len(rewritten)} bytes"
    )

    response = Response(content=rewritten, status_code=upstream.status_code)
    response.raw_headers.extend(
        _encode_headers(
            [(n, v) for n, v in headers if n.lower() not in _BODY_FRAMING_HEADERS]
        )
    )
    return response
