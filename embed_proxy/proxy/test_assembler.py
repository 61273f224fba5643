"""
Tests for response assembly: the buffered HTML rewrite path and the raw
passthrough path.
"""

import gzip
import zlib
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.responses import StreamingResponse
from starlette.requests import ClientDisconnect

from embed_proxy.proxy.assembler import (
    assemble_response,
    charset_of,
    decode_content,
    read_body,
    should_rewrite,
)
from embed_proxy.proxy.errors import DecodeFailure

HTML = b'<!DOCTYPE html><html><body><a href="/about">About</a></body></html>'
REWRITTEN = (
    b'<!DOCTYPE html><html><body>'
    b'<a href="/proxy?url=https%3A%2F%2Fexample.com%2Fabout">About</a>'
    b"</body></html>"
)


async def _drain(response: StreamingResponse) -> bytes:
    chunks = []
    async for chunk in response.body_iterator:
        chunks.append(chunk)
    return b"".join(chunks)


class TestDecodeContent:
    """Undoing content codings on the rewrite path."""

    def test_identity(self):
        assert decode_content(b"abc", "") == b"abc"
        assert decode_content(b"abc", "identity") == b"abc"

    def test_gzip(self):
        assert decode_content(gzip.compress(HTML), "gzip") == HTML
        assert decode_content(gzip.compress(HTML), "x-gzip") == HTML

    def test_zlib_wrapped_deflate(self):
        assert decode_content(zlib.compress(HTML), "deflate") == HTML

    def test_raw_deflate(self):
        compressor = zlib.compressobj(wbits=-zlib.MAX_WBITS)
        raw = compressor.compress(HTML) + compressor.flush()
        assert decode_content(raw, "deflate") == HTML

    def test_stacked_codings(self):
        """Codings are undone in reverse order of application."""
        body = gzip.compress(zlib.compress(HTML))
        assert decode_content(body, "deflate, gzip") == HTML

    def test_empty_body(self):
        assert decode_content(b"", "gzip") == b""

    def test_corrupt_gzip(self):
        with pytest.raises(DecodeFailure):
            decode_content(b"definitely not gzip", "gzip")

    def test_truncated_gzip(self):
        with pytest.raises(DecodeFailure):
            decode_content(gzip.compress(HTML)[:-12], "gzip")

    def test_corrupt_deflate(self):
        with pytest.raises(DecodeFailure):
            decode_content(b"\xff\xff\xff\xff", "deflate")

    def test_unsupported_coding(self):
        with pytest.raises(DecodeFailure) as exc_info:
            decode_content(b"\x1b\x00", "br")
        assert exc_info.value.status_code == 502


class TestContentTypeHelpers:
    def test_should_rewrite(self):
        assert should_rewrite("text/html")
        assert should_rewrite("Text/HTML; charset=utf-8")
        assert not should_rewrite("application/xhtml+xml")
        assert not should_rewrite("text/css")
        assert not should_rewrite("")

    def test_charset_of(self):
        assert charset_of("text/html; charset=ISO-8859-1") == "ISO-8859-1"
        assert charset_of('text/html; charset="windows-1252"') == "windows-1252"
        assert charset_of("text/html") == "utf-8"
        assert charset_of("text/html; charset=no-such-charset") == "utf-8"


class TestReadBody:
    @pytest.mark.asyncio
    async def test_reads_whole_body(self, make_upstream):
        upstream = make_upstream(200, [("content-type", "text/html")], HTML)
        assert await read_body(upstream) == HTML

    @pytest.mark.asyncio
    async def test_client_gone(self, make_upstream):
        upstream = make_upstream(200, [("content-type", "text/html")], HTML)
        request = Mock()
        request.is_disconnected = AsyncMock(return_value=True)
        with pytest.raises(ClientDisconnect):
            await read_body(upstream, request)


class TestAssembleResponse:
    """Choosing and building the client response."""

    @pytest.mark.asyncio
    async def test_html_is_rewritten(self, make_upstream, rewrite_context):
        upstream = make_upstream(
            200,
            [
                ("Content-Type", "text/html; charset=utf-8"),
                ("Content-Length", str(len(HTML))),
                ("X-Frame-Options", "SAMEORIGIN"),
            ],
            HTML,
        )
        release = AsyncMock()

        response = await assemble_response(upstream, rewrite_context, False, release)

        assert not isinstance(response, StreamingResponse)
        assert response.body == REWRITTEN
        assert response.headers["content-length"] == str(len(REWRITTEN))
        assert response.headers["content-type"] == "text/html; charset=utf-8"
        assert "x-frame-options" not in response.headers
        assert response.headers["content-security-policy"] == (
            "frame-ancestors http://localhost:3000"
        )
        release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_compressed_html_is_sent_uncompressed(self, make_upstream, rewrite_context):
        body = gzip.compress(HTML)
        upstream = make_upstream(
            200,
            [
                ("Content-Type", "text/html"),
                ("Content-Encoding", "gzip"),
                ("Content-Length", str(len(body))),
            ],
            body,
        )

        response = await assemble_response(upstream, rewrite_context, False, AsyncMock())

        assert response.body == REWRITTEN
        assert "content-encoding" not in response.headers
        assert response.headers.getlist("content-length") == [str(len(REWRITTEN))]

    @pytest.mark.asyncio
    async def test_corrupt_html_body(self, make_upstream, rewrite_context):
        upstream = make_upstream(
            200,
            [("Content-Type", "text/html"), ("Content-Encoding", "gzip")],
            b"this is not gzip",
        )
        release = AsyncMock()

        with pytest.raises(DecodeFailure):
            await assemble_response(upstream, rewrite_context, False, release)
        release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_legacy_charset_round_trips(self, make_upstream, rewrite_context):
        body = "<html><p>café</p><a href='/about'>x</a></html>".encode("latin-1")
        upstream = make_upstream(
            200, [("Content-Type", "text/html; charset=iso-8859-1")], body
        )

        response = await assemble_response(upstream, rewrite_context, False, AsyncMock())

        assert b"caf\xe9" in response.body
        assert b"/proxy?url=https%3A%2F%2Fexample.com%2Fabout" in response.body

    @pytest.mark.asyncio
    async def test_invalid_utf8_bytes_survive(self, make_upstream, rewrite_context):
        body = b"<html>\xff\xfe<a href='/about'>x</a></html>"
        upstream = make_upstream(200, [("Content-Type", "text/html")], body)

        response = await assemble_response(upstream, rewrite_context, False, AsyncMock())

        assert response.body.startswith(b"<html>\xff\xfe<a href='/proxy?url=")

    @pytest.mark.asyncio
    async def test_status_code_preserved(self, make_upstream, rewrite_context):
        upstream = make_upstream(404, [("Content-Type", "text/html")], HTML)
        response = await assemble_response(upstream, rewrite_context, False, AsyncMock())
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_non_html_passthrough_is_byte_identical(self, make_upstream, rewrite_context):
        body = gzip.compress(b"console.log('/about');" * 100)
        upstream = make_upstream(
            200,
            [
                ("Content-Type", "application/javascript"),
                ("Content-Encoding", "gzip"),
                ("Content-Length", str(len(body))),
                ("Set-Cookie", "sid=1; Secure"),
            ],
            body,
        )
        release = AsyncMock()

        response = await assemble_response(upstream, rewrite_context, True, release)

        assert isinstance(response, StreamingResponse)
        assert response.headers["content-encoding"] == "gzip"
        assert response.headers["content-length"] == str(len(body))
        assert response.headers["set-cookie"] == "sid=1; SameSite=None; Secure"
        assert await _drain(response) == body
        release.assert_awaited()

    @pytest.mark.asyncio
    async def test_head_is_never_buffered(self, make_upstream, rewrite_context):
        upstream = make_upstream(
            200, [("Content-Type", "text/html"), ("Content-Length", "1234")], b""
        )

        response = await assemble_response(
            upstream, rewrite_context, False, AsyncMock(), method="HEAD"
        )

        assert isinstance(response, StreamingResponse)
        assert response.headers["content-length"] == "1234"

    @pytest.mark.asyncio
    async def test_passthrough_redirect_location(self, make_upstream, rewrite_context):
        upstream = make_upstream(302, [("Location", "/login")], b"")

        response = await assemble_response(upstream, rewrite_context, False, AsyncMock())

        assert response.status_code == 302
        assert response.headers["location"] == (
            "/proxy?url=https%3A%2F%2Fexample.com%2Flogin"
        )

    @pytest.mark.asyncio
    async def test_undecodable_byte_in_reference(self, make_upstream, rewrite_context):
        """A latin-1 page served without a charset still gets rewritten."""
        body = b'<!DOCTYPE html><a href="/caf\xe9">x</a>'
        upstream = make_upstream(200, [("Content-Type", "text/html")], body)

        response = await assemble_response(upstream, rewrite_context, False, AsyncMock())

        assert response.status_code == 200
        assert response.body == (
            b'<!DOCTYPE html><a href="/proxy?url=https%3A%2F%2Fexample.com%2Fcaf%E9">x</a>'
        )
