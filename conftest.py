import httpx
import pytest

from embed_proxy.config import RewriteContext, RoutingMode

PUBLIC_ORIGIN = "http://localhost:3000"
DOCUMENT_URL = "https://example.com/docs/index.html"


def upstream_response(status_code=200, headers=None, body=b"", url=DOCUMENT_URL):
    """
    Build an httpx response whose body is still an unread stream, the way
    ``AsyncClient.send(..., stream=True)`` hands it over.
    """
    return httpx.Response(
        status_code,
        headers=headers or [],
        stream=httpx.ByteStream(body),
        request=httpx.Request("GET", url),
    )


@pytest.fixture
def rewrite_context():
    """Query-mode context for a document below https://example.com/docs/."""
    return RewriteContext(
        document_url=DOCUMENT_URL,
        target_origin="https://example.com",
        public_origin=PUBLIC_ORIGIN,
        path_prefix="/proxy",
        routing_mode=RoutingMode.QUERY,
    )


@pytest.fixture
def prefix_context():
    """Prefix-mode context against a fixed target origin."""
    return RewriteContext(
        document_url=DOCUMENT_URL,
        target_origin="https://example.com",
        public_origin=PUBLIC_ORIGIN,
        path_prefix="/proxy",
        routing_mode=RoutingMode.PREFIX,
    )


@pytest.fixture
def make_upstream():
    """Factory for stream-mode upstream responses."""
    return upstream_response
