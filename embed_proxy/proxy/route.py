import asyncio
import logging
from typing import Optional
from urllib.parse import urlsplit

import httpx
from fastapi import APIRouter, Query, Request
from fastapi.responses import Response
from opentelemetry import trace
from starlette.requests import ClientDisconnect

from embed_proxy.config import ProxyConfig, RewriteContext, RoutingMode
from embed_proxy.proxy.assembler import assemble_response
from embed_proxy.proxy.errors import InvalidRequest, ProxyError, UpstreamUnreachable
from embed_proxy.proxy.headers import prepare_request_headers
from embed_proxy.proxy.url_rewriter import PROXIABLE_SCHEMES
from embed_proxy.utils import redact_url
from embed_proxy.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
)
from embed_proxy.utils.traced_requests import traced_request

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

QUERY_METHODS = ["GET", "POST"]
PREFIX_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]

# How often an in-flight upstream fetch checks whether the client is still there
DISCONNECT_POLL_INTERVAL = 0.25


def get_proxy_config(request: Request) -> ProxyConfig:
    return request.app.state.proxy_config


def create_upstream_client(config: ProxyConfig) -> httpx.AsyncClient:
    """One client per proxied request; closed once the response is done."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.timeout),
        follow_redirects=False,  # Handle redirects manually for rewriting
    )


def validate_target_url(url: Optional[str]) -> str:
    """Return the stripped target URL or raise InvalidRequest."""
    if not url or not url.strip():
        raise InvalidRequest("Missing 'url' query parameter")
    url = url.strip()
    try:
        parts = urlsplit(url)
        parts.port
    except ValueError as e:
        raise InvalidRequest(f"Malformed target URL: {e}", target_url=url)
    if parts.scheme.lower() not in PROXIABLE_SCHEMES:
        raise InvalidRequest(
            f"Unsupported scheme {parts.scheme or '<none>'!r}: only http and https can be proxied",
            target_url=url,
        )
    if not parts.hostname:
        raise InvalidRequest("Target URL has no host", target_url=url)
    return url


def get_prefix_target_url(request: Request, config: ProxyConfig) -> str:
    """Construct the target URL from the request path (prefix routing)."""
    path = request.url.path
    if path.startswith(config.path_prefix):
        path = path[len(config.path_prefix):]

    # Ensure path starts with /
    if not path.startswith("/"):
        path = "/" + path

    # Preserve query parameters
    query_string = str(request.url.query)
    if query_string:
        path = f"{path}?{query_string}"

    return f"{config.target_origin}{path}"


def request_origin(request: Request) -> str:
    return f"{request.url.scheme}://{request.url.netloc}"


async def _send_unless_disconnected(
    client: httpx.AsyncClient, upstream_request: httpx.Request, request: Request
) -> httpx.Response:
    """Send the upstream request, abandoning it if the client goes away first."""
    send = asyncio.ensure_future(client.send(upstream_request, stream=True))

    async def watch() -> None:
        while not send.done():
            if await request.is_disconnected():
                return
            await asyncio.sleep(DISCONNECT_POLL_INTERVAL)

    watcher = asyncio.ensure_future(watch())
    disconnected = True
    try:
        await asyncio.wait({send, watcher}, return_when=asyncio.FIRST_COMPLETED)
        disconnected = not send.done()
    finally:
        watcher.cancel()
        if not send.done():
            send.cancel()
        # Let both tasks unwind before the client is closed
        await asyncio.wait({send, watcher})
    if disconnected:
        raise ClientDisconnect()
    return send.result()


async def forward_to_target(
    request: Request, target_url: str, config: ProxyConfig
) -> Response:
    """
    Fetch ``target_url`` on behalf of the client and return the rewritten response.

    A single upstream attempt is made; failures before a status line surface as
    UpstreamUnreachable (502). Redirects are not followed upstream, the rewritten
    Location header makes the browser follow them through the proxy.
    """
    context = RewriteContext.for_target(target_url, config, request_origin(request))
    is_secure = urlsplit(context.public_origin).scheme == "https"

    with traced_request(tracer, "proxy_request", target_url, request.method) as span:
        headers = prepare_request_headers(
            request.headers.items(),
            context,
            request.client.host if request.client else None,
            request.url.scheme,
        )
        body = await request.body()

        client = create_upstream_client(config)
        try:
            upstream_request = client.build_request(
                method=request.method,
                url=target_url,
                headers=headers,
                content=body or None,
            )
            upstream = await _send_unless_disconnected(client, upstream_request, request)
        except httpx.InvalidURL as e:
            await client.aclose()
            raise InvalidRequest(f"Malformed target URL: {e}", target_url=target_url)
        except httpx.TimeoutException as e:
            await client.aclose()
            log_exception_with_details(logger, "[Proxy] Upstream timeout", e)
            span.set_attribute("proxy.error", "timeout")
            raise UpstreamUnreachable(
                f"Upstream timed out: {format_exception_message(e)}",
                target_url=target_url,
            )
        except httpx.RequestError as e:
            await client.aclose()
            log_exception_with_details(logger, "[Proxy] Upstream unreachable", e)
            span.set_attribute("proxy.error", "connection_failed")
            raise UpstreamUnreachable(
                f"Cannot reach upstream: {format_exception_message(e)}",
                target_url=target_url,
            )
        except ClientDisconnect:
            await client.aclose()
            logger.debug(f"Client left before {redact_url(target_url)} answered")
            return Response(status_code=499)

        span.set_attribute("proxy.status_code", upstream.status_code)

        async def release() -> None:
            await upstream.aclose()
            await client.aclose()

        try:
            return await assemble_response(
                upstream,
                context,
                is_secure,
                release,
                options=config.rewrite_options,
                request=request,
                method=request.method,
            )
        except ClientDisconnect:
            logger.debug(f"Client left while {redact_url(target_url)} was buffered")
            return Response(status_code=499)
        except ProxyError as e:
            e.target_url = e.target_url or target_url
            span.set_attribute("proxy.error", e.error)
            logger.error(f"[Proxy] {e.error} for {redact_url(target_url)}: {e.detail}")
            raise


def create_router(config: ProxyConfig) -> APIRouter:
    """Register the proxy route for the configured routing mode."""
    router = APIRouter()

    if config.routing_mode == RoutingMode.QUERY:

        @router.api_route(config.path_prefix or "/", methods=QUERY_METHODS)
        async def proxy_by_query(request: Request, url: Optional[str] = Query(None)):
            """Proxy the absolute URL carried in the ``url`` query parameter."""
            return await forward_to_target(
                request, validate_target_url(url), get_proxy_config(request)
            )

    else:

        @router.api_route(config.path_prefix + "/{path:path}", methods=PREFIX_METHODS)
        async def proxy_by_prefix(request: Request, path: str):
            """Catch-all route that proxies all requests to the target origin."""
            proxy_config = get_proxy_config(request)
            target_url = get_prefix_target_url(request, proxy_config)
            return await forward_to_target(request, target_url, proxy_config)

    return router
