"""
Immutable proxy configuration and the per-response rewrite context.

``ProxyConfig`` is built once at startup from ``embed_proxy.vars`` and stored on
the application state. Every proxied response derives a ``RewriteContext`` from
it; rewrite code never reads the environment directly.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional
from urllib.parse import urljoin, urlsplit

from embed_proxy import vars as env

_DEFAULT_PORTS = {"http": 80, "https": 443}


class RoutingMode(str, Enum):
    """How proxied URLs are addressed on the inbound surface."""

    QUERY = "query"  # /proxy?url=<absolute-url>
    PREFIX = "prefix"  # /proxy/<path> against a fixed target origin


def origin_of(url: str) -> str:
    """Return ``scheme://host[:port]`` for an absolute URL, dropping default ports.

    Raises ValueError when the URL has no scheme/host or an invalid port.
    """
    parts = urlsplit(url)
    host = parts.hostname
    if not parts.scheme or not host:
        raise ValueError(f"Not an absolute URL: {url!r}")
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    if port is not None and port != _DEFAULT_PORTS.get(parts.scheme.lower()):
        return f"{parts.scheme.lower()}://{host}:{port}"
    return f"{parts.scheme.lower()}://{host}"


@dataclass(frozen=True)
class RewriteOptions:
    """Optional body rewriting behaviours."""

    strip_meta_csp: bool = True
    neutralize_frame_busters: bool = True
    block_service_workers: bool = True


@dataclass(frozen=True)
class ProxyConfig:
    path_prefix: str = "/proxy"
    routing_mode: RoutingMode = RoutingMode.QUERY
    target_origin: str = ""
    public_url: str = ""
    timeout: float = 30.0
    rewrite_options: RewriteOptions = field(default_factory=RewriteOptions)

    def __post_init__(self):
        if self.routing_mode == RoutingMode.PREFIX:
            if not self.target_origin:
                raise ValueError("Prefix routing requires TARGET_ORIGIN to be set")
            object.__setattr__(self, "target_origin", origin_of(self.target_origin))


def load_config() -> ProxyConfig:
    """Build the process-wide configuration from the environment."""
    return ProxyConfig(
        path_prefix=env.PROXY_PREFIX,
        routing_mode=RoutingMode(env.ROUTING_MODE),
        target_origin=env.TARGET_ORIGIN,
        public_url=env.PUBLIC_URL,
        timeout=env.PROXY_TIMEOUT,
        rewrite_options=RewriteOptions(
            strip_meta_csp=env.STRIP_META_CSP,
            neutralize_frame_busters=env.NEUTRALIZE_FRAME_BUSTERS,
            block_service_workers=env.BLOCK_SERVICE_WORKERS,
        ),
    )


@dataclass(frozen=True)
class RewriteContext:
    """
    Values needed to resolve and re-encode references found in one response.

    Attributes:
        document_url: Absolute URL of the upstream document; relative references
            are resolved against it.
        target_origin: Origin of the upstream (``scheme://host[:port]``).
        public_origin: The proxy's own public origin.
        path_prefix: Path under which proxied traffic is served.
        routing_mode: Addressing convention used by the inbound route.
    """

    document_url: str
    target_origin: str
    public_origin: str
    path_prefix: str = "/proxy"
    routing_mode: RoutingMode = RoutingMode.QUERY

    @classmethod
    def for_target(
        cls, target_url: str, config: ProxyConfig, public_origin: Optional[str] = None
    ) -> "RewriteContext":
        return cls(
            document_url=target_url,
            target_origin=origin_of(target_url),
            public_origin=(config.public_url or public_origin or "").rstrip("/"),
            path_prefix=config.path_prefix,
            routing_mode=config.routing_mode,
        )

    def rebased(self, base_href: str) -> "RewriteContext":
        """Return a copy whose document URL honours a ``<base href>``."""
        try:
            base = urljoin(self.document_url, base_href.strip())
            origin_of(base)
        except ValueError:
            return self
        if urlsplit(base).scheme.lower() not in _DEFAULT_PORTS:
            return self
        return replace(self, document_url=base)
