"""
Error taxonomy of the proxy.

Only failures that make the whole response impossible are raised; problems
confined to a single reference inside a document are handled where they occur
by leaving that reference untouched.
"""

from typing import Optional


class ProxyError(Exception):
    """Base class for errors reported to the client as a structured body."""

    status_code = 500
    error = "proxy_error"

    def __init__(self, detail: str, target_url: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.target_url = target_url


class InvalidRequest(ProxyError):
    """Missing or malformed target URL, or a scheme other than http/https."""

    status_code = 400
    error = "invalid_request"


class UpstreamUnreachable(ProxyError):
    """The upstream could not be reached or failed before sending a status line."""

    status_code = 502
    error = "upstream_unreachable"


class DecodeFailure(ProxyError):
    """The declared content-encoding does not match the body bytes."""

    status_code = 502
    error = "decode_failure"
