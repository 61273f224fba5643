"""
Transport listener selection.

The proxy serves over TLS when a usable certificate/key pair is configured and
falls back to plain HTTP otherwise. The choice is made once at startup and
never influences the rewriting pipeline beyond the request scheme.
"""

import ssl
from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class SecureListener:
    certfile: str
    keyfile: str

    scheme = "https"

    def uvicorn_options(self) -> dict:
        return {"ssl_certfile": self.certfile, "ssl_keyfile": self.keyfile}


@dataclass(frozen=True)
class InsecureListener:
    reason: str = ""

    scheme = "http"

    def uvicorn_options(self) -> dict:
        return {}


Listener = Union[SecureListener, InsecureListener]


def select_listener(certfile: Optional[str], keyfile: Optional[str]) -> Listener:
    """Secure when the certificate pair is present and loads, insecure otherwise."""
    if not certfile or not keyfile:
        return InsecureListener("no certificate configured")
    try:
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        context.load_cert_chain(certfile, keyfile)
    except (OSError, ssl.SSLError) as e:
        return InsecureListener(f"{type(e).__name__}: {e}")
    return SecureListener(certfile, keyfile)
