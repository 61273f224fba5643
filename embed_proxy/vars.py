import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "embed-proxy")

PROXY_PREFIX = os.environ.get("PROXY_PREFIX", "/proxy").rstrip("/")
ROUTING_MODE = os.environ.get("ROUTING_MODE", "query").lower()
TARGET_ORIGIN = os.environ.get("TARGET_ORIGIN", "").rstrip("/")
# Public-facing origin used for rewrites and frame-ancestors
PUBLIC_URL = os.environ.get("PUBLIC_URL", "").rstrip("/")
PROXY_TIMEOUT = float(os.environ.get("PROXY_TIMEOUT", "30"))

STRIP_META_CSP = os.environ.get("STRIP_META_CSP", "true").lower() == "true"
NEUTRALIZE_FRAME_BUSTERS = (
    os.environ.get("NEUTRALIZE_FRAME_BUSTERS", "true").lower() == "true"
)
BLOCK_SERVICE_WORKERS = (
    os.environ.get("BLOCK_SERVICE_WORKERS", "true").lower() == "true"
)

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "3000"))
SSL_CERTFILE = os.environ.get("SSL_CERTFILE", "./localhost+2.pem")
SSL_KEYFILE = os.environ.get("SSL_KEYFILE", "./localhost+2-key.pem")

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
