import logging

import uvicorn

from embed_proxy.listener import InsecureListener, select_listener
from embed_proxy.vars import HOST, PORT, SSL_CERTFILE, SSL_KEYFILE

logger = logging.getLogger("uvicorn.error")


def main() -> None:
    listener = select_listener(SSL_CERTFILE, SSL_KEYFILE)
    if isinstance(listener, InsecureListener):
        logger.warning(
            f"Certificates not usable ({listener.reason}), falling back to HTTP"
        )
    logger.warning(f"Serving on {listener.scheme}://{HOST}:{PORT}")
    uvicorn.run(
        "embed_proxy.server:app",
        host=HOST,
        port=PORT,
        **listener.uvicorn_options(),
    )


if __name__ == "__main__":
    main()
