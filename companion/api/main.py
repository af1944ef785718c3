"""
HTTP server entrypoint.

Builds the engine from environment configuration at startup and serves the
FastAPI app with uvicorn. `HOST`/`PORT` override the bind address.
"""

import os

import uvicorn

from companion.api.http_api import create_app
from companion.logging_config import setup_logging


app = create_app()


def main():
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))
    uvicorn.run(
        "companion.api.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
