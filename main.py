"""
Entry point for the subtap service.

Run this file directly to start the FastAPI server:
    python main.py
    python -m main

Or use uvicorn directly:
    uvicorn subtap.main:app --reload --host 0.0.0.0 --port 8000
"""

import uvicorn

from subtap.config import settings


def main() -> None:
    """
    Start the uvicorn server.

    Server configuration can be overridden via environment variables:
    - HOST: Server host (default: 0.0.0.0)
    - PORT: Server port (default: 8000)
    - LOG_LEVEL: uvicorn log level (default: info)
    - SUBTAP_CACHE_TTL: Lifetime of captured payloads in seconds
    - SUBTAP_DOWNLOAD_DIR: Where downloaded subtitle files are written
    """
    print("=" * 60)
    print("subtap")
    print("=" * 60)
    print(f"Starting server on http://{settings.host}:{settings.port}")
    print("Capture cache:")
    print(f"  - TTL: {settings.cache_ttl}s")
    print(f"  - Capture wait: {settings.capture_wait_ms}ms")
    print("=" * 60)

    uvicorn.run(
        "subtap.main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
