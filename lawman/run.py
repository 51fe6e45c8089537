#!/usr/bin/env python3
"""
Development runner: `python -m lawman.run`

Host, port and auto-reload come from settings (API_HOST, API_PORT); reload
is off in production.
"""

import uvicorn

from .config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "lawman.api:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
