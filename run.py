#!/usr/bin/env python
"""Entry point to run the ServerForge API."""

import uvicorn

from serverforge.config import settings

if __name__ == "__main__":
    settings.setup_logging()
    uvicorn.run(
        "serverforge.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )
