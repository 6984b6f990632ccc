from __future__ import annotations

import logging
import os

import uvicorn

from routine_sync.logging_setup import setup_logging


def main() -> None:
    host = os.getenv("ROUTINE_HOST", "0.0.0.0")
    port = int(os.getenv("ROUTINE_PORT", "8080"))
    level = getattr(logging, os.getenv("ROUTINE_LOG_LEVEL", "INFO").upper(), logging.INFO)
    setup_logging(log_dir=os.getenv("ROUTINE_LOG_DIR") or None, console_level=level)
    uvicorn.run(
        "routine_sync.web_admin:create_app",
        factory=True,
        host=host,
        port=port,
        reload=False,
        log_config=None,
    )


if __name__ == "__main__":
    main()
