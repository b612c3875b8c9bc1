from __future__ import annotations

import logging

from .settings import S


def configure_logging() -> None:
    """Configure logging defaults for the application."""
    logging.basicConfig(
        level=(S.log_level or "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
