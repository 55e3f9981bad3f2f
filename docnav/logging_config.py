"""Logging setup for the command-line entry point."""

from __future__ import annotations

import logging
import os


def setup_logging(level: int | None = None) -> None:
    if level is None:
        env_level = os.environ.get("DOCNAV_LOG_LEVEL", "WARNING").upper()
        level = getattr(logging, env_level, logging.WARNING)
    logging.basicConfig(
        level=level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )


__all__ = ["setup_logging"]
