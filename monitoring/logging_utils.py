import logging
import os
from typing import Optional


def setup_logging(level: Optional[int] = None, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    Intended to be called once from the main entrypoint. The level defaults to
    ``LOG_LEVEL`` from the environment, then INFO. Subsequent calls are ignored
    if handlers already exist.
    """
    if logging.getLogger().handlers:
        return

    if level is None:
        level = getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO)
    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    # asyncio slow-callback warnings drown the tick logs at DEBUG
    logging.getLogger('asyncio').setLevel(max(level, logging.WARNING))
