"""Utility functions for genomat.

General-purpose helpers: timing and verbosity-aware progress messages.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Generator

logger = logging.getLogger(__name__)


def progress(log: logging.Logger, verbose: bool, message: str, *args) -> None:
    """Emit an INFO progress message only when ``verbose`` is set."""
    if verbose:
        log.info(message, *args)


@contextmanager
def timer(label: str = "", verbose: bool = True) -> Generator[None, None, None]:
    """Context-manager timer. Logs elapsed time on exit when verbose."""
    start = time.perf_counter()
    yield
    elapsed = time.perf_counter() - start
    if verbose:
        logger.info("[%s] %.3fs", label or "elapsed", elapsed)
