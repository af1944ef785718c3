"""
Centralized logging configuration for the engine entrypoints.
"""

import logging
import sys


def setup_logging(level: str = "INFO") -> None:
    """
    Configure the root logger once for HTTP/CLI entrypoints.

    Args:
        level: Logging level name (e.g. "INFO", "DEBUG").
    """
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                        handlers=[logging.StreamHandler(sys.stdout)])
