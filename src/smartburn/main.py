#!/usr/bin/env python3
"""SmartBurn main application."""

import logging
import multiprocessing
import sys

from smartburn.cli import main as cli_main
from smartburn.core.platform_info import detect_platform

logger = logging.getLogger(__name__)


def main():
    """Run the command-line application."""
    # Frozen builds re-execute this entry point for multiprocessing children
    multiprocessing.freeze_support()
    if len(sys.argv) > 1 and sys.argv[1].startswith("--multiprocessing"):
        sys.exit(0)

    logger.debug("Platform: %s", detect_platform())
    cli_main()


if __name__ == "__main__":
    main()
