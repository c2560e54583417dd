"""
Logging utilities for the Google Cloud worker provider.
"""

import logging
import sys


def setup_logging(
    verbose: bool = False, log_file: str = "worker-manager-google.log"
) -> logging.Logger:
    """
    Set up logging configuration.

    Args:
        verbose: Enable verbose (DEBUG) logging
        log_file: Path to log file

    Returns:
        Logger instance
    """
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file),
        ],
    )
    # AuthorizedSession logs every token refresh at DEBUG
    logging.getLogger("google.auth").setLevel(logging.INFO)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return logging.getLogger(__name__)
