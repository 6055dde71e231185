"""Logging setup for the CLI and web server."""

import logging


def setup_logging(
    level: str = "INFO",
    debug_ssh: bool = False,
) -> None:
    """Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        debug_ssh: Enable verbose asyncssh protocol logging
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    if debug_ssh:
        logging.getLogger("asyncssh").setLevel(logging.DEBUG)
    else:
        logging.getLogger("asyncssh").setLevel(logging.WARNING)

    # Uvicorn access logs are noisy with 1s telemetry polling
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
