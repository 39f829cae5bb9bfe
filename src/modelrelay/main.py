"""
modelrelay entry point.

This file handles startup concerns (arg-parsing, logging) and launches the appropriate
interface (HTTP API or interactive CLI).
"""

import argparse
import logging
import sys

from modelrelay.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _init_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stdout,
    )
    # Provider SDKs log every request through httpx
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None) -> None:
    """
    Main entry point for the modelrelay application.

    This function sets up the command-line interface, initializes logging, and starts the
    application in either API or CLI mode.
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Run the modelrelay dispatch engine")
    parser.add_argument(
        "--mode",
        choices=["api", "cli"],
        type=str.lower,
        default="api",
        help="Launch the REST API or an interactive CLI (default: api)",
    )
    parser.add_argument(
        "--model",
        default="default",
        help="Model for CLI mode, e.g. openai/gpt-4o or a local model id (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        type=str.lower,
        default=settings.LOG_LEVEL,
        help="Logging level (default from env: %(default)s)",
    )
    args = parser.parse_args(argv)

    # Override log level setting with command-line argument
    settings.LOG_LEVEL = args.log_level

    _init_logging(settings.LOG_LEVEL)

    logger.info("Starting modelrelay [%s mode]", args.mode)
    logger.debug("Settings: %s", settings.model_dump(exclude={"OPENAI_API_KEY", "ANTHROPIC_API_KEY"}))

    if args.mode == "api":
        # Lazy import to keep CLI start-up free of the web stack
        from modelrelay.api.app import run_api  # pylint: disable=import-outside-toplevel

        run_api(host=settings.API_HOST, port=settings.API_PORT, reload=settings.DEBUG)
    else:
        from modelrelay.client.cli import run_cli  # pylint: disable=import-outside-toplevel

        run_cli(model=args.model)


if __name__ == "__main__":
    main()
