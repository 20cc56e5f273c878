"""Main entry point for the MCP OAuth broker."""

import argparse
import logging
import os
import sys
from importlib.metadata import PackageNotFoundError, version

import uvicorn

from .config import load_settings
from .server import create_app
from .utils.logger import logger, set_debug_mode


def _setup_argument_parser() -> argparse.ArgumentParser:
    """Set up and return the argument parser for the OAuth broker."""
    try:
        package_version = version("mcp-oauth-broker")
    except PackageNotFoundError:
        package_version = "0.1.0"

    parser = argparse.ArgumentParser(
        description="OAuth 2.1 authorization broker for remote MCP servers",
        epilog=(
            "Examples:\n"
            "  oauth-broker --port 8080 --host 0.0.0.0\n"
            "  oauth-broker --identity-provider google --debug\n"
            "  SESSION_STORE_URL=redis://localhost:6379/0 oauth-broker\n"
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {package_version}",
        help="Show the version and exit",
    )

    parser.add_argument(
        "--port",
        type=int,
        default=8001,
        help="Port to run the broker on. Default is 8001",
    )

    parser.add_argument(
        "--host",
        default="0.0.0.0",  # nosec B104 - Required for containerized service
        help="Host to run the broker on. Default is 0.0.0.0",
    )

    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default="info",
        help="Logging level. Default is info",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (equivalent to --log-level debug)",
    )

    parser.add_argument(
        "--identity-provider",
        choices=["github", "google"],
        default=None,
        help="External identity provider. Default is from IDENTITY_PROVIDER env var, else github",
    )

    return parser


def main() -> None:
    """Main entry point for the OAuth broker."""
    parser = _setup_argument_parser()
    args = parser.parse_args()

    if args.debug:
        log_level = "debug"
    else:
        log_level = args.log_level

    # Override with environment variables if present
    host = os.getenv("HOST", args.host)
    port = int(os.getenv("PORT", args.port))
    log_level = os.getenv("LOG_LEVEL", log_level).lower()

    if args.identity_provider:
        os.environ["IDENTITY_PROVIDER"] = args.identity_provider

    set_debug_mode(log_level == "debug")

    try:
        settings = load_settings()
    except ValueError as e:
        logger.error(f"Failed to load broker configuration: {e}")
        logger.error("Make sure IDP_CLIENT_ID and IDP_CLIENT_SECRET are set")
        sys.exit(1)

    try:
        app = create_app(settings)
    except ValueError as e:
        logger.error(f"Failed to build broker application: {e}")
        sys.exit(1)

    # Provider token exchanges carry codes and tokens in request URLs
    httpx_logger = logging.getLogger("httpx")
    httpx_logger.setLevel(logging.WARNING)

    logger.info(f"Starting MCP OAuth broker on {host}:{port}")
    logger.info(f"Log level: {log_level}")
    logger.info("HTTPX request logging disabled to prevent token leakage")

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=log_level,
        access_log=log_level == "debug",  # Only show access logs in DEBUG mode
    )


if __name__ == "__main__":
    main()
