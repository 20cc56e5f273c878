import logging
import os
import sys


def set_debug_mode(debug: bool) -> None:
    """Switch the broker logger between DEBUG and INFO.

    Called once at startup from the CLI so ``--debug`` or ``LOG_LEVEL=debug``
    also shows token exchange timings and gate decisions. Handlers follow the
    logger level.

    Args:
        debug: True for DEBUG output, False for INFO
    """
    level = logging.DEBUG if debug else logging.INFO

    logger.setLevel(level)
    for handler in logger.handlers:
        handler.setLevel(level)

    logger.info(
        "Logger debug mode %s - broker logger set to %s level",
        "enabled" if debug else "disabled",
        "DEBUG" if debug else "INFO",
    )


def mask(value: str | None, visible: int = 8) -> str:
    """Shorten a code, token or session id for log output."""
    if not value:
        return "<none>"
    if len(value) <= visible:
        return "***"
    return f"{value[:visible]}..."


## Broker logger ##

# DEBUG_MODE wins over LOGLEVEL; unknown level names fall back to INFO
if os.getenv("DEBUG_MODE", "false") == "true":
    loglevel = logging.DEBUG
else:
    env_level = os.getenv("LOGLEVEL", "INFO").upper()
    loglevel = (
        getattr(logging, env_level)
        if env_level in ["DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"]
        else logging.INFO
    )

logger = logging.getLogger("oauth-broker")
logger.setLevel(loglevel)
logger.propagate = False  # uvicorn configures the root logger too

stdout_handler = logging.StreamHandler(sys.stdout)
stdout_handler.setLevel(loglevel)
stdout_handler.setFormatter(logging.Formatter("%(levelname)s - %(message)s"))

logger.addHandler(stdout_handler)
