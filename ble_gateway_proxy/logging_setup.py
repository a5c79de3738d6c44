"""Console logging and the coloured status icons used in log lines."""

import logging

LOGGER_NAME = 'BLEGatewayProxy'
DEFAULT_LOG_LEVEL = 'INFO'


# ANSI color codes for cross-platform colored output
class Colors:
    """ANSI color codes for terminal output."""
    GREEN = '\033[92m'
    RED = '\033[91m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    RESET = '\033[0m'
    BOLD = '\033[1m'


# Icons with colors for different log levels
ICON_SUCCESS = f"{Colors.GREEN}✓{Colors.RESET}"
ICON_ERROR = f"{Colors.RED}✗{Colors.RESET}"
ICON_WARNING = f"{Colors.YELLOW}⚠{Colors.RESET}"
ICON_INFO = f"{Colors.BLUE}ℹ{Colors.RESET}"
ICON_PUBLISH = f"{Colors.CYAN}{Colors.BOLD}⬆{Colors.RESET}"
ICON_RECEIVE = f"{Colors.CYAN}⬇{Colors.RESET}"


def get_logger(name: str = '') -> logging.Logger:
    """Return the proxy logger, or one of its children when `name` is given."""
    if not name:
        return logging.getLogger(LOGGER_NAME)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def setup_logging(log_level: str = DEFAULT_LOG_LEVEL) -> logging.Logger:
    """Configure logging with appropriate level.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        Configured logger instance
    """
    logger = get_logger()

    # Convert string to logging level
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logger.setLevel(numeric_level)

    # Calling twice (config reload, tests) must not duplicate output
    for existing in list(logger.handlers):
        if getattr(existing, '_ble_gateway_proxy', False):
            logger.removeHandler(existing)

    handler = logging.StreamHandler()
    handler.setLevel(numeric_level)
    handler._ble_gateway_proxy = True

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    handler.setFormatter(formatter)

    logger.addHandler(handler)

    return logger
