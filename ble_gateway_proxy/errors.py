"""Exception types raised by the proxy."""


class GatewayProxyError(Exception):
    """Base class for all proxy errors."""


class ConfigError(GatewayProxyError, ValueError):
    """Invalid configuration value."""


class GatewayParseError(GatewayProxyError, ValueError):
    """Top-level gateway container could not be interpreted."""


class DeviceParseError(GatewayProxyError, ValueError):
    """A raw device record could not be decoded."""


class TransformError(GatewayProxyError, ValueError):
    """A parsed device could not be turned into an observation."""
