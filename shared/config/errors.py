class ConfigError(RuntimeError):
    """Raised for missing or malformed configuration. Fatal at startup."""
