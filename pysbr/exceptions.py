"""Error types raised by pysbr."""


class SbrError(Exception):
    """Base class for all pysbr errors."""


class ConfigError(SbrError, ValueError):
    """Invalid hyperparameter or configuration value."""


class FitError(SbrError):
    """Model fitting failed."""


class DataError(FitError, ValueError):
    """Empty or malformed interaction data."""


class NumericalError(FitError, ArithmeticError):
    """Non-finite value produced during the forward or backward pass."""


class OutOfRange(SbrError, IndexError):
    """User, item or embedding index outside the configured bounds."""
