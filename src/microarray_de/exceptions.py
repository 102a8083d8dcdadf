"""
Error types raised by the analysis stages.
"""


class MicroarrayDEError(Exception):
    """Base class for all analysis errors."""


class ConfigError(MicroarrayDEError):
    """Configuration file missing or invalid."""


class InputValidationError(MicroarrayDEError, ValueError):
    """Input tables failed validation."""


class AlignmentError(InputValidationError):
    """Expression, sample and feature identifiers do not line up."""


class NonPositiveValueError(InputValidationError):
    """Log transform requested on values <= 0."""


class MissingValueError(InputValidationError):
    """Expression matrix contains NaN or infinite values."""


class DesignError(MicroarrayDEError, ValueError):
    """Design matrix or contrast specification cannot be used."""


class EnrichmentError(MicroarrayDEError):
    """Pathway enrichment could not be run."""
