"""
Exception and warning types for HiCNB.
ConfigError and DataError abort the affected unit of work; ModelFitError is
always recovered locally by the significance and differential models.
"""


class HiCNBError(Exception):
    """Base exception for all HiCNB errors."""
    pass


class ConfigError(HiCNBError):
    """Raised for invalid parameters, before any work begins."""
    pass


class DataError(HiCNBError):
    """Raised for missing sequence or track data and malformed input rows."""

    def __init__(self, message: str, chrom: str = None):
        if chrom is not None:
            message = f"[{chrom}] {message}"
        super().__init__(message)
        self.chrom = chrom


class ModelFitError(HiCNBError):
    """Raised when a count regression fails to converge or is degenerate."""
    pass


class ModelFitWarning(UserWarning):
    """Issued when a chromosome could not be scored by any model."""
    pass
