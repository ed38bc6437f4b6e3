__all__ = [
    "WellModelError",
    "ValidationError",
    "UnsupportedConfigurationError",
    "CellNotFoundError",
    "ComputationError",
    "SolverError",
    "PreconditionerError",
]


class WellModelError(Exception):
    """Base class for all well model errors."""

    pass


class ValidationError(WellModelError, ValueError):
    """Raised when input data fails validation checks."""

    pass


class UnsupportedConfigurationError(WellModelError):
    """
    Raised when the well setup cannot be simulated by the well model.

    Examples are multi-segment wells, wells missing from the schedule,
    unknown well types or perforation directions.
    """

    pass


class CellNotFoundError(UnsupportedConfigurationError, KeyError):
    """Raised when a completion refers to a cell that is not active in the grid."""

    def __str__(self) -> str:
        # `KeyError` quotes its message, keep it readable
        return str(self.args[0]) if self.args else ""


class ComputationError(WellModelError):
    """Raised when well residuals become non-finite or grow unreasonably large."""

    pass


class SolverError(WellModelError):
    """Raised when a linear solver fails to converge within the specified iterations."""

    pass


class PreconditionerError(WellModelError):
    """Raised when there is an error related to preconditioners."""

    pass
