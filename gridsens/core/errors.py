"""Error taxonomy.

Numerical outcomes (non-convergence, singular Jacobian) are never raised:
they are reported as solver statuses and NaN values. Exceptions are kept for
malformed input, unknown identifiers, invalid parameters and programming
errors.
"""

from __future__ import annotations


class GridSensError(Exception):
    """Base class of all errors raised by gridsens."""


class StructuralError(GridSensError):
    """Malformed grid topology (dangling reference, missing node...)."""


class ElementNotFoundError(GridSensError, LookupError):
    """An identifier requested by a factor, contingency or action is unknown."""

    def __init__(self, kind: str, element_id: str):
        self.kind = kind
        self.element_id = element_id
        super().__init__(f"{kind} '{element_id}' not found")


class ParameterError(GridSensError, ValueError):
    """Invalid combination of analysis parameters or request options."""


class UnsupportedOperationError(GridSensError, TypeError):
    """Operation not supported by this kind of element (e.g. taps on a fixed pi model)."""


class EquationSystemError(GridSensError, RuntimeError):
    """Inconsistent equation system, e.g. a variable on a disabled element."""


class SingularMatrixError(GridSensError):
    """Factorization failed. Caught inside the solvers and turned into a status."""


class AnalysisCancelledError(GridSensError):
    """The caller requested cancellation between two contingency states."""
