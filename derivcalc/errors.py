"""
Domain validation shared by both differentiation engines.

Two operations have a precondition on their inputs: the natural logarithm
needs a strictly positive argument and division needs a nonzero divisor.
Both engines check these at the node where the operation happens and raise
DomainError immediately, instead of letting NaN or infinity leak into the
final result.
"""

from __future__ import annotations
import enum
import numpy as np
from typing import Any, Optional, Union


Numeric = Union[int, float, np.floating]


class Operation(enum.Enum):
    """Operations that can fail with a DomainError."""

    LOG = "log"
    DIVISION = "division"
    POWER = "power"


class DomainError(ValueError):
    """
    An operation was evaluated outside its mathematical domain.

    Attributes:
        operation: Which operation failed.
        offending_value: The input value that violated the precondition
            (the log argument or the divisor).
        node: The expression or graph node where the failure occurred,
            or None if unknown.
    """

    def __init__(
        self,
        operation: Operation,
        offending_value: float,
        node: Optional[Any] = None,
    ) -> None:
        self.operation = operation
        self.offending_value = offending_value
        self.node = node
        message = f"{operation.value} undefined for input value {offending_value!r}"
        if node is not None:
            message += f" at {node}"
        super().__init__(message)


def check_log_argument(value: float, node: Optional[Any] = None) -> float:
    """
    Validate the argument of a natural logarithm.

    Args:
        value: The argument about to be passed to ln.
        node: Node reported in the error.

    Returns:
        The value, unchanged.

    Raises:
        DomainError: If value is not strictly positive (NaN included).
    """
    if not value > 0:
        raise DomainError(Operation.LOG, value, node)
    return value


def check_divisor(value: float, node: Optional[Any] = None) -> float:
    """Validate a divisor, raising DomainError if it is zero."""
    if value == 0:
        raise DomainError(Operation.DIVISION, value, node)
    return value


def real_power(base: float, n: float) -> float:
    """
    Compute base**n with IEEE floating-point semantics.

    Python's own operator raises ZeroDivisionError for 0.0 ** -1 and returns
    a complex number for a negative base with a fractional exponent. NumPy
    returns inf and nan instead, which is what callers of Power expect.
    """
    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        return float(np.power(np.float64(base), np.float64(n)))
