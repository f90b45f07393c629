"""
Exceptions raised by sparse CAR models.
"""


class SparseCARError(Exception):
    """Base class for all package errors."""


class InvalidInput(SparseCARError, ValueError):
    """
    Raised when model inputs are malformed.

    Covers adjacency matrices that are not square, not symmetric, not binary,
    have self-loops or isolated nodes, and data arrays whose shapes do not
    agree with the adjacency matrix.
    """


class DomainViolation(SparseCARError, ArithmeticError):
    """
    Raised when 1 - rho * lambda_i <= 0 for some eigenvalue.

    Only raised under strict evaluation. By default the densities return -inf
    so samplers reject the proposal instead of aborting the run.
    """
