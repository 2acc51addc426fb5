"""
Error types raised by latent_sc.

Construction-time problems (bad gene sets, shape mismatches) are raised
immediately. Per-gene and per-pair fitting failures are captured by the
batch routines and reported through convergence flags instead.
"""


class LatentSCError(Exception):
    """Base class for all latent_sc errors."""


class InputError(LatentSCError, ValueError):
    """Malformed input: empty gene set, bad indices, negative noise, ..."""


class DimensionMismatchError(InputError):
    """Matrix shapes disagree (e.g. K is not N x N)."""


class ConvergenceError(LatentSCError, RuntimeError):
    """Optimizer did not reach tolerance within its iteration budget."""


class FitTimeout(ConvergenceError):
    """A single fitting unit exceeded its wall-clock budget."""


class NumericalInstabilityError(LatentSCError, ArithmeticError):
    """Singular or ill-conditioned covariance, or a non-finite objective."""
