"""
Covariance builder: latent factor kernels over cells.

A factor (e.g. the cell cycle) is inferred from a gene set with a linear
GPLVM and exposed as a normalized cell x cell covariance matrix.
"""

from .terms import (
    CovarianceMatrix,
    Standalone,
    ConditionedOn,
    Interaction,
    normalize_kernel,
    interaction_kernel,
)
from .builder import FactorFit, fit_factor

__all__ = [
    "CovarianceMatrix",
    "Standalone",
    "ConditionedOn",
    "Interaction",
    "normalize_kernel",
    "interaction_kernel",
    "FactorFit",
    "fit_factor",
]
