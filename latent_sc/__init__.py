"""
latent-sc: latent variable models for single-cell RNA-seq

Infers hidden factors such as the cell cycle from gene sets, decomposes
gene expression variance into those factors and noise, and removes their
contribution from expression and gene-gene association.
"""

__version__ = "0.1.0"

from . import covariance
from . import inference
from . import mixed
from . import tools as tl
from . import validation
from .errors import (
    LatentSCError,
    InputError,
    DimensionMismatchError,
    ConvergenceError,
    FitTimeout,
    NumericalInstabilityError,
)
from .settings import GPLVMSettings, REMLSettings
from .covariance import CovarianceMatrix, FactorFit, fit_factor
from .mixed import (
    VarianceDecomposition,
    variance_decomposition,
    CorrectedExpression,
    corrected_expression,
    LMMResult,
    fit_lmm,
    compare_association,
    partition_indices,
    run_sharded,
)
from .session import LatentSession

__all__ = [
    "covariance",
    "inference",
    "mixed",
    "tl",
    "validation",
    "LatentSCError",
    "InputError",
    "DimensionMismatchError",
    "ConvergenceError",
    "FitTimeout",
    "NumericalInstabilityError",
    "GPLVMSettings",
    "REMLSettings",
    "CovarianceMatrix",
    "FactorFit",
    "fit_factor",
    "VarianceDecomposition",
    "variance_decomposition",
    "CorrectedExpression",
    "corrected_expression",
    "LMMResult",
    "fit_lmm",
    "compare_association",
    "partition_indices",
    "run_sharded",
    "LatentSession",
]
