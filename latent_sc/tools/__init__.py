"""
AnnData tools: factor fitting, variance decomposition and correction.
"""

from .factors import fit_factor
from .variance import variance_decomposition, corrected_expression, covariances_from_adata

__all__ = [
    "fit_factor",
    "variance_decomposition",
    "corrected_expression",
    "covariances_from_adata",
]
