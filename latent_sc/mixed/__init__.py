"""
Linear mixed model engine: variance decomposition, expression correction
and pairwise association.

All routines are pure functions of (Y, technical noise, K list, gene
indices). Gene index sets can be split into shards, fitted independently
and merged.
"""

from .reml import REMLFit, fit_reml
from .decomposition import (
    TECHNICAL_NOISE,
    BIOLOGICAL_NOISE,
    VarianceComponentResult,
    VarianceDecomposition,
    variance_decomposition,
)
from .correction import CorrectedExpression, corrected_expression, blup_contributions
from .association import LMMResult, fit_lmm, compare_association
from .sharding import partition_indices, parallel_map, run_sharded

__all__ = [
    "TECHNICAL_NOISE",
    "BIOLOGICAL_NOISE",
    "REMLFit",
    "fit_reml",
    "VarianceComponentResult",
    "VarianceDecomposition",
    "variance_decomposition",
    "CorrectedExpression",
    "corrected_expression",
    "blup_contributions",
    "LMMResult",
    "fit_lmm",
    "compare_association",
    "partition_indices",
    "parallel_map",
    "run_sharded",
]
