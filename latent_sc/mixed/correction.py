"""
Confounder-corrected expression.

Removes the best linear unbiased predictor (BLUP) of the selected
covariance terms from each gene, keeping the noise part of the signal.
"""

import logging
import numpy as np
import pandas as pd
from dataclasses import dataclass
from scipy import linalg
from typing import Optional, Sequence

from .decomposition import VarianceDecomposition
from .._utils import check_expression
from ..covariance.terms import kernel_arrays
from ..errors import DimensionMismatchError, InputError

logger = logging.getLogger(__name__)

# Added to the diagonal of the weighted covariance before solving
JITTER = 1e-8


@dataclass
class CorrectedExpression:
    """
    Expression with covariance-term contributions removed.

    Only genes with a converged decomposition are present. ``values``
    columns follow ``gene_indices``; genes that were requested but could not
    be corrected are listed in ``excluded``.
    """

    values: np.ndarray
    gene_indices: np.ndarray
    excluded: np.ndarray

    def to_frame(self, gene_names: Optional[Sequence[str]] = None) -> pd.DataFrame:
        columns = self.gene_indices if gene_names is None else np.asarray(gene_names)[self.gene_indices]
        return pd.DataFrame(self.values, columns=columns)


def blup_contributions(
    y: np.ndarray,
    weights: np.ndarray,
    kernels: Sequence[np.ndarray],
) -> np.ndarray:
    """
    Posterior mean of every K term for one gene.

    With ``V = sum_k w_k K_k + (w_tech + w_bio) I`` and the GLS mean ``mu``,
    term k contributes ``w_k K_k V^-1 (y - mu)``. The result is invariant to
    a common rescaling of the weights.

    Returns
    -------
    contributions : np.ndarray
        (n_kernels, n_cells)
    """
    n = y.shape[0]
    w_k = weights[:len(kernels)]
    w_noise = weights[len(kernels):].sum()

    V = np.eye(n) * (w_noise + JITTER)
    for w, K in zip(w_k, kernels):
        V = V + w * K

    c = linalg.cho_factor(V, lower=True)
    ones = np.ones(n)
    Vi_1 = linalg.cho_solve(c, ones)
    mu = (Vi_1 @ y) / (Vi_1 @ ones)
    alpha = linalg.cho_solve(c, y - mu)
    return np.array([w * (K @ alpha) for w, K in zip(w_k, kernels)]).reshape(len(kernels), n)


def corrected_expression(
    Y,
    decomposition: VarianceDecomposition,
    K_list,
    terms: Optional[Sequence[int]] = None,
) -> CorrectedExpression:
    """
    Subtract the fitted contribution of covariance terms from each gene.

    Parameters
    ----------
    Y : np.ndarray
        Expression (n_cells, n_genes) the decomposition was fitted on
    decomposition : VarianceDecomposition
        Per-gene variance components
    K_list : Sequence[CovarianceMatrix or np.ndarray]
        The same K terms, in the same order, as used for the decomposition
    terms : Optional[Sequence[int]]
        Positions in K_list of the terms to remove (default: all)

    Returns
    -------
    corrected : CorrectedExpression
        Corrected values for converged genes. Non-converged genes are
        excluded from the output (and listed in ``excluded``), never imputed.
    """
    Y = check_expression(Y)
    n_cells, n_genes = Y.shape
    kernels = kernel_arrays(K_list, n_cells)
    if len(kernels) != decomposition.n_kernels:
        raise DimensionMismatchError(
            f"Decomposition has {decomposition.n_kernels} covariance terms, "
            f"got {len(kernels)} kernels"
        )
    if np.any(decomposition.gene_indices >= n_genes):
        raise DimensionMismatchError("Decomposition refers to genes outside the expression matrix")

    remove = np.arange(len(kernels)) if terms is None else np.asarray(terms, dtype=int)
    if np.any(remove < 0) or np.any(remove >= len(kernels)):
        raise InputError(f"Terms to remove must index K_list (0..{len(kernels) - 1})")

    kept = []
    columns = []
    excluded = list(decomposition.gene_indices[~decomposition.converged])
    for gene, weights, ok in zip(
        decomposition.gene_indices, decomposition.weights, decomposition.converged
    ):
        if not ok:
            continue
        y = Y[:, gene]
        try:
            contributions = blup_contributions(y, weights, kernels)
        except linalg.LinAlgError:
            logger.warning(f"Gene {gene}: weighted covariance is singular, excluded")
            excluded.append(gene)
            continue
        columns.append(y - contributions[remove].sum(axis=0))
        kept.append(gene)

    if excluded:
        logger.warning(f"{len(excluded)} genes without a usable decomposition were excluded")

    values = np.column_stack(columns) if columns else np.empty((n_cells, 0))
    return CorrectedExpression(
        values=values,
        gene_indices=np.asarray(kept, dtype=int),
        excluded=np.sort(np.asarray(excluded, dtype=int)),
    )
