"""
Pairwise gene association under a linear mixed model.

For a response gene y and a fixed-effect gene x:

    y = mu + beta x + sum_k u_k + e

The random effects (the covariance terms plus noise) are fitted once per
response under the null model (beta = 0); every fixed-effect gene is then
tested with generalized least squares and a 1-df Wald test. Without
covariance terms this reduces to ordinary least squares, so corrected and
uncorrected estimates are directly comparable.
"""

import logging
import numpy as np
import pandas as pd
from dataclasses import dataclass
from scipy import linalg, stats
from statsmodels.stats.multitest import multipletests
from typing import List, Optional, Sequence, Tuple

from .reml import fit_reml, covariance_matrix
from .sharding import parallel_map
from .._utils import check_expression, check_tech_noise, check_gene_indices
from ..covariance.terms import kernel_arrays, kernel_names
from ..errors import ConvergenceError, InputError, NumericalInstabilityError
from ..settings import REMLSettings

logger = logging.getLogger(__name__)


@dataclass
class LMMResult:
    """
    Association statistics, one row per response gene.

    Attributes
    ----------
    response_indices : np.ndarray
        Genes modelled as responses (rows)
    fixed_indices : np.ndarray
        Genes used as fixed effects (columns)
    beta : np.ndarray
        Effect sizes on standardized expression (n_response, n_fixed)
    pv : np.ndarray
        Wald test p-values
    converged : np.ndarray
        False where the null fit failed, the GLS system was singular, or
        the pair is a gene with itself (those entries are NaN)
    corrected : bool
        Whether covariance terms were conditioned on
    term_names : List[str]
        Covariance terms of the model
    """

    response_indices: np.ndarray
    fixed_indices: np.ndarray
    beta: np.ndarray
    pv: np.ndarray
    converged: np.ndarray
    corrected: bool
    term_names: List[str]

    def qvalues(self) -> np.ndarray:
        """Benjamini-Hochberg adjusted p-values over all finite tests."""
        q = np.full(self.pv.shape, np.nan)
        finite = np.isfinite(self.pv)
        if finite.any():
            _, q_finite, _, _ = multipletests(self.pv[finite], method='fdr_bh')
            q[finite] = q_finite
        return q

    def to_frame(self, gene_names: Optional[Sequence[str]] = None) -> pd.DataFrame:
        """Long format: one row per (response, fixed) pair."""
        response = np.repeat(self.response_indices, len(self.fixed_indices))
        fixed = np.tile(self.fixed_indices, len(self.response_indices))
        if gene_names is not None:
            names = np.asarray(gene_names)
            response, fixed = names[response], names[fixed]
        return pd.DataFrame({
            'response': response,
            'fixed': fixed,
            'beta': self.beta.ravel(),
            'pv': self.pv.ravel(),
            'qv': self.qvalues().ravel(),
            'converged': self.converged.ravel(),
        })

    @classmethod
    def merge(cls, results: Sequence["LMMResult"]) -> "LMMResult":
        """Stack results of disjoint response shards, sorted by response gene."""
        results = list(results)
        if not results:
            raise InputError("Nothing to merge")
        first = results[0]
        for r in results[1:]:
            if not np.array_equal(r.fixed_indices, first.fixed_indices) or r.corrected != first.corrected:
                raise InputError("Cannot merge LMM results with different fixed effects or models")

        response = np.concatenate([r.response_indices for r in results])
        if np.unique(response).size != response.size:
            raise InputError("LMM results to merge overlap in response genes")
        order = np.argsort(response, kind="stable")
        return cls(
            response_indices=response[order],
            fixed_indices=first.fixed_indices,
            beta=np.vstack([r.beta for r in results])[order],
            pv=np.vstack([r.pv for r in results])[order],
            converged=np.vstack([r.converged for r in results])[order],
            corrected=first.corrected,
            term_names=list(first.term_names),
        )


def _standardize(Y: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    sd = Y.std(axis=0)
    safe = np.where(sd > 0, sd, 1.0)
    return (Y - Y.mean(axis=0)) / safe, sd


def _test_response(y, t, X_fixed, kernels, settings):
    """
    Null fit for one response and Wald tests for every fixed-effect column.

    Returns beta, pv and a per-pair convergence mask.
    """
    n, n_fixed = X_fixed.shape
    beta = np.full(n_fixed, np.nan)
    pv = np.full(n_fixed, np.nan)
    ok = np.zeros(n_fixed, dtype=bool)

    try:
        null = fit_reml(y, kernels, fixed_noise=t, settings=settings)
    except (ConvergenceError, NumericalInstabilityError) as exc:
        logger.debug(f"Null model failed: {exc}")
        return beta, pv, ok
    if not null.converged:
        return beta, pv, ok

    V = covariance_matrix(null.scales, kernels, n, t, settings.jitter)
    try:
        c = linalg.cho_factor(V, lower=True)
    except linalg.LinAlgError:
        return beta, pv, ok

    ones = np.ones(n)
    Vi_1 = linalg.cho_solve(c, ones)
    Vi_X = linalg.cho_solve(c, X_fixed)

    # 2x2 GLS system [1, x] per fixed-effect column
    a = ones @ Vi_1
    b = X_fixed.T @ Vi_1
    d = np.sum(X_fixed * Vi_X, axis=0)
    e1 = Vi_1 @ y
    e2 = Vi_X.T @ y
    det = a * d - b ** 2

    stable = det > 1e-10 * a * np.maximum(d, 1e-300)
    beta[stable] = (a * e2[stable] - b[stable] * e1) / det[stable]
    var_beta = a / det[stable]
    chi2 = beta[stable] ** 2 / var_beta
    pv[stable] = stats.chi2.sf(chi2, df=1)
    ok[stable] = np.isfinite(beta[stable]) & np.isfinite(pv[stable])
    return beta, pv, ok


def fit_lmm(
    Y,
    tech_noise,
    K_list,
    gene_indices: Optional[Sequence[int]] = None,
    reference: Optional[int] = None,
    fixed_indices: Optional[Sequence[int]] = None,
    settings: Optional[REMLSettings] = None,
    n_jobs: int = 1,
    verbose: bool = False,
) -> LMMResult:
    """
    Test gene-gene association, optionally controlling for covariance terms.

    Parameters
    ----------
    Y : np.ndarray
        Expression (n_cells, n_genes)
    tech_noise : Optional[np.ndarray]
        Technical variance per gene
    K_list : Optional[Sequence[CovarianceMatrix or np.ndarray]]
        Covariance terms to condition on. None or empty fits the
        uncorrected (noise only) model.
    gene_indices : Optional[Sequence[int]]
        Response genes (rows); default all genes
    reference : Optional[int]
        Single fixed-effect gene. Result has one column.
    fixed_indices : Optional[Sequence[int]]
        Fixed-effect genes (columns) when no reference is given; default
        ``gene_indices`` (a gene x gene matrix)
    settings : Optional[REMLSettings]
        Null model optimizer settings
    n_jobs : int
        Response genes fitted concurrently
    verbose : bool
        Show a progress bar

    Returns
    -------
    result : LMMResult
        beta, p-values and convergence per pair

    Examples
    --------
    >>> corrected = fit_lmm(Y, tech_noise, [cc.covariance], gene_indices=genes)
    >>> uncorrected = fit_lmm(Y, tech_noise, None, gene_indices=genes)
    """
    settings = settings if settings is not None else REMLSettings()
    Y = check_expression(Y)
    n_cells, n_genes = Y.shape
    noise = check_tech_noise(tech_noise, n_genes)
    responses = check_gene_indices(gene_indices, n_genes, what="gene indices")
    kernels = kernel_arrays(K_list, n_cells)

    if reference is not None:
        if fixed_indices is not None:
            raise InputError("Pass either reference or fixed_indices, not both")
        fixed = check_gene_indices([reference], n_genes, what="reference gene")
    elif fixed_indices is not None:
        fixed = check_gene_indices(fixed_indices, n_genes, what="fixed-effect genes")
    else:
        fixed = responses

    Y_std, sd = _standardize(Y)
    X_fixed = Y_std[:, fixed]
    constant_fixed = sd[fixed] <= 0

    logger.info(
        f"LMM: {len(responses)} response x {len(fixed)} fixed-effect genes, "
        f"{len(kernels)} covariance terms"
    )

    def run(g):
        if sd[g] <= 0:
            n_fixed = len(fixed)
            return np.full(n_fixed, np.nan), np.full(n_fixed, np.nan), np.zeros(n_fixed, dtype=bool)
        return _test_response(Y_std[:, g], noise[g] / sd[g] ** 2, X_fixed, kernels, settings)

    fits = parallel_map(run, responses, n_jobs, desc="LMM" if verbose else None)

    beta = np.vstack([f[0] for f in fits]).reshape(len(responses), len(fixed))
    pv = np.vstack([f[1] for f in fits]).reshape(len(responses), len(fixed))
    converged = np.vstack([f[2] for f in fits]).reshape(len(responses), len(fixed))

    # Constant fixed-effect genes and self pairs are not tested
    invalid = (responses[:, None] == fixed[None, :]) | constant_fixed[None, :]
    beta[invalid] = np.nan
    pv[invalid] = np.nan
    converged[invalid] = False

    n_failed = int((~converged & ~invalid).sum())
    if n_failed:
        logger.warning(f"{n_failed} gene pairs did not converge")

    return LMMResult(
        response_indices=responses,
        fixed_indices=fixed,
        beta=beta,
        pv=pv,
        converged=converged,
        corrected=len(kernels) > 0,
        term_names=kernel_names(K_list),
    )


def compare_association(
    Y,
    tech_noise,
    K_list,
    gene_indices: Optional[Sequence[int]] = None,
    **kwargs,
) -> Tuple[LMMResult, LMMResult]:
    """
    Fit the same gene pairs with and without the covariance terms.

    Returns
    -------
    corrected, uncorrected : LMMResult
    """
    corrected = fit_lmm(Y, tech_noise, K_list, gene_indices=gene_indices, **kwargs)
    uncorrected = fit_lmm(Y, tech_noise, None, gene_indices=gene_indices, **kwargs)
    return corrected, uncorrected
