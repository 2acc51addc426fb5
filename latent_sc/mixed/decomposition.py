"""
Per-gene variance decomposition.

For every gene the expression is explained by a mean, one random effect
per covariance term, technical noise (fixed) and biological noise (fitted).
The fitted scales are reported as fractions of the total variance.
"""

import logging
import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .reml import fit_reml
from .sharding import parallel_map
from .._utils import check_expression, check_tech_noise, check_gene_indices
from ..covariance.terms import kernel_arrays, kernel_names
from ..errors import ConvergenceError, InputError, NumericalInstabilityError
from ..settings import REMLSettings

logger = logging.getLogger(__name__)

TECHNICAL_NOISE = "technical_noise"
BIOLOGICAL_NOISE = "biological_noise"


@dataclass(frozen=True)
class VarianceComponentResult:
    """
    Variance components of a single gene.

    Attributes
    ----------
    gene_index : int
        Column of the expression matrix
    weights : np.ndarray
        Fractions per term (K terms, technical noise, biological noise);
        NaN when the fit failed
    converged : bool
        Whether the fit can be used downstream
    term_names : tuple
        Labels of ``weights``
    message : str
        Optimizer message or failure reason
    """

    gene_index: int
    weights: np.ndarray
    converged: bool
    term_names: tuple
    message: str = ""


@dataclass
class VarianceDecomposition:
    """
    Variance components for a batch of genes.

    Rows follow ``gene_indices``. Columns of ``weights`` are the K terms in
    the order they were passed, then technical noise, then biological noise.
    Rows of converged genes sum to 1; failed genes hold NaN and must be left
    out of any aggregate (``mean_contributions`` does this).
    """

    gene_indices: np.ndarray
    weights: np.ndarray
    converged: np.ndarray
    term_names: List[str]
    log_likelihood: np.ndarray
    messages: List[str]

    def __len__(self) -> int:
        return len(self.gene_indices)

    @property
    def n_kernels(self) -> int:
        """Number of K terms (excluding the two noise terms)."""
        return len(self.term_names) - 2

    def result(self, gene_index: int) -> VarianceComponentResult:
        """Components of one gene, looked up by its column index."""
        rows = np.flatnonzero(self.gene_indices == gene_index)
        if rows.size == 0:
            raise KeyError(f"Gene {gene_index} is not part of this decomposition")
        row = rows[0]
        return VarianceComponentResult(
            gene_index=int(gene_index),
            weights=self.weights[row].copy(),
            converged=bool(self.converged[row]),
            term_names=tuple(self.term_names),
            message=self.messages[row],
        )

    def mean_contributions(self) -> pd.Series:
        """Average fraction per term over converged genes only."""
        if not np.any(self.converged):
            raise ConvergenceError("No gene converged; mean contributions are undefined")
        return pd.Series(
            self.weights[self.converged].mean(axis=0),
            index=self.term_names,
        )

    def to_frame(self, gene_names: Optional[Sequence[str]] = None) -> pd.DataFrame:
        """One row per gene, one column per term plus convergence."""
        df = pd.DataFrame(self.weights, columns=self.term_names, index=self.gene_indices)
        df['converged'] = self.converged
        df['log_likelihood'] = self.log_likelihood
        if gene_names is not None:
            df.index = np.asarray(gene_names)[self.gene_indices]
        return df

    @classmethod
    def merge(cls, results: Sequence["VarianceDecomposition"]) -> "VarianceDecomposition":
        """
        Combine decompositions of disjoint gene sets.

        Rows are sorted by gene index, so the outcome does not depend on how
        the genes were sharded or in which order shards finished.
        """
        results = list(results)
        if not results:
            raise InputError("Nothing to merge")
        names = results[0].term_names
        for r in results[1:]:
            if list(r.term_names) != list(names):
                raise InputError(
                    f"Cannot merge decompositions with terms {r.term_names} and {names}"
                )

        genes = np.concatenate([r.gene_indices for r in results])
        if np.unique(genes).size != genes.size:
            raise InputError("Decompositions to merge overlap in gene indices")

        order = np.argsort(genes, kind="stable")
        messages = [m for r in results for m in r.messages]
        return cls(
            gene_indices=genes[order],
            weights=np.vstack([r.weights for r in results])[order],
            converged=np.concatenate([r.converged for r in results])[order],
            term_names=list(names),
            log_likelihood=np.concatenate([r.log_likelihood for r in results])[order],
            messages=[messages[i] for i in order],
        )


def _decompose_gene(y, tech_noise, kernels, settings):
    """Fit one gene; failures are returned, never raised."""
    n_terms = len(kernels) + 2
    sd = y.std()
    if sd <= 0:
        return np.full(n_terms, np.nan), False, np.nan, "constant expression"

    y_std = (y - y.mean()) / sd
    t = tech_noise / sd ** 2
    try:
        fit = fit_reml(y_std, kernels, fixed_noise=t, settings=settings)
    except (ConvergenceError, NumericalInstabilityError) as exc:
        return np.full(n_terms, np.nan), False, np.nan, f"{type(exc).__name__}: {exc}"

    if not fit.converged:
        return np.full(n_terms, np.nan), False, fit.log_likelihood, fit.message

    raw = np.concatenate([fit.scales[:-1], [t], fit.scales[-1:]])
    return raw / raw.sum(), True, fit.log_likelihood, fit.message


def variance_decomposition(
    Y,
    tech_noise,
    K_list,
    gene_indices: Optional[Sequence[int]] = None,
    settings: Optional[REMLSettings] = None,
    n_jobs: int = 1,
    verbose: bool = False,
) -> VarianceDecomposition:
    """
    Decompose the variance of each gene into covariance terms and noise.

    Parameters
    ----------
    Y : np.ndarray
        Normalized expression (n_cells, n_genes)
    tech_noise : Optional[np.ndarray]
        Technical variance per gene (n_genes,); held fixed in every fit
    K_list : Sequence[CovarianceMatrix or np.ndarray]
        Covariance terms (n_cells, n_cells); may be empty
    gene_indices : Optional[Sequence[int]]
        Genes to fit (default: all). Disjoint index sets can be fitted in
        separate runs and combined with ``VarianceDecomposition.merge``.
    settings : Optional[REMLSettings]
        Optimizer settings
    n_jobs : int
        Genes fitted concurrently (threads)
    verbose : bool
        Show a progress bar

    Returns
    -------
    result : VarianceDecomposition
        Fractions per gene and term plus convergence flags

    Examples
    --------
    >>> vd = variance_decomposition(Y, tech_noise, [cc.covariance], gene_indices=range(100))
    >>> vd.mean_contributions()
    """
    settings = settings if settings is not None else REMLSettings()
    Y = check_expression(Y)
    n_cells, n_genes = Y.shape
    noise = check_tech_noise(tech_noise, n_genes)
    genes = check_gene_indices(gene_indices, n_genes, what="gene indices")
    kernels = kernel_arrays(K_list, n_cells)
    names = kernel_names(K_list) + [TECHNICAL_NOISE, BIOLOGICAL_NOISE]

    logger.info(f"Variance decomposition of {len(genes)} genes with {len(kernels)} covariance terms")

    fits = parallel_map(
        lambda g: _decompose_gene(Y[:, g], noise[g], kernels, settings),
        genes,
        n_jobs,
        desc="Variance decomposition" if verbose else None,
    )

    result = VarianceDecomposition(
        gene_indices=genes,
        weights=np.array([f[0] for f in fits]).reshape(len(genes), len(names)),
        converged=np.array([f[1] for f in fits], dtype=bool),
        term_names=names,
        log_likelihood=np.array([f[2] for f in fits], dtype=float),
        messages=[f[3] for f in fits],
    )

    n_failed = int((~result.converged).sum())
    if n_failed:
        logger.warning(f"{n_failed} / {len(genes)} genes did not converge")
    return result
