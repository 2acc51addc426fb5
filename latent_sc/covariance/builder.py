"""
Covariance builder: latent factor kernels from a gene set.

Fits a linear GPLVM on the expression of a gene set (for example cell
cycle genes) and turns the inferred latent coordinates into a normalized
cell x cell covariance matrix.
"""

import logging
import numpy as np
import torch
from dataclasses import dataclass, field
from sklearn.decomposition import PCA
from typing import Optional, List, Union

from .terms import (
    CovarianceMatrix,
    Standalone,
    ConditionedOn,
    Interaction,
    interaction_kernel,
    normalize_kernel,
)
from .._utils import check_expression, check_tech_noise, check_gene_indices
from ..errors import InputError, DimensionMismatchError, NumericalInstabilityError
from ..inference.model import LinearGPLVM
from ..inference.trainer import GPLVMTrainer
from ..settings import GPLVMSettings

logger = logging.getLogger(__name__)

# Smallest gene set a factor can be fitted on
MIN_GENES = 2


@dataclass
class FactorFit:
    """
    Result of a factor fit.

    Attributes
    ----------
    covariance : CovarianceMatrix
        Normalized factor kernel
    X : np.ndarray
        Latent coordinates (n_cells, k), scaled so that K is proportional to
        X X^T. Columns are ordered by non-increasing ARD weight.
    ard_weights : Optional[np.ndarray]
        Variance explained per latent dimension (only with ARD)
    interaction : Optional[CovarianceMatrix]
        Interaction kernel with the known factor, if requested
    noise_variance : float
        Fitted shared residual variance (standardized units)
    loss_history : List[float]
        Objective after every optimizer step
    """

    covariance: CovarianceMatrix
    X: np.ndarray
    ard_weights: Optional[np.ndarray] = None
    interaction: Optional[CovarianceMatrix] = None
    noise_variance: float = float('nan')
    loss_history: List[float] = field(default_factory=list)

    @property
    def K(self) -> np.ndarray:
        return self.covariance.K

    @property
    def name(self) -> str:
        return self.covariance.name


def _standardize(Y_sub: np.ndarray, noise: np.ndarray, standardize: bool):
    Y_c = Y_sub - Y_sub.mean(axis=0)
    if not standardize:
        return Y_c, noise
    sd = Y_c.std(axis=0)
    if np.any(sd <= 0):
        raise InputError(
            f"{int(np.sum(sd <= 0))} genes in the gene set have constant expression"
        )
    return Y_c / sd, noise / sd ** 2


def _initial_coordinates(
    Y_sub: np.ndarray,
    k: int,
    known: Optional[np.ndarray],
    seed: int,
) -> np.ndarray:
    """PCA start on the subset (residualized on the known factor), padded with noise."""
    n_cells, n_genes = Y_sub.shape
    residual = Y_sub
    if known is not None:
        coef, *_ = np.linalg.lstsq(known, Y_sub, rcond=None)
        residual = Y_sub - known @ coef

    n_components = min(k, n_cells - 1, n_genes)
    scores = PCA(n_components=n_components, random_state=seed).fit_transform(residual)
    # Z Z^T should roughly match Y Y^T / n_genes
    X = scores / np.sqrt(n_genes)

    if n_components < k:
        rng = np.random.default_rng(seed)
        pad = rng.normal(scale=1e-2, size=(n_cells, k - n_components))
        X = np.hstack([X, pad])
    return np.ascontiguousarray(X)


def fit_factor(
    Y,
    tech_noise,
    gene_set,
    k: int = 1,
    use_ard: bool = False,
    known_factor: Optional[Union["FactorFit", np.ndarray]] = None,
    interaction: bool = False,
    name: str = "factor",
    known_name: Optional[str] = None,
    standardize: bool = True,
    settings: Optional[GPLVMSettings] = None,
) -> FactorFit:
    """
    Fit a latent factor kernel from a gene set.

    Parameters
    ----------
    Y : np.ndarray
        Normalized expression (n_cells, n_genes)
    tech_noise : Optional[np.ndarray]
        Technical variance per gene (n_genes,)
    gene_set : Sequence[int] or boolean mask
        Genes the factor is fitted on (at least 2)
    k : int
        Number of latent dimensions. With ``use_ard`` choose k generously
        (10-20) and read the true rank off ``ard_weights``.
    use_ard : bool
        Learn per-dimension relevances under a shrinkage prior
    known_factor : Optional[FactorFit or np.ndarray]
        Previously fitted factor (or its coordinates, n_cells x k0). The new
        factor is fitted on the structure not explained by it.
    interaction : bool
        Also return the interaction kernel between the known and new factor
    name : str
        Name of the resulting covariance term
    known_name : Optional[str]
        Name of the known factor (taken from the FactorFit when given)
    standardize : bool
        Scale every gene in the set to unit variance before fitting
    settings : Optional[GPLVMSettings]
        Optimizer settings

    Returns
    -------
    fit : FactorFit
        Kernel, coordinates, ARD weights and optional interaction kernel

    Examples
    --------
    >>> cc = fit_factor(Y, tech_noise, cell_cycle_genes, k=1, name="cell_cycle")
    >>> cc.K.shape
    (n_cells, n_cells)
    """
    settings = settings if settings is not None else GPLVMSettings()
    Y = check_expression(Y)
    n_cells, n_genes = Y.shape
    noise = check_tech_noise(tech_noise, n_genes)
    genes = check_gene_indices(gene_set, n_genes, min_size=MIN_GENES, what="gene set")

    if k < 1:
        raise InputError(f"Number of latent dimensions must be >= 1, got {k}")
    if interaction and known_factor is None:
        raise InputError("An interaction kernel requires a known factor")

    known = None
    if known_factor is not None:
        if isinstance(known_factor, FactorFit):
            known_name = known_name or known_factor.name
            known = known_factor.X
        else:
            known = np.asarray(known_factor, dtype=float)
        if known.ndim == 1:
            known = known[:, None]
        if known.shape[0] != n_cells:
            raise DimensionMismatchError(
                f"Known factor has {known.shape[0]} cells, expected {n_cells}"
            )
        known_name = known_name or "known"
        if not np.all(np.isfinite(known)):
            raise InputError(f"Known factor '{known_name}' contains NaN or infinite values")
        norm = np.sqrt(np.mean(np.sum(known ** 2, axis=1)))
        if norm <= 0:
            raise InputError(f"Known factor '{known_name}' is all zero")
        known = known / norm
        term = ConditionedOn(parent=known_name, genes=tuple(int(g) for g in genes))
    else:
        term = Standalone(genes=tuple(int(g) for g in genes))

    logger.info(
        f"Fitting factor '{name}': {len(genes)} genes, k={k}, ARD={use_ard}"
        + (f", conditioned on '{known_name}'" if known is not None else "")
    )

    Y_sub, noise_sub = _standardize(Y[:, genes], noise[genes], standardize)
    X_init = _initial_coordinates(Y_sub, k, known, settings.seed)

    dtype = settings.dtype
    model = LinearGPLVM(
        Y=torch.as_tensor(Y_sub, dtype=dtype),
        X_init=torch.as_tensor(X_init, dtype=dtype),
        tech_noise=torch.as_tensor(noise_sub, dtype=dtype),
        use_ard=use_ard,
        known_factor=torch.as_tensor(known, dtype=dtype) if known is not None else None,
        ard_rate=settings.ard_rate,
        min_noise=settings.min_noise,
        init_noise=settings.init_noise,
    )
    trainer = GPLVMTrainer(model, settings)
    history = trainer.train()

    weights = model.ard_weights()
    order = np.argsort(-weights, kind="stable")
    with torch.no_grad():
        Z = model.latent_factor().cpu().numpy()[:, order]

    K = model.kernel()
    if not np.all(np.isfinite(K)) or np.mean(np.diag(K)) <= 0:
        raise NumericalInstabilityError(f"Factor '{name}' collapsed to a zero kernel")
    covariance = CovarianceMatrix(K=normalize_kernel(K), name=name, term=term)

    interaction_cov = None
    if interaction:
        K_int = interaction_kernel(known @ known.T, covariance.K)
        interaction_cov = CovarianceMatrix(
            K=K_int,
            name=f"{name}_interaction",
            term=Interaction(first=known_name, second=name),
        )

    noise_variance = float(model.noise_variance.detach())
    logger.info(f"Factor '{name}' fitted (residual variance {noise_variance:.3f})")

    return FactorFit(
        covariance=covariance,
        X=Z,
        ard_weights=weights[order] if use_ard else None,
        interaction=interaction_cov,
        noise_variance=noise_variance,
        loss_history=history["loss"],
    )
