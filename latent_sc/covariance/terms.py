"""
Covariance matrices over cells and the terms that produced them.

Every kernel handed to the mixed model engine is normalized so that
``trace(K) / N == 1``; variance weights of different terms are then
directly comparable.
"""

import numpy as np
from dataclasses import dataclass
from typing import Sequence, Tuple, Union, List

from ..errors import DimensionMismatchError, NumericalInstabilityError


@dataclass(frozen=True)
class Standalone:
    """Factor fitted on its own gene set."""

    genes: Tuple[int, ...]


@dataclass(frozen=True)
class ConditionedOn:
    """Factor fitted after accounting for a known parent factor."""

    parent: str
    genes: Tuple[int, ...]


@dataclass(frozen=True)
class Interaction:
    """Elementwise product of two factor kernels."""

    first: str
    second: str


CovarianceTerm = Union[Standalone, ConditionedOn, Interaction]


def describe_term(term: CovarianceTerm) -> str:
    """Human readable origin of a covariance term."""
    if isinstance(term, Standalone):
        return f"standalone factor on {len(term.genes)} genes"
    if isinstance(term, ConditionedOn):
        return f"factor on {len(term.genes)} genes conditioned on '{term.parent}'"
    if isinstance(term, Interaction):
        return f"interaction of '{term.first}' and '{term.second}'"
    raise TypeError(f"Unknown covariance term: {term!r}")


def normalize_kernel(K: np.ndarray) -> np.ndarray:
    """
    Symmetrize K and scale it to unit mean diagonal.

    Parameters
    ----------
    K : np.ndarray
        Square cell x cell similarity matrix

    Returns
    -------
    K_norm : np.ndarray
        ``K / mean(diag(K))``
    """
    K = np.asarray(K, dtype=float)
    if K.ndim != 2 or K.shape[0] != K.shape[1]:
        raise DimensionMismatchError(f"Kernel must be square, got shape {K.shape}")
    K = 0.5 * (K + K.T)
    scale = np.mean(np.diag(K))
    if not np.isfinite(scale) or scale <= 0:
        raise NumericalInstabilityError(
            f"Kernel has non-positive mean diagonal ({scale}); cannot normalize"
        )
    return K / scale


def interaction_kernel(K1: np.ndarray, K2: np.ndarray) -> np.ndarray:
    """
    Normalized Hadamard product of two kernels.

    The product of two PSD matrices is PSD (Schur product theorem), and after
    normalization ``trace == N == trace(K1) * trace(K2) / N`` for normalized
    inputs.
    """
    K1 = np.asarray(K1, dtype=float)
    K2 = np.asarray(K2, dtype=float)
    if K1.shape != K2.shape:
        raise DimensionMismatchError(
            f"Cannot combine kernels of shapes {K1.shape} and {K2.shape}"
        )
    return normalize_kernel(normalize_kernel(K1) * normalize_kernel(K2))


@dataclass(frozen=True, eq=False)
class CovarianceMatrix:
    """
    Normalized cell x cell covariance attributed to one latent source.

    Parameters
    ----------
    K : np.ndarray
        Kernel (n_cells, n_cells); stored normalized and read-only
    name : str
        Label used for variance components
    term : CovarianceTerm
        How the kernel was produced
    """

    K: np.ndarray
    name: str
    term: CovarianceTerm

    def __post_init__(self):
        K = normalize_kernel(self.K)
        K.setflags(write=False)
        object.__setattr__(self, "K", K)

    @property
    def n_cells(self) -> int:
        return self.K.shape[0]

    def describe(self) -> str:
        return f"{self.name}: {describe_term(self.term)}"


def kernel_arrays(
    K_list: Union[None, Sequence[Union[CovarianceMatrix, np.ndarray]]],
    n_cells: int,
) -> List[np.ndarray]:
    """Unwrap a K list into plain arrays and check every shape against n_cells."""
    if K_list is None:
        return []
    if isinstance(K_list, (CovarianceMatrix, np.ndarray)):
        K_list = [K_list]
    kernels = []
    for i, K in enumerate(K_list):
        K = K.K if isinstance(K, CovarianceMatrix) else np.asarray(K, dtype=float)
        if K.shape != (n_cells, n_cells):
            raise DimensionMismatchError(
                f"Kernel {i} has shape {K.shape}, expected ({n_cells}, {n_cells})"
            )
        if not np.all(np.isfinite(K)):
            raise NumericalInstabilityError(f"Kernel {i} contains non-finite values")
        kernels.append(K)
    return kernels


def kernel_names(K_list) -> List[str]:
    """Names of the K terms: CovarianceMatrix names or positional defaults."""
    if K_list is None:
        return []
    if isinstance(K_list, (CovarianceMatrix, np.ndarray)):
        K_list = [K_list]
    return [
        K.name if isinstance(K, CovarianceMatrix) else f"K{i}"
        for i, K in enumerate(K_list)
    ]
