"""
Input validation shared by the fitting routines.
"""

import numpy as np
from typing import Optional, Sequence

from .errors import InputError, DimensionMismatchError


def check_expression(Y) -> np.ndarray:
    """Return Y as a finite 2-D float array (cells x genes)."""
    Y = np.asarray(Y, dtype=float)
    if Y.ndim != 2:
        raise DimensionMismatchError(f"Expression matrix must be 2-D, got shape {Y.shape}")
    if Y.shape[0] < 2 or Y.shape[1] < 1:
        raise InputError(f"Expression matrix too small: {Y.shape}")
    if not np.all(np.isfinite(Y)):
        raise InputError("Expression matrix contains NaN or infinite values")
    return Y


def check_tech_noise(tech_noise, n_genes: int) -> np.ndarray:
    """Validate the per-gene technical variance (None means no technical noise)."""
    if tech_noise is None:
        return np.zeros(n_genes)
    noise = np.asarray(tech_noise, dtype=float).ravel()
    if noise.size != n_genes:
        raise DimensionMismatchError(
            f"Technical noise has {noise.size} entries, expected one per gene ({n_genes})"
        )
    if not np.all(np.isfinite(noise)):
        raise InputError("Technical noise contains NaN or infinite values")
    if np.any(noise < 0):
        raise InputError("Technical noise must be non-negative")
    return noise


def check_gene_indices(
    indices: Optional[Sequence[int]],
    n_genes: int,
    min_size: int = 1,
    what: str = "gene set",
) -> np.ndarray:
    """Validate a gene index list; None selects every gene."""
    if indices is None:
        return np.arange(n_genes)
    idx = np.asarray(indices)
    if idx.dtype == bool:
        if idx.size != n_genes:
            raise DimensionMismatchError(
                f"Boolean {what} has length {idx.size}, expected {n_genes}"
            )
        idx = np.flatnonzero(idx)
    idx = idx.ravel()
    if idx.size > 0 and not np.issubdtype(idx.dtype, np.integer):
        raise InputError(f"{what} must contain integer gene indices")
    idx = idx.astype(int)
    if idx.size < min_size:
        raise InputError(f"{what} has {idx.size} genes, at least {min_size} required")
    if np.any(idx < 0) or np.any(idx >= n_genes):
        raise InputError(f"{what} contains indices outside [0, {n_genes})")
    if np.unique(idx).size != idx.size:
        raise InputError(f"{what} contains duplicate indices")
    return idx
