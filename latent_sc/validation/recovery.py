"""
Recovery metrics against known ground truth.
"""

import numpy as np
from typing import Dict
from scipy.stats import pearsonr


def factor_recovery(K: np.ndarray, factor: np.ndarray) -> float:
    """
    Absolute correlation between the top eigenvector of K and a known factor.
    """
    K = np.asarray(K, dtype=float)
    _, vecs = np.linalg.eigh(0.5 * (K + K.T))
    corr, _ = pearsonr(vecs[:, -1], np.asarray(factor, dtype=float))
    return float(abs(corr))


def kernel_diagnostics(K: np.ndarray) -> Dict[str, float]:
    """
    Properties every fitted covariance matrix should satisfy.

    Returns
    -------
    diagnostics : Dict[str, float]
        'symmetry_error': max |K - K^T|
        'min_eigenvalue': smallest eigenvalue
        'trace_ratio': trace(K) / N
    """
    K = np.asarray(K, dtype=float)
    return {
        'symmetry_error': float(np.max(np.abs(K - K.T))),
        'min_eigenvalue': float(np.linalg.eigvalsh(0.5 * (K + K.T)).min()),
        'trace_ratio': float(np.trace(K) / K.shape[0]),
    }
