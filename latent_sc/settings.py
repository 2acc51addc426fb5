"""
Optimizer settings for the factor fits and the mixed model engine.

All fitting functions accept ``settings=None`` and fall back to the
defaults below. Override single fields with ``dataclasses.replace``.
"""

from dataclasses import dataclass
from typing import Optional

import torch


@dataclass(frozen=True)
class GPLVMSettings:
    """
    Settings for the GPLVM factor fit.

    Parameters
    ----------
    max_steps : int
        Maximum number of outer L-BFGS steps
    lbfgs_iter : int
        Inner iterations per L-BFGS step
    tol : float
        Relative change of the loss between outer steps that counts as converged
    ard_rate : float
        Rate of the exponential prior on ARD relevances
    min_noise : float
        Lower bound on the learned residual variance
    init_noise : float
        Starting residual variance (in units of standardized expression)
    seed : int
        Seed for the random part of the initialization
    dtype : torch.dtype
        Floating point type used during optimization
    verbose : bool
        Show a progress bar over optimizer steps
    """

    max_steps: int = 200
    lbfgs_iter: int = 20
    tol: float = 1e-6
    ard_rate: float = 1.0
    min_noise: float = 1e-4
    init_noise: float = 0.1
    seed: int = 0
    dtype: torch.dtype = torch.float64
    verbose: bool = False


@dataclass(frozen=True)
class REMLSettings:
    """
    Settings for per-gene REML variance component fits.

    Parameters
    ----------
    max_iter : int
        L-BFGS-B iteration cap per start
    tol : float
        Relative tolerance on the objective (``ftol`` of L-BFGS-B)
    gtol : float
        Projected gradient tolerance
    n_restarts : int
        Extra random starts tried when the first start fails
    jitter : float
        Constant added to the covariance diagonal
    min_scale, max_scale : float
        Box bounds on every variance scale
    timeout : Optional[float]
        Wall-clock seconds allowed per gene (None = unlimited)
    seed : int
        Seed for restart initializations
    """

    max_iter: int = 100
    tol: float = 1e-6
    gtol: float = 1e-5
    n_restarts: int = 3
    jitter: float = 1e-8
    min_scale: float = 1e-8
    max_scale: float = 1e4
    timeout: Optional[float] = None
    seed: int = 0
