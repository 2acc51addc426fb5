"""
Restricted maximum likelihood for single-response linear mixed models.

    y = X b + sum_k u_k + e,   u_k ~ N(0, theta_k K_k),   e ~ N(0, (theta_e + t) I)

with fixed effects X, kernels K_k, a fitted residual scale theta_e and a
fixed noise offset t (the technical noise of the gene). Scales are fitted
in log space with L-BFGS-B using the analytic REML gradient.
"""

import time
import logging
import numpy as np
from dataclasses import dataclass
from scipy import linalg
from scipy.optimize import minimize
from typing import Optional, Sequence

from ..errors import FitTimeout, NumericalInstabilityError
from ..settings import REMLSettings

logger = logging.getLogger(__name__)

LOG_2PI = np.log(2 * np.pi)


@dataclass
class REMLFit:
    """
    Fitted variance components of one response.

    Attributes
    ----------
    scales : np.ndarray
        ``[theta_1, ..., theta_m, theta_e]``
    fixed_noise : float
        Noise offset that was held fixed
    beta : np.ndarray
        GLS estimate of the fixed effects
    log_likelihood : float
        Restricted log-likelihood at the optimum
    converged : bool
        Optimizer success within tolerance and a non-degenerate solution
    n_iter : int
        Optimizer iterations of the accepted start
    message : str
        Optimizer message or failure reason
    """

    scales: np.ndarray
    fixed_noise: float
    beta: np.ndarray
    log_likelihood: float
    converged: bool
    n_iter: int
    message: str


def covariance_matrix(
    scales: np.ndarray,
    kernels: Sequence[np.ndarray],
    n_cells: int,
    fixed_noise: float = 0.0,
    jitter: float = 0.0,
) -> np.ndarray:
    """Assemble ``V = sum_k theta_k K_k + (theta_e + t + jitter) I``."""
    V = np.eye(n_cells) * (scales[-1] + fixed_noise + jitter)
    for s, K in zip(scales[:-1], kernels):
        V = V + s * K
    return V


def _cholesky(V: np.ndarray):
    try:
        return linalg.cho_factor(V, lower=True, check_finite=False)
    except linalg.LinAlgError as exc:
        raise NumericalInstabilityError(f"Covariance is not positive definite: {exc}") from exc


class _REMLObjective:
    """Negative restricted log-likelihood and its gradient in log-scale space."""

    def __init__(self, y, X, kernels, fixed_noise, jitter, deadline=None):
        self.y = y
        self.X = X
        self.kernels = list(kernels)
        self.fixed_noise = fixed_noise
        self.jitter = jitter
        self.deadline = deadline
        self.n = y.shape[0]
        self.identity = np.eye(self.n)

    def projection(self, scales):
        """Return (P, logdet V, logdet X^T V^-1 X, V^-1 X, A factor)."""
        V = covariance_matrix(scales, self.kernels, self.n, self.fixed_noise, self.jitter)
        c = _cholesky(V)
        Vi = linalg.cho_solve(c, self.identity, check_finite=False)
        ViX = Vi @ self.X
        cA = _cholesky(self.X.T @ ViX)
        P = Vi - ViX @ linalg.cho_solve(cA, ViX.T, check_finite=False)
        logdet_V = 2.0 * np.sum(np.log(np.diag(c[0])))
        logdet_A = 2.0 * np.sum(np.log(np.diag(cA[0])))
        return P, logdet_V, logdet_A, ViX, cA

    def __call__(self, log_scales):
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise FitTimeout("REML fit exceeded its time budget")

        scales = np.exp(log_scales)
        P, logdet_V, logdet_A, _, _ = self.projection(scales)
        Py = P @ self.y
        n_free = self.n - self.X.shape[1]
        nll = 0.5 * (logdet_V + logdet_A + self.y @ Py + n_free * LOG_2PI)
        if not np.isfinite(nll):
            raise NumericalInstabilityError("Non-finite REML objective")

        grad = np.empty_like(scales)
        for i, K in enumerate(self.kernels):
            grad[i] = 0.5 * (np.sum(P * K) - Py @ (K @ Py))
        grad[-1] = 0.5 * (np.trace(P) - Py @ Py)
        return nll, grad * scales


def fit_reml(
    y: np.ndarray,
    kernels: Sequence[np.ndarray],
    fixed_noise: float = 0.0,
    covariates: Optional[np.ndarray] = None,
    settings: Optional[REMLSettings] = None,
) -> REMLFit:
    """
    Fit variance scales of one response by REML.

    Parameters
    ----------
    y : np.ndarray
        Response (n_cells,)
    kernels : Sequence[np.ndarray]
        Random effect kernels (n_cells, n_cells); may be empty
    fixed_noise : float
        Noise variance held fixed (technical noise)
    covariates : Optional[np.ndarray]
        Fixed effect design (n_cells, p); defaults to an intercept
    settings : Optional[REMLSettings]
        Optimizer settings

    Returns
    -------
    fit : REMLFit
        Scales, GLS fixed effects and convergence information

    Raises
    ------
    NumericalInstabilityError
        Constant response or no start produced a positive definite covariance
    FitTimeout
        ``settings.timeout`` exceeded
    """
    settings = settings if settings is not None else REMLSettings()
    y = np.asarray(y, dtype=float)
    n = y.shape[0]
    X = np.ones((n, 1)) if covariates is None else np.asarray(covariates, dtype=float).reshape(n, -1)

    var = float(np.var(y))
    if var <= 0:
        raise NumericalInstabilityError("Response has zero variance")

    n_scales = len(kernels) + 1
    lower = np.log(settings.min_scale * var)
    upper = np.log(settings.max_scale * var)
    bounds = [(lower, upper)] * n_scales

    deadline = None
    if settings.timeout is not None:
        deadline = time.monotonic() + settings.timeout
    objective = _REMLObjective(y, X, kernels, fixed_noise, settings.jitter, deadline)

    rng = np.random.default_rng(settings.seed)
    starts = [np.full(n_scales, np.log(var / n_scales))]
    for _ in range(settings.n_restarts):
        starts.append(np.log(var * rng.dirichlet(np.ones(n_scales))))

    best = None
    last_error = None
    for x0 in starts:
        x0 = np.clip(x0, lower, upper)
        try:
            res = minimize(
                objective,
                x0,
                jac=True,
                method="L-BFGS-B",
                bounds=bounds,
                options={"maxiter": settings.max_iter, "ftol": settings.tol, "gtol": settings.gtol},
            )
        except NumericalInstabilityError as exc:
            last_error = exc
            continue

        if best is None or (res.success and not best.success) or (
            res.success == best.success and res.fun < best.fun
        ):
            best = res
        if res.success:
            break

    if best is None:
        raise last_error

    scales = np.exp(best.x)
    P, logdet_V, logdet_A, ViX, cA = objective.projection(scales)
    beta = linalg.cho_solve(cA, ViX.T @ y, check_finite=False)

    converged = bool(best.success)
    message = str(best.message)
    if scales.sum() + fixed_noise <= 1e-6 * var:
        converged = False
        message = "degenerate solution: all variance scales at zero"

    return REMLFit(
        scales=scales,
        fixed_noise=fixed_noise,
        beta=beta,
        log_likelihood=-float(best.fun),
        converged=converged,
        n_iter=int(best.nit),
        message=message,
    )
