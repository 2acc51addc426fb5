"""
Linear-kernel Gaussian process latent variable model.

Each gene column of the (standardized) expression subset is modelled as

    y_g ~ N(0, Z Z^T + (sigma^2 + t_g) I),    Z = X diag(sqrt(alpha))

where X are latent cell coordinates with a standard normal prior,
alpha are per-dimension relevances (ARD) and t_g is the fixed technical
noise of gene g. The model is fitted by maximum a posteriori.
"""

import torch
import torch.nn as nn
import pyro.distributions as dist
import numpy as np
from typing import Optional


class LinearGPLVM(nn.Module):
    """
    MAP linear GPLVM with optional ARD and an optional known factor.

    Parameters
    ----------
    Y : torch.Tensor
        Centered expression subset (n_cells, n_genes)
    X_init : torch.Tensor
        Initial latent coordinates (n_cells, n_latent)
    tech_noise : Optional[torch.Tensor]
        Fixed per-gene noise variance (n_genes,)
    use_ard : bool
        Learn one relevance per latent dimension under a shrinkage prior
    known_factor : Optional[torch.Tensor]
        Coordinates of an already fitted factor (n_cells, n_known). Its
        kernel enters the covariance with a learned scale.
    ard_rate : float
        Rate of the exponential prior on relevances
    min_noise : float
        Lower bound on the shared residual variance
    init_noise : float
        Initial residual variance
    """

    def __init__(
        self,
        Y: torch.Tensor,
        X_init: torch.Tensor,
        tech_noise: Optional[torch.Tensor] = None,
        use_ard: bool = False,
        known_factor: Optional[torch.Tensor] = None,
        ard_rate: float = 1.0,
        min_noise: float = 1e-4,
        init_noise: float = 0.1,
    ):
        super().__init__()
        self.n_cells, self.n_genes = Y.shape
        self.n_latent = X_init.shape[1]
        self.use_ard = use_ard
        self.ard_rate = ard_rate
        self.min_noise = min_noise

        self.register_buffer('Y', Y)
        if tech_noise is None:
            tech_noise = torch.zeros(self.n_genes, dtype=Y.dtype)
        self.register_buffer('tech_noise', tech_noise)

        # Latent coordinates
        self.X = nn.Parameter(X_init.clone().contiguous())

        # Per-dimension relevance, fixed at 1 without ARD
        if use_ard:
            self.log_relevance = nn.Parameter(torch.zeros(self.n_latent, dtype=Y.dtype))
        else:
            self.register_buffer('log_relevance', torch.zeros(self.n_latent, dtype=Y.dtype))

        self.log_noise = nn.Parameter(
            torch.tensor(np.log(max(init_noise - min_noise, 1e-8)), dtype=Y.dtype)
        )

        if known_factor is not None:
            self.register_buffer('X_known', known_factor)
            self.log_known_scale = nn.Parameter(torch.zeros((), dtype=Y.dtype))
        else:
            self.X_known = None

    @property
    def relevance(self) -> torch.Tensor:
        return torch.exp(self.log_relevance)

    @property
    def noise_variance(self) -> torch.Tensor:
        return self.min_noise + torch.exp(self.log_noise)

    @property
    def known_scale(self) -> Optional[torch.Tensor]:
        if self.X_known is None:
            return None
        return torch.exp(self.log_known_scale)

    def latent_factor(self) -> torch.Tensor:
        """Relevance-scaled coordinates Z, so the factor kernel is Z Z^T."""
        return self.X * torch.sqrt(self.relevance)

    def cov_factor(self) -> torch.Tensor:
        """Low-rank part of the per-gene covariance."""
        Z = self.latent_factor()
        if self.X_known is None:
            return Z
        known = self.X_known * torch.sqrt(self.known_scale)
        return torch.cat([known, Z], dim=1)

    def log_likelihood(self) -> torch.Tensor:
        """
        Sum over genes of log N(y_g | 0, F F^T + (sigma^2 + t_g) I).

        The low-rank plus diagonal form keeps every evaluation at
        O(n_genes * n_cells * rank^2).
        """
        cov_diag = (self.noise_variance + self.tech_noise).unsqueeze(-1)
        cov_diag = cov_diag.expand(self.n_genes, self.n_cells)
        loc = torch.zeros(self.n_genes, self.n_cells, dtype=self.Y.dtype)
        likelihood = dist.LowRankMultivariateNormal(
            loc=loc,
            cov_factor=self.cov_factor(),
            cov_diag=cov_diag,
        )
        return likelihood.log_prob(self.Y.T).sum()

    def log_prior(self) -> torch.Tensor:
        """
        Standard normal prior on X; with ARD an exponential prior on alpha.

        The relevance prior is evaluated in alpha space (no log-Jacobian),
        which shrinks unsupported dimensions towards zero.
        """
        lp = dist.Normal(
            torch.zeros((), dtype=self.X.dtype),
            torch.ones((), dtype=self.X.dtype),
        ).log_prob(self.X).sum()
        if self.use_ard:
            rate = torch.tensor(self.ard_rate, dtype=self.X.dtype)
            lp = lp + dist.Exponential(rate).log_prob(self.relevance).sum()
        return lp

    def forward(self) -> torch.Tensor:
        """Negative log joint (the MAP objective)."""
        return -(self.log_likelihood() + self.log_prior())

    def ard_weights(self) -> np.ndarray:
        """
        Variance explained per latent dimension, ``alpha_d * mean(X_d^2)``.
        """
        with torch.no_grad():
            weights = self.relevance * (self.X ** 2).mean(dim=0)
        return weights.cpu().numpy()

    def kernel(self) -> np.ndarray:
        """Unnormalized factor kernel Z Z^T (n_cells, n_cells)."""
        with torch.no_grad():
            Z = self.latent_factor()
            K = Z @ Z.T
        return K.cpu().numpy()
