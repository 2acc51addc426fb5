"""
Session object holding the inputs of an analysis.

The session owns the expression matrix, the technical noise, named gene
sets and the fitted covariance matrices. Per-gene results are never stored
here; every analysis call returns a new result object computed by the pure
functions in ``latent_sc.mixed``.
"""

import logging
import numpy as np
from anndata import AnnData
from typing import Dict, List, Optional, Sequence, Union

from ._utils import check_expression, check_tech_noise, check_gene_indices
from .covariance.builder import FactorFit, fit_factor, MIN_GENES
from .covariance.terms import CovarianceMatrix
from .errors import InputError, DimensionMismatchError
from .mixed.association import LMMResult, fit_lmm, compare_association
from .mixed.correction import CorrectedExpression, corrected_expression
from .mixed.decomposition import VarianceDecomposition, variance_decomposition
from .settings import GPLVMSettings, REMLSettings

logger = logging.getLogger(__name__)

GeneSpec = Union[str, Sequence[int], Sequence[str], np.ndarray]


class LatentSession:
    """
    Expression data plus the covariance terms fitted on it.

    Parameters
    ----------
    Y : np.ndarray
        Normalized log expression (n_cells, n_genes)
    tech_noise : Optional[np.ndarray]
        Technical variance per gene (n_genes,)
    gene_names : Optional[Sequence[str]]
        Gene labels, used to resolve gene sets given by name

    Examples
    --------
    >>> session = LatentSession(Y, tech_noise, gene_names=names)
    >>> session.add_gene_set("cell_cycle", cc_genes)
    >>> session.fit_factor("cell_cycle", "cell_cycle", k=1)
    >>> vd = session.variance_decomposition(["cell_cycle"])
    """

    def __init__(
        self,
        Y,
        tech_noise=None,
        gene_names: Optional[Sequence[str]] = None,
    ):
        Y = check_expression(Y).copy()
        Y.setflags(write=False)
        noise = check_tech_noise(tech_noise, Y.shape[1]).copy()
        noise.setflags(write=False)

        self.Y = Y
        self.tech_noise = noise
        self.gene_names = None
        if gene_names is not None:
            names = np.asarray(gene_names).astype(str)
            if names.size != Y.shape[1]:
                raise DimensionMismatchError(
                    f"{names.size} gene names for {Y.shape[1]} genes"
                )
            self.gene_names = names

        self._gene_sets: Dict[str, np.ndarray] = {}
        self._covariances: Dict[str, CovarianceMatrix] = {}
        self._factors: Dict[str, FactorFit] = {}

        logger.info(f"Session: {self.n_cells} cells × {self.n_genes} genes")

    @classmethod
    def from_anndata(
        cls,
        adata: AnnData,
        layer: Optional[str] = None,
        tech_noise_key: Optional[str] = 'tech_noise',
    ) -> "LatentSession":
        """
        Build a session from an AnnData object.

        Parameters
        ----------
        adata : AnnData
            Normalized data
        layer : Optional[str]
            Layer with normalized expression (None = .X)
        tech_noise_key : Optional[str]
            Column of .var with technical noise; ignored if absent
        """
        X = adata.X if layer is None else adata.layers[layer]
        if hasattr(X, 'toarray'):
            X = X.toarray()

        tech_noise = None
        if tech_noise_key is not None and tech_noise_key in adata.var.columns:
            tech_noise = adata.var[tech_noise_key].to_numpy()

        return cls(np.asarray(X), tech_noise, gene_names=adata.var_names)

    @property
    def n_cells(self) -> int:
        return self.Y.shape[0]

    @property
    def n_genes(self) -> int:
        return self.Y.shape[1]

    # ----- gene sets -----

    def resolve_genes(self, genes: GeneSpec, min_size: int = 1) -> np.ndarray:
        """
        Turn a gene set name, gene names, a boolean mask or indices into indices.
        """
        if isinstance(genes, str):
            if genes not in self._gene_sets:
                raise InputError(f"Unknown gene set '{genes}'")
            return self._gene_sets[genes]

        arr = np.asarray(genes)
        if arr.dtype.kind in ('U', 'S', 'O'):
            if self.gene_names is None:
                raise InputError("Gene names were not provided to the session")
            lookup = {name: i for i, name in enumerate(self.gene_names)}
            missing = [g for g in arr if str(g) not in lookup]
            if missing:
                raise InputError(f"Unknown genes: {missing[:5]}")
            arr = np.array([lookup[str(g)] for g in arr], dtype=int)

        return check_gene_indices(arr, self.n_genes, min_size=min_size)

    def add_gene_set(self, name: str, genes: GeneSpec) -> np.ndarray:
        """Register a named gene set and return its indices."""
        indices = self.resolve_genes(genes)
        self._gene_sets[name] = indices
        logger.info(f"Gene set '{name}': {len(indices)} genes")
        return indices

    def gene_set(self, name: str) -> np.ndarray:
        return self.resolve_genes(name)

    # ----- covariance terms -----

    def fit_factor(
        self,
        name: str,
        genes: GeneSpec,
        k: int = 1,
        use_ard: bool = False,
        known: Optional[str] = None,
        interaction: bool = False,
        settings: Optional[GPLVMSettings] = None,
    ) -> FactorFit:
        """
        Fit a latent factor on a gene set and register its covariance.

        Parameters
        ----------
        name : str
            Name of the new covariance term
        genes : GeneSpec
            Gene set name or genes to fit on
        k : int
            Latent dimensions
        use_ard : bool
            Fit with automatic relevance determination
        known : Optional[str]
            Name of a fitted factor to condition on
        interaction : bool
            Also register ``<name>_interaction`` (requires ``known``)
        settings : Optional[GPLVMSettings]
            Optimizer settings
        """
        indices = self.resolve_genes(genes, min_size=MIN_GENES)
        known_fit = self.factor(known) if known is not None else None

        fit = fit_factor(
            self.Y,
            self.tech_noise,
            indices,
            k=k,
            use_ard=use_ard,
            known_factor=known_fit,
            interaction=interaction,
            name=name,
            settings=settings,
        )
        self.add_factor(fit)
        return fit

    def add_factor(self, fit: FactorFit) -> None:
        """Register a factor fit (and its interaction kernel, if any)."""
        self.add_covariance(fit.covariance)
        if fit.interaction is not None:
            self.add_covariance(fit.interaction)
        self._factors[fit.name] = fit

    def add_covariance(self, covariance: CovarianceMatrix) -> None:
        """Register an externally built covariance term."""
        if covariance.n_cells != self.n_cells:
            raise DimensionMismatchError(
                f"Covariance '{covariance.name}' has {covariance.n_cells} cells, "
                f"session has {self.n_cells}"
            )
        if covariance.name in self._covariances:
            logger.info(f"Replacing covariance '{covariance.name}'")
        self._covariances[covariance.name] = covariance

    def factor(self, name: str) -> FactorFit:
        if name not in self._factors:
            raise InputError(f"Factor '{name}' has not been fitted")
        return self._factors[name]

    def covariance(self, name: str) -> CovarianceMatrix:
        if name not in self._covariances:
            raise InputError(f"Covariance '{name}' has not been fitted")
        return self._covariances[name]

    def covariances(self, names: Optional[Sequence[str]] = None) -> List[CovarianceMatrix]:
        """Covariance terms by name (default: every registered term)."""
        if names is None:
            return list(self._covariances.values())
        if isinstance(names, str):
            names = [names]
        return [self.covariance(n) for n in names]

    @property
    def covariance_names(self) -> List[str]:
        return list(self._covariances)

    # ----- analyses -----

    def variance_decomposition(
        self,
        terms: Optional[Sequence[str]] = None,
        genes: Optional[GeneSpec] = None,
        settings: Optional[REMLSettings] = None,
        n_jobs: int = 1,
        verbose: bool = False,
    ) -> VarianceDecomposition:
        """Decompose gene variance into the named covariance terms and noise."""
        if terms is None and not self._covariances:
            raise InputError("No covariance terms fitted yet; call fit_factor first")
        K_list = self.covariances(terms)
        indices = None if genes is None else self.resolve_genes(genes)
        return variance_decomposition(
            self.Y, self.tech_noise, K_list, indices,
            settings=settings, n_jobs=n_jobs, verbose=verbose,
        )

    def corrected_expression(
        self,
        decomposition: VarianceDecomposition,
        remove: Optional[Sequence[str]] = None,
    ) -> CorrectedExpression:
        """
        Remove covariance-term contributions using a decomposition.

        The decomposition's K terms are looked up by name; ``remove`` selects
        which of them to subtract (default: all).
        """
        K_list = self.covariances(decomposition.term_names[:decomposition.n_kernels])
        names = [c.name for c in K_list]
        terms = None
        if remove is not None:
            missing = [r for r in remove if r not in names]
            if missing:
                raise InputError(f"Terms {missing} are not part of the decomposition")
            terms = [names.index(r) for r in remove]
        return corrected_expression(self.Y, decomposition, K_list, terms=terms)

    def fit_lmm(
        self,
        terms: Optional[Sequence[str]] = None,
        genes: Optional[GeneSpec] = None,
        reference: Optional[Union[int, str]] = None,
        fixed: Optional[GeneSpec] = None,
        settings: Optional[REMLSettings] = None,
        n_jobs: int = 1,
    ) -> LMMResult:
        """
        Pairwise association; ``terms=None`` fits the uncorrected model.
        """
        K_list = self.covariances(terms) if terms is not None else None
        return fit_lmm(
            self.Y,
            self.tech_noise,
            K_list,
            gene_indices=None if genes is None else self.resolve_genes(genes),
            reference=self._reference_index(reference),
            fixed_indices=None if fixed is None else self.resolve_genes(fixed),
            settings=settings,
            n_jobs=n_jobs,
        )

    def compare_association(
        self,
        terms: Sequence[str],
        genes: Optional[GeneSpec] = None,
        settings: Optional[REMLSettings] = None,
    ):
        """Corrected and uncorrected association on the same gene pairs."""
        return compare_association(
            self.Y,
            self.tech_noise,
            self.covariances(terms),
            gene_indices=None if genes is None else self.resolve_genes(genes),
            settings=settings,
        )

    def _reference_index(self, reference: Optional[Union[int, str]]) -> Optional[int]:
        if reference is None:
            return None
        if isinstance(reference, str):
            return int(self.resolve_genes([reference])[0])
        return int(reference)
