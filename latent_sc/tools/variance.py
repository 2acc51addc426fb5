"""
Scanpy-style variance decomposition and correction on AnnData objects.
"""

import numpy as np
from anndata import AnnData
from typing import List, Optional, Sequence
import logging

from ..covariance.terms import CovarianceMatrix, Standalone
from ..errors import InputError
from ..mixed.decomposition import VarianceDecomposition
from ..settings import REMLSettings

logger = logging.getLogger(__name__)

UNS_KEY = 'latent_sc'


def covariances_from_adata(adata: AnnData, keys: Optional[Sequence[str]] = None) -> List[CovarianceMatrix]:
    """Covariance terms stored by ``tl.fit_factor`` (default: all of them)."""
    stored = adata.uns.get(UNS_KEY, {})
    if keys is None:
        keys = [k for k in stored if k in adata.obsp]
    missing = [k for k in keys if k not in adata.obsp]
    if missing:
        raise InputError(f"Covariances {missing} not found in adata.obsp; run tl.fit_factor first")
    return [
        CovarianceMatrix(K=np.asarray(adata.obsp[k]), name=k, term=Standalone(genes=()))
        for k in keys
    ]


def variance_decomposition(
    adata: AnnData,
    keys: Sequence[str],
    genes: Optional[Sequence] = None,
    layer: Optional[str] = None,
    tech_noise_key: Optional[str] = 'tech_noise',
    settings: Optional[REMLSettings] = None,
    n_jobs: int = 1,
    copy: bool = False,
) -> Optional[AnnData]:
    """
    Per-gene variance decomposition stored in ``adata.var``.

    Adds one column ``vd_<term>`` per covariance term and noise term, and
    ``vd_converged``. Genes that were not fitted or did not converge are NaN.

    Parameters
    ----------
    adata : AnnData
        Data with covariances from ``tl.fit_factor``
    keys : Sequence[str]
        Covariance terms to include
    genes : Optional[Sequence]
        Genes to fit (names, indices or mask; default all)
    layer, tech_noise_key, settings, n_jobs
        As in ``tl.fit_factor`` / ``variance_decomposition``
    copy : bool
        Return a modified copy
    """
    from .factors import _session

    if copy:
        adata = adata.copy()

    session = _session(adata, layer, tech_noise_key)
    vd = session.variance_decomposition(
        list(keys),
        genes=genes,
        settings=settings,
        n_jobs=n_jobs,
    )

    for j, name in enumerate(vd.term_names):
        column = np.full(adata.n_vars, np.nan)
        column[vd.gene_indices] = vd.weights[:, j]
        adata.var[f'vd_{name}'] = column
    converged = np.zeros(adata.n_vars, dtype=bool)
    converged[vd.gene_indices] = vd.converged
    adata.var['vd_converged'] = converged
    adata.uns.setdefault(UNS_KEY, {})['variance_decomposition'] = {
        'terms': list(vd.term_names),
        'gene_indices': vd.gene_indices,
        'mean_contributions': vd.mean_contributions().to_dict() if vd.converged.any() else {},
    }

    logger.info(f"{int(vd.converged.sum())} / {len(vd)} genes converged")

    if copy:
        return adata


def decomposition_from_adata(adata: AnnData) -> VarianceDecomposition:
    """Rebuild a VarianceDecomposition from the columns written above."""
    info = adata.uns.get(UNS_KEY, {}).get('variance_decomposition')
    if info is None:
        raise InputError("Run tl.variance_decomposition first")
    names = list(info['terms'])
    weights = np.column_stack([adata.var[f'vd_{n}'].to_numpy() for n in names])
    fitted = np.asarray(info['gene_indices'], dtype=int)
    return VarianceDecomposition(
        gene_indices=fitted,
        weights=weights[fitted],
        converged=adata.var['vd_converged'].to_numpy()[fitted],
        term_names=names,
        log_likelihood=np.full(len(fitted), np.nan),
        messages=[''] * len(fitted),
    )


def corrected_expression(
    adata: AnnData,
    remove: Optional[Sequence[str]] = None,
    layer: Optional[str] = None,
    key_added: str = 'corrected',
    copy: bool = False,
) -> Optional[AnnData]:
    """
    Store confounder-corrected expression in ``adata.layers[key_added]``.

    Uses the decomposition written by ``tl.variance_decomposition``. Genes
    without a converged decomposition are NaN in the layer; they are not
    imputed.
    """
    from .factors import _session

    if copy:
        adata = adata.copy()

    vd = decomposition_from_adata(adata)
    session = _session(adata, layer, None)
    corrected = session.corrected_expression(vd, remove=remove)

    out = np.full((adata.n_obs, adata.n_vars), np.nan)
    out[:, corrected.gene_indices] = corrected.values
    adata.layers[key_added] = out

    logger.info(
        f"Corrected {len(corrected.gene_indices)} genes, excluded {len(corrected.excluded)}"
    )

    if copy:
        return adata
