"""
Scanpy-style factor fitting on AnnData objects.
"""

import numpy as np
from anndata import AnnData
from typing import Optional, Sequence, Union
import logging

from ..covariance.builder import FactorFit
from ..session import LatentSession
from ..settings import GPLVMSettings

logger = logging.getLogger(__name__)

UNS_KEY = 'latent_sc'


def _session(adata: AnnData, layer: Optional[str], tech_noise_key: Optional[str]) -> LatentSession:
    session = LatentSession.from_anndata(adata, layer=layer, tech_noise_key=tech_noise_key)
    from .variance import covariances_from_adata
    for cov in covariances_from_adata(adata):
        session.add_covariance(cov)
    return session


def fit_factor(
    adata: AnnData,
    gene_set: Union[Sequence[str], Sequence[int], np.ndarray],
    key: str = 'cell_cycle',
    k: int = 1,
    use_ard: bool = False,
    known: Optional[str] = None,
    interaction: bool = False,
    layer: Optional[str] = None,
    tech_noise_key: Optional[str] = 'tech_noise',
    settings: Optional[GPLVMSettings] = None,
    copy: bool = False,
) -> Optional[AnnData]:
    """
    Fit a latent factor and store its covariance in ``adata``.

    After fitting, adata contains:
    - ``.obsp[key]``: normalized covariance (n_cells, n_cells)
    - ``.obsm['X_' + key]``: latent coordinates
    - ``.uns['latent_sc'][key]``: ARD weights, term description, loss trace
    and ``.obsp[key + '_interaction']`` when ``interaction=True``.

    Parameters
    ----------
    adata : AnnData
        Normalized data
    gene_set : Sequence
        Gene names, indices or boolean mask
    key : str
        Name of the factor
    k : int
        Latent dimensions
    use_ard : bool
        Automatic relevance determination
    known : Optional[str]
        Key of a previously fitted factor to condition on
    interaction : bool
        Also compute the interaction kernel with ``known``
    layer : Optional[str]
        Layer with normalized expression (None = .X)
    tech_noise_key : Optional[str]
        Column of .var with technical noise
    settings : Optional[GPLVMSettings]
        Optimizer settings
    copy : bool
        Return a modified copy instead of working in place

    Examples
    --------
    >>> lsc.tl.fit_factor(adata, cell_cycle_genes, key='cell_cycle')
    >>> lsc.tl.variance_decomposition(adata, ['cell_cycle'])
    """
    if copy:
        adata = adata.copy()

    session = _session(adata, layer, tech_noise_key)
    if known is not None:
        session.add_factor(FactorFit(
            covariance=session.covariance(known),
            X=adata.obsm['X_' + known],
        ))

    fit = session.fit_factor(
        key,
        gene_set,
        k=k,
        use_ard=use_ard,
        known=known,
        interaction=interaction,
        settings=settings,
    )

    adata.obsp[key] = np.array(fit.K)
    adata.obsm['X_' + key] = fit.X
    info = adata.uns.setdefault(UNS_KEY, {})
    info[key] = {
        'term': fit.covariance.describe(),
        'ard_weights': fit.ard_weights,
        'loss_history': np.asarray(fit.loss_history),
        'noise_variance': fit.noise_variance,
    }
    if fit.interaction is not None:
        adata.obsp[fit.interaction.name] = np.array(fit.interaction.K)
        info[fit.interaction.name] = {'term': fit.interaction.describe()}

    logger.info(f"Stored covariance '{key}' in adata.obsp")

    if copy:
        return adata
