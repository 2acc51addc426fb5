"""
Tests for the session object and the AnnData tools.
"""

import pytest
import numpy as np

import latent_sc as lsc
from latent_sc import LatentSession
from latent_sc.errors import DimensionMismatchError, InputError
from latent_sc.validation import CellCycleDataGenerator, generate_cell_cycle_data


@pytest.fixture(scope="module")
def adata():
    adata, _ = generate_cell_cycle_data(n_cells=20, n_genes=30, n_factor_genes=10, seed=5)
    return adata


@pytest.fixture(scope="module")
def session(adata):
    session = LatentSession.from_anndata(adata)
    session.add_gene_set("cell_cycle", [f"Gene_{i}" for i in range(10)])
    session.fit_factor("cell_cycle", "cell_cycle", k=1)
    return session


def test_session_from_anndata(adata):
    """The session copies expression, noise and gene names."""
    s = LatentSession.from_anndata(adata)

    assert (s.n_cells, s.n_genes) == (20, 30)
    assert np.allclose(s.tech_noise, adata.var['tech_noise'].to_numpy())
    assert s.gene_names[3] == "Gene_3"
    with pytest.raises(ValueError):
        s.Y[0, 0] = 1.0


def test_analysis_requires_fitted_covariance(adata):
    """Decomposing before any factor is fitted is an error."""
    s = LatentSession.from_anndata(adata)
    with pytest.raises(InputError):
        s.variance_decomposition()
    with pytest.raises(InputError):
        s.variance_decomposition(["cell_cycle"])


def test_resolve_genes(session):
    """Genes can be given by set name, gene name, mask or index."""
    assert session.gene_set("cell_cycle").tolist() == list(range(10))
    assert session.resolve_genes(["Gene_4", "Gene_2"]).tolist() == [4, 2]
    mask = np.zeros(30, dtype=bool)
    mask[[1, 5]] = True
    assert session.resolve_genes(mask).tolist() == [1, 5]

    with pytest.raises(InputError):
        session.resolve_genes("unknown_set")
    with pytest.raises(InputError):
        session.resolve_genes(["Gene_999"])


def test_single_gene_factor_rejected(session):
    """A factor cannot be fitted on one gene."""
    with pytest.raises(InputError):
        session.fit_factor("tiny", ["Gene_0"])


def test_session_mismatched_inputs():
    """Noise and gene names must match the number of genes."""
    Y = np.random.default_rng(0).normal(size=(5, 4))
    with pytest.raises(DimensionMismatchError):
        LatentSession(Y, tech_noise=np.ones(3))
    with pytest.raises(DimensionMismatchError):
        LatentSession(Y, gene_names=["a", "b"])


def test_add_covariance_checks_cells(session):
    """Covariances must match the number of cells."""
    cov = lsc.CovarianceMatrix(K=np.eye(4), name="small", term=lsc.covariance.Standalone(genes=()))
    with pytest.raises(DimensionMismatchError):
        session.add_covariance(cov)


def test_session_workflow(session):
    """Decompose, correct and test association through the session."""
    assert session.covariance_names == ["cell_cycle"]

    vd = session.variance_decomposition(genes=range(12))
    assert vd.term_names[0] == "cell_cycle"
    assert vd.weights[:10, 0][vd.converged[:10]].mean() > 0.5

    corrected = session.corrected_expression(vd, remove=["cell_cycle"])
    assert corrected.values.shape[0] == 20

    with pytest.raises(InputError):
        session.corrected_expression(vd, remove=["not_a_term"])

    lmm = session.fit_lmm(["cell_cycle"], genes=range(4), reference="Gene_20")
    assert lmm.beta.shape == (4, 1)
    assert lmm.fixed_indices.tolist() == [20]

    uncorrected = session.fit_lmm(genes=range(3))
    assert not uncorrected.corrected


def test_session_compare_association(session):
    """Corrected and uncorrected results cover the same pairs."""
    corrected, uncorrected = session.compare_association(["cell_cycle"], genes=[0, 1, 2])

    assert corrected.corrected and not uncorrected.corrected
    assert corrected.beta.shape == uncorrected.beta.shape == (3, 3)


def test_session_conditioned_factor():
    """A second factor can be conditioned on a fitted one."""
    adata, truth = CellCycleDataGenerator(
        n_cells=25, n_genes=30, n_factor_genes=8, n_second_genes=8,
    ).generate(seed=2)
    s = LatentSession.from_anndata(adata)
    s.fit_factor("cell_cycle", truth['factor_genes'])
    fit = s.fit_factor("second", truth['second_genes'], known="cell_cycle", interaction=True)

    assert s.covariance_names == ["cell_cycle", "second", "second_interaction"]
    assert fit.covariance.term.parent == "cell_cycle"

    with pytest.raises(InputError):
        s.fit_factor("third", truth['second_genes'], known="missing")


def test_tools_roundtrip():
    """AnnData tools store the factor, decomposition and corrected layer."""
    adata, truth = generate_cell_cycle_data(n_cells=20, n_genes=25, n_factor_genes=8, seed=9)

    lsc.tl.fit_factor(adata, [f"Gene_{i}" for i in range(8)], key='cell_cycle')
    assert adata.obsp['cell_cycle'].shape == (20, 20)
    assert adata.obsm['X_cell_cycle'].shape == (20, 1)
    assert 'cell_cycle' in adata.uns['latent_sc']

    lsc.tl.variance_decomposition(adata, ['cell_cycle'], genes=list(range(12)))
    assert 'vd_cell_cycle' in adata.var.columns
    assert np.all(np.isnan(adata.var['vd_cell_cycle'].to_numpy()[12:]))
    fitted = adata.var['vd_converged'].to_numpy()
    assert fitted[:12].sum() > 8

    lsc.tl.corrected_expression(adata)
    layer = adata.layers['corrected']
    assert layer.shape == (20, 25)
    assert np.all(np.isnan(layer[:, 12:]))
    assert np.all(np.isfinite(layer[:, :12][:, fitted[:12]]))


def test_tools_copy_leaves_input_untouched():
    """copy=True returns a new object and leaves the input alone."""
    adata, _ = generate_cell_cycle_data(n_cells=15, n_genes=12, n_factor_genes=5, seed=4)
    out = lsc.tl.fit_factor(adata, list(range(5)), key='cc', copy=True)

    assert 'cc' in out.obsp
    assert 'cc' not in adata.obsp


def test_tools_missing_covariance():
    """Decomposing on an unknown key is an error."""
    adata, _ = generate_cell_cycle_data(n_cells=15, n_genes=12, n_factor_genes=5, seed=4)
    with pytest.raises(InputError):
        lsc.tl.variance_decomposition(adata, ['cell_cycle'])
