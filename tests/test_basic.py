"""
Basic tests for the latent_sc package.
"""

import pytest
import numpy as np


def test_imports():
    """Test that all modules can be imported."""
    import latent_sc
    import latent_sc.covariance
    import latent_sc.inference
    import latent_sc.mixed
    import latent_sc.tools as tl
    import latent_sc.validation
    from latent_sc import LatentSession, fit_factor, variance_decomposition, fit_lmm


def test_synthetic_data_generation():
    """Test synthetic data generation."""
    from latent_sc.validation import generate_cell_cycle_data

    adata, truth = generate_cell_cycle_data(
        n_cells=20,
        n_genes=50,
        n_factor_genes=10,
        seed=42,
    )

    assert adata.n_obs == 20
    assert adata.n_vars == 50
    assert 'tech_noise' in adata.var.columns
    assert adata.var['factor_gene'].sum() == 10
    assert truth['factor'].shape == (20,)
    assert np.all(truth['loadings'][10:] == 0)


def test_second_factor_block():
    """Test that the second factor occupies its own gene block."""
    from latent_sc.validation import CellCycleDataGenerator

    gen = CellCycleDataGenerator(n_cells=30, n_genes=40, n_factor_genes=10, n_second_genes=5)
    adata, truth = gen.generate(seed=1)

    assert list(truth['second_genes']) == [10, 11, 12, 13, 14]
    assert adata.var['second_factor_gene'].sum() == 5
    assert not np.any(adata.var['factor_gene'] & adata.var['second_factor_gene'])


def test_too_many_factor_genes():
    """Test that impossible gene blocks are rejected."""
    from latent_sc.validation import CellCycleDataGenerator

    with pytest.raises(ValueError):
        CellCycleDataGenerator(n_genes=10, n_factor_genes=8, n_second_genes=5)


def test_kernel_diagnostics():
    """Test kernel diagnostics on a known matrix."""
    from latent_sc.validation import kernel_diagnostics

    diag = kernel_diagnostics(np.eye(5) * 2.0)
    assert diag['symmetry_error'] == 0.0
    assert diag['min_eigenvalue'] == pytest.approx(2.0)
    assert diag['trace_ratio'] == pytest.approx(2.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
