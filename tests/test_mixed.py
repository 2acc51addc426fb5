"""
Tests for variance decomposition, expression correction and association.
"""

import pytest
import numpy as np

from latent_sc import REMLSettings
from latent_sc.covariance import CovarianceMatrix, Standalone, fit_factor
from latent_sc.errors import (
    ConvergenceError,
    DimensionMismatchError,
    InputError,
    NumericalInstabilityError,
)
from latent_sc.mixed import (
    BIOLOGICAL_NOISE,
    TECHNICAL_NOISE,
    LMMResult,
    VarianceDecomposition,
    blup_contributions,
    compare_association,
    corrected_expression,
    fit_lmm,
    fit_reml,
    partition_indices,
    run_sharded,
    variance_decomposition,
)
from latent_sc.validation import generate_cell_cycle_data


@pytest.fixture(scope="module")
def data():
    adata, truth = generate_cell_cycle_data(n_cells=20, n_genes=50, n_factor_genes=10, seed=0)
    return np.asarray(adata.X), adata.var['tech_noise'].to_numpy(), truth


@pytest.fixture(scope="module")
def cc(data):
    Y, tech_noise, truth = data
    return fit_factor(Y, tech_noise, truth['factor_genes'], k=1, name="cell_cycle")


@pytest.fixture(scope="module")
def decomposition(data, cc):
    Y, tech_noise, _ = data
    return variance_decomposition(Y, tech_noise, [cc.covariance])


@pytest.fixture
def true_factor_kernel(data):
    _, _, truth = data
    f = truth['factor']
    return CovarianceMatrix(K=np.outer(f, f), name="cell_cycle", term=Standalone(genes=()))


# ----- REML -----

def test_reml_without_kernels_matches_sample_variance():
    """With only noise, the REML scale is the unbiased sample variance."""
    rng = np.random.default_rng(1)
    y = rng.normal(size=40)
    fit = fit_reml(y, [])

    assert fit.converged
    assert fit.scales.shape == (1,)
    assert fit.scales[0] == pytest.approx(np.var(y, ddof=1), rel=1e-2)
    assert fit.beta[0] == pytest.approx(y.mean())


def test_reml_constant_response():
    """A constant response has nothing to decompose."""
    with pytest.raises(NumericalInstabilityError):
        fit_reml(np.ones(10), [])


# ----- variance decomposition -----

def test_decomposition_layout(decomposition):
    """Weights have one column per K term plus the two noise terms."""
    assert decomposition.term_names == ["cell_cycle", TECHNICAL_NOISE, BIOLOGICAL_NOISE]
    assert decomposition.weights.shape == (50, 3)
    assert decomposition.n_kernels == 1
    assert len(decomposition) == 50


def test_converged_weights_sum_to_one(decomposition):
    """Converged rows are non-negative fractions summing to one."""
    w = decomposition.weights[decomposition.converged]
    assert decomposition.converged.sum() > 40
    assert np.all(w >= 0)
    assert np.allclose(w.sum(axis=1), 1.0)


def test_factor_genes_explained_by_factor(data, decomposition):
    """Factor genes are dominated by the factor, noise genes are not."""
    _, _, truth = data
    w = decomposition.weights[:, 0]
    ok = decomposition.converged
    factor_mask = np.zeros(50, dtype=bool)
    factor_mask[truth['factor_genes']] = True

    assert np.mean(w[factor_mask & ok]) > 0.7
    noise_weights = w[~factor_mask & ok]
    assert np.mean(noise_weights) < 0.2
    assert np.quantile(noise_weights, 0.9) < 0.2


def test_mean_contributions(decomposition):
    """Mean contributions ignore genes that failed."""
    means = decomposition.mean_contributions()
    assert list(means.index) == decomposition.term_names
    assert means.sum() == pytest.approx(1.0)


def test_decomposition_without_kernels(data):
    """Without K terms all variance is noise."""
    Y, tech_noise, _ = data
    vd = variance_decomposition(Y, tech_noise, [], gene_indices=[10, 11])

    assert vd.term_names == [TECHNICAL_NOISE, BIOLOGICAL_NOISE]
    assert np.allclose(vd.weights.sum(axis=1), 1.0)


def test_constant_gene_is_not_converged(data, cc):
    """Genes without variance are reported, not raised."""
    Y, tech_noise, _ = data
    Y = Y.copy()
    Y[:, 5] = 3.0
    vd = variance_decomposition(Y, tech_noise, [cc.covariance], gene_indices=[4, 5])

    assert vd.converged.tolist() == [True, False]
    assert np.all(np.isnan(vd.weights[1]))
    assert vd.result(5).message == "constant expression"


def test_timeout_marks_gene_unconverged(data, cc):
    """A fit that exceeds its time budget is flagged, not raised."""
    Y, tech_noise, _ = data
    vd = variance_decomposition(
        Y, tech_noise, [cc.covariance], gene_indices=[0],
        settings=REMLSettings(timeout=1e-9),
    )

    assert not vd.converged[0]
    assert "FitTimeout" in vd.messages[0]
    with pytest.raises(ConvergenceError):
        vd.mean_contributions()


def test_decomposition_kernel_size_mismatch(data):
    """Kernels must match the number of cells."""
    Y, tech_noise, _ = data
    with pytest.raises(DimensionMismatchError):
        variance_decomposition(Y, tech_noise, [np.eye(5)])


def test_sharded_decomposition_matches_single_run(data, cc, decomposition):
    """Results do not depend on how genes are sharded."""
    Y, tech_noise, _ = data
    sharded = run_sharded(
        variance_decomposition,
        range(50),
        n_shards=4,
        n_jobs=2,
        Y=Y,
        tech_noise=tech_noise,
        K_list=[cc.covariance],
    )

    assert np.array_equal(sharded.gene_indices, decomposition.gene_indices)
    assert np.array_equal(sharded.converged, decomposition.converged)
    assert np.allclose(sharded.weights, decomposition.weights, equal_nan=True)


def test_merge_sorts_by_gene(data, cc):
    """Merging shards in any order gives gene-sorted rows."""
    Y, tech_noise, _ = data
    a = variance_decomposition(Y, tech_noise, [cc.covariance], gene_indices=[7, 8])
    b = variance_decomposition(Y, tech_noise, [cc.covariance], gene_indices=[1, 2])
    merged = VarianceDecomposition.merge([a, b])

    assert merged.gene_indices.tolist() == [1, 2, 7, 8]
    assert np.allclose(merged.weights[2], a.weights[0])


def test_merge_rejects_overlap(data, cc):
    """Overlapping shards cannot be merged."""
    Y, tech_noise, _ = data
    a = variance_decomposition(Y, tech_noise, [cc.covariance], gene_indices=[1, 2])
    b = variance_decomposition(Y, tech_noise, [cc.covariance], gene_indices=[2, 3])
    with pytest.raises(InputError):
        VarianceDecomposition.merge([a, b])


def test_partition_indices():
    """Shards are disjoint, contiguous and cover the input."""
    shards = partition_indices(range(10), 3)
    assert [s.tolist() for s in shards] == [[0, 1, 2, 3], [4, 5, 6], [7, 8, 9]]
    assert len(partition_indices(range(2), 5)) == 2
    with pytest.raises(InputError):
        partition_indices(range(3), 0)


# ----- correction -----

def test_correction_with_zero_weights_is_identity():
    """No fitted K variance means nothing is removed."""
    rng = np.random.default_rng(2)
    y = rng.normal(size=12)
    K = np.eye(12)
    contributions = blup_contributions(y, np.array([0.0, 0.3, 0.7]), [K])

    assert contributions.shape == (1, 12)
    assert np.allclose(contributions, 0.0)


def test_blup_formula():
    """Contribution equals w K V^-1 (y - mu) with the GLS mean."""
    rng = np.random.default_rng(3)
    n = 10
    A = rng.normal(size=(n, 2))
    K = A @ A.T / 2.0
    y = rng.normal(size=n) + 1.5
    weights = np.array([0.6, 0.1, 0.3])

    V = 0.6 * K + 0.4 * np.eye(n)
    Vi = np.linalg.inv(V)
    ones = np.ones(n)
    mu = (ones @ Vi @ y) / (ones @ Vi @ ones)
    expected = 0.6 * K @ Vi @ (y - mu)

    got = blup_contributions(y, weights, [K])[0]
    assert np.allclose(got, expected, atol=1e-6)
    # invariant to a common rescaling of the weights
    assert np.allclose(blup_contributions(y, 5 * weights, [K])[0], got, atol=1e-6)


def test_corrected_expression_removes_factor(data, cc, decomposition):
    """Correction reduces the factor signal in factor genes."""
    Y, _, truth = data
    corrected = corrected_expression(Y, decomposition, [cc.covariance])

    assert set(corrected.gene_indices) == set(decomposition.gene_indices[decomposition.converged])
    assert corrected.values.shape == (20, len(corrected.gene_indices))

    gene = int(truth['factor_genes'][0])
    col = list(corrected.gene_indices).index(gene)
    before = abs(np.corrcoef(Y[:, gene], truth['factor'])[0, 1])
    after = abs(np.corrcoef(corrected.values[:, col], truth['factor'])[0, 1])
    assert after < before


def test_correction_excludes_unconverged(data, cc):
    """Genes whose decomposition failed are excluded, never imputed."""
    Y, tech_noise, _ = data
    Y = Y.copy()
    Y[:, 3] = 0.0
    vd = variance_decomposition(Y, tech_noise, [cc.covariance], gene_indices=[2, 3])
    corrected = corrected_expression(Y, vd, [cc.covariance])

    assert corrected.gene_indices.tolist() == [2]
    assert corrected.excluded.tolist() == [3]


def test_correction_kernel_count_mismatch(data, cc, decomposition):
    """The K terms must be the ones the decomposition was fitted with."""
    Y, _, _ = data
    with pytest.raises(DimensionMismatchError):
        corrected_expression(Y, decomposition, [cc.covariance, cc.covariance])


# ----- association -----

def test_uncorrected_lmm_is_pearson():
    """Without K terms beta equals the correlation of the two genes."""
    rng = np.random.default_rng(4)
    Y = rng.normal(size=(30, 4))
    Y[:, 1] += 1.5 * Y[:, 0]
    result = fit_lmm(Y, None, None)

    assert not result.corrected
    r = np.corrcoef(Y, rowvar=False)
    off = ~np.eye(4, dtype=bool)
    assert np.allclose(result.beta[off], r[off], atol=1e-6)
    assert np.all(np.isnan(np.diag(result.beta)))
    assert not np.any(np.diag(result.converged))
    assert np.all((result.pv[off] > 0) & (result.pv[off] <= 1))
    assert result.pv[1, 0] < 1e-3


def test_reference_gene_mode(data, cc):
    """A reference gene yields one column of statistics."""
    Y, tech_noise, _ = data
    result = fit_lmm(Y, tech_noise, [cc.covariance], gene_indices=range(5), reference=20)

    assert result.beta.shape == (5, 1)
    assert result.fixed_indices.tolist() == [20]
    assert result.corrected


def test_reference_and_fixed_are_exclusive(data):
    """A reference gene and a fixed gene set cannot both be given."""
    Y, tech_noise, _ = data
    with pytest.raises(InputError):
        fit_lmm(Y, tech_noise, None, reference=0, fixed_indices=[1, 2])


def test_correction_removes_shared_factor_association(data, true_factor_kernel):
    """Two factor genes correlate strongly only before conditioning on the factor."""
    Y, tech_noise, truth = data
    genes = truth['factor_genes'][:2]
    corrected, uncorrected = compare_association(Y, tech_noise, [true_factor_kernel], gene_indices=genes)

    assert abs(uncorrected.beta[0, 1]) > 0.5
    assert abs(corrected.beta[0, 1]) < abs(uncorrected.beta[0, 1])
    assert corrected.term_names == ["cell_cycle"]


def test_lmm_qvalues_and_frame(data, cc):
    """q-values are at least the p-values and the long frame lists every pair."""
    Y, tech_noise, _ = data
    result = fit_lmm(Y, tech_noise, [cc.covariance], gene_indices=range(4))
    q = result.qvalues()
    finite = np.isfinite(result.pv)

    assert np.all(q[finite] >= result.pv[finite] - 1e-12)
    df = result.to_frame()
    assert len(df) == 16
    assert set(df.columns) == {'response', 'fixed', 'beta', 'pv', 'qv', 'converged'}


def test_lmm_shards_merge(data, cc):
    """Response shards with shared fixed genes merge back into one result."""
    Y, tech_noise, _ = data
    full = fit_lmm(Y, tech_noise, [cc.covariance], gene_indices=range(6), fixed_indices=range(6))
    sharded = run_sharded(
        fit_lmm, range(6), n_shards=3,
        Y=Y, tech_noise=tech_noise, K_list=[cc.covariance], fixed_indices=range(6),
    )

    assert np.array_equal(sharded.response_indices, full.response_indices)
    assert np.allclose(sharded.beta, full.beta, equal_nan=True)

    with pytest.raises(InputError):
        LMMResult.merge([full, full])


def test_default_lmm_shards_merge(data):
    """Sharding the default gene x gene call matches a single run."""
    Y, tech_noise, _ = data
    full = fit_lmm(Y, tech_noise, None, gene_indices=range(6))
    sharded = run_sharded(fit_lmm, range(6), n_shards=2, Y=Y, tech_noise=tech_noise, K_list=None)

    assert sharded.beta.shape == (6, 6)
    assert np.array_equal(sharded.fixed_indices, full.fixed_indices)
    assert np.allclose(sharded.beta, full.beta, equal_nan=True)
    assert np.array_equal(sharded.converged, full.converged)


def test_noise_constants_exported():
    """Noise term labels are available from the package."""
    from latent_sc.mixed import decomposition

    assert TECHNICAL_NOISE == decomposition.TECHNICAL_NOISE == "technical_noise"
    assert BIOLOGICAL_NOISE == decomposition.BIOLOGICAL_NOISE == "biological_noise"
