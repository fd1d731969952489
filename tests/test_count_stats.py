from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

import count_stats
from count_stats import InsufficientDataError


@pytest.fixture
def counts() -> pd.DataFrame:
    rng = np.random.default_rng(7)
    base = rng.integers(20, 400, size=(40, 1))
    depth = np.array([1.0, 2.0, 0.5, 1.5])
    values = rng.poisson(base * depth)
    return pd.DataFrame(values, index=[f"p{i}" for i in range(40)], columns=["A", "B", "C", "D"])


# ---------------------------------------------------------------------------
# Size factors
# ---------------------------------------------------------------------------


def test_size_factors_positive_and_track_depth(counts):
    factors = count_stats.estimate_size_factors(counts)
    assert (factors > 0).all()
    assert factors["B"] > factors["A"] > factors["C"]


def test_uniform_rescaling_leaves_normalized_counts_unchanged(counts):
    factors = count_stats.estimate_size_factors(counts)
    scaled = count_stats.estimate_size_factors(counts * 3)
    np.testing.assert_allclose(scaled.to_numpy(), factors.to_numpy() * 3)
    np.testing.assert_allclose(
        count_stats.normalize_counts(counts * 3, scaled).to_numpy(),
        count_stats.normalize_counts(counts, factors).to_numpy(),
    )


def test_rescaling_one_sample_scales_only_its_factor(counts):
    factors = count_stats.estimate_size_factors(counts)
    scaled_counts = counts.copy()
    scaled_counts["C"] = scaled_counts["C"] * 4
    scaled = count_stats.estimate_size_factors(scaled_counts)

    assert scaled["C"] == pytest.approx(4 * factors["C"])
    for other in ["A", "B", "D"]:
        assert scaled[other] == pytest.approx(factors[other])

    np.testing.assert_allclose(
        count_stats.normalize_counts(scaled_counts, scaled).to_numpy(),
        count_stats.normalize_counts(counts, factors).to_numpy(),
    )


def test_size_factors_ignore_peaks_with_zeros():
    counts = pd.DataFrame({"A": [10, 0, 20], "B": [20, 5, 40]}, index=["p1", "p2", "p3"])
    factors = count_stats.estimate_size_factors(counts)
    assert factors["B"] / factors["A"] == pytest.approx(2.0)


def test_size_factors_need_two_samples():
    with pytest.raises(InsufficientDataError):
        count_stats.estimate_size_factors(pd.DataFrame({"A": [1, 2, 3]}))


def test_size_factors_need_a_peak_without_zeros():
    counts = pd.DataFrame({"A": [0, 4], "B": [3, 0]})
    with pytest.raises(InsufficientDataError):
        count_stats.estimate_size_factors(counts)


def test_normalize_counts_requires_every_factor(counts):
    with pytest.raises(InsufficientDataError):
        count_stats.normalize_counts(counts, pd.Series({"A": 1.0, "B": 1.0}))


# ---------------------------------------------------------------------------
# Descriptive statistics
# ---------------------------------------------------------------------------


def test_mean_and_standard_deviation():
    assert count_stats.mean([2, 4, 6]) == pytest.approx(4.0)
    assert count_stats.standard_deviation([2, 4, 6]) == pytest.approx(2.0)
    assert np.isnan(count_stats.standard_deviation([5]))


def test_quantile_bounds_and_monotonicity():
    values = [9, 1, 4, 16, 2.5, 7]
    assert count_stats.quantile(values, 0) == min(values)
    assert count_stats.quantile(values, 1) == max(values)
    grid = count_stats.quantile(values, np.linspace(0, 1, 21))
    assert np.all(np.diff(grid) >= 0)


def test_quantile_linear_interpolation():
    assert count_stats.quantile([1, 2, 3, 4, 5, 100], 0.75) == pytest.approx(4.75)


def test_quantile_rejects_out_of_range_probability():
    with pytest.raises(ValueError):
        count_stats.quantile([1, 2, 3], 1.5)


def test_upper_quartile_outlier_flags_single_value():
    values = [1, 2, 3, 4, 5, 100]
    assert count_stats.outlier_fraction_upper_quartile(values) == pytest.approx(1 / 6)
    assert count_stats.outlier_fraction_raw_iqr(values) == pytest.approx(1 / 6)


def test_outlier_rules_are_distinct():
    values = [10, 10, 10, 10, 12, 20]
    assert count_stats.outlier_fraction_upper_quartile(values) == pytest.approx(1 / 6)
    assert count_stats.outlier_fraction_raw_iqr(values) == pytest.approx(1.0)


def test_empty_vector_is_rejected():
    with pytest.raises(InsufficientDataError):
        count_stats.mean([])


def test_log_transform():
    frame = pd.DataFrame({"A": [0, np.e - 1]})
    np.testing.assert_allclose(count_stats.log_transform(frame)["A"], [0.0, 1.0])


def test_row_mean_sd_summary(counts):
    summary = count_stats.row_mean_sd_summary(counts)
    assert list(summary.columns) == ["mean", "sd"]
    assert summary.loc["p0", "mean"] == pytest.approx(counts.loc["p0"].mean())
    assert summary.loc["p0", "sd"] == pytest.approx(counts.loc["p0"].std(ddof=1))


def test_sample_summary_columns(counts):
    summary = count_stats.sample_summary(counts)
    assert list(summary.index) == ["A", "B", "C", "D"]
    assert {"mean", "sd", "q0", "q25", "q50", "q75", "q100", "outliers_1.5xQ3", "outliers_3xIQR"} <= set(
        summary.columns
    )
    assert summary.loc["A", "q100"] == counts["A"].max()


# ---------------------------------------------------------------------------
# PCA
# ---------------------------------------------------------------------------


def test_principal_components_variance_and_loadings(counts):
    normalized = count_stats.normalize_counts(counts, count_stats.estimate_size_factors(counts))
    pca = count_stats.principal_components(normalized)

    assert list(pca.scores.index) == ["A", "B", "C", "D"]
    assert pca.components == ["PC1", "PC2", "PC3", "PC4"]
    assert abs(pca.percent_variance.sum() - 100) <= len(pca.components) / 2
    np.testing.assert_allclose(pca.loadings.sum(axis=0).to_numpy(), 1.0)
    assert (pca.loadings >= 0).all().all()
    assert list(pca.loadings.index) == list(counts.index)


def test_principal_components_truncation_keeps_total_variance(counts):
    normalized = count_stats.normalize_counts(counts, count_stats.estimate_size_factors(counts))
    full = count_stats.principal_components(normalized)
    first = count_stats.principal_components(normalized, n_components=2, log=False)
    assert first.components == ["PC1", "PC2"]
    np.testing.assert_allclose(first.percent_variance, full.percent_variance.iloc[:2])


def test_principal_components_separates_groups():
    normalized = pd.DataFrame(
        {"A": [100, 10, 50], "B": [110, 12, 51], "C": [10, 100, 49], "D": [12, 105, 50]},
        index=["p1", "p2", "p3"],
    )
    pca = count_stats.principal_components(normalized, log=True)
    pc1 = pca.scores["PC1"]
    assert np.sign(pc1["A"]) == np.sign(pc1["B"])
    assert np.sign(pc1["A"]) != np.sign(pc1["C"])
    assert "p3" not in count_stats.top_loading_peaks(pca, "PC1", 2)


def test_principal_components_rejects_constant_matrix():
    frame = pd.DataFrame({"A": [5.0, 5.0], "B": [5.0, 5.0]})
    with pytest.raises(InsufficientDataError):
        count_stats.principal_components(frame)


def test_top_loading_peaks_unknown_component(counts):
    pca = count_stats.principal_components(counts.astype(float))
    with pytest.raises(KeyError):
        count_stats.top_loading_peaks(pca, "PC99")


# ---------------------------------------------------------------------------
# Benjamini-Hochberg
# ---------------------------------------------------------------------------


def test_benjamini_hochberg_known_values():
    pvalues = pd.Series([0.01, 0.04, 0.03, 0.2], index=list("abcd"))
    adjusted = count_stats.benjamini_hochberg(pvalues)
    np.testing.assert_allclose(adjusted.to_numpy(), [0.04, 0.16 / 3, 0.16 / 3, 0.2])


def test_benjamini_hochberg_properties():
    rng = np.random.default_rng(3)
    pvalues = pd.Series(rng.uniform(size=50))
    adjusted = count_stats.benjamini_hochberg(pvalues)
    assert (adjusted >= pvalues).all()
    order = np.argsort(pvalues.to_numpy())
    assert np.all(np.diff(adjusted.to_numpy()[order]) >= 0)


def test_benjamini_hochberg_keeps_missing_values():
    pvalues = pd.Series([0.01, np.nan, 0.02], index=["a", "b", "c"])
    adjusted = count_stats.benjamini_hochberg(pvalues)
    assert np.isnan(adjusted["b"])
    assert adjusted["a"] == pytest.approx(0.02)
    assert adjusted["c"] == pytest.approx(0.02)
