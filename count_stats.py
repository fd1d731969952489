"""Count normalisation and exploratory statistics for peak count matrices.

The helpers in this module operate on plain :mod:`pandas` objects: a count
matrix has one row per peak and one column per sample.  Size factors follow the
median-of-ratios estimator used by DESeq2; the exploratory helpers produce the
tables behind the usual QC figures (per-sample distributions, mean/SD trend and
sample PCA).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

LOGGER = logging.getLogger(__name__)

DEFAULT_QUANTILES: tuple[float, ...] = (0.0, 0.25, 0.5, 0.75, 1.0)


class InsufficientDataError(ValueError):
    """Raised when too few samples or peaks remain for a computation."""


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------


def estimate_size_factors(counts: pd.DataFrame) -> pd.Series:
    """Median-of-ratios size factor for every sample column of ``counts``.

    Only peaks with a non-zero count in every sample contribute.  The pseudo
    reference of a peak is the geometric mean of its counts; a sample's
    relative factor is the median of its ratios to that reference.  Relative
    factors are then multiplied by the geometric mean of the per-sample totals
    over the same peaks, so that scaling one sample's counts by ``c`` scales
    its factor by ``c`` and leaves every other factor as it was.
    """

    if counts.shape[1] < 2:
        raise InsufficientDataError(
            f"At least two samples are required to estimate size factors; found {counts.shape[1]}"
        )

    values = counts.to_numpy(dtype=float)
    usable = np.all(values > 0, axis=1)
    if not usable.any():
        raise InsufficientDataError(
            "No peak has non-zero counts in every sample; cannot estimate size factors"
        )

    log_values = np.log(values[usable])
    log_reference = log_values.mean(axis=1, keepdims=True)
    relative = np.exp(np.median(log_values - log_reference, axis=0))
    depth = np.exp(np.log(values[usable].sum(axis=0)).mean())
    factors = relative * depth
    LOGGER.info("Estimated size factors from %d of %d peaks", int(usable.sum()), len(values))
    return pd.Series(factors, index=counts.columns, name="size_factor")


def normalize_counts(counts: pd.DataFrame, size_factors: pd.Series) -> pd.DataFrame:
    """Divide every sample column by its size factor."""

    factors = size_factors.reindex(counts.columns)
    if factors.isna().any():
        missing = factors[factors.isna()].index.tolist()
        raise InsufficientDataError(f"Size factors missing for samples: {', '.join(missing)}")
    return counts.astype(float).div(factors, axis=1)


# ---------------------------------------------------------------------------
# Descriptive statistics
# ---------------------------------------------------------------------------


def _as_array(values: Sequence[float]) -> np.ndarray:
    array = np.asarray(values, dtype=float)
    if array.size == 0:
        raise InsufficientDataError("Cannot summarise an empty vector")
    return array


def mean(values: Sequence[float]) -> float:
    return float(np.mean(_as_array(values)))


def standard_deviation(values: Sequence[float]) -> float:
    """Sample standard deviation (``n - 1`` denominator)."""

    array = _as_array(values)
    if array.size < 2:
        return float("nan")
    return float(np.std(array, ddof=1))


def quantile(values: Sequence[float], probs: float | Sequence[float]) -> np.ndarray | float:
    """Linearly interpolated quantiles, R's default ``type = 7``."""

    array = _as_array(values)
    p = np.asarray(probs, dtype=float)
    if np.any((p < 0) | (p > 1)) or np.any(np.isnan(p)):
        raise ValueError(f"Quantile probabilities must lie in [0, 1]; received {probs!r}")
    result = np.quantile(array, p, method="linear")
    if np.ndim(result) == 0:
        return float(result)
    return result


def interquartile_range(values: Sequence[float]) -> float:
    q1, q3 = quantile(values, [0.25, 0.75])
    return float(q3 - q1)


def outlier_fraction_upper_quartile(values: Sequence[float], multiplier: float = 1.5) -> float:
    """Fraction of values strictly above ``multiplier * Q3``."""

    array = _as_array(values)
    upper = quantile(array, 0.75)
    return float(np.mean(array > multiplier * upper))


def outlier_fraction_raw_iqr(values: Sequence[float], multiplier: float = 3.0) -> float:
    """Fraction of values strictly above ``multiplier * IQR``.

    The cut-off is the scaled IQR itself, not the ``Q3 + multiplier * IQR``
    fence, so the two outlier fractions are reported side by side and should
    not be read as the same rule.
    """

    array = _as_array(values)
    return float(np.mean(array > multiplier * interquartile_range(array)))


def log_transform(counts: pd.DataFrame) -> pd.DataFrame:
    """``log(count + 1)`` for display; never used as model input."""

    return np.log1p(counts.astype(float))


def row_mean_sd_summary(counts: pd.DataFrame) -> pd.DataFrame:
    """Per-peak mean and standard deviation across samples."""

    return pd.DataFrame(
        {
            "mean": counts.mean(axis=1),
            "sd": counts.std(axis=1, ddof=1),
        },
        index=counts.index,
    )


def sample_summary(counts: pd.DataFrame, probs: Sequence[float] = DEFAULT_QUANTILES) -> pd.DataFrame:
    """One row per sample: mean, SD, requested quantiles and outlier fractions."""

    rows = {}
    for sample in counts.columns:
        values = counts[sample].to_numpy(dtype=float)
        row = {
            "mean": mean(values),
            "sd": standard_deviation(values),
        }
        for p, q in zip(probs, np.atleast_1d(quantile(values, probs))):
            row[f"q{round(p * 100):g}"] = float(q)
        row["outliers_1.5xQ3"] = outlier_fraction_upper_quartile(values)
        row["outliers_3xIQR"] = outlier_fraction_raw_iqr(values)
        rows[sample] = row
    frame = pd.DataFrame.from_dict(rows, orient="index")
    frame.index.name = "sample"
    return frame


# ---------------------------------------------------------------------------
# Principal components
# ---------------------------------------------------------------------------


@dataclass
class PCAResult:
    """Sample scores, variance explained and per-peak loading weights."""

    scores: pd.DataFrame
    percent_variance: pd.Series
    loadings: pd.DataFrame

    @property
    def components(self) -> list[str]:
        return list(self.scores.columns)


def principal_components(
    normalized: pd.DataFrame,
    *,
    n_components: Optional[int] = None,
    log: bool = False,
    seed: int = 0,
) -> PCAResult:
    """PCA of samples (observations) over peaks (features).

    ``percent_variance`` is each component's share of the variance summed over
    all components, in rounded percent.  ``loadings`` holds absolute loadings
    rescaled to sum to one within each component.
    """

    if normalized.shape[1] < 2 or normalized.shape[0] < 1:
        raise InsufficientDataError(
            f"PCA needs at least two samples and one peak; matrix shape is {normalized.shape}"
        )

    data = log_transform(normalized) if log else normalized.astype(float)
    observations = data.T
    if float(observations.var(axis=0, ddof=1).sum()) <= 0:
        raise InsufficientDataError("Normalized counts have zero variance; PCA is undefined")

    pca = PCA(svd_solver="full", random_state=seed)
    scores = pca.fit_transform(observations.to_numpy())

    total = min(observations.shape)
    keep = total if n_components is None else max(1, min(n_components, total))
    names = [f"PC{i + 1}" for i in range(keep)]

    variance = pca.explained_variance_
    percent = np.round(100.0 * variance / variance.sum())

    weights = np.abs(pca.components_[:keep].T)
    sums = weights.sum(axis=0)
    sums[sums == 0] = 1.0

    LOGGER.info("PCA on %d samples x %d peaks", observations.shape[0], observations.shape[1])
    return PCAResult(
        scores=pd.DataFrame(scores[:, :keep], index=observations.index, columns=names),
        percent_variance=pd.Series(percent[:keep], index=names, name="percent_variance"),
        loadings=pd.DataFrame(weights / sums, index=observations.columns, columns=names),
    )


def top_loading_peaks(pca: PCAResult, component: str = "PC1", n: int = 100) -> pd.Index:
    """Peaks with the largest contribution to ``component``."""

    if component not in pca.loadings.columns:
        raise KeyError(f"Unknown principal component {component!r}")
    return pca.loadings[component].sort_values(ascending=False, kind="mergesort").head(n).index


# ---------------------------------------------------------------------------
# Multiple testing
# ---------------------------------------------------------------------------


def benjamini_hochberg(pvalues: pd.Series) -> pd.Series:
    """BH-adjusted p-values; missing inputs stay missing."""

    adjusted_all = pd.Series(np.nan, index=pvalues.index, dtype=float)
    mask = pvalues.notna().to_numpy()
    pvals = pvalues.to_numpy(dtype=float)[mask]
    n = len(pvals)
    if n == 0:
        return adjusted_all

    order = np.argsort(pvals, kind="mergesort")
    ranks = np.arange(1, n + 1, dtype=float)
    adjusted_sorted = pvals[order] * n / ranks
    adjusted_sorted = np.minimum.accumulate(adjusted_sorted[::-1])[::-1]

    adjusted = np.empty_like(adjusted_sorted)
    adjusted[order] = adjusted_sorted
    adjusted_all.iloc[np.flatnonzero(mask)] = np.clip(adjusted, 0, 1)
    return adjusted_all
