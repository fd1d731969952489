#!/usr/bin/env python3
"""atacdiff.py

End-to-end pipeline for ATAC-seq peak count analysis.

The pipeline expects two whitespace-delimited inputs:

    counts      Header row, then one line per peak: chromosome, start, end
                followed by one raw read count per sample.
    metadata    No header, exactly three columns per line:
                sample, cell type, donor.

Example metadata::

    S1  CD4   donor1
    S2  CD4   donor2
    S3  CD8   donor1
    S4  CD8   donor2

The pipeline performs the following steps:

1. Loading and aligning the count matrix with the sample sheet.
2. Dropping peaks whose maximum count does not exceed a threshold.
3. Median-of-ratios size factors and normalised counts.
4. Exploratory statistics (per-sample distributions, mean/SD trend, PCA).
5. Differential analysis between two levels of a factor with a
   negative-binomial GLM (statsmodels) or PyDESeq2, tested against a
   log2 fold-change threshold.
6. Optional nearest-TSS annotation against a GTF file and Enrichr
   enrichment of the linked genes via gseapy.
7. Tables for MA and heatmap figures plus run metadata.

Dependencies: numpy, pandas, scipy, statsmodels, scikit-learn, pyranges,
pydeseq2 (optional engine), gseapy (optional enrichment).
"""
from __future__ import annotations

import argparse
import json
import logging
import math
import sys
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import pyranges as pr
import statsmodels.api as sm
from scipy import stats

try:
    from pydeseq2.dds import DeseqDataSet
    from pydeseq2.ds import DeseqStats
except ImportError:  # pragma: no cover - optional dependency
    DeseqDataSet = None  # type: ignore[assignment]
    DeseqStats = None  # type: ignore[assignment]

try:
    import gseapy
except ImportError:  # pragma: no cover - optional dependency
    gseapy = None

import count_stats
from count_stats import InsufficientDataError, benjamini_hochberg
from io_utils import (
    BED_COLUMNS,
    SAMPLE_COLUMNS,
    FormatError,
    ensure_integer_columns,
    peak_names,
    read_whitespace_table,
    write_table,
)

FACTORS: Tuple[str, str] = ("cell_type", "donor")
METHODS: Tuple[str, str] = ("glm", "pydeseq2")
DEFAULT_GENE_SETS: Tuple[str, ...] = ("GO_Biological_Process_2021",)
LN2 = math.log(2.0)


class ContrastError(ValueError):
    """Raised for an invalid comparison or a comparison group without samples."""


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SampleEntry:
    """Representation of a single sample entry from the metadata sheet."""

    sample: str
    cell_type: str
    donor: str

    def level(self, factor: str) -> str:
        if factor not in FACTORS:
            raise ContrastError(f"Unknown factor {factor!r}; expected one of {', '.join(FACTORS)}")
        return getattr(self, factor)


@dataclass(frozen=True)
class Contrast:
    """Two levels of a metadata factor compared against a log2 fold-change threshold."""

    level_a: str
    level_b: str
    factor: str = "cell_type"
    lfc_threshold: float = 1.0

    def __post_init__(self) -> None:
        if self.factor not in FACTORS:
            raise ContrastError(
                f"Unknown contrast factor {self.factor!r}; expected one of {', '.join(FACTORS)}"
            )
        if not str(self.level_a) or not str(self.level_b):
            raise ContrastError("Contrast levels must be non-empty")
        if self.level_a == self.level_b:
            raise ContrastError(f"Contrast levels must differ; both are {self.level_a!r}")
        if not math.isfinite(self.lfc_threshold) or self.lfc_threshold < 0:
            raise ContrastError(
                f"Log2 fold-change threshold must be a non-negative number; got {self.lfc_threshold}"
            )

    @property
    def label(self) -> str:
        return f"{self.factor}_{self.level_a}_vs_{self.level_b}"

    def swapped(self) -> "Contrast":
        return Contrast(self.level_b, self.level_a, self.factor, self.lfc_threshold)


@dataclass
class PipelineConfig:
    """Every tunable of a run; passed explicitly to each stage."""

    output_dir: Path = Path("results")
    contrast: Optional[Contrast] = None
    count_threshold: int = 50
    alpha: float = 0.05
    method: str = "glm"
    covariates: Tuple[str, ...] = ()
    min_dispersion: float = 1e-8
    max_dispersion: float = 10.0
    dispersion_shrinkage: float = 0.0
    pca_components: Optional[int] = None
    pca_log: bool = False
    top_loading: int = 100
    random_seed: int = 0
    link_distance: int = 5000
    gtf: Optional[Path] = None
    enrichr: bool = False
    enrichr_top: int = 200
    gene_sets: Tuple[str, ...] = DEFAULT_GENE_SETS

    def __post_init__(self) -> None:
        if self.method not in METHODS:
            raise ValueError(f"Unknown differential method {self.method!r}; expected one of {METHODS}")
        if self.count_threshold < 0:
            raise ValueError("Count threshold must be non-negative")
        if not 0 < self.alpha < 1:
            raise ValueError("alpha must lie strictly between 0 and 1")
        if not 0 <= self.dispersion_shrinkage <= 1:
            raise ValueError("Dispersion shrinkage weight must lie in [0, 1]")
        if self.link_distance < 0:
            raise ValueError("Link distance must be non-negative")

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["output_dir"] = str(self.output_dir)
        data["gtf"] = str(self.gtf) if self.gtf else None
        return data


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_count_matrix(path: Path) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Read a peak count table.

    Returns the interval table (``Chromosome``/``Start``/``End``) and the raw
    integer counts, both indexed by ``chrom:start-end`` peak names.
    """

    frame = read_whitespace_table(path, header=0, comment=None)
    # Headers naming only the samples make pandas move the coordinates into the index.
    if frame.index.nlevels == len(BED_COLUMNS):
        frame = frame.reset_index()
    if not isinstance(frame.index, pd.RangeIndex):
        raise FormatError(
            f"Count table {path} header does not match its rows: {len(frame.columns)} names"
            f" for {len(frame.columns) + frame.index.nlevels} fields"
        )

    if frame.shape[1] < len(BED_COLUMNS) + 1:
        raise FormatError(
            f"Count table {path} needs chromosome, start, end and at least one sample column;"
            f" found {frame.shape[1]} columns"
        )

    coords = frame.iloc[:, : len(BED_COLUMNS)].copy()
    coords.columns = list(BED_COLUMNS)
    coords["Chromosome"] = coords["Chromosome"].astype(str)
    coords = ensure_integer_columns(coords, ("Start", "End"))
    if (coords["End"] <= coords["Start"]).any():
        raise FormatError(f"Count table {path} contains peaks with end <= start")

    names = peak_names(coords)
    duplicated = names[names.duplicated()]
    if len(duplicated):
        raise FormatError(f"Count table {path} lists duplicate peaks: {', '.join(duplicated[:5])}")
    coords.index = names

    counts = frame.iloc[:, len(BED_COLUMNS):].copy()
    counts.columns = [str(col) for col in counts.columns]
    if counts.isna().any().any():
        raise FormatError(f"Count table {path} has missing count cells")
    counts = ensure_integer_columns(counts, counts.columns)
    if (counts < 0).any().any():
        raise FormatError(f"Count table {path} contains negative counts")
    counts.index = names
    counts.columns.name = "sample"

    logging.info("Loaded %d peaks x %d samples from %s", counts.shape[0], counts.shape[1], path)
    return coords, counts


def load_samples(metadata_path: Path) -> List[SampleEntry]:
    frame = read_whitespace_table(metadata_path, header=None, dtype=str)
    if frame.shape[1] != len(SAMPLE_COLUMNS):
        raise FormatError(
            f"Metadata file {metadata_path} must have exactly {len(SAMPLE_COLUMNS)} columns"
            f" ({', '.join(SAMPLE_COLUMNS)}); found {frame.shape[1]}"
        )
    frame.columns = list(SAMPLE_COLUMNS)
    missing = [col for col in SAMPLE_COLUMNS if frame[col].isna().any()]
    if missing:
        raise FormatError(f"Metadata file {metadata_path} has rows missing: {', '.join(missing)}")

    duplicated = frame.loc[frame["sample"].duplicated(), "sample"].tolist()
    if duplicated:
        raise FormatError(f"Metadata file {metadata_path} repeats samples: {', '.join(duplicated)}")

    return [
        SampleEntry(sample=row.sample, cell_type=row.cell_type, donor=row.donor)
        for row in frame.itertuples(index=False)
    ]


def align_samples(
    counts: pd.DataFrame, samples: Sequence[SampleEntry]
) -> Tuple[pd.DataFrame, List[SampleEntry]]:
    """Order ``samples`` like the count columns; every column needs a metadata row."""

    by_name = {entry.sample: entry for entry in samples}
    missing = [col for col in counts.columns if col not in by_name]
    if missing:
        raise FormatError(f"Samples missing from metadata: {', '.join(missing)}")

    unused = [name for name in by_name if name not in set(counts.columns)]
    if unused:
        logging.warning("Ignoring metadata for samples without counts: %s", ", ".join(unused))

    return counts, [by_name[col] for col in counts.columns]


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------


def filter_peaks(counts: pd.DataFrame, threshold: int = 50) -> pd.DataFrame:
    """Keep peaks whose maximum count across samples is strictly above ``threshold``."""

    keep = counts.max(axis=1) > threshold
    filtered = counts.loc[keep].copy()
    logging.info(
        "Kept %d of %d peaks with max count > %d", len(filtered), len(counts), threshold
    )
    return filtered


# ---------------------------------------------------------------------------
# Differential analysis utilities
# ---------------------------------------------------------------------------


def sample_frame(samples: Sequence[SampleEntry]) -> pd.DataFrame:
    return pd.DataFrame([asdict(entry) for entry in samples]).set_index("sample")


def build_design(
    samples: Sequence[SampleEntry], contrast: Contrast, covariates: Sequence[str] = ()
) -> pd.DataFrame:
    """Design matrix with ``contrast.level_b`` as the reference level.

    The first non-intercept column is the ``level_a`` indicator.
    """

    obs = sample_frame(samples)
    levels = obs[contrast.factor]
    for level in (contrast.level_a, contrast.level_b):
        if not (levels == level).any():
            raise ContrastError(f"No samples with {contrast.factor} == {level!r}")

    design = pd.DataFrame({"intercept": 1.0}, index=obs.index)
    others = [lvl for lvl in dict.fromkeys(levels) if lvl not in (contrast.level_a, contrast.level_b)]
    for level in [contrast.level_a, *others]:
        design[f"{contrast.factor}[{level}]"] = (levels == level).astype(float)

    for covariate in covariates:
        if covariate not in FACTORS or covariate == contrast.factor:
            raise ContrastError(f"Invalid covariate {covariate!r} for contrast on {contrast.factor}")
        cov_levels = list(dict.fromkeys(obs[covariate]))
        for level in cov_levels[1:]:
            design[f"{covariate}[{level}]"] = (obs[covariate] == level).astype(float)

    rank = np.linalg.matrix_rank(design.to_numpy())
    if rank < design.shape[1]:
        raise ContrastError(
            f"Design ({', '.join(design.columns)}) is not full rank; covariates are confounded"
        )
    return design


def fit_dispersion_trend(
    means: np.ndarray, dispersions: np.ndarray, floor: float
) -> Optional[np.ndarray]:
    """Least-squares fit of ``a0 + a1 / mean`` evaluated at every peak."""

    usable = (means > 0) & (dispersions > floor)
    if usable.sum() < 3:
        logging.warning("Too few peaks with positive dispersion to fit a trend; skipping shrinkage")
        return None

    X = np.column_stack([np.ones(int(usable.sum())), 1.0 / means[usable]])
    (a0, a1), *_ = np.linalg.lstsq(X, dispersions[usable], rcond=None)
    a0, a1 = max(a0, 0.0), max(a1, 0.0)
    if a0 == 0 and a1 == 0:
        logging.warning("Dispersion trend collapsed to zero; skipping shrinkage")
        return None
    logging.info("Dispersion trend: %.4g + %.4g / mean", a0, a1)
    with np.errstate(divide="ignore"):
        trend = a0 + a1 / means
    return np.where(np.isfinite(trend), np.maximum(trend, floor), floor)


def estimate_dispersions(
    counts: pd.DataFrame,
    size_factors: pd.Series,
    design: pd.DataFrame,
    config: PipelineConfig,
) -> pd.Series:
    """Per-peak method-of-moments dispersion, optionally shrunk toward a trend.

    Means come from a least-squares fit of the normalised counts on the design.
    """

    y = counts.to_numpy(dtype=float)
    sf = size_factors.reindex(counts.columns).to_numpy(dtype=float)
    X = design.loc[counts.columns].to_numpy(dtype=float)
    n_samples, rank = X.shape[0], np.linalg.matrix_rank(X)
    residual_df = n_samples - rank
    if residual_df <= 0:
        raise InsufficientDataError(
            f"{n_samples} samples leave no residual degrees of freedom for {rank} design terms"
        )

    normalized = y / sf
    hat = X @ np.linalg.pinv(X)
    mu = np.clip(normalized @ hat.T, 0.0, None) * sf

    numerator = ((y - mu) ** 2 - mu).sum(axis=1)
    denominator = (mu ** 2).sum(axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        raw = numerator / denominator * n_samples / residual_df
    raw = np.where(np.isfinite(raw), raw, config.min_dispersion)
    dispersions = np.clip(raw, config.min_dispersion, config.max_dispersion)

    if config.dispersion_shrinkage > 0:
        trend = fit_dispersion_trend(normalized.mean(axis=1), dispersions, config.min_dispersion)
        if trend is not None:
            w = config.dispersion_shrinkage
            dispersions = np.exp((1 - w) * np.log(dispersions) + w * np.log(trend))

    return pd.Series(dispersions, index=counts.index, name="dispersion")


def threshold_wald_test(
    lfc: np.ndarray, se: np.ndarray, threshold: float
) -> Tuple[np.ndarray, np.ndarray]:
    """Wald statistic and p-value for ``|lfc| > threshold`` (``lfc != 0`` at zero)."""

    lfc = np.asarray(lfc, dtype=float)
    se = np.asarray(se, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        if threshold > 0:
            excess = np.abs(lfc) - threshold
            stat = np.sign(lfc) * np.maximum(excess, 0.0) / se
            pvalues = np.minimum(1.0, 2.0 * stats.norm.sf(excess / se))
        else:
            stat = lfc / se
            pvalues = 2.0 * stats.norm.sf(np.abs(stat))
    return stat, pvalues


def _fit_peak(
    y: np.ndarray, X: np.ndarray, offset: np.ndarray, dispersion: float
) -> Tuple[float, float]:
    model = sm.GLM(y, X, family=sm.families.NegativeBinomial(alpha=dispersion), offset=offset)
    fit = model.fit(maxiter=100)
    return float(fit.params[1]), float(fit.bse[1])


def glm_differential(
    counts: pd.DataFrame,
    size_factors: pd.Series,
    samples: Sequence[SampleEntry],
    contrast: Contrast,
    config: PipelineConfig,
) -> pd.DataFrame:
    """Negative-binomial GLM per peak with a thresholded Wald test on log2 scale."""

    logging.info("Running negative-binomial GLM differential analysis for %s", contrast.label)
    design = build_design(samples, contrast, config.covariates)
    dispersions = estimate_dispersions(counts, size_factors, design, config)

    sf = size_factors.reindex(counts.columns)
    offset = np.log(sf.to_numpy(dtype=float))
    X = design.loc[counts.columns].to_numpy(dtype=float)
    levels = sample_frame(samples)[contrast.factor].reindex(counts.columns)
    in_contrast = levels.isin([contrast.level_a, contrast.level_b]).to_numpy()

    n = len(counts)
    beta = np.full(n, np.nan)
    beta_se = np.full(n, np.nan)
    values = counts.to_numpy(dtype=float)
    untestable = 0
    for i in range(n):
        y = values[i]
        if y[in_contrast].sum() == 0:
            untestable += 1
            continue
        try:
            b, se = _fit_peak(y, X, offset, float(dispersions.iloc[i]))
        except (np.linalg.LinAlgError, ValueError, FloatingPointError) as exc:
            logging.debug("GLM fit failed for peak %s: %s", counts.index[i], exc)
            untestable += 1
            continue
        if not (math.isfinite(b) and math.isfinite(se) and se > 0):
            untestable += 1
            continue
        beta[i], beta_se[i] = b, se
    if untestable:
        logging.info("%d peaks could not be tested and are reported as NA", untestable)

    lfc = beta / LN2
    lfc_se = beta_se / LN2
    wald, pvalues = threshold_wald_test(lfc, lfc_se, contrast.lfc_threshold)

    result = pd.DataFrame(index=counts.index)
    result["baseMean"] = count_stats.normalize_counts(counts, size_factors).mean(axis=1)
    result["log2FC"] = lfc
    result["lfcSE"] = lfc_se
    result["dispersion"] = dispersions
    result["waldStat"] = wald
    result["pvalue"] = pvalues
    result["padj"] = benjamini_hochberg(result["pvalue"])
    result["method"] = "glm"
    return result


def pydeseq2_differential(
    counts: pd.DataFrame,
    samples: Sequence[SampleEntry],
    contrast: Contrast,
    config: PipelineConfig,
) -> pd.DataFrame:
    if DeseqDataSet is None or DeseqStats is None:
        raise ImportError("pydeseq2 is required for the DESeq2 workflow but is not installed")

    logging.info("Running PyDESeq2 differential analysis for %s", contrast.label)
    build_design(samples, contrast, config.covariates)

    obs = sample_frame(samples).loc[counts.columns]
    factors = [*config.covariates, contrast.factor]
    metadata = pd.DataFrame({name: obs[name].astype("category") for name in factors}, index=obs.index)
    dds = DeseqDataSet(
        counts=counts.T.astype(int), metadata=metadata, design="~" + " + ".join(factors)
    )
    dds.deseq2()

    test_kwargs: Dict[str, object] = {}
    if contrast.lfc_threshold > 0:
        test_kwargs = {"lfc_null": contrast.lfc_threshold, "alt_hypothesis": "greaterAbs"}
    ds = DeseqStats(
        dds,
        contrast=[contrast.factor, contrast.level_a, contrast.level_b],
        alpha=config.alpha,
        **test_kwargs,
    )
    ds.summary()
    res = ds.results_df.copy()

    result = pd.DataFrame(index=counts.index)
    result["baseMean"] = res["baseMean"]
    result["log2FC"] = res["log2FoldChange"]
    result["lfcSE"] = res["lfcSE"]
    result["dispersion"] = dds.var["dispersions"]
    result["waldStat"] = res["stat"]
    result["pvalue"] = res["pvalue"]
    result["padj"] = benjamini_hochberg(result["pvalue"])
    result["method"] = "pydeseq2"
    return result


def differential_test(
    counts: pd.DataFrame,
    size_factors: pd.Series,
    samples: Sequence[SampleEntry],
    contrast: Contrast,
    config: PipelineConfig,
) -> pd.DataFrame:
    """Select and run the configured differential analysis workflow."""

    if counts.empty:
        raise InsufficientDataError("Counts matrix is empty; cannot perform differential analysis")
    if config.method == "pydeseq2":
        return pydeseq2_differential(counts, samples, contrast, config)
    return glm_differential(counts, size_factors, samples, contrast, config)


def significant_mask(results: pd.DataFrame, alpha: float) -> pd.Series:
    return (results["padj"] < alpha).fillna(False).astype(bool)


def rank_differential(results: pd.DataFrame, alpha: Optional[float] = None) -> pd.Index:
    """Testable peaks ordered by adjusted p-value, optionally only significant ones."""

    ranked = results.dropna(subset=["padj"])
    if alpha is not None:
        ranked = ranked.loc[significant_mask(ranked, alpha)]
    return ranked.sort_values("padj", kind="mergesort").index


# ---------------------------------------------------------------------------
# Plot data
# ---------------------------------------------------------------------------


def ma_plot_data(results: pd.DataFrame, alpha: float = 0.05) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "baseMean": results["baseMean"],
            "log2FC": results["log2FC"],
            "significant": significant_mask(results, alpha),
        },
        index=results.index,
    )


def heatmap_data(normalized: pd.DataFrame, results: pd.DataFrame, alpha: float = 0.05) -> pd.DataFrame:
    """Row-centred normalised counts of significant peaks, most significant first."""

    top = rank_differential(results, alpha)
    data = normalized.loc[top]
    return data.sub(data.mean(axis=1), axis=0)


# ---------------------------------------------------------------------------
# Annotation and enrichment
# ---------------------------------------------------------------------------


def tss_from_genes(genes: pd.DataFrame, gene_column: str = "gene_name") -> pr.PyRanges:
    """1-bp TSS intervals for BED-style gene records carrying a ``Strand`` column."""

    strand = genes["Strand"].astype(str).to_numpy()
    starts = genes["Start"].to_numpy(dtype=int)
    ends = genes["End"].to_numpy(dtype=int)
    tss = np.where(strand == "-", ends - 1, starts)
    frame = pd.DataFrame(
        {
            "Chromosome": genes["Chromosome"].astype(str).to_numpy(),
            "Start": tss,
            "End": tss + 1,
            "GeneId": genes[gene_column].astype(str).to_numpy(),
            "TSSStrand": strand,
        }
    )
    return pr.PyRanges(frame)


def load_tss(gtf_path: Path) -> pr.PyRanges:
    logging.info("Loading gene models from GTF: %s", gtf_path)
    if not gtf_path.exists():
        raise FileNotFoundError(f"GTF file not found: {gtf_path}")
    gtf = pr.read_gtf(str(gtf_path))
    genes = gtf[gtf.Feature == "gene"].df
    if genes.empty:
        raise FormatError(f"GTF {gtf_path} contains no gene records")
    gene_column = "gene_name" if "gene_name" in genes.columns else "gene_id"
    return tss_from_genes(genes, gene_column)


def _signed_tss_distance(row: pd.Series) -> int:
    start, end, tss = int(row["Start"]), int(row["End"]), int(row["Start_b"])
    if start <= tss < end:
        return 0
    distance = start - tss if start > tss else -(tss - end + 1)
    return -distance if row["TSSStrand"] == "-" else distance


def nearest_gene(intervals: pd.DataFrame, tss: pr.PyRanges) -> pd.DataFrame:
    """Nearest TSS per peak with signed distance (negative = upstream of the TSS)."""

    annotation = intervals[list(BED_COLUMNS)].copy()
    annotation["NearestGene"] = pd.Series(dtype=object)
    annotation["Distance"] = np.nan
    if intervals.empty:
        return annotation

    peaks = intervals[list(BED_COLUMNS)].rename_axis("Peak").reset_index()
    peaks["Chromosome"] = peaks["Chromosome"].astype(str)
    df = pr.PyRanges(peaks).nearest(tss).df
    if df.empty:
        logging.warning("No peak shares a chromosome with the gene annotation")
        return annotation

    df["Distance"] = df.apply(_signed_tss_distance, axis=1)
    df["absDistance"] = df["Distance"].abs()
    df = df.sort_values(["Peak", "absDistance"], kind="mergesort").drop_duplicates("Peak")
    df = df.set_index("Peak")
    annotation["NearestGene"] = df["GeneId"].reindex(annotation.index)
    annotation["Distance"] = df["Distance"].reindex(annotation.index)
    return annotation


def linked_genes(
    ranked_peaks: Sequence[str], annotation: pd.DataFrame, max_distance: int = 5000
) -> List[str]:
    """Unique genes, in peak rank order, whose TSS lies within ``max_distance``."""

    subset = annotation.reindex(list(ranked_peaks)).dropna(subset=["NearestGene", "Distance"])
    subset = subset.loc[subset["Distance"].abs() <= max_distance]
    return list(dict.fromkeys(subset["NearestGene"].astype(str)))


def run_enrichr(
    genes: Sequence[str],
    out_dir: Path,
    gene_sets: Sequence[str] = DEFAULT_GENE_SETS,
) -> Optional[pd.DataFrame]:
    """Enrichr pathways for ``genes`` ranked by adjusted p-value."""

    if gseapy is None:
        logging.warning("gseapy not available; skipping enrichment analysis")
        return None
    out_dir.mkdir(parents=True, exist_ok=True)
    try:
        enr = gseapy.enrichr(
            gene_list=list(genes),
            gene_sets=list(gene_sets),
            outdir=str(out_dir),
            cutoff=0.5,
            no_plot=True,
        )
    except Exception as exc:  # pragma: no cover - network dependent
        logging.warning("Enrichr analysis failed: %s", exc)
        return None
    results = enr.results.copy()
    return results.sort_values("Adjusted P-value", kind="mergesort").reset_index(drop=True)


# ---------------------------------------------------------------------------
# Metadata persistence
# ---------------------------------------------------------------------------


def save_metadata(metadata: Dict, output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w") as fh:
        json.dump(metadata, fh, indent=2)


# ---------------------------------------------------------------------------
# Main pipeline
# ---------------------------------------------------------------------------


def run_pipeline(config: PipelineConfig, counts_path: Path, metadata_path: Path) -> Dict[str, Path]:
    results_dir = Path(config.output_dir)
    results_dir.mkdir(parents=True, exist_ok=True)
    outputs: Dict[str, Path] = {}

    intervals, raw_counts = load_count_matrix(counts_path)
    raw_counts, samples = align_samples(raw_counts, load_samples(metadata_path))

    counts = filter_peaks(raw_counts, config.count_threshold)
    if counts.empty:
        raise InsufficientDataError(
            f"No peak has a count above {config.count_threshold}; nothing left to analyse"
        )
    outputs["filtered_counts"] = write_table(counts, results_dir / "filtered_counts.tsv")

    size_factors = count_stats.estimate_size_factors(counts)
    normalized = count_stats.normalize_counts(counts, size_factors)
    outputs["size_factors"] = write_table(size_factors, results_dir / "size_factors.tsv")
    outputs["normalized_counts"] = write_table(normalized, results_dir / "normalized_counts.tsv")

    explore_dir = results_dir / "explore"
    outputs["sample_summary"] = write_table(
        count_stats.sample_summary(counts), explore_dir / "sample_summary.tsv"
    )
    outputs["mean_sd"] = write_table(
        count_stats.row_mean_sd_summary(normalized), explore_dir / "peak_mean_sd.tsv"
    )
    pca = count_stats.principal_components(
        normalized,
        n_components=config.pca_components,
        log=config.pca_log,
        seed=config.random_seed,
    )
    outputs["pca_scores"] = write_table(pca.scores, explore_dir / "pca_scores.tsv")
    outputs["pca_variance"] = write_table(pca.percent_variance, explore_dir / "pca_variance.tsv")
    outputs["pca_loadings"] = write_table(pca.loadings, explore_dir / "pca_loadings.tsv")
    logging.info(
        "Variance explained: %s",
        ", ".join(f"{pc}={pct:.0f}%" for pc, pct in pca.percent_variance.head(3).items()),
    )

    annotation: Optional[pd.DataFrame] = None
    if config.gtf:
        annotation = nearest_gene(intervals.loc[counts.index], load_tss(Path(config.gtf)))
        outputs["annotation"] = write_table(annotation, results_dir / "peak_annotation.tsv")
        top_pc1 = count_stats.top_loading_peaks(pca, pca.components[0], config.top_loading)
        pc1_genes = linked_genes(top_pc1, annotation, config.link_distance)
        outputs["pc1_genes"] = write_table(
            pd.Series(pc1_genes, name="gene", dtype=object),
            explore_dir / "pc1_linked_genes.tsv",
            index=False,
        )

    results: Optional[pd.DataFrame] = None
    enrichr_table: Optional[pd.DataFrame] = None
    if config.contrast is not None:
        results = differential_test(counts, size_factors, samples, config.contrast, config)
        if annotation is not None:
            results = results.join(annotation[["NearestGene", "Distance"]])
        outputs["differential"] = write_table(results, results_dir / "differential_results.tsv")
        outputs["ma_data"] = write_table(
            ma_plot_data(results, config.alpha), results_dir / "plots" / "ma_plot_data.tsv"
        )
        outputs["heatmap_data"] = write_table(
            heatmap_data(normalized, results, config.alpha),
            results_dir / "plots" / "heatmap_data.tsv",
        )
        n_significant = int(significant_mask(results, config.alpha).sum())
        logging.info(
            "%d peaks significant at padj < %.3g for %s", n_significant, config.alpha,
            config.contrast.label,
        )

        if config.enrichr:
            if annotation is None:
                logging.warning("Annotation required for Enrichr; provide --gtf to map peaks to genes")
            else:
                ranked = rank_differential(results, config.alpha)[: config.enrichr_top]
                genes = linked_genes(ranked, annotation, config.link_distance)
                if not genes:
                    logging.warning("No genes linked to significant peaks; skipping Enrichr")
                else:
                    enrichr_table = run_enrichr(genes, results_dir / "enrichr", config.gene_sets)
                    if enrichr_table is not None:
                        outputs["enrichr"] = write_table(
                            enrichr_table, results_dir / "enrichr" / "pathways.tsv", index=False
                        )

    metadata = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "config": config.to_dict(),
        "counts": str(counts_path),
        "metadata_sheet": str(metadata_path),
        "samples": [asdict(entry) for entry in samples],
        "peaks_loaded": int(len(raw_counts)),
        "peaks_retained": int(len(counts)),
        "size_factors": {name: float(value) for name, value in size_factors.items()},
        "outputs": {key: str(path) for key, path in outputs.items()},
    }
    save_metadata(metadata, results_dir / "metadata.json")
    outputs["metadata"] = results_dir / "metadata.json"
    return outputs


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("counts", help="Peak count table (chrom start end sample...)")
    parser.add_argument("metadata", help="Sample sheet without header (sample cell_type donor)")
    parser.add_argument("--output-dir", default="results", help="Output directory")
    parser.add_argument(
        "--count-threshold",
        type=int,
        default=50,
        help="Keep peaks whose maximum count exceeds this value",
    )
    parser.add_argument("--pca-components", type=int, default=None, help="Principal components to report")
    parser.add_argument("--pca-log", action="store_true", help="Run PCA on log(count + 1)")
    parser.add_argument("--top-loading", type=int, default=100, help="Top PC1 peaks to link to genes")
    parser.add_argument("--seed", type=int, default=0, help="Random seed for stochastic steps")
    parser.add_argument("--gtf", help="Optional GTF file for nearest-gene annotation")
    parser.add_argument(
        "--link-distance",
        type=int,
        default=5000,
        help="Maximum peak-TSS distance (bp) for linking a peak to a gene",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="atacdiff",
        description="ATAC-seq peak count exploration and differential analysis",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run",
        help="Run the full pipeline including the differential test",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    add_common_arguments(run_parser)
    run_parser.add_argument("--level-a", required=True, help="Numerator level of the contrast")
    run_parser.add_argument("--level-b", required=True, help="Reference level of the contrast")
    run_parser.add_argument("--factor", choices=FACTORS, default="cell_type", help="Contrast factor")
    run_parser.add_argument(
        "--lfc-threshold",
        type=float,
        default=1.0,
        help="Absolute log2 fold-change tested against (0 tests against no change)",
    )
    run_parser.add_argument("--alpha", type=float, default=0.05, help="Adjusted p-value cutoff")
    run_parser.add_argument("--method", choices=METHODS, default="glm", help="Differential engine")
    run_parser.add_argument(
        "--covariate",
        action="append",
        choices=FACTORS,
        default=[],
        help="Additional design factor (repeatable)",
    )
    run_parser.add_argument(
        "--dispersion-shrinkage",
        type=float,
        default=0.0,
        help="Weight of the fitted dispersion trend (0 keeps per-peak estimates)",
    )
    run_parser.add_argument("--enrichr", action="store_true", help="Run Enrichr on genes near significant peaks")
    run_parser.add_argument("--enrichr-top", type=int, default=200, help="Number of top peaks for enrichment")
    run_parser.add_argument(
        "--gene-sets",
        nargs="+",
        default=list(DEFAULT_GENE_SETS),
        help="Enrichr libraries to test",
    )

    explore_parser = subparsers.add_parser(
        "explore",
        help="Filter, normalise and summarise counts without a differential test",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    add_common_arguments(explore_parser)

    return parser


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    differential: Dict[str, object] = {}
    if args.command == "run":
        differential = {
            "contrast": Contrast(args.level_a, args.level_b, args.factor, args.lfc_threshold),
            "alpha": args.alpha,
            "method": args.method,
            "covariates": tuple(args.covariate),
            "dispersion_shrinkage": args.dispersion_shrinkage,
            "enrichr": args.enrichr,
            "enrichr_top": args.enrichr_top,
            "gene_sets": tuple(args.gene_sets),
        }
    return PipelineConfig(
        output_dir=Path(args.output_dir),
        count_threshold=args.count_threshold,
        pca_components=args.pca_components,
        pca_log=args.pca_log,
        top_loading=args.top_loading,
        random_seed=args.seed,
        link_distance=args.link_distance,
        gtf=Path(args.gtf) if args.gtf else None,
        **differential,
    )


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="[%(asctime)s] %(levelname)s: %(message)s",
    )

    try:
        config = config_from_args(args)
        outputs = run_pipeline(config, Path(args.counts), Path(args.metadata))
    except Exception as exc:  # pragma: no cover - CLI exception reporting
        logging.error("Pipeline failed: %s", exc)
        sys.exit(1)
    logging.info("Wrote %d outputs to %s", len(outputs), config.output_dir)


if __name__ == "__main__":
    main()
