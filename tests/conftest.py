from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from atacdiff import SampleEntry

SCENARIO_COUNTS = {
    ("chr1", 100, 600): [100, 110, 10, 12],
    ("chr1", 1000, 1500): [200, 205, 198, 202],
    ("chr1", 2000, 2500): [300, 295, 305, 299],
    ("chr2", 100, 400): [150, 148, 152, 151],
    ("chr2", 800, 1200): [80, 82, 79, 81],
    ("chr3", 50, 300): [5, 3, 7, 2],
}
SCENARIO_SAMPLES = [
    ("S1", "X", "d1"),
    ("S2", "X", "d2"),
    ("S3", "Y", "d1"),
    ("S4", "Y", "d2"),
]


def write_counts(path: Path, rows: dict, samples: list[str]) -> Path:
    lines = ["chrom\tstart\tend\t" + "\t".join(samples)]
    for (chrom, start, end), values in rows.items():
        lines.append("\t".join([chrom, str(start), str(end), *map(str, values)]))
    path.write_text("\n".join(lines) + "\n")
    return path


def write_metadata(path: Path, rows: list[tuple[str, str, str]]) -> Path:
    path.write_text("\n".join(" ".join(row) for row in rows) + "\n")
    return path


@pytest.fixture
def scenario_files(tmp_path: Path) -> tuple[Path, Path]:
    counts = write_counts(tmp_path / "counts.txt", SCENARIO_COUNTS, [s[0] for s in SCENARIO_SAMPLES])
    metadata = write_metadata(tmp_path / "samples.txt", SCENARIO_SAMPLES)
    return counts, metadata


@pytest.fixture
def scenario_counts() -> pd.DataFrame:
    index = [f"{c}:{s}-{e}" for c, s, e in SCENARIO_COUNTS]
    return pd.DataFrame(
        list(SCENARIO_COUNTS.values()), index=index, columns=[s[0] for s in SCENARIO_SAMPLES]
    )


@pytest.fixture
def scenario_samples() -> list[SampleEntry]:
    return [SampleEntry(*row) for row in SCENARIO_SAMPLES]
