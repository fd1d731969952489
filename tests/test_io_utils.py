from __future__ import annotations

import pandas as pd
import pytest

from io_utils import FormatError, ensure_integer_columns, peak_names, read_whitespace_table, write_table


def test_read_whitespace_table_mixed_separators(tmp_path):
    path = tmp_path / "table.txt"
    path.write_text("a  b\tc\n1 2   3\n4\t5 6\n")
    frame = read_whitespace_table(path)
    assert list(frame.columns) == ["a", "b", "c"]
    assert frame["c"].tolist() == [3, 6]


def test_read_whitespace_table_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_whitespace_table(tmp_path / "absent.txt")


def test_read_whitespace_table_empty_file(tmp_path):
    path = tmp_path / "empty.txt"
    path.write_text("")
    with pytest.raises(FormatError):
        read_whitespace_table(path)


def test_ensure_integer_columns_rejects_fractions():
    frame = pd.DataFrame({"Start": [1.0, 2.5]})
    with pytest.raises(FormatError, match="whole numbers"):
        ensure_integer_columns(frame, ["Start"])


def test_ensure_integer_columns_rejects_text():
    frame = pd.DataFrame({"Start": ["10", "abc"]})
    with pytest.raises(FormatError, match="numeric"):
        ensure_integer_columns(frame, ["Start"])


def test_ensure_integer_columns_returns_copy():
    frame = pd.DataFrame({"Start": ["10", "20"]})
    result = ensure_integer_columns(frame, ["Start"])
    assert result["Start"].tolist() == [10, 20]
    assert frame["Start"].tolist() == ["10", "20"]


def test_peak_names():
    frame = pd.DataFrame({"Chromosome": ["chr1", "chrX"], "Start": [10, 200], "End": [50, 900]})
    assert peak_names(frame).tolist() == ["chr1:10-50", "chrX:200-900"]


def test_write_table_creates_parent(tmp_path):
    target = tmp_path / "nested" / "out.tsv"
    write_table(pd.Series([1, 2], name="x"), target)
    assert target.exists()
