"""
Tests for tbiome.quality_control – FastQC/MultiQC wrappers and read tracking.
"""

import logging

import pandas as pd
import pytest

import tbiome.quality_control as qc
from tbiome.quality_control import (
    TRACKING_COLUMNS,
    flag_low_retention,
    quality_control,
    run_fastqc,
    track_reads,
)


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture()
def filter_counts():
    return pd.DataFrame(
        {"reads.in": [1000, 1000, 800], "reads.out": [900, 400, 0]},
        index=pd.Index(["S1", "S2", "S3"], name="sample"),
    )


@pytest.fixture()
def dada2_counts():
    return pd.DataFrame(
        {
            "denoisedF": [880, 390],
            "denoisedR": [870, 385],
            "merged": [850, 300],
            "tabled": [850, 300],
            "nonchim": [800, 280],
        },
        index=pd.Index(["S1", "S2"], name="sample"),
    )


# ── run_fastqc ────────────────────────────────────────────────────────────────

def test_run_fastqc_missing_input(tmp_path):
    with pytest.raises(FileNotFoundError):
        run_fastqc([str(tmp_path / "missing.fastq.gz")], str(tmp_path / "qc"))
    assert not (tmp_path / "qc").exists()


def test_quality_control_runs_fastqc_then_multiqc(tmp_path, monkeypatch):
    fq = tmp_path / "S1_R1.fastq.gz"
    fq.write_bytes(b"")
    calls = []
    monkeypatch.setattr(qc.subprocess, "run", lambda cmd, **kwargs: calls.append(cmd))

    report_dir = quality_control([str(fq)], str(tmp_path / "qc"), threads=2)

    assert [c[0] for c in calls] == ["fastqc", "multiqc"]
    assert calls[0][calls[0].index("--threads") + 1] == "2"
    assert str(fq) in calls[0]
    assert calls[1][1] == str(tmp_path / "qc" / "fastqc")
    assert report_dir == str(tmp_path / "qc" / "multiqc")


# ── track_reads ───────────────────────────────────────────────────────────────

def test_track_reads_columns(filter_counts, dada2_counts):
    tracking = track_reads(filter_counts, dada2_counts)
    assert list(tracking.columns) == TRACKING_COLUMNS + ["retained"]
    assert tracking.index.name == "sample"


def test_track_reads_values(filter_counts, dada2_counts):
    tracking = track_reads(filter_counts, dada2_counts)
    assert tracking.loc["S1", "filtered"] == 900
    assert tracking.loc["S1", "tabled"] == 850
    assert tracking.loc["S1", "nonchim"] == 800
    assert tracking.loc["S1", "retained"] == pytest.approx(0.8)


def test_track_reads_sample_dropped_before_denoising(filter_counts, dada2_counts):
    tracking = track_reads(filter_counts, dada2_counts)
    assert tracking.loc["S3", "denoisedF"] == 0
    assert tracking.loc["S3", "retained"] == 0.0
    assert tracking["nonchim"].dtype.kind == "i"


def test_track_reads_zero_input():
    fc = pd.DataFrame({"reads.in": [0], "reads.out": [0]}, index=["S1"])
    dc = pd.DataFrame({"denoisedF": [0], "denoisedR": [0], "merged": [0], "tabled": [0],
                       "nonchim": [0]}, index=["S1"])
    assert track_reads(fc, dc).loc["S1", "retained"] == 0.0


# ── flag_low_retention ────────────────────────────────────────────────────────

def test_flag_low_retention(filter_counts, dada2_counts, caplog):
    tracking = track_reads(filter_counts, dada2_counts)
    with caplog.at_level(logging.WARNING):
        flagged = flag_low_retention(tracking, min_fraction=0.5)

    assert flagged == ["S2", "S3"]
    # S2 loses most reads at filtering, S3 loses all of them there
    assert "largest loss at 'filtered'" in caplog.text
    assert "S1" not in caplog.text


def test_flag_low_retention_threshold(filter_counts, dada2_counts):
    tracking = track_reads(filter_counts, dada2_counts)
    assert flag_low_retention(tracking, min_fraction=0.0) == []
    assert flag_low_retention(tracking, min_fraction=0.9) == ["S1", "S2", "S3"]


def test_flag_low_retention_chimera_loss(caplog):
    fc = pd.DataFrame({"reads.in": [1000], "reads.out": [950]}, index=["S1"])
    dc = pd.DataFrame({"denoisedF": [940], "denoisedR": [940], "merged": [900],
                       "tabled": [900], "nonchim": [300]}, index=["S1"])
    with caplog.at_level(logging.WARNING):
        assert flag_low_retention(track_reads(fc, dc)) == ["S1"]
    assert "largest loss at 'nonchim'" in caplog.text
