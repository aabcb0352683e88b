"""
Tests for tbiome.filtering – primer handling and read filtering.
"""

import json
import logging
import subprocess

import pytest

import tbiome.filtering as filtering
from tbiome.filtering import (
    PRIMERS,
    filter_and_trim,
    filtered_samples,
    load_filter_counts,
    remove_primers,
    remove_primers_samples,
    resolve_primers,
    reverse_complement,
)


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture()
def paired_reads(tmp_path):
    r1 = tmp_path / "S1_R1.fastq.gz"
    r2 = tmp_path / "S1_R2.fastq.gz"
    r1.write_bytes(b"")
    r2.write_bytes(b"")
    return str(r1), str(r2)


def _write_counts(path, rows):
    lines = ["sample\treads.in\treads.out\tr1\tr2"]
    lines += ["\t".join(str(v) for v in row) for row in rows]
    path.write_text("\n".join(lines) + "\n")


# ── Primers ───────────────────────────────────────────────────────────────────

def test_primers_contains_v4():
    assert "515F_806R" in PRIMERS
    assert PRIMERS["515F_806R"]["region"] == "V4"


def test_all_primer_sets_have_both_primers():
    for name, primers in PRIMERS.items():
        assert primers["forward"], name
        assert primers["reverse"], name


def test_reverse_complement_simple():
    assert reverse_complement("AACG") == "CGTT"


def test_reverse_complement_ambiguity_codes():
    # Y<->R, M<->K, N stays N
    assert reverse_complement("GTGYCAGCMN") == "NKGCTGRCAC"


def test_reverse_complement_is_involution():
    seq = PRIMERS["341F_806R"]["forward"]
    assert reverse_complement(reverse_complement(seq)) == seq


def test_resolve_primers_named_set():
    assert resolve_primers("27F_338R") == (
        PRIMERS["27F_338R"]["forward"], PRIMERS["27F_338R"]["reverse"]
    )


def test_resolve_primers_explicit_override():
    assert resolve_primers("515F_806R", "ACGT", "TTTT") == ("ACGT", "TTTT")


def test_resolve_primers_unknown_set():
    with pytest.raises(ValueError, match="Unknown primer set"):
        resolve_primers("V9")


# ── remove_primers ────────────────────────────────────────────────────────────

def test_remove_primers_missing_input(tmp_path):
    with pytest.raises(FileNotFoundError):
        remove_primers("S1", str(tmp_path / "a.fq"), str(tmp_path / "b.fq"),
                       str(tmp_path / "out"), "ACGT", "TTGG")


def test_remove_primers_builds_cutadapt_command(tmp_path, monkeypatch, paired_reads):
    calls = []
    monkeypatch.setattr(filtering.subprocess, "run",
                        lambda cmd, **kwargs: calls.append(cmd))

    out_dir = str(tmp_path / "trimmed")
    out_r1, out_r2 = remove_primers("S1", *paired_reads, out_dir, "AACG", "GGTT",
                                    error_rate=0.2, threads=4)

    cmd = calls[0]
    assert cmd[0] == "cutadapt"
    assert cmd[cmd.index("-g") + 1] == "AACG"
    assert cmd[cmd.index("-G") + 1] == "GGTT"
    assert cmd[cmd.index("-a") + 1] == "AACC"
    assert cmd[cmd.index("-A") + 1] == "CGTT"
    assert cmd[cmd.index("--error-rate") + 1] == "0.2"
    assert cmd[cmd.index("--cores") + 1] == "4"
    assert "--discard-untrimmed" in cmd
    assert cmd[-2:] == list(paired_reads)
    assert out_r1.endswith("S1_R1_noprimer.fastq.gz")
    assert out_r2.endswith("S1_R2_noprimer.fastq.gz")


def test_remove_primers_keep_untrimmed(tmp_path, monkeypatch, paired_reads):
    calls = []
    monkeypatch.setattr(filtering.subprocess, "run",
                        lambda cmd, **kwargs: calls.append(cmd))
    remove_primers("S1", *paired_reads, str(tmp_path / "out"), "AACG", "GGTT",
                   discard_untrimmed=False)
    assert "--discard-untrimmed" not in calls[0]


def test_remove_primers_propagates_failure(tmp_path, monkeypatch, paired_reads):
    def fail(cmd, **kwargs):
        raise subprocess.CalledProcessError(1, cmd)

    monkeypatch.setattr(filtering.subprocess, "run", fail)
    with pytest.raises(subprocess.CalledProcessError):
        remove_primers("S1", *paired_reads, str(tmp_path / "out"), "AACG", "GGTT")


def test_remove_primers_samples_uses_primer_set(tmp_path, monkeypatch, paired_reads):
    calls = []
    monkeypatch.setattr(filtering.subprocess, "run",
                        lambda cmd, **kwargs: calls.append(cmd))
    result = remove_primers_samples({"S1": paired_reads}, str(tmp_path / "out"),
                                    primer_set="341F_806R")
    assert set(result) == {"S1"}
    assert calls[0][calls[0].index("-g") + 1] == PRIMERS["341F_806R"]["forward"]


# ── filter_and_trim ───────────────────────────────────────────────────────────

def test_filter_and_trim_missing_input(tmp_path):
    with pytest.raises(FileNotFoundError):
        filter_and_trim({"S1": ("nope_R1.fq.gz", "nope_R2.fq.gz")}, str(tmp_path))


def test_filter_and_trim_runs_r_and_reads_counts(tmp_path, monkeypatch, paired_reads):
    out_dir = tmp_path / "filtered_run"
    calls = []

    def fake_rscript(script, script_path, args):
        calls.append((script, args))
        _write_counts(out_dir / "filter_counts.tsv", [
            ("S1", 1000, 800, "f/S1_F_filt.fastq.gz", "f/S1_R_filt.fastq.gz"),
        ])

    monkeypatch.setattr(filtering, "run_rscript", fake_rscript)
    samples, counts_path = filter_and_trim({"S1": paired_reads}, str(out_dir),
                                           trunc_len=(250, 200), max_ee=(2, 5))

    script, args = calls[0]
    assert "filterAndTrim" in script
    params = json.loads(args[0])
    assert params["trunc_len"] == [250, 200]
    assert params["max_ee"] == [2, 5]
    assert params["rm_phix"] is True
    assert samples == {"S1": ("f/S1_F_filt.fastq.gz", "f/S1_R_filt.fastq.gz")}
    assert counts_path.endswith("filter_counts.tsv")


# ── filtered_samples ──────────────────────────────────────────────────────────

def test_filtered_samples_drops_empty(tmp_path, caplog):
    path = tmp_path / "filter_counts.tsv"
    _write_counts(path, [
        ("S1", 1000, 900, "S1_F.fq.gz", "S1_R.fq.gz"),
        ("S2", 500, 0, "S2_F.fq.gz", "S2_R.fq.gz"),
    ])
    with caplog.at_level(logging.WARNING):
        samples = filtered_samples(str(path))
    assert list(samples) == ["S1"]
    assert "S2" in caplog.text


def test_load_filter_counts(tmp_path):
    path = tmp_path / "filter_counts.tsv"
    _write_counts(path, [("S1", 1000, 900, "a", "b")])
    counts = load_filter_counts(str(path))
    assert counts.loc["S1", "reads.out"] == 900


def test_load_filter_counts_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_filter_counts(str(tmp_path / "filter_counts.tsv"))
