"""
Quality control module for 16S amplicon analysis.

Runs FastQC and MultiQC on raw FASTQ files, and tracks how many reads each
sample keeps through filtering, denoising, merging and chimera removal so
that poorly performing samples can be inspected by hand.
"""

import logging
import os
import subprocess
from pathlib import Path

import pandas as pd

logger = logging.getLogger(__name__)

TRACKING_COLUMNS = [
    "input", "filtered", "denoisedF", "denoisedR", "merged", "tabled", "nonchim",
]


def run_fastqc(input_files: list[str], output_dir: str, threads: int = 1) -> None:
    """
    Run FastQC on a list of FASTQ files.

    Parameters
    ----------
    input_files : list[str]
        Paths to input FASTQ files.
    output_dir : str
        Directory where FastQC reports will be written.
    threads : int
        Number of threads to use (default: 1).

    Raises
    ------
    FileNotFoundError
        If an input file does not exist.
    subprocess.CalledProcessError
        If FastQC exits with a non-zero return code.
    """
    for f in input_files:
        if not Path(f).exists():
            raise FileNotFoundError(f"Input file not found: {f}")

    os.makedirs(output_dir, exist_ok=True)

    cmd = [
        "fastqc",
        "--outdir", output_dir,
        "--threads", str(threads),
    ] + list(input_files)

    logger.info("Running FastQC on %d file(s)", len(input_files))
    logger.debug("Command: %s", " ".join(cmd))
    subprocess.run(cmd, check=True)


def run_multiqc(input_dir: str, output_dir: str) -> None:
    """Aggregate FastQC reports in ``input_dir`` into one MultiQC report."""
    os.makedirs(output_dir, exist_ok=True)

    cmd = ["multiqc", input_dir, "--outdir", output_dir, "--force"]

    logger.info("Running MultiQC")
    logger.debug("Command: %s", " ".join(cmd))
    subprocess.run(cmd, check=True)


def quality_control(input_files: list[str], output_dir: str, threads: int = 1) -> str:
    """
    Run FastQC + MultiQC and return the MultiQC report directory.
    """
    fastqc_dir = os.path.join(output_dir, "fastqc")
    multiqc_dir = os.path.join(output_dir, "multiqc")

    run_fastqc(input_files, fastqc_dir, threads=threads)
    run_multiqc(fastqc_dir, multiqc_dir)

    logger.info("Quality control reports written to %s", multiqc_dir)
    return multiqc_dir


# ── Read tracking ────────────────────────────────────────────────────────────

def track_reads(filter_counts: pd.DataFrame, dada2_counts: pd.DataFrame) -> pd.DataFrame:
    """
    Combine per-stage read counts into a single tracking table.

    Parameters
    ----------
    filter_counts : pd.DataFrame
        Output of ``filterAndTrim`` indexed by sample, with ``reads.in`` and
        ``reads.out`` columns.
    dada2_counts : pd.DataFrame
        DADA2 counts indexed by sample, with ``denoisedF``, ``denoisedR``,
        ``merged``, ``tabled`` and ``nonchim`` columns.

    Returns
    -------
    pd.DataFrame
        One row per sample in ``filter_counts``. Samples dropped before
        denoising have zero counts from that stage on. The ``retained``
        column is ``nonchim / input``.
    """
    tracking = pd.DataFrame(index=filter_counts.index)
    tracking["input"] = filter_counts["reads.in"]
    tracking["filtered"] = filter_counts["reads.out"]

    stages = ["denoisedF", "denoisedR", "merged", "tabled", "nonchim"]
    tracking = tracking.join(dada2_counts[stages], how="left")
    tracking[stages] = tracking[stages].fillna(0)
    tracking = tracking[TRACKING_COLUMNS].astype(int)

    inputs = tracking["input"].where(tracking["input"] > 0)
    tracking["retained"] = (tracking["nonchim"] / inputs).fillna(0.0)
    tracking.index.name = "sample"
    return tracking


def flag_low_retention(tracking: pd.DataFrame, min_fraction: float = 0.5) -> list[str]:
    """
    Return samples that kept less than ``min_fraction`` of their input reads.

    Each flagged sample is logged at WARNING with the stage that lost the
    largest share of its reads.
    """
    flagged = tracking.index[tracking["retained"] < min_fraction].tolist()

    for sample in flagged:
        row = tracking.loc[sample, TRACKING_COLUMNS].astype(float)
        losses = row.shift(1) - row
        worst = losses.iloc[1:].idxmax()
        logger.warning(
            "Sample %s retained %.1f%% of reads (largest loss at '%s')",
            sample, 100 * tracking.loc[sample, "retained"], worst,
        )

    return flagged
