"""
Read filtering module for 16S amplicon analysis.

Optionally removes primer sequences with cutadapt, then quality-filters and
truncates paired-end reads with DADA2 ``filterAndTrim`` (via an R
subprocess). Per-sample read counts before and after filtering are written
so that read retention can be inspected after each stage.
"""

import json
import logging
import os
import subprocess
import textwrap
from pathlib import Path

import pandas as pd

from tbiome.rscript import run_rscript

logger = logging.getLogger(__name__)

# Common 16S primer sequences
PRIMERS = {
    "515F_806R": {
        "forward": "GTGYCAGCMGCCGCGGTAA",
        "reverse": "GGACTACNVGGGTWTCTAAT",
        "region": "V4",
    },
    "27F_338R": {
        "forward": "AGAGTTTGATCMTGGCTCAG",
        "reverse": "TGCTGCCTCCCGTAGGAGT",
        "region": "V1-V2",
    },
    "341F_806R": {
        "forward": "CCTACGGGNGGCWGCAG",
        "reverse": "GGACTACNVGGGTWTCTAAT",
        "region": "V3-V4",
    },
}

_COMPLEMENT = str.maketrans("ACGTacgtNnYyRrSsWwKkMmBbDdHhVv",
                            "TGCAtgcaNnRrYySsWwMmKkVvHhDdBb")


def reverse_complement(seq: str) -> str:
    """Return the reverse complement of a DNA sequence (IUPAC bases supported)."""
    return seq.translate(_COMPLEMENT)[::-1]


def resolve_primers(
    primer_set: str | None = "515F_806R",
    forward_primer: str | None = None,
    reverse_primer: str | None = None,
) -> tuple[str, str]:
    """
    Pick the primer pair to trim, preferring explicit sequences.

    Raises
    ------
    ValueError
        If ``primer_set`` is not recognised and custom primers are not provided.
    """
    if forward_primer is not None and reverse_primer is not None:
        return forward_primer, reverse_primer

    if primer_set not in PRIMERS:
        raise ValueError(
            f"Unknown primer set '{primer_set}'. "
            f"Choose from: {list(PRIMERS.keys())} "
            "or supply forward_primer and reverse_primer."
        )
    return PRIMERS[primer_set]["forward"], PRIMERS[primer_set]["reverse"]


def _check_inputs(samples: dict[str, tuple[str, str]]) -> None:
    for r1, r2 in samples.values():
        for f in (r1, r2):
            if not Path(f).exists():
                raise FileNotFoundError(f"Input file not found: {f}")


# ── Primer removal (cutadapt) ────────────────────────────────────────────────

def remove_primers(
    sample: str,
    forward_reads: str,
    reverse_reads: str,
    output_dir: str,
    forward_primer: str,
    reverse_primer: str,
    error_rate: float = 0.1,
    discard_untrimmed: bool = True,
    threads: int = 1,
) -> tuple[str, str]:
    """
    Remove primer sequences from one read pair using cutadapt.

    Parameters
    ----------
    sample : str
        Sample name, used to name the output files.
    forward_reads, reverse_reads : str
        Paths to the R1 and R2 FASTQ files.
    output_dir : str
        Directory where primer-free reads will be written.
    forward_primer, reverse_primer : str
        Primer sequences (5'→3').
    error_rate : float
        Maximum allowed error rate for primer matching (default: 0.1).
    discard_untrimmed : bool
        If True, discard read pairs where primers are not found (default: True).
    threads : int
        Number of cores for cutadapt (default: 1).

    Returns
    -------
    tuple[str, str]
        Paths to the primer-free R1 and R2 FASTQ files.

    Raises
    ------
    FileNotFoundError
        If an input file does not exist.
    subprocess.CalledProcessError
        If cutadapt exits with a non-zero return code.
    """
    _check_inputs({sample: (forward_reads, reverse_reads)})
    os.makedirs(output_dir, exist_ok=True)

    out_r1 = os.path.join(output_dir, f"{sample}_R1_noprimer.fastq.gz")
    out_r2 = os.path.join(output_dir, f"{sample}_R2_noprimer.fastq.gz")
    log_file = os.path.join(output_dir, f"{sample}_cutadapt.log")

    cmd = [
        "cutadapt",
        "-g", forward_primer,
        "-G", reverse_primer,
        "-a", reverse_complement(reverse_primer),
        "-A", reverse_complement(forward_primer),
        "--error-rate", str(error_rate),
        "--cores", str(threads),
        "-o", out_r1,
        "-p", out_r2,
    ]
    if discard_untrimmed:
        cmd.append("--discard-untrimmed")
    cmd += [forward_reads, reverse_reads]

    logger.info("Removing primers from %s", sample)
    logger.debug("Command: %s", " ".join(cmd))
    with open(log_file, "w") as log_fh:
        subprocess.run(cmd, check=True, stdout=log_fh, stderr=subprocess.STDOUT)

    return out_r1, out_r2


def remove_primers_samples(
    samples: dict[str, tuple[str, str]],
    output_dir: str,
    primer_set: str | None = "515F_806R",
    forward_primer: str | None = None,
    reverse_primer: str | None = None,
    error_rate: float = 0.1,
    discard_untrimmed: bool = True,
    threads: int = 1,
) -> dict[str, tuple[str, str]]:
    """Run :func:`remove_primers` over every sample."""
    fwd, rev = resolve_primers(primer_set, forward_primer, reverse_primer)
    _check_inputs(samples)

    return {
        sample: remove_primers(
            sample, r1, r2, output_dir, fwd, rev,
            error_rate=error_rate,
            discard_untrimmed=discard_untrimmed,
            threads=threads,
        )
        for sample, (r1, r2) in samples.items()
    }


# ── Quality filtering (DADA2 filterAndTrim) ──────────────────────────────────

_FILTER_SCRIPT = textwrap.dedent("""\
    library(dada2)
    library(jsonlite)

    args        <- commandArgs(trailingOnly = TRUE)
    params      <- fromJSON(args[1])
    output_dir  <- args[2]

    samples   <- params$samples
    fwd_files <- sapply(samples, `[[`, 1)
    rev_files <- sapply(samples, `[[`, 2)
    sample_names <- names(samples)

    filt_dir <- file.path(output_dir, "filtered")
    dir.create(filt_dir, recursive = TRUE, showWarnings = FALSE)
    filt_fwd <- file.path(filt_dir, paste0(sample_names, "_F_filt.fastq.gz"))
    filt_rev <- file.path(filt_dir, paste0(sample_names, "_R_filt.fastq.gz"))

    out <- filterAndTrim(
        fwd_files, filt_fwd, rev_files, filt_rev,
        truncLen    = params$trunc_len,
        maxEE       = params$max_ee,
        truncQ      = params$trunc_q,
        maxN        = params$max_n,
        rm.phix     = params$rm_phix,
        compress    = TRUE,
        multithread = params$threads
    )

    counts <- data.frame(
        sample    = sample_names,
        reads.in  = out[, 1],
        reads.out = out[, 2],
        r1        = filt_fwd,
        r2        = filt_rev
    )
    write.table(counts,
        file = file.path(output_dir, "filter_counts.tsv"),
        sep = "\\t", quote = FALSE, row.names = FALSE
    )

    message("filterAndTrim complete.")
""")


def filter_and_trim(
    samples: dict[str, tuple[str, str]],
    output_dir: str,
    trunc_len: tuple[int, int] = (240, 160),
    max_ee: tuple[float, float] = (2, 2),
    trunc_q: int = 2,
    max_n: int = 0,
    rm_phix: bool = True,
    threads: int = 1,
) -> tuple[dict[str, tuple[str, str]], str]:
    """
    Quality-filter and truncate paired-end reads with DADA2 ``filterAndTrim``.

    Parameters
    ----------
    samples : dict[str, tuple[str, str]]
        Dictionary mapping sample names to (R1, R2) FASTQ paths.
    output_dir : str
        Directory where filtered reads and read counts will be written.
    trunc_len : tuple[int, int]
        Truncation lengths for forward and reverse reads (default: 240, 160).
    max_ee : tuple[float, float]
        Maximum expected errors allowed per read (default: 2, 2).
    trunc_q : int
        Truncate reads at the first base with quality ≤ this (default: 2).
    max_n : int
        Maximum number of ambiguous bases; DADA2 requires 0 (default: 0).
    rm_phix : bool
        Discard reads matching the PhiX genome (default: True).
    threads : int
        Number of threads (default: 1).

    Returns
    -------
    tuple[dict[str, tuple[str, str]], str]
        Filtered (R1, R2) paths for every sample that kept at least one read,
        and the path to ``filter_counts.tsv``.

    Raises
    ------
    FileNotFoundError
        If any input FASTQ file does not exist.
    subprocess.CalledProcessError
        If the R script exits with a non-zero return code.
    """
    _check_inputs(samples)
    os.makedirs(output_dir, exist_ok=True)

    params = {
        "samples": {s: list(paths) for s, paths in samples.items()},
        "trunc_len": list(trunc_len),
        "max_ee": list(max_ee),
        "trunc_q": trunc_q,
        "max_n": max_n,
        "rm_phix": rm_phix,
        "threads": threads,
    }

    logger.info("Running filterAndTrim on %d sample(s)", len(samples))
    run_rscript(
        _FILTER_SCRIPT,
        os.path.join(output_dir, "_filter_and_trim.R"),
        [json.dumps(params), output_dir],
    )

    counts_path = os.path.join(output_dir, "filter_counts.tsv")
    return filtered_samples(counts_path), counts_path


def load_filter_counts(counts_path: str) -> pd.DataFrame:
    """Read the per-sample ``reads.in``/``reads.out`` table, indexed by sample."""
    if not Path(counts_path).exists():
        raise FileNotFoundError(f"Filter counts not found: {counts_path}")
    return pd.read_csv(counts_path, sep="\t", index_col="sample", dtype={"sample": str})


def filtered_samples(counts_path: str) -> dict[str, tuple[str, str]]:
    """
    Return filtered read paths for samples that kept reads.

    Samples whose reads were all removed get no output files from DADA2 and
    are dropped here with a warning.
    """
    counts = load_filter_counts(counts_path)
    empty = counts.index[counts["reads.out"] == 0]
    for sample in empty:
        logger.warning("Sample %s has no reads after filtering; dropped", sample)

    kept = counts.drop(index=empty)
    return {
        sample: (row["r1"], row["r2"])
        for sample, row in kept.iterrows()
    }
