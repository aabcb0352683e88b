"""
Denoising module for 16S amplicon analysis.

Wraps DADA2 (via an R subprocess) to learn error rates, denoise filtered
reads, merge read pairs, build the sequence table and remove chimeras.
On the Python side, sequence variants are renamed to content hashes and
written out as a FASTA of representative sequences.
"""

import hashlib
import json
import logging
import os
import textwrap
from pathlib import Path

import pandas as pd
from Bio import SeqIO
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord

from tbiome.rscript import run_rscript

logger = logging.getLogger(__name__)

# Inline R script executed by run_dada2()
_DADA2_SCRIPT = textwrap.dedent("""\
    library(dada2)
    library(jsonlite)

    args        <- commandArgs(trailingOnly = TRUE)
    params      <- fromJSON(args[1])
    output_dir  <- args[2]

    samples   <- params$samples
    fwd_files <- sapply(samples, `[[`, 1)
    rev_files <- sapply(samples, `[[`, 2)
    sample_names <- names(samples)
    names(fwd_files) <- sample_names
    names(rev_files) <- sample_names

    # Learn error rates
    err_fwd <- learnErrors(fwd_files, multithread = params$threads)
    err_rev <- learnErrors(rev_files, multithread = params$threads)

    # Denoise
    dada_fwd <- dada(fwd_files, err = err_fwd,
                     pool = params$pool, multithread = params$threads)
    dada_rev <- dada(rev_files, err = err_rev,
                     pool = params$pool, multithread = params$threads)

    # Merge paired reads
    merged <- mergePairs(dada_fwd, fwd_files, dada_rev, rev_files,
                         minOverlap = params$min_overlap,
                         maxMismatch = params$max_mismatch)

    # Build sequence table
    seqtab <- makeSequenceTable(merged)

    # Remove chimeras
    seqtab_nochim <- removeBimeraDenovo(
        seqtab, method = "consensus", multithread = params$threads
    )

    dir.create(output_dir, recursive = TRUE, showWarnings = FALSE)

    # Samples as rows, sequences as columns
    write.table(
        seqtab_nochim,
        file = file.path(output_dir, "seqtab_nochim.tsv"),
        sep = "\\t",
        quote = FALSE,
        col.names = NA
    )

    # a single sample comes back as one object rather than a list
    if (length(sample_names) == 1) {
        dada_fwd <- list(dada_fwd)
        dada_rev <- list(dada_rev)
        merged   <- list(merged)
    }
    get_n <- function(x) sum(getUniques(x))
    counts <- data.frame(
        sample    = sample_names,
        denoisedF = sapply(dada_fwd, get_n),
        denoisedR = sapply(dada_rev, get_n),
        merged    = sapply(merged, get_n),
        tabled    = rowSums(seqtab),
        nonchim   = rowSums(seqtab_nochim)
    )
    write.table(counts,
        file = file.path(output_dir, "dada2_counts.tsv"),
        sep = "\\t", quote = FALSE, row.names = FALSE
    )

    message("DADA2 complete.")
""")


def run_dada2(
    samples: dict[str, tuple[str, str]],
    output_dir: str,
    threads: int = 1,
    pool: bool = False,
    min_overlap: int = 12,
    max_mismatch: int = 0,
) -> tuple[str, str]:
    """
    Denoise filtered paired-end reads with DADA2 and remove chimeras.

    Parameters
    ----------
    samples : dict[str, tuple[str, str]]
        Dictionary mapping sample names to filtered (R1, R2) FASTQ paths.
    output_dir : str
        Directory where DADA2 outputs will be written.
    threads : int
        Number of threads for DADA2 (default: 1).
    pool : bool
        Pool samples for sample inference (default: False).
    min_overlap : int
        Minimum overlap required to merge a read pair (default: 12).
    max_mismatch : int
        Mismatches allowed in the overlap region (default: 0).

    Returns
    -------
    tuple[str, str]
        Paths to the chimera-free sequence table TSV and the per-sample
        read-count TSV.

    Raises
    ------
    FileNotFoundError
        If any input FASTQ file does not exist.
    subprocess.CalledProcessError
        If the R script exits with a non-zero return code.
    """
    for r1, r2 in samples.values():
        for f in (r1, r2):
            if not Path(f).exists():
                raise FileNotFoundError(f"Input file not found: {f}")

    os.makedirs(output_dir, exist_ok=True)

    params = {
        "samples": {s: list(paths) for s, paths in samples.items()},
        "threads": threads,
        "pool": pool,
        "min_overlap": min_overlap,
        "max_mismatch": max_mismatch,
    }

    logger.info("Running DADA2 on %d sample(s)", len(samples))
    run_rscript(
        _DADA2_SCRIPT,
        os.path.join(output_dir, "_dada2_run.R"),
        [json.dumps(params), output_dir],
    )

    seqtab = os.path.join(output_dir, "seqtab_nochim.tsv")
    counts = os.path.join(output_dir, "dada2_counts.tsv")
    logger.info("DADA2 complete. Sequence table: %s", seqtab)
    return seqtab, counts


def load_sequence_table(seqtab_path: str) -> pd.DataFrame:
    """
    Load a sequence table produced by :func:`run_dada2`.

    Returns
    -------
    pd.DataFrame
        Integer counts with samples as rows and variant sequences as columns.

    Raises
    ------
    FileNotFoundError
        If the sequence table file does not exist.
    """
    if not Path(seqtab_path).exists():
        raise FileNotFoundError(f"Sequence table not found: {seqtab_path}")

    seqtab = pd.read_csv(seqtab_path, sep="\t", index_col=0, converters={0: str})
    return seqtab.astype(int)


def load_dada2_counts(counts_path: str) -> pd.DataFrame:
    """Read the per-sample DADA2 read-count table, indexed by sample."""
    if not Path(counts_path).exists():
        raise FileNotFoundError(f"DADA2 counts not found: {counts_path}")
    return pd.read_csv(counts_path, sep="\t", index_col="sample", dtype={"sample": str})


# ── Variant identifiers ──────────────────────────────────────────────────────

def sequence_id(seq: str) -> str:
    """Return the MD5 hex digest used as the identifier of a variant sequence."""
    return hashlib.md5(seq.upper().encode("ascii")).hexdigest()


def hash_sequence_table(seqtab: pd.DataFrame) -> tuple[pd.DataFrame, pd.Series]:
    """
    Rename sequence columns to their content hashes.

    Parameters
    ----------
    seqtab : pd.DataFrame
        Samples × sequences count table.

    Returns
    -------
    tuple[pd.DataFrame, pd.Series]
        The renamed table, and a Series mapping hash → sequence.

    Raises
    ------
    ValueError
        If two columns hold the same sequence.
    """
    sequences = [str(s).upper() for s in seqtab.columns]
    if len(set(sequences)) != len(sequences):
        raise ValueError("Sequence table contains duplicated variant sequences")

    ids = [sequence_id(s) for s in sequences]
    renamed = seqtab.copy()
    renamed.columns = ids
    return renamed, pd.Series(sequences, index=ids, name="sequence")


def filter_sequence_lengths(
    seqtab: pd.DataFrame,
    min_length: int | None = None,
    max_length: int | None = None,
) -> pd.DataFrame:
    """
    Drop variants whose merged length falls outside the expected amplicon window.

    Columns must still be sequences, i.e. call this before
    :func:`hash_sequence_table`.
    """
    lengths = pd.Series([len(s) for s in seqtab.columns], index=seqtab.columns)
    keep = pd.Series(True, index=seqtab.columns)
    if min_length is not None:
        keep &= lengths >= min_length
    if max_length is not None:
        keep &= lengths <= max_length

    dropped = int((~keep).sum())
    if dropped:
        logger.info(
            "Dropped %d variant(s) outside length window [%s, %s]",
            dropped, min_length, max_length,
        )
    return seqtab.loc[:, keep.values]


def chimera_summary(dada2_counts: pd.DataFrame) -> float:
    """Fraction of tabled reads kept by chimera removal, over all samples."""
    total = dada2_counts["tabled"].sum()
    if total == 0:
        return 0.0
    return float(dada2_counts["nonchim"].sum() / total)


def write_rep_seqs(sequences: pd.Series, fasta_path: str) -> str:
    """
    Write representative sequences as FASTA, one record per variant hash.

    Parameters
    ----------
    sequences : pd.Series
        Mapping of variant identifier → nucleotide sequence.
    fasta_path : str
        Output path.

    Returns
    -------
    str
        ``fasta_path``.
    """
    os.makedirs(Path(fasta_path).parent, exist_ok=True)
    records = [
        SeqRecord(Seq(seq), id=asv_id, description="")
        for asv_id, seq in sequences.items()
    ]
    SeqIO.write(records, fasta_path, "fasta")
    logger.info("Wrote %d representative sequence(s) to %s", len(records), fasta_path)
    return fasta_path


def read_rep_seqs(fasta_path: str) -> pd.Series:
    """Read a FASTA of representative sequences into a Series keyed by record id."""
    if not Path(fasta_path).exists():
        raise FileNotFoundError(f"FASTA file not found: {fasta_path}")
    records = {rec.id: str(rec.seq) for rec in SeqIO.parse(fasta_path, "fasta")}
    return pd.Series(records, name="sequence", dtype=object)
