"""
Taxonomic classification module for 16S amplicon analysis.

Assigns taxonomy to representative ASV sequences with the DADA2 naive
Bayesian classifier (SILVA training set, optional exact species matching) or
with VSEARCH global alignment, and normalises the results into a table of
rank columns indexed by ASV identifier.
"""

import logging
import os
import re
import subprocess
import textwrap
from pathlib import Path

import numpy as np
import pandas as pd

from tbiome.denoising import read_rep_seqs
from tbiome.rscript import run_rscript

logger = logging.getLogger(__name__)

# Recognised classification methods
METHODS = ("dada2", "vsearch")

RANKS = ["Kingdom", "Phylum", "Class", "Order", "Family", "Genus", "Species"]

# Rank prefixes used by SILVA/GreenGenes/SINTAX style lineages: k__, D_0__, p:
_PREFIX = re.compile(r"^(?:[a-zA-Z]__|D_\d+__|[a-z]:)")

_ASSIGN_SCRIPT = textwrap.dedent("""\
    library(dada2)
    library(Biostrings)

    args       <- commandArgs(trailingOnly = TRUE)
    rep_seqs   <- args[1]
    reference  <- args[2]
    species    <- args[3]
    min_boot   <- as.integer(args[4])
    threads    <- as.integer(args[5])
    out_path   <- args[6]

    seqs <- readDNAStringSet(rep_seqs)
    taxa <- assignTaxonomy(as.character(seqs), reference,
                           minBoot = min_boot, multithread = threads)
    if (species != "") {
        taxa <- addSpecies(taxa, species)
    }
    rownames(taxa) <- names(seqs)

    write.table(taxa, file = out_path, sep = "\\t", quote = FALSE,
                col.names = NA, na = "")
    message("assignTaxonomy complete.")
""")


def classify_dada2(
    rep_seqs: str,
    reference: str,
    output_dir: str,
    species_reference: str | None = None,
    min_boot: int = 50,
    threads: int = 1,
) -> str:
    """
    Assign taxonomy with the DADA2 naive Bayesian classifier.

    Parameters
    ----------
    rep_seqs : str
        FASTA of representative sequences keyed by ASV identifier.
    reference : str
        DADA2-formatted training set (e.g. SILVA ``silva_nr99_v138``).
    output_dir : str
        Directory where the taxonomy table will be written.
    species_reference : str or None
        Optional species assignment file for exact matching (``addSpecies``).
    min_boot : int
        Minimum bootstrap confidence for assigning a rank (default: 50).
    threads : int
        Number of threads (default: 1).

    Returns
    -------
    str
        Path to the taxonomy TSV (rank columns, ASV identifiers as rows).

    Raises
    ------
    FileNotFoundError
        If an input file does not exist.
    subprocess.CalledProcessError
        If the R script exits with a non-zero return code.
    """
    inputs = [rep_seqs, reference] + ([species_reference] if species_reference else [])
    for f in inputs:
        if not Path(f).exists():
            raise FileNotFoundError(f"File not found: {f}")

    os.makedirs(output_dir, exist_ok=True)
    taxonomy_path = os.path.join(output_dir, "taxonomy.tsv")

    logger.info("Running DADA2 assignTaxonomy against %s", reference)
    run_rscript(
        _ASSIGN_SCRIPT,
        os.path.join(output_dir, "_assign_taxonomy.R"),
        [
            rep_seqs, reference, species_reference or "",
            str(min_boot), str(threads), taxonomy_path,
        ],
    )
    logger.info("Taxonomy written to %s", taxonomy_path)
    return taxonomy_path


def classify_vsearch(
    rep_seqs: str,
    database: str,
    output_dir: str,
    identity: float = 0.97,
    threads: int = 1,
) -> str:
    """
    Assign taxonomy using VSEARCH global-alignment search.

    The database headers must carry the lineage, either SINTAX style
    (``>id;tax=d:Bacteria,p:Firmicutes,...``) or as ``>id;Bacteria;Firmicutes;...``.

    Returns
    -------
    str
        Path to the taxonomy TSV (rank columns, ASV identifiers as rows).
        Sequences without a hit are listed with no assignment.

    Raises
    ------
    FileNotFoundError
        If the representative sequences or database file do not exist.
    subprocess.CalledProcessError
        If VSEARCH exits with a non-zero return code.
    """
    for f in (rep_seqs, database):
        if not Path(f).exists():
            raise FileNotFoundError(f"File not found: {f}")

    os.makedirs(output_dir, exist_ok=True)
    hits_path = os.path.join(output_dir, "vsearch_hits.b6")
    no_hit_path = os.path.join(output_dir, "no_hits.fasta")

    cmd = [
        "vsearch",
        "--usearch_global", rep_seqs,
        "--db", database,
        "--id", str(identity),
        "--blast6out", hits_path,
        "--notmatched", no_hit_path,
        "--threads", str(threads),
        "--top_hits_only",
        "--maxaccepts", "1",
    ]

    logger.info("Running VSEARCH taxonomy classification")
    logger.debug("Command: %s", " ".join(cmd))
    subprocess.run(cmd, check=True)

    taxonomy = parse_blast6(hits_path)
    missing = read_rep_seqs(rep_seqs).index.difference(taxonomy.index)
    taxonomy = taxonomy.reindex(taxonomy.index.append(missing))

    taxonomy_path = os.path.join(output_dir, "taxonomy.tsv")
    taxonomy.to_csv(taxonomy_path, sep="\t")
    logger.info("Taxonomy written to %s (%d without hit)", taxonomy_path, len(missing))
    return taxonomy_path


def parse_blast6(hits_path: str) -> pd.DataFrame:
    """Turn VSEARCH BLAST-6 hits into rank columns, first hit per query."""
    if os.path.getsize(hits_path) == 0:
        return pd.DataFrame(columns=RANKS, index=pd.Index([], name="Feature ID"))

    hits = pd.read_csv(hits_path, sep="\t", header=None, usecols=[0, 1],
                       names=["Feature ID", "target"])
    hits = hits.drop_duplicates("Feature ID").set_index("Feature ID")

    def _lineage(target: str) -> str:
        if "tax=" in target:
            return target.split("tax=", 1)[1].rstrip(";").replace(",", ";")
        return target.split(";", 1)[1] if ";" in target else ""

    lineages = hits["target"].map(_lineage)
    return pd.DataFrame(
        [split_taxon(t) for t in lineages],
        index=hits.index,
        columns=RANKS,
    )


def split_taxon(taxon, ranks: list[str] = RANKS) -> list:
    """
    Split a ``;``-separated lineage into one value per rank.

    Rank prefixes (``k__``, ``D_0__``, ``p:``) are stripped; blank or
    prefix-only levels and levels beyond the lineage become NaN.
    """
    if not isinstance(taxon, str):
        return [np.nan] * len(ranks)

    values = []
    for part in taxon.split(";")[:len(ranks)]:
        name = _PREFIX.sub("", part.strip()).strip()
        values.append(name if name else np.nan)
    return values + [np.nan] * (len(ranks) - len(values))


def load_taxonomy(taxonomy_path: str) -> pd.DataFrame:
    """
    Load a taxonomy file into a table of rank columns.

    Accepts the rank-column tables written by this module and two-column
    (``Feature ID``, ``Taxon``) tables such as a QIIME 2 export.

    Parameters
    ----------
    taxonomy_path : str
        Path to the taxonomy TSV file.

    Returns
    -------
    pd.DataFrame
        ASV identifiers as rows, ranks as columns; unassigned ranks are NaN.

    Raises
    ------
    FileNotFoundError
        If the taxonomy file does not exist.
    """
    if not Path(taxonomy_path).exists():
        raise FileNotFoundError(f"Taxonomy file not found: {taxonomy_path}")

    raw = pd.read_csv(taxonomy_path, sep="\t", index_col=0, dtype=str)
    raw.index = raw.index.astype(str)
    raw.index.name = "Feature ID"

    if "Taxon" in raw.columns:
        ranks = pd.DataFrame(
            [split_taxon(t) for t in raw["Taxon"]],
            index=raw.index,
            columns=RANKS,
        )
        return ranks.dropna(axis=1, how="all")

    return raw.replace("", np.nan)


def require_rank(taxonomy: pd.DataFrame, rank: str) -> None:
    """
    Abort if the taxonomy table has no column for ``rank``.

    Raises
    ------
    KeyError
        With a message naming the missing rank and the ranks present.
    """
    if rank not in taxonomy.columns:
        raise KeyError(
            f"The taxonomy table does not contain a column named '{rank}'. "
            f"Available ranks: {list(taxonomy.columns)}"
        )
