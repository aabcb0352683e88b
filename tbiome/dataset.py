"""
Combined sample / taxonomy / tree data object.

:class:`AmpliconDataset` holds the chimera-free ASV count table together
with per-ASV taxonomy, representative sequences, per-sample metadata and the
phylogenetic tree. It is built once after denoising and classification,
saved to disk, and reloaded for every downstream analysis. All operations
return new objects; nothing is modified in place.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import pandas as pd
import yaml
from skbio import TreeNode

from tbiome.denoising import hash_sequence_table, read_rep_seqs, sequence_id, write_rep_seqs
from tbiome.phylogeny import tip_names
from tbiome.taxonomy import require_rank

logger = logging.getLogger(__name__)

BUNDLE_VERSION = 1

METADATA_COLUMNS = ["Genotype", "Treatment", "Timepoint", "Sex", "Injury"]
TIMEPOINT_LEVELS = ["BA", "1DPI", "3DPI", "11DPI"]


class DatasetError(ValueError):
    """Raised when the tables of a dataset do not describe the same ASVs/samples."""


def load_metadata(
    metadata_path: str,
    required_columns: list[str] | None = None,
    levels: dict[str, list[str]] | None = None,
) -> pd.DataFrame:
    """
    Read the tab-separated sample metadata file.

    Parameters
    ----------
    metadata_path : str
        TSV whose first column holds sample identifiers.
    required_columns : list[str] or None
        Columns that must be present (default: :data:`METADATA_COLUMNS`).
    levels : dict[str, list[str]] or None
        Ordered categorical levels per column
        (default: ``{"Timepoint": TIMEPOINT_LEVELS}``).

    Returns
    -------
    pd.DataFrame
        Metadata indexed by sample, with the listed columns as ordered
        categoricals.

    Raises
    ------
    FileNotFoundError
        If the metadata file does not exist.
    KeyError
        If a required column is missing.
    ValueError
        If a categorical column holds a value outside its levels.
    """
    if not Path(metadata_path).exists():
        raise FileNotFoundError(f"Metadata file not found: {metadata_path}")

    required_columns = METADATA_COLUMNS if required_columns is None else required_columns
    levels = {"Timepoint": TIMEPOINT_LEVELS} if levels is None else levels

    metadata = pd.read_csv(metadata_path, sep="\t", index_col=0, converters={0: str})
    metadata.index.name = "sample"

    missing = [c for c in required_columns if c not in metadata.columns]
    if missing:
        raise KeyError(f"Metadata is missing required column(s): {missing}")

    return apply_levels(metadata, levels)


def apply_levels(metadata: pd.DataFrame, levels: dict[str, list[str]]) -> pd.DataFrame:
    """Convert the named columns to ordered categoricals with the given levels."""
    metadata = metadata.copy()
    for column, column_levels in levels.items():
        if column not in metadata.columns:
            continue
        values = metadata[column].astype(str)
        unknown = sorted(set(values) - set(column_levels))
        if unknown:
            raise ValueError(
                f"Column '{column}' has values {unknown} outside levels {column_levels}"
            )
        metadata[column] = pd.Categorical(values, categories=column_levels, ordered=True)
    return metadata


@dataclass(frozen=True, eq=False)
class AmpliconDataset:
    """
    ASV counts with their taxonomy, sequences, sample metadata and tree.

    ``counts`` has samples as rows and ASV identifiers as columns.
    ``taxonomy`` and ``sequences`` are indexed by ASV identifier, and
    ``metadata`` by sample. When a tree is present its tips are exactly the
    ASV identifiers.
    """

    counts: pd.DataFrame
    taxonomy: pd.DataFrame
    metadata: pd.DataFrame
    sequences: pd.Series
    tree: TreeNode | None = field(default=None)

    def __post_init__(self):
        asvs = set(self.counts.columns)
        _check_same("taxonomy", asvs, set(self.taxonomy.index))
        _check_same("sequences", asvs, set(self.sequences.index))
        if self.tree is not None:
            _check_same("tree tips", asvs, tip_names(self.tree))

        samples = set(self.counts.index)
        if samples != set(self.metadata.index):
            raise DatasetError(
                "Samples in counts and metadata differ: "
                f"counts only {sorted(samples - set(self.metadata.index))}, "
                f"metadata only {sorted(set(self.metadata.index) - samples)}"
            )

    # ── Construction ─────────────────────────────────────────────────────────

    @classmethod
    def from_sequence_table(
        cls,
        seqtab: pd.DataFrame,
        taxonomy: pd.DataFrame,
        metadata: pd.DataFrame,
        tree: TreeNode | None = None,
    ) -> AmpliconDataset:
        """
        Build a dataset from a DADA2 sequence table.

        Sequence columns are renamed to content hashes. ``taxonomy`` may be
        indexed by sequence or by hash. Metadata rows without counts are
        dropped with a warning; counts without metadata are an error. Tree
        tips that are not in the table are sheared away.
        """
        counts, sequences = hash_sequence_table(seqtab)
        counts.index = counts.index.astype(str)

        taxonomy = taxonomy.copy()
        if not set(taxonomy.index) & set(counts.columns):
            taxonomy.index = [sequence_id(str(s)) for s in taxonomy.index]
        missing = counts.columns.difference(taxonomy.index)
        if len(missing):
            raise DatasetError(f"{len(missing)} ASV(s) have no taxonomy row: {list(missing[:5])}")
        taxonomy = taxonomy.loc[counts.columns]
        taxonomy.index.name = "Feature ID"

        no_counts = metadata.index.difference(counts.index)
        if len(no_counts):
            logger.warning("Dropping %d metadata row(s) with no counts: %s",
                           len(no_counts), list(no_counts))
        no_meta = counts.index.difference(metadata.index)
        if len(no_meta):
            raise DatasetError(f"Sample(s) with no metadata: {list(no_meta)}")
        metadata = metadata.loc[counts.index]

        if tree is not None:
            tips = tip_names(tree)
            absent = set(counts.columns) - tips
            if absent:
                raise DatasetError(f"{len(absent)} ASV(s) missing from the tree")
            if tips != set(counts.columns):
                logger.info("Shearing %d tree tip(s) not in the table",
                            len(tips - set(counts.columns)))
                tree = tree.shear(list(counts.columns))

        return cls(counts=counts, taxonomy=taxonomy, metadata=metadata,
                   sequences=sequences, tree=tree)

    # ── Persistence ──────────────────────────────────────────────────────────

    def save(self, directory: str) -> str:
        """Write the dataset as a directory bundle and return its path."""
        os.makedirs(directory, exist_ok=True)

        self.counts.to_csv(os.path.join(directory, "counts.tsv"), sep="\t")
        self.taxonomy.to_csv(os.path.join(directory, "taxonomy.tsv"), sep="\t")
        self.metadata.to_csv(os.path.join(directory, "metadata.tsv"), sep="\t")
        write_rep_seqs(self.sequences, os.path.join(directory, "sequences.fasta"))
        if self.tree is not None:
            self.tree.write(os.path.join(directory, "tree.nwk"), format="newick")

        categories = {
            column: [str(c) for c in self.metadata[column].cat.categories]
            for column in self.metadata.columns
            if isinstance(self.metadata[column].dtype, pd.CategoricalDtype)
        }
        manifest = {
            "version": BUNDLE_VERSION,
            "n_samples": int(self.counts.shape[0]),
            "n_asvs": int(self.counts.shape[1]),
            "has_tree": self.tree is not None,
            "categories": categories,
        }
        with open(os.path.join(directory, "manifest.yaml"), "w") as fh:
            yaml.safe_dump(manifest, fh, sort_keys=False)

        logger.info("Dataset (%d samples x %d ASVs) saved to %s",
                    manifest["n_samples"], manifest["n_asvs"], directory)
        return directory

    @classmethod
    def load(cls, directory: str) -> AmpliconDataset:
        """
        Reload a bundle written by :meth:`save`.

        Raises
        ------
        FileNotFoundError
            If the directory has no manifest.
        """
        manifest_path = Path(directory) / "manifest.yaml"
        if not manifest_path.exists():
            raise FileNotFoundError(f"Dataset manifest not found: {manifest_path}")
        with open(manifest_path) as fh:
            manifest = yaml.safe_load(fh)

        counts = pd.read_csv(Path(directory) / "counts.tsv", sep="\t", index_col=0,
                             converters={0: str})
        taxonomy = pd.read_csv(Path(directory) / "taxonomy.tsv", sep="\t",
                               index_col=0, dtype=str)
        metadata = pd.read_csv(Path(directory) / "metadata.tsv", sep="\t", index_col=0,
                               converters={0: str})
        metadata = apply_levels(metadata, manifest.get("categories", {}))
        sequences = read_rep_seqs(str(Path(directory) / "sequences.fasta"))

        tree = None
        if manifest.get("has_tree"):
            tree = TreeNode.read(str(Path(directory) / "tree.nwk"), format="newick")

        return cls(counts=counts.astype(int), taxonomy=taxonomy,
                   metadata=metadata.loc[counts.index], sequences=sequences,
                   tree=tree)

    # ── Subsetting ───────────────────────────────────────────────────────────

    @property
    def asv_ids(self) -> list[str]:
        return list(self.counts.columns)

    @property
    def sample_ids(self) -> list[str]:
        return list(self.counts.index)

    def subset_samples(self, **criteria) -> AmpliconDataset:
        """
        Keep samples whose metadata matches every criterion.

        Each keyword names a metadata column; its value is either a single
        value or a list of accepted values. ASVs left with no reads are
        pruned.

        Examples
        --------
        >>> ds.subset_samples(Treatment="Abx", Timepoint=["1DPI", "3DPI"])
        """
        mask = pd.Series(True, index=self.metadata.index)
        for column, value in criteria.items():
            if column not in self.metadata.columns:
                raise KeyError(f"Column '{column}' not found in metadata.")
            accepted = value if isinstance(value, (list, tuple, set)) else [value]
            mask &= self.metadata[column].astype(str).isin([str(v) for v in accepted])

        if not mask.any():
            raise DatasetError(f"No samples match {criteria}")

        metadata = self.metadata.loc[mask].copy()
        for column in metadata.columns:
            if isinstance(metadata[column].dtype, pd.CategoricalDtype):
                metadata[column] = metadata[column].cat.remove_unused_categories()

        counts = self.counts.loc[mask]
        present = counts.columns[counts.sum(axis=0) > 0]
        subset = AmpliconDataset(
            counts=counts,
            taxonomy=self.taxonomy,
            metadata=metadata,
            sequences=self.sequences,
            tree=self.tree,
        )
        return subset.prune_taxa(present)

    def prune_taxa(self, ids) -> AmpliconDataset:
        """Keep only the given ASV identifiers in every table and the tree."""
        wanted = set(ids)
        ids = [i for i in self.counts.columns if i in wanted]
        if not ids:
            raise DatasetError("Pruning would remove every ASV")

        tree = self.tree
        if tree is not None and len(ids) != len(tip_names(tree)):
            tree = tree.shear(ids)

        return AmpliconDataset(
            counts=self.counts[ids],
            taxonomy=self.taxonomy.loc[ids],
            metadata=self.metadata,
            sequences=self.sequences.loc[ids],
            tree=tree,
        )

    def filter_taxa(self, min_prevalence: float = 0.0, min_abundance: float = 0.0) -> AmpliconDataset:
        """
        Keep ASVs above prevalence and mean relative abundance thresholds.

        Parameters
        ----------
        min_prevalence : float
            Minimum fraction of samples in which the ASV has a non-zero count.
        min_abundance : float
            Minimum mean relative abundance across samples (0-1 scale).
        """
        prevalence = (self.counts > 0).mean(axis=0)
        mean_abundance = self.relative_abundance().mean(axis=0)
        keep = (prevalence >= min_prevalence) & (mean_abundance >= min_abundance)

        logger.info(
            "Filtering ASVs from %d to %d (prevalence >= %.2f, abundance >= %.4f)",
            len(keep), int(keep.sum()), min_prevalence, min_abundance,
        )
        return self.prune_taxa(keep.index[keep])

    # ── Derived tables ───────────────────────────────────────────────────────

    def relative_abundance(self) -> pd.DataFrame:
        """Per-sample total-sum scaled counts; empty samples stay at zero."""
        depth = self.counts.sum(axis=1)
        return self.counts.div(depth.where(depth > 0), axis=0).fillna(0.0)

    def aggregate_rank(self, rank: str) -> pd.DataFrame:
        """
        Sum counts of ASVs that share a label at ``rank``.

        Returns
        -------
        pd.DataFrame
            Samples × taxa; ASVs unassigned at ``rank`` are pooled as
            ``Unassigned``.

        Raises
        ------
        KeyError
            If the taxonomy has no ``rank`` column.
        """
        require_rank(self.taxonomy, rank)
        labels = self.taxonomy[rank].fillna("Unassigned").loc[self.counts.columns]
        return self.counts.T.groupby(labels.values).sum().T


def _check_same(name: str, expected: set, actual: set) -> None:
    if expected != actual:
        raise DatasetError(
            f"ASV identifiers in counts and {name} differ: "
            f"{len(expected - actual)} only in counts, "
            f"{len(actual - expected)} only in {name}"
        )
