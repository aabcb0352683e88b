"""
Diversity analysis module for 16S amplicon analysis.

Computes alpha-diversity (richness, Shannon, Simpson, Faith's PD) and
beta-diversity (Bray-Curtis, Jaccard, UniFrac via scikit-bio) from an ASV
count table with samples as rows, and tests alpha diversity between groups.
"""

from __future__ import annotations

import itertools
import logging
import os
from pathlib import Path

import numpy as np
import pandas as pd
from scipy.stats import kruskal, mannwhitneyu
from skbio import TreeNode
from skbio.diversity import alpha_diversity as skbio_alpha
from skbio.diversity import beta_diversity as skbio_beta
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger(__name__)

BETA_METRICS = ("braycurtis", "jaccard", "weighted_unifrac", "unweighted_unifrac")
PHYLOGENETIC_METRICS = ("weighted_unifrac", "unweighted_unifrac")


# ── Alpha diversity ───────────────────────────────────────────────────────────

def observed_features(counts: pd.Series) -> int:
    """Return the number of ASVs with at least one count."""
    return int((counts > 0).sum())


def shannon_entropy(counts: pd.Series) -> float:
    """
    Calculate Shannon entropy (H').

    Parameters
    ----------
    counts : pd.Series
        Per-ASV read counts for a single sample.

    Returns
    -------
    float
        Shannon entropy (nats); 0 for an empty sample.
    """
    total = counts.sum()
    if total == 0:
        return 0.0
    freqs = counts[counts > 0] / total
    return float(-np.sum(freqs * np.log(freqs)))


def simpson_index(counts: pd.Series) -> float:
    """
    Calculate the Gini-Simpson index (1 - D).

    Returns
    -------
    float
        0 = no diversity, approaching 1 = maximum diversity.
    """
    n = counts.sum()
    if n <= 1:
        return 0.0
    freqs = counts[counts > 0] / n
    return float(1 - np.sum(freqs ** 2))


def faith_pd(counts: pd.DataFrame, tree: TreeNode) -> pd.Series:
    """Faith's phylogenetic diversity per sample (requires a rooted tree)."""
    values = skbio_alpha(
        "faith_pd",
        counts.values.astype(int),
        ids=list(counts.index),
        taxa=list(counts.columns),
        tree=tree,
    )
    return pd.Series(np.asarray(values, dtype=float), index=counts.index, name="faith_pd")


def alpha_diversity(counts: pd.DataFrame, tree: TreeNode | None = None) -> pd.DataFrame:
    """
    Compute a suite of alpha-diversity metrics for each sample.

    Parameters
    ----------
    counts : pd.DataFrame
        Count table with samples as rows and ASVs as columns.
    tree : skbio.TreeNode or None
        Rooted tree over the ASVs; adds ``faith_pd`` when given.

    Returns
    -------
    pd.DataFrame
        Samples as rows; ``observed_features``, ``shannon``, ``simpson``
        and optionally ``faith_pd`` as columns.
    """
    results = {}
    for sample, row in counts.iterrows():
        results[sample] = {
            "observed_features": observed_features(row),
            "shannon": shannon_entropy(row),
            "simpson": simpson_index(row),
        }
    alpha = pd.DataFrame(results).T
    alpha["observed_features"] = alpha["observed_features"].astype(int)

    if tree is not None:
        alpha["faith_pd"] = faith_pd(counts, tree)

    alpha.index.name = "sample"
    return alpha


def rarefy(counts: pd.DataFrame, depth: int, seed: int = 42) -> pd.DataFrame:
    """
    Subsample every sample without replacement to ``depth`` reads.

    Samples with fewer than ``depth`` reads are dropped with a warning.
    """
    rng = np.random.default_rng(seed)
    depths = counts.sum(axis=1)
    shallow = depths.index[depths < depth]
    for sample in shallow:
        logger.warning("Sample %s has %d reads (< %d); dropped from rarefied table",
                       sample, depths[sample], depth)

    kept = counts.drop(index=shallow)
    rarefied = np.vstack([
        rng.multivariate_hypergeometric(row.astype(np.int64), depth)
        for row in kept.values
    ]) if len(kept) else np.empty((0, counts.shape[1]), dtype=np.int64)

    return pd.DataFrame(rarefied, index=kept.index, columns=counts.columns)


# ── Beta diversity ────────────────────────────────────────────────────────────

def beta_diversity(
    counts: pd.DataFrame,
    metric: str = "braycurtis",
    tree: TreeNode | None = None,
) -> pd.DataFrame:
    """
    Pairwise beta diversity with scikit-bio.

    Parameters
    ----------
    counts : pd.DataFrame
        Count table with samples as rows and ASVs as columns.
    metric : str
        One of :data:`BETA_METRICS`. Jaccard is computed on presence/absence.
    tree : skbio.TreeNode or None
        Rooted tree; required for the UniFrac metrics.

    Returns
    -------
    pd.DataFrame
        Square distance matrix (samples × samples).

    Raises
    ------
    ValueError
        If the metric is unknown, or a UniFrac metric is requested without
        a tree.
    """
    if metric not in BETA_METRICS:
        raise ValueError(f"Unknown beta diversity metric '{metric}'. Choose from {BETA_METRICS}")

    ids = list(counts.index)
    data = counts.values.astype(int)

    if metric in PHYLOGENETIC_METRICS:
        if tree is None:
            raise ValueError(f"Metric '{metric}' needs a phylogenetic tree")
        dm = skbio_beta(metric, data, ids=ids, taxa=list(counts.columns), tree=tree)
    elif metric == "jaccard":
        dm = skbio_beta(metric, (data > 0).astype(int), ids=ids)
    else:
        dm = skbio_beta(metric, data, ids=ids)

    return pd.DataFrame(dm.data, index=ids, columns=ids)


# ── Statistical testing ───────────────────────────────────────────────────────

def _group_values(alpha_df, metadata, group_column, metric):
    if group_column not in metadata.columns:
        raise KeyError(f"Column '{group_column}' not found in metadata.")
    if metric not in alpha_df.columns:
        raise KeyError(f"Metric '{metric}' not found in alpha diversity table.")

    groups = metadata.loc[alpha_df.index, group_column].dropna()
    if isinstance(groups.dtype, pd.CategoricalDtype):
        names = [g for g in groups.cat.categories if (groups == g).any()]
    else:
        names = list(groups.unique())
    if len(names) < 2:
        raise ValueError("At least two groups are required for the test.")

    return {
        g: alpha_df.loc[groups.index[groups == g], metric].dropna().astype(float)
        for g in names
    }


def kruskal_wallis_test(
    alpha_df: pd.DataFrame,
    metadata: pd.DataFrame,
    group_column: str,
    metric: str = "shannon",
) -> dict[str, float]:
    """
    Test whether alpha diversity differs significantly between groups.

    Uses the Kruskal-Wallis H-test (non-parametric one-way ANOVA).

    Parameters
    ----------
    alpha_df : pd.DataFrame
        Alpha diversity DataFrame (output of :func:`alpha_diversity`).
    metadata : pd.DataFrame
        Sample metadata; index must cover the index of ``alpha_df``.
    group_column : str
        Column in ``metadata`` that defines the groups.
    metric : str
        Alpha diversity metric to test (default: ``'shannon'``).

    Returns
    -------
    dict[str, float]
        ``{'statistic': float, 'p_value': float}``.

    Raises
    ------
    KeyError
        If ``group_column`` is not found in ``metadata``, or ``metric`` is
        not found in ``alpha_df``.
    ValueError
        If fewer than two groups are present.
    """
    values = _group_values(alpha_df, metadata, group_column, metric)
    stat, pval = kruskal(*values.values())
    return {"statistic": float(stat), "p_value": float(pval)}


def pairwise_wilcoxon(
    alpha_df: pd.DataFrame,
    metadata: pd.DataFrame,
    group_column: str,
    metric: str = "shannon",
) -> pd.DataFrame:
    """
    Two-sided Mann-Whitney U (Wilcoxon rank-sum) test for every group pair.

    P-values are Benjamini-Hochberg adjusted across the pairs.

    Returns
    -------
    pd.DataFrame
        Columns ``group1``, ``group2``, ``statistic``, ``p_value``,
        ``p_adj``; one row per pair.
    """
    values = _group_values(alpha_df, metadata, group_column, metric)

    rows = []
    for g1, g2 in itertools.combinations(values, 2):
        stat, pval = mannwhitneyu(values[g1], values[g2], alternative="two-sided")
        rows.append({
            "group1": g1,
            "group2": g2,
            "statistic": float(stat),
            "p_value": float(pval),
        })

    result = pd.DataFrame(rows)
    result["p_adj"] = multipletests(result["p_value"], method="fdr_bh")[1]
    return result


# ── I/O helpers ───────────────────────────────────────────────────────────────

def save_diversity_results(
    alpha_df: pd.DataFrame,
    beta: dict[str, pd.DataFrame],
    output_dir: str,
) -> None:
    """
    Write the alpha table and each beta distance matrix to TSV files.

    Parameters
    ----------
    alpha_df : pd.DataFrame
        Alpha diversity table.
    beta : dict[str, pd.DataFrame]
        Distance matrices keyed by metric name.
    output_dir : str
        Directory where TSV files will be written.
    """
    os.makedirs(output_dir, exist_ok=True)

    alpha_df.to_csv(Path(output_dir) / "alpha_diversity.tsv", sep="\t")
    for metric, matrix in beta.items():
        matrix.to_csv(Path(output_dir) / f"beta_diversity_{metric}.tsv", sep="\t")

    logger.info("Diversity results written to %s", output_dir)
