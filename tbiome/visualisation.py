"""
Visualisation module for 16S amplicon analysis.

Generates figures for alpha diversity, PCoA ordination, relative abundance,
differential abundance and read retention.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import matplotlib
matplotlib.use("Agg")  # non-interactive backend for server/HPC use
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from matplotlib.colors import to_rgba
from skbio.stats.ordination import OrdinationResults

from tbiome.ordination import variance_explained
from tbiome.quality_control import TRACKING_COLUMNS

logger = logging.getLogger(__name__)

# Colour palette suitable for colour-blind users (Wong 2011)
CB_PALETTE = [
    "#E69F00", "#56B4E9", "#009E73", "#F0E442",
    "#0072B2", "#D55E00", "#CC79A7", "#000000",
]


def _groups_in_order(values: pd.Series) -> list:
    if isinstance(values.dtype, pd.CategoricalDtype):
        return [g for g in values.cat.categories if (values == g).any()]
    return list(values.dropna().unique())


def _save(fig: plt.Figure, output_path: str | None, what: str) -> None:
    if output_path:
        os.makedirs(Path(output_path).parent, exist_ok=True)
        fig.savefig(output_path, dpi=150, bbox_inches="tight")
        plt.close(fig)
        logger.info("%s plot saved to %s", what, output_path)


def plot_alpha_diversity(
    alpha_df: pd.DataFrame,
    metadata: pd.DataFrame,
    group_column: str,
    metric: str = "shannon",
    output_path: str | None = None,
) -> plt.Figure:
    """
    Box-and-strip plot of an alpha diversity metric grouped by a metadata variable.

    Ordered categoricals (e.g. ``Timepoint``) are drawn in level order.
    """
    groups = metadata.loc[alpha_df.index, group_column]
    names = _groups_in_order(groups)
    data = [alpha_df.loc[groups.index[groups == g], metric].dropna() for g in names]

    fig, ax = plt.subplots(figsize=(max(4, len(names) * 1.2), 5))
    bp = ax.boxplot(data, patch_artist=True, widths=0.5)

    for patch, colour in zip(bp["boxes"], CB_PALETTE):
        patch.set_facecolor(to_rgba(colour, 0.7))

    rng = np.random.default_rng(42)
    for i, (d, colour) in enumerate(zip(data, CB_PALETTE), start=1):
        jitter = rng.uniform(-0.15, 0.15, len(d))
        ax.scatter(i + jitter, d, color=colour, s=30, zorder=3, alpha=0.8)

    ax.set_xticks(range(1, len(names) + 1))
    ax.set_xticklabels([str(n) for n in names], rotation=20, ha="right")
    ax.set_ylabel(metric.replace("_", " ").title())
    ax.set_title(f"Alpha diversity – {metric}")
    fig.tight_layout()

    _save(fig, output_path, "Alpha diversity")
    return fig


def plot_pcoa(
    ordination: OrdinationResults,
    metadata: pd.DataFrame,
    group_column: str,
    metric: str = "Bray-Curtis",
    annotation: str | None = None,
    output_path: str | None = None,
) -> plt.Figure:
    """
    Scatter of the first two PCoA axes coloured by a metadata variable.

    Parameters
    ----------
    ordination : skbio.OrdinationResults
        Output of :func:`tbiome.ordination.pcoa`.
    metadata : pd.DataFrame
        Sample metadata covering the ordinated samples.
    group_column : str
        Metadata column used for colouring points.
    metric : str
        Distance name for the title.
    annotation : str or None
        Text placed in the upper-left corner, e.g. PERMANOVA results.
    output_path : str or None
        If provided, save the figure to this path.
    """
    coords = ordination.samples.iloc[:, :2]
    explained = variance_explained(ordination, n_axes=2)
    groups = metadata.loc[coords.index, group_column]

    fig, ax = plt.subplots(figsize=(6, 5))
    for i, group in enumerate(_groups_in_order(groups)):
        mask = (groups == group).values
        ax.scatter(
            coords.values[mask, 0], coords.values[mask, 1],
            c=CB_PALETTE[i % len(CB_PALETTE)], label=str(group), s=60, alpha=0.85,
        )

    ax.set_xlabel(f"PCoA 1 ({explained[0]:.1%})")
    ax.set_ylabel(f"PCoA 2 ({explained[1]:.1%})")
    ax.set_title(f"PCoA – {metric}\nColoured by {group_column}")
    if annotation:
        ax.text(0.02, 0.98, annotation, transform=ax.transAxes, va="top", fontsize=8,
                bbox=dict(boxstyle="round", facecolor="white", alpha=0.8))
    ax.legend(title=group_column, bbox_to_anchor=(1.02, 1), loc="upper left")
    fig.tight_layout()

    _save(fig, output_path, "PCoA")
    return fig


def plot_relative_abundance(
    taxa_counts: pd.DataFrame,
    level: str = "Phylum",
    top_n: int = 10,
    output_path: str | None = None,
) -> plt.Figure:
    """
    Stacked bar chart of relative abundance at a given taxonomic level.

    Parameters
    ----------
    taxa_counts : pd.DataFrame
        Samples × taxa counts, e.g. ``dataset.aggregate_rank(level)``.
    level : str
        Rank name, used for labels (default: ``'Phylum'``).
    top_n : int
        Keep only the ``top_n`` most abundant taxa; the remainder is grouped
        as ``'Other'`` (default: 10).
    output_path : str or None
        If provided, save the figure to this path.
    """
    rel = taxa_counts.T
    rel = rel.div(rel.sum(axis=0).replace(0, np.nan), axis=1).fillna(0) * 100

    top_taxa = rel.sum(axis=1).nlargest(top_n).index
    other = rel.drop(index=top_taxa).sum(axis=0)
    rel = rel.loc[top_taxa]
    if other.sum() > 0:
        rel.loc["Other"] = other

    colours = list(plt.cm.tab20.colors)
    fig, ax = plt.subplots(figsize=(max(6, len(rel.columns) * 0.4), 6))
    rel.T.plot(kind="bar", stacked=True, ax=ax, color=colours, width=0.8)

    ax.set_ylabel("Relative abundance (%)")
    ax.set_xlabel("Sample")
    ax.set_title(f"Relative abundance ({level} level)")
    ax.set_xticklabels(ax.get_xticklabels(), rotation=90)
    ax.legend(title=level, bbox_to_anchor=(1.02, 1), loc="upper left", fontsize=8)
    fig.tight_layout()

    _save(fig, output_path, "Relative abundance")
    return fig


def plot_differential(
    results: pd.DataFrame,
    max_significance: float = 0.1,
    model: str = "abundance",
    output_path: str | None = None,
) -> plt.Figure | None:
    """
    Horizontal bar plot of significant coefficients for one model type.

    Returns ``None`` (and draws nothing) when no result passes the threshold.
    """
    hits = results[(results["model"] == model)
                   & (results["qval_individual"] <= max_significance)]
    if hits.empty:
        logger.info("No significant %s associations to plot", model)
        return None

    hits = hits.sort_values("coef")
    labels = hits["feature"] + " (" + hits["value"].astype(str) + ")"
    colours = np.where(hits["coef"] > 0, CB_PALETTE[5], CB_PALETTE[4])

    fig, ax = plt.subplots(figsize=(7, max(3, 0.3 * len(hits))))
    ax.barh(labels, hits["coef"], xerr=hits["stderr"], color=colours, alpha=0.85)
    ax.axvline(0, color="black", linewidth=0.8)
    ax.set_xlabel("Coefficient")
    ax.set_title(f"Differential {model} (q ≤ {max_significance})")
    fig.tight_layout()

    _save(fig, output_path, "Differential abundance")
    return fig


def plot_read_tracking(tracking: pd.DataFrame, output_path: str | None = None) -> plt.Figure:
    """Reads per sample at each processing stage, one line per sample."""
    fig, ax = plt.subplots(figsize=(7, 5))
    stages = range(len(TRACKING_COLUMNS))
    for sample, row in tracking[TRACKING_COLUMNS].iterrows():
        ax.plot(stages, row.values, marker="o", alpha=0.6, label=str(sample))

    ax.set_xticks(list(stages))
    ax.set_xticklabels(TRACKING_COLUMNS, rotation=20, ha="right")
    ax.set_ylabel("Reads")
    ax.set_title("Read retention by stage")
    if len(tracking) <= 20:
        ax.legend(fontsize=7, bbox_to_anchor=(1.02, 1), loc="upper left")
    fig.tight_layout()

    _save(fig, output_path, "Read tracking")
    return fig
