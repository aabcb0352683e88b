"""
Tests for tbiome.visualisation – figures are produced and saved.
"""

import matplotlib.pyplot as plt
import pandas as pd
import pytest

from tbiome.diversity import alpha_diversity, beta_diversity
from tbiome.ordination import pcoa, variance_explained
from tbiome.quality_control import TRACKING_COLUMNS
from tbiome.visualisation import (
    plot_alpha_diversity,
    plot_differential,
    plot_pcoa,
    plot_read_tracking,
    plot_relative_abundance,
)


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


def test_plot_alpha_diversity_saves(dataset, tmp_path):
    alpha = alpha_diversity(dataset.counts)
    path = tmp_path / "figs" / "alpha.png"
    fig = plot_alpha_diversity(alpha, dataset.metadata, "Timepoint", output_path=str(path))
    assert path.exists()
    labels = [t.get_text() for t in fig.axes[0].get_xticklabels()]
    # categorical order, unused levels omitted
    assert labels == ["BA", "1DPI"]


def test_plot_pcoa_annotation(dataset, tmp_path):
    ordination = pcoa(beta_diversity(dataset.counts, "braycurtis"))
    fig = plot_pcoa(ordination, dataset.metadata, "Treatment",
                    annotation="PERMANOVA R² = 0.5", output_path=str(tmp_path / "pcoa.png"))
    ax = fig.axes[0]
    assert ax.get_xlabel().startswith("PCoA 1 (")
    assert any("PERMANOVA" in t.get_text() for t in ax.texts)
    assert (tmp_path / "pcoa.png").exists()
    explained = variance_explained(ordination)
    assert ax.get_ylabel() == f"PCoA 2 ({explained[1]:.1%})"


def test_plot_relative_abundance_groups_other(dataset):
    fig = plot_relative_abundance(dataset.aggregate_rank("Genus"), level="Genus", top_n=2)
    legend = [t.get_text() for t in fig.axes[0].get_legend().get_texts()]
    assert len(legend) == 3
    assert legend[-1] == "Other"


def test_plot_differential_no_hits():
    results = pd.DataFrame({
        "feature": ["A"], "value": ["1DPI"], "coef": [0.1], "stderr": [0.2],
        "qval_individual": [0.9], "model": ["abundance"],
    })
    assert plot_differential(results) is None


def test_plot_differential_hits(tmp_path):
    results = pd.DataFrame({
        "feature": ["Akkermansia", "Roseburia", "Rare"],
        "value": ["1DPI", "1DPI", "1DPI"],
        "coef": [3.0, -1.5, 2.0],
        "stderr": [0.3, 0.4, 0.5],
        "qval_individual": [0.001, 0.05, 0.01],
        "model": ["abundance", "abundance", "prevalence"],
    })
    fig = plot_differential(results, output_path=str(tmp_path / "da.png"))
    labels = [t.get_text() for t in fig.axes[0].get_yticklabels()]
    assert labels == ["Roseburia (1DPI)", "Akkermansia (1DPI)"]
    assert (tmp_path / "da.png").exists()


def test_plot_read_tracking():
    tracking = pd.DataFrame(
        [[1000, 900, 880, 870, 850, 850, 800], [1000, 400, 390, 385, 300, 300, 280]],
        index=["S1", "S2"],
        columns=TRACKING_COLUMNS,
    )
    fig = plot_read_tracking(tracking)
    assert len(fig.axes[0].lines) == 2


def test_saved_figures_are_closed(dataset, tmp_path):
    alpha = alpha_diversity(dataset.counts)
    fig = plot_alpha_diversity(alpha, dataset.metadata, "Treatment",
                               output_path=str(tmp_path / "alpha.png"))
    assert fig.number not in plt.get_fignums()

    unsaved = plot_alpha_diversity(alpha, dataset.metadata, "Treatment")
    assert unsaved.number in plt.get_fignums()
