"""
Ordination and distance-based group tests.

PCoA, PERMANOVA and PERMDISP are delegated to scikit-bio; this module only
converts between pandas tables and scikit-bio objects and tabulates results.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd
from skbio import DistanceMatrix
from skbio.stats.distance import permanova as skbio_permanova
from skbio.stats.distance import permdisp as skbio_permdisp
from skbio.stats.ordination import OrdinationResults
from skbio.stats.ordination import pcoa as skbio_pcoa

logger = logging.getLogger(__name__)


def to_distance_matrix(distance_matrix: pd.DataFrame) -> DistanceMatrix:
    """Wrap a square samples × samples DataFrame as an ``skbio.DistanceMatrix``."""
    ids = [str(i) for i in distance_matrix.index]
    data = distance_matrix.loc[distance_matrix.index, distance_matrix.index].values
    return DistanceMatrix(np.asarray(data, dtype=float), ids=ids)


def pcoa(distance_matrix: pd.DataFrame) -> OrdinationResults:
    """Principal coordinates analysis of a square distance matrix."""
    return skbio_pcoa(to_distance_matrix(distance_matrix))


def _grouping(distance_matrix, metadata, column):
    if column not in metadata.columns:
        raise KeyError(f"Column '{column}' not found in metadata.")

    grouping = metadata.loc[distance_matrix.index, column].astype(str)
    if grouping.nunique() < 2:
        raise ValueError(f"Column '{column}' has fewer than two groups.")
    grouping.index = [str(i) for i in grouping.index]
    return grouping


def permanova(
    distance_matrix: pd.DataFrame,
    metadata: pd.DataFrame,
    column: str,
    permutations: int = 999,
    seed: int | None = 42,
) -> dict:
    """
    PERMANOVA of ``distance_matrix`` against a metadata grouping.

    Returns
    -------
    dict
        ``statistic`` (pseudo-F), ``r2``, ``p_value``, ``n_samples``,
        ``n_groups``, ``permutations``.

    Raises
    ------
    KeyError
        If ``column`` is not in the metadata.
    ValueError
        If the column defines fewer than two groups.
    """
    grouping = _grouping(distance_matrix, metadata, column)
    if seed is not None:
        np.random.seed(seed)

    result = skbio_permanova(to_distance_matrix(distance_matrix), grouping,
                             permutations=permutations)

    n = int(result["sample size"])
    g = int(result["number of groups"])
    f_stat = float(result["test statistic"])
    # R² = SS_between / SS_total, recovered from the pseudo-F
    between = f_stat * (g - 1)
    r2 = between / (between + (n - g))

    return {
        "statistic": f_stat,
        "r2": r2,
        "p_value": float(result["p-value"]),
        "n_samples": n,
        "n_groups": g,
        "permutations": int(result["number of permutations"]),
    }


def permdisp(
    distance_matrix: pd.DataFrame,
    metadata: pd.DataFrame,
    column: str,
    permutations: int = 999,
    seed: int | None = 42,
) -> dict:
    """
    Test homogeneity of multivariate dispersions (PERMDISP).

    A significant result means group spreads differ, which can by itself
    make PERMANOVA significant.
    """
    grouping = _grouping(distance_matrix, metadata, column)
    if seed is not None:
        np.random.seed(seed)

    # the internal PCoA cannot keep more axes than there are samples
    dimensions = min(10, len(grouping) - 1)
    result = skbio_permdisp(to_distance_matrix(distance_matrix), grouping,
                            permutations=permutations, dimensions=dimensions)
    return {
        "statistic": float(result["test statistic"]),
        "p_value": float(result["p-value"]),
        "n_samples": int(result["sample size"]),
        "n_groups": int(result["number of groups"]),
        "permutations": int(result["number of permutations"]),
    }


def beta_group_tests(
    distance_matrix: pd.DataFrame,
    metadata: pd.DataFrame,
    columns: list[str],
    permutations: int = 999,
    seed: int | None = 42,
) -> pd.DataFrame:
    """
    PERMANOVA and PERMDISP for several grouping columns.

    Columns with fewer than two groups in the given samples are skipped with
    a warning, which happens routinely once a dataset is subset.
    """
    rows = []
    for column in columns:
        try:
            _grouping(distance_matrix, metadata, column)
        except ValueError as exc:
            logger.warning("Skipping group tests for '%s': %s", column, exc)
            continue

        adonis = permanova(distance_matrix, metadata, column, permutations, seed)
        disp = permdisp(distance_matrix, metadata, column, permutations, seed)

        rows.append({
            "column": column,
            "n_samples": adonis["n_samples"],
            "n_groups": adonis["n_groups"],
            "permanova_F": adonis["statistic"],
            "permanova_R2": adonis["r2"],
            "permanova_p": adonis["p_value"],
            "permdisp_F": disp["statistic"],
            "permdisp_p": disp["p_value"],
        })

    return pd.DataFrame(rows, columns=[
        "column", "n_samples", "n_groups", "permanova_F", "permanova_R2",
        "permanova_p", "permdisp_F", "permdisp_p",
    ])


def ordination_table(ordination: OrdinationResults, n_axes: int = 3) -> pd.DataFrame:
    """Sample coordinates on the first ``n_axes`` axes, for TSV export."""
    return ordination.samples.iloc[:, :n_axes].copy()


def variance_explained(ordination: OrdinationResults, n_axes: int = 2) -> list[float]:
    """Proportion of variance explained by the first ``n_axes`` axes."""
    return [float(v) for v in ordination.proportion_explained.iloc[:n_axes]]
