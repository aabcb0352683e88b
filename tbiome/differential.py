"""
Differential abundance module for 16S amplicon analysis.

Aggregates ASV counts to a taxonomic rank and tests each taxon against the
sample metadata. Two engines are available:

* ``maaslin3`` – runs MaAsLin3 in R (via an R subprocess);
* ``python``   – fits the same pair of per-feature models with statsmodels:
  a linear model on log2 relative abundance of the non-zero samples
  (abundance) and a logistic model on presence (prevalence).

Both engines produce a table with MaAsLin3's column names so results can be
filtered and plotted the same way.
"""

from __future__ import annotations

import json
import logging
import os
import re
import textwrap
import warnings
from pathlib import Path

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from scipy import stats
from sklearn.preprocessing import StandardScaler
from statsmodels.stats.multitest import multipletests
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from tbiome.rscript import run_rscript

logger = logging.getLogger(__name__)

ENGINES = ("maaslin3", "python")

RESULT_COLUMNS = [
    "feature", "metadata", "value", "name", "coef", "stderr",
    "pval_individual", "qval_individual", "model", "N", "N_not_zero",
]

_TERM = re.compile(r"^(?P<column>\w+)\[T\.(?P<level>.+)\]$")


# ── Input preparation ────────────────────────────────────────────────────────

def prepare_feature_table(dataset, rank: str = "Genus") -> pd.DataFrame:
    """
    Sum ASV counts per taxon at ``rank``.

    Returns
    -------
    pd.DataFrame
        Taxa as rows, samples as columns (MaAsLin3 layout).

    Raises
    ------
    KeyError
        If the taxonomy has no ``rank`` column.
    """
    return dataset.aggregate_rank(rank).T


def write_maaslin_inputs(dataset, output_dir: str, rank: str = "Genus") -> tuple[str, str]:
    """
    Write the feature table and metadata TSVs that MaAsLin3 reads.

    Returns
    -------
    tuple[str, str]
        Paths to the feature table and the metadata table.
    """
    os.makedirs(output_dir, exist_ok=True)
    features = prepare_feature_table(dataset, rank)

    feature_path = os.path.join(output_dir, f"maaslin3_features_{rank.lower()}.tsv")
    metadata_path = os.path.join(output_dir, "maaslin3_metadata.tsv")
    features.to_csv(feature_path, sep="\t")
    dataset.metadata.to_csv(metadata_path, sep="\t")

    logger.info("MaAsLin3 inputs (%d %s taxa) written to %s",
                features.shape[0], rank, output_dir)
    return feature_path, metadata_path


# ── MaAsLin3 (R) ─────────────────────────────────────────────────────────────

_MAASLIN3_SCRIPT = textwrap.dedent("""\
    library(maaslin3)
    library(jsonlite)

    args          <- commandArgs(trailingOnly = TRUE)
    feature_path  <- args[1]
    metadata_path <- args[2]
    output_dir    <- args[3]
    params        <- fromJSON(args[4])

    taxa_table <- read.delim(feature_path, check.names = FALSE,
                             header = TRUE, row.names = 1)
    metadata   <- read.delim(metadata_path, check.names = FALSE,
                             header = TRUE, row.names = 1)

    for (column in names(params$levels)) {
        metadata[[column]] <- factor(metadata[[column]],
                                     levels = params$levels[[column]])
    }

    fit_out <- maaslin3(input_data = taxa_table,
                        input_metadata = metadata,
                        output = output_dir,
                        formula = params$formula,
                        normalization = params$normalization,
                        transform = params$transform,
                        augment = params$augment,
                        standardize = params$standardize,
                        max_significance = params$max_significance,
                        median_comparison_abundance = params$median_comparison_abundance,
                        median_comparison_prevalence = params$median_comparison_prevalence,
                        max_pngs = params$max_pngs,
                        cores = params$cores,
                        save_models = params$save_models)
""")


def run_maaslin3(
    feature_table: str,
    metadata: str,
    output_dir: str,
    formula: str = "Timepoint",
    levels: dict[str, list[str]] | None = None,
    normalization: str = "TSS",
    transform: str = "LOG",
    augment: bool = True,
    standardize: bool = True,
    max_significance: float = 0.1,
    median_comparison_abundance: bool = True,
    median_comparison_prevalence: bool = False,
    max_pngs: int = 100,
    cores: int = 1,
    save_models: bool = True,
) -> str:
    """
    Fit MaAsLin3 models in R.

    Parameters
    ----------
    feature_table, metadata : str
        TSVs from :func:`write_maaslin_inputs`.
    output_dir : str
        MaAsLin3 output directory.
    formula : str
        Right-hand side of the model formula (default: ``'Timepoint'``).
    levels : dict[str, list[str]] or None
        Factor levels per metadata column; the first level is the reference.

    The remaining parameters are passed to ``maaslin3()`` unchanged.

    Returns
    -------
    str
        Path to ``all_results.tsv``.

    Raises
    ------
    FileNotFoundError
        If an input table does not exist.
    subprocess.CalledProcessError
        If the R script exits with a non-zero return code.
    """
    for f in (feature_table, metadata):
        if not Path(f).exists():
            raise FileNotFoundError(f"File not found: {f}")

    os.makedirs(output_dir, exist_ok=True)
    params = {
        "formula": formula,
        "levels": levels or {},
        "normalization": normalization,
        "transform": transform,
        "augment": augment,
        "standardize": standardize,
        "max_significance": max_significance,
        "median_comparison_abundance": median_comparison_abundance,
        "median_comparison_prevalence": median_comparison_prevalence,
        "max_pngs": max_pngs,
        "cores": cores,
        "save_models": save_models,
    }

    logger.info("Running MaAsLin3 with formula '%s'", formula)
    run_rscript(
        _MAASLIN3_SCRIPT,
        os.path.join(output_dir, "_maaslin3_run.R"),
        [feature_table, metadata, output_dir, json.dumps(params)],
    )

    results = os.path.join(output_dir, "all_results.tsv")
    logger.info("MaAsLin3 complete. Results: %s", results)
    return results


def load_maaslin_results(results_path: str) -> pd.DataFrame:
    """Read a MaAsLin3 ``all_results.tsv``."""
    if not Path(results_path).exists():
        raise FileNotFoundError(f"MaAsLin3 results not found: {results_path}")
    return pd.read_csv(results_path, sep="\t")


# ── Python engine ────────────────────────────────────────────────────────────

def _formula_columns(formula: str, metadata: pd.DataFrame) -> list[str]:
    names = re.findall(r"[A-Za-z_]\w*", formula)
    columns = [n for n in dict.fromkeys(names) if n in metadata.columns]
    if not columns:
        raise KeyError(f"Formula '{formula}' names no metadata column.")
    return columns


def _design_data(metadata: pd.DataFrame, columns: list[str], standardize: bool) -> pd.DataFrame:
    data = metadata[columns].copy()
    numeric = [c for c in columns if pd.api.types.is_numeric_dtype(data[c])]
    if standardize and numeric:
        data[numeric] = StandardScaler().fit_transform(data[numeric])
    return _drop_unused_levels(data)


def _split_term(term: str) -> tuple[str, str]:
    match = _TERM.match(term)
    if match:
        return match.group("column"), match.group("level")
    return term, term


def _references_present(data: pd.DataFrame) -> bool:
    """True when every categorical keeps its reference level in ``data``."""
    for column in data.columns:
        if isinstance(data[column].dtype, pd.CategoricalDtype):
            if not (data[column] == data[column].cat.categories[0]).any():
                return False
    return True


def _drop_unused_levels(data: pd.DataFrame) -> pd.DataFrame:
    data = data.copy()
    for column in data.columns:
        if isinstance(data[column].dtype, pd.CategoricalDtype):
            data[column] = data[column].cat.remove_unused_categories()
    return data


def _fit(model: str, formula: str, data: pd.DataFrame):
    if model == "abundance":
        return smf.ols(f"_response ~ {formula}", data=data).fit()
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        return smf.logit(f"_response ~ {formula}", data=data).fit(disp=0)


def _coefficients(feature, model, fit, n, n_not_zero) -> list[dict]:
    rows = []
    for term in fit.params.index:
        if term == "Intercept":
            continue
        column, value = _split_term(term)
        rows.append({
            "feature": feature,
            "metadata": column,
            "value": value,
            "name": term,
            "coef": float(fit.params[term]),
            "stderr": float(fit.bse[term]),
            "pval_individual": float(fit.pvalues[term]),
            "model": model,
            "N": n,
            "N_not_zero": n_not_zero,
            "_df_resid": float(fit.df_resid),
        })
    return rows


def _median_comparison(results: pd.DataFrame, model: str) -> pd.DataFrame:
    """
    Re-test each coefficient against the median coefficient of its term.

    Compositional data shift every taxon's coefficient together; comparing
    against the median across taxa removes that shared shift.
    """
    mask = results["model"] == model
    medians = results.loc[mask].groupby("name")["coef"].transform("median")
    t_stat = (results.loc[mask, "coef"] - medians) / results.loc[mask, "stderr"]
    pvals = 2 * stats.t.sf(np.abs(t_stat), results.loc[mask, "_df_resid"])
    results.loc[mask, "pval_individual"] = pvals
    return results


def fit_feature_models(
    features: pd.DataFrame,
    metadata: pd.DataFrame,
    formula: str = "Timepoint",
    standardize: bool = True,
    median_comparison_abundance: bool = True,
    median_comparison_prevalence: bool = False,
    min_samples: int = 3,
) -> pd.DataFrame:
    """
    Fit per-feature abundance and prevalence models with statsmodels.

    Parameters
    ----------
    features : pd.DataFrame
        Counts with samples as rows and features (e.g. genera) as columns.
    metadata : pd.DataFrame
        Sample metadata; categorical columns use their first category as
        the reference level.
    formula : str
        Right-hand side of the model formula, in patsy syntax.
    standardize : bool
        Z-score numeric metadata columns before fitting.
    median_comparison_abundance, median_comparison_prevalence : bool
        Test coefficients against the per-term median across features
        instead of against zero.
    min_samples : int
        Minimum number of samples, beyond the number of model parameters,
        needed to fit a model.

    Returns
    -------
    pd.DataFrame
        One row per feature, model and term, with the columns of
        :data:`RESULT_COLUMNS`. q-values are Benjamini-Hochberg adjusted
        within each model type.

    Raises
    ------
    KeyError
        If the formula references no metadata column.
    ValueError
        If the feature table and metadata share no samples.
    """
    columns = _formula_columns(formula, metadata)
    samples = features.index.intersection(metadata.index)
    if samples.empty:
        raise ValueError("Feature table and metadata share no samples.")

    counts = features.loc[samples]
    depth = counts.sum(axis=1)
    counts = counts.loc[depth > 0]
    relative = counts.div(counts.sum(axis=1), axis=0)
    design = _design_data(metadata.loc[relative.index], columns, standardize)
    n = len(relative)

    rows = []
    for feature in relative.columns:
        present = relative[feature] > 0
        n_not_zero = int(present.sum())

        # Abundance: log2 relative abundance of the samples where present
        data = _drop_unused_levels(design.loc[present])
        if _references_present(data) and n_not_zero >= min_samples + 1:
            data["_response"] = np.log2(relative.loc[present, feature])
            fit = _fit("abundance", formula, data)
            if fit.df_resid >= min_samples - 1:
                rows += _coefficients(feature, "abundance", fit, n, n_not_zero)

        # Prevalence: presence/absence over every sample
        if 0 < n_not_zero < n:
            data = design.copy()
            data["_response"] = present.astype(int)
            try:
                fit = _fit("prevalence", formula, data)
            except (PerfectSeparationError, np.linalg.LinAlgError) as exc:
                logger.debug("Prevalence model failed for %s: %s", feature, exc)
            else:
                rows += _coefficients(feature, "prevalence", fit, n, n_not_zero)

    results = pd.DataFrame(rows, columns=RESULT_COLUMNS + ["_df_resid"])
    if results.empty:
        logger.warning("No feature had enough data to fit a model")
        return results[RESULT_COLUMNS]

    if median_comparison_abundance:
        results = _median_comparison(results, "abundance")
    if median_comparison_prevalence:
        results = _median_comparison(results, "prevalence")

    for model in ("abundance", "prevalence"):
        mask = (results["model"] == model) & results["pval_individual"].notna()
        if mask.any():
            results.loc[mask, "qval_individual"] = multipletests(
                results.loc[mask, "pval_individual"], method="fdr_bh"
            )[1]

    logger.info("Fitted %d coefficient(s) across %d feature(s)",
                len(results), results["feature"].nunique())
    return results[RESULT_COLUMNS].sort_values("qval_individual").reset_index(drop=True)


def significant_results(results: pd.DataFrame, max_significance: float = 0.1) -> pd.DataFrame:
    """Rows whose individual q-value is at most ``max_significance``."""
    hits = results[results["qval_individual"] <= max_significance]
    return hits.sort_values("qval_individual").reset_index(drop=True)
