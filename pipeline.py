#!/usr/bin/env python3
"""
tbiome – 16S amplicon analysis pipeline for the antibiotics / TBI study.

Usage
-----
    python pipeline.py --config config/config.yaml

The pipeline executes the following steps in order:

1. Quality control   – FastQC + MultiQC
2. Primer removal    – cutadapt (optional, off by default)
3. Filtering         – DADA2 filterAndTrim
4. Denoising         – DADA2 error model, denoising, merging, chimera removal
5. Taxonomy          – DADA2 assignTaxonomy or VSEARCH
6. Phylogeny         – MAFFT + FastTree, locally or as a SLURM job
7. Assembly          – combined counts / taxonomy / metadata / tree dataset
8. Analyses          – alpha and beta diversity, PCoA, PERMANOVA/PERMDISP,
                       differential abundance (MaAsLin3 or statsmodels),
                       on the full dataset and on each configured subset
9. Visualisation     – alpha diversity, PCoA, relative abundance,
                       differential abundance and read tracking plots

With ``phylogeny.mode: slurm`` the pipeline stops after submitting the tree
job; set ``phylogeny.tree`` to the finished tree and rerun with the earlier
steps switched off.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

import pandas as pd
import yaml

from tbiome.dataset import METADATA_COLUMNS, TIMEPOINT_LEVELS, AmpliconDataset, load_metadata
from tbiome.denoising import (
    chimera_summary,
    filter_sequence_lengths,
    hash_sequence_table,
    load_dada2_counts,
    load_sequence_table,
    run_dada2,
    write_rep_seqs,
)
from tbiome.differential import (
    ENGINES,
    fit_feature_models,
    load_maaslin_results,
    run_maaslin3,
    significant_results,
    write_maaslin_inputs,
)
from tbiome.diversity import (
    alpha_diversity,
    beta_diversity,
    kruskal_wallis_test,
    pairwise_wilcoxon,
    rarefy,
    save_diversity_results,
)
from tbiome.filtering import filter_and_trim, load_filter_counts, remove_primers_samples
from tbiome.ordination import beta_group_tests, ordination_table, pcoa
from tbiome.phylogeny import (
    TREE_MODES,
    SlurmResources,
    build_tree,
    load_tree,
    submit_slurm_job,
    write_slurm_script,
)
from tbiome.quality_control import flag_low_retention, quality_control, track_reads
from tbiome.taxonomy import classify_dada2, classify_vsearch, load_taxonomy
from tbiome.visualisation import (
    plot_alpha_diversity,
    plot_differential,
    plot_pcoa,
    plot_read_tracking,
    plot_relative_abundance,
)

REQUIRED_KEYS = {"samples", "output_dir", "metadata"}


def setup_logging(log_level: str = "INFO", log_file: str | None = None) -> None:
    """Configure root logger."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        os.makedirs(Path(log_file).parent, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )


def load_config(config_path: str) -> dict:
    """
    Load and validate a YAML configuration file.

    Raises
    ------
    FileNotFoundError
        If the configuration file does not exist.
    ValueError
        If required keys are missing or a method name is not recognised.
    """
    if not Path(config_path).exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as fh:
        config = yaml.safe_load(fh) or {}

    missing = REQUIRED_KEYS - set(config.keys())
    if missing:
        raise ValueError(f"Missing required configuration keys: {sorted(missing)}")

    method = config.get("taxonomy", {}).get("method", "dada2")
    if method not in ("dada2", "vsearch"):
        raise ValueError(f"Unknown taxonomy method: '{method}'")
    mode = config.get("phylogeny", {}).get("mode", "local")
    if mode not in TREE_MODES:
        raise ValueError(f"Unknown phylogeny mode: '{mode}'")
    engine = config.get("differential", {}).get("engine", "maaslin3")
    if engine not in ENGINES:
        raise ValueError(f"Unknown differential abundance engine: '{engine}'")

    return config


def load_samples(samples_config: dict | str) -> dict[str, tuple[str, str]]:
    """
    Build a sample dictionary from the config ``samples`` entry.

    Accepts either:
    - A dictionary mapping sample names to ``{r1: ..., r2: ...}``
    - A path to a TSV file with columns: sample, r1, r2

    Returns
    -------
    dict[str, tuple[str, str]]
        Mapping of sample name → (R1 path, R2 path).
    """
    if isinstance(samples_config, str):
        manifest = pd.read_csv(samples_config, sep="\t", dtype=str)
        return {
            row["sample"]: (row["r1"], row["r2"])
            for _, row in manifest.iterrows()
        }

    return {
        str(name): (info["r1"], info["r2"])
        for name, info in samples_config.items()
    }


def slurm_resources(slurm_cfg: dict) -> SlurmResources:
    """Map the ``phylogeny.slurm`` config section onto :class:`SlurmResources`."""
    cfg = dict(slurm_cfg)
    if "setup" in cfg:
        cfg["setup"] = tuple(cfg["setup"])
    return SlurmResources(**cfg)


def _step(config: dict, name: str, default: bool = True) -> bool:
    return config.get("steps", {}).get(name, default)


# ── Upstream: reads to dataset ───────────────────────────────────────────────

def run_upstream(config: dict) -> AmpliconDataset | None:
    """
    Run steps 1–7 and return the assembled dataset.

    Returns ``None`` when the tree is being built by a SLURM job.
    """
    log = logging.getLogger("tbiome.pipeline")
    output_dir = config["output_dir"]
    threads = config.get("threads", 1)
    dataset_dir = config.get("dataset", {}).get("path", os.path.join(output_dir, "dataset"))

    if not _step(config, "assemble"):
        log.info("Reloading dataset from %s", dataset_dir)
        return AmpliconDataset.load(dataset_dir)

    samples = load_samples(config["samples"])
    log.info("Loaded %d sample(s)", len(samples))

    # ── 1. Quality control ───────────────────────────────────────────────────
    if _step(config, "quality_control"):
        log.info("=== Step 1: Quality Control ===")
        quality_control(
            input_files=[f for r1, r2 in samples.values() for f in (r1, r2)],
            output_dir=os.path.join(output_dir, "qc"),
            threads=threads,
        )

    # ── 2. Primer removal ────────────────────────────────────────────────────
    if _step(config, "primer_removal", default=False):
        log.info("=== Step 2: Primer Removal ===")
        primer_cfg = config.get("primers", {})
        samples = remove_primers_samples(
            samples=samples,
            output_dir=os.path.join(output_dir, "primers"),
            primer_set=primer_cfg.get("primer_set", "515F_806R"),
            forward_primer=primer_cfg.get("forward_primer"),
            reverse_primer=primer_cfg.get("reverse_primer"),
            error_rate=primer_cfg.get("error_rate", 0.1),
            threads=threads,
        )

    # ── 3. Filtering ─────────────────────────────────────────────────────────
    filter_dir = os.path.join(output_dir, "filtering")
    filter_cfg = config.get("filtering", {})
    if _step(config, "filtering"):
        log.info("=== Step 3: Quality Filtering ===")
        filtered, filter_counts_path = filter_and_trim(
            samples=samples,
            output_dir=filter_dir,
            trunc_len=tuple(filter_cfg.get("trunc_len", (240, 160))),
            max_ee=tuple(filter_cfg.get("max_ee", (2, 2))),
            trunc_q=filter_cfg.get("trunc_q", 2),
            max_n=filter_cfg.get("max_n", 0),
            rm_phix=filter_cfg.get("rm_phix", True),
            threads=threads,
        )
    else:
        filtered = samples
        filter_counts_path = os.path.join(filter_dir, "filter_counts.tsv")

    # ── 4. Denoising ─────────────────────────────────────────────────────────
    dada2_dir = os.path.join(output_dir, "dada2")
    dada2_cfg = config.get("dada2", {})
    if _step(config, "denoising"):
        log.info("=== Step 4: Denoising (DADA2) ===")
        seqtab_path, dada2_counts_path = run_dada2(
            samples=filtered,
            output_dir=dada2_dir,
            threads=threads,
            pool=dada2_cfg.get("pool", False),
            min_overlap=dada2_cfg.get("min_overlap", 12),
            max_mismatch=dada2_cfg.get("max_mismatch", 0),
        )
    else:
        seqtab_path = config.get("seqtab", os.path.join(dada2_dir, "seqtab_nochim.tsv"))
        dada2_counts_path = os.path.join(dada2_dir, "dada2_counts.tsv")

    if Path(filter_counts_path).exists() and Path(dada2_counts_path).exists():
        dada2_counts = load_dada2_counts(dada2_counts_path)
        log.info("Chimera removal kept %.1f%% of merged reads",
                 100 * chimera_summary(dada2_counts))
        tracking = track_reads(load_filter_counts(filter_counts_path), dada2_counts)
        tracking.to_csv(os.path.join(output_dir, "read_tracking.tsv"), sep="\t")
        flag_low_retention(tracking, filter_cfg.get("min_retention", 0.5))
        if _step(config, "visualisation"):
            plot_read_tracking(tracking, os.path.join(output_dir, "figures", "read_tracking.png"))

    seqtab = filter_sequence_lengths(
        load_sequence_table(seqtab_path),
        dada2_cfg.get("min_length"),
        dada2_cfg.get("max_length"),
    )
    _, sequences = hash_sequence_table(seqtab)
    rep_seqs = write_rep_seqs(sequences, os.path.join(dada2_dir, "rep_seqs.fasta"))

    # ── 5. Taxonomy ──────────────────────────────────────────────────────────
    tax_cfg = config.get("taxonomy", {})
    tax_dir = os.path.join(output_dir, "taxonomy")
    if _step(config, "taxonomy"):
        log.info("=== Step 5: Taxonomic Classification ===")
        if tax_cfg.get("method", "dada2") == "dada2":
            taxonomy_path = classify_dada2(
                rep_seqs=rep_seqs,
                reference=tax_cfg["reference"],
                output_dir=tax_dir,
                species_reference=tax_cfg.get("species_reference"),
                min_boot=tax_cfg.get("min_boot", 50),
                threads=threads,
            )
        else:
            taxonomy_path = classify_vsearch(
                rep_seqs=rep_seqs,
                database=tax_cfg["database"],
                output_dir=tax_dir,
                identity=tax_cfg.get("identity", 0.97),
                threads=threads,
            )
    else:
        taxonomy_path = tax_cfg.get("path", os.path.join(tax_dir, "taxonomy.tsv"))
    taxonomy = load_taxonomy(taxonomy_path)

    # ── 6. Phylogeny ─────────────────────────────────────────────────────────
    phylo_cfg = config.get("phylogeny", {})
    tree_dir = os.path.join(output_dir, "phylogeny")
    tree_path = phylo_cfg.get("tree")
    if tree_path is None and _step(config, "phylogeny"):
        log.info("=== Step 6: Alignment and Tree Building ===")
        if phylo_cfg.get("mode", "local") == "slurm":
            script = write_slurm_script(
                rep_seqs, tree_dir, slurm_resources(phylo_cfg.get("slurm", {}))
            )
            job_id = submit_slurm_job(script)
            log.info(
                "Tree job %s submitted. When it finishes, set phylogeny.tree to %s "
                "and rerun from the assembly step.",
                job_id, os.path.join(tree_dir, "rep_seqs.tree"),
            )
            return None
        tree_path = build_tree(rep_seqs, tree_dir, threads=threads)
    tree = load_tree(tree_path) if tree_path else None

    # ── 7. Assembly ──────────────────────────────────────────────────────────
    log.info("=== Step 7: Dataset Assembly ===")
    dataset_cfg = config.get("dataset", {})
    metadata = load_metadata(
        config["metadata"],
        required_columns=dataset_cfg.get("required_columns", METADATA_COLUMNS),
        levels=dataset_cfg.get("levels", {"Timepoint": TIMEPOINT_LEVELS}),
    )
    dataset = AmpliconDataset.from_sequence_table(seqtab, taxonomy, metadata, tree)
    dataset.save(dataset_dir)

    # Reload so every analysis runs on the persisted object
    return AmpliconDataset.load(dataset_dir)


# ── Downstream: analyses on one dataset ──────────────────────────────────────

def run_analyses(dataset: AmpliconDataset, config: dict, output_dir: str) -> None:
    """Diversity, ordination, differential abundance and plots for one dataset."""
    log = logging.getLogger("tbiome.pipeline")
    threads = config.get("threads", 1)
    div_cfg = config.get("diversity", {})
    viz_cfg = config.get("visualisation", {})
    group_columns = div_cfg.get("group_columns", ["Timepoint"])
    plot_column = viz_cfg.get("group_column", group_columns[0])
    figures = os.path.join(output_dir, "figures")

    dataset_cfg = config.get("dataset", {})
    if dataset_cfg.get("min_prevalence") or dataset_cfg.get("min_abundance"):
        dataset = dataset.filter_taxa(
            dataset_cfg.get("min_prevalence", 0.0),
            dataset_cfg.get("min_abundance", 0.0),
        )

    # ── Diversity ────────────────────────────────────────────────────────────
    if _step(config, "diversity"):
        log.info("=== Diversity Analysis: %s ===", output_dir)
        counts = dataset.counts
        depth = div_cfg.get("rarefaction_depth")
        if depth:
            counts = rarefy(counts, depth, seed=div_cfg.get("seed", 42))

        alpha = alpha_diversity(counts, tree=dataset.tree)
        metrics = div_cfg.get("metrics", ["braycurtis", "jaccard"])
        if dataset.tree is None:
            metrics = [m for m in metrics if "unifrac" not in m]
        beta = {m: beta_diversity(counts, m, tree=dataset.tree) for m in metrics}
        diversity_dir = os.path.join(output_dir, "diversity")
        save_diversity_results(alpha, beta, diversity_dir)

        metadata = dataset.metadata.loc[alpha.index]
        alpha_tests = []
        for column in group_columns:
            for metric in alpha.columns:
                try:
                    kw = kruskal_wallis_test(alpha, metadata, column, metric)
                    pairs = pairwise_wilcoxon(alpha, metadata, column, metric)
                except ValueError as exc:
                    log.warning("Skipping %s tests for '%s': %s", metric, column, exc)
                    continue
                alpha_tests.append({"column": column, "metric": metric, **kw})
                pairs.to_csv(
                    os.path.join(diversity_dir, f"wilcoxon_{metric}_{column}.tsv"),
                    sep="\t", index=False,
                )
        pd.DataFrame(alpha_tests).to_csv(
            os.path.join(diversity_dir, "kruskal_wallis.tsv"), sep="\t", index=False
        )

        # ── Ordination ───────────────────────────────────────────────────────
        if _step(config, "ordination"):
            for metric, matrix in beta.items():
                ordination = pcoa(matrix)
                ordination_table(ordination).to_csv(
                    os.path.join(diversity_dir, f"pcoa_{metric}.tsv"), sep="\t"
                )
                tests = beta_group_tests(
                    matrix, metadata, group_columns,
                    permutations=div_cfg.get("permutations", 999),
                    seed=div_cfg.get("seed", 42),
                )
                tests.to_csv(os.path.join(diversity_dir, f"permanova_{metric}.tsv"),
                             sep="\t", index=False)

                if _step(config, "visualisation"):
                    row = tests[tests["column"] == plot_column]
                    annotation = None
                    if not row.empty:
                        annotation = (f"PERMANOVA R² = {row['permanova_R2'].iloc[0]:.3f}, "
                                      f"p = {row['permanova_p'].iloc[0]:.3g}")
                    plot_pcoa(ordination, metadata, plot_column, metric=metric,
                              annotation=annotation,
                              output_path=os.path.join(figures, f"pcoa_{metric}.png"))

        if _step(config, "visualisation"):
            for metric in alpha.columns:
                plot_alpha_diversity(
                    alpha, metadata, plot_column, metric=metric,
                    output_path=os.path.join(figures, f"alpha_{metric}.png"),
                )

    # ── Differential abundance ───────────────────────────────────────────────
    if _step(config, "differential"):
        log.info("=== Differential Abundance: %s ===", output_dir)
        da_cfg = config.get("differential", {})
        rank = da_cfg.get("rank", "Genus")
        formula = da_cfg.get("formula", "Timepoint")
        max_sig = da_cfg.get("max_significance", 0.1)
        da_dir = os.path.join(output_dir, "differential")

        if da_cfg.get("engine", "maaslin3") == "maaslin3":
            feature_path, metadata_path = write_maaslin_inputs(dataset, da_dir, rank)
            levels = {
                column: [str(c) for c in dataset.metadata[column].cat.categories]
                for column in dataset.metadata.columns
                if isinstance(dataset.metadata[column].dtype, pd.CategoricalDtype)
            }
            results_path = run_maaslin3(
                feature_path, metadata_path, os.path.join(da_dir, "maaslin3"),
                formula=formula,
                levels=levels,
                normalization=da_cfg.get("normalization", "TSS"),
                transform=da_cfg.get("transform", "LOG"),
                augment=da_cfg.get("augment", True),
                standardize=da_cfg.get("standardize", True),
                max_significance=max_sig,
                median_comparison_abundance=da_cfg.get("median_comparison_abundance", True),
                median_comparison_prevalence=da_cfg.get("median_comparison_prevalence", False),
                max_pngs=da_cfg.get("max_pngs", 100),
                cores=da_cfg.get("cores", threads),
            )
            results = load_maaslin_results(results_path)
        else:
            results = fit_feature_models(
                dataset.aggregate_rank(rank),
                dataset.metadata,
                formula=formula,
                standardize=da_cfg.get("standardize", True),
                median_comparison_abundance=da_cfg.get("median_comparison_abundance", True),
                median_comparison_prevalence=da_cfg.get("median_comparison_prevalence", False),
            )
            os.makedirs(da_dir, exist_ok=True)
            results.to_csv(os.path.join(da_dir, "all_results.tsv"), sep="\t", index=False)

        hits = significant_results(results, max_sig)
        hits.to_csv(os.path.join(da_dir, "significant_results.tsv"), sep="\t", index=False)
        log.info("%d significant association(s) at q <= %s", len(hits), max_sig)

        if _step(config, "visualisation"):
            plot_differential(results, max_sig,
                              output_path=os.path.join(figures, "differential_abundance.png"))

    if _step(config, "visualisation"):
        level = viz_cfg.get("taxonomy_level", "Phylum")
        plot_relative_abundance(
            dataset.aggregate_rank(level),
            level=level,
            top_n=viz_cfg.get("top_n_taxa", 10),
            output_path=os.path.join(figures, f"relative_abundance_{level.lower()}.png"),
        )


def run_pipeline(config: dict) -> None:
    """
    Execute the full pipeline.

    Parameters
    ----------
    config : dict
        Parsed configuration dictionary (see ``config/config.yaml``).
    """
    log = logging.getLogger("tbiome.pipeline")
    output_dir = config["output_dir"]

    dataset = run_upstream(config)
    if dataset is None:
        return

    analysis_dir = os.path.join(output_dir, "analysis")
    run_analyses(dataset, config, os.path.join(analysis_dir, "all"))

    for name, criteria in config.get("subsets", {}).items():
        log.info("=== Subset '%s': %s ===", name, criteria)
        run_analyses(dataset.subset_samples(**criteria), config,
                     os.path.join(analysis_dir, name))

    log.info("=== Pipeline complete. Results in: %s ===", output_dir)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="tbiome – 16S amplicon analysis pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config", "-c",
        required=True,
        metavar="FILE",
        help="Path to the YAML configuration file.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO).",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        metavar="FILE",
        help="Optional path to write log output to a file.",
    )

    args = parser.parse_args()
    setup_logging(args.log_level, args.log_file)

    config = load_config(args.config)
    run_pipeline(config)


if __name__ == "__main__":
    main()
