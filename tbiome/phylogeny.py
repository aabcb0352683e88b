"""
Phylogeny module for 16S amplicon analysis.

Aligns representative ASV sequences with MAFFT and infers a tree with
FastTree, either directly or as a SLURM batch job on a cluster. The
resulting Newick file is read back as a midpoint-rooted ``skbio.TreeNode``.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

from skbio import TreeNode

logger = logging.getLogger(__name__)

TREE_MODES = ("local", "slurm")


@dataclass
class SlurmResources:
    """Job-submission parameters declared in the batch script header."""

    time: str = "04-00:00:00"
    partition: str = "defq"
    mem: str = "192GB"
    ntasks_per_node: int = 64
    nodes: int = 1
    job_name: str = "tbiome_tree"
    mail_user: str | None = None
    mail_type: str = "BEGIN,END,FAIL"
    # Shell lines run before the tools, e.g. module loads / env activation
    setup: tuple[str, ...] = ()

    def directives(self) -> list[str]:
        lines = [
            f"#SBATCH --time={self.time}",
            f"#SBATCH --partition={self.partition}",
            f"#SBATCH --mem={self.mem}",
            f"#SBATCH --ntasks-per-node={self.ntasks_per_node}",
            f"#SBATCH --nodes={self.nodes}",
            f"#SBATCH --job-name={self.job_name}",
        ]
        if self.mail_user:
            lines += [
                f"#SBATCH --mail-user={self.mail_user}",
                f"#SBATCH --mail-type={self.mail_type}",
            ]
        return lines


def mafft_command(rep_seqs: str, threads: int = 1) -> list[str]:
    """MAFFT E-INS-i style iterative alignment (``--genafpair``)."""
    return [
        "mafft",
        "--maxiterate", "1000",
        "--genafpair",
        "--thread", str(threads),
        rep_seqs,
    ]


def fasttree_command(alignment: str) -> list[str]:
    """FastTree nucleotide tree under the GTR model."""
    return ["FastTree", "-nt", "-gtr", alignment]


def align_sequences(rep_seqs: str, output_path: str, threads: int = 1) -> str:
    """
    Align representative sequences with MAFFT.

    Raises
    ------
    FileNotFoundError
        If ``rep_seqs`` does not exist.
    subprocess.CalledProcessError
        If MAFFT exits with a non-zero return code.
    """
    if not Path(rep_seqs).exists():
        raise FileNotFoundError(f"Input file not found: {rep_seqs}")

    os.makedirs(Path(output_path).parent, exist_ok=True)
    cmd = mafft_command(rep_seqs, threads)

    logger.info("Aligning %s with MAFFT", rep_seqs)
    logger.debug("Command: %s", " ".join(cmd))
    with open(output_path, "w") as out_fh:
        subprocess.run(cmd, check=True, stdout=out_fh)
    return output_path


def infer_tree(alignment: str, output_path: str) -> str:
    """
    Infer an approximately-maximum-likelihood tree with FastTree.

    Raises
    ------
    FileNotFoundError
        If ``alignment`` does not exist.
    subprocess.CalledProcessError
        If FastTree exits with a non-zero return code.
    """
    if not Path(alignment).exists():
        raise FileNotFoundError(f"Input file not found: {alignment}")

    os.makedirs(Path(output_path).parent, exist_ok=True)
    cmd = fasttree_command(alignment)

    logger.info("Building tree from %s with FastTree", alignment)
    logger.debug("Command: %s", " ".join(cmd))
    with open(output_path, "w") as out_fh:
        subprocess.run(cmd, check=True, stdout=out_fh)
    return output_path


def build_tree(rep_seqs: str, output_dir: str, threads: int = 1) -> str:
    """Run MAFFT then FastTree locally and return the Newick tree path."""
    alignment = align_sequences(
        rep_seqs, os.path.join(output_dir, "rep_seqs_aln.fasta"), threads=threads
    )
    tree = infer_tree(alignment, os.path.join(output_dir, "rep_seqs.tree"))
    logger.info("Tree written to %s", tree)
    return tree


def write_slurm_script(
    rep_seqs: str,
    output_dir: str,
    resources: SlurmResources | None = None,
) -> str:
    """
    Write a SLURM batch script that aligns ``rep_seqs`` and builds the tree.

    MAFFT runs with one thread per task on the node. The tree lands at
    ``<output_dir>/rep_seqs.tree``, the same place :func:`build_tree` uses.

    Returns
    -------
    str
        Path to the batch script.
    """
    if not Path(rep_seqs).exists():
        raise FileNotFoundError(f"Input file not found: {rep_seqs}")

    resources = resources or SlurmResources()
    os.makedirs(output_dir, exist_ok=True)

    alignment = os.path.join(output_dir, "rep_seqs_aln.fasta")
    tree = os.path.join(output_dir, "rep_seqs.tree")
    mafft = " ".join(shlex.quote(a) for a in mafft_command(rep_seqs, resources.ntasks_per_node))
    fasttree = " ".join(shlex.quote(a) for a in fasttree_command(alignment))

    lines = ["#!/bin/bash", ""]
    lines += resources.directives()
    lines += ["", "set -euo pipefail", ""]
    lines += list(resources.setup)
    lines += [
        "",
        f"{mafft} > {shlex.quote(alignment)}",
        "",
        f"{fasttree} > {shlex.quote(tree)}",
        "",
    ]

    script_path = os.path.join(output_dir, "build_tree.sbatch")
    with open(script_path, "w") as fh:
        fh.write("\n".join(lines))

    logger.info("SLURM script written to %s", script_path)
    return script_path


def submit_slurm_job(script_path: str) -> str:
    """
    Submit a batch script with ``sbatch`` and return the job id.

    Raises
    ------
    subprocess.CalledProcessError
        If ``sbatch`` rejects the job.
    """
    cmd = ["sbatch", "--parsable", script_path]
    logger.debug("Command: %s", " ".join(cmd))
    result = subprocess.run(cmd, check=True, capture_output=True, text=True)

    # --parsable prints "<jobid>" or "<jobid>;<cluster>"
    job_id = result.stdout.strip().split(";")[0]
    logger.info("Submitted tree job %s", job_id)
    return job_id


def load_tree(tree_path: str, midpoint_root: bool = True) -> TreeNode:
    """
    Read a Newick tree, optionally rooting it at the midpoint.

    FastTree trees are unrooted; UniFrac and Faith's PD need a rooted tree.
    """
    if not Path(tree_path).exists():
        raise FileNotFoundError(f"Tree file not found: {tree_path}")

    tree = TreeNode.read(tree_path, format="newick")
    if midpoint_root:
        tree = tree.root_at_midpoint()
    return tree


def tip_names(tree: TreeNode) -> set[str]:
    return {tip.name for tip in tree.tips()}
