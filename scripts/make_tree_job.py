#!/usr/bin/env python3
"""
Write (and optionally submit) the SLURM job that aligns representative
sequences with MAFFT and builds the FastTree phylogeny.

Usage
-----
::

    python scripts/make_tree_job.py \\
        --rep-seqs results/dada2/rep_seqs.fasta \\
        --output-dir results/phylogeny \\
        --setup "module load mamba" --setup "mamba activate tbiome" \\
        --submit

The tree is written to ``<output-dir>/rep_seqs.tree``; point
``phylogeny.tree`` in the pipeline config at it once the job finishes.
"""

from __future__ import annotations

import argparse
import logging
import sys

from tbiome.phylogeny import SlurmResources, submit_slurm_job, write_slurm_script

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    defaults = SlurmResources()
    parser = argparse.ArgumentParser(
        description="Write the MAFFT + FastTree SLURM batch script",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--rep-seqs", required=True, metavar="FASTA",
                        help="Representative sequences keyed by ASV hash.")
    parser.add_argument("--output-dir", required=True, metavar="DIR",
                        help="Where the script, alignment and tree are written.")
    parser.add_argument("--time", default=defaults.time)
    parser.add_argument("--partition", default=defaults.partition)
    parser.add_argument("--mem", default=defaults.mem)
    parser.add_argument("--ntasks-per-node", type=int, default=defaults.ntasks_per_node,
                        help="Tasks per node; also the MAFFT thread count.")
    parser.add_argument("--job-name", default=defaults.job_name)
    parser.add_argument("--mail-user", default=None)
    parser.add_argument("--setup", action="append", default=[], metavar="LINE",
                        help="Shell line run before the tools (repeatable).")
    parser.add_argument("--submit", action="store_true",
                        help="Submit the script with sbatch after writing it.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> str:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    resources = SlurmResources(
        time=args.time,
        partition=args.partition,
        mem=args.mem,
        ntasks_per_node=args.ntasks_per_node,
        job_name=args.job_name,
        mail_user=args.mail_user,
        setup=tuple(args.setup),
    )
    script = write_slurm_script(args.rep_seqs, args.output_dir, resources)

    if args.submit:
        job_id = submit_slurm_job(script)
        logger.info("Submitted job %s", job_id)
    return script


if __name__ == "__main__":
    main()
