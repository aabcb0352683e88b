"""Helpers for running the inline R scripts that drive DADA2 and MaAsLin3."""

import logging
import os
import subprocess

logger = logging.getLogger(__name__)


def run_rscript(script: str, script_path: str, args: list[str]) -> None:
    """
    Write an R script to ``script_path`` and execute it with ``Rscript``.

    Parameters
    ----------
    script : str
        R source code.
    script_path : str
        Where the script is written; kept alongside the outputs so the run
        can be repeated by hand.
    args : list[str]
        Trailing arguments passed to the script.

    Raises
    ------
    subprocess.CalledProcessError
        If the R script exits with a non-zero return code.
    """
    os.makedirs(os.path.dirname(script_path) or ".", exist_ok=True)
    with open(script_path, "w") as fh:
        fh.write(script)

    cmd = ["Rscript", script_path, *args]
    logger.debug("Command: %s", " ".join(cmd))
    subprocess.run(cmd, check=True)
