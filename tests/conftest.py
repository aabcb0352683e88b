"""
Shared fixtures: a small sequence table with taxonomy, metadata and a tree.
"""

import io

import numpy as np
import pandas as pd
import pytest
from skbio import TreeNode

from tbiome.dataset import TIMEPOINT_LEVELS, AmpliconDataset
from tbiome.denoising import sequence_id

SEQS = [
    "TACGGAGGATGCGAGCGTTATCCGGATTTATTGGGTTTAAAGGG",
    "TACGTAGGTGGCAAGCGTTATCCGGATTTATTGGGCGTAAAGCG",
    "TACGGAGGGTGCAAGCGTTAATCGGAATTACTGGGCGTAAAGCG",
    "TACGTAGGGGGCAAGCGTTATCCGGAATTATTGGGCGTAAAGGG",
]

SAMPLES = [f"M{i:02d}" for i in range(1, 9)]


@pytest.fixture()
def seqtab():
    """8 samples × 4 variant sequences."""
    counts = np.array([
        [120, 30, 0, 50],
        [100, 40, 10, 60],
        [90, 20, 5, 70],
        [110, 35, 0, 40],
        [10, 150, 80, 5],
        [20, 130, 90, 0],
        [5, 160, 70, 10],
        [15, 140, 100, 5],
    ])
    return pd.DataFrame(counts, index=SAMPLES, columns=SEQS)


@pytest.fixture()
def taxonomy_by_seq():
    return pd.DataFrame(
        {
            "Kingdom": ["Bacteria"] * 4,
            "Phylum": ["Bacteroidota", "Firmicutes", "Firmicutes", "Verrucomicrobiota"],
            "Class": ["Bacteroidia", "Clostridia", "Bacilli", "Verrucomicrobiae"],
            "Order": ["Bacteroidales", "Lachnospirales", "Lactobacillales", "Verrucomicrobiales"],
            "Family": ["Muribaculaceae", "Lachnospiraceae", "Lactobacillaceae", "Akkermansiaceae"],
            "Genus": [np.nan, "Roseburia", "Lactobacillus", "Akkermansia"],
        },
        index=SEQS,
    )


@pytest.fixture()
def metadata():
    meta = pd.DataFrame(
        {
            "Genotype": ["WT"] * 4 + ["KO"] * 4,
            "Treatment": ["Abx", "Vehicle"] * 4,
            "Timepoint": ["BA"] * 4 + ["1DPI"] * 4,
            "Sex": ["M", "F", "M", "F", "M", "F", "M", "F"],
            "Injury": ["TBI", "TBI", "Sham", "Sham"] * 2,
        },
        index=pd.Index(SAMPLES, name="sample"),
    )
    meta["Timepoint"] = pd.Categorical(meta["Timepoint"], categories=TIMEPOINT_LEVELS, ordered=True)
    return meta


@pytest.fixture()
def tree():
    a, b, c, d = (sequence_id(s) for s in SEQS)
    newick = f"(({a}:0.1,{b}:0.2):0.3,({c}:0.1,{d}:0.4):0.2);"
    return TreeNode.read(io.StringIO(newick), format="newick")


@pytest.fixture()
def dataset(seqtab, taxonomy_by_seq, metadata, tree):
    return AmpliconDataset.from_sequence_table(seqtab, taxonomy_by_seq, metadata, tree)
