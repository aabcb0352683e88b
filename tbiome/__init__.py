"""
tbiome: 16S amplicon analysis for the antibiotics / TBI gut microbiome study.

This package orchestrates DADA2, taxonomic classifiers, MAFFT/FastTree and
ecological statistics libraries to take paired-end reads through to
diversity, ordination and differential-abundance results.
"""

__version__ = "1.0.0"
__license__ = "GPL-3.0"
