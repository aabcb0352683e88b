"""
Tests for tbiome.taxonomy – lineage parsing and taxonomy tables.
"""

import numpy as np
import pandas as pd
import pytest

import tbiome.taxonomy as taxonomy
from tbiome.taxonomy import (
    RANKS,
    classify_dada2,
    classify_vsearch,
    load_taxonomy,
    parse_blast6,
    require_rank,
    split_taxon,
)


# ── split_taxon ───────────────────────────────────────────────────────────────

def test_split_taxon_silva_prefixes():
    values = split_taxon("k__Bacteria; p__Firmicutes; c__Clostridia")
    assert values[:3] == ["Bacteria", "Firmicutes", "Clostridia"]
    assert len(values) == len(RANKS)
    assert all(pd.isna(v) for v in values[3:])


def test_split_taxon_sintax_prefixes():
    values = split_taxon("d:Bacteria;p:Verrucomicrobiota;c:Verrucomicrobiae")
    assert values[:3] == ["Bacteria", "Verrucomicrobiota", "Verrucomicrobiae"]


def test_split_taxon_numbered_prefix():
    assert split_taxon("D_0__Bacteria;D_1__Bacteroidota")[:2] == ["Bacteria", "Bacteroidota"]


def test_split_taxon_empty_levels_are_nan():
    values = split_taxon("k__Bacteria;p__;c__Bacilli")
    assert values[0] == "Bacteria"
    assert pd.isna(values[1])
    assert values[2] == "Bacilli"


def test_split_taxon_not_a_string():
    values = split_taxon(np.nan)
    assert len(values) == len(RANKS)
    assert all(pd.isna(v) for v in values)


def test_split_taxon_truncates_extra_levels():
    values = split_taxon("a;b;c", ranks=["Kingdom", "Phylum"])
    assert values == ["a", "b"]


# ── load_taxonomy ─────────────────────────────────────────────────────────────

def test_load_taxonomy_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_taxonomy(str(tmp_path / "nonexistent.tsv"))


def test_load_taxonomy_taxon_column(tmp_path):
    path = tmp_path / "taxonomy.tsv"
    path.write_text(
        "Feature ID\tTaxon\tConfidence\n"
        "asv1\tk__Bacteria; p__Firmicutes; g__Lactobacillus\t0.99\n"
        "asv2\tk__Bacteria; p__Bacteroidota\t0.95\n"
    )
    tax = load_taxonomy(str(path))
    assert tax.index.name == "Feature ID"
    assert tax.loc["asv1", "Phylum"] == "Firmicutes"
    assert tax.loc["asv1", "Class"] == "Lactobacillus"
    # all-NaN ranks are dropped
    assert "Species" not in tax.columns


def test_load_taxonomy_rank_columns(tmp_path):
    path = tmp_path / "taxonomy.tsv"
    path.write_text(
        "\tKingdom\tPhylum\tGenus\n"
        "asv1\tBacteria\tFirmicutes\tRoseburia\n"
        "asv2\tBacteria\tBacteroidota\t\n"
    )
    tax = load_taxonomy(str(path))
    assert list(tax.columns) == ["Kingdom", "Phylum", "Genus"]
    assert tax.loc["asv1", "Genus"] == "Roseburia"
    assert pd.isna(tax.loc["asv2", "Genus"])


# ── require_rank ──────────────────────────────────────────────────────────────

def test_require_rank_present():
    require_rank(pd.DataFrame(columns=["Phylum", "Genus"]), "Genus")


def test_require_rank_missing_names_rank():
    tax = pd.DataFrame(columns=["Kingdom", "Phylum"])
    with pytest.raises(KeyError, match="Genus"):
        require_rank(tax, "Genus")


# ── parse_blast6 ──────────────────────────────────────────────────────────────

def test_parse_blast6_sintax_headers(tmp_path):
    hits = tmp_path / "hits.b6"
    hits.write_text(
        "asv1\tref1;tax=d:Bacteria,p:Firmicutes,g:Roseburia;\t99.0\t250\n"
        "asv1\tref9;tax=d:Bacteria,p:Bacteroidota;\t98.0\t250\n"
        "asv2\tref2;Bacteria;Verrucomicrobiota\t97.5\t250\n"
    )
    tax = parse_blast6(str(hits))
    assert list(tax.columns) == RANKS
    assert list(tax.index) == ["asv1", "asv2"]
    assert tax.loc["asv1", "Phylum"] == "Firmicutes"
    assert tax.loc["asv1", "Class"] == "Roseburia"
    assert tax.loc["asv2", "Phylum"] == "Verrucomicrobiota"


def test_parse_blast6_empty(tmp_path):
    hits = tmp_path / "hits.b6"
    hits.write_text("")
    tax = parse_blast6(str(hits))
    assert tax.empty
    assert list(tax.columns) == RANKS


# ── Classifiers ───────────────────────────────────────────────────────────────

def test_classify_dada2_missing_reference(tmp_path):
    fasta = tmp_path / "rep_seqs.fasta"
    fasta.write_text(">a\nACGT\n")
    with pytest.raises(FileNotFoundError):
        classify_dada2(str(fasta), str(tmp_path / "silva.fa.gz"), str(tmp_path))


def test_classify_dada2_passes_arguments(tmp_path, monkeypatch):
    fasta = tmp_path / "rep_seqs.fasta"
    ref = tmp_path / "silva.fa.gz"
    fasta.write_text(">a\nACGT\n")
    ref.write_bytes(b"")
    calls = []
    monkeypatch.setattr(taxonomy, "run_rscript",
                        lambda script, path, args: calls.append((script, args)))

    out = classify_dada2(str(fasta), str(ref), str(tmp_path / "tax"), min_boot=80)

    script, args = calls[0]
    assert "assignTaxonomy" in script
    assert args[:3] == [str(fasta), str(ref), ""]
    assert args[3] == "80"
    assert out == args[-1]
    assert out.endswith("taxonomy.tsv")


def test_classify_vsearch_keeps_unmatched(tmp_path, monkeypatch):
    fasta = tmp_path / "rep_seqs.fasta"
    db = tmp_path / "db.fasta"
    fasta.write_text(">asv1\nACGT\n>asv2\nTTGA\n")
    db.write_text(">ref1;tax=d:Bacteria\nACGT\n")
    out_dir = tmp_path / "tax"

    def fake_vsearch(cmd, **kwargs):
        assert cmd[0] == "vsearch"
        assert cmd[cmd.index("--id") + 1] == "0.99"
        (out_dir / "vsearch_hits.b6").write_text(
            "asv1\tref1;tax=d:Bacteria,p:Firmicutes;\t100.0\t4\n"
        )

    monkeypatch.setattr(taxonomy.subprocess, "run", fake_vsearch)
    path = classify_vsearch(str(fasta), str(db), str(out_dir), identity=0.99)

    tax = load_taxonomy(path)
    assert set(tax.index) == {"asv1", "asv2"}
    assert tax.loc["asv1", "Phylum"] == "Firmicutes"
    assert pd.isna(tax.loc["asv2", "Kingdom"])
