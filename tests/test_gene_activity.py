import numpy as np
import pandas as pd
import anndata as ad
import pytest
from scipy.sparse import csr_matrix

from gene_activity.ATAC_gene_activity import (
    compute_gene_activity,
    gene_regions,
    load_gene_annotation,
    parse_peak_names,
    peak_gene_overlap_matrix,
    tss_positions,
)

PEAKS = ["chr1:1500-1600", "chr1:6500-6600", "chr1:3000-3100", "chr2:400-450", "chr3:1-100"]


def test_parse_peak_names_accepts_common_separators():
    peaks = parse_peak_names(["chr1:100-200", "chr2-300-400", "chrX_5_10"])
    assert peaks["Chromosome"].tolist() == ["chr1", "chr2", "chrX"]
    assert peaks["Start"].tolist() == [100, 300, 5]
    assert peaks["End"].tolist() == [200, 400, 10]


def test_parse_peak_names_rejects_malformed():
    with pytest.raises(ValueError, match="not_a_peak"):
        parse_peak_names(["chr1:1-2", "not_a_peak"])


def test_gene_regions_are_strand_aware(gene_annotation):
    regions = gene_regions(gene_annotation, upstream=2000, downstream=0)
    # plus strand extends left, clipped at 0
    assert regions.loc[0, ["Start", "End"]].tolist() == [0, 2000]
    # minus strand extends right
    assert regions.loc[1, ["Start", "End"]].tolist() == [5000, 8000]


def test_tss_positions(gene_annotation):
    tss = tss_positions(gene_annotation)
    assert tss["Start"].tolist() == [1000, 6000, 100]
    assert (tss["End"] - tss["Start"] == 1).all()


def test_overlap_matrix(gene_annotation):
    overlap, names = peak_gene_overlap_matrix(parse_peak_names(PEAKS), gene_annotation)
    assert names == ["G1", "G2", "G3"]
    expected = np.array([
        [1, 0, 0],
        [0, 1, 0],
        [0, 0, 0],
        [0, 0, 1],
        [0, 0, 0],
    ])
    assert np.array_equal(overlap.toarray(), expected)


def test_compute_gene_activity_from_peaks(gene_annotation):
    counts = np.array([
        [2, 0, 5, 1, 1],
        [0, 3, 5, 0, 1],
        [1, 1, 0, 0, 0],
    ], dtype=np.float32)
    atac = ad.AnnData(X=csr_matrix(counts), obs=pd.DataFrame({"sample": "CK166"}, index=["c1", "c2", "c3"]),
                      var=pd.DataFrame(index=PEAKS))
    atac.layers["counts"] = atac.X.copy()

    activity = compute_gene_activity(atac, gene_annotation, fragments_path=None, verbose=False)

    assert activity.var_names.tolist() == ["G1", "G2", "G3"]
    assert activity.obs_names.tolist() == ["c1", "c2", "c3"]
    assert np.array_equal(activity.layers["counts"].toarray(), np.array([[2, 0, 1], [0, 3, 0], [1, 1, 0]]))
    assert activity.uns["gene_activity"]["method"] == "peaks"
    assert (activity.obs["sample"] == "CK166").all()


def test_compute_gene_activity_drops_silent_genes(gene_annotation):
    atac = ad.AnnData(X=csr_matrix(np.array([[1, 0, 0, 0, 0]], dtype=np.float32)),
                      var=pd.DataFrame(index=PEAKS))
    activity = compute_gene_activity(atac, gene_annotation, layer=None, verbose=False)
    assert activity.var_names.tolist() == ["G1"]


def test_load_gene_annotation_aliases(tmp_path):
    path = tmp_path / "genes.tsv"
    pd.DataFrame({"chrom": ["chr1", "chr1"], "start": [10, 10], "end": [20, 20],
                  "symbol": ["TCF21", "TCF21"]}).to_csv(path, sep="\t", index=False)

    genes = load_gene_annotation(str(path))

    assert genes.columns.tolist()[:4] == ["Chromosome", "Start", "End", "gene_name"]
    assert genes.shape[0] == 1
    assert genes.loc[0, "Strand"] == "+"
