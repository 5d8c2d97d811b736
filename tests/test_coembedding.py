import numpy as np
import pytest

from integration.coembedding import coembed_rna_atac, modality_mixing_score
from integration.label_transfer import transfer_labels

ANCHOR_KWARGS = dict(n_components=2, k_anchor=5, k_filter=50, k_score=20)


@pytest.fixture
def transferred(rna_reference, gene_scores):
    _, anchors, weights = transfer_labels(
        rna_reference, gene_scores, label_key="cell_type", k_weight=20, n_features=60,
        verbose=False, **ANCHOR_KWARGS,
    )
    return anchors, weights


def test_modality_mixing_score():
    embedding = np.vstack([np.zeros((10, 2)), np.full((10, 2), 100.0)])
    embedding += np.random.default_rng(0).normal(scale=0.01, size=embedding.shape)
    separated = np.array(["RNA"] * 10 + ["ATAC"] * 10)
    assert np.allclose(modality_mixing_score(embedding, separated, k=5), 0.0)

    interleaved = np.array(["RNA", "ATAC"] * 10)
    mixed = modality_mixing_score(embedding, interleaved, k=9)
    assert mixed.mean() > 0.4


def test_coembed_rna_atac(rna_reference, gene_scores, transferred):
    anchors, weights = transferred

    combined = coembed_rna_atac(rna_reference, gene_scores, anchors, weights, label_key="cell_type",
                                n_pcs=10, n_neighbors=15, verbose=False)

    counts = combined.obs["modality"].value_counts()
    assert counts["RNA"] == rna_reference.n_obs
    assert counts["ATAC"] == gene_scores.n_obs
    assert combined.n_vars == len(anchors.features)
    assert combined.obsm["X_umap"].shape == (combined.n_obs, 2)
    assert combined.obs["modality_mixing"].between(0, 1).all()
    # ATAC labels fall back to the transferred prediction
    atac_types = combined.obs.loc[combined.obs["modality"] == "ATAC", "cell_type"].astype(str)
    assert set(atac_types) <= set(rna_reference.obs["cell_type"].astype(str))
    assert combined.uns["coembedding"]["use_rep"] == "X_pca"


def test_coembed_with_harmony(rna_reference, gene_scores, transferred):
    anchors, weights = transferred
    gene_scores.obs["cell_type"] = gene_scores.obs["true_type"]

    combined = coembed_rna_atac(rna_reference, gene_scores, anchors, weights, label_key="cell_type",
                                n_pcs=10, n_neighbors=15, harmony=True, harmony_max_iter=5, verbose=False)

    assert combined.obsm["X_pca_harmony"].shape == (combined.n_obs, 10)
    assert combined.uns["coembedding"]["use_rep"] == "X_pca_harmony"


def test_coembed_rejects_other_cells(rna_reference, gene_scores, transferred):
    anchors, weights = transferred
    subset = gene_scores[:10].copy()
    with pytest.raises(ValueError, match="query cells"):
        coembed_rna_atac(rna_reference, subset, anchors, weights, label_key="cell_type", verbose=False)


def test_coembed_missing_reference_label(rna_reference, gene_scores, transferred):
    anchors, weights = transferred
    with pytest.raises(KeyError, match="celltype"):
        coembed_rna_atac(rna_reference, gene_scores, anchors, weights, label_key="celltype", verbose=False)
