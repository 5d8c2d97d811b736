import numpy as np
import pytest

from integration.label_transfer import (
    find_transfer_anchors,
    impute_expression,
    load_transfer_anchors,
    save_transfer_anchors,
    select_transfer_features,
    transfer_labels,
    transfer_weights,
)

ANCHOR_KWARGS = dict(n_components=2, k_anchor=5, k_filter=50, k_score=20)


def test_select_transfer_features_uses_shared_genes(rna_reference, gene_scores):
    query = gene_scores[:, gene_scores.var_names[:40]].copy()
    features = select_transfer_features(rna_reference, query, n_features=20, verbose=False)
    assert 0 < len(features) <= 20
    assert set(features) <= set(query.var_names)


def test_select_transfer_features_needs_shared_genes(rna_reference, gene_scores):
    query = gene_scores.copy()
    query.var_names = [f"OTHER{i}" for i in range(query.n_vars)]
    with pytest.raises(ValueError, match="share 0 genes"):
        select_transfer_features(rna_reference, query, verbose=False)


def test_find_transfer_anchors(rna_reference, gene_scores):
    anchors = find_transfer_anchors(rna_reference, gene_scores, n_features=60, verbose=False, **ANCHOR_KWARGS)

    assert anchors.n_anchors > 0
    assert anchors.reference_cca.shape == (rna_reference.n_obs, 2)
    assert anchors.query_cca.shape == (gene_scores.n_obs, 2)
    assert np.allclose(np.linalg.norm(anchors.query_cca, axis=1), 1.0)
    scores = anchors.anchors["score"]
    assert scores.between(0, 1).all()

    # anchors pair cells of the same type
    ref_types = rna_reference.obs["cell_type"].astype(str).to_numpy()[anchors.anchors["reference_idx"]]
    query_types = gene_scores.obs["true_type"].to_numpy()[anchors.anchors["query_idx"]]
    assert np.mean(ref_types == query_types) > 0.9


def test_k_filter_drops_anchors(rna_reference, gene_scores):
    kwargs = dict(ANCHOR_KWARGS, k_anchor=10)
    kwargs.pop("k_filter")
    unfiltered = find_transfer_anchors(rna_reference, gene_scores, n_features=60, k_filter=None,
                                       verbose=False, **kwargs)
    filtered = find_transfer_anchors(rna_reference, gene_scores, n_features=60, k_filter=2,
                                     verbose=False, **kwargs)

    pairs = set(zip(unfiltered.anchors["reference_idx"], unfiltered.anchors["query_idx"]))
    kept = set(zip(filtered.anchors["reference_idx"], filtered.anchors["query_idx"]))
    assert 0 < len(kept) < len(pairs)
    assert kept <= pairs
    # each query cell keeps at most k_filter anchors
    assert filtered.anchors["query_idx"].value_counts().max() <= 2


def test_transfer_weights_rows_sum_to_one(rna_reference, gene_scores):
    anchors = find_transfer_anchors(rna_reference, gene_scores, n_features=60, verbose=False, **ANCHOR_KWARGS)
    weights = transfer_weights(anchors, k_weight=20, verbose=False)

    assert weights.shape == (gene_scores.n_obs, anchors.n_anchors)
    assert np.allclose(np.asarray(weights.sum(axis=1)).ravel(), 1.0)
    assert (np.diff(weights.indptr) <= 20).all()


def test_transfer_weights_checks_embedding_rows(rna_reference, gene_scores):
    anchors = find_transfer_anchors(rna_reference, gene_scores, n_features=60, verbose=False, **ANCHOR_KWARGS)
    with pytest.raises(ValueError, match="rows"):
        transfer_weights(anchors, query_embedding=np.zeros((3, 2)), verbose=False)


def test_transfer_labels_recovers_cell_types(rna_reference, gene_scores):
    predictions, anchors, weights = transfer_labels(
        rna_reference, gene_scores, label_key="cell_type", k_weight=20, n_features=60,
        verbose=False, **ANCHOR_KWARGS,
    )

    accuracy = np.mean(predictions["predicted_id"].to_numpy() == gene_scores.obs["true_type"].to_numpy())
    assert accuracy > 0.9
    assert gene_scores.obs["prediction_score_max"].between(0, 1).all()
    scores = gene_scores.obsm["prediction_scores"]
    assert np.allclose(scores.sum(axis=1), 1.0)
    assert sorted(scores.columns) == sorted(rna_reference.obs["cell_type"].unique())
    assert gene_scores.uns["label_transfer"]["n_anchors"] == anchors.n_anchors
    assert gene_scores.obsm["X_cca"].shape[0] == gene_scores.n_obs


def test_transfer_labels_with_query_reduction(rna_reference, gene_scores):
    gene_scores.obsm["X_lsi"] = gene_scores.X[:, :30]
    predictions, _, _ = transfer_labels(
        rna_reference, gene_scores, label_key="cell_type", weight_reduction="X_lsi", k_weight=20,
        n_features=60, verbose=False, **ANCHOR_KWARGS,
    )
    accuracy = np.mean(predictions["predicted_id"].to_numpy() == gene_scores.obs["true_type"].to_numpy())
    assert accuracy > 0.8


def test_transfer_labels_missing_label(rna_reference, gene_scores):
    with pytest.raises(KeyError, match="celltype"):
        transfer_labels(rna_reference, gene_scores, label_key="celltype", verbose=False)


def test_impute_expression_and_persistence(tmp_path, rna_reference, gene_scores):
    _, anchors, weights = transfer_labels(
        rna_reference, gene_scores, label_key="cell_type", k_weight=20, n_features=60,
        verbose=False, **ANCHOR_KWARGS,
    )

    imputed = impute_expression(anchors, weights, rna_reference, genes=["GENE0", "GENE25", "GENE50"], verbose=False)
    assert imputed.shape == (gene_scores.n_obs, 3)
    assert imputed.obs_names.tolist() == gene_scores.obs_names.tolist()
    # Cardiomyocyte-like ATAC cells get the Cardiomyocyte marker block
    cm = (gene_scores.obs["true_type"] == "Cardiomyocyte").to_numpy()
    assert imputed.X[cm, 0].mean() > imputed.X[~cm, 0].mean()

    save_transfer_anchors(anchors, weights, str(tmp_path), verbose=False)
    loaded, loaded_weights = load_transfer_anchors(str(tmp_path))
    assert loaded.n_anchors == anchors.n_anchors
    assert loaded.features == anchors.features
    assert loaded.query_names == anchors.query_names
    assert np.allclose(loaded_weights.toarray(), weights.toarray())


def test_load_transfer_anchors_missing(tmp_path):
    with pytest.raises(FileNotFoundError, match="label_transfer"):
        load_transfer_anchors(str(tmp_path))
