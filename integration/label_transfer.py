"""
Anchor-based label transfer from a scRNA-seq reference to ATAC gene scores.

Canonical correlation vectors are the leading singular vectors of the
cross-product between the per-gene standardised reference and query
matrices. Anchors are mutual nearest neighbours in that space, filtered in
expression space and scored by shared neighbourhoods. Query cells are then
weighted against their nearest anchors in the query's own reduction (LSI),
and labels or expression are propagated through those weights.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData
from scipy.sparse import csr_matrix, issparse, load_npz, save_npz
from scipy.sparse.linalg import aslinearoperator, svds
from sklearn.neighbors import NearestNeighbors
from sklearn.preprocessing import normalize

from utils.logger import log


@dataclass
class TransferAnchors:
    """Anchor pairs between a reference and a query dataset."""
    anchors: pd.DataFrame              # columns: reference_idx, query_idx, score
    reference_cca: np.ndarray
    query_cca: np.ndarray
    features: List[str]
    reference_names: List[str] = field(default_factory=list)
    query_names: List[str] = field(default_factory=list)

    @property
    def n_anchors(self):
        return self.anchors.shape[0]


def _dense(matrix):
    return matrix.toarray() if issparse(matrix) else np.asarray(matrix)


def _standardize(matrix):
    """Per-gene z-score; constant genes become zero."""
    matrix = _dense(matrix).astype(np.float64)
    mean = matrix.mean(axis=0)
    std = matrix.std(axis=0)
    std[std == 0] = 1.0
    return (matrix - mean) / std


def select_transfer_features(reference, query, n_features=2000, layer=None, verbose=True):
    """Highly variable reference genes that are also present in the query."""
    shared = reference.var_names.intersection(query.var_names)
    if len(shared) < 2:
        raise ValueError(
            f"Reference and query share {len(shared)} genes; at least 2 are needed. "
            "Check that both use the same gene naming (symbols vs Ensembl ids)."
        )

    ref = reference[:, shared].copy()
    if layer is not None:
        ref.X = ref.layers[layer]
    sc.pp.highly_variable_genes(ref, n_top_genes=min(n_features, ref.n_vars), flavor="seurat")
    features = ref.var_names[ref.var["highly_variable"]].tolist()

    log(f"Using {len(features)} transfer features out of {len(shared)} shared genes", verbose=verbose)
    return features


def _mutual_nearest_neighbors(ref_emb, query_emb, k):
    k_ref = min(k, query_emb.shape[0])
    k_query = min(k, ref_emb.shape[0])

    ref_to_query = NearestNeighbors(n_neighbors=k_ref).fit(query_emb).kneighbors(ref_emb, return_distance=False)
    query_to_ref = NearestNeighbors(n_neighbors=k_query).fit(ref_emb).kneighbors(query_emb, return_distance=False)

    forward = {(r, q) for r in range(ref_emb.shape[0]) for q in ref_to_query[r]}
    pairs = [(r, q) for q in range(query_emb.shape[0]) for r in query_to_ref[q] if (r, q) in forward]
    return np.array(pairs, dtype=int).reshape(-1, 2)


def _neighbor_indicator(neighbors, offset, n_rows, n_cols):
    rows = np.repeat(np.arange(n_rows), neighbors.shape[1])
    cols = neighbors.ravel() + offset
    return csr_matrix((np.ones(rows.shape[0]), (rows, cols)), shape=(n_rows, n_cols))


def _score_anchors(pairs, ref_emb, query_emb, k_score):
    """Shared-neighbourhood overlap of each anchor pair, scaled to [0, 1]."""
    n_ref, n_query = ref_emb.shape[0], query_emb.shape[0]
    n_total = n_ref + n_query
    k_r = min(k_score, n_ref)
    k_q = min(k_score, n_query)

    ref_index = NearestNeighbors(n_neighbors=k_r).fit(ref_emb)
    query_index = NearestNeighbors(n_neighbors=k_q).fit(query_emb)

    ref_hood = (
        _neighbor_indicator(ref_index.kneighbors(ref_emb, return_distance=False), 0, n_ref, n_total)
        + _neighbor_indicator(query_index.kneighbors(ref_emb, return_distance=False), n_ref, n_ref, n_total)
    )
    query_hood = (
        _neighbor_indicator(query_index.kneighbors(query_emb, return_distance=False), n_ref, n_query, n_total)
        + _neighbor_indicator(ref_index.kneighbors(query_emb, return_distance=False), 0, n_query, n_total)
    )

    shared = np.asarray(ref_hood[pairs[:, 0]].multiply(query_hood[pairs[:, 1]]).sum(axis=1)).ravel()
    lo, hi = np.quantile(shared, 0.01), np.quantile(shared, 0.9)
    if hi <= lo:
        return np.ones_like(shared, dtype=float)
    return np.clip((shared - lo) / (hi - lo), 0.0, 1.0)


def find_transfer_anchors(
    reference,
    query,
    features=None,
    n_features=2000,
    n_components=30,
    k_anchor=5,
    k_filter=200,
    k_score=30,
    reference_layer=None,
    query_layer=None,
    random_state=0,
    verbose=True,
):
    """
    Find anchors between a log-normalised RNA reference and ATAC gene scores.

    Parameters
    ----------
    reference : AnnData
        scRNA-seq reference (cells x genes, log-normalised).
    query : AnnData
        Gene-score AnnData of the ATAC cells.
    features : list of str, optional
        Genes to use; defaults to reference HVGs shared with the query.
    n_components : int
        Number of canonical vectors.
    k_anchor : int
        Neighbourhood size for mutual nearest neighbours.
    k_filter : int or None
        Keep an anchor only if its reference cell is among the query cell's
        ``k_filter`` nearest reference cells in expression space.
    k_score : int
        Neighbourhood size for anchor scoring.

    Returns
    -------
    TransferAnchors
    """
    if features is None:
        features = select_transfer_features(reference, query, n_features=n_features,
                                            layer=reference_layer, verbose=verbose)
    else:
        features = [f for f in features if f in reference.var_names and f in query.var_names]
        if len(features) < 2:
            raise ValueError("Fewer than 2 of the requested features are present in both datasets")

    ref_matrix = reference[:, features].layers[reference_layer] if reference_layer else reference[:, features].X
    query_matrix = query[:, features].layers[query_layer] if query_layer else query[:, features].X
    ref_z = _standardize(ref_matrix)
    query_z = _standardize(query_matrix)

    n_components = min(n_components, min(ref_z.shape[0], query_z.shape[0]) - 1)
    if n_components < 1:
        raise ValueError("Reference and query need at least 2 cells each")

    log(f"Running CCA ({n_components} components) on {ref_z.shape[0]} reference and "
        f"{query_z.shape[0]} query cells", verbose=verbose)

    # cells_ref x cells_query cross-product, never materialised
    cross = aslinearoperator(ref_z).dot(aslinearoperator(query_z.T))
    rng = np.random.RandomState(random_state)
    v0 = rng.uniform(-1, 1, min(cross.shape))
    u, s, vt = svds(cross, k=n_components, v0=v0)
    order = np.argsort(s)[::-1]
    ref_cca = normalize(u[:, order])
    query_cca = normalize(vt[order].T)

    pairs = _mutual_nearest_neighbors(ref_cca, query_cca, k_anchor)
    log(f"Found {pairs.shape[0]} mutual nearest neighbour pairs", verbose=verbose)

    if pairs.shape[0] and k_filter:
        ref_l2 = normalize(ref_z)
        query_l2 = normalize(query_z)
        k = min(k_filter, ref_l2.shape[0])
        query_ids = np.unique(pairs[:, 1])
        nn = NearestNeighbors(n_neighbors=k).fit(ref_l2).kneighbors(query_l2[query_ids], return_distance=False)
        allowed = {q: set(row) for q, row in zip(query_ids, nn)}
        keep = np.array([r in allowed[q] for r, q in pairs], dtype=bool)
        pairs = pairs[keep]
        log(f"Retained {pairs.shape[0]} anchors after filtering (k_filter={k_filter})", verbose=verbose)

    if pairs.shape[0] == 0:
        raise ValueError("No transfer anchors found; try more features, more components or a larger k_anchor")

    scores = _score_anchors(pairs, ref_cca, query_cca, k_score)
    anchors = pd.DataFrame({"reference_idx": pairs[:, 0], "query_idx": pairs[:, 1], "score": scores})

    return TransferAnchors(
        anchors=anchors,
        reference_cca=ref_cca,
        query_cca=query_cca,
        features=list(features),
        reference_names=reference.obs_names.tolist(),
        query_names=query.obs_names.tolist(),
    )


def transfer_weights(anchors, query_embedding=None, k_weight=50, sd_weight=1.0, verbose=True):
    """
    Sparse query x anchor weight matrix.

    Each query cell is weighted against its ``k_weight`` nearest anchors,
    measured in ``query_embedding`` (the query CCA space when None). Distances
    are scaled by the k-th distance, multiplied by the anchor score and passed
    through a Gaussian kernel; rows sum to 1.
    """
    embedding = anchors.query_cca if query_embedding is None else np.asarray(query_embedding)
    if embedding.shape[0] != len(anchors.query_names):
        raise ValueError(
            f"Weight embedding has {embedding.shape[0]} rows but the query has {len(anchors.query_names)} cells"
        )

    anchor_query = anchors.anchors["query_idx"].to_numpy()
    anchor_scores = anchors.anchors["score"].to_numpy()
    k = min(k_weight, anchors.n_anchors)

    dist, idx = NearestNeighbors(n_neighbors=k).fit(embedding[anchor_query]).kneighbors(embedding)
    kth = np.maximum(dist[:, -1:], 1e-12)
    dist_weights = (1.0 - dist / kth) * anchor_scores[idx]
    weights = 1.0 - np.exp(-dist_weights / (2.0 * (1.0 / sd_weight)) ** 2)

    row_sums = weights.sum(axis=1, keepdims=True)
    empty = row_sums[:, 0] <= 0
    if empty.any():
        # uniform over the k nearest anchors when every kernel weight is zero
        weights[empty] = 1.0
        row_sums[empty] = k
    weights = weights / row_sums

    rows = np.repeat(np.arange(embedding.shape[0]), k)
    matrix = csr_matrix((weights.ravel(), (rows, idx.ravel())), shape=(embedding.shape[0], anchors.n_anchors))

    log(f"Computed transfer weights over {k} nearest anchors per cell", verbose=verbose)
    return matrix


def transfer_labels(
    reference,
    query,
    label_key,
    anchors=None,
    weight_reduction=None,
    k_weight=50,
    sd_weight=1.0,
    verbose=True,
    **anchor_kwargs,
):
    """
    Transfer reference labels to query cells.

    Writes ``predicted_id``, ``prediction_score_max``,
    ``obsm['prediction_scores']`` and ``uns['label_transfer']`` on ``query``.

    Parameters
    ----------
    weight_reduction : array or str, optional
        Query embedding for the anchor weighting, e.g. the ATAC LSI matrix, or
        an ``obsm`` key of ``query``. Defaults to the query CCA space.

    Returns
    -------
    predictions : DataFrame
        Indexed by query cell names.
    anchors : TransferAnchors
    weights : scipy.sparse.csr_matrix
    """
    if label_key not in reference.obs.columns:
        raise KeyError(f"Label column '{label_key}' not found in reference.obs")

    if anchors is None:
        anchors = find_transfer_anchors(reference, query, verbose=verbose, **anchor_kwargs)
    elif len(anchors.query_names) != query.n_obs:
        raise ValueError(f"Anchors were computed for {len(anchors.query_names)} query cells, got {query.n_obs}")

    if isinstance(weight_reduction, str):
        if weight_reduction not in query.obsm:
            raise KeyError(f"Reduction '{weight_reduction}' not found in query.obsm")
        weight_reduction = query.obsm[weight_reduction]

    weights = transfer_weights(anchors, weight_reduction, k_weight=k_weight, sd_weight=sd_weight, verbose=verbose)

    labels = reference.obs[label_key].astype(str).to_numpy()
    categories = np.unique(labels)
    anchor_labels = labels[anchors.anchors["reference_idx"].to_numpy()]
    one_hot = (anchor_labels[:, None] == categories[None, :]).astype(float)

    scores = np.asarray(weights @ one_hot)
    scores = pd.DataFrame(scores, index=query.obs_names, columns=categories)

    predictions = pd.DataFrame({
        "predicted_id": scores.idxmax(axis=1),
        "prediction_score_max": scores.max(axis=1),
    }, index=query.obs_names)

    query.obs["predicted_id"] = pd.Categorical(predictions["predicted_id"])
    query.obs["prediction_score_max"] = predictions["prediction_score_max"].to_numpy()
    query.obsm["prediction_scores"] = scores
    query.obsm["X_cca"] = anchors.query_cca
    query.uns["label_transfer"] = {
        "label_key": label_key,
        "n_anchors": int(anchors.n_anchors),
        "n_features": len(anchors.features),
        "k_weight": int(k_weight),
    }

    if verbose:
        counts = predictions["predicted_id"].value_counts()
        log(f"Transferred {len(categories)} labels from '{label_key}'; "
            f"median prediction score {predictions['prediction_score_max'].median():.2f}")
        for label, n in counts.items():
            print(f"   {label}: {n}")

    return predictions, anchors, weights


def impute_expression(anchors, weights, reference, genes=None, layer=None, verbose=True):
    """
    Imputed reference expression for query cells through the transfer weights.

    Returns a query x genes AnnData (dense), obs indexed by the query names.
    """
    genes = anchors.features if genes is None else [g for g in genes if g in reference.var_names]
    if len(genes) == 0:
        raise ValueError("None of the requested genes are present in the reference")

    ref = reference[:, genes]
    matrix = ref.layers[layer] if layer else ref.X
    anchor_ref = anchors.anchors["reference_idx"].to_numpy()
    anchor_expr = matrix[anchor_ref]
    imputed = weights @ anchor_expr
    imputed = _dense(imputed).astype(np.float32)

    log(f"Imputed {len(genes)} genes for {imputed.shape[0]} query cells", verbose=verbose)
    return AnnData(
        X=imputed,
        obs=pd.DataFrame(index=pd.Index(anchors.query_names)),
        var=pd.DataFrame(index=pd.Index(genes)),
    )


def load_rna_reference(path, label_key, verbose=True):
    """
    Read the scRNA-seq reference and make sure ``X`` is log-normalised.

    References without ``uns['log1p']`` are normalised to 1e4 counts per cell
    and log-transformed, keeping the counts in ``layers['counts']``.
    """
    if path is None or not os.path.exists(path):
        raise FileNotFoundError(f"RNA reference not found: {path}")

    reference = sc.read_h5ad(path)
    if label_key not in reference.obs.columns:
        raise KeyError(f"Label column '{label_key}' not found in the RNA reference {path}")

    if "log1p" not in reference.uns:
        log("Reference has no 'log1p' record; normalising and log-transforming X", level="WARNING",
            verbose=verbose)
        reference.layers["counts"] = reference.X.copy()
        sc.pp.normalize_total(reference, target_sum=1e4)
        sc.pp.log1p(reference)

    reference.var_names_make_unique()
    log(f"Loaded RNA reference: {reference.n_obs} cells x {reference.n_vars} genes, "
        f"{reference.obs[label_key].nunique()} labels", verbose=verbose)
    return reference


def save_transfer_anchors(anchors, weights, output_dir, verbose=True):
    """Write anchors (``anchors.npz``) and transfer weights (``transfer_weights.npz``) to ``output_dir``."""
    os.makedirs(output_dir, exist_ok=True)
    anchor_path = os.path.join(output_dir, "anchors.npz")
    np.savez_compressed(
        anchor_path,
        pairs=anchors.anchors[["reference_idx", "query_idx"]].to_numpy(),
        scores=anchors.anchors["score"].to_numpy(),
        reference_cca=anchors.reference_cca,
        query_cca=anchors.query_cca,
        features=np.asarray(anchors.features, dtype=str),
        reference_names=np.asarray(anchors.reference_names, dtype=str),
        query_names=np.asarray(anchors.query_names, dtype=str),
    )
    weight_path = os.path.join(output_dir, "transfer_weights.npz")
    save_npz(weight_path, csr_matrix(weights))
    anchors.anchors.to_csv(os.path.join(output_dir, "anchors.csv"), index=False)
    log(f"Saved {anchors.n_anchors} anchors to {anchor_path}", verbose=verbose)
    return anchor_path, weight_path


def load_transfer_anchors(output_dir):
    """Inverse of ``save_transfer_anchors``; returns ``(anchors, weights)``."""
    anchor_path = os.path.join(output_dir, "anchors.npz")
    weight_path = os.path.join(output_dir, "transfer_weights.npz")
    for path in (anchor_path, weight_path):
        if not os.path.exists(path):
            raise FileNotFoundError(f"{path} not found. Rerun the 'label_transfer' stage first.")

    with np.load(anchor_path) as saved:
        anchors = TransferAnchors(
            anchors=pd.DataFrame({
                "reference_idx": saved["pairs"][:, 0],
                "query_idx": saved["pairs"][:, 1],
                "score": saved["scores"],
            }),
            reference_cca=saved["reference_cca"],
            query_cca=saved["query_cca"],
            features=saved["features"].tolist(),
            reference_names=saved["reference_names"].tolist(),
            query_names=saved["query_names"].tolist(),
        )
    return anchors, load_npz(weight_path).tocsr()
