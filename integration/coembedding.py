import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad
from harmony import harmonize
from sklearn.neighbors import NearestNeighbors

from integration.label_transfer import impute_expression, _dense
from utils.logger import log


def modality_mixing_score(embedding, modalities, k=30):
    """Per-cell fraction of the k nearest neighbours that come from the other modality."""
    modalities = np.asarray(modalities)
    k = min(k, embedding.shape[0] - 1)
    if k < 1:
        raise ValueError("Need at least 2 cells to compute a mixing score")
    _, indices = NearestNeighbors(n_neighbors=k + 1).fit(embedding).kneighbors(embedding)
    neighbors = modalities[indices[:, 1:]]  # exclude self
    return (neighbors != modalities[:, None]).mean(axis=1)


def coembed_rna_atac(
    reference,
    atac,
    anchors,
    weights,
    label_key,
    atac_label_key='cell_type',
    n_pcs=30,
    harmony=False,
    harmony_max_iter=30,
    n_neighbors=30,
    umap_min_dist=0.3,
    random_state=0,
    verbose=True
):
    """
    Co-embed RNA reference cells and ATAC cells in one space.

    ATAC cells get imputed RNA expression over the transfer genes through the
    label-transfer weights; both modalities are then concatenated, scaled and
    projected together.

    Parameters
    ----------
    reference : AnnData
        Log-normalised scRNA-seq reference used for the transfer.
    atac : AnnData
        ATAC cells (any feature space); only ``obs`` is used.
    anchors, weights :
        Output of ``transfer_labels`` / ``find_transfer_anchors``.
    label_key : str
        Reference label column copied into the shared ``cell_type`` column.
    atac_label_key : str
        ATAC label column (falls back to ``predicted_id`` when absent).
    harmony : bool
        Correct the PCA for ``modality`` with Harmony before the graph.

    Returns
    -------
    AnnData
        Combined object with ``obs['modality']``, ``obs['cell_type']``,
        ``obs['modality_mixing']``, ``obsm['X_pca']`` (and
        ``X_pca_harmony``), ``obsm['X_umap']`` and ``uns['coembedding']``.
    """
    if label_key not in reference.obs.columns:
        raise KeyError(f"Label column '{label_key}' not found in reference.obs")
    if list(atac.obs_names) != list(anchors.query_names):
        raise ValueError("ATAC cells do not match the query cells the anchors were computed for")

    if atac_label_key not in atac.obs.columns:
        if 'predicted_id' not in atac.obs.columns:
            raise KeyError(f"Neither '{atac_label_key}' nor 'predicted_id' found in atac.obs")
        log(f"'{atac_label_key}' not in atac.obs, using 'predicted_id'", level="WARNING", verbose=verbose)
        atac_label_key = 'predicted_id'

    genes = list(anchors.features)
    imputed = impute_expression(anchors, weights, reference, genes=genes, verbose=verbose)
    imputed.obs['cell_type'] = atac.obs[atac_label_key].astype(str).to_numpy()
    imputed.obs['sample'] = atac.obs['sample'].astype(str).to_numpy() if 'sample' in atac.obs else 'ATAC'

    rna = ad.AnnData(
        X=_dense(reference[:, genes].X).astype(np.float32),
        obs=pd.DataFrame(index=reference.obs_names.copy()),
        var=pd.DataFrame(index=pd.Index(genes)),
    )
    rna.obs['cell_type'] = reference.obs[label_key].astype(str).to_numpy()
    rna.obs['sample'] = 'RNA'

    combined = ad.concat([rna, imputed], axis=0, join='inner', label='modality', keys=['RNA', 'ATAC'])
    combined.obs_names_make_unique()
    for col in ('cell_type', 'sample', 'modality'):
        combined.obs[col] = combined.obs[col].astype(str).astype('category')

    if verbose:
        print(f"[coembed_rna_atac] RNA cells: {rna.n_obs}, ATAC cells: {imputed.n_obs}, genes: {len(genes)}")

    sc.pp.scale(combined, max_value=10)
    n_pcs = min(n_pcs, min(combined.shape) - 1)
    sc.tl.pca(combined, n_comps=n_pcs, svd_solver='arpack', random_state=random_state)
    use_rep = 'X_pca'

    if harmony:
        log("Running Harmony over modality", verbose=verbose)
        combined.obsm['X_pca_harmony'] = harmonize(
            combined.obsm['X_pca'],
            combined.obs,
            batch_key='modality',
            max_iter_harmony=harmony_max_iter,
            use_gpu=False,
        )
        use_rep = 'X_pca_harmony'

    n_neighbors = min(n_neighbors, combined.n_obs - 1)
    sc.pp.neighbors(combined, use_rep=use_rep, n_neighbors=n_neighbors, random_state=random_state)
    sc.tl.umap(combined, min_dist=umap_min_dist, random_state=random_state)

    combined.obs['modality_mixing'] = modality_mixing_score(
        combined.obsm[use_rep], combined.obs['modality'].astype(str).to_numpy(), k=n_neighbors
    )
    summary = combined.obs.groupby('modality', observed=True)['modality_mixing'].mean()
    combined.uns['coembedding'] = {
        'use_rep': use_rep,
        'n_genes': len(genes),
        'mean_mixing_RNA': float(summary.get('RNA', np.nan)),
        'mean_mixing_ATAC': float(summary.get('ATAC', np.nan)),
    }

    log(f"Co-embedding done on {use_rep}; mean ATAC neighbour mixing "
        f"{combined.uns['coembedding']['mean_mixing_ATAC']:.2f}", verbose=verbose)
    return combined
