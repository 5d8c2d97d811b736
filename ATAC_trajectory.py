import os
import numpy as np
import pandas as pd
import anndata as ad
import scanpy as sc
from typing import Dict, Optional, Sequence, Union
from scipy.sparse import csr_matrix, issparse
from scipy.stats import pearsonr
from statsmodels.stats.multitest import multipletests

from ATAC_motif import motif_gene_name
from utils.logger import log
from visualization.ATAC_visualization import plot_diffmap_pseudotime, plot_trajectory_heatmaps


def subset_lineage(
    adata: ad.AnnData,
    cell_types: Sequence[str],
    key: str = "cell_type",
    verbose: bool = True
) -> ad.AnnData:
    """Copy of the cells whose ``key`` label is one of ``cell_types``."""
    if key not in adata.obs.columns:
        raise KeyError(f"Column '{key}' not found in adata.obs")

    mask = adata.obs[key].astype(str).isin([str(c) for c in cell_types]).to_numpy()
    if mask.sum() == 0:
        present = sorted(adata.obs[key].astype(str).unique())
        raise ValueError(f"No cells of {list(cell_types)} in '{key}'. Present labels: {present}")

    lineage = adata[mask].copy()
    if verbose:
        print(f"[subset_lineage] {lineage.n_obs} cells of {list(cell_types)}")
    return lineage


def compute_diffusion_pseudotime(
    adata: ad.AnnData,
    use_rep: str = "X_lsi",
    root_cell_type: Optional[str] = None,
    cell_type_key: str = "cell_type",
    n_comps: int = 15,
    n_neighbors: int = 30,
    verbose: bool = True
) -> ad.AnnData:
    """
    Diffusion map and diffusion pseudotime, rescaled to 0-100.

    The root is the cell at the extreme of the first non-trivial diffusion
    component, taken among ``root_cell_type`` cells when given, on the side
    where that group lies. Cells unreachable from the root get NaN.

    Writes ``obsm['X_diffmap']``, ``obs['pseudotime']`` and
    ``uns['trajectory']``.
    """
    if use_rep not in adata.obsm:
        raise KeyError(f"Representation '{use_rep}' not found in adata.obsm")
    if adata.n_obs < 5:
        raise ValueError(f"Diffusion pseudotime needs at least 5 cells, got {adata.n_obs}")

    n_neighbors = min(n_neighbors, adata.n_obs - 1)
    n_comps = max(3, min(n_comps, adata.n_obs - 2))

    sc.pp.neighbors(adata, use_rep=use_rep, n_neighbors=n_neighbors, metric="cosine")
    sc.tl.diffmap(adata, n_comps=n_comps)

    dc1 = adata.obsm["X_diffmap"][:, 1]
    if root_cell_type is not None:
        if cell_type_key not in adata.obs.columns:
            raise KeyError(f"Column '{cell_type_key}' not found in adata.obs")
        in_root = (adata.obs[cell_type_key].astype(str) == str(root_cell_type)).to_numpy()
        if not in_root.any():
            raise ValueError(f"Root cell type '{root_cell_type}' has no cells in this subset")
        candidates = np.where(in_root)[0]
        low_side = dc1[in_root].mean() <= dc1.mean()
        iroot = candidates[np.argmin(dc1[in_root])] if low_side else candidates[np.argmax(dc1[in_root])]
    else:
        iroot = int(np.argmin(dc1))

    adata.uns["iroot"] = int(iroot)
    sc.tl.dpt(adata, n_dcs=n_comps)

    dpt = adata.obs["dpt_pseudotime"].to_numpy(dtype=float).copy()
    dpt[~np.isfinite(dpt)] = np.nan
    lo, hi = np.nanmin(dpt), np.nanmax(dpt)
    adata.obs["pseudotime"] = 100.0 * (dpt - lo) / (hi - lo) if hi > lo else np.zeros_like(dpt)

    n_missing = int(np.isnan(dpt).sum())
    adata.uns["trajectory"] = {
        "use_rep": use_rep,
        "root_cell": str(adata.obs_names[iroot]),
        "root_cell_type": "" if root_cell_type is None else str(root_cell_type),
        "n_comps": int(n_comps),
        "n_unreachable": n_missing,
    }

    if verbose:
        print(f"[compute_diffusion_pseudotime] root cell {adata.obs_names[iroot]}, "
              f"{adata.n_obs - n_missing}/{adata.n_obs} cells ordered")
    return adata


def _moving_average(values: np.ndarray, window: int) -> np.ndarray:
    if window is None or window <= 1:
        return values
    frame = pd.DataFrame(values.T)
    return frame.rolling(window=window, center=True, min_periods=1).mean().to_numpy().T


def get_trajectory_matrix(
    matrix: Union[ad.AnnData, np.ndarray],
    pseudotime: Union[str, Sequence[float]],
    n_bins: int = 100,
    smooth_window: int = 11,
    scale: bool = True,
    feature_names: Optional[Sequence[str]] = None,
    layer: Optional[str] = None
) -> pd.DataFrame:
    """
    Features x bins mean profile along pseudotime.

    Cells are ordered by pseudotime and split into ``n_bins`` equal-size
    (quantile) bins; each feature's mean per bin is smoothed with a centred
    moving average and, when ``scale`` is True, z-scored per feature.

    Parameters
    ----------
    matrix : AnnData or array
        Cells x features. For AnnData, ``pseudotime`` may be an ``obs`` key.
    pseudotime : str or array-like
        Per-cell pseudotime; NaN cells are dropped.

    Returns
    -------
    pd.DataFrame
        Indexed by feature, columns are bins 1..n_bins.
    """
    if isinstance(matrix, ad.AnnData):
        if isinstance(pseudotime, str):
            if pseudotime not in matrix.obs.columns:
                raise KeyError(f"Pseudotime column '{pseudotime}' not found in obs")
            pseudotime = matrix.obs[pseudotime].to_numpy(dtype=float)
        feature_names = matrix.var_names.tolist()
        values = matrix.layers[layer] if layer is not None else matrix.X
    else:
        values = matrix
        if feature_names is None:
            feature_names = [f"feature_{i}" for i in range(values.shape[1])]

    pseudotime = np.asarray(pseudotime, dtype=float)
    if pseudotime.shape[0] != values.shape[0]:
        raise ValueError(f"Pseudotime has {pseudotime.shape[0]} values for {values.shape[0]} cells")

    keep = np.isfinite(pseudotime)
    if keep.sum() == 0:
        raise ValueError("No cell has a finite pseudotime")
    values = values[np.where(keep)[0]]
    pseudotime = pseudotime[keep]
    n_cells = pseudotime.shape[0]
    n_bins = min(n_bins, n_cells)

    # quantile bins from the pseudotime ranks
    order = np.argsort(pseudotime, kind="mergesort")
    bins = np.empty(n_cells, dtype=int)
    bins[order] = np.arange(n_cells) * n_bins // n_cells

    membership = csr_matrix((np.ones(n_cells), (bins, np.arange(n_cells))), shape=(n_bins, n_cells))
    sizes = np.asarray(membership.sum(axis=1)).ravel()
    means = membership @ values
    means = means.toarray() if issparse(means) else np.asarray(means)
    profile = (means / sizes[:, None]).T.astype(float)

    profile = _moving_average(profile, smooth_window)

    if scale:
        mean = profile.mean(axis=1, keepdims=True)
        std = profile.std(axis=1, keepdims=True)
        std[std == 0] = 1.0
        profile = (profile - mean) / std

    return pd.DataFrame(profile, index=pd.Index(feature_names), columns=pd.RangeIndex(1, n_bins + 1, name="bin"))


def correlate_trajectories(
    gene_traj: pd.DataFrame,
    motif_traj: pd.DataFrame,
    motif_to_gene: Optional[Dict[str, str]] = None,
    cor_cutoff: float = 0.5,
    var_cutoff_gene: float = 0.8,
    var_cutoff_motif: float = 0.8,
    return_all: bool = False,
    verbose: bool = True
) -> pd.DataFrame:
    """
    Correlate each motif trajectory with the gene-score trajectory of its TF.

    Motifs are paired with genes by ``motif_to_gene`` or by the TF name in the
    motif id (case-insensitive). Pearson correlations are computed on the
    unscaled trajectories and Benjamini-Hochberg adjusted over all tested
    pairs. A pair is kept when both features are above their variance
    quantile cutoffs and the correlation exceeds ``cor_cutoff``.

    Returns
    -------
    pd.DataFrame
        Columns ``motif``, ``gene``, ``correlation``, ``pvalue``, ``padj``,
        ``var_quantile_gene``, ``var_quantile_motif``, ``selected``; sorted by
        correlation (descending). Only selected pairs unless ``return_all``.
    """
    if list(gene_traj.columns) != list(motif_traj.columns):
        raise ValueError("Gene and motif trajectories must share the same bins")

    gene_var_q = gene_traj.var(axis=1).rank(pct=True)
    motif_var_q = motif_traj.var(axis=1).rank(pct=True)
    gene_lookup = {str(g).upper(): g for g in gene_traj.index}

    records = []
    for motif in motif_traj.index:
        tf = motif_to_gene.get(motif) if motif_to_gene is not None else motif_gene_name(motif)
        gene = gene_lookup.get(str(tf).upper()) if tf is not None else None
        if gene is None:
            continue

        x = gene_traj.loc[gene].to_numpy(dtype=float)
        y = motif_traj.loc[motif].to_numpy(dtype=float)
        if np.std(x) == 0 or np.std(y) == 0:
            r, p = np.nan, np.nan
        else:
            r, p = pearsonr(x, y)
        records.append({
            "motif": motif,
            "gene": gene,
            "correlation": float(r),
            "pvalue": float(p),
            "var_quantile_gene": float(gene_var_q[gene]),
            "var_quantile_motif": float(motif_var_q[motif]),
        })

    if not records:
        raise ValueError("No motif could be paired with a gene-score trajectory; check the TF naming")

    table = pd.DataFrame(records)
    tested = table["pvalue"].notna().to_numpy()
    table["padj"] = np.nan
    if tested.any():
        table.loc[tested, "padj"] = multipletests(table.loc[tested, "pvalue"], method="fdr_bh")[1]

    table["selected"] = (
        (table["correlation"] > cor_cutoff)
        & (table["var_quantile_gene"] > var_cutoff_gene)
        & (table["var_quantile_motif"] > var_cutoff_motif)
    )
    table = table.sort_values("correlation", ascending=False, na_position="last").reset_index(drop=True)

    if verbose:
        print(f"[correlate_trajectories] {table.shape[0]} motif-gene pairs tested, "
              f"{int(table['selected'].sum())} pass r > {cor_cutoff} and the variance cutoffs")

    if not return_all:
        table = table[table["selected"]].reset_index(drop=True)
    return table


def run_fibroblast_trajectory(
    atac: ad.AnnData,
    gene_activity: ad.AnnData,
    output_dir: str,
    deviations: Optional[ad.AnnData] = None,
    lineage: Sequence[str] = ("Fib1", "Fib2", "Fib3", "Fibroblast"),
    root_cell_type: Optional[str] = "Fib1",
    cell_type_key: str = "cell_type",
    use_rep: str = "X_lsi",
    n_comps: int = 15,
    n_neighbors: int = 30,
    n_bins: int = 100,
    smooth_window: int = 11,
    cor_cutoff: float = 0.5,
    var_cutoff_gene: float = 0.8,
    var_cutoff_motif: float = 0.8,
    motif_layer: Optional[str] = "z",
    plot_dpi: int = 300,
    verbose: bool = True
) -> Dict[str, object]:
    """
    Pseudotime of a fibroblast lineage and paired gene-score / motif trajectories.

    Returns a dict with the lineage AnnData (``lineage``), the unscaled and
    scaled trajectory matrices (``gene_trajectory``, ``motif_trajectory``,
    ``*_scaled``) and the correlation table (``correlations``); motif entries
    are None without ``deviations``. Tables and heatmaps are written under
    ``output_dir``. ``atac.obs['pseudotime']`` is filled for lineage cells.
    """
    os.makedirs(output_dir, exist_ok=True)
    lineage = list(lineage)
    present = set(atac.obs[cell_type_key].astype(str)) if cell_type_key in atac.obs.columns else set()
    if root_cell_type is not None and root_cell_type not in present:
        log(f"Root cell type '{root_cell_type}' absent; rooting on the diffusion extreme", level="WARNING",
            verbose=verbose)
        root_cell_type = None

    lin = subset_lineage(atac, lineage, key=cell_type_key, verbose=verbose)
    compute_diffusion_pseudotime(lin, use_rep=use_rep, root_cell_type=root_cell_type,
                                 cell_type_key=cell_type_key, n_comps=n_comps,
                                 n_neighbors=n_neighbors, verbose=verbose)
    atac.obs["pseudotime"] = lin.obs["pseudotime"].reindex(atac.obs_names).to_numpy(dtype=float)
    pseudotime = lin.obs["pseudotime"]

    missing = lin.obs_names.difference(gene_activity.obs_names)
    if len(missing) > 0:
        raise KeyError(f"{len(missing)} lineage cells are missing from the gene-score matrix")
    genes = gene_activity[lin.obs_names]
    gene_traj = get_trajectory_matrix(genes, pseudotime.to_numpy(), n_bins=n_bins,
                                      smooth_window=smooth_window, scale=False)
    gene_traj_scaled = get_trajectory_matrix(genes, pseudotime.to_numpy(), n_bins=n_bins,
                                             smooth_window=smooth_window, scale=True)
    gene_traj.to_csv(os.path.join(output_dir, "gene_score_trajectory.csv"))
    log(f"Gene-score trajectory: {gene_traj.shape[0]} genes x {gene_traj.shape[1]} bins", verbose=verbose)

    result = {
        "lineage": lin,
        "gene_trajectory": gene_traj,
        "gene_trajectory_scaled": gene_traj_scaled,
        "motif_trajectory": None,
        "motif_trajectory_scaled": None,
        "correlations": None,
    }

    plot_diffmap_pseudotime(lin, output_dir, cell_type_key=cell_type_key, dpi=plot_dpi, verbose=verbose)

    if deviations is None:
        log("No motif deviations available; skipping motif trajectories", level="WARNING", verbose=verbose)
        return result

    missing = lin.obs_names.difference(deviations.obs_names)
    if len(missing) > 0:
        raise KeyError(f"{len(missing)} lineage cells are missing from the motif deviation matrix")
    motifs = deviations[lin.obs_names]
    layer = motif_layer if motif_layer is not None and motif_layer in motifs.layers else None
    motif_traj = get_trajectory_matrix(motifs, pseudotime.to_numpy(), n_bins=n_bins,
                                       smooth_window=smooth_window, scale=False, layer=layer)
    motif_traj_scaled = get_trajectory_matrix(motifs, pseudotime.to_numpy(), n_bins=n_bins,
                                              smooth_window=smooth_window, scale=True, layer=layer)
    motif_traj.to_csv(os.path.join(output_dir, "motif_trajectory.csv"))

    correlations = correlate_trajectories(gene_traj, motif_traj, cor_cutoff=cor_cutoff,
                                          var_cutoff_gene=var_cutoff_gene,
                                          var_cutoff_motif=var_cutoff_motif,
                                          return_all=True, verbose=verbose)
    correlations.to_csv(os.path.join(output_dir, "motif_gene_correlation.csv"), index=False)
    with pd.ExcelWriter(os.path.join(output_dir, "motif_gene_correlation.xlsx"), engine="openpyxl") as writer:
        correlations[correlations["selected"]].to_excel(writer, sheet_name="selected", index=False)
        correlations.to_excel(writer, sheet_name="all_pairs", index=False)

    selected = correlations[correlations["selected"]]
    if selected.shape[0] > 0:
        plot_trajectory_heatmaps(
            gene_traj_scaled.loc[selected["gene"].tolist()],
            motif_traj_scaled.loc[selected["motif"].tolist()],
            output_dir,
            dpi=plot_dpi,
            verbose=verbose,
        )
    else:
        log("No motif-gene pair passed the cutoffs; no paired heatmap drawn", level="WARNING", verbose=verbose)

    result.update({
        "motif_trajectory": motif_traj,
        "motif_trajectory_scaled": motif_traj_scaled,
        "correlations": correlations,
    })
    lin.uns["trajectory"]["n_selected_pairs"] = int(selected.shape[0])
    return result
