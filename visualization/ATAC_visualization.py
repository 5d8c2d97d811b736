import os
import numpy as np
import pandas as pd
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import seaborn as sns
from pandas.api.types import is_numeric_dtype

from config.heart_config import MODALITY_COLORS, get_cell_type_palette


def _save_figure(fig, output_dir, name, dpi=300, verbose=True):
    """Save ``fig`` as PNG and PDF under ``output_dir`` and close it."""
    os.makedirs(output_dir, exist_ok=True)
    paths = []
    for ext in ("png", "pdf"):
        path = os.path.join(output_dir, f"{name}.{ext}")
        fig.savefig(path, dpi=dpi, bbox_inches="tight")
        paths.append(path)
    plt.close(fig)
    if verbose:
        print(f"[plot] Saved {paths[0]}")
    return paths


def _scatter_embedding(ax, coords, values, title, config=None, point_size=None, palette=None):
    """Scatter an embedding colored by a categorical or numeric vector."""
    point_size = point_size if point_size is not None else max(1.0, 120000 / max(coords.shape[0], 1) ** 1.5)
    values = pd.Series(values)

    if is_numeric_dtype(values) and not isinstance(values.dtype, pd.CategoricalDtype):
        order = np.argsort(values.to_numpy())
        sca = ax.scatter(coords[order, 0], coords[order, 1], c=values.to_numpy()[order],
                         s=point_size, cmap="viridis", linewidths=0, rasterized=True)
        plt.colorbar(sca, ax=ax, shrink=0.6)
    else:
        labels = values.astype(str)
        categories = sorted(labels.unique())
        colors = palette if palette is not None else dict(zip(categories, get_cell_type_palette(categories, config)))
        for cat in categories:
            mask = (labels == cat).to_numpy()
            ax.scatter(coords[mask, 0], coords[mask, 1], s=point_size, color=colors.get(cat, "#BEBEBE"),
                       label=f"{cat} ({mask.sum()})", linewidths=0, rasterized=True)
        ax.legend(bbox_to_anchor=(1.02, 1), loc="upper left", fontsize=7, markerscale=3, frameon=False)

    ax.set_title(title)
    ax.set_xticks([])
    ax.set_yticks([])


def plot_atac_qc(atac, output_dir, prefix="atac", min_fragments=None, min_tss=None, dpi=300, verbose=True):
    """
    QC overview: fragments vs TSS enrichment scatter plus per-metric violins.

    Thresholds are drawn as dashed lines when given. Metrics missing from
    ``obs`` are left out.
    """
    metrics = [m for m in ("n_fragments", "n_peaks", "tss_score", "nucleosome_signal") if m in atac.obs.columns]
    if not metrics:
        if verbose:
            print("[plot_atac_qc] No QC metrics in obs; nothing to plot")
        return []

    n_panels = len(metrics) + (1 if {"n_fragments", "tss_score"} <= set(metrics) else 0)
    fig, axes = plt.subplots(1, n_panels, figsize=(4 * n_panels, 4))
    axes = np.atleast_1d(axes)
    i = 0

    if {"n_fragments", "tss_score"} <= set(metrics):
        ax = axes[0]
        frags = np.log10(atac.obs["n_fragments"].clip(lower=1))
        ax.scatter(frags, atac.obs["tss_score"], s=2, alpha=0.4, color="#2F4F4F", rasterized=True)
        if min_fragments:
            ax.axvline(np.log10(min_fragments), ls="--", color="red", lw=1)
        if min_tss:
            ax.axhline(min_tss, ls="--", color="red", lw=1)
        ax.set_xlabel("log10 unique fragments")
        ax.set_ylabel("TSS enrichment")
        ax.set_title(f"{prefix}: {atac.n_obs} cells")
        i = 1

    for metric in metrics:
        ax = axes[i]
        sns.violinplot(y=atac.obs[metric].astype(float), ax=ax, color="#8A9FD1", inner="quartile", cut=0)
        ax.set_title(metric)
        ax.set_ylabel("")
        i += 1

    fig.tight_layout()
    return _save_figure(fig, output_dir, f"{prefix}_qc", dpi=dpi, verbose=verbose)


def plot_umap_panels(adata, keys, output_dir, prefix="atac", basis="X_umap", config=None, dpi=300, verbose=True):
    """One UMAP panel per ``obs`` key (categorical keys use the cell type palette)."""
    if basis not in adata.obsm:
        raise KeyError(f"Embedding '{basis}' not found in adata.obsm")
    keys = [k for k in keys if k in adata.obs.columns]
    if not keys:
        raise KeyError("None of the requested keys are present in adata.obs")

    coords = np.asarray(adata.obsm[basis])[:, :2]
    fig, axes = plt.subplots(1, len(keys), figsize=(6 * len(keys), 5))
    axes = np.atleast_1d(axes)
    for ax, key in zip(axes, keys):
        _scatter_embedding(ax, coords, adata.obs[key].to_numpy(), key, config=config)

    fig.tight_layout()
    name = f"{prefix}_{basis.replace('X_', '')}_{'_'.join(keys)}"
    return _save_figure(fig, output_dir, name, dpi=dpi, verbose=verbose)


def plot_prediction_scores(adata, output_dir, prefix="atac", score_key="prediction_score_max",
                           label_key="predicted_id", min_score=None, config=None, dpi=300, verbose=True):
    """Histogram of the max prediction score and per-label box plots."""
    if score_key not in adata.obs.columns:
        raise KeyError(f"Column '{score_key}' not found in adata.obs")

    fig, axes = plt.subplots(1, 2, figsize=(12, 4), gridspec_kw={"width_ratios": [1, 2]})
    scores = adata.obs[score_key].astype(float)
    axes[0].hist(scores, bins=50, color="#208A42", alpha=0.8)
    if min_score is not None:
        axes[0].axvline(min_score, ls="--", color="red", lw=1)
    axes[0].set_xlabel("prediction score (max)")
    axes[0].set_ylabel("cells")

    if label_key in adata.obs.columns:
        frame = pd.DataFrame({"label": adata.obs[label_key].astype(str), "score": scores})
        order = frame.groupby("label")["score"].median().sort_values(ascending=False).index.tolist()
        sns.boxplot(data=frame, x="label", y="score", order=order, ax=axes[1],
                    palette=dict(zip(order, get_cell_type_palette(order, config))), hue="label", legend=False,
                    fliersize=1)
        axes[1].tick_params(axis="x", rotation=60)
        axes[1].set_xlabel("")
    else:
        axes[1].axis("off")

    fig.tight_layout()
    return _save_figure(fig, output_dir, f"{prefix}_prediction_scores", dpi=dpi, verbose=verbose)


def plot_confusion_heatmap(table, output_dir, prefix="atac", dpi=300, verbose=True):
    """Heatmap of a cluster x label table (e.g. from ``cluster_label_confusion``)."""
    fig, ax = plt.subplots(figsize=(1 + 0.45 * table.shape[1], 1 + 0.35 * table.shape[0]))
    sns.heatmap(table, cmap="Blues", ax=ax, vmin=0, annot=table.shape[0] * table.shape[1] <= 400,
                fmt=".2f", annot_kws={"fontsize": 6}, cbar_kws={"label": "fraction of cluster"})
    ax.set_xlabel("transferred label")
    ax.set_ylabel("cluster")
    fig.tight_layout()
    return _save_figure(fig, output_dir, f"{prefix}_cluster_label_confusion", dpi=dpi, verbose=verbose)


def plot_coembedding(combined, output_dir, prefix="coembed", config=None, dpi=300, verbose=True):
    """Co-embedding UMAP: by modality, by cell type, and one panel per modality."""
    if "X_umap" not in combined.obsm:
        raise KeyError("Co-embedded object has no 'X_umap'")

    coords = np.asarray(combined.obsm["X_umap"])[:, :2]
    modality = combined.obs["modality"].astype(str)
    modality_colors = config.get("modality_colors", MODALITY_COLORS) if config else MODALITY_COLORS

    fig, axes = plt.subplots(1, 4, figsize=(24, 5))
    _scatter_embedding(axes[0], coords, modality.to_numpy(), "modality", palette=modality_colors)
    _scatter_embedding(axes[1], coords, combined.obs["cell_type"].to_numpy(), "cell type", config=config)

    categories = sorted(combined.obs["cell_type"].astype(str).unique())
    palette = dict(zip(categories, get_cell_type_palette(categories, config)))
    for ax, mod in zip(axes[2:], ("RNA", "ATAC")):
        mask = (modality == mod).to_numpy()
        ax.scatter(coords[~mask, 0], coords[~mask, 1], s=1, color="#E5E5E5", linewidths=0, rasterized=True)
        _scatter_embedding(ax, coords[mask], combined.obs["cell_type"].astype(str).to_numpy()[mask],
                           f"{mod} cells", palette=palette)

    fig.tight_layout()
    return _save_figure(fig, output_dir, f"{prefix}_umap", dpi=dpi, verbose=verbose)


def plot_diffmap_pseudotime(adata, output_dir, prefix="fibroblast", cell_type_key="cell_type",
                            config=None, dpi=300, verbose=True):
    """First two non-trivial diffusion components colored by pseudotime and cell type."""
    if "X_diffmap" not in adata.obsm or "pseudotime" not in adata.obs.columns:
        raise KeyError("Run compute_diffusion_pseudotime first (X_diffmap / pseudotime missing)")

    coords = np.asarray(adata.obsm["X_diffmap"])[:, 1:3]
    panels = [("pseudotime", adata.obs["pseudotime"].astype(float).to_numpy())]
    if cell_type_key in adata.obs.columns:
        panels.append((cell_type_key, adata.obs[cell_type_key].astype(str).to_numpy()))

    fig, axes = plt.subplots(1, len(panels), figsize=(6 * len(panels), 5))
    axes = np.atleast_1d(axes)
    for ax, (title, values) in zip(axes, panels):
        _scatter_embedding(ax, coords, values, title, config=config)
        ax.set_xlabel("DC1")
        ax.set_ylabel("DC2")

    fig.tight_layout()
    return _save_figure(fig, output_dir, f"{prefix}_diffmap", dpi=dpi, verbose=verbose)


def plot_trajectory_heatmaps(gene_traj, motif_traj, output_dir, prefix="fibroblast", dpi=300, verbose=True):
    """
    Side-by-side heatmaps of paired gene-score and motif trajectories.

    Rows of both (scaled) matrices are paired by position and ordered by
    the bin of peak gene-score signal.
    """
    if gene_traj.shape[0] != motif_traj.shape[0]:
        raise ValueError("Gene and motif trajectories must have the same number of paired rows")

    order = np.argsort(np.argmax(gene_traj.to_numpy(), axis=1), kind="mergesort")
    genes = gene_traj.iloc[order]
    motifs = motif_traj.iloc[order]

    height = max(3, 0.18 * genes.shape[0] + 1.5)
    fig, axes = plt.subplots(1, 2, figsize=(12, height))
    sns.heatmap(genes, cmap="YlGnBu_r", ax=axes[0], xticklabels=False, yticklabels=True,
                cbar_kws={"label": "gene score (z)"})
    sns.heatmap(motifs, cmap="RdBu_r", center=0, ax=axes[1], xticklabels=False, yticklabels=True,
                cbar_kws={"label": "motif deviation (z)"})
    axes[0].set_title("Gene score")
    axes[1].set_title("Motif deviation")
    for ax in axes:
        ax.set_xlabel("pseudotime")
        ax.tick_params(axis="y", labelsize=6)

    fig.tight_layout()
    return _save_figure(fig, output_dir, f"{prefix}_trajectory_heatmap", dpi=dpi, verbose=verbose)
