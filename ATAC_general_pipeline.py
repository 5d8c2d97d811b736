import os, time, warnings
import numpy  as np
import pandas as pd
import scanpy as sc
import anndata as ad
import muon as mu
from muon import atac as ac
from scipy import io as spio
from scipy.sparse import csr_matrix, issparse

from ATAC_cell_type import cell_types_atac
from gene_activity.ATAC_gene_activity import load_gene_annotation, tss_positions
from utils.logger import log
from utils.merge_cell_meta import merge_cell_metadata, prefix_barcodes
from utils.random_seed import set_global_seed
from utils.safe_save import safe_h5ad_write, snapshot_path
from visualization.ATAC_visualization import plot_atac_qc, plot_umap_panels
warnings.filterwarnings("ignore", category=FutureWarning)


def _read_10x_peak_directory(path):
    """Read a 10x ``filtered_peak_bc_matrix`` directory (matrix.mtx, peaks.bed, barcodes.tsv)."""
    def _find(stem):
        for name in (stem, f"{stem}.gz"):
            candidate = os.path.join(path, name)
            if os.path.exists(candidate):
                return candidate
        raise FileNotFoundError(f"'{stem}' not found in 10x directory {path}")

    matrix = spio.mmread(_find("matrix.mtx")).T.tocsr()
    peaks = pd.read_csv(_find("peaks.bed"), sep="\t", header=None, comment="#")
    barcodes = pd.read_csv(_find("barcodes.tsv"), sep="\t", header=None)

    var_names = (peaks[0].astype(str) + ":" + peaks[1].astype(str) + "-" + peaks[2].astype(str)).tolist()
    atac = ad.AnnData(
        X=matrix,
        obs=pd.DataFrame(index=barcodes[0].astype(str).tolist()),
        var=pd.DataFrame(index=var_names),
    )
    return atac


def load_atac_counts(filepath, sample, verbose=True):
    """
    Load a per-sample peak count matrix into a cells x peaks AnnData.

    Accepts a 10x ``.h5`` file (ATAC-only or multiome; the ATAC modality is
    used), an ``.h5ad`` file or a 10x peak matrix directory. Cell names are
    prefixed ``<sample>#<barcode>`` and ``obs['sample']`` is set.
    """
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"ATAC count data not found: {filepath}")

    if os.path.isdir(filepath):
        atac = _read_10x_peak_directory(filepath)
    elif filepath.endswith(".h5ad"):
        atac = sc.read_h5ad(filepath)
    elif filepath.endswith(".h5"):
        data = mu.read_10x_h5(filepath)
        if isinstance(data, mu.MuData):
            if "atac" not in data.mod:
                raise ValueError(f"No ATAC modality in {filepath}; found {list(data.mod.keys())}")
            atac = data.mod["atac"].copy()
        else:
            atac = data
    else:
        raise ValueError(f"Unsupported ATAC input format: {filepath}")

    if not issparse(atac.X):
        atac.X = csr_matrix(atac.X)

    atac.obs_names = prefix_barcodes(atac.obs_names, sample)
    atac.var_names_make_unique()
    atac.obs["sample"] = sample

    log(f"Loaded {atac.n_obs} cells × {atac.n_vars} peaks for sample {sample}", verbose=verbose)
    return atac


def compute_atac_qc(
    atac,
    fragments_path=None,
    gene_annotation=None,
    n_tss=3000,
    nucleosome_n=None,
    random_state=0,
    verbose=True,
):
    """
    Per-cell QC metrics.

    ``n_peaks`` / ``n_fragments`` come from the count matrix. When a fragments
    file is available, nucleosome signal and TSS enrichment are computed with
    muon; a fragments file without a tabix index is reported and skipped.
    """
    sc.pp.calculate_qc_metrics(atac, percent_top=None, log1p=False, inplace=True)
    atac.obs["n_peaks"] = atac.obs["n_genes_by_counts"]
    atac.obs["n_fragments"] = atac.obs["total_counts"]

    if fragments_path is None or not os.path.exists(fragments_path):
        log("No fragments file; skipping nucleosome signal and TSS enrichment", "WARNING", verbose)
        return atac

    if not os.path.exists(fragments_path + ".tbi"):
        log(f"Fragments file {fragments_path} has no tabix index; skipping fragment QC", "WARNING", verbose)
        return atac

    log("Locating fragments", verbose=verbose)
    ac.tl.locate_fragments(atac, fragments_path)

    log("Computing nucleosome signal", verbose=verbose)
    ac.tl.nucleosome_signal(atac, n=nucleosome_n)

    if gene_annotation is not None:
        if isinstance(gene_annotation, str):
            gene_annotation = load_gene_annotation(gene_annotation)
        log("Computing TSS enrichment", verbose=verbose)
        tss = tss_positions(gene_annotation)
        ac.tl.tss_enrichment(
            atac,
            features=tss,
            n_tss=min(n_tss, tss.shape[0]),
            random_state=random_state,
        )
    else:
        log("No gene annotation; skipping TSS enrichment", "WARNING", verbose)

    return atac


def filter_atac_cells(
    atac,
    min_fragments=1000,
    max_fragments=100000,
    min_tss=4.0,
    max_nucleosome_signal=2.0,
    min_cells_per_peak=10,
    verbose=True,
):
    """
    Threshold filtering of cells and peaks. Thresholds whose QC column is
    absent are skipped with a warning.
    """
    n_before = atac.n_obs
    keep = np.ones(atac.n_obs, dtype=bool)

    checks = [
        ("n_fragments", lambda x: x >= min_fragments, min_fragments),
        ("n_fragments", lambda x: x <= max_fragments, max_fragments),
        ("tss_score", lambda x: x >= min_tss, min_tss),
        ("nucleosome_signal", lambda x: x <= max_nucleosome_signal, max_nucleosome_signal),
    ]
    for column, condition, threshold in checks:
        if threshold is None:
            continue
        if column not in atac.obs.columns:
            log(f"QC column '{column}' not found; skipping this threshold", "WARNING", verbose)
            continue
        keep &= condition(atac.obs[column].to_numpy())

    if keep.sum() == 0:
        raise ValueError(
            f"All {n_before} cells were removed by QC filtering; check the thresholds "
            f"(min_fragments={min_fragments}, min_tss={min_tss}, max_nucleosome_signal={max_nucleosome_signal})"
        )

    atac = atac[keep].copy()
    if min_cells_per_peak:
        sc.pp.filter_genes(atac, min_cells=min_cells_per_peak)
        if atac.n_vars == 0:
            raise ValueError(f"No peaks are accessible in at least {min_cells_per_peak} cells")

    log(f"QC kept {atac.n_obs}/{n_before} cells and {atac.n_vars} peaks", verbose=verbose)
    return atac


def reduce_dimensions(
    atac,
    n_lsi_components=30,
    drop_first_lsi=True,
    tfidf_scale_factor=1e4,
    batch_key=None,
    harmony_max_iter=30,
    n_neighbors=15,
    umap_min_dist=0.3,
    umap_spread=1.0,
    random_state=0,
    verbose=True,
):
    """
    TF-IDF + LSI, optional Harmony, neighbour graph and UMAP.

    Raw counts are kept in ``layers['counts']``. The first LSI component
    tracks sequencing depth and is dropped when ``drop_first_lsi``.
    The representation used downstream is returned.
    """
    max_comps = min(atac.n_obs, atac.n_vars) - 1
    if n_lsi_components > max_comps:
        log(f"Reducing LSI components from {n_lsi_components} to {max_comps}", "WARNING", verbose)
        n_lsi_components = max_comps

    atac.layers["counts"] = atac.X.copy()

    log("TF-IDF normalisation", verbose=verbose)
    ac.pp.tfidf(atac, scale_factor=tfidf_scale_factor)
    sc.pp.log1p(atac)

    log("Running LSI", verbose=verbose)
    ac.tl.lsi(atac, n_comps=n_lsi_components)
    if drop_first_lsi:
        atac.obsm["X_lsi"] = atac.obsm["X_lsi"][:, 1:]
        atac.varm["LSI"]   = atac.varm["LSI"][:, 1:]
        atac.uns["lsi"]["stdev"] = atac.uns["lsi"]["stdev"][1:]
    use_rep = "X_lsi"

    if batch_key:
        batch_keys = batch_key if isinstance(batch_key, list) else [batch_key]
        missing = [k for k in batch_keys if k not in atac.obs.columns]
        if missing:
            raise KeyError(f"Batch key(s) {missing} not found in adata.obs")
        from harmony import harmonize
        log(f"Harmony batch correction with batch keys: {batch_keys}", verbose=verbose)
        atac.obsm["X_lsi_harmony"] = harmonize(
            atac.obsm["X_lsi"],
            atac.obs,
            batch_key=batch_keys,
            max_iter_harmony=harmony_max_iter,
            use_gpu=False,
        )
        use_rep = "X_lsi_harmony"

    sc.pp.neighbors(atac, n_neighbors=n_neighbors, use_rep=use_rep, metric="cosine",
                    random_state=random_state)
    sc.tl.umap(atac, min_dist=umap_min_dist, spread=umap_spread, random_state=random_state)
    atac.uns["atac_use_rep"] = use_rep
    return use_rep


def run_scatac_pipeline(
    filepath,
    output_dir,
    sample,
    fragments_path=None,
    gene_annotation=None,
    cell_metadata_path=None,
    verbose=True,
    seed=42,
    # QC and filtering parameters
    min_fragments=1000,
    max_fragments=100000,
    min_tss=4.0,
    max_nucleosome_signal=2.0,
    min_cells_per_peak=10,
    # LSI / dimensionality reduction
    n_lsi_components=30,
    drop_first_lsi=True,
    batch_key=None,
    # Neighbours / UMAP / clustering
    n_neighbors=15,
    umap_min_dist=0.3,
    leiden_resolution=0.8,
    plot_dpi=300,
    config=None,
):
    """
    Per-sample preprocessing: counts -> QC -> filtered, reduced, clustered
    AnnData, written to ``<output_dir>/<sample>/preprocess/atac_preprocessed.h5ad``.
    """
    t0 = time.time()
    set_global_seed(seed=seed, verbose=verbose)
    log("="*60 + f"\nStarting scATAC-seq preprocessing for {sample}\n" + "="*60, verbose=verbose)

    stage_dir = os.path.join(output_dir, sample, "preprocess")
    os.makedirs(stage_dir, exist_ok=True)

    # 1. Load data
    atac = load_atac_counts(filepath, sample, verbose=verbose)

    # 2. Cell metadata
    if cell_metadata_path:
        atac = merge_cell_metadata(atac, cell_metadata_path, sample=sample, verbose=verbose)

    # 3. QC
    log("QC metrics", verbose=verbose)
    atac = compute_atac_qc(atac, fragments_path=fragments_path, gene_annotation=gene_annotation,
                           random_state=seed, verbose=verbose)
    plot_atac_qc(atac, os.path.join(stage_dir, "plots"), prefix=f"{sample}_prefilter",
                 min_fragments=min_fragments, min_tss=min_tss, dpi=plot_dpi, verbose=verbose)

    atac = filter_atac_cells(
        atac,
        min_fragments=min_fragments,
        max_fragments=max_fragments,
        min_tss=min_tss,
        max_nucleosome_signal=max_nucleosome_signal,
        min_cells_per_peak=min_cells_per_peak,
        verbose=verbose,
    )

    # 4. TF-IDF / LSI / UMAP
    use_rep = reduce_dimensions(
        atac,
        n_lsi_components=n_lsi_components,
        drop_first_lsi=drop_first_lsi,
        batch_key=batch_key,
        n_neighbors=n_neighbors,
        umap_min_dist=umap_min_dist,
        random_state=seed,
        verbose=verbose,
    )

    # 5. Clusters
    atac = cell_types_atac(atac, cluster_resolution=leiden_resolution, use_rep=use_rep,
                           cluster_key="leiden", build_graph=False, verbose=verbose)

    plot_umap_panels(atac, ["leiden", "n_fragments"] + (["tss_score"] if "tss_score" in atac.obs else []),
                     os.path.join(stage_dir, "plots"), prefix=sample, config=config,
                     dpi=plot_dpi, verbose=verbose)

    save_path = snapshot_path(output_dir, sample, "preprocess", "atac_preprocessed")
    safe_h5ad_write(atac, save_path, verbose=verbose)

    log(f"Finished preprocessing in {(time.time() - t0) / 60:.1f} min", verbose=verbose)
    return atac
