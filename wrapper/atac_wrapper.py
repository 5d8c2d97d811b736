import os
import json
import time

from ATAC_general_pipeline import run_scatac_pipeline
from ATAC_cell_type import (
    annotate_clusters_by_majority_vote,
    assign_cell_type_groups,
    cluster_label_confusion,
    find_marker_features,
)
from ATAC_motif import compute_motif_deviations, fetch_jaspar_motifs, rank_motif_variability
from ATAC_trajectory import run_fibroblast_trajectory
from config.heart_config import get_sample_info, load_config
from gene_activity.ATAC_gene_activity import compute_gene_activity
from integration.coembedding import coembed_rna_atac
from integration.label_transfer import (
    load_rna_reference,
    load_transfer_anchors,
    save_transfer_anchors,
    transfer_labels,
)
from utils.logger import log
from utils.random_seed import set_global_seed, set_thread_count
from utils.safe_save import load_snapshot, safe_h5ad_write, snapshot_path
from visualization.ATAC_visualization import (
    plot_coembedding,
    plot_confusion_heatmap,
    plot_prediction_scores,
    plot_umap_panels,
)

STAGES = (
    "preprocessing",
    "gene_activity",
    "label_transfer",
    "annotation",
    "coembedding",
    "motif",
    "trajectory",
)

# stage -> (snapshot stage directory, snapshot name)
SNAPSHOTS = {
    "preprocessing": ("preprocess", "atac_preprocessed"),
    "gene_activity": ("gene_activity", "gene_scores"),
    "label_transfer": ("label_transfer", "atac_labelled"),
    "annotation": ("annotation", "atac_annotated"),
    "coembedding": ("coembedding", "coembedded"),
    "motif": ("motif", "motif_deviations"),
    "trajectory": ("trajectory", "fibroblast_lineage"),
}


def status_file_path(output_dir, sample):
    return os.path.join(output_dir, sample, "sys_log", "process_status.json")


def load_status(status_path, initialization=False, verbose=True):
    """
    Stage completion flags, resumed from ``status_path`` unless ``initialization``.

    A fresh status file (all stages False) is written when starting over or
    when the saved one cannot be parsed.
    """
    status_flags = {stage: False for stage in STAGES}
    os.makedirs(os.path.dirname(status_path), exist_ok=True)

    if os.path.exists(status_path) and not initialization:
        try:
            with open(status_path, "r") as f:
                saved_status = json.load(f)
            status_flags.update({k: bool(v) for k, v in saved_status.items() if k in status_flags})
            if verbose:
                print("Resuming process from previous progress:")
                print(json.dumps(status_flags, indent=4))
            return status_flags
        except json.JSONDecodeError as e:
            log(f"Error reading status file: {e}. Reinitializing status from scratch.", level="WARNING",
                verbose=verbose)

    if verbose:
        print("Initializing process status file.")
    save_status(status_flags, status_path)
    return status_flags


def save_status(status_flags, status_path):
    with open(status_path, "w") as f:
        json.dump(status_flags, f, indent=4)


def atac_wrapper(
    sample,
    output_dir=None,
    config_path=None,
    config=None,
    stages=None,
    initialization=False,
    verbose=None,
):
    """
    Run the heart snATAC-seq analysis for one sample.

    Parameters
    ----------
    sample : str
        Sample id, looked up in the config sample table.
    output_dir : str, optional
        Output root; defaults to ``config['output_dir']``. Everything for the
        sample is written under ``<output_dir>/<sample>/``.
    config_path : str, optional
        JSON file overriding the defaults (ignored when ``config`` is given).
    stages : list of str, optional
        Stages to run, in any order (always executed in pipeline order).
        Defaults to all stages.
    initialization : bool
        Start over, ignoring the saved status. Otherwise stages already marked
        complete are skipped and their snapshots are loaded when needed.

    Returns
    -------
    dict
        The final status flags.
    """
    t0 = time.time()
    config = config if config is not None else load_config(config_path, verbose=verbose is not False)
    verbose = config["verbose"] if verbose is None else verbose
    output_dir = output_dir if output_dir is not None else config["output_dir"]

    stages = list(STAGES) if stages is None else list(stages)
    unknown = [s for s in stages if s not in STAGES]
    if unknown:
        raise ValueError(f"Unknown stage(s) {unknown}. Valid stages: {list(STAGES)}")

    info = get_sample_info(sample, config)
    seed = config["seed"]
    dpi = config["plot_dpi"]
    set_thread_count(config["n_jobs"], verbose=verbose)

    status_path = status_file_path(output_dir, sample)
    status_flags = load_status(status_path, initialization=initialization, verbose=verbose)

    log("=" * 60 + f"\nHeart ATAC analysis for {sample} (patient {info.get('patient')}, "
        f"region {info.get('region')})\n" + "=" * 60, verbose=verbose)

    cache = {}

    def stage_dir(stage):
        path = os.path.join(output_dir, sample, SNAPSHOTS[stage][0])
        os.makedirs(path, exist_ok=True)
        return path

    def snapshot(stage):
        return snapshot_path(output_dir, sample, *SNAPSHOTS[stage])

    def get(stage):
        if stage not in cache:
            cache[stage] = load_snapshot(snapshot(stage), stage=stage, verbose=verbose)
        return cache[stage]

    def should_run(stage):
        if stage not in stages:
            return False
        if status_flags[stage] and not initialization:
            log(f"Stage '{stage}' already complete; skipping", verbose=verbose)
            return False
        return True

    def finish(stage, adata):
        if adata is not None:
            cache[stage] = adata
        status_flags[stage] = True
        save_status(status_flags, status_path)

    # 1. Preprocessing
    if should_run("preprocessing"):
        set_global_seed(seed, verbose=verbose)
        atac = run_scatac_pipeline(
            filepath=info["atac_counts"],
            output_dir=output_dir,
            sample=sample,
            fragments_path=info.get("fragments"),
            gene_annotation=info.get("gene_annotation"),
            cell_metadata_path=info.get("cell_metadata"),
            verbose=verbose,
            seed=seed,
            plot_dpi=dpi,
            config=config,
            **config["preprocessing"],
        )
        finish("preprocessing", atac)

    # 2. Gene scores
    if should_run("gene_activity"):
        set_global_seed(seed, verbose=verbose)
        params = dict(config["gene_activity"])
        use_fragments = params.pop("use_fragments", True)
        gene_scores = compute_gene_activity(
            get("preprocessing"),
            info["gene_annotation"],
            fragments_path=info.get("fragments") if use_fragments else None,
            verbose=verbose,
            **params,
        )
        safe_h5ad_write(gene_scores, snapshot("gene_activity"), verbose=verbose)
        finish("gene_activity", gene_scores)

    # 3. Label transfer
    lt = config["label_transfer"]
    if should_run("label_transfer"):
        set_global_seed(seed, verbose=verbose)
        atac = get("preprocessing")
        gene_scores = get("gene_activity")
        reference = load_rna_reference(info["rna_reference"], lt["label_key"], verbose=verbose)
        cache["reference"] = reference

        use_rep = atac.uns.get("atac_use_rep", "X_lsi")
        predictions, anchors, weights = transfer_labels(
            reference,
            gene_scores,
            label_key=lt["label_key"],
            weight_reduction=atac.obsm[use_rep],
            k_weight=lt["k_weight"],
            sd_weight=lt["sd_weight"],
            n_features=lt["n_features"],
            n_components=lt["n_components"],
            k_anchor=lt["k_anchor"],
            k_filter=lt["k_filter"],
            random_state=seed,
            verbose=verbose,
        )
        for key in ("predicted_id", "prediction_score_max"):
            atac.obs[key] = gene_scores.obs[key].to_numpy()
        atac.obsm["prediction_scores"] = gene_scores.obsm["prediction_scores"]
        atac.obsm["X_cca"] = gene_scores.obsm["X_cca"]
        atac.uns["label_transfer"] = gene_scores.uns["label_transfer"]

        out = stage_dir("label_transfer")
        save_transfer_anchors(anchors, weights, out, verbose=verbose)
        predictions.to_csv(os.path.join(out, "predictions.csv"))
        plot_prediction_scores(atac, os.path.join(out, "plots"), prefix=sample,
                               min_score=config["annotation"]["min_score"], config=config, dpi=dpi, verbose=verbose)
        plot_umap_panels(atac, ["predicted_id", "prediction_score_max"], os.path.join(out, "plots"),
                         prefix=sample, config=config, dpi=dpi, verbose=verbose)
        safe_h5ad_write(atac, snapshot("label_transfer"), verbose=verbose)
        finish("label_transfer", atac)

    # 4. Cluster annotation
    ann = config["annotation"]
    if should_run("annotation"):
        atac = get("label_transfer")
        out = stage_dir("annotation")
        annotate_clusters_by_majority_vote(atac, cluster_key=ann["cluster_key"], min_score=ann["min_score"],
                                           verbose=verbose)
        assign_cell_type_groups(atac, config["cell_type_groups"], verbose=verbose)

        confusion = cluster_label_confusion(atac, cluster_key=ann["cluster_key"])
        confusion.to_csv(os.path.join(out, "cluster_label_confusion.csv"))
        plot_confusion_heatmap(confusion, os.path.join(out, "plots"), prefix=sample, dpi=dpi, verbose=verbose)
        plot_umap_panels(atac, ["cell_type", "cell_type_group"], os.path.join(out, "plots"), prefix=sample,
                         config=config, dpi=dpi, verbose=verbose)

        gene_scores = get("gene_activity")
        gene_scores.obs["cell_type"] = atac.obs["cell_type"].reindex(gene_scores.obs_names).to_numpy()
        if gene_scores.obs["cell_type"].nunique() >= 2:
            find_marker_features(gene_scores, groupby="cell_type", n_features=ann["n_marker_features"],
                                 output_path=os.path.join(out, f"{sample}_marker_genes.xlsx"), verbose=verbose)
        else:
            log("Fewer than 2 cell types; marker genes skipped", level="WARNING", verbose=verbose)

        safe_h5ad_write(atac, snapshot("annotation"), verbose=verbose)
        finish("annotation", atac)

    # 5. Co-embedding
    if should_run("coembedding"):
        set_global_seed(seed, verbose=verbose)
        atac = get("annotation")
        reference = cache.get("reference")
        if reference is None:
            reference = load_rna_reference(info["rna_reference"], lt["label_key"], verbose=verbose)
        anchors, weights = load_transfer_anchors(stage_dir("label_transfer"))
        combined = coembed_rna_atac(
            reference,
            atac,
            anchors,
            weights,
            label_key=lt["label_key"],
            random_state=seed,
            verbose=verbose,
            **config["coembedding"],
        )
        plot_coembedding(combined, os.path.join(stage_dir("coembedding"), "plots"), prefix=sample,
                         config=config, dpi=dpi, verbose=verbose)
        safe_h5ad_write(combined, snapshot("coembedding"), verbose=verbose)
        finish("coembedding", None)

    # 6. Motif deviations
    mot = config["motif"]
    if should_run("motif"):
        fasta = info.get("genome_fasta")
        if not fasta or not os.path.exists(fasta):
            log(f"Genome FASTA not found ({fasta}); skipping the motif stage", level="WARNING", verbose=verbose)
        else:
            set_global_seed(seed, verbose=verbose)
            motifs = fetch_jaspar_motifs(release=mot["jaspar_release"], collection=mot["collection"],
                                         tax_group=mot["tax_group"], verbose=verbose)
            deviations = compute_motif_deviations(get("annotation"), fasta, motifs=motifs,
                                                  n_background=mot["n_background"], n_jobs=config["n_jobs"],
                                                  verbose=verbose)
            variability = rank_motif_variability(deviations, n_top=None)
            variability.to_csv(os.path.join(stage_dir("motif"), "motif_variability.csv"))
            safe_h5ad_write(deviations, snapshot("motif"), verbose=verbose)
            finish("motif", deviations)

    # 7. Fibroblast trajectory
    tr = dict(config["trajectory"])
    if should_run("trajectory"):
        set_global_seed(seed, verbose=verbose)
        atac = get("annotation")
        deviations = None
        if status_flags["motif"] or os.path.exists(snapshot("motif")):
            deviations = get("motif")
        else:
            log("Motif deviations not available; the trajectory will use gene scores only", level="WARNING",
                verbose=verbose)
        result = run_fibroblast_trajectory(
            atac,
            get("gene_activity"),
            stage_dir("trajectory"),
            deviations=deviations,
            plot_dpi=dpi,
            verbose=verbose,
            **tr,
        )
        safe_h5ad_write(result["lineage"], snapshot("trajectory"), verbose=verbose)
        finish("trajectory", result["lineage"])

    log(f"Finished {sample} in {(time.time() - t0) / 60:.1f} min", verbose=verbose)
    if verbose:
        print(json.dumps(status_flags, indent=4))
    return status_flags
