import json
import os

import numpy as np
import pytest
import scanpy as sc

from HeartATAC import parse_args
from config.heart_config import load_config
from utils.safe_save import safe_h5ad_write, snapshot_path
from wrapper.atac_wrapper import STAGES, atac_wrapper, load_status, status_file_path


def test_load_status_initialises_and_resumes(tmp_path):
    path = status_file_path(str(tmp_path), "CK166")
    assert path == os.path.join(str(tmp_path), "CK166", "sys_log", "process_status.json")

    flags = load_status(path, verbose=False)
    assert flags == {stage: False for stage in STAGES}
    assert os.path.exists(path)

    with open(path, "w") as f:
        json.dump({"preprocessing": True, "old_stage": True}, f)
    resumed = load_status(path, verbose=False)
    assert resumed["preprocessing"] is True
    assert "old_stage" not in resumed

    assert load_status(path, initialization=True, verbose=False)["preprocessing"] is False


def test_load_status_recovers_from_corrupt_file(tmp_path):
    path = status_file_path(str(tmp_path), "CK166")
    os.makedirs(os.path.dirname(path))
    with open(path, "w") as f:
        f.write("{not json")
    assert not any(load_status(path, verbose=False).values())


def test_wrapper_rejects_unknown_stage(tmp_path):
    with pytest.raises(ValueError, match="clustering"):
        atac_wrapper("CK166", output_dir=str(tmp_path), config=load_config(), stages=["clustering"], verbose=False)


def test_wrapper_unknown_sample(tmp_path):
    with pytest.raises(KeyError, match="CK000"):
        atac_wrapper("CK000", output_dir=str(tmp_path), config=load_config(), stages=["annotation"], verbose=False)


def test_wrapper_runs_annotation_from_snapshots(tmp_path, gene_scores, rng):
    out = str(tmp_path)
    atac = gene_scores.copy()
    cluster_of = {"Cardiomyocyte": "1", "Endothelial": "2", "Fib1": "3"}
    atac.obs["leiden"] = atac.obs["true_type"].map(cluster_of)
    atac.obs["predicted_id"] = atac.obs["true_type"]
    atac.obs["prediction_score_max"] = rng.uniform(0.6, 1.0, atac.n_obs)
    atac.obsm["X_umap"] = rng.normal(size=(atac.n_obs, 2))
    safe_h5ad_write(atac, snapshot_path(out, "CK166", "label_transfer", "atac_labelled"), verbose=False)
    safe_h5ad_write(gene_scores, snapshot_path(out, "CK166", "gene_activity", "gene_scores"), verbose=False)

    config = load_config()
    config["annotation"]["n_marker_features"] = 5
    config["plot_dpi"] = 50
    config["n_jobs"] = 1

    flags = atac_wrapper("CK166", output_dir=out, config=config, stages=["annotation"], verbose=False)

    assert flags["annotation"] is True
    assert flags["preprocessing"] is False
    stage_dir = os.path.join(out, "CK166", "annotation")
    assert os.path.exists(os.path.join(stage_dir, "atac_annotated.h5ad"))
    assert os.path.exists(os.path.join(stage_dir, "cluster_label_confusion.csv"))
    assert os.path.exists(os.path.join(stage_dir, "CK166_marker_genes.xlsx"))

    with open(status_file_path(out, "CK166")) as f:
        assert json.load(f)["annotation"] is True

    # completed stages are skipped on resume
    os.remove(os.path.join(stage_dir, "atac_annotated.h5ad"))
    atac_wrapper("CK166", output_dir=out, config=config, stages=["annotation"], verbose=False)
    assert not os.path.exists(os.path.join(stage_dir, "atac_annotated.h5ad"))


def test_parse_args():
    args = parse_args(["-s", "CK166", "--stages", "motif", "trajectory", "--init", "-q"])
    assert args.sample == "CK166"
    assert args.stages == ["motif", "trajectory"]
    assert args.init and args.quiet
    assert args.output_directory is None

    with pytest.raises(SystemExit):
        parse_args(["-s", "CK166", "--stages", "clustering"])


@pytest.fixture
def staged_run(tmp_path, rna_reference, gene_scores, rng):
    """Preprocessing and gene-score snapshots plus a config pointing at a small reference."""
    out = str(tmp_path / "result")
    atac = gene_scores.copy()
    atac.obsm["X_lsi"] = np.asarray(gene_scores.X) + 0.01 * rng.normal(size=gene_scores.shape)
    atac.obsm["X_umap"] = rng.normal(size=(atac.n_obs, 2))
    atac.obs["leiden"] = atac.obs["true_type"].map({"Cardiomyocyte": "1", "Endothelial": "2", "Fib1": "3"})
    atac.uns["atac_use_rep"] = "X_lsi"
    safe_h5ad_write(atac, snapshot_path(out, "CK166", "preprocess", "atac_preprocessed"), verbose=False)
    safe_h5ad_write(gene_scores, snapshot_path(out, "CK166", "gene_activity", "gene_scores"), verbose=False)

    reference = rna_reference.copy()
    reference.uns["log1p"] = {"base": float(np.e)}
    reference.write_h5ad(tmp_path / "rna_CK166.h5ad")

    config = load_config()
    config["data_dir"] = str(tmp_path)
    config["samples"]["CK166"]["rna_reference"] = "rna_CK166.h5ad"
    config["plot_dpi"] = 50
    config["n_jobs"] = 1
    config["label_transfer"].update(n_features=60, n_components=2, k_anchor=5, k_filter=50, k_weight=20)
    config["annotation"].update(min_score=None, n_marker_features=5)
    config["coembedding"].update(n_pcs=10, n_neighbors=15)
    config["trajectory"].update(n_comps=5, n_neighbors=10, n_bins=10, smooth_window=3)
    return out, config


def test_wrapper_runs_downstream_stages_and_resumes(staged_run, gene_scores):
    out, config = staged_run
    sample_dir = os.path.join(out, "CK166")

    flags = atac_wrapper("CK166", output_dir=out, config=config, stages=["label_transfer", "annotation"],
                         verbose=False)
    assert flags["label_transfer"] and flags["annotation"]
    assert not flags["coembedding"]

    labelled = sc.read_h5ad(os.path.join(sample_dir, "label_transfer", "atac_labelled.h5ad"))
    # predictions are copied from the gene-score object onto the ATAC cells
    assert labelled.obs_names.tolist() == gene_scores.obs_names.tolist()
    accuracy = np.mean(labelled.obs["predicted_id"].astype(str).to_numpy() == gene_scores.obs["true_type"].to_numpy())
    assert accuracy > 0.9
    assert "prediction_scores" in labelled.obsm and "X_cca" in labelled.obsm
    for name in ("anchors.npz", "transfer_weights.npz", "anchors.csv", "predictions.csv"):
        assert os.path.exists(os.path.join(sample_dir, "label_transfer", name)), name

    annotated = sc.read_h5ad(os.path.join(sample_dir, "annotation", "atac_annotated.h5ad"))
    assert set(annotated.obs["cell_type"].astype(str)) == {"Cardiomyocyte", "Endothelial", "Fib1"}

    # a new run reloads the annotation snapshot and the anchors from disk
    flags = atac_wrapper("CK166", output_dir=out, config=config, stages=["coembedding", "trajectory"],
                         verbose=False)
    assert all(flags[s] for s in ("label_transfer", "annotation", "coembedding", "trajectory"))
    assert not flags["preprocessing"] and not flags["motif"]

    combined = sc.read_h5ad(os.path.join(sample_dir, "coembedding", "coembedded.h5ad"))
    assert set(combined.obs["modality"].astype(str)) == {"RNA", "ATAC"}
    assert "X_umap" in combined.obsm

    lineage = sc.read_h5ad(os.path.join(sample_dir, "trajectory", "fibroblast_lineage.h5ad"))
    assert set(lineage.obs["cell_type"].astype(str)) == {"Fib1"}
    assert lineage.obs["pseudotime"].max() == pytest.approx(100.0)
    assert os.path.exists(os.path.join(sample_dir, "trajectory", "gene_score_trajectory.csv"))
    # no motif deviations without a genome FASTA
    assert not os.path.exists(os.path.join(sample_dir, "trajectory", "motif_gene_correlation.csv"))

    with open(status_file_path(out, "CK166")) as f:
        saved = json.load(f)
    assert saved["coembedding"] and saved["trajectory"]

    # completed stages are not rerun
    os.remove(os.path.join(sample_dir, "label_transfer", "predictions.csv"))
    atac_wrapper("CK166", output_dir=out, config=config,
                 stages=["label_transfer", "annotation", "coembedding", "trajectory"], verbose=False)
    assert not os.path.exists(os.path.join(sample_dir, "label_transfer", "predictions.csv"))


def test_wrapper_skips_motif_stage_without_fasta(staged_run):
    out, config = staged_run
    flags = atac_wrapper("CK166", output_dir=out, config=config, stages=["motif"], verbose=False)
    assert flags["motif"] is False
    assert not os.path.exists(snapshot_path(out, "CK166", "motif", "motif_deviations"))
