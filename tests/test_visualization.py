import os

import numpy as np
import pandas as pd
import anndata as ad
import pytest

from config.heart_config import get_cell_type_palette, load_config
from visualization import ATAC_visualization
from visualization.ATAC_visualization import (
    plot_atac_qc,
    plot_coembedding,
    plot_confusion_heatmap,
    plot_prediction_scores,
    plot_trajectory_heatmaps,
    plot_umap_panels,
)


@pytest.fixture
def annotated(rng):
    n = 60
    obs = pd.DataFrame(
        {
            "n_fragments": rng.integers(1000, 20000, n),
            "tss_score": rng.uniform(3, 15, n),
            "cell_type": pd.Categorical(rng.choice(["Fib1", "Endothelial", "Mystery"], n)),
            "prediction_score_max": rng.uniform(0, 1, n),
        },
        index=[f"c{i}" for i in range(n)],
    )
    obs["predicted_id"] = obs["cell_type"].astype(str)
    adata = ad.AnnData(X=np.zeros((n, 3), dtype=np.float32), obs=obs)
    adata.obsm["X_umap"] = rng.normal(size=(n, 2))
    return adata


def _written(paths):
    return len(paths) == 2 and all(os.path.exists(p) for p in paths)


def test_qc_and_umap_plots(tmp_path, annotated):
    assert _written(plot_atac_qc(annotated, str(tmp_path), prefix="CK166", min_fragments=1000, min_tss=4,
                                 dpi=50, verbose=False))
    paths = plot_umap_panels(annotated, ["cell_type", "tss_score", "absent"], str(tmp_path), prefix="CK166",
                             dpi=50, verbose=False)
    assert _written(paths)
    assert paths[0].endswith("CK166_umap_cell_type_tss_score.png")


def test_qc_plot_without_metrics(tmp_path):
    adata = ad.AnnData(X=np.zeros((3, 2), dtype=np.float32))
    assert plot_atac_qc(adata, str(tmp_path), verbose=False) == []


def test_umap_panels_need_embedding(tmp_path, annotated):
    del annotated.obsm["X_umap"]
    with pytest.raises(KeyError, match="X_umap"):
        plot_umap_panels(annotated, ["cell_type"], str(tmp_path), verbose=False)


def test_prediction_and_confusion_plots(tmp_path, annotated):
    assert _written(plot_prediction_scores(annotated, str(tmp_path), min_score=0.5, dpi=50, verbose=False))
    table = pd.crosstab(annotated.obs["cell_type"], annotated.obs["predicted_id"], normalize="index")
    assert _written(plot_confusion_heatmap(table, str(tmp_path), dpi=50, verbose=False))


def test_prediction_scores_use_configured_palette(tmp_path, annotated, monkeypatch):
    config = load_config()
    config["cell_type_colors"]["Mystery"] = "#123456"
    seen = []

    def recording_palette(labels, config=None):
        seen.append(config)
        return get_cell_type_palette(labels, config)

    monkeypatch.setattr(ATAC_visualization, "get_cell_type_palette", recording_palette)
    plot_prediction_scores(annotated, str(tmp_path), config=config, dpi=50, verbose=False)

    assert seen and seen[0] is config
    assert get_cell_type_palette(["Mystery"], config) == ["#123456"]


def test_coembedding_plot(tmp_path, annotated):
    annotated.obs["modality"] = pd.Categorical(["RNA", "ATAC"] * (annotated.n_obs // 2))
    paths = plot_coembedding(annotated, str(tmp_path / "coembed"), prefix="CK166", dpi=50, verbose=False)
    assert _written(paths)


def test_trajectory_heatmaps(tmp_path):
    bins = pd.RangeIndex(1, 11, name="bin")
    genes = pd.DataFrame(np.random.default_rng(0).normal(size=(3, 10)), index=["A", "B", "C"], columns=bins)
    motifs = pd.DataFrame(np.random.default_rng(1).normal(size=(3, 10)), index=["mA", "mB", "mC"], columns=bins)
    assert _written(plot_trajectory_heatmaps(genes, motifs, str(tmp_path), dpi=50, verbose=False))

    with pytest.raises(ValueError, match="paired rows"):
        plot_trajectory_heatmaps(genes, motifs.iloc[:2], str(tmp_path), verbose=False)
