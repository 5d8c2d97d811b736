import matplotlib
matplotlib.use("Agg")

import numpy as np
import pandas as pd
import anndata as ad
import pytest
from scipy.sparse import csr_matrix

CELL_TYPES = ["Cardiomyocyte", "Endothelial", "Fib1"]


def _marker_counts(rng, n_cells_per_type, n_features, base=0.5, marker=5.0):
    """Poisson counts where each type has its own block of marker features."""
    n_types = len(n_cells_per_type)
    block = n_features // n_types
    rows, labels = [], []
    for t, n in enumerate(n_cells_per_type):
        lam = np.full(n_features, base)
        lam[t * block:(t + 1) * block] = marker
        rows.append(rng.poisson(lam, size=(n, n_features)))
        labels += [CELL_TYPES[t]] * n
    return np.vstack(rows).astype(np.float32), np.array(labels)


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def atac_counts(rng):
    """120 cells x 300 peaks on chr1, three accessibility programs."""
    counts, labels = _marker_counts(rng, [40, 40, 40], 300, base=0.3, marker=3.0)
    starts = np.arange(300) * 1000 + 100
    var_names = [f"chr1:{s}-{s + 500}" for s in starts]
    obs = pd.DataFrame({"true_type": labels}, index=[f"CK166#cell{i}" for i in range(counts.shape[0])])
    atac = ad.AnnData(X=csr_matrix(counts), obs=obs, var=pd.DataFrame(index=var_names))
    atac.obs["sample"] = "CK166"
    return atac


@pytest.fixture
def rna_reference(rng):
    """150 log-normalised RNA cells x 60 genes with a labelled cell type."""
    counts, labels = _marker_counts(rng, [50, 50, 50], 60, base=1.0, marker=8.0)
    genes = [f"GENE{i}" for i in range(60)]
    ref = ad.AnnData(
        X=np.log1p(counts),
        obs=pd.DataFrame({"cell_type": pd.Categorical(labels)}, index=[f"rna{i}" for i in range(counts.shape[0])]),
        var=pd.DataFrame(index=genes),
    )
    ref.uns["log1p"] = {"base": None}
    return ref


@pytest.fixture
def gene_scores(rng):
    """90 ATAC cells x 60 gene scores with the same marker blocks as the reference."""
    counts, labels = _marker_counts(rng, [30, 30, 30], 60, base=0.5, marker=3.0)
    genes = [f"GENE{i}" for i in range(60)]
    scores = ad.AnnData(
        X=np.log1p(counts),
        obs=pd.DataFrame({"true_type": labels}, index=[f"CK166#atac{i}" for i in range(counts.shape[0])]),
        var=pd.DataFrame(index=genes),
    )
    scores.obs["sample"] = "CK166"
    return scores


@pytest.fixture
def gene_annotation():
    return pd.DataFrame({
        "Chromosome": ["chr1", "chr1", "chr2"],
        "Start": [1000, 5000, 100],
        "End": [2000, 6000, 500],
        "Strand": ["+", "-", "+"],
        "gene_name": ["G1", "G2", "G3"],
    })


@pytest.fixture
def arc_lineage(rng):
    """
    200 fibroblast cells ordered along a quarter circle in a 3-D reduction.

    ``true_time`` is the position along the arc; cell types follow it.
    """
    n = 200
    t = np.sort(rng.uniform(0, 1, n))
    theta = t * np.pi / 2
    emb = np.column_stack([np.cos(theta), np.sin(theta), 0.02 * rng.normal(size=n)])
    cell_type = np.where(t < 1 / 3, "Fib1", np.where(t < 2 / 3, "Fib2", "Fib3"))
    adata = ad.AnnData(
        X=csr_matrix((n, 5), dtype=np.float32),
        obs=pd.DataFrame({"cell_type": pd.Categorical(cell_type), "true_time": t},
                         index=[f"CK166#fib{i}" for i in range(n)]),
        var=pd.DataFrame(index=[f"chr1:{i * 1000}-{i * 1000 + 500}" for i in range(5)]),
    )
    adata.obsm["X_lsi"] = emb
    return adata
