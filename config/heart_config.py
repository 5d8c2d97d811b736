"""
Parameter tables for the heart snATAC-seq analysis.

Every stage takes its defaults from ``DEFAULT_PARAMS``. A JSON file passed to
``load_config`` overrides any subset of it, for example::

    {
        "data_dir": "/data/heart",
        "preprocessing": {"min_tss": 5},
        "samples": {"CK999": {"rna_reference": "rna/CK999.h5ad", "patient": "P99", "region": "RZ"}}
    }
"""
import copy
import json
import os

import matplotlib.pyplot as plt
from matplotlib.colors import to_hex


# Sample id -> companion scRNA-seq reference and sample annotation.
# rna_reference paths are relative to config["data_dir"] unless absolute.
SAMPLE_TABLE = {
    "CK166": {"rna_reference": "rna/CK158.h5ad", "patient": "P1", "region": "control"},
    "CK167": {"rna_reference": "rna/CK159.h5ad", "patient": "P2", "region": "control"},
    "CK168": {"rna_reference": "rna/CK160.h5ad", "patient": "P3", "region": "RZ"},
    "CK169": {"rna_reference": "rna/CK161.h5ad", "patient": "P4", "region": "IZ"},
    "CK170": {"rna_reference": "rna/CK162.h5ad", "patient": "P5", "region": "BZ"},
    "CK171": {"rna_reference": "rna/CK163.h5ad", "patient": "P6", "region": "IZ"},
    "CK173": {"rna_reference": "rna/CK165.h5ad", "patient": "P7", "region": "FZ"},
    "CK174": {"rna_reference": "rna/CK357.h5ad", "patient": "P8", "region": "FZ"},
}

CELL_TYPE_COLORS = {
    "Adipocyte": "#D51F26",
    "Cardiomyocyte": "#272E6A",
    "Endothelial": "#208A42",
    "Fib1": "#89288F",
    "Fib2": "#F47D2B",
    "Fib3": "#FEE500",
    "Fibroblast": "#8A9FD1",
    "Lymphoid": "#C06CAB",
    "Mast": "#E6C2DC",
    "Myeloid": "#90D5E4",
    "Neuronal": "#89C75F",
    "Pericyte": "#F37B7D",
    "vSMCs": "#9983BD",
    "Cycling cells": "#D24B27",
    "Unassigned": "#BEBEBE",
}

# Fine label -> coarse group used for summary plots and lineage subsetting
CELL_TYPE_GROUPS = {
    "Adipocyte": "Adipocytes",
    "Cardiomyocyte": "Cardiomyocytes",
    "Endothelial": "Endothelial",
    "Fib1": "Fibroblasts",
    "Fib2": "Fibroblasts",
    "Fib3": "Fibroblasts",
    "Fibroblast": "Fibroblasts",
    "Lymphoid": "Immune",
    "Mast": "Immune",
    "Myeloid": "Immune",
    "Neuronal": "Neuronal",
    "Pericyte": "Mural",
    "vSMCs": "Mural",
    "Cycling cells": "Cycling cells",
}

MODALITY_COLORS = {"RNA": "#1F77B4", "ATAC": "#D62728"}

DEFAULT_PARAMS = {
    "data_dir": "data",
    "output_dir": "result",
    "seed": 42,
    "n_jobs": 8,
    "verbose": True,
    "plot_dpi": 300,
    "inputs": {
        # {sample} is substituted with the sample id
        "atac_counts": "atac/{sample}/filtered_peak_bc_matrix.h5",
        "fragments": "atac/{sample}/fragments.tsv.gz",
        "cell_metadata": None,
        "gene_annotation": "annotation/hg38_genes.tsv",
        "genome_fasta": "annotation/hg38.fa",
    },
    "preprocessing": {
        "min_fragments": 1000,
        "max_fragments": 100000,
        "min_tss": 4.0,
        "max_nucleosome_signal": 2.0,
        "min_cells_per_peak": 10,
        "n_lsi_components": 30,
        "drop_first_lsi": True,
        "batch_key": None,
        "n_neighbors": 15,
        "umap_min_dist": 0.3,
        "leiden_resolution": 0.8,
    },
    "gene_activity": {
        "upstream": 2000,
        "downstream": 0,
        "use_fragments": True,
    },
    "label_transfer": {
        "label_key": "cell_type",
        "n_features": 2000,
        "n_components": 30,
        "k_anchor": 5,
        "k_filter": 200,
        "k_weight": 50,
        "sd_weight": 1.0,
    },
    "annotation": {
        "cluster_key": "leiden",
        "min_score": 0.5,
        "n_marker_features": 100,
    },
    "coembedding": {
        "n_pcs": 30,
        "harmony": False,
        "n_neighbors": 30,
    },
    "motif": {
        "jaspar_release": "JASPAR2020",
        "collection": "CORE",
        "tax_group": "vertebrates",
        "n_background": 50,
        "n_top_variable": 50,
    },
    "trajectory": {
        "lineage": ["Fib1", "Fib2", "Fib3", "Fibroblast"],
        "root_cell_type": "Fib1",
        "use_rep": "X_lsi",
        "n_comps": 15,
        "n_neighbors": 30,
        "n_bins": 100,
        "smooth_window": 11,
        "cor_cutoff": 0.5,
        "var_cutoff_gene": 0.8,
        "var_cutoff_motif": 0.8,
    },
    "samples": SAMPLE_TABLE,
    "cell_type_colors": CELL_TYPE_COLORS,
    "cell_type_groups": CELL_TYPE_GROUPS,
    "modality_colors": MODALITY_COLORS,
}


def _deep_update(base, override):
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def load_config(config_path=None, verbose=True):
    """
    Build the run configuration.

    Parameters
    ----------
    config_path : str or None
        JSON file overriding any subset of ``DEFAULT_PARAMS``.
    verbose : bool
        Whether to print the keys that were overridden.

    Returns
    -------
    dict
        A deep copy of the defaults, updated from the file.
    """
    config = copy.deepcopy(DEFAULT_PARAMS)
    if config_path is None:
        return config

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "r") as f:
        override = json.load(f)

    unknown = set(override) - set(DEFAULT_PARAMS)
    if unknown:
        raise KeyError(f"Unknown config keys: {sorted(unknown)}. Valid keys: {sorted(DEFAULT_PARAMS)}")

    _deep_update(config, override)
    if verbose:
        print(f"[load_config] Loaded overrides for {sorted(override)} from {config_path}")
    return config


def resolve_path(path, config):
    """Resolve a path against ``config['data_dir']``; absolute paths and None pass through."""
    if path is None or os.path.isabs(path):
        return path
    return os.path.join(config["data_dir"], path)


def get_sample_info(sample, config=None):
    """
    Look up a sample in the sample table.

    Returns a dict with the resolved ``rna_reference`` path and the input
    file paths of the sample.
    """
    config = config if config is not None else DEFAULT_PARAMS
    samples = config["samples"]
    if sample not in samples:
        raise KeyError(f"Unknown sample '{sample}'. Known samples: {sorted(samples)}")

    info = dict(samples[sample])
    info["sample"] = sample
    info["rna_reference"] = resolve_path(info.get("rna_reference"), config)
    for key, template in config["inputs"].items():
        # paths set in the sample entry take precedence over the templates
        if info.get(key) is not None:
            info[key] = resolve_path(info[key], config)
        else:
            info[key] = resolve_path(template.format(sample=sample), config) if template else None
    return info


def get_cell_type_palette(labels, config=None, fallback_cmap="tab20"):
    """Hex colors for ``labels``: configured colors first, then a qualitative colormap."""
    config = config if config is not None else DEFAULT_PARAMS
    colors = config["cell_type_colors"]
    cmap = plt.get_cmap(fallback_cmap)

    palette = []
    n_fallback = 0
    for label in labels:
        if label in colors:
            palette.append(colors[label])
        else:
            palette.append(to_hex(cmap(n_fallback % cmap.N)))
            n_fallback += 1
    return palette
