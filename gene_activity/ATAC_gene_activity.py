"""
Gene activity (gene score) matrix from ATAC peaks or fragments.

A gene's score is the accessibility over its gene body extended upstream by
the promoter, strand aware. Fragment counting is delegated to muon; without a
fragments file the peak counts overlapping each gene are summed.
"""

import os
import re
import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad
from scipy.sparse import csr_matrix, issparse
from muon import atac as ac

from utils.logger import log


_PEAK_PATTERN = re.compile(r"^(?P<chrom>[^:\-_]+(?:_[^:\-_]+)*?)[:\-_](?P<start>\d+)[\-_](?P<end>\d+)$")

_ANNOTATION_ALIASES = {
    "chrom": "Chromosome",
    "chr": "Chromosome",
    "seqnames": "Chromosome",
    "chromosome": "Chromosome",
    "start": "Start",
    "end": "End",
    "strand": "Strand",
    "gene": "gene_name",
    "symbol": "gene_name",
    "gene_symbol": "gene_name",
}


def load_gene_annotation(path):
    """
    Read a gene annotation table with ``Chromosome``, ``Start``, ``End``,
    ``gene_name`` and optionally ``Strand`` (CSV or TSV, common aliases accepted).
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Gene annotation not found: {path}")

    genes = pd.read_csv(path, sep=None, engine="python")
    genes = genes.rename(columns={c: _ANNOTATION_ALIASES.get(c.lower(), c) for c in genes.columns})

    required = ["Chromosome", "Start", "End", "gene_name"]
    missing = [c for c in required if c not in genes.columns]
    if missing:
        raise ValueError(f"Gene annotation {path} is missing columns {missing}; found {list(genes.columns)}")

    if "Strand" not in genes.columns:
        genes["Strand"] = "+"
    genes["Chromosome"] = genes["Chromosome"].astype(str)
    genes["Start"] = genes["Start"].astype(int)
    genes["End"] = genes["End"].astype(int)
    genes = genes.drop_duplicates(subset="gene_name").reset_index(drop=True)
    return genes


def tss_positions(genes):
    """One-base TSS intervals (``Start`` == TSS) for muon's TSS enrichment."""
    tss = np.where(genes["Strand"].astype(str) == "-", genes["End"], genes["Start"])
    return pd.DataFrame({
        "Chromosome": genes["Chromosome"].values,
        "Start": tss,
        "End": tss + 1,
        "gene_name": genes["gene_name"].values,
    })


def parse_peak_names(var_names):
    """
    Parse peak names of the form ``chr1:100-200``, ``chr1-100-200`` or
    ``chr1_100_200`` into a DataFrame of intervals indexed by peak name.
    """
    records = []
    for name in var_names:
        match = _PEAK_PATTERN.match(str(name))
        if match is None:
            raise ValueError(f"Cannot parse peak name '{name}'; expected 'chrom:start-end'")
        records.append((match.group("chrom"), int(match.group("start")), int(match.group("end"))))

    peaks = pd.DataFrame(records, columns=["Chromosome", "Start", "End"], index=pd.Index(var_names, name="peak"))
    return peaks


def gene_regions(genes, upstream=2000, downstream=0):
    """Gene body plus promoter, strand aware."""
    minus = genes["Strand"].astype(str) == "-"
    start = np.where(minus, genes["Start"] - downstream, genes["Start"] - upstream)
    end = np.where(minus, genes["End"] + upstream, genes["End"] + downstream)
    return pd.DataFrame({
        "Chromosome": genes["Chromosome"].values,
        "Start": np.maximum(start, 0),
        "End": end,
        "gene_name": genes["gene_name"].values,
    })


def peak_gene_overlap_matrix(peaks, genes, upstream=2000, downstream=0):
    """
    Sparse peaks x genes indicator: 1 where a peak overlaps the gene region.

    Returns
    -------
    overlap : scipy.sparse.csr_matrix
    gene_names : list of str
    """
    regions = gene_regions(genes, upstream=upstream, downstream=downstream)
    rows, cols = [], []

    for chrom, chrom_peaks in peaks.reset_index(drop=True).groupby("Chromosome"):
        chrom_genes = regions[regions["Chromosome"] == chrom]
        if chrom_genes.empty:
            continue
        order = np.argsort(chrom_peaks["Start"].to_numpy())
        peak_idx = chrom_peaks.index.to_numpy()[order]
        peak_starts = chrom_peaks["Start"].to_numpy()[order]
        peak_ends = chrom_peaks["End"].to_numpy()[order]
        max_len = (peak_ends - peak_starts).max()

        for gene_idx, g_start, g_end in zip(chrom_genes.index, chrom_genes["Start"], chrom_genes["End"]):
            # candidates start before the gene end and not too far before the gene start
            lo = np.searchsorted(peak_starts, g_start - max_len, side="left")
            hi = np.searchsorted(peak_starts, g_end, side="left")
            for j in range(lo, hi):
                if peak_ends[j] > g_start:
                    rows.append(peak_idx[j])
                    cols.append(gene_idx)

    overlap = csr_matrix(
        (np.ones(len(rows), dtype=np.float32), (rows, cols)),
        shape=(peaks.shape[0], regions.shape[0]),
    )
    return overlap, regions["gene_name"].tolist()


def compute_gene_activity(
    atac,
    gene_annotation,
    fragments_path=None,
    layer="counts",
    upstream=2000,
    downstream=0,
    target_sum=1e4,
    verbose=True,
):
    """
    Build a cells x genes gene-score AnnData sharing ``obs`` with ``atac``.

    Parameters
    ----------
    atac : AnnData
        ATAC data with peaks as features.
    gene_annotation : str or DataFrame
        Gene coordinates (see ``load_gene_annotation``).
    fragments_path : str or None
        Tabix-indexed fragments file; when present, fragments are counted
        over gene regions with muon instead of summing peak counts.
    layer : str or None
        Layer holding raw peak counts (``X`` when absent).

    Returns
    -------
    AnnData
        Normalised, log-transformed gene scores with raw scores in
        ``layers['counts']``. Genes without signal are dropped.
    """
    if isinstance(gene_annotation, str):
        gene_annotation = load_gene_annotation(gene_annotation)

    if fragments_path is not None and os.path.exists(fragments_path):
        log(f"Counting fragments over {gene_annotation.shape[0]} gene regions", verbose=verbose)
        if "files" not in atac.uns or "fragments" not in atac.uns.get("files", {}):
            ac.tl.locate_fragments(atac, fragments_path)
        regions = gene_regions(gene_annotation, upstream=upstream, downstream=downstream)
        regions.index = regions["gene_name"].astype(str).values
        activity = ac.tl.count_fragments_features(atac, features=regions, extend_upstream=0, extend_downstream=0)
        activity.var_names = regions["gene_name"].astype(str).values
        method = "fragments"
    else:
        counts = atac.layers[layer] if layer is not None and layer in atac.layers else atac.X
        peaks = parse_peak_names(atac.var_names)
        log(f"Summing {peaks.shape[0]} peaks over {gene_annotation.shape[0]} gene regions", verbose=verbose)
        overlap, gene_names = peak_gene_overlap_matrix(peaks, gene_annotation, upstream=upstream, downstream=downstream)
        counts = counts if issparse(counts) else csr_matrix(counts)
        activity = ad.AnnData(
            X=csr_matrix(counts @ overlap),
            obs=atac.obs.copy(),
            var=pd.DataFrame(index=pd.Index(gene_names, name=None)),
        )
        method = "peaks"

    activity.var_names_make_unique()
    activity.obs = atac.obs.copy()
    sc.pp.filter_genes(activity, min_counts=1)
    if activity.n_vars == 0:
        raise ValueError("No gene has any accessibility signal; check the peak and gene chromosome naming")

    activity.layers["counts"] = activity.X.copy()
    sc.pp.normalize_total(activity, target_sum=target_sum)
    sc.pp.log1p(activity)
    activity.uns["gene_activity"] = {"method": method, "upstream": upstream, "downstream": downstream}

    log(f"Gene activity matrix: {activity.n_obs} cells × {activity.n_vars} genes ({method})", verbose=verbose)
    return activity
