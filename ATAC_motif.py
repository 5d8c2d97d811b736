import os
import time
import numpy as np
import pandas as pd
import pychromvar as pc
from pyjaspar import jaspardb
from scipy.sparse import issparse

from utils.logger import log


def fetch_jaspar_motifs(release='JASPAR2020', collection='CORE', tax_group='vertebrates', verbose=True):
    """
    Position frequency matrices from a local JASPAR release.

    Parameters
    ----------
    release : str
        JASPAR release bundled with pyjaspar, e.g. 'JASPAR2020'.
    collection : str
        JASPAR collection, usually 'CORE'.
    tax_group : str or list of str
        Taxonomic group(s) to keep.

    Returns
    -------
    list of Bio.motifs.jaspar.Motif
    """
    tax_group = [tax_group] if isinstance(tax_group, str) else list(tax_group)
    jdb = jaspardb(release=release)
    motifs = jdb.fetch_motifs(collection=collection, tax_group=tax_group)
    if len(motifs) == 0:
        raise ValueError(f"No motifs found in {release} for collection={collection}, tax_group={tax_group}")
    log(f"Fetched {len(motifs)} motifs from {release} {collection} ({', '.join(tax_group)})", verbose=verbose)
    return motifs


def motif_gene_name(motif_id):
    """
    Transcription factor gene of a motif name.

    'MA0002.2.RUNX1' -> 'RUNX1', 'MA0089.2.MAFG::NFE2L1' -> 'MAFG',
    'RUNX1' -> 'RUNX1'. Case is kept (JASPAR vertebrate names are symbols).
    """
    name = str(motif_id)
    parts = name.split('.', 2)
    if len(parts) == 3 and parts[0].startswith('MA'):
        name = parts[2]
    name = name.split('::')[0]
    # variant suffixes, e.g. 'Ebf2(var.2)'
    return name.split('(')[0].strip()


def compute_motif_deviations(
    atac,
    genome_fasta,
    motifs=None,
    layer='counts',
    n_background=50,
    p_value=5e-5,
    n_jobs=8,
    verbose=True
):
    """
    chromVAR motif deviations with pychromvar.

    Peak sequences are read from ``genome_fasta``; GC bias, background
    peaks, motif matches and deviations follow pychromvar's workflow on a
    copy of ``atac`` whose ``X`` holds raw peak counts.

    Returns
    -------
    AnnData
        Cells x motifs deviations (``X``), with ``obs`` copied from ``atac``,
        ``var['gene_name']`` and a ``layers['z']`` z-score matrix.
    """
    start_time = time.time()
    if not os.path.exists(genome_fasta):
        raise FileNotFoundError(f"Genome FASTA not found: {genome_fasta}")
    if not os.path.exists(genome_fasta + '.fai'):
        log(f"No FASTA index next to {genome_fasta}; pyfaidx will build one", level="WARNING", verbose=verbose)

    if motifs is None:
        motifs = fetch_jaspar_motifs(verbose=verbose)

    data = atac.copy()
    if layer is not None:
        if layer not in data.layers:
            raise KeyError(f"Layer '{layer}' not found; raw peak counts are required for chromVAR")
        data.X = data.layers[layer].copy()
    data.X = data.X.astype(np.float32)

    # chromVAR drops cells and peaks without reads
    cell_counts = np.asarray(data.X.sum(axis=1)).ravel()
    peak_counts = np.asarray(data.X.sum(axis=0)).ravel()
    if (cell_counts == 0).any() or (peak_counts == 0).any():
        log(f"Removing {(cell_counts == 0).sum()} empty cells and {(peak_counts == 0).sum()} empty peaks",
            level="WARNING", verbose=verbose)
        data = data[cell_counts > 0, peak_counts > 0].copy()

    log(f"Adding peak sequences for {data.n_vars} peaks", verbose=verbose)
    pc.add_peak_seq(data, genome_file=genome_fasta, delimiter=':|-')
    pc.add_gc_bias(data)
    pc.get_bg_peaks(data, niterations=n_background, n_jobs=n_jobs)

    log(f"Matching {len(motifs)} motifs", verbose=verbose)
    pc.match_motif(data, motifs=motifs, p_value=p_value)

    log("Computing deviations", verbose=verbose)
    deviations = pc.compute_deviations(data, n_jobs=n_jobs)
    deviations.obs = data.obs.copy()
    deviations.var['gene_name'] = [motif_gene_name(m) for m in deviations.var_names]

    # pychromvar X is already the background-corrected deviation z-score
    if 'z' not in deviations.layers:
        dev = deviations.X.toarray() if issparse(deviations.X) else np.asarray(deviations.X, dtype=float)
        deviations.layers['z'] = dev.copy()

    deviations.uns['motif'] = {
        'n_motifs': int(deviations.n_vars),
        'n_background': int(n_background),
        'p_value': float(p_value),
    }

    if verbose:
        print(f"[compute_motif_deviations] {deviations.n_obs} cells x {deviations.n_vars} motifs "
              f"in {time.time() - start_time:.1f} s")
    return deviations


def rank_motif_variability(deviations, n_top=50, layer='z'):
    """
    Motifs ranked by the standard deviation of their deviation z-scores.

    Returns a DataFrame indexed by motif with ``variability``, ``gene_name``
    and ``rank`` (1 = most variable), limited to ``n_top`` rows when given.
    """
    matrix = deviations.layers[layer] if layer is not None and layer in deviations.layers else deviations.X
    matrix = matrix.toarray() if issparse(matrix) else np.asarray(matrix, dtype=float)

    table = pd.DataFrame({
        'variability': np.nanstd(matrix, axis=0),
        'gene_name': [motif_gene_name(m) for m in deviations.var_names],
    }, index=deviations.var_names)
    table = table.sort_values('variability', ascending=False)
    table['rank'] = np.arange(1, table.shape[0] + 1)

    if n_top is not None:
        table = table.head(n_top)
    return table
