import pandas as pd
import os
import scanpy as sc
import time

from utils.logger import log


def cell_types_atac(
    adata,
    cluster_resolution=0.8,
    use_rep='X_lsi',
    cluster_key='leiden',
    n_target_clusters=None,
    max_resolution=5.0,
    resolution_step=0.5,
    n_neighbors=15,
    build_graph=True,
    _recursion_depth=0,
    verbose=True
):
    """
    Leiden clustering of ATAC cells on an LSI-derived representation.

    When ``n_target_clusters`` is given, the resolution is increased by
    ``resolution_step`` until at least that many clusters are found or
    ``max_resolution`` is reached.

    Parameters:
    - adata: AnnData object
    - cluster_resolution: Starting resolution for Leiden clustering
    - use_rep: Representation to use for the neighborhood graph
    - cluster_key: obs column receiving 1-based string cluster labels
    - n_target_clusters: int, optional. Minimum number of clusters wanted.
    - max_resolution: Maximum resolution to try before giving up
    - resolution_step: Step size for increasing resolution
    - build_graph: Whether to (re)build the neighbor graph first
    - _recursion_depth: Internal parameter (do not set manually)
    - verbose: Whether to print progress messages

    Returns:
    - Updated AnnData object
    """
    start_time = time.time()
    prefix = "  " * _recursion_depth

    if _recursion_depth > 10:
        raise RuntimeError(f"Maximum recursion depth exceeded. Could not achieve {n_target_clusters} clusters.")

    if use_rep not in adata.obsm:
        raise KeyError(f"The representation '{use_rep}' is not present in adata.obsm.")

    if build_graph and _recursion_depth == 0:
        if verbose:
            print(f"[cell_types_atac] Building neighborhood graph on {use_rep}...")
        sc.pp.neighbors(adata, use_rep=use_rep, n_neighbors=n_neighbors, metric='cosine')

    sc.tl.leiden(
        adata,
        resolution=cluster_resolution,
        flavor='igraph',
        n_iterations=2,
        directed=False,
        key_added=cluster_key
    )
    # 1-based string labels
    adata.obs[cluster_key] = (adata.obs[cluster_key].astype(int) + 1).astype(str).astype('category')
    num_clusters = adata.obs[cluster_key].nunique()

    if verbose:
        print(f"{prefix}[cell_types_atac] Leiden at resolution {cluster_resolution:.1f} produced {num_clusters} clusters.")

    if n_target_clusters is not None and num_clusters < n_target_clusters:
        new_resolution = cluster_resolution + resolution_step
        if new_resolution > max_resolution:
            if verbose:
                print(f"{prefix}[cell_types_atac] Warning: Reached max resolution ({max_resolution}). "
                      f"Got {num_clusters} clusters instead of {n_target_clusters}.")
        else:
            return cell_types_atac(
                adata,
                cluster_resolution=new_resolution,
                use_rep=use_rep,
                cluster_key=cluster_key,
                n_target_clusters=n_target_clusters,
                max_resolution=max_resolution,
                resolution_step=resolution_step,
                n_neighbors=n_neighbors,
                build_graph=False,
                _recursion_depth=_recursion_depth + 1,
                verbose=verbose
            )

    adata.uns['leiden_resolution'] = cluster_resolution
    if verbose and _recursion_depth == 0:
        print(f"[cell_types_atac] Total runtime: {time.time() - start_time:.2f} seconds")
    return adata


def annotate_clusters_by_majority_vote(
    adata,
    cluster_key='leiden',
    label_key='predicted_id',
    score_key='prediction_score_max',
    min_score=None,
    output_key='cell_type',
    unassigned_label='Unassigned',
    verbose=True
):
    """
    Name each cluster after the most frequent transferred label among its cells.

    Cells whose ``score_key`` is below ``min_score`` do not vote. Ties are
    broken by the summed prediction score of the tied labels, then
    alphabetically. Clusters without eligible voters get ``unassigned_label``.

    Writes ``obs[output_key]``, ``obs['majority_fraction']`` and
    ``uns['cluster_vote']`` (one record per cluster).
    """
    for key in (cluster_key, label_key):
        if key not in adata.obs.columns:
            raise KeyError(f"Column '{key}' not found in adata.obs")

    obs = pd.DataFrame({
        'cluster': adata.obs[cluster_key].astype(str).to_numpy(),
        'label': adata.obs[label_key].astype(str).to_numpy(),
    }, index=adata.obs_names)
    has_score = score_key is not None and score_key in adata.obs.columns
    obs['score'] = adata.obs[score_key].to_numpy(dtype=float) if has_score else 1.0

    if min_score is not None:
        if not has_score:
            raise KeyError(f"min_score given but score column '{score_key}' not found in adata.obs")
        voters = obs[obs['score'] >= min_score]
    else:
        voters = obs

    records = []
    for cluster in sorted(obs['cluster'].unique(), key=lambda c: (len(c), c)):
        n_cells = int((obs['cluster'] == cluster).sum())
        cluster_votes = voters[voters['cluster'] == cluster]

        if cluster_votes.empty:
            records.append({'cluster': cluster, 'cell_type': unassigned_label, 'n_cells': n_cells,
                            'n_voters': 0, 'majority_fraction': 0.0})
            continue

        tally = cluster_votes.groupby('label').agg(votes=('score', 'size'), total_score=('score', 'sum'))
        tally = tally.reset_index().sort_values(['votes', 'total_score', 'label'],
                                                ascending=[False, False, True])
        winner = tally.iloc[0]
        records.append({
            'cluster': cluster,
            'cell_type': winner['label'],
            'n_cells': n_cells,
            'n_voters': int(cluster_votes.shape[0]),
            'majority_fraction': float(winner['votes']) / cluster_votes.shape[0],
        })

    vote = pd.DataFrame(records).set_index('cluster')
    adata.obs[output_key] = pd.Categorical(obs['cluster'].map(vote['cell_type']).to_numpy())
    adata.obs['majority_fraction'] = obs['cluster'].map(vote['majority_fraction']).to_numpy(dtype=float)
    adata.uns['cluster_vote'] = vote.reset_index().to_dict(orient='list')

    if verbose:
        print(f"[annotate_clusters_by_majority_vote] {vote.shape[0]} clusters annotated from '{label_key}'")
        for cluster, row in vote.iterrows():
            print(f"   cluster {cluster}: {row['cell_type']} ({row['majority_fraction']:.0%} of {row['n_voters']} voters)")

    return vote


def assign_cell_type_groups(adata, groups, cell_type_key='cell_type', group_key='cell_type_group', verbose=True):
    """Coarse group per cell from a fine label -> group table; unknown labels map to themselves."""
    if cell_type_key not in adata.obs.columns:
        raise KeyError(f"Column '{cell_type_key}' not found in adata.obs")

    labels = adata.obs[cell_type_key].astype(str)
    adata.obs[group_key] = pd.Categorical(labels.map(lambda x: groups.get(x, x)).to_numpy())

    if verbose:
        print(f"[assign_cell_type_groups] {adata.obs[group_key].nunique()} groups from "
              f"{labels.nunique()} cell types")
    return adata


def cluster_label_confusion(adata, cluster_key='leiden', label_key='predicted_id', normalize=True):
    """Cluster x transferred-label table, row-normalised when ``normalize``."""
    for key in (cluster_key, label_key):
        if key not in adata.obs.columns:
            raise KeyError(f"Column '{key}' not found in adata.obs")

    table = pd.crosstab(adata.obs[cluster_key].astype(str), adata.obs[label_key].astype(str))
    table = table.loc[sorted(table.index, key=lambda c: (len(c), c))]
    if normalize:
        table = table.div(table.sum(axis=1), axis=0)
    return table


def _excel_sheet_name(name, used):
    """Excel-safe sheet name (max 31 chars, no []:*?/\\), suffixed ``_2``, ``_3``... if already used."""
    base = str(name).translate({ord(c): '_' for c in '[]:*?/\\'})[:31]
    sheet, n = base, 1
    # Excel compares sheet names case-insensitively
    while sheet.lower() in used:
        n += 1
        suffix = f"_{n}"
        sheet = base[:31 - len(suffix)] + suffix
    return sheet


def find_marker_features(
    adata,
    groupby='cell_type',
    n_features=100,
    method='wilcoxon',
    layer=None,
    output_path=None,
    verbose=True
):
    """
    Marker genes/peaks per group with ``scanpy.tl.rank_genes_groups``.

    Returns a long DataFrame (group, names, scores, logfoldchanges,
    pvals, pvals_adj). When ``output_path`` is given, the table is written to
    an ``.xlsx`` spreadsheet with one sheet per group.
    """
    if groupby not in adata.obs.columns:
        raise KeyError(f"Column '{groupby}' not found in adata.obs")

    groups = adata.obs[groupby].astype(str)
    counts = groups.value_counts()
    valid = counts[counts >= 2].index
    if len(valid) < 2:
        raise ValueError(f"Marker detection needs at least 2 groups with >= 2 cells in '{groupby}'")

    subset = adata[groups.isin(valid).to_numpy()].copy()
    subset.obs[groupby] = subset.obs[groupby].astype(str).astype('category')

    log(f"Ranking marker features for {len(valid)} groups of '{groupby}'", verbose=verbose)
    sc.tl.rank_genes_groups(subset, groupby=groupby, method=method, layer=layer,
                            n_genes=min(n_features, subset.n_vars), use_raw=False)
    markers = sc.get.rank_genes_groups_df(subset, group=None)
    markers = markers.groupby('group', observed=True).head(n_features).reset_index(drop=True)

    if output_path is not None:
        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with pd.ExcelWriter(output_path, engine='openpyxl') as writer:
            used = set()
            for group, table in markers.groupby('group', observed=True):
                sheet = _excel_sheet_name(group, used)
                used.add(sheet.lower())
                table.drop(columns='group').to_excel(writer, sheet_name=sheet, index=False)
        log(f"Saved marker table to {output_path}", verbose=verbose)

    return markers
