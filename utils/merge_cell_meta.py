from pathlib import Path
from typing import Optional, Union
import pandas as pd
from anndata import AnnData


def prefix_barcodes(barcodes, sample: str, sep: str = "#"):
    """Prefix barcodes with the sample id (``<sample>#<barcode>``) unless already prefixed."""
    prefix = f"{sample}{sep}"
    return [b if str(b).startswith(prefix) else f"{prefix}{b}" for b in barcodes]


def merge_cell_metadata(
    adata: AnnData,
    metadata_path: Union[str, Path],
    sample: Optional[str] = None,
    barcode_column: Optional[str] = None,
    verbose: bool = True,
) -> AnnData:
    """
    Merge per-cell metadata (CSV file) into AnnData.obs.

    The CSV is indexed by barcode, either via ``barcode_column`` or its first
    column. When ``sample`` is given, barcodes are prefixed the same way
    ``load_atac_counts`` prefixes cell names so both sides match.
    Columns already present in ``adata.obs`` are replaced by the metadata version.
    """
    metadata_path = Path(metadata_path)
    if not metadata_path.exists():
        raise FileNotFoundError(f"Cell metadata file not found: {metadata_path}")

    if verbose:
        print(f"[merge_cell_metadata] Reading CSV metadata file: {metadata_path}")

    # encoding='utf-8-sig' strips a potential BOM at the start of the file
    meta = pd.read_csv(metadata_path, sep=None, engine="python", encoding="utf-8-sig")
    meta.columns = meta.columns.astype(str).str.strip()

    if barcode_column is None:
        barcode_column = meta.columns[0]
    if barcode_column not in meta.columns:
        raise ValueError(
            f"Barcode column '{barcode_column}' not in metadata. "
            f"Columns found: {list(meta.columns)}"
        )

    meta = meta.set_index(barcode_column)
    meta.index = meta.index.astype(str)
    if sample is not None:
        meta.index = prefix_barcodes(meta.index, sample)

    if meta.index.duplicated().any():
        n_dup = int(meta.index.duplicated().sum())
        raise ValueError(f"Cell metadata contains {n_dup} duplicated barcodes")

    for col in meta.columns:
        if meta[col].dtype == "object":
            meta[col] = meta[col].fillna("Unknown").astype(str)

    overlapping_cols = adata.obs.columns.intersection(meta.columns)
    if len(overlapping_cols) > 0:
        if verbose:
            print(f"[merge_cell_metadata] Replacing {len(overlapping_cols)} existing columns: {list(overlapping_cols)}")
        adata.obs = adata.obs.drop(columns=overlapping_cols)

    adata.obs = adata.obs.join(meta, how="left")

    matched = int(adata.obs_names.isin(meta.index).sum())
    if verbose:
        print(f"[merge_cell_metadata] Added {meta.shape[1]} columns")
        print(f"[merge_cell_metadata] Matched {matched}/{adata.n_obs} cells ({matched / max(adata.n_obs, 1) * 100:.1f}%)")

    return adata
