import os
import pandas as pd
import scanpy as sc
import numpy as np


def clean_obs_for_saving(adata, verbose=True):
    """
    Clean adata.obs to prevent string conversion errors during H5AD saving.

    Categorical and object columns are turned into string categoricals with
    missing values written as 'Unknown'. Boolean columns become 'True'/'False'
    categoricals. Numeric columns (QC metrics, prediction scores, pseudotime)
    are left numeric so that downstream stages can keep thresholding on them.

    Parameters
    ----------
    adata : AnnData
        AnnData object to clean
    verbose : bool
        Whether to print cleaning operations

    Returns
    -------
    adata : AnnData
        Cleaned AnnData object
    """
    if verbose:
        print("[clean_obs_for_saving] Cleaning observation metadata for H5AD compatibility...")

    obs_copy = adata.obs.copy()

    for col in obs_copy.columns:
        col_data = obs_copy[col]

        if isinstance(col_data.dtype, pd.CategoricalDtype):
            values = col_data.astype(object).where(col_data.notna(), "Unknown")
            col_data = pd.Categorical(values.astype(str).replace("", "Unknown"))

        elif col_data.dtype == 'object':
            new_values = []
            for val in col_data:
                if val is None or (isinstance(val, float) and np.isnan(val)):
                    new_val = 'Unknown'
                elif isinstance(val, (bool, np.bool_)):
                    new_val = 'True' if val else 'False'
                elif isinstance(val, float) and val.is_integer():
                    new_val = str(int(val))
                else:
                    new_val = str(val)
                new_values.append(new_val if new_val.strip() else 'Unknown')

            col_data = pd.Series(new_values, index=col_data.index)
            col_data = col_data.replace(['None', 'nan', 'NaN', 'NULL', '<NA>'], 'Unknown')
            col_data = pd.Categorical(col_data)

        elif pd.api.types.is_bool_dtype(col_data):
            col_data = pd.Categorical(['True' if val else 'False' for val in col_data])

        elif not pd.api.types.is_numeric_dtype(col_data):
            col_data = col_data.astype(str)
            col_data = col_data.replace(['None', 'nan', 'NaN', 'NULL', '', '<NA>'], 'Unknown')
            col_data = pd.Categorical(col_data)

        obs_copy[col] = col_data

    adata.obs = obs_copy

    if verbose:
        cat_cols = [col for col in adata.obs.columns
                    if isinstance(adata.obs[col].dtype, pd.CategoricalDtype)]
        print(f"[clean_obs_for_saving] {len(cat_cols)} categorical columns processed")

    return adata


def _clean_obsm_frames(adata):
    # DataFrames in obsm must carry string column names for h5py
    for key in list(adata.obsm.keys()):
        value = adata.obsm[key]
        if isinstance(value, pd.DataFrame):
            value = value.copy()
            value.columns = value.columns.astype(str)
            adata.obsm[key] = value
    return adata


def safe_h5ad_write(adata, filepath, verbose=True):
    """
    Safely write an AnnData snapshot to H5AD format.

    Parameters
    ----------
    adata : AnnData
        AnnData object to save
    filepath : str
        Path to save the file
    verbose : bool
        Whether to print progress messages
    """
    try:
        if verbose:
            print(f"[safe_h5ad_write] Preparing to save to: {filepath}")

        adata_copy = adata.copy()
        adata_copy = clean_obs_for_saving(adata_copy, verbose=verbose)
        adata_copy = _clean_obsm_frames(adata_copy)

        directory = os.path.dirname(filepath)
        if directory:
            os.makedirs(directory, exist_ok=True)

        sc.write(filepath, adata_copy)

        if verbose:
            print(f"[safe_h5ad_write] Successfully saved to: {filepath}")

    except Exception as e:
        if verbose:
            print(f"[safe_h5ad_write] Error saving H5AD file: {str(e)}")
            print("\n=== DIAGNOSTIC INFORMATION ===")
            print(f"Error type: {type(e).__name__}")
            print(f"adata.obs shape: {adata.obs.shape}")
            print(f"obsm keys: {list(adata.obsm.keys())}")
            print(f"uns keys: {list(adata.uns.keys())}")
        raise


def snapshot_path(output_dir, sample, stage, name):
    """Location of a stage snapshot: ``<output_dir>/<sample>/<stage>/<name>.h5ad``."""
    if not name.endswith(".h5ad"):
        name = f"{name}.h5ad"
    return os.path.join(output_dir, sample, stage, name)


def load_snapshot(filepath, stage=None, verbose=True):
    """
    Read a snapshot written by an earlier stage.

    Raises
    ------
    FileNotFoundError
        If the snapshot does not exist; the message names the stage to rerun.
    """
    if not os.path.exists(filepath):
        hint = f" Rerun the '{stage}' stage first." if stage else ""
        raise FileNotFoundError(f"Snapshot not found: {filepath}.{hint}")

    adata = sc.read_h5ad(filepath)
    if verbose:
        print(f"[load_snapshot] Loaded {adata.n_obs} cells x {adata.n_vars} features from {filepath}")
    return adata
