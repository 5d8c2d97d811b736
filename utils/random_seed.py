import os
import random
import numpy as np


def set_global_seed(seed: int = 42, verbose: bool = True):
    """
    Set random seeds for reproducibility of the ATAC stages.

    Harmony runs on PyTorch, so its generator is seeded too when available.

    Parameters
    ----------
    seed : int, default=42
        The seed to use for all RNGs.
    verbose : bool, default=True
        Whether to print confirmation messages.
    """
    os.environ["PYTHONHASHSEED"] = str(seed)
    random.seed(seed)
    np.random.seed(seed)

    try:
        import torch
        torch.manual_seed(seed)
        if torch.cuda.is_available():
            torch.cuda.manual_seed_all(seed)
        if verbose:
            print(f"[Seed Control] PyTorch seed set to {seed}")
    except ImportError:
        if verbose:
            print("[Seed Control] PyTorch not available, skipping torch seed")

    import scanpy as sc
    sc.settings.seed = seed
    if verbose:
        print(f"[Seed Control] Scanpy seed set to {seed}")

    return seed


def set_thread_count(n_jobs: int = 8, verbose: bool = True):
    """
    Pass a thread-pool size to the libraries that parallelise internally.

    ``n_jobs`` is stored in ``scanpy.settings.n_jobs`` and exported through the
    usual BLAS/OpenMP environment variables. pychromvar receives it explicitly
    from the motif stage.
    """
    if n_jobs is None or n_jobs == 0:
        raise ValueError("n_jobs must be a positive integer or -1")

    import scanpy as sc
    sc.settings.n_jobs = n_jobs

    if n_jobs > 0:
        for var in ("OMP_NUM_THREADS", "OPENBLAS_NUM_THREADS", "MKL_NUM_THREADS"):
            os.environ[var] = str(n_jobs)

    if verbose:
        print(f"[Thread Control] Using n_jobs={n_jobs}")
    return n_jobs
