import os

os.environ.setdefault("MPLCONFIGDIR", "/tmp/mpl-test")

import anndata
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from scworkflow.config import PipelineConfig, QCBounds

N_GENES = 300
N_MITO = 5
N_MARKERS = 20


def toy_counts(n_cells=150, n_genes=N_GENES, n_groups=3, seed=0, conditions=("CTRL", "STIM")):
    """Synthetic counts: n_groups populations with their own marker genes"""
    rng = np.random.default_rng(seed)
    groups = np.arange(n_cells) % n_groups

    base = rng.gamma(2.0, 0.5, size=n_genes)
    means = np.tile(base, (n_cells, 1))
    for g in range(n_groups):
        start = N_MITO + g * N_MARKERS
        means[groups == g, start : start + N_MARKERS] += 6.0
    counts = rng.poisson(means).astype(np.float32)

    genes = [f"MT-{i}" for i in range(N_MITO)] + [f"Gene{i}" for i in range(N_MITO, n_genes)]
    adata = anndata.AnnData(
        X=sparse.csr_matrix(counts),
        obs=pd.DataFrame(
            {
                "group": pd.Categorical([f"type{g}" for g in groups]),
                "condition": pd.Categorical(
                    [conditions[i % len(conditions)] for i in range(n_cells)],
                    categories=list(conditions),
                ),
            },
            index=[f"cell{i}" for i in range(n_cells)],
        ),
        var=pd.DataFrame(index=genes),
    )
    adata.layers["counts"] = adata.X.copy()
    return adata


def toy_scaled(n_cells=150, n_features=100, seed=0, n_components=15):
    """Normalized, scaled and PCA-reduced toy data"""
    from scworkflow.dimensionality import run_pca
    from scworkflow.processing import find_variable_features, normalize_data, scale_data

    adata = normalize_data(toy_counts(n_cells=n_cells, seed=seed))
    find_variable_features(adata, n_features=n_features)
    adata = scale_data(adata)
    return run_pca(adata, n_components=n_components)


def small_config(**overrides):
    values = {
        "min_cells": 1,
        "min_features": 10,
        "qc_bounds": QCBounds(min_features=10, max_features=None, max_mito_pct=None),
        "n_variable_features": 100,
        "n_components": 15,
        "n_pcs_use": 10,
        "knn_k": 10,
        "integration_dims": 10,
        "k_filter": 50,
        "k_score": 20,
        "k_weight": 30,
        "min_anchors": 5,
    }
    values.update(overrides)
    return PipelineConfig(**values)


@pytest.fixture
def toy_adata():
    return toy_counts()


@pytest.fixture
def config():
    return small_config()
