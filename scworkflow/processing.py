#!/usr/bin/env python3
"""
Processing utilities for single-cell RNA-seq analysis
Handles normalization, variable feature selection and scaling
"""

import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse

from scworkflow import schema
from scworkflow.errors import ConfigurationError, EmptyCellError, MalformedInputError


def _counts(adata):
    if schema.LAYER_COUNTS in adata.layers:
        return adata.layers[schema.LAYER_COUNTS]
    return adata.X


def normalize_data(adata, scale_factor=1e4):
    """Normalize each cell to a common total and log transform

    counts / total * scale_factor, then log(1 + x).

    Args:
        adata: AnnData object with raw counts in X
        scale_factor: Target total per cell

    Returns:
        AnnData object with log-normalized values in X
    """
    print("Normalizing data...")

    if scale_factor <= 0:
        raise ConfigurationError("scale_factor must be positive", identifiers=["scale_factor"])

    totals = np.asarray(adata.X.sum(axis=1)).ravel()
    empty = adata.obs_names[totals <= 0]
    if len(empty):
        raise EmptyCellError(
            f"{len(empty)} cells have zero total counts; remove them with QC first",
            identifiers=list(empty),
        )

    # Normalize to scale_factor reads per cell
    sc.pp.normalize_total(adata, target_sum=float(scale_factor))

    # Log transform
    sc.pp.log1p(adata)

    schema.set_annotation(adata, "normalize_scale_factor", float(scale_factor))
    return adata


def find_variable_features(adata, n_features=2000):
    """Rank genes by standardized variance and flag the top n_features

    Uses the variance-stabilizing (``seurat_v3``) flavor on raw counts: a loess
    mean-variance trend is fitted and genes are ranked by their variance after
    standardizing with the trend. Ties keep the original gene order.

    Args:
        adata: AnnData object with a counts layer
        n_features: Number of variable features to keep

    Returns:
        List of gene identifiers ordered by descending rank
    """
    print("Finding variable features...")

    if schema.LAYER_COUNTS not in adata.layers:
        raise MalformedInputError(
            "Variable feature selection needs raw counts in layers['counts']",
            identifiers=[schema.LAYER_COUNTS],
        )
    n_features = int(min(n_features, adata.n_vars))

    stats = sc.pp.highly_variable_genes(
        adata,
        flavor="seurat_v3",
        n_top_genes=n_features,
        layer=schema.LAYER_COUNTS,
        inplace=False,
    )
    variances_norm = pd.Series(
        np.nan_to_num(stats["variances_norm"].to_numpy(dtype=float), nan=0.0),
        index=adata.var_names,
    )

    # Stable descending sort keeps gene order for ties
    order = np.argsort(-variances_norm.to_numpy(), kind="stable")
    top = adata.var_names[order[:n_features]]

    rank = pd.Series(np.nan, index=adata.var_names)
    rank.loc[top] = np.arange(len(top))
    adata.var["variances_norm"] = variances_norm
    adata.var["variable_rank"] = rank
    adata.var["highly_variable"] = rank.notna()

    print(f"  Selected {len(top)} variable features")
    return list(top)


def variable_features(adata):
    """Return the flagged variable features ordered by rank"""
    if "variable_rank" not in adata.var:
        raise MalformedInputError(
            "No variable features; run find_variable_features first",
            identifiers=["variable_rank"],
        )
    ranked = adata.var["variable_rank"].dropna().sort_values(kind="stable")
    return list(ranked.index)


def scale_data(adata, features=None, vars_to_regress=(), clip_max=10.0, freeze_raw=True):
    """Standardize each feature across cells

    The normalized data is frozen into ``.raw`` first so the full gene space
    stays available for marker testing.

    Args:
        adata: Log-normalized AnnData object
        features: Genes to scale (defaults to the variable features)
        vars_to_regress: obs columns regressed out before scaling
        clip_max: Scaled values are clipped to [-clip_max, clip_max]
        freeze_raw: Store X in .raw first (off when .raw already holds the
            normalized data, as after integration)

    Returns:
        AnnData object restricted to ``features`` with scaled values in X
    """
    print("Scaling data...")

    if features is None:
        features = variable_features(adata)
    features = list(features)
    missing = [g for g in features if g not in adata.var_names]
    if missing:
        raise MalformedInputError("Features not present in the container", identifiers=missing)
    missing = [k for k in vars_to_regress if k not in adata.obs]
    if missing:
        raise ConfigurationError("Covariates to regress not found in obs", identifiers=missing)

    # Save full normalized data
    if freeze_raw or adata.raw is None:
        adata.raw = adata

    # Keep only the requested features for downstream analysis
    adata = adata[:, features].copy()

    if vars_to_regress:
        print(f"  Regressing out {', '.join(vars_to_regress)}")
        sc.pp.regress_out(adata, list(vars_to_regress))

    if sparse.issparse(adata.X):
        adata.X = adata.X.toarray()
    sc.pp.scale(adata, zero_center=True, max_value=float(clip_max))
    adata.X = np.clip(adata.X, -float(clip_max), float(clip_max))

    schema.set_annotation(adata, "scale_clip_max", float(clip_max))
    return adata
