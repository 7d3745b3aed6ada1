#!/usr/bin/env python3
"""
Quality control utilities for single-cell RNA-seq analysis
Handles QC metrics calculation and bound-based cell filtering
"""

import numpy as np
import pandas as pd
import scanpy as sc

from scworkflow import schema
from scworkflow.config import QCBounds

# metric column, bound attribute, "min" or "max"
_BOUND_RULES = [
    (schema.OBS_N_FEATURES, "min_features", "min"),
    (schema.OBS_N_FEATURES, "max_features", "max"),
    (schema.OBS_TOTAL_COUNTS, "min_counts", "min"),
    (schema.OBS_TOTAL_COUNTS, "max_counts", "max"),
    (schema.OBS_PERCENT_MT, "max_mito_pct", "max"),
]


def calculate_qc_metrics(adata, mito_prefix="MT-"):
    """Calculate per-cell QC metrics from raw counts

    Args:
        adata: AnnData object with a counts layer
        mito_prefix: Gene name prefix identifying mitochondrial genes

    Returns:
        AnnData object with n_genes_by_counts, total_counts and percent_mt in obs
    """
    print("Calculating QC metrics...")

    # Mitochondrial genes
    adata.var["mt"] = adata.var_names.str.startswith(mito_prefix)

    layer = schema.LAYER_COUNTS if schema.LAYER_COUNTS in adata.layers else None
    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=["mt"],
        percent_top=None,
        log1p=False,
        inplace=True,
        layer=layer,
    )

    adata.obs[schema.OBS_PERCENT_MT] = adata.obs["pct_counts_mt"].fillna(0.0)
    adata.obs = adata.obs.drop(columns=["pct_counts_mt", "total_counts_mt"])
    schema.set_annotation(adata, "mito_prefix", mito_prefix)
    schema.set_annotation(adata, "n_mito_genes", int(adata.var["mt"].sum()))

    return adata


def _rule_violations(adata, bounds):
    """Boolean frame with one column per active bound, True where a cell fails it"""
    violations = {}
    for column, attr, kind in _BOUND_RULES:
        limit = getattr(bounds, attr)
        if limit is None:
            continue
        values = adata.obs[column].to_numpy(dtype=float)
        if kind == "min":
            ok = values >= limit if bounds.min_inclusive else values > limit
        else:
            ok = values <= limit if bounds.max_inclusive else values < limit
        violations[attr] = ~ok
    return pd.DataFrame(violations, index=adata.obs_names)


def qc_pass_mask(adata, bounds):
    """Return a boolean array, True for cells satisfying every configured bound"""
    violations = _rule_violations(adata, bounds)
    if violations.empty:
        return np.ones(adata.n_obs, dtype=bool)
    return ~violations.any(axis=1).to_numpy()


def filter_cells(adata, bounds=None, mito_prefix="MT-"):
    """Apply QC filtering

    Metrics are computed if missing. Cells outside the bounds are removed and
    the relative order of the remaining cells is kept. Re-applying the same
    bounds to the result removes nothing.

    Args:
        adata: AnnData object
        bounds: QCBounds (defaults to the workshop bounds)
        mito_prefix: Gene name prefix identifying mitochondrial genes

    Returns:
        Filtered AnnData object
    """
    bounds = bounds if bounds is not None else QCBounds()
    print("Applying QC filters...")

    required = (schema.OBS_N_FEATURES, schema.OBS_TOTAL_COUNTS, schema.OBS_PERCENT_MT)
    if not all(c in adata.obs for c in required):
        adata = calculate_qc_metrics(adata, mito_prefix=mito_prefix)

    print(f"Starting with {adata.n_obs} cells and {adata.n_vars} genes")
    keep = qc_pass_mask(adata, bounds)
    n_removed = int((~keep).sum())

    adata = adata[keep].copy()
    removed_total = schema.get_annotation(adata, "qc_cells_removed", 0) + n_removed
    schema.set_annotation(adata, "qc_cells_removed", removed_total)

    print(f"After filtering: {adata.n_obs} cells and {adata.n_vars} genes")
    return adata


def qc_summary(adata, bounds, condition_key=schema.OBS_CONDITION):
    """Summarize how many cells each bound removes, per condition

    Args:
        adata: AnnData object with QC metrics (before filtering)
        bounds: QCBounds
        condition_key: obs column to group by

    Returns:
        DataFrame indexed by condition with n_cells, n_pass, pct_pass and one
        failure count column per active bound
    """
    violations = _rule_violations(adata, bounds)
    violations["n_pass"] = qc_pass_mask(adata, bounds)
    if condition_key in adata.obs:
        groups = adata.obs[condition_key].astype(str).to_numpy()
    else:
        groups = np.repeat("all", adata.n_obs)

    summary = violations.groupby(groups).sum().astype(int)
    summary.insert(0, "n_cells", pd.Series(groups).value_counts().reindex(summary.index))
    summary["pct_pass"] = (summary["n_pass"] / summary["n_cells"] * 100).round(2)
    summary.index.name = condition_key
    return summary
