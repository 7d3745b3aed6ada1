#!/usr/bin/env python3
"""
Differential expression analysis utilities for single-cell RNA-seq analysis
Handles cluster markers, pairwise tests and markers conserved across conditions
"""

from pathlib import Path

import numpy as np
import pandas as pd
from scipy import sparse, stats
from statsmodels.stats.multitest import multipletests

from scworkflow import schema
from scworkflow.errors import ConfigurationError, MalformedInputError

MARKER_COLUMNS = ["p_val", "avg_log2FC", "pct_1", "pct_2", "p_val_adj"]


def _expression(adata, use_raw=None):
    """Log-normalized matrix and gene names used for testing"""
    if use_raw is None:
        use_raw = adata.raw is not None
    if use_raw:
        return adata.raw.X, adata.raw.var_names
    return adata.X, adata.var_names


def _column_stats(X):
    """Detection rate and log2 mean of expm1 per gene"""
    if sparse.issparse(X):
        detected = np.asarray((X > 0).mean(axis=0)).ravel()
        mean_expm1 = np.asarray(X.expm1().mean(axis=0)).ravel()
    else:
        X = np.asarray(X)
        detected = (X > 0).mean(axis=0)
        mean_expm1 = np.expm1(X).mean(axis=0)
    return np.round(detected, 3), np.log2(mean_expm1 + 1)


def _dense_columns(X, columns):
    sub = X[:, columns]
    return sub.toarray() if sparse.issparse(sub) else np.asarray(sub)


def find_markers(
    adata,
    ident_1,
    ident_2=None,
    group_key=schema.OBS_CLUSTER,
    min_pct=0.1,
    logfc_threshold=0.25,
    test="wilcox",
    only_pos=False,
    p_adjust="bonferroni",
    use_raw=None,
):
    """Test every gene between two disjoint cell populations

    Genes are only tested when detected in at least ``min_pct`` of either
    population and when the absolute average log2 fold change reaches
    ``logfc_threshold``.

    Args:
        adata: AnnData object with log-normalized data (in .raw or X)
        ident_1: Group label of the first population
        ident_2: Group label(s) of the second population (None = all other cells)
        group_key: obs column with the group labels
        min_pct: Minimum detection rate in either population
        logfc_threshold: Minimum absolute average log2 fold change
        test: "wilcox" (rank-sum) or "t" (Welch t-test)
        only_pos: Keep only genes higher in the first population
        p_adjust: statsmodels multiple-testing method
        use_raw: Test .raw (default when present) or X

    Returns:
        DataFrame indexed by gene with p_val, avg_log2FC, pct_1, pct_2 and
        p_val_adj, ordered by p-value then fold change
    """
    if group_key not in adata.obs:
        raise KeyError(f"Groupby key '{group_key}' not found in adata.obs")
    if test not in ("wilcox", "t"):
        raise ConfigurationError(f"Unknown test '{test}'", identifiers=[test])

    labels = adata.obs[group_key].astype(str).to_numpy()
    cells_1 = labels == str(ident_1)
    if ident_2 is None:
        cells_2 = ~cells_1
    else:
        idents_2 = [ident_2] if isinstance(ident_2, (str, int)) else list(ident_2)
        if str(ident_1) in [str(i) for i in idents_2]:
            raise ConfigurationError(
                "The two populations must be disjoint", identifiers=[str(ident_1)]
            )
        cells_2 = np.isin(labels, [str(i) for i in idents_2])

    if not cells_1.any() or not cells_2.any():
        raise MalformedInputError(
            "Both populations need at least one cell",
            identifiers=[str(ident_1), str(ident_2)],
        )

    X, genes = _expression(adata, use_raw)
    if sparse.issparse(X):
        X = sparse.csr_matrix(X)
    X1, X2 = X[cells_1], X[cells_2]

    pct_1, log_mean_1 = _column_stats(X1)
    pct_2, log_mean_2 = _column_stats(X2)
    fold_change = log_mean_1 - log_mean_2

    # Only test genes passing detection and fold-change filters
    keep = np.maximum(pct_1, pct_2) >= min_pct
    if only_pos:
        keep &= fold_change >= logfc_threshold
    else:
        keep &= np.abs(fold_change) >= logfc_threshold
    tested = np.where(keep)[0]

    if tested.size == 0:
        return pd.DataFrame(columns=MARKER_COLUMNS, index=pd.Index([], name="gene"))

    A, B = _dense_columns(X1, tested), _dense_columns(X2, tested)
    with np.errstate(divide="ignore", invalid="ignore"):
        if test == "wilcox":
            pvals = stats.mannwhitneyu(
                A, B, axis=0, alternative="two-sided", use_continuity=True, method="asymptotic"
            ).pvalue
        else:
            pvals = stats.ttest_ind(A, B, axis=0, equal_var=False).pvalue
    # Constant genes have no defined statistic
    pvals = np.nan_to_num(np.asarray(pvals, dtype=float), nan=1.0)

    results = pd.DataFrame(
        {
            "p_val": pvals,
            "avg_log2FC": fold_change[tested],
            "pct_1": pct_1[tested],
            "pct_2": pct_2[tested],
            "p_val_adj": multipletests(pvals, method=p_adjust)[1],
        },
        index=pd.Index(np.asarray(genes)[tested], name="gene"),
    )
    return results.sort_values(
        ["p_val", "avg_log2FC"], ascending=[True, False], kind="mergesort"
    )


def find_all_markers(adata, group_key=schema.OBS_CLUSTER, **kwargs):
    """One-vs-rest markers for every group

    Args:
        adata: AnnData object with clustering results
        group_key: obs column to group by (default: "cluster")
        **kwargs: Passed to find_markers

    Returns:
        DataFrame with one row per (cluster, gene) and cluster/gene columns
    """
    if group_key not in adata.obs:
        raise KeyError(f"Groupby key '{group_key}' not found in adata.obs")

    print("Finding markers for every cluster...")
    labels = adata.obs[group_key]
    groups = labels.cat.categories if hasattr(labels, "cat") else sorted(labels.unique())

    tables = []
    for group in groups:
        if (labels.astype(str) == str(group)).sum() == 0:
            continue
        if (labels.astype(str) != str(group)).sum() == 0:
            print(f"  Skipping {group}: no other cells to compare with")
            continue
        markers = find_markers(adata, group, group_key=group_key, **kwargs)
        if markers.empty:
            continue
        markers = markers.reset_index()
        markers.insert(0, "cluster", str(group))
        tables.append(markers)
        print(f"  Cluster {group}: {len(markers)} genes")

    if not tables:
        return pd.DataFrame(columns=["cluster", "gene"] + MARKER_COLUMNS)
    return pd.concat(tables, ignore_index=True)


def find_conserved_markers(
    adata,
    ident_1,
    ident_2=None,
    grouping_key=schema.OBS_CONDITION,
    group_key=schema.OBS_CLUSTER,
    meta_method="tippett",
    min_cells=3,
    **kwargs,
):
    """Markers of a group that hold in every condition

    The two populations are tested independently within each condition; genes
    tested in all conditions are kept and their p-values combined with
    scipy's ``combine_pvalues`` (Tippett = minimum p by default). The maximum
    per-condition p-value is reported as the conservative criterion.

    Args:
        adata: AnnData object with clusters and a condition column
        ident_1: Group label of the first population
        ident_2: Group label(s) of the second population (None = all other cells)
        grouping_key: obs column holding the condition
        group_key: obs column holding the group labels
        meta_method: Combination rule passed to scipy
        min_cells: Conditions where either population has fewer cells are skipped
        **kwargs: Passed to find_markers

    Returns:
        DataFrame indexed by gene with per-condition columns, max_pval and
        combined_pval
    """
    if grouping_key not in adata.obs:
        raise KeyError(f"Grouping key '{grouping_key}' not found in adata.obs")

    conditions = adata.obs[grouping_key]
    levels = conditions.cat.categories if hasattr(conditions, "cat") else sorted(conditions.unique())
    labels = adata.obs[group_key].astype(str)

    print(f"Finding markers of {ident_1} conserved across {grouping_key}...")
    tables = {}
    for level in levels:
        in_level = (conditions == level).to_numpy()
        level_labels = labels[in_level]
        n_1 = int((level_labels == str(ident_1)).sum())
        if ident_2 is None:
            n_2 = int((level_labels != str(ident_1)).sum())
        else:
            idents_2 = [ident_2] if isinstance(ident_2, (str, int)) else list(ident_2)
            n_2 = int(level_labels.isin([str(i) for i in idents_2]).sum())
        if n_1 < min_cells or n_2 < min_cells:
            print(f"  Skipping {level}: {n_1} cells in {ident_1}, {n_2} in comparison group")
            continue

        markers = find_markers(adata[in_level], ident_1, ident_2, group_key=group_key, **kwargs)
        tables[str(level)] = markers.add_prefix(f"{level}_")

    if not tables:
        raise ConfigurationError(
            f"Group '{ident_1}' has too few cells in every condition",
            identifiers=[str(ident_1)],
        )

    combined = pd.concat(tables.values(), axis=1, join="inner")
    p_cols = [f"{level}_p_val" for level in tables]
    p_matrix = combined[p_cols].to_numpy(dtype=float)

    combined["max_pval"] = p_matrix.max(axis=1) if len(combined) else []
    if len(p_cols) == 1:
        combined["combined_pval"] = p_matrix[:, 0]
    else:
        clipped = np.clip(p_matrix, np.finfo(float).tiny, 1 - np.finfo(float).eps)
        combined["combined_pval"] = [
            stats.combine_pvalues(row, method=meta_method)[1] for row in clipped
        ]

    combined.index.name = "gene"
    return combined.sort_values(["combined_pval", "max_pval"], kind="mergesort")


def find_all_conserved_markers(
    adata,
    group_key=schema.OBS_CLUSTER,
    grouping_key=schema.OBS_CONDITION,
    min_cells=3,
    **kwargs,
):
    """Conserved one-vs-rest markers for every group

    Groups that reach ``min_cells`` against the rest in no condition at all
    are left out.

    Returns:
        DataFrame with one row per (cluster, gene) and cluster/gene columns
    """
    if group_key not in adata.obs:
        raise KeyError(f"Groupby key '{group_key}' not found in adata.obs")
    if grouping_key not in adata.obs:
        raise KeyError(f"Grouping key '{grouping_key}' not found in adata.obs")

    column = adata.obs[group_key]
    labels = column.astype(str)
    groups = column.cat.categories if hasattr(column, "cat") else sorted(labels.unique())
    in_group = pd.crosstab(labels, adata.obs[grouping_key])
    per_condition = in_group.sum(axis=0)

    tables = []
    for group in groups:
        group = str(group)
        if group not in in_group.index:
            continue
        testable = (in_group.loc[group] >= min_cells) & (per_condition - in_group.loc[group] >= min_cells)
        if not testable.any():
            print(f"  Skipping {group}: too few cells in every {grouping_key}")
            continue
        markers = find_conserved_markers(
            adata, group, grouping_key=grouping_key, group_key=group_key, min_cells=min_cells, **kwargs
        )
        if markers.empty:
            continue
        markers = markers.reset_index()
        markers.insert(0, "cluster", group)
        tables.append(markers)

    if not tables:
        return pd.DataFrame(columns=["cluster", "gene", "max_pval", "combined_pval"])
    return pd.concat(tables, ignore_index=True)


def write_marker_table(markers, path):
    """Write a marker table as CSV with an explicit gene column

    Args:
        markers: Output of find_markers, find_all_markers or find_conserved_markers
        path: Destination file

    Returns:
        Path written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if "gene" not in markers.columns:
        markers = markers.rename_axis("gene").reset_index()
    markers.to_csv(path, index=False)
    print(f"  Saved: {path}")
    return path
