#!/usr/bin/env python3
"""
Diagnostic plots for the single-cell workflow
QC violins, the PCA elbow and embedding views, saved as PNG
"""

from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc
import seaborn as sns

from scworkflow import schema
from scworkflow.dimensionality import elbow_components


def _finish(fig, save_dir, filename):
    """Save and close a figure, or show it when no directory is given"""
    if save_dir:
        save_dir = Path(save_dir)
        save_dir.mkdir(parents=True, exist_ok=True)
        path = save_dir / filename
        fig.savefig(path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {path}")
        plt.close(fig)
        return path
    plt.show()
    return None


def plot_qc_violin(adata, bounds=None, condition_key=schema.OBS_CONDITION, save_dir=None):
    """Violin plots of the per-cell QC metrics, split by condition

    Args:
        adata: AnnData object with QC metrics
        bounds: QCBounds drawn as dashed threshold lines (optional)
        condition_key: obs column used on the x axis
        save_dir: Directory to save plots (optional)
    """
    print("Creating QC violin plots...")

    metrics = [
        (schema.OBS_N_FEATURES, "Genes per cell", "min_features", "max_features"),
        (schema.OBS_TOTAL_COUNTS, "Total counts per cell", "min_counts", "max_counts"),
        (schema.OBS_PERCENT_MT, "Mitochondrial %", None, "max_mito_pct"),
    ]
    qc_data = pd.DataFrame({metric: adata.obs[metric] for metric, _, _, _ in metrics})
    qc_data[condition_key] = (
        adata.obs[condition_key].astype(str) if condition_key in adata.obs else "all"
    )

    fig, axes = plt.subplots(1, len(metrics), figsize=(5 * len(metrics), 5))
    for ax, (metric, title, low, high) in zip(axes, metrics):
        sns.violinplot(data=qc_data, x=condition_key, y=metric, ax=ax, color="skyblue", inner="box")
        ax.set_title(title)
        ax.set_xlabel("")
        ax.set_ylabel(title)

        for attr in (low, high):
            value = getattr(bounds, attr) if bounds is not None and attr else None
            if value is not None:
                ax.axhline(y=value, color="red", linestyle="--", alpha=0.5)

    plt.tight_layout()
    return _finish(fig, save_dir, "qc_violin.png")


def plot_elbow(adata, save_dir=None):
    """Explained variance per component with the elbow choice marked"""
    ratio = np.asarray(adata.uns["pca"]["variance_ratio"], dtype=float)
    n_elbow = elbow_components(ratio)
    n_used = schema.get_annotation(adata, "n_pcs_used")

    fig, ax = plt.subplots(figsize=(6, 4))
    components = np.arange(1, len(ratio) + 1)
    ax.plot(components, ratio * 100, "o-", color="steelblue", markersize=4)
    ax.axvline(n_elbow, color="red", linestyle="--", alpha=0.6, label=f"elbow = {n_elbow}")
    if n_used is not None and n_used != n_elbow:
        ax.axvline(n_used, color="grey", linestyle=":", label=f"used = {n_used}")
    ax.set_xlabel("Component")
    ax.set_ylabel("Variance explained (%)")
    ax.set_title("PCA elbow")
    ax.legend()

    plt.tight_layout()
    return _finish(fig, save_dir, "pca_elbow.png")


def plot_embedding(adata, color=(schema.OBS_CLUSTER, schema.OBS_CONDITION), save_dir=None):
    """UMAP colored by clusters and condition (or any obs columns given)"""
    print("Plotting embeddings...")

    color = [c for c in color if c in adata.obs]
    if not color:
        color = [None]

    fig, axes = plt.subplots(1, len(color), figsize=(6 * len(color), 5), squeeze=False)
    for ax, key in zip(axes[0], color):
        sc.pl.umap(
            adata,
            color=key,
            legend_loc="on data" if key == schema.OBS_CLUSTER else "right margin",
            title=key or "UMAP",
            ax=ax,
            show=False,
        )

    plt.tight_layout()
    return _finish(fig, save_dir, "umap_embedding.png")
