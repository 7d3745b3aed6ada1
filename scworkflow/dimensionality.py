#!/usr/bin/env python3
"""
Linear dimensionality reduction for single-cell RNA-seq analysis
Handles PCA, the permutation (JackStraw) significance test and the elbow
heuristic used to decide how many components go downstream
"""

import numpy as np
import scanpy as sc
from scipy import sparse
from scipy.stats import binomtest

from scworkflow import schema
from scworkflow.errors import MalformedInputError


def _dense(X):
    return X.toarray() if sparse.issparse(X) else np.asarray(X)


def run_pca(adata, n_components=50, random_state=0):
    """Compute the top principal components of the scaled features

    Args:
        adata: Scaled AnnData object
        n_components: Number of components (clamped to the data size)
        random_state: Seed for the ARPACK start vector

    Returns:
        AnnData object with X_pca, loadings in varm["PCs"] and the explained
        variance ratio (descending) in uns["pca"]
    """
    print("Running PCA...")

    limit = min(adata.n_obs, adata.n_vars) - 1
    if limit < 1:
        raise MalformedInputError(
            f"Cannot compute PCA on a {adata.n_obs} x {adata.n_vars} matrix"
        )
    n_comps = min(int(n_components), limit)
    if n_comps < n_components:
        print(f"  Using {n_comps} components (data has {adata.n_obs} x {adata.n_vars})")

    sc.tl.pca(
        adata,
        n_comps=n_comps,
        svd_solver="arpack",
        random_state=int(random_state),
        mask_var=None,
    )

    ratio = adata.uns["pca"]["variance_ratio"]
    print(f"  PC1-{min(5, n_comps)} explain {ratio[:5].sum() * 100:.1f}% of variance")
    return adata


def _projection(X, embedding):
    """Project centered gene vectors onto unit-length cell-side components"""
    norms = np.linalg.norm(embedding, axis=0)
    norms[norms == 0] = 1.0
    return X.T @ (embedding / norms)


def jackstraw(adata, n_components=20, n_replicates=100, prop_freq=0.01, random_state=0):
    """Permutation resampling test for gene loadings

    Each replicate permutes a random ``prop_freq`` fraction of the features
    (at least 3) independently across cells, recomputes the components and
    records the projections of the permuted genes as a null distribution. The
    empirical p-value of a gene on a component is the fraction of null
    projections at least as large (in absolute value) as the observed one.

    Replicate seeds are spawned from one seed sequence, so the replicate
    evaluation order does not change the result.

    Args:
        adata: AnnData object after run_pca (X holds the scaled data)
        n_components: Number of leading components to test
        n_replicates: Number of permutation replicates
        prop_freq: Fraction of features permuted per replicate
        random_state: Seed

    Returns:
        AnnData object with varm["jackstraw_pvalues"] (genes x components)
    """
    if schema.OBSM_PCA not in adata.obsm:
        raise MalformedInputError("Run PCA before the permutation test", identifiers=["X_pca"])

    print(f"Running permutation test ({n_replicates} replicates)...")

    X = _dense(adata.X).astype(np.float64)
    means = X.mean(axis=0)
    n_vars = X.shape[1]
    n_comps = min(int(n_components), adata.obsm[schema.OBSM_PCA].shape[1])
    n_rand = min(n_vars, max(3, int(round(prop_freq * n_vars))))

    observed = np.abs(_projection(X - means, adata.obsm[schema.OBSM_PCA][:, :n_comps]))

    null = []
    for child in np.random.SeedSequence(int(random_state)).spawn(int(n_replicates)):
        rng = np.random.default_rng(child)
        genes = np.sort(rng.choice(n_vars, size=n_rand, replace=False))
        X_mod = X.copy()
        for g in genes:
            X_mod[:, g] = rng.permutation(X_mod[:, g])

        embedding = sc.pp.pca(
            X_mod,
            n_comps=n_comps,
            svd_solver="arpack",
            random_state=int(rng.integers(2**31 - 1)),
        )
        null.append(np.abs(_projection(X_mod[:, genes] - means[genes], embedding)))

    null = np.vstack(null)
    n_null = null.shape[0]

    pvalues = np.empty_like(observed)
    for k in range(n_comps):
        sorted_null = np.sort(null[:, k])
        n_ge = n_null - np.searchsorted(sorted_null, observed[:, k], side="left")
        pvalues[:, k] = n_ge / n_null

    adata.varm["jackstraw_pvalues"] = pvalues
    adata.uns[schema.UNS_JACKSTRAW] = {
        "n_replicates": int(n_replicates),
        "prop_freq": float(prop_freq),
        "n_null": int(n_null),
    }
    return adata


def score_jackstraw(adata, score_threshold=1e-5, alpha=0.05):
    """Score each component by its excess of low empirical p-values

    Under the null, an empirical p-value from ``n_null`` permuted values is at
    most ``t`` with probability ``(floor(t * n_null) + 1) / (n_null + 1)``; a
    one-sided binomial test compares the observed count of genes with
    ``p <= t`` to that rate.

    Args:
        adata: AnnData object after jackstraw
        score_threshold: Per-gene p-value threshold
        alpha: Component significance level

    Returns:
        Number of leading components that are significant
    """
    if "jackstraw_pvalues" not in adata.varm:
        raise MalformedInputError(
            "Run the permutation test first", identifiers=["jackstraw_pvalues"]
        )

    pvalues = np.asarray(adata.varm["jackstraw_pvalues"])
    n_null = int(adata.uns[schema.UNS_JACKSTRAW]["n_null"])
    n_genes = pvalues.shape[0]
    p_null = min(1.0, (np.floor(score_threshold * n_null) + 1) / (n_null + 1))

    scores = np.array(
        [
            binomtest(int((pvalues[:, k] <= score_threshold).sum()), n_genes, p_null, alternative="greater").pvalue
            for k in range(pvalues.shape[1])
        ]
    )
    significant = scores < alpha

    # Leading run of significant components
    n_significant = int(np.argmin(significant)) if not significant.all() else len(significant)

    adata.uns[schema.UNS_JACKSTRAW]["pc_scores"] = scores
    schema.set_annotation(adata, "n_significant_pcs", n_significant)
    print(f"  {n_significant} leading significant components (alpha={alpha})")
    return n_significant


def elbow_components(variance_ratio):
    """Variance-explained heuristic for the number of informative components

    Takes the smaller of (a) the first component where the cumulative share
    exceeds 90% while the component itself explains less than 5%, and (b) the
    last component after which the share drops by more than 0.1 percentage
    points.

    Args:
        variance_ratio: Explained variance ratio per component, descending

    Returns:
        Number of components
    """
    ratio = np.asarray(variance_ratio, dtype=float)
    if ratio.size == 0:
        return 0
    pct = ratio / ratio.sum() * 100
    cumulative = np.cumsum(pct)

    candidates = []
    first = np.where((cumulative > 90) & (pct < 5))[0]
    if first.size:
        candidates.append(int(first[0]) + 1)
    drops = np.where(pct[:-1] - pct[1:] > 0.1)[0]
    if drops.size:
        candidates.append(int(drops[-1]) + 2)

    return min(candidates) if candidates else len(ratio)


def choose_n_pcs(adata, n_pcs_use=None):
    """Decide how many leading components feed the graph and embedding

    Order of precedence: explicit ``n_pcs_use``, the permutation test when it
    found significant components, then the elbow heuristic.

    Returns:
        Number of components (at least 2 when available)
    """
    n_available = adata.obsm[schema.OBSM_PCA].shape[1]
    if n_pcs_use is not None:
        chosen, source = int(n_pcs_use), "configured"
    elif schema.get_annotation(adata, "n_significant_pcs", 0) > 0:
        chosen, source = schema.get_annotation(adata, "n_significant_pcs"), "permutation test"
    else:
        chosen = elbow_components(adata.uns["pca"]["variance_ratio"])
        source = "elbow heuristic"

    chosen = min(max(chosen, 2), n_available)
    schema.set_annotation(adata, "n_pcs_used", chosen)
    print(f"Using {chosen} components ({source})")
    return chosen
