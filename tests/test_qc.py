import anndata
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from conftest import toy_counts
from scworkflow import schema
from scworkflow.config import QCBounds
from scworkflow.qc_utils import calculate_qc_metrics, filter_cells, qc_pass_mask, qc_summary


def _three_by_four():
    # Genes x cells as written in a count table, then transposed
    genes_by_cells = np.array(
        [
            [3, 2, 0, 0],
            [1, 4, 0, 7],
            [0, 1, 2, 0],
        ],
        dtype=np.float32,
    )
    adata = anndata.AnnData(sparse.csr_matrix(genes_by_cells.T))
    adata.obs_names = ["cell1", "cell2", "cell3", "cell4"]
    adata.var_names = ["GeneA", "GeneB", "GeneC"]
    adata.layers["counts"] = adata.X.copy()
    return adata


def test_small_example_keeps_first_two_cells():
    # Default lower bounds admit a cell sitting exactly on the minimum
    bounds = QCBounds(min_features=2, max_features=None, max_mito_pct=None)
    filtered = filter_cells(_three_by_four(), bounds)
    assert list(filtered.obs_names) == ["cell1", "cell2"]
    assert schema.get_annotation(filtered, "qc_cells_removed") == 2


def test_metrics_columns():
    adata = calculate_qc_metrics(toy_counts(n_cells=30), mito_prefix="MT-")
    for column in ("n_genes_by_counts", "total_counts", "percent_mt"):
        assert column in adata.obs
    assert "pct_counts_mt" not in adata.obs
    assert adata.obs["percent_mt"].between(0, 100).all()
    assert schema.get_annotation(adata, "n_mito_genes") == 5

    counts = adata.layers["counts"].toarray()
    np.testing.assert_allclose(adata.obs["total_counts"], counts.sum(axis=1), rtol=1e-5)
    np.testing.assert_array_equal(adata.obs["n_genes_by_counts"], (counts > 0).sum(axis=1))


def test_retained_cells_satisfy_bounds_and_removed_cells_violate_one():
    adata = calculate_qc_metrics(toy_counts(n_cells=120, seed=4))
    obs = adata.obs
    bounds = QCBounds(
        min_features=float(obs["n_genes_by_counts"].quantile(0.2)),
        max_features=float(obs["n_genes_by_counts"].quantile(0.9)),
        max_mito_pct=float(obs["percent_mt"].quantile(0.8)),
    )
    keep = qc_pass_mask(adata, bounds)
    assert 0 < keep.sum() < adata.n_obs

    kept, removed = obs[keep], obs[~keep]
    assert (kept["n_genes_by_counts"] > bounds.min_features).all()
    assert (kept["n_genes_by_counts"] < bounds.max_features).all()
    assert (kept["percent_mt"] < bounds.max_mito_pct).all()
    violates = (
        (removed["n_genes_by_counts"] <= bounds.min_features)
        | (removed["n_genes_by_counts"] >= bounds.max_features)
        | (removed["percent_mt"] >= bounds.max_mito_pct)
    )
    assert violates.all()


def test_refiltering_is_a_no_op():
    adata = toy_counts(n_cells=90, seed=2)
    bounds = QCBounds(min_features=120, max_features=None, max_mito_pct=None)
    once = filter_cells(adata, bounds)
    twice = filter_cells(once, bounds)
    assert list(twice.obs_names) == list(once.obs_names)
    assert schema.get_annotation(twice, "qc_cells_removed") == schema.get_annotation(
        once, "qc_cells_removed"
    )


def test_filter_keeps_relative_order():
    adata = toy_counts(n_cells=60, seed=5)
    filtered = filter_cells(adata, QCBounds(min_features=140, max_features=None, max_mito_pct=None))
    positions = [adata.obs_names.get_loc(c) for c in filtered.obs_names]
    assert positions == sorted(positions)


@pytest.mark.parametrize("min_inclusive, expected", [(True, 2), (False, 1)])
def test_lower_bound_flag_applies_to_boundary(min_inclusive, expected):
    adata = _three_by_four()
    bounds = QCBounds(min_features=2, max_features=None, max_mito_pct=None, min_inclusive=min_inclusive)
    calculate_qc_metrics(adata)
    # cell1 has exactly 2 genes, cell2 has 3
    assert int(qc_pass_mask(adata, bounds).sum()) == expected


@pytest.mark.parametrize("max_inclusive, expected", [(False, 1), (True, 2)])
def test_upper_bound_is_strict_by_default(max_inclusive, expected):
    adata = calculate_qc_metrics(_three_by_four())
    # cell1 (2 genes) passes the minimum and sits below 3; cell2 sits on it
    bounds = QCBounds(min_features=2, max_features=3, max_mito_pct=None, max_inclusive=max_inclusive)
    assert int(qc_pass_mask(adata, bounds).sum()) == expected


def test_summary_per_condition():
    adata = calculate_qc_metrics(toy_counts(n_cells=40))
    bounds = QCBounds(min_features=150, max_features=None, max_mito_pct=None)
    summary = qc_summary(adata, bounds)
    assert list(summary.index) == ["CTRL", "STIM"]
    assert summary["n_cells"].sum() == 40
    assert (summary["n_pass"] + summary["min_features"] >= summary["n_cells"]).all()
    assert isinstance(summary, pd.DataFrame)
