import numpy as np
import pytest
from scipy import sparse

from conftest import toy_counts
from scworkflow import schema
from scworkflow.errors import ConfigurationError, EmptyCellError, MalformedInputError
from scworkflow.processing import (
    find_variable_features,
    normalize_data,
    scale_data,
    variable_features,
)


def test_doubling_scale_factor_doubles_pre_log_values():
    adata = toy_counts(n_cells=40)
    once = normalize_data(adata.copy(), scale_factor=1e4)
    twice = normalize_data(adata.copy(), scale_factor=2e4)
    np.testing.assert_allclose(
        np.expm1(twice.X.toarray()), 2 * np.expm1(once.X.toarray()), rtol=1e-4, atol=1e-6
    )


def test_normalized_totals_match_scale_factor():
    adata = normalize_data(toy_counts(n_cells=20), scale_factor=5000)
    totals = np.expm1(adata.X.toarray()).sum(axis=1)
    np.testing.assert_allclose(totals, 5000, rtol=1e-3)
    assert schema.get_annotation(adata, "normalize_scale_factor") == 5000.0
    # Raw counts stay available
    assert adata.layers["counts"].max() > adata.X.max()


def test_zero_total_cell_is_rejected():
    adata = toy_counts(n_cells=10)
    X = adata.X.toarray()
    X[3] = 0
    adata.X = sparse.csr_matrix(X)
    with pytest.raises(EmptyCellError) as info:
        normalize_data(adata)
    assert info.value.identifiers == ("cell3",)


def test_non_positive_scale_factor():
    with pytest.raises(ConfigurationError):
        normalize_data(toy_counts(n_cells=10), scale_factor=0)


def test_variable_features_are_deterministic():
    adata = normalize_data(toy_counts(n_cells=80))
    first = find_variable_features(adata, n_features=50)
    second = find_variable_features(adata, n_features=50)
    assert first == second
    assert len(first) == 50
    assert variable_features(adata) == first
    assert int(adata.var["highly_variable"].sum()) == 50


def test_variable_features_favor_marker_genes():
    adata = normalize_data(toy_counts(n_cells=120))
    top = find_variable_features(adata, n_features=60)
    markers = {f"Gene{i}" for i in range(5, 65)}
    assert len(markers & set(top)) >= 45


def test_variable_features_need_counts_layer():
    adata = toy_counts(n_cells=20)
    del adata.layers["counts"]
    with pytest.raises(MalformedInputError):
        find_variable_features(adata)


def test_scale_restricts_to_features_and_freezes_raw():
    adata = normalize_data(toy_counts(n_cells=60))
    features = find_variable_features(adata, n_features=40)
    scaled = scale_data(adata, clip_max=10.0)

    assert list(scaled.var_names) == features
    assert scaled.raw is not None
    assert scaled.raw.n_vars == adata.n_vars
    np.testing.assert_allclose(scaled.X.mean(axis=0), 0, atol=1e-4)
    assert np.abs(scaled.X).max() <= 10.0


def test_scale_clips_values():
    adata = normalize_data(toy_counts(n_cells=60))
    find_variable_features(adata, n_features=40)
    scaled = scale_data(adata, clip_max=1.0)
    assert np.abs(scaled.X).max() <= 1.0


def test_scale_regresses_covariates():
    adata = normalize_data(toy_counts(n_cells=60))
    adata.obs["depth"] = np.asarray(adata.layers["counts"].sum(axis=1)).ravel()
    find_variable_features(adata, n_features=30)
    scaled = scale_data(adata, vars_to_regress=("depth",))
    assert scaled.shape == (60, 30)
    assert np.isfinite(scaled.X).all()


def test_scale_unknown_covariate():
    adata = normalize_data(toy_counts(n_cells=30))
    find_variable_features(adata, n_features=20)
    with pytest.raises(ConfigurationError):
        scale_data(adata, vars_to_regress=("batch_id",))
