import anndata
import numpy as np
import pytest

from scworkflow import schema
from scworkflow.errors import (
    ConfigurationError,
    EmptyCellError,
    InsufficientAnchorsError,
    MalformedInputError,
    ScWorkflowError,
)


def _empty(n_obs=3, n_vars=2):
    return anndata.AnnData(np.zeros((n_obs, n_vars), dtype=np.float32))


def test_sidecar_accepts_scalars_and_converts_numpy():
    adata = _empty()
    assert schema.set_annotation(adata, "n_pcs_used", np.int64(12)) == 12
    assert type(schema.get_annotation(adata, "n_pcs_used")) is int
    assert schema.set_annotation(adata, "resolution", np.float32(0.5)) == pytest.approx(0.5)
    schema.set_annotation(adata, "integrated", True)
    assert schema.get_annotation(adata, "integrated") is True
    assert schema.get_annotation(adata, "absent", "fallback") == "fallback"


@pytest.mark.parametrize("value", [None, [1, 2], {"a": 1}, np.arange(3)])
def test_sidecar_rejects_non_scalars(value):
    with pytest.raises(MalformedInputError):
        schema.set_annotation(_empty(), "key", value)


def test_sidecar_rejects_bad_keys():
    with pytest.raises(MalformedInputError):
        schema.set_annotation(_empty(), "", 1)


def test_container_check_catches_duplicate_cells():
    adata = _empty()
    assert schema.check_container(adata)
    adata.obs_names = ["a", "a", "b"]
    with pytest.raises(MalformedInputError) as info:
        schema.check_container(adata)
    assert info.value.identifiers == ("a",)


def test_error_taxonomy_and_message():
    for cls in (MalformedInputError, EmptyCellError, InsufficientAnchorsError, ConfigurationError):
        assert issubclass(cls, ScWorkflowError)

    err = EmptyCellError("zero totals", identifiers=[f"cell{i}" for i in range(12)])
    assert "cell0" in str(err)
    assert "12 total" in str(err)
    err.stage = "normalize"
    assert str(err).startswith("[normalize] zero totals")
