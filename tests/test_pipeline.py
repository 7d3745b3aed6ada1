import numpy as np
import pytest
from scipy import sparse

from conftest import small_config, toy_counts
from scworkflow import schema
from scworkflow.checkpoint import list_checkpoints
from scworkflow.config import QCBounds
from scworkflow.data_loader import create_container
from scworkflow.errors import ConfigurationError, InsufficientAnchorsError
from scworkflow.pipeline import build_stages, run_pipeline

SINGLE_STAGES = [
    "qc",
    "normalize",
    "variable_features",
    "scale",
    "pca",
    "neighbors",
    "cluster",
    "umap",
    "markers",
    "annotate",
]


def _container(n_cells=150, seed=0):
    adata = toy_counts(n_cells=n_cells, seed=seed)
    parts = [(adata[(adata.obs["condition"] == c).to_numpy()].copy(), c) for c in ("CTRL", "STIM")]
    return create_container(parts, min_cells=1, min_features=10)


def test_stage_plan_and_fork():
    assert [s.name for s in build_stages(small_config(), 1)] == SINGLE_STAGES

    integrated = [s.name for s in build_stages(small_config(integrate=True), 2)]
    assert integrated[:4] == ["qc", "normalize", "integrate", "scale"]
    assert "variable_features" not in integrated

    # A single condition never forks
    assert [s.name for s in build_stages(small_config(integrate=True), 1)] == SINGLE_STAGES


def test_full_run(tmp_path):
    adata = _container()
    config = small_config(cluster_names={"0": "Dominant"})
    result = run_pipeline(adata, config, checkpoint_dir=tmp_path)

    assert result.completed_stages == SINGLE_STAGES
    assert result.resumed_from is None
    final = result.adata
    assert final.obs["cluster"].notna().all()
    assert "X_umap" in final.obsm
    assert set(final.obs.loc[final.obs["cluster"] == "0", "celltype"]) == {"Dominant"}
    assert {"cluster", "gene", "p_val", "avg_log2FC", "pct_1", "pct_2"} <= set(result.markers.columns)
    assert schema.get_annotation(final, "last_stage") == "annotate"
    assert len(list_checkpoints(tmp_path)) == len(SINGLE_STAGES)
    # The input container is left as it was
    assert "cluster" not in adata.obs
    assert adata.raw is None


def test_config_is_validated_before_any_stage(tmp_path):
    with pytest.raises(ConfigurationError):
        run_pipeline(_container(n_cells=30), small_config(knn_k=0), checkpoint_dir=tmp_path)
    assert list_checkpoints(tmp_path) == []


def test_stop_after_and_resume_match_a_straight_run(tmp_path):
    config = small_config()
    straight = run_pipeline(_container(), config)

    partial = run_pipeline(_container(), config, checkpoint_dir=tmp_path, stop_after="pca")
    assert partial.completed_stages == SINGLE_STAGES[:5]
    assert partial.markers is None

    resumed = run_pipeline(_container(), config, checkpoint_dir=tmp_path, resume=True)
    assert resumed.resumed_from == "pca"
    assert resumed.completed_stages == SINGLE_STAGES
    assert resumed.adata.obs["cluster"].tolist() == straight.adata.obs["cluster"].tolist()
    np.testing.assert_allclose(
        resumed.markers["p_val"].to_numpy(), straight.markers["p_val"].to_numpy()
    )


def test_resume_skips_unreadable_checkpoint(tmp_path):
    config = small_config()
    run_pipeline(_container(), config, checkpoint_dir=tmp_path, stop_after="scale")
    (tmp_path / "04_scale.h5ad").write_bytes(b"truncated")

    resumed = run_pipeline(_container(), config, checkpoint_dir=tmp_path, resume=True, stop_after="pca")
    assert resumed.resumed_from == "variable_features"
    assert resumed.completed_stages == SINGLE_STAGES[:5]


def test_resume_needs_checkpoint_dir():
    with pytest.raises(ConfigurationError):
        run_pipeline(_container(n_cells=30), small_config(), resume=True)


def test_unknown_stop_after():
    with pytest.raises(ConfigurationError):
        run_pipeline(_container(n_cells=30), small_config(), stop_after="export")


def test_stage_errors_carry_stage_name():
    # No dataset pair can reach this many anchors
    config = small_config(min_anchors=10**6, integrate=True)
    with pytest.raises(InsufficientAnchorsError) as info:
        run_pipeline(_container(), config)
    assert info.value.stage == "integrate"
    assert str(info.value).startswith("[integrate]")


def test_integrated_run(tmp_path):
    config = small_config(integrate=True)
    result = run_pipeline(_container(), config)
    final = result.adata

    assert "integrate" in result.completed_stages
    assert list(final.obs["condition"].cat.categories) == ["CTRL", "STIM"]
    assert final.raw is not None and final.raw.n_vars > final.n_vars
    assert schema.get_annotation(final, "n_anchors") > 0
    # QC metadata survives the integration step
    assert schema.get_annotation(final, "qc_cells_removed") is not None
    assert result.markers is not None


def test_markers_stage_reports_conserved_markers():
    config = small_config(conserved_meta_method="fisher")
    result = run_pipeline(_container(), config)
    conserved = result.conserved_markers

    assert conserved is not None and not conserved.empty
    assert {"cluster", "gene", "CTRL_p_val", "STIM_p_val", "max_pval", "combined_pval"} <= set(conserved.columns)
    assert set(conserved["cluster"]) <= set(result.adata.obs["cluster"].astype(str))
    assert (conserved["max_pval"] >= conserved[["CTRL_p_val", "STIM_p_val"]].max(axis=1) - 1e-12).all()
    assert result.adata.uns["conserved_markers"] is conserved


def test_single_condition_has_no_conserved_markers():
    adata = toy_counts(n_cells=120)
    container = create_container([(adata, "CTRL")], min_cells=1, min_features=10)
    result = run_pipeline(container, small_config())
    assert result.markers is not None
    assert result.conserved_markers is None


def test_integration_falls_back_when_qc_empties_a_condition():
    adata = toy_counts(n_cells=150)
    counts = adata.X.toarray()
    stim = (adata.obs["condition"] == "STIM").to_numpy()
    # Mitochondrial reads dominate every STIM cell
    counts[np.ix_(stim, np.arange(5))] += 400
    adata.X = sparse.csr_matrix(counts)
    adata.layers["counts"] = adata.X.copy()
    parts = [(adata[(adata.obs["condition"] == c).to_numpy()].copy(), c) for c in ("CTRL", "STIM")]
    container = create_container(parts, min_cells=1, min_features=10)

    bounds = QCBounds(min_features=10, max_features=None, max_mito_pct=20.0)
    result = run_pipeline(container, small_config(integrate=True, qc_bounds=bounds))

    assert result.completed_stages[:4] == ["qc", "normalize", "integrate", "scale"]
    final = result.adata
    assert schema.get_annotation(final, "integrated") is False
    assert set(final.obs["condition"].astype(str)) == {"CTRL"}
    assert final.raw is not None and final.raw.n_vars > final.n_vars
    assert final.obs["cluster"].notna().all()
    assert result.conserved_markers is None
