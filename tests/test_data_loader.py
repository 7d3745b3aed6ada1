from pathlib import Path

import anndata
import h5py
import numpy as np
import pytest
from scipy import io, sparse

from scworkflow.data_loader import (
    create_container,
    read_10x_h5,
    read_10x_mtx,
    read_count_table,
    read_counts,
)
from scworkflow.errors import MalformedInputError


def _write_table(path: Path, header, rows):
    lines = ["\t".join(header)] + ["\t".join(str(v) for v in row) for row in rows]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def _small(counts, genes=None, cells=None):
    counts = np.asarray(counts, dtype=np.float32)
    adata = anndata.AnnData(sparse.csr_matrix(counts))
    adata.obs_names = cells or [f"c{i}" for i in range(counts.shape[0])]
    adata.var_names = genes or [f"g{i}" for i in range(counts.shape[1])]
    return adata


def test_count_table_is_transposed_to_cells_by_genes(tmp_path):
    path = _write_table(
        tmp_path / "counts.tsv",
        ["gene", "AAAC", "AAAG", "AAAT"],
        [["CD3E", 1, 0, 5], ["MS4A1", 0, 2, 0]],
    )
    adata = read_count_table(path)
    assert adata.shape == (3, 2)
    assert list(adata.obs_names) == ["AAAC", "AAAG", "AAAT"]
    assert list(adata.var_names) == ["CD3E", "MS4A1"]
    assert adata.X[2, 0] == 5
    assert (adata.layers["counts"] != adata.X).nnz == 0


def test_count_table_header_without_corner_label(tmp_path):
    path = _write_table(tmp_path / "counts.tsv", ["AAAC", "AAAG"], [["CD3E", 1, 0], ["MS4A1", 0, 2]])
    adata = read_count_table(path)
    assert list(adata.obs_names) == ["AAAC", "AAAG"]


def test_non_numeric_values_name_the_gene(tmp_path):
    path = _write_table(
        tmp_path / "counts.tsv", ["gene", "a", "b"], [["CD3E", 1, 0], ["MS4A1", "x", 2]]
    )
    with pytest.raises(MalformedInputError) as info:
        read_count_table(path)
    assert "MS4A1" in info.value.identifiers


def test_header_length_mismatch(tmp_path):
    path = _write_table(tmp_path / "counts.tsv", ["gene", "a", "b", "c", "d"], [["CD3E", 1, 0]])
    with pytest.raises(MalformedInputError, match="Header"):
        read_count_table(path)


def test_negative_counts_rejected(tmp_path):
    path = _write_table(tmp_path / "counts.tsv", ["gene", "a", "b"], [["CD3E", 1, -3]])
    with pytest.raises(MalformedInputError, match="Negative"):
        read_count_table(path)


def test_missing_input():
    with pytest.raises(MalformedInputError, match="not found"):
        read_counts("/nonexistent/counts.tsv")


def test_read_10x_h5(tmp_path):
    # genes x cells, CSC over cells
    dense = np.array([[1, 0, 3], [0, 2, 0]], dtype=np.float32)
    X = sparse.csc_matrix(dense)
    path = tmp_path / "sample.h5"
    with h5py.File(path, "w") as f:
        grp = f.create_group("matrix")
        grp.create_dataset("data", data=X.data)
        grp.create_dataset("indices", data=X.indices)
        grp.create_dataset("indptr", data=X.indptr)
        grp.create_dataset("shape", data=np.array(X.shape))
        grp.create_dataset("barcodes", data=np.array([b"AAAC", b"AAAG", b"AAAT"]))
        feats = grp.create_group("features")
        feats.create_dataset("name", data=np.array([b"CD3E", b"CD3E"]))
        feats.create_dataset("id", data=np.array([b"ENSG1", b"ENSG2"]))

    adata = read_counts(path)
    assert adata.shape == (3, 2)
    assert adata.var_names.is_unique
    assert list(adata.var["gene_ids"]) == ["ENSG1", "ENSG2"]
    np.testing.assert_array_equal(adata.X.toarray(), dense.T)


def test_read_10x_h5_without_matrix_group(tmp_path):
    path = tmp_path / "empty.h5"
    with h5py.File(path, "w") as f:
        f.create_group("other")
    with pytest.raises(MalformedInputError, match="matrix"):
        read_10x_h5(path)


def test_read_10x_mtx_directory(tmp_path):
    dense = np.array([[1, 0, 3, 0], [0, 2, 0, 1]], dtype=np.float32)
    io.mmwrite(str(tmp_path / "matrix.mtx"), sparse.coo_matrix(dense))
    (tmp_path / "genes.tsv").write_text("ENSG1\tCD3E\nENSG2\tMS4A1\n", encoding="utf-8")
    (tmp_path / "barcodes.tsv").write_text("A-1\nB-1\nC-1\nD-1\n", encoding="utf-8")

    adata = read_counts(tmp_path)
    assert adata.shape == (4, 2)
    assert list(adata.var_names) == ["CD3E", "MS4A1"]
    np.testing.assert_array_equal(adata.X.toarray(), dense.T)


def test_read_10x_mtx_incomplete_directory(tmp_path):
    (tmp_path / "barcodes.tsv").write_text("A-1\n", encoding="utf-8")
    with pytest.raises(MalformedInputError, match="Expected matrix"):
        read_10x_mtx(tmp_path)


def test_container_filters_genes_then_cells():
    counts = [
        [1, 1, 0, 0],
        [1, 1, 1, 0],
        [0, 0, 0, 5],
    ]
    adata = create_container(_small(counts), min_cells=2, min_features=2)
    # g2 and g3 are detected in fewer than 2 cells, which leaves c2 empty
    assert list(adata.var_names) == ["g0", "g1"]
    assert list(adata.obs_names) == ["c0", "c1"]


def test_container_from_conditions_prefixes_and_labels():
    ctrl = _small([[1, 2], [3, 0]], genes=["A", "B"], cells=["x", "y"])
    stim = _small([[0, 4], [1, 1]], genes=["B", "A"], cells=["x", "y"])
    before = ctrl.X.toarray().copy()

    adata = create_container([(ctrl, "CTRL"), (stim, "STIM")], min_cells=0, min_features=0)
    assert list(adata.obs_names) == ["CTRL_x", "CTRL_y", "STIM_x", "STIM_y"]
    assert list(adata.obs["condition"].cat.categories) == ["CTRL", "STIM"]
    assert adata.obs["condition"].tolist() == ["CTRL", "CTRL", "STIM", "STIM"]
    assert adata["STIM_x", "B"].X.toarray()[0, 0] == 0
    assert adata["STIM_x", "A"].X.toarray()[0, 0] == 4
    assert "counts" in adata.layers
    # Inputs are left untouched
    np.testing.assert_array_equal(ctrl.X.toarray(), before)
    assert list(ctrl.obs_names) == ["x", "y"]


def test_container_rejects_duplicate_labels():
    a = _small([[1, 2]])
    with pytest.raises(MalformedInputError, match="unique"):
        create_container([(a, "S1"), (a.copy(), "S1")])


def test_container_rejects_duplicate_cells():
    a = _small([[1, 2], [3, 4]], cells=["x", "x"])
    with pytest.raises(MalformedInputError, match="Duplicate cell"):
        create_container(a, min_cells=0, min_features=0)
