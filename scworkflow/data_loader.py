#!/usr/bin/env python3
"""
Data loading utilities for single-cell RNA-seq analysis
Handles text, 10x directory and 10x/CellBender H5 inputs and builds the
expression container from one or more conditions
"""

from pathlib import Path

import anndata
import h5py
import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse

from scworkflow import schema
from scworkflow.errors import MalformedInputError


def _to_container(X, cell_ids, gene_ids, source):
    """Wrap a cells x genes count matrix into an AnnData with a counts layer"""
    X = sparse.csr_matrix(X, dtype=np.float32)
    if X.shape != (len(cell_ids), len(gene_ids)):
        raise MalformedInputError(
            f"Matrix shape {X.shape} does not match {len(cell_ids)} cells "
            f"x {len(gene_ids)} genes in {source}"
        )

    adata = anndata.AnnData(X)
    adata.obs_names = [str(c) for c in cell_ids]
    adata.var_names = [str(g) for g in gene_ids]
    adata.layers[schema.LAYER_COUNTS] = adata.X.copy()
    schema.check_container(adata)
    return adata


def _validate_counts(adata, source):
    """Reject negative or non-finite counts"""
    values = adata.X.data if sparse.issparse(adata.X) else np.asarray(adata.X)
    if values.size and not np.all(np.isfinite(values)):
        raise MalformedInputError(f"Non-finite values in {source}")
    if values.size and values.min() < 0:
        raise MalformedInputError(f"Negative counts in {source}")


def read_count_table(file_path):
    """Load a gene-by-cell tab-separated count table

    The first column holds gene identifiers and the header row cell
    identifiers. The header may or may not carry a corner label.

    Args:
        file_path: Path to a .tsv/.txt file (optionally gzip compressed)

    Returns:
        AnnData object (cells x genes) with counts in X and layers["counts"]
    """
    file_path = Path(file_path)
    print(f"Loading {file_path}")

    try:
        header = pd.read_csv(file_path, sep="\t", header=None, nrows=1, dtype=str)
        body = pd.read_csv(file_path, sep="\t", header=None, skiprows=1, index_col=0)
    except pd.errors.EmptyDataError as exc:
        raise MalformedInputError(f"Empty count table: {file_path}") from exc
    except pd.errors.ParserError as exc:
        raise MalformedInputError(f"Ragged count table {file_path}: {exc}") from exc

    header = header.iloc[0].tolist()
    if body.shape[0] == 0 or body.shape[1] == 0:
        raise MalformedInputError(f"Count table has no genes or no cells: {file_path}")

    # Header with or without a corner label
    if len(header) == body.shape[1] + 1:
        cell_ids = header[1:]
    elif len(header) == body.shape[1]:
        cell_ids = header
    else:
        raise MalformedInputError(
            f"Header has {len(header)} fields but rows have {body.shape[1]} values "
            f"in {file_path}"
        )

    numeric = body.apply(pd.to_numeric, errors="coerce")
    bad = numeric.isna() & body.notna()
    if bad.any().any() or body.isna().any().any():
        genes = numeric.index[(bad | body.isna()).any(axis=1)].astype(str)
        raise MalformedInputError(
            f"Non-numeric or missing values in {file_path}", identifiers=list(genes)
        )

    gene_ids = [str(g) for g in numeric.index]
    adata = _to_container(numeric.to_numpy(dtype=np.float64).T, cell_ids, gene_ids, file_path)
    _validate_counts(adata, file_path)
    return adata


def read_10x_mtx(directory):
    """Load a 10x-style directory (matrix.mtx + features/genes + barcodes)

    Args:
        directory: Directory with the three files (v3 gzipped or legacy layout)

    Returns:
        AnnData object (cells x genes)
    """
    directory = Path(directory)
    print(f"Loading {directory}")

    has_matrix = any((directory / f).exists() for f in ("matrix.mtx", "matrix.mtx.gz"))
    has_genes = any(
        (directory / f).exists() for f in ("genes.tsv", "features.tsv.gz", "features.tsv")
    )
    has_barcodes = any(
        (directory / f).exists() for f in ("barcodes.tsv", "barcodes.tsv.gz")
    )
    if not (has_matrix and has_genes and has_barcodes):
        raise MalformedInputError(
            f"Expected matrix, gene list and barcode list in {directory}"
        )

    try:
        adata = sc.read_10x_mtx(directory, var_names="gene_symbols", cache=False)
    except (ValueError, IndexError, KeyError, OSError) as exc:
        raise MalformedInputError(f"Could not read 10x directory {directory}: {exc}") from exc

    # Make gene names unique
    adata.var_names_make_unique()
    adata = _to_container(adata.X, adata.obs_names, adata.var_names, directory)
    _validate_counts(adata, directory)
    return adata


def read_10x_h5(file_path):
    """Load a 10x or CellBender processed h5 file

    Args:
        file_path: Path to the H5 file

    Returns:
        AnnData object with loaded data
    """
    file_path = Path(file_path)
    print(f"Loading {file_path}")

    with h5py.File(file_path, "r") as f:
        if "matrix" not in f:
            raise MalformedInputError(f"No 'matrix' group in {file_path}")
        matrix = f["matrix"]
        try:
            data_vals = matrix["data"][:]
            indices_vals = matrix["indices"][:]
            indptr_vals = matrix["indptr"][:]
            shape_vals = tuple(int(s) for s in matrix["shape"][:])
            features = matrix["features"]
            gene_names = [x.decode("utf-8") for x in features["name"][:]]
            gene_ids = [x.decode("utf-8") for x in features["id"][:]]
            cell_barcodes = [x.decode("utf-8") for x in matrix["barcodes"][:]]
        except KeyError as exc:
            raise MalformedInputError(f"Incomplete matrix group in {file_path}: {exc}") from exc

    try:
        # Stored as genes x cells in CSC form
        X = sparse.csc_matrix((data_vals, indices_vals, indptr_vals), shape=shape_vals)
    except ValueError as exc:
        raise MalformedInputError(f"Inconsistent sparse matrix in {file_path}: {exc}") from exc

    if X.shape == (len(gene_names), len(cell_barcodes)):
        X = X.T
    elif X.shape != (len(cell_barcodes), len(gene_names)):
        raise MalformedInputError(
            f"Matrix shape {X.shape} matches neither {len(gene_names)} genes "
            f"nor {len(cell_barcodes)} barcodes in {file_path}"
        )

    # Make gene names unique
    names = pd.Index(gene_names)
    if not names.is_unique:
        names = pd.Index(anndata.utils.make_index_unique(names))

    adata = _to_container(X, cell_barcodes, names, file_path)
    adata.var["gene_ids"] = gene_ids
    _validate_counts(adata, file_path)
    return adata


def read_counts(path):
    """Read counts from any supported input, dispatching on the path"""
    path = Path(path)
    if not path.exists():
        raise MalformedInputError(f"Input not found: {path}")
    if path.is_dir():
        return read_10x_mtx(path)
    if path.suffix.lower() in (".h5", ".hdf5"):
        return read_10x_h5(path)
    return read_count_table(path)


def create_container(datasets, min_cells=3, min_features=200, condition_key=schema.OBS_CONDITION):
    """Build one expression container from one or more conditions

    Genes detected in fewer than ``min_cells`` cells are dropped first, then
    cells with fewer than ``min_features`` detected genes. Input objects are
    not modified.

    Args:
        datasets: List of (AnnData, condition label) pairs, or a single AnnData
        min_cells: Minimum cells in which a gene must be detected
        min_features: Minimum genes a cell must express
        condition_key: obs column receiving the condition label

    Returns:
        New AnnData object with a categorical condition column
    """
    if isinstance(datasets, anndata.AnnData):
        datasets = [(datasets, "sample")]
    datasets = list(datasets)
    if not datasets:
        raise MalformedInputError("No datasets given")

    labels = [str(label) for _, label in datasets]
    if len(set(labels)) != len(labels):
        raise MalformedInputError("Condition labels must be unique", identifiers=labels)

    print("Building expression container...")

    adatas = []
    for adata, label in datasets:
        schema.check_container(adata)
        _validate_counts(adata, f"condition '{label}'")

        adata = adata.copy()
        if schema.LAYER_COUNTS not in adata.layers:
            adata.layers[schema.LAYER_COUNTS] = adata.X.copy()
        adata.obs[condition_key] = str(label)

        # Add condition prefix to cell barcodes
        if len(datasets) > 1:
            adata.obs_names = [f"{label}_{barcode}" for barcode in adata.obs_names]
        adatas.append(adata)

    if len(adatas) == 1:
        merged = adatas[0]
    else:
        merged = anndata.concat(adatas, join="outer", fill_value=0, merge="same")
    merged.X = sparse.csr_matrix(merged.X, dtype=np.float32)
    merged.layers[schema.LAYER_COUNTS] = sparse.csr_matrix(
        merged.layers[schema.LAYER_COUNTS], dtype=np.float32
    )
    merged.obs[condition_key] = pd.Categorical(merged.obs[condition_key], categories=labels)
    schema.check_container(merged)

    n_cells, n_genes = merged.shape
    detected = merged.layers[schema.LAYER_COUNTS] > 0

    gene_mask = np.asarray(detected.sum(axis=0)).ravel() >= min_cells
    merged = merged[:, gene_mask].copy()
    detected = merged.layers[schema.LAYER_COUNTS] > 0
    cell_mask = np.asarray(detected.sum(axis=1)).ravel() >= min_features
    merged = merged[cell_mask].copy()

    print(
        f"Container: {merged.n_obs} cells x {merged.n_vars} genes "
        f"(from {n_cells} cells x {n_genes} genes)"
    )
    return merged
