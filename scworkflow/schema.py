#!/usr/bin/env python3
"""
Canonical AnnData keys used by the workflow

Stages read and write the container only through these names. Free-form
per-run values (chosen resolution, number of significant PCs, ...) go into a
typed sidecar in ``.uns`` instead of ad hoc columns.
"""

import numbers

from scworkflow.errors import MalformedInputError

# .obs
OBS_CONDITION = "condition"
OBS_N_FEATURES = "n_genes_by_counts"
OBS_TOTAL_COUNTS = "total_counts"
OBS_PERCENT_MT = "percent_mt"
OBS_CLUSTER = "cluster"
OBS_CELLTYPE = "celltype"

# .layers
LAYER_COUNTS = "counts"

# .obsm / .varm / .obsp
OBSM_PCA = "X_pca"
OBSM_UMAP = "X_umap"
VARM_LOADINGS = "PCs"
OBSP_SNN = "snn"

# .uns
UNS_ANNOTATIONS = "annotations"
UNS_CHECKPOINT = "checkpoint"
UNS_JACKSTRAW = "jackstraw"
UNS_INTEGRATION = "integration"

_SIDECAR_TYPES = (str, bool, numbers.Integral, numbers.Real)


def set_annotation(adata, key, value):
    """Write a typed value into the metadata sidecar

    Args:
        adata: AnnData object
        key: String key
        value: str, bool, int or float

    Returns:
        The stored value (numpy scalars converted to Python scalars)
    """
    if not isinstance(key, str) or not key:
        raise MalformedInputError("Annotation keys must be non-empty strings", identifiers=[key])
    if value is None or not isinstance(value, _SIDECAR_TYPES):
        raise MalformedInputError(
            f"Unsupported annotation value type {type(value).__name__}",
            identifiers=[key],
        )

    if isinstance(value, bool):
        value = bool(value)
    elif isinstance(value, numbers.Integral):
        value = int(value)
    elif isinstance(value, numbers.Real):
        value = float(value)

    sidecar = dict(adata.uns.get(UNS_ANNOTATIONS, {}))
    sidecar[key] = value
    adata.uns[UNS_ANNOTATIONS] = sidecar
    return value


def get_annotation(adata, key, default=None):
    """Read a value from the metadata sidecar"""
    value = adata.uns.get(UNS_ANNOTATIONS, {}).get(key, default)
    # h5ad round trips scalars as numpy types
    if hasattr(value, "item"):
        value = value.item()
    return value


def check_container(adata):
    """Verify the structural invariants of a container

    Checks unique cell and gene identifiers and that every layer matches X.

    Raises:
        MalformedInputError: on the first violated invariant
    """
    if not adata.obs_names.is_unique:
        dupes = adata.obs_names[adata.obs_names.duplicated()].unique()
        raise MalformedInputError("Duplicate cell identifiers", identifiers=list(dupes))
    if not adata.var_names.is_unique:
        dupes = adata.var_names[adata.var_names.duplicated()].unique()
        raise MalformedInputError("Duplicate gene identifiers", identifiers=list(dupes))
    for name, layer in adata.layers.items():
        if layer.shape != adata.shape:
            raise MalformedInputError(
                f"Layer shape {layer.shape} does not match container {adata.shape}",
                identifiers=[name],
            )
    return True
