#!/usr/bin/env python3
"""
Stage checkpoints for the single-cell workflow
Each stage boundary is one stamped .h5ad file: ``{index:02d}_{stage}.h5ad``
"""

import json
import re
from pathlib import Path

import anndata

from scworkflow import __version__, schema
from scworkflow.errors import MalformedInputError

FORMAT_VERSION = 1

_NAME_PATTERN = re.compile(r"^(\d+)_([A-Za-z0-9_]+)\.h5ad$")


def checkpoint_path(directory, stage, index):
    return Path(directory) / f"{int(index):02d}_{stage}.h5ad"


def write_checkpoint(adata, directory, stage, index, config=None):
    """Persist a container at a stage boundary

    Args:
        adata: AnnData object to save
        directory: Checkpoint directory (created if needed)
        stage: Name of the stage that produced the container
        index: Position of the stage in the pipeline
        config: PipelineConfig used for the run (stored as JSON)

    Returns:
        Path to the written file
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = checkpoint_path(directory, stage, index)

    # Stamp a copy so the caller's container is left as it was
    adata = adata.copy()
    adata.uns[schema.UNS_CHECKPOINT] = {
        "format_version": FORMAT_VERSION,
        "stage": str(stage),
        "index": int(index),
        "package_version": __version__,
        "config": json.dumps(config.to_dict() if config is not None else {}, sort_keys=True),
    }

    tmp_path = path.with_name(f"{path.stem}.tmp.h5ad")
    adata.write_h5ad(tmp_path)
    tmp_path.replace(path)
    print(f"  Saved checkpoint: {path}")
    return path


def read_checkpoint(path):
    """Load a checkpoint and verify its stamp

    Raises:
        MalformedInputError: missing file, unreadable file, missing stamp or
            unsupported format version
    """
    path = Path(path)
    if not path.exists():
        raise MalformedInputError("Checkpoint not found", identifiers=[str(path)])

    try:
        adata = anndata.read_h5ad(path)
    except (OSError, KeyError) as err:
        raise MalformedInputError(f"Unreadable checkpoint: {err}", identifiers=[str(path)]) from err

    stamp = adata.uns.get(schema.UNS_CHECKPOINT)
    if stamp is None or "format_version" not in stamp:
        raise MalformedInputError("File carries no checkpoint stamp", identifiers=[str(path)])
    version = int(stamp["format_version"])
    if version != FORMAT_VERSION:
        raise MalformedInputError(
            f"Unsupported checkpoint format version {version} (expected {FORMAT_VERSION})",
            identifiers=[str(path)],
        )
    return adata


def checkpoint_config(adata):
    """Configuration dictionary stored in a checkpoint stamp"""
    stamp = adata.uns.get(schema.UNS_CHECKPOINT, {})
    return json.loads(str(stamp.get("config", "{}")))


def list_checkpoints(directory):
    """All checkpoints in a directory as (index, stage, path), by index"""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    found = []
    for path in directory.iterdir():
        match = _NAME_PATTERN.match(path.name)
        if match:
            found.append((int(match.group(1)), match.group(2), path))
    return sorted(found)


def latest_checkpoint(directory):
    """Most advanced checkpoint as (index, stage, path), or None"""
    found = list_checkpoints(directory)
    return found[-1] if found else None
