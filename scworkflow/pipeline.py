#!/usr/bin/env python3
"""
Stage orchestration for the single-cell workflow

The workflow is a strict linear sequence of stages with one fork: when the
container holds several conditions and integration is enabled, variable
feature selection is replaced by anchor-based integration. Every stage gets a
copy of the previous container, and a checkpoint is written after each one so
an interrupted or failed run can resume from the last completed stage.
"""

from dataclasses import dataclass, field
from typing import Callable

from scworkflow import schema
from scworkflow.annotation import rename_clusters
from scworkflow.checkpoint import list_checkpoints, read_checkpoint, write_checkpoint
from scworkflow.clustering import choose_resolution, find_clusters, find_neighbors, run_umap
from scworkflow.config import PipelineConfig
from scworkflow.differential_expression import find_all_conserved_markers, find_all_markers
from scworkflow.dimensionality import choose_n_pcs, jackstraw, run_pca, score_jackstraw
from scworkflow.errors import ConfigurationError, MalformedInputError, ScWorkflowError
from scworkflow.integration import (
    find_integration_anchors,
    integrate_data,
    select_integration_features,
    split_by_condition,
)
from scworkflow.processing import (
    find_variable_features,
    normalize_data,
    scale_data,
    variable_features,
)
from scworkflow.qc_utils import filter_cells

UNS_MARKERS = "markers"
UNS_CONSERVED_MARKERS = "conserved_markers"


@dataclass
class Stage:
    name: str
    function: Callable


@dataclass
class PipelineResult:
    adata: object
    markers: object = None
    conserved_markers: object = None
    completed_stages: list = field(default_factory=list)
    resumed_from: str = None


def _qc(adata, config):
    return filter_cells(adata, config.qc_bounds, mito_prefix=config.mito_prefix)


def _normalize(adata, config):
    return normalize_data(adata, scale_factor=config.normalize_scale_factor)


def _variable_features(adata, config):
    find_variable_features(adata, n_features=config.n_variable_features)
    return adata


def _integrate(adata, config):
    parts = split_by_condition(adata, config.condition_key)
    if len(parts) < 2:
        # QC can empty a condition; fall back to the single-dataset branch
        print(f"Only {len(parts)} condition left after QC; skipping integration")
        schema.set_annotation(adata, "integrated", False)
        return _variable_features(adata, config)

    names = [label for label, _ in parts]
    datasets = [part for _, part in parts]

    features = select_integration_features(datasets, n_features=config.n_variable_features)
    anchors = find_integration_anchors(
        datasets,
        features,
        names=names,
        n_dims=config.integration_dims,
        k_anchor=config.k_anchor,
        k_filter=config.k_filter,
        k_score=config.k_score,
        min_anchors=config.min_anchors,
        random_state=config.random_seed,
    )
    integrated = integrate_data(
        datasets,
        anchors,
        features,
        names=names,
        condition_key=config.condition_key,
        k_weight=config.k_weight,
        n_dims=config.integration_dims,
        random_state=config.random_seed,
    )

    # Carry the run metadata over to the new container
    for key, value in adata.uns.get(schema.UNS_ANNOTATIONS, {}).items():
        if key not in integrated.uns.get(schema.UNS_ANNOTATIONS, {}):
            schema.set_annotation(integrated, key, value)
    schema.set_annotation(integrated, "integrated", True)
    return integrated


def _scale(adata, config):
    return scale_data(
        adata,
        features=variable_features(adata),
        vars_to_regress=tuple(config.vars_to_regress),
        clip_max=config.scale_clip_max,
    )


def _scale_integrated(adata, config):
    if not schema.get_annotation(adata, "integrated", False):
        return _scale(adata, config)
    return scale_data(
        adata,
        features=list(adata.var_names),
        vars_to_regress=tuple(config.vars_to_regress),
        clip_max=config.scale_clip_max,
        freeze_raw=False,
    )


def _pca(adata, config):
    adata = run_pca(adata, n_components=config.n_components, random_state=config.random_seed)
    if config.jackstraw_replicates > 0 and config.n_pcs_use is None:
        jackstraw(
            adata,
            n_components=config.n_components,
            n_replicates=config.jackstraw_replicates,
            prop_freq=config.jackstraw_prop,
            random_state=config.random_seed,
        )
        score_jackstraw(
            adata,
            score_threshold=config.jackstraw_score_threshold,
            alpha=config.significance_alpha,
        )
    choose_n_pcs(adata, n_pcs_use=config.n_pcs_use)
    return adata


def _neighbors(adata, config):
    return find_neighbors(
        adata,
        n_neighbors=config.knn_k,
        n_pcs=schema.get_annotation(adata, "n_pcs_used"),
        random_state=config.random_seed,
        prune=config.snn_prune,
    )


def _cluster(adata, config):
    if config.auto_resolution:
        choose_resolution(
            adata,
            resolution_grid=config.resolution_grid,
            n_pcs=schema.get_annotation(adata, "n_pcs_used"),
            random_state=config.random_seed,
        )
        return adata
    return find_clusters(adata, resolution=config.cluster_resolution, random_state=config.random_seed)


def _umap(adata, config):
    return run_umap(adata, n_components=config.embedding_dims, random_state=config.random_seed)


def _markers(adata, config):
    de_args = {
        "min_pct": config.de_min_pct,
        "logfc_threshold": config.de_logfc_threshold,
        "test": config.de_test,
        "only_pos": config.de_only_pos,
        "p_adjust": config.de_p_adjust,
    }
    adata.uns[UNS_MARKERS] = find_all_markers(adata, **de_args)

    if config.condition_key in adata.obs and adata.obs[config.condition_key].nunique() > 1:
        adata.uns[UNS_CONSERVED_MARKERS] = find_all_conserved_markers(
            adata,
            grouping_key=config.condition_key,
            meta_method=config.conserved_meta_method,
            **de_args,
        )
    return adata


def _annotate(adata, config):
    return rename_clusters(adata, config.cluster_names)


def build_stages(config, n_conditions=1):
    """Ordered stage list for a run

    Args:
        config: PipelineConfig
        n_conditions: Number of conditions in the container

    Returns:
        List of Stage
    """
    stages = [Stage("qc", _qc), Stage("normalize", _normalize)]
    if config.integrate and n_conditions > 1:
        stages += [Stage("integrate", _integrate), Stage("scale", _scale_integrated)]
    else:
        if config.integrate:
            print("Only one condition present; skipping integration")
        stages += [Stage("variable_features", _variable_features), Stage("scale", _scale)]
    stages += [
        Stage("pca", _pca),
        Stage("neighbors", _neighbors),
        Stage("cluster", _cluster),
        Stage("umap", _umap),
        Stage("markers", _markers),
        Stage("annotate", _annotate),
    ]
    return stages


def _resume_point(stages, checkpoint_dir):
    """Last readable checkpoint that matches the stage plan"""
    names = [stage.name for stage in stages]
    for index, stage_name, path in reversed(list_checkpoints(checkpoint_dir)):
        position = index - 1
        if position >= len(names) or names[position] != stage_name:
            print(f"  Ignoring checkpoint {path.name}: not part of this run's stages")
            continue
        try:
            adata = read_checkpoint(path)
        except MalformedInputError as err:
            print(f"  Ignoring checkpoint {path.name}: {err}")
            continue
        return position, adata
    return None


def run_pipeline(adata, config=None, checkpoint_dir=None, resume=False, stop_after=None):
    """Run the workflow on an expression container

    Args:
        adata: Container from create_container (left unmodified)
        config: PipelineConfig (defaults when None), validated before any stage
        checkpoint_dir: Directory receiving one checkpoint per stage (optional)
        resume: Continue after the most advanced valid checkpoint
        stop_after: Name of the last stage to run (optional)

    Returns:
        PipelineResult

    Raises:
        ScWorkflowError: from the failing stage, with its name attached
    """
    config = config if config is not None else PipelineConfig()
    config.validate()
    if resume and checkpoint_dir is None:
        raise ConfigurationError("Resuming needs a checkpoint directory", identifiers=["resume"])

    n_conditions = adata.obs[config.condition_key].nunique() if config.condition_key in adata.obs else 1
    stages = build_stages(config, n_conditions)
    names = [stage.name for stage in stages]
    if stop_after is not None and stop_after not in names:
        raise ConfigurationError(
            f"Unknown stage (choose from {', '.join(names)})", identifiers=[stop_after]
        )

    start, completed, resumed_from = 0, [], None
    if resume:
        found = _resume_point(stages, checkpoint_dir)
        if found is not None:
            position, adata = found
            start, completed, resumed_from = position + 1, names[: position + 1], names[position]
            print(f"Resuming after stage '{resumed_from}'")
        else:
            print("No usable checkpoint found; starting from the beginning")

    for position in range(start, len(stages)):
        stage = stages[position]
        if stop_after is not None and stop_after in completed:
            break
        print(f"\n=== Stage {position + 1}/{len(stages)}: {stage.name} ===")
        try:
            adata = stage.function(adata.copy(), config)
        except ScWorkflowError as err:
            if err.stage is None:
                err.stage = stage.name
            raise

        completed.append(stage.name)
        schema.set_annotation(adata, "last_stage", stage.name)
        if checkpoint_dir is not None:
            write_checkpoint(adata, checkpoint_dir, stage.name, position + 1, config)
        if stage.name == stop_after:
            break

    return PipelineResult(
        adata=adata,
        markers=adata.uns.get(UNS_MARKERS),
        conserved_markers=adata.uns.get(UNS_CONSERVED_MARKERS),
        completed_stages=completed,
        resumed_from=resumed_from,
    )
