#!/usr/bin/env python3
"""
Pipeline parameters for single-cell RNA-seq analysis

This file centralizes every threshold used in the pipeline. Modify the presets
or pass a JSON config to adjust filtering stringency and downstream steps.
"""

import json
import numbers
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path

from scworkflow.errors import ConfigurationError

DE_TESTS = ("wilcox", "t")
P_ADJUST_METHODS = ("bonferroni", "holm", "fdr_bh", "fdr_by")
META_METHODS = ("tippett", "fisher", "stouffer", "pearson", "mudholkar_george")

_TYPE_NAMES = {
    bool: "true or false",
    int: "an integer",
    float: "a number",
    str: "a string",
    tuple: "a list",
    dict: "an object",
}

# Fields where null disables the setting
_NULLABLE = {
    "n_pcs_use",
    "qc_bounds.min_features",
    "qc_bounds.max_features",
    "qc_bounds.min_counts",
    "qc_bounds.max_counts",
    "qc_bounds.max_mito_pct",
}


def _is_kind(value, kind):
    if kind is bool:
        return isinstance(value, bool)
    if kind is int:
        return isinstance(value, numbers.Integral) and not isinstance(value, bool)
    if kind is float:
        return isinstance(value, numbers.Real) and not isinstance(value, bool)
    if kind is tuple:
        return isinstance(value, (list, tuple))
    return isinstance(value, kind)


def _type_problems(obj, prefix=""):
    """List the fields of a config dataclass holding a value of the wrong type"""
    problems = []
    for f in fields(obj):
        name = f"{prefix}{f.name}"
        value = getattr(obj, f.name)
        if value is None:
            if name not in _NULLABLE:
                problems.append(f"{name} must not be null")
        elif f.type is QCBounds:
            if isinstance(value, QCBounds):
                problems.extend(_type_problems(value, prefix="qc_bounds."))
            else:
                problems.append(f"{name} must be an object, got {type(value).__name__}")
        elif not _is_kind(value, f.type):
            problems.append(f"{name} must be {_TYPE_NAMES[f.type]}, got {type(value).__name__}")
    return problems


def _raise_invalid(errors):
    raise ConfigurationError(
        "Configuration validation failed:\n" + "\n".join(errors),
        identifiers=[e.split(" ")[0] for e in errors],
    )


@dataclass
class QCBounds:
    """Per-cell QC bounds. ``None`` disables a bound.

    Lower bounds accept a cell sitting exactly on the limit
    (``value >= min``); upper bounds are strict (``value < max``), which is
    how the workshop subsets cells. Either side can be flipped.
    """

    min_features: float = 200
    max_features: float = 2500
    min_counts: float = None
    max_counts: float = None
    max_mito_pct: float = 5.0
    min_inclusive: bool = True
    max_inclusive: bool = False


@dataclass
class PipelineConfig:
    # Container construction
    min_cells: int = 3
    min_features: int = 200
    condition_key: str = "condition"

    # Quality control
    qc_bounds: QCBounds = field(default_factory=QCBounds)
    mito_prefix: str = "MT-"

    # Normalization, features, scaling
    normalize_scale_factor: float = 1e4
    n_variable_features: int = 2000
    scale_clip_max: float = 10.0
    vars_to_regress: tuple = ()

    # Linear dimensionality reduction
    n_components: int = 50
    n_pcs_use: int = None
    jackstraw_replicates: int = 0
    jackstraw_prop: float = 0.01
    jackstraw_score_threshold: float = 1e-5
    significance_alpha: float = 0.05

    # Integration
    integrate: bool = False
    integration_dims: int = 30
    k_anchor: int = 5
    k_filter: int = 200
    k_score: int = 30
    k_weight: int = 100
    min_anchors: int = 10

    # Graph, clustering and embedding
    knn_k: int = 20
    snn_prune: float = 1 / 15
    cluster_resolution: float = 0.5
    auto_resolution: bool = False
    resolution_grid: tuple = (0.2, 0.4, 0.6, 0.8, 1.0, 1.2)
    embedding_dims: int = 2

    # Marker discovery
    de_test: str = "wilcox"
    de_min_pct: float = 0.1
    de_logfc_threshold: float = 0.25
    de_only_pos: bool = False
    de_p_adjust: str = "bonferroni"
    conserved_meta_method: str = "tippett"

    # Annotation
    cluster_names: dict = field(default_factory=dict)

    random_seed: int = 0

    def validate(self):
        """Check that parameters make sense

        Raises:
            ConfigurationError: listing every violated rule
        """
        # Range checks below assume well-typed values
        problems = _type_problems(self)
        if not problems:
            if not all(isinstance(v, str) for v in self.vars_to_regress):
                problems.append("vars_to_regress entries must be strings")
            if not all(_is_kind(r, float) for r in self.resolution_grid):
                problems.append("resolution_grid entries must be numbers")
            if not all(
                isinstance(k, (str, numbers.Integral)) and isinstance(v, str)
                for k, v in self.cluster_names.items()
            ):
                problems.append("cluster_names must map cluster labels to name strings")
        if problems:
            _raise_invalid(problems)

        errors = []
        bounds = self.qc_bounds

        for name in ("min_cells", "min_features"):
            if getattr(self, name) < 0:
                errors.append(f"{name} must be non-negative")

        for name in (
            "n_variable_features",
            "n_components",
            "integration_dims",
            "k_anchor",
            "k_filter",
            "k_score",
            "k_weight",
            "embedding_dims",
        ):
            if int(getattr(self, name)) < 1:
                errors.append(f"{name} must be at least 1")

        if self.knn_k < 2:
            errors.append("knn_k must be at least 2")
        if self.normalize_scale_factor <= 0:
            errors.append("normalize_scale_factor must be positive")
        if self.scale_clip_max <= 0:
            errors.append("scale_clip_max must be positive")
        if self.cluster_resolution <= 0:
            errors.append("cluster_resolution must be positive")
        if any(r <= 0 for r in self.resolution_grid):
            errors.append("resolution_grid values must be positive")
        if self.auto_resolution and not self.resolution_grid:
            errors.append("auto_resolution requires a non-empty resolution_grid")
        if self.min_anchors < 1:
            errors.append("min_anchors must be at least 1")
        if self.jackstraw_replicates < 0:
            errors.append("jackstraw_replicates must be non-negative")
        if self.n_pcs_use is not None and not 1 <= self.n_pcs_use <= self.n_components:
            errors.append("n_pcs_use must be between 1 and n_components")

        # Check min/max relationships
        for low, high in (("min_features", "max_features"), ("min_counts", "max_counts")):
            lo, hi = getattr(bounds, low), getattr(bounds, high)
            if lo is not None and hi is not None and lo >= hi:
                errors.append(f"qc_bounds.{low} must be less than qc_bounds.{high}")

        # Check percentage and probability bounds
        if bounds.max_mito_pct is not None and not 0 <= bounds.max_mito_pct <= 100:
            errors.append("qc_bounds.max_mito_pct must be between 0 and 100")
        if not 0 <= self.de_min_pct <= 1:
            errors.append("de_min_pct must be between 0 and 1")
        if self.de_logfc_threshold < 0:
            errors.append("de_logfc_threshold must be non-negative")
        if not 0 < self.jackstraw_prop < 1:
            errors.append("jackstraw_prop must be between 0 and 1")
        if not 0 < self.jackstraw_score_threshold < 1:
            errors.append("jackstraw_score_threshold must be between 0 and 1")
        if not 0 < self.significance_alpha < 1:
            errors.append("significance_alpha must be between 0 and 1")
        if not 0 <= self.snn_prune < 1:
            errors.append("snn_prune must be in [0, 1)")

        # Known method names
        if self.de_test not in DE_TESTS:
            errors.append(f"de_test must be one of {', '.join(DE_TESTS)}")
        if self.de_p_adjust not in P_ADJUST_METHODS:
            errors.append(f"de_p_adjust must be one of {', '.join(P_ADJUST_METHODS)}")
        if self.conserved_meta_method not in META_METHODS:
            errors.append(
                f"conserved_meta_method must be one of {', '.join(META_METHODS)}"
            )

        if self.integrate and self.k_score > self.k_filter:
            errors.append("k_score must not exceed k_filter")

        if errors:
            _raise_invalid(errors)

        return True

    def to_dict(self):
        data = asdict(self)
        data["vars_to_regress"] = list(self.vars_to_regress)
        data["resolution_grid"] = list(self.resolution_grid)
        return data

    @classmethod
    def from_dict(cls, data, base=None):
        """Build a config from a plain dictionary

        Args:
            data: Mapping of field name -> value, ``qc_bounds`` may be a nested mapping
            base: Config to overlay the values on (defaults to a fresh config)

        Returns:
            New PipelineConfig (not validated)
        """
        base = base if base is not None else cls()
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(
                "Unknown configuration keys", identifiers=unknown
            )

        problems = []
        values = base.to_dict()
        for key, value in data.items():
            if key != "qc_bounds":
                values[key] = value
                continue
            if isinstance(value, QCBounds):
                value = asdict(value)
            if not isinstance(value, dict):
                problems.append(f"qc_bounds must be an object, got {type(value).__name__}")
                continue
            qc_known = {f.name for f in fields(QCBounds)}
            bad = sorted(set(value) - qc_known)
            if bad:
                raise ConfigurationError(
                    "Unknown qc_bounds keys", identifiers=bad
                )
            values["qc_bounds"].update(value)

        # Containers are rebuilt below, scalars are checked by validate()
        for key in ("vars_to_regress", "resolution_grid"):
            if not isinstance(values[key], (list, tuple)):
                problems.append(f"{key} must be a list, got {type(values[key]).__name__}")
        if not isinstance(values["cluster_names"], dict):
            problems.append(
                f"cluster_names must be an object, got {type(values['cluster_names']).__name__}"
            )
        if problems:
            _raise_invalid(problems)

        values["qc_bounds"] = QCBounds(**values["qc_bounds"])
        values["vars_to_regress"] = tuple(values["vars_to_regress"])
        values["resolution_grid"] = tuple(values["resolution_grid"])
        values["cluster_names"] = {str(k): v for k, v in values["cluster_names"].items()}
        return cls(**values)


# Preset overrides on top of the defaults
PRESETS = {
    "default": {
        "name": "Default (Balanced)",
        "description": "Standard parameters suitable for most datasets",
        "overrides": {},
    },
    "stringent": {
        "name": "Stringent QC",
        "description": "Stricter filtering for high-quality cells only",
        "overrides": {
            "min_cells": 5,
            "qc_bounds": {"min_features": 300, "max_features": 2000, "max_mito_pct": 3.0},
            "de_min_pct": 0.25,
        },
    },
    "permissive": {
        "name": "Permissive QC",
        "description": "More lenient filtering to retain more cells",
        "overrides": {
            "min_cells": 1,
            "min_features": 100,
            "qc_bounds": {"min_features": 100, "max_features": 5000, "max_mito_pct": 15.0},
        },
    },
}


def from_preset(name):
    """Return a validated config for a named preset"""
    if name not in PRESETS:
        raise ConfigurationError(
            f"Unknown preset (choose from {', '.join(PRESETS)})", identifiers=[name]
        )
    config = PipelineConfig.from_dict(PRESETS[name]["overrides"])
    config.validate()
    return config


def load_config(path, preset="default"):
    """Load and validate a pipeline config from a JSON file

    Args:
        path: Path to a JSON object with PipelineConfig fields
        preset: Preset the file values are overlaid on

    Returns:
        Validated PipelineConfig
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ConfigurationError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Invalid config root in '{config_path}': expected JSON object, "
            f"got {type(data).__name__}."
        )

    config = PipelineConfig.from_dict(data, base=from_preset(preset))
    config.validate()
    return config


def get_config_summary(config):
    """Return a formatted summary of current settings"""
    bounds = config.qc_bounds
    low = ">=" if bounds.min_inclusive else ">"
    high = "<=" if bounds.max_inclusive else "<"
    summary = [
        "=== Pipeline Settings ===",
        "\nContainer filters:",
        f"  - Genes detected in >= {config.min_cells} cells",
        f"  - Cells with >= {config.min_features} genes",
        f"\nCell-level QC (value {low} min, value {high} max):",
        f"  - Genes per cell: {bounds.min_features} - {bounds.max_features}",
    ]

    if bounds.min_counts is not None or bounds.max_counts is not None:
        summary.append(f"  - Counts per cell: {bounds.min_counts} - {bounds.max_counts}")
    if bounds.max_mito_pct is not None:
        summary.append(
            f"  - Max mitochondrial %: {bounds.max_mito_pct}% (prefix '{config.mito_prefix}')"
        )

    summary.extend(
        [
            "\nProcessing:",
            f"  - Scale factor: {config.normalize_scale_factor:g}",
            f"  - Variable features: {config.n_variable_features}",
            f"  - Principal components: {config.n_components}",
            f"  - kNN k: {config.knn_k}, resolution: {config.cluster_resolution}",
            f"  - Integration: {'on' if config.integrate else 'off'}",
            "\nMarkers:",
            f"  - Test: {config.de_test}, min.pct {config.de_min_pct}, "
            f"logFC >= {config.de_logfc_threshold}",
            f"\nRandom seed: {config.random_seed}",
        ]
    )

    return "\n".join(summary)
