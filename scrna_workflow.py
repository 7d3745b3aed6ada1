#!/usr/bin/env python3
"""
Single-cell RNA-seq workflow: QC, clustering, markers and annotation

This script performs:
1. Loading one or more count inputs (one per condition)
2. Quality control and normalization
3. Variable features, scaling and PCA (optionally integrating conditions)
4. Graph clustering, UMAP and cluster markers
5. Cluster annotation and export

uv run python scrna_workflow.py --input ctrl.tsv --condition CTRL \
    --input stim.tsv --condition STIM --preset default --output-dir results
"""

import argparse
import json
import sys
import warnings
from pathlib import Path

import matplotlib
import scanpy as sc

from scworkflow.config import PRESETS, PipelineConfig, from_preset, get_config_summary, load_config
from scworkflow.data_loader import create_container, read_counts
from scworkflow.differential_expression import write_marker_table
from scworkflow.errors import ConfigurationError, ScWorkflowError
from scworkflow.pipeline import run_pipeline


def build_parser():
    parser = argparse.ArgumentParser(
        description="scRNA-seq QC, clustering, markers and annotation"
    )
    parser.add_argument(
        "--input",
        action="append",
        required=True,
        help="Count table, 10x directory or 10x H5 file (repeat once per condition)",
    )
    parser.add_argument(
        "--condition",
        action="append",
        default=None,
        help="Condition label for each --input, in the same order",
    )
    parser.add_argument("--config", default=None, help="JSON file with pipeline parameters")
    parser.add_argument(
        "--preset",
        choices=sorted(PRESETS),
        default="default",
        help="Parameter preset the config file is applied on (default: 'default')",
    )
    parser.add_argument(
        "--output-dir",
        default="results",
        help="Directory for final.h5ad and the marker tables (default: 'results')",
    )
    parser.add_argument("--checkpoint-dir", default=None, help="Write one checkpoint per stage here")
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Continue after the last checkpoint in --checkpoint-dir",
    )
    parser.add_argument("--stop-after", default=None, help="Name of the last stage to run")
    parser.add_argument("--plots-dir", default=None, help="Directory to write plots to (optional)")
    parser.add_argument(
        "--cluster-names",
        default=None,
        help="JSON file mapping cluster labels to cell type names",
    )
    return parser


def _load_cluster_names(path):
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            names = json.load(fh)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Cluster names file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(
            f"Invalid JSON in '{path}' at line {exc.lineno}, column {exc.colno}: {exc.msg}"
        ) from exc
    if not isinstance(names, dict):
        raise ConfigurationError(f"Cluster names in '{path}' must be a JSON object")
    return {str(k): str(v) for k, v in names.items()}


def _make_plots(result, config, plots_dir):
    from scworkflow.plotting import plot_elbow, plot_embedding, plot_qc_violin

    matplotlib.use("Agg")
    adata = result.adata
    if "pca" in adata.uns:
        plot_elbow(adata, save_dir=plots_dir)
    if "X_umap" in adata.obsm:
        plot_embedding(adata, save_dir=plots_dir)
    plot_qc_violin(adata, bounds=config.qc_bounds, condition_key=config.condition_key, save_dir=plots_dir)


def run(args):
    """Main analysis pipeline

    Args:
        args: Parsed command-line arguments

    Returns:
        PipelineResult
    """
    print("Starting single-cell analysis pipeline...")

    conditions = args.condition or []
    if conditions and len(conditions) != len(args.input):
        raise ConfigurationError(
            f"Got {len(args.input)} --input but {len(conditions)} --condition values"
        )
    if not conditions:
        conditions = [Path(p).stem if len(args.input) > 1 else "sample" for p in args.input]

    config = load_config(args.config, preset=args.preset) if args.config else from_preset(args.preset)
    if args.cluster_names:
        config = PipelineConfig.from_dict(
            {"cluster_names": _load_cluster_names(args.cluster_names)}, base=config
        )
        config.validate()
    print("\n" + get_config_summary(config) + "\n")

    # Step 1: Load inputs and build the container
    datasets = [(read_counts(path), label) for path, label in zip(args.input, conditions)]
    adata = create_container(
        datasets,
        min_cells=config.min_cells,
        min_features=config.min_features,
        condition_key=config.condition_key,
    )

    # Step 2: Run the staged workflow
    result = run_pipeline(
        adata,
        config,
        checkpoint_dir=args.checkpoint_dir,
        resume=args.resume,
        stop_after=args.stop_after,
    )

    # Step 3: Save results
    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    if result.markers is not None:
        write_marker_table(result.markers, output_dir / "markers.csv")
    if result.conserved_markers is not None:
        write_marker_table(result.conserved_markers, output_dir / "conserved_markers.csv")
    output_path = output_dir / "final.h5ad"
    result.adata.write_h5ad(output_path)
    print(f"Saved data to {output_path}")

    if args.plots_dir:
        _make_plots(result, config, Path(args.plots_dir))

    print("Analysis complete!")
    return result


def main(argv=None):
    args = build_parser().parse_args(argv)

    # Configure scanpy
    sc.settings.verbosity = 1
    warnings.filterwarnings("ignore", category=FutureWarning)

    try:
        run(args)
    except ScWorkflowError as err:
        print(f"Error: {err}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
