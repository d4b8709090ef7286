#!/usr/bin/env python3
"""
Ecotyper Command-Line Interface

Binning, curve estimation and ecotype demarcation for aligned bacterial gene
sequences, plus small tree utilities.

Subcommands:
    ecotyper ALIGNMENT.fasta [options]       Full analysis
    ecotyper reroot TREE.nwk OUTGROUP        Reroot (and sort) a Newick tree
    ecotyper init-config CONFIG.yaml         Write a configuration template
"""

import argparse
import sys
import logging
from pathlib import Path
from typing import List, Optional

from . import __version__, utils, config, tree as tree_module
from .core import run_analysis

logger = logging.getLogger(__name__)


def build_config(args: argparse.Namespace) -> config.AnalysisConfig:
    """
    Assemble the configuration for a run.

    Precedence, lowest first: defaults, configuration file, ECOTYPER_*
    environment variables, command-line options.
    """
    if args.config is not None:
        cfg = config.load_config_from_file(args.config)
    else:
        cfg = config.get_default_config()

    env_overrides = config.load_config_from_env()
    if env_overrides:
        cfg = cfg.update(**env_overrides)

    overrides = {'log_level': args.log_level}
    if args.output is not None:
        overrides['output_dir'] = args.output
    if args.linkage is not None:
        overrides['binning__linkage_method'] = args.linkage
    if args.thresholds is not None:
        overrides['binning__thresholds'] = tuple(args.thresholds)
    if args.keep_gaps:
        overrides['sequences__remove_gap_columns'] = False
    if args.no_plot:
        overrides['visualization__make_plots'] = False

    return cfg.update(**overrides)


def main_reroot(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point for the 'reroot' subcommand.

    Example:
        ecotyper reroot sequences.nwk outgroup_seq --sort --output rooted.nwk
    """
    parser = argparse.ArgumentParser(
        prog="ecotyper reroot",
        description="Reroot a Newick tree on an outgroup leaf",
    )
    parser.add_argument("tree", type=Path, help="Input Newick tree")
    parser.add_argument("outgroup", help="Name of the outgroup leaf")
    parser.add_argument(
        "--sort",
        action="store_true",
        help="Sort children by subtree depth for reproducible output",
    )
    parser.add_argument(
        "--precision",
        type=int,
        default=None,
        help="Decimals for branch lengths (default: exact)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Output Newick file (default: print to stdout)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Logging verbosity (default: WARNING)",
    )

    args = parser.parse_args(argv)
    utils.setup_logging(log_level=args.log_level)

    try:
        phylogeny = tree_module.read_newick(args.tree)
        if args.sort:
            phylogeny.sort_children()
        phylogeny.reroot(args.outgroup)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except tree_module.TreeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.output is not None:
        phylogeny.write(args.output, precision=args.precision)
    else:
        print(phylogeny.to_newick(args.precision))
    return 0


def main_init_config(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for the 'init-config' subcommand."""
    parser = argparse.ArgumentParser(
        prog="ecotyper init-config",
        description="Write the default configuration to a YAML or JSON file",
    )
    parser.add_argument("path", type=Path, help="Output file (.yaml, .yml or .json)")
    args = parser.parse_args(argv)

    utils.setup_logging(log_level="INFO")
    fmt = "json" if args.path.suffix.lower() == ".json" else "yaml"
    config.create_config_template(args.path, format=fmt)
    return 0


SUBCOMMANDS = {
    "reroot": main_reroot,
    "init-config": main_init_config,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    if argv is None:
        argv = sys.argv[1:]

    if argv and argv[0] in SUBCOMMANDS:
        return SUBCOMMANDS[argv[0]](argv[1:])

    parser = argparse.ArgumentParser(
        prog="ecotyper",
        description='Ecotyper: ecotype demarcation from aligned gene sequences',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Binning curve and parameter estimate only
  ecotyper sequences.fasta

  # Reroot the tree on the outgroup and detect recombinants
  ecotyper sequences.fasta --tree sequences.nwk

  # Full demarcation with precomputed confidence intervals
  ecotyper sequences.fasta --tree sequences.nwk --bounds intervals.tsv

  # Complete-linkage binning with custom cutoffs
  ecotyper sequences.fasta --linkage complete --thresholds 0.1 0.05 0.01 0

Other commands:
  ecotyper reroot TREE.nwk OUTGROUP [--sort] [--output FILE]
  ecotyper init-config CONFIG.yaml

Notes:
  - The first sequence in the alignment is the outgroup unless --outgroup is given
  - Configuration may also be set through ECOTYPER_* environment variables,
    e.g. ECOTYPER_ESTIMATION__MAX_ITERATIONS=20
        """
    )

    parser.add_argument(
        'alignment',
        type=Path,
        help='Aligned FASTA file'
    )
    parser.add_argument(
        '--tree',
        type=Path,
        default=None,
        help='Newick tree of the same sequences'
    )
    parser.add_argument(
        '--outgroup',
        default=None,
        help='Outgroup sequence name (default: first sequence in the alignment)'
    )
    parser.add_argument(
        '--bounds',
        type=Path,
        default=None,
        help='TSV of precomputed confidence intervals (n_sequences, lower, upper); '
             'enables demarcation together with --tree'
    )
    parser.add_argument(
        '--output', '--output-dir',
        type=Path,
        default=None,
        help='Output directory (default: {alignment}_ecotyper in current directory)'
    )
    parser.add_argument(
        '--config',
        type=Path,
        default=None,
        help='YAML or JSON configuration file'
    )
    parser.add_argument(
        '--linkage',
        choices=list(config.VALID_LINKAGE_METHODS),
        default=None,
        help='Binning rule (default: single)'
    )
    parser.add_argument(
        '--thresholds',
        type=float,
        nargs='+',
        default=None,
        help='Divergence cutoffs for binning (default: 0.20 down to 0.0)'
    )
    parser.add_argument(
        '--keep-gaps',
        action='store_true',
        help='Do not remove gap columns before computing divergences'
    )
    parser.add_argument(
        '--no-plot',
        action='store_true',
        help='Skip diagnostic figures'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default='INFO',
        help='Logging verbosity (default: INFO)'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'Ecotyper {__version__}'
    )

    args = parser.parse_args(argv)

    if not args.alignment.exists():
        print(f"Error: Alignment file not found: {args.alignment}", file=sys.stderr)
        return 1

    if args.output is None:
        args.output = Path(f"{args.alignment.stem}_ecotyper")

    try:
        cfg = build_config(args)
    except (ValueError, TypeError, FileNotFoundError) as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        return 1

    for warning in config.validate_config(cfg):
        print(f"Warning: {warning}", file=sys.stderr)

    print("=" * 80)
    print("Ecotyper")
    print("=" * 80)
    print(f"Alignment: {args.alignment}")
    if args.tree:
        print(f"Tree: {args.tree}")
    print(f"Output: {cfg.output_dir}")
    print(f"Linkage: {cfg.binning.linkage_method}")
    print("=" * 80)

    try:
        results = run_analysis(
            alignment_fasta=args.alignment,
            output_dir=cfg.output_dir,
            tree_path=args.tree,
            outgroup=args.outgroup,
            bounds_table=args.bounds,
            config_obj=cfg,
        )
    except KeyboardInterrupt:
        print("\n\nAnalysis interrupted by user", file=sys.stderr)
        return 130
    except Exception as e:
        logger.error(f"Analysis failed with error: {e}")
        print(f"\nError: Analysis failed: {e}", file=sys.stderr)
        return 1

    estimate = results['estimate']
    if estimate is not None:
        print(f"npop={estimate.npop} omega={estimate.omega:.6g} sigma={estimate.sigma:.6g}")
    if results['demarcation'] is not None:
        print(f"Ecotypes: {results['demarcation'].n_ecotypes}")

    return 0 if results['success'] else 1


if __name__ == '__main__':
    sys.exit(main())
