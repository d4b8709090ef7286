"""
Core Analysis Orchestration for Ecotyper

This module ties the components together into a single analysis run, from an
aligned FASTA file to parameter estimates and, when a tree and confidence
intervals are available, ecotype demarcation.

The analysis phases:
1. Load the alignment, pick the outgroup and remove gap columns
2. Compute the pairwise divergence matrix
3. Bin the ingroup sequences and fit the two-segment curve
4. Reroot and sort the tree, detect recombinants (optional)
5. Demarcate ecotypes using precomputed confidence intervals (optional)
6. Write tables, the estimate and diagnostic figures

Output layout:
    {output_dir}/
        binning.tsv              Binning curve
        estimate.json            npop, omega, sigma and the two fitted lines
        divergence_matrix.tsv    Pairwise divergences (gap columns removed)
        tree_rerooted.nwk        Tree rooted on the outgroup (with a tree)
        recombinants.txt         Tree leaves missing from the alignment
        ecotypes.tsv             Demarcated ecotypes (with a bounds table)
        figures/                 Binning curve and ecotype size plots
        ecotyper.log             Run log

Example Usage:
    >>> from ecotyper.core import run_analysis
    >>> results = run_analysis(
    ...     alignment_fasta="sequences.fasta",
    ...     output_dir="results/",
    ...     tree_path="sequences.nwk",
    ...     bounds_table="confidence_intervals.tsv",
    ... )
    >>> results['estimate'].npop
    7
"""

from typing import Any, Dict, Optional, Union
from pathlib import Path
import json
import logging
import time

from . import utils, config, divergence, binning, estimation, demarcation, tree as tree_module
from . import visualization

logger = logging.getLogger(__name__)


def run_analysis(
    alignment_fasta: Union[str, Path],
    output_dir: Union[str, Path],
    tree_path: Optional[Union[str, Path]] = None,
    outgroup: Optional[str] = None,
    bounds_table: Optional[Union[str, Path]] = None,
    config_obj: Optional[config.AnalysisConfig] = None,
) -> Dict[str, Any]:
    """
    Run an ecotype analysis.

    Parameters
    ----------
    alignment_fasta : str or Path
        Aligned FASTA file. The first sequence is the outgroup unless one
        is named explicitly.
    output_dir : str or Path
        Directory for output files (created if needed)
    tree_path : str or Path, optional
        Newick tree of the same sequences. Enables rerooting, recombinant
        detection and demarcation.
    outgroup : str, optional
        Outgroup sequence name (overrides the configuration)
    bounds_table : str or Path, optional
        TSV of precomputed confidence intervals with ``n_sequences``,
        ``lower`` and ``upper`` columns. Together with ``tree_path`` this
        enables demarcation.
    config_obj : AnalysisConfig, optional
        Configuration (default: get_default_config())

    Returns
    -------
    Dict[str, Any]
        Dictionary containing:
        - 'success': bool
        - 'output_dir': Path
        - 'outgroup': str
        - 'n_sequences': int - ingroup sequences binned
        - 'sequence_length': int - columns left after gap removal
        - 'bin_levels': List[BinLevel]
        - 'estimate': Optional[ParameterEstimate]
        - 'recombinants': List[str]
        - 'demarcation': Optional[DemarcationResult]
        - 'files': Dict[str, Path]
        - 'errors': List[str] - non-critical problems

    Raises
    ------
    FileNotFoundError
        If an input file does not exist
    """
    cfg = config_obj or config.get_default_config()
    output_path = Path(output_dir)

    results: Dict[str, Any] = {
        'success': False,
        'output_dir': output_path,
        'estimate': None,
        'recombinants': [],
        'demarcation': None,
        'errors': [],
        'files': {},
    }

    start_time = time.time()

    try:
        alignment_fasta = Path(alignment_fasta)
        if not alignment_fasta.exists():
            raise FileNotFoundError(f"Alignment not found: {alignment_fasta}")
        if tree_path is not None and not Path(tree_path).exists():
            raise FileNotFoundError(f"Tree not found: {tree_path}")
        if bounds_table is not None and not Path(bounds_table).exists():
            raise FileNotFoundError(f"Bounds table not found: {bounds_table}")

        utils.create_output_directory(output_path)
        figures_dir = output_path / "figures"

        utils.setup_logging(log_level=cfg.log_level, log_file=output_path / "ecotyper.log")

        logger.info("=" * 80)
        logger.info(f"Ecotyper analysis - {alignment_fasta.name}")
        logger.info("=" * 80)
        utils.log_function_call(
            "run_analysis",
            alignment_fasta=alignment_fasta,
            tree_path=tree_path,
            bounds_table=bounds_table,
            linkage=cfg.binning.linkage_method,
        )

        # =====================================================================
        # Phase 1: Sequences
        # =====================================================================

        logger.info("PHASE 1: Loading sequences")
        records = divergence.read_alignment(alignment_fasta)

        outgroup = outgroup or cfg.sequences.outgroup
        if outgroup is None and cfg.sequences.outgroup_first:
            outgroup = divergence.first_sequence_id(records)
        if outgroup is not None and outgroup not in {r.id for r in records}:
            raise ValueError(f"Outgroup '{outgroup}' is not in the alignment")
        results['outgroup'] = outgroup
        logger.info(f"  Outgroup: {outgroup}")

        if cfg.sequences.remove_gap_columns:
            records = divergence.remove_gap_columns(records)
        sequence_length = len(records[0].seq)
        results['sequence_length'] = sequence_length

        # =====================================================================
        # Phase 2: Divergence
        # =====================================================================

        logger.info("PHASE 2: Pairwise divergence")
        matrix = divergence.DivergenceMatrix.from_alignment(records)
        results['files']['divergence_matrix'] = matrix.to_csv(output_path / "divergence_matrix.tsv")

        # =====================================================================
        # Phase 3: Binning and estimation
        # =====================================================================

        logger.info("PHASE 3: Binning and curve estimation")
        ingroup = [r.id for r in records if r.id != outgroup]
        results['n_sequences'] = len(ingroup)

        engine = binning.BinningEngine.from_config(matrix, cfg.binning)
        levels = engine.compute_bin_levels(ingroup)
        results['bin_levels'] = levels
        results['files']['binning'] = binning.write_bin_levels(
            levels, output_path / "binning.tsv", sequence_length
        )

        estimator = estimation.CurveEstimator.from_config(cfg.estimation)
        fit = None
        try:
            fit = estimator.estimate(levels, sequence_length, n_sequences=len(ingroup))
            results['estimate'] = fit.estimate
            results['files']['estimate'] = _write_estimate(fit, output_path / "estimate.json")
            logger.info(
                f"  ✓ npop={fit.estimate.npop}, omega={fit.estimate.omega:.6g}, "
                f"sigma={fit.estimate.sigma:.6g}"
            )
        except estimation.DegenerateFitError as e:
            logger.warning(f"  ⚠ Curve estimation failed: {e}")
            results['errors'].append(f"Curve estimation failed: {e}")

        # =====================================================================
        # Phase 4: Tree
        # =====================================================================

        phylogeny = None
        if tree_path is not None:
            logger.info("PHASE 4: Tree preparation")
            phylogeny = tree_module.read_newick(tree_path)
            if cfg.demarcation.sort_tree:
                phylogeny.sort_children()
            # Rerooting last keeps the outgroup as the first child of the root
            if outgroup is not None:
                phylogeny.reroot(outgroup)
            results['files']['tree'] = phylogeny.write(output_path / "tree_rerooted.nwk")

            recombinants = divergence.find_recombinants(phylogeny, [r.id for r in records])
            results['recombinants'] = recombinants
            recombinants_path = output_path / "recombinants.txt"
            recombinants_path.write_text("".join(f"{name}\n" for name in recombinants))
            results['files']['recombinants'] = recombinants_path

        # =====================================================================
        # Phase 5: Demarcation
        # =====================================================================

        if phylogeny is not None and bounds_table is not None:
            logger.info("PHASE 5: Demarcation")
            if outgroup is None:
                raise ValueError("Demarcation requires an outgroup")
            oracle = demarcation.BoundsTableOracle.from_csv(bounds_table)
            result = demarcation.demarcate(
                phylogeny,
                outgroup,
                results['recombinants'],
                oracle,
                divergence=matrix,
                sequence_length=sequence_length,
                config=cfg,
                reference=results['estimate'],
            )
            results['demarcation'] = result
            results['files']['ecotypes'] = demarcation.write_ecotypes(
                result, output_path / "ecotypes.tsv"
            )
            for names in result.incomplete:
                results['errors'].append(f"Unresolved subtree of {len(names)} sequences")
        elif bounds_table is not None:
            logger.warning("  ⚠ A bounds table was given without a tree; skipping demarcation")
            results['errors'].append("Demarcation skipped: no tree")

        # =====================================================================
        # Phase 6: Figures
        # =====================================================================

        if cfg.visualization.make_plots:
            fmt = cfg.visualization.figure_format
            dpi = cfg.visualization.figure_dpi
            figsize = (cfg.visualization.figure_width, cfg.visualization.figure_height)
            if fit is not None:
                results['files']['binning_curve_plot'] = visualization.plot_binning_curve(
                    fit, figures_dir / f"binning_curve.{fmt}", figsize=figsize, dpi=dpi
                )
            if results['demarcation'] is not None and results['demarcation'].groups:
                results['files']['ecotype_sizes_plot'] = visualization.plot_ecotype_sizes(
                    results['demarcation'], figures_dir / f"ecotype_sizes.{fmt}",
                    figsize=figsize, dpi=dpi,
                )

        results['success'] = True

        logger.info("=" * 80)
        logger.info(
            f"✓ Analysis completed in "
            f"{utils.format_elapsed_time(time.time() - start_time)}"
        )
        logger.info(f"  Output: {output_path}")
        logger.info("=" * 80)

        return results

    except Exception as e:
        logger.error(f"Analysis failed with error: {e}", exc_info=True)
        results['success'] = False
        results['errors'].append(str(e))
        raise


def _write_estimate(fit: estimation.CurveFit, output_path: Path) -> Path:
    """Write a curve fit as JSON."""
    payload = {
        'estimate': fit.estimate.to_dict(),
        'sigma_line': {'slope': fit.sigma_line.slope, 'intercept': fit.sigma_line.intercept},
        'omega_line': {'slope': fit.omega_line.slope, 'intercept': fit.omega_line.intercept},
        'points': [{'x': p.x, 'y': p.y} for p in fit.points],
        'boundary': fit.boundary,
        'iterations': fit.iterations,
        'converged': fit.converged,
    }
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w') as f:
        json.dump(payload, f, indent=2)
    logger.info(f"Wrote parameter estimate to {output_path}")
    return output_path
