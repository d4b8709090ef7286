"""
Diagnostic Figures

This module draws the figures that accompany an ecotype analysis:

1. Binning Curve
   - log2(cluster count) against SNPs allowed within a bin
   - Points used for the sigma and omega segments in separate colours
   - Both fitted lines and their intersection (npop)

2. Ecotype Sizes
   - Bar chart of the number of sequences in each demarcated ecotype

Figures follow the package palette (colorblind-friendly, seaborn based) and
are written as PNG at the configured DPI, or as vector PDF/SVG.

Example Usage:
    >>> from ecotyper.visualization import plot_binning_curve
    >>> fit = CurveEstimator().estimate(levels, sequence_length=1200)
    >>> plot_binning_curve(fit, "results/binning_curve.png")
"""

from typing import List, Optional, Tuple, Union
from pathlib import Path
import logging
import math

import numpy as np
import matplotlib.pyplot as plt
import seaborn as sns

from .demarcation import DemarcationResult
from .estimation import CurveFit

logger = logging.getLogger(__name__)

SEGMENT_COLORS = {'sigma': '#9D7ABE', 'omega': '#5AB4AC'}


def get_ecotype_colors(n_ecotypes: int) -> List[str]:
    """Colorblind-friendly palette with one hex colour per ecotype."""
    if n_ecotypes <= 0:
        return []
    return sns.color_palette("colorblind", n_ecotypes).as_hex()


def _save(out: Path, dpi: int) -> None:
    plt.tight_layout()
    if out.suffix.lower() == ".png":
        plt.savefig(out, dpi=dpi, bbox_inches="tight")
    else:
        plt.savefig(out, bbox_inches="tight")
    plt.close()


def plot_binning_curve(
    fit: CurveFit,
    output_path: Union[str, Path],
    figsize: Tuple[float, float] = (8, 6),
    dpi: int = 300,
    title: str = "Binning Curve",
) -> Path:
    """
    Plot a fitted binning curve.

    Parameters
    ----------
    fit : CurveFit
        Output of :meth:`CurveEstimator.estimate`
    output_path : str or Path
        Path for output figure (PNG, PDF or SVG)
    figsize : Tuple[float, float], optional
        Figure size in inches (default: 8x6)
    dpi : int, optional
        Resolution for PNG output (default: 300)
    title : str, optional
        Figure title

    Returns
    -------
    Path
        Path of the written figure
    """
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)

    fig, ax = plt.subplots(figsize=figsize)

    for segment, points, line in (
        ('sigma', fit.sigma_points, fit.sigma_line),
        ('omega', fit.omega_points, fit.omega_line),
    ):
        color = SEGMENT_COLORS[segment]
        xs = np.array([p.x for p in points])
        ax.scatter(xs, [p.y for p in points], color=color, edgecolor='black',
                   linewidth=0.5, s=50, zorder=3, label=f'{segment} points')
        x_range = np.linspace(xs.min(), xs.max(), 50)
        ax.plot(x_range, line.slope * x_range + line.intercept, color=color,
                linewidth=2, label=f'{segment} = {0.0 - line.slope:.4g}')

    estimate = fit.estimate
    ax.axhline(math.log2(estimate.npop), color='grey', linestyle=':', linewidth=1.2,
               label=f'npop = {estimate.npop}')

    ax.set_xlabel('SNPs within bin', fontsize=12)
    ax.set_ylabel('log2(number of bins)', fontsize=12)
    ax.set_title(title, fontsize=14, fontweight='bold')
    ax.legend(frameon=False, fontsize=10)
    ax.grid(True, linestyle='--', alpha=0.3)

    _save(out, dpi)
    logger.info(f"Saved binning curve plot: {out}")
    return out


def plot_ecotype_sizes(
    result: DemarcationResult,
    output_path: Union[str, Path],
    figsize: Tuple[float, float] = (10, 6),
    dpi: int = 300,
) -> Optional[Path]:
    """
    Bar chart of sequences per ecotype.

    Returns
    -------
    Path
        Path of the written figure, or None when there are no ecotypes
    """
    out = Path(output_path)

    if not result.groups:
        logger.warning("No ecotypes to plot; skipping ecotype size plot.")
        return None

    out.parent.mkdir(parents=True, exist_ok=True)

    labels = [str(number) for number in range(1, result.n_ecotypes + 1)]
    sizes = [len(group) for group in result.groups]

    fig, ax = plt.subplots(figsize=figsize)
    ax.bar(labels, sizes, color=get_ecotype_colors(len(sizes)),
           edgecolor='black', linewidth=0.5)

    ax.set_xlabel('Ecotype', fontsize=12)
    ax.set_ylabel('Number of sequences', fontsize=12)
    ax.set_title('Sequences per Ecotype', fontsize=14, fontweight='bold')
    ax.grid(True, axis='y', linestyle='--', alpha=0.3)

    _save(out, dpi)
    logger.info(f"Saved ecotype size plot: {out}")
    return out
