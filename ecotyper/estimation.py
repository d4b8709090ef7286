"""
Two-Segment Curve Estimator

This module converts a binning curve into starting values for the ecotype
simulation parameters: the periodic selection rate (sigma), the ecotype
formation rate (omega) and the number of ecotypes (npop).

The binning curve, plotted as log2(cluster count) against the number of SNPs
allowed within a bin, typically has two straight stretches. Close to zero
SNPs the count falls steeply as periodic selection purges diversity within
ecotypes (the sigma segment). At larger cutoffs it flattens out into the
slower decline caused by ecotype formation (the omega segment). Fitting a
line to each stretch gives:

    sigma = -slope(sigma line)
    omega = -slope(omega line)
    npop  = round(2 ** y) at the point where the two lines cross

Procedure:
1. Transform: drop levels with a single cluster, collapse runs of equal
   counts to their two end points, map each level to
   (x = threshold * sequence_length, y = log2(cluster_count)) and sort by x.
2. Seed: split the points at the middle. The two segments share the point
   at the split (the knee), so each holds at least two points.
3. Refine (at most ``max_iterations`` passes): fit both lines, score the
   total squared perpendicular error, move interior points to the closer
   line when they are within the error threshold, and move the split to the
   end of the leading sigma run. Stop when the error no longer changes; if
   the pass limit is reached, use the best split seen.
4. Extract sigma, omega and npop from the two lines.

Points equidistant from both lines stay with the sigma segment.

Example Usage:
    >>> from ecotyper.binning import BinLevel
    >>> from ecotyper.estimation import estimate
    >>> levels = [BinLevel(0.20, 1), BinLevel(0.10, 3), BinLevel(0.05, 3), BinLevel(0.01, 8)]
    >>> result = estimate(levels, sequence_length=1000)
    >>> result.npop
    3
"""

from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence, Tuple
import logging
import math

import numpy as np

from .binning import BinLevel
from .config import EstimationConfig

logger = logging.getLogger(__name__)

_MIN_SEGMENT_POINTS = 2


class DegenerateFitError(Exception):
    """A binning curve without a usable two-line structure."""
    pass


# ============================================================================
# Data Types
# ============================================================================

@dataclass(frozen=True)
class Point:
    """Transformed binning level: x in SNPs, y in log2(cluster count)."""
    x: float
    y: float


@dataclass(frozen=True)
class LineFit:
    """Least-squares line ``y = slope * x + intercept``."""
    slope: float
    intercept: float
    n_points: int = 0

    def predict(self, x: float) -> float:
        return self.slope * x + self.intercept

    def squared_distance(self, point: Point) -> float:
        """Squared perpendicular distance from ``point`` to the line."""
        residual = point.y - self.slope * point.x - self.intercept
        return residual * residual / (self.slope * self.slope + 1.0)


@dataclass(frozen=True)
class ParameterEstimate:
    """
    Starting values for the ecotype simulation.

    Attributes
    ----------
    npop : int
        Number of ecotypes
    omega : float
        Ecotype formation rate
    sigma : float
        Periodic selection rate
    likelihood : float, optional
        Filled in once the estimate has been scored externally
    """
    npop: int
    omega: float
    sigma: float
    likelihood: Optional[float] = None

    def with_likelihood(self, likelihood: float) -> 'ParameterEstimate':
        return replace(self, likelihood=float(likelihood))

    def scaled(self, factor: float) -> 'ParameterEstimate':
        """Copy with npop multiplied by ``factor`` (rounded, at least 1)."""
        return replace(self, npop=max(1, int(round(self.npop * factor))), likelihood=None)

    def to_dict(self) -> dict:
        return {
            'npop': self.npop,
            'omega': self.omega,
            'sigma': self.sigma,
            'likelihood': self.likelihood,
        }


@dataclass(frozen=True)
class CurveFit:
    """Full output of the curve estimator."""
    estimate: ParameterEstimate
    sigma_line: LineFit
    omega_line: LineFit
    points: Tuple[Point, ...] = field(default_factory=tuple)
    boundary: int = 0
    iterations: int = 0
    converged: bool = True

    @property
    def sigma_points(self) -> Tuple[Point, ...]:
        return self.points[:self.boundary + 1]

    @property
    def omega_points(self) -> Tuple[Point, ...]:
        return self.points[self.boundary:]


# ============================================================================
# Transformation and Line Fitting
# ============================================================================

def transform_bin_levels(
    bin_levels: Sequence[BinLevel],
    sequence_length: float,
) -> List[Point]:
    """
    Convert binning levels into curve points.

    Levels with a single cluster are dropped. A run of levels with the same
    count keeps only its first and last level so that the plateau's extent
    is preserved without weighting it by the number of cutoffs it spans.

    Parameters
    ----------
    bin_levels : Sequence[BinLevel]
        Binning curve, any order
    sequence_length : float
        Alignment length after gap removal

    Returns
    -------
    List[Point]
        Points ordered by increasing x (SNPs)

    Examples
    --------
    >>> levels = [BinLevel(0.20, 1), BinLevel(0.10, 3), BinLevel(0.05, 3),
    ...           BinLevel(0.02, 3), BinLevel(0.01, 8)]
    >>> [(p.x, round(p.y, 3)) for p in transform_bin_levels(levels, 1000)]
    [(10.0, 3.0), (20.0, 1.585), (100.0, 1.585)]
    """
    if sequence_length <= 0:
        raise DegenerateFitError(f"Sequence length must be positive, got {sequence_length}")

    ordered = sorted(bin_levels, key=lambda lvl: lvl.threshold, reverse=True)
    informative = [lvl for lvl in ordered if lvl.cluster_count > 1]

    kept: List[BinLevel] = []
    for i, level in enumerate(informative):
        same_as_previous = i > 0 and informative[i - 1].cluster_count == level.cluster_count
        same_as_next = (
            i + 1 < len(informative)
            and informative[i + 1].cluster_count == level.cluster_count
        )
        if same_as_previous and same_as_next:
            continue
        kept.append(level)

    points = [
        Point(x=level.threshold * sequence_length, y=math.log2(level.cluster_count))
        for level in kept
    ]
    points.sort(key=lambda p: p.x)
    return points


def fit_line(points: Sequence[Point]) -> LineFit:
    """
    Least-squares line through ``points``.

    Raises
    ------
    DegenerateFitError
        If fewer than two points are given or all points share one x value
    """
    if len(points) < _MIN_SEGMENT_POINTS:
        raise DegenerateFitError(
            f"Need at least {_MIN_SEGMENT_POINTS} points to fit a line, got {len(points)}"
        )

    x = np.array([p.x for p in points], dtype=float)
    y = np.array([p.y for p in points], dtype=float)
    x_mean = x.mean()
    y_mean = y.mean()
    sxx = float(np.sum((x - x_mean) ** 2))
    if sxx == 0.0:
        raise DegenerateFitError("Cannot fit a line to points that share one x value")

    slope = float(np.sum((x - x_mean) * (y - y_mean))) / sxx
    intercept = float(y_mean) - slope * float(x_mean)
    return LineFit(slope=slope, intercept=intercept, n_points=len(points))


def line_intersection_npop(sigma_line: LineFit, omega_line: LineFit) -> int:
    """
    Number of ecotypes where the two lines cross.

    Raises
    ------
    DegenerateFitError
        If the lines are parallel or cross below one cluster
    """
    m_s, b_s = sigma_line.slope, sigma_line.intercept
    m_o, b_o = omega_line.slope, omega_line.intercept

    if math.isclose(m_o, m_s, rel_tol=1e-9, abs_tol=1e-12):
        raise DegenerateFitError(
            f"Sigma and omega lines are parallel (slope {m_s:.6g}); no intersection"
        )

    log_npop = m_o * (b_s - b_o) / (m_o - m_s) + b_o
    if not math.isfinite(log_npop) or log_npop > 1023:
        raise DegenerateFitError(f"Line intersection is out of range (log2 npop = {log_npop})")

    npop = int(round(2.0 ** log_npop))
    if npop < 1:
        raise DegenerateFitError(
            f"Line intersection gives fewer than one ecotype (log2 npop = {log_npop:.4g})"
        )
    return npop


# ============================================================================
# Estimator
# ============================================================================

class CurveEstimator:
    """
    Fit the two-segment model to binning curves.

    Parameters
    ----------
    error_threshold : float
        Base squared-distance cutoff for moving points between segments
        (default: 0.1). Scaled by log2(n_sequences) when that is known.
    max_iterations : int
        Maximum number of refinement passes (default: 10)
    """

    def __init__(self, error_threshold: float = 0.1, max_iterations: int = 10):
        if error_threshold < 0:
            raise ValueError("error_threshold must be non-negative")
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.error_threshold = error_threshold
        self.max_iterations = max_iterations

    @classmethod
    def from_config(cls, config: EstimationConfig) -> 'CurveEstimator':
        return cls(error_threshold=config.error_threshold, max_iterations=config.max_iterations)

    def reassignment_threshold(self, n_sequences: Optional[int]) -> float:
        if n_sequences is None or n_sequences < 2:
            return self.error_threshold
        return self.error_threshold * math.log2(n_sequences)

    def estimate(
        self,
        bin_levels: Sequence[BinLevel],
        sequence_length: float,
        n_sequences: Optional[int] = None,
    ) -> CurveFit:
        """
        Estimate sigma, omega and npop from a binning curve.

        Parameters
        ----------
        bin_levels : Sequence[BinLevel]
            Binning curve
        sequence_length : float
            Alignment length after gap removal
        n_sequences : int, optional
            Number of sequences that were binned. Scales the reassignment
            threshold; when omitted the largest cluster count is used.

        Returns
        -------
        CurveFit
            The estimate together with both fitted lines

        Raises
        ------
        DegenerateFitError
            If the curve has fewer than three informative points, is flat,
            or the fitted lines are parallel or cross below one ecotype
        """
        points = transform_bin_levels(bin_levels, sequence_length)
        n_points = len(points)

        if n_points < 2 * _MIN_SEGMENT_POINTS - 1:
            raise DegenerateFitError(
                f"Binning curve has {n_points} informative point(s); at least "
                f"{2 * _MIN_SEGMENT_POINTS - 1} are needed for two line segments"
            )
        if len({p.y for p in points}) == 1:
            raise DegenerateFitError("Binning curve is flat; there is no two-line structure")

        if n_sequences is None:
            n_sequences = max(lvl.cluster_count for lvl in bin_levels)
        threshold = self.reassignment_threshold(n_sequences)

        boundary = self._clamp(n_points // 2, n_points)
        best_boundary = boundary
        best_error = math.inf
        previous_error: Optional[float] = None
        converged = False
        iterations = 0

        for iterations in range(1, self.max_iterations + 1):
            sigma_line, omega_line = self._fit_segments(points, boundary)
            error = self._total_error(points, boundary, sigma_line, omega_line)

            if error < best_error:
                best_error = error
                best_boundary = boundary

            if previous_error is not None and abs(previous_error - error) < np.finfo(float).eps:
                converged = True
                break
            previous_error = error

            new_boundary = self._reassign(points, boundary, sigma_line, omega_line, threshold)
            if new_boundary == boundary:
                converged = True
                break
            boundary = new_boundary

        if not converged:
            logger.debug(
                f"Curve fit did not settle within {self.max_iterations} passes; "
                f"using best split at point {best_boundary}"
            )
            boundary = best_boundary

        sigma_line, omega_line = self._fit_segments(points, boundary)
        npop = line_intersection_npop(sigma_line, omega_line)

        estimate = ParameterEstimate(
            npop=npop,
            omega=0.0 - omega_line.slope,
            sigma=0.0 - sigma_line.slope,
        )
        logger.debug(
            f"Estimated npop={estimate.npop}, omega={estimate.omega:.6g}, "
            f"sigma={estimate.sigma:.6g} from {n_points} points "
            f"(split at {boundary}, {iterations} pass(es))"
        )

        return CurveFit(
            estimate=estimate,
            sigma_line=sigma_line,
            omega_line=omega_line,
            points=tuple(points),
            boundary=boundary,
            iterations=iterations,
            converged=converged,
        )

    @staticmethod
    def _clamp(boundary: int, n_points: int) -> int:
        low = _MIN_SEGMENT_POINTS - 1
        high = n_points - _MIN_SEGMENT_POINTS
        return min(max(boundary, low), high)

    @staticmethod
    def _fit_segments(points: Sequence[Point], boundary: int) -> Tuple[LineFit, LineFit]:
        return fit_line(points[:boundary + 1]), fit_line(points[boundary:])

    @staticmethod
    def _total_error(
        points: Sequence[Point],
        boundary: int,
        sigma_line: LineFit,
        omega_line: LineFit,
    ) -> float:
        error = 0.0
        for i, point in enumerate(points):
            if i < boundary:
                error += sigma_line.squared_distance(point)
            elif i > boundary:
                error += omega_line.squared_distance(point)
            else:
                # The knee belongs to both segments; count it once
                error += min(
                    sigma_line.squared_distance(point),
                    omega_line.squared_distance(point),
                )
        return error

    def _reassign(
        self,
        points: Sequence[Point],
        boundary: int,
        sigma_line: LineFit,
        omega_line: LineFit,
        threshold: float,
    ) -> int:
        """New split position after moving interior points to the closer line."""
        n_points = len(points)
        in_sigma = [i <= boundary for i in range(n_points)]

        for i in range(1, n_points - 1):
            d_sigma = sigma_line.squared_distance(points[i])
            d_omega = omega_line.squared_distance(points[i])
            if min(d_sigma, d_omega) < threshold:
                in_sigma[i] = d_sigma <= d_omega

        run_end = 0
        while run_end + 1 < n_points and in_sigma[run_end + 1]:
            run_end += 1
        return self._clamp(run_end, n_points)


def estimate(
    bin_levels: Sequence[BinLevel],
    sequence_length: float,
    n_sequences: Optional[int] = None,
    config: Optional[EstimationConfig] = None,
) -> ParameterEstimate:
    """
    Estimate sigma, omega and npop from a binning curve.

    Convenience wrapper around :class:`CurveEstimator` that returns only the
    parameter estimate. See :meth:`CurveEstimator.estimate`.
    """
    estimator = CurveEstimator.from_config(config or EstimationConfig())
    return estimator.estimate(bin_levels, sequence_length, n_sequences).estimate
