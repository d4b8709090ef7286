"""
Sequence Binning Engine

This module groups sequences into bins at a series of divergence cutoffs and
records how many bins form at each cutoff. The resulting curve of
(threshold, cluster count) pairs is the input of the curve estimator.

Algorithm:
1. Collect the pairwise divergences of the requested leaf set into a square
   matrix and check it (finite, non-negative, symmetric, complete)
2. Build a hierarchical clustering of the leaves with SciPy
3. Cut the clustering at every threshold, from the largest down, and count
   the clusters

Key Concepts:
- Single linkage joins two sequences whenever their divergence is at or
  below the cutoff, so the bins are the connected components of that graph.
- Complete linkage only joins groups whose members are all within the
  cutoff of each other, which is the merge rule of the classic binning
  program.
- Counts can only grow as the cutoff shrinks. A curve that breaks this
  points at bad upstream divergence data and is reported, not repaired.

Example Usage:
    >>> from ecotyper.binning import BinningEngine
    >>> engine = BinningEngine(divergence_matrix)
    >>> for level in engine.compute_bin_levels(tree.leaf_names()):
    ...     print(level.threshold, level.cluster_count)
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union
import logging

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import linkage, fcluster
from scipy.spatial.distance import squareform

from .config import BinningConfig, DEFAULT_THRESHOLDS, VALID_LINKAGE_METHODS

logger = logging.getLogger(__name__)


class InconsistentBinningError(Exception):
    """Divergence data that cannot produce a valid binning curve."""
    pass


@dataclass(frozen=True)
class BinLevel:
    """
    One point of the binning curve.

    Attributes
    ----------
    threshold : float
        Divergence cutoff
    cluster_count : int
        Number of bins formed at that cutoff (always >= 1)
    """
    threshold: float
    cluster_count: int


class BinningEngine:
    """
    Compute binning curves for arbitrary leaf sets.

    Parameters
    ----------
    divergence : object
        Divergence source. Anything with a ``divergence(a, b) -> float``
        method works; a ``submatrix(names)`` method, when present, is used
        to fetch all pairs at once.
    thresholds : sequence of float, optional
        Divergence cutoffs (default: the classic identity levels 80% to 100%)
    linkage_method : str
        "single" (default) or "complete"
    collapse_duplicates : bool
        Keep only the first of consecutive levels with the same count
    """

    def __init__(
        self,
        divergence,
        thresholds: Optional[Sequence[float]] = None,
        linkage_method: str = "single",
        collapse_duplicates: bool = False,
    ):
        if linkage_method not in VALID_LINKAGE_METHODS:
            raise ValueError(f"Invalid linkage_method: {linkage_method}")

        if thresholds is None:
            thresholds = DEFAULT_THRESHOLDS
        thresholds = sorted((float(t) for t in thresholds), reverse=True)
        if not thresholds:
            raise ValueError("At least one threshold is required")
        if any(t < 0 for t in thresholds):
            raise ValueError("Thresholds must be non-negative")

        self.divergence = divergence
        self.thresholds = tuple(thresholds)
        self.linkage_method = linkage_method
        self.collapse_duplicates = collapse_duplicates

    @classmethod
    def from_config(cls, divergence, config: BinningConfig) -> 'BinningEngine':
        return cls(
            divergence,
            thresholds=config.thresholds,
            linkage_method=config.linkage_method,
            collapse_duplicates=config.collapse_duplicates,
        )

    def compute_bin_levels(self, leaf_names: Sequence[str]) -> List[BinLevel]:
        """
        Compute the binning curve for a set of leaves.

        Parameters
        ----------
        leaf_names : Sequence[str]
            Leaves to bin (a whole tree or one subtree)

        Returns
        -------
        List[BinLevel]
            Levels ordered by descending threshold. A single leaf gives one
            level with a count of 1.

        Raises
        ------
        ValueError
            If ``leaf_names`` is empty or contains duplicates
        InconsistentBinningError
            If a divergence is missing, negative, non-finite or asymmetric,
            or the counts are not monotone in the threshold
        """
        names = list(leaf_names)
        if not names:
            raise ValueError("Cannot bin an empty set of leaves")
        if len(set(names)) != len(names):
            raise ValueError("Leaf names passed to the binning engine must be unique")

        if len(names) == 1:
            return [BinLevel(self.thresholds[0], 1)]

        condensed = squareform(self._divergence_matrix(names), checks=False)
        tree = linkage(condensed, method=self.linkage_method)

        levels = []
        for threshold in self.thresholds:
            labels = fcluster(tree, t=threshold, criterion='distance')
            levels.append(BinLevel(threshold, int(len(np.unique(labels)))))

        _check_monotone(levels, names)

        if self.collapse_duplicates:
            levels = collapse_duplicate_levels(levels)

        logger.debug(
            f"Binned {len(names)} leaves: "
            + ", ".join(f"{lvl.threshold:g}->{lvl.cluster_count}" for lvl in levels)
        )
        return levels

    def _divergence_matrix(self, names: List[str]) -> np.ndarray:
        """Square divergence array for ``names``, validated."""
        try:
            if hasattr(self.divergence, 'submatrix'):
                matrix = np.asarray(self.divergence.submatrix(names), dtype=float)
            else:
                n = len(names)
                matrix = np.zeros((n, n))
                for i in range(n):
                    for j in range(n):
                        if i != j:
                            matrix[i, j] = self.divergence.divergence(names[i], names[j])
        except KeyError as e:
            raise InconsistentBinningError(
                f"Divergence source is missing pairs for leaf set of size "
                f"{len(names)}: {e}"
            ) from e

        if not np.isfinite(matrix).all():
            raise InconsistentBinningError(
                f"Non-finite divergence values in leaf set starting {names[:3]}"
            )
        if (matrix < 0).any():
            raise InconsistentBinningError(
                f"Negative divergence values in leaf set starting {names[:3]}"
            )
        if not np.allclose(matrix, matrix.T):
            raise InconsistentBinningError(
                f"Asymmetric divergence values in leaf set starting {names[:3]}"
            )

        # Use one triangle so tiny asymmetries cannot reach the clustering
        upper = np.triu(matrix, k=1)
        return upper + upper.T


def _check_monotone(levels: List[BinLevel], names: List[str]) -> None:
    for coarser, finer in zip(levels, levels[1:]):
        if finer.cluster_count < coarser.cluster_count:
            raise InconsistentBinningError(
                f"Cluster count fell from {coarser.cluster_count} at threshold "
                f"{coarser.threshold} to {finer.cluster_count} at threshold "
                f"{finer.threshold} for leaf set of size {len(names)}"
            )


def collapse_duplicate_levels(levels: Sequence[BinLevel]) -> List[BinLevel]:
    """
    Keep the first level of every run of equal cluster counts.

    Examples
    --------
    >>> collapse_duplicate_levels([BinLevel(0.1, 3), BinLevel(0.05, 3), BinLevel(0.01, 8)])
    [BinLevel(threshold=0.1, cluster_count=3), BinLevel(threshold=0.01, cluster_count=8)]
    """
    collapsed: List[BinLevel] = []
    for level in levels:
        if collapsed and collapsed[-1].cluster_count == level.cluster_count:
            continue
        collapsed.append(level)
    return collapsed


def bin_levels_to_dataframe(
    levels: Sequence[BinLevel],
    sequence_length: Optional[int] = None,
) -> pd.DataFrame:
    """
    Tabulate a binning curve.

    Columns are ``threshold``, ``identity`` and ``cluster_count``, plus
    ``snps`` (threshold x sequence length) when the length is given.
    """
    df = pd.DataFrame({
        'threshold': [lvl.threshold for lvl in levels],
        'identity': [1.0 - lvl.threshold for lvl in levels],
        'cluster_count': [lvl.cluster_count for lvl in levels],
    })
    if sequence_length is not None:
        df['snps'] = df['threshold'] * sequence_length
    return df


def write_bin_levels(
    levels: Sequence[BinLevel],
    output_path: Union[str, Path],
    sequence_length: Optional[int] = None,
) -> Path:
    """Write a binning curve as a TSV file."""
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    bin_levels_to_dataframe(levels, sequence_length).to_csv(path, sep='\t', index=False)
    logger.info(f"Wrote {len(levels)} binning levels to {path}")
    return path


def read_bin_levels(input_path: Union[str, Path]) -> List[BinLevel]:
    """Read a binning curve written by :func:`write_bin_levels`."""
    df = pd.read_csv(input_path, sep='\t')
    missing = {'threshold', 'cluster_count'} - set(df.columns)
    if missing:
        raise ValueError(f"Binning file {input_path} is missing columns: {sorted(missing)}")
    levels = [
        BinLevel(float(row.threshold), int(row.cluster_count))
        for row in df.itertuples(index=False)
    ]
    return sorted(levels, key=lambda lvl: lvl.threshold, reverse=True)
