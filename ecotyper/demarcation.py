"""
Ecotype Demarcation

This module partitions a rooted tree into ecotypes. Starting at the root, each
subtree is binned, its binning curve is fitted and the resulting parameter
estimate is handed to a confidence-interval oracle. When the lower bound of
the interval on the number of ecotypes is exactly one, the subtree is
declared a single ecotype; otherwise its children are examined in turn.

Workflow:
1. Exclude the outgroup and the recombinants (tree leaves that are missing
   from the sequence set) from every leaf set
2. For each node, depth first and left to right:
   - no remaining leaves: nothing is emitted
   - one remaining leaf: that leaf is its own ecotype (the oracle is not
     consulted)
   - otherwise: bin, estimate, ask the oracle, then emit the subtree or
     descend into the children
3. Collect the ecotypes in the order they were emitted

Key Concepts:
- The oracle is any callable ``oracle(estimate, n_sequences)`` returning a
  ``(lower, upper)`` pair. In the full application it wraps the external
  confidence-interval programs. Any failure, a missing result or a
  cancellation becomes a DemarcationIncompleteError for that subtree; no
  default is ever substituted.
- Small subtrees often give binning curves with no two-line structure. Such
  subtrees reuse the whole-tree (reference) estimate with npop scaled by
  the subtree's share of the sequences.
- The oracle call is the only point where a run can be cancelled, through a
  ``threading.Event`` supplied by the caller.
- Independent runs, for example on alternative trees, can be spread over
  worker processes with :func:`demarcate_many`.

Example Usage:
    >>> from ecotyper.demarcation import demarcate
    >>> def oracle(estimate, n_sequences):
    ...     return run_confidence_interval_program(estimate, n_sequences)
    >>> result = demarcate(tree, "outgroup", recombinants=[], oracle=oracle,
    ...                    divergence=matrix, sequence_length=1200)
    >>> for number, group in enumerate(result, 1):
    ...     print(number, list(group))
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import (
    Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Union,
)
import logging
import math
import multiprocessing as mp
import threading

import pandas as pd

from .binning import BinningEngine
from .config import AnalysisConfig, DemarcationConfig, get_default_config
from .divergence import DivergenceMatrix
from .estimation import CurveEstimator, DegenerateFitError, ParameterEstimate
from .tree import Tree, TreeNode

logger = logging.getLogger(__name__)

Bounds = Tuple[float, float]
Oracle = Callable[[ParameterEstimate, int], Optional[Bounds]]


class DemarcationError(Exception):
    """Base exception for demarcation errors."""
    pass


class DemarcationIncompleteError(DemarcationError):
    """
    The oracle did not resolve a subtree.

    Attributes
    ----------
    leaf_names : tuple of str
        Leaves of the unresolved subtree
    groups : list of EcotypeGroup
        Ecotypes resolved before the failure
    """

    def __init__(
        self,
        message: str,
        leaf_names: Sequence[str] = (),
        groups: Optional[List['EcotypeGroup']] = None,
    ):
        super().__init__(message)
        self.leaf_names = tuple(leaf_names)
        self.groups = list(groups or [])


class DemarcationCancelledError(DemarcationIncompleteError):
    """The caller cancelled the run while a subtree was being evaluated."""
    pass


# ============================================================================
# Results
# ============================================================================

@dataclass(frozen=True)
class EcotypeGroup:
    """Ordered leaf names making up one ecotype."""
    members: Tuple[str, ...]

    def __post_init__(self):
        object.__setattr__(self, 'members', tuple(self.members))
        if not self.members:
            raise ValueError("An ecotype must contain at least one sequence")

    def __iter__(self) -> Iterator[str]:
        return iter(self.members)

    def __len__(self) -> int:
        return len(self.members)

    def __contains__(self, name: object) -> bool:
        return name in self.members


@dataclass
class DemarcationResult:
    """
    Outcome of a demarcation run.

    Iterating over the result yields the ecotype groups in order.

    Attributes
    ----------
    groups : list of EcotypeGroup
        Ecotypes in the order they were found
    outgroup : str
        The excluded outgroup
    recombinants : list of str
        Excluded recombinant sequences, in tree order
    incomplete : list of tuple of str
        Leaf sets of subtrees the oracle failed on. Only populated when the
        run was configured to continue past such failures.
    """
    groups: List[EcotypeGroup] = field(default_factory=list)
    outgroup: Optional[str] = None
    recombinants: List[str] = field(default_factory=list)
    incomplete: List[Tuple[str, ...]] = field(default_factory=list)

    def __iter__(self) -> Iterator[EcotypeGroup]:
        return iter(self.groups)

    def __len__(self) -> int:
        return len(self.groups)

    def __getitem__(self, index: int) -> EcotypeGroup:
        return self.groups[index]

    @property
    def n_ecotypes(self) -> int:
        return len(self.groups)

    @property
    def is_complete(self) -> bool:
        return not self.incomplete

    def assignments(self) -> Dict[str, int]:
        """Map every demarcated sequence to its 1-based ecotype number."""
        return {
            name: number
            for number, group in enumerate(self.groups, 1)
            for name in group
        }


# ============================================================================
# Oracles
# ============================================================================

class ConfidenceIntervalOracle(ABC):
    """
    Base class for confidence-interval oracles.

    Subclasses return the ``(lower, upper)`` confidence interval on the
    number of ecotypes for a parameter estimate and leaf-set size. Plain
    functions with the same signature are accepted wherever an oracle is.
    """

    @abstractmethod
    def __call__(self, estimate: ParameterEstimate, n_sequences: int) -> Bounds:
        ...


class BoundsTableOracle(ConfidenceIntervalOracle):
    """
    Oracle serving precomputed confidence intervals keyed by leaf-set size.

    Parameters
    ----------
    bounds : Mapping[int, Tuple[float, float]]
        Interval for each leaf-set size
    default : Tuple[float, float], optional
        Interval for sizes missing from ``bounds``. Without it a missing
        size is an error.
    """

    def __init__(self, bounds: Mapping[int, Bounds], default: Optional[Bounds] = None):
        self.bounds = dict(bounds)
        self.default = default

    def __call__(self, estimate: ParameterEstimate, n_sequences: int) -> Bounds:
        if n_sequences in self.bounds:
            return self.bounds[n_sequences]
        if self.default is not None:
            return self.default
        raise LookupError(f"No confidence interval available for {n_sequences} sequences")

    @classmethod
    def from_csv(cls, path: Union[str, Path], sep: str = '\t') -> 'BoundsTableOracle':
        """Load a table with ``n_sequences``, ``lower`` and ``upper`` columns."""
        df = pd.read_csv(path, sep=sep)
        bounds = {
            int(row.n_sequences): (float(row.lower), float(row.upper))
            for row in df.itertuples(index=False)
        }
        logger.info(f"Loaded {len(bounds)} confidence intervals from {path}")
        return cls(bounds)


def _validate_bounds(bounds: object, leaf_names: Sequence[str]) -> Bounds:
    try:
        lower, upper = bounds
        lower = float(lower)
        upper = float(upper)
    except (TypeError, ValueError):
        raise DemarcationIncompleteError(
            f"Oracle returned malformed bounds {bounds!r} for subtree of "
            f"{len(leaf_names)} sequences",
            leaf_names,
        ) from None

    if not (math.isfinite(lower) and math.isfinite(upper)) or lower > upper:
        raise DemarcationIncompleteError(
            f"Oracle returned invalid bounds ({lower}, {upper}) for subtree of "
            f"{len(leaf_names)} sequences",
            leaf_names,
        )
    return lower, upper


# ============================================================================
# Demarcation Procedure
# ============================================================================

@dataclass
class _RunState:
    oracle: Oracle
    excluded: Set[str]
    total: int
    cancel_event: Optional[threading.Event]
    reference: Optional[ParameterEstimate]
    reference_names: List[str]
    groups: List[EcotypeGroup] = field(default_factory=list)
    incomplete: List[Tuple[str, ...]] = field(default_factory=list)
    verdicts: Dict[Tuple[str, ...], bool] = field(default_factory=dict)


class Demarcation:
    """
    Recursive ecotype demarcation over a tree.

    Parameters
    ----------
    engine : BinningEngine
        Binning engine bound to the run's divergence source
    estimator : CurveEstimator
        Curve estimator
    sequence_length : float
        Alignment length after gap removal
    config : DemarcationConfig, optional
        Walk behaviour (default: DemarcationConfig())
    """

    def __init__(
        self,
        engine: BinningEngine,
        estimator: CurveEstimator,
        sequence_length: float,
        config: Optional[DemarcationConfig] = None,
    ):
        if sequence_length <= 0:
            raise ValueError(f"sequence_length must be positive, got {sequence_length}")
        self.engine = engine
        self.estimator = estimator
        self.sequence_length = sequence_length
        self.config = config or DemarcationConfig()

    def demarcate(
        self,
        tree: Tree,
        outgroup_name: str,
        recombinants: Iterable[str],
        oracle: Oracle,
        reference: Optional[ParameterEstimate] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> DemarcationResult:
        """
        Split ``tree`` into ecotypes.

        Parameters
        ----------
        tree : Tree
            Tree to demarcate. It is not modified.
        outgroup_name : str
            Outgroup leaf, excluded from every ecotype
        recombinants : Iterable[str]
            Leaves to exclude as recombinants
        oracle : callable
            ``oracle(estimate, n_sequences) -> (lower, upper)``
        reference : ParameterEstimate, optional
            Whole-tree estimate used when a subtree's curve cannot be
            fitted. Computed from the full demarcated leaf set on first
            use when not given.
        cancel_event : threading.Event, optional
            When set, the run stops at the next oracle call

        Returns
        -------
        DemarcationResult
            Ecotypes plus the excluded outgroup and recombinants

        Raises
        ------
        LeafNotFoundError
            If the outgroup is not a leaf of the tree
        DemarcationIncompleteError
            If the oracle fails on a subtree (and the configuration says
            to stop) or the run is cancelled
        DegenerateFitError
            If a subtree's curve cannot be fitted and there is no usable
            reference estimate (pass ``reference`` for small ingroups)
        """
        tree.find(outgroup_name)

        working = tree.copy()
        if self.config.sort_tree:
            working.sort_children()

        leaf_names = working.leaf_names()
        leaf_set = set(leaf_names)
        recombinant_set = set(recombinants)
        unknown = recombinant_set - leaf_set
        if unknown:
            logger.warning(
                f"Ignoring {len(unknown)} recombinant name(s) not found in tree: "
                f"{sorted(unknown)[:5]}"
            )
        recombinant_set &= leaf_set
        recombinant_set.discard(outgroup_name)

        excluded = recombinant_set | {outgroup_name}
        reference_names = [name for name in leaf_names if name not in excluded]

        state = _RunState(
            oracle=oracle,
            excluded=excluded,
            total=len(reference_names),
            cancel_event=cancel_event,
            reference=reference,
            reference_names=reference_names,
        )

        logger.info(
            f"Demarcating {state.total} sequences "
            f"(outgroup: {outgroup_name}, recombinants: {len(recombinant_set)})"
        )

        self._evaluate(working.root, state)

        result = DemarcationResult(
            groups=state.groups,
            outgroup=outgroup_name,
            recombinants=[name for name in leaf_names if name in recombinant_set],
            incomplete=state.incomplete,
        )
        logger.info(f"Demarcation found {result.n_ecotypes} ecotype(s)")
        if state.incomplete:
            logger.warning(f"{len(state.incomplete)} subtree(s) could not be resolved")
        return result

    def _evaluate(self, node: TreeNode, state: _RunState) -> None:
        names = [name for name in node.leaf_names() if name not in state.excluded]
        if not names:
            return

        if node.is_leaf or len(names) == 1:
            state.groups.append(EcotypeGroup(tuple(names)))
            return

        key = tuple(names)
        if key not in state.verdicts:
            try:
                state.verdicts[key] = self._is_single_ecotype(names, state)
            except DemarcationCancelledError:
                raise
            except DemarcationIncompleteError as e:
                if self.config.stop_on_incomplete:
                    raise
                logger.warning(f"Skipping unresolved subtree of {len(names)} sequences: {e}")
                state.incomplete.append(key)
                return

        if state.verdicts[key]:
            state.groups.append(EcotypeGroup(key))
            return

        for child in node.children:
            self._evaluate(child, state)

    def _is_single_ecotype(self, names: List[str], state: _RunState) -> bool:
        estimate = self._estimate_for(names, state)
        bounds = self._consult_oracle(names, estimate, state)
        lower, upper = bounds
        logger.debug(
            f"Subtree of {len(names)} sequences: npop={estimate.npop}, "
            f"interval=({lower:g}, {upper:g})"
        )
        return lower == 1

    def _estimate_for(self, names: List[str], state: _RunState) -> ParameterEstimate:
        levels = self.engine.compute_bin_levels(names)
        try:
            fit = self.estimator.estimate(levels, self.sequence_length, n_sequences=len(names))
            return fit.estimate
        except DegenerateFitError as e:
            if not self.config.scale_reference_on_degenerate_fit:
                raise DegenerateFitError(
                    f"{e} (subtree of {len(names)} sequences: {names[:5]})"
                ) from e

        try:
            reference = self._reference_estimate(state)
        except DegenerateFitError as e:
            raise DegenerateFitError(
                f"No two-line fit for subtree of {len(names)} sequences ({names[:5]}) "
                f"and no reference estimate to fall back on: {e}"
            ) from e
        scaled = reference.scaled(len(names) / state.total)
        logger.warning(
            f"No two-line fit for subtree of {len(names)} sequences; using reference "
            f"estimate with npop scaled to {scaled.npop}"
        )
        return scaled

    def _reference_estimate(self, state: _RunState) -> ParameterEstimate:
        if state.reference is None:
            levels = self.engine.compute_bin_levels(state.reference_names)
            fit = self.estimator.estimate(
                levels, self.sequence_length, n_sequences=len(state.reference_names)
            )
            state.reference = fit.estimate
            logger.info(
                f"Reference estimate: npop={fit.estimate.npop}, "
                f"omega={fit.estimate.omega:.6g}, sigma={fit.estimate.sigma:.6g}"
            )
        return state.reference

    def _consult_oracle(
        self,
        names: List[str],
        estimate: ParameterEstimate,
        state: _RunState,
    ) -> Bounds:
        if state.cancel_event is not None and state.cancel_event.is_set():
            raise DemarcationCancelledError(
                f"Demarcation cancelled before evaluating subtree of {len(names)} sequences",
                names,
                state.groups,
            )

        try:
            bounds = state.oracle(estimate, len(names))
        except Exception as e:
            logger.error(f"Confidence interval oracle failed for {len(names)} sequences: {e}")
            raise DemarcationIncompleteError(
                f"Confidence interval oracle failed for subtree of {len(names)} "
                f"sequences: {e}",
                names,
                state.groups,
            ) from e

        if state.cancel_event is not None and state.cancel_event.is_set():
            raise DemarcationCancelledError(
                f"Demarcation cancelled while evaluating subtree of {len(names)} sequences",
                names,
                state.groups,
            )

        if bounds is None:
            raise DemarcationIncompleteError(
                f"Confidence interval oracle returned no result for subtree of "
                f"{len(names)} sequences",
                names,
                state.groups,
            )

        try:
            return _validate_bounds(bounds, names)
        except DemarcationIncompleteError as e:
            e.groups = list(state.groups)
            raise


def demarcate(
    tree: Tree,
    outgroup_name: str,
    recombinants: Iterable[str],
    oracle: Oracle,
    divergence=None,
    sequence_length: Optional[float] = None,
    config: Optional[AnalysisConfig] = None,
    reference: Optional[ParameterEstimate] = None,
    cancel_event: Optional[threading.Event] = None,
) -> DemarcationResult:
    """
    Split a tree into ecotypes.

    Parameters
    ----------
    tree : Tree
        Tree rooted on the outgroup
    outgroup_name : str
        Outgroup leaf
    recombinants : Iterable[str]
        Leaves to exclude as recombinants
    oracle : callable
        ``oracle(estimate, n_sequences) -> (lower, upper)``
    divergence : object, optional
        Divergence source (default: patristic distances of ``tree``)
    sequence_length : float, optional
        Alignment length after gap removal. Without it, rates are expressed
        per unit of divergence.
    config : AnalysisConfig, optional
        Analysis configuration (default: get_default_config())
    reference : ParameterEstimate, optional
        Whole-tree estimate for subtrees whose curve cannot be fitted
    cancel_event : threading.Event, optional
        Cooperative cancellation flag

    Returns
    -------
    DemarcationResult
        Iterable over the EcotypeGroups found
    """
    config = config or get_default_config()
    if divergence is None:
        divergence = DivergenceMatrix.from_tree(tree)
    if sequence_length is None:
        sequence_length = 1.0

    engine = BinningEngine.from_config(divergence, config.binning)
    estimator = CurveEstimator.from_config(config.estimation)
    procedure = Demarcation(engine, estimator, sequence_length, config.demarcation)
    return procedure.demarcate(
        tree, outgroup_name, recombinants, oracle,
        reference=reference, cancel_event=cancel_event,
    )


# ============================================================================
# Batch Runs
# ============================================================================

@dataclass
class DemarcationJob:
    """
    One independent demarcation run for :func:`demarcate_many`.

    The oracle and divergence source must be picklable (module-level
    functions or classes) when more than one process is used.
    """
    tree: Tree
    outgroup_name: str
    oracle: Oracle
    recombinants: List[str] = field(default_factory=list)
    divergence: object = None
    sequence_length: Optional[float] = None
    reference: Optional[ParameterEstimate] = None
    label: str = ""


def _demarcation_worker(job: DemarcationJob, config: AnalysisConfig) -> DemarcationResult:
    """Run one job (module level so that it can be pickled)."""
    logger.debug(f"Starting demarcation job {job.label or job.outgroup_name}")
    return demarcate(
        job.tree,
        job.outgroup_name,
        job.recombinants,
        job.oracle,
        divergence=job.divergence,
        sequence_length=job.sequence_length,
        config=config,
        reference=job.reference,
    )


def demarcate_many(
    jobs: Sequence[DemarcationJob],
    n_processes: int = 1,
    config: Optional[AnalysisConfig] = None,
) -> List[DemarcationResult]:
    """
    Run independent demarcations, optionally in parallel.

    Each job owns its tree and intermediate state; nothing is shared
    between runs.

    Parameters
    ----------
    jobs : Sequence[DemarcationJob]
        Runs to perform
    n_processes : int
        Worker processes (default: 1, run sequentially in this process)
    config : AnalysisConfig, optional
        Configuration shared by all runs

    Returns
    -------
    List[DemarcationResult]
        Results in job order
    """
    if n_processes < 1:
        raise ValueError("n_processes must be at least 1")

    config = config or get_default_config()
    worker_func = partial(_demarcation_worker, config=config)

    logger.info(f"Running {len(jobs)} demarcation(s) using {n_processes} process(es)")

    if n_processes > 1 and len(jobs) > 1:
        with mp.Pool(processes=min(n_processes, len(jobs))) as pool:
            results = pool.map(worker_func, jobs)
    else:
        results = list(map(worker_func, jobs))

    return results


# ============================================================================
# Export
# ============================================================================

def ecotypes_to_dataframe(result: DemarcationResult) -> pd.DataFrame:
    """
    Tabulate a demarcation result.

    Returns
    -------
    pd.DataFrame
        One row per sequence with columns ``sequence``, ``ecotype`` (1-based
        number, empty for excluded sequences) and ``status`` ("ecotype",
        "outgroup", "recombinant" or "unresolved")
    """
    rows = []
    for number, group in enumerate(result.groups, 1):
        for name in group:
            rows.append({'sequence': name, 'ecotype': number, 'status': 'ecotype'})
    for names in result.incomplete:
        for name in names:
            rows.append({'sequence': name, 'ecotype': None, 'status': 'unresolved'})
    if result.outgroup is not None:
        rows.append({'sequence': result.outgroup, 'ecotype': None, 'status': 'outgroup'})
    for name in result.recombinants:
        rows.append({'sequence': name, 'ecotype': None, 'status': 'recombinant'})

    df = pd.DataFrame(rows, columns=['sequence', 'ecotype', 'status'])
    df['ecotype'] = df['ecotype'].astype('Int64')
    return df


def write_ecotypes(
    result: DemarcationResult,
    output_path: Union[str, Path],
    sep: str = '\t',
) -> Path:
    """Write a demarcation result as a delimited table (TSV by default)."""
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    ecotypes_to_dataframe(result).to_csv(path, sep=sep, index=False)
    logger.info(f"Wrote {result.n_ecotypes} ecotype(s) to {path}")
    return path
