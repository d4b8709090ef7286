"""
Ecotyper: Ecotype Demarcation from Bacterial Gene Sequences

Ecotyper estimates, from a set of related bacterial gene sequences, whether
and how the population splits into ecotypes: clusters of sequences shaped by
periodic selection and genetic drift.

Core functionality includes:
- Newick tree parsing, serialization, rerooting and sorting
- Sequence binning across a series of divergence cutoffs
- Two-segment curve fitting for omega, sigma and npop starting values
- Recursive ecotype demarcation driven by confidence-interval bounds

The likelihood-sampling programs that produce the confidence intervals are
external; they plug in as oracles (see ecotyper.demarcation).
"""

__version__ = "0.1.0"

from . import config
from . import utils
from . import tree
from . import divergence
from . import binning
from . import estimation
from . import demarcation
from . import core

from .tree import Tree, TreeNode, parse_newick, read_newick
from .binning import BinLevel, BinningEngine
from .estimation import CurveEstimator, ParameterEstimate, estimate
from .demarcation import EcotypeGroup, DemarcationResult, demarcate

__all__ = [
    "config",
    "utils",
    "tree",
    "divergence",
    "binning",
    "estimation",
    "demarcation",
    "core",
    "Tree",
    "TreeNode",
    "parse_newick",
    "read_newick",
    "BinLevel",
    "BinningEngine",
    "CurveEstimator",
    "ParameterEstimate",
    "estimate",
    "EcotypeGroup",
    "DemarcationResult",
    "demarcate",
]
