"""
Unit tests for ecotype demarcation.

Tests cover:
- Recursive splitting driven by the confidence-interval oracle
- Exclusion of the outgroup and recombinants
- Oracle failures, missing results and cancellation
- Fallback to the reference estimate for unfittable subtrees
- Batch runs and result export
"""

import threading
import unittest

import pandas as pd
import pytest

from ecotyper.binning import BinningEngine
from ecotyper.config import get_default_config
from ecotyper.demarcation import (
    BoundsTableOracle,
    Demarcation,
    DemarcationCancelledError,
    DemarcationIncompleteError,
    DemarcationJob,
    DemarcationResult,
    EcotypeGroup,
    demarcate,
    demarcate_many,
    ecotypes_to_dataframe,
    write_ecotypes,
)
from ecotyper.divergence import DivergenceMatrix
from ecotyper.estimation import CurveEstimator, DegenerateFitError, ParameterEstimate
from ecotyper.tree import LeafNotFoundError, parse_newick

# After sorting, the leaf order is C, D, E, A, B, O
NEWICK = "(O:0.5,((A:0.01,B:0.01):0.1,((C:0.01,D:0.01):0.05,E:0.02):0.1):0.1);"
INGROUP = {"A", "B", "C", "D", "E"}
REFERENCE = ParameterEstimate(npop=10, omega=0.1, sigma=1.0)


def pairs_oracle(estimate, n_sequences):
    """Subtrees of at most two sequences are single ecotypes."""
    return (1.0, 1.0) if n_sequences <= 2 else (2.0, float(n_sequences))


class RecordingOracle:
    """Oracle that records its calls and answers from a size table."""

    def __init__(self, table):
        self.table = table
        self.calls = []

    def __call__(self, estimate, n_sequences):
        self.calls.append((estimate, n_sequences))
        result = self.table[n_sequences]
        if isinstance(result, Exception):
            raise result
        return result


def groups_of(result):
    return [tuple(group) for group in result]


class TestDemarcate(unittest.TestCase):
    """Test the recursive demarcation walk."""

    def setUp(self):
        self.tree = parse_newick(NEWICK)

    def test_splits_until_oracle_accepts(self):
        oracle = RecordingOracle({5: (2, 4), 3: (2, 3), 2: (1, 1)})
        result = demarcate(self.tree, "O", [], oracle, reference=REFERENCE)
        self.assertEqual(groups_of(result), [("C", "D"), ("E",), ("A", "B")])
        self.assertEqual(result.outgroup, "O")
        self.assertEqual(result.recombinants, [])
        self.assertTrue(result.is_complete)

    def test_memoises_identical_leaf_sets(self):
        """The root and its only ingroup child share one oracle call."""
        oracle = RecordingOracle({5: (2, 4), 3: (2, 3), 2: (1, 1)})
        demarcate(self.tree, "O", [], oracle, reference=REFERENCE)
        self.assertEqual([n for _, n in oracle.calls], [5, 3, 2, 2])

    def test_groups_cover_ingroup_exactly_once(self):
        result = demarcate(self.tree, "O", [], pairs_oracle, reference=REFERENCE)
        members = [name for group in result for name in group]
        self.assertEqual(len(members), len(set(members)))
        self.assertEqual(set(members), INGROUP)
        self.assertEqual(result.n_ecotypes, len(result))

    def test_lower_bound_of_one_accepts_whole_tree(self):
        oracle = RecordingOracle({5: (1, 7)})
        result = demarcate(self.tree, "O", [], oracle, reference=REFERENCE)
        self.assertEqual(groups_of(result), [("C", "D", "E", "A", "B")])
        self.assertEqual(len(oracle.calls), 1)

    def test_single_leaves_never_reach_oracle(self):
        def oracle(estimate, n_sequences):
            if n_sequences < 2:
                raise AssertionError("oracle called for a single sequence")
            return (2.0, 3.0)

        result = demarcate(self.tree, "O", [], oracle, reference=REFERENCE)
        self.assertEqual(groups_of(result), [("C",), ("D",), ("E",), ("A",), ("B",)])

    def test_recombinants_excluded(self):
        result = demarcate(self.tree, "O", ["E", "not_in_tree"], pairs_oracle, reference=REFERENCE)
        self.assertEqual(groups_of(result), [("C", "D"), ("A", "B")])
        self.assertEqual(result.recombinants, ["E"])

    def test_unsorted_tree_order(self):
        config = get_default_config().update(demarcation__sort_tree=False)
        result = demarcate(self.tree, "O", [], pairs_oracle, config=config, reference=REFERENCE)
        self.assertEqual(groups_of(result), [("A", "B"), ("C", "D"), ("E",)])

    def test_input_tree_not_modified(self):
        before = self.tree.to_newick()
        demarcate(self.tree, "O", [], pairs_oracle, reference=REFERENCE)
        self.assertEqual(self.tree.to_newick(), before)

    def test_unknown_outgroup(self):
        with self.assertRaises(LeafNotFoundError):
            demarcate(self.tree, "missing", [], pairs_oracle, reference=REFERENCE)

    def test_assignments(self):
        result = demarcate(self.tree, "O", [], pairs_oracle, reference=REFERENCE)
        self.assertEqual(
            result.assignments(),
            {"C": 1, "D": 1, "E": 2, "A": 3, "B": 3},
        )


class TestDegenerateSubtrees(unittest.TestCase):
    """Test subtrees whose binning curve has no two-line structure."""

    def setUp(self):
        self.tree = parse_newick(NEWICK)

    def test_scaled_reference_estimate(self):
        """A two-leaf subtree reuses the reference with npop scaled by 2/5."""
        oracle = RecordingOracle({5: (2, 4), 3: (2, 3), 2: (1, 1)})
        demarcate(self.tree, "O", [], oracle, reference=REFERENCE)
        pair_estimates = [estimate for estimate, n in oracle.calls if n == 2]
        self.assertTrue(pair_estimates)
        for estimate in pair_estimates:
            self.assertEqual(estimate.npop, 4)
            self.assertEqual(estimate.sigma, REFERENCE.sigma)
            self.assertEqual(estimate.omega, REFERENCE.omega)

    def test_fallback_disabled(self):
        config = get_default_config().update(
            demarcation__scale_reference_on_degenerate_fit=False
        )
        with self.assertRaises(DegenerateFitError):
            demarcate(self.tree, "O", [], pairs_oracle, config=config, reference=REFERENCE)

    def test_unfittable_ingroup_without_reference(self):
        """Without a reference, the error names the subtree and the oracle is never asked."""
        oracle = RecordingOracle({2: (1, 1)})
        tree = parse_newick("(O:0.1,(A:0.05,B:0.05):0.1);")
        with self.assertRaises(DegenerateFitError) as ctx:
            demarcate(tree, "O", [], oracle)
        self.assertIn("subtree of 2 sequences", str(ctx.exception))
        self.assertIn("'A'", str(ctx.exception))
        self.assertIsInstance(ctx.exception.__cause__, DegenerateFitError)
        self.assertEqual(oracle.calls, [])

    def test_unfittable_ingroup_with_reference(self):
        oracle = RecordingOracle({2: (1, 1)})
        tree = parse_newick("(O:0.1,(A:0.05,B:0.05):0.1);")
        result = demarcate(tree, "O", [], oracle, reference=REFERENCE)
        self.assertEqual(groups_of(result), [("A", "B")])
        self.assertEqual([n for _, n in oracle.calls], [2])
        self.assertEqual(oracle.calls[0][0].npop, REFERENCE.npop)

    def test_sequence_length_must_be_positive(self):
        engine = BinningEngine(DivergenceMatrix.from_tree(self.tree))
        with self.assertRaises(ValueError):
            Demarcation(engine, CurveEstimator(), sequence_length=0)


class TestIncompleteRuns(unittest.TestCase):
    """Test oracle failures and cancellation."""

    def setUp(self):
        self.tree = parse_newick(NEWICK)

    def test_oracle_exception(self):
        oracle = RecordingOracle({5: (2, 4), 3: RuntimeError("sampler crashed"), 2: (1, 1)})
        with self.assertRaises(DemarcationIncompleteError) as ctx:
            demarcate(self.tree, "O", [], oracle, reference=REFERENCE)
        self.assertEqual(ctx.exception.leaf_names, ("C", "D", "E"))
        self.assertEqual(ctx.exception.groups, [])
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)

    def test_oracle_returns_nothing(self):
        oracle = RecordingOracle({5: None})
        with self.assertRaises(DemarcationIncompleteError):
            demarcate(self.tree, "O", [], oracle, reference=REFERENCE)

    def test_malformed_bounds(self):
        for bounds in ("abc", (1.0,), (3.0, 1.0), (float("nan"), 2.0)):
            with self.subTest(bounds=bounds):
                oracle = RecordingOracle({5: bounds})
                with self.assertRaises(DemarcationIncompleteError):
                    demarcate(self.tree, "O", [], oracle, reference=REFERENCE)

    def test_continue_past_failures(self):
        config = get_default_config().update(demarcation__stop_on_incomplete=False)
        oracle = RecordingOracle({5: (2, 4), 3: RuntimeError("sampler crashed"), 2: (1, 1)})
        result = demarcate(self.tree, "O", [], oracle, config=config, reference=REFERENCE)
        self.assertEqual(groups_of(result), [("A", "B")])
        self.assertEqual(result.incomplete, [("C", "D", "E")])
        self.assertFalse(result.is_complete)

    def test_cancelled_before_oracle(self):
        event = threading.Event()
        event.set()
        with self.assertRaises(DemarcationCancelledError):
            demarcate(self.tree, "O", [], pairs_oracle, reference=REFERENCE, cancel_event=event)

    def test_cancelled_during_oracle(self):
        """Cancellation is honoured even when continuing past failures."""
        event = threading.Event()

        def oracle(estimate, n_sequences):
            if n_sequences == 2:
                event.set()
            return pairs_oracle(estimate, n_sequences)

        config = get_default_config().update(demarcation__stop_on_incomplete=False)
        with self.assertRaises(DemarcationCancelledError) as ctx:
            demarcate(self.tree, "O", [], oracle, config=config,
                      reference=REFERENCE, cancel_event=event)
        self.assertEqual(ctx.exception.leaf_names, ("C", "D"))


class TestOraclesAndResults:
    """Test the bounds table oracle, batch runs and export."""

    def test_bounds_table_lookup(self):
        oracle = BoundsTableOracle({2: (1, 1), 5: (2, 4)}, default=(3, 6))
        assert oracle(REFERENCE, 2) == (1, 1)
        assert oracle(REFERENCE, 9) == (3, 6)

    def test_bounds_table_missing_size(self):
        with pytest.raises(LookupError):
            BoundsTableOracle({2: (1, 1)})(REFERENCE, 3)

    def test_bounds_table_from_csv(self, tmp_path):
        path = tmp_path / "bounds.tsv"
        path.write_text("n_sequences\tlower\tupper\n2\t1\t1\n5\t2\t4\n")
        oracle = BoundsTableOracle.from_csv(path)
        assert oracle.bounds == {2: (1.0, 1.0), 5: (2.0, 4.0)}

    def test_bounds_table_drives_demarcation(self):
        tree = parse_newick(NEWICK)
        oracle = BoundsTableOracle({5: (2, 4), 3: (2, 3), 2: (1, 1)})
        result = demarcate(tree, "O", [], oracle, reference=REFERENCE)
        assert groups_of(result) == [("C", "D"), ("E",), ("A", "B")]

    def test_demarcate_many_sequential(self):
        """Each job's reference estimate is used for its unfittable subtrees."""
        first = RecordingOracle({5: (2, 4), 3: (2, 3), 2: (1, 1)})
        jobs = [
            DemarcationJob(parse_newick(NEWICK), "O", first, reference=REFERENCE, label="first"),
            DemarcationJob(
                parse_newick(NEWICK), "O", pairs_oracle, recombinants=["E"], reference=REFERENCE
            ),
        ]
        results = demarcate_many(jobs, n_processes=1)
        assert [groups_of(r) for r in results] == [
            [("C", "D"), ("E",), ("A", "B")],
            [("C", "D"), ("A", "B")],
        ]
        assert {estimate.npop for estimate, n in first.calls if n == 2} == {4}

    def test_demarcate_many_in_processes(self):
        jobs = [
            DemarcationJob(parse_newick(NEWICK), "O", pairs_oracle, reference=REFERENCE),
            DemarcationJob(
                parse_newick(NEWICK), "O", pairs_oracle, recombinants=["E"], reference=REFERENCE
            ),
        ]
        results = demarcate_many(jobs, n_processes=2)
        assert [groups_of(r) for r in results] == [
            [("C", "D"), ("E",), ("A", "B")],
            [("C", "D"), ("A", "B")],
        ]
        assert [r.recombinants for r in results] == [[], ["E"]]

    def test_demarcate_many_invalid_processes(self):
        with pytest.raises(ValueError):
            demarcate_many([], n_processes=0)

    def test_empty_group_rejected(self):
        with pytest.raises(ValueError):
            EcotypeGroup(())

    def test_group_behaves_like_sequence(self):
        group = EcotypeGroup(["A", "B"])
        assert group.members == ("A", "B")
        assert "A" in group
        assert len(group) == 2

    def test_ecotypes_dataframe(self):
        result = DemarcationResult(
            groups=[EcotypeGroup(("A", "B")), EcotypeGroup(("C",))],
            outgroup="O",
            recombinants=["R"],
            incomplete=[("D", "E")],
        )
        df = ecotypes_to_dataframe(result)
        assert df['sequence'].tolist() == ["A", "B", "C", "D", "E", "O", "R"]
        assert df['status'].tolist() == [
            "ecotype", "ecotype", "ecotype", "unresolved", "unresolved", "outgroup", "recombinant",
        ]
        assert str(df['ecotype'].dtype) == "Int64"
        assert df['ecotype'].iloc[:3].tolist() == [1, 1, 2]
        assert df['ecotype'].iloc[3:].isna().all()

    def test_write_ecotypes(self, tmp_path):
        result = DemarcationResult(groups=[EcotypeGroup(("A",))], outgroup="O")
        path = write_ecotypes(result, tmp_path / "out" / "ecotypes.tsv")
        df = pd.read_csv(path, sep='\t')
        assert df['sequence'].tolist() == ["A", "O"]
        assert df['status'].tolist() == ["ecotype", "outgroup"]


if __name__ == '__main__':
    unittest.main()
