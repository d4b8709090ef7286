"""
Unit tests for the tree model.

Tests cover:
- Newick parsing, including malformed input
- Serialization and parse/serialize round trips
- Rerooting on an outgroup leaf
- Child sorting with default and custom keys
- Leaf removal without collapsing the parent
- Patristic distances and pickling
- Trees deeper than the recursion limit
"""

import pickle
import sys
import unittest
from io import StringIO

import numpy as np
import pytest
from Bio import Phylo

from ecotyper.tree import (
    LeafNotFoundError,
    MalformedTreeError,
    Tree,
    TreeError,
    TreeNode,
    default_sort_key,
    parse_newick,
    read_newick,
)

SCENARIO = "(A:0.1,(B:0.05,C:0.02):0.03);"
LARGER = "((A:0.1,B:0.2):0.05,(C:0.3,(D:0.1,E:0.15):0.02):0.1,F:0.4);"


def root_distances(tree):
    return {leaf.name: leaf.distance_from_root() for leaf in tree.leaves()}


class TestParse(unittest.TestCase):
    """Test Newick parsing."""

    def test_scenario_structure(self):
        """Root has leaf A and one internal node holding B and C."""
        tree = parse_newick(SCENARIO)
        root = tree.root
        self.assertIsNone(root.parent)
        self.assertEqual(len(root.children), 2)
        self.assertTrue(root.children[0].is_leaf)
        self.assertEqual(root.children[0].name, "A")
        self.assertFalse(root.children[1].is_leaf)
        self.assertAlmostEqual(root.children[1].length, 0.03)
        self.assertEqual([leaf.name for leaf in tree.leaves()], ["A", "B", "C"])

    def test_parent_references(self):
        tree = parse_newick(SCENARIO)
        for node in tree.root.iter_preorder():
            for child in node.children:
                self.assertIs(child.parent, node)

    def test_missing_length_defaults_to_zero(self):
        tree = parse_newick("(A,B:1);")
        self.assertEqual(tree.find("A").length, 0.0)
        self.assertEqual(tree.find("B").length, 1.0)

    def test_whitespace_and_trailing_trees_ignored(self):
        """Whitespace is removed and only the first tree is read."""
        tree = parse_newick("( A:1 ,\n  B:2 ) ;\n(C:1,D:1);")
        self.assertEqual(tree.leaf_names(), ["A", "B"])

    def test_scientific_notation_length(self):
        tree = parse_newick("(A:1e-3,B:2.5E2);")
        self.assertAlmostEqual(tree.find("A").length, 0.001)
        self.assertAlmostEqual(tree.find("B").length, 250.0)

    def test_internal_names_are_kept(self):
        tree = parse_newick("((A:1,B:1)clade:2,C:1);")
        self.assertEqual(tree.root.children[0].name, "clade")

    def test_missing_semicolon(self):
        with self.assertRaises(MalformedTreeError):
            parse_newick("(A:1,B:2)")

    def test_unmatched_open_parenthesis(self):
        with self.assertRaises(MalformedTreeError) as ctx:
            parse_newick("((A:1,B:2);")
        self.assertIn("unmatched", str(ctx.exception))

    def test_unmatched_close_parenthesis(self):
        with self.assertRaises(MalformedTreeError):
            parse_newick("(A:1,B:2));")

    def test_non_numeric_length(self):
        with self.assertRaises(MalformedTreeError) as ctx:
            parse_newick("(A:abc,B:2);")
        self.assertIn("expected a number", str(ctx.exception))

    def test_empty_length(self):
        with self.assertRaises(MalformedTreeError):
            parse_newick("(A:,B:2);")

    def test_negative_length(self):
        with self.assertRaises(MalformedTreeError):
            parse_newick("(A:-0.1,B:2);")

    def test_non_finite_length(self):
        for text in ("(A:nan,B:2);", "(A:inf,B:2);", "(A:1e400,B:2);"):
            with self.subTest(text=text):
                with self.assertRaises(MalformedTreeError):
                    parse_newick(text)

    def test_not_enough_leaves(self):
        for text in ("A;", "(A:1);", "((A:1):1);"):
            with self.subTest(text=text):
                with self.assertRaises(MalformedTreeError) as ctx:
                    parse_newick(text)
                self.assertIn("not enough leaves", str(ctx.exception))

    def test_unnamed_leaf(self):
        with self.assertRaises(MalformedTreeError):
            parse_newick("(A:1,,B:1);")

    def test_duplicate_leaf_names(self):
        with self.assertRaises(MalformedTreeError):
            parse_newick("(A:1,(A:1,B:1):1);")

    def test_text_after_subtree(self):
        with self.assertRaises(MalformedTreeError):
            parse_newick("(A:1,B(C:1):1);")

    def test_malformed_is_tree_error(self):
        with self.assertRaises(TreeError):
            parse_newick("")


class TestSerialize(unittest.TestCase):
    """Test Newick serialization."""

    def test_leaf_and_internal_formatting(self):
        """Leaves are name:length; internal nodes drop their name."""
        tree = parse_newick("(A:1,(B:2,C:3)X:4);")
        self.assertEqual(tree.to_newick(), "(A:1.0,(B:2.0,C:3.0):4.0);")

    def test_root_length_written_when_nonzero(self):
        tree = parse_newick("(A:1,B:2):0.5;")
        self.assertEqual(tree.to_newick(), "(A:1.0,B:2.0):0.5;")

    def test_fixed_precision(self):
        tree = parse_newick(SCENARIO)
        self.assertEqual(tree.to_newick(precision=3), "(A:0.100,(B:0.050,C:0.020):0.030);")

    def test_str_matches_to_newick(self):
        tree = parse_newick(SCENARIO)
        self.assertEqual(str(tree), tree.to_newick())

    def test_round_trip(self):
        """Parsing serialized output gives the same leaves and root distances."""
        for text in (SCENARIO, LARGER, "((A:0.123456789,B:1e-07):3.3,C:0.0);"):
            with self.subTest(text=text):
                original = parse_newick(text)
                again = parse_newick(original.to_newick())
                self.assertEqual(original.leaf_names(), again.leaf_names())
                self.assertEqual(root_distances(original), root_distances(again))

    def test_output_readable_by_biopython(self):
        tree = parse_newick(LARGER)
        phylo = Phylo.read(StringIO(tree.to_newick()), "newick")
        names = [clade.name for clade in phylo.get_terminals()]
        self.assertEqual(names, tree.leaf_names())
        self.assertAlmostEqual(phylo.distance("A", "E"), tree.patristic_distance("A", "E"))


class TestReroot(unittest.TestCase):
    """Test rerooting on an outgroup leaf."""

    def test_scenario_outgroup_first(self):
        tree = parse_newick(SCENARIO)
        tree.reroot("A")
        self.assertTrue(tree.to_newick().startswith("(A:"))
        self.assertEqual(tree.root.children[0].name, "A")
        self.assertTrue(tree.find("A").is_outgroup)
        self.assertEqual(tree.outgroup, "A")

    def test_scenario_branch_lengths(self):
        tree = parse_newick(SCENARIO)
        tree.reroot("A")
        self.assertEqual(tree.to_newick(precision=3), "(A:0.050,(B:0.050,C:0.020):0.080);")

    def test_nested_leaf(self):
        """Rerooting on a nested leaf reverses the path to the old root."""
        tree = parse_newick(SCENARIO)
        tree.reroot("B")
        root = tree.root
        self.assertEqual(len(root.children), 2)
        self.assertEqual(root.children[0].name, "B")
        self.assertAlmostEqual(root.children[0].length, 0.025)
        self.assertEqual(sorted(tree.leaf_names()), ["A", "B", "C"])
        self.assertAlmostEqual(tree.patristic_distance("A", "C"), 0.15)

    def test_patristic_distances_preserved(self):
        tree = parse_newick(LARGER)
        before = tree.distance_matrix()
        for outgroup in ("D", "F", "A"):
            with self.subTest(outgroup=outgroup):
                tree.reroot(outgroup)
                after = tree.distance_matrix().loc[before.index, before.columns]
                np.testing.assert_allclose(after.to_numpy(), before.to_numpy())

    def test_no_unary_nodes_left(self):
        tree = parse_newick(LARGER)
        tree.reroot("E")
        for node in tree.root.iter_preorder():
            if not node.is_leaf:
                self.assertGreaterEqual(len(node.children), 2)

    def test_missing_leaf(self):
        tree = parse_newick(SCENARIO)
        with self.assertRaises(LeafNotFoundError) as ctx:
            tree.reroot("Z")
        self.assertIsInstance(ctx.exception, KeyError)
        self.assertEqual(ctx.exception.name, "Z")
        self.assertEqual(tree.leaf_names(), ["A", "B", "C"])


class TestSortChildren(unittest.TestCase):
    """Test recursive child sorting."""

    def test_deepest_subtree_first_then_name(self):
        tree = parse_newick("(E:0.5,(D:1,C:1):1,(B:1,A:5):1);")
        tree.sort_children()
        self.assertEqual(tree.leaf_names(), ["A", "B", "C", "D", "E"])

    def test_equal_trees_serialize_identically(self):
        first = parse_newick("(E:0.5,(D:1,C:1):1,(B:1,A:5):1);")
        second = parse_newick("((A:5,B:1):1,E:0.5,(C:1,D:1):1);")
        first.sort_children()
        second.sort_children()
        self.assertEqual(first.to_newick(), second.to_newick())

    def test_tie_broken_by_smallest_leaf_name(self):
        tree = parse_newick("((D:1,C:1):1,(B:1,A:1):1);")
        tree.sort_children()
        self.assertEqual(tree.leaf_names(), ["A", "B", "C", "D"])

    def test_explicit_default_key_matches(self):
        first = parse_newick(LARGER)
        second = parse_newick(LARGER)
        first.sort_children()
        second.sort_children(key=default_sort_key)
        self.assertEqual(first.to_newick(), second.to_newick())

    def test_custom_key(self):
        tree = parse_newick("(A:1,B:3,C:2);")
        tree.sort_children(key=lambda node: node.length)
        self.assertEqual(tree.leaf_names(), ["A", "C", "B"])


class TestRemoveLeaf(unittest.TestCase):
    """Test leaf removal."""

    def test_parent_not_collapsed(self):
        tree = parse_newick("((A:1,B:1):1,C:1);")
        removed = tree.remove_leaf("A")
        self.assertEqual(removed.name, "A")
        self.assertIsNone(removed.parent)
        self.assertEqual(tree.to_newick(), "((B:1.0):1.0,C:1.0);")

    def test_remove_until_invalid(self):
        tree = parse_newick("(A:1,B:1);")
        self.assertTrue(tree.is_valid())
        tree.remove_leaf("A")
        self.assertFalse(tree.is_valid())

    def test_missing_leaf(self):
        tree = parse_newick(SCENARIO)
        with self.assertRaises(LeafNotFoundError):
            tree.remove_leaf("Z")


class TestQueries(unittest.TestCase):
    """Test structural queries."""

    def test_patristic_distance(self):
        tree = parse_newick(SCENARIO)
        self.assertAlmostEqual(tree.patristic_distance("B", "C"), 0.07)
        self.assertAlmostEqual(tree.patristic_distance("A", "B"), 0.18)
        self.assertEqual(tree.patristic_distance("A", "A"), 0.0)

    def test_distance_matrix(self):
        tree = parse_newick(LARGER)
        matrix = tree.distance_matrix()
        self.assertEqual(list(matrix.index), tree.leaf_names())
        np.testing.assert_allclose(matrix.to_numpy(), matrix.to_numpy().T)
        np.testing.assert_allclose(np.diag(matrix.to_numpy()), 0.0)
        self.assertAlmostEqual(matrix.loc["D", "F"], tree.patristic_distance("D", "F"))

    def test_distance_to_leaves(self):
        tree = parse_newick(LARGER)
        self.assertAlmostEqual(tree.root.max_distance_to_leaf(), 0.4)
        self.assertAlmostEqual(tree.root.min_distance_to_leaf(), 0.15)

    def test_membership_and_length(self):
        tree = parse_newick(LARGER)
        self.assertEqual(len(tree), 6)
        self.assertIn("E", tree)
        self.assertNotIn("Z", tree)

    def test_copy_is_independent(self):
        tree = parse_newick(SCENARIO)
        clone = tree.copy()
        clone.reroot("C")
        self.assertEqual(tree.to_newick(), parse_newick(SCENARIO).to_newick())
        self.assertNotEqual(clone.to_newick(), tree.to_newick())

    def test_pickle_restores_parents(self):
        tree = parse_newick(LARGER)
        restored = pickle.loads(pickle.dumps(tree))
        self.assertEqual(restored.to_newick(), tree.to_newick())
        for node in restored.root.iter_preorder():
            for child in node.children:
                self.assertIs(child.parent, node)

    def test_node_cannot_have_two_parents(self):
        child = TreeNode("A", 1.0)
        first_parent = TreeNode(children=[child])
        self.assertIs(child.parent, first_parent)
        with self.assertRaises(TreeError):
            TreeNode(children=[child])

    def test_programmatic_tree(self):
        root = TreeNode(children=[TreeNode("A", 1), TreeNode("B", 2)])
        tree = Tree(root)
        self.assertEqual(tree.to_newick(), "(A:1.0,B:2.0);")


def caterpillar(n_leaves):
    """Ladder-shaped tree where every internal node adds one leaf."""
    text = "L0:1.0"
    for i in range(1, n_leaves):
        text = f"({text},L{i}:1.0):1.0"
    return text + ";"


class TestDeepTrees(unittest.TestCase):
    """Test trees nested deeper than the interpreter's recursion limit."""

    def setUp(self):
        self.n_leaves = sys.getrecursionlimit() + 500
        self.text = caterpillar(self.n_leaves)

    def test_round_trip(self):
        tree = parse_newick(self.text)
        self.assertEqual(len(tree), self.n_leaves)
        self.assertEqual(tree.to_newick(), self.text)

    def test_sort_copy_and_reroot(self):
        tree = parse_newick(self.text)
        tree.sort_children()
        self.assertEqual(tree.leaf_names()[-1], f"L{self.n_leaves - 1}")

        rooted = tree.copy()
        rooted.reroot("L0")
        self.assertEqual(rooted.root.children[0].name, "L0")
        self.assertEqual(rooted.patristic_distance("L0", "L1"), 2.0)
        self.assertEqual(parse_newick(rooted.to_newick()).leaf_names(), rooted.leaf_names())

    def test_distance_to_leaves(self):
        tree = parse_newick(self.text)
        self.assertEqual(tree.root.max_distance_to_leaf(), float(self.n_leaves - 1))
        self.assertEqual(tree.root.min_distance_to_leaf(), 1.0)


class TestFileIO:
    """Test reading and writing tree files."""

    def test_write_and_read(self, tmp_path):
        tree = parse_newick(LARGER)
        path = tree.write(tmp_path / "trees" / "out.nwk")
        assert path.exists()
        assert read_newick(path).to_newick() == tree.to_newick()

    def test_read_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_newick(tmp_path / "missing.nwk")


if __name__ == '__main__':
    unittest.main()
