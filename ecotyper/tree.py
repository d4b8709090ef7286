"""
Phylogenetic Tree Model and Newick Handling

This module holds the rooted, ordered tree used throughout the ecotype
analysis. Trees are read from and written to Newick text, rerooted on the
outgroup sequence, sorted into a reproducible child order and queried for
leaf sets and patristic distances.

Newick grammar accepted by the parser:

    subtree   := '(' childList ')' meta | meta
    childList := subtree (',' subtree)*
    meta      := name? (':' number)?

Key Concepts:
- Whitespace is removed before parsing and only the first tree in the text
  (everything up to the first ';') is read.
- Branch lengths must be finite, non-negative numbers. A malformed length is
  an error; a missing one means 0.0.
- Leaves are written as ``name:length`` and internal nodes as ``:length``
  without a name, which is what most downstream phylogenetics tools expect.
- Rerooting places the outgroup leaf directly under a new root and splits
  its branch in half. Patristic distances between leaves are unchanged.
- A node holds its children directly and its parent through a weak
  reference, so a tree never contains reference cycles.

Example Usage:
    >>> from ecotyper.tree import parse_newick
    >>> tree = parse_newick("(A:0.1,(B:0.05,C:0.02):0.03);")
    >>> tree.leaf_names()
    ['A', 'B', 'C']
    >>> tree.reroot("A")
    >>> tree.to_newick(precision=3)
    '(A:0.050,(B:0.050,C:0.020):0.080);'
"""

from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union
import logging
import math
import re
import weakref
from collections import Counter

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r'[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?')


class TreeError(Exception):
    """Base exception for tree errors."""
    pass


class MalformedTreeError(TreeError):
    """Newick text that cannot be parsed or yields an unusable tree."""
    pass


class LeafNotFoundError(TreeError, KeyError):
    """A named leaf is not present in the tree."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Leaf not found in tree: {self.name}"


# ============================================================================
# Tree Nodes
# ============================================================================

class TreeNode:
    """
    A node in a rooted, ordered tree.

    Parameters
    ----------
    name : str
        Node label. Empty for most internal nodes.
    length : float
        Branch length to the parent node (finite, >= 0).
    children : list of TreeNode, optional
        Children to attach, in order.
    """

    def __init__(
        self,
        name: str = "",
        length: float = 0.0,
        children: Optional[List['TreeNode']] = None,
    ):
        self.name = name
        self.length = float(length)
        self.children: List[TreeNode] = []
        self._parent: Optional[weakref.ReferenceType] = None

        for child in children or []:
            self.add_child(child)

    @property
    def parent(self) -> Optional['TreeNode']:
        if self._parent is None:
            return None
        return self._parent()

    @property
    def is_leaf(self) -> bool:
        return not self.children

    @property
    def is_root(self) -> bool:
        return self.parent is None

    @property
    def is_outgroup(self) -> bool:
        """True for a leaf that hangs directly off the root."""
        parent = self.parent
        return self.is_leaf and parent is not None and parent.parent is None

    def add_child(self, child: 'TreeNode', index: Optional[int] = None) -> 'TreeNode':
        """
        Attach ``child`` to this node and point its parent reference here.

        Raises
        ------
        TreeError
            If the child is already attached to another node
        """
        if child.parent is not None:
            raise TreeError(f"Node '{child.name}' already has a parent")
        child._parent = weakref.ref(self)
        if index is None:
            self.children.append(child)
        else:
            self.children.insert(index, child)
        return child

    def remove_child(self, child: 'TreeNode') -> int:
        """Detach ``child``; returns the position it held."""
        for index, existing in enumerate(self.children):
            if existing is child:
                del self.children[index]
                child._parent = None
                return index
        raise TreeError(f"Node '{child.name}' is not a child of this node")

    # Traversals use an explicit stack so that tree depth is not limited by
    # the interpreter's recursion limit.

    def iter_leaves(self) -> Iterator['TreeNode']:
        """Yield the leaves below this node, left to right."""
        for node in self.iter_preorder():
            if node.is_leaf:
                yield node

    def iter_preorder(self) -> Iterator['TreeNode']:
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def iter_postorder(self) -> Iterator['TreeNode']:
        stack = [(self, False)]
        while stack:
            node, expanded = stack.pop()
            if expanded or node.is_leaf:
                yield node
                continue
            stack.append((node, True))
            stack.extend((child, False) for child in reversed(node.children))

    def leaf_names(self) -> List[str]:
        return [leaf.name for leaf in self.iter_leaves()]

    def _leaf_distances(self) -> List[float]:
        """Path lengths from this node down to each of its leaves."""
        distances = []
        stack = [(self, 0.0)]
        while stack:
            node, distance = stack.pop()
            if node.is_leaf:
                distances.append(distance)
            else:
                stack.extend((child, distance + child.length) for child in node.children)
        return distances

    def max_distance_to_leaf(self) -> float:
        """Largest sum of branch lengths from this node down to one of its leaves."""
        return max(self._leaf_distances())

    def min_distance_to_leaf(self) -> float:
        """Smallest sum of branch lengths from this node down to one of its leaves."""
        return min(self._leaf_distances())

    def distance_from_root(self) -> float:
        distance = 0.0
        node = self
        while node.parent is not None:
            distance += node.length
            node = node.parent
        return distance

    def copy(self) -> 'TreeNode':
        """Deep copy of this node and everything below it (detached)."""
        clone = TreeNode(self.name, self.length)
        stack = [(self, clone)]
        while stack:
            source, target = stack.pop()
            for child in source.children:
                stack.append((child, target.add_child(TreeNode(child.name, child.length))))
        return clone

    def to_newick(self, precision: Optional[int] = None) -> str:
        parts = []
        # Items are nodes still to write or finished text (commas, closing
        # parentheses with the internal node's branch length).
        stack: List[Union['TreeNode', str]] = [self]
        while stack:
            item = stack.pop()
            if isinstance(item, str):
                parts.append(item)
            elif item.children:
                parts.append("(")
                stack.append(")" + _newick_suffix(item, precision))
                for index, child in enumerate(reversed(item.children)):
                    if index:
                        stack.append(",")
                    stack.append(child)
            else:
                parts.append(item.name + _newick_suffix(item, precision))
        return "".join(parts)

    def __getstate__(self):
        state = self.__dict__.copy()
        state['_parent'] = None
        return state

    def __setstate__(self, state):
        self.__dict__.update(state)
        for child in self.children:
            child._parent = weakref.ref(self)

    def __repr__(self) -> str:
        if self.is_leaf:
            return f"TreeNode(name={self.name!r}, length={self.length})"
        return f"TreeNode(name={self.name!r}, length={self.length}, children={len(self.children)})"


def _format_length(length: float, precision: Optional[int]) -> str:
    if precision is None:
        return repr(float(length))
    return f"{length:.{precision}f}"


def _newick_suffix(node: TreeNode, precision: Optional[int]) -> str:
    if node.parent is None:
        # The root has no parent branch; a zero length is left out.
        if node.length:
            return ":" + _format_length(node.length, precision) + ";"
        return ";"
    return ":" + _format_length(node.length, precision)


def default_sort_key(node: TreeNode) -> Tuple[float, str, str]:
    """
    Ordering used by :meth:`Tree.sort_children` when no key is given.

    Deeper subtrees come first, then ties are broken by node name and by the
    smallest leaf name below the node.
    """
    return (-node.max_distance_to_leaf(), node.name, min(node.leaf_names()))


# ============================================================================
# Tree
# ============================================================================

class Tree:
    """
    A rooted, ordered tree that owns its root node.

    Parameters
    ----------
    root : TreeNode
        Root node. Must not have a parent.
    outgroup : str, optional
        Name of the leaf the tree is rooted on, if known.
    """

    def __init__(self, root: TreeNode, outgroup: Optional[str] = None):
        if root.parent is not None:
            raise TreeError("Tree root must not have a parent")
        self.root = root
        self.outgroup = outgroup

    @classmethod
    def from_newick(cls, text: str) -> 'Tree':
        return parse_newick(text)

    def to_newick(self, precision: Optional[int] = None) -> str:
        """
        Serialize the tree to Newick text.

        Parameters
        ----------
        precision : int, optional
            Number of decimals for branch lengths. By default the shortest
            representation that reads back to the same float is used, so a
            parse/serialize round trip is lossless.

        Returns
        -------
        str
            Newick string terminated by ';'
        """
        return self.root.to_newick(precision)

    def write(self, path: Union[str, Path], precision: Optional[int] = None) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_newick(precision) + "\n", encoding='utf-8')
        logger.info(f"Wrote tree with {len(self)} leaves to {path}")
        return path

    def leaves(self) -> List[TreeNode]:
        """Leaves in left-to-right order."""
        return list(self.root.iter_leaves())

    def leaf_names(self) -> List[str]:
        return self.root.leaf_names()

    def __len__(self) -> int:
        return sum(1 for _ in self.root.iter_leaves())

    def __contains__(self, name: str) -> bool:
        return any(leaf.name == name for leaf in self.root.iter_leaves())

    def __str__(self) -> str:
        return self.to_newick()

    def is_valid(self) -> bool:
        """A usable tree has more than one leaf."""
        return len(self) > 1

    def find(self, name: str) -> TreeNode:
        """
        Return the leaf called ``name``.

        Raises
        ------
        LeafNotFoundError
            If no leaf has that name
        """
        for leaf in self.root.iter_leaves():
            if leaf.name == name:
                return leaf
        raise LeafNotFoundError(name)

    def copy(self) -> 'Tree':
        return Tree(self.root.copy(), outgroup=self.outgroup)

    def reroot(self, leaf_name: str) -> None:
        """
        Reroot the tree so that ``leaf_name`` is a direct child of a new root.

        The outgroup's branch is split in half between the outgroup and the
        rest of the tree. The path from the outgroup's old parent to the old
        root is reversed, with each branch keeping its length. If the old
        root is left with a single child it is spliced out.

        Raises
        ------
        LeafNotFoundError
            If ``leaf_name`` is not a leaf of this tree
        """
        leaf = self.find(leaf_name)
        old_root = self.root
        old_parent = leaf.parent
        if old_parent is None:
            raise TreeError("Cannot reroot a tree that consists of a single leaf")

        half = leaf.length / 2.0
        new_root = TreeNode()

        old_parent.remove_child(leaf)

        # Walk up from the outgroup's parent, hanging each node below the
        # previous one so that the path to the old root is reversed.
        previous = new_root
        node: Optional[TreeNode] = old_parent
        incoming_length = half
        while node is not None:
            parent = node.parent
            outgoing_length = node.length
            if parent is not None:
                parent.remove_child(node)
            node.length = incoming_length
            previous.add_child(node)
            previous = node
            node = parent
            incoming_length = outgoing_length

        leaf.length = half
        new_root.add_child(leaf, index=0)

        _splice_unary(old_root)

        self.root = new_root
        self.outgroup = leaf_name
        logger.debug(f"Rerooted tree on outgroup '{leaf_name}'")

    def sort_children(self, key: Optional[Callable[[TreeNode], object]] = None) -> None:
        """
        Recursively sort every node's children.

        Parameters
        ----------
        key : callable, optional
            Sort key applied to each child. Defaults to
            :func:`default_sort_key` (deepest subtree first, then by name).
        """
        if key is None:
            key = _memoized_default_key(self.root)
        for node in self.root.iter_postorder():
            if node.children:
                node.children.sort(key=key)

    def remove_leaf(self, name: str) -> TreeNode:
        """
        Detach the named leaf from its parent and return it.

        The former parent is left in place even if it now has a single child
        (or none); collapsing such nodes is up to the caller.

        Raises
        ------
        LeafNotFoundError
            If the leaf does not exist
        """
        leaf = self.find(name)
        parent = leaf.parent
        if parent is None:
            raise TreeError("Cannot remove the root of a tree")
        parent.remove_child(leaf)
        if self.outgroup == name:
            self.outgroup = None
        return leaf

    def patristic_distance(self, first: str, second: str) -> float:
        """Sum of branch lengths on the path between two leaves."""
        a = self.find(first)
        b = self.find(second)
        if a is b:
            return 0.0

        ancestors: Dict[int, float] = {}
        distance = 0.0
        node: Optional[TreeNode] = a
        while node is not None:
            ancestors[id(node)] = distance
            distance += node.length
            node = node.parent

        distance = 0.0
        node = b
        while id(node) not in ancestors:
            distance += node.length
            node = node.parent
        return distance + ancestors[id(node)]

    def distance_matrix(self) -> pd.DataFrame:
        """
        Patristic distances between all pairs of leaves.

        Returns
        -------
        pd.DataFrame
            Square, symmetric matrix indexed by leaf name in tree order
        """
        names = self.leaf_names()
        index_of = {id(leaf): i for i, leaf in enumerate(self.root.iter_leaves())}
        matrix = np.zeros((len(names), len(names)))

        # Leaf indices below each finished node and their distances to it
        below: Dict[int, Tuple[np.ndarray, np.ndarray]] = {}
        for node in self.root.iter_postorder():
            if node.is_leaf:
                below[id(node)] = (np.array([index_of[id(node)]]), np.zeros(1))
                continue
            groups = []
            for child in node.children:
                idx, dist = below.pop(id(child))
                groups.append((idx, dist + child.length))
            for i in range(len(groups)):
                for j in range(i + 1, len(groups)):
                    ia, da = groups[i]
                    ib, db = groups[j]
                    block = da[:, None] + db[None, :]
                    matrix[np.ix_(ia, ib)] = block
                    matrix[np.ix_(ib, ia)] = block.T
            below[id(node)] = (
                np.concatenate([g[0] for g in groups]),
                np.concatenate([g[1] for g in groups]),
            )

        return pd.DataFrame(matrix, index=names, columns=names)

    def __repr__(self) -> str:
        return f"Tree(leaves={len(self)}, outgroup={self.outgroup!r})"


def _splice_unary(node: TreeNode) -> None:
    """Remove ``node`` if it was left with one child (or none) by a reroot."""
    parent = node.parent
    if parent is None:
        return
    if not node.children:
        parent.remove_child(node)
        _splice_unary(parent)
    elif len(node.children) == 1:
        child = node.children[0]
        index = parent.remove_child(node)
        node.remove_child(child)
        child.length += node.length
        parent.add_child(child, index=index)


def _memoized_default_key(root: TreeNode) -> Callable[[TreeNode], Tuple[float, str, str]]:
    depth: Dict[int, float] = {}
    smallest: Dict[int, str] = {}
    for node in root.iter_postorder():
        if node.is_leaf:
            depth[id(node)] = 0.0
            smallest[id(node)] = node.name
        else:
            depth[id(node)] = max(c.length + depth[id(c)] for c in node.children)
            smallest[id(node)] = min(smallest[id(c)] for c in node.children)
    return lambda node: (-depth[id(node)], node.name, smallest[id(node)])


# ============================================================================
# Newick Parsing
# ============================================================================

def parse_newick(text: str) -> Tree:
    """
    Parse Newick text into a Tree.

    Parameters
    ----------
    text : str
        Newick text. Whitespace is ignored; anything after the first ';'
        is ignored.

    Returns
    -------
    Tree
        Parsed tree

    Raises
    ------
    MalformedTreeError
        If the terminating ';' is missing, parentheses are unbalanced, a
        branch length is not a finite non-negative number, a leaf has no
        name, leaf names repeat, or the tree has fewer than two leaves
    """
    end = text.find(';')
    if end < 0:
        raise MalformedTreeError("Malformed Newick tree, missing terminating ';'")

    body = "".join(text[:end].split())
    if not body:
        raise MalformedTreeError("Malformed Newick tree, no tree found before ';'")

    root = _parse_body(body)
    tree = Tree(root)

    names = tree.leaf_names()
    if len(names) <= 1:
        raise MalformedTreeError("Malformed Newick tree, not enough leaves found")
    if len(set(names)) != len(names):
        duplicates = sorted(n for n, count in Counter(names).items() if count > 1)
        raise MalformedTreeError(f"Malformed Newick tree, duplicate leaf names: {duplicates}")

    logger.debug(f"Parsed Newick tree with {len(names)} leaves")
    return tree


def read_newick(path: Union[str, Path]) -> Tree:
    """Read the first tree from a Newick file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Tree file not found: {path}")
    tree = parse_newick(path.read_text(encoding='utf-8'))
    logger.info(f"Loaded tree with {len(tree)} leaves from {path}")
    return tree


def _parse_body(text: str) -> TreeNode:
    """
    Parse whitespace-free Newick text (without the ';') in one pass.

    Open subtrees are kept on an explicit stack together with the position of
    their '(' so that errors can point at the offending character.
    """
    root = TreeNode()
    node = root
    open_nodes: List[Tuple[TreeNode, int]] = []
    closed = False
    i = 0
    end = len(text)

    while True:
        if not closed and i < end and text[i] == '(':
            open_nodes.append((node, i))
            node = node.add_child(TreeNode())
            i += 1
            continue

        j = i
        while j < end and text[j] not in '(),':
            j += 1
        if j < end and text[j] == '(':
            raise MalformedTreeError(
                f"Malformed Newick tree, unmatched parentheses at position {j}"
            )

        node.name, node.length = _parse_meta(text, i, j)
        if node.is_leaf and not node.name:
            raise MalformedTreeError(
                f"Malformed Newick tree, leaf without a name at position {i}"
            )

        if j == end:
            if open_nodes:
                raise MalformedTreeError(
                    f"Malformed Newick tree, unmatched parentheses at position "
                    f"{open_nodes[-1][1]}"
                )
            return root

        if text[j] == ',':
            if not open_nodes:
                raise MalformedTreeError(
                    f"Malformed Newick tree, unexpected ',' at position {j}"
                )
            node = open_nodes[-1][0].add_child(TreeNode())
            closed = False
        else:
            if not open_nodes:
                raise MalformedTreeError(
                    f"Malformed Newick tree, unmatched parentheses at position {j}"
                )
            node, _ = open_nodes.pop()
            closed = True
        i = j + 1


def _parse_meta(text: str, start: int, end: int) -> Tuple[str, float]:
    """Parse a ``name:length`` suffix."""
    name, sep, distance = text[start:end].partition(':')
    if not sep:
        return name, 0.0

    if not _NUMBER_RE.fullmatch(distance):
        raise MalformedTreeError(
            f"Malformed Newick tree, expected a number for the branch length of "
            f"'{name}' but found '{distance}'"
        )
    length = float(distance)
    if not math.isfinite(length) or length < 0:
        raise MalformedTreeError(
            f"Malformed Newick tree, branch length of '{name}' must be a finite "
            f"non-negative number, got {distance}"
        )
    return name, length
