"""
Sequence Loading and Pairwise Divergence

This module turns an aligned FASTA file into the pairwise divergence data that
the binning engine clusters on.

The workflow:
1. Read the aligned sequences with Biopython (order is preserved; the first
   sequence is conventionally the outgroup)
2. Remove every alignment column where any sequence has a gap or a non-ACGT
   character
3. Calculate the fraction of differing sites for every pair of sequences
4. Wrap the result in a labelled DivergenceMatrix

Key Concepts:
- Divergence is the p-distance: differing sites / compared sites. After gap
  column removal every column is compared, so this is simply the fraction of
  positions at which two sequences differ.
- The number of columns left after gap removal is the sequence length used
  by the curve estimator to convert divergence cutoffs into SNP counts.
- A DivergenceMatrix can also be built from tree patristic distances or from
  any precomputed square matrix.
- Recombinants are sequences present in the tree but absent from the
  alignment (they were removed upstream by a recombination screen).

Example Usage:
    >>> from ecotyper.divergence import read_alignment, remove_gap_columns, DivergenceMatrix
    >>> records = remove_gap_columns(read_alignment("sequences.fasta"))
    >>> matrix = DivergenceMatrix.from_alignment(records)
    >>> matrix.divergence("seq1", "seq2")
    0.0125
"""

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union
import logging

import numpy as np
import pandas as pd
from Bio import SeqIO
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord
from scipy.spatial.distance import squareform

from .tree import Tree

logger = logging.getLogger(__name__)

_VALID_BASES = np.frombuffer(b"ACGT", dtype=np.uint8)


class DivergenceError(Exception):
    """Base exception for divergence errors."""
    pass


class AlignmentError(DivergenceError):
    """Aligned sequences that cannot be compared."""
    pass


class MissingDivergenceError(DivergenceError, KeyError):
    """No divergence value is available for a pair of sequences."""

    def __str__(self) -> str:
        return DivergenceError.__str__(self)


# ============================================================================
# Alignment Handling
# ============================================================================

def read_alignment(fasta_path: Union[str, Path]) -> List[SeqRecord]:
    """
    Read aligned sequences from a FASTA file.

    Parameters
    ----------
    fasta_path : Union[str, Path]
        Path to aligned FASTA file

    Returns
    -------
    List[SeqRecord]
        Sequence records in file order

    Raises
    ------
    FileNotFoundError
        If the file does not exist
    AlignmentError
        If the file holds no sequences, sequences differ in length, or
        sequence identifiers repeat
    """
    path = Path(fasta_path)
    if not path.exists():
        raise FileNotFoundError(f"FASTA file not found: {path}")

    records = list(SeqIO.parse(str(path), "fasta"))
    validate_alignment(records)

    logger.info(
        f"Loaded {len(records)} aligned sequences of length "
        f"{len(records[0].seq)} from {path}"
    )
    return records


def validate_alignment(records: Sequence[SeqRecord]) -> None:
    """Check that ``records`` form a usable alignment."""
    if not records:
        raise AlignmentError("Alignment is empty")

    length = len(records[0].seq)
    for record in records:
        if len(record.seq) != length:
            raise AlignmentError(
                f"All sequences in alignment must have the same length: "
                f"{record.id} has {len(record.seq)} columns, expected {length}"
            )

    ids = [record.id for record in records]
    if len(set(ids)) != len(ids):
        raise AlignmentError("Sequence identifiers in the alignment must be unique")


def _encode(records: Sequence[SeqRecord]) -> np.ndarray:
    """Alignment as an (n_sequences, n_columns) array of uppercase byte codes."""
    return np.vstack([
        np.frombuffer(str(record.seq).upper().encode('ascii'), dtype=np.uint8)
        for record in records
    ])


def remove_gap_columns(records: Sequence[SeqRecord]) -> List[SeqRecord]:
    """
    Remove alignment columns where any sequence has a gap or ambiguous base.

    Parameters
    ----------
    records : Sequence[SeqRecord]
        Aligned sequences

    Returns
    -------
    List[SeqRecord]
        New records containing only columns with A, C, G or T in every
        sequence

    Raises
    ------
    AlignmentError
        If no column survives

    Examples
    --------
    >>> seqs = [
    ...     SeqRecord(Seq("AC-GTN"), id="s1"),
    ...     SeqRecord(Seq("ACTGTA"), id="s2"),
    ... ]
    >>> [str(r.seq) for r in remove_gap_columns(seqs)]
    ['ACGT', 'ACGT']
    """
    validate_alignment(records)

    encoded = _encode(records)
    keep = np.isin(encoded, _VALID_BASES).all(axis=0)
    n_kept = int(keep.sum())

    if n_kept == 0:
        raise AlignmentError("No alignment columns remain after removing gaps")

    logger.info(
        f"Removed {encoded.shape[1] - n_kept} gap/ambiguous columns, "
        f"{n_kept} columns remain"
    )

    trimmed = []
    for record, row in zip(records, encoded):
        sequence = row[keep].tobytes().decode('ascii')
        trimmed.append(
            SeqRecord(Seq(sequence), id=record.id, name=record.name,
                      description=record.description)
        )
    return trimmed


def calculate_pairwise_distances(records: Sequence[SeqRecord]) -> np.ndarray:
    """
    Calculate pairwise p-distances between aligned sequences.

    Only positions with A, C, G or T in both sequences are compared. Two
    sequences with no comparable positions are given the maximum distance
    of 1.0.

    Parameters
    ----------
    records : Sequence[SeqRecord]
        Aligned sequences (at least two)

    Returns
    -------
    np.ndarray
        Condensed distance vector of length n*(n-1)/2, in the order
        expected by ``scipy.spatial.distance.squareform``
    """
    validate_alignment(records)
    n_seqs = len(records)
    if n_seqs < 2:
        raise AlignmentError("Need at least 2 sequences for distance calculation")

    logger.info(f"Calculating pairwise distances for {n_seqs} sequences")

    encoded = _encode(records)
    valid = np.isin(encoded, _VALID_BASES)

    distances = []
    for i in range(n_seqs - 1):
        compared = valid[i] & valid[i + 1:]
        differing = (encoded[i] != encoded[i + 1:]) & compared
        n_compared = compared.sum(axis=1)
        n_differing = differing.sum(axis=1)
        with np.errstate(divide='ignore', invalid='ignore'):
            row = np.where(n_compared > 0, n_differing / n_compared, 1.0)
        distances.append(row)

    condensed = np.concatenate(distances)
    logger.info(f"Distance calculation complete: {len(condensed)} pairwise distances")
    return condensed


# ============================================================================
# Divergence Matrix
# ============================================================================

class DivergenceMatrix:
    """
    Symmetric pairwise divergence between named sequences.

    Parameters
    ----------
    matrix : pd.DataFrame
        Square matrix whose index and columns hold the same names in the
        same order

    Raises
    ------
    DivergenceError
        If the matrix is not square, labels disagree, or values are
        negative, non-finite or asymmetric
    """

    def __init__(self, matrix: pd.DataFrame):
        if matrix.shape[0] != matrix.shape[1]:
            raise DivergenceError(f"Divergence matrix must be square, got {matrix.shape}")
        if list(matrix.index) != list(matrix.columns):
            raise DivergenceError("Divergence matrix row and column labels must match")
        if matrix.index.has_duplicates:
            raise DivergenceError("Divergence matrix labels must be unique")

        values = matrix.to_numpy(dtype=float)
        if not np.isfinite(values).all():
            raise DivergenceError("Divergence matrix contains non-finite values")
        if (values < 0).any():
            raise DivergenceError("Divergence matrix contains negative values")
        if not np.allclose(values, values.T):
            raise DivergenceError("Divergence matrix is not symmetric")

        self._matrix = pd.DataFrame(values, index=matrix.index, columns=matrix.columns)
        self._position: Dict[str, int] = {name: i for i, name in enumerate(matrix.index)}

    @classmethod
    def from_condensed(cls, names: Sequence[str], condensed: np.ndarray) -> 'DivergenceMatrix':
        square = squareform(np.asarray(condensed, dtype=float), checks=False)
        return cls(pd.DataFrame(square, index=list(names), columns=list(names)))

    @classmethod
    def from_alignment(
        cls,
        records: Sequence[SeqRecord],
        remove_gaps: bool = False,
    ) -> 'DivergenceMatrix':
        """
        Build the matrix from aligned sequences.

        Parameters
        ----------
        records : Sequence[SeqRecord]
            Aligned sequences
        remove_gaps : bool
            Run :func:`remove_gap_columns` first (default: False, for
            callers that already did)
        """
        if remove_gaps:
            records = remove_gap_columns(records)
        names = [record.id for record in records]
        if len(records) == 1:
            return cls(pd.DataFrame([[0.0]], index=names, columns=names))
        return cls.from_condensed(names, calculate_pairwise_distances(records))

    @classmethod
    def from_tree(cls, tree: Tree) -> 'DivergenceMatrix':
        """Patristic distances between the leaves of ``tree``."""
        return cls(tree.distance_matrix())

    @classmethod
    def from_csv(cls, path: Union[str, Path], sep: str = '\t') -> 'DivergenceMatrix':
        matrix = pd.read_csv(path, sep=sep, index_col=0)
        matrix.index = matrix.index.astype(str)
        matrix.columns = matrix.columns.astype(str)
        logger.info(f"Loaded {len(matrix)}x{len(matrix)} divergence matrix from {path}")
        return cls(matrix)

    @property
    def names(self) -> List[str]:
        return list(self._matrix.index)

    def __len__(self) -> int:
        return len(self._position)

    def __contains__(self, name: str) -> bool:
        return name in self._position

    def divergence(self, first: str, second: str) -> float:
        """
        Divergence between two named sequences.

        Raises
        ------
        MissingDivergenceError
            If either name is not in the matrix
        """
        try:
            i = self._position[first]
            j = self._position[second]
        except KeyError as e:
            raise MissingDivergenceError(
                f"No divergence available for pair ({first}, {second}): "
                f"{e.args[0]} is not in the matrix"
            ) from None
        return float(self._matrix.iat[i, j])

    def submatrix(self, names: Sequence[str]) -> np.ndarray:
        """Square array of divergences restricted to ``names``, in that order."""
        missing = [name for name in names if name not in self._position]
        if missing:
            raise MissingDivergenceError(
                f"No divergence available for {len(missing)} sequence(s): {missing[:5]}"
            )
        idx = [self._position[name] for name in names]
        return self._matrix.to_numpy()[np.ix_(idx, idx)]

    def to_dataframe(self) -> pd.DataFrame:
        return self._matrix.copy()

    def to_csv(self, path: Union[str, Path], sep: str = '\t') -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._matrix.to_csv(path, sep=sep)
        logger.info(f"Wrote divergence matrix to {path}")
        return path

    def __repr__(self) -> str:
        return f"DivergenceMatrix(n={len(self)})"


# ============================================================================
# Recombinant Detection
# ============================================================================

def find_recombinants(
    tree: Union[Tree, Iterable[str]],
    sequence_ids: Iterable[str],
) -> List[str]:
    """
    Names present in the tree but absent from the sequence set.

    Parameters
    ----------
    tree : Tree or iterable of str
        Tree (or its leaf names)
    sequence_ids : Iterable[str]
        Identifiers of the sequences that survived recombination screening

    Returns
    -------
    List[str]
        Recombinant names in tree order
    """
    leaf_names = tree.leaf_names() if isinstance(tree, Tree) else list(tree)
    known = set(sequence_ids)
    recombinants = [name for name in leaf_names if name not in known]
    if recombinants:
        logger.info(f"Found {len(recombinants)} recombinant(s) in tree: {recombinants}")
    return recombinants


def first_sequence_id(records: Sequence[SeqRecord]) -> Optional[str]:
    """Identifier of the first record, the conventional outgroup."""
    return records[0].id if records else None
