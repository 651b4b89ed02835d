"""Elementwise merge of a source matrix into a destination GenotypeMatrix.

The source is either an ordinary in-memory array or another
GenotypeMatrix. The merge is restricted to an optional set of destination
columns (storage columns of the destination); without one, columns map
positionally. Columns are split into static ranges across a thread pool
and each worker writes only its own destination columns.
"""

from __future__ import annotations

from typing import Callable, Dict, Optional, Sequence

import numpy as np

from genomat.matrix import GenotypeMatrix
from genomat.parallel import partition_ranges, resolve_threads, run_partitions
from genomat.types import (
    GENO_DTYPE,
    MISSING,
    DimensionMismatchError,
    MergeOp,
)

_INT8_MAX = int(np.iinfo(np.int8).max)


# ═══════════════════════════════════════════════════════════════════════
# OPERATORS
# ═══════════════════════════════════════════════════════════════════════

_ARITHMETIC: Dict[MergeOp, Callable[[np.ndarray, np.ndarray], np.ndarray]] = {
    MergeOp.ADD: np.add,
    MergeOp.SUBTRACT: np.subtract,
    MergeOp.MULTIPLY: np.multiply,
    MergeOp.MINIMUM: np.minimum,
    MergeOp.MAXIMUM: np.maximum,
}


def apply_op(dest: np.ndarray, source: np.ndarray, op: MergeOp) -> np.ndarray:
    """Combine ``source`` into ``dest`` cellwise and return the result.

    ASSIGN returns ``source`` unchanged (MISSING included). Every other op
    yields MISSING where either operand is MISSING.

    Raises:
        ValueError: If ``op`` is not a MergeOp member.
        OverflowError: If a result leaves the int8 range.
    """
    if not isinstance(op, MergeOp):
        raise ValueError(f"op must be a MergeOp, got {op!r}")
    if op is MergeOp.ASSIGN:
        return np.asarray(source, dtype=GENO_DTYPE)
    if op not in _ARITHMETIC:
        raise ValueError(f"no combinator registered for {op}")

    d = np.asarray(dest, dtype=np.int16)
    s = np.asarray(source, dtype=np.int16)
    missing = (d == MISSING) | (s == MISSING)
    result = _ARITHMETIC[op](d, s)
    valid = result[~missing]
    if valid.size and (valid.min() <= MISSING or valid.max() > _INT8_MAX):
        raise OverflowError(
            f"{op.value} produced values outside [{MISSING + 1}, {_INT8_MAX}]"
        )
    result[missing] = MISSING
    return result.astype(GENO_DTYPE)


# ═══════════════════════════════════════════════════════════════════════
# MERGE
# ═══════════════════════════════════════════════════════════════════════


def _resolve_columns(
    columns: Optional[Sequence[int]],
    n_source_cols: int,
    n_dest_cols: int,
) -> np.ndarray:
    if columns is None:
        if n_source_cols != n_dest_cols:
            raise DimensionMismatchError(
                f"source has {n_source_cols} columns, destination "
                f"{n_dest_cols}; pass columns to merge a subset"
            )
        return np.arange(n_dest_cols, dtype=np.int64)

    cols = np.asarray(columns, dtype=np.int64).ravel()
    if len(cols) != n_source_cols:
        raise DimensionMismatchError(
            f"{len(cols)} destination columns given for {n_source_cols} source columns"
        )
    if cols.size and (cols.min() < 0 or cols.max() >= n_dest_cols):
        bad = cols[(cols < 0) | (cols >= n_dest_cols)][0]
        raise IndexError(
            f"destination column {bad} out of bounds for {n_dest_cols} columns"
        )
    if len(np.unique(cols)) != len(cols):
        raise ValueError("destination columns must be unique")
    return cols


def _merge(
    dst: np.ndarray,
    src: np.ndarray,
    columns: Optional[Sequence[int]],
    op: MergeOp,
    threads: int,
) -> None:
    if not isinstance(op, MergeOp):
        raise ValueError(f"op must be a MergeOp, got {op!r}")
    if src.shape[0] != dst.shape[0]:
        raise DimensionMismatchError(
            f"row count mismatch: source {src.shape[0]}, destination {dst.shape[0]}"
        )
    cols = _resolve_columns(columns, src.shape[1], dst.shape[1])
    threads = resolve_threads(threads)

    def work(start: int, stop: int) -> None:
        target = cols[start:stop]
        dst[:, target] = apply_op(dst[:, target], src[:, start:stop], op)

    run_partitions(work, partition_ranges(len(cols), threads), threads)


def merge_from_array(
    matrix: GenotypeMatrix,
    values: np.ndarray,
    columns: Optional[Sequence[int]] = None,
    op: MergeOp = MergeOp.ASSIGN,
    threads: int = 1,
) -> None:
    """Merge an in-memory array into ``matrix`` (storage orientation).

    Args:
        matrix: Destination, modified in place.
        values: 2-D array with the destination's row count. Floating-point
            NaN cells are read as MISSING.
        columns: Destination column for each source column (None = all,
            positional).
        op: MergeOp combinator.
        threads: Worker count; non-positive means serial.

    Raises:
        DimensionMismatchError: Row or column counts disagree.
        IndexError: A destination column is out of bounds.
        ValueError: Floating-point values hold a fractional dosage.
    """
    values = np.asarray(values)
    if values.ndim == 1:
        values = values[:, None]
    if values.ndim != 2:
        raise ValueError(f"values must be 1-D or 2-D, got {values.ndim}-D")
    if np.issubdtype(values.dtype, np.floating):
        missing = np.isnan(values)
        called = values[~missing]
        if called.size and (not np.all(np.isfinite(called))
                            or np.any(called != np.round(called))
                            or np.abs(called).max() > _INT8_MAX):
            raise ValueError("floating-point values must be whole int8 dosages or NaN")
        values = np.where(missing, MISSING, values).astype(GENO_DTYPE)
    if matrix.readonly:
        raise ValueError("cannot merge into a read-only genotype matrix")
    _merge(matrix.array, values, columns, op, threads)
    matrix.flush()


def merge_from_matrix(
    dest: GenotypeMatrix,
    source: GenotypeMatrix,
    columns: Optional[Sequence[int]] = None,
    op: MergeOp = MergeOp.ASSIGN,
    threads: int = 1,
) -> None:
    """Merge one GenotypeMatrix into another of the same layout.

    Raises:
        DimensionMismatchError: Layouts, row counts or column counts disagree.
        IndexError: A destination column is out of bounds.
    """
    if source.layout != dest.layout:
        raise DimensionMismatchError(
            f"layout mismatch: source {source.layout.name}, "
            f"destination {dest.layout.name}"
        )
    if dest.readonly:
        raise ValueError("cannot merge into a read-only genotype matrix")
    _merge(dest.array, source.array, columns, op, threads)
    dest.flush()
