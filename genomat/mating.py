"""Offspring genotype simulation from paired parents.

Recombination is modelled at block granularity: the marker axis is cut
into ``n_block`` contiguous blocks, and inside a block every marker is
inherited from the same parental homolog (linked inheritance). A parent
with dosage d passes on (d + h) >> 1 copies of the counted allele for
homolog choice h ∈ {0, 1}: homozygotes always pass their allele,
heterozygotes pass the counted allele on homolog 1. Offspring dosage is
the sum of the two transmitted alleles, so it always lies in the
Mendelian possibility set of the parental pair.

Homolog choices are pre-drawn for all (pair, block) combinations before
any worker starts, so a given seed yields identical offspring regardless
of thread count.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from genomat.matrix import GenotypeMatrix
from genomat.mixer import apply_op
from genomat.parallel import partition_ranges, resolve_threads, run_partitions
from genomat.rng import SeedLike, create_rng
from genomat.types import MISSING, DimensionMismatchError, MergeOp

logger = logging.getLogger(__name__)


def recombination_blocks(n_markers: int, n_block: int) -> List[Tuple[int, int]]:
    """Cut ``range(n_markers)`` into contiguous blocks of near-equal width.

    ``n_block`` is clamped to [1, n_markers]; widths differ by at most one.

    Example:
        >>> recombination_blocks(10, 3)
        [(0, 4), (4, 7), (7, 10)]
    """
    if n_markers <= 0:
        return []
    n_block = min(max(1, int(n_block)), n_markers)
    return partition_ranges(n_markers, n_block)


def _check_individuals(index: np.ndarray, n: int, label: str) -> None:
    if index.size and (index.min() < 0 or index.max() >= n):
        bad = index[(index < 0) | (index >= n)][0]
        raise IndexError(f"{label} index {bad} out of bounds for {n} individuals")


def _transmitted(parent: np.ndarray, homolog: np.ndarray) -> np.ndarray:
    return (parent + homolog) >> 1


def simulate_mating(
    dest: GenotypeMatrix,
    source: GenotypeMatrix,
    sire_index: Sequence[int],
    dam_index: Sequence[int],
    n_block: int = 1,
    op: MergeOp = MergeOp.ASSIGN,
    threads: int = 1,
    rng: SeedLike = None,
    dest_individuals: Optional[Sequence[int]] = None,
) -> None:
    """Write one offspring individual per sire × dam pair into ``dest``.

    Pair i is ``sire_index[i]`` × ``dam_index[i]`` (individual positions
    in ``source``). Works for either storage layout.

    Args:
        dest: Destination matrix (same marker count as ``source``).
        source: Parental genotypes.
        sire_index: Sire position per pair.
        dam_index: Dam position per pair.
        n_block: Number of recombination blocks along the marker axis.
        op: ASSIGN writes the offspring; ADD accumulates into ``dest``.
        threads: Worker count; non-positive means serial.
        rng: Seed or Generator for the homolog draws.
        dest_individuals: Destination individual per pair (None = 0..n-1,
            in which case ``dest`` must hold exactly one individual per pair).

    Raises:
        DimensionMismatchError: Pair lists or marker counts disagree.
        IndexError: A parent or destination index is out of bounds.
    """
    if not isinstance(op, MergeOp):
        raise ValueError(f"op must be a MergeOp, got {op!r}")
    if dest.readonly:
        raise ValueError("cannot write offspring into a read-only genotype matrix")

    sires = np.asarray(sire_index, dtype=np.int64).ravel()
    dams = np.asarray(dam_index, dtype=np.int64).ravel()
    if len(sires) != len(dams):
        raise DimensionMismatchError(
            f"{len(sires)} sires paired with {len(dams)} dams"
        )
    n_pairs = len(sires)
    if dest.n_markers != source.n_markers:
        raise DimensionMismatchError(
            f"marker count mismatch: source {source.n_markers}, destination {dest.n_markers}"
        )
    _check_individuals(sires, source.n_individuals, "sire")
    _check_individuals(dams, source.n_individuals, "dam")

    if dest_individuals is None:
        if dest.n_individuals != n_pairs:
            raise DimensionMismatchError(
                f"destination holds {dest.n_individuals} individuals for "
                f"{n_pairs} pairs; pass dest_individuals to target a subset"
            )
        targets = np.arange(n_pairs, dtype=np.int64)
    else:
        targets = np.asarray(dest_individuals, dtype=np.int64).ravel()
        if len(targets) != n_pairs:
            raise DimensionMismatchError(
                f"{len(targets)} destination individuals for {n_pairs} pairs"
            )
        _check_individuals(targets, dest.n_individuals, "destination")
        if len(np.unique(targets)) != n_pairs:
            raise ValueError("destination individuals must be unique")

    blocks = recombination_blocks(source.n_markers, n_block)
    generator = create_rng(rng)
    # (pair, block, [sire, dam]) homolog choices
    choices = generator.integers(0, 2, size=(n_pairs, len(blocks), 2), dtype=np.int16)

    src = source.by_marker()
    dst = dest.by_marker()
    threads = resolve_threads(threads)

    def work(start: int, stop: int) -> None:
        s_idx, d_idx, t_idx = sires[start:stop], dams[start:stop], targets[start:stop]
        for b, (m0, m1) in enumerate(blocks):
            sire_geno = src[m0:m1][:, s_idx].astype(np.int16)
            dam_geno = src[m0:m1][:, d_idx].astype(np.int16)
            missing = ((sire_geno < 0) | (sire_geno > 2)
                       | (dam_geno < 0) | (dam_geno > 2))
            offspring = (_transmitted(sire_geno, choices[start:stop, b, 0])
                         + _transmitted(dam_geno, choices[start:stop, b, 1]))
            offspring[missing] = MISSING
            dst[m0:m1, t_idx] = apply_op(dst[m0:m1, t_idx], offspring, op)

    run_partitions(work, partition_ranges(n_pairs, threads), threads)
    dest.flush()
    logger.debug("simulated %d offspring over %d recombination blocks",
                 n_pairs, len(blocks))
