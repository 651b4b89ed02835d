"""Quality-control filtering of genotype matrices.

Two passes:
  1. Marker pass: per-marker call counts → missing rate, minor-allele
     frequency and a Hardy-Weinberg chi-square p-value. A marker is dropped
     if any supplied threshold is violated.
  2. Individual pass: per-individual missing rate recomputed over the
     RETAINED markers only; individuals above the threshold are dropped.

Thresholds left as None disable their criterion. A marker with no called
genotype has undefined MAF / HWE and fails those criteria when supplied;
this is an expected outcome, not an error.

Statistics are gathered over static marker ranges in a thread pool. The
per-individual missing counts are partial sums per range, reduced at the
end, so no worker writes outside its own range.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
from scipy.stats import chi2

from genomat.matrix import GenotypeMatrix
from genomat.parallel import partition_ranges, resolve_threads, run_partitions
from genomat.types import MarkerStats, QCResult
from genomat.utils import progress, timer

logger = logging.getLogger(__name__)

# Markers materialized per step inside a worker
_STATS_CHUNK = 2048


# ═══════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════


def _normalize_keep(
    keep_individuals: Optional[Sequence[int]],
    n_individuals: int,
) -> Optional[np.ndarray]:
    if keep_individuals is None:
        return None
    keep = np.unique(np.asarray(keep_individuals, dtype=np.int64))
    if keep.size and (keep[0] < 0 or keep[-1] >= n_individuals):
        raise IndexError(
            f"keep_individuals must lie in [0, {n_individuals}), "
            f"got range [{keep[0]}, {keep[-1]}]"
        )
    return keep


def _rows(src: np.ndarray, rows, keep: Optional[np.ndarray]) -> np.ndarray:
    block = src[rows]
    return block if keep is None else block[:, keep]


# ═══════════════════════════════════════════════════════════════════════
# HARDY-WEINBERG
# ═══════════════════════════════════════════════════════════════════════


def hardy_weinberg_pvalues(
    n_hom_ref: np.ndarray,
    n_het: np.ndarray,
    n_hom_alt: np.ndarray,
) -> np.ndarray:
    """Chi-square (1 df) HWE goodness-of-fit p-value per marker.

    Expected counts are n·q², 2n·p·q, n·p² with p estimated from the same
    counts. Monomorphic markers get statistic 0 (p-value 1); markers with
    no calls get NaN.

    Args:
        n_hom_ref: Count of dosage-0 calls per marker.
        n_het: Count of dosage-1 calls per marker.
        n_hom_alt: Count of dosage-2 calls per marker.

    Returns:
        (n_markers,) float64 p-values.
    """
    obs = np.stack([
        np.asarray(n_hom_ref, dtype=np.float64),
        np.asarray(n_het, dtype=np.float64),
        np.asarray(n_hom_alt, dtype=np.float64),
    ])
    n = obs.sum(axis=0)
    with np.errstate(divide="ignore", invalid="ignore"):
        p = (obs[1] + 2.0 * obs[2]) / (2.0 * n)
        q = 1.0 - p
        expected = np.stack([n * q * q, 2.0 * n * p * q, n * p * p])
        terms = np.where(expected > 0, (obs - expected) ** 2 / expected, 0.0)
    stat = terms.sum(axis=0)
    polymorphic = (p > 0.0) & (p < 1.0)
    stat = np.where(polymorphic, stat, 0.0)

    pvalues = chi2.sf(stat, df=1)
    pvalues[n == 0] = np.nan
    return pvalues


# ═══════════════════════════════════════════════════════════════════════
# MARKER STATISTICS
# ═══════════════════════════════════════════════════════════════════════


def compute_marker_stats(
    matrix: GenotypeMatrix,
    keep_individuals: Optional[Sequence[int]] = None,
    threads: int = 1,
) -> MarkerStats:
    """Per-marker counts and derived statistics over kept individuals.

    Cells outside {0, 1, 2} count as not called.
    """
    src = matrix.by_marker()
    n_markers, n_individuals = src.shape
    keep = _normalize_keep(keep_individuals, n_individuals)
    n_kept = n_individuals if keep is None else len(keep)
    threads = resolve_threads(threads)

    counts = np.zeros((n_markers, 3), dtype=np.int64)

    def work(start: int, stop: int) -> None:
        for s in range(start, stop, _STATS_CHUNK):
            e = min(s + _STATS_CHUNK, stop)
            block = _rows(src, slice(s, e), keep)
            for dosage in range(3):
                counts[s:e, dosage] = np.count_nonzero(block == dosage, axis=1)

    run_partitions(work, partition_ranges(n_markers, threads), threads)

    n_hom_ref, n_het, n_hom_alt = counts[:, 0], counts[:, 1], counts[:, 2]
    n_called = counts.sum(axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        missing_rate = (n_kept - n_called) / np.float64(n_kept)
        allele_freq = (n_het + 2.0 * n_hom_alt) / (2.0 * n_called)
    maf = np.minimum(allele_freq, 1.0 - allele_freq)

    return MarkerStats(
        n_called=n_called,
        n_hom_ref=n_hom_ref,
        n_het=n_het,
        n_hom_alt=n_hom_alt,
        missing_rate=missing_rate,
        allele_freq=allele_freq,
        maf=maf,
        hwe_pvalue=hardy_weinberg_pvalues(n_hom_ref, n_het, n_hom_alt),
    )


def allele_frequencies(matrix: GenotypeMatrix, threads: int = 1) -> np.ndarray:
    """Counted-allele frequency per marker (NaN where nothing is called)."""
    return compute_marker_stats(matrix, threads=threads).allele_freq


# ═══════════════════════════════════════════════════════════════════════
# FILTER
# ═══════════════════════════════════════════════════════════════════════


def _individual_missing_rate(
    src: np.ndarray,
    marker_index: np.ndarray,
    individuals: np.ndarray,
    threads: int,
) -> np.ndarray:
    n_retained = len(marker_index)
    if n_retained == 0:
        return np.full(len(individuals), np.nan)

    def work(start: int, stop: int) -> np.ndarray:
        partial = np.zeros(len(individuals), dtype=np.int64)
        for s in range(start, stop, _STATS_CHUNK):
            e = min(s + _STATS_CHUNK, stop)
            block = _rows(src, marker_index[s:e], individuals)
            called = (block >= 0) & (block <= 2)
            partial += (e - s) - np.count_nonzero(called, axis=0)
        return partial

    partials = run_partitions(work, partition_ranges(n_retained, threads), threads)
    missing = np.sum(partials, axis=0)
    return missing / np.float64(n_retained)


def filter_genotypes(
    matrix: GenotypeMatrix,
    keep_individuals: Optional[Sequence[int]] = None,
    missing_rate: Optional[float] = None,
    hwe_pvalue: Optional[float] = None,
    individual_missing_rate: Optional[float] = None,
    maf: Optional[float] = None,
    threads: int = 1,
    verbose: bool = False,
) -> QCResult:
    """Select markers and individuals passing quality thresholds.

    Args:
        matrix: Genotype matrix (read only).
        keep_individuals: Individuals to consider (None = all). Marker
            statistics use only these; the individual pass judges only these.
        missing_rate: Drop markers with missing rate above this.
        hwe_pvalue: Drop markers whose HWE p-value is below this.
        individual_missing_rate: Drop individuals whose missing rate over
            retained markers is above this.
        maf: Drop markers with minor-allele frequency below this.
        threads: Worker count; non-positive means serial.
        verbose: Log a filtering report.

    Returns:
        QCResult with sorted retained indices and their statistics.
    """
    src = matrix.by_marker()
    n_markers, n_individuals = src.shape
    threads = resolve_threads(threads)
    keep = _normalize_keep(keep_individuals, n_individuals)
    individuals = np.arange(n_individuals, dtype=np.int64) if keep is None else keep

    with timer("filter_genotypes", verbose):
        stats = compute_marker_stats(matrix, keep, threads)

        progress(logger, verbose, "marker filtering: %d markers in", n_markers)
        passed = np.ones(n_markers, dtype=bool)
        # NaN statistics compare False, so undefined markers drop out here
        with np.errstate(invalid="ignore"):
            criteria = []
            if missing_rate is not None:
                criteria.append(("missing rate <= %s" % missing_rate,
                                 stats.missing_rate <= missing_rate))
            if maf is not None:
                criteria.append(("MAF >= %s" % maf, stats.maf >= maf))
            if hwe_pvalue is not None:
                criteria.append(("HWE p >= %s" % hwe_pvalue,
                                 stats.hwe_pvalue >= hwe_pvalue))
        for label, ok in criteria:
            before = int(passed.sum())
            passed &= ok
            after = int(passed.sum())
            progress(logger, verbose, "  %s: removed %d markers, %d remaining",
                     label, before - after, after)
        marker_index = np.flatnonzero(passed).astype(np.int64)

        ind_missing = _individual_missing_rate(src, marker_index, individuals, threads)
        if individual_missing_rate is not None:
            with np.errstate(invalid="ignore"):
                ind_passed = ind_missing <= individual_missing_rate
        else:
            ind_passed = np.ones(len(individuals), dtype=bool)
        individual_index = individuals[ind_passed]
        progress(logger, verbose,
                 "individual filtering: removed %d individuals, %d remaining",
                 len(individuals) - len(individual_index), len(individual_index))

    return QCResult(
        marker_index=marker_index,
        individual_index=individual_index,
        marker_stats=stats.subset(marker_index),
        individual_missing_rate=ind_missing[ind_passed],
        n_markers_in=n_markers,
        n_individuals_in=n_individuals,
    )
