"""Genotype-based verification and correction of recorded parentage.

For each genotyped offspring and each parent role (sire, dam) the
candidate pool is scored by the opposite-homozygote exclusion rate: the
fraction of co-called markers at which offspring and candidate are
homozygous for different alleles, which is impossible under true
parentage barring genotyping error.

Decision per role:
  1. Candidates scoring above the exclusion threshold are discarded.
  2. A recorded parent that survives with the lowest score is kept
     (UNCHANGED).
  3. Otherwise the best survivor is assigned (RESOLVED) when its score is
     within the assignment threshold and it beats the runner-up by more
     than the ambiguity margin.
  4. Anything else is UNRESOLVED and the recorded parent is left as is.

Sire and dam are resolved independently. Records are split into static
ranges across the thread pool.
"""

from __future__ import annotations

import datetime
import logging
import math
from collections import Counter
from dataclasses import replace
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from genomat.matrix import GenotypeMatrix
from genomat.parallel import partition_ranges, resolve_threads, run_partitions
from genomat.types import (
    DimensionMismatchError,
    PedigreeRecord,
    ResolutionStatus,
)
from genomat.utils import progress, timer

logger = logging.getLogger(__name__)

MISSING_PARENT_TOKENS = frozenset({"", "0", "NA"})

# Markers scored per step when comparing an offspring with its pool
_SCORE_CHUNK = 4096

DateLike = Union[int, float, datetime.date]
PedigreeRow = Union[PedigreeRecord, Tuple[str, Optional[str], Optional[str]]]


# ═══════════════════════════════════════════════════════════════════════
# EXCLUSION SCORE
# ═══════════════════════════════════════════════════════════════════════


def _mismatch_counts(offspring: np.ndarray, candidates: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Opposite-homozygote and co-called marker counts per candidate column."""
    off = offspring[:, None]
    off_called = (off >= 0) & (off <= 2)
    cand_called = (candidates >= 0) & (candidates <= 2)
    both = off_called & cand_called
    opposite = ((off == 0) & (candidates == 2)) | ((off == 2) & (candidates == 0))
    return (np.count_nonzero(opposite & both, axis=0),
            np.count_nonzero(both, axis=0))


def exclusion_scores(offspring: np.ndarray, candidates: np.ndarray) -> np.ndarray:
    """Opposite-homozygote rate between one offspring and each candidate.

    Args:
        offspring: (n_markers,) dosage vector.
        candidates: (n_markers, n_candidates) dosages, or a single
            (n_markers,) candidate vector.

    Returns:
        (n_candidates,) float64 scores in [0, 1]; NaN for a candidate that
        shares no called marker with the offspring.

    Raises:
        DimensionMismatchError: If the marker counts differ.
    """
    offspring = np.asarray(offspring)
    candidates = np.asarray(candidates)
    if candidates.ndim == 1:
        candidates = candidates[:, None]
    if offspring.ndim != 1 or candidates.ndim != 2:
        raise ValueError("offspring must be 1-D and candidates 1-D or 2-D")
    if offspring.shape[0] != candidates.shape[0]:
        raise DimensionMismatchError(
            f"offspring has {offspring.shape[0]} markers, "
            f"candidates have {candidates.shape[0]}"
        )
    n_opposite, n_compared = _mismatch_counts(offspring, candidates)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(n_compared > 0, n_opposite / np.maximum(n_compared, 1), np.nan)


def _pool_scores(src: np.ndarray, off_col: int, cand_cols: np.ndarray) -> np.ndarray:
    n_opposite = np.zeros(len(cand_cols), dtype=np.int64)
    n_compared = np.zeros(len(cand_cols), dtype=np.int64)
    for start in range(0, src.shape[0], _SCORE_CHUNK):
        stop = min(start + _SCORE_CHUNK, src.shape[0])
        block = src[start:stop]
        opp, cmp_ = _mismatch_counts(block[:, off_col], block[:, cand_cols])
        n_opposite += opp
        n_compared += cmp_
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(n_compared > 0, n_opposite / np.maximum(n_compared, 1), np.nan)


# ═══════════════════════════════════════════════════════════════════════
# INPUT NORMALISATION
# ═══════════════════════════════════════════════════════════════════════


def _parent_id(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    value = str(value).strip()
    return None if value in MISSING_PARENT_TOKENS else value


def _date_value(value: Optional[DateLike]) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, datetime.date):
        return float(value.toordinal())
    value = float(value)
    return None if math.isnan(value) else value


def _as_record(row: PedigreeRow) -> PedigreeRecord:
    if isinstance(row, PedigreeRecord):
        return replace(row, individual=str(row.individual),
                       sire=_parent_id(row.sire), dam=_parent_id(row.dam))
    individual, sire, dam = row
    return PedigreeRecord(individual=str(individual), sire=_parent_id(sire), dam=_parent_id(dam))


def _pool(
    explicit: Optional[Sequence[str]],
    id_to_col: Dict[str, int],
) -> Tuple[List[str], np.ndarray]:
    if explicit is None:
        ids = list(id_to_col)
    else:
        ids = list(dict.fromkeys(str(x) for x in explicit if str(x) in id_to_col))
    return ids, np.array([id_to_col[x] for x in ids], dtype=np.int64)


# ═══════════════════════════════════════════════════════════════════════
# RESOLUTION
# ═══════════════════════════════════════════════════════════════════════


def _resolve_role(
    src: np.ndarray,
    off_col: int,
    off_birth: Optional[float],
    recorded: Optional[str],
    pool_ids: List[str],
    pool_cols: np.ndarray,
    pool_births: np.ndarray,
    exclusion_threshold: float,
    assignment_threshold: float,
    ambiguity_margin: float,
    min_generation_interval: float,
) -> Tuple[Optional[str], ResolutionStatus, float]:
    unresolved = (recorded, ResolutionStatus.UNRESOLVED, math.nan)

    keep = pool_cols != off_col
    if off_birth is not None:
        # Unknown candidate dates pass
        with np.errstate(invalid="ignore"):
            keep &= np.isnan(pool_births) | (pool_births + min_generation_interval < off_birth)
    if not keep.any():
        return unresolved

    ids = [pool_ids[i] for i in np.flatnonzero(keep)]
    scores = _pool_scores(src, off_col, pool_cols[keep])

    with np.errstate(invalid="ignore"):
        survived = scores <= exclusion_threshold
    if not survived.any():
        return unresolved
    ids = [ids[i] for i in np.flatnonzero(survived)]
    scores = scores[survived]

    order = np.argsort(scores, kind="stable")
    best = float(scores[order[0]])

    if recorded is not None and recorded in ids:
        rec_score = float(scores[ids.index(recorded)])
        if rec_score <= best:
            return recorded, ResolutionStatus.UNCHANGED, 1.0 - rec_score

    if best > assignment_threshold:
        return unresolved
    if len(order) > 1 and float(scores[order[1]]) - best <= ambiguity_margin:
        return unresolved
    return ids[order[0]], ResolutionStatus.RESOLVED, 1.0 - best


def correct_pedigree(
    matrix: GenotypeMatrix,
    genotyped_ids: Sequence[str],
    pedigree: Sequence[PedigreeRow],
    candidate_sires: Optional[Sequence[str]] = None,
    candidate_dams: Optional[Sequence[str]] = None,
    exclusion_threshold: float = 0.1,
    assignment_threshold: float = 0.05,
    birth_dates: Optional[Mapping[str, DateLike]] = None,
    threads: int = 1,
    verbose: bool = False,
    ambiguity_margin: float = 0.0,
    min_generation_interval: float = 0.0,
) -> List[PedigreeRecord]:
    """Verify recorded sires and dams against genotypes and correct them.

    Args:
        matrix: Genotypes of all genotyped individuals (read only).
        genotyped_ids: Identifier of each matrix individual, in order.
        pedigree: PedigreeRecord objects or (individual, sire, dam) tuples.
        candidate_sires: Explicit sire pool (None = every genotyped id).
        candidate_dams: Explicit dam pool (None = every genotyped id).
            With both pools left as None they coincide, so one individual
            may be returned as both corrected sire and corrected dam.
        exclusion_threshold: Candidates scoring above this are discarded.
        assignment_threshold: Best candidate must score at or below this.
        birth_dates: Optional id → date (number or datetime.date).
        threads: Worker count; non-positive means serial.
        verbose: Log a resolution summary.
        ambiguity_margin: Runner-up must trail the best by more than this.
        min_generation_interval: Minimum gap between parent and offspring
            birth dates, in the same unit as ``birth_dates``.

    Returns:
        New PedigreeRecord list, one per input row and in input order.

    Raises:
        DimensionMismatchError: ``genotyped_ids`` does not match the matrix.
    """
    src = matrix.by_marker()
    ids = [str(x) for x in genotyped_ids]
    if len(ids) != src.shape[1]:
        raise DimensionMismatchError(
            f"{len(ids)} genotyped ids for {src.shape[1]} matrix individuals"
        )
    id_to_col = {x: i for i, x in enumerate(ids)}
    if len(id_to_col) != len(ids):
        raise ValueError("genotyped ids must be unique")

    dates = {str(k): _date_value(v) for k, v in (birth_dates or {}).items()}
    records = [_as_record(row) for row in pedigree]
    threads = resolve_threads(threads)

    def pool_with_births(explicit):
        pool_ids, pool_cols = _pool(explicit, id_to_col)
        births = np.array(
            [np.nan if dates.get(x) is None else dates[x] for x in pool_ids],
            dtype=np.float64,
        )
        return pool_ids, pool_cols, births

    sire_pool = pool_with_births(candidate_sires)
    dam_pool = pool_with_births(candidate_dams)
    settings = (exclusion_threshold, assignment_threshold,
                ambiguity_margin, min_generation_interval)

    def work(start: int, stop: int) -> List[PedigreeRecord]:
        out = []
        for rec in records[start:stop]:
            birth = dates.get(rec.individual)
            if birth is None:
                birth = _date_value(rec.birth_date)
            off_col = id_to_col.get(rec.individual)
            if off_col is None:
                out.append(replace(
                    rec, birth_date=birth,
                    corrected_sire=rec.sire, corrected_dam=rec.dam,
                    sire_status=ResolutionStatus.UNRESOLVED,
                    dam_status=ResolutionStatus.UNRESOLVED,
                    sire_confidence=math.nan, dam_confidence=math.nan,
                ))
                continue
            sire, sire_status, sire_conf = _resolve_role(
                src, off_col, birth, rec.sire, *sire_pool, *settings)
            dam, dam_status, dam_conf = _resolve_role(
                src, off_col, birth, rec.dam, *dam_pool, *settings)
            out.append(replace(
                rec, birth_date=birth,
                corrected_sire=sire, corrected_dam=dam,
                sire_status=sire_status, dam_status=dam_status,
                sire_confidence=sire_conf, dam_confidence=dam_conf,
            ))
        return out

    with timer("correct_pedigree", verbose):
        parts = run_partitions(work, partition_ranges(len(records), threads), threads)
    corrected = [rec for part in parts for rec in part]

    if verbose:
        summary = summarize_resolution(corrected)
        for role in ("sire", "dam"):
            counts = summary[role]
            progress(logger, verbose, "%s: %d unchanged, %d resolved, %d unresolved",
                     role,
                     counts[ResolutionStatus.UNCHANGED],
                     counts[ResolutionStatus.RESOLVED],
                     counts[ResolutionStatus.UNRESOLVED])
    return corrected


def summarize_resolution(
    records: Sequence[PedigreeRecord],
) -> Dict[str, Dict[ResolutionStatus, int]]:
    """Count resolution outcomes per parent role.

    Returns:
        {'sire': {status: count}, 'dam': {status: count}} with every
        ResolutionStatus present.
    """
    sire = Counter(r.sire_status for r in records)
    dam = Counter(r.dam_status for r in records)
    return {
        "sire": {status: sire.get(status, 0) for status in ResolutionStatus},
        "dam": {status: dam.get(status, 0) for status in ResolutionStatus},
    }
