"""Core data types for genomat.

This module is the SINGLE SOURCE OF TRUTH for:
  - Dosage constants (MISSING sentinel, valid genotype states)
  - Layout, MergeOp, ResolutionStatus enumerations
  - Result / record objects shared between engines (MarkerStats, QCResult,
    PedigreeRecord)
  - Exceptions raised by the engines

All modules import these types from here. No other module defines them.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Optional

import numpy as np


# ═══════════════════════════════════════════════════════════════════════
# DOSAGE CONSTANTS
# ═══════════════════════════════════════════════════════════════════════

GENO_DTYPE = np.dtype(np.int8)

MISSING: int = int(np.iinfo(np.int8).min)   # -128, missing call sentinel

VALID_DOSAGES = (0, 1, 2)                     # copies of the counted allele


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class Layout(IntEnum):
    """Storage orientation of a GenotypeMatrix. Fixed at creation.

    MARKER_MAJOR      rows = markers, columns = individuals (bed block order)
    INDIVIDUAL_MAJOR  rows = individuals, columns = markers
    """
    MARKER_MAJOR     = 0
    INDIVIDUAL_MAJOR = 1


class MergeOp(Enum):
    """Closed set of elementwise combinators for MatrixMixer / mating.

    ASSIGN overwrites the destination. Every other op propagates MISSING
    from either operand.
    """
    ASSIGN   = "assign"
    ADD      = "add"
    SUBTRACT = "subtract"
    MULTIPLY = "multiply"
    MINIMUM  = "minimum"
    MAXIMUM  = "maximum"


class ResolutionStatus(Enum):
    """Outcome of parentage resolution for one parent role."""
    UNCHANGED  = "unchanged"    # recorded parent confirmed
    RESOLVED   = "resolved"     # parent replaced or newly assigned
    UNRESOLVED = "unresolved"   # no acceptable candidate; record left as is


# ═══════════════════════════════════════════════════════════════════════
# EXCEPTIONS
# ═══════════════════════════════════════════════════════════════════════

class GenotypeFormatError(ValueError):
    """Binary genotype file is malformed (magic, orientation or code)."""


class TruncatedFileError(GenotypeFormatError):
    """Binary genotype file ends inside a marker block."""

    def __init__(self, message: str, block: int):
        super().__init__(message)
        self.block = block


class DimensionMismatchError(ValueError):
    """Shapes of two matrices / vectors that must agree do not."""


class MatrixClosedError(RuntimeError):
    """Operation attempted on a GenotypeMatrix after close()."""


# ═══════════════════════════════════════════════════════════════════════
# QUALITY-CONTROL RESULTS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class MarkerStats:
    """Per-marker genotype counts and derived statistics.

    All arrays have one entry per marker. ``allele_freq`` is the frequency
    of the counted allele (dosage units / 2); ``maf`` folds it to ≤ 0.5.
    Markers without a called genotype carry NaN in the derived fields.
    """
    n_called: np.ndarray
    n_hom_ref: np.ndarray        # dosage 0
    n_het: np.ndarray            # dosage 1
    n_hom_alt: np.ndarray        # dosage 2
    missing_rate: np.ndarray
    allele_freq: np.ndarray
    maf: np.ndarray
    hwe_pvalue: np.ndarray

    def __len__(self) -> int:
        return len(self.n_called)

    def subset(self, index: np.ndarray) -> "MarkerStats":
        """Return the statistics restricted to ``index``."""
        return MarkerStats(
            n_called=self.n_called[index],
            n_hom_ref=self.n_hom_ref[index],
            n_het=self.n_het[index],
            n_hom_alt=self.n_hom_alt[index],
            missing_rate=self.missing_rate[index],
            allele_freq=self.allele_freq[index],
            maf=self.maf[index],
            hwe_pvalue=self.hwe_pvalue[index],
        )


@dataclass
class QCResult:
    """Output of filter_genotypes().

    marker_index / individual_index are sorted positions in the input
    matrix; the statistics fields are aligned with them.
    """
    marker_index: np.ndarray
    individual_index: np.ndarray
    marker_stats: MarkerStats
    individual_missing_rate: np.ndarray
    n_markers_in: int
    n_individuals_in: int

    @property
    def n_markers_kept(self) -> int:
        return int(len(self.marker_index))

    @property
    def n_individuals_kept(self) -> int:
        return int(len(self.individual_index))


# ═══════════════════════════════════════════════════════════════════════
# PEDIGREE RECORDS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class PedigreeRecord:
    """One row of a pedigree table.

    ``sire`` / ``dam`` are the recorded (putative) parents; the
    ``corrected_*`` fields hold the outcome of correct_pedigree(). For an
    unresolved role the corrected parent equals the recorded one.
    """
    individual: str
    sire: Optional[str] = None
    dam: Optional[str] = None
    birth_date: Optional[float] = None
    corrected_sire: Optional[str] = None
    corrected_dam: Optional[str] = None
    sire_status: ResolutionStatus = ResolutionStatus.UNRESOLVED
    dam_status: ResolutionStatus = ResolutionStatus.UNRESOLVED
    sire_confidence: float = field(default=math.nan)
    dam_confidence: float = field(default=math.nan)
