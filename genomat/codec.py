"""Binary genotype codec (PLINK-style .bed, marker-major).

File layout:
  bytes 0–1   magic 0x6C 0x1B
  byte  2     orientation, 0x01 = marker-major (the only supported mode)
  then one block per marker, ceil(n_individuals / 4) bytes each.

Each byte packs four calls, 2 bits per call, lowest bits first
(individual k of a marker sits in bits 2*(k % 4) of byte k // 4). Code
table, with dosage counting the first allele:

  0b00 → 2     0b01 → MISSING     0b10 → 1     0b11 → 0

The last byte of a block is zero-padded when n_individuals % 4 != 0.

Encoding and decoding are streamed in chunks of at most ``max_line_budget``
markers. Inside a chunk, work is split over marker ranges; when a chunk has
fewer markers than threads it is split over individual ranges aligned to
multiples of four so that no packed byte is produced by two workers.
Encoded chunks are written to the file in marker order by the caller
thread only.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np

from genomat.matrix import GenotypeMatrix
from genomat.parallel import partition_ranges, resolve_threads, run_partitions
from genomat.types import (
    GENO_DTYPE,
    MISSING,
    DimensionMismatchError,
    GenotypeFormatError,
    Layout,
    TruncatedFileError,
)
from genomat.utils import progress, timer

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


# ═══════════════════════════════════════════════════════════════════════
# FORMAT CONSTANTS
# ═══════════════════════════════════════════════════════════════════════

BED_MAGIC: bytes = b"\x6c\x1b"
MODE_MARKER_MAJOR: int = 0x01
HEADER_SIZE: int = 3

DEFAULT_MAX_LINE_BUDGET: int = 10000

CODE_HOM_ALT: int = 0b00     # dosage 2
CODE_MISSING: int = 0b01
CODE_HET: int = 0b10         # dosage 1
CODE_HOM_REF: int = 0b11     # dosage 0

_INVALID = 0xFF

# int8 cell (viewed as uint8) → 2-bit code
_ENCODE_LUT = np.full(256, _INVALID, dtype=np.uint8)
_ENCODE_LUT[0] = CODE_HOM_REF
_ENCODE_LUT[1] = CODE_HET
_ENCODE_LUT[2] = CODE_HOM_ALT
_ENCODE_LUT[MISSING & 0xFF] = CODE_MISSING

# 2-bit code → int8 cell
_DECODE_LUT = np.array([2, MISSING, 1, 0], dtype=GENO_DTYPE)

_SHIFTS = (0, 2, 4, 6)

# Markers scanned per step by the missing-value checks
_SCAN_CHUNK = 1024


@dataclass(frozen=True)
class BedHeader:
    """Parsed 3-byte header."""
    magic: bytes
    mode: int


def bytes_per_marker(n_individuals: int) -> int:
    """Packed block width for one marker."""
    return (n_individuals + 3) // 4


# ═══════════════════════════════════════════════════════════════════════
# BLOCK KERNELS
# ═══════════════════════════════════════════════════════════════════════


def encode_block(block: np.ndarray) -> np.ndarray:
    """Pack a (k, n) dosage block into (k, ceil(n/4)) bytes.

    Raises:
        ValueError: If a cell is not one of {0, 1, 2, MISSING}.
    """
    k, n = block.shape
    codes = _ENCODE_LUT[np.asarray(block, dtype=GENO_DTYPE).view(np.uint8)]
    bad = codes == _INVALID
    if bad.any():
        row, col = np.argwhere(bad)[0]
        raise ValueError(
            f"cannot encode value {int(block[row, col])} at block row {row}, "
            f"column {col}: expected 0, 1, 2 or MISSING"
        )
    width = bytes_per_marker(n)
    pad = width * 4 - n
    if pad:
        codes = np.pad(codes, ((0, 0), (0, pad)), constant_values=CODE_HOM_ALT)
    codes = codes.reshape(k, width, 4)
    return (codes[..., 0]
            | (codes[..., 1] << 2)
            | (codes[..., 2] << 4)
            | (codes[..., 3] << 6)).astype(np.uint8)


def decode_block(raw: np.ndarray, n_individuals: int) -> np.ndarray:
    """Unpack (k, ceil(n/4)) bytes into a (k, n) int8 dosage block."""
    k, width = raw.shape
    codes = np.empty((k, width, 4), dtype=np.uint8)
    for slot, shift in enumerate(_SHIFTS):
        codes[..., slot] = (raw >> shift) & 0b11
    return _DECODE_LUT[codes.reshape(k, width * 4)[:, :n_individuals]]


def _block_has_missing(raw: np.ndarray, n_individuals: int) -> bool:
    # A slot holds 0b01 when its low bit is set and its high bit is clear.
    # Padding slots in the last byte are masked off.
    low = raw & 0x55
    high = (raw >> 1) & 0x55
    hits = low & ~high
    tail = n_individuals % 4
    if tail and hits.size:
        hits[:, -1] &= np.uint8((1 << (2 * tail)) - 1)
    return bool(np.any(hits))


def _split_chunk(k: int, n_individuals: int, threads: int):
    """Choose the partition axis for a chunk of ``k`` markers."""
    if k >= threads or n_individuals < 8:
        return "markers", partition_ranges(k, threads)
    return "individuals", partition_ranges(n_individuals, threads, align=4)


def _encode_chunk(src: np.ndarray, threads: int) -> np.ndarray:
    k, n = src.shape
    out = np.empty((k, bytes_per_marker(n)), dtype=np.uint8)
    axis, ranges = _split_chunk(k, n, threads)

    if axis == "markers":
        def work(start: int, stop: int) -> None:
            out[start:stop] = encode_block(src[start:stop])
    else:
        def work(start: int, stop: int) -> None:
            out[:, start // 4:bytes_per_marker(stop)] = encode_block(src[:, start:stop])

    run_partitions(work, ranges, threads)
    return out


def _decode_chunk(raw: np.ndarray, dst: np.ndarray, threads: int) -> None:
    k, n = dst.shape
    axis, ranges = _split_chunk(k, n, threads)

    if axis == "markers":
        def work(start: int, stop: int) -> None:
            dst[start:stop] = decode_block(raw[start:stop], n)
    else:
        def work(start: int, stop: int) -> None:
            dst[:, start:stop] = decode_block(
                raw[:, start // 4:bytes_per_marker(stop)], stop - start
            )

    run_partitions(work, ranges, threads)


def _check_budget(max_line_budget: Optional[int]) -> int:
    if max_line_budget is None:
        return DEFAULT_MAX_LINE_BUDGET
    if max_line_budget < 1:
        raise ValueError(f"max_line_budget must be >= 1, got {max_line_budget}")
    return int(max_line_budget)


# ═══════════════════════════════════════════════════════════════════════
# HEADER & SIZE CHECKS
# ═══════════════════════════════════════════════════════════════════════


def read_bed_header(path: PathLike) -> BedHeader:
    """Read and validate the 3-byte header.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        GenotypeFormatError: On short header, bad magic or unsupported mode.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Genotype file not found: {path}")
    with open(path, "rb") as fh:
        head = fh.read(HEADER_SIZE)
    if len(head) < HEADER_SIZE:
        raise GenotypeFormatError(
            f"{path}: header is {len(head)} bytes, expected {HEADER_SIZE}"
        )
    if head[:2] != BED_MAGIC:
        raise GenotypeFormatError(
            f"{path}: bad magic bytes {head[:2].hex()}, expected {BED_MAGIC.hex()}"
        )
    if head[2] != MODE_MARKER_MAJOR:
        raise GenotypeFormatError(
            f"{path}: orientation byte 0x{head[2]:02x} not supported "
            f"(only marker-major 0x01)"
        )
    return BedHeader(magic=head[:2], mode=head[2])


def bed_marker_count(path: PathLike, n_individuals: int) -> int:
    """Infer the number of marker blocks from the file size.

    Raises:
        TruncatedFileError: If the payload ends inside a block.
        DimensionMismatchError: If there are no individuals but a payload.
    """
    path = Path(path)
    payload = path.stat().st_size - HEADER_SIZE
    width = bytes_per_marker(n_individuals)
    if width == 0:
        if payload:
            raise DimensionMismatchError(
                f"{path}: {payload} payload bytes but zero individuals"
            )
        return 0
    n_markers, remainder = divmod(payload, width)
    if remainder:
        raise TruncatedFileError(
            f"{path}: file ends inside marker block {n_markers} "
            f"({remainder} of {width} bytes present)",
            block=n_markers,
        )
    return n_markers


def _check_payload(path: Path, n_markers: int, n_individuals: int) -> None:
    width = bytes_per_marker(n_individuals)
    payload = path.stat().st_size - HEADER_SIZE
    expected = n_markers * width
    if payload < expected:
        block = payload // width if width else 0
        raise TruncatedFileError(
            f"{path}: truncated at marker block {block} of {n_markers} "
            f"({payload} payload bytes, expected {expected})",
            block=block,
        )
    if payload > expected:
        raise DimensionMismatchError(
            f"{path}: holds {payload} payload bytes, a matrix of {n_markers} "
            f"markers x {n_individuals} individuals needs {expected}"
        )


# ═══════════════════════════════════════════════════════════════════════
# ENCODE / DECODE
# ═══════════════════════════════════════════════════════════════════════


def write_bed(
    matrix: GenotypeMatrix,
    path: PathLike,
    threads: int = 1,
    verbose: bool = False,
    max_line_budget: Optional[int] = None,
) -> None:
    """Serialize the full matrix to a marker-major binary file.

    Args:
        matrix: Source matrix (any layout).
        path: Output file (overwritten).
        threads: Worker count; non-positive means serial.
        verbose: Log progress per chunk.
        max_line_budget: Markers encoded per chunk (default 10000).

    Raises:
        ValueError: If the matrix holds a value outside {0, 1, 2, MISSING}.
    """
    path = Path(path)
    threads = resolve_threads(threads)
    budget = _check_budget(max_line_budget)
    src = matrix.by_marker()
    n_markers, n_individuals = src.shape

    with timer(f"write_bed {path.name}", verbose), open(path, "wb") as fh:
        fh.write(BED_MAGIC + bytes([MODE_MARKER_MAJOR]))
        for m0 in range(0, n_markers, budget):
            m1 = min(m0 + budget, n_markers)
            try:
                packed = _encode_chunk(src[m0:m1], threads)
            except ValueError as exc:
                raise ValueError(f"marker chunk starting at {m0}: {exc}") from exc
            fh.write(packed.tobytes())
            progress(logger, verbose, "encoded markers %d-%d of %d", m0, m1, n_markers)


def read_bed(
    path: PathLike,
    matrix: GenotypeMatrix,
    max_line_budget: int = DEFAULT_MAX_LINE_BUDGET,
    threads: int = 1,
    verbose: bool = False,
) -> None:
    """Decode a binary genotype file into a pre-allocated matrix.

    At most ``max_line_budget`` markers are held in memory as packed bytes
    at any time.

    Raises:
        GenotypeFormatError: Malformed header.
        TruncatedFileError: File shorter than the matrix requires.
        DimensionMismatchError: File longer than the matrix requires.
        ValueError: If ``matrix`` is read-only.
    """
    path = Path(path)
    if matrix.readonly:
        raise ValueError("cannot decode into a read-only genotype matrix")
    threads = resolve_threads(threads)
    budget = _check_budget(max_line_budget)
    read_bed_header(path)

    dst = matrix.by_marker()
    n_markers, n_individuals = dst.shape
    _check_payload(path, n_markers, n_individuals)
    width = bytes_per_marker(n_individuals)

    with timer(f"read_bed {path.name}", verbose), open(path, "rb") as fh:
        fh.seek(HEADER_SIZE)
        for m0 in range(0, n_markers, budget):
            m1 = min(m0 + budget, n_markers)
            want = (m1 - m0) * width
            data = fh.read(want)
            if len(data) < want:
                block = m0 + len(data) // max(width, 1)
                raise TruncatedFileError(
                    f"{path}: unexpected end of file in marker block {block}",
                    block=block,
                )
            raw = np.frombuffer(data, dtype=np.uint8).reshape(m1 - m0, width)
            _decode_chunk(raw, dst[m0:m1], threads)
            progress(logger, verbose, "decoded markers %d-%d of %d", m0, m1, n_markers)
    matrix.flush()


def read_bed_matrix(
    path: PathLike,
    n_individuals: int,
    matrix_path: Optional[PathLike] = None,
    layout: Layout = Layout.MARKER_MAJOR,
    max_line_budget: int = DEFAULT_MAX_LINE_BUDGET,
    threads: int = 1,
    verbose: bool = False,
) -> GenotypeMatrix:
    """Allocate a matrix sized from the file and decode into it."""
    read_bed_header(path)
    n_markers = bed_marker_count(path, n_individuals)
    matrix = GenotypeMatrix.create(matrix_path, n_markers, n_individuals, layout)
    try:
        read_bed(path, matrix, max_line_budget, threads, verbose)
    except Exception:
        matrix.close()
        raise
    return matrix


# ═══════════════════════════════════════════════════════════════════════
# MISSING-VALUE CHECKS
# ═══════════════════════════════════════════════════════════════════════


def has_missing(matrix: GenotypeMatrix, threads: int = 1) -> bool:
    """True if any cell of ``matrix`` is MISSING.

    Marker ranges are scanned in parallel; the first worker to find a
    missing call signals the others to stop.
    """
    src = matrix.by_marker()
    threads = resolve_threads(threads)
    found = threading.Event()

    def work(start: int, stop: int) -> bool:
        for s in range(start, stop, _SCAN_CHUNK):
            if found.is_set():
                return False
            if np.any(src[s:min(s + _SCAN_CHUNK, stop)] == MISSING):
                found.set()
                return True
        return False

    run_partitions(work, partition_ranges(src.shape[0], threads), threads)
    return found.is_set()


def has_missing_in_file(
    path: PathLike,
    n_individuals: int,
    max_line_budget: int = DEFAULT_MAX_LINE_BUDGET,
    threads: int = 1,
    verbose: bool = False,
) -> bool:
    """True if the binary file contains any missing call.

    Reads the file chunk by chunk and returns at the first chunk holding
    a missing code, without decoding the calls.
    """
    path = Path(path)
    threads = resolve_threads(threads)
    budget = _check_budget(max_line_budget)
    read_bed_header(path)
    n_markers = bed_marker_count(path, n_individuals)
    width = bytes_per_marker(n_individuals)

    with open(path, "rb") as fh:
        fh.seek(HEADER_SIZE)
        for m0 in range(0, n_markers, budget):
            m1 = min(m0 + budget, n_markers)
            raw = np.frombuffer(fh.read((m1 - m0) * width), dtype=np.uint8)
            raw = raw.reshape(m1 - m0, width)
            found = threading.Event()

            def work(start: int, stop: int) -> bool:
                for s in range(start, stop, _SCAN_CHUNK):
                    if found.is_set():
                        return False
                    if _block_has_missing(raw[s:min(s + _SCAN_CHUNK, stop)], n_individuals):
                        found.set()
                        return True
                return False

            run_partitions(work, partition_ranges(m1 - m0, threads), threads)
            if found.is_set():
                progress(logger, verbose, "missing call found in markers %d-%d", m0, m1)
                return True
            progress(logger, verbose, "scanned markers %d-%d of %d", m0, m1, n_markers)
    return False
