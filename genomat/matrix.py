"""Disk-backed genotype matrix handle.

A GenotypeMatrix owns one int8 array holding dosage calls
{0, 1, 2, MISSING}. The array is either anonymous (in memory) or a raw
``numpy.memmap`` file accompanied by a small YAML descriptor
(``<path>.desc.yaml``) recording shape, dtype and layout, so the same
matrix can be reattached later with GenotypeMatrix.open().

Lifecycle: create/open → use → close(). The handle is the single owner of
its storage; after close() every access raises MatrixClosedError.
Dimensions never change once created; subset() builds a new matrix.

Concurrent readers are safe. Concurrent writers must touch disjoint
partitions (see genomat.parallel).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import yaml

from genomat.types import (
    GENO_DTYPE,
    MISSING,
    Layout,
    MatrixClosedError,
)

logger = logging.getLogger(__name__)

DESCRIPTOR_SUFFIX = ".desc.yaml"

# Markers copied per step in subset()
_COPY_CHUNK = 4096

PathLike = Union[str, Path]


def descriptor_path(path: PathLike) -> Path:
    """Descriptor file that accompanies the backing file ``path``."""
    path = Path(path)
    return path.with_name(path.name + DESCRIPTOR_SUFFIX)


def _storage_shape(n_markers: int, n_individuals: int, layout: Layout) -> Tuple[int, int]:
    if layout == Layout.MARKER_MAJOR:
        return (n_markers, n_individuals)
    return (n_individuals, n_markers)


class GenotypeMatrix:
    """Opaque handle to a (possibly disk-backed) dosage matrix.

    Use the constructors create(), open() and from_array() rather than
    __init__ directly.

    Attributes:
        layout: Storage orientation (Layout).
        path: Backing file, or None for an in-memory matrix.
    """

    def __init__(
        self,
        array: np.ndarray,
        layout: Layout,
        path: Optional[Path] = None,
        readonly: bool = False,
    ):
        if array.ndim != 2:
            raise ValueError(f"genotype matrix must be 2-D, got {array.ndim}-D")
        if array.dtype != GENO_DTYPE:
            raise ValueError(f"genotype matrix must be int8, got {array.dtype}")
        self._array: Optional[np.ndarray] = array
        self.layout = Layout(layout)
        self.path = path
        self._readonly = readonly

    # -- constructors ------------------------------------------------------

    @classmethod
    def create(
        cls,
        path: Optional[PathLike],
        n_markers: int,
        n_individuals: int,
        layout: Layout = Layout.MARKER_MAJOR,
        fill: int = MISSING,
    ) -> "GenotypeMatrix":
        """Allocate a new matrix filled with ``fill``.

        Args:
            path: Backing file (created / overwritten), or None for an
                in-memory matrix.
            n_markers: Number of markers.
            n_individuals: Number of individuals.
            layout: Storage orientation.
            fill: Initial cell value (default MISSING).

        Returns:
            Writable GenotypeMatrix.
        """
        if n_markers < 0 or n_individuals < 0:
            raise ValueError(
                f"dimensions must be non-negative, got "
                f"{n_markers} markers x {n_individuals} individuals"
            )
        layout = Layout(layout)
        shape = _storage_shape(n_markers, n_individuals, layout)

        if path is None:
            array = np.full(shape, fill, dtype=GENO_DTYPE)
            return cls(array, layout)

        path = Path(path)
        if shape[0] * shape[1] == 0:
            # mmap cannot map an empty file
            path.write_bytes(b"")
            array = np.empty(shape, dtype=GENO_DTYPE)
        else:
            array = np.memmap(path, dtype=GENO_DTYPE, mode="w+", shape=shape)
            array[...] = fill
        _write_descriptor(path, shape, layout)
        return cls(array, layout, path=path)

    @classmethod
    def open(cls, path: PathLike, mode: str = "r+") -> "GenotypeMatrix":
        """Reattach a disk-backed matrix through its descriptor.

        Args:
            path: Backing file written by create().
            mode: 'r+' (read/write) or 'r' (read-only).

        Raises:
            FileNotFoundError: If the backing file or descriptor is missing.
            ValueError: If the descriptor is inconsistent with the file.
        """
        if mode not in ("r", "r+"):
            raise ValueError(f"mode must be 'r' or 'r+', got '{mode}'")
        path = Path(path)
        desc = descriptor_path(path)
        if not path.exists():
            raise FileNotFoundError(f"Genotype backing file not found: {path}")
        if not desc.exists():
            raise FileNotFoundError(f"Genotype descriptor not found: {desc}")

        with open(desc) as f:
            meta = yaml.safe_load(f) or {}
        try:
            shape = tuple(int(x) for x in meta["shape"])
            layout = Layout[meta["layout"]]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Malformed genotype descriptor {desc}: {exc}") from exc
        if np.dtype(meta.get("dtype", "int8")) != GENO_DTYPE:
            raise ValueError(f"Descriptor {desc} declares dtype {meta.get('dtype')}, expected int8")

        expected = shape[0] * shape[1] * GENO_DTYPE.itemsize
        actual = path.stat().st_size
        if actual != expected:
            raise ValueError(
                f"Backing file {path} holds {actual} bytes, descriptor "
                f"implies {expected} for shape {shape}"
            )
        if expected == 0:
            array = np.empty(shape, dtype=GENO_DTYPE)
        else:
            array = np.memmap(path, dtype=GENO_DTYPE, mode=mode, shape=shape)
        return cls(array, layout, path=path, readonly=(mode == "r"))

    @classmethod
    def from_array(
        cls,
        values: np.ndarray,
        layout: Layout = Layout.MARKER_MAJOR,
        path: Optional[PathLike] = None,
    ) -> "GenotypeMatrix":
        """Copy a 2-D array (in storage orientation) into a new matrix.

        NaN entries of a floating-point input become MISSING.
        """
        values = np.asarray(values)
        if values.ndim != 2:
            raise ValueError(f"values must be 2-D, got {values.ndim}-D")
        layout = Layout(layout)
        if layout == Layout.MARKER_MAJOR:
            n_markers, n_individuals = values.shape
        else:
            n_individuals, n_markers = values.shape

        if np.issubdtype(values.dtype, np.floating):
            missing = np.isnan(values)
            values = np.where(missing, MISSING, values).astype(GENO_DTYPE)
        matrix = cls.create(path, n_markers, n_individuals, layout)
        if values.size:
            matrix.array[...] = values
        return matrix

    # -- properties ------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._array is None

    @property
    def readonly(self) -> bool:
        return self._readonly

    @property
    def array(self) -> np.ndarray:
        """Raw array in storage orientation."""
        if self._array is None:
            raise MatrixClosedError("genotype matrix is closed")
        return self._array

    @property
    def shape(self) -> Tuple[int, int]:
        return tuple(self.array.shape)

    @property
    def n_markers(self) -> int:
        axis = 0 if self.layout == Layout.MARKER_MAJOR else 1
        return int(self.array.shape[axis])

    @property
    def n_individuals(self) -> int:
        axis = 1 if self.layout == Layout.MARKER_MAJOR else 0
        return int(self.array.shape[axis])

    def by_marker(self) -> np.ndarray:
        """(n_markers, n_individuals) view, whatever the storage layout."""
        if self.layout == Layout.MARKER_MAJOR:
            return self.array
        return self.array.T

    # -- lifecycle ---------------------------------------------------------

    def flush(self) -> None:
        """Push pending writes of a disk-backed matrix to its file."""
        array = self.array
        if isinstance(array, np.memmap) and not self._readonly:
            array.flush()

    def close(self) -> None:
        """Flush and release the storage. Idempotent."""
        if self._array is None:
            return
        self.flush()
        self._array = None
        logger.debug("closed genotype matrix %s", self.path or "<memory>")

    def __enter__(self) -> "GenotypeMatrix":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        if self.closed:
            return f"GenotypeMatrix(<closed>, path={self.path})"
        return (
            f"GenotypeMatrix(n_markers={self.n_markers}, "
            f"n_individuals={self.n_individuals}, layout={self.layout.name}, "
            f"path={self.path})"
        )

    # -- derived matrices ------------------------------------------------

    def subset(
        self,
        marker_index: Optional[Sequence[int]] = None,
        individual_index: Optional[Sequence[int]] = None,
        path: Optional[PathLike] = None,
    ) -> "GenotypeMatrix":
        """Copy selected markers / individuals into a NEW matrix.

        Typical use: materialize the output of filter_genotypes().

        Args:
            marker_index: Marker positions to keep (None = all).
            individual_index: Individual positions to keep (None = all).
            path: Backing file for the new matrix, or None for memory.

        Returns:
            New GenotypeMatrix with the same layout.
        """
        src = self.by_marker()
        m_idx = (np.arange(self.n_markers) if marker_index is None
                 else np.asarray(marker_index, dtype=np.int64))
        i_idx = (np.arange(self.n_individuals) if individual_index is None
                 else np.asarray(individual_index, dtype=np.int64))
        if m_idx.size and (m_idx.min() < 0 or m_idx.max() >= self.n_markers):
            raise IndexError("marker index out of bounds")
        if i_idx.size and (i_idx.min() < 0 or i_idx.max() >= self.n_individuals):
            raise IndexError("individual index out of bounds")

        out = GenotypeMatrix.create(path, len(m_idx), len(i_idx), self.layout)
        dst = out.by_marker()
        for start in range(0, len(m_idx), _COPY_CHUNK):
            stop = min(start + _COPY_CHUNK, len(m_idx))
            dst[start:stop] = src[m_idx[start:stop]][:, i_idx]
        return out


def _write_descriptor(path: Path, shape: Tuple[int, int], layout: Layout) -> None:
    meta = {
        "backing_file": path.name,
        "shape": [int(shape[0]), int(shape[1])],
        "dtype": GENO_DTYPE.name,
        "layout": layout.name,
    }
    with open(descriptor_path(path), "w") as f:
        yaml.safe_dump(meta, f, sort_keys=False)
