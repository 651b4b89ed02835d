"""Seeded RNG factory for reproducible mating simulations.

Uses NumPy's SeedSequence → PCG64 hierarchy to guarantee:
  - Bit-exact replay with the same seed
  - Results independent of the worker thread count (draws happen in the
    calling thread, never inside workers)
"""

from __future__ import annotations

from typing import Union

import numpy as np

SeedLike = Union[None, int, np.random.SeedSequence, np.random.Generator]


def create_rng(seed: SeedLike = None) -> np.random.Generator:
    """Return a PCG64 Generator for ``seed``.

    Args:
        seed: None (fresh OS entropy), a non-negative int, a SeedSequence,
            or an existing Generator (returned unchanged).

    Returns:
        numpy Generator.

    Example:
        >>> rng = create_rng(42)
        >>> rng.integers(0, 2, size=4)  # reproducible
    """
    if isinstance(seed, np.random.Generator):
        return seed
    if isinstance(seed, (int, np.integer)) and seed < 0:
        raise ValueError(f"seed must be non-negative, got {seed}")
    ss = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
    return np.random.Generator(np.random.PCG64(ss))

