"""Tests for genomat.rng: seeded generators."""

import numpy as np
import pytest

from genomat.rng import create_rng


class TestCreateRng:
    def test_reproducibility(self):
        np.testing.assert_array_equal(create_rng(42).random(50), create_rng(42).random(50))

    def test_different_seeds_differ(self):
        assert not np.array_equal(create_rng(42).random(10), create_rng(43).random(10))

    def test_generator_passthrough(self):
        gen = np.random.default_rng(1)
        assert create_rng(gen) is gen

    def test_seed_sequence(self):
        a = create_rng(np.random.SeedSequence(5)).integers(0, 100, 10)
        b = create_rng(5).integers(0, 100, 10)
        np.testing.assert_array_equal(a, b)

    def test_none_gives_generator(self):
        assert isinstance(create_rng(None), np.random.Generator)

    def test_negative_seed(self):
        with pytest.raises(ValueError):
            create_rng(-1)

