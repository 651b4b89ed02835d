"""Tests for genomat.mixer: elementwise merges into a genotype matrix."""

import numpy as np
import pytest

from genomat.matrix import GenotypeMatrix
from genomat.mixer import apply_op, merge_from_array, merge_from_matrix
from genomat.types import MISSING, DimensionMismatchError, Layout, MergeOp

NA = MISSING


# ── operators ─────────────────────────────────────────────────────────

class TestApplyOp:
    d = np.array([1, 2, 0, NA, 1], dtype=np.int8)
    s = np.array([1, 0, 2, 1, NA], dtype=np.int8)

    @pytest.mark.parametrize("op, expected", [
        (MergeOp.ADD, [2, 2, 2, NA, NA]),
        (MergeOp.SUBTRACT, [0, 2, -2, NA, NA]),
        (MergeOp.MULTIPLY, [1, 0, 0, NA, NA]),
        (MergeOp.MINIMUM, [1, 0, 0, NA, NA]),
        (MergeOp.MAXIMUM, [1, 2, 2, NA, NA]),
    ])
    def test_arithmetic_propagates_missing(self, op, expected):
        result = apply_op(self.d, self.s, op)
        assert result.dtype == np.int8
        np.testing.assert_array_equal(result, expected)

    def test_assign_copies_source(self):
        np.testing.assert_array_equal(apply_op(self.d, self.s, MergeOp.ASSIGN), self.s)

    def test_every_member_dispatches(self):
        for op in MergeOp:
            apply_op(self.d, self.s, op)

    @pytest.mark.parametrize("op, a, b", [
        (MergeOp.ADD, 100, 100),
        (MergeOp.SUBTRACT, -100, 100),
        (MergeOp.MULTIPLY, -64, 2),       # would collide with MISSING
    ])
    def test_overflow(self, op, a, b):
        with pytest.raises(OverflowError):
            apply_op(np.array([a], dtype=np.int8), np.array([b], dtype=np.int8), op)

    def test_overflow_ignored_under_missing(self):
        result = apply_op(np.array([NA], dtype=np.int8), np.array([100], dtype=np.int8),
                          MergeOp.ADD)
        np.testing.assert_array_equal(result, [NA])

    def test_unknown_op(self):
        with pytest.raises(ValueError):
            apply_op(self.d, self.s, "add")


# ── merge_from_array ──────────────────────────────────────────────────

class TestMergeFromArray:
    @pytest.fixture
    def dest(self):
        return GenotypeMatrix.create(None, 3, 4, fill=1)

    def test_positional_assign(self, dest):
        values = np.arange(12, dtype=np.int8).reshape(3, 4) % 3
        merge_from_array(dest, values)
        np.testing.assert_array_equal(dest.array, values)

    def test_column_subset(self, dest):
        values = np.array([[0, 2], [2, 0], [NA, 1]], dtype=np.int8)
        merge_from_array(dest, values, columns=[3, 0])
        np.testing.assert_array_equal(dest.array, [
            [2, 1, 1, 0],
            [0, 1, 1, 2],
            [1, 1, 1, NA],
        ])

    def test_one_dimensional_column(self, dest):
        merge_from_array(dest, np.array([0, 0, 2]), columns=[2], op=MergeOp.ADD)
        np.testing.assert_array_equal(dest.array[:, 2], [1, 1, 3])

    def test_float_source(self, dest):
        merge_from_array(dest, np.full((3, 4), 1.0), op=MergeOp.SUBTRACT)
        assert np.all(dest.array == 0)

    def test_nan_assigned_as_missing(self):
        g = GenotypeMatrix.create(None, 3, 2, fill=1)
        nan = np.nan
        merge_from_array(g, np.array([[0., nan], [2., 1.], [nan, 0.]]))
        np.testing.assert_array_equal(g.array, [[0, NA], [2, 1], [NA, 0]])

    def test_nan_propagates_under_add(self):
        g = GenotypeMatrix.create(None, 1, 2, fill=1)
        merge_from_array(g, np.array([[np.nan, 1.0]]), op=MergeOp.ADD)
        np.testing.assert_array_equal(g.array, [[NA, 2]])

    @pytest.mark.parametrize("bad", [0.5, np.inf, 300.0])
    def test_non_dosage_floats_rejected(self, dest, bad):
        values = np.zeros((3, 4))
        values[1, 2] = bad
        with pytest.raises(ValueError, match="whole"):
            merge_from_array(dest, values)
        assert np.all(dest.array == 1)

    @pytest.mark.parametrize("threads", [1, 2, 8])
    def test_threads_agree(self, threads):
        rng = np.random.default_rng(threads)
        values = rng.integers(0, 3, size=(20, 30)).astype(np.int8)
        cols = rng.permutation(40)[:30]
        g = GenotypeMatrix.create(None, 20, 40, fill=0)
        merge_from_array(g, values, columns=cols, op=MergeOp.ADD, threads=threads)
        np.testing.assert_array_equal(g.array[:, cols], values)
        untouched = np.setdiff1d(np.arange(40), cols)
        assert np.all(g.array[:, untouched] == 0)

    def test_row_mismatch(self, dest):
        with pytest.raises(DimensionMismatchError):
            merge_from_array(dest, np.zeros((2, 4), dtype=np.int8))

    def test_column_count_mismatch(self, dest):
        with pytest.raises(DimensionMismatchError):
            merge_from_array(dest, np.zeros((3, 2), dtype=np.int8))

    def test_column_out_of_bounds(self, dest):
        with pytest.raises(IndexError):
            merge_from_array(dest, np.zeros((3, 1), dtype=np.int8), columns=[4])

    def test_duplicate_columns(self, dest):
        with pytest.raises(ValueError, match="unique"):
            merge_from_array(dest, np.zeros((3, 2), dtype=np.int8), columns=[1, 1])


# ── merge_from_matrix ─────────────────────────────────────────────────

class TestMergeFromMatrix:
    def test_combine_two_matrices(self):
        dest = GenotypeMatrix.from_array(np.array([[0, 1], [2, NA]], dtype=np.int8))
        src = GenotypeMatrix.from_array(np.array([[2, 1], [0, 0]], dtype=np.int8))
        merge_from_matrix(dest, src, op=MergeOp.MAXIMUM)
        np.testing.assert_array_equal(dest.array, [[2, 1], [2, NA]])

    def test_layout_mismatch(self):
        dest = GenotypeMatrix.create(None, 2, 2)
        src = GenotypeMatrix.create(None, 2, 2, layout=Layout.INDIVIDUAL_MAJOR)
        with pytest.raises(DimensionMismatchError, match="layout"):
            merge_from_matrix(dest, src)

    def test_disk_backed_persisted(self, tmp_path):
        path = tmp_path / "dest.bin"
        dest = GenotypeMatrix.create(path, 2, 5, fill=0)
        src = GenotypeMatrix.from_array(np.array([[1], [2]], dtype=np.int8))
        merge_from_matrix(dest, src, columns=[4], threads=2)
        dest.close()
        with GenotypeMatrix.open(path, mode="r") as g:
            np.testing.assert_array_equal(g.array[:, 4], [1, 2])
            assert np.all(g.array[:, :4] == 0)

    def test_read_only_destination(self, tmp_path):
        path = tmp_path / "dest.bin"
        GenotypeMatrix.create(path, 1, 1).close()
        with GenotypeMatrix.open(path, mode="r") as dest:
            with pytest.raises(ValueError, match="read-only"):
                merge_from_matrix(dest, GenotypeMatrix.create(None, 1, 1))
