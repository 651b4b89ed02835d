"""Tests for genomat.codec: binary genotype file encode/decode."""

import numpy as np
import pytest

from genomat.codec import (
    BED_MAGIC,
    HEADER_SIZE,
    bed_marker_count,
    bytes_per_marker,
    decode_block,
    encode_block,
    has_missing,
    has_missing_in_file,
    read_bed,
    read_bed_header,
    read_bed_matrix,
    write_bed,
)
from genomat.matrix import GenotypeMatrix
from genomat.types import (
    MISSING,
    DimensionMismatchError,
    GenotypeFormatError,
    Layout,
    TruncatedFileError,
)


def random_genotypes(n_markers, n_individuals, seed=0, missing=True):
    rng = np.random.default_rng(seed)
    states = [0, 1, 2, MISSING] if missing else [0, 1, 2]
    return rng.choice(states, size=(n_markers, n_individuals)).astype(np.int8)


def write_values(tmp_path, values, name="g.bed", **kwargs):
    path = tmp_path / name
    write_bed(GenotypeMatrix.from_array(values), path, **kwargs)
    return path


# ── bit-level format ──────────────────────────────────────────────────

class TestFormat:
    def test_code_table_and_bit_order(self, tmp_path):
        values = np.array([[0, 1, 2, MISSING]], dtype=np.int8)
        path = write_values(tmp_path, values)
        # slots low→high: 0→11, 1→10, 2→00, NA→01
        assert path.read_bytes() == BED_MAGIC + bytes([0x01, 0b01_00_10_11])

    def test_zero_padding(self, tmp_path):
        values = np.zeros((1, 5), dtype=np.int8)
        path = write_values(tmp_path, values)
        assert path.read_bytes()[HEADER_SIZE:] == bytes([0xFF, 0x03])

    def test_bytes_per_marker(self):
        assert [bytes_per_marker(n) for n in (0, 1, 4, 5, 8, 9)] == [0, 1, 1, 2, 2, 3]

    def test_block_kernels_inverse(self):
        values = random_genotypes(6, 11, seed=3)
        raw = encode_block(values)
        assert raw.shape == (6, 3)
        np.testing.assert_array_equal(decode_block(raw, 11), values)

    def test_encode_rejects_invalid_value(self):
        with pytest.raises(ValueError, match="cannot encode value 3"):
            encode_block(np.array([[0, 3]], dtype=np.int8))


# ── round trip ────────────────────────────────────────────────────────

class TestRoundTrip:
    @pytest.mark.parametrize("n_individuals", [1, 3, 4, 5, 7, 9, 13])
    def test_all_states_any_width(self, tmp_path, n_individuals):
        values = random_genotypes(17, n_individuals, seed=n_individuals)
        path = write_values(tmp_path, values)
        target = GenotypeMatrix.create(None, 17, n_individuals, fill=0)
        read_bed(path, target)
        np.testing.assert_array_equal(target.array, values)

    @pytest.mark.parametrize("threads", [1, 2, 5])
    def test_threads_and_small_budget(self, tmp_path, threads):
        values = random_genotypes(23, 10, seed=1)
        path = write_values(tmp_path, values, threads=threads, max_line_budget=4)
        target = GenotypeMatrix.create(None, 23, 10)
        read_bed(path, target, max_line_budget=3, threads=threads)
        np.testing.assert_array_equal(target.array, values)

    def test_individual_split_path(self, tmp_path):
        # fewer markers per chunk than threads → split over individuals
        values = random_genotypes(2, 37, seed=2)
        path = write_values(tmp_path, values, threads=4, max_line_budget=1)
        target = GenotypeMatrix.create(None, 2, 37)
        read_bed(path, target, max_line_budget=1, threads=4)
        np.testing.assert_array_equal(target.array, values)

    def test_file_identical_across_thread_counts(self, tmp_path):
        values = random_genotypes(9, 21, seed=4)
        a = write_values(tmp_path, values, name="a.bed", threads=1)
        b = write_values(tmp_path, values, name="b.bed", threads=6, max_line_budget=2)
        assert a.read_bytes() == b.read_bytes()

    def test_individual_major_matrix(self, tmp_path):
        values = random_genotypes(6, 9, seed=5)
        path = tmp_path / "g.bed"
        source = GenotypeMatrix.from_array(values.T, layout=Layout.INDIVIDUAL_MAJOR)
        write_bed(source, path)
        target = GenotypeMatrix.create(None, 6, 9, layout=Layout.INDIVIDUAL_MAJOR)
        read_bed(path, target, threads=2)
        np.testing.assert_array_equal(target.by_marker(), values)

    def test_disk_backed_target(self, tmp_path):
        values = random_genotypes(12, 6, seed=6)
        path = write_values(tmp_path, values)
        target = GenotypeMatrix.create(tmp_path / "g.bin", 12, 6)
        read_bed(path, target)
        target.close()
        with GenotypeMatrix.open(tmp_path / "g.bin", mode="r") as g:
            np.testing.assert_array_equal(g.array, values)

    def test_read_bed_matrix_infers_markers(self, tmp_path):
        values = random_genotypes(8, 7, seed=7)
        path = write_values(tmp_path, values)
        g = read_bed_matrix(path, 7)
        assert g.n_markers == 8
        np.testing.assert_array_equal(g.array, values)

    def test_zero_markers(self, tmp_path):
        path = write_values(tmp_path, np.zeros((0, 5), dtype=np.int8))
        assert path.stat().st_size == HEADER_SIZE
        assert bed_marker_count(path, 5) == 0


# ── malformed files ───────────────────────────────────────────────────

class TestMalformed:
    def test_bad_magic(self, tmp_path):
        path = tmp_path / "bad.bed"
        path.write_bytes(b"\x00\x00\x01\xff")
        with pytest.raises(GenotypeFormatError, match="magic"):
            read_bed_header(path)

    def test_individual_major_mode_rejected(self, tmp_path):
        path = tmp_path / "bad.bed"
        path.write_bytes(BED_MAGIC + b"\x00")
        with pytest.raises(GenotypeFormatError, match="orientation"):
            read_bed(path, GenotypeMatrix.create(None, 0, 4))

    def test_short_header(self, tmp_path):
        path = tmp_path / "bad.bed"
        path.write_bytes(b"\x6c")
        with pytest.raises(GenotypeFormatError):
            read_bed_header(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_bed_header(tmp_path / "none.bed")

    def test_truncated_file(self, tmp_path):
        values = random_genotypes(5, 8, seed=8)     # 2 bytes per marker
        path = write_values(tmp_path, values)
        data = path.read_bytes()
        path.write_bytes(data[:-3])                  # cut into block 3

        with pytest.raises(TruncatedFileError) as info:
            read_bed(path, GenotypeMatrix.create(None, 5, 8))
        assert info.value.block == 3

        with pytest.raises(TruncatedFileError):
            bed_marker_count(path, 8)

    def test_file_longer_than_matrix(self, tmp_path):
        path = write_values(tmp_path, random_genotypes(5, 8))
        with pytest.raises(DimensionMismatchError):
            read_bed(path, GenotypeMatrix.create(None, 4, 8))

    def test_read_only_target(self, tmp_path):
        path = write_values(tmp_path, random_genotypes(2, 4))
        store = tmp_path / "g.bin"
        GenotypeMatrix.create(store, 2, 4).close()
        with GenotypeMatrix.open(store, mode="r") as g:
            with pytest.raises(ValueError, match="read-only"):
                read_bed(path, g)

    def test_bad_budget(self, tmp_path):
        path = write_values(tmp_path, random_genotypes(2, 4))
        with pytest.raises(ValueError):
            read_bed(path, GenotypeMatrix.create(None, 2, 4), max_line_budget=0)


# ── missing-value checks ──────────────────────────────────────────────

class TestHasMissing:
    @pytest.mark.parametrize("with_missing", [True, False])
    @pytest.mark.parametrize("threads", [1, 3])
    def test_matrix_and_file_agree(self, tmp_path, with_missing, threads):
        values = random_genotypes(40, 9, seed=9, missing=with_missing)
        path = write_values(tmp_path, values)
        decoded = GenotypeMatrix.create(None, 40, 9)
        read_bed(path, decoded)

        in_matrix = has_missing(decoded, threads=threads)
        in_file = has_missing_in_file(path, 9, max_line_budget=7, threads=threads)
        assert in_matrix == in_file == with_missing

    def test_single_missing_in_last_marker(self, tmp_path):
        values = np.zeros((30, 6), dtype=np.int8)
        values[-1, -1] = MISSING
        path = write_values(tmp_path, values)
        assert has_missing(GenotypeMatrix.from_array(values), threads=4)
        assert has_missing_in_file(path, 6, max_line_budget=4, threads=2)

    def test_padding_not_mistaken_for_missing(self, tmp_path):
        values = np.full((3, 5), 2, dtype=np.int8)   # code 00, same as padding
        path = write_values(tmp_path, values)
        assert not has_missing_in_file(path, 5)

    def test_nonzero_padding_ignored(self, tmp_path):
        # 5 calls of dosage 2 (code 00); the three padding slots hold 01
        path = tmp_path / "padded.bed"
        path.write_bytes(BED_MAGIC + b"\x01" + bytes([0x00, 0x54]) * 2)
        decoded = GenotypeMatrix.create(None, 2, 5)
        read_bed(path, decoded)
        assert np.all(decoded.array == 2)
        assert not has_missing(decoded)
        assert not has_missing_in_file(path, 5)
