"""Config-driven entry points.

Thin wrappers that take a GenomatConfig and forward its sections to the
engines, so a pipeline can be driven from a single YAML file:

    config = load_config("base.yaml", "cohort.yaml")
    geno = load_bed("cohort.bed", n_individuals=480, config=config)
    qc = run_qc(geno, config)
    clean = geno.subset(qc.marker_index, qc.individual_index)
"""

from __future__ import annotations

from typing import List, Mapping, Optional, Sequence

from genomat.codec import PathLike, read_bed_matrix, write_bed
from genomat.config import GenomatConfig, default_config
from genomat.mating import simulate_mating
from genomat.matrix import GenotypeMatrix
from genomat.pedigree import DateLike, PedigreeRow, correct_pedigree
from genomat.qc import filter_genotypes
from genomat.types import Layout, MergeOp, PedigreeRecord, QCResult


def _resolve(config: Optional[GenomatConfig]) -> GenomatConfig:
    return default_config() if config is None else config


def load_bed(
    path: PathLike,
    n_individuals: int,
    config: Optional[GenomatConfig] = None,
    matrix_path: Optional[PathLike] = None,
    layout: Layout = Layout.MARKER_MAJOR,
) -> GenotypeMatrix:
    """Decode a binary genotype file into a new matrix."""
    config = _resolve(config)
    return read_bed_matrix(
        path,
        n_individuals,
        matrix_path=matrix_path,
        layout=layout,
        max_line_budget=config.codec.max_line_budget,
        threads=config.parallel.threads,
        verbose=config.verbose,
    )


def save_bed(
    matrix: GenotypeMatrix,
    path: PathLike,
    config: Optional[GenomatConfig] = None,
) -> None:
    """Encode ``matrix`` to a binary genotype file."""
    config = _resolve(config)
    write_bed(
        matrix,
        path,
        threads=config.parallel.threads,
        verbose=config.verbose,
        max_line_budget=config.codec.max_line_budget,
    )


def run_qc(
    matrix: GenotypeMatrix,
    config: Optional[GenomatConfig] = None,
    keep_individuals: Optional[Sequence[int]] = None,
) -> QCResult:
    """Apply the configured QC thresholds."""
    config = _resolve(config)
    qc = config.qc
    return filter_genotypes(
        matrix,
        keep_individuals=keep_individuals,
        missing_rate=qc.missing_rate,
        hwe_pvalue=qc.hwe_pvalue,
        individual_missing_rate=qc.individual_missing_rate,
        maf=qc.maf,
        threads=config.parallel.threads,
        verbose=config.verbose,
    )


def run_mating(
    dest: GenotypeMatrix,
    source: GenotypeMatrix,
    sire_index: Sequence[int],
    dam_index: Sequence[int],
    config: Optional[GenomatConfig] = None,
    op: MergeOp = MergeOp.ASSIGN,
    dest_individuals: Optional[Sequence[int]] = None,
) -> None:
    """Simulate offspring with the configured block count and seed."""
    config = _resolve(config)
    simulate_mating(
        dest,
        source,
        sire_index,
        dam_index,
        n_block=config.mating.n_block,
        op=op,
        threads=config.parallel.threads,
        rng=config.mating.seed,
        dest_individuals=dest_individuals,
    )


def run_pedigree_correction(
    matrix: GenotypeMatrix,
    genotyped_ids: Sequence[str],
    pedigree: Sequence[PedigreeRow],
    config: Optional[GenomatConfig] = None,
    candidate_sires: Optional[Sequence[str]] = None,
    candidate_dams: Optional[Sequence[str]] = None,
    birth_dates: Optional[Mapping[str, DateLike]] = None,
) -> List[PedigreeRecord]:
    """Verify and correct a pedigree with the configured thresholds."""
    config = _resolve(config)
    ped = config.pedigree
    return correct_pedigree(
        matrix,
        genotyped_ids,
        pedigree,
        candidate_sires=candidate_sires,
        candidate_dams=candidate_dams,
        exclusion_threshold=ped.exclusion_threshold,
        assignment_threshold=ped.assignment_threshold,
        birth_dates=birth_dates,
        threads=config.parallel.threads,
        verbose=config.verbose,
        ambiguity_margin=ped.ambiguity_margin,
        min_generation_interval=ped.min_generation_interval,
    )
