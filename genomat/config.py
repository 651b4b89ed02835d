"""Configuration system for genomat.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → override file → in-code overrides

Every threshold that can be left out is an Optional field; None disables
exactly the criterion it controls rather than standing in for a sentinel
value.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ParallelSection:
    """Worker pool size shared by every engine."""
    threads: int = 1              # non-positive → serial


@dataclass
class CodecSection:
    """Binary genotype file streaming."""
    max_line_budget: int = 10000  # markers decoded/encoded per chunk


@dataclass
class QCSection:
    """Quality-control thresholds (None = criterion disabled)."""
    missing_rate: Optional[float] = None             # drop markers above
    maf: Optional[float] = None                      # drop markers below
    hwe_pvalue: Optional[float] = None               # drop markers below
    individual_missing_rate: Optional[float] = None  # drop individuals above


@dataclass
class MatingSection:
    """Offspring simulation."""
    n_block: int = 1
    seed: Optional[int] = None


@dataclass
class PedigreeSection:
    """Parentage verification thresholds."""
    exclusion_threshold: float = 0.1
    assignment_threshold: float = 0.05
    ambiguity_margin: float = 0.0
    min_generation_interval: float = 0.0   # same unit as birth dates


@dataclass
class GenomatConfig:
    """Complete genomat configuration.

    Load from YAML via `load_config()`. Sections map 1:1 to YAML top-level keys.
    """
    parallel: ParallelSection = field(default_factory=ParallelSection)
    codec: CodecSection = field(default_factory=CodecSection)
    qc: QCSection = field(default_factory=QCSection)
    mating: MatingSection = field(default_factory=MatingSection)
    pedigree: PedigreeSection = field(default_factory=PedigreeSection)
    verbose: bool = False


_SECTION_MAP = {
    'parallel': ParallelSection,
    'codec': CodecSection,
    'qc': QCSection,
    'mating': MatingSection,
    'pedigree': PedigreeSection,
}


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added

    Returns:
        The merged base dictionary.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


def _yaml_to_config(data: Dict) -> GenomatConfig:
    """Convert a merged YAML dict to a GenomatConfig."""
    sections = {}
    for key, cls in _SECTION_MAP.items():
        if key in data and isinstance(data[key], dict):
            sections[key] = _dict_to_section(cls, data[key])
        else:
            sections[key] = cls()
    return GenomatConfig(verbose=bool(data.get('verbose', False)), **sections)


def config_to_dict(config: GenomatConfig) -> Dict:
    """Plain nested dict of ``config``, suitable for yaml.safe_dump."""
    return dataclasses.asdict(config)


def _check_fraction(name: str, value: Optional[float]) -> None:
    if value is not None and not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be in [0, 1], got {value}")


def validate_config(config: GenomatConfig) -> None:
    """Validate configuration constraints. Raises ValueError on failure."""
    if not isinstance(config.parallel.threads, int):
        raise ValueError(
            f"parallel.threads must be an integer, got {config.parallel.threads!r}"
        )
    if config.codec.max_line_budget < 1:
        raise ValueError(
            f"codec.max_line_budget must be >= 1, got {config.codec.max_line_budget}"
        )

    qc = config.qc
    _check_fraction("qc.missing_rate", qc.missing_rate)
    _check_fraction("qc.individual_missing_rate", qc.individual_missing_rate)
    _check_fraction("qc.hwe_pvalue", qc.hwe_pvalue)
    if qc.maf is not None and not 0.0 <= qc.maf <= 0.5:
        raise ValueError(f"qc.maf must be in [0, 0.5], got {qc.maf}")

    if config.mating.n_block < 1:
        raise ValueError(f"mating.n_block must be >= 1, got {config.mating.n_block}")
    if config.mating.seed is not None and config.mating.seed < 0:
        raise ValueError(f"mating.seed must be non-negative, got {config.mating.seed}")

    ped = config.pedigree
    _check_fraction("pedigree.exclusion_threshold", ped.exclusion_threshold)
    _check_fraction("pedigree.assignment_threshold", ped.assignment_threshold)
    if ped.assignment_threshold > ped.exclusion_threshold:
        raise ValueError(
            f"pedigree.assignment_threshold ({ped.assignment_threshold}) must not "
            f"exceed pedigree.exclusion_threshold ({ped.exclusion_threshold})"
        )
    if ped.ambiguity_margin < 0:
        raise ValueError(
            f"pedigree.ambiguity_margin must be >= 0, got {ped.ambiguity_margin}"
        )
    if ped.min_generation_interval < 0:
        raise ValueError(
            f"pedigree.min_generation_interval must be >= 0, "
            f"got {ped.min_generation_interval}"
        )


def load_config(
    base_path: Union[str, Path],
    override_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict] = None,
) -> GenomatConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → override file → overrides dict.
    Each layer overrides only the fields it specifies.

    Args:
        base_path: Path to base configuration YAML.
        override_path: Optional override YAML (skipped if absent).
        overrides: Optional dict of in-code overrides.

    Returns:
        Validated GenomatConfig.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ValueError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if override_path is not None:
        override_path = Path(override_path)
        if override_path.exists():
            with open(override_path) as f:
                layer = yaml.safe_load(f) or {}
            deep_merge(config_dict, layer)

    if overrides is not None:
        deep_merge(config_dict, overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config() -> GenomatConfig:
    """Return a GenomatConfig with all default values."""
    config = GenomatConfig()
    validate_config(config)
    return config


def save_config(config: GenomatConfig, path: Union[str, Path]) -> None:
    """Write ``config`` as YAML that load_config() reads back unchanged."""
    with open(path, "w") as f:
        yaml.safe_dump(config_to_dict(config), f, sort_keys=False)
