"""genomat: disk-backed genotype matrices for breeding-program simulation.

Building blocks:
  - Memory-mapped int8 dosage matrices with a YAML descriptor
  - PLINK-style binary genotype codec (2 bits per call, marker-major)
  - Marker / individual quality control (missing rate, MAF, HWE)
  - Elementwise matrix merging with a closed set of operators
  - Block-recombination mating simulation
  - Genotype-based pedigree verification and correction
"""

__version__ = "0.1.0"
