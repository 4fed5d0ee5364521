"""
Indexer Configuration

Configuration records and error types shared by the indexer facade, the
refinement strategies and the indexing engines.

- ConfigPersistent: buffer sizing, fixed for the lifetime of an indexer
- ConfigRuntime: search parameters, mutable through validated setters
- ConfigLsq / ConfigIfme: per-strategy refinement parameters
"""

from dataclasses import dataclass


# ==============================================================================
# Errors
# ==============================================================================

class IndexerError(Exception):
    """Base class of all indexer errors."""


class ConfigError(IndexerError, ValueError):
    """A configuration invariant is violated."""


class NumericError(IndexerError, ArithmeticError):
    """A refinement step met a degenerate (non-invertible) lattice basis."""


# ==============================================================================
# Configuration Records
# ==============================================================================

@dataclass
class ConfigPersistent:
    max_output_cells: int = 1
    max_input_cells: int = 1
    max_spots: int = 200
    num_candidate_vectors: int = 30


@dataclass
class ConfigRuntime:
    length_threshold: float = 1e-3      # cells closer than this describe the same lattice
    triml: float = 1e-3                 # lower clip for fractional distances
    trimh: float = 0.3                  # upper clip for fractional distances
    num_sample_points: int = 32 * 1024  # orientation samples per input cell


@dataclass
class ConfigLsq:
    threshold_contraction: float = 0.8  # contract error threshold by this value in every iteration
    min_spots: int = 6                  # minimum number of spots to fit against


@dataclass
class ConfigIfme:
    n_iter: int = 3                     # number of iterations
    error_sensitivity: float = 0.8      # errors weighted by exp(-(error * sensitivity / sigma)^2)
    weight_contraction: float = 2.0     # sigma reduced by contraction / (iteration + contraction)


# ==============================================================================
# Validation
# ==============================================================================

def check_config(cpers, crt):
    """Validate a persistent and a runtime configuration.

    Rules are checked in a fixed order and the first violation is reported.

    Args:
        cpers: ConfigPersistent
        crt: ConfigRuntime

    Raises:
        ConfigError: naming the first violated rule
    """
    if cpers.max_input_cells <= 0:
        raise ConfigError("no input cells")
    if cpers.max_output_cells <= 0:
        raise ConfigError("no output cells")
    if cpers.max_spots <= 0:
        raise ConfigError("no spots")
    if cpers.num_candidate_vectors < 1:
        raise ConfigError("nonpositive number of candidate vectors")
    if crt.num_sample_points < cpers.num_candidate_vectors:
        raise ConfigError("fewer sample points than required candidate vectors")
    if crt.triml < 0.0:
        raise ConfigError("lower trim value < 0")
    if crt.triml > crt.trimh:
        raise ConfigError("lower > higher trim value")
    if crt.trimh > 0.5:
        raise ConfigError("higher trim value > 0.5")
    if crt.length_threshold < 0.0:
        raise ConfigError("negative length threshold")


def check_config_lsq(clsq):
    if not 0.0 < clsq.threshold_contraction < 1.0:
        raise ConfigError("threshold contraction not in (0, 1)")
    if clsq.min_spots < 0:
        raise ConfigError("negative minimum number of spots")


def check_config_ifme(cifme):
    if cifme.n_iter < 0:
        raise ConfigError("negative number of iterations")
    if cifme.error_sensitivity < 0.0:
        raise ConfigError("negative error sensitivity")
    if cifme.weight_contraction <= 0.0:
        raise ConfigError("nonpositive weight contraction")
