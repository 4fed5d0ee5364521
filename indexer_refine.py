"""
Lattice Basis Refinement

Refinement strategies that turn the raw candidate bases written by an indexing
engine into refined bases with a fit score. Bases are 3x3 matrices of row
vectors; a spot s has lattice coordinates s @ inv(B), and a perfect lattice
spot has integer coordinates (its Miller index).

Key Features:
- Trimmed least squares (LSQ): refit against the spots inside a shrinking
  fractional-residual threshold
- Iterative fit to modified errors (IFME): fixed number of corrections with
  Gaussian down-weighting of large residuals
- Per-candidate isolation of degenerate bases
- Tagged strategy variant dispatched by the indexer facade
"""

import enum
import logging
from collections import namedtuple

import numpy as np

from indexer_config import (
    ConfigIfme,
    ConfigLsq,
    NumericError,
    check_config_ifme,
    check_config_lsq,
)

logger = logging.getLogger(__name__)

LsqResult = namedtuple("LsqResult", ["cell", "score", "thresholds", "n_iter"])
IfmeResult = namedtuple("IfmeResult", ["cell", "score"])

_COND_LIMIT = 1.0 / np.finfo(np.float64).eps


# ==============================================================================
# Numeric Helpers
# ==============================================================================

def basis_inverse(cell):
    """Invert a lattice basis.

    Args:
        cell: 3x3 basis of row vectors

    Returns:
        3x3 inverse as float64 array

    Raises:
        NumericError: If the basis is non-finite or numerically singular
    """
    cell = np.asarray(cell, dtype=np.float64)
    if not np.all(np.isfinite(cell)):
        raise NumericError("non-finite lattice basis")
    with np.errstate(divide="ignore", invalid="ignore"):
        cond = np.linalg.cond(cell)
    if not cond < _COND_LIMIT:
        raise NumericError(f"singular lattice basis (condition number {cond:.3g})")
    try:
        return np.linalg.inv(cell)
    except np.linalg.LinAlgError as err:
        raise NumericError("singular lattice basis") from err


def _gaussian_weights(err, sensitivity, sigma):
    if sensitivity == 0.0:
        return np.ones_like(err)
    if sigma == 0.0:
        # zero-width kernel
        return (err == 0.0).astype(np.float64)
    return np.exp(-np.square(err * (sensitivity / sigma)))


# ==============================================================================
# Trimmed Least Squares
# ==============================================================================

def refine_cell_lsq(spots, cell, score, clsq):
    """Refine one candidate basis by trimmed least squares.

    Spots whose fractional residual norm is below the threshold are inliers.
    While there are at least ``clsq.min_spots`` inliers, the threshold is
    contracted and the basis is refit to the inliers. Excluded spots stay in
    the linear system as zero rows. The fit is solved as a minimum-norm
    correction of the current basis, so lattice directions the inliers do not
    constrain keep their current component. The loop also ends once the
    inlier set repeats with every inlier residual exactly zero.

    Args:
        spots: Spot coordinates of shape (N, 3)
        cell: Raw 3x3 basis of row vectors
        score: Preliminary engine score of the basis
        clsq: ConfigLsq

    Returns:
        LsqResult(cell, score, thresholds, n_iter). If the first inlier check
        fails, cell and score are returned unchanged. ``thresholds`` holds the
        threshold of every continuing iteration.

    Raises:
        NumericError: If a degenerate basis has to be inverted
    """
    spots = np.asarray(spots, dtype=np.float64)
    cell = np.array(cell, dtype=np.float64)
    n_spots = spots.shape[0]
    thresholds = []
    if n_spots == 0:
        return LsqResult(cell, float(score), thresholds, 0)

    threshold = 1.0 + 2.0 * float(score) / (3.0 * n_spots)
    Z_prev = None
    while True:
        coords = spots @ basis_inverse(cell)
        miller = np.rint(coords)
        resid = coords - miller
        below = np.linalg.norm(resid, axis=1) < threshold
        n_below = int(np.count_nonzero(below))
        logger.debug("threshold %.6g: %d inliers", threshold, n_below)
        if n_below < clsq.min_spots:
            break
        contracted = threshold * clsq.threshold_contraction
        if not contracted < threshold:
            break
        thresholds.append(threshold)
        threshold = contracted

        sel = below[:, None]
        Z = np.where(sel, miller, 0.0)
        if Z_prev is not None and np.array_equal(Z, Z_prev):
            if not np.any(resid[below]):
                break   # exact fit, contraction changes nothing
            continue    # same system, same solution
        E = np.where(sel, spots - miller @ cell, 0.0)
        cell = cell + np.linalg.lstsq(Z, E, rcond=None)[0]
        Z_prev = Z

    if not thresholds:
        return LsqResult(cell, float(score), thresholds, 0)
    final_score = float(np.linalg.norm(resid, axis=1).mean())
    return LsqResult(cell, final_score, thresholds, len(thresholds))


def refine_lsq(spots, cells, scores, clsq, n_cells=None):
    """Refine candidate bases in place by trimmed least squares.

    Args:
        spots: Spot coordinates of shape (N, 3), read only
        cells: Candidate bases of shape (3*M, 3), overwritten
        scores: Candidate scores of shape (M,), overwritten
        clsq: ConfigLsq
        n_cells: Number of candidates to refine (default: all M)

    Returns:
        Dict mapping candidate index to the NumericError that stopped its
        refinement. Such a candidate keeps its raw basis and gets score inf.
    """
    if n_cells is None:
        n_cells = scores.shape[0]
    errors = {}
    for j in range(n_cells):
        block = cells[3 * j:3 * j + 3]
        try:
            result = refine_cell_lsq(spots, block, scores[j], clsq)
        except NumericError as err:
            logger.warning("lsq refinement of cell %d failed: %s", j, err)
            scores[j] = np.inf
            errors[j] = err
            continue
        block[:] = result.cell
        scores[j] = result.score
        logger.debug("lsq cell %d: %d iterations, score %.6g", j, result.n_iter, result.score)
    return errors


# ==============================================================================
# Iterative Fit to Modified Errors
# ==============================================================================

def refine_cell_ifme(spots, cell, score, cifme):
    """Refine one candidate basis by iteratively reweighted least squares.

    Iteration i weights every spot by exp(-(e * sensitivity / s_i)^2), with e
    the largest absolute component of its real space residual and
    s_i = -s_0 / (weight_contraction + i), then adds the least squares
    correction of the weighted residuals to the basis.

    Args:
        spots: Spot coordinates of shape (N, 3)
        cell: Raw 3x3 basis of row vectors
        score: Preliminary engine score of the basis
        cifme: ConfigIfme

    Returns:
        IfmeResult(cell, score) with the score recomputed from the final
        basis as the mean largest absolute fractional residual.

    Raises:
        NumericError: If a degenerate basis has to be inverted
    """
    spots = np.asarray(spots, dtype=np.float64)
    B = np.array(cell, dtype=np.float64)
    n_spots = spots.shape[0]
    if n_spots == 0:
        return IfmeResult(B, float(score))

    scale = 2.0 * float(score) * cifme.weight_contraction / (3.0 * n_spots)
    for i in range(cifme.n_iter):
        s = -scale / (cifme.weight_contraction + i)
        Z = np.rint(spots @ basis_inverse(B))
        E = spots - Z @ B
        w = _gaussian_weights(np.abs(E).max(axis=1), cifme.error_sensitivity, s)
        logger.debug("iteration %d: sigma %.6g, mean weight %.4g", i, s, float(w.mean()))
        E *= w[:, None]
        B = B + np.linalg.lstsq(Z, E, rcond=None)[0]

    S = spots @ basis_inverse(B)
    final_score = float(np.abs(S - np.rint(S)).max(axis=1).mean())
    return IfmeResult(B, final_score)


def refine_ifme(spots, cells, scores, cifme, n_cells=None):
    """Refine candidate bases in place by iterative fit to modified errors.

    Same buffer contract as refine_lsq().
    """
    if n_cells is None:
        n_cells = scores.shape[0]
    errors = {}
    for j in range(n_cells):
        block = cells[3 * j:3 * j + 3]
        try:
            result = refine_cell_ifme(spots, block, scores[j], cifme)
        except NumericError as err:
            logger.warning("ifme refinement of cell %d failed: %s", j, err)
            scores[j] = np.inf
            errors[j] = err
            continue
        block[:] = result.cell
        scores[j] = result.score
        logger.debug("ifme cell %d: %d iterations, score %.6g", j, cifme.n_iter, result.score)
    return errors


# ==============================================================================
# Strategy Selection
# ==============================================================================

class RefinementKind(enum.Enum):
    NONE = "none"
    LSQ = "lsq"
    IFME = "ifme"


class RefinementStrategy:
    """Refinement strategy tag plus its configuration.

    Use the none(), lsq() and ifme() constructors.
    """

    def __init__(self, kind=RefinementKind.NONE, config=None):
        self.kind = RefinementKind(kind)
        self.config = config

    @classmethod
    def none(cls):
        return cls(RefinementKind.NONE)

    @classmethod
    def lsq(cls, config=None):
        return cls(RefinementKind.LSQ, ConfigLsq() if config is None else config)

    @classmethod
    def ifme(cls, config=None):
        return cls(RefinementKind.IFME, ConfigIfme() if config is None else config)

    def check(self):
        if self.kind is RefinementKind.LSQ:
            check_config_lsq(self.config)
        elif self.kind is RefinementKind.IFME:
            check_config_ifme(self.config)

    def refine(self, spots, cells, scores):
        """Refine output buffers in place; returns the isolated numeric errors."""
        if self.kind is RefinementKind.LSQ:
            return refine_lsq(spots, cells, scores, self.config)
        if self.kind is RefinementKind.IFME:
            return refine_ifme(spots, cells, scores, self.config)
        return {}

    def __repr__(self):
        return f"RefinementStrategy({self.kind.value}, {self.config!r})"
