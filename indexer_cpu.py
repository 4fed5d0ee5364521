"""
Crystal Lattice Indexing Engine (CPU Implementation)

Asynchronous indexing engine behind the indexer facade. For every input cell
it searches the crystal orientation that maps the observed spots closest to
integer lattice coordinates and writes the best rotated cells, with their
scores, into the facade's output buffers.

Key Features:
- Quaternion-based orientation sampling from a low discrepancy sequence
- JIT-compiled trimmed score kernel evaluating many orientations at once
- Nelder-Mead polishing of the best orientations
- Lattice-equivalence aware ordering of the output candidates
- Single worker thread executing one request after the other
"""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np
from numba import njit
from scipy.optimize import minimize
from scipy.stats import qmc

logger = logging.getLogger(__name__)


# ==============================================================================
# Quaternion Operations
# ==============================================================================

def quat_normalize(q):
    """Normalize quaternions to unit length.

    Args:
        q: Quaternion(s) as array of shape (..., 4) in (w, x, y, z) format

    Returns:
        Normalized quaternion(s) with same shape as input
    """
    q = np.asarray(q, dtype=np.float64)
    n = np.linalg.norm(q, axis=-1, keepdims=True) + 1e-12
    return q / n


@njit(fastmath=True)
def _quat_to_R_batch_core(quats):
    B = quats.shape[0]
    R = np.empty((B, 3, 3), np.float64)

    for i in range(B):
        w = quats[i, 0]
        x = quats[i, 1]
        y = quats[i, 2]
        z = quats[i, 3]

        n = math.sqrt(w*w + x*x + y*y + z*z)
        if n > 0.0:
            w /= n
            x /= n
            y /= n
            z /= n

        R[i, 0, 0] = 1.0 - 2.0 * (y*y + z*z)
        R[i, 0, 1] = 2.0 * (x*y - w*z)
        R[i, 0, 2] = 2.0 * (x*z + w*y)
        R[i, 1, 0] = 2.0 * (x*y + w*z)
        R[i, 1, 1] = 1.0 - 2.0 * (x*x + z*z)
        R[i, 1, 2] = 2.0 * (y*z - w*x)
        R[i, 2, 0] = 2.0 * (x*z - w*y)
        R[i, 2, 1] = 2.0 * (y*z + w*x)
        R[i, 2, 2] = 1.0 - 2.0 * (x*x + y*y)

    return R


def quat_to_R_batch(quats):
    """Convert quaternions to rotation matrices.

    Args:
        quats: Array of shape (B, 4) or (4,)

    Returns:
        Array of shape (B, 3, 3)

    Raises:
        ValueError: If the shape is not (B, 4) or (4,)
    """
    q = np.ascontiguousarray(quats, dtype=np.float64)
    if q.ndim == 1:
        q = q[None, :]
    if q.ndim != 2 or q.shape[1] != 4:
        raise ValueError(f"quat_to_R_batch expects shape (B,4) or (4,), got {q.shape}")
    return _quat_to_R_batch_core(q)


def sample_orientations(n, seed=None):
    """Sample n orientations, the identity first.

    The remaining n-1 quaternions map a Halton sequence uniformly onto the
    unit quaternion hemisphere w >= 0.

    Args:
        n: Number of orientations
        seed: Seed for the scrambled sequence (None: unscrambled)

    Returns:
        Array of shape (n, 4) of unit quaternions (w, x, y, z)
    """
    quats = np.zeros((n, 4), dtype=np.float64)
    if n == 0:
        return quats
    quats[0, 0] = 1.0
    if n > 1:
        halton = qmc.Halton(d=3, scramble=seed is not None, seed=seed)
        u = halton.random(n - 1)
        r1 = np.sqrt(1.0 - u[:, 0])
        r2 = np.sqrt(u[:, 0])
        t1 = 2.0 * np.pi * u[:, 1]
        t2 = 2.0 * np.pi * u[:, 2]
        q = np.stack([r2 * np.cos(t2), r1 * np.sin(t1), r1 * np.cos(t1), r2 * np.sin(t2)], axis=1)
        q[q[:, 0] < 0.0] *= -1.0
        quats[1:] = q
    return quats


def rotate_cell(cell, R):
    """Rotate the row vectors of a cell: B' = B @ R.T"""
    return np.asarray(cell, dtype=np.float64) @ np.asarray(R, dtype=np.float64).T


# ==============================================================================
# Scoring
# ==============================================================================

@njit(fastmath=True)
def _trimmed_score_batched_core(R, spots, cell_inv, triml, trimh):
    """JIT-compiled trimmed score of a batch of rotations.

    Spots expressed in the rotated cell B @ R.T have coordinates
    spots @ R @ inv(B). The score sums, over spots and axes, the distance of
    each coordinate to the nearest integer clipped to [triml, trimh].
    """
    K = R.shape[0]
    N = spots.shape[0]
    out = np.empty(K, np.float64)
    M = np.empty((3, 3), np.float64)

    for k in range(K):
        for i in range(3):
            for j in range(3):
                M[i, j] = (R[k, i, 0] * cell_inv[0, j]
                           + R[k, i, 1] * cell_inv[1, j]
                           + R[k, i, 2] * cell_inv[2, j])
        acc = 0.0
        for n in range(N):
            for j in range(3):
                x = spots[n, 0] * M[0, j] + spots[n, 1] * M[1, j] + spots[n, 2] * M[2, j]
                d = abs(x - math.floor(x + 0.5))
                if d < triml:
                    d = triml
                elif d > trimh:
                    d = trimh
                acc += d
        out[k] = acc

    return out


def trimmed_score_batched(quats, spots, cell_inv, triml, trimh):
    """Trimmed score of the cell rotated by each quaternion (lower is better).

    Args:
        quats: Array of shape (B, 4)
        spots: Spot coordinates of shape (N, 3)
        cell_inv: Inverse of the unrotated 3x3 cell
        triml: Lower clip for fractional distances
        trimh: Upper clip for fractional distances

    Returns:
        Array of shape (B,)
    """
    R = quat_to_R_batch(quats)
    spots = np.ascontiguousarray(spots, dtype=np.float64)
    cell_inv = np.ascontiguousarray(cell_inv, dtype=np.float64)
    return _trimmed_score_batched_core(R, spots, cell_inv, float(triml), float(trimh))


def polish_orientation(q, score, spots, cell_inv, triml, trimh, maxiter=200):
    """Locally improve an orientation with Nelder-Mead.

    Args:
        q: Starting quaternion
        score: Trimmed score of q
        spots, cell_inv, triml, trimh: Same as trimmed_score_batched
        maxiter: Maximum number of Nelder-Mead iterations

    Returns:
        Tuple (q, score); the input is returned unless polishing strictly
        lowers the score.
    """
    def objective(x):
        return float(trimmed_score_batched(x[None, :], spots, cell_inv, triml, trimh)[0])

    result = minimize(
        objective, np.asarray(q, dtype=np.float64), method="Nelder-Mead",
        options=dict(maxiter=maxiter, xatol=1e-7, fatol=1e-9),
    )
    if result.fun < score:
        return quat_normalize(result.x), float(result.fun)
    return q, score


# ==============================================================================
# Candidate Selection
# ==============================================================================

def same_lattice(cell_a, cell_b, tol):
    """Check whether two cells span the same lattice.

    The cells are equivalent if cell_b = U @ cell_a for a unimodular integer
    matrix U, up to a row deviation of at most tol.
    """
    cell_a = np.asarray(cell_a, dtype=np.float64)
    cell_b = np.asarray(cell_b, dtype=np.float64)
    try:
        U = np.rint(cell_b @ np.linalg.inv(cell_a))
    except np.linalg.LinAlgError:
        return False
    if abs(round(np.linalg.det(U))) != 1:
        return False
    dev = np.linalg.norm(cell_b - U @ cell_a, axis=1)
    return bool(np.max(dev) <= tol)


def order_candidates(cells, scores, tol):
    """Order candidates by score, lattice duplicates behind unique cells.

    Returns:
        List of candidate indices
    """
    order = np.argsort(np.asarray(scores), kind="stable")
    unique, duplicates = [], []
    for k in order:
        if any(same_lattice(cells[u], cells[k], tol) for u in unique):
            duplicates.append(int(k))
        else:
            unique.append(int(k))
    return unique + duplicates


def index_cells(input_cells, spots, crt, num_candidates, n_out,
                seed=None, polish=True, maxiter=200, score_fn=None, timings=None):
    """Search the orientation of every input cell against the spots.

    Args:
        input_cells: Sequence of 3x3 cells (row vectors)
        spots: Spot coordinates of shape (N, 3)
        crt: ConfigRuntime (num_sample_points, triml, trimh, length_threshold)
        num_candidates: Orientations kept (and polished) per input cell
        n_out: Number of output cells
        seed: Sampling seed
        polish: Whether to polish the kept orientations
        maxiter: Nelder-Mead iteration limit
        score_fn: Batched scoring function, defaults to trimmed_score_batched
        timings: Optional dict accumulating seconds per phase

    Returns:
        Tuple (cells, scores) of shapes (n_out, 3, 3) and (n_out,)

    Raises:
        ValueError: If there are no input cells
    """
    if len(input_cells) == 0:
        raise ValueError("no input cells to index")
    if score_fn is None:
        score_fn = trimmed_score_batched
    if timings is None:
        timings = {}
    spots = np.ascontiguousarray(spots, dtype=np.float64)
    quats = sample_orientations(int(crt.num_sample_points), seed=seed)

    cand_cells, cand_scores = [], []
    for cell in input_cells:
        cell = np.asarray(cell, dtype=np.float64)
        cell_inv = np.linalg.inv(cell)

        t0 = time.perf_counter()
        vals = score_fn(quats, spots, cell_inv, crt.triml, crt.trimh)
        timings["score"] = timings.get("score", 0.0) + time.perf_counter() - t0

        t0 = time.perf_counter()
        keep = np.argsort(vals, kind="stable")[:num_candidates]
        for k in keep:
            q, val = quats[k], float(vals[k])
            if polish:
                q, val = polish_orientation(q, val, spots, cell_inv, crt.triml, crt.trimh, maxiter)
            cand_cells.append(rotate_cell(cell, quat_to_R_batch(q)[0]))
            cand_scores.append(val)
        timings["polish"] = timings.get("polish", 0.0) + time.perf_counter() - t0

    t0 = time.perf_counter()
    order = order_candidates(cand_cells, cand_scores, crt.length_threshold)
    timings["select"] = timings.get("select", 0.0) + time.perf_counter() - t0

    picked = [order[j % len(order)] for j in range(n_out)]
    cells = np.stack([cand_cells[k] for k in picked], axis=0)
    scores = np.array([cand_scores[k] for k in picked], dtype=np.float64)
    return cells, scores


# ==============================================================================
# Asynchronous Engine
# ==============================================================================

class IndexFuture:
    """Handle of one submitted indexing request."""

    def __init__(self, future):
        self._future = future

    def is_ready(self):
        return self._future.done()

    def wait_for(self):
        """Block until the request finished; re-raises engine errors."""
        self._future.result()


class CpuEngine:
    """Orientation search engine executing requests on a worker thread.

    Args:
        cpers: ConfigPersistent of the owning indexer
        seed: Orientation sampling seed (None: unscrambled sequence)
        polish: Whether to polish the best orientations
        maxiter: Nelder-Mead iteration limit
        profile: Whether to print a timing breakdown per request
    """

    name = "cpu"

    def __init__(self, cpers, seed=None, polish=True, maxiter=200, profile=False):
        self.cpers = cpers
        self.seed = seed
        self.polish = polish
        self.maxiter = maxiter
        self.profile = profile
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{self.name}-indexer")

    def score_samples(self, quats, spots, cell_inv, triml, trimh):
        return trimmed_score_batched(quats, spots, cell_inv, triml, trimh)

    def submit(self, input_view, output_view, crt):
        """Start indexing; the result is written into output_view.

        Returns:
            IndexFuture
        """
        logger.info("%s engine: %d input cells, %d spots", self.name, input_view.n_cells, input_view.n_spots)
        return IndexFuture(self._executor.submit(self._run, input_view, output_view, crt))

    def _run(self, input_view, output_view, crt):
        t_total0 = time.perf_counter()
        timings = {}
        cells, scores = index_cells(
            input_view.cells(), input_view.spots(), crt,
            min(self.cpers.num_candidate_vectors, int(crt.num_sample_points)),
            output_view.n_cells,
            seed=self.seed, polish=self.polish, maxiter=self.maxiter,
            score_fn=self.score_samples, timings=timings,
        )
        output_view.cells[:] = cells.reshape(-1, 3)
        output_view.scores[:] = scores
        t_total = time.perf_counter() - t_total0
        logger.info("%s engine: best score %.6g", self.name, float(scores.min()))

        if self.profile:
            def pct(x):
                return 100.0 * x / t_total if t_total > 0 else 0.0
            print(f"\n[{self.name} engine profile]")
            print(f"  total       = {t_total:.4f} s (100.0%)")
            for phase in ("score", "polish", "select"):
                t = timings.get(phase, 0.0)
                print(f"  {phase:<11} = {t:.4f} s ({pct(t):5.1f}%)")

    def close(self):
        self._executor.shutdown(wait=True)
