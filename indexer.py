"""
Refinement Indexer Facade

Owns the coordinate and result buffers of one indexer, validates its
configuration, submits indexing requests to an asynchronous engine and runs
the selected refinement strategy on the engine output.

Buffer layout:
- Coordinates: (max_spots + 3*max_input_cells, 3). Input cells fill the
  leading 3*max_input_cells rows from the bottom up, cell 0 being adjacent to
  the spots; spot k is row 3*max_input_cells + k.
- Output: (3*max_output_cells, 3) cells of row vectors and
  (max_output_cells,) scores, lower is better.

Only one request may be outstanding per indexer. Submitting a new request
before the previous one completed rebinds the views to the new request, and
the buffers must not be modified while a request is outstanding.
"""

import logging
import weakref
from collections import namedtuple
from contextlib import ExitStack
from dataclasses import replace

import gemmi
import numpy as np

from indexer_config import (
    ConfigError,
    ConfigRuntime,
    check_config,
    check_config_ifme,
    check_config_lsq,
)
from indexer_cpu import CpuEngine
from indexer_gpu import MemoryPin, page_aligned_zeros
from indexer_refine import RefinementKind, RefinementStrategy

logger = logging.getLogger(__name__)

# Runtime configuration record handed to the engine; pinned like the buffers
RUNTIME_DTYPE = np.dtype([
    ("length_threshold", np.float64),
    ("triml", np.float64),
    ("trimh", np.float64),
    ("num_sample_points", np.int64),
])


# ==============================================================================
# Buffer Layout and Views
# ==============================================================================

class Layout(namedtuple("Layout", ["offset", "stride", "count", "width"])):
    """Placement of `count` items of `width` rows; item i starts at offset + stride*i."""

    __slots__ = ()

    def start(self, i):
        return self.offset + self.stride * i

    def check(self, n_rows):
        if self.count == 0:
            return
        first, last = self.start(0), self.start(self.count - 1)
        if min(first, last) < 0 or max(first, last) + self.width > n_rows:
            raise ConfigError(f"layout {self} exceeds buffer of {n_rows} rows")


class InputView:
    """Engine view of n_cells input cells immediately followed by n_spots spots."""

    def __init__(self, coords, n_cells, n_spots):
        self.coords = coords
        self.n_cells = n_cells
        self.n_spots = n_spots

    def cell(self, i):
        s = 3 * (self.n_cells - i - 1)
        return self.coords[s:s + 3]

    def cells(self):
        return [self.cell(i) for i in range(self.n_cells)]

    def spots(self):
        s = 3 * self.n_cells
        return self.coords[s:s + self.n_spots]


OutputView = namedtuple("OutputView", ["cells", "scores", "n_cells"])


class _Request:
    __slots__ = ("input", "output", "handle", "refined")

    def __init__(self, input_view, output_view, handle):
        self.input = input_view
        self.output = output_view
        self.handle = handle
        self.refined = False


def _read_only(a):
    v = a.view()
    v.flags.writeable = False
    return v


def cell_parameters(cell):
    """Unit cell parameters (a, b, c, alpha, beta, gamma) of a cell of row vectors.

    Angles are in degrees.
    """
    cell = np.asarray(cell, dtype=np.float64)
    lengths = np.linalg.norm(cell, axis=1)

    def angle(u, v):
        c = np.dot(cell[u], cell[v]) / (lengths[u] * lengths[v])
        return float(np.degrees(np.arccos(np.clip(c, -1.0, 1.0))))

    return (float(lengths[0]), float(lengths[1]), float(lengths[2]),
            angle(1, 2), angle(0, 2), angle(0, 1))


# ==============================================================================
# Indexer
# ==============================================================================

class Indexer:
    """Indexer with optional refinement of the engine output.

    Args:
        cpers: ConfigPersistent, copied
        crt: ConfigRuntime, copied
        refinement: RefinementStrategy (default: no refinement)
        engine: Factory called with the persistent config, returning an
            object with submit(input_view, output_view, crt) -> handle
        dtype: Floating point type of the buffers

    Raises:
        ConfigError: If a configuration is invalid; nothing is allocated
    """

    check_config = staticmethod(check_config)

    def __init__(self, cpers, crt, refinement=None, engine=CpuEngine, dtype=np.float64):
        check_config(cpers, crt)
        if refinement is None:
            refinement = RefinementStrategy.none()
        refinement.check()

        self._cpers = replace(cpers)
        config = None if refinement.config is None else replace(refinement.config)
        self._refinement = RefinementStrategy(refinement.kind, config)

        n_in, n_out, n_spots = cpers.max_input_cells, cpers.max_output_cells, cpers.max_spots
        # each buffer on its own pages, pinned separately
        self._coords = page_aligned_zeros((n_spots + 3 * n_in, 3), dtype)
        self._cells = page_aligned_zeros((3 * n_out, 3), dtype)
        self._scores = page_aligned_zeros((n_out,), dtype)
        self._in_layout = Layout(3 * (n_in - 1), -3, n_in, 3)
        self._spot_layout = Layout(3 * n_in, 1, n_spots, 1)
        self._out_layout = Layout(0, 3, n_out, 3)
        self._in_layout.check(self._coords.shape[0])
        self._spot_layout.check(self._coords.shape[0])
        self._out_layout.check(self._cells.shape[0])

        self._crt = page_aligned_zeros((1,), RUNTIME_DTYPE)
        for name in RUNTIME_DTYPE.names:
            self._crt[name][0] = getattr(crt, name)

        self._request = None
        self._errors = {}
        with ExitStack() as stack:
            for buf in (self._coords, self._cells, self._scores, self._crt):
                stack.enter_context(MemoryPin(buf))
            self._engine = engine(self._cpers)
            close = getattr(self._engine, "close", None)
            if close is not None:
                stack.callback(close)
            resources = stack.pop_all()
        self._finalizer = weakref.finalize(self, resources.close)

    # ------------------------------------------------------------------
    # lifetime

    def close(self):
        """Release pinned buffers and the engine; safe to call repeatedly."""
        self._finalizer()

    @property
    def closed(self):
        return not self._finalizer.alive

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    # ------------------------------------------------------------------
    # indexing

    def index_async(self, n_input_cells, n_spots):
        """Submit the first n_input_cells input cells and n_spots spots.

        Counts are not checked against the configured maxima.

        Returns:
            The engine handle of the request
        """
        if self.closed:
            raise RuntimeError("indexer is closed")
        start = self._in_layout.start(n_input_cells - 1)
        stop = self._spot_layout.start(0) + n_spots
        input_view = InputView(self._coords[start:stop], n_input_cells, n_spots)
        output_view = OutputView(self._cells, self._scores, self._cpers.max_output_cells)
        handle = self._engine.submit(input_view, output_view, self.conf_runtime())
        self._request = _Request(input_view, output_view, handle)
        self._errors = {}
        return handle

    def _current_request(self):
        if self._request is None:
            raise RuntimeError("no indexing request submitted")
        return self._request

    def is_ready(self):
        """Check for completion without blocking.

        The first call that sees the engine finished runs the refinement
        strategy; later calls return True without refining again.
        """
        request = self._current_request()
        if not request.handle.is_ready():
            return False
        if not request.refined:
            request.handle.wait_for()
            self._errors = self._refinement.refine(
                request.input.spots(), request.output.cells, request.output.scores)
            request.refined = True
            logger.info("request finished, refinement: %s, failed cells: %d",
                        self._refinement.kind.value, len(self._errors))
        return True

    def wait_for(self):
        """Block until the engine finished, then refine like is_ready()."""
        self._current_request().handle.wait_for()
        self.is_ready()

    def index(self, n_input_cells, n_spots):
        self.index_async(n_input_cells, n_spots)
        self.wait_for()

    def refinement_errors(self):
        """NumericErrors of the last refinement by output cell index."""
        return dict(self._errors)

    # ------------------------------------------------------------------
    # coordinate access (unchecked)

    def spot(self, i=0):
        return self._coords[self._spot_layout.start(i)]

    def spots(self):
        return self._coords[self._spot_layout.offset:]

    def input_cell(self, i=0, j=None):
        s = self._in_layout.start(i)
        if j is None:
            return self._coords[s:s + 3]
        return self._coords[s + j]

    def input_cells(self):
        # fill from bottom up
        return self._coords[:self._spot_layout.offset]

    def coords(self):
        return self._coords

    # ------------------------------------------------------------------
    # output access (unchecked, read only)

    def output_cell(self, i=0, j=None):
        s = self._out_layout.start(i)
        if j is None:
            return _read_only(self._cells[s:s + 3])
        return _read_only(self._cells[s + j])

    def output_cells(self):
        return _read_only(self._cells)

    def output_score(self, i=0):
        return float(self._scores[i])

    def output_scores(self):
        return _read_only(self._scores)

    def output_cell_parameters(self, i=0):
        return gemmi.UnitCell(*cell_parameters(self.output_cell(i)))

    # ------------------------------------------------------------------
    # runtime configuration

    def conf_runtime(self):
        return ConfigRuntime(
            length_threshold=float(self._crt["length_threshold"][0]),
            triml=float(self._crt["triml"][0]),
            trimh=float(self._crt["trimh"][0]),
            num_sample_points=int(self._crt["num_sample_points"][0]),
        )

    @property
    def length_threshold(self):
        return float(self._crt["length_threshold"][0])

    @length_threshold.setter
    def length_threshold(self, lt):
        if lt < 0.0:
            raise ConfigError("negative length threshold")
        self._crt["length_threshold"][0] = lt

    @property
    def triml(self):
        return float(self._crt["triml"][0])

    @triml.setter
    def triml(self, tl):
        if tl < 0.0:
            raise ConfigError("lower trim value < 0")
        if tl > self.trimh:
            raise ConfigError("lower > higher trim value")
        self._crt["triml"][0] = tl

    @property
    def trimh(self):
        return float(self._crt["trimh"][0])

    @trimh.setter
    def trimh(self, th):
        if self.triml > th:
            raise ConfigError("lower > higher trim value")
        if th > 0.5:
            raise ConfigError("higher trim value > 0.5")
        self._crt["trimh"][0] = th

    @property
    def num_sample_points(self):
        return int(self._crt["num_sample_points"][0])

    @num_sample_points.setter
    def num_sample_points(self, nsp):
        previous = self.num_sample_points
        self._crt["num_sample_points"][0] = nsp
        try:
            check_config(self._cpers, self.conf_runtime())
        except ConfigError:
            self._crt["num_sample_points"][0] = previous
            raise

    # ------------------------------------------------------------------
    # persistent configuration; create another indexer to change it

    @property
    def max_output_cells(self):
        return self._cpers.max_output_cells

    @property
    def max_input_cells(self):
        return self._cpers.max_input_cells

    @property
    def max_spots(self):
        return self._cpers.max_spots

    @property
    def num_candidate_vectors(self):
        return self._cpers.num_candidate_vectors

    def conf_persistent(self):
        return replace(self._cpers)

    # ------------------------------------------------------------------
    # refinement configuration

    @property
    def refinement(self):
        return self._refinement.kind

    def _strategy_config(self, kind):
        if self._refinement.kind is not kind:
            raise ConfigError(f"indexer refines with {self._refinement.kind.value}, not {kind.value}")
        return self._refinement.config

    def _update_strategy(self, kind, check, **changes):
        config = replace(self._strategy_config(kind), **changes)
        check(config)
        self._refinement.config = config

    def conf_lsq(self):
        return replace(self._strategy_config(RefinementKind.LSQ))

    def conf_ifme(self):
        return replace(self._strategy_config(RefinementKind.IFME))

    @property
    def threshold_contraction(self):
        return self._strategy_config(RefinementKind.LSQ).threshold_contraction

    @threshold_contraction.setter
    def threshold_contraction(self, tc):
        self._update_strategy(RefinementKind.LSQ, check_config_lsq, threshold_contraction=tc)

    @property
    def min_spots(self):
        return self._strategy_config(RefinementKind.LSQ).min_spots

    @min_spots.setter
    def min_spots(self, ms):
        self._update_strategy(RefinementKind.LSQ, check_config_lsq, min_spots=ms)

    @property
    def n_iter(self):
        return self._strategy_config(RefinementKind.IFME).n_iter

    @n_iter.setter
    def n_iter(self, n):
        self._update_strategy(RefinementKind.IFME, check_config_ifme, n_iter=n)

    @property
    def error_sensitivity(self):
        return self._strategy_config(RefinementKind.IFME).error_sensitivity

    @error_sensitivity.setter
    def error_sensitivity(self, s):
        self._update_strategy(RefinementKind.IFME, check_config_ifme, error_sensitivity=s)

    @property
    def weight_contraction(self):
        return self._strategy_config(RefinementKind.IFME).weight_contraction

    @weight_contraction.setter
    def weight_contraction(self, c):
        self._update_strategy(RefinementKind.IFME, check_config_ifme, weight_contraction=c)
