"""Indexer facade: buffers, request protocol, configuration access and resources."""

from __future__ import annotations

import time

import numpy as np
import pytest

import indexer as indexer_module
from indexer import Indexer, Layout, cell_parameters
from indexer_config import ConfigError, ConfigIfme, ConfigLsq, ConfigPersistent, ConfigRuntime
from indexer_refine import RefinementKind, RefinementStrategy

CELL = np.array([[4.0, 0.0, 0.0], [0.0, 5.0, 0.0], [0.0, 0.0, 6.0]])


def fill_lattice(idx, cell, n_spots, seed=0):
    rng = np.random.default_rng(seed)
    Z = rng.integers(-2, 3, size=(n_spots, 3)).astype(np.float64)
    Z[:3] = np.eye(3)
    for k, s in enumerate(Z @ cell):
        idx.spot(k)[:] = s


# ==============================================================================
# construction and layout
# ==============================================================================

def test_buffers_are_sized_from_persistent_config(cpers, crt, fake_engine) -> None:
    with Indexer(cpers, crt, engine=fake_engine()) as idx:
        assert idx.coords().shape == (cpers.max_spots + 3 * cpers.max_input_cells, 3)
        assert idx.output_cells().shape == (3 * cpers.max_output_cells, 3)
        assert idx.output_scores().shape == (cpers.max_output_cells,)
        assert idx.spots().shape == (cpers.max_spots, 3)
        assert idx.input_cells().shape == (3 * cpers.max_input_cells, 3)


def test_input_cells_fill_from_bottom_up(cpers, crt, fake_engine) -> None:
    with Indexer(cpers, crt, engine=fake_engine()) as idx:
        idx.input_cell(0)[:] = CELL
        idx.input_cell(1, 2)[:] = (7.0, 8.0, 9.0)
        idx.spot(0)[:] = (1.0, 2.0, 3.0)
        coords = idx.coords()
        n_in = cpers.max_input_cells
        np.testing.assert_array_equal(coords[3 * (n_in - 1):3 * n_in], CELL)
        np.testing.assert_array_equal(coords[3 * (n_in - 2) + 2], (7.0, 8.0, 9.0))
        np.testing.assert_array_equal(coords[3 * n_in], (1.0, 2.0, 3.0))


def test_layout_check_rejects_overflow() -> None:
    Layout(0, 3, 2, 3).check(6)
    Layout(3, -3, 2, 3).check(6)
    with pytest.raises(ConfigError):
        Layout(0, 3, 3, 3).check(6)
    with pytest.raises(ConfigError):
        Layout(3, -3, 3, 3).check(9)


def test_invalid_config_raises_before_allocation(cpers, crt, monkeypatch) -> None:
    def no_pin(array):
        raise AssertionError("pinned despite invalid configuration")

    monkeypatch.setattr(indexer_module, "MemoryPin", no_pin)
    crt.trimh = 0.7
    with pytest.raises(ConfigError, match="higher trim value > 0.5"):
        Indexer(cpers, crt)
    with pytest.raises(ConfigError, match="threshold contraction"):
        Indexer(cpers, ConfigRuntime(triml=0.0, trimh=0.5, num_sample_points=4),
                refinement=RefinementStrategy.lsq(ConfigLsq(threshold_contraction=1.0)))


class RecordingPin:
    created = []
    fail_at = None

    def __init__(self, array):
        if RecordingPin.fail_at is not None and len(RecordingPin.created) == RecordingPin.fail_at:
            raise RuntimeError("registration failed")
        self.array = array
        self.released = 0
        RecordingPin.created.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.released += 1
        return False


@pytest.fixture
def recording_pin(monkeypatch):
    RecordingPin.created = []
    RecordingPin.fail_at = None
    monkeypatch.setattr(indexer_module, "MemoryPin", RecordingPin)
    return RecordingPin


def test_pins_buffers_and_runtime_config_until_close(cpers, crt, fake_engine, recording_pin) -> None:
    factory = fake_engine()
    idx = Indexer(cpers, crt, engine=factory)
    assert len(recording_pin.created) == 4
    assert any(p.array.dtype.names for p in recording_pin.created)
    assert all(p.released == 0 for p in recording_pin.created)
    idx.close()
    idx.close()
    assert idx.closed
    assert all(p.released == 1 for p in recording_pin.created)
    assert factory.engine.closed == 1
    with pytest.raises(RuntimeError, match="closed"):
        idx.index_async(1, 1)


def test_failed_pin_releases_earlier_pins(cpers, crt, fake_engine, recording_pin) -> None:
    recording_pin.fail_at = 2
    with pytest.raises(RuntimeError, match="registration failed"):
        Indexer(cpers, crt, engine=fake_engine())
    assert len(recording_pin.created) == 2
    assert all(p.released == 1 for p in recording_pin.created)


def test_failed_engine_construction_releases_pins(cpers, crt, recording_pin) -> None:
    def broken_engine(cpers):
        raise RuntimeError("no device")

    with pytest.raises(RuntimeError, match="no device"):
        Indexer(cpers, crt, engine=broken_engine)
    assert len(recording_pin.created) == 4
    assert all(p.released == 1 for p in recording_pin.created)


# ==============================================================================
# request protocol
# ==============================================================================

def test_index_async_submits_cells_next_to_spots(cpers, crt, fake_engine) -> None:
    factory = fake_engine(auto_complete=False)
    with Indexer(cpers, crt, engine=factory) as idx:
        other = CELL * 2.0
        idx.input_cell(0)[:] = CELL
        idx.input_cell(1)[:] = other
        fill_lattice(idx, CELL, 5)

        idx.index_async(1, 5)
        view, submitted_crt = factory.engine.submitted[-1]
        assert view.n_cells == 1 and view.n_spots == 5
        assert view.coords.shape == (3 + 5, 3)
        np.testing.assert_array_equal(view.cell(0), CELL)
        np.testing.assert_array_equal(view.spots(), idx.spots()[:5])
        assert submitted_crt == idx.conf_runtime()

        idx.index_async(2, 4)
        view, _ = factory.engine.submitted[-1]
        assert view.coords.shape == (6 + 4, 3)
        np.testing.assert_array_equal(view.cell(0), CELL)
        np.testing.assert_array_equal(view.cell(1), other)
        assert len(view.cells()) == 2


def test_polling_before_and_after_completion(cpers, crt, fake_engine) -> None:
    factory = fake_engine(auto_complete=False, score=4.0)
    with Indexer(cpers, crt, engine=factory) as idx:
        idx.input_cell(0)[:] = CELL
        fill_lattice(idx, CELL, 8)
        idx.index_async(1, 8)
        assert not idx.is_ready()
        factory.engine.handles[-1].complete()
        assert idx.is_ready()
        assert idx.is_ready()
        np.testing.assert_array_equal(idx.output_cell(1), CELL)
        assert idx.output_score(0) == 4.0


def test_polling_refines_only_once(cpers, crt, fake_engine, monkeypatch) -> None:
    calls = []
    original = RefinementStrategy.refine

    def counting_refine(self, spots, cells, scores):
        calls.append(1)
        return original(self, spots, cells, scores)

    monkeypatch.setattr(RefinementStrategy, "refine", counting_refine)
    raw = CELL + 0.01
    factory = fake_engine(cells=[raw], score=3.0)
    strategy = RefinementStrategy.lsq(ConfigLsq(threshold_contraction=0.8, min_spots=3))
    with Indexer(cpers, crt, refinement=strategy, engine=factory) as idx:
        fill_lattice(idx, CELL, 8)
        idx.index(1, 8)
        cells, scores = idx.output_cells().copy(), idx.output_scores().copy()
        for _ in range(3):
            assert idx.is_ready()
        assert len(calls) == 1
        np.testing.assert_array_equal(idx.output_cells(), cells)
        np.testing.assert_array_equal(idx.output_scores(), scores)
        np.testing.assert_allclose(idx.output_cell(0), CELL, atol=1e-6)


def test_refinement_runs_on_the_engine_output_view(cpers, crt, fake_engine, monkeypatch) -> None:
    seen = []

    def recording_refine(self, spots, cells, scores):
        seen.append((spots, cells, scores))
        return {}

    monkeypatch.setattr(RefinementStrategy, "refine", recording_refine)
    factory = fake_engine(cells=[CELL], score=1.0)
    with Indexer(cpers, crt, refinement=RefinementStrategy.lsq(), engine=factory) as idx:
        fill_lattice(idx, CELL, 8)
        idx.index(1, 8)
        output = factory.engine.handles[0].output
        [(spots, cells, scores)] = seen
        assert cells is output.cells
        assert scores is output.scores
        assert spots.shape == (8, 3)


def test_wait_for_blocks_then_refines(cpers, crt, fake_engine) -> None:
    factory = fake_engine(auto_complete=False, cells=[CELL + 0.01], score=3.0)
    strategy = RefinementStrategy.ifme(ConfigIfme(n_iter=0))
    with Indexer(cpers, crt, refinement=strategy, engine=factory) as idx:
        fill_lattice(idx, CELL, 8)
        idx.index_async(1, 8)
        idx.wait_for()
        assert factory.engine.handles[-1].waits >= 1
        assert idx.is_ready()
        assert idx.output_score(0) != 3.0


def test_no_request_is_a_runtime_error(cpers, crt, fake_engine) -> None:
    with Indexer(cpers, crt, engine=fake_engine()) as idx:
        with pytest.raises(RuntimeError, match="no indexing request"):
            idx.is_ready()
        with pytest.raises(RuntimeError, match="no indexing request"):
            idx.wait_for()


def test_engine_errors_propagate(cpers, crt, fake_engine) -> None:
    factory = fake_engine(auto_complete=False, error=ValueError("engine exploded"))
    with Indexer(cpers, crt, engine=factory) as idx:
        idx.input_cell(0)[:] = CELL
        with pytest.raises(ValueError, match="engine exploded"):
            idx.index(1, 3)


def test_numeric_errors_are_reported_per_cell(cpers, crt, fake_engine) -> None:
    factory = fake_engine(cells=[CELL + 0.01, np.zeros((3, 3))], score=2.0)
    strategy = RefinementStrategy.lsq(ConfigLsq(min_spots=3))
    with Indexer(cpers, crt, refinement=strategy, engine=factory) as idx:
        fill_lattice(idx, CELL, 8)
        idx.index(1, 8)
        errors = idx.refinement_errors()
        assert list(errors) == [1]
        assert idx.output_score(1) == np.inf
        np.testing.assert_allclose(idx.output_cell(0), CELL, atol=1e-6)


def test_output_views_are_read_only(cpers, crt, fake_engine) -> None:
    with Indexer(cpers, crt, engine=fake_engine()) as idx:
        with pytest.raises(ValueError):
            idx.output_cell(0)[0, 0] = 1.0
        with pytest.raises(ValueError):
            idx.output_scores()[0] = 1.0
        with pytest.raises(ValueError):
            idx.output_cells()[0] = 1.0


def test_output_cell_parameters(cpers, crt, fake_engine) -> None:
    with Indexer(cpers, crt, engine=fake_engine()) as idx:
        idx.input_cell(0)[:] = CELL
        idx.index(1, 0)
        uc = idx.output_cell_parameters(0)
        assert uc.a == pytest.approx(4.0)
        assert uc.b == pytest.approx(5.0)
        assert uc.c == pytest.approx(6.0)
        assert uc.alpha == pytest.approx(90.0)
        assert uc.volume == pytest.approx(120.0)


def test_cell_parameters_of_a_skewed_cell() -> None:
    cell = np.array([[1.0, 0.0, 0.0], [1.0, 1.0, 0.0], [0.0, 0.0, 2.0]])
    a, b, c, alpha, beta, gamma = cell_parameters(cell)
    assert (a, c) == (1.0, 2.0)
    assert b == pytest.approx(np.sqrt(2.0))
    assert alpha == pytest.approx(90.0)
    assert beta == pytest.approx(90.0)
    assert gamma == pytest.approx(45.0)


# ==============================================================================
# configuration access
# ==============================================================================

def test_triml_above_trimh_leaves_config_unchanged(cpers, fake_engine) -> None:
    crt = ConfigRuntime(triml=0.1, trimh=0.2, num_sample_points=4)
    with Indexer(cpers, crt, engine=fake_engine()) as idx:
        with pytest.raises(ConfigError, match="lower > higher trim value"):
            idx.triml = 0.3
        assert (idx.triml, idx.trimh) == (0.1, 0.2)
        with pytest.raises(ConfigError, match="lower trim value < 0"):
            idx.triml = -0.1
        with pytest.raises(ConfigError, match="lower > higher trim value"):
            idx.trimh = 0.05
        with pytest.raises(ConfigError, match="higher trim value > 0.5"):
            idx.trimh = 0.6
        assert (idx.triml, idx.trimh) == (0.1, 0.2)
        idx.trimh = 0.4
        idx.triml = 0.0
        assert (idx.triml, idx.trimh) == (0.0, 0.4)


def test_length_threshold_setter(cpers, crt, fake_engine) -> None:
    with Indexer(cpers, crt, engine=fake_engine()) as idx:
        idx.length_threshold = 0.5
        assert idx.length_threshold == 0.5
        with pytest.raises(ConfigError, match="negative length threshold"):
            idx.length_threshold = -1.0
        assert idx.length_threshold == 0.5
        assert idx.conf_runtime().length_threshold == 0.5


def test_num_sample_points_rolls_back(fake_engine) -> None:
    cpers = ConfigPersistent(max_output_cells=1, max_input_cells=1, max_spots=4, num_candidate_vectors=3)
    crt = ConfigRuntime(triml=0.0, trimh=0.5, num_sample_points=5)
    with Indexer(cpers, crt, engine=fake_engine()) as idx:
        with pytest.raises(ConfigError, match="fewer sample points"):
            idx.num_sample_points = 2
        assert idx.num_sample_points == 5
        idx.num_sample_points = 3
        assert idx.conf_runtime().num_sample_points == 3


def test_persistent_config_is_copied(cpers, crt, fake_engine) -> None:
    with Indexer(cpers, crt, engine=fake_engine()) as idx:
        cpers.max_spots = 1000
        crt.trimh = 0.1
        assert idx.max_spots == 8
        assert idx.trimh == 0.5
        assert (idx.max_output_cells, idx.max_input_cells, idx.num_candidate_vectors) == (2, 2, 1)
        assert idx.conf_persistent() == ConfigPersistent(2, 2, 8, 1)


def test_strategy_parameters(cpers, crt, fake_engine) -> None:
    lsq = Indexer(cpers, crt, refinement=RefinementStrategy.lsq(), engine=fake_engine())
    assert lsq.refinement is RefinementKind.LSQ
    assert (lsq.threshold_contraction, lsq.min_spots) == (0.8, 6)
    lsq.threshold_contraction = 0.5
    lsq.min_spots = 4
    assert lsq.conf_lsq() == ConfigLsq(threshold_contraction=0.5, min_spots=4)
    with pytest.raises(ConfigError):
        lsq.threshold_contraction = 1.2
    assert lsq.threshold_contraction == 0.5
    with pytest.raises(ConfigError):
        lsq.n_iter = 2
    lsq.close()

    ifme = Indexer(cpers, crt, refinement=RefinementStrategy.ifme(), engine=fake_engine())
    assert (ifme.n_iter, ifme.error_sensitivity, ifme.weight_contraction) == (3, 0.8, 2.0)
    ifme.n_iter = 5
    ifme.error_sensitivity = 0.5
    ifme.weight_contraction = 3.0
    assert ifme.conf_ifme() == ConfigIfme(5, 0.5, 3.0)
    with pytest.raises(ConfigError):
        ifme.weight_contraction = 0.0
    with pytest.raises(ConfigError):
        ifme.min_spots
    ifme.close()


def test_strategy_config_is_copied(cpers, crt, fake_engine) -> None:
    config = ConfigLsq()
    with Indexer(cpers, crt, refinement=RefinementStrategy.lsq(config), engine=fake_engine()) as idx:
        idx.min_spots = 2
        assert config.min_spots == 6


# ==============================================================================
# end to end
# ==============================================================================

def exact_lattice_indexer(refinement):
    cpers = ConfigPersistent(max_input_cells=1, max_output_cells=1, max_spots=3, num_candidate_vectors=1)
    crt = ConfigRuntime(num_sample_points=1, triml=0.0, trimh=0.5)
    idx = Indexer(cpers, crt, refinement=refinement)
    idx.input_cell(0)[:] = np.eye(3)
    for k, s in enumerate([(1.0, 0.0, 0.0), (0.0, 1.0, 0.0), (1.0, 1.0, 0.0)]):
        idx.spot(k)[:] = s
    return idx


def test_end_to_end_trimmed_refinement() -> None:
    with exact_lattice_indexer(RefinementStrategy.lsq(ConfigLsq(threshold_contraction=0.8, min_spots=2))) as idx:
        idx.index(1, 3)
        np.testing.assert_allclose(idx.output_cell(0), np.eye(3), atol=1e-9)
        assert idx.output_score(0) == pytest.approx(0.0, abs=1e-9)
        assert idx.refinement_errors() == {}


def test_end_to_end_reweighted_refinement() -> None:
    with exact_lattice_indexer(RefinementStrategy.ifme()) as idx:
        idx.index_async(1, 3)
        idx.wait_for()
        np.testing.assert_allclose(idx.output_cell(0), np.eye(3), atol=1e-9)
        assert idx.output_score(0) == pytest.approx(0.0, abs=1e-9)


def test_end_to_end_without_refinement() -> None:
    with exact_lattice_indexer(None) as idx:
        idx.index_async(1, 3)
        while not idx.is_ready():
            time.sleep(0.01)
        np.testing.assert_array_equal(idx.output_cell(0), np.eye(3))
        assert idx.output_score(0) == 0.0
