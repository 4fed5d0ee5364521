"""Shared fixtures: a controllable stand-in for the asynchronous indexing engine."""

from __future__ import annotations

import numpy as np
import pytest

from indexer_config import ConfigPersistent, ConfigRuntime


class FakeHandle:
    def __init__(self, engine, output_view):
        self.engine = engine
        self.output = output_view
        self.done = False
        self.waits = 0

    def is_ready(self) -> bool:
        if self.engine.auto_complete:
            self.complete()
        return self.done

    def wait_for(self) -> None:
        self.waits += 1
        self.complete()

    def complete(self) -> None:
        if self.done:
            return
        if self.engine.error is not None:
            raise self.engine.error
        n = self.output.n_cells
        for j in range(n):
            cell = self.engine.cells[j % len(self.engine.cells)]
            self.output.cells[3 * j:3 * j + 3] = cell
        self.output.scores[:] = self.engine.score
        self.done = True


class FakeEngine:
    """Copies the submitted input cells (or preset cells) into the output on completion."""

    def __init__(self, cpers, cells=None, score=0.0, auto_complete=True, error=None):
        self.cpers = cpers
        self.preset = cells
        self.score = score
        self.auto_complete = auto_complete
        self.error = error
        self.submitted = []
        self.handles = []
        self.closed = 0
        self.cells = None

    def submit(self, input_view, output_view, crt):
        self.submitted.append((input_view, crt))
        if self.preset is not None:
            self.cells = [np.asarray(c, dtype=np.float64) for c in self.preset]
        else:
            self.cells = [np.array(c) for c in input_view.cells()]
        handle = FakeHandle(self, output_view)
        self.handles.append(handle)
        return handle

    def close(self) -> None:
        self.closed += 1


@pytest.fixture
def fake_engine():
    """Factory producing a FakeEngine factory; the created engine is kept on .engine."""

    class Factory:
        engine = None

        def __init__(self, **kwargs):
            self.kwargs = kwargs

        def __call__(self, cpers):
            Factory.engine = FakeEngine(cpers, **self.kwargs)
            return Factory.engine

    return Factory


@pytest.fixture
def cpers() -> ConfigPersistent:
    return ConfigPersistent(max_output_cells=2, max_input_cells=2, max_spots=8, num_candidate_vectors=1)


@pytest.fixture
def crt() -> ConfigRuntime:
    return ConfigRuntime(length_threshold=1e-3, triml=0.0, trimh=0.5, num_sample_points=4)
