"""
Shared fixtures: a scriptable in-memory inference engine plus helpers that
build raw detector / landmark tensors.
"""
import math
import threading
import time
from typing import Callable, List, Optional, Sequence

import numpy as np
import pytest

from posedet.config import PipelineConfig
from posedet.detector import PersonDetector
from posedet.engine import InferenceEngine
from posedet.landmarks import LandmarkRunner
from posedet.pipeline import PoseDetector

DETECTOR_INPUT = (1, 640, 640, 3)
LANDMARK_INPUT = (1, 256, 256, 3)
LANDMARK_OUTPUTS = [(1, 195), (1, 1), (1, 256, 256, 1), (1, 64, 64, 39), (1, 117)]


def logit(p: float) -> float:
    return math.log(p / (1.0 - p))


class ConcurrencyProbe:
    """Counts engines running at the same time, across all instances."""

    def __init__(self):
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def enter(self):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)

    def exit(self):
        with self._lock:
            self.active -= 1


class FakeEngine(InferenceEngine):
    """InferenceEngine whose outputs come from `responder(inputs) -> [arrays]`."""

    def __init__(
        self,
        input_shapes: Sequence[tuple],
        output_shapes: Sequence[tuple],
        responder: Callable[[Sequence[np.ndarray]], List[np.ndarray]],
        probe: Optional[ConcurrencyProbe] = None,
        delay: float = 0.0,
    ):
        self._in = [tuple(s) for s in input_shapes]
        self._out = [tuple(s) for s in output_shapes]
        self.responder = responder
        self.probe = probe
        self.delay = delay
        self.calls = 0
        self.closed = False
        self.active = 0
        self.max_active = 0

    def load(self, model_path: str) -> None:
        pass

    def input_shapes(self):
        return list(self._in)

    def output_shapes(self):
        return list(self._out)

    def run(self, inputs, outputs) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        if self.probe:
            self.probe.enter()
        try:
            self.calls += 1
            if self.delay:
                time.sleep(self.delay)
            results = self.responder(inputs)
            for buf, res in zip(outputs, results):
                np.copyto(buf, np.asarray(res, dtype=np.float32).reshape(buf.shape))
        finally:
            if self.probe:
                self.probe.exit()
            self.active -= 1

    def close(self) -> None:
        self.closed = True


# ------------------------------------------------------------
# Tensor builders
# ------------------------------------------------------------

def yolo_output(boxes, n: int = 100, channels: int = 84, transposed: bool = True, objectness=None):
    """Raw YOLO tensor with the given (cx, cy, w, h, class_id, score) rows.

    Remaining rows get very negative logits. Returns [1, C, n] when
    transposed else [1, n, C].
    """
    rows = np.full((n, channels), -20.0, dtype=np.float32)
    rows[:, :4] = 0.0
    cls_offset = 4 if channels == 84 else 5
    for i, (cx, cy, w, h, cls, score) in enumerate(boxes):
        rows[i, :4] = (cx, cy, w, h)
        if channels == 84:
            rows[i, cls_offset + cls] = logit(score)
        else:
            obj = objectness if objectness is not None else 0.99
            rows[i, 4] = logit(obj)
            rows[i, cls_offset + cls] = logit(score / obj)
    out = rows.T if transposed else rows
    return out[None, ...]


def landmark_outputs(xy=(128.0, 128.0), z=0.0, vis_logit=5.0, presence_logit=5.0, score=0.9):
    lm = np.zeros((39, 5), dtype=np.float32)
    lm[:, 0] = xy[0]
    lm[:, 1] = xy[1]
    lm[:, 2] = z
    lm[:, 3] = vis_logit
    lm[:, 4] = presence_logit
    return [
        lm.reshape(1, 195),
        np.array([[logit(score)]], dtype=np.float32),
        np.zeros(LANDMARK_OUTPUTS[2], dtype=np.float32),
        np.zeros(LANDMARK_OUTPUTS[3], dtype=np.float32),
        np.zeros(LANDMARK_OUTPUTS[4], dtype=np.float32),
    ]


# ------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------

@pytest.fixture
def make_detector():
    """Build an initialized PersonDetector returning the given raw outputs."""
    created = []

    def _make(outputs, output_shapes=None):
        shapes = output_shapes or [np.asarray(o).shape for o in outputs]
        engine = FakeEngine([DETECTOR_INPUT], shapes, lambda _inputs: outputs)
        det = PersonDetector(lambda: engine)
        det.initialize()
        created.append(det)
        return det, engine

    yield _make
    for det in created:
        det.dispose()


@pytest.fixture
def make_runner():
    """Build an initialized LandmarkRunner around FakeEngines sharing a probe."""
    created = []

    def _make(responder=None, pool_size=1, delay=0.0, probe=None):
        responder = responder or (lambda _inputs: landmark_outputs())
        engines = []

        def factory():
            e = FakeEngine([LANDMARK_INPUT], LANDMARK_OUTPUTS, responder, probe=probe, delay=delay)
            engines.append(e)
            return e

        runner = LandmarkRunner(factory, pool_size=pool_size)
        runner.initialize()
        created.append(runner)
        return runner, engines

    yield _make
    for r in created:
        r.dispose()


@pytest.fixture
def make_pipeline():
    created = []

    def _make(det_outputs, lm_responder=None, pool_size=1, **config):
        det_engine = FakeEngine(
            [DETECTOR_INPUT], [np.asarray(o).shape for o in det_outputs], lambda _inputs: det_outputs
        )
        lm_responder = lm_responder or (lambda _inputs: landmark_outputs())
        lm_engines = []

        def lm_factory():
            e = FakeEngine([LANDMARK_INPUT], LANDMARK_OUTPUTS, lm_responder)
            lm_engines.append(e)
            return e

        cfg = PipelineConfig(pool_size=pool_size, **config)
        pipeline = PoseDetector(
            cfg,
            detector=PersonDetector(lambda: det_engine),
            landmark_runner=LandmarkRunner(lm_factory, pool_size=cfg.effective_pool_size),
        )
        pipeline.initialize()
        created.append(pipeline)
        return pipeline

    yield _make
    for p in created:
        p.dispose()


@pytest.fixture
def blank_image():
    return np.full((480, 640, 3), 40, dtype=np.uint8)
