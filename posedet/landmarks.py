"""
Stage 2: BlazePose landmark model.

decode_landmarks() turns raw model outputs into normalized keypoints.
LandmarkRunner keeps a fixed pool of engine instances so several person
crops can be processed in parallel without sharing an interpreter.
"""
from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

import numpy as np

from posedet.config import MAX_POOL_SIZE
from posedet.decoder import sigmoid
from posedet.engine import EngineFactory, InferenceEngine, allocate_outputs
from posedet.errors import InferenceError, InvalidStateError, MalformedModelOutputError
from posedet.imaging import resize_square, to_input_tensor
from posedet.types import NUM_LANDMARKS, Landmark, LandmarkType, PoseLandmarks

logger = logging.getLogger(__name__)

LANDMARK_INPUT_SIZE = 256
VALUES_PER_LANDMARK = 5  # x, y, z, visibility logit, presence logit
# 39 rows (33 body + 6 auxiliary) in the full output, 33 in trimmed exports.
LANDMARK_TENSOR_SIZES = (195, NUM_LANDMARKS * VALUES_PER_LANDMARK)


def _clamp01(v: float) -> float:
    if np.isnan(v):
        return 0.0
    return 0.0 if v < 0.0 else (1.0 if v > 1.0 else float(v))


def decode_landmarks(landmarks_flat, score_logit, input_size: int = LANDMARK_INPUT_SIZE) -> PoseLandmarks:
    """Raw landmark tensors -> 33 landmarks with x/y in [0,1] of the crop.

    z is passed through unscaled; visibility = sigmoid(vis) * sigmoid(presence).
    """
    raw = np.asarray(landmarks_flat, dtype=np.float64).reshape(-1)
    if raw.size < NUM_LANDMARKS * VALUES_PER_LANDMARK:
        raise MalformedModelOutputError(
            f"Landmark tensor has {raw.size} values, expected >= {NUM_LANDMARKS * VALUES_PER_LANDMARK}"
        )
    logit = np.asarray(score_logit, dtype=np.float64).reshape(-1)
    if logit.size < 1:
        raise MalformedModelOutputError("Landmark score tensor is empty")

    score = float(sigmoid(logit[0]))
    pts = raw[: NUM_LANDMARKS * VALUES_PER_LANDMARK].reshape(NUM_LANDMARKS, VALUES_PER_LANDMARK)
    vis = sigmoid(pts[:, 3]) * sigmoid(pts[:, 4])

    lms: List[Landmark] = []
    for i in range(NUM_LANDMARKS):
        lms.append(
            Landmark(
                type=LandmarkType(i),
                x=_clamp01(pts[i, 0] / input_size),
                y=_clamp01(pts[i, 1] / input_size),
                z=float(pts[i, 2]),
                visibility=_clamp01(vis[i]),
            )
        )
    return PoseLandmarks(landmarks=lms, score=score)


# ------------------------------------------------------------
# Pool
# ------------------------------------------------------------
class _FifoLock:
    """Mutex that grants ownership in arrival order."""

    def __init__(self):
        self._cond = threading.Condition()
        self._waiters: deque = deque()
        self._held = False

    def __enter__(self):
        me = object()
        with self._cond:
            self._waiters.append(me)
            while self._held or self._waiters[0] is not me:
                self._cond.wait()
            self._waiters.popleft()
            self._held = True
        return self

    def __exit__(self, *exc):
        with self._cond:
            self._held = False
            self._cond.notify_all()
        return False


class _PoolSlot:
    """One engine plus the buffers it exclusively owns."""

    def __init__(self, index: int, engine: InferenceEngine, input_size: int):
        self.index = index
        self.engine = engine
        self.lock = _FifoLock()
        self.input_buffer = np.zeros((1, input_size, input_size, 3), dtype=np.float32)
        # landmarks, score, mask, heatmap, world; only the first two are read.
        self.outputs = allocate_outputs(engine.output_shapes())
        self.landmarks_idx, self.score_idx = _locate_outputs(self.outputs)


def _locate_outputs(outputs: Sequence[np.ndarray]):
    # Identify outputs by element count; fall back to positional order.
    sizes = [int(o.size) for o in outputs]
    lmk = next((i for i, s in enumerate(sizes) if s in LANDMARK_TENSOR_SIZES), 0)
    score = next((i for i, s in enumerate(sizes) if s == 1), 1 if len(outputs) > 1 else 0)
    return lmk, score


class LandmarkRunner:
    """Pooled landmark inference.

    Calls are assigned to slots round-robin. Each slot runs one inference at
    a time; calls that land on a busy slot queue behind it.
    """

    def __init__(self, engine_factory: EngineFactory, pool_size: int = 1, input_size: int = LANDMARK_INPUT_SIZE):
        self._factory = engine_factory
        self._pool_size = min(max(int(pool_size), 1), MAX_POOL_SIZE)
        self.input_size = input_size
        self._slots: List[_PoolSlot] = []
        self._counter = itertools.count()
        self._counter_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def pool_size(self) -> int:
        return self._pool_size

    @property
    def is_initialized(self) -> bool:
        return bool(self._slots)

    def initialize(self) -> None:
        if self._slots:
            self.dispose()
        slots = []
        try:
            for i in range(self._pool_size):
                slots.append(_PoolSlot(i, self._factory(), self.input_size))
        except Exception:
            for s in slots:
                s.engine.close()
            raise
        self._slots = slots
        self._counter = itertools.count()
        self._executor = ThreadPoolExecutor(max_workers=self._pool_size, thread_name_prefix="landmark")
        logger.info("Landmark runner ready (pool size %d)", self._pool_size)

    def dispose(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        for slot in self._slots:
            slot.engine.close()
        self._slots = []

    def _next_slot(self) -> _PoolSlot:
        with self._counter_lock:
            idx = next(self._counter) % len(self._slots)
        return self._slots[idx]

    def run(self, crop_rgb: np.ndarray) -> PoseLandmarks:
        """Run the landmark model on one RGB crop (resized to the input size if needed)."""
        if not self._slots:
            raise InvalidStateError("LandmarkRunner not initialized. Call initialize() first.")
        if crop_rgb.shape[0] != self.input_size or crop_rgb.shape[1] != self.input_size:
            crop_rgb = resize_square(crop_rgb, self.input_size)

        slot = self._next_slot()
        with slot.lock:
            to_input_tensor(crop_rgb, out=slot.input_buffer)
            try:
                slot.engine.run([slot.input_buffer], slot.outputs)
            except Exception as e:
                raise InferenceError(f"Landmark inference failed on slot {slot.index}: {e}") from e
            return decode_landmarks(
                slot.outputs[slot.landmarks_idx],
                slot.outputs[slot.score_idx],
                input_size=self.input_size,
            )

    def _run_guarded(self, index: int, crop_rgb: np.ndarray, cancel: Optional[threading.Event]):
        if cancel is not None and cancel.is_set():
            return None
        try:
            return self.run(crop_rgb)
        except InvalidStateError:
            raise
        except Exception as e:
            logger.warning("Landmark extraction failed for crop %d: %s", index, e, exc_info=True)
            return None

    def run_batch(
        self, crops: Sequence[np.ndarray], cancel: Optional[threading.Event] = None
    ) -> List[Optional[PoseLandmarks]]:
        """Run every crop concurrently; result i belongs to crop i.

        A failing crop yields None instead of aborting the batch. Crops that
        have not started when `cancel` is set also yield None.
        """
        if not self._slots or self._executor is None:
            raise InvalidStateError("LandmarkRunner not initialized. Call initialize() first.")
        futures = [self._executor.submit(self._run_guarded, i, c, cancel) for i, c in enumerate(crops)]
        return [f.result() for f in futures]
