"""
YOLO detector output decoding.

Export toolchains disagree on layout: some emit [1, C, N] (channels first),
others [1, N, C]. C is 84 (4 box + 80 class logits) or 85 when an explicit
objectness logit precedes the class logits. Box units are pixels or
normalized depending on the export as well; see normalize_box_scale.
"""
from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np

from posedet.errors import MalformedModelOutputError

MIN_CHANNELS = 84
OBJECTNESS_CHANNELS = 85
NUM_CLASSES = 80
# Median box width at or below this is taken to mean normalized coordinates.
NORMALIZED_WIDTH_MAX = 2.0


def sigmoid(x):
    return 1.0 / (1.0 + np.exp(-np.clip(x, -80.0, 80.0)))


def _as_2d(raw) -> np.ndarray:
    arr = np.asarray(raw, dtype=np.float64)
    if arr.ndim == 3:
        if arr.shape[0] != 1:
            raise MalformedModelOutputError(f"Unexpected output batch size: shape {arr.shape}")
        arr = arr[0]
    if arr.ndim != 2:
        raise MalformedModelOutputError(f"Unexpected output rank: shape {arr.shape}")
    return arr


def decode_outputs(outputs: Sequence) -> np.ndarray:
    """Orientation-normalize and concatenate raw tensors into [total_n, C]."""
    parts = []
    for raw in outputs:
        out2d = _as_2d(raw)
        if out2d.size == 0:
            continue
        rows, cols = out2d.shape
        # Channels-first export; N close to 84/85 makes this ambiguous.
        if rows < cols and rows in (MIN_CHANNELS, OBJECTNESS_CHANNELS):
            out2d = out2d.T
        parts.append(out2d)

    if not parts:
        raise MalformedModelOutputError("Unexpected output shape: no rows")
    channels = {p.shape[1] for p in parts}
    if len(channels) != 1:
        raise MalformedModelOutputError(f"Unexpected output shape: mixed channel counts {sorted(channels)}")
    out = np.concatenate(parts, axis=0)
    if out.shape[0] == 0 or out.shape[1] < MIN_CHANNELS:
        raise MalformedModelOutputError(
            f"Unexpected output shape {out.shape}: expected channels >= {MIN_CHANNELS}"
        )
    return out


def score_rows(rows: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Per-row (scores, class_ids, xywh) from a decoded [N, C] matrix."""
    channels = rows.shape[1]
    xywh = rows[:, :4].copy()
    if channels == MIN_CHANNELS:
        cls = sigmoid(rows[:, 4:])
        class_ids = np.argmax(cls, axis=1)
        scores = cls[np.arange(len(rows)), class_ids]
    else:
        obj = sigmoid(rows[:, 4])
        cls = sigmoid(rows[:, 5:5 + NUM_CLASSES])
        class_ids = np.argmax(cls, axis=1)
        scores = obj * cls[np.arange(len(rows)), class_ids]
    return scores, class_ids.astype(np.int64), xywh


def normalize_box_scale(xywh: np.ndarray, input_w: int, input_h: int) -> np.ndarray:
    """Scale normalized boxes to model-input pixels.

    Applied to the rows that survived confidence filtering only.
    """
    if len(xywh) == 0:
        return xywh
    if float(np.median(xywh[:, 2])) <= NORMALIZED_WIDTH_MAX:
        xywh = xywh * np.array([input_w, input_h, input_w, input_h], dtype=np.float64)
    return xywh
