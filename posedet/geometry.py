from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np

from posedet.types import BoundingBox, LetterboxTransform

Box = Tuple[float, float, float, float]

# ------------------------------------------------------------
# Letterbox
# ------------------------------------------------------------

def letterbox_plan(src_w: int, src_h: int, dst_w: int, dst_h: int) -> LetterboxTransform:
    """Aspect-preserving fit of (src_w, src_h) into (dst_w, dst_h).

    Padding is split with integer division; the remainder goes to the
    right/bottom edge (see letterbox_padding).
    """
    if src_w <= 0 or src_h <= 0:
        raise ValueError(f"Source image must be non-empty, got {src_w}x{src_h}")
    if dst_w <= 0 or dst_h <= 0:
        raise ValueError(f"Target size must be positive, got {dst_w}x{dst_h}")
    ratio = min(dst_w / src_w, dst_h / src_h)
    new_w, new_h = scaled_size(src_w, src_h, ratio)
    return LetterboxTransform(
        ratio=ratio,
        pad_left=(dst_w - new_w) // 2,
        pad_top=(dst_h - new_h) // 2,
    )


def scaled_size(src_w: int, src_h: int, ratio: float) -> Tuple[int, int]:
    # Python's round() is banker's rounding; the resize must match the plan, so
    # both go through here. Thin images keep at least one pixel per side.
    new_w = max(1, int(np.floor(src_w * ratio + 0.5)))
    new_h = max(1, int(np.floor(src_h * ratio + 0.5)))
    return new_w, new_h


def letterbox_padding(
    plan: LetterboxTransform, src_w: int, src_h: int, dst_w: int, dst_h: int
) -> Tuple[int, int, int, int]:
    """Returns (top, bottom, left, right) border sizes for plan."""
    new_w, new_h = scaled_size(src_w, src_h, plan.ratio)
    right = dst_w - new_w - plan.pad_left
    bottom = dst_h - new_h - plan.pad_top
    return plan.pad_top, bottom, plan.pad_left, right


def letterbox_point(x: float, y: float, plan: LetterboxTransform) -> Tuple[float, float]:
    return x * plan.ratio + plan.pad_left, y * plan.ratio + plan.pad_top


def unletterbox_point(x: float, y: float, plan: LetterboxTransform) -> Tuple[float, float]:
    return (x - plan.pad_left) / plan.ratio, (y - plan.pad_top) / plan.ratio


def letterbox_box(box: Sequence[float], plan: LetterboxTransform) -> Box:
    x1, y1 = letterbox_point(box[0], box[1], plan)
    x2, y2 = letterbox_point(box[2], box[3], plan)
    return x1, y1, x2, y2


def unletterbox_box(box: Sequence[float], plan: LetterboxTransform) -> Box:
    x1, y1 = unletterbox_point(box[0], box[1], plan)
    x2, y2 = unletterbox_point(box[2], box[3], plan)
    return x1, y1, x2, y2


# ------------------------------------------------------------
# Box helpers
# ------------------------------------------------------------

def xywh_to_xyxy(xywh):
    """(cx, cy, w, h) -> (x1, y1, x2, y2). Accepts a 4-sequence or an (N,4) array."""
    arr = np.asarray(xywh, dtype=np.float64)
    if arr.ndim == 1:
        cx, cy, w, h = arr.tolist()
        return cx - w / 2.0, cy - h / 2.0, cx + w / 2.0, cy + h / 2.0
    out = np.empty_like(arr)
    half_w = arr[:, 2] / 2.0
    half_h = arr[:, 3] / 2.0
    out[:, 0] = arr[:, 0] - half_w
    out[:, 1] = arr[:, 1] - half_h
    out[:, 2] = arr[:, 0] + half_w
    out[:, 3] = arr[:, 1] + half_h
    return out


def clamp_box(box: Sequence[float], width: float, height: float) -> Box:
    x1 = min(max(float(box[0]), 0.0), float(width))
    y1 = min(max(float(box[1]), 0.0), float(height))
    x2 = min(max(float(box[2]), 0.0), float(width))
    y2 = min(max(float(box[3]), 0.0), float(height))
    return x1, y1, x2, y2


def box_area(box: Sequence[float]) -> float:
    return max(0.0, box[2] - box[0]) * max(0.0, box[3] - box[1])


def iou(a: Sequence[float], b: Sequence[float], eps: float = 1e-7) -> float:
    xx1 = max(a[0], b[0])
    yy1 = max(a[1], b[1])
    xx2 = min(a[2], b[2])
    yy2 = min(a[3], b[3])
    inter = max(0.0, xx2 - xx1) * max(0.0, yy2 - yy1)
    return inter / (box_area(a) + box_area(b) - inter + eps)


def square_crop_region(bbox: BoundingBox, margin: float = 1.25) -> Tuple[float, float, float]:
    """Centre and side of the square landmark crop around bbox."""
    cx, cy = bbox.center
    side = max(bbox.width, bbox.height) * margin
    return cx, cy, side
