from __future__ import annotations

import io
import os
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image as PILImage
from PIL import UnidentifiedImageError

from posedet.errors import ImageDecodeError
from posedet.geometry import letterbox_padding, letterbox_plan, scaled_size
from posedet.types import BoundingBox, ChannelOrder, Image, LetterboxTransform

PAD_VALUE = 114

# ------------------------------------------------------------
# Decoding
# ------------------------------------------------------------

def decode_image(data: bytes) -> Image:
    try:
        img = PILImage.open(io.BytesIO(data)).convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise ImageDecodeError(f"Unsupported or corrupt image: {e}") from e
    return Image(np.array(img), ChannelOrder.RGB)


def load_image(path: str) -> Image:
    if not os.path.exists(path):
        raise FileNotFoundError(path)
    with open(path, "rb") as f:
        return decode_image(f.read())


# ------------------------------------------------------------
# Resizing / cropping
# ------------------------------------------------------------

def letterbox_image(
    img_rgb: np.ndarray, dst_w: int, dst_h: int, pad_value: int = PAD_VALUE
) -> Tuple[np.ndarray, LetterboxTransform]:
    """Resize keeping aspect ratio, then pad to dst with a constant gray border."""
    h, w = img_rgb.shape[:2]
    plan = letterbox_plan(w, h, dst_w, dst_h)
    new_w, new_h = scaled_size(w, h, plan.ratio)
    resized = cv2.resize(img_rgb, (new_w, new_h), interpolation=cv2.INTER_LINEAR)
    top, bottom, left, right = letterbox_padding(plan, w, h, dst_w, dst_h)
    padded = cv2.copyMakeBorder(
        resized, top, bottom, left, right,
        cv2.BORDER_CONSTANT, value=(pad_value, pad_value, pad_value),
    )
    return padded, plan


def extract_aligned_square(
    img_rgb: np.ndarray, cx: float, cy: float, side: float, pad_value: int = PAD_VALUE
) -> Optional[Tuple[np.ndarray, float, float, int]]:
    """Square window of `side` pixels centred on (cx, cy).

    Regions outside the image are filled with pad_value. Returns
    (square, origin_x, origin_y, side_px) or None for an empty window.
    """
    side_px = int(np.floor(side + 0.5))
    if side_px <= 0:
        return None
    origin_x = cx - side_px / 2.0
    origin_y = cy - side_px / 2.0
    m = np.float32([[1.0, 0.0, -origin_x], [0.0, 1.0, -origin_y]])
    square = cv2.warpAffine(
        img_rgb, m, (side_px, side_px),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(pad_value, pad_value, pad_value),
    )
    return square, origin_x, origin_y, side_px


def crop_box(img_rgb: np.ndarray, bbox: BoundingBox) -> Tuple[np.ndarray, int, int]:
    """Integer crop of bbox (clamped, at least 1x1). Returns (crop, x1, y1)."""
    h, w = img_rgb.shape[:2]
    x1 = int(min(max(bbox.left, 0.0), w - 1))
    y1 = int(min(max(bbox.top, 0.0), h - 1))
    x2 = int(min(max(bbox.right, 0.0), w))
    y2 = int(min(max(bbox.bottom, 0.0), h))
    x2 = max(x2, x1 + 1)
    y2 = max(y2, y1 + 1)
    return img_rgb[y1:y2, x1:x2], x1, y1


def resize_square(img_rgb: np.ndarray, size: int) -> np.ndarray:
    return cv2.resize(img_rgb, (size, size), interpolation=cv2.INTER_LINEAR)


# ------------------------------------------------------------
# Tensor conversion
# ------------------------------------------------------------

def to_input_tensor(img_rgb: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
    """HxWx3 uint8 RGB -> [1,H,W,3] float32 in [0,1], written into `out` if given."""
    h, w = img_rgb.shape[:2]
    if out is None:
        out = np.empty((1, h, w, 3), dtype=np.float32)
    np.multiply(img_rgb, 1.0 / 255.0, out=out[0], casting="unsafe")
    return out
