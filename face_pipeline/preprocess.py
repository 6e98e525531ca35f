"""
Letterbox Preprocessing
=======================

Resizes an arbitrary image into the detector's fixed square input while
preserving aspect ratio, and records the scale/padding needed to map
detector coordinates back onto the original image.

    scale = min(T / width, T / height)
    w', h' = round(scale * width), round(scale * height)
    pad_x, pad_y = floor((T - w') / 2), floor((T - h') / 2)

    canvas_xy = original_xy * scale + pad
    original_xy = (canvas_xy - pad) / scale

The canvas is a pure function of the input pixels and T, so repeated runs
on the same image produce identical tensors.
"""

import math
from dataclasses import dataclass
from typing import Sequence, Tuple

import cv2
import numpy as np

from .variants import DetectorVariant


@dataclass(frozen=True)
class Letterbox:
    """Scale and padding applied to place an image on the square canvas."""

    scale: float
    pad_x: int
    pad_y: int
    width: int
    height: int
    target: int

    def to_canvas(self, points: np.ndarray) -> np.ndarray:
        """Map (..., 2) original-image points into canvas coordinates."""
        pts = np.asarray(points, dtype=np.float32)
        offset = np.array([self.pad_x, self.pad_y], dtype=np.float32)
        return pts * self.scale + offset

    def to_original(self, points: np.ndarray) -> np.ndarray:
        """Map (..., 2) canvas points back into original-image coordinates."""
        pts = np.asarray(points, dtype=np.float32)
        offset = np.array([self.pad_x, self.pad_y], dtype=np.float32)
        return (pts - offset) / self.scale

    def box_to_original(self, boxes: np.ndarray, clamp: bool = True) -> np.ndarray:
        """Map (N, 4) canvas xyxy boxes into original xyxy, clamped to the image."""
        boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
        x1y1 = self.to_original(boxes[:, 0:2])
        x2y2 = self.to_original(boxes[:, 2:4])
        out = np.concatenate([np.minimum(x1y1, x2y2), np.maximum(x1y1, x2y2)], axis=1)
        if clamp:
            out[:, 0::2] = np.clip(out[:, 0::2], 0.0, float(self.width))
            out[:, 1::2] = np.clip(out[:, 1::2], 0.0, float(self.height))
        return out


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def ensure_bgr(image: np.ndarray) -> np.ndarray:
    """Return a 3-channel uint8 BGR view of a gray, BGR or BGRA image."""
    if image is None or image.size == 0:
        raise ValueError("Empty image")
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.ndim == 3 and image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    if image.ndim == 3 and image.shape[2] == 3:
        return image
    raise ValueError(f"Unsupported image shape: {image.shape}")


def compute_letterbox(width: int, height: int, target: int) -> Letterbox:
    """Compute scale and padding for a ``width x height`` image."""
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image size: {width}x{height}")
    scale = min(target / float(width), target / float(height))
    new_w = max(1, _round_half_up(width * scale))
    new_h = max(1, _round_half_up(height * scale))
    pad_x = (target - new_w) // 2
    pad_y = (target - new_h) // 2
    return Letterbox(scale=scale, pad_x=pad_x, pad_y=pad_y, width=width, height=height, target=target)


def letterbox(image: np.ndarray, target: int, pad_value: int = 0) -> Tuple[np.ndarray, Letterbox]:
    """
    Place ``image`` on a ``target x target`` canvas.

    Args:
        image: BGR image (H, W, 3)
        target: Canvas side length in pixels
        pad_value: Fill value for the padding

    Returns:
        Tuple of (uint8 canvas, Letterbox transform)
    """
    image = ensure_bgr(image)
    height, width = image.shape[:2]
    lb = compute_letterbox(width, height, target)

    new_w = max(1, _round_half_up(width * lb.scale))
    new_h = max(1, _round_half_up(height * lb.scale))
    interpolation = cv2.INTER_AREA if lb.scale < 1.0 else cv2.INTER_LINEAR
    resized = cv2.resize(image, (new_w, new_h), interpolation=interpolation)

    canvas = np.full((target, target, 3), pad_value, dtype=np.uint8)
    canvas[lb.pad_y:lb.pad_y + new_h, lb.pad_x:lb.pad_x + new_w] = resized
    return canvas, lb


def to_blob(canvas: np.ndarray, variant: DetectorVariant) -> np.ndarray:
    """Normalize a BGR canvas into the (1, 3, T, T) float32 detector input."""
    img = canvas[:, :, ::-1] if variant.swap_rb else canvas
    blob = (img.astype(np.float32) - variant.mean) / variant.std
    return np.ascontiguousarray(blob.transpose(2, 0, 1)[np.newaxis, ...])


def normalize_crop(
    crop: np.ndarray,
    size: Tuple[int, int],
    mean: Sequence[float],
    std: Sequence[float],
    swap_rb: bool = True,
) -> np.ndarray:
    """
    Resize a BGR crop and normalize it into a (1, 3, H, W) float32 tensor.

    Args:
        crop: BGR crop
        size: Output size (width, height)
        mean: Per-channel mean, in the output channel order
        std: Per-channel std, in the output channel order
        swap_rb: Convert BGR to RGB before normalizing
    """
    if crop.shape[1] != size[0] or crop.shape[0] != size[1]:
        crop = cv2.resize(crop, size, interpolation=cv2.INTER_LINEAR)
    img = crop[:, :, ::-1] if swap_rb else crop
    img = (img.astype(np.float32) - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    return np.ascontiguousarray(img.transpose(2, 0, 1)[np.newaxis, ...])
