"""Grayscale image operations used by the feature extractor."""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Any

import numpy as np
from scipy import ndimage

from .keypoint import KeyPoint

# Bresenham circle of radius 3 as (dx, dy), in contiguous order.
_CIRCLE = (
    (0, 3), (1, 3), (2, 2), (3, 1), (3, 0), (3, -1), (2, -2), (1, -3),
    (0, -3), (-1, -3), (-2, -2), (-3, -1), (-3, 0), (-3, 1), (-2, 2), (-1, 3),
)
_ARC = 9
_RADIUS = 3
_FAST_KEYPOINT_SIZE = 7.0


def _as_gray(image: Any) -> np.ndarray:
    array = np.asarray(image)
    if array.ndim != 2:
        raise ValueError("expected a single-channel 2D image")
    return array


def _cast_like(values: np.ndarray, dtype: np.dtype) -> np.ndarray:
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        return np.clip(np.rint(values), info.min, info.max).astype(dtype)
    return values.astype(dtype)


def fast_detect(image: Any, threshold: int, nonmax_suppression: bool = True) -> list[KeyPoint]:
    """Detect FAST-9 corners.

    A pixel is a corner when nine contiguous pixels of the surrounding
    16-pixel circle are all brighter than it by more than ``threshold`` or
    all darker by more than ``threshold``. Keypoints are listed row by row.
    """
    img = _as_gray(image).astype(np.int32)
    height, width = img.shape
    if height < 2 * _RADIUS + 1 or width < 2 * _RADIUS + 1:
        return []

    r = _RADIUS
    center = img[r:height - r, r:width - r]
    diffs = np.stack(
        [img[r + dy:height - r + dy, r + dx:width - r + dx] - center for dx, dy in _CIRCLE]
    )
    wrapped = np.concatenate([diffs, diffs[: _ARC - 1]])
    arcs = [wrapped[k:k + _ARC] for k in range(len(_CIRCLE))]
    bright = np.max([arc.min(axis=0) for arc in arcs], axis=0)
    dark = np.max([-arc.max(axis=0) for arc in arcs], axis=0)
    strength = np.maximum(bright, dark)
    corner = strength > threshold

    scores = np.zeros((height, width), dtype=np.int32)
    scores[r:height - r, r:width - r] = np.where(corner, strength - 1, 0)
    keep = np.zeros((height, width), dtype=bool)
    keep[r:height - r, r:width - r] = corner

    if nonmax_suppression:
        padded = np.pad(scores, 1)
        for dy in (-1, 0, 1):
            for dx in (-1, 0, 1):
                if dx == 0 and dy == 0:
                    continue
                neighbour = padded[1 + dy:1 + dy + height, 1 + dx:1 + dx + width]
                keep &= scores > neighbour

    ys, xs = np.nonzero(keep)
    return [
        KeyPoint(x=float(x), y=float(y), size=_FAST_KEYPOINT_SIZE, response=float(scores[y, x]))
        for y, x in zip(ys, xs)
    ]


def _gaussian_kernel(size: int, sigma: float) -> np.ndarray:
    if size <= 0 or size % 2 == 0:
        raise ValueError("kernel size must be a positive odd number")
    if sigma <= 0:
        sigma = 0.3 * ((size - 1) * 0.5 - 1) + 0.8
    offsets = np.arange(size) - (size - 1) / 2
    kernel = np.exp(-(offsets**2) / (2 * sigma * sigma))
    return kernel / kernel.sum()


def gaussian_blur(image: Any, ksize: int | Sequence[int], sigma: float) -> np.ndarray:
    """Separable Gaussian blur with reflect-101 borders, keeping the dtype.

    ``ksize`` is an odd size or a ``(width, height)`` pair. A non-positive
    ``sigma`` is derived from the kernel size.
    """
    img = _as_gray(image)
    if isinstance(ksize, int):
        kx = ky = ksize
    else:
        kx, ky = ksize
    kernel_x = _gaussian_kernel(int(kx), sigma)
    kernel_y = _gaussian_kernel(int(ky), sigma)
    values = img.astype(np.float64)
    values = ndimage.correlate1d(values, kernel_x, axis=1, mode="mirror")
    values = ndimage.correlate1d(values, kernel_y, axis=0, mode="mirror")
    return _cast_like(values, img.dtype)


def _axis_samples(src: int, dst: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    scale = src / dst
    pos = (np.arange(dst) + 0.5) * scale - 0.5
    low = np.floor(pos).astype(int)
    frac = pos - low
    below = low < 0
    low[below] = 0
    frac[below] = 0.0
    above = low >= src - 1
    low[above] = src - 1
    frac[above] = 0.0
    high = np.minimum(low + 1, src - 1)
    return low, high, frac


def resize_linear(image: Any, width: int, height: int) -> np.ndarray:
    """Bilinear resize with pixel-centre alignment, keeping the dtype."""
    img = _as_gray(image)
    if width <= 0 or height <= 0:
        raise ValueError("target size must be positive")
    if img.size == 0:
        raise ValueError("cannot resize an empty image")
    values = img.astype(np.float64)
    y0, y1, fy = _axis_samples(img.shape[0], height)
    x0, x1, fx = _axis_samples(img.shape[1], width)
    rows = values[y0] * (1 - fy)[:, None] + values[y1] * fy[:, None]
    result = rows[:, x0] * (1 - fx)[None, :] + rows[:, x1] * fx[None, :]
    return _cast_like(result, img.dtype)


def pad_reflect_101(image: Any, pad: int) -> np.ndarray:
    """Pad on every side by mirroring around the edge pixels (``dcb|abcd|cba``)."""
    img = _as_gray(image)
    if pad < 0:
        raise ValueError("pad must not be negative")
    if pad == 0:
        return img.copy()
    if min(img.shape) < 2:
        return np.pad(img, pad, mode="edge")
    if pad >= min(img.shape) and math.isfinite(pad):
        return np.pad(img, pad, mode="reflect")
    return np.pad(img, pad, mode="reflect")