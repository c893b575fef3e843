"""Keypoint orientation and oriented binary descriptors."""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from typing import Any

import numpy as np

DESCRIPTOR_BYTES = 32
_PATTERN_POINTS = DESCRIPTOR_BYTES * 8 * 2
_FACTOR_PI = np.float32(math.pi / 180.0)


def _round(value: float) -> int:
    return int(round(float(value)))


def ic_angle(image: Any, x: float, y: float, u_max: Sequence[int]) -> float:
    """Orientation in degrees, in ``[0, 360)``, of the intensity centroid around ``(x, y)``.

    The centroid is taken over the circular patch whose row half-widths are
    given by ``u_max``.
    """
    img = np.asarray(image)
    half = len(u_max) - 1
    cx, cy = _round(x), _round(y)
    height, width = img.shape[:2]
    if cx - half < 0 or cx + half >= width or cy - half < 0 or cy + half >= height:
        raise ValueError("patch around the keypoint exceeds the image")

    us = np.arange(-half, half + 1, dtype=np.int64)
    m_10 = int(us @ img[cy, cx - half:cx + half + 1].astype(np.int64))
    m_01 = 0
    for v in range(1, half + 1):
        d = int(u_max[v])
        u = np.arange(-d, d + 1, dtype=np.int64)
        plus = img[cy + v, cx - d:cx + d + 1].astype(np.int64)
        minus = img[cy - v, cx - d:cx + d + 1].astype(np.int64)
        m_01 += v * int((plus - minus).sum())
        m_10 += int(u @ (plus + minus))

    angle = math.degrees(math.atan2(m_01, m_10)) % 360.0
    return 0.0 if angle >= 360.0 else angle


def orb_descriptor(keypoint: Any, image: Any, pattern: Sequence[tuple[int, int]]) -> np.ndarray:
    """The 32-byte descriptor of ``keypoint``, with the pattern rotated by its angle.

    Bit ``j`` of each byte is set when the first point of pair ``j`` is darker
    than the second.
    """
    img = np.asarray(image)
    points = np.asarray(pattern, dtype=np.float32).reshape(-1, 2)
    if len(points) != _PATTERN_POINTS:
        raise ValueError(f"pattern must hold {_PATTERN_POINTS} points")

    angle = np.float32(keypoint.angle) * _FACTOR_PI
    a = np.float32(math.cos(angle))
    b = np.float32(math.sin(angle))
    cx, cy = _round(keypoint.x), _round(keypoint.y)

    px, py = points[:, 0], points[:, 1]
    rows = cy + np.rint(px * b + py * a).astype(np.int64)
    cols = cx + np.rint(px * a - py * b).astype(np.int64)
    height, width = img.shape[:2]
    if rows.min() < 0 or cols.min() < 0 or rows.max() >= height or cols.max() >= width:
        raise ValueError("sampling pattern exceeds the image")

    values = img[rows, cols].astype(np.int32)
    bits = (values[0::2] < values[1::2]).reshape(DESCRIPTOR_BYTES, 8)
    return np.packbits(bits, axis=1, bitorder="little").ravel()


def compute_orientation(image: Any, keypoints: Iterable[Any], u_max: Sequence[int]) -> None:
    """Set the ``angle`` of every keypoint from its intensity centroid."""
    for keypoint in keypoints:
        keypoint.angle = ic_angle(image, keypoint.x, keypoint.y, u_max)


def compute_descriptors(
    image: Any, keypoints: Sequence[Any], pattern: Sequence[tuple[int, int]]
) -> np.ndarray:
    """One descriptor row per keypoint, as a ``(n, 32)`` uint8 array."""
    descriptors = np.zeros((len(keypoints), DESCRIPTOR_BYTES), dtype=np.uint8)
    for row, keypoint in zip(descriptors, keypoints):
        row[:] = orb_descriptor(keypoint, image, pattern)
    return descriptors