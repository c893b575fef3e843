"""Two-view geometry used when creating new map points between keyframes."""

from __future__ import annotations

import math
from collections.abc import Iterable
from typing import Any, NamedTuple

import numpy as np

CHI2_MONO = 5.991
CHI2_STEREO = 7.8
MAX_COS_PARALLAX = 0.9998
SCALE_RATIO_FACTOR = 1.5


class Triangulated(NamedTuple):
    """A successfully triangulated match between two keyframes."""

    index1: int
    index2: int
    position: np.ndarray


def skew_symmetric(v: Any) -> np.ndarray:
    """The 3x3 matrix ``[v]x`` such that ``[v]x @ w == cross(v, w)``."""
    x, y, z = np.asarray(v, dtype=float).reshape(3)
    return np.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def compute_f12(keyframe1: Any, keyframe2: Any) -> np.ndarray:
    """Fundamental matrix mapping pixels of ``keyframe2`` to epipolar lines in ``keyframe1``."""
    r1w = keyframe1.rotation
    t1w = keyframe1.translation
    r2w = keyframe2.rotation
    t2w = keyframe2.translation

    r12 = r1w @ r2w.T
    t12 = -r1w @ r2w.T @ t2w + t1w

    k1 = np.asarray(keyframe1.K, dtype=float)
    k2 = np.asarray(keyframe2.K, dtype=float)
    return np.linalg.inv(k1.T) @ skew_symmetric(t12) @ r12 @ np.linalg.inv(k2)


def linear_triangulation(xn1: Any, xn2: Any, tcw1: Any, tcw2: Any) -> np.ndarray | None:
    """Triangulate from normalised image coordinates and two ``[R|t]`` projections.

    Returns ``None`` when the solution lies at infinity.
    """
    p1 = np.asarray(tcw1, dtype=float)[:3, :4]
    p2 = np.asarray(tcw2, dtype=float)[:3, :4]
    n1 = np.asarray(xn1, dtype=float).ravel()
    n2 = np.asarray(xn2, dtype=float).ravel()

    a = np.vstack(
        [
            n1[0] * p1[2] - p1[0],
            n1[1] * p1[2] - p1[1],
            n2[0] * p2[2] - p2[0],
            n2[1] * p2[2] - p2[1],
        ]
    )
    _, _, vt = np.linalg.svd(a)
    homogeneous = vt[3]
    if homogeneous[3] == 0:
        return None
    return homogeneous[:3] / homogeneous[3]


def _normalised(keyframe: Any, kp: Any) -> np.ndarray:
    return np.array(
        [(kp.x - keyframe.cx) * keyframe.invfx, (kp.y - keyframe.cy) * keyframe.invfy, 1.0]
    )


def _reprojects(
    keyframe: Any,
    rcw: np.ndarray,
    tcw: np.ndarray,
    point: np.ndarray,
    kp: Any,
    u_right: float,
    bf: float,
) -> bool:
    """Whether ``point`` reprojects onto ``kp`` within the chi-square bound."""
    x, y, z = rcw @ point + tcw
    invz = 1.0 / z
    u = keyframe.fx * x * invz + keyframe.cx
    v = keyframe.fy * y * invz + keyframe.cy
    error = (u - kp.x) ** 2 + (v - kp.y) ** 2
    sigma2 = keyframe.level_sigma2[kp.octave]
    if u_right < 0:
        return error <= CHI2_MONO * sigma2
    u_r = u - bf * invz
    return error + (u_r - u_right) ** 2 <= CHI2_STEREO * sigma2


def triangulate_matches(
    current: Any, neighbour: Any, matches: Iterable[tuple[int, int]]
) -> list[Triangulated]:
    """Triangulate feature matches between ``current`` and ``neighbour``.

    Each match is a pair of feature indices. A match is kept when it has
    enough parallax (or a stereo measurement), lies in front of both
    cameras, reprojects within the error bounds in both keyframes, and has
    a distance ratio consistent with the pyramid levels of the features.
    """
    rcw1 = current.rotation
    tcw1 = current.translation
    rwc1 = rcw1.T
    proj1 = np.hstack([rcw1, tcw1[:, None]])
    ow1 = current.camera_center

    rcw2 = neighbour.rotation
    tcw2 = neighbour.translation
    rwc2 = rcw2.T
    proj2 = np.hstack([rcw2, tcw2[:, None]])
    ow2 = neighbour.camera_center

    ratio_factor = SCALE_RATIO_FACTOR * current.scale_factor
    results: list[Triangulated] = []

    for idx1, idx2 in matches:
        kp1 = current.keys_un[idx1]
        ur1 = current.u_right[idx1]
        stereo1 = ur1 >= 0

        kp2 = neighbour.keys_un[idx2]
        ur2 = neighbour.u_right[idx2]
        stereo2 = ur2 >= 0

        xn1 = _normalised(current, kp1)
        xn2 = _normalised(neighbour, kp2)
        ray1 = rwc1 @ xn1
        ray2 = rwc2 @ xn2
        cos_rays = float(ray1 @ ray2 / (np.linalg.norm(ray1) * np.linalg.norm(ray2)))

        cos_stereo1 = cos_stereo2 = cos_rays + 1
        if stereo1:
            cos_stereo1 = math.cos(2 * math.atan2(current.baseline / 2, current.depth[idx1]))
        elif stereo2:
            cos_stereo2 = math.cos(2 * math.atan2(neighbour.baseline / 2, neighbour.depth[idx2]))
        cos_stereo = min(cos_stereo1, cos_stereo2)

        if (
            cos_rays < cos_stereo
            and cos_rays > 0
            and (stereo1 or stereo2 or cos_rays < MAX_COS_PARALLAX)
        ):
            x3d = linear_triangulation(xn1, xn2, proj1, proj2)
        elif stereo1 and cos_stereo1 < cos_stereo2:
            x3d = current.unproject_stereo(idx1)
        elif stereo2 and cos_stereo2 < cos_stereo1:
            x3d = neighbour.unproject_stereo(idx2)
        else:
            continue  # no stereo and too little parallax
        if x3d is None:
            continue

        if rcw1[2] @ x3d + tcw1[2] <= 0:
            continue
        if rcw2[2] @ x3d + tcw2[2] <= 0:
            continue

        # The stereo term of both keyframes uses the current keyframe's bf.
        if not _reprojects(current, rcw1, tcw1, x3d, kp1, ur1, current.bf):
            continue
        if not _reprojects(neighbour, rcw2, tcw2, x3d, kp2, ur2, current.bf):
            continue

        dist1 = float(np.linalg.norm(x3d - ow1))
        dist2 = float(np.linalg.norm(x3d - ow2))
        if dist1 == 0 or dist2 == 0:
            continue
        ratio_dist = dist2 / dist1
        ratio_octave = current.scale_factors[kp1.octave] / neighbour.scale_factors[kp2.octave]
        if ratio_dist * ratio_factor < ratio_octave or ratio_dist > ratio_octave * ratio_factor:
            continue

        results.append(Triangulated(idx1, idx2, np.asarray(x3d, dtype=float)))

    return results