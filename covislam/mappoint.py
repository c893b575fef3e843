"""Map points: triangulated 3D landmarks observed by keyframes."""

from __future__ import annotations

import itertools
import math
import threading
from itertools import combinations
from typing import Any

import numpy as np

_point_ids = itertools.count()


def descriptor_distance(a: Any, b: Any) -> int:
    """Hamming distance between two binary descriptors."""
    left = _as_bytes_array(a)
    right = _as_bytes_array(b)
    return int(np.unpackbits(np.bitwise_xor(left, right)).sum())


def _as_bytes_array(descriptor: Any) -> np.ndarray:
    if isinstance(descriptor, (bytes, bytearray, memoryview)):
        return np.frombuffer(bytes(descriptor), dtype=np.uint8)
    return np.asarray(descriptor, dtype=np.uint8).ravel()


class MapPoint:
    """A 3D landmark with its observations, viewing direction and descriptor.

    A point is created either from a reference keyframe or, when
    ``frame`` and ``frame_index`` are given, from a single frame
    observation. Keyframes are expected to expose ``id``, ``frame_id``,
    ``u_right``, ``descriptors``, ``keys_un``, ``scale_factors``,
    ``scale_levels``, ``camera_center``, ``is_bad``,
    ``erase_map_point_match(index)`` and
    ``replace_map_point_match(index, point)``.
    """

    _global_lock = threading.Lock()

    def __init__(
        self,
        position: Any,
        world_map: Any,
        reference_keyframe: Any = None,
        *,
        frame: Any = None,
        frame_index: int | None = None,
    ) -> None:
        if reference_keyframe is None and frame is None:
            raise ValueError("a map point needs a reference keyframe or a frame")

        self._features_lock = threading.RLock()
        self._pos_lock = threading.RLock()
        self._map = world_map
        self._world_pos = np.array(position, dtype=float).reshape(3)
        self._observations: dict[Any, int] = {}
        self._n_obs = 0
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced: MapPoint | None = None
        self._ref_keyframe = reference_keyframe
        self._min_distance = 0.0
        self._max_distance = 0.0

        self.track_reference_for_frame = 0
        self.last_frame_seen = 0
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.pos_gba: np.ndarray | None = None
        self.label = 0
        self.movable = False
        self.moving = False

        if reference_keyframe is not None:
            self.first_kf_id = reference_keyframe.id
            self.first_frame = reference_keyframe.frame_id
            self._normal = np.zeros(3)
            self._descriptor = np.zeros(0, dtype=np.uint8)
        else:
            if frame_index is None:
                raise ValueError("frame_index is required with a frame")
            self.first_kf_id = -1
            self.first_frame = frame.id
            offset = self._world_pos - np.asarray(frame.camera_center, dtype=float).reshape(3)
            dist = float(np.linalg.norm(offset))
            self._normal = offset / dist
            level = frame.keys_un[frame_index].octave
            self._max_distance = dist * frame.scale_factors[level]
            self._min_distance = (
                self._max_distance / frame.scale_factors[frame.scale_levels - 1]
            )
            self._descriptor = np.array(frame.descriptors[frame_index], dtype=np.uint8)

        with world_map.point_creation_lock:
            self.id = next(_point_ids)

    def __repr__(self) -> str:
        return f"MapPoint(id={self.id})"

    @property
    def world_pos(self) -> np.ndarray:
        """A copy of the world position."""
        with self._pos_lock:
            return self._world_pos.copy()

    @world_pos.setter
    def world_pos(self, position: Any) -> None:
        with MapPoint._global_lock, self._pos_lock:
            self._world_pos = np.array(position, dtype=float).reshape(3)

    @property
    def normal(self) -> np.ndarray:
        """A copy of the mean viewing direction."""
        with self._pos_lock:
            return self._normal.copy()

    @property
    def descriptor(self) -> np.ndarray:
        """A copy of the representative descriptor."""
        with self._features_lock:
            return self._descriptor.copy()

    @property
    def reference_keyframe(self) -> Any:
        """The keyframe the point is referred to."""
        with self._features_lock:
            return self._ref_keyframe

    @property
    def replaced(self) -> MapPoint | None:
        """The point that replaced this one, if any."""
        with self._features_lock, self._pos_lock:
            return self._replaced

    @property
    def is_bad(self) -> bool:
        """Whether the point has been discarded."""
        with self._features_lock, self._pos_lock:
            return self._bad

    @property
    def n_obs(self) -> int:
        """Observation count; stereo observations count twice."""
        with self._features_lock:
            return self._n_obs

    def add_observation(self, keyframe: Any, index: int) -> None:
        """Record that ``keyframe`` sees this point at feature ``index``."""
        with self._features_lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = index
            self._n_obs += 2 if keyframe.u_right[index] >= 0 else 1

    def erase_observation(self, keyframe: Any) -> None:
        """Forget an observation; the point turns bad when two or fewer remain."""
        bad = False
        with self._features_lock:
            if keyframe in self._observations:
                index = self._observations.pop(keyframe)
                self._n_obs -= 2 if keyframe.u_right[index] >= 0 else 1
                if self._ref_keyframe is keyframe:
                    self._ref_keyframe = next(iter(self._observations), None)
                bad = self._n_obs <= 2
        if bad:
            self.set_bad_flag()

    def observations(self) -> dict[Any, int]:
        """A copy of the keyframe-to-feature-index observations."""
        with self._features_lock:
            return dict(self._observations)

    def set_bad_flag(self) -> None:
        """Discard the point and detach it from its keyframes and the map."""
        with self._features_lock, self._pos_lock:
            self._bad = True
            observations = self._observations
            self._observations = {}
        for keyframe, index in observations.items():
            keyframe.erase_map_point_match(index)
        self._map.erase_map_point(self)

    def replace(self, other: MapPoint) -> None:
        """Merge this point into ``other`` and discard this one."""
        if other.id == self.id:
            return
        with self._features_lock, self._pos_lock:
            observations = self._observations
            self._observations = {}
            self._bad = True
            visible = self._visible
            found = self._found
            self._replaced = other

        for keyframe, index in observations.items():
            if not other.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(index, other)
                other.add_observation(keyframe, index)
            else:
                keyframe.erase_map_point_match(index)
        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self._map.erase_map_point(self)

    def increase_visible(self, n: int = 1) -> None:
        """Count frames in which the point was predicted to be visible."""
        with self._features_lock:
            self._visible += n

    def increase_found(self, n: int = 1) -> None:
        """Count frames in which the point was actually matched."""
        with self._features_lock:
            self._found += n

    def found_ratio(self) -> float:
        """Fraction of visible predictions that led to a match."""
        with self._features_lock:
            return self._found / self._visible

    def compute_distinctive_descriptors(self) -> None:
        """Pick the observed descriptor with least median distance to the rest."""
        with self._features_lock:
            if self._bad:
                return
            observations = dict(self._observations)
        if not observations:
            return

        descriptors = [
            np.asarray(keyframe.descriptors[index], dtype=np.uint8)
            for keyframe, index in observations.items()
            if not keyframe.is_bad
        ]
        if not descriptors:
            return

        count = len(descriptors)
        distances = np.zeros((count, count), dtype=int)
        for i, j in combinations(range(count), 2):
            d = descriptor_distance(descriptors[i], descriptors[j])
            distances[i, j] = distances[j, i] = d
        medians = np.sort(distances, axis=1)[:, (count - 1) // 2]
        best = int(np.argmin(medians))

        with self._features_lock:
            self._descriptor = descriptors[best].copy()

    def index_in_keyframe(self, keyframe: Any) -> int:
        """Feature index of this point in ``keyframe``, or -1."""
        with self._features_lock:
            return self._observations.get(keyframe, -1)

    def is_in_keyframe(self, keyframe: Any) -> bool:
        """Whether ``keyframe`` observes this point."""
        with self._features_lock:
            return keyframe in self._observations

    def update_normal_and_depth(self) -> None:
        """Recompute viewing direction and scale-invariance distances."""
        with self._features_lock, self._pos_lock:
            if self._bad:
                return
            observations = dict(self._observations)
            ref = self._ref_keyframe
            pos = self._world_pos.copy()
        if not observations or ref is None:
            return

        normal = np.zeros(3)
        for keyframe in observations:
            offset = pos - np.asarray(keyframe.camera_center, dtype=float).reshape(3)
            normal += offset / np.linalg.norm(offset)

        dist = float(
            np.linalg.norm(pos - np.asarray(ref.camera_center, dtype=float).reshape(3))
        )
        level = ref.keys_un[observations.get(ref, 0)].octave
        level_scale = ref.scale_factors[level]
        with self._pos_lock:
            self._max_distance = dist * level_scale
            self._min_distance = self._max_distance / ref.scale_factors[ref.scale_levels - 1]
            self._normal = normal / len(observations)

    def min_distance_invariance(self) -> float:
        """Smallest distance at which the point is expected to be matchable."""
        with self._pos_lock:
            return 0.8 * self._min_distance

    def max_distance_invariance(self) -> float:
        """Largest distance at which the point is expected to be matchable."""
        with self._pos_lock:
            return 1.2 * self._max_distance

    def predict_scale(self, current_dist: float, frame: Any) -> int:
        """Predict the pyramid level at which the point appears in ``frame``."""
        with self._pos_lock:
            ratio = self._max_distance / current_dist
        if ratio <= 0:
            return 0
        scale = math.ceil(math.log(ratio) / frame.log_scale_factor)
        if scale < 0:
            return 0
        if scale >= frame.scale_levels:
            return frame.scale_levels - 1
        return scale

    def set_label(self, label: int, movable: bool, moving: bool) -> None:
        """Attach a semantic label and its motion flags."""
        self.label = label
        self.movable = bool(movable)
        self.moving = bool(moving)