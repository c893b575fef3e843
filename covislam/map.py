"""The map: the set of keyframes and map points built so far."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from typing import Any


class Map:
    """Thread-safe container of keyframes and map points.

    Keyframes must expose an integer ``id`` attribute. Containers keep
    insertion order so that listings are reproducible.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._keyframes: dict[Any, None] = {}
        self._map_points: dict[Any, None] = {}
        self._reference_map_points: list[Any] = []
        self._max_keyframe_id = 0
        self._big_change_idx = 0
        self.keyframe_origins: list[Any] = []
        self.map_update_lock = threading.RLock()
        self.point_creation_lock = threading.Lock()

    def add_keyframe(self, keyframe: Any) -> None:
        """Insert a keyframe and track the largest keyframe id."""
        with self._lock:
            self._keyframes[keyframe] = None
            if keyframe.id > self._max_keyframe_id:
                self._max_keyframe_id = keyframe.id

    def add_map_point(self, point: Any) -> None:
        """Insert a map point."""
        with self._lock:
            self._map_points[point] = None

    def erase_map_point(self, point: Any) -> None:
        """Remove a map point if present."""
        with self._lock:
            self._map_points.pop(point, None)

    def erase_keyframe(self, keyframe: Any) -> None:
        """Remove a keyframe if present."""
        with self._lock:
            self._keyframes.pop(keyframe, None)

    def set_reference_map_points(self, points: Iterable[Any]) -> None:
        """Replace the list of reference map points."""
        with self._lock:
            self._reference_map_points = list(points)

    def inform_new_big_change(self) -> None:
        """Record that a large change (loop closure, global BA) happened."""
        with self._lock:
            self._big_change_idx += 1

    def last_big_change_idx(self) -> int:
        """Number of big changes recorded so far."""
        with self._lock:
            return self._big_change_idx

    def all_keyframes(self) -> list[Any]:
        """A snapshot list of all keyframes."""
        with self._lock:
            return list(self._keyframes)

    def all_map_points(self) -> list[Any]:
        """A snapshot list of all map points."""
        with self._lock:
            return list(self._map_points)

    def map_points_in_map(self) -> int:
        """Number of map points."""
        with self._lock:
            return len(self._map_points)

    def keyframes_in_map(self) -> int:
        """Number of keyframes."""
        with self._lock:
            return len(self._keyframes)

    def reference_map_points(self) -> list[Any]:
        """A copy of the reference map points."""
        with self._lock:
            return list(self._reference_map_points)

    def max_keyframe_id(self) -> int:
        """Largest id of any keyframe ever added since the last clear."""
        with self._lock:
            return self._max_keyframe_id

    def clear(self) -> None:
        """Drop all keyframes, map points, references and origins."""
        with self._lock:
            self._map_points.clear()
            self._keyframes.clear()
            self._max_keyframe_id = 0
            self._reference_map_points = []
            self.keyframe_origins.clear()