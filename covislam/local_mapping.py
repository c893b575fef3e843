"""Local mapping: inserting keyframes, culling, and triangulating new points."""

from __future__ import annotations

import logging
import math
import threading
from collections import deque
from collections.abc import Callable, Iterable
from typing import Any

import numpy as np

from .mappoint import MapPoint
from .triangulation import compute_f12, triangulate_matches

logger = logging.getLogger(__name__)

_MIN_FOUND_RATIO = 0.25
_MIN_BASELINE_DEPTH_RATIO = 0.01
_REDUNDANT_OBSERVATIONS = 3
_REDUNDANT_FRACTION = 0.9

SearchMatches = Callable[[Any, Any, np.ndarray], Iterable[tuple[int, int]]]


class LocalMapping:
    """Maintains the local map around the most recent keyframes.

    Keyframes handed over by tracking are queued with ``insert_keyframe``
    and processed one at a time. The stop, reset and finish requests let
    other threads coordinate with the mapping thread.
    """

    def __init__(self, world_map: Any, monocular: bool = False) -> None:
        self.world_map = world_map
        self.monocular = bool(monocular)
        self.current_keyframe: Any = None
        self.recent_map_points: list[Any] = []
        self.abort_ba = False

        self._new_keyframes: deque[Any] = deque()
        self._new_keyframes_lock = threading.Lock()
        self._stop_lock = threading.Lock()
        self._finish_lock = threading.Lock()
        self._accept_lock = threading.Lock()
        self._reset_condition = threading.Condition()

        self._reset_requested = False
        self._finish_requested = False
        self._finished = True
        self._stopped = False
        self._stop_requested = False
        self._not_stop = False
        self._accept_keyframes = True

    def _require_current(self) -> Any:
        if self.current_keyframe is None:
            raise RuntimeError("no keyframe is being processed")
        return self.current_keyframe

    # Keyframe queue

    def insert_keyframe(self, keyframe: Any) -> None:
        """Queue a keyframe and ask any running bundle adjustment to abort."""
        with self._new_keyframes_lock:
            self._new_keyframes.append(keyframe)
            self.abort_ba = True

    def check_new_keyframes(self) -> bool:
        """Whether keyframes are waiting to be processed."""
        with self._new_keyframes_lock:
            return bool(self._new_keyframes)

    def process_new_keyframe(self, vocabulary: Any) -> Any:
        """Take the next queued keyframe, link its points and add it to the map."""
        with self._new_keyframes_lock:
            if not self._new_keyframes:
                raise LookupError("no new keyframe to process")
            keyframe = self._new_keyframes.popleft()
        self.current_keyframe = keyframe

        keyframe.compute_bow(vocabulary)

        for index, point in enumerate(keyframe.map_point_matches()):
            if point is None or point.is_bad:
                continue
            if not point.is_in_keyframe(keyframe):
                point.add_observation(keyframe, index)
                point.update_normal_and_depth()
                point.compute_distinctive_descriptors()
            else:
                # Only new stereo points inserted by tracking get here.
                self.recent_map_points.append(point)

        keyframe.update_connections()
        self.world_map.add_keyframe(keyframe)
        return keyframe

    # Culling

    def map_point_culling(self) -> None:
        """Discard recently created points that are not tracked well enough."""
        current_id = self._require_current().id
        threshold = 2 if self.monocular else 3

        kept: list[Any] = []
        for point in self.recent_map_points:
            age = current_id - point.first_kf_id
            if point.is_bad:
                continue
            if point.found_ratio() < _MIN_FOUND_RATIO:
                point.set_bad_flag()
                continue
            if age >= 2 and point.n_obs <= threshold:
                point.set_bad_flag()
                continue
            if age >= 3:
                continue
            kept.append(point)
        self.recent_map_points = kept

    def keyframe_culling(self) -> None:
        """Erase covisible keyframes whose points are mostly seen elsewhere.

        A keyframe is redundant when more than 90% of its points are seen
        by at least three other keyframes at the same or a finer scale.
        Outside the monocular case only close stereo points count.
        """
        current = self._require_current()
        for keyframe in current.covisible_keyframes():
            if keyframe.id == 0:
                continue
            redundant = 0
            n_points = 0
            for index, point in enumerate(keyframe.map_point_matches()):
                if point is None or point.is_bad:
                    continue
                if not self.monocular:
                    depth = keyframe.depth[index]
                    if depth > keyframe.th_depth or depth < 0:
                        continue
                n_points += 1
                if point.n_obs <= _REDUNDANT_OBSERVATIONS:
                    continue
                scale_level = keyframe.keys_un[index].octave
                seen = 0
                for other, other_index in point.observations().items():
                    if other is keyframe:
                        continue
                    if other.keys_un[other_index].octave <= scale_level + 1:
                        seen += 1
                        if seen >= _REDUNDANT_OBSERVATIONS:
                            break
                if seen >= _REDUNDANT_OBSERVATIONS:
                    redundant += 1

            if redundant > _REDUNDANT_FRACTION * n_points:
                keyframe.set_bad_flag()

    # Triangulation

    def create_new_map_points(self, search_matches: SearchMatches) -> int:
        """Triangulate new points between the current keyframe and its neighbours.

        ``search_matches(current, neighbour, f12)`` returns pairs of feature
        indices satisfying the epipolar constraint given by the fundamental
        matrix ``f12``. Returns the number of points created.
        """
        current = self._require_current()
        n_neighbours = 20 if self.monocular else 10
        neighbours = current.best_covisibility_keyframes(n_neighbours)
        ow1 = current.camera_center

        created = 0
        for i, neighbour in enumerate(neighbours):
            if i > 0 and self.check_new_keyframes():
                break

            baseline = float(np.linalg.norm(neighbour.camera_center - ow1))
            if not self.monocular:
                if baseline < neighbour.baseline:
                    continue
            else:
                try:
                    median_depth = neighbour.compute_scene_median_depth(2)
                except ValueError:
                    continue
                ratio = baseline / median_depth if median_depth else math.inf
                if ratio < _MIN_BASELINE_DEPTH_RATIO:
                    continue

            f12 = compute_f12(current, neighbour)
            matches = list(search_matches(current, neighbour, f12))

            for result in triangulate_matches(current, neighbour, matches):
                kp = current.keys_un[result.index1]
                point = MapPoint(result.position, self.world_map, current)
                point.set_label(kp.label, kp.movable, kp.moving)

                point.add_observation(current, result.index1)
                point.add_observation(neighbour, result.index2)
                current.add_map_point(point, result.index1)
                neighbour.add_map_point(point, result.index2)

                point.compute_distinctive_descriptors()
                point.update_normal_and_depth()

                self.world_map.add_map_point(point)
                self.recent_map_points.append(point)
                created += 1
        return created

    # Stop and release

    def request_stop(self) -> None:
        """Ask the mapping thread to pause at the next safe point."""
        with self._stop_lock:
            self._stop_requested = True
        with self._new_keyframes_lock:
            self.abort_ba = True

    def stop(self) -> bool:
        """Enter the stopped state if a stop was requested and is allowed."""
        with self._stop_lock:
            if self._stop_requested and not self._not_stop:
                self._stopped = True
                logger.info("Local Mapping STOP")
                return True
            return False

    def is_stopped(self) -> bool:
        """Whether the mapping thread is stopped."""
        with self._stop_lock:
            return self._stopped

    def stop_requested(self) -> bool:
        """Whether a stop has been requested."""
        with self._stop_lock:
            return self._stop_requested

    def release(self) -> None:
        """Resume after a stop, dropping queued keyframes; no-op once finished."""
        with self._stop_lock, self._finish_lock:
            if self._finished:
                return
            self._stopped = False
            self._stop_requested = False
            with self._new_keyframes_lock:
                self._new_keyframes.clear()
        logger.info("Local Mapping RELEASE")

    def accept_keyframes(self) -> bool:
        """Whether tracking may hand over new keyframes now."""
        with self._accept_lock:
            return self._accept_keyframes

    def set_accept_keyframes(self, flag: bool) -> None:
        """Set whether new keyframes are accepted."""
        with self._accept_lock:
            self._accept_keyframes = bool(flag)

    def set_not_stop(self, flag: bool) -> bool:
        """Forbid or allow stopping; fails when forbidding while already stopped."""
        with self._stop_lock:
            if flag and self._stopped:
                return False
            self._not_stop = bool(flag)
            return True

    def interrupt_ba(self) -> None:
        """Ask a running local bundle adjustment to abort."""
        self.abort_ba = True

    # Reset

    def request_reset(self) -> None:
        """Request a reset and block until the mapping thread has performed it."""
        with self._reset_condition:
            self._reset_requested = True
            while self._reset_requested:
                self._reset_condition.wait()

    def reset_if_requested(self) -> None:
        """Clear queued keyframes and recent points if a reset was requested."""
        with self._reset_condition:
            if self._reset_requested:
                with self._new_keyframes_lock:
                    self._new_keyframes.clear()
                self.recent_map_points = []
                self._reset_requested = False
                self._reset_condition.notify_all()

    # Finish

    def request_finish(self) -> None:
        """Ask the mapping thread to terminate."""
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self) -> bool:
        """Whether termination was requested."""
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self) -> None:
        """Mark the mapping thread as finished and stopped."""
        with self._finish_lock:
            self._finished = True
            with self._stop_lock:
                self._stopped = True

    def is_finished(self) -> bool:
        """Whether the mapping thread has finished."""
        with self._finish_lock:
            return self._finished