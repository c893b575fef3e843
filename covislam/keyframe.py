"""Keyframes: poses, covisibility graph links and map point associations."""

from __future__ import annotations

import itertools
import math
import threading
from collections.abc import Iterable, Sequence
from typing import Any

import numpy as np

GRID_COLS = 64
GRID_ROWS = 48

_CONNECTION_THRESHOLD = 15
_BOW_LEVELS_UP = 4

_keyframe_ids = itertools.count()


def _order_by_weight(pairs: Iterable[tuple[int, Any]]) -> tuple[list[Any], list[int]]:
    """Sort ``(weight, keyframe)`` pairs by decreasing weight."""
    ordered = sorted(pairs, key=lambda pair: (pair[0], pair[1].id), reverse=True)
    return [kf for _, kf in ordered], [weight for weight, _ in ordered]


class KeyFrame:
    """A frame kept in the map, linked to others through shared map points.

    ``keys`` are the detected keypoints, ``keys_un`` their undistorted
    positions (defaulting to ``keys``). ``u_right`` holds the right-image
    coordinate of each feature and ``depth`` its depth, both negative where
    unknown. The vocabulary used for bags of words must provide
    ``transform(descriptors, levels_up)`` returning ``(bow_vec, feat_vec)``.
    """

    def __init__(
        self,
        keys: Sequence[Any],
        *,
        keys_un: Sequence[Any] | None = None,
        u_right: Sequence[float] | None = None,
        depth: Sequence[float] | None = None,
        descriptors: Any = None,
        fx: float = 1.0,
        fy: float = 1.0,
        cx: float = 0.0,
        cy: float = 0.0,
        bf: float = 0.0,
        th_depth: float = 0.0,
        scale_factor: float = 1.2,
        scale_levels: int = 8,
        min_x: float = 0.0,
        min_y: float = 0.0,
        max_x: float = 640.0,
        max_y: float = 480.0,
        grid: list[list[list[int]]] | None = None,
        pose: Any = None,
        world_map: Any = None,
        database: Any = None,
        map_points: Sequence[Any] | None = None,
        bow_vec: dict[int, float] | None = None,
        feat_vec: dict[int, list[int]] | None = None,
        frame_id: int = 0,
        timestamp: float = 0.0,
        keyframe_id: int | None = None,
    ) -> None:
        self.id = next(_keyframe_ids) if keyframe_id is None else keyframe_id
        self.frame_id = frame_id
        self.timestamp = timestamp

        self.keys = list(keys)
        self.n = len(self.keys)
        self.keys_un = list(keys_un) if keys_un is not None else list(self.keys)
        self.u_right = list(u_right) if u_right is not None else [-1.0] * self.n
        self.depth = list(depth) if depth is not None else [-1.0] * self.n
        if descriptors is None:
            self.descriptors = np.zeros((self.n, 32), dtype=np.uint8)
        else:
            self.descriptors = np.array(descriptors, dtype=np.uint8)

        self.fx, self.fy, self.cx, self.cy = fx, fy, cx, cy
        self.invfx = 1.0 / fx
        self.invfy = 1.0 / fy
        self.bf = bf
        self.baseline = bf / fx
        self.th_depth = th_depth
        self.K = np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]])
        self._half_baseline = self.baseline / 2

        self.scale_levels = scale_levels
        self.scale_factor = scale_factor
        self.log_scale_factor = math.log(scale_factor)
        self.scale_factors = [scale_factor**level for level in range(scale_levels)]
        self.level_sigma2 = [factor * factor for factor in self.scale_factors]
        self.inv_level_sigma2 = [1.0 / sigma2 for sigma2 in self.level_sigma2]

        self.min_x, self.min_y, self.max_x, self.max_y = min_x, min_y, max_x, max_y
        self.grid_element_width_inv = GRID_COLS / (max_x - min_x)
        self.grid_element_height_inv = GRID_ROWS / (max_y - min_y)
        self._grid = grid if grid is not None else self._assign_grid()

        self.bow_vec: dict[int, float] = dict(bow_vec or {})
        self.feat_vec: dict[int, list[int]] = dict(feat_vec or {})
        self.static_bow_vec: dict[int, float] = {}
        self.static_feat_vec: dict[int, list[int]] = {}

        self.track_reference_for_frame = 0
        self.fuse_target_for_kf = 0
        self.ba_local_for_kf = 0
        self.ba_fixed_for_kf = 0
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.ba_global_for_kf = 0
        self.tcw_gba: np.ndarray | None = None
        self.tcw_bef_gba: np.ndarray | None = None
        self.tcp: np.ndarray | None = None

        self._map = world_map
        self._database = database

        self._pose_lock = threading.RLock()
        self._connections_lock = threading.RLock()
        self._features_lock = threading.RLock()

        if map_points is None:
            self._map_points: list[Any] = [None] * self.n
        else:
            self._map_points = list(map_points)

        self._connected_weights: dict[Any, int] = {}
        self._ordered_keyframes: list[Any] = []
        self._ordered_weights: list[int] = []
        self._first_connection = True
        self._parent: KeyFrame | None = None
        self._children: dict[Any, None] = {}
        self._loop_edges: dict[Any, None] = {}
        self._not_erase = False
        self._to_be_erased = False
        self._bad = False

        self.set_pose(np.eye(4) if pose is None else pose)

    def __repr__(self) -> str:
        return f"KeyFrame(id={self.id})"

    def _assign_grid(self) -> list[list[list[int]]]:
        grid: list[list[list[int]]] = [[[] for _ in range(GRID_ROWS)] for _ in range(GRID_COLS)]
        for index, kp in enumerate(self.keys_un):
            gx = math.floor((kp.x - self.min_x) * self.grid_element_width_inv + 0.5)
            gy = math.floor((kp.y - self.min_y) * self.grid_element_height_inv + 0.5)
            if 0 <= gx < GRID_COLS and 0 <= gy < GRID_ROWS:
                grid[gx][gy].append(index)
        return grid

    # Bags of words

    def compute_bow(self, vocabulary: Any) -> None:
        """Compute the bag-of-words vectors unless they already exist."""
        if not self.bow_vec or not self.feat_vec:
            rows = list(self.descriptors)
            bow, feat = vocabulary.transform(rows, _BOW_LEVELS_UP)
            self.bow_vec = dict(bow)
            self.feat_vec = dict(feat)

    def compute_static_bow(self, vocabulary: Any) -> None:
        """Compute bag-of-words vectors from features of non-movable objects only."""
        if not self.static_bow_vec or not self.static_feat_vec:
            rows = [
                row
                for kp, row in zip(self.keys, self.descriptors)
                if not kp.movable
            ]
            bow, feat = vocabulary.transform(rows, _BOW_LEVELS_UP)
            self.static_bow_vec = dict(bow)
            self.static_feat_vec = dict(feat)

    # Pose

    def set_pose(self, tcw: Any) -> None:
        """Set the world-to-camera transform and derive the dependent quantities."""
        tcw = np.array(tcw, dtype=float).reshape(4, 4)
        with self._pose_lock:
            self._tcw = tcw
            rwc = tcw[:3, :3].T
            self._ow = -rwc @ tcw[:3, 3]
            twc = np.eye(4)
            twc[:3, :3] = rwc
            twc[:3, 3] = self._ow
            self._twc = twc
            self._cw = twc @ np.array([self._half_baseline, 0.0, 0.0, 1.0])

    @property
    def pose(self) -> np.ndarray:
        """A copy of the world-to-camera transform."""
        with self._pose_lock:
            return self._tcw.copy()

    @property
    def pose_inverse(self) -> np.ndarray:
        """A copy of the camera-to-world transform."""
        with self._pose_lock:
            return self._twc.copy()

    @property
    def camera_center(self) -> np.ndarray:
        """Camera centre in world coordinates."""
        with self._pose_lock:
            return self._ow.copy()

    @property
    def stereo_center(self) -> np.ndarray:
        """Homogeneous world position of the stereo rig's midpoint."""
        with self._pose_lock:
            return self._cw.copy()

    @property
    def rotation(self) -> np.ndarray:
        """Rotation part of the world-to-camera transform."""
        with self._pose_lock:
            return self._tcw[:3, :3].copy()

    @property
    def translation(self) -> np.ndarray:
        """Translation part of the world-to-camera transform."""
        with self._pose_lock:
            return self._tcw[:3, 3].copy()

    # Covisibility graph

    def add_connection(self, keyframe: Any, weight: int) -> None:
        """Link to ``keyframe`` with the given number of shared points."""
        with self._connections_lock:
            if self._connected_weights.get(keyframe) == weight:
                return
            self._connected_weights[keyframe] = weight
        self.update_best_covisibles()

    def update_best_covisibles(self) -> None:
        """Re-sort the connected keyframes by decreasing weight."""
        with self._connections_lock:
            pairs = [(w, kf) for kf, w in self._connected_weights.items()]
            self._ordered_keyframes, self._ordered_weights = _order_by_weight(pairs)

    def connected_keyframes(self) -> set[Any]:
        """All keyframes linked in the covisibility graph."""
        with self._connections_lock:
            return set(self._connected_weights)

    def covisible_keyframes(self) -> list[Any]:
        """Connected keyframes ordered by decreasing weight."""
        with self._connections_lock:
            return list(self._ordered_keyframes)

    def best_covisibility_keyframes(self, n: int) -> list[Any]:
        """The ``n`` connected keyframes with the highest weights."""
        with self._connections_lock:
            return list(self._ordered_keyframes[:n])

    def covisibles_by_weight(self, weight: int) -> list[Any]:
        """Connected keyframes with at least ``weight`` shared points.

        Empty when every connection meets the threshold.
        """
        with self._connections_lock:
            if not self._ordered_keyframes:
                return []
            count = next(
                (i for i, w in enumerate(self._ordered_weights) if weight > w), None
            )
            if count is None:
                return []
            return list(self._ordered_keyframes[:count])

    def weight(self, keyframe: Any) -> int:
        """Number of points shared with ``keyframe``, 0 if not connected."""
        with self._connections_lock:
            return self._connected_weights.get(keyframe, 0)

    # Map point associations

    def add_map_point(self, point: Any, index: int) -> None:
        """Associate ``point`` with feature ``index``."""
        with self._features_lock:
            self._map_points[index] = point

    def erase_map_point_match(self, index: int) -> None:
        """Drop the association at feature ``index``."""
        with self._features_lock:
            self._map_points[index] = None

    def erase_map_point(self, point: Any) -> None:
        """Drop the association with ``point`` wherever it observes this keyframe."""
        index = point.index_in_keyframe(self)
        if index >= 0:
            self._map_points[index] = None

    def replace_map_point_match(self, index: int, point: Any) -> None:
        """Associate feature ``index`` with a different point."""
        self._map_points[index] = point

    def map_points(self) -> set[Any]:
        """The associated points that are not bad."""
        with self._features_lock:
            return {p for p in self._map_points if p is not None and not p.is_bad}

    def tracked_map_points(self, min_obs: int) -> int:
        """Number of good points, with at least ``min_obs`` observations if positive."""
        with self._features_lock:
            return sum(
                1
                for point in self._map_points[: self.n]
                if point is not None
                and not point.is_bad
                and (min_obs <= 0 or point.n_obs >= min_obs)
            )

    def map_point_matches(self) -> list[Any]:
        """A copy of the per-feature point associations, ``None`` where absent."""
        with self._features_lock:
            return list(self._map_points)

    def map_point(self, index: int) -> Any:
        """The point associated with feature ``index``, or ``None``."""
        with self._features_lock:
            return self._map_points[index]

    def update_connections(self) -> None:
        """Rebuild covisibility links from the keyframes observing shared points."""
        with self._features_lock:
            points = list(self._map_points)

        counter: dict[Any, int] = {}
        for point in points:
            if point is None or point.is_bad:
                continue
            for keyframe in point.observations():
                if keyframe.id == self.id:
                    continue
                counter[keyframe] = counter.get(keyframe, 0) + 1

        if not counter:
            return

        n_max = 0
        kf_max = None
        pairs: list[tuple[int, Any]] = []
        for keyframe, count in counter.items():
            if count > n_max:
                n_max = count
                kf_max = keyframe
            if count >= _CONNECTION_THRESHOLD:
                pairs.append((count, keyframe))
                keyframe.add_connection(self, count)

        if not pairs:
            pairs.append((n_max, kf_max))
            kf_max.add_connection(self, n_max)

        ordered, weights = _order_by_weight(pairs)
        with self._connections_lock:
            self._connected_weights = dict(counter)
            self._ordered_keyframes = ordered
            self._ordered_weights = weights
            if self._first_connection and self.id != 0:
                self._parent = ordered[0]
                self._parent.add_child(self)
                self._first_connection = False

    # Spanning tree

    @property
    def parent(self) -> Any:
        """The parent in the spanning tree, or ``None``."""
        with self._connections_lock:
            return self._parent

    def add_child(self, keyframe: Any) -> None:
        """Add a child in the spanning tree."""
        with self._connections_lock:
            self._children[keyframe] = None

    def erase_child(self, keyframe: Any) -> None:
        """Remove a child from the spanning tree."""
        with self._connections_lock:
            self._children.pop(keyframe, None)

    def change_parent(self, keyframe: Any) -> None:
        """Re-attach this keyframe under ``keyframe``."""
        with self._connections_lock:
            self._parent = keyframe
            keyframe.add_child(self)

    def children(self) -> set[Any]:
        """The children in the spanning tree."""
        with self._connections_lock:
            return set(self._children)

    def has_child(self, keyframe: Any) -> bool:
        """Whether ``keyframe`` is a child of this one."""
        with self._connections_lock:
            return keyframe in self._children

    # Loop edges and erasure

    def add_loop_edge(self, keyframe: Any) -> None:
        """Record a loop closure with ``keyframe``; such keyframes are never erased."""
        with self._connections_lock:
            self._not_erase = True
            self._loop_edges[keyframe] = None

    def loop_edges(self) -> set[Any]:
        """Keyframes linked by a loop closure."""
        with self._connections_lock:
            return set(self._loop_edges)

    def set_not_erase(self) -> None:
        """Protect the keyframe from erasure while it is in use."""
        with self._connections_lock:
            self._not_erase = True

    def set_erase(self) -> None:
        """Lift the protection, erasing now if erasure was requested meanwhile."""
        with self._connections_lock:
            if not self._loop_edges:
                self._not_erase = False
        if self._to_be_erased:
            self.set_bad_flag()

    def set_bad_flag(self) -> None:
        """Remove the keyframe from the graph, the spanning tree, the map and database."""
        with self._connections_lock:
            if self.id == 0:
                return
            if self._not_erase:
                self._to_be_erased = True
                return
            connected = list(self._connected_weights)

        for keyframe in connected:
            keyframe.erase_connection(self)

        for point in [p for p in self.map_point_matches() if p is not None]:
            point.erase_observation(self)

        with self._connections_lock, self._features_lock:
            self._connected_weights.clear()
            self._ordered_keyframes = []
            self._ordered_weights = []

            parent = self._parent
            candidates: dict[Any, None] = {parent: None} if parent is not None else {}

            while self._children:
                best_weight = -1
                child = None
                new_parent = None
                for candidate_child in self._children:
                    if candidate_child.is_bad:
                        continue
                    for neighbour in candidate_child.covisible_keyframes():
                        if any(neighbour.id == c.id for c in candidates):
                            w = candidate_child.weight(neighbour)
                            if w > best_weight:
                                child, new_parent, best_weight = candidate_child, neighbour, w
                if child is None:
                    break
                child.change_parent(new_parent)
                candidates[child] = None
                del self._children[child]

            if parent is not None:
                for child in list(self._children):
                    child.change_parent(parent)
                parent.erase_child(self)
                self.tcp = self.pose @ parent.pose_inverse
            self._bad = True

        if self._map is not None:
            self._map.erase_keyframe(self)
        if self._database is not None:
            self._database.erase(self)

    @property
    def is_bad(self) -> bool:
        """Whether the keyframe has been removed."""
        with self._connections_lock:
            return self._bad

    def erase_connection(self, keyframe: Any) -> None:
        """Remove the covisibility link to ``keyframe``."""
        with self._connections_lock:
            removed = self._connected_weights.pop(keyframe, None) is not None
        if removed:
            self.update_best_covisibles()

    # Geometry

    def features_in_area(self, x: float, y: float, r: float) -> list[int]:
        """Indices of undistorted features strictly within ``r`` of ``(x, y)`` per axis."""
        cols = len(self._grid)
        rows = len(self._grid[0]) if cols else 0
        indices: list[int] = []

        min_cx = max(0, math.floor((x - self.min_x - r) * self.grid_element_width_inv))
        if min_cx >= cols:
            return indices
        max_cx = min(cols - 1, math.ceil((x - self.min_x + r) * self.grid_element_width_inv))
        if max_cx < 0:
            return indices
        min_cy = max(0, math.floor((y - self.min_y - r) * self.grid_element_height_inv))
        if min_cy >= rows:
            return indices
        max_cy = min(rows - 1, math.ceil((y - self.min_y + r) * self.grid_element_height_inv))
        if max_cy < 0:
            return indices

        for ix in range(min_cx, max_cx + 1):
            for iy in range(min_cy, max_cy + 1):
                for index in self._grid[ix][iy]:
                    kp = self.keys_un[index]
                    if abs(kp.x - x) < r and abs(kp.y - y) < r:
                        indices.append(index)
        return indices

    def is_in_image(self, x: float, y: float) -> bool:
        """Whether ``(x, y)`` lies within the image bounds."""
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    def unproject_stereo(self, index: int) -> np.ndarray | None:
        """World position of feature ``index`` from its depth, or ``None`` without depth."""
        z = self.depth[index]
        if z <= 0:
            return None
        kp = self.keys[index]
        x = (kp.x - self.cx) * z * self.invfx
        y = (kp.y - self.cy) * z * self.invfy
        with self._pose_lock:
            return self._twc[:3, :3] @ np.array([x, y, z]) + self._twc[:3, 3]

    def compute_scene_median_depth(self, q: int) -> float:
        """The depth at quantile ``1/q`` of the associated points, in camera frame."""
        with self._features_lock, self._pose_lock:
            points = list(self._map_points)
            tcw = self._tcw.copy()
        row = tcw[2, :3]
        zcw = tcw[2, 3]
        depths = sorted(
            float(row @ point.world_pos + zcw)
            for point in points[: self.n]
            if point is not None
        )
        if not depths:
            raise ValueError("keyframe has no map points")
        return depths[(len(depths) - 1) // q]