"""Multi-scale oriented FAST keypoints distributed with a quadtree."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .imaging import fast_detect, gaussian_blur, resize_linear
from .keypoint import KeyPoint
from .orb_descriptor import DESCRIPTOR_BYTES, compute_descriptors, compute_orientation
from .orb_pattern import EDGE_THRESHOLD, PATCH_SIZE, compute_umax, pattern_points

_CELL_SIZE = 30.0
_BLUR_KERNEL = (7, 7)
_BLUR_SIGMA = 2.0


@dataclass(eq=False)
class ExtractorNode:
    """A rectangular region of the quadtree with the keypoints inside it."""

    ul: tuple[int, int]
    ur: tuple[int, int]
    bl: tuple[int, int]
    br: tuple[int, int]
    keys: list[Any] = field(default_factory=list)
    no_more: bool = False

    def divide(self) -> tuple[ExtractorNode, ExtractorNode, ExtractorNode, ExtractorNode]:
        """Split into four quadrants and share the keypoints among them."""
        half_x = math.ceil((self.ur[0] - self.ul[0]) / 2)
        half_y = math.ceil((self.br[1] - self.ul[1]) / 2)
        ux, uy = self.ul

        n1 = ExtractorNode(
            ul=self.ul,
            ur=(ux + half_x, uy),
            bl=(ux, uy + half_y),
            br=(ux + half_x, uy + half_y),
        )
        n2 = ExtractorNode(ul=n1.ur, ur=self.ur, bl=n1.br, br=(self.ur[0], uy + half_y))
        n3 = ExtractorNode(ul=n1.bl, ur=n1.br, bl=self.bl, br=(n1.br[0], self.bl[1]))
        n4 = ExtractorNode(ul=n3.ur, ur=n2.br, bl=n3.br, br=self.br)

        split_x, split_y = n1.ur[0], n1.br[1]
        for kp in self.keys:
            if kp.x < split_x:
                (n1 if kp.y < split_y else n3).keys.append(kp)
            elif kp.y < split_y:
                n2.keys.append(kp)
            else:
                n4.keys.append(kp)

        for child in (n1, n2, n3, n4):
            if len(child.keys) == 1:
                child.no_more = True
        return n1, n2, n3, n4


class ORBExtractor:
    """Detects keypoints over a scale pyramid and computes their descriptors."""

    def __init__(
        self,
        nfeatures: int = 1000,
        scale_factor: float = 1.2,
        nlevels: int = 8,
        ini_th_fast: int = 20,
        min_th_fast: int = 7,
    ) -> None:
        if nlevels < 1:
            raise ValueError("nlevels must be at least 1")
        if scale_factor <= 1.0:
            raise ValueError("scale_factor must be greater than 1")
        if nfeatures < 0:
            raise ValueError("nfeatures must not be negative")

        self.nfeatures = nfeatures
        self.scale_factor = scale_factor
        self.nlevels = nlevels
        self.ini_th_fast = ini_th_fast
        self.min_th_fast = min_th_fast

        factors = [np.float32(1.0)]
        for _ in range(1, nlevels):
            factors.append(np.float32(factors[-1] * np.float32(scale_factor)))
        self.scale_factors = [float(f) for f in factors]
        self.level_sigma2 = [float(np.float32(f * f)) for f in factors]
        self.inv_scale_factors = [float(np.float32(1.0) / f) for f in factors]
        self.inv_level_sigma2 = [1.0 / s for s in self.level_sigma2]

        factor = 1.0 / scale_factor
        desired = nfeatures * (1 - factor) / (1 - factor**nlevels)
        self.features_per_level: list[int] = []
        for _ in range(nlevels - 1):
            self.features_per_level.append(round(desired))
            desired *= factor
        self.features_per_level.append(max(nfeatures - sum(self.features_per_level), 0))

        self.pattern = pattern_points()
        self.umax = compute_umax()
        self.image_pyramid: list[np.ndarray] | None = None

    def __call__(self, image: Any) -> tuple[list[KeyPoint], np.ndarray]:
        """Keypoints in level-0 coordinates and their ``(n, 32)`` descriptors."""
        img = np.asarray(image)
        if img.size == 0:
            return [], np.zeros((0, DESCRIPTOR_BYTES), dtype=np.uint8)
        if img.ndim != 2 or img.dtype != np.uint8:
            raise ValueError("expected a single-channel 8-bit image")

        self.compute_pyramid(img)
        per_level = self.compute_keypoints_oct_tree()

        keypoints: list[KeyPoint] = []
        blocks: list[np.ndarray] = []
        for level, level_keys in enumerate(per_level):
            if not level_keys:
                continue
            working = gaussian_blur(self.image_pyramid[level], _BLUR_KERNEL, _BLUR_SIGMA)
            blocks.append(compute_descriptors(working, level_keys, self.pattern))
            if level != 0:
                scale = self.scale_factors[level]
                for kp in level_keys:
                    kp.x *= scale
                    kp.y *= scale
            keypoints.extend(level_keys)

        if not blocks:
            return keypoints, np.zeros((0, DESCRIPTOR_BYTES), dtype=np.uint8)
        return keypoints, np.vstack(blocks)

    def compute_pyramid(self, image: Any) -> list[np.ndarray]:
        """Build the scale pyramid, each level resized from the previous one."""
        img = np.asarray(image)
        pyramid: list[np.ndarray] = []
        for level in range(self.nlevels):
            scale = self.inv_scale_factors[level]
            width = round(img.shape[1] * scale)
            height = round(img.shape[0] * scale)
            if level == 0:
                current = img.copy()
            elif width <= 0 or height <= 0 or pyramid[-1].size == 0:
                current = np.zeros((max(height, 0), max(width, 0)), dtype=img.dtype)
            else:
                current = resize_linear(pyramid[-1], width, height)
            pyramid.append(current)
        self.image_pyramid = pyramid
        return pyramid

    def compute_keypoints_oct_tree(self) -> list[list[KeyPoint]]:
        """Detect, distribute and orient keypoints on every pyramid level."""
        if self.image_pyramid is None:
            raise RuntimeError("compute_pyramid must be called first")

        all_keypoints: list[list[KeyPoint]] = []
        for level, image in enumerate(self.image_pyramid):
            min_bx = EDGE_THRESHOLD - 3
            min_by = min_bx
            max_bx = image.shape[1] - EDGE_THRESHOLD + 3
            max_by = image.shape[0] - EDGE_THRESHOLD + 3

            width = float(max_bx - min_bx)
            height = float(max_by - min_by)
            n_cols = int(width / _CELL_SIZE)
            n_rows = int(height / _CELL_SIZE)
            if n_cols <= 0 or n_rows <= 0:
                all_keypoints.append([])
                continue
            w_cell = math.ceil(width / n_cols)
            h_cell = math.ceil(height / n_rows)

            to_distribute: list[KeyPoint] = []
            for i in range(n_rows):
                ini_y = min_by + i * h_cell
                if ini_y >= max_by - 3:
                    continue
                max_y = min(ini_y + h_cell + 6, max_by)
                for j in range(n_cols):
                    ini_x = min_bx + j * w_cell
                    if ini_x >= max_bx - 6:
                        continue
                    max_x = min(ini_x + w_cell + 6, max_bx)
                    cell = image[ini_y:max_y, ini_x:max_x]
                    found = fast_detect(cell, self.ini_th_fast, True)
                    if not found:
                        found = fast_detect(cell, self.min_th_fast, True)
                    for kp in found:
                        kp.x += j * w_cell
                        kp.y += i * h_cell
                        to_distribute.append(kp)

            keypoints = self.distribute_oct_tree(
                to_distribute, min_bx, max_bx, min_by, max_by, self.features_per_level[level]
            )
            scaled_patch = int(PATCH_SIZE * self.scale_factors[level])
            for kp in keypoints:
                kp.x += min_bx
                kp.y += min_by
                kp.octave = level
                kp.size = scaled_patch
            compute_orientation(image, keypoints, self.umax)
            all_keypoints.append(keypoints)
        return all_keypoints

    def distribute_oct_tree(
        self,
        keys: Sequence[Any],
        min_x: int,
        max_x: int,
        min_y: int,
        max_y: int,
        n: int,
    ) -> list[Any]:
        """Spread keypoints over quadtree cells and keep the strongest of each.

        Keypoint coordinates are relative to ``(min_x, min_y)``. Cells are split
        until there are at least ``n`` of them or no cell can be split further.
        """
        width = max_x - min_x
        height = max_y - min_y
        if width <= 0 or height <= 0:
            raise ValueError("region must have a positive size")

        n_ini = max(1, math.floor(width / height + 0.5))
        h_x = width / n_ini
        nodes = [
            ExtractorNode(
                ul=(int(h_x * i), 0),
                ur=(int(h_x * (i + 1)), 0),
                bl=(int(h_x * i), height),
                br=(int(h_x * (i + 1)), height),
            )
            for i in range(n_ini)
        ]
        for kp in keys:
            nodes[min(max(int(kp.x / h_x), 0), n_ini - 1)].keys.append(kp)

        nodes = [node for node in nodes if node.keys]
        for node in nodes:
            if len(node.keys) == 1:
                node.no_more = True

        finished = False
        while not finished:
            prev_size = len(nodes)
            front: list[ExtractorNode] = []
            remaining: list[ExtractorNode] = []
            expandable: list[tuple[int, ExtractorNode]] = []
            for node in nodes:
                if node.no_more:
                    remaining.append(node)
                    continue
                for child in node.divide():
                    if child.keys:
                        front.append(child)
                        if len(child.keys) > 1:
                            expandable.append((len(child.keys), child))
            front.reverse()
            nodes = front + remaining

            if len(nodes) >= n or len(nodes) == prev_size:
                finished = True
            elif len(nodes) + 3 * len(expandable) > n:
                while not finished:
                    prev_size = len(nodes)
                    previous = sorted(expandable, key=lambda pair: pair[0])
                    expandable = []
                    for _, node in reversed(previous):
                        for child in node.divide():
                            if child.keys:
                                nodes.insert(0, child)
                                if len(child.keys) > 1:
                                    expandable.append((len(child.keys), child))
                        nodes.remove(node)
                        if len(nodes) >= n:
                            break
                    if len(nodes) >= n or len(nodes) == prev_size:
                        finished = True

        result: list[Any] = []
        for node in nodes:
            best = node.keys[0]
            for kp in node.keys[1:]:
                if kp.response > best.response:
                    best = kp
            result.append(best)
        return result