"""Image keypoints carrying a semantic label."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass


@dataclass
class KeyPoint:
    """A detected image feature with position, scale and semantic label.

    ``label`` is the semantic class assigned to the feature. ``movable`` and
    ``moving`` tell whether that class belongs to objects that may move.
    A fresh keypoint is unlabelled (label 0) and treated as movable and
    moving until a label is set.
    """

    x: float = 0.0
    y: float = 0.0
    size: float = 0.0
    angle: float = -1.0
    response: float = 0.0
    octave: int = 0
    class_id: int = -1
    label: int = 0
    movable: bool = True
    moving: bool = True

    @property
    def pt(self) -> tuple[float, float]:
        """The keypoint position as an ``(x, y)`` pair."""
        return (self.x, self.y)

    def set_label(self, label: int, movable_labels: Iterable[int]) -> None:
        """Assign a semantic label; movable if it is one of ``movable_labels``."""
        self.label = label
        is_movable = label in set(movable_labels)
        self.movable = is_movable
        self.moving = is_movable