"""Inverted index over visual words for loop and relocalisation queries."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from typing import Any

_NEIGHBOURS = 10
_COMMON_WORDS_RATIO = 0.8
_RETAIN_RATIO = 0.75


class KeyFrameDatabase:
    """Maps each vocabulary word to the keyframes that contain it.

    The vocabulary must support ``len()`` and ``score(bow_a, bow_b)``.
    Keyframes carry ``bow_vec`` and ``static_bow_vec`` (word id to weight
    mappings), an ``id``, the query bookkeeping fields ``loop_query``,
    ``loop_words``, ``loop_score``, ``reloc_query``, ``reloc_words`` and
    ``reloc_score``, and the methods ``connected_keyframes()``,
    ``best_covisibility_keyframes(n)`` and ``compute_static_bow(vocabulary)``.
    """

    def __init__(self, vocabulary: Any) -> None:
        self._vocabulary = vocabulary
        self._lock = threading.Lock()
        self._inverted_file: list[list[Any]] = self._empty_index()

    def _empty_index(self) -> list[list[Any]]:
        return [[] for _ in range(len(self._vocabulary))]

    def add(self, keyframe: Any) -> None:
        """Index a keyframe under each of its words."""
        with self._lock:
            for word in keyframe.bow_vec:
                self._inverted_file[word].append(keyframe)

    def erase(self, keyframe: Any) -> None:
        """Remove a keyframe from the lists of its words."""
        with self._lock:
            for word in keyframe.bow_vec:
                entries = self._inverted_file[word]
                if keyframe in entries:
                    entries.remove(keyframe)

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock:
            self._inverted_file = self._empty_index()

    def detect_loop_candidates(self, keyframe: Any, min_score: float) -> list[Any]:
        """Keyframes, not connected to ``keyframe``, that look like a revisit."""
        connected = keyframe.connected_keyframes()
        sharing: list[Any] = []
        with self._lock:
            for word in keyframe.static_bow_vec:
                for candidate in self._inverted_file[word]:
                    if candidate.loop_query != keyframe.id:
                        candidate.loop_words = 0
                        if candidate not in connected:
                            candidate.loop_query = keyframe.id
                            sharing.append(candidate)
                    candidate.loop_words += 1

        if not sharing:
            return []

        max_common = max(candidate.loop_words for candidate in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored: list[tuple[float, Any]] = []
        for candidate in sharing:
            if candidate.loop_words > min_common:
                candidate.compute_static_bow(self._vocabulary)
                score = self._vocabulary.score(
                    keyframe.static_bow_vec, candidate.static_bow_vec
                )
                candidate.loop_score = score
                if score >= min_score:
                    scored.append((score, candidate))

        if not scored:
            return []

        return _retain_best(
            scored,
            lambda other: other.loop_query == keyframe.id and other.loop_words > min_common,
            lambda other: other.loop_score,
            min_score,
        )

    def detect_relocalization_candidates(self, frame: Any) -> list[Any]:
        """Keyframes similar enough to ``frame`` to attempt relocalisation."""
        sharing: list[Any] = []
        with self._lock:
            for word in frame.bow_vec:
                for candidate in self._inverted_file[word]:
                    if candidate.reloc_query != frame.id:
                        candidate.reloc_words = 0
                        candidate.reloc_query = frame.id
                        sharing.append(candidate)
                    candidate.reloc_words += 1

        if not sharing:
            return []

        max_common = max(candidate.reloc_words for candidate in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored: list[tuple[float, Any]] = []
        for candidate in sharing:
            if candidate.reloc_words > min_common:
                score = self._vocabulary.score(frame.bow_vec, candidate.bow_vec)
                candidate.reloc_score = score
                scored.append((score, candidate))

        if not scored:
            return []

        return _retain_best(
            scored,
            lambda other: other.reloc_query == frame.id,
            lambda other: other.reloc_score,
            0.0,
        )


def _retain_best(
    scored: Iterable[tuple[float, Any]],
    is_peer: Callable[[Any], bool],
    score_of: Callable[[Any], float],
    best_accumulated: float,
) -> list[Any]:
    """Accumulate scores over covisible neighbours and keep the strongest groups."""
    accumulated: list[tuple[float, Any]] = []
    for score, candidate in scored:
        best_score = score
        total = score
        best = candidate
        for neighbour in candidate.best_covisibility_keyframes(_NEIGHBOURS):
            if not is_peer(neighbour):
                continue
            neighbour_score = score_of(neighbour)
            total += neighbour_score
            if neighbour_score > best_score:
                best = neighbour
                best_score = neighbour_score
        accumulated.append((total, best))
        best_accumulated = max(best_accumulated, total)

    threshold = _RETAIN_RATIO * best_accumulated
    return list(dict.fromkeys(kf for total, kf in accumulated if total > threshold))