from types import SimpleNamespace

import pytest

from covislam.keyframe_database import KeyFrameDatabase


class _Vocabulary:
    def __init__(self, size=8):
        self.size = size

    def __len__(self):
        return self.size

    def score(self, a, b):
        return sum(min(a[w], b[w]) for w in a.keys() & b.keys())


class _StubKeyFrame:
    def __init__(self, kf_id, words, connected=()):
        self.id = kf_id
        self.bow_vec = dict(words)
        self.static_bow_vec = dict(words)
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.connected = set(connected)
        self.neighbours = []
        self.static_bow_vocabulary = None

    def connected_keyframes(self):
        return set(self.connected)

    def best_covisibility_keyframes(self, n):
        return self.neighbours[:n]

    def compute_static_bow(self, vocabulary):
        self.static_bow_vocabulary = vocabulary


WORDS = {0: 0.5, 1: 0.5}


def test_relocalization_finds_sharing_keyframe():
    db = KeyFrameDatabase(_Vocabulary())
    kf1 = _StubKeyFrame(1, WORDS)
    kf2 = _StubKeyFrame(2, {2: 1.0})
    db.add(kf1)
    db.add(kf2)
    frame = SimpleNamespace(id=5, bow_vec=dict(WORDS))
    assert db.detect_relocalization_candidates(frame) == [kf1]
    assert kf1.reloc_query == 5
    assert kf1.reloc_words == len(WORDS)


def test_relocalization_skips_keyframes_with_few_common_words():
    db = KeyFrameDatabase(_Vocabulary())
    kf1 = _StubKeyFrame(1, WORDS)
    kf3 = _StubKeyFrame(3, {1: 1.0})
    db.add(kf1)
    db.add(kf3)
    frame = SimpleNamespace(id=5, bow_vec=dict(WORDS))
    assert db.detect_relocalization_candidates(frame) == [kf1]


def test_relocalization_returns_best_of_covisible_group_once():
    db = KeyFrameDatabase(_Vocabulary())
    kf1 = _StubKeyFrame(1, WORDS)
    kf2 = _StubKeyFrame(2, {0: 0.5, 1: 0.3, 2: 0.2})
    kf1.neighbours = [kf2]
    kf2.neighbours = [kf1]
    db.add(kf1)
    db.add(kf2)
    frame = SimpleNamespace(id=5, bow_vec=dict(WORDS))
    assert db.detect_relocalization_candidates(frame) == [kf1]


def test_erase_and_clear_remove_entries():
    db = KeyFrameDatabase(_Vocabulary())
    kf1 = _StubKeyFrame(1, WORDS)
    kf2 = _StubKeyFrame(2, WORDS)
    db.add(kf1)
    db.add(kf2)
    db.erase(kf1)
    assert db.detect_relocalization_candidates(SimpleNamespace(id=5, bow_vec=dict(WORDS))) == [kf2]
    db.clear()
    assert db.detect_relocalization_candidates(SimpleNamespace(id=6, bow_vec=dict(WORDS))) == []


def test_word_outside_vocabulary_raises():
    db = KeyFrameDatabase(_Vocabulary(size=2))
    with pytest.raises(IndexError):
        db.add(_StubKeyFrame(1, {5: 1.0}))


def test_loop_candidates_exclude_connected_keyframes():
    vocabulary = _Vocabulary()
    db = KeyFrameDatabase(vocabulary)
    near = _StubKeyFrame(1, WORDS)
    far = _StubKeyFrame(2, WORDS)
    db.add(near)
    db.add(far)
    query = _StubKeyFrame(20, WORDS, connected=[near])
    assert db.detect_loop_candidates(query, 0.1) == [far]
    assert far.static_bow_vocabulary is vocabulary
    assert near.loop_query != query.id


def test_loop_candidates_respect_min_score():
    db = KeyFrameDatabase(_Vocabulary())
    kf = _StubKeyFrame(2, {0: 0.1, 1: 0.1})
    db.add(kf)
    query = _StubKeyFrame(20, WORDS)
    assert db.detect_loop_candidates(query, 0.9) == []
    assert kf.loop_score == pytest.approx(0.2)


def test_loop_candidates_empty_database():
    db = KeyFrameDatabase(_Vocabulary())
    assert db.detect_loop_candidates(_StubKeyFrame(20, WORDS), 0.0) == []