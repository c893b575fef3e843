import threading

import pytest

from covislam.map import Map


class _KF:
    def __init__(self, ident):
        self.id = ident


class _MP:
    pass


@pytest.fixture
def world():
    return Map()


def test_empty_map(world):
    assert world.keyframes_in_map() == 0
    assert world.map_points_in_map() == 0
    assert world.all_keyframes() == []
    assert world.max_keyframe_id() == 0


def test_add_keyframes_tracks_max_id(world):
    kfs = [_KF(i) for i in (2, 9, 5)]
    for kf in kfs:
        world.add_keyframe(kf)
    assert world.keyframes_in_map() == 3
    assert world.max_keyframe_id() == 9
    assert world.all_keyframes() == kfs


def test_adding_same_keyframe_twice_counts_once(world):
    kf = _KF(1)
    world.add_keyframe(kf)
    world.add_keyframe(kf)
    assert world.keyframes_in_map() == 1


def test_erase_keyframe_keeps_max_id(world):
    kf = _KF(7)
    world.add_keyframe(kf)
    world.erase_keyframe(kf)
    assert world.keyframes_in_map() == 0
    assert world.max_keyframe_id() == 7


def test_erase_missing_is_harmless(world):
    world.erase_keyframe(_KF(1))
    world.erase_map_point(_MP())
    assert world.keyframes_in_map() == 0
    assert world.map_points_in_map() == 0


def test_map_points_add_and_erase(world):
    points = [_MP() for _ in range(4)]
    for p in points:
        world.add_map_point(p)
    world.erase_map_point(points[1])
    assert world.map_points_in_map() == 3
    assert world.all_map_points() == [points[0], points[2], points[3]]


def test_snapshot_is_independent(world):
    p = _MP()
    world.add_map_point(p)
    snapshot = world.all_map_points()
    world.erase_map_point(p)
    assert snapshot == [p]


def test_reference_points_are_copied(world):
    refs = [_MP(), _MP()]
    world.set_reference_map_points(refs)
    refs.append(_MP())
    got = world.reference_map_points()
    assert len(got) == 2
    got.clear()
    assert len(world.reference_map_points()) == 2


def test_big_change_counter(world):
    for _ in range(3):
        world.inform_new_big_change()
    assert world.last_big_change_idx() == 3


def test_clear_resets_contents_but_not_big_change(world):
    world.add_keyframe(_KF(4))
    world.add_map_point(_MP())
    world.set_reference_map_points([_MP()])
    world.keyframe_origins.append(_KF(0))
    world.inform_new_big_change()
    world.clear()
    assert world.keyframes_in_map() == 0
    assert world.map_points_in_map() == 0
    assert world.reference_map_points() == []
    assert world.keyframe_origins == []
    assert world.max_keyframe_id() == 0
    assert world.last_big_change_idx() == 1


def test_concurrent_insertion(world):
    points = [_MP() for _ in range(400)]

    def worker(chunk):
        for p in chunk:
            world.add_map_point(p)

    threads = [threading.Thread(target=worker, args=(points[i::4],)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert world.map_points_in_map() == len(points)
    assert set(world.all_map_points()) == set(points)