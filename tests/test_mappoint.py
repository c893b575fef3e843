import math
from types import SimpleNamespace

import numpy as np
import pytest

from covislam.keypoint import KeyPoint
from covislam.map import Map
from covislam.mappoint import MapPoint, descriptor_distance


class _StubKeyFrame:
    def __init__(self, kf_id, n=4, stereo=(), center=(0.0, 0.0, 0.0),
                 descriptors=None, scale_factors=(1.0, 2.0, 4.0)):
        self.id = kf_id
        self.frame_id = kf_id * 10
        self.u_right = [10.0 if i in stereo else -1.0 for i in range(n)]
        if descriptors is None:
            descriptors = np.zeros((n, 32), dtype=np.uint8)
        self.descriptors = descriptors
        self.keys_un = [KeyPoint(octave=0) for _ in range(n)]
        self.scale_factors = list(scale_factors)
        self.scale_levels = len(scale_factors)
        self.log_scale_factor = math.log(scale_factors[1])
        self.camera_center = np.array(center, dtype=float)
        self.is_bad = False
        self.matches = [None] * n

    def erase_map_point_match(self, index):
        self.matches[index] = None

    def replace_map_point_match(self, index, point):
        self.matches[index] = point


def _observe(point, keyframe, index):
    point.add_observation(keyframe, index)
    keyframe.matches[index] = point


def test_descriptor_distance_extremes():
    zeros = np.zeros(32, dtype=np.uint8)
    ones = np.full(32, 0xFF, dtype=np.uint8)
    assert descriptor_distance(zeros, zeros) == 0
    assert descriptor_distance(zeros, ones) == 256
    assert descriptor_distance(bytes(32), bytes([0xFF]) * 32) == 256


def test_descriptor_distance_symmetric():
    rng = np.random.default_rng(1)
    a = rng.integers(0, 256, 32, dtype=np.uint8)
    b = rng.integers(0, 256, 32, dtype=np.uint8)
    assert descriptor_distance(a, b) == descriptor_distance(b, a)


def test_ids_increase_and_point_registered():
    world = Map()
    kf = _StubKeyFrame(3)
    p1 = MapPoint((0, 0, 1), world, kf)
    p2 = MapPoint((0, 0, 2), world, kf)
    assert p2.id > p1.id
    assert p1.first_kf_id == 3
    assert p1.first_frame == kf.frame_id


def test_requires_reference_or_frame():
    with pytest.raises(ValueError):
        MapPoint((0, 0, 1), Map())


def test_add_observation_counts_stereo_twice_and_ignores_duplicates():
    world = Map()
    kf1 = _StubKeyFrame(1, stereo={0})
    kf2 = _StubKeyFrame(2)
    point = MapPoint((0, 0, 5), world, kf1)
    point.add_observation(kf1, 0)
    point.add_observation(kf2, 1)
    point.add_observation(kf2, 2)
    assert point.n_obs == 3
    assert point.observations() == {kf1: 0, kf2: 1}
    assert point.index_in_keyframe(kf2) == 1
    assert point.index_in_keyframe(_StubKeyFrame(9)) == -1
    assert point.is_in_keyframe(kf1)


def test_erase_observation_reassigns_reference_and_turns_bad():
    world = Map()
    kf1 = _StubKeyFrame(1, stereo={0})
    kf2 = _StubKeyFrame(2)
    kf3 = _StubKeyFrame(3)
    point = MapPoint((0, 0, 5), world, kf1)
    world.add_map_point(point)
    _observe(point, kf1, 0)
    _observe(point, kf2, 1)
    _observe(point, kf3, 2)

    point.erase_observation(kf3)
    assert not point.is_bad
    assert point.n_obs == 3

    point.erase_observation(kf1)
    assert point.reference_keyframe is kf2
    assert point.is_bad
    assert kf2.matches[1] is None
    assert point not in world.all_map_points()
    assert point.observations() == {}


def test_set_bad_flag_detaches_from_keyframes():
    world = Map()
    kf1 = _StubKeyFrame(1)
    point = MapPoint((0, 0, 5), world, kf1)
    world.add_map_point(point)
    _observe(point, kf1, 2)
    point.set_bad_flag()
    assert point.is_bad
    assert kf1.matches[2] is None
    assert world.map_points_in_map() == 0


def test_found_ratio():
    point = MapPoint((0, 0, 1), Map(), _StubKeyFrame(1))
    assert point.found_ratio() == 1.0
    point.increase_visible(1)
    assert point.found_ratio() == 0.5
    point.increase_found(1)
    assert point.found_ratio() == 1.0


def test_compute_distinctive_descriptors_picks_central_one():
    world = Map()
    common = np.zeros(32, dtype=np.uint8)
    outlier = np.full(32, 0xFF, dtype=np.uint8)
    kf1 = _StubKeyFrame(1, descriptors=np.stack([common] * 4))
    kf2 = _StubKeyFrame(2, descriptors=np.stack([common] * 4))
    kf3 = _StubKeyFrame(3, descriptors=np.stack([outlier] * 4))
    point = MapPoint((0, 0, 1), world, kf1)
    for kf in (kf3, kf1, kf2):
        point.add_observation(kf, 0)
    point.compute_distinctive_descriptors()
    assert np.array_equal(point.descriptor, common)


def test_update_normal_and_depth():
    world = Map()
    kf = _StubKeyFrame(1)
    point = MapPoint((0, 0, 10), world, kf)
    point.add_observation(kf, 0)
    point.update_normal_and_depth()
    assert np.allclose(point.normal, [0.0, 0.0, 1.0])
    assert point.max_distance_invariance() == pytest.approx(1.2 * 10 * kf.scale_factors[0])
    assert point.min_distance_invariance() == pytest.approx(
        0.8 * 10 * kf.scale_factors[0] / kf.scale_factors[-1]
    )


def test_predict_scale_is_clamped():
    world = Map()
    kf = _StubKeyFrame(1)
    point = MapPoint((0, 0, 10), world, kf)
    point.add_observation(kf, 0)
    point.update_normal_and_depth()
    assert point.predict_scale(10.0, kf) == 0
    assert point.predict_scale(100.0, kf) == 0
    assert point.predict_scale(1.0, kf) == kf.scale_levels - 1


def test_replace_moves_observations():
    world = Map()
    kf1 = _StubKeyFrame(1)
    kf2 = _StubKeyFrame(2)
    old = MapPoint((0, 0, 5), world, kf1)
    new = MapPoint((0, 0, 5), world, kf2)
    world.add_map_point(old)
    world.add_map_point(new)
    _observe(old, kf1, 0)
    _observe(old, kf2, 1)
    _observe(new, kf2, 3)

    old.replace(new)

    assert old.is_bad
    assert old.replaced is new
    assert kf1.matches[0] is new
    assert kf2.matches[1] is None
    assert new.observations() == {kf2: 3, kf1: 0}
    assert world.all_map_points() == [new]
    assert new.found_ratio() == 1.0


def test_replace_with_itself_is_noop():
    world = Map()
    kf = _StubKeyFrame(1)
    point = MapPoint((0, 0, 5), world, kf)
    point.add_observation(kf, 0)
    point.replace(point)
    assert not point.is_bad
    assert point.observations() == {kf: 0}


def test_construct_from_frame():
    frame = SimpleNamespace(
        id=7,
        camera_center=np.zeros(3),
        keys_un=[KeyPoint(octave=1)],
        scale_factors=[1.0, 2.0, 4.0],
        scale_levels=3,
        descriptors=np.full((1, 32), 7, dtype=np.uint8),
    )
    point = MapPoint((0, 0, 5), Map(), frame=frame, frame_index=0)
    assert point.first_kf_id == -1
    assert point.first_frame == 7
    assert point.reference_keyframe is None
    assert np.allclose(point.normal, [0.0, 0.0, 1.0])
    assert point.max_distance_invariance() == pytest.approx(1.2 * 5 * 2.0)
    assert point.min_distance_invariance() == pytest.approx(0.8 * 5 * 2.0 / 4.0)
    assert np.array_equal(point.descriptor, frame.descriptors[0])


def test_world_pos_round_trip_and_label():
    point = MapPoint((1, 2, 3), Map(), _StubKeyFrame(1))
    point.world_pos = (4.0, 5.0, 6.0)
    assert np.allclose(point.world_pos, [4.0, 5.0, 6.0])
    point.set_label(11, True, False)
    assert (point.label, point.movable, point.moving) == (11, True, False)