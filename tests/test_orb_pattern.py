import pytest

from covislam.orb_pattern import (
    HALF_PATCH_SIZE,
    compute_umax,
    pattern_points,
)


def test_pattern_has_512_points():
    assert len(pattern_points()) == 512


def test_pattern_first_and_last_points():
    points = pattern_points()
    assert points[0] == (8, -3)
    assert points[1] == (9, 5)
    assert points[-2] == (-1, -6)
    assert points[-1] == (0, -11)


def test_pattern_fits_inside_patch():
    points = pattern_points()
    assert all(-13 <= x <= 12 and -13 <= y <= 12 for x, y in points)


def test_umax_default_patch():
    assert compute_umax() == [15, 15, 15, 15, 14, 14, 14, 13, 13, 12, 11, 10, 9, 8, 6, 3]


def test_umax_is_non_increasing_and_starts_at_radius():
    umax = compute_umax(HALF_PATCH_SIZE)
    assert len(umax) == HALF_PATCH_SIZE + 1
    assert umax[0] == HALF_PATCH_SIZE
    assert all(a >= b for a, b in zip(umax, umax[1:]))


def test_umax_patch_is_symmetric_under_transpose():
    umax = compute_umax(HALF_PATCH_SIZE)
    patch = {
        (u, v)
        for v in range(-HALF_PATCH_SIZE, HALF_PATCH_SIZE + 1)
        for u in range(-umax[abs(v)], umax[abs(v)] + 1)
    }
    assert patch == {(v, u) for u, v in patch}


def test_umax_rejects_non_positive_size():
    with pytest.raises(ValueError):
        compute_umax(0)