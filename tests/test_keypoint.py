import pytest

from covislam.keypoint import KeyPoint


def test_new_keypoint_is_unlabelled_and_movable():
    kp = KeyPoint(x=3.0, y=4.0, size=31.0)
    assert kp.label == 0
    assert kp.movable is True
    assert kp.moving is True


def test_pt_returns_position():
    kp = KeyPoint(x=1.5, y=2.5)
    assert kp.pt == (1.5, 2.5)


def test_set_label_in_movable_set():
    kp = KeyPoint()
    kp.set_label(15, [15, 3, 7])
    assert kp.label == 15
    assert kp.movable is True
    assert kp.moving is True


def test_set_label_outside_movable_set():
    kp = KeyPoint()
    kp.set_label(2, (15, 3, 7))
    assert kp.label == 2
    assert kp.movable is False
    assert kp.moving is False


@pytest.mark.parametrize("label", [0, 1, 5, 40])
def test_movable_and_moving_agree(label):
    kp = KeyPoint()
    kp.set_label(label, {1, 40})
    assert kp.movable == kp.moving == (label in {1, 40})


def test_set_label_accepts_generator():
    kp = KeyPoint()
    kp.set_label(4, (n for n in range(3, 6)))
    assert kp.movable is True


def test_fields_are_mutable():
    kp = KeyPoint(x=1.0, y=1.0, octave=0)
    kp.x *= 2
    kp.octave = 3
    assert kp.pt == (2.0, 1.0)
    assert kp.octave == 3