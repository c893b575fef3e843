# covislam

Building blocks for a feature-based visual SLAM back end. Keypoints and map
points carry semantic labels, so that points on movable objects can be told
apart from static scenery.

## Modules

- `covislam.keypoint`: `KeyPoint`, a dataclass with position, size, angle,
  response, octave, a semantic `label` and `movable` / `moving` flags.
  `set_label(label, movable_labels)` sets the label and marks the keypoint
  movable and moving when the label is one of `movable_labels`.
- `covislam.imaging`: grayscale helpers used by the extractor:
  `fast_detect` (FAST-9 corners with optional non-maximum suppression),
  `gaussian_blur` (separable, reflect-101 borders), `resize_linear`
  (bilinear, pixel-centre aligned) and `pad_reflect_101`.
- `covislam.orb_pattern`: `pattern_points()` returns the 512 sampling offsets
  of the 256-test binary pattern; `compute_umax()` the row half-widths of the
  circular patch used for orientation.
- `covislam.orb_descriptor`: `ic_angle` (intensity-centroid orientation in
  degrees), `orb_descriptor` (one 32-byte rotated binary descriptor),
  `compute_orientation` and `compute_descriptors`.
- `covislam.orb_extractor`: `ORBExtractor` builds a scale pyramid
  (`compute_pyramid`), detects FAST corners in a grid of cells on each level
  and spreads them with a quadtree of `ExtractorNode`s
  (`compute_keypoints_oct_tree`, `distribute_oct_tree`), keeping the
  strongest corner per cell. Calling the extractor on an 8-bit
  single-channel image returns the keypoints and an `(n, 32)` `uint8`
  descriptor array.
- `covislam.map`: `Map`, a thread-safe set of keyframes and map points with
  reference points, a big-change counter and the largest keyframe id.
- `covislam.mappoint`: `MapPoint`, a 3D landmark with its observations,
  found / visible counters, representative descriptor
  (`compute_distinctive_descriptors`), mean viewing direction and
  scale-invariance distances (`update_normal_and_depth`, `predict_scale`).
  `descriptor_distance(a, b)` is the Hamming distance between two binary
  descriptors.
- `covislam.keyframe`: `KeyFrame`, with its pose (`set_pose`, `pose`,
  `pose_inverse`, `camera_center`), a feature grid (`features_in_area`),
  per-feature map point matches, the covisibility graph
  (`update_connections`, `best_covisibility_keyframes`,
  `covisibles_by_weight`), the spanning tree (`parent`, `children`,
  `change_parent`), loop edges and erasure (`set_bad_flag`).
- `covislam.keyframe_database`: `KeyFrameDatabase`, an inverted index from
  visual words to keyframes, with `detect_loop_candidates` (using the
  bag of words built from non-movable features only) and
  `detect_relocalization_candidates`.
- `covislam.triangulation`: `skew_symmetric`, `compute_f12` (fundamental
  matrix between two keyframes), `linear_triangulation` and
  `triangulate_matches`, which applies the parallax, cheirality,
  reprojection and scale-consistency checks to index pairs.
- `covislam.local_mapping`: `LocalMapping` queues keyframes
  (`insert_keyframe`), processes them (`process_new_keyframe`), culls recent
  map points (`map_point_culling`) and redundant keyframes
  (`keyframe_culling`), triangulates new points with its neighbours
  (`create_new_map_points`), and offers stop / release / reset / finish
  control for use from other threads.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Example

```python
import numpy as np
from covislam.orb_extractor import ORBExtractor

image = (np.random.default_rng(0).random((240, 320)) * 255).astype(np.uint8)
extractor = ORBExtractor(1000, 1.2, 8, 20, 7)
keypoints, descriptors = extractor(image)
print(len(keypoints), descriptors.shape)
```

Keypoint coordinates are returned in the scale of the original image.

## What it does not do

This is a library of parts, not a running SLAM system. It has no command, no
viewer and no storage of maps on disk. It contains no bag-of-words
vocabulary, no descriptor matcher, no tracking, no loop closing and no bundle
adjustment or pose-graph optimisation. Those are supplied by the caller:

- `KeyFrame.compute_bow` and `compute_static_bow` take a vocabulary object
  with `transform(descriptors, levels_up)` returning `(bow_vec, feat_vec)`.
- `KeyFrameDatabase` takes a vocabulary supporting `len()` and
  `score(bow_a, bow_b)`.
- `LocalMapping.create_new_map_points` takes a
  `search_matches(current, neighbour, f12)` callable returning pairs of
  feature indices; `LocalMapping` itself does not fuse duplicated points or
  run a local bundle adjustment.