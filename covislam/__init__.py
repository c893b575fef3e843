"""Keyframes, map points, covisibility graph, local mapping and ORB feature extraction."""

__version__ = "0.1.0"