[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "covislam"
version = "0.1.0"
description = "Covisibility-graph map management and ORB feature extraction for semantic visual SLAM"
requires-python = ">=3.10"
keywords = ["slam", "orb", "keyframe", "covisibility", "computer-vision", "mapping"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Image Processing",
]
dependencies = [
    "numpy",
    "scipy",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["covislam"]

[tool.pytest.ini_options]
addopts = "-ra"
