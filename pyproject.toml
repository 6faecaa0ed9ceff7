[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mocapcore"
version = "0.1.0"
description = "Wand detection, marker tracking and multi-camera extrinsic calibration for optical motion capture"
requires-python = ">=3.10"
keywords = ["motion capture", "calibration", "computer vision", "triangulation", "wand", "bundle adjustment"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Image Recognition",
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
packages = ["mocapcore"]

[tool.pytest.ini_options]
addopts = "-ra"
