"""Wand detection, marker tracking and extrinsic calibration for optical motion capture."""

__version__ = "0.1.0"
__all__ = ["calibration", "observation", "pointchecker", "transforms", "wanddetector"]