"""Targetless spatiotemporal calibration of multi-sensor rigs."""

__version__ = "0.1.0"
