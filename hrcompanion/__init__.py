"""Companion device monitor for Polar heart-rate sensors."""

__version__ = "0.1.0"
