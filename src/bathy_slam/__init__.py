"""Offline pose-graph SLAM backend for bathymetric submaps."""

__version__ = "0.1.0"
