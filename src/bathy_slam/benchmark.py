import logging
import math
from collections import namedtuple

import numpy as np

logger = logging.getLogger("bathy_slam.benchmark")

STAGE_GROUND_TRUTH = 'ground_truth'
STAGE_CORRUPTED = 'corrupted'
STAGE_OPTIMIZED = 'optimized'

BenchmarkRecord = namedtuple('BenchmarkRecord', ['stage', 'trajectory_error', 'map_error'])


def umeyama_alignment(A, B):
    """Rigid alignment from A->B (Nx3). Returns R (3x3), t (3)."""
    muA, muB = A.mean(0), B.mean(0)
    AA, BB = A - muA, B - muB
    C = AA.T @ BB / A.shape[0]
    U, S, Vt = np.linalg.svd(C)
    R = Vt.T @ U.T
    if np.linalg.det(R) < 0:
        Vt[-1, :] *= -1
        R = Vt.T @ U.T
    t = muB - R @ muA
    return R, t


def track_from_submaps(submaps):
    """(N,3) submap positions in temporal order."""
    return np.array([sm.pose[:3,3] for sm in submaps]).reshape(-1, 3)


def map_points_from_submaps(submaps):
    """All submap clouds in the world frame, stacked in temporal order."""
    clouds = [sm.world_points() for sm in submaps]
    return np.vstack(clouds) if clouds else np.empty((0, 3))


def _as_points(points, name):
    points = np.asarray(points, dtype=float)
    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError(f"{name} must be an N x 3 array.")
    return points


class BenchmarkEngine:
    """
    Compares estimated maps/trajectories against a fixed ground truth.

    Trajectory error is the RMSE of the submap positions, map error the mean distance between
    corresponding map points. With align=True the estimate is first rigidly aligned to the
    ground-truth track (Umeyama); otherwise both are assumed to share a frame.
    """

    def __init__(self, name, align=False):
        self.name = name
        self.align = align
        self.gt_map = None
        self.gt_track = None
        self.records = []

    def add_ground_truth(self, map_points, track):
        if self.gt_track is not None:
            raise ValueError("Ground truth already registered.")
        gt_map = np.array(_as_points(map_points, "map_points"))
        gt_track = np.array(_as_points(track, "track"))
        gt_map.flags.writeable = False
        gt_track.flags.writeable = False
        self.gt_map, self.gt_track = gt_map, gt_track

    def add_benchmark(self, map_points, track, stage):
        """
        Computes and records the errors of one pipeline stage.

        Returns:
            BenchmarkRecord
        """
        if self.gt_track is None:
            raise ValueError("add_ground_truth must be called before add_benchmark.")
        if any(rec.stage == stage for rec in self.records):
            raise ValueError(f"Stage '{stage}' already recorded.")
        map_points = _as_points(map_points, "map_points")
        track = _as_points(track, "track")
        if track.shape != self.gt_track.shape:
            raise ValueError(f"Track shape {track.shape} does not match ground truth {self.gt_track.shape}.")
        if map_points.shape != self.gt_map.shape:
            raise ValueError(f"Map shape {map_points.shape} does not match ground truth {self.gt_map.shape}.")

        if self.align and len(track) >= 3:
            R, t = umeyama_alignment(track, self.gt_track)
            track = track @ R.T + t
            map_points = map_points @ R.T + t

        track_err = np.linalg.norm(track - self.gt_track, axis=1)
        trajectory_error = math.sqrt(np.mean(track_err**2)) if len(track_err) else 0.0
        map_error = float(np.mean(np.linalg.norm(map_points - self.gt_map, axis=1))) if len(map_points) else 0.0

        record = BenchmarkRecord(stage, float(trajectory_error), map_error)
        self.records.append(record)
        logger.info("Benchmark %s/%s: trajectory %.6f, map %.6f", self.name, stage, trajectory_error, map_error)
        return record

    def summary(self):
        lines = [f"Benchmark '{self.name}'"]
        for rec in self.records:
            lines.append(f"{rec.stage:<14s} trajectory_error={rec.trajectory_error:.6f} map_error={rec.map_error:.6f}")
        return "\n".join(lines)

    def print_summary(self):
        print(self.summary())
