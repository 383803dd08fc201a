import pytest
import numpy as np
from bathy_slam.benchmark import (
    BenchmarkEngine, BenchmarkRecord, STAGE_GROUND_TRUTH, STAGE_CORRUPTED, STAGE_OPTIMIZED,
    umeyama_alignment, track_from_submaps, map_points_from_submaps
)
from bathy_slam.geometry import pose_from_translation_rotvec
from bathy_slam.pose_graph import Submap, SubmapRegistry


@pytest.fixture
def gt_track():
    # Non-collinear so that a rigid alignment is well defined
    return np.array([[0.0, 0.0, -20.0], [5.0, 0.0, -21.0], [10.0, 3.0, -20.5], [8.0, 9.0, -22.0]])

@pytest.fixture
def gt_map():
    return np.random.default_rng(1).random((30, 3)) * 10.0

@pytest.fixture
def engine(gt_map, gt_track):
    eng = BenchmarkEngine("test")
    eng.add_ground_truth(gt_map, gt_track)
    return eng


# --- Error Metric Tests ---
def test_ground_truth_has_zero_error(engine, gt_map, gt_track):
    record = engine.add_benchmark(gt_map, gt_track, STAGE_GROUND_TRUTH)
    assert isinstance(record, BenchmarkRecord)
    assert record.stage == STAGE_GROUND_TRUTH
    assert record.trajectory_error == 0.0
    assert record.map_error == 0.0

def test_shifted_estimate(engine, gt_map, gt_track):
    shift = np.array([1.0, 0.0, 0.0])
    record = engine.add_benchmark(gt_map + shift, gt_track + shift, STAGE_CORRUPTED)
    assert np.isclose(record.trajectory_error, 1.0)
    assert np.isclose(record.map_error, 1.0)

def test_trajectory_error_is_rmse(engine, gt_map, gt_track):
    track = gt_track.copy()
    track[0] += [3.0, 4.0, 0.0] # One position off by 5 m
    record = engine.add_benchmark(gt_map, track, STAGE_CORRUPTED)
    assert np.isclose(record.trajectory_error, np.sqrt(25.0 / 4.0))
    assert record.map_error == 0.0

def test_alignment_removes_rigid_offset(gt_map, gt_track):
    eng = BenchmarkEngine("aligned", align=True)
    eng.add_ground_truth(gt_map, gt_track)
    T = pose_from_translation_rotvec([3.0, -2.0, 1.0], [0.0, 0.0, 0.7])
    moved_track = gt_track @ T[:3,:3].T + T[:3,3]
    moved_map = gt_map @ T[:3,:3].T + T[:3,3]
    record = eng.add_benchmark(moved_map, moved_track, STAGE_OPTIMIZED)
    assert record.trajectory_error < 1e-9
    assert record.map_error < 1e-9

def test_umeyama_alignment(gt_track):
    T = pose_from_translation_rotvec([1.0, 2.0, 3.0], [0.2, -0.1, 0.5])
    R, t = umeyama_alignment(gt_track, gt_track @ T[:3,:3].T + T[:3,3])
    assert np.allclose(R, T[:3,:3], atol=1e-10)
    assert np.allclose(t, T[:3,3], atol=1e-10)


# --- Contract Tests ---
def test_benchmark_before_ground_truth(gt_map, gt_track):
    with pytest.raises(ValueError, match="add_ground_truth"):
        BenchmarkEngine("empty").add_benchmark(gt_map, gt_track, STAGE_CORRUPTED)

def test_ground_truth_only_once(engine, gt_map, gt_track):
    with pytest.raises(ValueError, match="already"):
        engine.add_ground_truth(gt_map, gt_track)

def test_duplicate_stage(engine, gt_map, gt_track):
    engine.add_benchmark(gt_map, gt_track, STAGE_CORRUPTED)
    with pytest.raises(ValueError, match="already recorded"):
        engine.add_benchmark(gt_map, gt_track, STAGE_CORRUPTED)

def test_shape_mismatch(engine, gt_map, gt_track):
    with pytest.raises(ValueError, match="Track shape"):
        engine.add_benchmark(gt_map, gt_track[:2], STAGE_CORRUPTED)
    with pytest.raises(ValueError, match="Map shape"):
        engine.add_benchmark(gt_map[:5], gt_track, STAGE_CORRUPTED)
    with pytest.raises(ValueError, match="N x 3"):
        engine.add_benchmark(gt_map, gt_track[:, :2], STAGE_CORRUPTED)

def test_ground_truth_is_immutable(gt_map, gt_track):
    eng = BenchmarkEngine("immutable")
    eng.add_ground_truth(gt_map, gt_track)
    gt_track[0] = [100.0, 100.0, 100.0] # Caller modifies its own array afterwards
    record = eng.add_benchmark(gt_map, eng.gt_track.copy(), STAGE_GROUND_TRUTH)
    assert record.trajectory_error == 0.0
    assert not np.allclose(eng.gt_track[0], [100.0, 100.0, 100.0])
    with pytest.raises(ValueError):
        eng.gt_track[0,0] = 1.0


# --- Summary Tests ---
def test_summary(engine, gt_map, gt_track, capsys):
    engine.add_benchmark(gt_map, gt_track, STAGE_GROUND_TRUTH)
    engine.add_benchmark(gt_map + 0.5, gt_track + 0.5, STAGE_CORRUPTED)
    summary = engine.summary()
    lines = summary.splitlines()
    assert lines[0] == "Benchmark 'test'"
    assert lines[1].startswith(STAGE_GROUND_TRUTH)
    assert "trajectory_error=0.000000" in lines[1]
    assert lines[2].startswith(STAGE_CORRUPTED)
    engine.print_summary()
    assert capsys.readouterr().out.strip() == summary


# --- Submap Helpers Tests ---
def test_track_and_map_from_submaps():
    cloud = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
    submaps = SubmapRegistry([
        Submap(0, np.eye(4), cloud),
        Submap(1, pose_from_translation_rotvec([5.0, 0.0, 0.0], [0.0, 0.0, np.pi/2]), cloud),
    ])
    assert np.allclose(track_from_submaps(submaps), [[0.0, 0.0, 0.0], [5.0, 0.0, 0.0]])
    expected_map = [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [5.0, 1.0, 0.0], [4.0, 0.0, 0.0]]
    assert np.allclose(map_points_from_submaps(submaps), expected_map, atol=1e-12)
    assert map_points_from_submaps(SubmapRegistry()).shape == (0, 3)
