import pytest
import os
import numpy as np
from bathy_slam.geometry import pose_from_translation_rotvec, pose_to_translation_quat
from bathy_slam.io import (
    TrajWriter, atomic_write, read_archive, read_covariances, read_graph, read_submap_dir,
    write_archive, write_graph
)
from bathy_slam.pose_graph import (
    Submap, SubmapRegistry, PoseGraph, PoseGraphEdge, DEAD_RECKONING, LOOP_CLOSURE
)


def random_spd(rng):
    A = rng.random((6, 6))
    return A @ A.T + np.eye(6)

@pytest.fixture
def sample_graph():
    rng = np.random.default_rng(5)
    graph = PoseGraph()
    for k in range(4):
        graph.add_node(k, pose_from_translation_rotvec(rng.random(3) * 50.0, (rng.random(3) - 0.5) * 4.0))
    for k in range(3):
        rel = pose_from_translation_rotvec(rng.random(3), (rng.random(3) - 0.5))
        graph.add_edge(PoseGraphEdge(k, k + 1, rel, random_spd(rng), DEAD_RECKONING))
    graph.add_edge(PoseGraphEdge(0, 3, pose_from_translation_rotvec([1.0, 2.0, 3.0], [0.0, 0.0, 3.0]),
                                 np.eye(6) * 1e6, LOOP_CLOSURE))
    return graph

@pytest.fixture
def sample_submaps():
    rng = np.random.default_rng(6)
    return SubmapRegistry([
        Submap(0, np.eye(4), rng.random((10, 3))),
        Submap(1, pose_from_translation_rotvec([5.0, 1.0, -2.0], [0.0, 0.1, 0.5]), rng.random((7, 3)),
               covariance=np.diag([0.01] * 3 + [1e-4] * 3)),
        Submap(5, pose_from_translation_rotvec([9.0, 3.0, -2.5], [0.0, 0.0, 1.0]), rng.random((12, 3))),
    ])


# --- Graph File Tests ---
def test_graph_roundtrip(tmp_path, sample_graph):
    filepath = tmp_path / "graph.g2o"
    write_graph(str(filepath), sample_graph)
    loaded = read_graph(str(filepath))

    assert loaded.node_ids == sample_graph.node_ids
    for nid in sample_graph.node_ids:
        assert np.allclose(loaded.nodes[nid], sample_graph.nodes[nid], atol=1e-9)
    assert len(loaded.edges) == len(sample_graph.edges)
    for original, edge in zip(sample_graph.edges, loaded.edges):
        assert (edge.from_node_id, edge.to_node_id, edge.type) == (original.from_node_id, original.to_node_id, original.type)
        assert np.allclose(edge.relative_pose_se3, original.relative_pose_se3, atol=1e-9)
        assert np.allclose(edge.information_matrix, original.information_matrix, atol=1e-9)

def test_graph_file_format(tmp_path, sample_graph):
    filepath = tmp_path / "graph.g2o"
    write_graph(str(filepath), sample_graph)
    lines = filepath.read_text().splitlines()
    assert len(lines) == 4 + 4
    vertex = lines[0].split()
    assert vertex[0] == "VERTEX_SE3:QUAT"
    assert len(vertex) == 9
    edge = lines[-1].split()
    assert edge[:4] == ["EDGE_SE3:QUAT", LOOP_CLOSURE, "0", "3"]
    assert len(edge) == 32
    # Upper triangle row by row: I11 first, I66 last
    assert float(edge[11]) == 1e6 and float(edge[31]) == 1e6 and float(edge[12]) == 0.0

def test_read_graph_skips_comments(tmp_path, sample_graph):
    filepath = tmp_path / "graph.g2o"
    write_graph(str(filepath), sample_graph)
    content = "# exported graph\n\n" + filepath.read_text()
    filepath.write_text(content)
    assert len(read_graph(str(filepath)).nodes) == 4

def test_read_graph_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_graph(str(tmp_path / "missing.g2o"))

def test_read_graph_malformed_line(tmp_path):
    filepath = tmp_path / "bad.g2o"
    filepath.write_text("VERTEX_SE3:QUAT 0 0 0 0 0 0 0 1\nVERTEX_SE3:QUAT 1 0 0\n")
    with pytest.raises(ValueError, match="bad.g2o:2"):
        read_graph(str(filepath))

def test_read_graph_unknown_edge_kind(tmp_path):
    filepath = tmp_path / "bad.g2o"
    identity_info = " ".join("1" if i == j else "0" for i in range(6) for j in range(i, 6))
    filepath.write_text("VERTEX_SE3:QUAT 0 0 0 0 0 0 0 1\n"
                        "VERTEX_SE3:QUAT 1 1 0 0 0 0 0 1\n"
                        f"EDGE_SE3:QUAT odometry 0 1 1 0 0 0 0 0 1 {identity_info}\n")
    with pytest.raises(ValueError, match="unknown edge kind"):
        read_graph(str(filepath))

def test_read_graph_unknown_tag(tmp_path):
    filepath = tmp_path / "bad.g2o"
    filepath.write_text("FIX 0\n")
    with pytest.raises(ValueError, match="unknown tag"):
        read_graph(str(filepath))


# --- Archive Tests ---
def test_archive_roundtrip(tmp_path, sample_submaps):
    filepath = str(tmp_path / "submaps.npz")
    write_archive(filepath, sample_submaps)
    loaded = read_archive(filepath)

    assert loaded.ids() == [0, 1, 5]
    for original, sm in zip(sample_submaps, loaded):
        assert np.allclose(sm.pose, original.pose)
        assert np.array_equal(sm.points, original.points)
    assert loaded.get_submap_by_id(0).covariance is None
    assert np.allclose(loaded.get_submap_by_id(1).covariance, sample_submaps.get_submap_by_id(1).covariance)

def test_read_archive_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_archive(str(tmp_path / "missing.npz"))

def test_read_archive_missing_arrays(tmp_path):
    filepath = str(tmp_path / "partial.npz")
    np.savez(filepath, ids=np.arange(2), poses=np.stack([np.eye(4)] * 2))
    with pytest.raises(ValueError, match="missing arrays"):
        read_archive(filepath)

def test_read_archive_inconsistent(tmp_path):
    filepath = str(tmp_path / "inconsistent.npz")
    np.savez(filepath, ids=np.arange(2), poses=np.stack([np.eye(4)] * 2), counts=np.array([3, 3]),
             points=np.zeros((5, 3)), covariances=np.full((2, 6, 6), np.nan))
    with pytest.raises(ValueError, match="inconsistent"):
        read_archive(filepath)

def test_read_submap_dir(tmp_path):
    sim_dir = tmp_path / "sim"
    sim_dir.mkdir()
    for k in [2, 0, 1]: # Written out of order, read in sorted name order
        pose = pose_from_translation_rotvec([float(k), 0.0, 0.0], [0.0, 0.0, 0.0])
        np.savez(str(sim_dir / f"submap_{k:03d}.npz"), pose=pose, points=np.full((4, 3), float(k)))
    (sim_dir / "notes.txt").write_text("ignored")

    submaps = read_submap_dir(str(sim_dir))
    assert submaps.ids() == [0, 1, 2]
    assert [sm.position[0] for sm in submaps] == [0.0, 1.0, 2.0]
    assert np.all(submaps.get_submap_by_id(2).points == 2.0)

def test_read_submap_dir_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_submap_dir(str(tmp_path / "nope"))
    empty = tmp_path / "empty"
    empty.mkdir()
    with pytest.raises(ValueError, match="No .npz"):
        read_submap_dir(str(empty))
    np.savez(str(empty / "bad.npz"), pose=np.eye(4))
    with pytest.raises(ValueError, match="'pose' and 'points'"):
        read_submap_dir(str(empty))


# --- Covariance Folder Tests ---
def test_read_covariances(tmp_path):
    cov_dir = tmp_path / "covs"
    cov_dir.mkdir()
    cov = np.diag(np.arange(1.0, 7.0))
    np.savetxt(str(cov_dir / "0_4.txt"), cov)
    np.savetxt(str(cov_dir / "12_30.txt"), np.eye(6).ravel())
    (cov_dir / "README.md").write_text("not a covariance")

    covs = read_covariances(str(cov_dir))
    assert set(covs.keys()) == {(0, 4), (12, 30)}
    assert np.allclose(covs[(0, 4)], cov)
    assert np.allclose(covs[(12, 30)], np.eye(6))

def test_read_covariances_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_covariances(str(tmp_path / "missing"))
    cov_dir = tmp_path / "covs"
    cov_dir.mkdir()
    np.savetxt(str(cov_dir / "1_3.txt"), np.eye(3))
    with pytest.raises(ValueError, match="36"):
        read_covariances(str(cov_dir))


# --- TrajWriter Tests ---
def test_traj_writer_basic(tmp_path):
    filepath = tmp_path / "poses.txt"
    poses = [np.eye(4), pose_from_translation_rotvec([1.0, 2.0, 3.0], [0.0, 0.0, np.pi/2])]
    TrajWriter(str(filepath)).write([0, 7], poses)

    lines = filepath.read_text().splitlines()
    assert len(lines) == 2
    first = lines[0].split()
    assert first[0] == "0"
    assert np.allclose([float(v) for v in first[1:]], [0, 0, 0, 0, 0, 0, 1])
    second = [float(v) for v in lines[1].split()]
    assert second[0] == 7
    t, q = pose_to_translation_quat(poses[1])
    assert np.allclose(second[1:4], t)
    assert np.allclose(second[4:], q)

def test_traj_writer_invalid_input(tmp_path):
    filepath = tmp_path / "poses.txt"
    with pytest.raises(ValueError, match="same length"):
        TrajWriter(str(filepath)).write([0, 1], [np.eye(4)])
    with pytest.raises(ValueError, match="4x4"):
        TrajWriter(str(filepath)).write([0, 1], [np.eye(4), np.eye(3)])

def test_failed_write_keeps_existing_file(tmp_path):
    filepath = tmp_path / "poses.txt"
    filepath.write_text("previous content\n")
    with pytest.raises(ValueError):
        TrajWriter(str(filepath)).write([0, 1], [np.eye(4), np.eye(3)])
    assert filepath.read_text() == "previous content\n"
    # No temporary files left behind
    assert os.listdir(str(tmp_path)) == ["poses.txt"]

def test_atomic_write(tmp_path):
    filepath = str(tmp_path / "out.txt")
    with atomic_write(filepath) as f:
        f.write("done\n")
        assert not os.path.exists(filepath)
    with open(filepath) as f:
        assert f.read() == "done\n"

def test_written_files_follow_umask(tmp_path):
    old_mask = os.umask(0o022)
    try:
        filepath = tmp_path / "poses.txt"
        TrajWriter(str(filepath)).write([0], [np.eye(4)])
        assert os.stat(str(filepath)).st_mode & 0o777 == 0o644
    finally:
        os.umask(old_mask)
