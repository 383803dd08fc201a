import contextlib
import logging
import os
import re
import tempfile

import numpy as np

from .geometry import pose_from_translation_quat, pose_to_translation_quat
from .pose_graph import EDGE_TYPES, PoseGraph, PoseGraphEdge, Submap, SubmapRegistry

logger = logging.getLogger("bathy_slam.io")

VERTEX_TAG = "VERTEX_SE3:QUAT"
EDGE_TAG = "EDGE_SE3:QUAT"
_UPPER = np.triu_indices(6)
_COV_FILE_RE = re.compile(r"^(\d+)_(\d+)\.txt$")


def _fmt(values):
    return " ".join(format(float(v), ".17g") for v in values)


def _current_umask():
    mask = os.umask(0)
    os.umask(mask)
    return mask


@contextlib.contextmanager
def atomic_write(filepath, mode='w'):
    """
    Yields a file object on a temporary file next to `filepath` and moves it into place
    only if the block completes, so an existing output is never left half-written.
    """
    directory = os.path.dirname(os.path.abspath(filepath))
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp_", dir=directory)
    try:
        with os.fdopen(fd, mode) as f:
            yield f
        # mkstemp creates 0600; give the output the mode a plain open() would
        os.chmod(tmp_path, 0o666 & ~_current_umask())
        os.replace(tmp_path, filepath)
    except BaseException:
        os.unlink(tmp_path)
        raise


# --- Graph text format ---

def write_graph(filepath, graph):
    """
    Writes a pose graph as text:
        VERTEX_SE3:QUAT id x y z qx qy qz qw
        EDGE_SE3:QUAT kind from to x y z qx qy qz qw I11 I12 .. I16 I22 .. I66
    where I is the upper triangle of the 6x6 information matrix, row by row.
    """
    with atomic_write(filepath) as f:
        for node_id, pose in graph.nodes.items():
            t, q = pose_to_translation_quat(pose)
            f.write(f"{VERTEX_TAG} {node_id} {_fmt(t)} {_fmt(q)}\n")
        for edge in graph.edges:
            t, q = pose_to_translation_quat(edge.relative_pose_se3)
            info = edge.information_matrix[_UPPER]
            f.write(f"{EDGE_TAG} {edge.type} {edge.from_node_id} {edge.to_node_id} {_fmt(t)} {_fmt(q)} {_fmt(info)}\n")
    logger.info("Wrote graph with %d nodes and %d edges to %s", len(graph.nodes), len(graph.edges), filepath)


def _parse_pose(tokens):
    values = [float(v) for v in tokens]
    return pose_from_translation_quat(values[:3], values[3:7])


def read_graph(filepath):
    """Reads a graph written by write_graph. Returns a PoseGraph."""
    if not os.path.isfile(filepath):
        raise FileNotFoundError(f"Graph file not found: {filepath}")

    vertices, edges = [], []
    with open(filepath, 'r') as f:
        for line_no, line in enumerate(f, start=1):
            tokens = line.split()
            if not tokens or tokens[0].startswith('#'):
                continue
            try:
                if tokens[0] == VERTEX_TAG:
                    if len(tokens) != 9:
                        raise ValueError(f"expected 9 fields, got {len(tokens)}")
                    vertices.append((int(tokens[1]), _parse_pose(tokens[2:9])))
                elif tokens[0] == EDGE_TAG:
                    if len(tokens) != 32:
                        raise ValueError(f"expected 32 fields, got {len(tokens)}")
                    kind = tokens[1]
                    if kind not in EDGE_TYPES:
                        raise ValueError(f"unknown edge kind '{kind}'")
                    info = np.zeros((6,6))
                    info[_UPPER] = [float(v) for v in tokens[11:32]]
                    info = info + info.T - np.diag(np.diag(info))
                    edges.append(PoseGraphEdge(int(tokens[2]), int(tokens[3]), _parse_pose(tokens[4:11]), info, kind))
                else:
                    raise ValueError(f"unknown tag '{tokens[0]}'")
            except ValueError as exc:
                raise ValueError(f"{filepath}:{line_no}: {exc}") from None

    graph = PoseGraph()
    for node_id, pose in vertices:
        graph.add_node(node_id, pose)
    for edge in edges:
        graph.add_edge(edge)
    return graph


# --- Submap archive ---

def write_archive(filepath, submaps):
    """Stores submaps (ids, poses, clouds, covariances) in one compressed .npz archive."""
    submaps = list(submaps)
    ids = np.array([sm.id for sm in submaps], dtype=np.int64)
    poses = np.array([sm.pose for sm in submaps]).reshape(-1, 4, 4)
    counts = np.array([len(sm.points) for sm in submaps], dtype=np.int64)
    points = np.vstack([sm.points for sm in submaps]) if submaps else np.empty((0, 3))
    covariances = np.array([sm.covariance if sm.covariance is not None else np.full((6,6), np.nan)
                            for sm in submaps]).reshape(-1, 6, 6)
    with atomic_write(filepath, 'wb') as f:
        np.savez_compressed(f, ids=ids, poses=poses, counts=counts, points=points, covariances=covariances)
    logger.info("Wrote %d submaps to %s", len(submaps), filepath)


def read_archive(filepath):
    """Reads an archive written by write_archive. Returns a SubmapRegistry."""
    if not os.path.isfile(filepath):
        raise FileNotFoundError(f"Submap archive not found: {filepath}")
    with np.load(filepath, allow_pickle=False) as data:
        missing = {"ids", "poses", "counts", "points", "covariances"} - set(data.files)
        if missing:
            raise ValueError(f"Submap archive {filepath} is missing arrays {sorted(missing)}.")
        ids, poses, counts = data["ids"], data["poses"], data["counts"]
        points, covariances = data["points"], data["covariances"]

    if not (len(ids) == len(poses) == len(counts) == len(covariances)) or counts.sum() != len(points):
        raise ValueError(f"Submap archive {filepath} is inconsistent.")
    registry = SubmapRegistry()
    offsets = np.concatenate(([0], np.cumsum(counts)))
    for k, submap_id in enumerate(ids):
        cov = covariances[k]
        registry.append(Submap(int(submap_id), poses[k], points[offsets[k]:offsets[k + 1]],
                               None if np.all(np.isnan(cov)) else cov))
    return registry


def read_submap_dir(dirpath):
    """
    Reads a simulation directory: one .npz per submap with arrays `pose` (4x4) and
    `points` (N,3), taken in sorted file name order. Ids follow that order.
    """
    if not os.path.isdir(dirpath):
        raise FileNotFoundError(f"Submap directory not found: {dirpath}")
    files = sorted(name for name in os.listdir(dirpath) if name.endswith(".npz"))
    if not files:
        raise ValueError(f"No .npz submaps found in {dirpath}")
    registry = SubmapRegistry()
    for name in files:
        with np.load(os.path.join(dirpath, name), allow_pickle=False) as data:
            if "pose" not in data.files or "points" not in data.files:
                raise ValueError(f"{name} must contain 'pose' and 'points' arrays.")
            registry.add_submap(data["pose"], data["points"])
    logger.info("Read %d submaps from %s", len(registry), dirpath)
    return registry


# --- Loop closure covariances ---

def read_covariances(dirpath):
    """
    Reads loop-closure covariances from files named `<i>_<j>.txt`, each holding
    the 36 entries of a 6x6 matrix. Returns {(i, j): 6x6 array}.
    """
    if not os.path.isdir(dirpath):
        raise FileNotFoundError(f"Covariance directory not found: {dirpath}")
    covs = {}
    for name in sorted(os.listdir(dirpath)):
        match = _COV_FILE_RE.match(name)
        if not match:
            logger.debug("Skipping %s in covariance directory", name)
            continue
        values = np.loadtxt(os.path.join(dirpath, name), dtype=float).ravel()
        if values.size != 36:
            raise ValueError(f"{name}: expected 36 covariance entries, got {values.size}.")
        covs[(int(match.group(1)), int(match.group(2)))] = values.reshape(6, 6)
    logger.info("Read %d loop closure covariances from %s", len(covs), dirpath)
    return covs


class TrajWriter:
    def __init__(self, filepath):
        self.filepath = filepath

    def write(self, ids, poses):
        """
        Writes submap ids and their SE(3) poses to a TXT file.
        Each line: id tx ty tz qx qy qz qw
        """
        if len(ids) != len(poses):
            raise ValueError("ids and poses must have the same length.")
        with atomic_write(self.filepath) as f:
            for submap_id, pose in zip(ids, poses):
                pose = np.asarray(pose, dtype=float)
                if pose.shape != (4,4):
                    raise ValueError("Poses must be 4x4 arrays.")
                t, q = pose_to_translation_quat(pose)
                f.write(f"{submap_id} {_fmt(t)} {_fmt(q)}\n")
