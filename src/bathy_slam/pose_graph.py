import itertools
import logging
from collections import namedtuple

import numpy as np

logger = logging.getLogger("bathy_slam.pose_graph")

DEAD_RECKONING = 'dead_reckoning'
LOOP_CLOSURE = 'loop_closure'
EDGE_TYPES = (DEAD_RECKONING, LOOP_CLOSURE)

# Dead-reckoning edges without a covariance get identity * this scale as information.
DEFAULT_INFORMATION_SCALE = 1.0


class GraphValidationError(ValueError):
    """Raised when a pose graph is ill-posed. `node_ids` lists the offending nodes."""

    def __init__(self, message, node_ids=()):
        super().__init__(message)
        self.node_ids = tuple(node_ids)


class Submap:
    def __init__(self, submap_id, pose_se3, points, covariance=None):
        """
        Represents a submap.

        Args:
            submap_id (int): A unique identifier for this submap.
            pose_se3 (np.ndarray): The SE(3) pose (4x4 matrix) of this submap's origin
                                   in the world frame.
            points (np.ndarray): (N,3) point cloud expressed in the submap frame.
                                 The submap keeps its own copy.
            covariance (np.ndarray, optional): (6,6) covariance of the relative motion
                                               from the temporal predecessor to this submap.
        """
        if not isinstance(pose_se3, np.ndarray) or pose_se3.shape != (4,4):
            raise ValueError("pose_se3 must be a 4x4 numpy array.")
        points = np.asarray(points, dtype=float)
        if points.ndim != 2 or points.shape[1] != 3:
            raise ValueError("points must be an N x 3 array.")
        if covariance is not None:
            covariance = np.asarray(covariance, dtype=float)
            if covariance.shape != (6,6):
                raise ValueError("covariance must be a 6x6 array.")

        self.id = int(submap_id)
        self.pose = np.array(pose_se3, dtype=float)
        self.points = np.array(points)
        self.covariance = np.copy(covariance) if covariance is not None else None

    def set_pose(self, pose_se3):
        if not isinstance(pose_se3, np.ndarray) or pose_se3.shape != (4,4):
            raise ValueError("pose_se3 must be a 4x4 numpy array.")
        self.pose = np.array(pose_se3, dtype=float)

    def with_points(self, points):
        """Returns a new Submap with the same pose/covariance and a new cloud (e.g. a filtered one)."""
        return Submap(self.id, self.pose, points, self.covariance)

    def world_points(self):
        """The cloud transformed into the world frame by the current pose."""
        return self.points @ self.pose[:3,:3].T + self.pose[:3,3]

    @property
    def position(self):
        return self.pose[:3,3]

    def __repr__(self):
        return f"Submap(id={self.id}, points={len(self.points)}, position={self.position.tolist()})"


class SubmapRegistry:
    """Ordered collection of submaps. Insertion order is the temporal order."""

    def __init__(self, submaps=None):
        self.submaps = []
        self.next_submap_id = 0
        self._index = {}
        for submap in submaps or []:
            self.append(submap)

    def append(self, submap):
        if not isinstance(submap, Submap):
            raise TypeError("Input must be a Submap object.")
        if submap.id in self._index:
            raise ValueError(f"Submap id {submap.id} already registered.")
        self._index[submap.id] = len(self.submaps)
        self.submaps.append(submap)
        self.next_submap_id = max(self.next_submap_id, submap.id + 1)
        return submap

    def add_submap(self, pose_se3, points, covariance=None):
        """
        Creates a new Submap with the next free id and adds it to the collection.

        Returns:
            Submap: The newly created and added Submap object.
        """
        return self.append(Submap(self.next_submap_id, pose_se3, points, covariance))

    def get_submap_by_id(self, submap_id):
        idx = self._index.get(submap_id)
        return self.submaps[idx] if idx is not None else None

    def __contains__(self, submap_id):
        return submap_id in self._index

    def __len__(self):
        return len(self.submaps)

    def __iter__(self):
        return iter(self.submaps)

    def __getitem__(self, idx):
        return self.submaps[idx]

    def ids(self):
        return [sm.id for sm in self.submaps]

    def poses(self):
        return {sm.id: np.copy(sm.pose) for sm in self.submaps}

    def update_poses(self, poses):
        """Overwrites submap poses in place from an {id: 4x4 pose} mapping."""
        unknown = [sid for sid in poses if sid not in self._index]
        if unknown:
            raise ValueError(f"Cannot update poses of unknown submaps {unknown}.")
        for sid, pose in poses.items():
            self.get_submap_by_id(sid).set_pose(pose)

    def copy(self):
        return SubmapRegistry(Submap(sm.id, sm.pose, sm.points, sm.covariance) for sm in self.submaps)

    def snapshot(self):
        """Independent copy whose pose and point arrays are read-only."""
        snap = self.copy()
        for sm in snap.submaps:
            sm.pose.flags.writeable = False
            sm.points.flags.writeable = False
        return snap


# An edge connects two node IDs (submap IDs) and stores the measured relative transform
# T_from_to together with its 6x6 information matrix ([translation, rotation] order).
PoseGraphEdge = namedtuple('PoseGraphEdge', ['from_node_id', 'to_node_id', 'relative_pose_se3', 'information_matrix', 'type'])

# Output of the pairwise registrar for one (i, j) pair: T_i_j and its 6x6 covariance (or None).
LoopClosureMeasurement = namedtuple('LoopClosureMeasurement', ['relative_pose_se3', 'covariance'])


def validate_information_matrix(information_matrix, node_ids=()):
    """
    Checks that an information matrix is a finite, symmetric positive-definite 6x6 matrix.
    Returns a symmetrized copy.
    """
    info = np.asarray(information_matrix, dtype=float)
    if info.shape != (6,6):
        raise GraphValidationError(f"Information matrix of edge {tuple(node_ids)} must be 6x6, got {info.shape}.", node_ids)
    if not np.all(np.isfinite(info)):
        raise GraphValidationError(f"Information matrix of edge {tuple(node_ids)} has non-finite entries.", node_ids)
    scale = max(1.0, np.max(np.abs(info)))
    if not np.allclose(info, info.T, rtol=0.0, atol=1e-9 * scale):
        raise GraphValidationError(f"Information matrix of edge {tuple(node_ids)} is not symmetric.", node_ids)
    info = 0.5 * (info + info.T)
    min_eig = np.linalg.eigvalsh(info)[0]
    if min_eig <= 0.0:
        raise GraphValidationError(
            f"Information matrix of edge {tuple(node_ids)} is not positive-definite (min eigenvalue {min_eig:.3e}).",
            node_ids)
    return info

def information_from_covariance(covariance, node_ids=()):
    cov = np.asarray(covariance, dtype=float)
    if cov.shape != (6,6):
        raise GraphValidationError(f"Covariance of edge {tuple(node_ids)} must be 6x6, got {cov.shape}.", node_ids)
    try:
        info = np.linalg.inv(cov)
    except np.linalg.LinAlgError:
        raise GraphValidationError(f"Covariance of edge {tuple(node_ids)} is singular.", node_ids) from None
    return validate_information_matrix(0.5 * (info + info.T), node_ids)


class PoseGraph:
    """Nodes (id -> current 4x4 pose estimate, temporal order) and an ordered list of edges."""

    def __init__(self):
        self.nodes = {}
        self.edges = []

    def add_node(self, node_id, pose_se3):
        if node_id in self.nodes:
            raise ValueError(f"Node {node_id} already exists.")
        if not isinstance(pose_se3, np.ndarray) or pose_se3.shape != (4,4):
            raise ValueError("pose_se3 must be a 4x4 numpy array.")
        self.nodes[node_id] = np.array(pose_se3, dtype=float)
        return node_id

    def add_edge(self, edge):
        ids = (edge.from_node_id, edge.to_node_id)
        missing = [nid for nid in ids if nid not in self.nodes]
        if missing:
            raise GraphValidationError(f"Edge {ids} references unknown nodes {missing}.", missing)
        if edge.type not in EDGE_TYPES:
            raise ValueError(f"Unknown edge type '{edge.type}'.")
        rel = np.asarray(edge.relative_pose_se3, dtype=float)
        if rel.shape != (4,4):
            raise ValueError("relative_pose_se3 must be a 4x4 array.")
        edge = edge._replace(relative_pose_se3=np.array(rel),
                             information_matrix=validate_information_matrix(edge.information_matrix, ids))
        self.edges.append(edge)
        return edge

    @property
    def node_ids(self):
        return list(self.nodes.keys())

    @property
    def dead_reckoning_edges(self):
        return [e for e in self.edges if e.type == DEAD_RECKONING]

    @property
    def loop_closure_edges(self):
        return [e for e in self.edges if e.type == LOOP_CLOSURE]

    def get_node_pose(self, node_id):
        return self.nodes.get(node_id)

    def copy(self):
        graph = PoseGraph()
        graph.nodes = {nid: np.copy(pose) for nid, pose in self.nodes.items()}
        graph.edges = [e._replace(relative_pose_se3=np.copy(e.relative_pose_se3),
                                  information_matrix=np.copy(e.information_matrix)) for e in self.edges]
        return graph

    def with_poses(self, poses):
        """Copy of this graph with node estimates taken from `poses` (e.g. an optimizer result)."""
        unknown = [nid for nid in poses if nid not in self.nodes]
        if unknown:
            raise ValueError(f"Poses given for unknown nodes {unknown}.")
        graph = self.copy()
        for nid, pose in poses.items():
            graph.nodes[nid] = np.array(pose, dtype=float)
        return graph

    def validate(self):
        """
        Raises GraphValidationError unless the graph is well-posed:
        non-empty, edges reference known nodes, every node but the first has exactly one
        incoming dead-reckoning edge from its predecessor (so DR edges alone connect the
        graph) and every information matrix is symmetric positive-definite.
        """
        if not self.nodes:
            raise GraphValidationError("Pose graph has no nodes.")
        ids = self.node_ids
        for edge in self.edges:
            pair = (edge.from_node_id, edge.to_node_id)
            missing = [nid for nid in pair if nid not in self.nodes]
            if missing:
                raise GraphValidationError(f"Edge {pair} references unknown nodes {missing}.", missing)
            validate_information_matrix(edge.information_matrix, pair)

        incoming = {}
        for edge in self.dead_reckoning_edges:
            incoming.setdefault(edge.to_node_id, []).append(edge.from_node_id)
        if ids[0] in incoming:
            raise GraphValidationError(f"First node {ids[0]} must not have an incoming dead-reckoning edge.", [ids[0]])
        for prev_id, node_id in zip(ids[:-1], ids[1:]):
            sources = incoming.pop(node_id, [])
            if sources != [prev_id]:
                raise GraphValidationError(
                    f"Node {node_id} must have exactly one dead-reckoning edge from {prev_id}, got sources {sources}; "
                    "the dead-reckoning chain is broken.", [prev_id, node_id])
        if incoming:
            raise GraphValidationError(f"Unexpected dead-reckoning edges into {sorted(incoming)}.", sorted(incoming))


class GraphConstructor:
    """
    Builds a PoseGraph from a submap sequence: dead-reckoning chain, loop closures from
    registration, synthetic drift on the DR edges and the integrated initial estimate.
    """

    def __init__(self, loop_closure_covariances=None, dr_information=None, corrupt_loop_closures=False):
        """
        Args:
            loop_closure_covariances (dict, optional): {(i, j): 6x6 covariance} learned/trained
                covariances. When present for a pair they weight that loop closure instead of
                the registrar's covariance; each is consumed once.
            dr_information (np.ndarray, optional): 6x6 information for dead-reckoning edges
                whose submap carries no covariance.
            corrupt_loop_closures (bool): Also perturb loop-closure edges in add_noise_to_graph.
        """
        self.covs_lc = {tuple(k): np.asarray(v, dtype=float) for k, v in (loop_closure_covariances or {}).items()}
        if dr_information is None:
            dr_information = np.eye(6) * DEFAULT_INFORMATION_SCALE
        self.dr_information = validate_information_matrix(dr_information)
        self.corrupt_loop_closures = corrupt_loop_closures
        self.graph = PoseGraph()

    @property
    def nodes(self):
        return self.graph.nodes

    @property
    def edges(self):
        return self.graph.edges

    @property
    def dr_edges(self):
        return self.graph.dead_reckoning_edges

    @property
    def lc_edges(self):
        return self.graph.loop_closure_edges

    def get_node_pose(self, node_id):
        return self.graph.get_node_pose(node_id)

    def add_node(self, submap):
        """Adds a node for the submap, initialized with the submap's pose."""
        if not isinstance(submap, Submap):
            raise TypeError("Input must be a Submap object.")
        return self.graph.add_node(submap.id, submap.pose)

    def add_dead_reckoning_edge(self, from_submap, to_submap):
        """
        Adds the dead-reckoning edge between two consecutive submaps.
        The relative pose is T_from^-1 * T_to from their as-registered poses.
        """
        relative_pose = np.linalg.inv(from_submap.pose) @ to_submap.pose
        if to_submap.covariance is not None:
            information_matrix = information_from_covariance(to_submap.covariance, (from_submap.id, to_submap.id))
        else:
            information_matrix = self.dr_information

        edge = PoseGraphEdge(
            from_node_id=from_submap.id,
            to_node_id=to_submap.id,
            relative_pose_se3=relative_pose,
            information_matrix=information_matrix,
            type=DEAD_RECKONING
        )
        return self.graph.add_edge(edge)

    def build_dead_reckoning_chain(self, submaps):
        """
        Creates one node per submap and one dead-reckoning edge per consecutive pair.

        Args:
            submaps (SubmapRegistry or sequence of Submap): Submaps in temporal order.
        """
        submaps = list(submaps)
        if not submaps:
            raise GraphValidationError("Cannot build a pose graph from an empty submap set.")
        if self.graph.nodes:
            raise ValueError("Dead-reckoning chain already built.")
        for submap in submaps:
            self.add_node(submap)
        for prev, curr in zip(submaps[:-1], submaps[1:]):
            self.add_dead_reckoning_edge(prev, curr)
        logger.info("Dead-reckoning chain: %d nodes, %d edges", len(self.graph.nodes), len(submaps) - 1)
        return self.graph

    def add_loop_closure_edge(self, from_node_id, to_node_id, relative_pose_se3, information_matrix):
        """Adds a loop closure edge to the graph."""
        edge = PoseGraphEdge(
            from_node_id=from_node_id,
            to_node_id=to_node_id,
            relative_pose_se3=relative_pose_se3,
            information_matrix=information_matrix,
            type=LOOP_CLOSURE
        )
        return self.graph.add_edge(edge)

    def add_loop_closures(self, measurements):
        """
        Adds one loop-closure edge per measurement.

        Args:
            measurements (dict): {(i, j): LoopClosureMeasurement or (T_i_j, covariance)}.

        Returns:
            list: (i, j) pairs that were rejected because they reference unknown nodes.
        """
        rejected = []
        for (i, j), measurement in measurements.items():
            relative_pose, covariance = measurement
            if i not in self.graph.nodes or j not in self.graph.nodes:
                logger.error("Rejecting loop closure (%s, %s): unknown node id", i, j)
                rejected.append((i, j))
                continue
            learned = self.covs_lc.pop((i, j), None)
            if learned is not None:
                covariance = learned
            if covariance is not None:
                information_matrix = information_from_covariance(covariance, (i, j))
            else:
                information_matrix = np.eye(6) * DEFAULT_INFORMATION_SCALE
            self.add_loop_closure_edge(i, j, np.asarray(relative_pose, dtype=float), information_matrix)
        logger.info("Added %d loop closures (%d rejected)", len(measurements) - len(rejected), len(rejected))
        return rejected

    def add_noise_to_graph(self, noise_generator):
        """
        Corrupts the dead-reckoning edges with one noise sample each, composed on the
        right of the measured relative pose. Loop closures are kept as measured unless
        the constructor was created with corrupt_loop_closures=True.
        """
        corrupted = []
        n_noised = 0
        for edge in self.graph.edges:
            if edge.type == DEAD_RECKONING or self.corrupt_loop_closures:
                edge = edge._replace(relative_pose_se3=noise_generator.perturb(edge.relative_pose_se3))
                n_noised += 1
            corrupted.append(edge)
        self.graph.edges = corrupted
        logger.info("Injected noise into %d edges with %r", n_noised, noise_generator)

    def create_initial_estimate(self, submaps=None):
        """
        Dead-reckoning integration: starting from the first node's pose, each node's pose is
        its predecessor's pose composed with the (possibly noised) dead-reckoning edge.

        Args:
            submaps (SubmapRegistry, optional): If given, its submap poses are overwritten
                with the integrated estimate.

        Returns:
            dict: {node_id: 4x4 pose}
        """
        ids = self.graph.node_ids
        if not ids:
            raise GraphValidationError("Pose graph has no nodes.")
        dr_edges = self.graph.dead_reckoning_edges
        if len(dr_edges) != len(ids) - 1:
            raise GraphValidationError(
                f"Expected {len(ids) - 1} dead-reckoning edges for {len(ids)} nodes, got {len(dr_edges)}.")
        for k, edge in enumerate(dr_edges):
            if (edge.from_node_id, edge.to_node_id) != (ids[k], ids[k + 1]):
                raise GraphValidationError(
                    f"Dead-reckoning edge {(edge.from_node_id, edge.to_node_id)} is out of temporal order; "
                    f"expected {(ids[k], ids[k + 1])}.", [edge.from_node_id, edge.to_node_id])

        origin = self.graph.nodes[ids[0]]
        chain = itertools.accumulate((e.relative_pose_se3 for e in dr_edges),
                                     lambda pose, rel: pose @ rel, initial=origin)
        estimate = {nid: np.copy(pose) for nid, pose in zip(ids, chain)}
        self.graph.nodes.update(estimate)
        if submaps is not None:
            submaps.update_poses(estimate)
        return estimate


def find_loop_closure_candidates(submaps, radius_m, min_index_gap=2):
    """
    Finds pairs of submaps whose origins lie within radius_m of each other.
    Uses a KD-tree on submap positions; temporally close submaps (fewer than
    min_index_gap steps apart) are skipped since the dead-reckoning chain already links them.

    Args:
        submaps (SubmapRegistry or sequence of Submap): Submaps in temporal order.
        radius_m (float): Search radius in meters.
        min_index_gap (int): Minimum distance in the sequence between the two submaps.

    Returns:
        list: Sorted (earlier_id, later_id) tuples.
    """
    submaps = list(submaps)
    if len(submaps) < 2:
        return []

    from scipy.spatial import KDTree

    positions = np.array([sm.position for sm in submaps])
    kdtree = KDTree(positions)
    candidates = []
    for a, b in kdtree.query_pairs(r=radius_m):
        a, b = min(a, b), max(a, b)
        if b - a >= min_index_gap:
            candidates.append((submaps[a].id, submaps[b].id))
    return sorted(candidates)
