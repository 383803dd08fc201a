"""
Offline bathymetric pose-graph SLAM.

The programmatic surface used by the command line front-end:
load_submaps -> build_graph -> optimize -> record_benchmark / export_graph / export_archive.
"""
import logging

from .benchmark import map_points_from_submaps, track_from_submaps
from .io import read_archive, read_submap_dir, write_archive, write_graph
from .optimizer import PoseGraphOptimizer
from .pose_graph import GraphConstructor, PoseGraph, SubmapRegistry, find_loop_closure_candidates
from .registration import IcpRegistrar, register_pairs

logger = logging.getLogger("bathy_slam.slam")

# Loop-closure search radius between submap origins [m]
DEFAULT_LC_RADIUS = 10.0


class BathySlam:
    """Builds the pose graph of a submap sequence: DR chain plus registered loop closures."""

    def __init__(self, graph_constructor, registrar, lc_radius=DEFAULT_LC_RADIUS, min_index_gap=2, max_workers=None):
        self.graph_obj = graph_constructor
        self.registrar = registrar
        self.lc_radius = lc_radius
        self.min_index_gap = min_index_gap
        self.max_workers = max_workers

    def run_offline(self, submaps):
        """
        Builds the dead-reckoning chain from the submaps, then registers every loop-closure
        candidate pair (in parallel, on a snapshot) and adds the successful ones as edges.

        Returns:
            GraphConstructor: the populated constructor.
        """
        self.graph_obj.build_dead_reckoning_chain(submaps)
        pairs = find_loop_closure_candidates(submaps, self.lc_radius, self.min_index_gap)
        logger.info("%d loop closure candidates within %.2f m", len(pairs), self.lc_radius)
        measurements = register_pairs(submaps, pairs, self.registrar, max_workers=self.max_workers)
        self.graph_obj.add_loop_closures(measurements)
        return self.graph_obj


def load_submaps(path, simulation=False):
    """Reads a submap archive, or a directory of per-submap files when simulation is set."""
    return read_submap_dir(path) if simulation else read_archive(path)


def build_graph(submaps, noise_generator=None, registrar=None, loop_closure_covariances=None,
                lc_radius=DEFAULT_LC_RADIUS, min_index_gap=2, max_workers=None,
                corrupt_loop_closures=False, dr_information=None):
    """
    Full graph construction: DR chain, registered loop closures, synthetic drift on the
    DR edges and the dead-reckoning initial estimate.

    Dead-reckoning edges are weighted with the noise model's information unless
    dr_information is given.

    Returns:
        tuple: (GraphConstructor, SubmapRegistry copy whose poses are the corrupted estimate)
    """
    if not isinstance(submaps, SubmapRegistry):
        submaps = SubmapRegistry(submaps)
    if dr_information is None and noise_generator is not None:
        dr_information = noise_generator.information_matrix()
    graph_obj = GraphConstructor(loop_closure_covariances, dr_information=dr_information,
                                 corrupt_loop_closures=corrupt_loop_closures)
    slam_solver = BathySlam(graph_obj, registrar or IcpRegistrar(), lc_radius=lc_radius,
                            min_index_gap=min_index_gap, max_workers=max_workers)
    slam_solver.run_offline(submaps)

    if noise_generator is not None:
        graph_obj.add_noise_to_graph(noise_generator)
    corrupted = submaps.copy()
    graph_obj.create_initial_estimate(corrupted)
    graph_obj.graph.validate()
    return graph_obj, corrupted


def optimize(graph, config=None):
    """
    Validates the graph, then solves it. An invalid graph raises GraphValidationError
    and is never handed to the solver.

    Returns:
        OptimizationResult
    """
    if isinstance(graph, GraphConstructor):
        graph = graph.graph
    if not isinstance(graph, PoseGraph):
        raise TypeError("optimize expects a PoseGraph or GraphConstructor.")
    graph.validate()
    return PoseGraphOptimizer(config).solve(graph)


def record_benchmark(engine, submaps, stage):
    """Records the errors of the submaps' current poses under `stage`."""
    return engine.add_benchmark(map_points_from_submaps(submaps), track_from_submaps(submaps), stage)


def export_graph(path, graph):
    if isinstance(graph, GraphConstructor):
        graph = graph.graph
    write_graph(path, graph)


def export_archive(path, submaps):
    write_archive(path, submaps)
