import argparse
import logging
import os
import sys


def build_parser():
    parser = argparse.ArgumentParser(description="Bathy SLAM: offline pose-graph SLAM for bathymetric submaps.")
    parser.add_argument("--slam_archive", type=str, required=True,
                        help="Input submap archive (.npz), or a directory of submaps with --simulation.")
    parser.add_argument("--simulation", action="store_true", help="Read --slam_archive as a simulation directory.")
    parser.add_argument("--covs_folder", type=str, default=None, help="Folder of learned loop-closure covariances (<i>_<j>.txt).")
    parser.add_argument("--output_archive", type=str, default="output_archive.npz", help="Path of the optimized submap archive.")
    parser.add_argument("--output_graph", type=str, default="graph_corrupted.g2o", help="Path of the corrupted pose graph file.")
    parser.add_argument("--trajectory_dir", type=str, default=".",
                        help="Directory for poses_original.txt, poses_corrupted.txt and poses_optimized.txt.")

    # Noise model
    parser.add_argument("--trans_noise", type=float, default=0.1, help="Std of the dead-reckoning translation noise [m].")
    parser.add_argument("--rot_noise", type=float, default=0.002, help="Std of the dead-reckoning rotation noise [rad].")
    parser.add_argument("--seed", type=int, default=None, help="Seed of the noise generator.")
    parser.add_argument("--corrupt_loop_closures", action="store_true", help="Also add noise to loop-closure edges.")

    # Graph construction / optimization
    parser.add_argument("--lc_radius", type=float, default=10.0, help="Loop-closure search radius between submap origins [m].")
    parser.add_argument("--min_index_gap", type=int, default=2, help="Minimum sequence gap of a loop-closure pair.")
    parser.add_argument("--workers", type=int, default=None, help="Worker threads for pairwise registration.")
    parser.add_argument("--icp_max_distance", type=float, default=5.0, help="ICP maximum correspondence distance [m].")
    parser.add_argument("--max_iterations", type=int, default=100, help="Iteration limit of the pose graph optimizer.")
    parser.add_argument("--align_benchmark", action="store_true", help="Rigidly align estimates to ground truth before benchmarking.")

    parser.add_argument("--profile", action="store_true", help="Enable cProfile for performance profiling.")
    parser.add_argument("--verbose", action="store_true", help="Debug logging.")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    print("Bathy SLAM CLI")
    print(f"Input data: {args.slam_archive}{' (simulation)' if args.simulation else ''}")
    print(f"Output archive: {args.output_archive}")
    print(f"Output graph: {args.output_graph}")

    profiler = None
    if args.profile:
        import cProfile
        profiler = cProfile.Profile()
        print("\nPerformance profiling enabled. Running main logic under profiler...")
        profiler.enable()

    exit_code = actual_main_operation(args)

    if args.profile and profiler:
        import pstats
        profiler.disable()
        print("\n--- Performance Profile ---")
        stats = pstats.Stats(profiler).sort_stats('cumulative')
        stats.print_stats(20)
    return exit_code


def _write_trajectory(directory, name, submaps):
    from .io import TrajWriter
    TrajWriter(os.path.join(directory, name)).write(submaps.ids(), [sm.pose for sm in submaps])


def actual_main_operation(args):
    """Runs the offline pipeline. Returns the process exit code."""
    from .benchmark import (BenchmarkEngine, STAGE_CORRUPTED, STAGE_GROUND_TRUTH, STAGE_OPTIMIZED,
                            map_points_from_submaps, track_from_submaps)
    from .io import read_covariances
    from .noise import NoiseGenerator
    from .optimizer import FAILED, OptimizerConfig
    from .pose_graph import GraphValidationError
    from .registration import IcpConfig, IcpRegistrar
    from .slam import build_graph, export_archive, export_graph, load_submaps, optimize, record_benchmark

    # 1. Inputs
    try:
        submaps_gt = load_submaps(args.slam_archive, simulation=args.simulation)
        covs_lc = read_covariances(args.covs_folder) if args.covs_folder else {}
    except FileNotFoundError as e:
        print(f"\nError: {e}")
        return 1
    except ValueError as e:
        print(f"\nError reading input data: {e}")
        return 1
    print(f"\nLoaded {len(submaps_gt)} submaps, {len(covs_lc)} loop closure covariances")
    os.makedirs(args.trajectory_dir, exist_ok=True)

    # 2. Ground truth benchmark
    benchmark = BenchmarkEngine("real_data", align=args.align_benchmark)
    benchmark.add_ground_truth(map_points_from_submaps(submaps_gt), track_from_submaps(submaps_gt))
    record_benchmark(benchmark, submaps_gt, STAGE_GROUND_TRUTH)
    _write_trajectory(args.trajectory_dir, "poses_original.txt", submaps_gt)

    # 3. Graph construction with synthetic drift
    noise = NoiseGenerator(args.trans_noise, args.rot_noise, seed=args.seed)
    try:
        graph_obj, submaps_reg = build_graph(
            submaps_gt, noise_generator=noise, loop_closure_covariances=covs_lc,
            registrar=IcpRegistrar(IcpConfig(max_correspondence_distance=args.icp_max_distance)),
            lc_radius=args.lc_radius, min_index_gap=args.min_index_gap, max_workers=args.workers,
            corrupt_loop_closures=args.corrupt_loop_closures)
    except GraphValidationError as e:
        print(f"\nError: invalid pose graph (nodes {list(e.node_ids)}): {e}")
        return 1
    print(f"Graph has {len(graph_obj.nodes)} nodes, {len(graph_obj.dr_edges)} dead-reckoning "
          f"and {len(graph_obj.lc_edges)} loop closure edges.")
    export_graph(args.output_graph, graph_obj)
    record_benchmark(benchmark, submaps_reg, STAGE_CORRUPTED)
    _write_trajectory(args.trajectory_dir, "poses_corrupted.txt", submaps_reg)

    # 4. Optimization
    result = optimize(graph_obj, OptimizerConfig(max_iterations=args.max_iterations))
    print(f"Optimization {result.status} after {result.iterations} iterations "
          f"(cost {result.initial_cost:.6e} -> {result.final_cost:.6e})")
    if result.status == FAILED:
        print("\nError: pose graph optimization failed, no optimized output written.")
        return 2
    submaps_reg.update_poses(result.poses)
    export_archive(args.output_archive, submaps_reg)
    print(f"Output archive: {args.output_archive}")
    _write_trajectory(args.trajectory_dir, "poses_optimized.txt", submaps_reg)

    # 5. Benchmark summary
    record_benchmark(benchmark, submaps_reg, STAGE_OPTIMIZED)
    print()
    benchmark.print_summary()
    return 0


if __name__ == "__main__":
    sys.exit(main())
