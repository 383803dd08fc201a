import logging
from collections import namedtuple
from dataclasses import dataclass

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import spsolve

from .geometry import se3_adjoint, se3_exp_vec, se3_inverse, se3_log_vec, se3_right_jacobian_inverse

logger = logging.getLogger("bathy_slam.optimizer")

CONVERGED = 'converged'
MAX_ITERATIONS = 'max_iterations'
FAILED = 'failed'

OptimizationResult = namedtuple('OptimizationResult', ['poses', 'status', 'final_cost', 'initial_cost', 'iterations'])


@dataclass
class OptimizerConfig:
    max_iterations: int = 100
    # Stop when the relative cost decrease falls below this
    function_tolerance: float = 1e-12
    # Stop when the update norm falls below this
    step_tolerance: float = 1e-10
    # Costs below this are treated as an exact fit
    absolute_cost_tolerance: float = 1e-20
    initial_lambda: float = 1e-4
    lambda_up: float = 10.0
    lambda_down: float = 10.0
    max_lambda: float = 1e12


def edge_residual(edge, T_i, T_j):
    """r = log(Z^-1 T_i^-1 T_j), the 6-vector [v, omega] of the relative pose error."""
    E = se3_inverse(edge.relative_pose_se3) @ se3_inverse(T_i) @ T_j
    return se3_log_vec(E)


def total_cost(graph, poses):
    """0.5 * sum of squared Mahalanobis residuals over all edges."""
    cost = 0.0
    for edge in graph.edges:
        r = edge_residual(edge, poses[edge.from_node_id], poses[edge.to_node_id])
        cost += 0.5 * r @ edge.information_matrix @ r
    return cost


class PoseGraphOptimizer:
    """
    Levenberg-Marquardt solver for SE(3) pose graphs.

    Each node pose is updated by a right perturbation X <- X exp(delta). The first node is the
    gauge anchor and never moves. The optimizer keeps no state between solve() calls.
    """

    def __init__(self, config=None):
        self.config = config or OptimizerConfig()

    def solve(self, graph):
        """
        Args:
            graph (PoseGraph): Graph whose node poses are the initial estimate.

        Returns:
            OptimizationResult: poses {id: 4x4}, status, final/initial cost, iterations run.
        """
        cfg = self.config
        ids = graph.node_ids
        if not ids:
            return OptimizationResult({}, FAILED, float('nan'), float('nan'), 0)
        poses = {nid: np.copy(pose) for nid, pose in graph.nodes.items()}
        # Column block of every free node; the anchor has none
        index = {nid: k for k, nid in enumerate(ids[1:])}
        n_vars = 6 * len(index)

        finite = (all(np.all(np.isfinite(p)) for p in poses.values())
                  and all(np.all(np.isfinite(e.relative_pose_se3)) for e in graph.edges))
        if not finite:
            logger.error("Pose graph contains non-finite poses or measurements")
            return OptimizationResult(poses, FAILED, float('nan'), float('nan'), 0)

        cost = total_cost(graph, poses)
        initial_cost = cost
        if not np.isfinite(cost):
            logger.error("Initial cost is not finite")
            return OptimizationResult(poses, FAILED, cost, initial_cost, 0)
        if n_vars == 0 or cost <= cfg.absolute_cost_tolerance:
            return OptimizationResult(poses, CONVERGED, cost, initial_cost, 0)

        lambda_lm = cfg.initial_lambda
        status = MAX_ITERATIONS
        iteration = 0
        for iteration in range(1, cfg.max_iterations + 1):
            H, b = self._linearize(graph, poses, index, n_vars)

            # Inner loop: raise damping until the step reduces the cost
            accepted = False
            solved_once = False
            while lambda_lm <= cfg.max_lambda:
                damping = sp.diags(lambda_lm * np.maximum(H.diagonal(), 1e-12))
                try:
                    delta = spsolve((H + damping).tocsc(), -b)
                except (RuntimeError, np.linalg.LinAlgError) as exc:
                    logger.warning("Linear solve failed at iteration %d: %s", iteration, exc)
                    delta = None
                if delta is None or not np.all(np.isfinite(delta)):
                    lambda_lm *= cfg.lambda_up
                    continue

                solved_once = True
                candidate = self._retract(poses, delta, index)
                new_cost = total_cost(graph, candidate)
                if np.isfinite(new_cost) and new_cost < cost:
                    accepted = True
                    break
                lambda_lm *= cfg.lambda_up

            if not accepted:
                # Even vanishing gradient steps do not lower the cost: stationary point.
                # Without a single usable linear solve the problem is numerically broken.
                status = CONVERGED if solved_once else FAILED
                logger.debug("No descent step at iteration %d (|g|=%.3e)", iteration, np.linalg.norm(b))
                break

            rel_decrease = (cost - new_cost) / max(cost, 1e-300)
            step_norm = np.linalg.norm(delta)
            poses, cost = candidate, new_cost
            lambda_lm = max(lambda_lm / cfg.lambda_down, 1e-15)
            logger.debug("Iteration %d: cost %.6e, |delta| %.3e, lambda %.1e", iteration, cost, step_norm, lambda_lm)

            if (cost <= cfg.absolute_cost_tolerance or rel_decrease < cfg.function_tolerance
                    or step_norm < cfg.step_tolerance):
                status = CONVERGED
                break

        if not np.isfinite(cost):
            status = FAILED
        if status == MAX_ITERATIONS:
            logger.warning("Pose graph optimization hit the iteration limit (%d)", cfg.max_iterations)
        logger.info("Optimization %s after %d iterations: cost %.6e -> %.6e", status, iteration, initial_cost, cost)
        return OptimizationResult(poses, status, cost, initial_cost, iteration)

    def _linearize(self, graph, poses, index, n_vars):
        """Builds the sparse normal equations H delta = -b (H = J^T W J, b = J^T W r)."""
        rows, cols, vals = [], [], []
        b = np.zeros(n_vars)
        block_r, block_c = np.meshgrid(np.arange(6), np.arange(6), indexing='ij')

        for edge in graph.edges:
            i, j = edge.from_node_id, edge.to_node_id
            T_i, T_j = poses[i], poses[j]
            r = edge_residual(edge, T_i, T_j)
            Jr_inv = se3_right_jacobian_inverse(r)
            # d r / d delta_j and d r / d delta_i for right perturbations
            J_j = Jr_inv
            J_i = -Jr_inv @ se3_adjoint(se3_inverse(T_j) @ T_i)
            W = edge.information_matrix

            blocks = [(index.get(i), J_i), (index.get(j), J_j)]
            for a, J_a in blocks:
                if a is None:
                    continue
                b[6*a:6*a+6] += J_a.T @ W @ r
                for c, J_c in blocks:
                    if c is None:
                        continue
                    rows.append((6*a + block_r).ravel())
                    cols.append((6*c + block_c).ravel())
                    vals.append((J_a.T @ W @ J_c).ravel())

        if rows:
            H = sp.coo_matrix((np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
                              shape=(n_vars, n_vars)).tocsr()
        else:
            H = sp.csr_matrix((n_vars, n_vars))
        return H, b

    @staticmethod
    def _retract(poses, delta, index):
        updated = dict(poses)
        for nid, k in index.items():
            updated[nid] = poses[nid] @ se3_exp_vec(delta[6*k:6*k+6])
        return updated
