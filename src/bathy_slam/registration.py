import abc
import logging
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np
from scipy.spatial import cKDTree

from .geometry import so3_hat, se3_adjoint, se3_inverse, transform_points
from .pose_graph import LoopClosureMeasurement, SubmapRegistry

logger = logging.getLogger("bathy_slam.registration")

# transform maps source-frame points into the target frame; covariance is 6x6 in
# [translation, rotation] order for a right perturbation of transform.
RegistrationResult = namedtuple('RegistrationResult', ['transform', 'covariance', 'success', 'fitness'])


def failed_registration(initial_guess=None):
    transform = np.eye(4) if initial_guess is None else np.copy(initial_guess)
    return RegistrationResult(transform, None, False, 0.0)


class PairwiseRegistrar(abc.ABC):
    """Aligns two point clouds. Implementations must not mutate their inputs."""

    @abc.abstractmethod
    def align(self, source_points, target_points, initial_guess=None):
        """
        Args:
            source_points (np.ndarray): (N,3) cloud to be moved.
            target_points (np.ndarray): (M,3) fixed cloud.
            initial_guess (np.ndarray, optional): 4x4 initial T_target_source.

        Returns:
            RegistrationResult
        """


def best_fit_transform(A, B):
    """Rigid transform (4x4) minimizing ||R A_k + t - B_k|| over corresponding rows (Umeyama, no scale)."""
    muA, muB = A.mean(0), B.mean(0)
    AA, BB = A - muA, B - muB
    C = AA.T @ BB / A.shape[0]
    U, S, Vt = np.linalg.svd(C)
    R = Vt.T @ U.T
    if np.linalg.det(R) < 0:
        Vt[-1, :] *= -1
        R = Vt.T @ U.T
    T = np.eye(4)
    T[:3,:3] = R
    T[:3,3] = muB - R @ muA
    return T


@dataclass
class IcpConfig:
    max_iterations: int = 50
    tolerance: float = 1e-8
    max_correspondence_distance: float = 5.0
    min_points: int = 10
    min_inlier_ratio: float = 0.3
    # Lower bound on the residual std used to scale the covariance [m]
    min_residual_std: float = 1e-3
    max_condition_number: float = 1e10


class IcpRegistrar(PairwiseRegistrar):
    """Point-to-point ICP with a KD-tree on the target cloud."""

    def __init__(self, config=None):
        self.config = config or IcpConfig()

    def align(self, source_points, target_points, initial_guess=None):
        cfg = self.config
        src = np.asarray(source_points, dtype=float)
        tgt = np.asarray(target_points, dtype=float)
        if len(src) < cfg.min_points or len(tgt) < cfg.min_points:
            logger.debug("ICP: not enough points (%d source, %d target)", len(src), len(tgt))
            return failed_registration(initial_guess)

        tree = cKDTree(tgt)
        T = np.eye(4) if initial_guess is None else np.array(initial_guess, dtype=float)
        prev_err = np.inf
        for iteration in range(cfg.max_iterations):
            moved = transform_points(T, src)
            dist, idx = tree.query(moved, distance_upper_bound=cfg.max_correspondence_distance)
            inliers = np.isfinite(dist)
            if inliers.sum() < cfg.min_points:
                logger.debug("ICP: lost correspondences at iteration %d", iteration)
                return failed_registration(initial_guess)
            T = best_fit_transform(moved[inliers], tgt[idx[inliers]]) @ T
            err = np.mean(dist[inliers]**2)
            if abs(prev_err - err) < cfg.tolerance:
                break
            prev_err = err

        moved = transform_points(T, src)
        dist, idx = tree.query(moved, distance_upper_bound=cfg.max_correspondence_distance)
        inliers = np.isfinite(dist)
        fitness = inliers.sum() / len(src)
        if inliers.sum() < cfg.min_points or fitness < cfg.min_inlier_ratio:
            logger.debug("ICP: fitness %.3f below threshold", fitness)
            return failed_registration(initial_guess)

        covariance = self._covariance(T, moved[inliers], tgt[idx[inliers]])
        if covariance is None:
            return failed_registration(initial_guess)
        return RegistrationResult(T, covariance, True, float(fitness))

    def _covariance(self, T, moved, matched):
        # Residual r_k = exp(d) T p_k - q_k, d a left perturbation: dr/dd = [I, -(T p_k)^]
        n = len(moved)
        J = np.zeros((3 * n, 6))
        for k, p in enumerate(moved):
            J[3*k:3*k+3, :3] = np.eye(3)
            J[3*k:3*k+3, 3:] = -so3_hat(p)
        H = J.T @ J
        if np.linalg.cond(H) > self.config.max_condition_number:
            logger.debug("ICP: degenerate geometry, Hessian condition number %.3e", np.linalg.cond(H))
            return None
        residuals = (moved - matched).ravel()
        dof = max(3 * n - 6, 1)
        sigma2 = max(residuals @ residuals / dof, self.config.min_residual_std**2)
        cov_left = sigma2 * np.linalg.inv(H)
        # Express as a right perturbation of T, the convention of the pose graph residuals
        Ad = se3_adjoint(se3_inverse(T))
        cov = Ad @ cov_left @ Ad.T
        return 0.5 * (cov + cov.T)


def register_pairs(submaps, pairs, registrar, max_workers=None):
    """
    Registers every (i, j) pair concurrently on a read-only snapshot of the submaps.

    Cloud j is aligned onto cloud i, starting from the relative pose of their current
    estimates, so each result is a measurement of T_i_j. Failed pairs are logged and skipped.

    Returns:
        dict: {(i, j): LoopClosureMeasurement} for the successful pairs, in pair order.
    """
    snapshot = submaps.snapshot() if isinstance(submaps, SubmapRegistry) else SubmapRegistry(submaps).snapshot()
    pairs = list(pairs)
    if not pairs:
        return {}

    def _register(pair):
        i, j = pair
        sm_i = snapshot.get_submap_by_id(i)
        sm_j = snapshot.get_submap_by_id(j)
        if sm_i is None or sm_j is None:
            raise ValueError(f"Pair {pair} references unknown submaps.")
        initial_guess = se3_inverse(sm_i.pose) @ sm_j.pose
        return registrar.align(sm_j.points, sm_i.points, initial_guess)

    measurements = {}
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [(pair, executor.submit(_register, pair)) for pair in pairs]
        for pair, future in futures:
            try:
                result = future.result()
            except Exception as exc:
                logger.warning("Registration of pair %s failed: %s", pair, exc, exc_info=True)
                continue
            if not result.success:
                logger.warning("Registration of pair %s did not converge, skipping", pair)
                continue
            measurements[pair] = LoopClosureMeasurement(result.transform, result.covariance)
    logger.info("Registered %d/%d candidate pairs", len(measurements), len(pairs))
    return measurements
