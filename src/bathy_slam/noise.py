import numpy as np

from .geometry import se3_exp_vec

# Information assigned to an axis whose standard deviation is zero.
ZERO_STD_INFORMATION = 1e9


def _as_std_vector(std, name):
    std = np.broadcast_to(np.asarray(std, dtype=float), (3,)).copy()
    if not np.all(np.isfinite(std)) or np.any(std < 0):
        raise ValueError(f"{name} must be finite and non-negative, got {std}.")
    return std


class NoiseGenerator:
    """
    Gaussian perturbation sampler on SE(3).

    Translation and rotation noise are drawn independently, each from a
    zero-mean Gaussian with its own (per-axis) standard deviation. Rotation
    samples are axis-angle vectors. Every instance owns its random generator,
    so two generators with the same seed produce the same sequence and no
    global numpy state is touched.
    """

    def __init__(self, translation_std=0.0, rotation_std=0.0, seed=None):
        """
        Args:
            translation_std (float or (3,) array): Std of the translation noise [m].
            rotation_std (float or (3,) array): Std of the rotation noise [rad].
            seed (int, optional): Seed of the private random generator.
        """
        self.translation_std = _as_std_vector(translation_std, "translation_std")
        self.rotation_std = _as_std_vector(rotation_std, "rotation_std")
        self.seed = seed
        self._rng = np.random.default_rng(seed)

    def sample(self):
        """
        Draws one independent perturbation.

        Returns:
            tuple: (delta_translation (3,), delta_rotation (3,) axis-angle).
                   Axes with a zero std are exactly 0.0.
        """
        delta_t = self._draw(self.translation_std)
        delta_r = self._draw(self.rotation_std)
        return delta_t, delta_r

    def _draw(self, std):
        draws = self._rng.standard_normal(3) * std
        return np.where(std > 0.0, draws, 0.0)

    def sample_se3(self):
        """Returns one perturbation mapped onto SE(3) through the exponential."""
        delta_t, delta_r = self.sample()
        return se3_exp_vec(np.concatenate((delta_t, delta_r)))

    def perturb(self, pose):
        """
        Right-multiplies a fresh perturbation into a 4x4 pose.
        A zero sample leaves the pose untouched (returned as a copy).
        """
        delta_t, delta_r = self.sample()
        if not np.any(delta_t) and not np.any(delta_r):
            return np.copy(pose)
        return pose @ se3_exp_vec(np.concatenate((delta_t, delta_r)))

    def information_matrix(self, zero_std_information=ZERO_STD_INFORMATION):
        """
        Information matrix matching this generator's noise model,
        diag(1/sigma^2) in [translation, rotation] order.
        """
        sigmas = np.concatenate((self.translation_std, self.rotation_std))
        info = np.full(6, float(zero_std_information))
        nonzero = sigmas > 0.0
        info[nonzero] = 1.0 / sigmas[nonzero]**2
        return np.diag(info)

    def __repr__(self):
        return (f"NoiseGenerator(translation_std={self.translation_std.tolist()}, "
                f"rotation_std={self.rotation_std.tolist()}, seed={self.seed})")
