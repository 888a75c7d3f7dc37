"""
Robust Concentration-Decay Curve Fitting (RANSAC)
=================================================

Fits the three-parameter decay model

    C(t) = a0 * t^-2 + a1 * log(t) + a2 * (1 - exp(-t))

to (time, concentration) pairs while rejecting outlying measurements. The
inlier set of the best trial selects the samples that are kept as support
rows for the kernel regression.
"""

import numpy as np
from typing import List, Tuple, Union
from dataclasses import dataclass, field
import logging

from forecasting_errors import InvalidInputError, DegenerateFitError

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

N_COEFFICIENTS = 3
DEFAULT_N_TRIALS = 100_000
TRIAL_CHUNK_SIZE = 2_000

RandomSource = Union[None, int, np.random.Generator]


def decay_basis(times: np.ndarray) -> np.ndarray:
    """
    Map times onto the [t^-2, log(t), 1 - e^-t] basis

    Args:
        times: Strictly positive times

    Returns:
        Design matrix of shape (n, 3)
    """
    t = np.asarray(times, dtype=float).ravel()
    if np.any(~np.isfinite(t)) or np.any(t <= 0):
        raise InvalidInputError("Times must be finite and strictly positive for the decay basis")
    return np.column_stack([t ** -2, np.log(t), 1.0 - np.exp(-t)])


@dataclass
class RobustFitResult:
    """Best RANSAC trial: decay coefficients and the inliers it explains"""
    coefficients: np.ndarray
    inlier_indices: np.ndarray
    n_samples: int
    n_trials: int
    best_trial: int
    threshold: float
    history: List[Tuple[int, int]] = field(default_factory=list)  # (trial, n_inliers) per improvement

    @property
    def n_inliers(self) -> int:
        return len(self.inlier_indices)

    @property
    def inlier_fraction(self) -> float:
        return self.n_inliers / self.n_samples if self.n_samples else 0.0

    def evaluate(self, times: np.ndarray) -> np.ndarray:
        """Fitted decay curve at the given times"""
        return decay_basis(times) @ self.coefficients


class RobustCurveFitter:
    """
    RANSAC estimator for the decay model

    Every trial draws `subset_size` indices uniformly with replacement, solves
    the least-squares system on them and counts the points of the whole data
    set whose absolute residual is below `threshold`. The trial with the most
    inliers wins; ties keep the earlier trial.
    """

    def __init__(self, threshold: float, subset_size: int,
                 n_trials: int = DEFAULT_N_TRIALS, random_state: RandomSource = None):
        """
        Initialize robust fitter

        Args:
            threshold: Maximum absolute residual (concentration units) of an inlier
            subset_size: Points per trial fit, at least the 3 model coefficients
            n_trials: Number of random trials
            random_state: Seed or numpy Generator
        """
        if not threshold > 0:
            raise InvalidInputError(f"Inlier threshold must be positive, got {threshold}")
        if subset_size < N_COEFFICIENTS:
            raise InvalidInputError(
                f"Subset size must be at least {N_COEFFICIENTS}, got {subset_size}"
            )
        if n_trials < 1:
            raise InvalidInputError(f"Number of trials must be positive, got {n_trials}")

        self.threshold = float(threshold)
        self.subset_size = int(subset_size)
        self.n_trials = int(n_trials)
        self.rng = np.random.default_rng(random_state)

    def fit(self, times: np.ndarray, concentrations: np.ndarray) -> RobustFitResult:
        """
        Run all trials and return the best one

        Args:
            times: Measurement times (h), strictly positive
            concentrations: Measured concentrations, same length as times

        Returns:
            RobustFitResult of the best trial
        """
        t = np.asarray(times, dtype=float).ravel()
        y = np.asarray(concentrations, dtype=float).ravel()

        if len(t) != len(y):
            raise InvalidInputError(
                f"Times and concentrations must have same length ({len(t)} vs {len(y)})"
            )
        n_samples = len(t)
        if n_samples < self.subset_size:
            raise InvalidInputError(
                f"Subset size {self.subset_size} exceeds the {n_samples} available samples"
            )

        design = decay_basis(t)

        best_count = 0
        best_coefficients = np.zeros(N_COEFFICIENTS)
        best_inliers = np.empty(0, dtype=int)
        best_trial = -1
        history = []

        for start in range(0, self.n_trials, TRIAL_CHUNK_SIZE):
            n_chunk = min(TRIAL_CHUNK_SIZE, self.n_trials - start)
            subsets = self.rng.integers(0, n_samples, size=(n_chunk, self.subset_size))

            # Batched least squares: (chunk, 3, k) @ (chunk, k, 1)
            coefficients = (np.linalg.pinv(design[subsets]) @ y[subsets][..., None])[..., 0]

            residuals = np.abs(design @ coefficients.T - y[:, None])
            inlier_mask = residuals < self.threshold
            counts = inlier_mask.sum(axis=0)

            # Walk the improvements inside the chunk in trial order
            running_best = np.maximum.accumulate(counts)
            previous_best = np.maximum(best_count, np.r_[best_count, running_best[:-1]])
            improved = np.flatnonzero(counts > previous_best)
            for j in improved:
                best_count = int(counts[j])
                best_coefficients = coefficients[j].copy()
                best_inliers = np.flatnonzero(inlier_mask[:, j])
                best_trial = start + int(j)
                history.append((best_trial, best_count))
                logger.debug(f"RANSAC trial {best_trial}, # inliers = {best_count}, "
                             f"coefficients = {np.array2string(best_coefficients, precision=4)}")

        if best_count == 0:
            raise DegenerateFitError(
                f"No inliers found in {self.n_trials} trials (threshold {self.threshold})"
            )

        result = RobustFitResult(coefficients=best_coefficients, inlier_indices=best_inliers,
                                 n_samples=n_samples, n_trials=self.n_trials,
                                 best_trial=best_trial, threshold=self.threshold,
                                 history=history)

        logger.info(f"RANSAC: {result.n_inliers} / {n_samples} inliers, "
                    f"coefficients = {np.array2string(best_coefficients, precision=4)}")
        if result.inlier_fraction < 0.5:
            logger.warning(f"Only {result.inlier_fraction:.1%} of samples kept as inliers")

        return result


def fit_robust_model(times: np.ndarray, concentrations: np.ndarray, threshold: float,
                     subset_size: int, n_trials: int = DEFAULT_N_TRIALS,
                     random_state: RandomSource = None) -> RobustFitResult:
    """Fit the decay model robustly; see RobustCurveFitter"""
    fitter = RobustCurveFitter(threshold, subset_size, n_trials=n_trials,
                               random_state=random_state)
    return fitter.fit(times, concentrations)
