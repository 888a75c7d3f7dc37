"""
Gaussian Kernel Ridge Regression over Patient Covariates
========================================================

This module provides the regression model used to predict concentrations:
- Pairwise squared-distance and Gaussian kernel construction
- Kernel width heuristic (mean pairwise squared distance)
- Regularized training, alpha = argmin ||(K + I/C) alpha - y||
- Prediction for arbitrary covariate rows
- RegressionModel container holding the trained state

Every retained support row takes part in the kernel expansion; the support
set is chosen upstream by the robust curve fit, not by the solver.
"""

import numpy as np
from typing import Optional, Tuple
from dataclasses import dataclass
from scipy import linalg
import logging

from forecasting_errors import InvalidInputError, NumericInstabilityError
from feature_normalization import (
    NormalizationConstants, as_covariate_matrix, fit_normalization
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEFAULT_C = 1000.0
NEGATIVE_DISTANCE_TOLERANCE = 1e-8  # relative to the largest squared norm


def squared_distances(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    Pairwise squared Euclidean distances D[i, j] = |a_i|^2 + |b_j|^2 - 2 a_i.b_j

    Round-off negatives are clamped to zero; anything below the tolerance
    raises NumericInstabilityError.
    """
    if a.shape[1] != b.shape[1]:
        raise InvalidInputError(
            f"Row dimensions differ ({a.shape[1]} vs {b.shape[1]})"
        )
    a2 = np.einsum('ij,ij->i', a, a)
    b2 = np.einsum('ij,ij->i', b, b)
    d = a2[:, None] + b2[None, :] - 2.0 * (a @ b.T)

    if d.size:
        scale = max(1.0, float(a2.max(initial=0.0)), float(b2.max(initial=0.0)))
        most_negative = float(d.min())
        if most_negative < -NEGATIVE_DISTANCE_TOLERANCE * scale:
            raise NumericInstabilityError(
                f"Squared distance {most_negative:.3e} is negative beyond round-off"
            )
    return np.maximum(d, 0.0)


def gaussian_kernel(distances: np.ndarray, sigma: float) -> np.ndarray:
    """K = exp(-D / (2 sigma^2)), values in [0, 1] for non-negative D"""
    if not sigma > 0:
        raise InvalidInputError(f"Kernel width must be positive, got {sigma}")
    return np.exp(-distances / (2.0 * sigma * sigma))


def estimate_sigma(distances: np.ndarray) -> float:
    """Kernel width heuristic: mean of all pairwise squared distances"""
    sigma = float(np.mean(distances)) if distances.size else 0.0
    if not sigma > 0:
        raise InvalidInputError("Support rows are identical; cannot estimate a kernel width")
    return sigma


def _check_support(support_matrix: np.ndarray, n_values: int, what: str) -> np.ndarray:
    support = np.array(support_matrix, dtype=float)
    if support.ndim != 2 or len(support) == 0:
        raise InvalidInputError(f"Support matrix must be a non-empty 2-D array, got shape {support.shape}")
    if n_values != len(support):
        raise InvalidInputError(
            f"{what} length {n_values} does not match {len(support)} support rows"
        )
    return support


def train_kernel_ridge(support_matrix: np.ndarray, targets: np.ndarray,
                       C: Optional[float] = None,
                       sigma: Optional[float] = None) -> Tuple[np.ndarray, float, float]:
    """
    Train the regularized Gaussian kernel regressor

    Args:
        support_matrix: Normalized support rows, shape (n, d)
        targets: Concentrations, shape (n,)
        C: Regularization strength; missing or non-positive means 1000
        sigma: Kernel width; missing or non-positive means estimated

    Returns:
        (alpha, C, sigma) with the values actually used
    """
    y = np.array(targets, dtype=float).ravel()
    support = _check_support(support_matrix, len(y), 'Target vector')

    if C is None or C <= 0:
        C = DEFAULT_C

    d = squared_distances(support, support)
    if sigma is None or sigma <= 0:
        sigma = estimate_sigma(d)

    kernel = gaussian_kernel(d, sigma)
    kernel[np.diag_indices_from(kernel)] += 1.0 / C

    alpha, _, rank, _ = linalg.lstsq(kernel, y)
    if rank < len(y):
        logger.warning(f"Kernel matrix is rank deficient ({rank} < {len(y)})")

    logger.info(f"Trained kernel ridge model: {len(y)} support rows, C = {C:g}, sigma = {sigma:.4f}")
    return alpha, float(C), float(sigma)


def predict_kernel_ridge(support_matrix: np.ndarray, query_matrix: np.ndarray,
                         alpha: np.ndarray, sigma: float) -> np.ndarray:
    """
    Predict concentrations for query rows

    Args:
        support_matrix: Normalized support rows used at training, shape (n, d)
        query_matrix: Normalized query rows, shape (m, d)
        alpha: Trained coefficients, shape (n,)
        sigma: Kernel width used at training, must be positive

    Returns:
        Predictions, shape (m,)
    """
    a = np.asarray(alpha, dtype=float).ravel()
    support = _check_support(support_matrix, len(a), 'Coefficient vector')
    query = np.array(query_matrix, dtype=float)
    if query.ndim == 1:
        query = query.reshape(1, -1)
    if sigma is None or not sigma > 0:
        raise InvalidInputError("Prediction requires the positive kernel width used at training")

    kernel = gaussian_kernel(squared_distances(query, support), sigma)
    return kernel @ a


@dataclass
class RegressionModel:
    """Trained kernel ridge state; exclusively owns its arrays"""
    normalization: NormalizationConstants
    sigma: float
    C: float
    support_matrix: np.ndarray  # normalized covariate rows
    targets: np.ndarray  # raw concentrations
    alpha: np.ndarray

    def __post_init__(self):
        self.support_matrix = np.array(self.support_matrix, dtype=float)
        self.targets = np.array(self.targets, dtype=float).ravel()
        self.alpha = np.array(self.alpha, dtype=float).ravel()
        self.check_consistency()

    @property
    def n_support(self) -> int:
        return len(self.support_matrix)

    def check_consistency(self):
        """Support rows, targets and alpha must have equal counts"""
        if self.support_matrix.ndim != 2 or self.support_matrix.shape[1] != self.normalization.n_columns:
            raise InvalidInputError(
                f"Support matrix shape {self.support_matrix.shape} does not match "
                f"{self.normalization.n_columns} covariate columns"
            )
        if not (len(self.support_matrix) == len(self.targets) == len(self.alpha)):
            raise InvalidInputError(
                f"Inconsistent model: {len(self.support_matrix)} support rows, "
                f"{len(self.targets)} targets, {len(self.alpha)} coefficients"
            )
        if not self.sigma > 0 or not self.C > 0:
            raise InvalidInputError(f"Model needs positive sigma and C (got {self.sigma}, {self.C})")


def train_model(covariate_rows: np.ndarray, targets: np.ndarray,
                C: Optional[float] = None, sigma: Optional[float] = None) -> RegressionModel:
    """
    Normalize covariate rows and train a RegressionModel on them

    Args:
        covariate_rows: Raw [time, dose, sex, age, weight] rows (the inliers)
        targets: Measured concentrations, one per row
        C: Regularization strength (default 1000)
        sigma: Kernel width (default: estimated)

    Returns:
        Trained RegressionModel
    """
    rows = as_covariate_matrix(covariate_rows)
    y = np.array(targets, dtype=float).ravel()
    if len(rows) != len(y):
        raise InvalidInputError(f"{len(rows)} covariate rows but {len(y)} targets")

    constants = fit_normalization(rows)
    support = constants.apply(rows)
    alpha, C, sigma = train_kernel_ridge(support, y, C, sigma)

    return RegressionModel(normalization=constants, sigma=sigma, C=C,
                           support_matrix=support, targets=y, alpha=alpha)


def predict(model: RegressionModel, covariate_rows: np.ndarray) -> np.ndarray:
    """Predict concentrations for raw covariate rows with a trained model"""
    model.check_consistency()
    query = model.normalization.apply(covariate_rows)
    return predict_kernel_ridge(model.support_matrix, query, model.alpha, model.sigma)
