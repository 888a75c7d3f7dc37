"""
Covariate Normalization
=======================

Per-column standardization of covariate rows. Constants are computed once,
over the training inliers only, and reused unchanged for every prediction
until the model is retrained.
"""

import numpy as np
from typing import Optional, Sequence
from dataclasses import dataclass
from sklearn.preprocessing import StandardScaler
import logging

from forecasting_errors import InvalidInputError
from patient_database import COVARIATE_COLUMNS, N_COVARIATES

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def as_covariate_matrix(matrix: np.ndarray, n_columns: int = N_COVARIATES) -> np.ndarray:
    """Validate and copy covariates into a float (n_rows, n_columns) array"""
    values = np.array(matrix, dtype=float)
    if values.ndim == 1:
        values = values.reshape(1, -1)
    if values.ndim != 2 or values.shape[1] != n_columns:
        raise InvalidInputError(
            f"Expected covariate rows with {n_columns} columns, got shape {values.shape}"
        )
    return values


@dataclass(frozen=True)
class NormalizationConstants:
    """Per-column mean and population standard deviation (zero std stored as 1)"""
    means: np.ndarray
    stds: np.ndarray

    def __post_init__(self):
        means = np.array(self.means, dtype=float).ravel()
        stds = np.array(self.stds, dtype=float).ravel()
        if means.shape != stds.shape:
            raise InvalidInputError("Means and stds must have the same length")
        if np.any(stds <= 0):
            raise InvalidInputError("Normalization stds must be positive")
        means.setflags(write=False)
        stds.setflags(write=False)
        object.__setattr__(self, 'means', means)
        object.__setattr__(self, 'stds', stds)

    @property
    def n_columns(self) -> int:
        return len(self.means)

    def apply(self, matrix: np.ndarray) -> np.ndarray:
        """Standardize rows; works for a single row"""
        values = as_covariate_matrix(matrix, self.n_columns)
        return (values - self.means) / self.stds

    def invert(self, normalized: np.ndarray) -> np.ndarray:
        """Map standardized rows back to covariate units"""
        values = as_covariate_matrix(normalized, self.n_columns)
        return values * self.stds + self.means

    def to_dict(self) -> dict:
        return {name: {'mean': float(m), 'std': float(s)}
                for name, m, s in zip(COVARIATE_COLUMNS, self.means, self.stds)}


def fit_normalization(matrix: np.ndarray, rows: Optional[Sequence[int]] = None) -> NormalizationConstants:
    """
    Compute normalization constants

    Args:
        matrix: Covariate rows, shape (n, 5)
        rows: Indices of the rows to use (the inliers); all rows when omitted

    Returns:
        Frozen NormalizationConstants
    """
    values = as_covariate_matrix(matrix)
    if rows is not None:
        values = values[np.asarray(rows, dtype=int)]
    if len(values) == 0:
        raise InvalidInputError("Cannot compute normalization constants from zero rows")

    # scale_ is the population std, with constant columns set to 1
    scaler = StandardScaler().fit(values)
    constants = NormalizationConstants(means=scaler.mean_, stds=scaler.scale_)
    for name, mean, std in zip(COVARIATE_COLUMNS, constants.means, constants.stds):
        logger.info(f"Feature {name}: mean {mean:.4f}, std {std:.4f}")
    return constants


def apply_normalization(matrix: np.ndarray, constants: NormalizationConstants) -> np.ndarray:
    """Standardize any number of rows with previously computed constants"""
    return constants.apply(matrix)
