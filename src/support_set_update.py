"""
Online Support-Set Maintenance
==============================

When a new labeled measurement arrives, the support row that is least
consistent with it is replaced and the regression model is retrained. The
support set keeps a fixed size.

Relevance of a support row i to the new sample s:

    d_i = (p_i - c)^2 + sum over dose, sex, age, weight of (x_i - x_s)^2

where p_i is the model's prediction for row i re-evaluated at the new
sample's measurement time and c the new concentration, both jointly
standardized. The row with the largest d_i is evicted.
"""

import numpy as np
from dataclasses import dataclass
import logging

from forecasting_errors import InvalidInputError
from kernel_ridge_regression import RegressionModel, predict_kernel_ridge, train_kernel_ridge
from patient_database import Sample, TIME_COLUMN

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass
class SupportSetUpdate:
    """Outcome of one support-set replacement"""
    evicted_index: int
    distances: np.ndarray
    evicted_row: np.ndarray  # normalized covariates that were replaced
    evicted_target: float

    @property
    def evicted_distance(self) -> float:
        return float(self.distances[self.evicted_index])


def _check_sample(sample: Sample):
    values = np.append(sample.covariate_row(), sample.concentration)
    if not np.all(np.isfinite(values)):
        raise InvalidInputError(f"Sample has non-finite fields: {sample}")
    if sample.time <= 0:
        raise InvalidInputError(f"Sample time must be positive, got {sample.time}")


def compute_eviction_distances(model: RegressionModel, sample: Sample) -> np.ndarray:
    """
    Combined concentration/covariate distance of every support row to a new sample

    Args:
        model: Trained model (not modified)
        sample: New labeled measurement

    Returns:
        Distances, one per support row
    """
    _check_sample(sample)
    model.check_consistency()
    new_row = model.normalization.apply(sample.covariate_row())[0]

    # Re-evaluate the support set at the new measurement time
    shifted = model.support_matrix.copy()
    shifted[:, TIME_COLUMN] = new_row[TIME_COLUMN]
    predicted = predict_kernel_ridge(model.support_matrix, shifted, model.alpha, model.sigma)

    pooled = np.concatenate([[sample.concentration], predicted])
    mean = pooled.mean()
    std = pooled.std()
    if std == 0:
        std = 1.0
    predicted = (predicted - mean) / std
    concentration = (sample.concentration - mean) / std

    covariate_mask = np.arange(model.support_matrix.shape[1]) != TIME_COLUMN
    covariate_diff = model.support_matrix[:, covariate_mask] - new_row[covariate_mask]

    return (predicted - concentration) ** 2 + np.sum(covariate_diff ** 2, axis=1)


def update_model(model: RegressionModel, sample: Sample) -> SupportSetUpdate:
    """
    Replace the least relevant support row with a new sample and retrain

    The model is modified in place; its support size does not change. If the
    sample is rejected or retraining fails the model is left untouched.

    Args:
        model: Trained model
        sample: New labeled measurement

    Returns:
        SupportSetUpdate describing the replacement
    """
    distances = compute_eviction_distances(model, sample)
    evicted = int(np.argmax(distances))

    update = SupportSetUpdate(evicted_index=evicted, distances=distances,
                              evicted_row=model.support_matrix[evicted].copy(),
                              evicted_target=float(model.targets[evicted]))

    support_matrix = model.support_matrix.copy()
    targets = model.targets.copy()
    support_matrix[evicted] = model.normalization.apply(sample.covariate_row())[0]
    targets[evicted] = sample.concentration
    alpha, _, _ = train_kernel_ridge(support_matrix, targets, model.C, model.sigma)

    model.support_matrix, model.targets, model.alpha = support_matrix, targets, alpha
    model.check_consistency()

    logger.info(f"Replaced support sample {evicted} (distance {update.evicted_distance:.4f})")
    return update
