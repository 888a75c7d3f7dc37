"""
Concentration Forecasting Pipeline
==================================

This module wires the modeling components into one session object:
- Robust decay-curve fit selecting inlier training measurements
- Covariate normalization fitted on the inliers
- Gaussian kernel ridge regression trained on the normalized inliers
- Concentration curves for new patients with a therapeutic-window signal
- Online support-set refresh as new measurements arrive
- Evaluation of predictions against measured concentrations
"""

import numpy as np
import pandas as pd
from typing import Deque, Dict, List, Optional, Union
from collections import deque
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from sklearn.exceptions import NotFittedError
from sklearn.metrics import mean_absolute_error, mean_squared_error, r2_score
import json
import logging

from forecasting_errors import ForecastingError, InvalidInputError
from patient_database import (
    Patient, Sample, COVARIATE_COLUMNS, TIME_COLUMN, build_covariate_matrix, patients_to_frame
)
from robust_curve_fitting import RobustFitResult, fit_robust_model
from kernel_ridge_regression import RegressionModel, train_model, predict
from support_set_update import SupportSetUpdate, update_model

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass
class ForecastingConfig:
    """Configuration for the forecasting session"""
    # Robust curve fit
    inlier_threshold: float = 500.0  # concentration units
    subset_size: int = 4
    n_trials: int = 100_000
    random_seed: Optional[int] = 42

    # Kernel ridge regression (None: default C / estimated sigma)
    regularization: Optional[float] = None
    kernel_width: Optional[float] = None

    # Concentration curve
    curve_start: float = 1.0  # h
    curve_stop: float = 24.0  # h
    curve_points: int = 24
    curve_dose: float = 400.0  # mg

    # Therapeutic window
    therapeutic_low: float = 750.0
    therapeutic_high: float = 1500.0

    # Most recent update records kept by the session
    update_history_size: int = 100

    def __post_init__(self):
        if not self.inlier_threshold > 0:
            raise InvalidInputError(f"inlier_threshold must be positive, got {self.inlier_threshold}")
        if self.subset_size < 3:
            raise InvalidInputError(f"subset_size must be at least 3, got {self.subset_size}")
        if self.n_trials < 1:
            raise InvalidInputError(f"n_trials must be positive, got {self.n_trials}")
        if self.therapeutic_low > self.therapeutic_high:
            raise InvalidInputError("therapeutic_low must not exceed therapeutic_high")
        if self.update_history_size < 0:
            raise InvalidInputError(f"update_history_size must be non-negative, got {self.update_history_size}")
        _check_curve_grid(self.curve_start, self.curve_stop, self.curve_points)

    @classmethod
    def from_json(cls, filename: Union[str, Path]) -> 'ForecastingConfig':
        """Load configuration overrides from a JSON object"""
        with open(filename, 'r') as f:
            overrides = json.load(f)
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise InvalidInputError(f"Unknown configuration keys: {unknown}")
        return cls(**overrides)

    def to_dict(self) -> Dict:
        return asdict(self)


def _check_curve_grid(start: float, stop: float, n_points: int):
    if start < 0 or start >= stop:
        raise InvalidInputError(f"Curve needs 0 <= start < stop, got start={start}, stop={stop}")
    if n_points < 1:
        raise InvalidInputError(f"Curve needs at least one point, got {n_points}")


class ConcentrationForecaster:
    """
    Modeling session owning one RegressionModel

    Calls must be serialized; updates mutate the model in place.
    """

    def __init__(self, config: ForecastingConfig = None):
        """
        Initialize forecaster

        Args:
            config: Session configuration
        """
        self.config = config or ForecastingConfig()
        self.rng = np.random.default_rng(self.config.random_seed)
        self.fit_result: Optional[RobustFitResult] = None
        self.model: Optional[RegressionModel] = None
        self.update_history: Deque[SupportSetUpdate] = deque(maxlen=self.config.update_history_size)

    @property
    def is_fitted(self) -> bool:
        return self.model is not None

    def _require_model(self) -> RegressionModel:
        if self.model is None:
            raise NotFittedError("ConcentrationForecaster is not fitted; call fit() first")
        return self.model

    def fit(self, patients: List[Patient]) -> RegressionModel:
        """
        Robustly select inliers and train the regression model on them

        Args:
            patients: Training patients

        Returns:
            Trained RegressionModel
        """
        covariates, concentrations = build_covariate_matrix(patients)
        logger.info(f"Fitting on {len(concentrations)} samples from {len(patients)} patients")

        try:
            fit_result = fit_robust_model(
                covariates[:, TIME_COLUMN], concentrations,
                threshold=self.config.inlier_threshold,
                subset_size=self.config.subset_size,
                n_trials=self.config.n_trials,
                random_state=self.rng
            )
            inliers = fit_result.inlier_indices
            model = train_model(covariates[inliers], concentrations[inliers],
                                C=self.config.regularization, sigma=self.config.kernel_width)
        except ForecastingError as e:
            logger.error(f"Model fitting failed: {e}")
            raise

        self.fit_result = fit_result
        self.model = model
        self.update_history.clear()
        return model

    def predict(self, covariate_rows: np.ndarray) -> np.ndarray:
        """Predict concentrations for raw [time, dose, sex, age, weight] rows"""
        return predict(self._require_model(), covariate_rows)

    def predict_patients(self, patients: List[Patient]) -> pd.DataFrame:
        """
        Predict every measurement of the given patients

        Returns:
            One row per sample with observed and predicted concentrations
        """
        frame = patients_to_frame(patients)
        if frame.empty:
            frame['predicted'] = pd.Series(dtype=float)
        else:
            frame['predicted'] = self.predict(frame[list(COVARIATE_COLUMNS)].to_numpy(dtype=float))
        frame['residual'] = frame['concentration'].astype(float) - frame['predicted']
        return frame

    def evaluate(self, patients: List[Patient]) -> Dict[str, float]:
        """RMSE, MAE and R^2 of the predictions against measured concentrations"""
        frame = self.predict_patients(patients)
        if frame.empty:
            raise InvalidInputError("No samples to evaluate")
        observed = frame['concentration'].to_numpy()
        predicted = frame['predicted'].to_numpy()
        metrics = {
            'n_samples': int(len(frame)),
            'rmse': float(np.sqrt(mean_squared_error(observed, predicted))),
            'mae': float(mean_absolute_error(observed, predicted)),
            'r2': float(r2_score(observed, predicted)) if len(frame) > 1 else float('nan'),
        }
        logger.info(f"Evaluation: RMSE = {metrics['rmse']:.3f}, MAE = {metrics['mae']:.3f}, "
                    f"R2 = {metrics['r2']:.3f}")
        return metrics

    def predict_curve(self, patient: Patient, dose: Optional[float] = None,
                      start: Optional[float] = None, stop: Optional[float] = None,
                      n_points: Optional[int] = None) -> pd.DataFrame:
        """
        Concentration curve for a patient at a fixed dose

        Args:
            patient: Patient supplying sex, age and weight
            dose: Dose (mg); config.curve_dose by default
            start: First time (h), start >= 0
            stop: Last time (h), stop > start
            n_points: Number of evenly spaced times, stop included

        Returns:
            DataFrame with time, concentration and therapeutic-window signal
        """
        model = self._require_model()
        dose = self.config.curve_dose if dose is None else dose
        start = self.config.curve_start if start is None else start
        stop = self.config.curve_stop if stop is None else stop
        n_points = self.config.curve_points if n_points is None else n_points
        _check_curve_grid(start, stop, n_points)

        times = np.linspace(start, stop, n_points)
        rows = np.column_stack([
            times,
            np.full(n_points, dose, dtype=float),
            np.full(n_points, patient.sex, dtype=float),
            np.full(n_points, patient.age, dtype=float),
            np.full(n_points, patient.weight, dtype=float),
        ])
        concentrations = predict(model, rows)

        return pd.DataFrame({
            'time': times,
            'concentration': concentrations,
            'signal': self.classify_therapeutic_window(concentrations),
        })

    def classify_therapeutic_window(self, concentrations: np.ndarray) -> np.ndarray:
        """-1 below the window, +1 above it, 0 inside"""
        c = np.asarray(concentrations, dtype=float)
        signal = np.zeros(c.shape, dtype=int)
        signal[c < self.config.therapeutic_low] = -1
        signal[c > self.config.therapeutic_high] = 1
        return signal

    def update(self, sample: Sample) -> SupportSetUpdate:
        """Refresh the support set with one new measurement"""
        result = update_model(self._require_model(), sample)
        self.update_history.append(result)
        return result

    def update_from_patients(self, patients: List[Patient]) -> List[SupportSetUpdate]:
        """Stream every sample of every patient through the support-set updater"""
        updates = []
        for i, patient in enumerate(patients):
            for j, sample in enumerate(patient.samples):
                logger.info(f"Updating with patient {i} (id {patient.patient_id}), sample {j}")
                updates.append(self.update(sample))
        return updates
