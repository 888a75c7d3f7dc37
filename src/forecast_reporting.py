"""
Console Reports and Figures for Concentration Forecasts
=======================================================

Text summaries of patient databases, robust fits and predicted curves, plus a
matplotlib/seaborn figure of a predicted concentration curve.
"""

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use('Agg')  # Non-interactive backend
import matplotlib.pyplot as plt
import seaborn as sns
from typing import Dict, List, Optional, Union
from pathlib import Path
import logging

from patient_database import Patient
from robust_curve_fitting import RobustFitResult
from feature_normalization import NormalizationConstants

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SIGNAL_LABELS = {-1: 'below', 0: 'within', 1: 'above'}


def _format_values(values: np.ndarray) -> str:
    return ' '.join(f"{v:f}" for v in values)


def format_patient_database(patients: List[Patient]) -> str:
    """One block per patient: demographics, concentrations, times and doses"""
    lines = []
    for p in patients:
        lines.append(f"Patient {p.patient_id}: sex {p.sex:f}, age {p.age:f}, weight {p.weight:f}")
        lines.append(f"    concentrations: {_format_values(p.concentrations)}")
        lines.append(f"    times: {_format_values(p.times)}")
        lines.append(f"    doses: {_format_values(p.doses)}")
    return '\n'.join(lines)


def format_fit_summary(fit_result: RobustFitResult,
                       constants: Optional[NormalizationConstants] = None) -> str:
    """Inlier count, decay coefficients and normalization constants"""
    coefficients = ' '.join(f"{c:f}" for c in fit_result.coefficients)
    lines = [f"# inliers = {fit_result.n_inliers} / {fit_result.n_samples}, "
             f"coefficients = {coefficients}"]
    if constants is not None:
        for name, values in constants.to_dict().items():
            lines.append(f"Feature {name}, mean {values['mean']:f}, std {values['std']:f}")
    return '\n'.join(lines)


def format_metrics(metrics: Dict[str, float]) -> str:
    return (f"n = {metrics['n_samples']}, RMSE = {metrics['rmse']:.3f}, "
            f"MAE = {metrics['mae']:.3f}, R2 = {metrics['r2']:.3f}")


def format_curve(curve: pd.DataFrame) -> str:
    """Predicted concentrations and their therapeutic-window signal"""
    lines = [f"{'time (h)':>10} {'concentration':>15} {'signal':>8}"]
    for row in curve.itertuples(index=False):
        label = SIGNAL_LABELS.get(int(row.signal), str(row.signal))
        lines.append(f"{row.time:10.2f} {row.concentration:15.3f} {label:>8}")
    return '\n'.join(lines)


def plot_concentration_curve(curve: pd.DataFrame, patient: Optional[Patient] = None,
                             therapeutic_window: Optional[tuple] = None,
                             output_path: Optional[Union[str, Path]] = None) -> plt.Figure:
    """
    Plot a predicted concentration curve

    Args:
        curve: Output of ConcentrationForecaster.predict_curve
        patient: Optional patient whose measurements are overlaid
        therapeutic_window: Optional (low, high) band to shade
        output_path: Save the figure here when given

    Returns:
        The matplotlib figure
    """
    sns.set_style("whitegrid")
    fig, ax = plt.subplots(figsize=(8, 5))

    ax.plot(curve['time'], curve['concentration'], color='#2E86AB', linewidth=2,
            marker='o', markersize=4, label='Predicted')

    if patient is not None and patient.size:
        ax.scatter(patient.times, patient.concentrations, color='#C73E1D', zorder=3,
                   label=f"Measured (patient {patient.patient_id})")

    if therapeutic_window is not None:
        low, high = therapeutic_window
        ax.axhspan(low, high, color='#A8DADC', alpha=0.3, label='Therapeutic window')

    ax.set_xlabel('Time (h)')
    ax.set_ylabel('Concentration')
    ax.set_title('Predicted Concentration-Time Profile')
    ax.legend(frameon=True)
    fig.tight_layout()

    if output_path is not None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(output_path, dpi=300, bbox_inches='tight')
        logger.info(f"Saved concentration curve to {output_path}")

    return fig
