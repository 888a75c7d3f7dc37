"""Shared fixtures: synthetic patient databases following a decay curve"""

import numpy as np
import pytest

from patient_database import Patient

DECAY_COEFFICIENTS = np.array([200.0, -150.0, 1500.0])
SAMPLE_TIMES = np.array([1.0, 2.0, 4.0, 8.0, 12.0, 24.0])


def decay_curve(times):
    t = np.asarray(times, dtype=float)
    return (DECAY_COEFFICIENTS[0] * t ** -2 + DECAY_COEFFICIENTS[1] * np.log(t)
            + DECAY_COEFFICIENTS[2] * (1.0 - np.exp(-t)))


def make_patients(n_patients, seed, first_id=1, outliers=()):
    """Patients whose concentrations follow the decay curve scaled by dose"""
    rng = np.random.default_rng(seed)
    patients = []
    sample_index = 0
    for i in range(n_patients):
        patient = Patient(patient_id=first_id + i, sex=float(i % 2),
                          age=float(rng.integers(30, 70)), weight=float(rng.integers(50, 90)))
        dose = float(rng.choice([300.0, 400.0, 500.0]))
        for t in SAMPLE_TIMES:
            concentration = decay_curve(t) * (0.9 + 0.2 * (dose - 300.0) / 200.0)
            concentration += rng.normal(0.0, 20.0)
            if sample_index in outliers:
                concentration += 4000.0
            patient.add_measurement(concentration, t, dose)
            sample_index += 1
        patients.append(patient)
    return patients


@pytest.fixture
def train_patients():
    return make_patients(8, seed=7, outliers=(3, 17, 40))


@pytest.fixture
def test_patients():
    return make_patients(3, seed=11, first_id=100)


@pytest.fixture
def covariate_rows():
    rng = np.random.default_rng(3)
    return np.column_stack([
        rng.uniform(1.0, 24.0, 30),
        rng.choice([300.0, 400.0, 500.0], 30),
        rng.integers(0, 2, 30).astype(float),
        rng.uniform(30.0, 70.0, 30),
        rng.uniform(50.0, 90.0, 30),
    ])


@pytest.fixture
def covariate_targets(covariate_rows):
    return decay_curve(covariate_rows[:, 0]) * covariate_rows[:, 1] / 400.0
