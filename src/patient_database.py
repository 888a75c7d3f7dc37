"""
Patient Database for Concentration Forecasting
==============================================

This module provides the patient-level data structures and ingestion helpers:
- Sample and Patient containers for clinical drug-level measurements
- Reading whitespace-separated measurement records into patients
- Covariate builder producing the fixed [time, dose, sex, age, weight] rows
- Tabular (pandas) view of a patient list

Record format, one measurement per line:

    patient_id concentration time dose sex age weight

Consecutive lines sharing a patient id belong to the same patient.
"""

import numpy as np
import pandas as pd
from typing import List, Tuple, Union
from dataclasses import dataclass, field
from pathlib import Path
import logging

from forecasting_errors import InvalidInputError

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RECORD_COLUMNS = ('patient_id', 'concentration', 'time', 'dose', 'sex', 'age', 'weight')
COVARIATE_COLUMNS = ('time', 'dose', 'sex', 'age', 'weight')
N_COVARIATES = len(COVARIATE_COLUMNS)
TIME_COLUMN = COVARIATE_COLUMNS.index('time')


@dataclass(frozen=True)
class Sample:
    """One clinical measurement together with the owning patient's covariates"""
    time: float  # Time since dose (h), strictly positive
    concentration: float  # Measured drug level
    dose: float  # Administered dose (mg)
    sex: float
    age: float  # years
    weight: float  # kg

    def covariate_row(self) -> np.ndarray:
        """Covariates in COVARIATE_COLUMNS order"""
        return np.array([self.time, self.dose, self.sex, self.age, self.weight], dtype=float)


@dataclass
class Patient:
    """Patient identifier, demographics and measurements (not necessarily time-ordered)"""
    patient_id: int
    sex: float
    age: float
    weight: float
    samples: List[Sample] = field(default_factory=list)

    def add_measurement(self, concentration: float, time: float, dose: float):
        """Append a measurement sharing this patient's demographics"""
        self.samples.append(Sample(time=float(time), concentration=float(concentration),
                                   dose=float(dose), sex=self.sex, age=self.age,
                                   weight=self.weight))

    @property
    def size(self) -> int:
        return len(self.samples)

    @property
    def times(self) -> np.ndarray:
        return np.array([s.time for s in self.samples], dtype=float)

    @property
    def concentrations(self) -> np.ndarray:
        return np.array([s.concentration for s in self.samples], dtype=float)

    @property
    def doses(self) -> np.ndarray:
        return np.array([s.dose for s in self.samples], dtype=float)

    def covariate_matrix(self) -> np.ndarray:
        """One covariate row per sample, shape (n_samples, 5)"""
        if not self.samples:
            return np.empty((0, N_COVARIATES))
        return np.vstack([s.covariate_row() for s in self.samples])


def read_patient_database(filename: Union[str, Path]) -> List[Patient]:
    """
    Read a whitespace-separated measurement file into a list of patients

    Args:
        filename: Path to the record file

    Returns:
        Patients in file order
    """
    path = Path(filename)
    try:
        records = pd.read_csv(path, sep=r'\s+', header=None, comment='#')
    except pd.errors.EmptyDataError:
        logger.warning(f"No records found in {path}")
        return []
    except pd.errors.ParserError as e:
        raise InvalidInputError(f"Malformed record file {path}: {e}") from e

    if records.shape[1] != len(RECORD_COLUMNS):
        raise InvalidInputError(
            f"Expected {len(RECORD_COLUMNS)} fields per record in {path}, found {records.shape[1]}"
        )
    records.columns = list(RECORD_COLUMNS)

    patients = records_to_patients(records)
    n_samples = sum(p.size for p in patients)
    logger.info(f"Read {len(patients)} patients ({n_samples} samples) from {path}")
    return patients


def records_to_patients(records: pd.DataFrame) -> List[Patient]:
    """
    Group measurement records into patients

    A new patient starts whenever the id differs from the previous line's id,
    so a repeated id further down the file starts a separate patient.
    """
    missing = [c for c in RECORD_COLUMNS if c not in records.columns]
    if missing:
        raise InvalidInputError(f"Missing record columns: {missing}")
    if records.empty:
        return []

    try:
        records = records[list(RECORD_COLUMNS)].apply(pd.to_numeric)
    except (ValueError, TypeError) as e:
        raise InvalidInputError(f"Non-numeric record field: {e}") from e

    if records.isna().any().any():
        bad_rows = records.index[records.isna().any(axis=1)].tolist()
        raise InvalidInputError(f"Incomplete records at rows {bad_rows[:10]}")

    patient_ids = records['patient_id']
    runs = (patient_ids != patient_ids.shift()).cumsum()

    patients = []
    for _, group in records.groupby(runs, sort=False):
        first = group.iloc[0]
        patient = Patient(patient_id=int(first['patient_id']), sex=float(first['sex']),
                          age=float(first['age']), weight=float(first['weight']))
        for row in group.itertuples(index=False):
            patient.add_measurement(row.concentration, row.time, row.dose)
        patients.append(patient)

    return patients


def build_covariate_matrix(patients: List[Patient]) -> Tuple[np.ndarray, np.ndarray]:
    """
    Stack every sample of every patient into covariate rows

    Returns:
        (covariates of shape (n_samples, 5), measured concentrations of shape (n_samples,))
    """
    frame = patients_to_frame(patients)
    covariates = frame[list(COVARIATE_COLUMNS)].to_numpy(dtype=float)
    concentrations = frame['concentration'].to_numpy(dtype=float)
    return covariates.reshape(-1, N_COVARIATES), concentrations


def patients_to_frame(patients: List[Patient]) -> pd.DataFrame:
    """Long-format table with one row per sample"""
    rows = []
    for patient in patients:
        for k, sample in enumerate(patient.samples):
            rows.append({
                'patient_id': patient.patient_id,
                'sample_index': k,
                'concentration': sample.concentration,
                'time': sample.time,
                'dose': sample.dose,
                'sex': sample.sex,
                'age': sample.age,
                'weight': sample.weight,
            })
    columns = ['patient_id', 'sample_index', 'concentration'] + list(COVARIATE_COLUMNS)
    return pd.DataFrame(rows, columns=columns)
