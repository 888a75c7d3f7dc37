#!/usr/bin/env python3
"""
Concentration Forecasting Driver
================================

Trains the forecasting model on one patient database and predicts a
concentration curve for a patient of another.

Usage:
    python scripts/run_forecasting.py database_train.txt database_test.txt
"""

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

import argparse
import logging
import matplotlib.pyplot as plt

from forecasting_errors import ForecastingError
from patient_database import read_patient_database
from concentration_forecasting import ConcentrationForecaster, ForecastingConfig
from forecast_reporting import (
    format_curve, format_fit_summary, format_metrics, format_patient_database,
    plot_concentration_curve
)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Forecast drug-concentration curves')
    parser.add_argument('train', type=str, help='Training database (whitespace-separated records)')
    parser.add_argument('test', type=str, help='Testing database')
    parser.add_argument('--config', type=str, help='JSON file with ForecastingConfig overrides')
    parser.add_argument('--patient', type=int, default=0, help='Index of the test patient to forecast')
    parser.add_argument('--dose', type=float, help='Dose (mg) for the forecast curve')
    parser.add_argument('--start', type=float, help='First curve time (h)')
    parser.add_argument('--stop', type=float, help='Last curve time (h)')
    parser.add_argument('--points', type=int, help='Number of curve points')
    parser.add_argument('--update', action='store_true',
                        help='Stream the test samples through the support-set updater')
    parser.add_argument('--figure', type=str, help='Save the forecast curve figure here')
    parser.add_argument('--print-database', action='store_true', help='Dump both databases')
    parser.add_argument('--verbose', action='store_true', help='Log every RANSAC improvement')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = ForecastingConfig.from_json(args.config) if args.config else ForecastingConfig()

    print("Training database:")
    train_patients = read_patient_database(args.train)
    print(f"   {len(train_patients)} patients")
    print("\nTesting database:")
    test_patients = read_patient_database(args.test)
    print(f"   {len(test_patients)} patients")

    if args.print_database:
        print(format_patient_database(train_patients))
        print(format_patient_database(test_patients))

    if not 0 <= args.patient < len(test_patients):
        print(f"ERROR: test patient index {args.patient} out of range (0-{len(test_patients) - 1})")
        return 1

    forecaster = ConcentrationForecaster(config)
    try:
        model = forecaster.fit(train_patients)
    except ForecastingError as e:
        print(f"ERROR: {e}")
        return 1

    print("\n" + format_fit_summary(forecaster.fit_result, model.normalization))
    print(f"sigma = {model.sigma:f}, C = {model.C:g}")
    print("\nTest set: " + format_metrics(forecaster.evaluate(test_patients)))

    patient = test_patients[args.patient]
    curve = forecaster.predict_curve(patient, dose=args.dose, start=args.start,
                                     stop=args.stop, n_points=args.points)
    print(f"\nForecast for test patient {patient.patient_id}:")
    print(format_curve(curve))

    if args.figure:
        fig = plot_concentration_curve(curve, patient,
                                       (config.therapeutic_low, config.therapeutic_high),
                                       output_path=args.figure)
        plt.close(fig)

    if args.update:
        updates = forecaster.update_from_patients(test_patients)
        print(f"\nSupport set refreshed with {len(updates)} samples")
        print("Test set after update: " + format_metrics(forecaster.evaluate(test_patients)))

    return 0


if __name__ == "__main__":
    sys.exit(main())
