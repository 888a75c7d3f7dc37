import importlib.util
import json
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from feature_normalization import fit_normalization
from forecast_reporting import (
    format_curve, format_fit_summary, format_patient_database, plot_concentration_curve
)
from robust_curve_fitting import RobustFitResult

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "run_forecasting.py"


def load_driver():
    spec = importlib.util.spec_from_file_location("run_forecasting", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def write_database(path, patients):
    lines = []
    for p in patients:
        for s in p.samples:
            lines.append(f"{p.patient_id} {s.concentration} {s.time} {s.dose} {p.sex} {p.age} {p.weight}")
    path.write_text("\n".join(lines) + "\n")


def test_format_patient_database(train_patients):
    text = format_patient_database(train_patients[:2])
    assert text.startswith(f"Patient {train_patients[0].patient_id}: sex")
    assert text.count("concentrations:") == 2
    assert "times: 1.000000 2.000000" in text


def test_format_fit_summary(covariate_rows):
    result = RobustFitResult(coefficients=np.array([1.0, 2.0, 3.0]),
                             inlier_indices=np.array([0, 2, 3]), n_samples=5,
                             n_trials=10, best_trial=4, threshold=1.0, history=[(4, 3)])
    text = format_fit_summary(result, fit_normalization(covariate_rows))
    assert text.splitlines()[0] == "# inliers = 3 / 5, coefficients = 1.000000 2.000000 3.000000"
    assert "Feature weight, mean" in text


def test_format_curve_labels_signal():
    curve = pd.DataFrame({'time': [1.0, 2.0, 3.0], 'concentration': [500.0, 1000.0, 2000.0],
                          'signal': [-1, 0, 1]})
    lines = format_curve(curve).splitlines()
    assert len(lines) == 4
    assert lines[1].endswith("below")
    assert lines[2].endswith("within")
    assert lines[3].endswith("above")


def test_plot_concentration_curve_saves_figure(tmp_path, test_patients):
    curve = pd.DataFrame({'time': [1.0, 2.0, 3.0], 'concentration': [900.0, 1100.0, 1000.0],
                          'signal': [0, 0, 0]})
    output = tmp_path / "figures" / "curve.png"

    fig = plot_concentration_curve(curve, test_patients[0], (750.0, 1500.0), output_path=output)

    assert output.exists()
    plt.close(fig)


def test_driver_end_to_end(tmp_path, train_patients, test_patients, capsys):
    train = tmp_path / "train.txt"
    test = tmp_path / "test.txt"
    config = tmp_path / "config.json"
    write_database(train, train_patients)
    write_database(test, test_patients)
    config.write_text(json.dumps({'n_trials': 300, 'random_seed': 1}))
    figure = tmp_path / "curve.png"

    status = load_driver().main([str(train), str(test), '--config', str(config),
                                 '--patient', '1', '--points', '6', '--update',
                                 '--figure', str(figure)])

    out = capsys.readouterr().out
    assert status == 0
    assert "# inliers = 45 / 48" in out
    assert f"Forecast for test patient {test_patients[1].patient_id}:" in out
    assert "Support set refreshed with 18 samples" in out
    assert figure.exists()


def test_driver_rejects_bad_patient_index(tmp_path, train_patients, test_patients):
    train = tmp_path / "train.txt"
    test = tmp_path / "test.txt"
    write_database(train, train_patients)
    write_database(test, test_patients)

    assert load_driver().main([str(train), str(test), '--patient', '7']) == 1
