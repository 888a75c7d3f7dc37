import numpy as np
import pytest

import kernel_ridge_regression
from forecasting_errors import InvalidInputError, NumericInstabilityError
from kernel_ridge_regression import (
    DEFAULT_C, RegressionModel, estimate_sigma, gaussian_kernel, predict,
    predict_kernel_ridge, squared_distances, train_kernel_ridge, train_model
)

LINE_SUPPORT = np.array([
    [1.0, 0.0, 0.0, 0.0, 0.0],
    [2.0, 0.0, 0.0, 0.0, 0.0],
    [3.0, 0.0, 0.0, 0.0, 0.0],
])
LINE_TARGETS = np.array([10.0, 20.0, 30.0])


def test_recovers_training_target():
    alpha, C, sigma = train_kernel_ridge(LINE_SUPPORT, LINE_TARGETS, C=1000)

    assert C == 1000
    assert sigma == pytest.approx(12.0 / 9.0)
    prediction = predict_kernel_ridge(LINE_SUPPORT, [[2.0, 0.0, 0.0, 0.0, 0.0]], alpha, sigma)
    assert prediction[0] == pytest.approx(20.0, abs=0.1)


def test_train_model_recovers_training_target():
    model = train_model(LINE_SUPPORT, LINE_TARGETS, C=1000)
    assert predict(model, [[2.0, 0.0, 0.0, 0.0, 0.0]])[0] == pytest.approx(20.0, abs=0.1)


def test_squared_distances_match_direct_computation(covariate_rows):
    d = squared_distances(covariate_rows[:10], covariate_rows[5:])
    direct = ((covariate_rows[:10, None, :] - covariate_rows[None, 5:, :]) ** 2).sum(axis=2)
    np.testing.assert_allclose(d, direct, rtol=1e-9, atol=1e-6)


def test_round_off_negatives_are_clamped():
    rows = np.array([[1e8 + 0.1, 3e7, 1.0, 45.0, 70.0],
                     [1e8 + 0.1, 3e7, 1.0, 45.0, 70.0]])
    d = squared_distances(rows, rows)
    assert np.all(d >= 0.0)


def test_large_negative_distance_raises(monkeypatch):
    monkeypatch.setattr(kernel_ridge_regression, 'NEGATIVE_DISTANCE_TOLERANCE', -1.0)
    with pytest.raises(NumericInstabilityError):
        squared_distances(LINE_SUPPORT, LINE_SUPPORT)


@pytest.mark.parametrize("sigma", [0.01, 1.0, 100.0])
def test_kernel_values_in_unit_interval(covariate_rows, sigma):
    normalized = (covariate_rows - covariate_rows.mean(axis=0)) / covariate_rows.std(axis=0)
    kernel = gaussian_kernel(squared_distances(normalized, normalized[:7]), sigma)
    assert np.all(kernel >= 0.0)
    assert np.all(kernel <= 1.0)


def test_default_regularization_and_estimated_sigma(covariate_rows, covariate_targets):
    support = (covariate_rows - covariate_rows.mean(axis=0)) / covariate_rows.std(axis=0)
    alpha, C, sigma = train_kernel_ridge(support, covariate_targets, C=-1.0, sigma=0.0)

    assert C == DEFAULT_C
    assert sigma == pytest.approx(squared_distances(support, support).mean())
    assert alpha.shape == covariate_targets.shape


def test_identical_rows_cannot_estimate_sigma():
    rows = np.ones((4, 5))
    with pytest.raises(InvalidInputError):
        estimate_sigma(squared_distances(rows, rows))


def test_train_rejects_mismatched_targets():
    with pytest.raises(InvalidInputError):
        train_kernel_ridge(LINE_SUPPORT, LINE_TARGETS[:2])


def test_predict_rejects_non_positive_sigma():
    alpha, _, _ = train_kernel_ridge(LINE_SUPPORT, LINE_TARGETS)
    with pytest.raises(InvalidInputError):
        predict_kernel_ridge(LINE_SUPPORT, LINE_SUPPORT, alpha, 0.0)


def test_predict_rejects_mismatched_alpha():
    with pytest.raises(InvalidInputError):
        predict_kernel_ridge(LINE_SUPPORT, LINE_SUPPORT, np.ones(2), 1.0)


def test_predict_rejects_mismatched_columns():
    alpha, _, sigma = train_kernel_ridge(LINE_SUPPORT, LINE_TARGETS)
    with pytest.raises(InvalidInputError):
        predict_kernel_ridge(LINE_SUPPORT, np.ones((2, 4)), alpha, sigma)


def test_model_counts_are_consistent(covariate_rows, covariate_targets):
    model = train_model(covariate_rows, covariate_targets)
    assert model.n_support == len(model.targets) == len(model.alpha) == len(covariate_rows)
    assert model.sigma > 0
    assert model.C == DEFAULT_C


def test_model_does_not_alias_caller_buffers(covariate_rows, covariate_targets):
    targets = covariate_targets.copy()
    model = train_model(covariate_rows, targets)
    targets[:] = 0.0
    np.testing.assert_allclose(model.targets, covariate_targets)


def test_predict_is_idempotent(covariate_rows, covariate_targets):
    model = train_model(covariate_rows, covariate_targets)
    support_before = model.support_matrix.copy()
    alpha_before = model.alpha.copy()
    query = covariate_rows[:5] + 0.5

    first = predict(model, query)
    second = predict(model, query)

    np.testing.assert_array_equal(first, second)
    np.testing.assert_array_equal(model.support_matrix, support_before)
    np.testing.assert_array_equal(model.alpha, alpha_before)


def test_inconsistent_model_is_rejected(covariate_rows, covariate_targets):
    model = train_model(covariate_rows, covariate_targets)
    with pytest.raises(InvalidInputError):
        RegressionModel(normalization=model.normalization, sigma=model.sigma, C=model.C,
                        support_matrix=model.support_matrix, targets=model.targets[:-1],
                        alpha=model.alpha)

    model.alpha = model.alpha[:-1]
    with pytest.raises(InvalidInputError):
        predict(model, covariate_rows[:2])


def test_train_model_rejects_mismatched_rows(covariate_rows, covariate_targets):
    with pytest.raises(InvalidInputError):
        train_model(covariate_rows, covariate_targets[:-1])
