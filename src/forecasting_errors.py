"""
Error Kinds for the Concentration Forecasting Engine
====================================================

Fitting and training fail fast with one of these instead of handing back a
partially valid model.
"""


class ForecastingError(Exception):
    """Base class for all forecasting engine errors"""


class InvalidInputError(ForecastingError, ValueError):
    """Malformed input: non-positive times, shape mismatches, bad parameters"""


class DegenerateFitError(ForecastingError, RuntimeError):
    """Robust curve fit found no inliers in any trial"""


class NumericInstabilityError(ForecastingError, ArithmeticError):
    """Squared distances went negative beyond round-off tolerance"""
