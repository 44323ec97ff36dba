r"""Utility functions and error classes for `storm_gridding`"""

import inspect
import logging
from typing import Any
import numpy as np
import polars as pl
from warnings import warn

from storm_gridding.constants import KNOTS_TO_MS


class GriddingError(Exception):
    """Base class for errors raised by storm_gridding"""

    pass


class DataError(GriddingError):
    """Error class for malformed, non-finite, or duplicated observations"""

    pass


class FitConvergenceError(GriddingError):
    """Error class for a variogram fit that is under-determined or fails"""

    pass


class SingularSystemError(GriddingError):
    """Error class for a Kriging system that cannot be solved"""

    pass


class DuplicateLocationError(GriddingError):
    """
    Error class for a query location that coincides with observations carrying
    different values
    """

    pass


class ColumnNotFoundError(DataError):
    """Error class for Column Not Being Found"""

    pass


def check_cols(
    df: pl.DataFrame,
    cols: list[str],
) -> None:
    """Check that all columns in a list of columns are in a DataFrame"""
    # Get name of function that is calling this
    calling_func = str(inspect.stack()[1][3])

    missing_cols = [c for c in cols if c not in df.columns]
    if missing_cols:
        raise ColumnNotFoundError(
            calling_func
            + ": DataFrame is missing required columns: "
            + ", ".join(missing_cols)
        )
    return None


def adjust_small_negative(
    vals: np.ndarray,
    atol: float = 1e-8,
) -> np.ndarray:
    """
    Adjusts negative values in an array of squared uncertainties to 0.

    Raises a warning if any negative values with absolute value larger than
    `atol` are detected, these indicate a poorly conditioned Kriging system
    rather than floating point noise.

    Parameters
    ----------
    vals : np.ndarray[float]
        Squared uncertainty (variance) associated with the Kriging system.
    atol : float
        Absolute tolerance below which negative values are considered to be
        rounding noise.

    Returns
    -------
    ret : np.ndarray[float]
        A copy of the input with negative values set to 0.
    """
    ret = np.array(vals, dtype=float, copy=True)
    negative = ret < 0.0
    if not negative.any():
        return ret
    large_negative = np.logical_and(negative, ~np.isclose(ret, 0, atol=atol))
    if large_negative.any():
        warn(
            "Negative Kriging variances are detected: "
            + f"{ret[large_negative]}. Setting to 0."
        )
    else:
        logging.debug(f"Clamping {negative.sum()} small negative variances")
    ret[negative] = 0.0
    return ret


def knots_to_ms(speed: Any) -> Any:
    """
    speed: float | np.ndarray (knots)
    Convert a wind speed in knots to metres per second
    """
    return speed * KNOTS_TO_MS


def _get_logging_level(level: str) -> int:
    match level.lower():
        case "debug":
            level_i = 10
        case "info":
            level_i = 20
        case "warn":
            level_i = 30
        case "error":
            level_i = 40
        case "critical":
            level_i = 50
        case _:
            raise ValueError(f"Unknown logging level: {level}")
    return level_i


def init_logging(
    file: str | None = None,
    level: str = "DEBUG",
) -> None:
    """
    Initialise the logger

    Parameters
    ----------
    file : str
        File to send log messages to. If set to None (default) then print log
        messages to STDout
    level : str
        Level of logging, one of: "debug", "info", "warn", "error", "critical".

    Returns
    -------
    None
    """
    level_i: int = _get_logging_level(level)

    logging.basicConfig(
        filename=file,
        filemode="a",
        encoding="utf-8",
        format="%(levelname)s at %(asctime)s : %(message)s",
        level=level_i,
        force=True,
    )
    logging.captureWarnings(True)
    return None
