import pytest
import logging
import numpy as np
import polars as pl

from storm_gridding.utils import (
    ColumnNotFoundError,
    DataError,
    DuplicateLocationError,
    FitConvergenceError,
    GriddingError,
    SingularSystemError,
    adjust_small_negative,
    check_cols,
    init_logging,
    knots_to_ms,
)


@pytest.mark.parametrize(
    "error",
    [
        DataError,
        FitConvergenceError,
        SingularSystemError,
        DuplicateLocationError,
        ColumnNotFoundError,
    ],
)
def test_error_hierarchy(error) -> None:  # noqa: D103
    assert issubclass(error, GriddingError)
    return None


def test_check_cols() -> None:  # noqa: D103
    df = pl.DataFrame({"x": [1.0], "y": [2.0]})
    check_cols(df, ["x", "y"])
    with pytest.raises(ColumnNotFoundError, match="value"):
        check_cols(df, ["x", "value"])
    return None


def test_adjust_small_negative() -> None:  # noqa: D103
    vals = np.array([1.0, 0.0, -1e-12])
    adjusted = adjust_small_negative(vals)

    assert np.array_equal(adjusted, [1.0, 0.0, 0.0])
    # Copy
    assert vals[2] == -1e-12

    with pytest.warns(UserWarning):
        adjusted = adjust_small_negative(np.array([-0.5, 2.0]))
    assert np.array_equal(adjusted, [0.0, 2.0])
    return None


def test_knots_to_ms() -> None:  # noqa: D103
    assert np.isclose(knots_to_ms(1.0), 0.514444, atol=1e-6)
    assert np.allclose(knots_to_ms(np.array([0.0, 100.0])), [0.0, 51.4444])
    return None


def test_init_logging(tmp_path) -> None:  # noqa: D103
    log_file = tmp_path / "run.log"
    init_logging(file=str(log_file), level="info")

    logging.info("Test message")
    logging.debug("Hidden message")
    logging.shutdown()

    contents = log_file.read_text()
    assert "INFO at" in contents
    assert "Test message" in contents
    assert "Hidden message" not in contents

    with pytest.raises(ValueError):
        init_logging(level="verbose")
    return None
