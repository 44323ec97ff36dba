import pytest
import numpy as np
import polars as pl

from storm_gridding.observations import (
    Observation,
    SpatialDataset,
    find_duplicate_locations,
    project_frame,
    sinusoidal_projection,
)
from storm_gridding.utils import ColumnNotFoundError, DataError


RECORDS = [(0.0, 0.0, 1.0), (10.0, 0.0, 2.0), (0.0, 10.0, 3.0)]


@pytest.mark.parametrize(
    "records",
    [
        RECORDS,
        [Observation(x, y, v) for x, y, v in RECORDS],
        [{"x": x, "y": y, "value": v} for x, y, v in RECORDS],
        pl.DataFrame(RECORDS, schema=["x", "y", "value"], orient="row"),
    ],
)
def test_load_record_types(records) -> None:  # noqa: D103
    dataset = SpatialDataset.load(records)

    assert dataset.count() == 3
    assert len(dataset) == 3
    assert dataset.coords.shape == (3, 2)
    assert np.allclose(dataset.values, [1.0, 2.0, 3.0])
    assert dataset.observations()[1] == Observation(10.0, 0.0, 2.0)
    assert dataset.observations()[2].location == (0.0, 10.0)
    return None


def test_load_custom_columns() -> None:  # noqa: D103
    df = pl.DataFrame(
        {"east": [0.0, 5.0], "north": [1.0, 2.0], "wind": [40.0, 45.0]}
    )
    dataset = SpatialDataset.load(
        df, x_col="east", y_col="north", value_col="wind"
    )

    assert np.allclose(dataset.coords, [[0.0, 1.0], [5.0, 2.0]])
    assert np.allclose(dataset.values, [40.0, 45.0])

    with pytest.raises(ColumnNotFoundError):
        SpatialDataset.load(df)
    return None


@pytest.mark.parametrize(
    "records",
    [
        [(0.0, 0.0, 1.0), (1.0, 1.0, np.nan)],
        [(0.0, 0.0, 1.0), (np.inf, 1.0, 2.0)],
        [{"x": 0.0, "y": 0.0}],
        [(0.0, 0.0)],
        [],
        pl.DataFrame({"x": [0.0, 1.0], "y": [0.0, 1.0], "value": ["a", "b"]}),
        pl.DataFrame({"x": ["east", "west"], "y": [0.0, 1.0], "value": [1, 2]}),
    ],
)
def test_load_invalid(records) -> None:  # noqa: D103
    with pytest.raises(DataError):
        SpatialDataset.load(records)
    return None


def test_duplicate_locations() -> None:  # noqa: D103
    records = [(0.0, 0.0, 1.0), (0.0, 0.0, 2.0), (5.0, 5.0, 3.0)]
    with pytest.raises(DataError):
        SpatialDataset.load(records)

    dataset = SpatialDataset.load(records, allow_duplicate_locations=True)
    assert dataset.count() == 3

    # Within tolerance
    close = [(0.0, 0.0, 1.0), (0.0, 1e-8, 2.0)]
    with pytest.raises(DataError):
        SpatialDataset.load(close)
    assert SpatialDataset.load(close, tolerance=1e-10).count() == 2
    return None


def test_find_duplicate_locations() -> None:  # noqa: D103
    coords = np.array([[0.0, 0.0], [1.0, 1.0], [0.0, 0.0], [1.0, 1.0]])
    assert find_duplicate_locations(coords) == [(0, 2), (1, 3)]
    assert find_duplicate_locations(coords[:1]) == []
    return None


def test_dataset_is_immutable() -> None:  # noqa: D103
    records = np.array(RECORDS)
    dataset = SpatialDataset.load(records.tolist())

    with pytest.raises(ValueError):
        dataset.values[0] = 10.0
    with pytest.raises(ValueError):
        dataset.coords[0, 0] = 10.0

    frame = dataset.to_frame()
    assert frame.columns == ["x", "y", "value"]
    assert frame.height == 3
    return None


def test_project_frame() -> None:  # noqa: D103
    df = pl.DataFrame({"lon": [-80.0, -79.0], "lat": [0.0, 25.0]})
    project = sinusoidal_projection(lon_0=-80.0)

    out = project_frame(df, project)

    assert out.columns == ["lon", "lat", "x", "y"]
    x = out.get_column("x").to_numpy()
    y = out.get_column("y").to_numpy()
    assert np.isclose(x[0], 0.0)
    assert np.isclose(y[0], 0.0)
    # One degree of longitude shrinks with latitude
    expected_x = 6371000.0 * np.radians(1.0) * np.cos(np.radians(25.0))
    assert np.isclose(x[1], expected_x)
    assert np.isclose(y[1], 6371000.0 * np.radians(25.0))

    with pytest.raises(ColumnNotFoundError):
        project_frame(df.rename({"lat": "latitude"}), project)
    return None
