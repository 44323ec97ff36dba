import pytest
import numpy as np
import xarray as xr

from storm_gridding.config import GridConfig, KrigingConfig
from storm_gridding.grid import (
    cell_samples,
    dataset_bounds,
    grid_from_config,
    grid_from_dataset,
    grid_from_resolution,
    grid_points,
    predict_grid,
)
from storm_gridding.kriging import predict_block, predict_point
from storm_gridding.observations import SpatialDataset
from storm_gridding.variogram import VariogramModel


MODEL = VariogramModel("gaussian", nugget=0.1, psill=3.0, range=25.0)


def _dataset() -> SpatialDataset:
    np.random.seed(90210)
    coords = np.random.uniform(10, 90, (20, 2))
    values = np.sin(coords[:, 0] / 20) + np.cos(coords[:, 1] / 30)
    return SpatialDataset.load(
        [(x, y, v) for (x, y), v in zip(coords, values)]
    )


def test_grid_from_resolution() -> None:  # noqa: D103
    grid = grid_from_resolution(5, [(0, 20), (100, 130)], ["y", "x"])

    assert isinstance(grid, xr.DataArray)
    assert grid.shape == (4, 6)
    assert np.allclose(grid.coords["y"].values, [0, 5, 10, 15])
    assert np.allclose(grid.coords["x"].values, [100, 105, 110, 115, 120, 125])

    grid = grid_from_resolution([1, 10], [(0, 3), (0, 30)], ["y", "x"])
    assert grid.shape == (3, 3)

    with pytest.raises(ValueError):
        grid_from_resolution([1, 2, 3], [(0, 3), (0, 30)], ["y", "x"])
    with pytest.raises(ValueError):
        grid_from_resolution(0, [(0, 3), (0, 30)], ["y", "x"])
    return None


def test_grid_from_dataset() -> None:  # noqa: D103
    dataset = SpatialDataset.load(
        [(0.0, 0.0, 1.0), (20.0, 10.0, 2.0), (5.0, 5.0, 3.0)]
    )

    assert dataset_bounds(dataset) == [(0.0, 10.0), (0.0, 20.0)]
    assert dataset_bounds(dataset, 2.0) == [(-2.0, 12.0), (-2.0, 22.0)]

    grid = grid_from_dataset(dataset, 5.0)
    assert np.allclose(grid.coords["y"].values, [0, 5, 10])
    assert np.allclose(grid.coords["x"].values, [0, 5, 10, 15, 20])

    buffered = grid_from_dataset(dataset, 5.0, buffer=5.0)
    assert buffered.coords["x"].values[0] == -5.0
    assert buffered.coords["x"].values[-1] == 25.0

    with pytest.raises(ValueError):
        dataset_bounds(dataset, -1.0)
    return None


def test_grid_from_config() -> None:  # noqa: D103
    dataset = _dataset()

    bbox = grid_from_config(dataset, GridConfig(resolution=10.0, buffer=10.0))
    assert bbox.coords["x"].values[0] == dataset.coords[:, 0].min() - 10.0

    bounds = [(0.0, 50.0), (0.0, 100.0)]
    config = GridConfig(resolution=10.0, window="bounds", bounds=bounds)
    explicit = grid_from_config(dataset, config)
    assert explicit.shape == (5, 10)
    return None


def test_grid_points_order() -> None:  # noqa: D103
    grid = grid_from_resolution(1, [(0, 2), (0, 3)], ["y", "x"])
    points = grid_points(grid)

    # Row-major: x varies fastest
    assert np.allclose(
        points, [[0, 0], [1, 0], [2, 0], [0, 1], [1, 1], [2, 1]]
    )
    return None


def test_cell_samples() -> None:  # noqa: D103
    samples = cell_samples(np.array([10.0, 20.0]), (4.0, 2.0), 2)

    assert samples.shape == (4, 2)
    assert np.allclose(samples.mean(axis=0), [10.0, 20.0])
    assert np.allclose(sorted(set(samples[:, 0])), [9.0, 11.0])
    assert np.allclose(sorted(set(samples[:, 1])), [19.5, 20.5])

    with pytest.raises(ValueError):
        cell_samples(np.array([0.0, 0.0]), (1.0, 1.0), 0)
    return None


def test_predict_grid() -> None:  # noqa: D103
    dataset = _dataset()
    grid = grid_from_resolution(10, [(0, 100), (0, 100)], ["y", "x"])

    out = predict_grid(dataset, MODEL, grid, KrigingConfig(n_workers=2))

    assert isinstance(out, xr.Dataset)
    assert out["prediction"].dims == ("y", "x")
    assert out["prediction"].shape == (10, 10)
    assert np.all(np.isfinite(out["prediction"].values))
    assert np.all(out["variance"].values >= 0)
    assert out.attrs["method"] == "ordinary_kriging"

    point = predict_point(dataset, MODEL, (30.0, 70.0))
    assert np.isclose(out["prediction"].sel(x=30, y=70), point.value)
    assert np.isclose(out["variance"].sel(x=30, y=70), point.variance)
    return None


def test_predict_grid_blocks() -> None:  # noqa: D103
    dataset = _dataset()
    grid = grid_from_resolution(20, [(0, 100), (0, 100)], ["y", "x"])

    blocks = predict_grid(dataset, MODEL, grid, cell_discretisation=3)

    assert blocks["prediction"].shape == (5, 5)
    assert np.all(blocks["variance"].values >= 0)

    samples = cell_samples(np.array([40.0, 60.0]), (20.0, 20.0), 3)
    block = predict_block(dataset, MODEL, samples)
    assert np.isclose(blocks["prediction"].sel(x=40, y=60), block.value)
    assert np.isclose(blocks["variance"].sel(x=40, y=60), block.variance)

    # Cell averages are smoother than the points within the cell
    sample_variances = [
        predict_point(dataset, MODEL, s).variance for s in samples
    ]
    assert block.variance <= np.mean(sample_variances)
    return None


def test_predict_grid_without_model() -> None:  # noqa: D103
    dataset = _dataset()
    grid = grid_from_resolution(25, [(0, 100), (0, 100)], ["y", "x"])

    out = predict_grid(dataset, None, grid)

    assert np.all(np.isnan(out["variance"].values))
    assert np.all(np.isfinite(out["prediction"].values))
    assert out.attrs["method"] == "idw"
    return None
