"""
Grid
----

Functions for creating output grids and Kriging onto them.

The query window is either an explicit bounding box (`grid_from_resolution`),
or the bounding box of the observations expanded by a buffer
(`grid_from_dataset`).
"""

from collections.abc import Iterable
import logging
import numpy as np
import xarray as xr

from .config import GridConfig, KrigingConfig
from .kriging import predict_blocks, predict_points
from .observations import SpatialDataset
from .variogram import VariogramModel


def grid_from_resolution(
    resolution: float | list[float],
    bounds: list[tuple[float, float]],
    coord_names: list[str] = ["y", "x"],
) -> xr.DataArray:
    """
    Generate a grid from a resolution value, or a list of resolutions for
    given boundaries and coordinate names.

    Note that all list inputs must have the same length, the ordering of values
    in the lists is assumed align.

    Parameters
    ----------
    resolution : float | list[float]
        Resolution of the grid. Can be a single resolution value that will be
        applied to all coordinates, or a list of values mapping a resolution
        value to each of the coordinates.
    bounds : list[tuple[float, float]]
        A list of bounds of the form `(lower_bound, upper_bound)` indicating
        the bounding box of the returned grid. The upper bound is excluded.
    coord_names : list[str]
        List of coordinate names

    Returns
    -------
    grid : xarray.DataArray:
        The grid defined by the resolution and bounding box.
    """
    if not isinstance(resolution, Iterable):
        resolution = [resolution for _ in range(len(bounds))]
    if len(resolution) != len(coord_names) or len(bounds) != len(coord_names):
        raise ValueError("Input lists must have the same length")
    if any(res <= 0 for res in resolution):
        raise ValueError("Resolution must be positive")
    coords = {
        c_name: np.arange(lbound, ubound, res)
        for c_name, (lbound, ubound), res in zip(
            coord_names, bounds, resolution
        )
    }
    grid = xr.DataArray(coords=xr.Coordinates(coords))
    return grid


def dataset_bounds(
    dataset: SpatialDataset,
    buffer: float = 0.0,
) -> list[tuple[float, float]]:
    """
    Bounding box of the observations, expanded by `buffer` on all sides, as
    [(y_min, y_max), (x_min, x_max)].
    """
    if buffer < 0:
        raise ValueError("buffer must be non-negative")
    lower = dataset.coords.min(axis=0) - buffer
    upper = dataset.coords.max(axis=0) + buffer
    return [
        (float(lower[1]), float(upper[1])),
        (float(lower[0]), float(upper[0])),
    ]


def grid_from_dataset(
    dataset: SpatialDataset,
    resolution: float | list[float],
    buffer: float = 0.0,
) -> xr.DataArray:
    """
    Generate a grid covering the bounding box of the observations, expanded
    by a buffer. The upper edge is included if it falls on a grid point.

    Parameters
    ----------
    dataset : SpatialDataset
        The observations.
    resolution : float | list[float]
        Grid spacing, a single value or [y_resolution, x_resolution].
    buffer : float
        Distance by which the bounding box is expanded on all sides.

    Returns
    -------
    grid : xarray.DataArray
        With "y" and "x" coordinates.
    """
    bounds = dataset_bounds(dataset, buffer)
    if not isinstance(resolution, Iterable):
        resolution = [resolution, resolution]
    # Nudge the upper bound so that it is kept by numpy.arange
    bounds = [
        (lbound, ubound + 0.5 * res)
        for (lbound, ubound), res in zip(bounds, resolution)
    ]
    return grid_from_resolution(resolution, bounds, ["y", "x"])


def grid_from_config(
    dataset: SpatialDataset,
    config: GridConfig,
) -> xr.DataArray:
    """Build the output grid following the window policy of a GridConfig"""
    match config.window:
        case "bbox":
            return grid_from_dataset(dataset, config.resolution, config.buffer)
        case "bounds":
            if config.bounds is None:
                raise ValueError("bounds must be set for the 'bounds' window")
            return grid_from_resolution(
                config.resolution, config.bounds, ["y", "x"]
            )
        case _:
            raise ValueError(f"Unknown window policy: {config.window}")


def grid_points(
    grid: xr.DataArray,
    coord_names: list[str] = ["y", "x"],
) -> np.ndarray:
    """
    Positions of all grid points in row-major ("C") order.

    Parameters
    ----------
    grid : xarray.DataArray
        The grid.
    coord_names : list[str]
        Names of the y and x coordinates of the grid.

    Returns
    -------
    points : numpy.ndarray
        The (x, y) position of each grid point, shape (n_y * n_x, 2).
    """
    y_name, x_name = coord_names
    yy, xx = np.meshgrid(
        grid.coords[y_name].values, grid.coords[x_name].values, indexing="ij"
    )
    return np.column_stack([xx.ravel(), yy.ravel()])


def cell_samples(
    centre: np.ndarray,
    cell_size: tuple[float, float],
    n_per_side: int,
) -> np.ndarray:
    """
    Regular discretisation of a rectangular cell into n_per_side^2 points at
    the centres of equal sub-cells.

    Parameters
    ----------
    centre : numpy.ndarray
        The (x, y) centre of the cell.
    cell_size : tuple[float, float]
        The (x, y) size of the cell.
    n_per_side : int
        Number of sample points along each side.
    """
    if n_per_side < 1:
        raise ValueError("n_per_side must be >= 1")
    offsets = (np.arange(n_per_side) + 0.5) / n_per_side - 0.5
    ox, oy = np.meshgrid(
        offsets * cell_size[0], offsets * cell_size[1], indexing="xy"
    )
    return np.column_stack([centre[0] + ox.ravel(), centre[1] + oy.ravel()])


def _spacing(values: np.ndarray) -> float:
    if len(values) < 2:
        raise ValueError("Block Kriging on a grid needs >= 2 points per axis")
    return float(values[1] - values[0])


def predict_grid(
    dataset: SpatialDataset,
    model: VariogramModel | None,
    grid: xr.DataArray,
    config: KrigingConfig = KrigingConfig(),
    cell_discretisation: int | None = None,
) -> xr.Dataset:
    """
    Krige onto every point of a grid.

    Parameters
    ----------
    dataset : SpatialDataset
        The observations.
    model : VariogramModel | None
        The fitted variogram model. Inverse distance weighting is used if
        None, and the variance is NaN.
    grid : xarray.DataArray
        Grid with "y" and "x" coordinates, for example from
        `grid_from_resolution` or `grid_from_dataset`.
    config : KrigingConfig
        Kriging options.
    cell_discretisation : int | None
        If set, predict the average over each grid cell by block Kriging,
        with this many sample points along each side of the cell. Otherwise
        predict at the grid points.

    Returns
    -------
    xarray.Dataset
        With "prediction" and "variance" variables on the (y, x) grid.
    """
    points = grid_points(grid)
    shape = (grid.sizes["y"], grid.sizes["x"])
    logging.info(f"Kriging onto a {shape[0]} x {shape[1]} grid")

    if cell_discretisation is None:
        results = predict_points(dataset, model, points, config)
    else:
        cell_size = (
            _spacing(grid.coords["x"].values),
            _spacing(grid.coords["y"].values),
        )
        blocks = {
            i: cell_samples(point, cell_size, cell_discretisation)
            for i, point in enumerate(points)
        }
        results = predict_blocks(dataset, model, blocks, config)

    prediction = np.array([r.value for r in results]).reshape(shape)
    variance = np.array([r.variance for r in results]).reshape(shape)
    return xr.Dataset(
        data_vars={
            "prediction": (("y", "x"), prediction),
            "variance": (("y", "x"), variance),
        },
        coords={"y": grid.coords["y"].values, "x": grid.coords["x"].values},
        attrs={
            "method": "idw" if model is None else "ordinary_kriging",
            "n_observations": dataset.count(),
        },
    )
