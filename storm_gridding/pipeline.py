"""
Pipeline
--------

Sequences the stages of the gridding workflow: empirical variogram, variogram
fit, and Kriging predictions at query points and optionally onto a grid.
"""

from dataclasses import dataclass, field, replace
import logging
import polars as pl
import xarray as xr

from .config import PipelineConfig
from .empirical import VariogramBin, bins_to_frame, compute_empirical_variogram
from .grid import grid_from_config, predict_grid
from .kriging import PredictionResult, predict_points, results_to_frame
from .observations import SpatialDataset
from .variogram import VariogramModel, fit_variogram


@dataclass(frozen=True)
class PipelineResult:
    """
    Outputs of `run_pipeline`.

    Parameters
    ----------
    bins : list[VariogramBin]
        The empirical variogram, by direction band if configured.
    model : VariogramModel
        The fitted (omnidirectional) variogram model.
    predictions : list[PredictionResult]
        Predictions at the configured query points.
    grid : xarray.Dataset | None
        Predictions onto the configured grid, None if no grid is configured.
    """

    bins: list[VariogramBin]
    model: VariogramModel
    predictions: list[PredictionResult] = field(default_factory=list)
    grid: xr.Dataset | None = None

    def bins_frame(self) -> pl.DataFrame:
        """The empirical variogram as a polars.DataFrame"""
        return bins_to_frame(self.bins)

    def predictions_frame(self) -> pl.DataFrame:
        """The point predictions as a polars.DataFrame"""
        return results_to_frame(self.predictions)


def run_pipeline(
    dataset: SpatialDataset,
    config: PipelineConfig = PipelineConfig(),
) -> PipelineResult:
    """
    Compute the empirical variogram of a dataset, fit a variogram model, and
    Krige at the configured query points and grid.

    If direction bands are configured, the returned bins are by direction
    band, and the isotropic model is fitted to the omnidirectional variogram.

    Parameters
    ----------
    dataset : SpatialDataset
        The observations. Not modified.
    config : PipelineConfig
        Options for all stages.

    Returns
    -------
    PipelineResult

    Raises
    ------
    FitConvergenceError
        If the variogram fit fails.
    SingularSystemError, DuplicateLocationError
        If a prediction fails and `config.kriging.on_error` is "raise".
    """
    logging.info(f"Running pipeline for {dataset!r}")
    bins = compute_empirical_variogram(dataset, config.variogram)
    if config.variogram.direction_bands is None:
        fit_bins = bins
    else:
        fit_bins = compute_empirical_variogram(
            dataset, replace(config.variogram, direction_bands=None)
        )

    initial_model = None
    if config.initial_model is not None:
        initial_model = VariogramModel(**config.initial_model)
    model = fit_variogram(fit_bins, initial_model, config.fit)

    predictions = []
    if config.query_points:
        predictions = predict_points(
            dataset, model, config.query_points, config.kriging
        )

    gridded = None
    if config.grid is not None:
        grid = grid_from_config(dataset, config.grid)
        gridded = predict_grid(
            dataset,
            model,
            grid,
            config.kriging,
            config.grid.cell_discretisation,
        )

    return PipelineResult(
        bins=bins,
        model=model,
        predictions=predictions,
        grid=gridded,
    )
