"""
Library for interpolating scattered point observations, such as storm wind
speed observations, to gridded fields. Estimates an empirical variogram, fits
a variogram model, and predicts with Ordinary Kriging, including block Kriging
and conditional simulation.
"""

from .observations import Observation, SpatialDataset
from .empirical import VariogramBin, compute_empirical_variogram
from .variogram import VariogramModel, fit_variogram
from .kriging import (
    PredictionResult,
    predict_block,
    predict_blocks,
    predict_point,
    predict_points,
)
from .stochastic import simulate
from .pipeline import PipelineResult, run_pipeline
from .utils import (
    DataError,
    DuplicateLocationError,
    FitConvergenceError,
    GriddingError,
    SingularSystemError,
)

__all__ = [
    "DataError",
    "DuplicateLocationError",
    "FitConvergenceError",
    "GriddingError",
    "Observation",
    "PipelineResult",
    "PredictionResult",
    "SingularSystemError",
    "SpatialDataset",
    "VariogramBin",
    "VariogramModel",
    "compute_empirical_variogram",
    "fit_variogram",
    "predict_block",
    "predict_blocks",
    "predict_point",
    "predict_points",
    "run_pipeline",
    "simulate",
]

__version__ = "0.1.0"
