"""
Configuration
-------------

Configuration objects for each stage of the variogram and Kriging pipeline,
plus loading of a full pipeline configuration from a yaml file.

An example yaml configuration:

.. code-block:: yaml

    setup:
      log_file: null
      log_level: info
    dataset:
      allow_duplicate_locations: false
    variogram:
      n_bins: 12
      direction_bands: [0, 45, 90, 135]
    fit:
      family: gaussian
      max_iterations: 2000
    kriging:
      neighbor_limit: 30
      nugget_floor: null
    grid:
      resolution: 10000
      window: bbox
      buffer: 20000
    query_points:
      - [150000.0, 80000.0]
"""

from dataclasses import dataclass, field, fields
from typing import Any
import yaml

from .constants import (
    DEFAULT_DIRECTION_TOLERANCE,
    DEFAULT_IDW_POWER,
    DEFAULT_MAX_CONDITION,
    DUPLICATE_TOLERANCE,
)
from .types import ErrorPolicy, VariogramFamily, WindowPolicy


def get_recurse(
    config: dict,
    *keys: str,
    default: Any = None,
) -> Any:
    """
    Get a value from a nested dictionary, returning a default value if any of
    the keys along the path is missing.

    Parameters
    ----------
    config : dict
        The nested dictionary.
    *keys : str
        The path of keys to the value.
    default : Any
        The value to return if the path does not exist.

    Examples
    --------
    >>> get_recurse({"a": {"b": 3}}, "a", "b")
    3
    >>> get_recurse({"a": {"b": 3}}, "a", "c", default=0)
    0
    """
    if not keys:
        return config
    key, *rest = keys
    if not isinstance(config, dict) or key not in config:
        return default
    if not rest:
        return config[key]
    return get_recurse(config[key], *rest, default=default)


@dataclass(frozen=True)
class DatasetConfig:
    """Options for loading observations into a SpatialDataset"""

    allow_duplicate_locations: bool = False
    tolerance: float = DUPLICATE_TOLERANCE
    x_col: str = "x"
    y_col: str = "y"
    value_col: str = "value"

    def __post_init__(self) -> None:
        if self.tolerance < 0:
            raise ValueError("tolerance must be non-negative")
        return None


@dataclass(frozen=True)
class VariogramConfig:
    """
    Options for the empirical variogram.

    Parameters
    ----------
    max_lag : float | None
        Pairs separated by more than this distance are discarded. Defaults to
        one third of the largest pairwise distance.
    bin_width : float | None
        Width of the lag bins. Mutually exclusive with n_bins.
    n_bins : int | None
        Number of lag bins between 0 and max_lag. If neither bin_width nor
        n_bins is set, 15 bins are used.
    direction_bands : tuple[float, ...] | None
        Optional azimuth centres in degrees (clockwise from north, mod 180).
        A separate sequence of bins is produced for each band.
    direction_tolerance : float
        Half-width of each direction band in degrees.
    chunk_size : int
        Number of pairs processed at once.
    n_workers : int
        Number of threads used to process the chunks.
    """

    max_lag: float | None = None
    bin_width: float | None = None
    n_bins: int | None = None
    direction_bands: tuple[float, ...] | None = None
    direction_tolerance: float = DEFAULT_DIRECTION_TOLERANCE
    chunk_size: int = 250_000
    n_workers: int = 1

    def __post_init__(self) -> None:
        if self.bin_width is not None and self.n_bins is not None:
            raise ValueError("Only one of bin_width and n_bins can be set")
        if self.max_lag is not None and self.max_lag <= 0:
            raise ValueError("max_lag must be positive")
        if self.bin_width is not None and self.bin_width <= 0:
            raise ValueError("bin_width must be positive")
        if self.n_bins is not None and self.n_bins < 1:
            raise ValueError("n_bins must be >= 1")
        if not 0 < self.direction_tolerance <= 90:
            raise ValueError("direction_tolerance must be in (0, 90]")
        if self.chunk_size < 1 or self.n_workers < 1:
            raise ValueError("chunk_size and n_workers must be >= 1")
        if self.direction_bands is not None:
            object.__setattr__(
                self,
                "direction_bands",
                tuple(float(b) for b in self.direction_bands),
            )
        return None


@dataclass(frozen=True)
class FitConfig:
    """
    Options for fitting a variogram model.

    Parameters
    ----------
    family : VariogramFamily
        Model family used when no initial model is supplied.
    max_iterations : int
        Budget of model evaluations for the optimiser.
    range_bound_factor : float
        Upper bound on the range parameter, as a multiple of the largest lag.
    tolerance : float
        Relative tolerance on the change of the cost function and the
        parameters for termination of the optimiser.
    """

    family: VariogramFamily = "spherical"
    max_iterations: int = 2000
    range_bound_factor: float = 10.0
    tolerance: float = 1e-8

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.range_bound_factor <= 0:
            raise ValueError("range_bound_factor must be positive")
        return None


@dataclass(frozen=True)
class KrigingConfig:
    """
    Options for Kriging predictions.

    Parameters
    ----------
    neighbor_limit : int | None
        Use only this many observations nearest to the query. All
        observations are used if None.
    nugget_floor : float | None
        If set, a singular system is retried once with this value added to
        the covariance diagonal, rather than raising SingularSystemError.
        Gaussian models fitted to smooth fields give numerically singular
        systems (condition numbers far above `max_condition`) when
        observations are dense relative to the range, so need this set.
    idw_power : float
        Power of the inverse distance weighting used when no variogram model
        is supplied.
    tolerance : float
        Distance below which a query is considered coincident with an
        observation.
    max_condition : float
        Systems with a larger condition number are treated as singular.
    n_workers : int
        Number of threads used for batches of queries.
    on_error : ErrorPolicy
        For batches of queries: "raise" to fail on the first failing query,
        "nan" to return a NaN result for failing queries.
    """

    neighbor_limit: int | None = None
    nugget_floor: float | None = None
    idw_power: float = DEFAULT_IDW_POWER
    tolerance: float = DUPLICATE_TOLERANCE
    max_condition: float = DEFAULT_MAX_CONDITION
    n_workers: int = 1
    on_error: ErrorPolicy = "raise"

    def __post_init__(self) -> None:
        if self.neighbor_limit is not None and self.neighbor_limit < 1:
            raise ValueError("neighbor_limit must be >= 1")
        if self.nugget_floor is not None and self.nugget_floor <= 0:
            raise ValueError("nugget_floor must be positive")
        if self.idw_power <= 0:
            raise ValueError("idw_power must be positive")
        if self.n_workers < 1:
            raise ValueError("n_workers must be >= 1")
        if self.on_error not in ("raise", "nan"):
            raise ValueError("on_error must be one of 'raise' or 'nan'")
        return None


@dataclass(frozen=True)
class SimulationConfig(KrigingConfig):
    """
    Options for conditional simulation, in addition to the KrigingConfig
    options.

    Parameters
    ----------
    seed : int | None
        Seed for the random number generator. Results are not reproducible if
        this is None.
    eigen_rtol : float
        Relative tolerance to negative eigenvalues of the simulation
        covariance.
    eigen_fudge : float
        Eigenvalues of the simulation covariance smaller than this fraction
        of the largest eigenvalue are set to 0.

    The eigenvalue options apply to the joint draw used when
    `neighbor_limit` is None. With `neighbor_limit` set, the unconditional
    state is drawn sequentially from neighbourhoods of that size.
    """

    seed: int | None = None
    eigen_rtol: float = 1e-6
    eigen_fudge: float = 1e-10


@dataclass(frozen=True)
class GridConfig:
    """
    Options for the output prediction grid.

    Parameters
    ----------
    resolution : float | list[float]
        Grid spacing, one value for both axes or [y_resolution, x_resolution].
    window : WindowPolicy
        "bbox" to use the bounding box of the observations expanded by
        `buffer`, "bounds" to use the explicit `bounds`.
    bounds : list[tuple[float, float]] | None
        [(y_min, y_max), (x_min, x_max)], required for the "bounds" window.
    buffer : float
        Distance by which the observation bounding box is expanded.
    cell_discretisation : int | None
        If set, predict cell averages by block Kriging with this many sample
        points along each side of a cell, rather than predicting at the grid
        points.
    """

    resolution: float | list[float]
    window: WindowPolicy = "bbox"
    bounds: list[tuple[float, float]] | None = None
    buffer: float = 0.0
    cell_discretisation: int | None = None

    def __post_init__(self) -> None:
        if self.window not in ("bbox", "bounds"):
            raise ValueError("window must be one of 'bbox' or 'bounds'")
        if self.window == "bounds" and self.bounds is None:
            raise ValueError("bounds must be set for the 'bounds' window")
        if self.buffer < 0:
            raise ValueError("buffer must be non-negative")
        n_cell = self.cell_discretisation
        if n_cell is not None and n_cell < 1:
            raise ValueError("cell_discretisation must be >= 1")
        return None


@dataclass(frozen=True)
class PipelineConfig:
    """Configuration for all stages of `storm_gridding.pipeline.run_pipeline`"""

    dataset: DatasetConfig = field(default_factory=DatasetConfig)
    variogram: VariogramConfig = field(default_factory=VariogramConfig)
    fit: FitConfig = field(default_factory=FitConfig)
    kriging: KrigingConfig = field(default_factory=KrigingConfig)
    grid: GridConfig | None = None
    query_points: list[tuple[float, float]] = field(default_factory=list)
    initial_model: dict | None = None


def _section(cls, config: dict, key: str):
    section = get_recurse(config, key, default={}) or {}
    known = {f.name for f in fields(cls)}
    unknown = set(section) - known
    if unknown:
        raise ValueError(f"Unknown {key} configuration keys: {sorted(unknown)}")
    if key == "variogram" and section.get("direction_bands") is not None:
        section = {
            **section,
            "direction_bands": tuple(section["direction_bands"]),
        }
    if key == "grid" and section.get("bounds") is not None:
        section = {
            **section,
            "bounds": [tuple(b) for b in section["bounds"]],
        }
    return cls(**section)


def pipeline_config_from_dict(config: dict) -> PipelineConfig:
    """Build a PipelineConfig from a nested dictionary (e.g. loaded yaml)"""
    grid = (
        _section(GridConfig, config, "grid")
        if get_recurse(config, "grid") is not None
        else None
    )
    query_points = [
        (float(x), float(y))
        for x, y in get_recurse(config, "query_points", default=[]) or []
    ]
    return PipelineConfig(
        dataset=_section(DatasetConfig, config, "dataset"),
        variogram=_section(VariogramConfig, config, "variogram"),
        fit=_section(FitConfig, config, "fit"),
        kriging=_section(KrigingConfig, config, "kriging"),
        grid=grid,
        query_points=query_points,
        initial_model=get_recurse(config, "initial_model"),
    )


def load_config(path: str) -> dict:
    """
    Load a yaml configuration file.

    Parameters
    ----------
    path : str
        Path to the yaml file.

    Returns
    -------
    config : dict
        The nested configuration dictionary.
    """
    with open(path, "r") as io:
        config: dict = yaml.safe_load(io) or {}
    return config
