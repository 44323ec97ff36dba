"""
Observations
------------

Storage and validation of scattered point observations in planar coordinates.

The observations are expected to already be projected, positions are in
metres on an (ideally equal-area) plane. A projection function can be applied
to a table of longitude and latitude records with `project_frame`.
"""

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
import logging
from typing import Any
import numpy as np
import polars as pl
from scipy.spatial.distance import pdist

from .constants import DUPLICATE_TOLERANCE, RADIUS_OF_EARTH_M
from .utils import DataError, check_cols

Projection = Callable[[Any, Any], tuple[Any, Any]]


@dataclass(frozen=True)
class Observation:
    """
    A single point observation.

    Parameters
    ----------
    x : float
        Planar easting in metres.
    y : float
        Planar northing in metres.
    value : float
        Observed value.
    """

    x: float
    y: float
    value: float

    @property
    def location(self) -> tuple[float, float]:
        """The planar position of the observation"""
        return (self.x, self.y)


def _to_frame(
    records: Any,
    x_col: str,
    y_col: str,
    value_col: str,
) -> pl.DataFrame:
    if isinstance(records, pl.DataFrame):
        check_cols(records, [x_col, y_col, value_col])
        try:
            return records.select(
                [
                    pl.col(x_col).cast(pl.Float64).alias("x"),
                    pl.col(y_col).cast(pl.Float64).alias("y"),
                    pl.col(value_col).cast(pl.Float64).alias("value"),
                ]
            )
        except pl.exceptions.PolarsError as e:
            raise DataError(
                f"Columns contain non-numeric entries: {e}"
            ) from e

    rows: list[tuple[float, float, float]] = []
    for record in records:
        match record:
            case Observation():
                rows.append((record.x, record.y, record.value))
            case Mapping():
                try:
                    rows.append(
                        (record[x_col], record[y_col], record[value_col])
                    )
                except KeyError as e:
                    raise DataError(f"Record is missing key {e}") from e
            case (x, y, value):
                rows.append((x, y, value))
            case _:
                raise DataError(f"Cannot interpret record: {record!r}")

    try:
        return pl.DataFrame(
            rows,
            schema={"x": pl.Float64, "y": pl.Float64, "value": pl.Float64},
            orient="row",
        )
    except (TypeError, ValueError, pl.exceptions.PolarsError) as e:
        raise DataError(f"Records contain non-numeric entries: {e}") from e


class SpatialDataset:
    """
    Validated, immutable set of point observations.

    Do not construct directly, use `SpatialDataset.load`.

    Parameters
    ----------
    coords : numpy.ndarray
        Planar positions, shape (n, 2).
    values : numpy.ndarray
        Observed values, shape (n,).
    """

    def __init__(self, coords: np.ndarray, values: np.ndarray) -> None:
        coords = np.array(coords, dtype=float, copy=True)
        values = np.array(values, dtype=float, copy=True)
        coords.setflags(write=False)
        values.setflags(write=False)
        self._coords = coords
        self._values = values
        return None

    @classmethod
    def load(
        cls,
        records: Iterable | pl.DataFrame,
        allow_duplicate_locations: bool = False,
        tolerance: float = DUPLICATE_TOLERANCE,
        x_col: str = "x",
        y_col: str = "y",
        value_col: str = "value",
    ) -> "SpatialDataset":
        """
        Load and validate a set of observations.

        Parameters
        ----------
        records : Iterable | polars.DataFrame
            The observations. Either a polars.DataFrame with position and value
            columns, or an iterable of `Observation` instances, mappings
            containing the position and value keys, or (x, y, value) tuples.
        allow_duplicate_locations : bool
            Permit observations that share a location.
        tolerance : float
            Distance below which two locations are considered identical.
        x_col, y_col, value_col : str
            Names of the columns (or mapping keys) containing the positions
            and values.

        Returns
        -------
        dataset : SpatialDataset

        Raises
        ------
        DataError
            If any position or value is missing or non-finite, or if two
            observations share a location and `allow_duplicate_locations` is
            not set.
        """
        df = _to_frame(records, x_col, y_col, value_col)
        arr = df.select(["x", "y", "value"]).to_numpy()
        if arr.shape[0] == 0:
            raise DataError("No observations supplied")

        non_finite = ~np.isfinite(arr).all(axis=1)
        if non_finite.any():
            bad_rows = np.flatnonzero(non_finite).tolist()
            raise DataError(
                f"Non-finite positions or values in records: {bad_rows}"
            )

        coords = arr[:, :2]
        values = arr[:, 2]

        duplicates = find_duplicate_locations(coords, tolerance)
        if duplicates:
            if not allow_duplicate_locations:
                raise DataError(
                    f"{len(duplicates)} pair(s) of observations share a "
                    + f"location, first: {duplicates[0]}"
                )
            logging.warning(
                f"{len(duplicates)} pair(s) of observations share a location"
            )

        logging.info(f"Loaded {len(values)} observations")
        return cls(coords, values)

    def observations(self) -> tuple[Observation, ...]:
        """The ordered sequence of observations"""
        return tuple(
            Observation(float(x), float(y), float(v))
            for (x, y), v in zip(self._coords, self._values)
        )

    def count(self) -> int:
        """Number of observations"""
        return len(self._values)

    def __len__(self) -> int:
        return self.count()

    @property
    def coords(self) -> np.ndarray:
        """Read-only array of positions, shape (n, 2)"""
        return self._coords

    @property
    def values(self) -> np.ndarray:
        """Read-only array of values, shape (n,)"""
        return self._values

    def to_frame(self) -> pl.DataFrame:
        """The observations as a polars.DataFrame with x, y, value columns"""
        return pl.DataFrame(
            {
                "x": self._coords[:, 0],
                "y": self._coords[:, 1],
                "value": self._values,
            }
        )

    def __repr__(self) -> str:
        return f"SpatialDataset(n={self.count()})"


def find_duplicate_locations(
    coords: np.ndarray,
    tolerance: float = DUPLICATE_TOLERANCE,
) -> list[tuple[int, int]]:
    """
    Find pairs of positions that are closer than a tolerance.

    Parameters
    ----------
    coords : numpy.ndarray
        Positions, shape (n, 2).
    tolerance : float
        Distance below which two positions are considered identical.

    Returns
    -------
    pairs : list[tuple[int, int]]
        Index pairs (i, j), i < j, of coincident positions.
    """
    n = len(coords)
    if n < 2:
        return []
    dist = pdist(coords)
    i, j = np.triu_indices(n, k=1)
    close = dist <= tolerance
    return list(zip(i[close].tolist(), j[close].tolist()))


def project_frame(
    df: pl.DataFrame,
    project: Projection,
    lon_col: str = "lon",
    lat_col: str = "lat",
    x_col: str = "x",
    y_col: str = "y",
) -> pl.DataFrame:
    """
    Add planar position columns to a table of geographic records using a
    supplied projection function.

    Parameters
    ----------
    df : polars.DataFrame
        Records containing longitude and latitude columns.
    project : Callable
        Function mapping arrays of (longitude, latitude) to arrays of planar
        (x, y) positions in metres. An equal-area projection keeps distances,
        and therefore variances, physically meaningful.
    lon_col, lat_col : str
        Names of the longitude and latitude columns.
    x_col, y_col : str
        Names of the new planar position columns.

    Returns
    -------
    df : polars.DataFrame
        The input with the additional position columns.
    """
    check_cols(df, [lon_col, lat_col])
    x, y = project(
        df.get_column(lon_col).to_numpy(),
        df.get_column(lat_col).to_numpy(),
    )
    return df.with_columns(
        [
            pl.Series(x_col, np.asarray(x, dtype=float)),
            pl.Series(y_col, np.asarray(y, dtype=float)),
        ]
    )


def sinusoidal_projection(
    lon_0: float = 0.0,
    radius: float = RADIUS_OF_EARTH_M,
) -> Projection:
    """
    Sinusoidal equal-area projection about a central meridian, for use with
    `project_frame`.

    Parameters
    ----------
    lon_0 : float
        Central meridian in degrees.
    radius : float
        Radius of the sphere in metres.

    Returns
    -------
    project : Callable
        Function mapping (longitude, latitude) in degrees to (x, y) in metres.
    """

    def project(lon: Any, lat: Any) -> tuple[np.ndarray, np.ndarray]:
        lat_r = np.radians(np.asarray(lat, dtype=float))
        dlon = np.mod(np.asarray(lon, dtype=float) - lon_0 + 180.0, 360.0)
        dlon_r = np.radians(dlon - 180.0)
        return radius * dlon_r * np.cos(lat_r), radius * lat_r

    return project
