"""
Empirical Variogram
-------------------

Estimation of the semivariogram from scattered observations, optionally by
direction band.

.. math::
    \\gamma(h) = \\frac{1}{2 N(h)} \\sum_{(i, j) \\in N(h)} (z_i - z_j)^2

All unordered pairs are enumerated in blocks of rows of the distance matrix.
The sums of squared differences, pair counts, and pair distances for each
block are combined additively, so the result does not depend on how the pairs
are split up.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import logging
import math
import numpy as np
import polars as pl
from warnings import warn

from .config import VariogramConfig
from .constants import DEFAULT_N_BINS
from .distances import angular_difference, cross_distances, pair_azimuths
from .observations import SpatialDataset


@dataclass(frozen=True)
class VariogramBin:
    """
    A single bin of the empirical variogram.

    Parameters
    ----------
    lag : float
        Mean distance of the pairs in the bin.
    semivariance : float
        Half the mean squared difference of the pairs in the bin.
    n_pairs : int
        Number of pairs in the bin (always >= 1).
    direction : float | None
        Centre of the direction band in degrees, None if omnidirectional.
    """

    lag: float
    semivariance: float
    n_pairs: int
    direction: float | None = None


@dataclass(frozen=True)
class _Binning:
    max_lag: float
    bin_width: float
    n_bins: int
    bands: tuple[float, ...] | None
    band_tolerance: float

    @property
    def n_bands(self) -> int:
        return 1 if self.bands is None else len(self.bands)

    def bin_index(self, dist: np.ndarray) -> np.ndarray:
        """Bin index of each distance, -1 for distances beyond max_lag"""
        idx = np.floor(dist / self.bin_width).astype(np.int64)
        idx = np.minimum(idx, self.n_bins - 1)
        idx[dist > self.max_lag] = -1
        return idx


def _row_blocks(n: int, chunk_size: int) -> list[tuple[int, int]]:
    rows_per_block = max(1, chunk_size // max(n, 1))
    starts = range(0, n - 1, rows_per_block)
    return [(s, min(s + rows_per_block, n - 1)) for s in starts]


def _max_pair_distance(
    coords: np.ndarray,
    blocks: list[tuple[int, int]],
) -> float:
    max_dist = 0.0
    for start, stop in blocks:
        dist = cross_distances(coords[start:stop], coords)
        max_dist = max(max_dist, float(dist.max()))
    return max_dist


def _accumulate_block(
    coords: np.ndarray,
    values: np.ndarray,
    start: int,
    stop: int,
    binning: _Binning,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Sums of squared differences, pair counts, and pair distances for each
    (band, bin), over the pairs (i, j) with start <= i < stop and j > i.
    """
    n = len(values)
    rows = np.arange(start, stop)
    cols = np.arange(n)
    upper = cols[None, :] > rows[:, None]
    i, j = np.nonzero(upper)
    i = i + start

    dist = cross_distances(coords[start:stop], coords)[upper]
    sq_diff = np.power(values[i] - values[j], 2.0)
    bin_idx = binning.bin_index(dist)

    shape = (binning.n_bands, binning.n_bins)
    sum_sq = np.zeros(shape)
    counts = np.zeros(shape, dtype=np.int64)
    sum_dist = np.zeros(shape)

    in_range = bin_idx >= 0
    if binning.bands is None:
        band_masks = [in_range]
    else:
        azimuth = pair_azimuths(coords, i, j)
        band_masks = [
            in_range
            & (angular_difference(azimuth, band) <= binning.band_tolerance)
            for band in binning.bands
        ]

    for b, mask in enumerate(band_masks):
        k = bin_idx[mask]
        sum_sq[b] = np.bincount(
            k, weights=sq_diff[mask], minlength=binning.n_bins
        )
        counts[b] = np.bincount(k, minlength=binning.n_bins)
        sum_dist[b] = np.bincount(
            k, weights=dist[mask], minlength=binning.n_bins
        )

    return sum_sq, counts, sum_dist


def _binning_from_config(
    coords: np.ndarray,
    config: VariogramConfig,
    blocks: list[tuple[int, int]],
) -> _Binning | None:
    max_lag = config.max_lag
    if max_lag is None:
        max_lag = _max_pair_distance(coords, blocks) / 3.0
        if max_lag <= 0:
            return None
        logging.debug(f"Using default max_lag = {max_lag}")

    if config.bin_width is not None:
        bin_width = config.bin_width
        n_bins = max(1, math.ceil(max_lag / bin_width))
    else:
        n_bins = config.n_bins or DEFAULT_N_BINS
        bin_width = max_lag / n_bins

    return _Binning(
        max_lag=max_lag,
        bin_width=bin_width,
        n_bins=n_bins,
        bands=config.direction_bands,
        band_tolerance=config.direction_tolerance,
    )


def empirical_variogram(
    coords: np.ndarray,
    values: np.ndarray,
    config: VariogramConfig = VariogramConfig(),
) -> list[VariogramBin]:
    """
    Compute the empirical variogram of scattered observations.

    Parameters
    ----------
    coords : numpy.ndarray
        Planar positions, shape (n, 2).
    values : numpy.ndarray
        Observed values, shape (n,).
    config : VariogramConfig
        Lag binning and direction band options.

    Returns
    -------
    bins : list[VariogramBin]
        The non-empty bins, grouped by direction band (in the order of
        `config.direction_bands`) and ordered by ascending lag within each
        band. Pairs separated by more than the maximum lag are discarded.
    """
    coords = np.asarray(coords, dtype=float)
    values = np.asarray(values, dtype=float)
    n = len(values)
    if coords.shape != (n, 2):
        raise ValueError(
            f"coords must have shape ({n}, 2), got {coords.shape}"
        )
    if n < 2:
        warn("At least 2 observations are required for a variogram")
        return []

    blocks = _row_blocks(n, config.chunk_size)
    binning = _binning_from_config(coords, config, blocks)
    if binning is None:
        warn("All observations share a single location")
        return []

    def accumulate(block: tuple[int, int]):
        return _accumulate_block(coords, values, *block, binning)

    if config.n_workers > 1 and len(blocks) > 1:
        with ThreadPoolExecutor(max_workers=config.n_workers) as executor:
            partials = list(executor.map(accumulate, blocks))
    else:
        partials = [accumulate(block) for block in blocks]

    shape = (binning.n_bands, binning.n_bins)
    sum_sq = np.zeros(shape)
    counts = np.zeros(shape, dtype=np.int64)
    sum_dist = np.zeros(shape)
    for part_sq, part_counts, part_dist in partials:
        sum_sq += part_sq
        counts += part_counts
        sum_dist += part_dist

    bands = binning.bands if binning.bands is not None else (None,)
    bins: list[VariogramBin] = []
    for b, band in enumerate(bands):
        for k in range(binning.n_bins):
            n_pairs = int(counts[b, k])
            if n_pairs == 0:
                continue
            bins.append(
                VariogramBin(
                    lag=float(sum_dist[b, k] / n_pairs),
                    semivariance=float(sum_sq[b, k] / (2.0 * n_pairs)),
                    n_pairs=n_pairs,
                    direction=band,
                )
            )

    logging.info(
        f"Computed {len(bins)} variogram bins from {n} observations "
        + f"({int(counts.sum())} pairs within max_lag = {binning.max_lag:.6g})"
    )
    return bins


def compute_empirical_variogram(
    dataset: SpatialDataset,
    config: VariogramConfig = VariogramConfig(),
) -> list[VariogramBin]:
    """
    Compute the empirical variogram of a SpatialDataset. See
    `empirical_variogram`.
    """
    return empirical_variogram(dataset.coords, dataset.values, config)


def bins_by_direction(
    bins: list[VariogramBin],
) -> dict[float | None, list[VariogramBin]]:
    """Group bins by their direction band, preserving order"""
    grouped: dict[float | None, list[VariogramBin]] = {}
    for b in bins:
        grouped.setdefault(b.direction, []).append(b)
    return grouped


def bins_to_frame(bins: list[VariogramBin]) -> pl.DataFrame:
    """
    Convert variogram bins to a polars.DataFrame, for example for plotting
    the variogram.
    """
    return pl.DataFrame(
        {
            "lag": [b.lag for b in bins],
            "semivariance": [b.semivariance for b in bins],
            "n_pairs": [b.n_pairs for b in bins],
            "direction": [b.direction for b in bins],
        },
        schema={
            "lag": pl.Float64,
            "semivariance": pl.Float64,
            "n_pairs": pl.Int64,
            "direction": pl.Float64,
        },
    )
