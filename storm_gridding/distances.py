"""
Functions for calculating planar distances, pair azimuths, and nearest
neighbours between observation and query positions.

All positions are planar (x, y) coordinates, typically metres on an equal-area
projection.
"""

import numpy as np
from scipy.spatial.distance import cdist, pdist
from sklearn.neighbors import KDTree


def pairwise_distances(coords: np.ndarray) -> np.ndarray:
    """
    Condensed vector of Euclidean distances between all unordered pairs of
    positions, in the ordering of `scipy.spatial.distance.pdist`.

    Parameters
    ----------
    coords : numpy.ndarray
        Positions, shape (n, 2).

    Returns
    -------
    dist : numpy.ndarray
        Distances, shape (n * (n - 1) / 2,).
    """
    return pdist(np.asarray(coords, dtype=float))


def cross_distances(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    Matrix of Euclidean distances between two sets of positions.

    Parameters
    ----------
    a : numpy.ndarray
        Positions, shape (n, 2).
    b : numpy.ndarray
        Positions, shape (m, 2).

    Returns
    -------
    dist : numpy.ndarray
        Distances, shape (n, m).
    """
    return cdist(
        np.atleast_2d(np.asarray(a, dtype=float)),
        np.atleast_2d(np.asarray(b, dtype=float)),
    )


def pair_azimuths(
    coords: np.ndarray,
    i: np.ndarray,
    j: np.ndarray,
) -> np.ndarray:
    """
    Azimuth of the separation vector between pairs of positions, in degrees
    clockwise from the +y (north) axis, folded into [0, 180).

    Parameters
    ----------
    coords : numpy.ndarray
        Positions, shape (n, 2).
    i, j : numpy.ndarray[int]
        Indices of the first and second position of each pair.

    Returns
    -------
    azimuth : numpy.ndarray
        Azimuths in degrees in [0, 180).
    """
    dx = coords[j, 0] - coords[i, 0]
    dy = coords[j, 1] - coords[i, 1]
    azimuth = np.degrees(np.arctan2(dx, dy))
    return np.mod(azimuth, 180.0)


def angular_difference(a: np.ndarray | float, b: float) -> np.ndarray:
    """
    Absolute difference between axial directions (degrees, mod 180), in the
    range [0, 90].
    """
    diff = np.abs(np.mod(np.asarray(a, dtype=float) - b, 180.0))
    return np.minimum(diff, 180.0 - diff)


def nearest_neighbours(
    coords: np.ndarray,
    target: np.ndarray,
    k: int,
    tree: KDTree | None = None,
) -> np.ndarray:
    """
    Indices of the k positions nearest to a target position, ordered by
    increasing distance.

    Parameters
    ----------
    coords : numpy.ndarray
        Positions to search, shape (n, 2).
    target : numpy.ndarray
        The target position, shape (2,).
    k : int
        Number of neighbours. If k >= n all indices are returned.
    tree : sklearn.neighbors.KDTree | None
        Optionally a pre-built tree over `coords`.

    Returns
    -------
    idx : numpy.ndarray[int]
        Indices into `coords`.
    """
    n = len(coords)
    if k >= n:
        order = np.argsort(cross_distances(coords, target)[:, 0], kind="stable")
        return order
    if tree is None:
        tree = KDTree(coords)
    idx = tree.query(
        np.atleast_2d(target), k=k, return_distance=False, sort_results=True
    )
    return idx[0]
