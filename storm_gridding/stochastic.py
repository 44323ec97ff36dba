"""
Kriging class for conditional simulation using a perturbation approach. Plus
functions for drawing unconditional states, either jointly from a covariance
matrix or sequentially from bounded neighbourhoods.
"""

from concurrent.futures import ThreadPoolExecutor
import logging
from typing import Any
import numpy as np
from scipy.spatial.distance import pdist, squareform
from sklearn.neighbors import KDTree

from .config import SimulationConfig
from .constants import DUPLICATE_TOLERANCE
from .distances import cross_distances
from .kriging import KrigingSystem, OrdinaryKriging, _as_points
from .observations import SpatialDataset
from .utils import GriddingError
from .variogram import VariogramModel


class StochasticKriging(OrdinaryKriging):
    r"""
    Class for conditional simulation by the perturbation approach. The first
    stage is the Ordinary Kriging prediction at each query point from the
    observations. The second stage is to apply a perturbation.

    The perturbation is constructed by first drawing an unconditional state
    jointly at the observation locations and the query points from the
    covariance of the variogram model. A simulated field is then computed by
    Ordinary Kriging with the simulated state at the observation locations as
    input. The perturbation is the difference between the simulated state and
    the simulated field at the query points, and is added to the prediction
    from the first stage:

    .. math::
        z_{sim}(x_0) = \hat{z}(x_0) + (s(x_0) - \hat{s}(x_0))

    The Kriging weights do not depend on the values, so are computed once per
    query point and shared by both stages. Realisations honour the
    observations at their own locations, where the weights select that
    observation alone.

    If `neighbor_limit` is set, the unconditional state is drawn by
    sequential Gaussian simulation with each position conditioned on at most
    `neighbor_limit` previously drawn positions (see
    `sequential_gaussian_draw`), so no matrix larger than the Kriging systems
    is decomposed. Otherwise the state is drawn jointly from the full
    covariance (see `mv_normal_draw`).

    Parameters
    ----------
    dataset : SpatialDataset
        The observations.
    model : VariogramModel
        The variogram model, providing the covariance for the simulated state.
    config : SimulationConfig
        Kriging options plus the seed and eigenvalue tolerances.
    """

    method = "stochastic"

    def __init__(
        self,
        dataset: SpatialDataset,
        model: VariogramModel,
        config: SimulationConfig = SimulationConfig(),
    ) -> None:
        super().__init__(dataset, model, config)
        self.config: SimulationConfig = config
        self.rng = np.random.default_rng(config.seed)
        return None

    def query_systems(
        self,
        queries: np.ndarray,
    ) -> list[KrigingSystem | None]:
        """
        Ordinary Kriging system for each query point. With
        `config.on_error == "nan"`, failing queries give None instead of
        raising.
        """

        def run(query: np.ndarray) -> KrigingSystem | None:
            try:
                return self.system(query[None, :])
            except GriddingError as e:
                if self.config.on_error == "raise":
                    raise
                logging.warning(f"Simulation failed for query {query}: {e}")
                return None

        if self.config.n_workers > 1 and len(queries) > 1:
            with ThreadPoolExecutor(
                max_workers=self.config.n_workers
            ) as executor:
                return list(executor.map(run, queries))
        return [run(query) for query in queries]

    def simulated_state(
        self,
        queries: np.ndarray,
        n_simulations: int,
    ) -> np.ndarray:
        """
        Unconditional draws from the model covariance, jointly at the
        observation locations followed by the query points.

        Returns
        -------
        numpy.ndarray
            Shape (n_simulations, n_observations + n_queries).
        """
        joint = np.concatenate([self.dataset.coords, queries], axis=0)
        if self.config.neighbor_limit is not None:
            return sequential_gaussian_draw(
                coords=joint,
                model=self.model,
                n_neighbours=self.config.neighbor_limit,
                ndraws=n_simulations,
                rng=self.rng,
                tolerance=self.config.tolerance,
            )
        cov = self.model.covariance(
            squareform(pdist(joint)), self.config.tolerance
        )
        return mv_normal_draw(
            loc=np.zeros(len(joint)),
            cov=cov,
            ndraws=n_simulations,
            rng=self.rng,
            eigen_rtol=self.config.eigen_rtol,
            eigen_fudge=self.config.eigen_fudge,
        )

    def simulate(
        self,
        query_locations: Any,
        n_simulations: int,
    ) -> np.ndarray:
        """
        Draw conditional realisations at a set of query points.

        Parameters
        ----------
        query_locations : numpy.ndarray
            The (x, y) query points, shape (m, 2).
        n_simulations : int
            Number of realisations.

        Returns
        -------
        numpy.ndarray
            Realisations with shape (n_simulations, m). Columns for failed
            queries are NaN when `config.on_error == "nan"`.
        """
        if n_simulations < 1:
            raise ValueError("n_simulations must be >= 1")
        queries = _as_points(query_locations)
        n_obs = self.dataset.count()

        systems = self.query_systems(queries)
        state = self.simulated_state(queries, n_simulations)
        sim_obs = state[:, :n_obs]
        sim_query = state[:, n_obs:]

        out = np.full((n_simulations, len(queries)), np.nan)
        for q, system in enumerate(systems):
            if system is None:
                continue
            gridded = self.estimate(system)
            simulated_field = sim_obs[:, system.idx] @ system.weights
            out[:, q] = gridded + sim_query[:, q] - simulated_field

        logging.info(
            f"Drew {n_simulations} conditional realisations at "
            + f"{len(queries)} query points from {n_obs} observations"
        )
        return out


def simulate(
    dataset: SpatialDataset,
    model: VariogramModel,
    query_locations: Any,
    n_simulations: int,
    config: SimulationConfig = SimulationConfig(),
) -> np.ndarray:
    """
    Conditional simulation at query points. See `StochasticKriging`.

    Parameters
    ----------
    dataset : SpatialDataset
        The observations.
    model : VariogramModel
        The fitted variogram model.
    query_locations : numpy.ndarray
        The (x, y) query points, shape (m, 2).
    n_simulations : int
        Number of realisations.
    config : SimulationConfig
        Kriging options, `seed` for reproducible results.

    Returns
    -------
    numpy.ndarray
        Realisations with shape (n_simulations, m).
    """
    return StochasticKriging(dataset, model, config).simulate(
        query_locations, n_simulations
    )


def mv_normal_draw(
    loc: np.ndarray,
    cov: np.ndarray,
    ndraws: int = 1,
    rng: np.random.Generator | None = None,
    eigen_rtol: float = 1e-6,
    eigen_fudge: float = 1e-10,
) -> np.ndarray:
    """
    Do a random multivariate normal draw from the eigen decomposition of the
    covariance matrix.

    The covariance of a variogram model evaluated at coincident or nearby
    positions is only positive semi-definite, so a Cholesky factorisation
    cannot be relied on. Eigenvalues below `eigen_fudge` times the largest
    eigenvalue are set to 0, so that coincident positions receive identical
    draws.

    Parameters
    ----------
    loc : numpy.ndarray
        The mean of the distribution.
    cov : numpy.ndarray
        The covariance matrix.
    ndraws : int
        Number of draws.
    rng : numpy.random.Generator | None
        The random number generator. A new unseeded generator if None.
    eigen_rtol : float
        Relative tolerance to negative eigenvalues.
    eigen_fudge : float
        Eigenvalues smaller than this fraction of the largest eigenvalue are
        set to 0.

    Returns
    -------
    draw : numpy.ndarray
        The draws from the multivariate normal distribution defined by the loc
        and cov parameters, shape (ndraws, len(loc)).

    Raises
    ------
    ValueError
        If the covariance is not square, or has large negative eigenvalues.
    """
    cov_shape = cov.shape
    if len(cov_shape) != 2:
        raise ValueError("cov should be 2D.")
    if cov_shape[0] != cov_shape[1]:
        raise ValueError("cov is not a square matrix")
    if cov_shape[0] != len(loc):
        raise ValueError("loc and cov have incompatible shapes")
    rng = rng if rng is not None else np.random.default_rng()

    w, v = np.linalg.eigh(cov)
    largest_eig_val = float(np.max(w)) if len(w) else 0.0
    if largest_eig_val <= 0:
        return np.tile(loc, (ndraws, 1))
    if np.any(w < 0):
        most_neg_eigval = float(np.min(w))
        rtol_check = np.abs(most_neg_eigval) / largest_eig_val
        logging.debug(
            "Negative eigenvalues detected: largest = "
            + f"{largest_eig_val}; smallest = {most_neg_eigval}; "
            + f"ratio = {rtol_check}"
        )
        if rtol_check >= eigen_rtol:
            raise ValueError("Negative eigenvalues are unexpectedly large.")
    w = np.where(w < eigen_fudge * largest_eig_val, 0.0, w)

    z = rng.standard_normal((ndraws, len(w)))
    return loc + (z * np.sqrt(w)) @ v.T


def _drawn_neighbours(
    tree: KDTree,
    coords: np.ndarray,
    rank: np.ndarray,
    node: int,
    n_neighbours: int,
) -> np.ndarray:
    """
    Indices of the (at most) n_neighbours positions nearest to `node` that
    come before it on the simulation path.
    """
    step = rank[node]
    if step <= n_neighbours:
        return np.flatnonzero(rank < step)

    n = len(coords)
    n_query = min(n, 4 * n_neighbours)
    while True:
        idx = tree.query(
            coords[node : node + 1],
            k=n_query,
            return_distance=False,
            sort_results=True,
        )[0]
        drawn = idx[rank[idx] < step]
        if len(drawn) >= n_neighbours or n_query == n:
            return drawn[:n_neighbours]
        n_query = min(n, 2 * n_query)


def sequential_gaussian_draw(
    coords: np.ndarray,
    model: VariogramModel,
    n_neighbours: int,
    ndraws: int = 1,
    rng: np.random.Generator | None = None,
    tolerance: float = DUPLICATE_TOLERANCE,
) -> np.ndarray:
    """
    Unconditional zero-mean draws of a field with the covariance of a
    variogram model, by sequential Gaussian simulation.

    Positions are visited along a random path. Each position is drawn from
    the Simple Kriging prediction and variance given the values already drawn
    at its `n_neighbours` nearest positions earlier on the path. The largest
    system solved is n_neighbours x n_neighbours, whatever the number of
    positions. The path and the Kriging weights are shared by all draws.

    Positions coinciding with an earlier position receive its value.

    Parameters
    ----------
    coords : numpy.ndarray
        Positions, shape (n, 2).
    model : VariogramModel
        The variogram model providing the covariance.
    n_neighbours : int
        Maximum number of previously drawn positions used to condition each
        position.
    ndraws : int
        Number of draws.
    rng : numpy.random.Generator | None
        The random number generator. A new unseeded generator if None.
    tolerance : float
        Distance below which positions are considered coincident.

    Returns
    -------
    draw : numpy.ndarray
        Shape (ndraws, n).
    """
    if n_neighbours < 1:
        raise ValueError("n_neighbours must be >= 1")
    rng = rng if rng is not None else np.random.default_rng()
    coords = np.asarray(coords, dtype=float)
    n = len(coords)
    out = np.zeros((ndraws, n))
    if n == 0:
        return out

    path = rng.permutation(n)
    rank = np.empty(n, dtype=int)
    rank[path] = np.arange(n)
    tree = KDTree(coords)

    for node in path:
        nbrs = _drawn_neighbours(tree, coords, rank, node, n_neighbours)
        noise = rng.standard_normal(ndraws)
        if len(nbrs) == 0:
            out[:, node] = np.sqrt(model.sill) * noise
            continue
        nbr_coords = coords[nbrs]
        c_nn = model.covariance(squareform(pdist(nbr_coords)), tolerance)
        c_n0 = model.covariance(
            cross_distances(nbr_coords, coords[node])[:, 0], tolerance
        )
        weights = np.linalg.lstsq(c_nn, c_n0, rcond=None)[0]
        var = max(model.sill - float(weights @ c_n0), 0.0)
        out[:, node] = out[:, nbrs] @ weights + np.sqrt(var) * noise

    logging.debug(
        f"Sequential draw of {n} positions with at most {n_neighbours} "
        + "conditioning neighbours"
    )
    return out
