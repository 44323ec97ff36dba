"""
Functions and classes for performing Kriging.

Available methods are Ordinary Kriging (constant, unknown mean) and Simple
Kriging (constant, known mean), each for point and block (areal average)
predictions. If no variogram model is available then predictions fall back to
inverse distance weighting, without an uncertainty estimate.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Hashable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import logging
from typing import Any
import numpy as np
import polars as pl
from scipy.spatial.distance import pdist, squareform
from sklearn.neighbors import KDTree

from .config import KrigingConfig
from .distances import cross_distances, nearest_neighbours
from .observations import SpatialDataset, find_duplicate_locations
from .utils import (
    DuplicateLocationError,
    GriddingError,
    SingularSystemError,
    adjust_small_negative,
)
from .variogram import VariogramModel


@dataclass(frozen=True)
class PredictionResult:
    """
    Prediction at a query location or over a query block.

    Parameters
    ----------
    id : Hashable | None
        Identifier of the query location or block.
    x, y : float
        Query location, or the centroid of the block sample points.
    value : float
        Predicted value.
    variance : float
        Prediction variance, >= 0. NaN if unavailable (inverse distance
        weighting or a failed query in a batch).
    n_neighbours : int
        Number of observations used for the prediction.
    """

    id: Hashable | None
    x: float
    y: float
    value: float
    variance: float
    n_neighbours: int = 0

    @property
    def variance_available(self) -> bool:
        """Whether the prediction has a variance estimate"""
        return not np.isnan(self.variance)

    @property
    def std(self) -> float:
        """Square root of the prediction variance (NaN if unavailable)"""
        return float(np.sqrt(self.variance))


@dataclass(frozen=True)
class KrigingSystem:
    """
    Solution of a Kriging system for a set of target points.

    Parameters
    ----------
    idx : numpy.ndarray[int]
        Indices of the observations used.
    weights : numpy.ndarray
        Kriging weights for each observation in `idx`.
    lagrange : float
        Lagrange multiplier (0 for Simple Kriging).
    rhs : numpy.ndarray
        Right-hand side of the system, averaged over the target points.
        Semivariances for Ordinary Kriging, covariances for Simple Kriging.
    target_term : float
        Mean semivariance (Ordinary) or covariance (Simple) between all pairs
        of target points.
    """

    idx: np.ndarray
    weights: np.ndarray
    lagrange: float
    rhs: np.ndarray
    target_term: float


def _as_points(points: Any) -> np.ndarray:
    arr = np.atleast_2d(np.asarray(points, dtype=float))
    if arr.ndim != 2 or arr.shape[1] != 2 or arr.shape[0] == 0:
        raise ValueError(
            f"Query points must have shape (m, 2), got {np.shape(points)}"
        )
    if not np.isfinite(arr).all():
        raise ValueError("Query points must be finite")
    return arr


def _mean_pair_term(
    func: Callable[[np.ndarray], np.ndarray],
    targets: np.ndarray,
) -> float:
    if len(targets) == 1:
        return float(func(np.zeros((1, 1)))[0, 0])
    return float(np.mean(func(squareform(pdist(targets)))))


def _solve(
    lhs: np.ndarray,
    rhs: np.ndarray,
    max_condition: float,
) -> np.ndarray:
    try:
        cond = np.linalg.cond(lhs)
        if not np.isfinite(cond) or cond > max_condition:
            raise SingularSystemError(
                f"Kriging system is singular (condition number {cond:.3g})"
            )
        solution = np.linalg.solve(lhs, rhs)
    except np.linalg.LinAlgError as e:
        raise SingularSystemError(f"Kriging system is singular: {e}") from e
    if not np.isfinite(solution).all():
        raise SingularSystemError("Kriging system has a non-finite solution")
    return solution


class Kriging(ABC):
    """
    Class for Kriging.

    Do not use this class, use SimpleKriging or OrdinaryKriging classes.

    Parameters
    ----------
    dataset : SpatialDataset
        The observations. These are not modified.
    model : VariogramModel
        The fitted variogram model. This is not modified.
    config : KrigingConfig
        Neighbourhood, regularisation and tolerance options.
    """

    method: str

    def __init__(
        self,
        dataset: SpatialDataset,
        model: VariogramModel,
        config: KrigingConfig = KrigingConfig(),
    ) -> None:
        if not hasattr(self, "method"):
            raise TypeError(
                "Do not use the generic class directly, "
                + "use SimpleKriging or OrdinaryKriging"
            )
        self.dataset = dataset
        self.model = model
        self.config = config
        # Divide semivariances by this scale so the system is well balanced
        # against the unit entries of the Lagrange multiplier term
        self._scale = model.sill if model.sill > 0 else 1.0
        self._tree: KDTree | None = None
        limit = config.neighbor_limit
        if limit is not None and limit < dataset.count():
            self._tree = KDTree(dataset.coords)
        return None

    def neighbours(self, targets: np.ndarray) -> np.ndarray:
        """
        Indices of the observations used for a set of target points.

        The `neighbor_limit` observations nearest to the centroid of the
        targets are used if that option is set, otherwise all observations.
        Observations sharing a location and a value are collapsed to one.

        Raises
        ------
        DuplicateLocationError
            If a target point coincides with more than one observation and
            those observations have different values.
        """
        coords = self.dataset.coords
        values = self.dataset.values
        tol = self.config.tolerance
        centre = targets.mean(axis=0)

        if self._tree is not None and self.config.neighbor_limit is not None:
            idx = nearest_neighbours(
                coords, centre, self.config.neighbor_limit, self._tree
            )
        else:
            idx = np.arange(self.dataset.count())

        coincident = cross_distances(coords[idx], targets) <= tol
        for t in np.flatnonzero(coincident.sum(axis=0) > 1):
            hits = idx[coincident[:, t]]
            if np.ptp(values[hits]) > 0:
                raise DuplicateLocationError(
                    f"Query point {targets[t].tolist()} coincides with "
                    + f"{len(hits)} observations with different values"
                )

        drop: set[int] = set()
        for a, b in find_duplicate_locations(coords[idx], tol):
            if a not in drop and values[idx[a]] == values[idx[b]]:
                drop.add(b)
        if drop:
            logging.debug(f"Collapsing {len(drop)} duplicated observations")
            idx = np.delete(idx, sorted(drop))
        return idx

    @abstractmethod
    def system(self, targets: np.ndarray) -> KrigingSystem:
        """
        Build and solve the Kriging system for a set of target points. The
        right-hand side is averaged over the target points, a single target
        point gives point Kriging.

        Raises
        ------
        SingularSystemError
            If the system cannot be solved and no `nugget_floor` is set.
        """
        raise NotImplementedError("`system` not implemented for default class")

    @abstractmethod
    def estimate(self, system: KrigingSystem) -> float:
        """Predicted value from a solved Kriging system"""
        raise NotImplementedError(
            "`estimate` not implemented for default class"
        )

    @abstractmethod
    def variance(self, system: KrigingSystem) -> float:
        """Prediction variance from a solved Kriging system"""
        raise NotImplementedError(
            "`variance` not implemented for default class"
        )

    def _solve_with_floor(
        self,
        build: Callable[[float], tuple[np.ndarray, np.ndarray]],
    ) -> np.ndarray:
        lhs, rhs = build(0.0)
        try:
            return _solve(lhs, rhs, self.config.max_condition)
        except SingularSystemError:
            if self.config.nugget_floor is None:
                raise
            logging.warning(
                "Singular Kriging system, retrying with nugget floor "
                + f"{self.config.nugget_floor}"
            )
        lhs, rhs = build(self.config.nugget_floor / self._scale)
        return _solve(lhs, rhs, self.config.max_condition)

    def _predict(self, targets: np.ndarray, query_id: Hashable | None):
        system = self.system(targets)
        centre = targets.mean(axis=0)
        return PredictionResult(
            id=query_id,
            x=float(centre[0]),
            y=float(centre[1]),
            value=self.estimate(system),
            variance=self.variance(system),
            n_neighbours=len(system.idx),
        )

    def predict_point(
        self,
        location: Any,
        point_id: Hashable | None = None,
    ) -> PredictionResult:
        """
        Predict the value and variance at a single location.

        Parameters
        ----------
        location : tuple[float, float] | numpy.ndarray
            The (x, y) query location.
        point_id : Hashable | None
            Identifier attached to the result.

        Returns
        -------
        PredictionResult
        """
        targets = _as_points(location)
        if len(targets) != 1:
            raise ValueError("predict_point requires a single location")
        return self._predict(targets, point_id)

    def predict_block(
        self,
        sample_points: Any,
        block_id: Hashable | None = None,
    ) -> PredictionResult:
        """
        Predict the average value over a block, and the variance of that
        average, from a set of points discretising the block.

        Parameters
        ----------
        sample_points : numpy.ndarray
            Representative (x, y) points inside the block, shape (m, 2).
        block_id : Hashable | None
            Identifier attached to the result.

        Returns
        -------
        PredictionResult
            Located at the centroid of the sample points.
        """
        return self._predict(_as_points(sample_points), block_id)


class OrdinaryKriging(Kriging):
    r"""
    Class for OrdinaryKriging.

    The Ordinary Kriging system in semivariance form is:

    .. math::
        \begin{bmatrix} \Gamma & 1 \\ 1^T & 0 \end{bmatrix}
        \begin{bmatrix} \lambda \\ \mu \end{bmatrix}
        =
        \begin{bmatrix} \bar{\gamma}_0 \\ 1 \end{bmatrix}

    Where :math:`\Gamma` is the semivariance between observations,
    :math:`\bar{\gamma}_0` is the semivariance between each observation and
    the target, averaged over the target points for block Kriging, and the
    Lagrange multiplier :math:`\mu` constrains the weights to sum to 1.

    The prediction is :math:`\lambda^T z` and the variance is

    .. math::
        \lambda^T \bar{\gamma}_0 + \mu - \bar{\gamma}(V, V)

    where :math:`\bar{\gamma}(V, V)` is the mean semivariance between target
    points (0 for a single point). Small negative variances are clamped to 0.

    If the `nugget_floor` option is set and the system is singular, the
    observation diagonal is lowered by the nugget floor (equivalent to adding
    it to the covariance diagonal) and the system is solved again.
    """

    method: str = "ordinary"

    def system(self, targets: np.ndarray) -> KrigingSystem:  # noqa: D102
        idx = self.neighbours(targets)
        obs = self.dataset.coords[idx]
        tol = self.config.tolerance
        k = len(idx)

        obs_obs = self.model.semivariance_matrix(
            squareform(pdist(obs)), tol
        )
        obs_target = self.model.semivariance_matrix(
            cross_distances(obs, targets), tol
        ).mean(axis=1)
        target_term = _mean_pair_term(
            lambda d: self.model.semivariance_matrix(d, tol), targets
        )

        def build(floor: float) -> tuple[np.ndarray, np.ndarray]:
            gamma = obs_obs / self._scale - floor * np.eye(k)
            lhs = np.block(
                [[gamma, np.ones((k, 1))], [np.ones((1, k)), np.zeros((1, 1))]]
            )
            rhs = np.append(obs_target / self._scale, 1.0)
            return lhs, rhs

        solution = self._solve_with_floor(build)
        return KrigingSystem(
            idx=idx,
            weights=solution[:k],
            lagrange=float(solution[k]) * self._scale,
            rhs=obs_target,
            target_term=target_term,
        )

    def estimate(self, system: KrigingSystem) -> float:  # noqa: D102
        return float(system.weights @ self.dataset.values[system.idx])

    def variance(self, system: KrigingSystem) -> float:  # noqa: D102
        var = system.weights @ system.rhs + system.lagrange - system.target_term
        return float(adjust_small_negative(np.array([var]))[0])


class SimpleKriging(Kriging):
    r"""
    Class for SimpleKriging.

    The Simple Kriging system in covariance form is:

    .. math::
        C \lambda = \bar{c}_0

    Where :math:`C` is the covariance between observations and
    :math:`\bar{c}_0` the covariance between each observation and the target,
    averaged over the target points for block Kriging. The prediction is

    .. math::
        m + \lambda^T (z - m)

    for a known constant mean :math:`m`, and the variance is
    :math:`\bar{C}(V, V) - \lambda^T \bar{c}_0`.

    Parameters
    ----------
    dataset : SpatialDataset
    model : VariogramModel
    config : KrigingConfig
    mean : float
        The known mean of the field. Defaults to 0.0.
    """

    method: str = "simple"

    def __init__(
        self,
        dataset: SpatialDataset,
        model: VariogramModel,
        config: KrigingConfig = KrigingConfig(),
        mean: float = 0.0,
    ) -> None:
        super().__init__(dataset, model, config)
        self.mean = mean
        return None

    def system(self, targets: np.ndarray) -> KrigingSystem:  # noqa: D102
        idx = self.neighbours(targets)
        obs = self.dataset.coords[idx]
        tol = self.config.tolerance
        k = len(idx)

        obs_obs = self.model.covariance(squareform(pdist(obs)), tol)
        obs_target = self.model.covariance(
            cross_distances(obs, targets), tol
        ).mean(axis=1)
        target_term = _mean_pair_term(
            lambda d: self.model.covariance(d, tol), targets
        )

        def build(floor: float) -> tuple[np.ndarray, np.ndarray]:
            lhs = obs_obs / self._scale + floor * np.eye(k)
            return lhs, obs_target / self._scale

        solution = self._solve_with_floor(build)
        return KrigingSystem(
            idx=idx,
            weights=solution,
            lagrange=0.0,
            rhs=obs_target,
            target_term=target_term,
        )

    def estimate(self, system: KrigingSystem) -> float:  # noqa: D102
        residuals = self.dataset.values[system.idx] - self.mean
        return float(self.mean + system.weights @ residuals)

    def variance(self, system: KrigingSystem) -> float:  # noqa: D102
        var = system.target_term - system.weights @ system.rhs
        return float(adjust_small_negative(np.array([var]))[0])


def inverse_distance_weighting(
    dataset: SpatialDataset,
    targets: Any,
    config: KrigingConfig = KrigingConfig(),
    query_id: Hashable | None = None,
) -> PredictionResult:
    r"""
    Inverse distance weighted prediction, used when no variogram model is
    available. The result has no variance estimate (variance is NaN).

    .. math::
        \hat{z} = \frac{\sum_i d_i^{-p} z_i}{\sum_i d_i^{-p}}

    A target coinciding with an observation takes the value of that
    observation. For several target points (a block) the predictions are
    averaged.

    Parameters
    ----------
    dataset : SpatialDataset
    targets : numpy.ndarray
        One or more (x, y) target points.
    config : KrigingConfig
        The `idw_power`, `neighbor_limit` and `tolerance` options are used.
    query_id : Hashable | None
        Identifier attached to the result.
    """
    targets = _as_points(targets)
    coords = dataset.coords
    values = dataset.values
    tree = None
    limit = config.neighbor_limit
    if limit is not None and limit < dataset.count():
        tree = KDTree(coords)

    preds = []
    n_used = 0
    for target in targets:
        if tree is not None and limit is not None:
            idx = nearest_neighbours(coords, target, limit, tree)
        else:
            idx = np.arange(dataset.count())
        dist = cross_distances(coords[idx], target)[:, 0]
        n_used = max(n_used, len(idx))
        coincident = dist <= config.tolerance
        if coincident.any():
            hits = values[idx[coincident]]
            if np.ptp(hits) > 0:
                raise DuplicateLocationError(
                    f"Query point {target.tolist()} coincides with "
                    + f"{len(hits)} observations with different values"
                )
            preds.append(float(hits[0]))
            continue
        weights = np.power(dist, -config.idw_power)
        preds.append(float(weights @ values[idx] / weights.sum()))

    centre = targets.mean(axis=0)
    return PredictionResult(
        id=query_id,
        x=float(centre[0]),
        y=float(centre[1]),
        value=float(np.mean(preds)),
        variance=np.nan,
        n_neighbours=n_used,
    )


def predict_point(
    dataset: SpatialDataset,
    model: VariogramModel | None,
    location: Any,
    config: KrigingConfig = KrigingConfig(),
    point_id: Hashable | None = None,
) -> PredictionResult:
    """
    Ordinary Kriging prediction at a single location. Falls back to inverse
    distance weighting (without variance) if `model` is None.

    Parameters
    ----------
    dataset : SpatialDataset
        The observations.
    model : VariogramModel | None
        The fitted variogram model.
    location : tuple[float, float]
        The (x, y) query location.
    config : KrigingConfig
        Kriging options.
    point_id : Hashable | None
        Identifier attached to the result.

    Returns
    -------
    PredictionResult

    Raises
    ------
    SingularSystemError
        The Kriging system is singular and no `nugget_floor` is configured.
    DuplicateLocationError
        The query coincides with observations carrying different values.
    """
    if model is None:
        return inverse_distance_weighting(dataset, location, config, point_id)
    return OrdinaryKriging(dataset, model, config).predict_point(
        location, point_id
    )


def predict_block(
    dataset: SpatialDataset,
    model: VariogramModel | None,
    sample_points: Any,
    config: KrigingConfig = KrigingConfig(),
    block_id: Hashable | None = None,
) -> PredictionResult:
    """
    Ordinary block Kriging prediction of the average over a block
    discretised by sample points. Falls back to inverse distance weighting
    (without variance) if `model` is None. See `predict_point`.
    """
    if model is None:
        return inverse_distance_weighting(
            dataset, sample_points, config, block_id
        )
    return OrdinaryKriging(dataset, model, config).predict_block(
        sample_points, block_id
    )


def _failed_result(query_id: Hashable | None, targets: Any) -> PredictionResult:
    centre = np.atleast_2d(np.asarray(targets, dtype=float)).mean(axis=0)
    return PredictionResult(
        id=query_id,
        x=float(centre[0]),
        y=float(centre[1]),
        value=np.nan,
        variance=np.nan,
    )


def _run_batch(
    predict: Callable[[Any, Hashable | None], PredictionResult],
    queries: list[tuple[Hashable | None, Any]],
    config: KrigingConfig,
) -> list[PredictionResult]:
    def run(query: tuple[Hashable | None, Any]) -> PredictionResult:
        query_id, targets = query
        try:
            return predict(targets, query_id)
        except GriddingError as e:
            if config.on_error == "raise":
                raise
            logging.warning(f"Prediction failed for query {query_id}: {e}")
            return _failed_result(query_id, targets)

    if config.n_workers > 1 and len(queries) > 1:
        with ThreadPoolExecutor(max_workers=config.n_workers) as executor:
            return list(executor.map(run, queries))
    return [run(query) for query in queries]


def predict_points(
    dataset: SpatialDataset,
    model: VariogramModel | None,
    locations: Iterable,
    config: KrigingConfig = KrigingConfig(),
    ids: Iterable[Hashable] | None = None,
) -> list[PredictionResult]:
    """
    Predictions at a batch of locations. Each location is independent, and
    may be computed on a thread pool (`config.n_workers`). With
    `config.on_error == "nan"` failing queries give NaN results instead of
    raising.

    Parameters
    ----------
    dataset : SpatialDataset
    model : VariogramModel | None
    locations : Iterable
        (x, y) query locations, e.g. an array of shape (m, 2).
    config : KrigingConfig
    ids : Iterable[Hashable] | None
        Identifiers for each location, defaults to the position in the batch.

    Returns
    -------
    list[PredictionResult]
        One result per location, in input order.
    """
    locations = [np.asarray(loc, dtype=float) for loc in locations]
    ids = list(ids) if ids is not None else list(range(len(locations)))
    if len(ids) != len(locations):
        raise ValueError("Length of 'ids' must equal the number of locations")

    if model is None:

        def predict(targets, query_id):
            return inverse_distance_weighting(
                dataset, targets, config, query_id
            )
    else:
        predict = OrdinaryKriging(dataset, model, config).predict_point

    return _run_batch(predict, list(zip(ids, locations)), config)


def predict_blocks(
    dataset: SpatialDataset,
    model: VariogramModel | None,
    blocks: Mapping[Hashable, Any],
    config: KrigingConfig = KrigingConfig(),
) -> list[PredictionResult]:
    """
    Block predictions for a mapping of block identifier to sample points. See
    `predict_points`.
    """
    if model is None:

        def predict(targets, query_id):
            return inverse_distance_weighting(
                dataset, targets, config, query_id
            )
    else:
        predict = OrdinaryKriging(dataset, model, config).predict_block

    return _run_batch(predict, list(blocks.items()), config)


def results_to_frame(results: Iterable[PredictionResult]) -> pl.DataFrame:
    """
    Convert prediction results to a polars.DataFrame with id, x, y,
    prediction, variance, and n_neighbours columns.
    """
    results = list(results)
    return pl.DataFrame(
        {
            "id": [str(r.id) if r.id is not None else None for r in results],
            "x": [r.x for r in results],
            "y": [r.y for r in results],
            "prediction": [r.value for r in results],
            "variance": [r.variance for r in results],
            "n_neighbours": [r.n_neighbours for r in results],
        },
        schema={
            "id": pl.String,
            "x": pl.Float64,
            "y": pl.Float64,
            "prediction": pl.Float64,
            "variance": pl.Float64,
            "n_neighbours": pl.Int64,
        },
    )
