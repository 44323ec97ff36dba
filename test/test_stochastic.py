import pytest
import numpy as np
from scipy.spatial.distance import pdist, squareform

from storm_gridding.config import SimulationConfig
from storm_gridding.kriging import predict_points
from storm_gridding.observations import SpatialDataset
from storm_gridding.stochastic import (
    StochasticKriging,
    mv_normal_draw,
    sequential_gaussian_draw,
    simulate,
)
from storm_gridding.utils import DuplicateLocationError
from storm_gridding.variogram import VariogramModel


MODEL = VariogramModel("spherical", nugget=0.0, psill=4.0, range=40.0)


def _dataset(n: int = 25) -> SpatialDataset:
    np.random.seed(90210)
    coords = np.random.uniform(0, 100, (n, 2))
    values = 20.0 + np.random.normal(0, 2, n)
    return SpatialDataset.load(
        [(x, y, v) for (x, y), v in zip(coords, values)]
    )


def test_simulate_shape_and_seed() -> None:  # noqa: D103
    dataset = _dataset()
    queries = np.array([[10.0, 10.0], [50.0, 50.0], [90.0, 20.0]])
    config = SimulationConfig(seed=42)

    first = simulate(dataset, MODEL, queries, 5, config)
    second = simulate(dataset, MODEL, queries, 5, config)
    other = simulate(dataset, MODEL, queries, 5, SimulationConfig(seed=43))

    assert first.shape == (5, 3)
    assert np.all(np.isfinite(first))
    assert np.array_equal(first, second)
    assert not np.allclose(first, other)
    return None


def test_simulate_honours_observations() -> None:  # noqa: D103
    dataset = _dataset()
    config = SimulationConfig(seed=1)

    realisations = simulate(dataset, MODEL, dataset.coords, 10, config)

    assert np.allclose(realisations, dataset.values[None, :], atol=1e-6)
    return None


def test_simulate_moments() -> None:  # noqa: D103
    dataset = _dataset()
    queries = np.array([[30.0, 70.0], [75.0, 40.0]])
    n_sim = 4000

    realisations = simulate(
        dataset, MODEL, queries, n_sim, SimulationConfig(seed=90210)
    )
    expected = predict_points(dataset, MODEL, queries)

    for q, result in enumerate(expected):
        std = np.sqrt(result.variance)
        assert np.isclose(
            realisations[:, q].mean(), result.value, atol=5 * std / 70
        )
        assert np.isclose(realisations[:, q].var(), result.variance, rtol=0.1)
    return None


def test_simulate_neighbor_limit() -> None:  # noqa: D103
    dataset = _dataset(n=60)
    queries = np.array([[30.0, 70.0], [75.0, 40.0]])
    config = SimulationConfig(seed=3, neighbor_limit=10, n_workers=2)

    engine = StochasticKriging(dataset, MODEL, config)
    systems = engine.query_systems(queries)
    realisations = engine.simulate(queries, 20)

    assert all(len(s.idx) == 10 for s in systems)
    assert realisations.shape == (20, 2)
    assert np.all(np.isfinite(realisations))
    return None


def test_simulate_neighbor_limit_system_size(monkeypatch) -> None:  # noqa: D103
    dataset = _dataset(n=50)
    np.random.seed(5)
    queries = np.random.uniform(0, 100, (400, 2))
    neighbor_limit = 5

    sizes = []
    for name in ("eigh", "lstsq", "solve"):
        original = getattr(np.linalg, name)

        def spy(a, *args, _original=original, **kwargs):
            sizes.append(np.shape(a)[0])
            return _original(a, *args, **kwargs)

        monkeypatch.setattr(np.linalg, name, spy)

    config = SimulationConfig(seed=7, neighbor_limit=neighbor_limit)
    realisations = simulate(dataset, MODEL, queries, 4, config)

    assert realisations.shape == (4, 400)
    assert np.all(np.isfinite(realisations))
    # Ordinary Kriging systems carry one extra row for the Lagrange multiplier
    assert sizes
    assert max(sizes) <= neighbor_limit + 1
    return None


def test_simulate_neighbor_limit_honours_observations() -> None:  # noqa: D103
    dataset = _dataset()
    config = SimulationConfig(seed=2, neighbor_limit=8)

    realisations = simulate(dataset, MODEL, dataset.coords, 10, config)

    assert np.allclose(realisations, dataset.values[None, :], atol=1e-6)
    return None


def test_simulate_error_policy() -> None:  # noqa: D103
    records = [(0.0, 0.0, 1.0), (0.0, 0.0, 2.0), (50.0, 0.0, 3.0)]
    records += [(0.0, 50.0, 4.0)]
    dataset = SpatialDataset.load(records, allow_duplicate_locations=True)
    queries = np.array([[0.0, 0.0], [50.0, 50.0]])

    with pytest.raises(DuplicateLocationError):
        simulate(dataset, MODEL, queries, 3, SimulationConfig(seed=0))

    config = SimulationConfig(seed=0, on_error="nan", nugget_floor=1e-6)
    realisations = simulate(dataset, MODEL, queries, 3, config)
    assert np.all(np.isnan(realisations[:, 0]))
    assert np.all(np.isfinite(realisations[:, 1]))
    return None


def test_simulate_invalid() -> None:  # noqa: D103
    dataset = _dataset()
    with pytest.raises(ValueError):
        simulate(dataset, MODEL, [[0.0, 0.0]], 0)
    with pytest.raises(ValueError):
        simulate(dataset, MODEL, [[0.0, 0.0, 0.0]], 2)
    return None


def test_mv_normal_draw() -> None:  # noqa: D103
    rng = np.random.default_rng(90210)
    cov = np.array([[2.0, 0.8, 0.0], [0.8, 1.0, 0.3], [0.0, 0.3, 0.5]])
    loc = np.array([1.0, -1.0, 0.0])

    draws = mv_normal_draw(loc, cov, 100_000, rng)

    assert draws.shape == (100_000, 3)
    assert np.allclose(draws.mean(axis=0), loc, atol=0.05)
    assert np.allclose(np.cov(draws.T), cov, atol=0.05)
    return None


def test_mv_normal_draw_singular() -> None:  # noqa: D103
    rng = np.random.default_rng(1)
    # Two identical positions give identical rows
    cov = np.array([[1.0, 1.0, 0.2], [1.0, 1.0, 0.2], [0.2, 0.2, 1.0]])

    draws = mv_normal_draw(np.zeros(3), cov, 50, rng)

    assert np.allclose(draws[:, 0], draws[:, 1])
    return None


def test_mv_normal_draw_invalid() -> None:  # noqa: D103
    with pytest.raises(ValueError):
        mv_normal_draw(np.zeros(2), np.ones((2, 3)))
    with pytest.raises(ValueError):
        mv_normal_draw(np.zeros(3), np.eye(2))
    # Indefinite matrix
    with pytest.raises(ValueError):
        mv_normal_draw(np.zeros(2), np.array([[1.0, 2.0], [2.0, 1.0]]))
    return None


def test_sequential_gaussian_draw() -> None:  # noqa: D103
    rng = np.random.default_rng(90210)
    coords = np.array([[0.0, 0.0], [20.0, 0.0], [0.0, 30.0]])

    # Two neighbours condition each position on every earlier position
    draws = sequential_gaussian_draw(coords, MODEL, 2, 100_000, rng)
    expected = MODEL.covariance(squareform(pdist(coords)))

    assert draws.shape == (100_000, 3)
    assert np.allclose(draws.mean(axis=0), 0.0, atol=0.05)
    assert np.allclose(np.cov(draws.T), expected, atol=0.15)
    return None


def test_sequential_gaussian_draw_coincident() -> None:  # noqa: D103
    rng = np.random.default_rng(1)
    coords = np.array([[0.0, 0.0], [50.0, 50.0], [0.0, 0.0], [90.0, 10.0]])

    draws = sequential_gaussian_draw(coords, MODEL, 1, 50, rng)

    assert draws.shape == (50, 4)
    assert np.allclose(draws[:, 0], draws[:, 2])

    with pytest.raises(ValueError):
        sequential_gaussian_draw(coords, MODEL, 0)
    return None
