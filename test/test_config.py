import pytest
import yaml

from storm_gridding.config import (
    DatasetConfig,
    FitConfig,
    GridConfig,
    KrigingConfig,
    SimulationConfig,
    VariogramConfig,
    get_recurse,
    load_config,
    pipeline_config_from_dict,
)


CONFIG = """
setup:
  log_file: null
  log_level: info
dataset:
  allow_duplicate_locations: true
variogram:
  n_bins: 12
  direction_bands: [0, 45, 90, 135]
fit:
  family: gaussian
  max_iterations: 500
kriging:
  neighbor_limit: 30
  on_error: nan
grid:
  resolution: 10000
  window: bounds
  bounds: [[0, 100000], [0, 200000]]
query_points:
  - [150000.0, 80000.0]
  - [10, 20]
initial_model:
  family: gaussian
  nugget: 0.0
  psill: 10.0
  range: 50000.0
"""


def test_nested_dict() -> None:  # noqa: D103
    test_dict = {
        "nested": {"a": 4, "nested_2": {"a": 6, "b": 3}},
        "a": 2,
        "b": 9,
    }

    assert get_recurse(test_dict, "c") is None
    assert get_recurse(test_dict, "a") == 2
    assert get_recurse(test_dict, "nested", "a") == 4
    assert get_recurse(test_dict, "nested", "b") is None
    assert get_recurse(test_dict, "nested", "b", default="DEFAULT") == "DEFAULT"
    assert get_recurse(test_dict, "nested", "nested_2", "a") == 6
    assert get_recurse(test_dict, "a", "b") is None
    return None


def test_load_config(tmp_path) -> None:  # noqa: D103
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG)

    conf = load_config(str(path))
    assert conf == yaml.safe_load(CONFIG)

    config = pipeline_config_from_dict(conf)
    assert config.dataset.allow_duplicate_locations
    assert config.variogram.n_bins == 12
    assert config.variogram.direction_bands == (0.0, 45.0, 90.0, 135.0)
    assert config.fit == FitConfig(family="gaussian", max_iterations=500)
    assert config.kriging.neighbor_limit == 30
    assert config.kriging.on_error == "nan"
    assert config.grid is not None
    assert config.grid.bounds == [(0, 100000), (0, 200000)]
    assert config.query_points == [(150000.0, 80000.0), (10.0, 20.0)]
    assert config.initial_model is not None
    assert config.initial_model["range"] == 50000.0
    return None


def test_default_config() -> None:  # noqa: D103
    config = pipeline_config_from_dict({})

    assert config.dataset == DatasetConfig()
    assert config.variogram == VariogramConfig()
    assert config.kriging == KrigingConfig()
    assert config.grid is None
    assert config.query_points == []
    assert config.initial_model is None
    return None


def test_unknown_keys() -> None:  # noqa: D103
    with pytest.raises(ValueError):
        pipeline_config_from_dict({"kriging": {"nmax": 10}})
    return None


@pytest.mark.parametrize(
    "cls, kwargs",
    [
        (VariogramConfig, {"bin_width": 1.0, "n_bins": 10}),
        (VariogramConfig, {"max_lag": 0.0}),
        (VariogramConfig, {"n_bins": 0}),
        (VariogramConfig, {"direction_tolerance": 0.0}),
        (VariogramConfig, {"chunk_size": 0}),
        (FitConfig, {"max_iterations": 0}),
        (FitConfig, {"range_bound_factor": -1.0}),
        (KrigingConfig, {"neighbor_limit": 0}),
        (KrigingConfig, {"nugget_floor": 0.0}),
        (KrigingConfig, {"idw_power": 0.0}),
        (KrigingConfig, {"on_error": "ignore"}),
        (SimulationConfig, {"n_workers": 0}),
        (DatasetConfig, {"tolerance": -1.0}),
        (GridConfig, {"resolution": 1.0, "window": "global"}),
        (GridConfig, {"resolution": 1.0, "window": "bounds"}),
        (GridConfig, {"resolution": 1.0, "buffer": -1.0}),
        (GridConfig, {"resolution": 1.0, "cell_discretisation": 0}),
    ],
)
def test_invalid_config(cls, kwargs) -> None:  # noqa: D103
    with pytest.raises(ValueError):
        cls(**kwargs)
    return None
