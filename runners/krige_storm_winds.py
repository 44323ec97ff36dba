#!/usr/bin/env python

"""Run script for Kriging storm wind speed observations"""

import argparse
import logging
import os

import numpy as np
import polars as pl

from storm_gridding.config import (
    SimulationConfig,
    get_recurse,
    load_config,
    pipeline_config_from_dict,
)
from storm_gridding.empirical import bins_to_frame
from storm_gridding.observations import (
    SpatialDataset,
    project_frame,
    sinusoidal_projection,
)
from storm_gridding.pipeline import run_pipeline
from storm_gridding.stochastic import simulate
from storm_gridding.utils import init_logging, knots_to_ms


parser = argparse.ArgumentParser(
    prog="Krige Storm Winds",
    description="Run script for Kriging storm wind speed observations",
)
parser.add_argument(
    "-c",
    "--config",
    type=str,
    default="krige_storm_winds_config.yaml",
    help="path to config file",
)
parser.add_argument(
    "-n",
    "--n-simulations",
    type=int,
    default=0,
    help="Number of conditional realisations to draw at the query points",
)
parser.add_argument(
    "-s",
    "--seed",
    type=int,
    default=None,
    help="Seed for the conditional realisations",
)


def load_observations(conf: dict) -> pl.DataFrame:
    """Load wind observations, converting to m/s and projecting to metres"""
    in_path = get_recurse(conf, "input", "path")
    if in_path is None:
        raise KeyError("Missing key input.path in config file")
    lon_col = get_recurse(conf, "input", "lon_col", default="lon")
    lat_col = get_recurse(conf, "input", "lat_col", default="lat")
    value_col = get_recurse(conf, "input", "value_col", default="wind")
    units = get_recurse(conf, "input", "units", default="knots")

    df = pl.read_csv(in_path)
    logging.info(f"Loaded {df.height} records from {in_path}")

    match units:
        case "knots":
            df = df.with_columns(
                pl.col(value_col).map_batches(knots_to_ms).alias("value")
            )
        case "ms":
            df = df.with_columns(pl.col(value_col).alias("value"))
        case _:
            raise ValueError(f"Unknown wind speed units: {units}")

    lon_0 = get_recurse(conf, "projection", "lon_0")
    if lon_0 is None:
        lon_0 = float(df.get_column(lon_col).mean())  # type: ignore
    logging.info(f"Sinusoidal projection about longitude {lon_0}")
    return project_frame(
        df, sinusoidal_projection(lon_0), lon_col=lon_col, lat_col=lat_col
    )


def main():  # noqa: D103
    args = parser.parse_args()
    conf = load_config(args.config)
    init_logging(
        file=get_recurse(conf, "setup", "log_file"),
        level=get_recurse(conf, "setup", "log_level", default="info"),
    )
    logging.info("Start")

    out_path = get_recurse(conf, "output", "path")
    if out_path is None:
        raise KeyError("Missing key output.path in config file")
    os.makedirs(out_path, exist_ok=True)

    config = pipeline_config_from_dict(conf)
    records = load_observations(conf)
    dataset = SpatialDataset.load(
        records,
        allow_duplicate_locations=config.dataset.allow_duplicate_locations,
        tolerance=config.dataset.tolerance,
    )

    result = run_pipeline(dataset, config)
    logging.info(f"Fitted variogram model: {result.model!r}")

    bins_to_frame(result.bins).write_csv(
        os.path.join(out_path, "variogram_bins.csv")
    )
    result.predictions_frame().write_csv(
        os.path.join(out_path, "predictions.csv")
    )
    if result.grid is not None:
        result.grid.attrs.update(
            {k: str(v) for k, v in result.model.to_dict().items()}
        )
        result.grid.to_netcdf(
            os.path.join(out_path, "wind_grid.nc"), engine="scipy"
        )

    if args.n_simulations > 0 and config.query_points:
        sim_config = SimulationConfig(
            neighbor_limit=config.kriging.neighbor_limit,
            nugget_floor=config.kriging.nugget_floor,
            tolerance=config.kriging.tolerance,
            max_condition=config.kriging.max_condition,
            n_workers=config.kriging.n_workers,
            on_error=config.kriging.on_error,
            seed=args.seed,
        )
        realisations = simulate(
            dataset,
            result.model,
            np.asarray(config.query_points),
            args.n_simulations,
            sim_config,
        )
        pl.DataFrame(
            realisations,
            schema=[f"query_{i}" for i in range(realisations.shape[1])],
        ).write_csv(os.path.join(out_path, "realisations.csv"))

    logging.info("Finished")


if __name__ == "__main__":
    main()
