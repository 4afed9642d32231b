"""
Moran's I by distance band for the burned / unburned site covariates.

For every metric and date, the global Moran's I is computed over contiguous
distance bands (annuli) to find the distance beyond which the spatial
autocorrelation is no longer significant.

Configuration is read from `MORAN_*` environment variables (see
utils_config.SweepConfig). Outputs, written to `output_dir`:
  - moran_distance.csv  : metric, date, distance, moran, p.value
  - moran_threshold.csv : first non significant distance by metric and date
  - moran_distance.png  : correlogram by metric
"""
from pathlib import Path
import logging
import os
import sys

from utils_config import SweepConfig
from utils_dispatch import run_sweeps
from utils_errors import DataLoadError, PersistenceError, TaskFailure
from utils_moran import distance_bands, insignificance_distance
from utils_plot import plot_correlogram, write_results
from utils_sites import available_dates, load_observations, load_sites


logger = logging.getLogger("moran_distance")


def main(config: SweepConfig = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if config is None:
            # Project root (this script lives in <root>/Python)
            root = Path(__file__).resolve().parent.parent
            options = {} if os.environ.get("MORAN_ROOT") else {"root": root}
            config = SweepConfig.from_env(**options)
        config.validate()
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        return 1

    # -------------------------------
    # Data loading
    # -------------------------------
    try:
        sites = load_sites(
            config.burned_path,
            config.unburned_path,
            burned_site_column=config.burned_site_column,
            unburned_id_column=config.unburned_id_column,
            unburned_prefix=config.unburned_prefix,
            target_crs=config.target_crs,
        )
        observations = load_observations(config.dataset_path, config.metrics)
    except DataLoadError as e:
        logger.error("Data loading failed: %s", e)
        return 1

    try:
        dates = available_dates(observations, config.dates)
    except ValueError as e:
        logger.error("%s", e)
        return 1
    if not dates:
        logger.error("No dates to analyse in %s", config.dataset_path)
        return 1

    bands = distance_bands(
        config.band_start, config.band_end, config.band_increment)
    print(f"{len(config.metrics)} metrics x {len(dates)} dates x "
          f"{len(bands)} bands ({bands[0][0]:g}-{bands[-1][1]:g} m)")

    # -------------------------------
    # Distance band sweeps
    # -------------------------------
    try:
        results = run_sweeps(
            sites,
            observations,
            config.metrics,
            dates,
            bands,
            permutations=config.permutations,
            n_jobs=config.get_worker_count(),
            seed=config.seed,
        )
    except TaskFailure as e:
        logger.error("%s", e)
        return 1

    # -------------------------------
    # Persist results
    # -------------------------------
    out_dir = Path(config.output_dir)
    thresholds = insignificance_distance(results, config.alpha)
    try:
        write_results(results, Path(out_dir, "moran_distance.csv"))
        thresholds.to_csv(Path(out_dir, "moran_threshold.csv"), index=False)
        plot_correlogram(
            results, Path(out_dir, "moran_distance.png"), alpha=config.alpha)
    except (PersistenceError, OSError) as e:
        logger.error("%s", e)
        return 1

    print(thresholds.to_string(index=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
