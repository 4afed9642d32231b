from __future__ import annotations

import logging
import traceback
from itertools import product
from typing import List, Optional, Sequence

import pandas as pd  # type: ignore
from joblib import Parallel, delayed  # type: ignore
from tqdm import tqdm  # type: ignore

from utils_errors import TaskFailure
from utils_moran import Band, RESULT_COLUMNS, sweep


logger = logging.getLogger(__name__)


def run_task(metric, date, sites, observations, bands, permutations, seed=None):
    """Run one (metric, date) sweep, tagging any failure with the task."""
    try:
        return sweep(metric, date, sites, observations, bands,
                     permutations=permutations, seed=seed)
    except Exception as e:
        logger.error(traceback.format_exc())
        raise TaskFailure(metric, date, f"{type(e).__name__}: {e}") from e


def check_task_frame(frame, metric, date, n_bands):
    """Each task returns exactly one row per band, tagged with its own pair."""
    if len(frame) != n_bands:
        raise TaskFailure(
            metric, date, f"returned {len(frame)} rows for {n_bands} bands")
    tags = frame[["metric", "date"]].drop_duplicates()
    if n_bands and tags.values.tolist() != [[metric, date]]:
        raise TaskFailure(
            metric, date, f"rows tagged as {tags.values.tolist()}")


def run_sweeps(
    sites: pd.DataFrame,
    observations: pd.DataFrame,
    metrics: Sequence[str],
    dates: Sequence[str],
    bands: Sequence[Band],
    permutations: int = 599,
    n_jobs: int = 1,
    seed: Optional[int] = None,
    backend: str = "loky",
) -> pd.DataFrame:
    """
    Sweep every (metric, date) pair in parallel and merge the results.

    Each task only receives its inputs and returns its own table, so no
    state is shared between workers. The first failing task aborts the run
    with a `TaskFailure` naming the pair.

    Returns
    -------
    DataFrame
        Concatenation of the per-task tables (`metric, date, distance,
        moran, p.value`), in task order.
    """
    tasks = list(product(metrics, dates))
    if not tasks:
        return pd.DataFrame(columns=RESULT_COLUMNS)

    # Only the columns used by the sweep are shipped to the workers
    site_table = pd.DataFrame(sites[["site", "x", "y"]])

    logger.info(
        "Running %d tasks x %d bands with %d worker(s)",
        len(tasks), len(bands), n_jobs)

    with Parallel(n_jobs=n_jobs, backend=backend) as parallel:
        frames: List[pd.DataFrame] = parallel(
            delayed(run_task)(
                metric, date, site_table,
                observations.loc[observations["date"] == date,
                                 ["site", "date", metric]],
                bands, permutations, seed,
            )
            for metric, date in tqdm(tasks, desc="Moran's I sweeps")
        )

    for (metric, date), frame in zip(tasks, frames):
        check_task_frame(frame, metric, date, len(bands))
    return pd.concat(frames, ignore_index=True)
