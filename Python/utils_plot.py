"""Persist and plot the Moran's I distance-band results."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

from matplotlib import pyplot as plt  # type: ignore
import pandas as pd  # type: ignore
import seaborn as sn  # type: ignore

from utils_errors import PersistenceError
from utils_moran import RESULT_COLUMNS


logger = logging.getLogger(__name__)


def write_results(results: pd.DataFrame, path: Union[str, Path]) -> Path:
    """
    Write the result table as CSV with header
    `metric,date,distance,moran,p.value`.
    """
    missing = [c for c in RESULT_COLUMNS if c not in results.columns]
    if missing:
        raise ValueError(f"Result table lacks columns {missing}")

    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        results[RESULT_COLUMNS].to_csv(path, index=False)
    except OSError as e:
        raise PersistenceError(f"Could not write {path}: {e}") from e

    logger.info("Saved %d rows to %s", len(results), path)
    return path


def read_results(path: Union[str, Path]) -> pd.DataFrame:
    """Read a table written by `write_results` (dates kept as strings)."""
    return pd.read_csv(path, dtype={"metric": str, "date": str})


def _significant_points(data, x, y, alpha, **kws):
    """Filled markers on the bands with p-value below `alpha`."""
    sig = data[data["p.value"] < alpha]
    plt.scatter(sig[x], sig[y], s=18, zorder=3, color=kws.get("color"))


def plot_correlogram(
    results: pd.DataFrame,
    path: Union[str, Path],
    alpha: float = 0.05,
    col_wrap: int = 3,
) -> Optional[Path]:
    """
    Moran's I against distance, one facet per metric and one line per date.

    A dashed line marks I = 0; filled markers flag significant bands.
    Returns None, without writing, when `results` is empty.
    """
    if results.empty:
        logger.warning("No results to plot; %s not written.", path)
        return None

    # Dates are categories, not a continuous scale
    data = results.astype({"date": str}).sort_values(["metric", "date", "distance"])
    n_metrics = data["metric"].nunique()

    g = sn.FacetGrid(
        data,
        col="metric",
        hue="date",
        col_wrap=min(col_wrap, max(n_metrics, 1)),
        sharey=False,
        height=3.5,
        aspect=1.3,
    )
    g.map_dataframe(sn.lineplot, x="distance", y="moran")
    g.map_dataframe(_significant_points, x="distance", y="moran", alpha=alpha)
    for ax in g.axes.flat:
        ax.axhline(0, color="grey", linestyle="--", linewidth=0.8)
    g.set_axis_labels("Distance (m)", "Moran's I")
    g.set_titles(col_template="{col_name}")
    g.add_legend(title="Date")

    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        g.savefig(path, dpi=300)
    except OSError as e:
        raise PersistenceError(f"Could not write {path}: {e}") from e
    finally:
        plt.close(g.figure)

    logger.info("Saved correlogram to %s", path)
    return path
