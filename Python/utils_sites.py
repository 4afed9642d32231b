"""
Load the site layers and the covariate time series used by the Moran's I
distance-band analysis.

Two point populations are joined into one site table:
  1. Burned sites: layer derived from the intersection of the sampling grid
     with the fire perimeters; already carries a `site` identifier.
  2. Unburned sites: control points with a numeric id. Their identifier is
     built as `<prefix><id>`.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

import geopandas as gpd  # type: ignore
import pandas as pd  # type: ignore

from utils_errors import DataLoadError


pd.options.mode.copy_on_write = True

logger = logging.getLogger(__name__)

SITE_COLUMNS = ["site", "label", "geometry", "x", "y"]


def _check_exists(path: Path, kind: str) -> None:
    if not path.exists():
        raise DataLoadError(f"{kind} not found: {path}")


def _check_columns(df: pd.DataFrame, required: Sequence[str], source) -> None:
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise DataLoadError(f"Missing columns {missing} in {source}")


def load_observations(
    path: Union[str, Path],
    metrics: Sequence[str],
) -> pd.DataFrame:
    """
    Read the covariate time series.

    Parameters
    ----------
    path : Path or str
        Delimited text file with at least `site`, `date` and one column per
        metric.
    metrics : sequence of str
        Metric columns that must be present.

    Returns
    -------
    DataFrame
        Columns `site` (str), `date` (ISO `YYYY-MM-DD` str) and the metrics
        (float). Unparseable metric cells become NaN.

    Raises
    ------
    DataLoadError
        If the file or a required column is missing, a date cannot be parsed
        or a site has more than one row for the same date.
    """
    path = Path(path)
    _check_exists(path, "Dataset")

    dataset = pd.read_csv(path, dtype={"site": str}, low_memory=False)
    _check_columns(dataset, ["site", "date", *metrics], path.name)

    # Keep only the columns the sweep needs
    dataset = dataset[["site", "date", *metrics]]

    dates = pd.to_datetime(dataset["date"], errors="coerce")
    if dates.isna().any():
        bad = dataset.loc[dates.isna(), "date"].unique().tolist()
        raise DataLoadError(f"Invalid dates in {path.name}: {bad[:5]}")
    dataset["date"] = dates.dt.strftime("%Y-%m-%d")

    for metric in metrics:
        dataset[metric] = pd.to_numeric(dataset[metric], errors="coerce")

    duplicated = dataset.duplicated(subset=["site", "date"], keep=False)
    if duplicated.any():
        pairs = dataset.loc[duplicated, ["site", "date"]].drop_duplicates()
        raise DataLoadError(
            f"{len(pairs)} (site, date) pairs appear more than once in "
            f"{path.name}, e.g. {pairs.iloc[0].tolist()}"
        )

    logger.info(
        "Loaded %d observations (%d sites, %d dates) from %s",
        len(dataset), dataset["site"].nunique(), dataset["date"].nunique(),
        path.name,
    )
    return dataset.reset_index(drop=True)


def _point_coordinates(gdf: gpd.GeoDataFrame, name: str) -> gpd.GeoDataFrame:
    """Add `x`/`y` columns, using centroids for non-point geometries."""
    geom = gdf.geometry
    if not (geom.geom_type == "Point").all():
        logger.warning("%s has non-point geometries; using centroids.", name)
        geom = geom.centroid
    gdf["x"] = geom.x
    gdf["y"] = geom.y
    return gdf


def load_sites(
    burned_path: Union[str, Path],
    unburned_path: Union[str, Path],
    burned_site_column: str = "site",
    unburned_id_column: str = "id",
    unburned_prefix: str = "U",
    target_crs=None,
) -> gpd.GeoDataFrame:
    """
    Read both site layers and join them into a single table.

    The unburned layer is reprojected to the burned layer CRS. When
    `target_crs` is given, the union is reprojected to it afterwards. Band
    distances are expressed in the units of the resulting CRS, so a
    projected CRS (e.g. EPSG:25830) is expected.

    Returns
    -------
    GeoDataFrame
        Columns `site`, `label` ('burned' / 'unburned'), `geometry`, `x`, `y`.

    Raises
    ------
    DataLoadError
        Missing file or id column, or repeated site identifiers.
    """
    burned_path = Path(burned_path)
    unburned_path = Path(unburned_path)
    _check_exists(burned_path, "Burned sites layer")
    _check_exists(unburned_path, "Unburned sites layer")

    burned = gpd.read_file(burned_path)
    _check_columns(burned, [burned_site_column], burned_path.name)
    burned["site"] = burned[burned_site_column].astype(str)
    burned["label"] = "burned"

    unburned = gpd.read_file(unburned_path)
    _check_columns(unburned, [unburned_id_column], unburned_path.name)
    ids = pd.to_numeric(unburned[unburned_id_column], errors="coerce")
    if ids.isna().any():
        raise DataLoadError(
            f"Non numeric '{unburned_id_column}' values in {unburned_path.name}")
    unburned["site"] = unburned_prefix + ids.astype("int64").astype(str)
    unburned["label"] = "unburned"

    if (burned.crs is None) != (unburned.crs is None):
        raise DataLoadError("Only one of the site layers defines a CRS.")
    if burned.crs is not None:
        unburned = unburned.to_crs(burned.crs)

    target_cols = ["site", "label", "geometry"]
    sites = gpd.GeoDataFrame(
        pd.concat([burned[target_cols], unburned[target_cols]],
                  ignore_index=True),
        crs=burned.crs,
    )

    collisions: List[str] = sites.loc[
        sites["site"].duplicated(), "site"].unique().tolist()
    if collisions:
        raise DataLoadError(
            f"{len(collisions)} site identifiers are not unique: "
            f"{collisions[:10]}"
        )

    if target_crs is not None:
        sites = sites.to_crs(target_crs)
    if sites.crs is not None and sites.crs.is_geographic:
        logger.warning(
            "Sites use a geographic CRS (%s); band distances are in degrees.",
            sites.crs.to_string())

    sites = _point_coordinates(sites, "Sites")
    logger.info(
        "Loaded %d burned and %d unburned sites",
        (sites["label"] == "burned").sum(), (sites["label"] == "unburned").sum(),
    )
    return sites[SITE_COLUMNS]


def available_dates(observations: pd.DataFrame,
                    dates: Optional[Sequence[str]] = None) -> List[str]:
    """
    Return the requested dates (normalised to ISO) or every dataset date.

    Requested dates absent from the observations are kept: their sweep
    yields one undefined row per band.
    """
    if not dates:
        return sorted(observations["date"].unique().tolist())
    parsed = pd.to_datetime(pd.Series(list(dates)), errors="coerce")
    if parsed.isna().any():
        raise ValueError(f"Invalid dates requested: {list(dates)}")
    return parsed.dt.strftime("%Y-%m-%d").tolist()


def join_date(
    sites: pd.DataFrame,
    observations: pd.DataFrame,
    date: str,
    metric: str,
) -> pd.DataFrame:
    """
    Inner join of the sites with the `metric` values observed on `date`.

    Sites without an observation (or with a null value) are dropped. The
    output keeps the site table order.
    """
    obs = observations.loc[observations["date"] == date, ["site", metric]]
    joined = sites.merge(obs, on="site", how="inner")
    joined = joined.dropna(subset=[metric]).reset_index(drop=True)

    dropped = len(sites) - len(joined)
    if dropped:
        logger.debug("%s %s: %d sites without data", metric, date, dropped)
    return joined
