import matplotlib

matplotlib.use("Agg")

import geopandas as gpd  # noqa: E402
import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402
import pytest  # noqa: E402

# Projected origin (ETRS89 / UTM 30N) for the synthetic site layers
X0, Y0 = 700000.0, 4600000.0
CRS = "EPSG:25830"


@pytest.fixture
def line_sites():
    """Eight sites on a line, one unit apart."""
    return pd.DataFrame({
        "site": [f"S{i}" for i in range(8)],
        "x": np.arange(8, dtype=float),
        "y": np.zeros(8),
    })


def make_observations(sites, values, date="2020-07-15", metric="NDVI"):
    return pd.DataFrame({
        "site": list(sites["site"]),
        "date": date,
        metric: values,
    })


@pytest.fixture
def clustered(line_sites):
    return make_observations(line_sites, [1, 1, 1, 1, 10, 10, 10, 10])


@pytest.fixture
def alternating(line_sites):
    return make_observations(line_sites, [1, 10, 1, 10, 1, 10, 1, 10])


@pytest.fixture
def site_layers(tmp_path):
    """
    Burned (6 points, `site` column) and unburned (4 points, `id` column)
    shapefiles on a 100 m spaced row.
    """
    burned = gpd.GeoDataFrame(
        {"site": [f"B{i}" for i in range(6)]},
        geometry=gpd.points_from_xy(X0 + 100.0 * np.arange(6), [Y0] * 6),
        crs=CRS,
    )
    unburned = gpd.GeoDataFrame(
        {"id": [1, 2, 3, 4]},
        geometry=gpd.points_from_xy(X0 + 100.0 * np.arange(6, 10), [Y0] * 4),
        crs=CRS,
    )
    burned_path = tmp_path / "burned_sites.shp"
    unburned_path = tmp_path / "unburned_sites.shp"
    burned.to_file(burned_path)
    unburned.to_file(unburned_path)
    return burned_path, unburned_path


@pytest.fixture
def dataset_csv(tmp_path):
    """Two dates, two metrics; site U4 lacks the second date."""
    sites = [f"B{i}" for i in range(6)] + ["U1", "U2", "U3", "U4"]
    rows = []
    for i, site in enumerate(sites):
        rows.append([site, "2019-07-15", 0.1 * i, 1.0 if i < 5 else 5.0])
        if site != "U4":
            rows.append([site, "2020-07-15", (i % 2) * 1.0, float(i)])
    df = pd.DataFrame(rows, columns=["site", "date", "NDMI", "NDVI_slope"])
    path = tmp_path / "time_series.csv"
    df.to_csv(path, index=False)
    return path
