"""
Global Moran's I over contiguous distance bands (annuli).

For every band `[lower, upper)` two sites are neighbours when their distance
falls inside the band. The neighbour graph is row-standardised and the
statistic is tested with a permutation test (esda). The reported p-value is
the upper-tail pseudo p-value folded onto the smaller tail:

    p = (#{I_sim >= I} + 1) / (permutations + 1)
    p = 1 - p  if p > 0.5
"""
from __future__ import annotations

import logging
import math
import threading
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd  # type: ignore
from esda.moran import Moran  # type: ignore
from libpysal.weights import W  # type: ignore
from scipy.spatial import KDTree  # type: ignore

from utils_errors import DegenerateBandError
from utils_sites import join_date


logger = logging.getLogger(__name__)

RESULT_COLUMNS = ["metric", "date", "distance", "moran", "p.value"]

# esda draws its permutations from numpy's global generator
_RNG_LOCK = threading.Lock()

Band = Tuple[float, float]


def distance_breaks(start: float, end: float, increment: float) -> np.ndarray:
    """
    Break points `start + increment * k`, k = 0..n with
    n = floor((end - start) / increment).
    """
    if start < 0:
        raise ValueError("Band start must be >= 0.")
    if end <= start:
        raise ValueError("Band end must be greater than band start.")
    if increment <= 0:
        raise ValueError("Band increment must be > 0.")

    # Round before flooring so 0.9 / 0.1 counts as 9 bands
    n = int(math.floor(round((end - start) / increment, 9)))
    if n < 1:
        raise ValueError("Band increment is larger than the band range.")
    return start + increment * np.arange(n + 1)


def distance_bands(start: float, end: float, increment: float) -> List[Band]:
    """Contiguous `(lower, upper)` bands between consecutive break points."""
    breaks = distance_breaks(start, end, increment)
    # The first break only acts as the lower bound of the first band
    return [(float(lo), float(hi)) for lo, hi in zip(breaks[:-1], breaks[1:])]


def site_pairs(coords: np.ndarray, max_distance: float
               ) -> Tuple[np.ndarray, np.ndarray]:
    """
    All site pairs closer than or equal to `max_distance`.

    Returns
    -------
    (pairs, distances)
        `pairs` is an (m, 2) int array with i < j; `distances` holds the
        euclidean distance of each pair.
    """
    coords = np.asarray(coords, dtype=float)
    if len(coords) < 2:
        return np.empty((0, 2), dtype=int), np.empty(0)

    tree = KDTree(coords)
    pairs = tree.query_pairs(max_distance, output_type="ndarray")
    if len(pairs) == 0:
        return np.empty((0, 2), dtype=int), np.empty(0)
    distances = np.linalg.norm(coords[pairs[:, 0]] - coords[pairs[:, 1]], axis=1)
    return pairs, distances


def annulus_weights(
    coords: np.ndarray,
    lower: float,
    upper: float,
    pairs: Optional[Tuple[np.ndarray, np.ndarray]] = None,
) -> W:
    """
    Row-standardised weights linking sites with `lower <= d < upper`.

    Sites without neighbours inside the band are kept as islands (zero
    rows). Pass `pairs` (from `site_pairs`) to avoid rebuilding the tree for
    every band.

    Raises
    ------
    DegenerateBandError
        If no pair of sites falls inside the band.
    """
    n = len(coords)
    if pairs is None:
        pairs = site_pairs(coords, upper)
    idx, dist = pairs

    keep = (dist >= lower) & (dist < upper)
    if not keep.any():
        raise DegenerateBandError(lower, upper)

    neighbors = {i: [] for i in range(n)}
    for i, j in idx[keep]:
        neighbors[int(i)].append(int(j))
        neighbors[int(j)].append(int(i))

    w = W(neighbors, id_order=list(range(n)), silence_warnings=True)
    w.transform = "r"
    return w


def fold_pvalue(p: float) -> float:
    """Fold a one-tailed p-value onto its smaller tail (result in [0, 0.5])."""
    if np.isnan(p):
        return p
    return 1.0 - p if p > 0.5 else p


def band_moran(values: np.ndarray, w: W, permutations: int = 599,
               seed: Optional[int] = None) -> Tuple[float, float]:
    """
    Moran's I of `values` and its folded permutation p-value.

    Returns (nan, nan) when the statistic is undefined (fewer than two
    sites or constant values).

    The permutation test holds a module lock, so concurrent threads never
    share the global generator. With `seed`, the generator is seeded for
    this test only and its previous state is restored afterwards.
    """
    y = np.asarray(values, dtype=float)
    if len(y) < 2 or np.ptp(y) == 0:
        return np.nan, np.nan

    with _RNG_LOCK:
        state = np.random.get_state()
        try:
            if seed is not None:
                np.random.seed(seed)
            mi = Moran(y, w, transformation="r", permutations=permutations)
        finally:
            if seed is not None:
                np.random.set_state(state)
    larger = np.sum(mi.sim >= mi.I)
    p_raw = (larger + 1.0) / (permutations + 1.0)
    return float(mi.I), fold_pvalue(p_raw)


def sweep(
    metric: str,
    date: str,
    sites: pd.DataFrame,
    observations: pd.DataFrame,
    bands: Sequence[Band],
    permutations: int = 599,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """
    Moran's I of one metric on one date for every distance band.

    Parameters
    ----------
    metric, date : str
        Observation column and ISO date to analyse.
    sites : DataFrame
        Site table with `site`, `x`, `y` (see utils_sites.load_sites).
    observations : DataFrame
        Time series with `site`, `date` and the metric.
    bands : sequence of (lower, upper)
        Distance bands, see `distance_bands`.
    permutations : int
        Number of random permutations of the test.
    seed : int, optional
        When given, band `i` is tested with seed `seed + i`, making
        p-values reproducible for any worker backend.

    Returns
    -------
    DataFrame
        One row per band with columns `metric, date, distance, moran,
        p.value`. `distance` is the band upper bound. Bands without
        neighbours, or dates with fewer than two sites, give NaN values.
    """
    joined = join_date(sites, observations, date, metric)
    coords = joined[["x", "y"]].to_numpy(dtype=float)
    values = joined[metric].to_numpy(dtype=float)

    max_upper = max((hi for _, hi in bands), default=0.0)
    pairs = site_pairs(coords, max_upper)

    records = []
    for i, (lower, upper) in enumerate(bands):
        moran_i, p_value = np.nan, np.nan
        try:
            w = annulus_weights(coords, lower, upper, pairs)
        except DegenerateBandError as e:
            logger.debug("%s %s: %s", metric, date, e)
        else:
            band_seed = None if seed is None else seed + i
            moran_i, p_value = band_moran(values, w, permutations, band_seed)
        records.append([metric, date, upper, moran_i, p_value])

    return pd.DataFrame(records, columns=RESULT_COLUMNS)


def insignificance_distance(results: pd.DataFrame, alpha: float = 0.05
                            ) -> pd.DataFrame:
    """
    First band distance where autocorrelation is no longer significant.

    For each (metric, date), returns the smallest `distance` whose p-value
    is >= `alpha`. Bands with undefined p-values are ignored, and the
    distance is NaN when every band is significant.
    """
    rows = []
    for (metric, date), group in results.groupby(["metric", "date"], sort=True):
        valid = group.dropna(subset=["p.value"]).sort_values("distance")
        insignificant = valid.loc[valid["p.value"] >= alpha, "distance"]
        distance = insignificant.iloc[0] if len(insignificant) else np.nan
        rows.append([metric, date, distance, len(valid)])

    return pd.DataFrame(rows, columns=["metric", "date", "distance", "n_bands"])
