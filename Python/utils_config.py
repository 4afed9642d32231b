"""
Run configuration for the Moran's I distance-band analysis.

Every option has a default in `SweepConfig.DEFAULTS` and can be overridden
with an environment variable named `MORAN_<OPTION>` (upper case). List
options are comma-separated, e.g.

    MORAN_METRICS=NDMI,NDVI_slope MORAN_BAND_END=20000 python moran_distance.py
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional, Union

import joblib  # type: ignore


class SweepConfig:
    """Paths, parameter grid and runtime options of a sweep."""

    DEFAULTS = {
        # Paths (relative ones are resolved against `root`)
        "root": ".",
        "dataset_path": "data/time_series.csv",
        "burned_path": "data/burned_sites.shp",
        "unburned_path": "data/unburned_sites.shp",
        "output_dir": "results/moran",
        # Parameter grid (empty dates -> every date in the dataset)
        "dates": [],
        "metrics": ["NDMI", "NDVI", "NDVI_slope"],
        # Distance bands in CRS units (metres)
        "band_start": 0.0,
        "band_end": 10000.0,
        "band_increment": 500.0,
        # Moran's I permutation test
        "permutations": 599,
        "seed": None,
        "alpha": 0.05,
        # Processing
        "n_jobs": None,
        # Site layers
        "target_crs": None,
        "burned_site_column": "site",
        "unburned_id_column": "id",
        "unburned_prefix": "U",
    }

    _paths = ["dataset_path", "burned_path", "unburned_path", "output_dir"]
    _lists = ["dates", "metrics"]
    _floats = ["band_start", "band_end", "band_increment", "alpha"]
    _ints = ["permutations", "seed", "n_jobs"]

    def __init__(self, **options):
        unknown = set(options) - set(self.DEFAULTS)
        if unknown:
            raise ValueError(f"Unknown configuration options: {sorted(unknown)}")

        values = dict(self.DEFAULTS)
        values.update(options)

        self.root = Path(values["root"])
        for key in self._paths:
            setattr(self, key, resolve(values[key], self.root))

        self.dates: List[str] = [str(d) for d in values["dates"]]
        self.metrics: List[str] = [str(m) for m in values["metrics"]]
        self.band_start = float(values["band_start"])
        self.band_end = float(values["band_end"])
        self.band_increment = float(values["band_increment"])
        self.permutations = int(values["permutations"])
        self.seed: Optional[int] = (
            None if values["seed"] is None else int(values["seed"]))
        self.alpha = float(values["alpha"])
        self.n_jobs: Optional[int] = (
            None if values["n_jobs"] is None else int(values["n_jobs"]))
        self.target_crs = values["target_crs"]
        self.burned_site_column = values["burned_site_column"]
        self.unburned_id_column = values["unburned_id_column"]
        self.unburned_prefix = values["unburned_prefix"]

    @classmethod
    def from_env(cls, environ=None, **options) -> "SweepConfig":
        """
        Build a configuration from `MORAN_*` environment variables.

        Keyword arguments take precedence over the environment.
        """
        environ = os.environ if environ is None else environ
        values = {}
        for key in cls.DEFAULTS:
            env_key = f"MORAN_{key.upper()}"
            raw = environ.get(env_key)
            if raw is None or raw == "":
                continue
            values[key] = cls._parse(key, env_key, raw)
        values.update(options)
        return cls(**values)

    @classmethod
    def _parse(cls, key: str, env_key: str, raw: str):
        if key in cls._lists:
            return [v.strip() for v in raw.split(",") if v.strip()]
        try:
            if key in cls._floats:
                return float(raw)
            if key in cls._ints:
                return int(raw)
        except ValueError:
            raise ValueError(f"{env_key} must be numeric, got '{raw}'")
        return raw

    def validate(self) -> None:
        """Check the band parameters and the permutation count."""
        if self.band_start < 0:
            raise ValueError("band_start must be >= 0.")
        if self.band_end <= self.band_start:
            raise ValueError("band_end must be greater than band_start.")
        if self.band_increment <= 0:
            raise ValueError("band_increment must be > 0.")
        if self.band_increment > self.band_end - self.band_start:
            raise ValueError("band_increment is larger than the band range.")
        if self.permutations <= 0:
            raise ValueError("permutations must be > 0.")
        if not 0 < self.alpha < 1:
            raise ValueError("alpha must be in (0, 1).")
        if not self.metrics:
            raise ValueError("At least one metric is required.")

    def get_worker_count(self, reserve: int = 2) -> int:
        """Configured workers, or the available CPUs minus `reserve`."""
        if self.n_jobs is not None:
            return max(1, self.n_jobs)
        return max(1, joblib.cpu_count() - reserve)

    def __repr__(self):
        fields = ", ".join(
            f"{k}={getattr(self, k)!r}" for k in self.DEFAULTS if k != "root")
        return f"SweepConfig({fields})"


def resolve(path: Union[str, Path], root: Union[str, Path]) -> Path:
    """Return `path` unchanged when absolute, otherwise relative to `root`."""
    path = Path(path)
    return path if path.is_absolute() else Path(root, path)
