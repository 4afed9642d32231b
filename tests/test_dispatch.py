import pickle

import numpy as np
import pandas as pd
import pytest

import utils_dispatch
from utils_dispatch import check_task_frame, run_sweeps
from utils_errors import TaskFailure
from utils_moran import RESULT_COLUMNS, distance_bands

DATES = ["2019-07-15", "2020-07-15"]


@pytest.fixture
def observations(line_sites):
    rows = []
    for date in DATES:
        for i, site in enumerate(line_sites["site"]):
            rows.append([site, date, float(i // 4), float(i % 2)])
    obs = pd.DataFrame(rows, columns=["site", "date", "NDMI", "NDVI"])
    # A site missing on the second date does not remove band rows
    return obs.drop(obs.index[-1])


def test_merged_row_count(line_sites, observations):
    bands = distance_bands(0.5, 3.5, 1)
    res = run_sweeps(line_sites, observations, ["NDMI", "NDVI"], DATES, bands,
                     permutations=49, n_jobs=1)
    assert len(res) == 2 * len(DATES) * len(bands)
    counts = res.groupby(["metric", "date"]).size()
    assert (counts == len(bands)).all()


def test_parallel_matches_sequential(line_sites, observations):
    bands = distance_bands(0.5, 5.5, 1)
    kwargs = dict(permutations=99, seed=3)
    key = ["metric", "date", "distance"]
    seq = run_sweeps(line_sites, observations, ["NDMI", "NDVI"], DATES, bands,
                     n_jobs=1, **kwargs)
    seq = seq.sort_values(key).reset_index(drop=True)
    for _ in range(3):
        par = run_sweeps(line_sites, observations, ["NDMI", "NDVI"], DATES,
                         bands, n_jobs=4, backend="threading", **kwargs)
        par = par.sort_values(key).reset_index(drop=True)
        np.testing.assert_array_equal(seq["moran"], par["moran"])
        np.testing.assert_array_equal(seq["p.value"], par["p.value"])


def test_no_tasks(line_sites, observations):
    res = run_sweeps(line_sites, observations, ["NDVI"], [], [(0.5, 1.5)])
    assert res.empty
    assert list(res.columns) == ["metric", "date", "distance", "moran", "p.value"]


def test_failing_task_is_reported(line_sites, observations, monkeypatch):
    real_sweep = utils_dispatch.sweep

    def flaky_sweep(metric, date, *args, **kwargs):
        if metric == "NDVI" and date == DATES[1]:
            raise ValueError("broken input")
        return real_sweep(metric, date, *args, **kwargs)

    monkeypatch.setattr(utils_dispatch, "sweep", flaky_sweep)

    with pytest.raises(TaskFailure) as info:
        run_sweeps(line_sites, observations, ["NDMI", "NDVI"], DATES,
                   [(0.5, 1.5)], permutations=49, n_jobs=1)
    assert info.value.metric == "NDVI"
    assert info.value.date == DATES[1]
    assert "broken input" in str(info.value)


def test_task_failure_pickles():
    err = pickle.loads(pickle.dumps(TaskFailure("NDVI", "2020-07-15", "boom")))
    assert (err.metric, err.date, err.message) == ("NDVI", "2020-07-15", "boom")
    assert "NDVI" in str(err)


class TestCheckTaskFrame:

    def frame(self, metric="NDVI", date=DATES[0], n=3):
        return pd.DataFrame(
            [[metric, date, float(k), 0.1, 0.2] for k in range(n)],
            columns=RESULT_COLUMNS,
        )

    def test_valid_frame(self):
        check_task_frame(self.frame(), "NDVI", DATES[0], 3)

    def test_missing_band_rows(self):
        with pytest.raises(TaskFailure) as info:
            check_task_frame(self.frame(n=2), "NDVI", DATES[0], 3)
        assert (info.value.metric, info.value.date) == ("NDVI", DATES[0])

    def test_rows_of_another_task(self):
        with pytest.raises(TaskFailure, match="NDMI"):
            check_task_frame(self.frame(metric="NDMI"), "NDVI", DATES[0], 3)


def test_short_task_output_is_reported(line_sites, observations, monkeypatch):
    real_sweep = utils_dispatch.sweep

    def short_sweep(*args, **kwargs):
        return real_sweep(*args, **kwargs).iloc[:-1]

    monkeypatch.setattr(utils_dispatch, "sweep", short_sweep)
    with pytest.raises(TaskFailure):
        run_sweeps(line_sites, observations, ["NDVI"], DATES,
                   distance_bands(0.5, 3.5, 1), permutations=49, n_jobs=1)
