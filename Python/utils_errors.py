"""Exceptions raised along the Moran's I distance-band workflow."""


class DataLoadError(Exception):
    """Missing file, missing column or site identifier collision."""


class DegenerateBandError(Exception):
    """A distance band without any qualifying site pair."""

    def __init__(self, lower, upper):
        super().__init__(lower, upper)
        self.lower = lower
        self.upper = upper

    def __str__(self):
        return f"No site pairs within [{self.lower}, {self.upper})"


class TaskFailure(Exception):
    """
    A (metric, date) sweep failed.

    The arguments are forwarded to Exception so the instance survives
    pickling between joblib workers and the parent process.
    """

    def __init__(self, metric, date, message):
        super().__init__(metric, date, message)
        self.metric = metric
        self.date = date
        self.message = message

    def __str__(self):
        return f"Task ({self.metric}, {self.date}) failed: {self.message}"


class PersistenceError(Exception):
    """Results or figures could not be written."""
