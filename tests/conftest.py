"""
Shared pytest fixtures for LMMTour tests.
"""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from tests.config import CLUSTER_SIZE, INTERCEPT_SD, N_CLUSTERS, SEED


def pytest_configure(config):
    config.addinivalue_line("markers", "lme: linear mixed model tests (statsmodels fits)")
    config.addinivalue_line("markers", "slow: long-running tests")


@pytest.fixture(autouse=True)
def close_figures():
    yield
    import matplotlib.pyplot as plt

    plt.close("all")


@pytest.fixture
def simple_data():
    """y = 2 + 0.5 x + e with 100 rows."""
    rng = np.random.default_rng(SEED)
    x = rng.normal(size=100)
    y = 2.0 + 0.5 * x + rng.normal(size=100)
    return pd.DataFrame({"x": x, "y": y})


@pytest.fixture
def factor_data():
    """Balanced three-level factor g (30 rows each), a two-level factor h and a covariate x."""
    rng = np.random.default_rng(SEED)
    g = np.repeat(["A", "B", "C"], 30)
    h = np.tile(["u", "v"], 45)
    x = rng.normal(size=90)
    shift = pd.Series(g).map({"A": 0.0, "B": 1.0, "C": -0.5}).to_numpy()
    slope = pd.Series(g).map({"A": 0.5, "B": 1.2, "C": 0.1}).to_numpy()
    y = 3.0 + shift + slope * x + 0.4 * (h == "v") + rng.normal(scale=0.8, size=90)
    return pd.DataFrame({"g": g, "h": h, "x": x, "y": y})


@pytest.fixture
def simple_model():
    """Linear regression y ~ x with slope 0.5."""
    from lmmtour import LinearModel

    return LinearModel("y ~ x", verbose=False).set_effects("x=0.5")


@pytest.fixture
def random_intercept_model():
    """score ~ x + (1 | school) with 20 schools."""
    from lmmtour import LinearModel

    model = LinearModel("score ~ x + (1 | school)", verbose=False)
    model.set_intercept(50.0).set_effects("x=0.5")
    model.set_cluster("school", n_clusters=N_CLUSTERS, intercept_sd=INTERCEPT_SD)
    return model


@pytest.fixture
def clustered_data(random_intercept_model):
    return random_intercept_model.simulate(N_CLUSTERS * CLUSTER_SIZE)


@pytest.fixture
def random_slope_model():
    """y ~ time + (1 + time | subject), 15 subjects x 10 time points."""
    from lmmtour import LinearModel

    model = LinearModel("y ~ time + (1 + time | subject)", verbose=False)
    model.set_variable_type("time=grid(0, 9)")
    model.set_intercept(10.0).set_effects("time=0.8")
    model.set_cluster("subject", n_clusters=15, intercept_sd=2.0, slope_sd=0.4, correlation=0.3)
    return model
