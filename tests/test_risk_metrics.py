import numpy as np
import pytest

from portfolio_engine.exceptions import ValidationError
from portfolio_engine.risk_metrics import (
    conditional_value_at_risk,
    parametric_es,
    parametric_var,
    tail_risk_metrics,
    value_at_risk,
)


@pytest.fixture
def returns():
    return np.random.default_rng(2).standard_t(5, 20_000) * 0.15 + 0.05


def test_var_ordering(returns):
    metrics = tail_risk_metrics(returns)
    assert metrics["var5"] <= metrics["var10"]
    assert metrics["cvar5"] <= metrics["var5"]
    assert metrics["cvar10"] <= metrics["var10"]
    assert metrics["cvar5"] <= metrics["cvar10"]


def test_var_is_return_space_percentile(returns):
    assert value_at_risk(returns, 0.05) == pytest.approx(np.percentile(returns, 5))
    assert value_at_risk(returns, 0.05) < 0


def test_cvar_is_tail_mean():
    values = np.arange(100, dtype=float)
    threshold = np.percentile(values, 10)
    expected = values[values <= threshold].mean()
    assert conditional_value_at_risk(values, 0.10) == pytest.approx(expected)


def test_unavailable_without_data():
    assert value_at_risk([], 0.05) is None
    assert conditional_value_at_risk([np.nan], 0.05) is None


def test_invalid_level():
    with pytest.raises(ValidationError):
        value_at_risk([0.1, 0.2], 0.0)


def test_parametric_closed_forms():
    assert parametric_var(0.0, 1.0, 0.05) == pytest.approx(-1.644854, abs=1e-5)
    assert parametric_es(0.0, 1.0, 0.05) == pytest.approx(-2.062713, abs=1e-5)
    assert parametric_var(0.05, 0.2, 0.10) == pytest.approx(0.05 - 1.281552 * 0.2, abs=1e-5)


def test_parametric_matches_gaussian_simulation():
    sims = np.random.default_rng(4).normal(0.05, 0.2, 200_000)
    assert value_at_risk(sims, 0.05) == pytest.approx(parametric_var(0.05, 0.2, 0.05), abs=0.005)
    assert conditional_value_at_risk(sims, 0.05) == pytest.approx(
        parametric_es(0.05, 0.2, 0.05), abs=0.005
    )


def test_unavailable_for_constant_sample():
    flat = np.ones(100)
    assert value_at_risk(flat, 0.05) is None
    assert conditional_value_at_risk(flat, 0.05) is None
    assert all(v is None for v in tail_risk_metrics(flat).values())
