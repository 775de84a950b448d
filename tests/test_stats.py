from datetime import datetime, timedelta

import pandas as pd
import pytest

from abengine.sampling import make_rng
from abengine.stats import (
    Baseline,
    compute_conversion_stats,
    daily_conversion_rates,
    is_anomalous,
    is_futile,
    posterior_sample,
    probability_best,
    revenue_lift,
    rolling_baseline,
    variants_frame,
    z_score,
)


def test_no_data_is_a_coin_flip():
    probs = probability_best(
        make_rng(5),
        [{"visitors": 0, "conversions": 0}, {"visitors": 0, "conversions": 0}],
        draws=10_000,
    )

    assert 0.45 <= probs[0] <= 0.55
    assert 0.45 <= probs[1] <= 0.55
    assert sum(probs) == pytest.approx(1.0)


def test_clear_winner_gets_most_of_the_mass():
    control = {"visitors": 120, "conversions": 18}
    treatment = {"visitors": 130, "conversions": 39}

    p_control, p_treatment = probability_best(make_rng(9), [control, treatment])

    assert p_treatment >= 0.95
    assert p_control == pytest.approx(1.0 - p_treatment)


def test_probability_best_handles_more_than_two_variants():
    variants = [
        {"visitors": 500, "conversions": 50},
        {"visitors": 500, "conversions": 55},
        {"visitors": 500, "conversions": 90},
    ]
    probs = probability_best(make_rng(2), variants, draws=4_000)

    assert len(probs) == 3
    assert max(range(3), key=lambda i: probs[i]) == 2
    assert sum(probs) == pytest.approx(1.0)


def test_probability_best_requires_enough_draws():
    with pytest.raises(ValueError):
        probability_best(make_rng(1), [{"visitors": 1, "conversions": 0}], draws=100)


def test_posterior_sample_rejects_impossible_counts():
    with pytest.raises(ValueError):
        posterior_sample(make_rng(1), {"visitors": 3, "conversions": 4})


def test_posterior_sample_stays_in_unit_interval():
    rng = make_rng(8)
    for counts in ({"visitors": 0, "conversions": 0}, {"visitors": 1000, "conversions": 1000}):
        for _ in range(200):
            assert 0.0 <= posterior_sample(rng, counts) <= 1.0


def test_compute_conversion_stats_basic():
    df = variants_frame([
        {"name": "control", "is_control": True, "visitors": 2, "conversions": 1, "revenue": 20.0},
        {"name": "treatment", "is_control": False, "visitors": 2, "conversions": 2, "revenue": 50.0},
    ])

    stats = compute_conversion_stats(df)

    assert "control" in stats
    assert "treatment" in stats

    a = stats["control"]
    b = stats["treatment"]

    assert a["visitors"] == 2
    assert b["conversions"] == 2
    assert a["conversion_rate"] == pytest.approx(0.5, rel=1e-6)
    assert b["conversion_rate"] == pytest.approx(1.0, rel=1e-6)
    assert b["revenue_per_visitor"] == pytest.approx(25.0)

    # Only the treatment is compared against control
    assert "uplift" not in a
    assert b["uplift"] > 0
    assert 0 <= b["p_value"] <= 1


def test_compute_conversion_stats_zero_visitors():
    stats = compute_conversion_stats(variants_frame([
        {"name": "control", "is_control": True, "visitors": 0, "conversions": 0},
        {"name": "treatment", "is_control": False, "visitors": 0, "conversions": 0},
    ]))

    assert stats["control"]["conversion_rate"] == 0.0
    assert stats["treatment"]["p_value"] == 1.0


def _events(day_rates, pageviews_per_day=100, start=datetime(2026, 1, 1)):
    rows = []
    for offset, rate in enumerate(day_rates):
        day = start + timedelta(days=offset, hours=9)
        rows += [(day, "pageview")] * pageviews_per_day
        rows += [(day, "order")] * round(rate * pageviews_per_day)
        rows += [(day, "click")] * 3
    return pd.DataFrame(rows, columns=["occurred_at", "event_type"])


def test_daily_conversion_rates_groups_by_day():
    rates = daily_conversion_rates(_events([0.08, 0.12, 0.10]))

    assert list(rates.round(4)) == [0.08, 0.12, 0.10]


def test_daily_conversion_rates_empty():
    empty = pd.DataFrame(columns=["occurred_at", "event_type"])

    assert daily_conversion_rates(empty).empty


def test_rolling_baseline_needs_enough_days():
    assert rolling_baseline(pd.Series([0.1, 0.12, 0.09]), min_days=7) is None


def test_rolling_baseline_mean_and_std():
    rates = daily_conversion_rates(_events([0.08, 0.12] * 15))
    baseline = rolling_baseline(rates)

    assert baseline.days == 30
    assert baseline.mean == pytest.approx(0.10)
    assert baseline.std == pytest.approx(0.02, abs=0.001)


def test_anomaly_band_is_three_sigma_both_ways():
    baseline = Baseline(mean=0.10, std=0.02, days=30)

    assert is_anomalous(0.22, baseline)
    assert is_anomalous(0.02, baseline)
    assert not is_anomalous(0.12, baseline)
    assert z_score(0.22, baseline) == pytest.approx(6.0)


def test_flat_baseline_never_flags():
    baseline = Baseline(mean=0.10, std=0.0, days=30)

    assert z_score(0.5, baseline) is None
    assert not is_anomalous(0.5, baseline)


def test_is_futile_needs_enough_visitors_on_both_arms():
    same = {"visitors": 400, "conversions": 40}

    assert is_futile(same, same, min_visitors=400)
    assert not is_futile(same, {"visitors": 399, "conversions": 40}, min_visitors=400)


def test_is_futile_false_while_an_effect_is_visible():
    control = {"visitors": 1000, "conversions": 100}
    treatment = {"visitors": 1000, "conversions": 130}

    assert not is_futile(control, treatment, min_visitors=400)


def test_revenue_lift():
    control = {"visitors": 100, "conversions": 10, "revenue": 200.0}
    treatment = {"visitors": 100, "conversions": 12, "revenue": 300.0}

    assert revenue_lift(control, treatment) == pytest.approx(0.5)
    assert revenue_lift({"visitors": 100, "conversions": 0, "revenue": 0.0}, treatment) is None
