from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
import math
import random

import pandas as pd

from .sampling import sample_beta

# Monte-Carlo draws for graduation decisions; allocation uses a single draw
DEFAULT_DRAWS = 10_000
MIN_DRAWS = 2_000


def _field(variant: Any, key: str, default: Any = None) -> Any:
    if isinstance(variant, dict):
        return variant.get(key, default)
    return getattr(variant, key, default)


def _counts(variant: Any) -> Tuple[int, int]:
    """
    Pull (visitors, conversions) out of an ORM Variant or a plain dict.
    """
    visitors = int(_field(variant, "visitors", 0) or 0)
    conversions = int(_field(variant, "conversions", 0) or 0)
    if conversions > visitors:
        raise ValueError(f"conversions ({conversions}) exceed visitors ({visitors})")
    return visitors, conversions


def posterior_sample(rng: random.Random, variant: Any) -> float:
    """
    One draw from the Beta(conversions + 1, failures + 1) posterior.
    With no data this is Beta(1, 1), i.e. uniform on [0, 1].
    """
    visitors, conversions = _counts(variant)
    return sample_beta(rng, conversions + 1, visitors - conversions + 1)


def probability_best(
    rng: random.Random,
    variants: Sequence[Any],
    draws: int = DEFAULT_DRAWS,
) -> List[float]:
    """
    Monte-Carlo estimate of P(variant is best) for each variant.

    Each trial takes one posterior draw per variant and credits the
    variant with the highest draw. Returns win fractions in input order.
    """
    if draws < MIN_DRAWS:
        raise ValueError(f"draws must be at least {MIN_DRAWS}, got {draws}")
    if not variants:
        return []

    params = []
    for v in variants:
        visitors, conversions = _counts(v)
        params.append((conversions + 1, visitors - conversions + 1))

    wins = [0] * len(params)
    for _ in range(draws):
        best_idx = 0
        best_sample = -1.0
        for idx, (a, b) in enumerate(params):
            sample = sample_beta(rng, a, b)
            if sample > best_sample:
                best_sample = sample
                best_idx = idx
        wins[best_idx] += 1

    return [w / draws for w in wins]


def _normal_cdf(x: float) -> float:
    """
    Cumulative distribution function for a standard normal variable.
    Uses the error function from the math module (no external deps).
    """
    return 0.5 * (1 + math.erf(x / math.sqrt(2)))


def _z_test_proportions(
    conv_a: int,
    users_a: int,
    conv_b: int,
    users_b: int,
) -> float:
    """
    Two-proportion z-test for variant B vs variant A.
    Returns the p-value (two-sided).
    """
    if users_a == 0 or users_b == 0:
        return 1.0  # no users = cannot test

    p1 = conv_a / users_a
    p2 = conv_b / users_b
    p_pool = (conv_a + conv_b) / (users_a + users_b)

    # Standard error
    se = math.sqrt(p_pool * (1 - p_pool) * (1 / users_a + 1 / users_b))
    if se == 0:
        return 1.0

    z = (p2 - p1) / se

    # Two-sided p-value
    p_value = 2 * (1 - _normal_cdf(abs(z)))
    return p_value


def variants_frame(variants: Sequence[Any]) -> pd.DataFrame:
    """
    One row per variant: name, is_control, visitors, conversions, revenue.
    """
    rows = []
    for v in variants:
        visitors, conversions = _counts(v)
        is_control = bool(_field(v, "is_control", False))
        rows.append({
            "variant": _field(v, "name") or ("control" if is_control else "treatment"),
            "is_control": is_control,
            "visitors": visitors,
            "conversions": conversions,
            "revenue": float(_field(v, "revenue", 0.0) or 0.0),
        })
    return pd.DataFrame(rows, columns=["variant", "is_control", "visitors", "conversions", "revenue"])


def compute_conversion_stats(df: pd.DataFrame) -> Dict[str, Dict[str, Any]]:
    """
    Compute conversion stats for each variant.

    Returns a dict like:
    {
      "control":   {"visitors": 1000, "conversions": 120, "conversion_rate": 0.12,
                    "revenue": 2400.0, "revenue_per_visitor": 2.4},
      "treatment": {"visitors": 980, "conversions": 150, "conversion_rate": 0.153,
                    "revenue": 2900.0, "revenue_per_visitor": 2.96,
                    "uplift": 0.033, "p_value": 0.04},
    }
    """

    stats: Dict[str, Dict[str, Any]] = {}
    control_key: Optional[str] = None

    for _, row in df.iterrows():
        variant = str(row["variant"])
        visitors = int(row["visitors"])
        conversions = int(row["conversions"])
        revenue = float(row["revenue"])
        if visitors <= 0:
            conv_rate = 0.0
            rpv = 0.0
        else:
            conv_rate = conversions / visitors
            rpv = revenue / visitors

        stats[variant] = {
            "visitors": visitors,
            "conversions": conversions,
            "conversion_rate": conv_rate,
            "revenue": revenue,
            "revenue_per_visitor": rpv,
        }
        if bool(row["is_control"]):
            control_key = variant

    # Uplift and p-value for each treatment vs control
    if control_key is not None:
        a = stats[control_key]
        for name, b in stats.items():
            if name == control_key:
                continue
            b["uplift"] = b["conversion_rate"] - a["conversion_rate"]
            b["p_value"] = _z_test_proportions(
                conv_a=a["conversions"],
                users_a=a["visitors"],
                conv_b=b["conversions"],
                users_b=b["visitors"],
            )

    return stats


def is_futile(control: Any, treatment: Any, min_visitors: int, p_threshold: float = 0.5) -> bool:
    """
    Early stop for experiments that show no effect: both arms have at least
    min_visitors and the two-proportion test p-value is above p_threshold.
    """
    c_visitors, c_conversions = _counts(control)
    t_visitors, t_conversions = _counts(treatment)
    if c_visitors < min_visitors or t_visitors < min_visitors:
        return False
    p_value = _z_test_proportions(c_conversions, c_visitors, t_conversions, t_visitors)
    return p_value > p_threshold


def revenue_per_visitor(variant: Any) -> float:
    visitors, _ = _counts(variant)
    if visitors <= 0:
        return 0.0
    return float(_field(variant, "revenue", 0.0) or 0.0) / visitors


def revenue_lift(control: Any, treatment: Any) -> Optional[float]:
    """Relative change in revenue per visitor, treatment vs control. None without control revenue."""
    base = revenue_per_visitor(control)
    if base <= 0:
        return None
    return (revenue_per_visitor(treatment) - base) / base


@dataclass
class Baseline:
    """Mean/stddev of daily site conversion rates over the lookback window."""
    mean: float
    std: float
    days: int


def daily_conversion_rates(events: pd.DataFrame) -> pd.Series:
    """
    Daily orders / pageviews from an events frame.

    Expected columns:
    - occurred_at (datetime-like)
    - event_type ("pageview", "order", ...)

    Days without pageviews are dropped.
    """
    if events.empty:
        return pd.Series(dtype=float, name="conversion_rate")

    df = events.copy()
    df["day"] = pd.to_datetime(df["occurred_at"]).dt.floor("D")
    counts = (
        df.groupby(["day", "event_type"])
        .size()
        .unstack(fill_value=0)
        .reindex(columns=["pageview", "order"], fill_value=0)
    )
    counts = counts[counts["pageview"] > 0]
    rates = counts["order"] / counts["pageview"]
    return rates.rename("conversion_rate")


def rolling_baseline(rates: pd.Series, min_days: int = 7) -> Optional[Baseline]:
    """
    Baseline from daily rates, or None when there are too few days to trust.
    """
    rates = rates.dropna()
    if len(rates) < max(min_days, 2):
        return None
    return Baseline(mean=float(rates.mean()), std=float(rates.std()), days=int(len(rates)))


def z_score(observed: float, baseline: Baseline) -> Optional[float]:
    if baseline.std <= 0:
        return None
    return (observed - baseline.mean) / baseline.std


def is_anomalous(observed: float, baseline: Baseline, sigmas: float = 3.0) -> bool:
    """
    True when observed deviates from the baseline mean by more than
    `sigmas` standard deviations, in either direction.
    A flat baseline (std == 0) never flags.
    """
    z = z_score(observed, baseline)
    return z is not None and abs(z) > sigmas
