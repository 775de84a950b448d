import math
import random
from typing import Optional


def make_rng(seed: Optional[int] = None) -> random.Random:
    """
    Build an independent random source.
    Pass a seed in tests to get reproducible draws.
    """
    return random.Random(seed)


def sample_normal(rng: random.Random) -> float:
    """
    Standard normal draw via Box-Muller.
    """
    # random() is in [0, 1); flip it so log() never sees 0
    u1 = 1.0 - rng.random()
    u2 = rng.random()
    return math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)


def sample_gamma(rng: random.Random, shape: float) -> float:
    """
    Gamma(shape, 1) draw.

    shape >= 1 uses Marsaglia-Tsang squeeze/rejection.
    shape < 1 boosts to shape + 1 and scales by U^(1/shape).
    """
    if shape <= 0:
        raise ValueError(f"shape must be positive, got {shape}")

    if shape < 1:
        u = 1.0 - rng.random()
        return sample_gamma(rng, shape + 1.0) * u ** (1.0 / shape)

    d = shape - 1.0 / 3.0
    c = 1.0 / math.sqrt(9.0 * d)

    while True:
        x = sample_normal(rng)
        v = 1.0 + c * x
        if v <= 0:
            continue

        v = v * v * v
        u = 1.0 - rng.random()

        if u < 1.0 - 0.0331 * (x * x) * (x * x):
            return d * v
        if math.log(u) < 0.5 * x * x + d * (1.0 - v + math.log(v)):
            return d * v


def sample_beta(rng: random.Random, alpha: float, beta: float) -> float:
    """
    Beta(alpha, beta) draw as Ga / (Ga + Gb).
    """
    if alpha <= 0 or beta <= 0:
        raise ValueError(f"alpha and beta must be positive, got {alpha}, {beta}")

    ga = sample_gamma(rng, alpha)
    gb = sample_gamma(rng, beta)
    return ga / (ga + gb)
