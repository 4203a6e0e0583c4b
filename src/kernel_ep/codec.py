"""
Conversions between distributions and the sufficient-statistic vectors the
regressors learn.

A codec is a pair of free functions ``to_stat(dist) -> np.ndarray`` and
``from_stat(stat) -> dist`` registered under a name in ``CODECS``. Each codec
also names a wide ``fallback`` returned when an oracle produces an improper
message, and a ``widen`` function that turns a point mass into a proper
distribution.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict

import numpy as np

from kernel_ep.distributions import Beta, Gamma, Gaussian

MIN_VARIANCE = 1e-12
BETA_MEAN_CLAMP = 1e-3
BETA_INFEASIBLE_VARIANCE_FACTOR = 0.9
POINT_MASS_BETA_MARGIN = 1e-5
POINT_MASS_GAUSSIAN_VARIANCE = 1e-3
# exp(700) is still a finite double
MAX_LOG_PARAM = 700.0


def _as_stat(stat: Any, length: int = 2) -> np.ndarray:
    stat = np.asarray(stat, dtype=float).flatten()
    if stat.shape[0] != length:
        raise ValueError(f"Expected a statistic of length {length}, got {stat.shape[0]}")
    return stat


def _safe_exp(log_values: np.ndarray) -> np.ndarray:
    return np.exp(np.clip(log_values, -MAX_LOG_PARAM, MAX_LOG_PARAM))


# --- Gaussian ---


def gaussian_to_stat(dist: Gaussian) -> np.ndarray:
    m = dist.get_mean()
    return np.array([m, m * m + dist.get_variance()])


def gaussian_from_stat(stat) -> Gaussian:
    m, m2 = _as_stat(stat)
    return Gaussian.from_mean_and_variance(m, max(m2 - m * m, MIN_VARIANCE))


def gaussian_logvar_to_stat(dist: Gaussian) -> np.ndarray:
    return np.array([dist.get_mean(), np.log(dist.get_variance())])


def gaussian_logvar_from_stat(stat) -> Gaussian:
    m, log_var = _as_stat(stat)
    return Gaussian.from_mean_and_variance(m, float(_safe_exp(log_var)))


def widen_gaussian(dist: Gaussian) -> Gaussian:
    return Gaussian.from_mean_and_variance(dist.get_mean(), POINT_MASS_GAUSSIAN_VARIANCE)


# --- Beta ---


def beta_to_stat(dist: Beta) -> np.ndarray:
    m = dist.get_mean()
    return np.array([m, m * m + dist.get_variance()])


def beta_from_stat(stat) -> Beta:
    """
    Moment matching with the mean clamped to [1e-3, 1 - 1e-3]. A variance that
    is negative or not below m(1-m) is replaced with 0.9 m(1-m).
    """
    m, m2 = _as_stat(stat)
    m = float(np.clip(m, BETA_MEAN_CLAMP, 1 - BETA_MEAN_CLAMP))
    v = m2 - m * m
    upper = m * (1 - m)
    if v <= 0 or v >= upper:
        v = BETA_INFEASIBLE_VARIANCE_FACTOR * upper
    return Beta.from_mean_and_variance(m, v)


def beta_log_to_stat(dist: Beta) -> np.ndarray:
    return np.array([np.log(dist.alpha), np.log(dist.beta)])


def beta_log_from_stat(stat) -> Beta:
    a, b = _safe_exp(_as_stat(stat))
    return Beta(float(a), float(b))


def widen_beta(dist: Beta) -> Beta:
    if np.isfinite(dist.alpha) and np.isfinite(dist.beta):
        m = dist.get_mean()
    elif np.isinf(dist.alpha) and np.isinf(dist.beta):
        m = 0.5
    else:
        m = 1.0 if np.isinf(dist.alpha) else 0.0
    m = float(np.clip(m, POINT_MASS_BETA_MARGIN, 1 - POINT_MASS_BETA_MARGIN))
    v = m * (1 - m) - POINT_MASS_BETA_MARGIN
    if v <= 0:
        v = BETA_INFEASIBLE_VARIANCE_FACTOR * m * (1 - m)
    return Beta.from_mean_and_variance(m, v)


# --- Gamma ---


def gamma_log_to_stat(dist: Gamma) -> np.ndarray:
    return np.array([np.log(dist.shape), np.log(dist.rate)])


def gamma_log_from_stat(stat) -> Gamma:
    shape, rate = _safe_exp(_as_stat(stat))
    return Gamma(float(shape), float(rate))


def widen_gamma(dist: Gamma) -> Gamma:
    # A point mass has an infinite rate; keep the location and use unit variance.
    mean = dist.shape / dist.rate if np.isfinite(dist.rate) else 0.0
    mean = max(mean, 1e-5)
    return Gamma.from_mean_and_variance(mean, 1.0)


# --- Table ---


@dataclass(frozen=True)
class Codec:
    name: str
    to_stat: Callable[[Any], np.ndarray]
    from_stat: Callable[[Any], Any]
    fallback: Any
    widen: Callable[[Any], Any]
    stat_dim: int = 2


CODECS: Dict[str, Codec] = {
    "gaussian": Codec(
        "gaussian", gaussian_to_stat, gaussian_from_stat, Gaussian(0.0, 1e5), widen_gaussian
    ),
    "gaussian_logvar": Codec(
        "gaussian_logvar",
        gaussian_logvar_to_stat,
        gaussian_logvar_from_stat,
        Gaussian(0.0, 1e5),
        widen_gaussian,
    ),
    "beta": Codec("beta", beta_to_stat, beta_from_stat, Beta(1.0, 1.0), widen_beta),
    "beta_log": Codec(
        "beta_log", beta_log_to_stat, beta_log_from_stat, Beta(1.0, 1.0), widen_beta
    ),
    "gamma_log": Codec(
        "gamma_log", gamma_log_to_stat, gamma_log_from_stat, Gamma(1.0, 1e-5), widen_gamma
    ),
}


def get_codec(name: str) -> Codec:
    """Looks up a codec by name. Raises KeyError for unknown names."""
    if name not in CODECS:
        raise KeyError(f"Unknown codec '{name}'. Supported: {', '.join(CODECS)}")
    return CODECS[name]
