"""
Univariate message types exchanged with the online operators.

Each type exposes ``mean_vector()`` and ``covariance_matrix()`` so it can be
fed to a feature map as an input message, and supports the EP message
product (``*``) and ratio (``/``) through its natural parameters. A ratio can
produce an improper message; check ``is_proper()`` before using one.
"""

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class Gaussian:
    mean: float
    variance: float

    @classmethod
    def from_mean_and_variance(cls, mean: float, variance: float) -> "Gaussian":
        return cls(float(mean), float(variance))

    @classmethod
    def from_natural(cls, mean_times_precision: float, precision: float) -> "Gaussian":
        if precision == 0:
            return cls.uniform()
        return cls(mean_times_precision / precision, 1.0 / precision)

    @classmethod
    def uniform(cls) -> "Gaussian":
        return cls(0.0, np.inf)

    @property
    def precision(self) -> float:
        if self.variance == 0:
            return np.inf
        return 1.0 / self.variance

    @property
    def mean_times_precision(self) -> float:
        if np.isinf(self.variance):
            return 0.0
        return self.mean * self.precision

    def get_mean(self) -> float:
        return self.mean

    def get_variance(self) -> float:
        return self.variance

    def mean_vector(self) -> np.ndarray:
        return np.array([self.mean], dtype=float)

    def covariance_matrix(self) -> np.ndarray:
        return np.array([[self.variance]], dtype=float)

    def is_proper(self) -> bool:
        return bool(np.isfinite(self.mean) and 0 < self.variance < np.inf)

    def is_point_mass(self) -> bool:
        return self.variance == 0

    def __mul__(self, other: "Gaussian") -> "Gaussian":
        return Gaussian.from_natural(
            self.mean_times_precision + other.mean_times_precision,
            self.precision + other.precision,
        )

    def __truediv__(self, other: "Gaussian") -> "Gaussian":
        return Gaussian.from_natural(
            self.mean_times_precision - other.mean_times_precision,
            self.precision - other.precision,
        )


@dataclass(frozen=True)
class Beta:
    alpha: float
    beta: float

    @classmethod
    def from_mean_and_variance(cls, mean: float, variance: float) -> "Beta":
        """Method of moments. Requires 0 < variance < mean * (1 - mean)."""
        if not 0 < mean < 1:
            raise ValueError(f"Beta mean must lie in (0, 1), got {mean}")
        if not 0 < variance < mean * (1 - mean):
            raise ValueError(
                f"Beta variance must lie in (0, {mean * (1 - mean)}), got {variance}"
            )
        total = mean * (1 - mean) / variance - 1
        return cls(mean * total, (1 - mean) * total)

    @classmethod
    def uniform(cls) -> "Beta":
        return cls(1.0, 1.0)

    def get_mean(self) -> float:
        return self.alpha / (self.alpha + self.beta)

    def get_variance(self) -> float:
        total = self.alpha + self.beta
        return self.alpha * self.beta / (total**2 * (total + 1))

    def mean_vector(self) -> np.ndarray:
        return np.array([self.get_mean()], dtype=float)

    def covariance_matrix(self) -> np.ndarray:
        return np.array([[self.get_variance()]], dtype=float)

    def is_proper(self) -> bool:
        return bool(0 < self.alpha < np.inf and 0 < self.beta < np.inf)

    def is_point_mass(self) -> bool:
        return not np.isfinite(self.alpha + self.beta)

    def __mul__(self, other: "Beta") -> "Beta":
        return Beta(self.alpha + other.alpha - 1, self.beta + other.beta - 1)

    def __truediv__(self, other: "Beta") -> "Beta":
        return Beta(self.alpha - other.alpha + 1, self.beta - other.beta + 1)


@dataclass(frozen=True)
class Gamma:
    shape: float
    rate: float

    @classmethod
    def from_mean_and_variance(cls, mean: float, variance: float) -> "Gamma":
        if mean <= 0 or variance <= 0:
            raise ValueError(
                f"Gamma needs a positive mean and variance, got ({mean}, {variance})"
            )
        return cls(mean * mean / variance, mean / variance)

    @classmethod
    def uniform(cls) -> "Gamma":
        return cls(1.0, 0.0)

    def get_mean(self) -> float:
        return self.shape / self.rate

    def get_variance(self) -> float:
        return self.shape / self.rate**2

    def mean_vector(self) -> np.ndarray:
        return np.array([self.get_mean()], dtype=float)

    def covariance_matrix(self) -> np.ndarray:
        return np.array([[self.get_variance()]], dtype=float)

    def is_proper(self) -> bool:
        return bool(0 < self.shape < np.inf and 0 < self.rate < np.inf)

    def is_point_mass(self) -> bool:
        return not np.isfinite(self.rate)

    def __mul__(self, other: "Gamma") -> "Gamma":
        return Gamma(self.shape + other.shape - 1, self.rate + other.rate)

    def __truediv__(self, other: "Gamma") -> "Gamma":
        return Gamma(self.shape - other.shape + 1, self.rate - other.rate)


@dataclass(frozen=True)
class VectorGaussian:
    """Joint Gaussian over the stacked inputs of a feature map."""

    mean: np.ndarray
    covariance: np.ndarray

    def mean_vector(self) -> np.ndarray:
        return self.mean

    def covariance_matrix(self) -> np.ndarray:
        return self.covariance

    def get_dimension(self) -> int:
        return self.mean.shape[0]
