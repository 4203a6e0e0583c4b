"""Shared helpers: a linear feature map and random Gaussian input tuples."""

from __future__ import annotations

import numpy as np
import pytest

from kernel_ep.distributions import Gaussian


class MeanFeatureMap:
    """Uses the concatenated input means as features."""

    kind = "mean"

    def __init__(self, num_inputs: int) -> None:
        self.num_features = num_inputs

    def gen_features(self, msgs) -> np.ndarray:
        if len(msgs) != self.num_features:
            raise ValueError("wrong number of inputs")
        return np.concatenate([np.atleast_1d(m.mean_vector()) for m in msgs])

    def to_dict(self) -> dict:
        return {"kind": self.kind, "num_inputs": self.num_features}


def random_gaussian_tuples(rng: np.random.Generator, n: int, num_inputs: int = 3) -> list:
    return [
        tuple(
            Gaussian(float(rng.uniform(-2, 2)), float(rng.uniform(0.5, 2.0)))
            for _ in range(num_inputs)
        )
        for _ in range(n)
    ]


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def mean_map3() -> MeanFeatureMap:
    return MeanFeatureMap(3)
