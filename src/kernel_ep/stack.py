"""
A stack of single-output regressors, one per sufficient-statistic component.
"""

from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from kernel_ep.errors import ComputationError
from kernel_ep.regression import BayesLinReg


class Predictor(Protocol):
    def predict(self, msgs: Sequence[Any]) -> np.ndarray: ...

    def estimate_uncertainty(self, msgs: Sequence[Any]) -> np.ndarray: ...


class Updatable(Protocol):
    def update(self, target: np.ndarray, msgs: Sequence[Any]) -> None: ...

    def is_online_ready(self) -> bool: ...


class OnlineStackBayesLinReg:
    """
    Maps input messages to a vector of N statistics with N independent
    ``BayesLinReg`` models.

    The stack is uncertain as soon as one component is uncertain; uncertainties
    are never averaged. Instances are mutable and must have a single writer.
    """

    def __init__(self, regressors: Sequence[BayesLinReg]):
        if len(regressors) == 0:
            raise ValueError("Need at least one regressor.")
        self.regressors: List[BayesLinReg] = list(regressors)

    @classmethod
    def create(cls, num_outputs: int, **regressor_kwargs) -> "OnlineStackBayesLinReg":
        """Builds ``num_outputs`` regressors sharing the same settings."""
        if num_outputs <= 0:
            raise ValueError("num_outputs must be positive.")
        return cls([BayesLinReg(**regressor_kwargs) for _ in range(num_outputs)])

    @property
    def num_outputs(self) -> int:
        return len(self.regressors)

    def _check_length(self, values: Sequence, name: str) -> None:
        if len(values) != self.num_outputs:
            raise ValueError(
                f"{name} has length {len(values)}, expected {self.num_outputs}"
            )

    def is_online_ready(self) -> bool:
        return all(reg.is_online_ready() for reg in self.regressors)

    def gen_all_features(self, msgs: Sequence[Any]) -> List[np.ndarray]:
        return [reg.gen_features(msgs) for reg in self.regressors]

    def predict_from_features(self, features: Sequence[np.ndarray]) -> np.ndarray:
        self._check_length(features, "features")
        return np.array(
            [reg.predict(x) for reg, x in zip(self.regressors, features)]
        )

    def predict(self, msgs: Sequence[Any]) -> np.ndarray:
        return self.predict_from_features(self.gen_all_features(msgs))

    def estimate_uncertainty_from_features(
        self, features: Sequence[np.ndarray]
    ) -> np.ndarray:
        self._check_length(features, "features")
        return np.array(
            [reg.estimate_uncertainty(x) for reg, x in zip(self.regressors, features)]
        )

    def estimate_uncertainty(self, msgs: Sequence[Any]) -> np.ndarray:
        return self.estimate_uncertainty_from_features(self.gen_all_features(msgs))

    def is_uncertain_from_features(self, features: Sequence[np.ndarray]) -> bool:
        self._check_length(features, "features")
        return any(
            reg.is_uncertain(x) for reg, x in zip(self.regressors, features)
        )

    def is_uncertain(self, msgs: Sequence[Any]) -> bool:
        if not self.is_online_ready():
            return True
        return self.is_uncertain_from_features(self.gen_all_features(msgs))

    def map_and_estimate(
        self, msgs: Sequence[Any]
    ) -> Tuple[np.ndarray, np.ndarray, bool]:
        """
        Prediction, per-dimension log predictive variance and the combined
        uncertainty decision, from a single feature generation.
        """
        features = self.gen_all_features(msgs)
        prediction = self.predict_from_features(features)
        uncertainty = self.estimate_uncertainty_from_features(features)
        uncertain = bool(
            np.any(uncertainty >= np.array(self.get_uncertainty_threshold(), dtype=float))
        )
        return prediction, uncertainty, uncertain

    def update(self, target: Sequence[float], msgs: Sequence[Any]) -> None:
        target = np.asarray(target, dtype=float).flatten()
        self._check_length(target, "target")
        # Every regressor sees the sample even if an earlier one fails.
        failure = None
        for reg, t in zip(self.regressors, target):
            try:
                reg.update(t, msgs)
            except ComputationError as err:
                failure = failure or err
        if failure is not None:
            raise failure

    def update_from_features(
        self, target: Sequence[float], features: Sequence[np.ndarray]
    ) -> None:
        target = np.asarray(target, dtype=float).flatten()
        self._check_length(target, "target")
        self._check_length(features, "features")
        for reg, t, x in zip(self.regressors, target, features):
            reg.update_features(x, t)

    def get_uncertainty_threshold(self) -> List[Optional[float]]:
        return [reg.get_uncertainty_threshold() for reg in self.regressors]

    def set_uncertainty_threshold(self, thresholds: Sequence[float]) -> None:
        self._check_length(thresholds, "thresholds")
        for reg, t in zip(self.regressors, thresholds):
            reg.set_uncertainty_threshold(t)

    def set_online_batch_trigger(self, size: int) -> None:
        for reg in self.regressors:
            reg.set_online_batch_trigger(size)

    def to_dict(self) -> Dict[str, Any]:
        return {"regressors": [reg.to_dict() for reg in self.regressors]}

    @classmethod
    def from_dict(cls, params: Dict[str, Any]) -> "OnlineStackBayesLinReg":
        return cls([BayesLinReg.from_dict(p) for p in params["regressors"]])
