"""
Online message operator.

On every call the operator either predicts the outgoing message with its
regressor stack, or, when the stack is not ready or is uncertain, asks the
oracle, returns the oracle's answer and learns from it.
"""

import logging
from typing import Any, Callable, Dict, Optional, Sequence

import numpy as np

from kernel_ep.codec import Codec, get_codec
from kernel_ep.config import OperatorConfig
from kernel_ep.errors import ComputationError
from kernel_ep.features import has_finite_summaries
from kernel_ep.records import OperatorRecords
from kernel_ep.stack import OnlineStackBayesLinReg


class OnlineMessageOperator:
    """
    Uncertainty-gated surrogate of an expensive message computation.

    The oracle is any callable taking the tuple of incoming messages and
    returning the outgoing message. Its exceptions propagate to the caller,
    except in the diagnostic call made with ``record_oracle_when_certain``,
    whose failures are logged and recorded as None.

    Incoming messages with a non-finite mean or covariance are passed to the
    oracle but never learned from.

    With ``projection_index=k`` the operator learns the projection
    ``oracle(msgs) * msgs[k]`` and divides predictions by ``msgs[k]``.

    Instances are mutable and must have a single writer.
    """

    def __init__(
        self,
        oracle: Callable[[Sequence[Any]], Any],
        codec: Codec,
        stack: OnlineStackBayesLinReg,
        record: bool = True,
        record_oracle_when_certain: bool = False,
        projection_index: Optional[int] = None,
    ):
        if stack.num_outputs != codec.stat_dim:
            raise ValueError(
                f"Codec '{codec.name}' has {codec.stat_dim} statistics "
                f"but the stack has {stack.num_outputs} outputs"
            )
        self.oracle = oracle
        self.codec = codec
        self.stack = stack
        self.records: Optional[OperatorRecords] = OperatorRecords() if record else None
        self.record_oracle_when_certain = record_oracle_when_certain
        self.projection_index = projection_index
        self.num_calls: int = 0
        self.num_consults: int = 0

    @classmethod
    def from_config(
        cls, oracle: Callable[[Sequence[Any]], Any], config: OperatorConfig
    ) -> "OnlineMessageOperator":
        codec = get_codec(config.codec)
        rng = np.random.default_rng(config.seed)
        stack = OnlineStackBayesLinReg.create(
            codec.stat_dim,
            noise_variance=config.noise_variance,
            prior_variance=config.prior_variance,
            online_batch_trigger=config.online_batch_trigger,
            feature_map_kind=config.feature_map_kind,
            num_features_options=config.num_features_options,
            median_factors=config.median_factors,
            inner_num_features=config.inner_num_features,
            rng=rng,
        )
        stack.set_uncertainty_threshold(config.thresholds(codec.stat_dim))
        logging.info(
            f"Created online operator with codec '{codec.name}', "
            f"feature map '{config.feature_map_kind}', "
            f"batch trigger {config.online_batch_trigger}"
        )
        return cls(
            oracle,
            codec,
            stack,
            record=config.record,
            record_oracle_when_certain=config.record_oracle_when_certain,
            projection_index=config.projection_index,
        )

    @classmethod
    def load_params(
        cls, oracle: Callable[[Sequence[Any]], Any], filename: str
    ) -> "OnlineMessageOperator":
        """Builds an operator from a YAML file."""
        return cls.from_config(oracle, OperatorConfig.from_yaml(filename))

    # --- Encoding ---

    def _to_target(self, dist: Any, msgs: Sequence[Any]) -> np.ndarray:
        if self.projection_index is not None:
            dist = dist * msgs[self.projection_index]
        return self.codec.to_stat(dist)

    def _from_prediction(self, stat: np.ndarray, msgs: Sequence[Any]) -> Any:
        dist = self.codec.from_stat(stat)
        if self.projection_index is not None:
            dist = dist / msgs[self.projection_index]
        return dist

    def _is_certain(self, uncertainty: np.ndarray) -> bool:
        thresholds = np.array(self.stack.get_uncertainty_threshold(), dtype=float)
        return not bool(np.any(uncertainty >= thresholds))

    # --- Public interface ---

    def __call__(self, msgs: Sequence[Any]) -> Any:
        """
        Computes the outgoing message for a tuple of incoming messages.

        Args:
            msgs: Incoming messages, each exposing mean_vector() and
                covariance_matrix().

        Returns:
            The predicted message when the stack is certain, otherwise the
            oracle's message (or a widened/fallback message when the oracle
            output is degenerate).
        """
        msgs = tuple(msgs)
        self.num_calls += 1
        features = None
        uncertainty = None
        predicted = None
        learnable = has_finite_summaries(msgs)
        if not learnable:
            logging.warning(
                "Incoming messages have a non-finite mean or covariance. "
                "Consulting the oracle without learning."
            )

        if learnable and self.stack.is_online_ready():
            features = self.stack.gen_all_features(msgs)
            uncertainty = self.stack.estimate_uncertainty_from_features(features)
            if self._is_certain(uncertainty):
                predicted = self._from_prediction(
                    self.stack.predict_from_features(features), msgs
                )
                if predicted.is_proper():
                    oracle_out = None
                    if self.record_oracle_when_certain and self.records is not None:
                        oracle_out = self._diagnostic_oracle(msgs)
                    self._record(msgs, False, uncertainty, predicted, oracle_out)
                    return predicted
                logging.warning(
                    f"Certain prediction {predicted} is improper. Consulting the oracle."
                )

        self.num_consults += 1
        oracle_out = self.oracle(msgs)
        result = self._learn_from_oracle(oracle_out, msgs, features, learnable)
        self._record(msgs, True, uncertainty, predicted, oracle_out)
        return result

    def send(self, *msgs: Any) -> Any:
        return self(msgs)

    def _diagnostic_oracle(self, msgs: Sequence[Any]) -> Optional[Any]:
        """Oracle output recorded next to a certain prediction. Never affects the result."""
        try:
            return self.oracle(msgs)
        except Exception as err:
            logging.warning(f"Diagnostic oracle call failed: {err!r}. Recording None.")
            return None

    def _learn_from_oracle(
        self,
        oracle_out: Any,
        msgs: Sequence[Any],
        features: Optional[list],
        learnable: bool = True,
    ) -> Any:
        if oracle_out.is_point_mass():
            widened = self.codec.widen(oracle_out)
            logging.info(f"Oracle returned a point mass {oracle_out}. Returning {widened}.")
            return widened
        if not oracle_out.is_proper():
            logging.warning(
                f"Oracle returned an improper message {oracle_out}. "
                f"Returning {self.codec.fallback} without learning."
            )
            return self.codec.fallback

        if not learnable:
            return oracle_out
        target = self._to_target(oracle_out, msgs)
        if not np.all(np.isfinite(target)):
            logging.warning(f"Non-finite target {target} from {oracle_out}. Skipping update.")
            return oracle_out
        try:
            if features is not None:
                self.stack.update_from_features(target, features)
            else:
                self.stack.update(target, msgs)
        except ComputationError as err:
            logging.warning(f"Update from {oracle_out} failed: {err}. Returning the oracle message.")
        return oracle_out

    def _record(self, msgs, consulted, uncertainty, predicted, oracle_out) -> None:
        if self.records is not None:
            self.records.record(msgs, consulted, uncertainty, predicted, oracle_out)

    def predict(self, msgs: Sequence[Any]) -> Any:
        """Decoded prediction of the stack. Raises NotReadyError before training."""
        msgs = tuple(msgs)
        return self._from_prediction(self.stack.predict(msgs), msgs)

    def estimate_uncertainty(self, msgs: Sequence[Any]) -> np.ndarray:
        return self.stack.estimate_uncertainty(tuple(msgs))

    def is_online_ready(self) -> bool:
        return self.stack.is_online_ready()

    def update(self, target_distribution: Any, msgs: Sequence[Any]) -> None:
        msgs = tuple(msgs)
        self.stack.update(self._to_target(target_distribution, msgs), msgs)

    def get_uncertainty_threshold(self):
        return self.stack.get_uncertainty_threshold()

    def set_uncertainty_threshold(self, values: Sequence[float]) -> None:
        self.stack.set_uncertainty_threshold(values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "codec": self.codec.name,
            "projection_index": self.projection_index,
            "num_calls": self.num_calls,
            "num_consults": self.num_consults,
            "stack": self.stack.to_dict(),
        }
