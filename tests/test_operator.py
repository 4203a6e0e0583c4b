"""Consultation policy of the online message operator, with a fake oracle."""

from __future__ import annotations

import logging

import numpy as np
import pytest

from kernel_ep.codec import get_codec
from kernel_ep.config import OperatorConfig
from kernel_ep.distributions import Gaussian
from kernel_ep.errors import NotReadyError
from kernel_ep.operator import OnlineMessageOperator
from kernel_ep.stack import OnlineStackBayesLinReg

from conftest import MeanFeatureMap


class FakeOracle:
    """Outgoing Gaussian whose mean and log variance are linear in the input means."""

    def __init__(self) -> None:
        self.calls = 0

    def __call__(self, msgs):
        self.calls += 1
        m1, m2 = msgs[0].get_mean(), msgs[1].get_mean()
        return Gaussian(0.5 * m1 - m2, float(np.exp(0.1 * m1 + 0.2 * m2)))


def input_pairs(n: int, seed: int = 0) -> list:
    rng = np.random.default_rng(seed)
    return [
        (Gaussian(float(rng.uniform(-2, 2)), 1.0), Gaussian(float(rng.uniform(-2, 2)), 0.5))
        for _ in range(n)
    ]


def make_operator(oracle, threshold: float = 100.0, trigger: int = 5, **kwargs):
    stack = OnlineStackBayesLinReg.create(
        2,
        feature_map=MeanFeatureMap(2),
        noise_variance=1e-6,
        online_batch_trigger=trigger,
        uncertainty_threshold=threshold,
    )
    return OnlineMessageOperator(oracle, get_codec("gaussian_logvar"), stack, **kwargs)


# ── consultation ─────────────────────────────────────────────────────────────


def test_consults_until_ready_then_predicts() -> None:
    oracle = FakeOracle()
    op = make_operator(oracle)
    pairs = input_pairs(8)
    for i, msgs in enumerate(pairs[:5]):
        assert op(msgs) == oracle(msgs)
        assert oracle.calls == 2 * (i + 1)
    assert op.is_online_ready()

    calls = oracle.calls
    out = op(pairs[6])
    assert oracle.calls == calls
    expected = FakeOracle()(pairs[6])
    assert out.mean == pytest.approx(expected.mean, abs=1e-3)
    assert out.variance == pytest.approx(expected.variance, rel=1e-3)
    assert op.num_calls == 6 and op.num_consults == 5


def test_uncertain_calls_consult_and_learn() -> None:
    oracle = FakeOracle()
    op = make_operator(oracle, threshold=-100.0)
    pairs = input_pairs(7)
    for msgs in pairs:
        op(msgs)
    assert oracle.calls == 7
    assert op.num_consults == 7
    # two online updates after the bootstrap lower the uncertainty at the last input
    assert np.all(op.estimate_uncertainty(pairs[-1]) < np.log(1e-3))


def test_improper_oracle_output_returns_fallback_without_update(caplog) -> None:
    op = make_operator(lambda msgs: Gaussian(0.0, -1.0))
    with caplog.at_level(logging.WARNING):
        out = op(input_pairs(1)[0])
    assert out == Gaussian(0.0, 1e5)
    assert "improper" in caplog.text
    assert all(len(reg.buffer_targets) == 0 for reg in op.stack.regressors)


def test_point_mass_oracle_output_is_widened_without_update() -> None:
    op = make_operator(lambda msgs: Gaussian(1.5, 0.0))
    out = op(input_pairs(1)[0])
    assert out == Gaussian(1.5, 1e-3)
    assert all(len(reg.buffer_targets) == 0 for reg in op.stack.regressors)


def test_non_finite_inputs_are_answered_without_learning(caplog) -> None:
    oracle = FakeOracle()
    op = make_operator(oracle, trigger=4)
    pairs = input_pairs(6)
    pairs[1] = (Gaussian.uniform(), Gaussian(0.0, 1.0))

    op(pairs[0])
    with caplog.at_level(logging.WARNING):
        out = op(pairs[1])
    assert out == FakeOracle()(pairs[1])
    assert "non-finite" in caplog.text
    assert all(len(reg.buffer_targets) == 1 for reg in op.stack.regressors)

    for msgs in pairs[2:5]:
        op(msgs)
    assert op.is_online_ready()
    assert all(reg.buffer_targets == [] for reg in op.stack.regressors)
    calls = oracle.calls
    op(pairs[5])
    assert oracle.calls == calls
    assert op.records.consulted == [True] * 5 + [False]


def test_oracle_errors_propagate() -> None:
    def failing(msgs):
        raise RuntimeError("sampler diverged")

    op = make_operator(failing)
    with pytest.raises(RuntimeError, match="sampler diverged"):
        op(input_pairs(1)[0])
    assert op.records is not None and len(op.records) == 0


def test_send_and_predict() -> None:
    op = make_operator(FakeOracle())
    pairs = input_pairs(6)
    with pytest.raises(NotReadyError):
        op.predict(pairs[0])
    for msgs in pairs[:5]:
        op.send(*msgs)
    assert op.predict(pairs[5]).mean == pytest.approx(FakeOracle()(pairs[5]).mean, abs=1e-3)


def test_codec_and_stack_sizes_must_agree() -> None:
    stack = OnlineStackBayesLinReg.create(3, feature_map=MeanFeatureMap(2))
    with pytest.raises(ValueError):
        OnlineMessageOperator(FakeOracle(), get_codec("gaussian"), stack)


def test_explicit_update_and_thresholds() -> None:
    op = make_operator(FakeOracle(), trigger=2)
    pairs = input_pairs(2)
    for msgs in pairs:
        op.update(FakeOracle()(msgs), msgs)
    assert op.is_online_ready()
    op.set_uncertainty_threshold([-1.0, -2.0])
    assert op.get_uncertainty_threshold() == [-1.0, -2.0]
    state = op.to_dict()
    assert state["codec"] == "gaussian_logvar"
    assert len(state["stack"]["regressors"]) == 2


# ── records ──────────────────────────────────────────────────────────────────


def test_records_hold_optional_entries() -> None:
    op = make_operator(FakeOracle())
    pairs = input_pairs(7)
    for msgs in pairs[:6]:
        op(msgs)
    records = op.records
    assert records.consulted == [True] * 5 + [False]
    assert records.uncertainty[:5] == [None] * 5
    assert records.uncertainty[5].shape == (2,)
    assert records.predicted[:5] == [None] * 5
    assert records.predicted[5] is not None
    assert records.oracle[5] is None
    assert records.consult_rate() == pytest.approx(5 / 6)

    arrays = records.to_arrays()
    assert arrays["uncertainty"].shape == (6, 2)
    assert np.all(np.isnan(arrays["uncertainty"][:5]))
    assert np.all(np.isnan(arrays["oracle"][5]))
    assert np.all(np.isfinite(arrays["oracle"][:5]))
    assert np.all(np.isfinite(arrays["predicted"][5]))


def test_oracle_recorded_when_certain_without_changing_result() -> None:
    oracle = FakeOracle()
    op = make_operator(oracle, record_oracle_when_certain=True)
    pairs = input_pairs(7)
    for msgs in pairs[:5]:
        op(msgs)
    calls = oracle.calls
    out = op(pairs[6])
    assert oracle.calls == calls + 1
    assert op.records.consulted[-1] is False
    assert op.records.oracle[-1] == FakeOracle()(pairs[6])
    assert out is op.records.predicted[-1]


def test_failing_diagnostic_oracle_keeps_certain_prediction(caplog) -> None:
    oracle = FakeOracle()
    op = make_operator(oracle, record_oracle_when_certain=True)
    pairs = input_pairs(7)
    for msgs in pairs[:5]:
        op(msgs)

    def failing(msgs):
        raise RuntimeError("sampler diverged")

    op.oracle = failing
    with caplog.at_level(logging.WARNING):
        out = op(pairs[6])
    assert out.mean == pytest.approx(FakeOracle()(pairs[6]).mean, abs=1e-3)
    assert op.records.consulted[-1] is False
    assert op.records.oracle[-1] is None
    assert "sampler diverged" in caplog.text


def test_recording_disabled() -> None:
    op = make_operator(FakeOracle(), record=False)
    op(input_pairs(1)[0])
    assert op.records is None


# ── projection ───────────────────────────────────────────────────────────────


def test_projection_learns_product_and_divides_back() -> None:
    context = Gaussian(1.0, 2.0)

    def oracle(msgs):
        return Gaussian(0.5 * msgs[1].get_mean() + 0.2, 0.8)

    op = make_operator(oracle, projection_index=0)
    rng = np.random.default_rng(3)
    pairs = [(context, Gaussian(float(rng.uniform(-2, 2)), 0.5)) for _ in range(7)]
    op(pairs[0])
    target = op.stack.regressors[0].buffer_targets[0]
    assert target == pytest.approx((oracle(pairs[0]) * context).mean)

    for msgs in pairs[1:5]:
        op(msgs)
    out = op(pairs[6])
    expected = oracle(pairs[6])
    assert out.mean == pytest.approx(expected.mean, abs=1e-2)
    assert out.variance == pytest.approx(expected.variance, rel=1e-2)


# ── configuration ────────────────────────────────────────────────────────────


def test_from_config_builds_default_stack() -> None:
    config = OperatorConfig.from_dict(
        {
            "operator": {"codec": "beta"},
            "regression": {"online_batch_trigger": 3, "uncertainty_threshold": [-5.0, -6.0]},
            "features": {"num_features_options": [10], "median_factors": [1.0], "seed": 1},
        }
    )
    op = OnlineMessageOperator.from_config(FakeOracle(), config)
    assert op.codec.name == "beta"
    assert op.get_uncertainty_threshold() == [-5.0, -6.0]
    assert all(reg.online_batch_trigger == 3 for reg in op.stack.regressors)
    assert all(reg.feature_map is None for reg in op.stack.regressors)
