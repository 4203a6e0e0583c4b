import logging
import warnings
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from numpy.linalg import cholesky, LinAlgError
from scipy.linalg import cho_factor, cho_solve

from kernel_ep.errors import ComputationError, NotReadyError
from kernel_ep.features import feature_map_from_dict, gen_candidates, has_finite_summaries

DEFAULT_UNCERTAINTY_THRESHOLD = -8.5
DEFAULT_NOISE_VARIANCE = 1e-4
DEFAULT_PRIOR_VARIANCE = 1.0
DEFAULT_ONLINE_BATCH_TRIGGER = 20
DEFAULT_NUM_FEATURES_OPTIONS = (300,)
DEFAULT_MEDIAN_FACTORS = (0.25, 0.5, 1.0, 2.0, 4.0)
DEFAULT_INNER_NUM_FEATURES = 300

# Floor for the predictive variance before taking its log.
MIN_PREDICTIVE_VARIANCE = np.finfo(float).tiny


# ##############################################################################
# Helper Utility Functions
# ##############################################################################


def stabilize_matrix(matrix: np.ndarray) -> np.ndarray:
    """Ensures a matrix is symmetric by averaging it with its transpose."""
    return (matrix + matrix.T) / 2.0


def spd_inverse(matrix: np.ndarray, jitter: float = 1e-10) -> np.ndarray:
    """
    Inverse of a symmetric positive definite matrix through its Cholesky factor.

    Jitter is added to the diagonal (with a RuntimeWarning) when the factor
    does not exist.
    """
    identity = np.eye(matrix.shape[0])
    matrix = stabilize_matrix(matrix)
    try:
        return stabilize_matrix(cho_solve((cholesky(matrix), True), identity))
    except LinAlgError:
        warnings.warn(
            f"Matrix is not positive definite; adding jitter {jitter:.1e} to the diagonal.",
            RuntimeWarning,
        )
        scale = max(float(np.mean(np.abs(np.diag(matrix)))), 1.0)
        L = cholesky(matrix + jitter * scale * identity)
        return stabilize_matrix(cho_solve((L, True), identity))


def log_marginal_likelihood(
    X: np.ndarray,
    y: np.ndarray,
    noise_variance: float,
    prior_variance: float,
) -> float:
    """
    Log evidence of the targets under the Bayesian linear model.

    Args:
        X: Feature matrix of shape (num_features, n), one column per sample.
        y: Targets of shape (n,).
        noise_variance: Observation noise variance ($sigma^2$).
        prior_variance: Prior variance of each weight ($tau^2$).

    Returns:
        $log N(y | 0, tau^2 X^T X + sigma^2 I)$.
    """
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float).flatten()
    if X.shape[1] != y.shape[0]:
        raise ValueError(
            f"X has {X.shape[1]} samples but y has {y.shape[0]} targets."
        )
    n = y.shape[0]
    K = prior_variance * (X.T @ X) + noise_variance * np.eye(n)
    try:
        c_and_lower = cho_factor(K, lower=True)
    except LinAlgError:
        warnings.warn(
            "Evidence covariance is not positive definite; adding jitter.",
            RuntimeWarning,
        )
        c_and_lower = cho_factor(K + 1e-8 * np.eye(n), lower=True)
    alpha = cho_solve(c_and_lower, y)
    log_det = 2.0 * np.sum(np.log(np.diag(c_and_lower[0])))
    return float(-0.5 * (y @ alpha + log_det + n * np.log(2 * np.pi)))


def select_feature_map(
    candidates: Sequence[Any],
    msgs_list: Sequence[Sequence[Any]],
    targets: Sequence[float],
    noise_variance: float,
    prior_variance: float,
) -> Tuple[Any, List[float]]:
    """
    Picks the candidate feature map with the highest log marginal likelihood.

    Ties go to the earliest candidate.

    Returns:
        The chosen map and the log marginal likelihood of every candidate.
    """
    if len(candidates) == 0:
        raise ValueError("Need at least one candidate feature map.")
    scores = []
    for fm in candidates:
        X = np.column_stack([fm.gen_features(msgs) for msgs in msgs_list])
        scores.append(log_marginal_likelihood(X, targets, noise_variance, prior_variance))
    best = int(np.argmax(scores))
    return candidates[best], scores


# ##############################################################################
# Online Bayesian linear regression
# ##############################################################################


class BayesLinReg:
    """
    Online Bayesian linear regression on random features, for one output.

    The regressor collects ``(msgs, target)`` pairs until ``online_batch_trigger``
    of them are available. It then chooses a feature map (unless one was given),
    solves the batch posterior and switches to Sherman-Morrison rank-1 updates.
    Once trained it never returns to collecting.

    Instances are mutable and must have a single writer.
    """

    def __init__(
        self,
        feature_map: Optional[Any] = None,
        noise_variance: float = DEFAULT_NOISE_VARIANCE,
        prior_variance: float = DEFAULT_PRIOR_VARIANCE,
        uncertainty_threshold: Optional[float] = None,
        online_batch_trigger: int = DEFAULT_ONLINE_BATCH_TRIGGER,
        feature_map_kind: str = "mean_variance",
        num_features_options: Sequence[int] = DEFAULT_NUM_FEATURES_OPTIONS,
        median_factors: Sequence[float] = DEFAULT_MEDIAN_FACTORS,
        inner_num_features: int = DEFAULT_INNER_NUM_FEATURES,
        rng: Optional[np.random.Generator] = None,
    ):
        """
        Args:
            feature_map: A fixed feature map. When None, one is selected from
                generated candidates at the batch bootstrap.
            noise_variance: Observation noise variance used from the bootstrap on.
            prior_variance: Prior variance of each regression weight.
            uncertainty_threshold: Log predictive variance at or above which a
                prediction counts as uncertain. None means the default is set
                at the bootstrap.
            online_batch_trigger: Number of buffered samples that fires the
                batch bootstrap.
            feature_map_kind: "mean_variance" or "joint_embedding".
            num_features_options: Feature counts tried by candidate generation.
            median_factors: Median heuristic factors tried by candidate generation.
            inner_num_features: Inner features of a joint embedding map.
            rng: Random generator for candidate generation.
        """
        if noise_variance <= 0:
            raise ValueError("noise_variance must be positive.")
        if prior_variance <= 0:
            raise ValueError("prior_variance must be positive.")
        if online_batch_trigger <= 0:
            raise ValueError("online_batch_trigger must be positive.")

        self.feature_map = feature_map
        self.noise_variance: float = float(noise_variance)
        self.prior_variance: float = float(prior_variance)
        self.uncertainty_threshold: Optional[float] = uncertainty_threshold
        self.online_batch_trigger: int = int(online_batch_trigger)
        self.feature_map_kind = feature_map_kind
        self.num_features_options = tuple(num_features_options)
        self.median_factors = tuple(median_factors)
        self.inner_num_features = inner_num_features
        self.rng = rng if rng is not None else np.random.default_rng()

        # --- Initialize Model State ---
        self.ready: bool = False
        self.buffer_msgs: List[Sequence[Any]] = []
        self.buffer_targets: List[float] = []
        self.candidate_scores: Optional[List[float]] = None
        num_features = feature_map.num_features if feature_map is not None else 0
        self._reset_posterior(num_features)

    def _reset_posterior(self, num_features: int) -> None:
        self.posterior_mean: np.ndarray = np.zeros(num_features)
        self.posterior_cov: np.ndarray = self.prior_variance * np.eye(num_features)
        self.cross_correlation: np.ndarray = np.zeros(num_features)

    def is_online_ready(self) -> bool:
        return self.ready

    def set_online_batch_trigger(self, size: int) -> None:
        if size <= 0:
            raise ValueError("online_batch_trigger must be positive.")
        self.online_batch_trigger = int(size)

    def get_uncertainty_threshold(self) -> Optional[float]:
        return self.uncertainty_threshold

    def set_uncertainty_threshold(self, threshold: float) -> None:
        self.uncertainty_threshold = float(threshold)

    def gen_features(self, msgs: Sequence[Any]) -> np.ndarray:
        if self.feature_map is None:
            raise NotReadyError("No feature map has been chosen yet.")
        return self.feature_map.gen_features(msgs)

    def _check_features(self, features: np.ndarray) -> np.ndarray:
        features = np.asarray(features, dtype=float).flatten()
        if features.shape[0] != self.posterior_mean.shape[0]:
            raise ValueError(
                f"Expected {self.posterior_mean.shape[0]} features, got {features.shape[0]}"
            )
        return features

    def predict(self, features: np.ndarray) -> float:
        """Posterior mean prediction. Raises NotReadyError before the bootstrap."""
        if not self.ready:
            raise NotReadyError("Regressor is not trained yet.")
        features = self._check_features(features)
        return float(self.posterior_mean @ features)

    def estimate_uncertainty(self, features: np.ndarray) -> float:
        """
        Log predictive variance, $log(x^T C x + sigma^2)$.

        Args:
            features: Feature vector of the query.

        Returns:
            The log predictive variance.
        """
        if not self.ready:
            raise NotReadyError("Regressor is not trained yet.")
        features = self._check_features(features)
        pred_var = float(features @ self.posterior_cov @ features) + self.noise_variance
        log_var = np.log(max(pred_var, MIN_PREDICTIVE_VARIANCE))
        if not np.isfinite(log_var):
            raise ComputationError(f"Predictive variance is not finite: {pred_var}")
        return float(log_var)

    def is_uncertain(self, features: Optional[np.ndarray]) -> bool:
        if not self.ready:
            return True
        return self.estimate_uncertainty(features) >= self.uncertainty_threshold

    def fit(self, X: np.ndarray, y: np.ndarray) -> None:
        """
        Batch posterior on a precomputed feature matrix.

        Args:
            X: Feature matrix of shape (num_features, n), one column per sample.
            y: Targets of shape (n,).
        """
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float).flatten()
        if X.ndim != 2 or X.shape[1] != y.shape[0]:
            raise ValueError(
                f"X must have shape (num_features, {y.shape[0]}), got {X.shape}"
            )
        num_features = X.shape[0]
        precision = X @ X.T / self.noise_variance + np.eye(num_features) / self.prior_variance
        self.posterior_cov = spd_inverse(precision)
        self.cross_correlation = X @ y
        self.posterior_mean = self.posterior_cov @ self.cross_correlation / self.noise_variance
        self._check_posterior()

    def _bootstrap(self) -> None:
        """
        Batch solve on the buffered samples.

        On failure the buffer is discarded, the regressor keeps collecting with
        its original feature map and a ComputationError is raised.
        """
        fixed_map = self.feature_map
        try:
            self._solve_buffer()
        except (ValueError, LinAlgError, ComputationError) as err:
            logging.warning(
                f"Batch bootstrap on {len(self.buffer_targets)} samples failed: {err}. "
                "Discarding the buffer."
            )
            self.feature_map = fixed_map
            self.candidate_scores = None
            self._reset_posterior(fixed_map.num_features if fixed_map is not None else 0)
            self.buffer_msgs = []
            self.buffer_targets = []
            raise ComputationError(f"Batch bootstrap failed: {err}") from err

    def _solve_buffer(self) -> None:
        if self.feature_map is None:
            candidates = gen_candidates(
                self.feature_map_kind,
                self.buffer_msgs,
                self.num_features_options,
                self.median_factors,
                self.rng,
                inner_num_features=self.inner_num_features,
            )
            self.feature_map, self.candidate_scores = select_feature_map(
                candidates,
                self.buffer_msgs,
                self.buffer_targets,
                self.noise_variance,
                self.prior_variance,
            )
            logging.info(f"Selected feature map {self.feature_map}")

        X = np.column_stack([self.feature_map.gen_features(msgs) for msgs in self.buffer_msgs])
        self.fit(X, np.array(self.buffer_targets))
        if self.uncertainty_threshold is None:
            self.uncertainty_threshold = DEFAULT_UNCERTAINTY_THRESHOLD

        logging.info(
            f"Batch bootstrap on {len(self.buffer_targets)} samples done. "
            f"Uncertainty threshold: {self.uncertainty_threshold}"
        )
        self.buffer_msgs = []
        self.buffer_targets = []
        self.ready = True

    def update(self, target: float, msgs: Sequence[Any]) -> None:
        """
        Adds one sample. Buffers while collecting, updates the posterior once
        trained.
        """
        if not has_finite_summaries(msgs):
            raise ValueError("Input messages must have a finite mean and covariance.")
        if not np.isfinite(target):
            raise ValueError(f"Target must be finite, got {target}")
        if self.ready:
            self.update_features(self.gen_features(msgs), target)
            return
        self.buffer_msgs.append(msgs)
        self.buffer_targets.append(float(target))
        if len(self.buffer_targets) >= self.online_batch_trigger:
            self._bootstrap()

    def update_features(self, features: np.ndarray, target: float) -> None:
        """Sherman-Morrison rank-1 update on a precomputed feature vector."""
        if not self.ready:
            raise NotReadyError("Feature updates need a trained regressor.")
        x = self._check_features(features)
        if not (np.all(np.isfinite(x)) and np.isfinite(target)):
            raise ComputationError("Feature update with NaN or inf values.")
        self.cross_correlation = self.cross_correlation + x * float(target)
        covx = self.posterior_cov @ x
        denom = 1.0 + (x @ covx) / self.noise_variance
        self.posterior_cov = stabilize_matrix(
            self.posterior_cov - np.outer(covx, covx) / (self.noise_variance * denom)
        )
        self.posterior_mean = self.posterior_cov @ self.cross_correlation / self.noise_variance
        self._check_posterior()

    def _check_posterior(self) -> None:
        if not (
            np.all(np.isfinite(self.posterior_mean))
            and np.all(np.isfinite(self.posterior_cov))
        ):
            raise ComputationError("Posterior contains NaN or inf values.")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature_map": self.feature_map.to_dict() if self.feature_map is not None else None,
            "posterior_mean": self.posterior_mean.copy(),
            "posterior_cov": self.posterior_cov.copy(),
            "cross_correlation": self.cross_correlation.copy(),
            "noise_variance": self.noise_variance,
            "prior_variance": self.prior_variance,
            "uncertainty_threshold": self.uncertainty_threshold,
            "online_batch_trigger": self.online_batch_trigger,
            "ready": self.ready,
        }

    @classmethod
    def from_dict(cls, params: Dict[str, Any]) -> "BayesLinReg":
        fm_params = params.get("feature_map")
        model = cls(
            feature_map=feature_map_from_dict(fm_params) if fm_params is not None else None,
            noise_variance=params["noise_variance"],
            prior_variance=params.get("prior_variance", DEFAULT_PRIOR_VARIANCE),
            uncertainty_threshold=params.get("uncertainty_threshold"),
            online_batch_trigger=params.get("online_batch_trigger", DEFAULT_ONLINE_BATCH_TRIGGER),
        )
        model.posterior_mean = np.asarray(params["posterior_mean"], dtype=float)
        model.posterior_cov = np.asarray(params["posterior_cov"], dtype=float)
        model.cross_correlation = np.asarray(params["cross_correlation"], dtype=float)
        model.ready = bool(params.get("ready", True))
        if model.ready and model.uncertainty_threshold is None:
            model.uncertainty_threshold = DEFAULT_UNCERTAINTY_THRESHOLD
        return model
