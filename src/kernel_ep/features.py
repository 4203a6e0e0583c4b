"""
Random Fourier feature maps on tuples of incoming messages.

Two maps are provided:

- **mean_variance**: stacks the (rescaled) means and covariances of all
  incoming messages into one Euclidean vector and approximates a Gaussian
  kernel on it (Rahimi & Recht, 2007).
- **joint_embedding**: stacks the incoming messages into one joint Gaussian,
  embeds it with random features of the expected product kernel and puts an
  outer Gaussian kernel on the embeddings.

Both maps are immutable once built. New maps are produced with
``gen_candidates``, which uses a median heuristic on observed inputs to pick
the kernel widths.
"""

from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from scipy.linalg import block_diag
from scipy.spatial.distance import pdist

from kernel_ep.distributions import VectorGaussian

# Floor for every heuristic width^2 so that a degenerate pool of identical
# inputs never produces a zero width.
MIN_WIDTH2 = 1e-8
# Maximum number of input tuples used by the median heuristic.
MEDIAN_SUBSAMPLES = 1500
# The expected product kernel needs one small matrix inverse per pair.
JOINT_MEDIAN_SUBSAMPLES = 300


# ##############################################################################
# Helper Utility Functions
# ##############################################################################


def random_subset(items: Sequence, size: int, rng: np.random.Generator) -> List:
    """Draws ``min(size, len(items))`` elements without replacement."""
    if size <= 0:
        raise ValueError("Require subset size > 0")
    if len(items) <= size:
        return list(items)
    indices = rng.choice(len(items), size=size, replace=False)
    return [items[i] for i in sorted(indices)]


def median_pairwise_sq_distance(points: np.ndarray) -> float:
    """Median of the squared Euclidean distances between distinct rows."""
    points = np.asarray(points, dtype=float)
    if points.ndim == 1:
        points = points.reshape(-1, 1)
    if points.shape[0] < 2:
        return 1.0
    return float(np.median(pdist(points, metric="sqeuclidean")))


def has_finite_summaries(msgs: Sequence[Any]) -> bool:
    """True if every message has a finite mean vector and covariance matrix."""
    return all(
        np.all(np.isfinite(np.asarray(m.mean_vector(), dtype=float)))
        and np.all(np.isfinite(np.asarray(m.covariance_matrix(), dtype=float)))
        for m in msgs
    )


def to_joint_gaussian(msgs: Sequence[Any]):
    """Stacks messages into one Gaussian with a block-diagonal covariance."""
    means = [np.atleast_1d(np.asarray(m.mean_vector(), dtype=float)) for m in msgs]
    covs = [np.atleast_2d(np.asarray(m.covariance_matrix(), dtype=float)) for m in msgs]
    return VectorGaussian(np.concatenate(means), block_diag(*covs))


def _check_factors(median_factors: Sequence[float]) -> None:
    for i, medf in enumerate(median_factors):
        if medf <= 0:
            raise ValueError(
                f"median factors must be strictly positive. Found i={i}, medf[i]={medf}"
            )


def _cos_features(arg: np.ndarray, num_features: int) -> np.ndarray:
    return np.sqrt(2.0 / num_features) * np.cos(arg)


# ##############################################################################
# Mean/variance random Fourier features
# ##############################################################################


class MeanVarianceFeatureMap:
    """
    Random Fourier features for a Gaussian kernel on stacked means and variances.

    Each incoming message contributes its mean divided by ``sqrt(mean_width2)``
    and its covariance divided by ``sqrt(var_width2)`` (flattened column-wise).
    All means come first, then all covariances. The stacked vector is
    standardized by ``sqrt(gauss_width2)`` before the cosine features.
    """

    kind = "mean_variance"

    def __init__(
        self,
        mean_width2s: Sequence[float],
        var_width2s: Sequence[float],
        gauss_width2: float,
        weight_matrix: np.ndarray,
        bias_vector: np.ndarray,
    ):
        """
        Args:
            mean_width2s: Squared widths for the mean of each incoming message.
            var_width2s: Squared widths for the covariance of each incoming message.
            gauss_width2: Squared width of the Gaussian kernel on the stacked vector.
            weight_matrix: Standard normal draws, shape (input_dim, num_features).
            bias_vector: Uniform draws on [0, 2*pi), shape (num_features,).
        """
        mean_width2s = np.asarray(mean_width2s, dtype=float).flatten()
        var_width2s = np.asarray(var_width2s, dtype=float).flatten()
        weight_matrix = np.array(weight_matrix, dtype=float)
        bias_vector = np.array(bias_vector, dtype=float).flatten()

        if mean_width2s.shape != var_width2s.shape:
            raise ValueError(
                "Params. for means and variances must have the same length."
            )
        if np.any(mean_width2s <= 0):
            raise ValueError(f"mean_width2s {mean_width2s} contains non-positive numbers.")
        if np.any(var_width2s <= 0):
            raise ValueError(f"var_width2s {var_width2s} contains non-positive numbers.")
        if gauss_width2 <= 0:
            raise ValueError("Gaussian width must be > 0")
        if weight_matrix.ndim != 2 or weight_matrix.size == 0:
            raise ValueError("weight_matrix must be a non-empty 2D array.")
        if bias_vector.shape[0] != weight_matrix.shape[1]:
            raise ValueError(
                f"bias_vector length {bias_vector.shape[0]} does not match "
                f"the {weight_matrix.shape[1]} columns of weight_matrix"
            )

        self.mean_width2s = mean_width2s
        self.var_width2s = var_width2s
        self.gauss_width2 = float(gauss_width2)
        self._weight_matrix = weight_matrix
        self._bias_vector = bias_vector
        self._weight_matrix.setflags(write=False)
        self._bias_vector.setflags(write=False)

    @property
    def weight_matrix(self) -> np.ndarray:
        return self._weight_matrix

    @property
    def bias_vector(self) -> np.ndarray:
        return self._bias_vector

    @property
    def bandwidth(self) -> float:
        return self.gauss_width2

    @property
    def input_dim(self) -> int:
        return self._weight_matrix.shape[0]

    @property
    def num_features(self) -> int:
        return self._weight_matrix.shape[1]

    @property
    def num_inputs(self) -> int:
        return self.mean_width2s.shape[0]

    @staticmethod
    def stack_mean_variance(
        msgs: Sequence[Any], mean_width2s: np.ndarray, var_width2s: np.ndarray
    ) -> np.ndarray:
        """Concatenates all rescaled means followed by all rescaled covariances."""
        if len(msgs) != len(mean_width2s):
            raise ValueError(
                f"Expected {len(mean_width2s)} incoming messages, got {len(msgs)}"
            )
        mean_stack = []
        var_stack = []
        for msg, mw2, vw2 in zip(msgs, mean_width2s, var_width2s):
            mean = np.atleast_1d(np.asarray(msg.mean_vector(), dtype=float))
            cov = np.atleast_2d(np.asarray(msg.covariance_matrix(), dtype=float))
            mean_stack.append(mean / np.sqrt(mw2))
            var_stack.append(cov.flatten(order="F") / np.sqrt(vw2))
        return np.concatenate(mean_stack + var_stack)

    def gen_features(self, msgs: Sequence[Any]) -> np.ndarray:
        mv = self.stack_mean_variance(msgs, self.mean_width2s, self.var_width2s)
        if mv.shape[0] != self.input_dim:
            raise ValueError(
                f"Total mean/variance dimension {mv.shape[0]} does not match "
                f"the input dimension {self.input_dim} of the weight matrix"
            )
        standardized = mv / np.sqrt(self.gauss_width2)
        return _cos_features(
            self._weight_matrix.T @ standardized + self._bias_vector,
            self.num_features,
        )

    @classmethod
    def gen_candidates(
        cls,
        msgs_list: Sequence[Sequence[Any]],
        num_features_options: Sequence[int],
        median_factors: Sequence[float],
        rng: np.random.Generator,
        subsamples: int = MEDIAN_SUBSAMPLES,
    ) -> List["MeanVarianceFeatureMap"]:
        """
        Generates one candidate map per (number of features, median factor) pair.

        Args:
            msgs_list: Observed input tuples.
            num_features_options: Numbers of random features to try.
            median_factors: Factors multiplied with the median heuristic.
            rng: Source of the random weights and of the subsample.
            subsamples: Maximum number of tuples used for the heuristic.

        Returns:
            A list of ``len(num_features_options) * len(median_factors)`` maps.
        """
        if len(msgs_list) == 0:
            raise ValueError("List of input tuples cannot be empty")
        _check_factors(median_factors)

        subset = random_subset(msgs_list, subsamples, rng)
        num_inputs = len(subset[0])
        mean_width2s = np.zeros(num_inputs)
        var_width2s = np.zeros(num_inputs)
        for i in range(num_inputs):
            means = np.array(
                [np.atleast_1d(msgs[i].mean_vector()).astype(float) for msgs in subset]
            )
            covs = np.array(
                [
                    np.atleast_2d(msgs[i].covariance_matrix()).flatten(order="F")
                    for msgs in subset
                ],
                dtype=float,
            )
            mean_width2s[i] = max(median_pairwise_sq_distance(means), MIN_WIDTH2)
            var_width2s[i] = max(median_pairwise_sq_distance(covs), MIN_WIDTH2)

        stacked = np.array(
            [cls.stack_mean_variance(msgs, mean_width2s, var_width2s) for msgs in subset]
        )
        median2 = max(median_pairwise_sq_distance(stacked), MIN_WIDTH2)
        input_dim = stacked.shape[1]

        candidates = []
        for num_features in num_features_options:
            for medf in median_factors:
                candidates.append(
                    cls(
                        mean_width2s,
                        var_width2s,
                        median2 * medf,
                        rng.standard_normal((input_dim, int(num_features))),
                        rng.uniform(0.0, 2.0 * np.pi, int(num_features)),
                    )
                )
        return candidates

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "mean_width2s": self.mean_width2s.copy(),
            "var_width2s": self.var_width2s.copy(),
            "gauss_width2": self.gauss_width2,
            "weight_matrix": self._weight_matrix.copy(),
            "bias_vector": self._bias_vector.copy(),
        }

    @classmethod
    def from_dict(cls, params: Dict[str, Any]) -> "MeanVarianceFeatureMap":
        return cls(
            params["mean_width2s"],
            params["var_width2s"],
            params["gauss_width2"],
            params["weight_matrix"],
            params["bias_vector"],
        )

    def __repr__(self) -> str:
        return (
            f"MeanVarianceFeatureMap(num_inputs={self.num_inputs}, "
            f"input_dim={self.input_dim}, num_features={self.num_features}, "
            f"gauss_width2={self.gauss_width2:.4g})"
        )


# ##############################################################################
# Joint mean-embedding random features
# ##############################################################################


def expected_product_kernel(
    mean_p: np.ndarray,
    cov_p: np.ndarray,
    mean_q: np.ndarray,
    cov_q: np.ndarray,
    embed_width2s: np.ndarray,
) -> float:
    """
    Expected product kernel between two Gaussians using a Gaussian embedding
    kernel with squared widths ``embed_width2s`` on the diagonal.
    k(p, q) = sqrt(det(D) det(S)) exp(-0.5 (m_p - m_q)^T D (m_p - m_q)),
    D = (V_p + V_q + S)^-1.
    """
    sigma = np.diag(embed_width2s)
    dpq = np.linalg.inv(cov_p + cov_q + sigma)
    diff = mean_p - mean_q
    z = np.sqrt(np.linalg.det(dpq) * np.prod(embed_width2s))
    return float(z * np.exp(-0.5 * diff @ dpq @ diff))


class JointEmbeddingFeatureMap:
    """
    Random features for a Gaussian kernel on mean embeddings of the joint
    Gaussian formed by all incoming messages.

    The inner map approximates the expected product kernel; the outer map
    approximates a Gaussian kernel of squared width ``outer_width2`` on the
    inner features.
    """

    kind = "joint_embedding"

    def __init__(
        self,
        embed_width2s: Sequence[float],
        outer_width2: float,
        inner_weights: np.ndarray,
        inner_bias: np.ndarray,
        outer_weights: np.ndarray,
        outer_bias: np.ndarray,
    ):
        embed_width2s = np.asarray(embed_width2s, dtype=float).flatten()
        inner_weights = np.array(inner_weights, dtype=float)
        inner_bias = np.array(inner_bias, dtype=float).flatten()
        outer_weights = np.array(outer_weights, dtype=float)
        outer_bias = np.array(outer_bias, dtype=float).flatten()

        if embed_width2s.size == 0:
            raise ValueError("embed width2s parameters cannot be empty.")
        if np.any(embed_width2s <= 0):
            raise ValueError("all embedding width^2's must be positive.")
        if outer_width2 <= 0:
            raise ValueError("require outer_width2 > 0")
        if inner_weights.shape != (embed_width2s.size, inner_bias.size):
            raise ValueError(
                f"inner_weights must have shape ({embed_width2s.size}, "
                f"{inner_bias.size}), got {inner_weights.shape}"
            )
        if outer_weights.shape != (inner_bias.size, outer_bias.size):
            raise ValueError(
                f"outer_weights must have shape ({inner_bias.size}, "
                f"{outer_bias.size}), got {outer_weights.shape}"
            )

        self.embed_width2s = embed_width2s
        self.outer_width2 = float(outer_width2)
        self.inner_weights = inner_weights
        self.inner_bias = inner_bias
        self.outer_weights = outer_weights
        self.outer_bias = outer_bias
        for arr in (inner_weights, inner_bias, outer_weights, outer_bias):
            arr.setflags(write=False)

    @property
    def weight_matrix(self) -> np.ndarray:
        return self.outer_weights

    @property
    def bias_vector(self) -> np.ndarray:
        return self.outer_bias

    @property
    def bandwidth(self) -> float:
        return self.outer_width2

    @property
    def input_dim(self) -> int:
        return self.inner_weights.shape[0]

    @property
    def inner_num_features(self) -> int:
        return self.inner_weights.shape[1]

    @property
    def num_features(self) -> int:
        return self.outer_weights.shape[1]

    def gen_inner_features(self, joint) -> np.ndarray:
        mean = joint.mean_vector()
        cov = joint.covariance_matrix()
        if mean.shape[0] != self.input_dim:
            raise ValueError(
                f"Joint dimension {mean.shape[0]} does not match the "
                f"{self.input_dim} embedding widths"
            )
        wtm = self.inner_weights.T @ mean
        wvw = np.sum((cov @ self.inner_weights) * self.inner_weights, axis=0)
        return _cos_features(wtm + self.inner_bias, self.inner_num_features) * np.exp(
            -0.5 * wvw
        )

    def gen_features(self, msgs: Sequence[Any]) -> np.ndarray:
        inner = self.gen_inner_features(to_joint_gaussian(msgs))
        return _cos_features(
            self.outer_weights.T @ inner + self.outer_bias, self.num_features
        )

    @staticmethod
    def median_pairwise_embedding(joints: Sequence[Any], embed_width2s: np.ndarray) -> float:
        """Median of |mu_p - mu_q|^2 over distinct pairs of mean embeddings."""
        n = len(joints)
        if n < 2:
            return 1.0
        means = [j.mean_vector() for j in joints]
        covs = [j.covariance_matrix() for j in joints]
        self_kernels = [
            expected_product_kernel(means[i], covs[i], means[i], covs[i], embed_width2s)
            for i in range(n)
        ]
        pair_dists = []
        for i in range(n):
            for j in range(i + 1, n):
                kpq = expected_product_kernel(
                    means[i], covs[i], means[j], covs[j], embed_width2s
                )
                pair_dists.append(max(self_kernels[i] - 2 * kpq + self_kernels[j], 0.0))
        return float(np.median(pair_dists))

    @classmethod
    def gen_candidates(
        cls,
        msgs_list: Sequence[Sequence[Any]],
        num_features_options: Sequence[int],
        median_factors: Sequence[float],
        rng: np.random.Generator,
        inner_num_features: int = 300,
        subsamples: int = JOINT_MEDIAN_SUBSAMPLES,
    ) -> List["JointEmbeddingFeatureMap"]:
        """
        Generates candidates from the median of squared mean-embedding distances.

        The embedding widths are the average diagonal covariance of the joint
        Gaussians. ``num_features_options`` sets the number of outer features.
        """
        if len(msgs_list) == 0:
            raise ValueError("List of input tuples cannot be empty")
        if inner_num_features <= 0:
            raise ValueError("inner_num_features must be positive.")
        _check_factors(median_factors)

        joints = [to_joint_gaussian(msgs) for msgs in random_subset(msgs_list, subsamples, rng)]
        avg_diag = np.mean([np.diag(j.covariance_matrix()) for j in joints], axis=0)
        embed_width2s = np.maximum(avg_diag, MIN_WIDTH2)
        median2 = max(cls.median_pairwise_embedding(joints, embed_width2s), MIN_WIDTH2)
        dim = embed_width2s.size

        candidates = []
        for num_features in num_features_options:
            for medf in median_factors:
                width2 = median2 * medf
                inner_weights = rng.standard_normal((dim, inner_num_features)) / np.sqrt(
                    embed_width2s
                ).reshape(-1, 1)
                inner_bias = rng.uniform(0.0, 2.0 * np.pi, inner_num_features)
                outer_weights = rng.standard_normal(
                    (inner_num_features, int(num_features))
                ) / np.sqrt(width2)
                outer_bias = rng.uniform(0.0, 2.0 * np.pi, int(num_features))
                candidates.append(
                    cls(
                        embed_width2s,
                        width2,
                        inner_weights,
                        inner_bias,
                        outer_weights,
                        outer_bias,
                    )
                )
        return candidates

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "embed_width2s": self.embed_width2s.copy(),
            "outer_width2": self.outer_width2,
            "inner_weights": self.inner_weights.copy(),
            "inner_bias": self.inner_bias.copy(),
            "weight_matrix": self.outer_weights.copy(),
            "bias_vector": self.outer_bias.copy(),
        }

    @classmethod
    def from_dict(cls, params: Dict[str, Any]) -> "JointEmbeddingFeatureMap":
        return cls(
            params["embed_width2s"],
            params["outer_width2"],
            params["inner_weights"],
            params["inner_bias"],
            params["weight_matrix"],
            params["bias_vector"],
        )

    def __repr__(self) -> str:
        return (
            f"JointEmbeddingFeatureMap(input_dim={self.input_dim}, "
            f"inner_num_features={self.inner_num_features}, "
            f"num_features={self.num_features}, outer_width2={self.outer_width2:.4g})"
        )


FEATURE_MAPS = {
    MeanVarianceFeatureMap.kind: MeanVarianceFeatureMap,
    JointEmbeddingFeatureMap.kind: JointEmbeddingFeatureMap,
}


def gen_candidates(
    kind: str,
    msgs_list: Sequence[Sequence[Any]],
    num_features_options: Sequence[int],
    median_factors: Sequence[float],
    rng: np.random.Generator,
    inner_num_features: Optional[int] = None,
) -> List:
    """Dispatches candidate generation to the feature map named by ``kind``."""
    if kind == MeanVarianceFeatureMap.kind:
        return MeanVarianceFeatureMap.gen_candidates(
            msgs_list, num_features_options, median_factors, rng
        )
    elif kind == JointEmbeddingFeatureMap.kind:
        return JointEmbeddingFeatureMap.gen_candidates(
            msgs_list,
            num_features_options,
            median_factors,
            rng,
            inner_num_features=inner_num_features or 300,
        )
    else:
        raise ValueError(
            f"Unknown feature map: {kind}. Supported: {', '.join(FEATURE_MAPS)}."
        )


def feature_map_from_dict(params: Dict[str, Any]):
    kind = params.get("kind")
    if kind not in FEATURE_MAPS:
        raise ValueError(f"Unknown feature map kind: {kind}")
    return FEATURE_MAPS[kind].from_dict(params)
