from kernel_ep.codec import CODECS, Codec, get_codec
from kernel_ep.config import OperatorConfig, load_yaml_params
from kernel_ep.distributions import Beta, Gamma, Gaussian, VectorGaussian
from kernel_ep.errors import ComputationError, NotReadyError
from kernel_ep.features import (
    JointEmbeddingFeatureMap,
    MeanVarianceFeatureMap,
    gen_candidates,
)
from kernel_ep.operator import OnlineMessageOperator
from kernel_ep.records import OperatorRecords
from kernel_ep.regression import BayesLinReg, log_marginal_likelihood, select_feature_map
from kernel_ep.stack import OnlineStackBayesLinReg, Predictor, Updatable

__all__ = [
    "CODECS",
    "Codec",
    "get_codec",
    "OperatorConfig",
    "load_yaml_params",
    "Beta",
    "Gamma",
    "Gaussian",
    "VectorGaussian",
    "ComputationError",
    "NotReadyError",
    "JointEmbeddingFeatureMap",
    "MeanVarianceFeatureMap",
    "gen_candidates",
    "OnlineMessageOperator",
    "OperatorRecords",
    "BayesLinReg",
    "log_marginal_likelihood",
    "select_feature_map",
    "OnlineStackBayesLinReg",
    "Predictor",
    "Updatable",
]
