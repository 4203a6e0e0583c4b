import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Union

import yaml

from kernel_ep import regression

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(__file__), "operator_default.yaml")


def load_yaml_params(filename: str) -> Dict[str, Any]:
    """
    Load parameters from a YAML file.

    Args:
        filename: Path to the YAML file.

    Returns:
        A dictionary containing the parameters. An empty file gives an empty dict.
    """
    with open(filename, "r") as f:
        params = yaml.load(f.read(), Loader=yaml.SafeLoader)
    return params or {}


def _section(params: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = params.get(name, {})
    if section is None:
        return {}
    if not isinstance(section, dict):
        logging.warning(
            f"YAML '{name}' format is invalid (type: {type(section)}). "
            "Using all default values."
        )
        return {}
    return section


@dataclass
class OperatorConfig:
    """Settings of an online message operator and its regressors."""

    codec: str = "gaussian"
    record: bool = True
    record_oracle_when_certain: bool = False
    projection_index: Optional[int] = None
    online_batch_trigger: int = regression.DEFAULT_ONLINE_BATCH_TRIGGER
    uncertainty_threshold: Union[float, List[float]] = regression.DEFAULT_UNCERTAINTY_THRESHOLD
    noise_variance: float = regression.DEFAULT_NOISE_VARIANCE
    prior_variance: float = regression.DEFAULT_PRIOR_VARIANCE
    feature_map_kind: str = "mean_variance"
    num_features_options: List[int] = field(
        default_factory=lambda: list(regression.DEFAULT_NUM_FEATURES_OPTIONS)
    )
    median_factors: List[float] = field(
        default_factory=lambda: list(regression.DEFAULT_MEDIAN_FACTORS)
    )
    inner_num_features: int = regression.DEFAULT_INNER_NUM_FEATURES
    seed: Optional[int] = None

    # YAML section and key of every field.
    _LAYOUT = {
        "codec": ("operator", "codec"),
        "record": ("operator", "record"),
        "record_oracle_when_certain": ("operator", "record_oracle_when_certain"),
        "projection_index": ("operator", "projection_index"),
        "online_batch_trigger": ("regression", "online_batch_trigger"),
        "uncertainty_threshold": ("regression", "uncertainty_threshold"),
        "noise_variance": ("regression", "noise_variance"),
        "prior_variance": ("regression", "prior_variance"),
        "feature_map_kind": ("features", "kind"),
        "num_features_options": ("features", "num_features_options"),
        "median_factors": ("features", "median_factors"),
        "inner_num_features": ("features", "inner_num_features"),
        "seed": ("features", "seed"),
    }

    def __post_init__(self):
        if self.online_batch_trigger <= 0:
            raise ValueError("online_batch_trigger must be positive.")
        if self.noise_variance <= 0 or self.prior_variance <= 0:
            raise ValueError("noise_variance and prior_variance must be positive.")
        if len(self.num_features_options) == 0 or len(self.median_factors) == 0:
            raise ValueError("num_features_options and median_factors cannot be empty.")

    @classmethod
    def from_dict(cls, params: Optional[Dict[str, Any]]) -> "OperatorConfig":
        """Builds a config from nested YAML sections, using defaults for missing keys."""
        params = params or {}
        if not isinstance(params, dict):
            logging.warning(
                f"Operator config format is invalid (type: {type(params)}). "
                "Using all default values."
            )
            params = {}

        defaults = cls()
        values = {}
        missing = []
        for f in fields(cls):
            section, key = cls._LAYOUT[f.name]
            section_params = _section(params, section)
            if key in section_params:
                values[f.name] = section_params[key]
            else:
                values[f.name] = getattr(defaults, f.name)
                missing.append(f"{section}.{key}")

        if len(missing) == len(cls._LAYOUT):
            logging.warning("No operator parameters in YAML. Using all default values.")
        elif missing:
            logging.info(f"Using defaults for missing operator parameters: {missing}")

        return cls(
            codec=str(values["codec"]),
            record=bool(values["record"]),
            record_oracle_when_certain=bool(values["record_oracle_when_certain"]),
            projection_index=(
                None if values["projection_index"] is None else int(values["projection_index"])
            ),
            online_batch_trigger=int(values["online_batch_trigger"]),
            uncertainty_threshold=values["uncertainty_threshold"],
            noise_variance=float(values["noise_variance"]),
            prior_variance=float(values["prior_variance"]),
            feature_map_kind=str(values["feature_map_kind"]),
            num_features_options=[int(n) for n in values["num_features_options"]],
            median_factors=[float(m) for m in values["median_factors"]],
            inner_num_features=int(values["inner_num_features"]),
            seed=None if values["seed"] is None else int(values["seed"]),
        )

    @classmethod
    def from_yaml(cls, filename: str = DEFAULT_CONFIG_PATH) -> "OperatorConfig":
        logging.info(f"Loading operator parameters from {filename}")
        return cls.from_dict(load_yaml_params(filename))

    def thresholds(self, num_outputs: int) -> List[float]:
        """Per-output uncertainty thresholds. A scalar applies to every output."""
        if isinstance(self.uncertainty_threshold, (list, tuple)):
            if len(self.uncertainty_threshold) != num_outputs:
                raise ValueError(
                    f"Expected {num_outputs} uncertainty thresholds, "
                    f"got {len(self.uncertainty_threshold)}"
                )
            return [float(t) for t in self.uncertainty_threshold]
        return [float(self.uncertainty_threshold)] * num_outputs
