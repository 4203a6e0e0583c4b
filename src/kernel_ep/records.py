from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np


@dataclass
class OperatorRecords:
    """
    Append-only log of operator calls.

    ``uncertainty`` is None while the stack is not ready, ``predicted`` is None
    when no prediction was made and ``oracle`` is None when the oracle was not
    called.
    """

    inputs: List[Sequence[Any]] = field(default_factory=list)
    consulted: List[bool] = field(default_factory=list)
    uncertainty: List[Optional[np.ndarray]] = field(default_factory=list)
    predicted: List[Optional[Any]] = field(default_factory=list)
    oracle: List[Optional[Any]] = field(default_factory=list)

    def record(
        self,
        msgs: Sequence[Any],
        consulted: bool,
        uncertainty: Optional[np.ndarray],
        predicted: Optional[Any],
        oracle: Optional[Any],
    ) -> None:
        self.inputs.append(tuple(msgs))
        self.consulted.append(bool(consulted))
        self.uncertainty.append(None if uncertainty is None else np.array(uncertainty))
        self.predicted.append(predicted)
        self.oracle.append(oracle)

    def __len__(self) -> int:
        return len(self.consulted)

    def consult_rate(self) -> float:
        if len(self) == 0:
            return 0.0
        return float(np.mean(self.consulted))

    def to_arrays(
        self, to_stat: Optional[Callable[[Any], np.ndarray]] = None
    ) -> Dict[str, np.ndarray]:
        """
        Exports the records as numpy arrays with NaN for absent values.

        Args:
            to_stat: Converts distributions to statistic vectors. When None,
                distributions are exported as [mean, variance].

        Returns:
            A dictionary with keys "consulted", "uncertainty", "predicted" and
            "oracle". The last three are 2D arrays, one row per call.
        """
        if to_stat is None:
            to_stat = _mean_variance
        return {
            "consulted": np.array(self.consulted, dtype=bool),
            "uncertainty": _rows_with_nan(self.uncertainty),
            "predicted": _rows_with_nan([None if d is None else to_stat(d) for d in self.predicted]),
            "oracle": _rows_with_nan([None if d is None else to_stat(d) for d in self.oracle]),
        }


def _mean_variance(dist: Any) -> np.ndarray:
    return np.array([dist.get_mean(), dist.get_variance()], dtype=float)


def _rows_with_nan(rows: List[Optional[np.ndarray]]) -> np.ndarray:
    width = max((np.size(r) for r in rows if r is not None), default=0)
    out = np.full((len(rows), width), np.nan)
    for i, r in enumerate(rows):
        if r is not None:
            out[i, :] = np.asarray(r, dtype=float).flatten()
    return out
