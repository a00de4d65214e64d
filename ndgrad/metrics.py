import math
from typing import Sequence, Union

import numpy as np

from ndgrad.ndarray import NDArray

Arrays = Union[NDArray, Sequence[NDArray]]


def _as_list(arrays: Arrays) -> Sequence[NDArray]:
    return [arrays] if isinstance(arrays, NDArray) else list(arrays)


class Metric:
    """
    Stateful accumulator of a training/evaluation statistic.

    Call :meth:`update` with matching lists of labels and predictions (one
    pair per device slice), read the running value with :meth:`get_value` and
    start over with :meth:`reset`.
    """
    def __init__(self, name: str) -> None:
        self.name = name
        self.reset()

    def reset(self) -> None:
        self.total = 0.0
        self.count = 0

    def update(self, labels: Arrays, predictions: Arrays) -> None:
        raise NotImplementedError

    def get_value(self) -> float:
        """Running value, ``nan`` before the first update."""
        if self.count == 0:
            return math.nan
        return self.total / self.count

    def __repr__(self):
        return f"{self.__class__.__name__}({self.name}={self.get_value():.4f})"


class Accuracy(Metric):
    """Fraction of samples whose argmax over the last axis equals the label."""
    def __init__(self, name: str = "accuracy") -> None:
        super().__init__(name)

    def update(self, labels: Arrays, predictions: Arrays) -> None:
        for label, prediction in zip(_as_list(labels), _as_list(predictions)):
            pred = prediction.argmax(axis=-1).to_numpy()
            true = label.to_numpy().astype(np.int64).reshape(pred.shape)
            self.total += float((pred == true).sum())
            self.count += int(true.size)


class LossMetric(Metric):
    """
    Mean of the loss values passed as ``predictions``.

    Each loss array contributes its mean weighted by its number of elements;
    scalar losses count once.
    """
    def __init__(self, name: str = "loss") -> None:
        super().__init__(name)

    def update(self, labels: Arrays, predictions: Arrays) -> None:
        for loss in _as_list(predictions):
            values = loss.to_numpy()
            self.total += float(values.sum())
            self.count += int(values.size)
