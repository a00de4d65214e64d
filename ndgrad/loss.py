from ndgrad.ndarray import NDArray


class Loss:
    """
    Base class for losses.

    A loss is a pure function ``(label, prediction) -> NDArray`` returning a
    scalar (shape ``()``) array averaged over the batch.
    """
    def __call__(self, label: NDArray, prediction: NDArray) -> NDArray:
        return self.evaluate(label, prediction)

    def evaluate(self, label: NDArray, prediction: NDArray) -> NDArray:
        raise NotImplementedError

    def __repr__(self):
        return f"{self.__class__.__name__}()"


class L2Loss(Loss):
    """
    Mean of ``0.5 * (prediction - label)^2``.

    A label with the same number of elements as the prediction is reshaped to
    the prediction's shape before the difference is taken.
    """
    def evaluate(self, label: NDArray, prediction: NDArray) -> NDArray:
        if label.shape != prediction.shape and label.size == prediction.size:
            label = label.reshape(prediction.shape)
        diff = prediction - label
        return (diff * diff * 0.5).mean()


class SoftmaxCrossEntropyLoss(Loss):
    """
    Cross-entropy for multi-class classification.

    Expects unnormalized logits of shape ``(B, C)`` and class indices of shape
    ``(B,)`` or ``(B, 1)`` (stored as floats).

    Returns
    -------
    NDArray
        Mean over the batch of ``-log_softmax(prediction)[label]``.
    """
    def evaluate(self, label: NDArray, prediction: NDArray) -> NDArray:
        log_probs = prediction.log_softmax(axis=-1)                 # shape: (B, C)
        index = label.data.reshape(prediction.shape[:-1])           # shape: (B,)
        return -log_probs.pick(index, axis=-1).mean()
