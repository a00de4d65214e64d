import logging
import math
from typing import Dict, List, Optional

from ndgrad.data import Dataset
from ndgrad.metrics import Accuracy, LossMetric
from ndgrad.trainer import Trainer

logger = logging.getLogger(__name__)


def _metric_value(trainer: Trainer, kind: type) -> float:
    for metric in trainer.metrics:
        if isinstance(metric, kind):
            return metric.get_value()
    return math.nan


def train_one_epoch(trainer: Trainer, dataset: Dataset) -> float:
    """
    Train for one pass over ``dataset``.

    Returns
    -------
    float
        Mean loss over the epoch (weighted by batch size).
    """
    total_loss = 0.
    total_samples = 0
    for i, batch in enumerate(trainer.iterate_dataset(dataset)):
        with batch:
            loss = trainer.train_batch(batch)
            total_loss += loss * batch.size
            total_samples += batch.size
        logger.debug("batch %d: loss %.6f", i, loss)
    return total_loss / max(1, total_samples)


def evaluate(trainer: Trainer, dataset: Dataset) -> Dict[str, float]:
    """
    Loss and accuracy over ``dataset`` without gradient recording.

    Returns
    -------
    dict
        ``{"loss": float, "accuracy": float}``.
    """
    loss_metric = LossMetric()
    accuracy = Accuracy()
    for batch in trainer.iterate_dataset(dataset):
        with batch:
            trainer.evaluate_batch(batch, [loss_metric, accuracy])
    return {"loss": loss_metric.get_value(), "accuracy": accuracy.get_value()}


def fit(
    trainer: Trainer,
    train_dataset: Dataset,
    num_epochs: int = 10,
    validate_dataset: Optional[Dataset] = None,
) -> Dict[str, List[float]]:
    """
    Train for several epochs with optional validation.

    The trainer's metrics are reset at the start of every epoch, so their
    values at the end of an epoch cover exactly that epoch.

    Parameters
    ----------
    trainer : Trainer
        Initialized trainer.
    train_dataset : Dataset
        Training data, batched per the trainer's data loading config.
    num_epochs : int, default=10
        Number of epochs.
    validate_dataset : Dataset, optional
        If given, evaluated after every epoch.

    Returns
    -------
    dict
        Per-epoch history with keys ``"train_loss"``, ``"train_acc"``,
        ``"val_loss"`` and ``"val_acc"`` (``nan`` where not applicable).

    Notes
    -----
    Logs one INFO line per epoch and one DEBUG line per batch.
    """
    history = {
        "train_loss": [],
        "train_acc": [],
        "val_loss": [],
        "val_acc": [],
    }

    for epoch in range(num_epochs):
        trainer.reset_metrics()
        train_loss = train_one_epoch(trainer, train_dataset)
        train_acc = _metric_value(trainer, Accuracy)

        if validate_dataset is not None:
            val = evaluate(trainer, validate_dataset)
            val_loss, val_acc = val["loss"], val["accuracy"]
        else:
            val_loss = val_acc = math.nan

        history["train_loss"].append(train_loss)
        history["train_acc"].append(train_acc)
        history["val_loss"].append(val_loss)
        history["val_acc"].append(val_acc)

        logger.info("Epoch %d finished - loss: %.4f accuracy: %.4f", epoch + 1, train_loss, train_acc)
        if validate_dataset is not None:
            logger.info("Validation - loss: %.4f accuracy: %.4f", val_loss, val_acc)

    return history
