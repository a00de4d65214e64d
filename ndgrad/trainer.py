import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional, Sequence, Tuple, Union

from ndgrad.autograd import GradientCollector, no_grad
from ndgrad.data import Batch, DataLoader, DataLoadingConfig, Dataset, split_batch
from ndgrad.device import Device
from ndgrad.loss import Loss
from ndgrad.metrics import LossMetric, Metric
from ndgrad.ndarray import NDArray, NDList
from ndgrad.nn import Block, Initializer, NormalInitializer
from ndgrad.optim import Optimizer

logger = logging.getLogger(__name__)


def _default_devices() -> List[Device]:
    return [Device.default_device()]


@dataclass
class TrainingConfig:
    """
    Everything a :class:`Trainer` needs besides the block.

    Attributes
    ----------
    loss : Loss
        ``(label, prediction) -> NDArray`` loss.
    optimizer : Optimizer
        Optimizer over the block's parameters.
    devices : list of Device or str
        Devices a batch is split across. Defaults to ``[gpu(0)]`` when a CUDA
        device is visible, ``[cpu(0)]`` otherwise.
    initializer : Initializer
        Used by :meth:`Trainer.initialize`, ``NormalInitializer(0.01)`` by default.
    metrics : list of Metric
        Updated after every training step. A :class:`LossMetric` receives the
        per-slice losses, other metrics the predictions.
    data_loading : DataLoadingConfig
        Used by :meth:`Trainer.iterate_dataset`.
    even_split : bool, default=False
        Require batches to divide evenly across devices.
    """
    loss: Loss
    optimizer: Optimizer
    devices: Sequence[Union[Device, str]] = field(default_factory=_default_devices)
    initializer: Initializer = field(default_factory=NormalInitializer)
    metrics: List[Metric] = field(default_factory=list)
    data_loading: DataLoadingConfig = field(default_factory=DataLoadingConfig)
    even_split: bool = False

    def __post_init__(self) -> None:
        self.devices = [Device.of(d) for d in self.devices]
        if not self.devices:
            raise ValueError("TrainingConfig requires at least one device")


class Trainer:
    """
    Drives training steps of a block.

    Each :meth:`train_batch` splits the batch across the configured devices,
    runs forward, loss and backward for every slice inside one
    :class:`GradientCollector` scope, then applies a single optimizer step and
    clears the gradients.

    Parameters live on the first configured device. Each slice's data is
    placed on its own device and kernels dispatch on the device of their
    receiver.

    Parameters
    ----------
    block : Block
        Model to train.
    config : TrainingConfig
        Loss, optimizer, devices, initializer and metrics.

    Examples
    --------
    >>> config = TrainingConfig(loss=SoftmaxCrossEntropyLoss(), optimizer=SGD(net.parameters(), lr=0.01))
    >>> with Trainer(net, config) as trainer:
    ...     trainer.initialize((1, 784))
    ...     for batch in trainer.iterate_dataset(dataset):
    ...         with batch:
    ...             trainer.train_batch(batch)
    """
    def __init__(self, block: Block, config: TrainingConfig) -> None:
        self.block = block
        self.config = config
        self.devices = list(config.devices)
        self.loss = config.loss
        self.optimizer = config.optimizer
        self.metrics = list(config.metrics)
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise ValueError("Trainer has been closed")

    def initialize(self, *input_shapes: Tuple[int, ...]) -> None:
        """
        Initialize every parameter with the configured initializer on the
        first device and attach a gradient to it.

        If input shapes are given, a forward pass on zeros of those shapes
        checks that the block accepts them.

        Raises
        ------
        ShapeError
            If an input of one of the given shapes does not match the block's
            parameter shapes.
        """
        self._check_open()
        device = self.devices[0]
        self.block.initialize(self.config.initializer, device)
        for shape in input_shapes:
            probe = NDArray.zeros(shape, device=device)
            with no_grad():
                out = self.block(probe)
            logger.debug("initialized %s: input %s -> output %s", self.block.__class__.__name__, shape, out.shape)
            out.close()
            probe.close()

    def iterate_dataset(self, dataset: Dataset) -> Iterator[Batch]:
        """Batches of ``dataset`` on the first device, per the configured data loading."""
        self._check_open()
        return iter(DataLoader(dataset, self.config.data_loading, self.devices[0]))

    def new_gradient_collector(self) -> GradientCollector:
        return GradientCollector()

    def forward(self, data: NDArray) -> NDArray:
        self._check_open()
        return self.block(data)

    def step(self) -> None:
        """Apply one optimizer step, then reset every parameter gradient."""
        self._check_open()
        self.optimizer.step()
        self.block.zero_grad()

    def train_batch(self, batch: Batch) -> float:
        """
        Run one training step on ``batch``.

        1. split the batch across devices,
        2. inside one recording scope, for every slice in order: forward, loss
           against the slice labels and ``backward(loss)``,
        3. one optimizer step, then clear gradients,
        4. update the metrics.

        The split batches and the prediction/loss lists are released whether
        or not the step succeeds. ``batch`` itself stays owned by the caller.

        Returns
        -------
        float
            Mean loss over the batch (slice losses weighted by slice size).

        Raises
        ------
        Exception
            Any error of a slice's forward or backward propagates. The
            remaining slices are skipped and the optimizer step is not taken,
            so parameters are unchanged; gradients accumulated by earlier
            slices are left in place.
        """
        self._check_open()
        splits = split_batch(batch, self.devices, self.config.even_split)
        preds = NDList()
        losses = NDList()
        try:
            with self.new_gradient_collector() as collector:
                for split in splits:
                    pred = self.forward(split.data)
                    preds.append(pred)
                    loss = self.loss(split.labels, pred)
                    losses.append(loss)
                    collector.backward(loss)
            self.step()

            labels = [split.labels for split in splits]
            with no_grad():
                for metric in self.metrics:
                    if isinstance(metric, LossMetric):
                        metric.update(labels, losses)
                    else:
                        metric.update(labels, preds)

            total = sum(loss.item() * split.size for loss, split in zip(losses, splits))
            mean_loss = total / batch.size
            logger.debug("step %d on %d slices, loss %.6f", self.optimizer.num_update, len(splits), mean_loss)
            return mean_loss
        finally:
            for split in splits:
                split.close()
            preds.close()
            losses.close()

    def evaluate_batch(self, batch: Batch, metrics: Optional[Sequence[Metric]] = None) -> float:
        """
        Forward ``batch`` without recording and update ``metrics``.

        Returns
        -------
        float
            Mean loss over the batch.
        """
        self._check_open()
        splits = split_batch(batch, self.devices, self.config.even_split)
        preds = NDList()
        losses = NDList()
        try:
            with no_grad():
                for split in splits:
                    pred = self.forward(split.data)
                    preds.append(pred)
                    losses.append(self.loss(split.labels, pred))
            labels = [split.labels for split in splits]
            for metric in metrics or ():
                metric.update(labels, losses if isinstance(metric, LossMetric) else preds)
            total = sum(loss.item() * split.size for loss, split in zip(losses, splits))
            return total / batch.size
        finally:
            for split in splits:
                split.close()
            preds.close()
            losses.close()

    def reset_metrics(self) -> None:
        for metric in self.metrics:
            metric.reset()

    def close(self) -> None:
        """Release the trainer; later training calls raise ``ValueError``."""
        self._closed = True

    def __enter__(self) -> "Trainer":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
