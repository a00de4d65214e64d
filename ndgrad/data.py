import logging
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from ndgrad.device import Device
from ndgrad.errors import ShapeError
from ndgrad.ndarray import NDArray

logger = logging.getLogger(__name__)


class Dataset:
    """
    Base class for datasets.

    A dataset provides random access to ``(data, label)`` samples via
    :meth:`__getitem__` and reports its size via :meth:`__len__`.
    """
    def __len__(self) -> int:
        """Return the number of samples in the dataset."""
        raise NotImplementedError

    def __getitem__(self, idx: int) -> Tuple[NDArray, NDArray]:
        """
        Return the sample at index ``idx``.

        Returns
        -------
        tuple[NDArray, NDArray]
            ``(data, label)``.
        """
        raise NotImplementedError


class ArrayDataset(Dataset):
    """
    Dataset wrapping a data array and a label array.

    Each sample is obtained by indexing both arrays along axis 0.

    Parameters
    ----------
    data : NDArray or array-like
        Samples stacked along axis 0.
    labels : NDArray or array-like
        Labels, same size as ``data`` along axis 0.
    """
    def __init__(self, data: Any, labels: Any) -> None:
        self.data = data if isinstance(data, NDArray) else NDArray(data)
        self.labels = labels if isinstance(labels, NDArray) else NDArray(labels)
        if self.data.shape[0] != self.labels.shape[0]:
            raise ShapeError(
                f"data and labels differ in length: {self.data.shape[0]} vs {self.labels.shape[0]}"
            )

    def __getitem__(self, idx: int) -> Tuple[NDArray, NDArray]:
        return self.data[idx], self.labels[idx]

    def __len__(self) -> int:
        return self.data.shape[0]


class Sampler:
    """Yields dataset indices for one pass over a dataset of ``length`` samples."""
    def sample(self, length: int) -> Iterator[int]:
        raise NotImplementedError


class SequentialSampler(Sampler):
    """Indices ``0 .. length - 1`` in order."""
    def sample(self, length: int) -> Iterator[int]:
        return iter(range(length))


class RandomSampler(Sampler):
    """
    A fresh random permutation of the indices on every pass.

    Parameters
    ----------
    seed : int, optional
        Seed of the sampler's own generator; the sequence of permutations is
        reproducible for a fixed seed.
    """
    def __init__(self, seed: Optional[int] = None) -> None:
        self.rng = np.random.default_rng(seed)

    def sample(self, length: int) -> Iterator[int]:
        return iter(int(i) for i in self.rng.permutation(length))


class BatchSampler:
    """
    Groups the indices of ``sampler`` into lists of ``batch_size``.

    Parameters
    ----------
    sampler : Sampler
        Source of indices.
    batch_size : int
        Maximum number of indices per batch.
    drop_last : bool, default=False
        If True, drops the last incomplete batch.
    """
    def __init__(self, sampler: Sampler, batch_size: int, drop_last: bool = False) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        self.sampler = sampler
        self.batch_size = batch_size
        self.drop_last = drop_last

    def batches(self, length: int) -> Iterator[List[int]]:
        batch = []
        for idx in self.sampler.sample(length):
            batch.append(idx)
            if len(batch) == self.batch_size:
                yield batch
                batch = []
        if batch and not self.drop_last:
            yield batch

    def num_batches(self, length: int) -> int:
        if self.drop_last:
            return length // self.batch_size
        return -(-length // self.batch_size)


@dataclass
class DataLoadingConfig:
    """
    How a dataset is turned into batches.

    Attributes
    ----------
    batch_size : int, default=1
        Samples per batch.
    shuffle : bool, default=False
        Draw samples in a random order each epoch. Excludes ``sampler``.
    sampler : Sampler, optional
        Custom index order.
    batch_sampler : BatchSampler, optional
        Custom batching. Excludes ``batch_size != 1``, ``shuffle``,
        ``sampler`` and ``drop_last``.
    num_workers : int, default=0
        Recorded for compatibility; loading is synchronous.
    pin_memory : bool, default=False
        Recorded for compatibility.
    drop_last : bool, default=False
        Drop the last incomplete batch.
    seed : int, optional
        Seed of the shuffling sampler.

    Raises
    ------
    ValueError
        On any of the exclusive combinations above, ``batch_size < 1`` or
        ``num_workers < 0``.
    """
    batch_size: int = 1
    shuffle: bool = False
    sampler: Optional[Sampler] = None
    batch_sampler: Optional[BatchSampler] = None
    num_workers: int = 0
    pin_memory: bool = False
    drop_last: bool = False
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")
        if self.num_workers < 0:
            raise ValueError(f"num_workers must be non-negative, got {self.num_workers}")
        if self.shuffle and self.sampler is not None:
            raise ValueError("sampler option is mutually exclusive with shuffle")
        if self.batch_sampler is not None and (
            self.batch_size != 1 or self.shuffle or self.sampler is not None or self.drop_last
        ):
            raise ValueError("batch_sampler option is mutually exclusive with batch_size, shuffle, sampler and drop_last")

    def make_batch_sampler(self) -> BatchSampler:
        if self.batch_sampler is not None:
            return self.batch_sampler
        if self.sampler is not None:
            sampler = self.sampler
        elif self.shuffle:
            sampler = RandomSampler(self.seed)
        else:
            sampler = SequentialSampler()
        return BatchSampler(sampler, self.batch_size, self.drop_last)


class Batch:
    """
    A ``(data, labels)`` pair of arrays stacked along axis 0.

    The batch owns both arrays: :meth:`close` (or leaving a ``with`` block)
    releases them.
    """
    def __init__(self, data: NDArray, labels: NDArray) -> None:
        self.data = data
        self.labels = labels

    @property
    def size(self) -> int:
        """Number of samples (length of axis 0)."""
        return self.data.shape[0]

    def close(self) -> None:
        self.data.close()
        self.labels.close()

    def __enter__(self) -> "Batch":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def __repr__(self):
        return f"Batch(size={self.size}, device={self.data.device})"


class DataLoader:
    """
    Iterates over a :class:`Dataset` and yields :class:`Batch` objects.

    Every ``iter()`` starts a new pass, so the loader can be reused across
    epochs.

    Parameters
    ----------
    dataset : Dataset
        Dataset to iterate over.
    config : DataLoadingConfig, optional
        Batching options, ``DataLoadingConfig()`` by default.
    device : Device or str, optional
        Device the batches are placed on. Defaults to the device of the
        samples.

    Notes
    -----
    Stacking uses the backend of the first sample. Gradients are not tracked
    through data loading.
    """
    def __init__(
        self,
        dataset: Dataset,
        config: Optional[DataLoadingConfig] = None,
        device: Optional[Union[Device, str]] = None,
    ) -> None:
        self.dataset = dataset
        self.config = config or DataLoadingConfig()
        self.device = Device.of(device)
        self.batch_sampler = self.config.make_batch_sampler()

    def __len__(self) -> int:
        return self.batch_sampler.num_batches(len(self.dataset))

    def __iter__(self) -> Iterator[Batch]:
        for indices in self.batch_sampler.batches(len(self.dataset)):
            items = [self.dataset[i] for i in indices]
            data, labels = (self._stack(field) for field in zip(*items))
            yield Batch(data, labels)

    def _stack(self, arrays: Sequence[NDArray]) -> NDArray:
        first = arrays[0]
        with first.device.dispatch() as xp:
            buf = xp.stack([a.data for a in arrays])
        out = NDArray._wrap(buf, first.device)
        if self.device is not None and self.device != first.device:
            moved = out.as_in_device(self.device)
            out.close()
            out = moved
        return out


def _slice(array: NDArray, start: int, stop: int, device: Device) -> NDArray:
    view = NDArray._wrap(array.data[start:stop], array.device)
    return view.as_in_device(device)


def split_batch(
    batch: Batch,
    devices: Sequence[Union[Device, str]],
    even_split: bool = False,
) -> List[Batch]:
    """
    Split ``batch`` along axis 0 into one slice per device, in order.

    Every slice holds ``ceil(n / k)`` samples except the last, which may be
    smaller. When ``n < k`` fewer slices than devices are returned. Slices
    are copies placed on their device, so each can be closed independently
    of ``batch``.

    Parameters
    ----------
    batch : Batch
        Batch of ``n`` samples.
    devices : sequence of Device or str
        ``k`` target devices.
    even_split : bool, default=False
        Require ``n`` to be divisible by ``k``.

    Returns
    -------
    list[Batch]

    Raises
    ------
    ValueError
        If ``devices`` or the batch is empty.
    ShapeError
        If ``even_split`` is set and ``n % k != 0``.
    """
    devices = [Device.of(d) for d in devices]
    n, k = batch.size, len(devices)
    if k == 0:
        raise ValueError("split_batch requires at least one device")
    if n == 0:
        raise ValueError("cannot split an empty batch")
    if even_split and n % k != 0:
        raise ShapeError(f"batch of size {n} cannot be evenly split across {k} devices")

    step = -(-n // k)
    splits = []
    for device, start in zip(devices, range(0, n, step)):
        stop = min(start + step, n)
        splits.append(Batch(
            _slice(batch.data, start, stop, device),
            _slice(batch.labels, start, stop, device),
        ))
    logger.debug("split batch of %d into %s", n, [s.size for s in splits])
    return splits
