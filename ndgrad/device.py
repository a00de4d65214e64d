import contextlib
from typing import Any, Iterator, Optional, Union

import numpy as np
try:
    import cupy as cp
    _HAS_CUPY = True
except Exception:
    cp = None
    _HAS_CUPY = False

from ndgrad.errors import DeviceError


def _is_cupy_array(x: Any) -> bool:
    """
    Return whether ``x`` is a CuPy ndarray.

    This is safe when CuPy is not installed: it short-circuits on ``_HAS_CUPY``.
    """
    return _HAS_CUPY and hasattr(cp, "ndarray") and isinstance(x, cp.ndarray)


def num_gpus() -> int:
    """Number of CUDA devices visible to CuPy, 0 when CuPy or a driver is missing."""
    if not _HAS_CUPY:
        return 0
    try:
        return int(cp.cuda.runtime.getDeviceCount())
    except cp.cuda.runtime.CUDARuntimeError:
        return 0


class Device:
    """
    Execution target of an :class:`~ndgrad.ndarray.NDArray`.

    A device is a type (``"cpu"`` or ``"gpu"``) plus an index. CPU devices are
    all backed by NumPy; the index only distinguishes data-parallel slices.
    GPU devices are backed by CuPy and the index selects the CUDA device that
    allocations and kernels are dispatched to.

    Parameters
    ----------
    device_type : {'cpu', 'gpu'}, default='cpu'
        Device kind.
    device_id : int, default=0
        Device index.

    Examples
    --------
    >>> Device.cpu()
    cpu(0)
    >>> Device.gpu(1)
    gpu(1)
    >>> Device.of("cuda:1") == Device.gpu(1)
    True
    """
    CPU = "cpu"
    GPU = "gpu"

    def __init__(self, device_type: str = "cpu", device_id: int = 0) -> None:
        if device_type not in (Device.CPU, Device.GPU):
            raise DeviceError(f"Unknown device type: {device_type!r}")
        if device_id < 0:
            raise DeviceError(f"Device index must be non-negative, got {device_id}")
        self.device_type = device_type
        self.device_id = int(device_id)

    @classmethod
    def cpu(cls, device_id: int = 0) -> "Device":
        return cls(Device.CPU, device_id)

    @classmethod
    def gpu(cls, device_id: int = 0) -> "Device":
        return cls(Device.GPU, device_id)

    @classmethod
    def default_device(cls) -> "Device":
        """``gpu(0)`` when a CUDA device is visible, ``cpu()`` otherwise."""
        return cls.gpu(0) if num_gpus() > 0 else cls.cpu()

    @classmethod
    def of(cls, device: Optional[Union["Device", str]]) -> Optional["Device"]:
        """
        Normalize a device specifier to a :class:`Device`.

        Parameters
        ----------
        device : Device, str or None
            ``None`` is returned unchanged. Strings are ``'cpu'``, ``'gpu'`` or
            ``'cuda'``, optionally followed by ``':<index>'``.

        Raises
        ------
        DeviceError
            If the specifier cannot be parsed.
        """
        if device is None or isinstance(device, Device):
            return device
        if isinstance(device, str):
            name, _, index = device.lower().partition(":")
            try:
                device_id = int(index) if index else 0
            except ValueError:
                raise DeviceError(f"Unknown device spec: {device!r}") from None
            if name == "cpu":
                return cls.cpu(device_id)
            if name in ("gpu", "cuda"):
                return cls.gpu(device_id)
        raise DeviceError(f"Unknown device spec: {device!r}")

    @classmethod
    def of_array(cls, data: Any) -> "Device":
        """Device that currently holds the backend array ``data``."""
        if _is_cupy_array(data):
            return cls.gpu(data.device.id)
        return cls.cpu()

    @property
    def backend(self) -> Any:
        """
        Array module used for this device (``numpy`` or ``cupy``).

        Raises
        ------
        DeviceError
            If a GPU device is requested but CuPy is not installed.
        """
        if self.device_type == Device.CPU:
            return np
        if not _HAS_CUPY:
            raise DeviceError("CUDA requested but CuPy is not installed/available.")
        return cp

    @contextlib.contextmanager
    def dispatch(self) -> Iterator[Any]:
        """
        Scope in which allocations and kernels run on this device.

        Yields the backend module. CUDA runtime failures raised inside the
        scope are re-raised as :class:`DeviceError`.
        """
        backend = self.backend
        if self.device_type == Device.CPU:
            yield backend
            return
        try:
            with cp.cuda.Device(self.device_id):
                yield backend
        except cp.cuda.runtime.CUDARuntimeError as e:
            raise DeviceError(f"kernel dispatch failed on {self}: {e}") from e

    def __eq__(self, other: Any) -> bool:
        return (
            isinstance(other, Device)
            and self.device_type == other.device_type
            and self.device_id == other.device_id
        )

    def __hash__(self) -> int:
        return hash((self.device_type, self.device_id))

    def __repr__(self) -> str:
        return f"{self.device_type}({self.device_id})"
