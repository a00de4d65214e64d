import numpy as np
import pytest

from ndgrad.device import Device, num_gpus
from ndgrad.errors import DeviceError
from ndgrad.ndarray import NDArray
from tests.utils import to_numpy


@pytest.mark.parametrize("spec, expected", [
    ("cpu", Device.cpu(0)),
    ("cpu:2", Device.cpu(2)),
    ("gpu", Device.gpu(0)),
    ("cuda:1", Device.gpu(1)),
    (Device.cpu(3), Device.cpu(3)),
])
def test_device_spec_parsing(spec, expected):
    assert Device.of(spec) == expected


@pytest.mark.parametrize("spec", ["tpu", "cpu:x", "cuda:-1", 3])
def test_bad_device_spec_raises(spec):
    with pytest.raises(DeviceError):
        Device.of(spec)


def test_device_repr_and_hash():
    assert repr(Device.gpu(1)) == "gpu(1)"
    assert len({Device.cpu(0), Device.of("cpu"), Device.cpu(1)}) == 2


def test_default_device_without_cuda():
    if num_gpus() == 0:
        assert Device.default_device() == Device.cpu()
    else:
        assert Device.default_device() == Device.gpu(0)


def test_factories_shape_dtype_and_device(device):
    for fn in (NDArray.zeros, NDArray.ones):
        a = fn(2, 3, device=device)
        assert a.shape == (2, 3)
        assert a.dtype == np.float32
        assert a.device == Device.of(device)
    assert NDArray.zeros((4, 0, 1), device=device).size == 0
    assert (to_numpy(NDArray.full((2,), 7.0, device=device)) == 7.0).all()
    assert to_numpy(NDArray.arange(4, device=device)).tolist() == [0, 1, 2, 3]
    assert NDArray.randn(3, 2, device=device).shape == (3, 2)


def test_create_defaults_to_float32_and_copies():
    src = np.array([1, 2, 3], dtype=np.int64)
    a = NDArray.create(src)
    assert a.dtype == np.float32
    src[0] = 100
    assert a.to_numpy()[0] == 1


def test_as_in_device_copies(device):
    a = NDArray.create([1.0, 2.0])
    b = a.as_in_device(device)
    assert b is not a
    assert b.device == Device.of(device)
    assert to_numpy(b).tolist() == [1.0, 2.0]
    b.close()
    assert not a.is_closed


def test_gpu_without_cupy_raises():
    try:
        import cupy  # noqa: F401
    except ImportError:
        with pytest.raises(DeviceError):
            NDArray.zeros(2, device="gpu")
    else:
        pytest.skip("cupy installed")
