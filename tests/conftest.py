import numpy as np
import pytest

from ndgrad import autograd
from ndgrad.device import Device, num_gpus


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture(params=["cpu", "cuda"])
def device(request):
    if request.param == "cuda" and num_gpus() == 0:
        pytest.skip("cupy or a CUDA device is not available")
    return Device.of(request.param)


@pytest.fixture(autouse=True)
def no_leaked_collector():
    yield
    assert autograd.current_collector() is None, "a GradientCollector was left active"
