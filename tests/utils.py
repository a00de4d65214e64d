import numpy as np
import torch

from ndgrad.autograd import GradientCollector
from ndgrad.ndarray import NDArray

ATOL = 1e-6
RTOL = 1e-5

def _is_cupy(x):
    return x.__class__.__module__.startswith("cupy")

def to_numpy(x):
    if isinstance(x, NDArray):
        return x.to_numpy()
    if _is_cupy(x):
        import cupy as cp
        return cp.asnumpy(x)
    return np.asarray(x)

def ndata(a: NDArray):
    return a.to_numpy()

def ngrad(a: NDArray):
    return None if not a.has_gradient() else a.get_gradient().to_numpy()

def make_array(x_np: np.ndarray, attach_gradient: bool = True, device="cpu") -> NDArray:
    a = NDArray(np.asarray(x_np, dtype=np.float32), device=device)
    if attach_gradient:
        a.attach_gradient()
    return a

def make_torch(x_np: np.ndarray, requires_grad: bool = True) -> torch.Tensor:
    return torch.tensor(np.asarray(x_np, dtype=np.float32), requires_grad=requires_grad)

def run_backward(fn, *arrays):
    """Record ``fn(*arrays)`` and back-propagate from its sum; returns the forward result as numpy."""
    with GradientCollector() as collector:
        out = fn(*arrays)
        result = out.to_numpy()
        collector.backward(out.sum())
    return result

def assert_close(a, b, atol=ATOL, rtol=RTOL):
    a = to_numpy(a)
    b = to_numpy(b)
    assert a.shape == b.shape, f"shape {a.shape} != {b.shape}"
    assert np.allclose(a, b, atol=atol, rtol=rtol, equal_nan=True), f"max|diff|={np.max(np.abs(a-b))}"

def assert_grad_close(a: NDArray, tt: torch.Tensor, atol=ATOL, rtol=RTOL):
    assert a.has_gradient(), "NDArray has no gradient attached"
    assert tt.grad is not None, "Torch grad is None"
    assert_close(ngrad(a), tt.grad.detach().cpu().numpy(), atol=atol, rtol=rtol)
