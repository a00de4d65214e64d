import threading

import numpy as np
import pytest

from ndgrad import autograd
from ndgrad.autograd import GradientCollector, no_grad
from ndgrad.errors import GradientStateError
from ndgrad.ndarray import NDArray
from tests.utils import make_array, assert_close, ngrad


def test_recording_flag_follows_scope():
    assert not autograd.is_recording()
    with GradientCollector() as collector:
        assert autograd.is_recording()
        assert autograd.current_collector() is collector
        with no_grad():
            assert not autograd.is_recording()
        assert autograd.is_recording()
    assert not autograd.is_recording()
    assert autograd.current_collector() is None


def test_only_tracked_operations_are_recorded(rng):
    x = make_array(rng.normal(size=(2, 3)))
    c = make_array(rng.normal(size=(2, 3)), attach_gradient=False)

    with GradientCollector() as collector:
        c * 2
        assert len(collector) == 0
        y = x * c
        assert len(collector) == 1
        assert collector.is_tracked(y)
        y.add(c)
        assert len(collector) == 2


def test_no_grad_suspends_recording(rng):
    x = make_array(rng.normal(size=(2, 3)))
    with GradientCollector() as collector:
        with no_grad():
            y = x * 2 + 1
        assert len(collector) == 0
        assert not collector.is_tracked(y)


def test_fan_out_gradients_accumulate(rng, device):
    x_np = rng.normal(size=(3,)).astype(np.float32)
    x = make_array(x_np, device=device)
    with GradientCollector() as collector:
        y = x * x + x * 3
        collector.backward(y)
    assert_close(ngrad(x), 2 * x_np + 3, atol=1e-5)


def test_same_operand_twice(rng):
    x_np = rng.normal(size=(4,)).astype(np.float32)
    x = make_array(x_np)
    with GradientCollector() as collector:
        collector.backward(x.mul(x))
    assert_close(ngrad(x), 2 * x_np)


def test_gradients_accumulate_across_collectors(rng):
    x_np = rng.normal(size=(2, 3)).astype(np.float32)
    x = make_array(x_np)

    with GradientCollector() as collector:
        collector.backward((x * 2).sum())
    g1 = ngrad(x)

    with GradientCollector() as collector:
        collector.backward((x * 3).sum())
    g2 = ngrad(x)

    assert_close(g2 - g1, 3.0 * np.ones_like(x_np))
    x.zero_gradient()
    assert_close(ngrad(x), np.zeros_like(x_np))


@pytest.mark.parametrize("shape", [(2, 3), (2, 3, 4)])
def test_backward_seed_for_non_scalar_matches_ones(shape, rng, device):
    x_np = rng.normal(size=shape).astype(np.float32)
    x = make_array(x_np, device=device)
    with GradientCollector() as collector:
        collector.backward(x * 2)
    assert_close(ngrad(x), 2.0 * np.ones_like(x_np))


def test_broadcast_gradient_is_summed_to_operand_shape():
    a = make_array(np.ones((2, 3)))
    b = make_array(np.ones((3,)))
    s = make_array(np.ones(()))
    with GradientCollector() as collector:
        collector.backward(a.add(b).add(s))
    assert ngrad(b).shape == (3,)
    assert_close(ngrad(b), [2, 2, 2])
    assert_close(ngrad(s), np.array(6.0, dtype=np.float32))


def test_backward_outside_scope_raises(rng):
    x = make_array(rng.normal(size=(2,)))
    collector = GradientCollector()
    with collector:
        y = x * 2
    with pytest.raises(GradientStateError):
        collector.backward(y)


def test_backward_on_untracked_array_raises():
    c = NDArray.ones(3)
    with GradientCollector() as collector:
        with pytest.raises(GradientStateError):
            collector.backward(c.mul(2))


def test_backward_consumes_tape(rng):
    x = make_array(rng.normal(size=(3,)))
    with GradientCollector() as collector:
        y = x * 2
        collector.backward(y)
        assert len(collector) == 0
        with pytest.raises(GradientStateError):
            collector.backward(y)


def test_collector_enters_once_and_does_not_nest():
    collector = GradientCollector()
    with collector:
        with pytest.raises(GradientStateError):
            with GradientCollector():
                pass
    with pytest.raises(GradientStateError):
        with collector:
            pass


def test_tape_cleared_on_exception(rng):
    x = make_array(rng.normal(size=(3,)))
    collector = GradientCollector()
    with pytest.raises(RuntimeError, match="boom"):
        with collector:
            x * 2
            assert len(collector) == 1
            raise RuntimeError("boom")
    assert len(collector) == 0
    assert not autograd.is_recording()


def test_attach_gradient_rejects_integer_dtype():
    a = NDArray.create([1, 2, 3], dtype=np.int32)
    with pytest.raises(GradientStateError):
        a.attach_gradient()


def test_get_gradient_without_attach_raises():
    with pytest.raises(GradientStateError):
        NDArray.ones(2).get_gradient()


def test_inplace_on_tracked_leaf_raises_while_recording(rng):
    x = make_array(rng.normal(size=(3,)))
    before = x.to_numpy()
    with GradientCollector():
        with pytest.raises(GradientStateError):
            x.addi(1)
        with pytest.raises(GradientStateError):
            x += 1
    assert_close(x.to_numpy(), before)
    x.addi(1)
    assert_close(x.to_numpy(), before + 1)


def test_inplace_on_untracked_array_records_entry(rng):
    w_np = rng.normal(size=(3,)).astype(np.float32)
    w = make_array(w_np)
    acc = NDArray.zeros(3)
    with GradientCollector() as collector:
        out = acc.addi(w)
        assert out is acc
        assert collector.is_tracked(acc)
        collector.backward(acc.mul(w))
    assert_close(ngrad(w), 2 * w_np)


def test_mutating_saved_value_invalidates_backward(rng):
    x = make_array(rng.normal(size=(3,)))
    with GradientCollector() as collector:
        h = x * 2
        y = h * h
        h.addi(1)
        with pytest.raises(GradientStateError):
            collector.backward(y)


@pytest.mark.parametrize("op", [
    lambda x: x.exp(),
    lambda x: x.log_softmax(),
])
def test_mutating_recorded_output_invalidates_backward(op):
    x = make_array(np.array([0.0, 1.0], dtype=np.float32))
    with GradientCollector() as collector:
        y = op(x)
        y.muli(2)
        with pytest.raises(GradientStateError):
            collector.backward(y)
    assert_close(ngrad(x), [0, 0])


def test_backward_through_consumed_intermediate_raises():
    w = make_array(np.array([1.0], dtype=np.float32))
    with GradientCollector() as collector:
        h = w * 2
        l1 = h.sum()
        l2 = (h * 5).sum()
        collector.backward(l1)
        assert_close(ngrad(w), [2])
        with pytest.raises(GradientStateError, match="already consumed"):
            collector.backward(l2)
        l3 = (h * 7).sum()
        with pytest.raises(GradientStateError):
            collector.backward(l3)
    assert_close(ngrad(w), [2])


def test_shared_intermediate_in_one_backward(rng):
    w_np = rng.normal(size=(3,)).astype(np.float32)
    w = make_array(w_np)
    with GradientCollector() as collector:
        h = w * 2
        collector.backward(h.sum() + (h * 5).sum())
    assert_close(ngrad(w), np.full(3, 12.0))


def test_gradient_through_empty_broadcast_is_zero():
    x = make_array(np.array([1.0, 2.0], dtype=np.float32))
    with GradientCollector() as collector:
        y = x.mul(NDArray.zeros(0))
        assert y.shape == (0,)
        collector.backward(y)
    assert_close(ngrad(x), [0, 0])


def test_collectors_are_thread_local(rng):
    results = {}
    barrier = threading.Barrier(2)

    def work(name, scale):
        x = make_array(np.ones(3, dtype=np.float32))
        with GradientCollector() as collector:
            y = x * scale
            barrier.wait()
            results[name + "_len"] = len(collector)
            collector.backward(y)
        results[name] = ngrad(x)

    threads = [
        threading.Thread(target=work, args=("a", 2.0)),
        threading.Thread(target=work, args=("b", 5.0)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results["a_len"] == 1 and results["b_len"] == 1
    assert_close(results["a"], [2, 2, 2])
    assert_close(results["b"], [5, 5, 5])


def test_indexing_scatters_gradient(rng, device):
    x_np = rng.normal(size=(4, 3)).astype(np.float32)
    x = make_array(x_np, device=device)
    with GradientCollector() as collector:
        y = x[1:3] * 2
        assert y.shape == (2, 3)
        collector.backward(y)
    expected = np.zeros_like(x_np)
    expected[1:3] = 2
    assert_close(ngrad(x), expected)
