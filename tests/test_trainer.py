import logging
import math

import numpy as np
import pytest
import torch

from ndgrad.data import ArrayDataset, Batch, DataLoadingConfig
from ndgrad.device import Device
from ndgrad.errors import ShapeError
from ndgrad.loss import L2Loss, SoftmaxCrossEntropyLoss
from ndgrad.metrics import Accuracy, LossMetric
from ndgrad.ndarray import NDArray
from ndgrad.nn import Activation, ConstantInitializer, LambdaBlock, Linear, NormalInitializer, SequentialBlock
from ndgrad.optim import SGD
from ndgrad.trainer import Trainer, TrainingConfig
from ndgrad.training import fit
from tests.utils import assert_close, to_numpy


def _mlp():
    return SequentialBlock(Linear(4, 8), Activation("relu"), Linear(8, 3))


def _classification_data(rng, n=16):
    x = rng.normal(size=(n, 4)).astype(np.float32)
    y = (x[:, 0] > 0).astype(np.float32) + (x[:, 1] > 0.5).astype(np.float32)
    return x, y


def test_training_config_defaults_and_device_parsing():
    net = _mlp()
    config = TrainingConfig(loss=L2Loss(), optimizer=SGD(net.parameters()), devices=["cpu", "cpu:1"])
    assert config.devices == [Device.cpu(0), Device.cpu(1)]
    assert isinstance(config.initializer, NormalInitializer)
    assert config.metrics == []

    with pytest.raises(ValueError):
        TrainingConfig(loss=L2Loss(), optimizer=SGD(net.parameters()), devices=[])


def test_initialize_attaches_gradients_and_checks_shape():
    net = _mlp()
    config = TrainingConfig(
        loss=L2Loss(), optimizer=SGD(net.parameters()), devices=["cpu"],
        initializer=ConstantInitializer(0.5),
    )
    trainer = Trainer(net, config)
    trainer.initialize((1, 4))
    for name, p in net.named_parameters():
        assert p.has_gradient()
        expected = 0.0 if name.endswith("bias") else 0.5
        assert_close(p.to_numpy(), np.full(p.shape, expected, dtype=np.float32))

    with pytest.raises(ShapeError):
        trainer.initialize((1, 5))


def test_train_batch_matches_torch_on_single_device(rng):
    x_np, y_np = _classification_data(rng, n=4)
    net = _mlp()
    lr = 0.1
    config = TrainingConfig(
        loss=SoftmaxCrossEntropyLoss(), optimizer=SGD(net.parameters(), lr=lr), devices=["cpu"],
    )
    trainer = Trainer(net, config)
    trainer.initialize((1, 4))
    init = [p.to_numpy() for p in net.parameters()]

    w1, b1, w2, b2 = [torch.tensor(v, requires_grad=True) for v in init]
    logits = torch.relu(torch.tensor(x_np) @ w1.T + b1) @ w2.T + b2
    loss_t = torch.nn.functional.cross_entropy(logits, torch.tensor(y_np, dtype=torch.long))
    loss_t.backward()

    batch = Batch(NDArray(x_np), NDArray(y_np))
    loss = trainer.train_batch(batch)

    assert loss == pytest.approx(loss_t.item(), rel=1e-5, abs=1e-6)
    for p, t, v in zip(net.parameters(), (w1, b1, w2, b2), init):
        assert_close(p.to_numpy(), v - lr * t.grad.numpy(), atol=1e-6, rtol=1e-5)
        assert_close(p.get_gradient(), np.zeros_like(v))
    assert not batch.data.is_closed


def test_gradients_sum_across_device_slices(rng):
    x_np = rng.normal(size=(6, 4)).astype(np.float32)
    y_np = rng.normal(size=(6, 3)).astype(np.float32)
    net = Linear(4, 3)
    config = TrainingConfig(
        loss=L2Loss(), optimizer=SGD(net.parameters(), lr=1.0), devices=["cpu:0", "cpu:1"],
    )
    trainer = Trainer(net, config)
    trainer.initialize()
    w0, b0 = [p.to_numpy() for p in net.parameters()]

    wt = torch.tensor(w0, requires_grad=True)
    bt = torch.tensor(b0, requires_grad=True)
    for sl in (slice(0, 3), slice(3, 6)):
        pred = torch.tensor(x_np[sl]) @ wt.T + bt
        (0.5 * (pred - torch.tensor(y_np[sl])) ** 2).mean().backward()

    trainer.train_batch(Batch(NDArray(x_np), NDArray(y_np)))

    assert_close(net.weight.to_numpy(), w0 - wt.grad.numpy(), atol=1e-5, rtol=1e-5)
    assert_close(net.bias.to_numpy(), b0 - bt.grad.numpy(), atol=1e-5, rtol=1e-5)


def test_failure_skips_step_and_keeps_gradients(rng):
    calls = []

    def flaky(x):
        calls.append(x.shape[0])
        if len(calls) == 2:
            raise RuntimeError("slice failed")
        return x

    linear = Linear(4, 3)
    net = SequentialBlock(linear, LambdaBlock(flaky))
    config = TrainingConfig(
        loss=L2Loss(), optimizer=SGD(net.parameters(), lr=1.0), devices=["cpu:0", "cpu:1"],
    )
    trainer = Trainer(net, config)
    trainer.initialize()
    before = [p.to_numpy() for p in net.parameters()]

    x_np = rng.normal(size=(4, 4)).astype(np.float32)
    y_np = rng.normal(size=(4, 3)).astype(np.float32)
    with pytest.raises(RuntimeError, match="slice failed"):
        trainer.train_batch(Batch(NDArray(x_np), NDArray(y_np)))

    for p, v in zip(net.parameters(), before):
        assert_close(p.to_numpy(), v)
    assert np.any(linear.weight.get_gradient().to_numpy() != 0)
    assert config.optimizer.num_update == 0


def test_step_clears_gradients():
    net = Linear(2, 1)
    trainer = Trainer(net, TrainingConfig(loss=L2Loss(), optimizer=SGD(net.parameters(), lr=0.1), devices=["cpu"]))
    trainer.initialize()
    net.weight.get_gradient().data[...] = 1.0
    trainer.step()
    assert_close(net.weight.get_gradient(), np.zeros((1, 2)))


def test_metrics_updated_after_step(rng):
    x_np, y_np = _classification_data(rng, n=8)
    net = _mlp()
    accuracy, loss_metric = Accuracy(), LossMetric()
    config = TrainingConfig(
        loss=SoftmaxCrossEntropyLoss(), optimizer=SGD(net.parameters(), lr=0.01),
        devices=["cpu:0", "cpu:1"], metrics=[accuracy, loss_metric],
    )
    trainer = Trainer(net, config)
    trainer.initialize((1, 4))
    assert math.isnan(accuracy.get_value())

    loss = trainer.train_batch(Batch(NDArray(x_np), NDArray(y_np)))
    assert 0.0 <= accuracy.get_value() <= 1.0
    assert accuracy.count == 8
    assert loss_metric.get_value() == pytest.approx(loss, rel=1e-5)

    trainer.reset_metrics()
    assert math.isnan(loss_metric.get_value())


def test_closed_trainer_raises():
    net = Linear(2, 1)
    with Trainer(net, TrainingConfig(loss=L2Loss(), optimizer=SGD(net.parameters()), devices=["cpu"])) as trainer:
        pass
    with pytest.raises(ValueError):
        trainer.step()


def test_fit_is_reproducible_and_logs(rng, caplog):
    x_np, y_np = _classification_data(rng, n=16)

    def run():
        np.random.seed(7)
        net = _mlp()
        config = TrainingConfig(
            loss=SoftmaxCrossEntropyLoss(),
            optimizer=SGD(net.parameters(), lr=0.01, rescale_grad=1.0),
            devices=["cpu"],
            metrics=[Accuracy(), LossMetric()],
            data_loading=DataLoadingConfig(batch_size=4),
        )
        trainer = Trainer(net, config)
        trainer.initialize((1, 4))
        return fit(trainer, ArrayDataset(x_np, y_np), num_epochs=2, validate_dataset=ArrayDataset(x_np, y_np))

    with caplog.at_level(logging.INFO, logger="ndgrad.training"):
        first = run()
    second = run()

    assert len(first["train_loss"]) == 2
    for key in ("train_loss", "train_acc", "val_loss", "val_acc"):
        assert all(math.isfinite(v) for v in first[key])
        assert first[key] == pytest.approx(second[key])
    assert any("Epoch 1 finished - loss:" in r.getMessage() for r in caplog.records)


def test_loss_decreases_on_regression(rng):
    x_np = rng.normal(size=(32, 4)).astype(np.float32)
    y_np = (x_np @ np.array([[1.0], [-2.0], [0.5], [0.0]], dtype=np.float32)).astype(np.float32)
    net = Linear(4, 1)
    config = TrainingConfig(
        loss=L2Loss(), optimizer=SGD(net.parameters(), lr=0.1, momentum=0.9),
        devices=["cpu"], data_loading=DataLoadingConfig(batch_size=8),
    )
    trainer = Trainer(net, config)
    trainer.initialize((1, 4))
    history = fit(trainer, ArrayDataset(x_np, y_np), num_epochs=15)
    assert history["train_loss"][-1] < 0.1 * history["train_loss"][0]
    assert to_numpy(net.weight).shape == (1, 4)
