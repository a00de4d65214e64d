from typing import Sequence


class LearningRateTracker:
    """
    Base class for learning-rate policies.

    A tracker maps the optimizer's update counter to a learning rate through
    :meth:`get_new_learning_rate`. The counter starts at 1 for the first
    :meth:`Optimizer.step`.

    Parameters
    ----------
    base_lr : float
        Learning rate before any decay.
    """
    def __init__(self, base_lr: float) -> None:
        self.base_lr = base_lr

    def get_new_learning_rate(self, num_update: int) -> float:
        raise NotImplementedError

    def __repr__(self):
        return f"{self.__class__.__name__}(base_lr={self.base_lr})"


class FixedLR(LearningRateTracker):
    """Always returns ``base_lr``."""
    def get_new_learning_rate(self, num_update: int) -> float:
        return self.base_lr


class FactorTracker(LearningRateTracker):
    """
    Multiply the learning rate by ``factor`` every ``step`` updates.

    Parameters
    ----------
    base_lr : float
        Initial learning rate.
    step : int
        Number of updates between decays. Must be at least 1.
    factor : float, default=1.0
        Multiplicative decay, at most 1.
    stop_factor_lr : float, default=1e-8
        Lower bound of the learning rate.

    Notes
    -----
    The policy is stateful: the rate for update ``n`` accounts for every decay
    boundary passed since the previous call.
    """
    def __init__(
        self,
        base_lr: float,
        step: int,
        factor: float = 1.0,
        stop_factor_lr: float = 1e-8,
    ) -> None:
        super().__init__(base_lr)
        if step < 1:
            raise ValueError(f"step must be at least 1, got {step}")
        if factor > 1.0:
            raise ValueError(f"factor must be no more than 1 to make the learning rate decrease, got {factor}")
        self.step = step
        self.factor = factor
        self.stop_factor_lr = stop_factor_lr
        self.count = 0
        self.lr = base_lr

    def get_new_learning_rate(self, num_update: int) -> float:
        while num_update > self.count + self.step:
            self.count += self.step
            self.lr *= self.factor
            if self.lr < self.stop_factor_lr:
                self.lr = self.stop_factor_lr
        return self.lr


class MultiFactorTracker(LearningRateTracker):
    """
    Multiply the learning rate by ``factor`` each time the update counter
    passes one of the increasing ``steps`` milestones.
    """
    def __init__(self, base_lr: float, steps: Sequence[int], factor: float = 1.0) -> None:
        super().__init__(base_lr)
        steps = list(steps)
        if not steps or steps[0] < 1:
            raise ValueError("steps must be a non-empty list of positive update counts")
        if any(b <= a for a, b in zip(steps, steps[1:])):
            raise ValueError(f"steps must be strictly increasing, got {steps}")
        if factor > 1.0:
            raise ValueError(f"factor must be no more than 1 to make the learning rate decrease, got {factor}")
        self.steps = steps
        self.factor = factor
        self.index = 0
        self.lr = base_lr

    def get_new_learning_rate(self, num_update: int) -> float:
        while self.index < len(self.steps) and num_update > self.steps[self.index]:
            self.index += 1
            self.lr *= self.factor
        return self.lr
