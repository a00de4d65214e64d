import logging
from typing import Any, Iterable, Optional, Tuple

from ndgrad.lr_tracker import LearningRateTracker
from ndgrad.ndarray import NDArray

logger = logging.getLogger(__name__)


class Optimizer:
    """
    Base class for all optimizers.

    An optimizer updates a collection of parameters in place based on their
    gradient slots. Subclasses implement :meth:`step`.

    Parameters
    ----------
    params : Iterable[NDArray]
        Parameters to optimize, iterated in the given order.
    lr : float
        Learning rate used when no ``lr_tracker`` is given.
    rescale_grad : float, default=1.0
        Factor applied to every gradient before the update (e.g.
        ``1 / batch_size`` when the loss is a sum).
    clip_gradient : float, optional
        If set, rescaled gradients are clipped to ``[-clip_gradient, clip_gradient]``.
    lr_tracker : LearningRateTracker, optional
        Policy mapping the update counter to a learning rate.

    Notes
    -----
    - Per-parameter state lives in ``self.state``, keyed by parameter identity.
    - Parameters without a gradient slot are skipped.
    - ``num_update`` counts calls to :meth:`step`.
    """
    def __init__(
        self,
        params: Iterable[NDArray],
        lr: float,
        rescale_grad: float = 1.0,
        clip_gradient: Optional[float] = None,
        lr_tracker: Optional[LearningRateTracker] = None,
    ) -> None:
        self.params = list(params)
        self.lr = lr
        self.rescale_grad = rescale_grad
        self.clip_gradient = clip_gradient
        self.lr_tracker = lr_tracker
        self.num_update = 0
        self.state = {}

    def zero_grad(self) -> None:
        """Reset the gradient slot of every parameter to zero."""
        for p in self.params:
            p.zero_gradient()

    def step(self) -> None:
        """
        Perform a single optimization step.

        Advances ``num_update``, refreshes the learning rate from the tracker
        and updates every parameter that has a gradient slot.
        """
        self.num_update += 1
        if self.lr_tracker is not None:
            self.lr = self.lr_tracker.get_new_learning_rate(self.num_update)
        logger.debug("%s update %d, lr=%g", self.__class__.__name__, self.num_update, self.lr)
        for p in self.params:
            if not p.has_gradient():
                continue
            self._update(p, self._prepare_grad(p))

    def _prepare_grad(self, p: NDArray) -> Any:
        """Rescaled and clipped copy of the gradient of ``p``."""
        xp = p.backend
        d_p = p.get_gradient().data * self.rescale_grad
        if self.clip_gradient is not None:
            d_p = xp.clip(d_p, -self.clip_gradient, self.clip_gradient)
        return d_p

    def _update(self, p: NDArray, d_p: Any) -> None:
        raise NotImplementedError


class SGD(Optimizer):
    """
    Stochastic Gradient Descent with optional momentum, dampening, weight
    decay and Nesterov momentum.

    Parameters
    ----------
    params : Iterable[NDArray]
        Parameters to optimize.
    lr : float, default=0.001
        Learning rate.
    momentum : float, default=0.0
        Momentum factor.
    dampening : float, default=0.0
        Dampening for momentum.
    weight_decay : float, default=0.0
        L2 penalty (added to the gradient).
    nesterov : bool, default=False
        If True, enables Nesterov momentum.
    **kwargs
        ``rescale_grad``, ``clip_gradient`` and ``lr_tracker``, see :class:`Optimizer`.

    Notes
    -----
    Follows the PyTorch-style update: weight decay adds ``weight_decay * p``
    to the gradient and momentum buffers live in ``self.state[p]``.
    """
    def __init__(
        self,
        params: Iterable[NDArray],
        lr: float = 0.001,
        momentum: float = 0.0,
        dampening: float = 0.0,
        weight_decay: float = 0.0,
        nesterov: bool = False,
        **kwargs: Any,
    ) -> None:
        super().__init__(params, lr, **kwargs)
        self.momentum = momentum
        self.dampening = dampening
        self.weight_decay = weight_decay
        self.nesterov = nesterov

    def __repr__(self):
        return f"{self.__class__.__name__}(lr={self.lr}, momentum={self.momentum})"

    def _update(self, p: NDArray, d_p: Any) -> None:
        if self.weight_decay > 0:
            d_p += self.weight_decay * p.data

        if self.momentum > 0:
            buf = self.state.get(p)
            if buf is None:
                buf = d_p.copy()
            else:
                buf *= self.momentum
                buf += (1 - self.dampening) * d_p
            self.state[p] = buf

            if self.nesterov:
                d_p += self.momentum * buf
            else:
                d_p = buf

        p.data -= self.lr * d_p


class Adam(Optimizer):
    """
    Adam optimizer with optional (coupled) weight decay and AMSGrad.

    Parameters
    ----------
    params : Iterable[NDArray]
        Parameters to optimize.
    lr : float, default=0.001
        Learning rate.
    betas : tuple[float, float], default=(0.9, 0.999)
        Coefficients of the running averages of the gradient and its square.
    eps : float, default=1e-8
        Term added to the denominator for numerical stability.
    weight_decay : float, default=0.0
        L2 penalty added to the gradient.
    amsgrad : bool, default=False
        If True, uses the AMSGrad variant.
    **kwargs
        ``rescale_grad``, ``clip_gradient`` and ``lr_tracker``, see :class:`Optimizer`.
    """
    def __init__(
        self,
        params: Iterable[NDArray],
        lr: float = 0.001,
        betas: Tuple[float, float] = (0.9, 0.999),
        eps: float = 1e-8,
        weight_decay: float = 0.0,
        amsgrad: bool = False,
        **kwargs: Any,
    ) -> None:
        super().__init__(params, lr, **kwargs)
        self.betas = betas
        self.eps = eps
        self.weight_decay = weight_decay
        self.amsgrad = amsgrad

    def __repr__(self):
        return f"{self.__class__.__name__}(lr={self.lr}, betas={self.betas})"

    def _update(self, p: NDArray, d_p: Any) -> None:
        xp = p.backend
        if p not in self.state:
            self.state[p] = {
                "step": 0,
                "exp_avg": xp.zeros_like(p.data),
                "exp_avg_sq": xp.zeros_like(p.data),
            }
            if self.amsgrad:
                self.state[p]["max_exp_avg_sq"] = xp.zeros_like(p.data)

        state = self.state[p]
        if self.weight_decay != 0:
            d_p += self.weight_decay * p.data

        exp_avg = state["exp_avg"]
        exp_avg_sq = state["exp_avg_sq"]
        beta1, beta2 = self.betas

        state["step"] += 1
        step = state["step"]

        exp_avg[:] = beta1 * exp_avg + (1 - beta1) * d_p            # m_t
        exp_avg_sq[:] = beta2 * exp_avg_sq + (1 - beta2) * d_p**2   # v_t
        bias_correction1 = 1 - beta1 ** step
        bias_correction2 = 1 - beta2 ** step

        exp_avg_hat = exp_avg / bias_correction1
        if self.amsgrad:
            max_exp_avg_sq = state["max_exp_avg_sq"]
            xp.maximum(max_exp_avg_sq, exp_avg_sq, out=max_exp_avg_sq)
            denom = (max_exp_avg_sq / bias_correction2) ** 0.5 + self.eps
        else:
            denom = (exp_avg_sq / bias_correction2) ** 0.5 + self.eps

        p.data -= self.lr * exp_avg_hat / denom
