from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from ndgrad.device import Device
from ndgrad.ndarray import NDArray


class Initializer:
    """
    Base class for parameter initializers.

    Subclasses implement :meth:`sample`, which draws a buffer of the given
    shape on the backend ``xp``. Parameters whose name ends in ``bias`` are
    always initialized to zero.
    """
    def sample(self, xp: Any, shape: Tuple[int, ...]) -> Any:
        raise NotImplementedError

    def __repr__(self):
        return f"{self.__class__.__name__}()"


class NormalInitializer(Initializer):
    """
    Samples from ``N(0, sigma^2)``.

    Parameters
    ----------
    sigma : float, default=0.01
        Standard deviation.
    """
    def __init__(self, sigma: float = 0.01) -> None:
        self.sigma = sigma

    def __repr__(self):
        return f"{self.__class__.__name__}(sigma={self.sigma})"

    def sample(self, xp: Any, shape: Tuple[int, ...]) -> Any:
        return (self.sigma * xp.random.randn(*shape)).astype(xp.float32)


class XavierInitializer(Initializer):
    """
    Glorot uniform initialization.

    Samples from ``U(-a, a)`` with ``a = sqrt(magnitude / ((fan_in + fan_out) / 2))``;
    the default ``magnitude=3`` gives the usual ``sqrt(6 / (fan_in + fan_out))``.
    """
    def __init__(self, magnitude: float = 3.0) -> None:
        self.magnitude = magnitude

    def sample(self, xp: Any, shape: Tuple[int, ...]) -> Any:
        fan_out = shape[0] if len(shape) > 0 else 1
        fan_in = shape[1] if len(shape) > 1 else 1
        bound = (self.magnitude / ((fan_in + fan_out) / 2.0)) ** 0.5
        return xp.random.uniform(-bound, bound, size=shape).astype(xp.float32)


class ConstantInitializer(Initializer):
    """Fills every element with ``value``."""
    def __init__(self, value: float) -> None:
        self.value = value

    def __repr__(self):
        return f"{self.__class__.__name__}(value={self.value})"

    def sample(self, xp: Any, shape: Tuple[int, ...]) -> Any:
        return xp.full(shape, self.value, dtype=xp.float32)


class Block:
    """
    Base class for all network blocks.

    Blocks can contain:
    - child blocks (instances of :class:`Block`)
    - parameters (instances of :class:`NDArray`)

    Children and parameters assigned as attributes are registered automatically
    via :meth:`__setattr__`, in assignment order.
    """
    def __init__(self) -> None:
        """
        Initialize an empty block.

        Attributes
        ----------
        _children : dict[str, Block]
            Registered child blocks.
        _parameters : dict[str, NDArray]
            Registered parameters.
        """
        self._children = {}
        self._parameters = {}

    def named_parameters(self, prefix: str = "") -> Iterator[Tuple[str, NDArray]]:
        """
        Yield ``(name, parameter)`` pairs with dotted names for child parameters
        (e.g. ``"0.weight"``). Local parameters come first, then children in
        insertion order.
        """
        for name, param in self._parameters.items():
            if param is not None:
                yield prefix + name, param
        for name, child in self._children.items():
            yield from child.named_parameters(prefix + name + ".")

    def parameters(self) -> List[NDArray]:
        """
        Return a flat list of all parameters of this block and its children.

        Returns
        -------
        list[NDArray]
            Parameters in a deterministic traversal order.
        """
        return [param for _, param in self.named_parameters()]

    def zero_grad(self) -> None:
        """Set the gradient slot of every parameter to zero."""
        for param in self.parameters():
            param.zero_gradient()

    def initialize(self, initializer: Initializer, device: Optional[Union[Device, str]] = None) -> "Block":
        """
        Re-initialize every parameter in place and attach a gradient to it.

        Parameter handles keep their identity, so an optimizer built from
        :meth:`parameters` before this call still updates them.

        Parameters
        ----------
        initializer : Initializer
            Sampler for non-bias parameters.
        device : Device or str, optional
            Device the parameters are placed on, ``cpu(0)`` by default.

        Returns
        -------
        Block
            ``self``.
        """
        dev = Device.of(device) or Device.cpu()
        for name, param in self.named_parameters():
            with dev.dispatch() as xp:
                if name.rsplit(".", 1)[-1] == "bias":
                    buf = xp.zeros(param.shape, dtype=xp.float32)
                else:
                    buf = initializer.sample(xp, param.shape)
            param._rebind(buf, dev)
            param.attach_gradient()
        return self

    def __setattr__(self, name: str, value: Any) -> None:
        if isinstance(value, Block):
            self._children[name] = value
        elif isinstance(value, NDArray):
            self._parameters[name] = value
        super().__setattr__(name, value)

    def __repr__(self):
        lines = [f"{self.__class__.__name__}("]
        for name, child in self._children.items():
            child_repr = "\n    ".join(repr(child).splitlines())
            lines.append(f"  ({name}): {child_repr}")
        lines.append(")")
        return "\n".join(lines)

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.forward(*args, **kwargs)

    def forward(self, *args: Any, **kwargs: Any) -> Any:
        raise NotImplementedError


class Linear(Block):
    """
    Fully-connected layer computing ``y = x @ W^T + b``.

    Parameters
    ----------
    in_features : int
        Number of input features.
    out_features : int
        Number of output features.
    bias : bool, default=True
        If True, includes a learnable bias.

    Notes
    -----
    The weight is created with He-normal values so the block is usable
    without :meth:`Block.initialize`; the trainer re-initializes it with the
    configured initializer.
    """
    def __init__(self, in_features: int, out_features: int, bias: bool = True) -> None:
        super().__init__()
        gain = (2. / in_features) ** 0.5
        self.weight = NDArray.randn(out_features, in_features, scale=gain)
        self.bias = NDArray.zeros(out_features) if bias else None

    def __repr__(self):
        return (
            f"{self.__class__.__name__}(in_features={self.weight.shape[1]}, "
            f"out_features={self.weight.shape[0]}, bias={self.bias is not None})"
        )

    def forward(self, x: NDArray) -> NDArray:
        """
        Parameters
        ----------
        x : NDArray
            Input of shape ``(..., in_features)``.

        Returns
        -------
        NDArray
            Output of shape ``(..., out_features)``.
        """
        out = x @ self.weight.T
        if self.bias is not None:
            out = out + self.bias
        return out


class Activation(Block):
    """Element-wise activation selected by name (``"relu"``)."""
    _FUNCTIONS: Dict[str, Callable[[NDArray], NDArray]] = {
        "relu": NDArray.relu,
    }

    def __init__(self, name: str) -> None:
        super().__init__()
        if name not in self._FUNCTIONS:
            raise ValueError(f"Unknown activation {name!r}; expected one of {sorted(self._FUNCTIONS)}")
        self.name = name

    def __repr__(self):
        return f"{self.__class__.__name__}({self.name!r})"

    def forward(self, x: NDArray) -> NDArray:
        return self._FUNCTIONS[self.name](x)


class LambdaBlock(Block):
    """Wraps a parameter-free function ``NDArray -> NDArray`` as a block."""
    def __init__(self, fn: Callable[[NDArray], NDArray]) -> None:
        super().__init__()
        self.fn = fn

    def __repr__(self):
        return f"{self.__class__.__name__}({getattr(self.fn, '__name__', self.fn)})"

    def forward(self, x: NDArray) -> NDArray:
        return self.fn(x)


class SequentialBlock(Block):
    """
    A container block that applies its children in sequence.

    Parameters
    ----------
    *blocks : Block
        Blocks applied in the given order. More can be appended with :meth:`add`.
    """
    def __init__(self, *blocks: Block) -> None:
        super().__init__()
        self._blocks = []
        for block in blocks:
            self.add(block)

    def add(self, block: Block) -> "SequentialBlock":
        """Append ``block``; returns ``self`` for chaining."""
        if not isinstance(block, Block):
            raise TypeError(f"All elements must be Block instances, got {type(block)}")
        self._children[str(len(self._blocks))] = block
        self._blocks.append(block)
        return self

    def forward(self, x: NDArray) -> NDArray:
        """Apply each block to the output of the previous one."""
        for block in self._blocks:
            x = block(x)
        return x

    def __getitem__(self, idx: int) -> Block:
        return self._blocks[idx]

    def __len__(self) -> int:
        return len(self._blocks)
