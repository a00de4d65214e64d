import enum
from typing import Any, Callable, Iterable, Optional, Sequence, Tuple, Union

import numpy as np

from ndgrad import autograd
from ndgrad.device import Device, _is_cupy_array, cp
from ndgrad.errors import DeviceError, GradientStateError, ShapeError
from ndgrad.shape import broadcast_shape

Scalar = Union[int, float]


class Mode(enum.Enum):
    """Whether a binary operation allocates its result or writes into the receiver."""
    ALLOCATE = "allocate"
    MUTATE = "mutate"


# operator family -> backend ufunc name
_KERNELS = {
    "add": "add",
    "sub": "subtract",
    "mul": "multiply",
    "div": "true_divide",
    "mod": "remainder",
    "pow": "power",
}

# operator family -> (d/dlhs, d/drhs), each (xp, g, x, y, z) -> array in the output shape
_GRAD_RULES = {
    "add": (
        lambda xp, g, x, y, z: g,
        lambda xp, g, x, y, z: g,
    ),
    "sub": (
        lambda xp, g, x, y, z: g,
        lambda xp, g, x, y, z: -g,
    ),
    "mul": (
        lambda xp, g, x, y, z: g * y,
        lambda xp, g, x, y, z: g * x,
    ),
    "div": (
        lambda xp, g, x, y, z: g / y,
        lambda xp, g, x, y, z: -g * x / (y * y),
    ),
    "mod": (
        lambda xp, g, x, y, z: g,
        lambda xp, g, x, y, z: -g * xp.floor_divide(x, y),
    ),
    "pow": (
        lambda xp, g, x, y, z: g * y * x ** (y - 1),
        lambda xp, g, x, y, z: g * z * xp.log(x),
    ),
}

# families whose backward rule reads operand values
_NEEDS_VALUES = {"mul", "div", "mod", "pow"}


def _float_errstate() -> Any:
    """Division/modulo by zero and log of non-positive values follow IEEE semantics silently."""
    return np.errstate(divide="ignore", invalid="ignore", over="ignore")


class NDArray:
    """
    Handle to a shaped, typed, device-resident numeric buffer.

    The buffer is a NumPy array on CPU devices and a CuPy array on GPU
    devices. Every binary arithmetic family (``add``, ``sub``, ``mul``,
    ``div``, ``mod``, ``pow``) comes in an allocating form (``add``) that
    returns a new array and an in-place form (``addi``) that writes into the
    receiver and returns it, plus reverse forms (``rsub`` computes
    ``other - self``). Operands broadcast following
    :func:`ndgrad.shape.broadcast_shape`.

    Inside an active :class:`~ndgrad.autograd.GradientCollector`, operations
    involving a tracked array are recorded so that gradients can be computed
    by :meth:`GradientCollector.backward`.

    Notes
    -----
    - DType defaults to ``float32``.
    - Arrays hash by identity. Use :meth:`equals` for element-wise equality.
    - An array owns its buffer. :meth:`close` releases it; any later use
      raises ``ValueError``.
    """
    __array_ufunc__ = None

    def __init__(
        self,
        data: Any,
        device: Optional[Union[Device, str]] = None,
        dtype: Optional[Any] = None,
    ) -> None:
        """
        Construct an array from array-like data.

        Parameters
        ----------
        data : Any
            Python scalar, nested sequence, ``numpy.ndarray`` or
            ``cupy.ndarray``. The data is always copied.
        device : Device or str, optional
            Target device. If None, a CuPy input stays on its GPU and
            everything else goes to ``cpu(0)``.
        dtype : optional
            Element type, ``float32`` by default.

        Raises
        ------
        DeviceError
            If a GPU device is requested but CuPy is unavailable.
        """
        dev = Device.of(device)
        if dev is None:
            dev = Device.of_array(data)
        if _is_cupy_array(data) and dev.device_type == Device.CPU:
            data = cp.asnumpy(data)

        with dev.dispatch() as xp:
            buf = xp.array(data, dtype=dtype if dtype is not None else xp.float32)

        self._init(buf, dev)

    def _init(self, buf: Any, device: Device) -> None:
        self._data = buf
        self.device = device
        self.backend = device.backend
        self._grad: Optional["NDArray"] = None
        self._version = 0
        self._closed = False

    @classmethod
    def _wrap(cls, buf: Any, device: Device) -> "NDArray":
        """Adopt an existing backend array without copying or casting it."""
        out = cls.__new__(cls)
        out._init(device.backend.asarray(buf), device)
        return out

    def _rebind(self, buf: Any, device: Device) -> None:
        """Point this handle at a new buffer, possibly on another device. Drops the gradient slot."""
        version = self._version
        self._init(device.backend.asarray(buf), device)
        self._version = version + 1

    @classmethod
    def create(
        cls,
        data: Any,
        device: Optional[Union[Device, str]] = None,
        dtype: Optional[Any] = None,
    ) -> "NDArray":
        """Create an array from array-like ``data`` (same as the constructor)."""
        return cls(data, device=device, dtype=dtype)

    @staticmethod
    def _factory(
        fill: Callable[[Any, Tuple[int, ...]], Any],
        shape: Tuple[Any, ...],
        device: Optional[Union[Device, str]],
    ) -> "NDArray":
        if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
            shape = tuple(shape[0])
        dev = Device.of(device) or Device.cpu()
        with dev.dispatch() as xp:
            buf = fill(xp, tuple(int(s) for s in shape))
        return NDArray._wrap(buf, dev)

    @staticmethod
    def zeros(*shape: Any, device: Optional[Union[Device, str]] = None) -> "NDArray":
        """
        Create a ``float32`` array of zeros.

        Parameters
        ----------
        *shape : int
            Shape of the output array, as separate ints or a single tuple.
            Zero-size dimensions are allowed.
        device : Device or str, optional
            Target device, ``cpu(0)`` by default.
        """
        return NDArray._factory(lambda xp, s: xp.zeros(s, dtype=xp.float32), shape, device)

    @staticmethod
    def ones(*shape: Any, device: Optional[Union[Device, str]] = None) -> "NDArray":
        """Create a ``float32`` array of ones."""
        return NDArray._factory(lambda xp, s: xp.ones(s, dtype=xp.float32), shape, device)

    @staticmethod
    def full(shape: Tuple[int, ...], value: Scalar, device: Optional[Union[Device, str]] = None) -> "NDArray":
        """Create a ``float32`` array filled with ``value``."""
        return NDArray._factory(lambda xp, s: xp.full(s, value, dtype=xp.float32), (tuple(shape),), device)

    @staticmethod
    def randn(
        *shape: Any,
        scale: float = 1.0,
        device: Optional[Union[Device, str]] = None,
    ) -> "NDArray":
        """
        Create an array of i.i.d. samples from ``N(0, scale^2)``.

        Uses the backend's global random state (``numpy.random`` /
        ``cupy.random``), so seeding that state makes the result reproducible.
        """
        return NDArray._factory(
            lambda xp, s: (scale * xp.random.randn(*s)).astype(xp.float32), shape, device
        )

    @staticmethod
    def arange(stop: int, device: Optional[Union[Device, str]] = None) -> "NDArray":
        """``float32`` array ``[0, 1, ..., stop - 1]``."""
        return NDArray._factory(lambda xp, s: xp.arange(s[0], dtype=xp.float32), (stop,), device)

    @property
    def data(self) -> Any:
        """numpy.ndarray or cupy.ndarray: The underlying buffer."""
        if self._closed:
            raise ValueError("NDArray has been closed")
        return self._data

    @data.setter
    def data(self, value: Any) -> None:
        if self._closed:
            raise ValueError("NDArray has been closed")
        if tuple(value.shape) != tuple(self._data.shape):
            raise ShapeError(f"cannot assign data of shape {tuple(value.shape)} to array of shape {self.shape}")
        self._data = value
        self._version += 1

    @property
    def shape(self) -> Tuple[int, ...]:
        """tuple of int: The array's shape."""
        return tuple(self.data.shape)

    @property
    def dtype(self) -> Any:
        """numpy.dtype: The element type."""
        return self.data.dtype

    @property
    def ndim(self) -> int:
        return self.data.ndim

    @property
    def size(self) -> int:
        """int: Total number of elements (0 if any dimension is 0)."""
        return int(self.data.size)

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def T(self) -> "NDArray":
        """NDArray: Array with its axes reversed."""
        return self.transpose()

    def __len__(self) -> int:
        if not self.shape:
            raise TypeError("len() of unsized object")
        return self.shape[0]

    # --- gradient slot -------------------------------------------------------

    def attach_gradient(self) -> None:
        """
        Enable gradient tracking and allocate a zero gradient slot.

        Calling it again replaces the slot with a fresh zero buffer.

        Raises
        ------
        GradientStateError
            If the array's dtype is not floating point.
        """
        if not np.issubdtype(self.dtype, np.floating):
            raise GradientStateError(f"cannot attach a gradient to an array of dtype {self.dtype}")
        self._grad = NDArray._wrap(self.backend.zeros_like(self.data), self.device)

    def has_gradient(self) -> bool:
        """Whether a gradient slot is attached."""
        return self._grad is not None

    def get_gradient(self) -> "NDArray":
        """
        The gradient slot, an array with the same shape as ``self``.

        Raises
        ------
        GradientStateError
            If :meth:`attach_gradient` was never called.
        """
        if self._grad is None:
            raise GradientStateError("no gradient attached; call attach_gradient() first")
        return self._grad

    def zero_gradient(self) -> None:
        """Reset the gradient slot to zero in place. No-op without a slot."""
        if self._grad is not None:
            self._grad.data.fill(0)

    def _accumulate_gradient(self, grad: Any) -> None:
        slot = self._grad.data
        with self.device.dispatch() as xp:
            xp.add(slot, grad, out=slot)

    # --- binary arithmetic ---------------------------------------------------

    def _ensure_ndarray(self, other: Union["NDArray", Scalar, Any]) -> "NDArray":
        if isinstance(other, NDArray):
            if other.backend is not self.backend:
                raise DeviceError(f"operands live on incompatible devices: {self.device} and {other.device}")
            return other
        with self.device.dispatch() as xp:
            buf = xp.asarray(other, dtype=self.dtype)
        return NDArray._wrap(buf, self.device)

    def _binary(
        self,
        other: Union["NDArray", Scalar, Any],
        op: str,
        mode: Mode,
        reverse: bool = False,
    ) -> "NDArray":
        """
        Shared kernel of every binary operator family.

        ``reverse`` swaps the operand order (``other op self``). In
        ``Mode.MUTATE`` the result is always written into ``self``.
        """
        other = self._ensure_ndarray(other)
        lhs, rhs = (other, self) if reverse else (self, other)
        out_shape = broadcast_shape(lhs.shape, rhs.shape)
        kernel_name = _KERNELS[op]
        # an empty dimension may face a size the backend ufunc rejects
        empty = 0 in out_shape

        if mode is Mode.ALLOCATE:
            with self.device.dispatch() as xp, _float_errstate():
                kernel = getattr(xp, kernel_name)
                if empty:
                    dtype = kernel(lhs.data.ravel()[:0], rhs.data.ravel()[:0]).dtype
                    buf = xp.empty(out_shape, dtype=dtype)
                else:
                    buf = kernel(lhs.data, rhs.data)
            out = NDArray._wrap(buf, self.device)
            x, y = lhs.data, rhs.data
            saved = [lhs, rhs]
        else:
            if out_shape != self.shape:
                raise ShapeError(
                    f"in-place {op} cannot write a result of shape {out_shape} "
                    f"into an array of shape {self.shape}"
                )
            autograd.check_inplace(self)
            before = self.data
            if op in _NEEDS_VALUES and autograd.will_record((lhs, rhs)):
                before = self.data.copy()
            if not empty:
                with self.device.dispatch() as xp, _float_errstate():
                    getattr(xp, kernel_name)(lhs.data, rhs.data, out=self.data)
            self._version += 1
            out = self
            x = before if lhs is self else lhs.data
            y = before if rhs is self else rhs.data
            saved = [a for a in (lhs, rhs) if a is not self]

        if op not in _NEEDS_VALUES:
            saved = []
        elif op == "pow":
            saved.append(out)

        xp = self.backend
        z = out.data
        d_lhs, d_rhs = _GRAD_RULES[op]

        def _backward(g):
            if empty:
                return g, g
            with _float_errstate():
                return d_lhs(xp, g, x, y, z), d_rhs(xp, g, x, y, z)

        autograd.record(op + ("i" if mode is Mode.MUTATE else ""), (lhs, rhs), out, _backward, saved)
        return out

    def add(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """
        Element-wise ``self + other`` in a new array.

        Parameters
        ----------
        other : NDArray or scalar
            Broadcast against ``self``. A scalar is applied to every element.

        Returns
        -------
        NDArray
            New array of the broadcast shape. Operands are left unchanged.

        Examples
        --------
        >>> NDArray.create([1., 2., 3., 4.]).add(2).to_numpy()
        array([3., 4., 5., 6.], dtype=float32)
        """
        return self._binary(other, "add", Mode.ALLOCATE)

    def addi(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """
        Element-wise ``self += other``; returns ``self``.

        Raises
        ------
        ShapeError
            If broadcasting would change the shape of ``self``.
        GradientStateError
            If ``self`` has an attached gradient and a collector is recording.
        """
        return self._binary(other, "add", Mode.MUTATE)

    def radd(self, other: Union["NDArray", Scalar]) -> "NDArray":
        return self._binary(other, "add", Mode.ALLOCATE, reverse=True)

    def raddi(self, other: Union["NDArray", Scalar]) -> "NDArray":
        return self._binary(other, "add", Mode.MUTATE, reverse=True)

    def sub(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """Element-wise ``self - other`` in a new array."""
        return self._binary(other, "sub", Mode.ALLOCATE)

    def subi(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """Element-wise ``self -= other``; returns ``self``."""
        return self._binary(other, "sub", Mode.MUTATE)

    def rsub(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """
        Reverse subtraction ``other - self`` in a new array.

        Examples
        --------
        >>> NDArray.create([6., 91., 12., 215., 180.]).rsub(180).to_numpy()
        array([174.,  89., 168., -35.,   0.], dtype=float32)
        """
        return self._binary(other, "sub", Mode.ALLOCATE, reverse=True)

    def rsubi(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """Reverse subtraction written into ``self``: ``self = other - self``."""
        return self._binary(other, "sub", Mode.MUTATE, reverse=True)

    def mul(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """Element-wise ``self * other`` in a new array."""
        return self._binary(other, "mul", Mode.ALLOCATE)

    def muli(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """Element-wise ``self *= other``; returns ``self``."""
        return self._binary(other, "mul", Mode.MUTATE)

    def rmul(self, other: Union["NDArray", Scalar]) -> "NDArray":
        return self._binary(other, "mul", Mode.ALLOCATE, reverse=True)

    def rmuli(self, other: Union["NDArray", Scalar]) -> "NDArray":
        return self._binary(other, "mul", Mode.MUTATE, reverse=True)

    def div(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """
        Element-wise true division ``self / other`` in a new array.

        Division by zero gives ``inf`` or ``nan`` as in IEEE float arithmetic.
        """
        return self._binary(other, "div", Mode.ALLOCATE)

    def divi(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """Element-wise ``self /= other``; returns ``self``."""
        return self._binary(other, "div", Mode.MUTATE)

    def rdiv(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """Reverse division ``other / self`` in a new array."""
        return self._binary(other, "div", Mode.ALLOCATE, reverse=True)

    def rdivi(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """Reverse division written into ``self``."""
        return self._binary(other, "div", Mode.MUTATE, reverse=True)

    def mod(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """
        Element-wise floor modulo ``self % other`` in a new array.

        The result takes the sign of the divisor, as Python's ``%`` does.
        Modulo by zero gives ``nan``.
        """
        return self._binary(other, "mod", Mode.ALLOCATE)

    def modi(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """Element-wise ``self %= other``; returns ``self``."""
        return self._binary(other, "mod", Mode.MUTATE)

    def rmod(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """Reverse modulo ``other % self`` in a new array."""
        return self._binary(other, "mod", Mode.ALLOCATE, reverse=True)

    def rmodi(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """Reverse modulo written into ``self``."""
        return self._binary(other, "mod", Mode.MUTATE, reverse=True)

    def pow(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """
        Element-wise power ``self ** other`` in a new array.

        The exponent may be an array and broadcasts like any other operand.
        Negative integer exponents are computed with float power.

        Notes
        -----
        Gradients: ``d/dself = other * self ** (other - 1)`` and
        ``d/dother = self ** other * log(self)``; the latter is ``nan`` for
        non-positive bases.
        """
        return self._binary(other, "pow", Mode.ALLOCATE)

    def powi(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """Element-wise ``self **= other``; returns ``self``."""
        return self._binary(other, "pow", Mode.MUTATE)

    def rpow(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """Reverse power ``other ** self`` in a new array."""
        return self._binary(other, "pow", Mode.ALLOCATE, reverse=True)

    def rpowi(self, other: Union["NDArray", Scalar]) -> "NDArray":
        """Reverse power written into ``self``."""
        return self._binary(other, "pow", Mode.MUTATE, reverse=True)

    __add__ = add
    __radd__ = radd
    __iadd__ = addi
    __sub__ = sub
    __rsub__ = rsub
    __isub__ = subi
    __mul__ = mul
    __rmul__ = rmul
    __imul__ = muli
    __truediv__ = div
    __rtruediv__ = rdiv
    __itruediv__ = divi
    __mod__ = mod
    __rmod__ = rmod
    __imod__ = modi
    __pow__ = pow
    __rpow__ = rpow
    __ipow__ = powi

    # --- comparison ----------------------------------------------------------

    def equals(self, other: Union["NDArray", Any]) -> bool:
        """
        Exact element-wise equality.

        Returns True only if both arrays have the same shape and every element
        is equal. Two empty arrays of the same shape are equal.
        """
        other = self._ensure_ndarray(other)
        if self.shape != other.shape:
            return False
        return bool(self.backend.array_equal(self.data, other.data))

    def almost_equals(
        self,
        other: Union["NDArray", Any],
        rtol: float = 1e-5,
        atol: float = 1e-3,
    ) -> bool:
        """Element-wise equality within tolerance (``allclose``), shapes must match."""
        other = self._ensure_ndarray(other)
        if self.shape != other.shape:
            return False
        return bool(self.backend.allclose(self.data, other.data, rtol=rtol, atol=atol))

    # --- differentiable math -------------------------------------------------

    def _unary(
        self,
        op: str,
        buf: Any,
        backward: Callable[[Any], Any],
        saved: Sequence["NDArray"] = (),
        save_output: bool = False,
    ) -> "NDArray":
        """
        Wrap ``buf`` as the result of a one-input operation and record it.

        ``save_output`` must be set when ``backward`` reads ``buf``, so that an
        in-place change to the result invalidates the entry.
        """
        out = NDArray._wrap(buf, self.device)
        saved = list(saved) + ([out] if save_output else [])
        autograd.record(op, (self,), out, lambda g: (backward(g),), saved)
        return out

    def neg(self) -> "NDArray":
        """Element-wise negation."""
        return self._unary("neg", -self.data, lambda g: -g)

    __neg__ = neg

    def exp(self) -> "NDArray":
        """
        Element-wise exponential.

        Notes
        -----
        The derivative of ``exp(x)`` is ``exp(x)`` itself, so the backward
        pass multiplies the upstream gradient by the output.
        """
        with self.device.dispatch() as xp:
            buf = xp.exp(self.data)
        return self._unary("exp", buf, lambda g: g * buf, save_output=True)

    def log(self) -> "NDArray":
        """Element-wise natural logarithm; ``d/dx = 1 / x``."""
        x = self.data
        with self.device.dispatch() as xp, _float_errstate():
            buf = xp.log(x)
        return self._unary("log", buf, lambda g: g / x, saved=(self,))

    def relu(self) -> "NDArray":
        """Element-wise ``max(0, x)``; the gradient is passed where ``x > 0``."""
        x = self.data
        with self.device.dispatch() as xp:
            buf = xp.maximum(x, 0)
        return self._unary("relu", buf, lambda g: g * (x > 0), saved=(self,))

    def sum(
        self,
        axis: Optional[Union[int, Tuple[int, ...]]] = None,
        keepdims: bool = False,
    ) -> "NDArray":
        """
        Sum of elements over ``axis`` (all elements if None).

        The backward pass broadcasts the upstream gradient back to the input
        shape, re-inserting reduced axes when ``keepdims`` is False.
        """
        shape = self.shape
        with self.device.dispatch() as xp:
            buf = xp.sum(self.data, axis=axis, keepdims=keepdims)
        return self._unary("sum", buf, lambda g: _expand_like(xp, g, shape, axis, keepdims))

    def mean(
        self,
        axis: Optional[Union[int, Tuple[int, ...]]] = None,
        keepdims: bool = False,
    ) -> "NDArray":
        """Mean over ``axis``; implemented as ``sum / count`` so it records both steps."""
        if axis is None:
            count = self.size
        else:
            axes = (axis,) if isinstance(axis, int) else axis
            count = int(np.prod([self.shape[a] for a in axes]))
        return self.sum(axis=axis, keepdims=keepdims).div(count)

    def reshape(self, *shape: Any) -> "NDArray":
        """Array with the same data and a new shape (one dimension may be -1)."""
        if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
            shape = tuple(shape[0])
        original = self.shape
        return self._unary("reshape", self.data.reshape(shape), lambda g: g.reshape(original))

    def transpose(self, *axes: int) -> "NDArray":
        """
        Permute the axes (reverse them if ``axes`` is empty).

        The backward pass applies the inverse permutation.
        """
        axes = axes or tuple(reversed(range(self.ndim)))
        inverse = tuple(int(i) for i in np.argsort(axes))
        return self._unary("transpose", self.data.transpose(axes), lambda g: g.transpose(inverse))

    def matmul(self, other: "NDArray") -> "NDArray":
        """
        Matrix product with NumPy semantics (batched over leading dimensions).

        Notes
        -----
        Gradients:
        ``dL/dself = out.grad @ other^T`` and ``dL/dother = self^T @ out.grad``,
        reduced over broadcast batch dimensions.
        """
        other = self._ensure_ndarray(other)
        x, y = self.data, other.data
        inner_x = x.shape[-1] if x.ndim else None
        inner_y = y.shape[-2] if y.ndim > 1 else (y.shape[0] if y.ndim else None)
        if inner_x is None or inner_y is None or inner_x != inner_y:
            raise ShapeError(f"matmul shapes {self.shape} and {other.shape} are not aligned")
        with self.device.dispatch() as xp:
            buf = xp.matmul(x, y)
        out = NDArray._wrap(buf, self.device)

        def _backward(g):
            gx = xp.matmul(g, xp.swapaxes(y, -1, -2)) if y.ndim > 1 else xp.multiply.outer(g, y)
            gy = xp.matmul(xp.swapaxes(x, -1, -2), g) if x.ndim > 1 else xp.multiply.outer(x, g)
            return gx, gy

        autograd.record("matmul", (self, other), out, _backward, [self, other])
        return out

    __matmul__ = matmul

    def log_softmax(self, axis: int = -1) -> "NDArray":
        """
        Numerically stable ``log(softmax(x))`` along ``axis``.

        Notes
        -----
        Gradient: ``g - softmax(x) * sum(g, axis)``.
        """
        x = self.data
        with self.device.dispatch() as xp:
            shifted = x - xp.max(x, axis=axis, keepdims=True)
            buf = shifted - xp.log(xp.sum(xp.exp(shifted), axis=axis, keepdims=True))
        return self._unary(
            "log_softmax",
            buf,
            lambda g: g - xp.exp(buf) * xp.sum(g, axis=axis, keepdims=True),
            save_output=True,
        )

    def pick(self, index: Union["NDArray", Any], axis: int = -1) -> "NDArray":
        """
        Select one element along ``axis`` for every position of ``index``.

        Parameters
        ----------
        index : NDArray or array-like
            Indices with the shape of ``self`` minus ``axis``. Float indices
            (e.g. labels) are truncated to integers.
        axis : int, default=-1
            Axis to pick along.

        Returns
        -------
        NDArray
            Array with ``axis`` removed. Gradients scatter back to the picked
            positions; ``index`` receives none.
        """
        xp = self.backend
        idx = index.data if isinstance(index, NDArray) else xp.asarray(index)
        idx = xp.expand_dims(idx.astype(xp.int64), axis)
        shape = self.shape
        with self.device.dispatch():
            buf = xp.squeeze(xp.take_along_axis(self.data, idx, axis=axis), axis=axis)

        def _backward(g):
            grad = xp.zeros(shape, dtype=g.dtype)
            xp.put_along_axis(grad, idx, xp.expand_dims(g, axis), axis=axis)
            return grad

        return self._unary("pick", buf, _backward)

    def __getitem__(self, idx: Any) -> "NDArray":
        """
        Index or slice (NumPy semantics) into a new array.

        The backward pass scatters the gradient back into a zero array of the
        input shape.
        """
        shape = self.shape
        xp = self.backend
        buf = xp.array(self.data[idx], copy=True)

        def _backward(g):
            grad = xp.zeros(shape, dtype=g.dtype)
            grad[idx] = g
            return grad

        return self._unary("getitem", buf, _backward)

    # --- non-differentiable helpers ------------------------------------------

    def argmax(self, axis: int = -1) -> "NDArray":
        """Indices of the maxima along ``axis`` as an integer array (not recorded)."""
        with self.device.dispatch() as xp:
            buf = xp.argmax(self.data, axis=axis)
        return NDArray._wrap(buf, self.device)

    def item(self) -> float:
        """The single element of a size-1 array as a Python number."""
        return self.to_numpy().item()

    def to_numpy(self) -> np.ndarray:
        """Copy of the buffer as a ``numpy.ndarray``."""
        if _is_cupy_array(self.data):
            return cp.asnumpy(self.data)
        return np.array(self.data, copy=True)

    def copy(self) -> "NDArray":
        """Detached copy on the same device (not recorded, no gradient slot)."""
        return NDArray._wrap(self.data.copy(), self.device)

    def as_in_device(self, device: Union[Device, str]) -> "NDArray":
        """
        Detached copy of this array on ``device``.

        Always copies, so the result can be closed independently.
        """
        dev = Device.of(device)
        if dev.device_type == Device.CPU:
            return NDArray._wrap(self.to_numpy(), dev)
        with dev.dispatch() as xp:
            buf = xp.array(self.data, copy=True)
        return NDArray._wrap(buf, dev)

    def close(self) -> None:
        """Release the buffer and the gradient slot. Safe to call twice."""
        if self._grad is not None:
            self._grad.close()
        self._data = None
        self._grad = None
        self._closed = True

    def __repr__(self) -> str:
        if self._closed:
            return f"ndarray(<closed>, device={self.device})"
        data_str = np.array2string(self.to_numpy(), separator=", ", prefix="ndarray(")
        return f"ndarray({data_str}, dtype={self.dtype}, device={self.device}, gradient={self.has_gradient()})"


class NDList(list):
    """
    Ordered list of arrays that can be released together.

    Used for the per-step prediction and loss lists in training.
    """
    def __init__(self, arrays: Iterable[NDArray] = ()) -> None:
        super().__init__(arrays)

    def head(self) -> NDArray:
        """The first array."""
        return self[0]

    def close(self) -> None:
        """Close every array in the list and empty it."""
        for array in self:
            array.close()
        self.clear()


def _expand_like(
    xp: Any,
    g: Any,
    shape: Tuple[int, ...],
    axis: Optional[Union[int, Tuple[int, ...]]],
    keepdims: bool,
) -> Any:
    """Broadcast a reduced gradient back to ``shape``, re-inserting reduced axes."""
    if axis is not None and not keepdims:
        axes = (axis,) if isinstance(axis, int) else axis
        for a in sorted(a % len(shape) for a in axes):
            g = xp.expand_dims(g, axis=a)
    return xp.broadcast_to(g, shape)
