import contextvars
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Tuple

from ndgrad.errors import GradientStateError

if TYPE_CHECKING:
    from ndgrad.ndarray import NDArray

logger = logging.getLogger(__name__)

_active_collector: contextvars.ContextVar[Optional["GradientCollector"]] = contextvars.ContextVar(
    "ndgrad_active_collector", default=None
)
"""ContextVar: Collector recording in the current execution context.

Bound by :meth:`GradientCollector.__enter__` and restored on exit. Each thread
(and each asyncio task) sees its own binding, so a tape is never shared
between two coordinating threads.
"""

BackwardFn = Callable[[Any], Sequence[Optional[Any]]]


class TapeEntry:
    """
    One recorded differentiable operation.

    Parameters
    ----------
    op : str
        Operation name, used in error messages and logs.
    inputs : sequence of NDArray
        Operands in the order the backward rule returns their gradients.
    output : NDArray
        Array the operation produced (the receiver for in-place operations).
    backward : callable
        Maps the output gradient (backend array) to one gradient per input,
        each shaped like the broadcast output, or ``None`` for inputs that
        receive nothing.
    saved : sequence of NDArray
        Arrays whose current values the backward rule reads. Their version
        counters are captured now and checked on replay.
    """
    __slots__ = ("op", "inputs", "output", "backward", "versions")

    def __init__(
        self,
        op: str,
        inputs: Sequence["NDArray"],
        output: "NDArray",
        backward: BackwardFn,
        saved: Sequence["NDArray"] = (),
    ) -> None:
        self.op = op
        self.inputs = tuple(inputs)
        self.output = output
        self.backward = backward
        self.versions = tuple((a, a._version) for a in saved)

    def check_versions(self) -> None:
        for array, version in self.versions:
            if array._version != version:
                raise GradientStateError(
                    f"an input of '{self.op}' needed for gradient computation has "
                    f"been modified by an in-place operation"
                )


class GradientCollector:
    """
    Scoped recorder of differentiable operations (the autograd tape).

    While the collector is active, every NDArray operation with at least one
    tracked operand appends a :class:`TapeEntry`. An operand is tracked when
    :meth:`NDArray.attach_gradient` was called on it, or when it was produced
    on the current tape. :meth:`backward` replays the tape in reverse and sums
    gradients into the gradient slots of tracked leaves.

    The collector must be entered and exited exactly once. Exiting clears the
    tape whether the block finished normally or raised.

    Examples
    --------
    >>> lhs = NDArray.create([1., 2., 3., 4.])
    >>> lhs.attach_gradient()
    >>> with GradientCollector() as collector:
    ...     result = lhs.add(2)
    ...     collector.backward(result)
    >>> lhs.get_gradient().to_numpy()
    array([1., 1., 1., 1.], dtype=float32)
    """
    def __init__(self) -> None:
        self._tape: List[TapeEntry] = []
        self._produced: Dict[int, "NDArray"] = {}
        self._replayed: Dict[int, "NDArray"] = {}
        self._active = False
        self._used = False
        self._paused = 0
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> "GradientCollector":
        if self._used:
            raise GradientStateError("a GradientCollector can only be entered once")
        if _active_collector.get() is not None:
            raise GradientStateError("another GradientCollector is already recording in this context")
        self._used = True
        self._active = True
        self._token = _active_collector.set(self)
        return self

    def __exit__(self, *args: Any) -> None:
        try:
            self._clear()
        finally:
            self._active = False
            _active_collector.reset(self._token)
            self._token = None

    @property
    def is_recording(self) -> bool:
        """bool: True while the scope is active and not paused by :class:`no_grad`."""
        return self._active and self._paused == 0

    def __len__(self) -> int:
        """Number of entries currently on the tape."""
        return len(self._tape)

    def is_tracked(self, array: "NDArray") -> bool:
        """Whether ``array`` takes part in gradient computation on this tape."""
        key = id(array)
        return (
            array.has_gradient()
            or self._produced.get(key) is array
            or self._replayed.get(key) is array
        )

    def backward(self, array: "NDArray") -> None:
        """
        Compute gradients of ``array`` with respect to every tracked leaf.

        The output gradient is seeded with ones shaped like ``array`` (so
        non-scalar losses behave as if they were summed). Tape entries are
        replayed in reverse insertion order and each input gradient is summed
        into the leaf's gradient slot. Replayed entries are consumed: they
        are removed from the tape.

        Parameters
        ----------
        array : NDArray
            The loss. Must have been produced on this collector's tape.

        Raises
        ------
        GradientStateError
            If the collector is not the active scope in this context, if
            ``array`` was not produced on the current tape, or if a value a
            backward rule needs was modified in place after being recorded, or
            if the gradient reaches an intermediate array whose entries an
            earlier call already consumed. Leaf gradients are left untouched
            when this is raised.
        """
        if not self._active or _active_collector.get() is not self:
            raise GradientStateError("backward() called outside an active GradientCollector scope")
        if self._produced.get(id(array)) is not array:
            raise GradientStateError("backward() called on an array that was not produced on the current tape")

        grads: Dict[int, Any] = {id(array): array.backend.ones_like(array.data)}
        leaf_grads: Dict[int, Tuple["NDArray", Any]] = {}
        consumed = set()

        for index in range(len(self._tape) - 1, -1, -1):
            entry = self._tape[index]
            grad = grads.pop(id(entry.output), None)
            if grad is None:
                continue
            entry.check_versions()
            consumed.add(index)

            for inp, g in zip(entry.inputs, entry.backward(grad)):
                if g is None or not self.is_tracked(inp):
                    continue
                key = id(inp)
                g = unbroadcast(g, inp.shape)
                if inp.has_gradient():
                    leaf_grads[key] = (inp, g if key not in leaf_grads else leaf_grads[key][1] + g)
                if self._produced.get(key) is inp:
                    grads[key] = g if key not in grads else grads[key] + g
                elif self._replayed.get(key) is inp:
                    raise GradientStateError(
                        f"'{entry.op}' reaches an intermediate array whose history was "
                        f"already consumed by an earlier backward()"
                    )

        for inp, g in leaf_grads.values():
            inp._accumulate_gradient(g)

        logger.debug("replayed %d of %d tape entries", len(consumed), len(self._tape))
        for index in consumed:
            output = self._tape[index].output
            self._replayed[id(output)] = output
        self._tape = [e for i, e in enumerate(self._tape) if i not in consumed]
        self._produced = {id(e.output): e.output for e in self._tape}

    def _append(self, entry: TapeEntry) -> None:
        self._tape.append(entry)
        self._produced[id(entry.output)] = entry.output

    def _clear(self) -> None:
        if self._tape:
            logger.debug("discarding %d unreplayed tape entries", len(self._tape))
        self._tape = []
        self._produced = {}
        self._replayed = {}


class no_grad:
    """
    Context manager that temporarily suspends recording.

    Inside the block, operations are not appended to the active collector's
    tape, so no gradient flows through them. Outside a collector it has no
    effect. It is safe to nest.

    Examples
    --------
    >>> with GradientCollector() as collector:
    ...     with no_grad():
    ...         y = x * 2   # not recorded
    """
    def __enter__(self) -> None:
        self.collector = _active_collector.get()
        if self.collector is not None:
            self.collector._paused += 1

    def __exit__(self, *args: Any) -> None:
        if self.collector is not None:
            self.collector._paused -= 1


def current_collector() -> Optional[GradientCollector]:
    """The collector active in this execution context, or None."""
    return _active_collector.get()


def is_recording() -> bool:
    """True if an active, unpaused collector exists in this execution context."""
    collector = _active_collector.get()
    return collector is not None and collector.is_recording


def will_record(inputs: Sequence["NDArray"]) -> bool:
    """Whether an operation on ``inputs`` would be appended to the active tape."""
    collector = _active_collector.get()
    if collector is None or not collector.is_recording:
        return False
    return any(collector.is_tracked(x) for x in inputs)


def record(
    op: str,
    inputs: Sequence["NDArray"],
    output: "NDArray",
    backward: BackwardFn,
    saved: Sequence["NDArray"] = (),
) -> bool:
    """
    Append an entry to the active tape if any input is tracked.

    Returns True if the operation was recorded.
    """
    if not will_record(inputs):
        return False
    _active_collector.get()._append(TapeEntry(op, inputs, output, backward, saved))
    return True


def check_inplace(target: "NDArray") -> None:
    """
    Refuse to mutate a gradient-tracked leaf while recording.

    Raises
    ------
    GradientStateError
        If a collector is recording and ``target`` has a gradient attached.
    """
    if is_recording() and target.has_gradient():
        raise GradientStateError(
            "an array with an attached gradient cannot be modified in place while recording"
        )


def unbroadcast(x: Any, target_shape: Tuple[int, ...]) -> Any:
    """
    Reduce a broadcast gradient ``x`` back to ``target_shape`` by summing over
    the broadcast axes.

    Parameters
    ----------
    x : numpy.ndarray or cupy.ndarray
        Gradient with the broadcast shape.
    target_shape : tuple[int, ...]
        Original (pre-broadcast) operand shape.

    Returns
    -------
    numpy.ndarray or cupy.ndarray
        Reduced gradient with shape ``target_shape``.
    """
    while x.ndim > len(target_shape):
        x = x.sum(axis=0)
    for i, (g, t) in enumerate(zip(x.shape, target_shape)):
        if g != t:
            x = x.sum(axis=i, keepdims=True)
            if t != 1:
                # an empty output axis contributes zero gradient to every position
                x = x.repeat(t, axis=i)
    return x.reshape(target_shape)
