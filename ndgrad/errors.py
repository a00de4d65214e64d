class NDGradError(Exception):
    """Base class for errors raised by ndgrad."""


class ShapeError(NDGradError, ValueError):
    """
    Shapes cannot be broadcast together, or an in-place operation would have
    to change the shape of its receiver.
    """


class GradientStateError(NDGradError, RuntimeError):
    """
    Gradient bookkeeping was used in a state that does not allow it.

    Raised when ``backward`` is called outside an active recording scope or on
    an array that was not produced on the current tape, when a gradient is
    attached to an array that cannot be tracked, or when a gradient slot is
    read before one was attached.
    """


class DeviceError(NDGradError, RuntimeError):
    """
    A device could not be resolved or a kernel could not be dispatched to it.

    Failures reported by the backend are re-raised as ``DeviceError`` with the
    original exception as ``__cause__``. No retry is attempted.
    """
