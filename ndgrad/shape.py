from typing import Sequence, Tuple

from ndgrad.errors import ShapeError

Shape = Tuple[int, ...]


def broadcast_shape(a: Sequence[int], b: Sequence[int]) -> Shape:
    """
    Compute the shape produced by broadcasting ``a`` against ``b``.

    Shapes are aligned at their trailing dimension and missing leading
    dimensions are treated as size 1. Walking right to left, each pair of
    dimensions ``(da, db)`` resolves as follows:

    - ``da == db``: the output dimension is ``da``.
    - ``da == 1`` or ``db == 1``: the output dimension is the other size. A
      size-1 dimension is absorbed by anything, including an empty (size 0)
      dimension, so ``1`` against ``0`` gives ``0``.
    - ``da == 0`` or ``db == 0``: the output dimension is 0. An empty
      dimension empties the aligned output dimension whatever the other size.
    - anything else is incompatible.

    Parameters
    ----------
    a, b : sequence of int
        Operand shapes. Every dimension must be non-negative.

    Returns
    -------
    tuple of int
        Broadcast shape, with rank ``max(len(a), len(b))``.

    Raises
    ------
    ShapeError
        If a dimension is negative or two aligned dimensions are incompatible.
        The message names both sizes and the output axis.

    Examples
    --------
    >>> broadcast_shape((4, 0, 1), (1, 0))
    (4, 0, 0)
    >>> broadcast_shape((1,), (2, 0, 3))
    (2, 0, 3)
    >>> broadcast_shape((2,), (0,))
    (0,)
    >>> broadcast_shape((2, 3), (3, 1))
    Traceback (most recent call last):
        ...
    ndgrad.errors.ShapeError: cannot broadcast (2, 3) with (3, 1): size 2 vs 3 at axis 0
    """
    a = tuple(int(d) for d in a)
    b = tuple(int(d) for d in b)
    for shape in (a, b):
        if any(d < 0 for d in shape):
            raise ShapeError(f"negative dimension in shape {shape}")

    ndim = max(len(a), len(b))
    pa = (1,) * (ndim - len(a)) + a
    pb = (1,) * (ndim - len(b)) + b

    out = [0] * ndim
    for axis in range(ndim - 1, -1, -1):
        da, db = pa[axis], pb[axis]
        if da == db:
            out[axis] = da
        elif da == 1:
            out[axis] = db
        elif db == 1:
            out[axis] = da
        elif da == 0 or db == 0:
            out[axis] = 0
        else:
            raise ShapeError(
                f"cannot broadcast {a} with {b}: size {da} vs {db} at axis {axis}"
            )
    return tuple(out)


def broadcast_shapes(*shapes: Sequence[int]) -> Shape:
    """Fold :func:`broadcast_shape` over any number of shapes (left to right)."""
    if not shapes:
        return ()
    out = tuple(shapes[0])
    for shape in shapes[1:]:
        out = broadcast_shape(out, shape)
    return out
