"""
Free functions over several NDArrays and scalars.

Every arithmetic family has a pairwise/variadic allocating function
(``add``) and an in-place one (``addi``). A scalar on the left-hand side
dispatches to the array's reverse method, so ``sub(180, a)`` is
``a.rsub(180)`` and ``subi(180, a)`` writes ``180 - a`` into ``a``.

Given a single list (or three or more arrays) the functions left-fold:
``add([A, B, C])`` is ``add(add(A, B), C)`` and ``addi([A, B, C])``
accumulates into ``A`` and returns it.
"""
from typing import Any, List, Sequence, Union

from ndgrad.ndarray import NDArray

Operand = Union[NDArray, int, float]


def _operands(args: Sequence[Any], name: str) -> List[Operand]:
    if len(args) == 1 and isinstance(args[0], (list, tuple)):
        args = args[0]
    operands = list(args)
    if not operands:
        raise ValueError(f"{name}() requires at least one operand, got an empty list")
    if not any(isinstance(x, NDArray) for x in operands):
        raise TypeError(f"{name}() requires at least one NDArray operand")
    return operands


def _fold(name: str, args: Sequence[Any], inplace: bool) -> NDArray:
    operands = _operands(args, name)
    if len(operands) == 1:
        return operands[0] if inplace else operands[0].copy()

    if len(operands) == 2 and not isinstance(operands[0], NDArray):
        # scalar op array: the array receives the reverse op
        scalar, array = operands
        return getattr(array, "r" + name + ("i" if inplace else ""))(scalar)

    if not isinstance(operands[0], NDArray):
        raise TypeError(f"{name}() of more than two operands must start with an NDArray")

    result = operands[0]
    method = name + "i" if inplace else name
    for operand in operands[1:]:
        if inplace:
            getattr(result, method)(operand)
        else:
            result = getattr(result, method)(operand)
    return result


def add(*args: Any) -> NDArray:
    """
    Sum of the operands in a new array.

    Parameters
    ----------
    *args : NDArray or scalar, or a single list of them
        Operands, broadcast against each other.

    Raises
    ------
    ValueError
        If the operand list is empty.
    TypeError
        If no operand is an NDArray.

    Examples
    --------
    >>> add([a, b, c]).equals(a.add(b).add(c))
    True
    """
    return _fold("add", args, inplace=False)


def addi(*args: Any) -> NDArray:
    """Sum of the operands accumulated into the first array, which is returned."""
    return _fold("add", args, inplace=True)


def sub(*args: Any) -> NDArray:
    """Left-fold subtraction in a new array; ``sub(s, a)`` is ``a.rsub(s)``."""
    return _fold("sub", args, inplace=False)


def subi(*args: Any) -> NDArray:
    return _fold("sub", args, inplace=True)


def mul(*args: Any) -> NDArray:
    """Product of the operands in a new array."""
    return _fold("mul", args, inplace=False)


def muli(*args: Any) -> NDArray:
    return _fold("mul", args, inplace=True)


def div(*args: Any) -> NDArray:
    """Left-fold true division in a new array; ``div(s, a)`` is ``a.rdiv(s)``."""
    return _fold("div", args, inplace=False)


def divi(*args: Any) -> NDArray:
    return _fold("div", args, inplace=True)


def mod(*args: Any) -> NDArray:
    """Left-fold floor modulo in a new array; ``mod(s, a)`` is ``a.rmod(s)``."""
    return _fold("mod", args, inplace=False)


def modi(*args: Any) -> NDArray:
    return _fold("mod", args, inplace=True)


def pow(*args: Any) -> NDArray:
    """Left-fold power in a new array; ``pow(s, a)`` is ``a.rpow(s)``."""
    return _fold("pow", args, inplace=False)


def powi(*args: Any) -> NDArray:
    return _fold("pow", args, inplace=True)


def equals(a: NDArray, b: Union[NDArray, Any]) -> bool:
    """Same shape and exactly equal elements."""
    return a.equals(b)


def almost_equals(a: NDArray, b: Union[NDArray, Any], rtol: float = 1e-5, atol: float = 1e-3) -> bool:
    """Same shape and elements equal within ``rtol``/``atol``."""
    return a.almost_equals(b, rtol=rtol, atol=atol)
