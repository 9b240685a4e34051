"""Numerical differentiation of functions of several scalar and vector arguments."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

import numpy as np

_MACHINE_EPS = np.finfo(float).eps
_JACOBIAN_STEP = _MACHINE_EPS ** (1.0 / 3.0)
_HESSIAN_STEP = _MACHINE_EPS ** (1.0 / 4.0)


def split_args(args: Sequence[Any]) -> tuple[np.ndarray, Callable[[np.ndarray], tuple]]:
    """Flatten a tuple of scalars and arrays into one vector.

    Returns the flat vector and a function that turns a vector of the same
    length back into a tuple shaped like ``args``. Scalars come back as floats.
    """
    shapes: list[tuple[int, ...] | None] = []
    parts: list[np.ndarray] = []
    for arg in args:
        if np.ndim(arg) == 0:
            shapes.append(None)
            parts.append(np.array([float(arg)]))
        else:
            arr = np.asarray(arg, dtype=float)
            shapes.append(arr.shape)
            parts.append(arr.ravel())

    flat = np.concatenate(parts) if parts else np.zeros(0)
    offsets = np.cumsum([0] + [part.size for part in parts])

    def rebuild(vec: np.ndarray) -> tuple:
        vec = np.asarray(vec, dtype=float)
        if vec.shape != flat.shape:
            raise ValueError(f"expected a vector of shape {flat.shape}, got {vec.shape}")
        out: list[Any] = []
        for shape, lo, hi in zip(shapes, offsets[:-1], offsets[1:]):
            if shape is None:
                out.append(float(vec[lo]))
            else:
                out.append(vec[lo:hi].reshape(shape).copy())
        return tuple(out)

    return flat, rebuild


def dr(f: Callable[..., Any], args: Sequence[Any], order: int = 1, eps: float | None = None) -> tuple:
    """Evaluate ``f(*args)`` and its derivatives w.r.t. all arguments.

    Returns ``(value,)``, ``(value, jacobian)`` or ``(value, jacobian, hessian)``
    for ``order`` 0, 1 and 2. The jacobian has shape ``(nf, n)`` where ``nf`` is
    the output size and ``n`` the total size of the arguments. The hessian has
    shape ``(n, nf * n)``: output ``j`` occupies columns ``j*n`` to ``(j+1)*n``.
    ``eps`` overrides the relative finite-difference step.
    """
    if order not in (0, 1, 2):
        raise ValueError(f"differentiation order must be 0, 1 or 2, got {order}")

    args = tuple(args)
    value = f(*args)
    if order == 0:
        return (value,)

    x, rebuild = split_args(args)
    n = x.size
    f0 = np.atleast_1d(np.asarray(value, dtype=float)).ravel()
    nf = f0.size

    def fv(vec: np.ndarray) -> np.ndarray:
        return np.atleast_1d(np.asarray(f(*rebuild(vec)), dtype=float)).ravel()

    def steps(base: float) -> np.ndarray:
        return base * np.maximum(1.0, np.abs(x))

    h1 = steps(eps if eps is not None else _JACOBIAN_STEP)
    jac = np.empty((nf, n))
    for k, hk in enumerate(h1):
        e = np.zeros(n)
        e[k] = hk
        jac[:, k] = (fv(x + e) - fv(x - e)) / (2.0 * hk)

    if order == 1:
        return value, jac

    h2 = steps(eps if eps is not None else _HESSIAN_STEP)
    hess3 = np.empty((nf, n, n))
    for i, hi in enumerate(h2):
        ei = np.zeros(n)
        ei[i] = hi
        for k in range(i, n):
            ek = np.zeros(n)
            ek[k] = h2[k]
            d2 = (fv(x + ei + ek) - fv(x + ei - ek) - fv(x - ei + ek) + fv(x - ei - ek)) / (4.0 * hi * h2[k])
            hess3[:, i, k] = d2
            hess3[:, k, i] = d2

    hess = hess3.transpose(1, 0, 2).reshape(n, nf * n)
    return value, jac, hess