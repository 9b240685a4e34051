"""Optimal control problem definition and derivative checking."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .diff import dr

_log = logging.getLogger(__name__)


@dataclass
class OCP:
    """Optimal control problem on the interval ``[0, tf]`` over Euclidean spaces.

    Minimise ``theta(tf, x0, xf, q)`` subject to ``dx/dt = f(t, x, u)``,
    ``q = integral of g(t, x, u)``, ``crl <= cr(t, x, u) <= cru`` along the
    trajectory and ``cel <= ce(tf, x0, xf, q) <= ceu``.

    Functions may carry ``jacobian`` and ``hessian`` methods with analytic
    derivatives in the layout used by :func:`smoothfeedback.diff.dr`.
    Bounds left out default to zeros of the right size.
    """

    theta: Callable[..., Any]
    f: Callable[..., Any]
    g: Callable[..., Any]
    cr: Callable[..., Any]
    ce: Callable[..., Any]
    state_dim: int
    input_dim: int
    crl: np.ndarray | None = None
    cru: np.ndarray | None = None
    cel: np.ndarray | None = None
    ceu: np.ndarray | None = None
    _nq: int = field(init=False, repr=False, default=0)

    def __post_init__(self) -> None:
        if self.state_dim <= 0 or self.input_dim <= 0:
            raise ValueError("state and input dimensions must be positive")

        t = 0.0
        x = np.zeros(self.state_dim)
        u = np.zeros(self.input_dim)
        self._nq = _size(self.g(t, x, u))
        if self._nq <= 0:
            raise ValueError("at least one integral is required")
        q = np.zeros(self._nq)
        ncr = _size(self.cr(t, x, u))
        nce = _size(self.ce(t, x, x, q))
        if ncr <= 0 or nce <= 0:
            raise ValueError("running and end constraints must be non-empty")

        self.crl = _bound(self.crl, ncr, "crl")
        self.cru = _bound(self.cru, ncr, "cru")
        self.cel = _bound(self.cel, nce, "cel")
        self.ceu = _bound(self.ceu, nce, "ceu")

    @property
    def nx(self) -> int:
        """State space dimension."""
        return self.state_dim

    @property
    def nu(self) -> int:
        """Input space dimension."""
        return self.input_dim

    @property
    def nq(self) -> int:
        """Number of integrals."""
        return self._nq

    @property
    def ncr(self) -> int:
        """Number of running constraints."""
        return len(self.crl)

    @property
    def nce(self) -> int:
        """Number of end constraints."""
        return len(self.cel)


@dataclass
class OCPSolution:
    """Solution to an :class:`OCP`."""

    t0: float
    tf: float
    Q: np.ndarray
    u: Callable[[float], np.ndarray]
    x: Callable[[float], np.ndarray]
    lambda_q: np.ndarray = field(default_factory=lambda: np.zeros(0))
    lambda_ce: np.ndarray = field(default_factory=lambda: np.zeros(0))
    lambda_dyn: Callable[[float], np.ndarray] | None = None
    lambda_cr: Callable[[float], np.ndarray] | None = None


def _size(value: Any) -> int:
    return np.atleast_1d(np.asarray(value, dtype=float)).size


def _bound(value: Any, size: int, name: str) -> np.ndarray:
    if value is None:
        return np.zeros(size)
    arr = np.atleast_1d(np.asarray(value, dtype=float)).ravel()
    if arr.size != size:
        raise ValueError(f"{name} has size {arr.size}, expected {size}")
    return arr


def _dense(mat: Any) -> np.ndarray:
    if hasattr(mat, "toarray"):
        mat = mat.toarray()
    return np.atleast_2d(np.asarray(mat, dtype=float))


def _matches(got: np.ndarray, expected: np.ndarray, eps: float) -> bool:
    if got.shape != expected.shape:
        return False
    if got.size == 0:
        return True
    diff = got - expected
    if np.linalg.norm(diff) <= 1e-4 * min(np.linalg.norm(got), np.linalg.norm(expected)):
        return True
    return float(np.abs(diff).max()) < eps


def check_ocp_derivatives(
    ocp: OCP,
    num_trials: int = 1,
    eps: float = 1e-4,
    rng: np.random.Generator | int | None = None,
) -> bool:
    """Compare analytic derivatives of the problem functions with numerical ones.

    Functions without ``jacobian``/``hessian`` methods are skipped. Returns
    ``True`` if every available derivative agrees at ``num_trials`` random points.
    """
    rng = np.random.default_rng(rng)
    names = ("theta", "ce", "f", "g", "cr")

    for name in names:
        fn = getattr(ocp, name)
        if not hasattr(fn, "jacobian"):
            _log.info("no jacobian for %s", name)
        if not hasattr(fn, "hessian"):
            _log.info("no hessian for %s", name)

    success = True
    for _ in range(num_trials):
        tf = 1.0 + rng.random()
        x0 = rng.uniform(-1.0, 1.0, ocp.nx)
        xf = rng.uniform(-1.0, 1.0, ocp.nx)
        q = rng.uniform(-1.0, 1.0, ocp.nq)
        t = 1.0 + rng.random()
        x = rng.uniform(-1.0, 1.0, ocp.nx)
        u = rng.uniform(-1.0, 1.0, ocp.nu)

        endpoint_args = (tf, x0, xf, q)
        running_args = (t, x, u)
        arg_sets = {"theta": endpoint_args, "ce": endpoint_args, "f": running_args, "g": running_args, "cr": running_args}

        for name in names:
            fn = getattr(ocp, name)
            args = arg_sets[name]
            for order, method in ((1, "jacobian"), (2, "hessian")):
                if not hasattr(fn, method):
                    continue
                analytic = _dense(getattr(fn, method)(*args))
                numeric = dr(fn, args, order)[order]
                if not _matches(analytic, numeric, eps):
                    _log.warning(
                        "error in derivative %d of %s: got\n%s\nbut expected\n%s", order, name, analytic, numeric
                    )
                    success = False

    return success