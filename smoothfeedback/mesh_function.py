"""Evaluate functions, integrals and dynamics constraints on collocation meshes.

A mesh function is a mapping of the variables ``(t0, tf, X, U)`` where ``X``
holds ``N + 1`` state vectors and ``U`` holds ``N`` input vectors, ``N`` being
the number of collocation points. The variables are ordered as

    t0 (1), tf (1), x_0 ... x_N (nx * (N + 1)), u_0 ... u_{N-1} (nu * N)

so that there are ``2 + nx * (N + 1) + nu * N`` of them in total.

The mesh object must provide ``n_colloc()``, ``all_nodes()`` (``N + 1`` nodes in
``[0, 1]``), ``all_weights()`` (``N`` quadrature weights), ``n_ivals()``,
``n_colloc_ival(ival)``, ``interval_weights(ival)`` and
``interval_diffmat_unscaled(ival)`` returning ``(alpha, D)`` where ``alpha * D``
is the ``(K + 1) x K`` differentiation matrix of the interval.

Functions ``f(t, x, u)`` are differentiated numerically unless they carry
``jacobian`` (and, for second order, ``hessian``) methods.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .diff import dr


@dataclass
class MeshValue:
    """Value of a mesh function and, depending on ``deriv``, its derivatives.

    ``F`` is the function value, ``dF`` the jacobian (outputs x variables) and
    ``d2F`` the upper triangle of the hessian of ``lam . F`` (variables x
    variables). ``lam`` must be set before a second-order evaluation.
    """

    deriv: int = 0
    F: np.ndarray = field(default_factory=lambda: np.zeros(0))
    dF: np.ndarray | None = None
    d2F: np.ndarray | None = None
    lam: np.ndarray | None = None
    allocated: bool = False

    def __post_init__(self) -> None:
        if self.deriv not in (0, 1, 2):
            raise ValueError(f"differentiation order must be 0, 1 or 2, got {self.deriv}")
        if self.lam is not None:
            self.lam = np.atleast_1d(np.asarray(self.lam, dtype=float)).ravel()

    def set_zero(self) -> None:
        """Reset the value and derivatives to zero, keeping their shapes."""
        self.F = np.zeros_like(np.asarray(self.F, dtype=float))
        if self.deriv >= 1 and self.dF is not None:
            self.dF = np.zeros_like(self.dF)
        if self.deriv >= 2 and self.d2F is not None:
            self.d2F = np.zeros_like(self.d2F)

    def _allocate(self, num_outs: int, num_vars: int) -> None:
        shapes_ok = (
            self.allocated
            and np.shape(self.F) == (num_outs,)
            and (self.deriv < 1 or (self.dF is not None and self.dF.shape == (num_outs, num_vars)))
            and (self.deriv < 2 or (self.d2F is not None and self.d2F.shape == (num_vars, num_vars)))
        )
        if not shapes_ok:
            self.F = np.zeros(num_outs)
            if self.deriv >= 1:
                self.dF = np.zeros((num_outs, num_vars))
            if self.deriv >= 2:
                self.d2F = np.zeros((num_vars, num_vars))
            self.allocated = True
        self.set_zero()
        if self.deriv >= 2:
            if self.lam is None or self.lam.size != num_outs:
                raise ValueError(f"multipliers of size {num_outs} must be set for second derivatives")


def _vec(value: Any) -> np.ndarray:
    return np.atleast_1d(np.asarray(value, dtype=float)).ravel()


def _dense(mat: Any) -> np.ndarray:
    if hasattr(mat, "toarray"):
        mat = mat.toarray()
    return np.atleast_2d(np.asarray(mat, dtype=float))


def _evaluate(f: Callable[..., Any], t: float, x: np.ndarray, u: np.ndarray, order: int) -> tuple:
    args = (t, x, u)
    analytic = order >= 1 and hasattr(f, "jacobian") and (order < 2 or hasattr(f, "hessian"))
    if analytic:
        out: list[Any] = [_vec(f(*args)), _dense(f.jacobian(*args))]
        if order == 2:
            out.append(_dense(f.hessian(*args)))
        return tuple(out)
    vals = dr(f, args, order)
    return (_vec(vals[0]),) + tuple(vals[1:])


def _block_add(dest: np.ndarray, r0: int, c0: int, src: Any, scale: float = 1.0, upper: bool = False) -> None:
    block = np.atleast_2d(np.asarray(src, dtype=float)) * scale
    rows, cols = block.shape
    if upper:
        mask = (r0 + np.arange(rows))[:, None] <= (c0 + np.arange(cols))[None, :]
        block = np.where(mask, block, 0.0)
    dest[r0 : r0 + rows, c0 : c0 + cols] += block


def _prepare(mesh: Any, xs: Iterable[Any], us: Iterable[Any]):
    n = mesh.n_colloc()
    xs = [_vec(x) for x in xs]
    us = [_vec(u) for u in us]
    if n <= 0 or not xs:
        raise ValueError("mesh and state sequence must be non-empty")
    if len(xs) < n or len(us) < n:
        raise ValueError(f"at least {n} states and inputs are required")
    nodes = np.asarray(list(mesh.all_nodes()), dtype=float)[:n]
    weights = np.asarray(list(mesh.all_weights()), dtype=float)[:n]
    return n, nodes, weights, xs, us, xs[0].size, us[0].size


def _hessian_terms(
    d2F: np.ndarray,
    hess_j: np.ndarray,
    df_row: np.ndarray | None,
    wl: float,
    dt: float,
    tau: float,
    x_d: int,
    u_d: int,
    nx: int,
    nu: int,
) -> None:
    """Add second-order terms for one output of one collocation point."""
    mtau = 1.0 - tau
    xsl = slice(1, 1 + nx)
    usl = slice(1 + nx, 1 + nx + nu)

    h_tt = hess_j[0:1, 0:1]
    h_tx = hess_j[0:1, xsl]
    h_tu = hess_j[0:1, usl]

    _block_add(d2F, 0, 0, h_tt, wl * dt * mtau * mtau, True)
    _block_add(d2F, 0, 1, h_tt, wl * dt * mtau * tau, True)
    _block_add(d2F, 0, x_d, h_tx, wl * dt * mtau, True)
    _block_add(d2F, 0, u_d, h_tu, wl * dt * mtau, True)

    _block_add(d2F, 1, 1, h_tt, wl * dt * tau * tau, True)
    _block_add(d2F, 1, x_d, h_tx, wl * dt * tau, True)
    _block_add(d2F, 1, u_d, h_tu, wl * dt * tau, True)

    _block_add(d2F, x_d, x_d, hess_j[xsl, xsl], wl * dt, True)
    _block_add(d2F, x_d, u_d, hess_j[xsl, usl], wl * dt, True)
    _block_add(d2F, u_d, u_d, hess_j[usl, usl], wl * dt, True)

    if df_row is not None:
        d_t = df_row[:, 0:1]
        d_x = df_row[:, xsl]
        d_u = df_row[:, usl]
        _block_add(d2F, 0, 0, d_t, -wl * 2.0 * mtau, True)
        _block_add(d2F, 0, 1, d_t, wl * (1.0 - 2.0 * tau), True)
        _block_add(d2F, 0, x_d, d_x, -wl, True)
        _block_add(d2F, 0, u_d, d_u, -wl, True)
        _block_add(d2F, 1, 1, d_t, wl * 2.0 * tau, True)
        _block_add(d2F, 1, x_d, d_x, wl, True)
        _block_add(d2F, 1, u_d, d_u, wl, True)


def mesh_eval(
    out: MeshValue,
    mesh: Any,
    f: Callable[..., Any],
    t0: float,
    tf: float,
    xs: Iterable[Any],
    us: Iterable[Any],
    scale: bool = False,
) -> None:
    """Evaluate ``f(t0 + (tf - t0) tau_i, x_i, u_i)`` at every collocation point.

    The values are stacked into ``out.F``; with ``scale`` each block is
    multiplied by its quadrature weight. Derivatives are written according to
    ``out.deriv``.
    """
    n, nodes, weights, xs, us, nx, nu = _prepare(mesh, xs, us)
    order = out.deriv
    evals = [_evaluate(f, t0 + (tf - t0) * tau, xs[i], us[i], order) for i, tau in enumerate(nodes)]
    nf = evals[0][0].size
    num_vars = 2 + nx * (n + 1) + nu * n
    out._allocate(nf * n, num_vars)

    for i, (tau, w_quad, vals) in enumerate(zip(nodes, weights, evals)):
        w = w_quad if scale else 1.0
        mtau = 1.0 - tau
        row0 = nf * i
        out.F[row0 : row0 + nf] = w * vals[0]

        if order >= 1:
            df = vals[1]
            x_d = 2 + nx * i
            u_d = 2 + nx * (n + 1) + nu * i
            _block_add(out.dF, row0, 0, df[:, 0:1], w * mtau)
            _block_add(out.dF, row0, 1, df[:, 0:1], w * tau)
            _block_add(out.dF, row0, x_d, df[:, 1 : 1 + nx], w)
            _block_add(out.dF, row0, u_d, df[:, 1 + nx : 1 + nx + nu], w)

            if order >= 2:
                d2f = vals[2]
                nvar = 1 + nx + nu
                for j in range(nf):
                    wl = w * out.lam[row0 + j]
                    hess_j = d2f[:, nvar * j : nvar * (j + 1)]
                    _hessian_terms(out.d2F, hess_j, None, wl, 1.0, tau, x_d, u_d, nx, nu)


def mesh_integrate(
    out: MeshValue,
    mesh: Any,
    f: Callable[..., Any],
    t0: float,
    tf: float,
    xs: Iterable[Any],
    us: Iterable[Any],
) -> None:
    """Approximate the integral of ``f`` over ``[t0, tf]`` by mesh quadrature.

    Computes ``(tf - t0) * sum_i w_i f(t0 + (tf - t0) tau_i, x_i, u_i)`` into
    ``out.F`` together with the derivatives requested by ``out.deriv``.
    """
    n, nodes, weights, xs, us, nx, nu = _prepare(mesh, xs, us)
    order = out.deriv
    evals = [_evaluate(f, t0 + (tf - t0) * tau, xs[i], us[i], order) for i, tau in enumerate(nodes)]
    nf = evals[0][0].size
    num_vars = 2 + nx * (n + 1) + nu * n
    out._allocate(nf, num_vars)
    dt = tf - t0

    for i, (tau, w, vals) in enumerate(zip(nodes, weights, evals)):
        mtau = 1.0 - tau
        fval = vals[0]
        out.F += w * dt * fval

        if order >= 1:
            df = vals[1]
            x_d = 2 + nx * i
            u_d = 2 + nx * (n + 1) + nu * i
            _block_add(out.dF, 0, 0, df[:, 0:1], w * dt * mtau)
            _block_add(out.dF, 0, 0, fval[:, None], -w)
            _block_add(out.dF, 0, 1, df[:, 0:1], w * dt * tau)
            _block_add(out.dF, 0, 1, fval[:, None], w)
            _block_add(out.dF, 0, x_d, df[:, 1 : 1 + nx], w * dt)
            _block_add(out.dF, 0, u_d, df[:, 1 + nx : 1 + nx + nu], w * dt)

            if order >= 2:
                d2f = vals[2]
                nvar = 1 + nx + nu
                for j in range(nf):
                    wl = w * out.lam[j]
                    hess_j = d2f[:, nvar * j : nvar * (j + 1)]
                    _hessian_terms(out.d2F, hess_j, df[j : j + 1, :], wl, dt, tau, x_d, u_d, nx, nu)


def mesh_dyn(
    out: MeshValue,
    mesh: Any,
    f: Callable[..., Any],
    t0: float,
    tf: float,
    xs: Iterable[Any],
    us: Iterable[Any],
) -> None:
    """Evaluate the collocation dynamics constraints over a mesh.

    For each collocation point ``i`` of an interval the constraint block is
    ``w_i * ((tf - t0) f(t_i, x_i, u_i) - sum_k D[k, i] x_k)`` where ``D`` is the
    interval differentiation matrix. All blocks are stacked into ``out.F``.
    """
    n, nodes, weights, xs, us, nx, nu = _prepare(mesh, xs, us)
    if len(xs) < n + 1:
        raise ValueError(f"{n + 1} states are required")
    order = out.deriv
    evals = [_evaluate(f, t0 + (tf - t0) * tau, xs[i], us[i], order) for i, tau in enumerate(nodes)]
    if evals[0][0].size != nx:
        raise ValueError("dynamics output must have the state dimension")
    num_vars = 2 + nx * (n + 1) + nu * n
    out._allocate(nx * n, num_vars)
    dt = tf - t0

    for i, (tau, w, vals) in enumerate(zip(nodes, weights, evals)):
        mtau = 1.0 - tau
        row0 = nx * i
        fval = vals[0]
        out.F[row0 : row0 + nx] += w * dt * fval

        if order >= 1:
            df = vals[1]
            x_d = 2 + nx * i
            u_d = 2 + nx * (n + 1) + nu * i
            _block_add(out.dF, row0, 0, fval[:, None], -w)
            _block_add(out.dF, row0, 0, df[:, 0:1], w * dt * mtau)
            _block_add(out.dF, row0, 1, fval[:, None], w)
            _block_add(out.dF, row0, 1, df[:, 0:1], w * dt * tau)
            _block_add(out.dF, row0, x_d, df[:, 1 : 1 + nx], w * dt)
            _block_add(out.dF, row0, u_d, df[:, 1 + nx : 1 + nx + nu], w * dt)

            if order >= 2:
                d2f = vals[2]
                nvar = 1 + nx + nu
                for j in range(nx):
                    wl = w * out.lam[row0 + j]
                    hess_j = d2f[:, nvar * j : nvar * (j + 1)]
                    _hessian_terms(out.d2F, hess_j, df[j : j + 1, :], wl, dt, tau, x_d, u_d, nx, nu)

    # The differentiation part is linear in the states and has no second derivative.
    def add_linear(ival: int, idx0: int, nival: int, i: int, x: np.ndarray) -> None:
        alpha, dus = mesh.interval_diffmat_unscaled(ival)
        dus = np.asarray(dus, dtype=float)
        ival_weights = list(mesh.interval_weights(ival))[:nival]
        for j, w in enumerate(ival_weights):
            row0 = (idx0 + j) * nx
            coef = -w * alpha * dus[i - idx0, j]
            out.F[row0 : row0 + nx] += coef * x
            if order >= 1:
                cols = 2 + nx * i + np.arange(nx)
                out.dF[row0 + np.arange(nx), cols] += coef

    ival = 0
    ival_idx0 = 0
    nival = mesh.n_colloc_ival(ival)
    for i, x in enumerate(xs[: n + 1]):
        if i == ival_idx0 + nival:
            add_linear(ival, ival_idx0, nival, i, x)
            ival += 1
            if ival < mesh.n_ivals():
                ival_idx0 += nival
                nival = mesh.n_colloc_ival(ival)
        if i < n:
            add_linear(ival, ival_idx0, nival, i, x)