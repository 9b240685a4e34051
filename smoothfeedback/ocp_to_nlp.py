"""Transcription of an optimal control problem into a nonlinear program.

The problem is discretised by collocation on a mesh. Besides the interface
described in :mod:`smoothfeedback.mesh_function`, converting solutions needs
the mesh method ``evaluate(tau, values, deriv, extend)``. It interpolates the
sequence of vectors ``values`` at ``tau`` in ``[0, 1]``. With ``extend`` the
values are given at all ``N + 1`` nodes, otherwise only at the ``N``
collocation nodes.

The NLP variables are ordered as ``tf (1), q (nq), x_0 ... x_N, u_0 ... u_{N-1}``.
The constraints are ordered as dynamics (``nx * N``), integrals (``nq``),
running constraints (``ncr * N``) and end constraints (``nce``).
"""

from __future__ import annotations

import enum
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from itertools import accumulate, combinations_with_replacement
from typing import Any

import numpy as np

from .diff import dr
from .mesh_function import MeshValue, mesh_dyn, mesh_eval, mesh_integrate
from .ocp import OCP, OCPSolution


class NLPStatus(enum.Enum):
    """Outcome of solving a nonlinear program."""

    OPTIMAL = "optimal"
    PRIMAL_INFEASIBLE = "primal_infeasible"
    DUAL_INFEASIBLE = "dual_infeasible"
    MAX_ITERATIONS = "max_iterations"
    MAX_TIME = "max_time"
    UNKNOWN = "unknown"


def _empty() -> np.ndarray:
    return np.zeros(0)


@dataclass
class NLPSolution:
    """Primal and dual solution of a nonlinear program.

    ``zl`` and ``zu`` are the multipliers of the variable bounds and ``lam``
    the multipliers of the constraints.
    """

    status: NLPStatus = NLPStatus.UNKNOWN
    x: np.ndarray = field(default_factory=_empty)
    zl: np.ndarray = field(default_factory=_empty)
    zu: np.ndarray = field(default_factory=_empty)
    lam: np.ndarray = field(default_factory=_empty)
    iter: int = 0


def _vec(value: Any) -> np.ndarray:
    return np.atleast_1d(np.asarray(value, dtype=float)).ravel()


def _dense(mat: Any) -> np.ndarray:
    if hasattr(mat, "toarray"):
        mat = mat.toarray()
    return np.atleast_2d(np.asarray(mat, dtype=float))


def _derivatives(fn: Callable[..., Any], args: tuple, order: int) -> tuple:
    """Value and derivatives of ``fn``, analytic where ``fn`` provides them."""
    if hasattr(fn, "jacobian") and (order < 2 or hasattr(fn, "hessian")):
        out: list[Any] = [fn(*args), _dense(fn.jacobian(*args))]
        if order == 2:
            out.append(_dense(fn.hessian(*args)))
        return tuple(out)
    vals = dr(fn, args, order)
    return (vals[0],) + tuple(_dense(v) for v in vals[1:])


def _add_upper(dest: np.ndarray, r0: int, c0: int, block: Any, scale: float = 1.0) -> None:
    """Add a hessian block so that only the upper triangle of ``dest`` is used.

    A block on the diagonal keeps its upper part; a block below the diagonal is
    added transposed to its mirror position.
    """
    block = np.atleast_2d(np.asarray(block, dtype=float)) * scale
    nr, nc = block.shape
    rr, cc = np.broadcast_arrays((r0 + np.arange(nr))[:, None], (c0 + np.arange(nc))[None, :])
    if r0 == c0:
        keep = rr <= cc
        np.add.at(dest, (rr[keep], cc[keep]), block[keep])
    else:
        np.add.at(dest, (np.minimum(rr, cc), np.maximum(rr, cc)), block)


def ocp_nlp_structure(ocp: OCP, mesh: Any) -> tuple[tuple[int, ...], ...]:
    """Return ``(var_beg, var_len, con_beg, con_len)`` of the NLP for ``ocp`` on ``mesh``.

    The ``*_beg`` tuples have one more entry than the ``*_len`` tuples; the last
    entry is the total number of variables or constraints.
    """
    n = mesh.n_colloc()
    var_len = (1, ocp.nq, ocp.nx * (n + 1), ocp.nu * n)
    con_len = (ocp.nx * n, ocp.nq, ocp.ncr * n, ocp.nce)
    var_beg = tuple(accumulate(var_len, initial=0))
    con_beg = tuple(accumulate(con_len, initial=0))
    return var_beg, var_len, con_beg, con_len


class OCPNLP:
    """Nonlinear program representing an :class:`OCP` collocated on a mesh.

    Hessians are returned as upper triangular matrices.
    """

    def __init__(self, ocp: OCP, mesh: Any) -> None:
        self.ocp = ocp
        self.mesh = mesh
        self._n_colloc = mesh.n_colloc()
        nx, nq = ocp.nx, ocp.nq

        var_beg, var_len, con_beg, con_len = ocp_nlp_structure(ocp, mesh)
        self._tf_b, q_b, x_b, u_b, self.n = var_beg
        _, q_l, x_l, u_l = var_len
        d_b, qc_b, cr_b, ce_b, self.m = con_beg
        d_l, qc_l, cr_l, ce_l = con_len

        self._q = slice(q_b, q_b + q_l)
        self._x = slice(x_b, x_b + x_l)
        self._u = slice(u_b, u_b + u_l)
        self._x0_b = x_b
        self._xf_b = x_b + x_l - nx
        self._x_len = x_l
        self._u_len = u_l

        self._dcon = slice(d_b, d_b + d_l)
        self._qcon = slice(qc_b, qc_b + qc_l)
        self._crcon = slice(cr_b, cr_b + cr_l)
        self._cecon = slice(ce_b, ce_b + ce_l)

        # (destination start, source columns) of the endpoint arguments tf, x0, xf, q
        self._endpoint_blocks = (
            (self._tf_b, slice(0, 1)),
            (self._x0_b, slice(1, 1 + nx)),
            (self._xf_b, slice(1 + nx, 1 + 2 * nx)),
            (q_b, slice(1 + 2 * nx, 1 + 2 * nx + nq)),
        )
        self._n_outer = 1 + 2 * nx + nq

        # (destination start, mesh variable columns) for tf, X and U
        self._mesh_blocks = (
            (self._tf_b, slice(1, 2)),
            (x_b, slice(2, 2 + x_l)),
            (u_b, slice(2 + x_l, 2 + x_l + u_l)),
        )

        weights = np.asarray(list(mesh.all_weights()), dtype=float)[: self._n_colloc]
        self._w_scaling = 1.0 / max(1e-6, float(weights.max(initial=0.0)))

        self.xl = np.full(self.n, -np.inf)
        self.xl[self._tf_b] = 0.0
        self.xu = np.full(self.n, np.inf)

        self.gl = np.zeros(self.m)
        self.gu = np.zeros(self.m)
        cr_scale = self._w_scaling * np.repeat(weights, ocp.ncr)
        self.gl[self._crcon] = np.tile(ocp.crl, self._n_colloc) * cr_scale
        self.gu[self._crcon] = np.tile(ocp.cru, self._n_colloc) * cr_scale
        self.gl[self._cecon] = ocp.cel
        self.gu[self._cecon] = ocp.ceu

        self._dyn = {order: MeshValue(deriv=order) for order in (0, 1, 2)}
        self._int = {order: MeshValue(deriv=order) for order in (0, 1, 2)}
        self._cr = {order: MeshValue(deriv=order) for order in (0, 1, 2)}

    def _unpack(self, x: Any):
        x = _vec(x)
        if x.size != self.n:
            raise ValueError(f"expected {self.n} variables, got {x.size}")
        nx = self.ocp.nx
        tf = float(x[self._tf_b])
        x0 = x[self._x0_b : self._x0_b + nx].copy()
        xf = x[self._xf_b : self._xf_b + nx].copy()
        q = x[self._q].copy()
        states = x[self._x].reshape(self._n_colloc + 1, nx)
        inputs = x[self._u].reshape(self._n_colloc, self.ocp.nu)
        return tf, x0, xf, q, states, inputs

    def _run_mesh(self, order: int, tf: float, states: np.ndarray, inputs: np.ndarray) -> None:
        ocp, mesh = self.ocp, self.mesh
        mesh_dyn(self._dyn[order], mesh, ocp.f, 0.0, tf, states, inputs)
        mesh_integrate(self._int[order], mesh, ocp.g, 0.0, tf, states, inputs)
        mesh_eval(self._cr[order], mesh, ocp.cr, 0.0, tf, states, inputs, True)

    def f(self, x: Any) -> float:
        """Objective value."""
        tf, x0, xf, q, _, _ = self._unpack(x)
        return float(np.asarray(self.ocp.theta(tf, x0, xf, q), dtype=float).ravel()[0])

    def df_dx(self, x: Any) -> np.ndarray:
        """Objective gradient as a ``1 x n`` matrix."""
        tf, x0, xf, q, _, _ = self._unpack(x)
        _, dfval = _derivatives(self.ocp.theta, (tf, x0, xf, q), 1)
        out = np.zeros((1, self.n))
        for dest, src in self._endpoint_blocks:
            width = src.stop - src.start
            out[:, dest : dest + width] += dfval[:, src]
        return out

    def d2f_dx2(self, x: Any) -> np.ndarray:
        """Upper triangle of the objective hessian (``n x n``)."""
        tf, x0, xf, q, _, _ = self._unpack(x)
        _, _, d2fval = _derivatives(self.ocp.theta, (tf, x0, xf, q), 2)
        out = np.zeros((self.n, self.n))
        for (ra, sa), (rb, sb) in combinations_with_replacement(self._endpoint_blocks, 2):
            _add_upper(out, ra, rb, d2fval[sa, sb])
        return out

    def g(self, x: Any) -> np.ndarray:
        """Constraint values."""
        tf, x0, xf, q, states, inputs = self._unpack(x)
        self._run_mesh(0, tf, states, inputs)
        ws = self._w_scaling
        out = np.zeros(self.m)
        out[self._dcon] = ws * self._dyn[0].F
        out[self._qcon] = ws * (self._int[0].F - q)
        out[self._crcon] = ws * self._cr[0].F
        out[self._cecon] = _vec(self.ocp.ce(tf, x0, xf, q))
        return out

    def dg_dx(self, x: Any) -> np.ndarray:
        """Constraint jacobian (``m x n``)."""
        tf, x0, xf, q, states, inputs = self._unpack(x)
        self._run_mesh(1, tf, states, inputs)
        _, dceval = _derivatives(self.ocp.ce, (tf, x0, xf, q), 1)
        ws = self._w_scaling

        out = np.zeros((self.m, self.n))
        for rows, value in ((self._dcon, self._dyn[1]), (self._qcon, self._int[1]), (self._crcon, self._cr[1])):
            for dest, src in self._mesh_blocks:
                width = src.stop - src.start
                out[rows, dest : dest + width] += ws * value.dF[:, src]
        out[self._qcon, self._q] -= ws * np.eye(self.ocp.nq)

        for dest, src in self._endpoint_blocks:
            width = src.stop - src.start
            out[self._cecon, dest : dest + width] += dceval[:, src]
        return out

    def d2g_dx2(self, x: Any, lam: Any) -> np.ndarray:
        """Upper triangle of the hessian of ``lam . g`` (``n x n``)."""
        tf, x0, xf, q, states, inputs = self._unpack(x)
        lam = _vec(lam)
        if lam.size != self.m:
            raise ValueError(f"expected {self.m} multipliers, got {lam.size}")

        self._dyn[2].lam = lam[self._dcon].copy()
        self._int[2].lam = lam[self._qcon].copy()
        self._cr[2].lam = lam[self._crcon].copy()
        self._run_mesh(2, tf, states, inputs)
        _, _, d2ceval = _derivatives(self.ocp.ce, (tf, x0, xf, q), 2)
        ws = self._w_scaling

        out = np.zeros((self.n, self.n))
        for value in (self._dyn[2], self._int[2], self._cr[2]):
            for (ra, sa), (rb, sb) in combinations_with_replacement(self._mesh_blocks, 2):
                _add_upper(out, ra, rb, value.d2F[sa, sb], ws)

        for j, lam_j in enumerate(lam[self._cecon]):
            b0 = self._n_outer * j
            for (ra, sa), (rb, sb) in combinations_with_replacement(self._endpoint_blocks, 2):
                cols = slice(b0 + sb.start, b0 + sb.stop)
                _add_upper(out, ra, rb, d2ceval[sa, cols], lam_j)
        return out


def ocp_to_nlp(ocp: OCP, mesh: Any) -> OCPNLP:
    """Formulate ``ocp`` as a nonlinear program using collocation on ``mesh``."""
    return OCPNLP(ocp, mesh)


def _interpolant(mesh: Any, values: np.ndarray, t0: float, tf: float, extend: bool) -> Callable[[float], np.ndarray]:
    columns: Sequence[np.ndarray] = [row.copy() for row in values]

    def trajectory(t: float) -> np.ndarray:
        return _vec(mesh.evaluate((t - t0) / (tf - t0), columns, 0, extend))

    return trajectory


def nlpsol_to_ocpsol(ocp: OCP, mesh: Any, nlp_sol: NLPSolution) -> OCPSolution:
    """Convert a solution of the transcribed NLP into a solution of ``ocp``."""
    n = mesh.n_colloc()
    var_beg, var_len, con_beg, con_len = ocp_nlp_structure(ocp, mesh)
    tf_b, q_b, x_b, u_b, _ = var_beg
    _, q_l, x_l, u_l = var_len
    d_b, qc_b, cr_b, ce_b, _ = con_beg
    d_l, qc_l, cr_l, ce_l = con_len

    x = _vec(nlp_sol.x)
    lam = _vec(nlp_sol.lam)
    t0 = 0.0
    tf = float(x[tf_b])

    states = x[x_b : x_b + x_l].reshape(n + 1, ocp.nx)
    inputs = x[u_b : u_b + u_l].reshape(n, ocp.nu)
    lam_dyn = lam[d_b : d_b + d_l].reshape(n, ocp.nx)
    lam_cr = lam[cr_b : cr_b + cr_l].reshape(n, ocp.ncr)

    return OCPSolution(
        t0=t0,
        tf=tf,
        Q=x[q_b : q_b + q_l].copy(),
        u=_interpolant(mesh, inputs, t0, tf, False),
        x=_interpolant(mesh, states, t0, tf, True),
        lambda_q=lam[qc_b : qc_b + qc_l].copy(),
        lambda_ce=lam[ce_b : ce_b + ce_l].copy(),
        lambda_dyn=_interpolant(mesh, lam_dyn, t0, tf, False),
        lambda_cr=_interpolant(mesh, lam_cr, t0, tf, False),
    )


def ocpsol_to_nlpsol(ocp: OCP, mesh: Any, ocpsol: OCPSolution) -> NLPSolution:
    """Convert a solution of ``ocp`` into a solution of the transcribed NLP.

    Multiplier trajectories that are missing are taken as zero.
    """
    n_colloc = mesh.n_colloc()
    var_beg, _, con_beg, _ = ocp_nlp_structure(ocp, mesh)
    tf_b, q_b, x_b, u_b, n = var_beg
    d_b, qc_b, cr_b, ce_b, m = con_beg
    nx, nu, ncr = ocp.nx, ocp.nu, ocp.ncr

    t0 = 0.0
    tf = float(ocpsol.tf)

    x = np.zeros(n)
    lam = np.zeros(m)
    x[tf_b] = tf
    x[q_b : q_b + ocp.nq] = _vec(ocpsol.Q)
    lam[qc_b : qc_b + ocp.nq] = _vec(ocpsol.lambda_q) if np.size(ocpsol.lambda_q) else 0.0
    lam[ce_b : ce_b + ocp.nce] = _vec(ocpsol.lambda_ce) if np.size(ocpsol.lambda_ce) else 0.0

    for i, tau in enumerate(mesh.all_nodes()):
        t = t0 + tau * (tf - t0)
        x[x_b + i * nx : x_b + (i + 1) * nx] = _vec(ocpsol.x(t))
        if i < n_colloc:
            x[u_b + i * nu : u_b + (i + 1) * nu] = _vec(ocpsol.u(t))
            if ocpsol.lambda_dyn is not None:
                lam[d_b + i * nx : d_b + (i + 1) * nx] = _vec(ocpsol.lambda_dyn(t))
            if ocpsol.lambda_cr is not None:
                lam[cr_b + i * ncr : cr_b + (i + 1) * ncr] = _vec(ocpsol.lambda_cr(t))

    return NLPSolution(status=NLPStatus.UNKNOWN, x=x, zl=np.zeros(n), zu=np.zeros(n), lam=lam)