"""Relative dynamics errors of a trajectory over a collocation mesh."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import numpy as np


def mesh_dyn_error(
    f: Callable[[float, np.ndarray, np.ndarray], Any],
    mesh: Any,
    t0: float,
    tf: float,
    xfun: Callable[[float], Any],
    ufun: Callable[[float], Any],
) -> np.ndarray:
    """Return the maximal relative dynamics error for every interval of ``mesh``.

    ``mesh`` must provide ``n_ivals()``, ``n_colloc_ival(ival)``,
    ``interval_nodes(ival)`` (the ``K + 1`` nodes of the interval in ``[0, 1]``,
    including the end point) and ``interval_intmat(ival)`` (the ``K x K``
    integration matrix of the interval).

    Inside each interval the dynamics ``f`` evaluated along ``xfun``/``ufun`` is
    integrated and compared with the trajectory values at the nodes.
    """
    errors = np.empty(mesh.n_ivals())

    for ival in range(mesh.n_ivals()):
        k = mesh.n_colloc_ival(ival)
        taus = np.asarray(mesh.interval_nodes(ival), dtype=float)[: k + 1]

        x_cols = []
        f_cols = []
        for tau in taus:
            tj = t0 + (tf - t0) * tau
            xj = np.atleast_1d(np.asarray(xfun(tj), dtype=float)).ravel()
            uj = np.atleast_1d(np.asarray(ufun(tj), dtype=float)).ravel()
            x_cols.append(xj)
            f_cols.append(np.atleast_1d(np.asarray(f(tj, xj, uj), dtype=float)).ravel())

        xval = np.column_stack(x_cols)
        fval = np.column_stack(f_cols)
        if xval.shape[0] == 0:
            raise ValueError("state dimension must be positive")
        if fval.shape != xval.shape:
            raise ValueError("dynamics output must have the state dimension")

        intmat = np.asarray(mesh.interval_intmat(ival), dtype=float)
        x_est = xval[:, :1] + (tf - t0) * fval[:, :k] @ intmat

        e_abs = np.linalg.norm(x_est - xval[:, 1:], axis=0)
        e_rel = e_abs / (1.0 + np.linalg.norm(xval[:, 1:], axis=0).max())
        errors[ival] = e_rel.max()

    return errors