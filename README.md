# smoothfeedback

Tools for posing optimal control problems (OCPs) on Euclidean state and input
spaces and for transcribing them into nonlinear programs (NLPs) by
collocation on a mesh.

## Modules

- `smoothfeedback.ocp`: the `OCP` problem definition, the `OCPSolution`
  container and `check_ocp_derivatives(ocp, num_trials=1, eps=1e-4, rng=None)`.
  That function compares the analytic derivatives a problem's functions
  supply with numerical ones at random points. It reports mismatches through
  the `logging` module and returns `True` when all of them agree.
- `smoothfeedback.diff`: `dr(f, args, order=1, eps=None)` returns the value of
  `f(*args)`, and for order 1 or 2 also a central-difference Jacobian
  (`nf x n`) and Hessian (`n x nf*n`, where output `j` fills columns
  `j*n .. (j+1)*n`). `split_args` flattens a tuple of scalars and arrays into
  one vector and returns a function that rebuilds the tuple.
- `smoothfeedback.dyn_error`: `mesh_dyn_error(f, mesh, t0, tf, xfun, ufun)`
  returns the maximal relative dynamics error of a trajectory on each mesh
  interval.
- `smoothfeedback.mesh_function`: `mesh_eval`, `mesh_integrate` and
  `mesh_dyn` evaluate a function at the collocation points, its quadrature
  integral, and the collocation dynamics constraints. The value and, by
  `MeshValue.deriv` (0, 1 or 2), the Jacobian `dF` and the upper-triangular
  Hessian `d2F` of `lam . F` are stored in a `MeshValue`. Its multipliers
  `lam` must be set before a second-order evaluation.
- `smoothfeedback.ocp_to_nlp`: `ocp_to_nlp(ocp, mesh)` builds an `OCPNLP`.
  `ocp_nlp_structure` gives its variable and constraint layout.
  `nlpsol_to_ocpsol` and `ocpsol_to_nlpsol` convert between `NLPSolution`
  (with an `NLPStatus`) and `OCPSolution`.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## The problem

An `OCP` describes

```
min   theta(tf, x0, xf, q)
s.t.  dx/dt = f(t, x, u)
      q     = integral of g(t, x, u) over [0, tf]
      crl <= cr(t, x, u) <= cru
      cel <= ce(tf, x0, xf, q) <= ceu
```

The functions are plain callables taking floats and NumPy arrays. The state
and input dimensions are given as `state_dim` and `input_dim`. The number of
integrals and constraints is found by calling `g`, `cr` and `ce` once at
zero. Bounds that are left out default to zeros. If a function object has
`jacobian` (and `hessian`) methods, they serve as its analytic derivatives,
in the layout of `dr`. Otherwise derivatives are computed numerically.

## The NLP

The variables are ordered `tf, q, x_0 ... x_N, u_0 ... u_{N-1}`. The
constraints are ordered as dynamics, integrals, running constraints and end
constraints. Dynamics, integral and running constraints are scaled by the
inverse of the largest quadrature weight. An `OCPNLP` has the sizes `n` and
`m`, the variable bounds `xl` and `xu` (only `tf >= 0`), and the constraint
bounds `gl` and `gu`. It also has the methods `f`, `df_dx`, `d2f_dx2`, `g`,
`dg_dx` and `d2g_dx2(x, lam)`. Hessians are returned as dense upper
triangular matrices.

```python
import numpy as np
from smoothfeedback.ocp import OCP
from smoothfeedback.ocp_to_nlp import ocp_to_nlp

ocp = OCP(
    theta=lambda tf, x0, xf, q: q[0],
    f=lambda t, x, u: np.array([x[1], u[0]]),
    g=lambda t, x, u: np.array([x @ x + u @ u]),
    cr=lambda t, x, u: np.array([u[0]]),
    ce=lambda tf, x0, xf, q: np.concatenate(([tf], x0, xf)),
    state_dim=2,
    input_dim=1,
    crl=np.array([-1.0]),
    cru=np.array([1.0]),
    cel=np.array([3.0, 1.0, 1.0, 0.0, 0.0]),
    ceu=np.array([6.0, 1.0, 1.0, 0.0, 0.0]),
)

nlp = ocp_to_nlp(ocp, mesh)  # mesh: an object with the interface below
x = np.ones(nlp.n)
print(nlp.f(x), nlp.g(x).shape, nlp.dg_dx(x).shape)
```

## The mesh interface

The package does not define a mesh. The functions take any object with
these methods:

- `n_colloc()`, `all_nodes()` (the `N + 1` nodes in `[0, 1]`) and
  `all_weights()` (the `N` quadrature weights);
- `n_ivals()`, `n_colloc_ival(ival)`, `interval_nodes(ival)`,
  `interval_weights(ival)`, `interval_intmat(ival)` and
  `interval_diffmat_unscaled(ival)`, which returns `(alpha, D)`;
- `evaluate(tau, values, deriv, extend)`, used only by `nlpsol_to_ocpsol`
  to interpolate trajectories.

## What the package does not do

It contains no collocation mesh class with refinement and no NLP or QP
solver. To solve an `OCPNLP`, pass its functions and bounds to a solver of
your choice. The result can then be turned back into trajectories with
`nlpsol_to_ocpsol`.