import logging
import torch
from .diffcache import adjoint_diff_cache
from .linsolve import GMRES, LinearProblem, solve
from .misc import _as_index, _check_parameters, _check_solution, _is_inplace, _zeros_for_unused
from .operators import PullbackMultiplyOperator, VecJacOperator
from .problem import SteadyStateProblem, SteadyStateSolution

logger = logging.getLogger(__name__)


class SteadyStateAdjoint(object):
    """Adjoint sensitivity algorithm for steady states `f(y, p) = 0`.

    Args:
        linsolve: linear solver used on the matrix-free path. Defaults to `GMRES(**linsolve_options)`.
        autodiff: compute the state Jacobian with automatic differentiation. If `False`, central finite
            differences are used instead.
        jac_threshold: the dense Jacobian is formed when the state has at most this many entries; larger states
            use a matrix-free vector-Jacobian-product operator.
        needs_jac: force (`True`) or forbid (`False`) forming the dense Jacobian, ignoring `jac_threshold`.
        linsolve_options: keyword arguments for the default `GMRES` solver.
    """

    def __init__(self, linsolve=None, autodiff=True, jac_threshold=50, needs_jac=None, linsolve_options=None):
        if linsolve is not None and linsolve_options is not None:
            raise ValueError('`linsolve_options` only configures the default solver; pass either `linsolve` or '
                             '`linsolve_options`, not both.')
        if jac_threshold < 0:
            raise ValueError('`jac_threshold` must be non-negative, got {}.'.format(jac_threshold))
        if linsolve is None:
            # Avoid in-place modifying a user-specified dict.
            linsolve_options = {} if linsolve_options is None else dict(linsolve_options)
            linsolve = GMRES(**linsolve_options)
        self.linsolve = linsolve
        self.autodiff = autodiff
        self.jac_threshold = jac_threshold
        self.needs_jac = needs_jac

    def needs_jacobian(self, n):
        # TODO: the threshold of 50 is a guess; benchmark dense vs matrix-free solves to pick it per device.
        if self.needs_jac is not None:
            return bool(self.needs_jac)
        return n <= self.jac_threshold

    def __repr__(self):
        return '{}(linsolve={}, autodiff={}, jac_threshold={}, needs_jac={})'.format(
            type(self).__name__, type(self.linsolve).__name__, self.autodiff, self.jac_threshold, self.needs_jac)


class DenseAdjointStrategy(object):
    """Forms `J = df/du` at the steady state and solves `J^T lam = dg` directly."""

    needs_jac = True

    def prepare(self, sense):
        prob = sense.sol.prob
        diffcache = sense.diffcache
        if prob.has_jac:
            prob.jac(diffcache.J, sense.y.view(sense.sol.u.shape), prob.p.detach(), None)
        else:
            diffcache.J.copy_(diffcache.jac_config(diffcache.uf, sense.y).reshape(diffcache.J.shape))

    def solve(self, sense):
        return torch.linalg.solve(sense.diffcache.J.transpose(0, 1), sense.diffcache.dg_val)


class OperatorAdjointStrategy(object):
    """Solves `J^T lam = dg` iteratively with a matrix-free vector-Jacobian-product operator."""

    needs_jac = False

    def prepare(self, sense):
        prob = sense.sol.prob
        y = sense.y.view(sense.sol.u.shape)
        if prob.inplace:
            self.operator = VecJacOperator(prob.f, y, prob.p, inplace=True)
        else:
            # `y` is fixed, so one forward pass serves every product the iterative solver asks for.
            self.operator = PullbackMultiplyOperator(prob.f, y, prob.p)

    def solve(self, sense):
        linear_problem = LinearProblem(self.operator, sense.diffcache.dg_val)
        linear_solution = solve(linear_problem, sense.linsolve)
        logger.debug('Adjoint linear solve: %r', linear_solution)
        return linear_solution.u


class SteadyStateAdjointSensitivityFunction(object):
    """State shared by the steps of one steady-state adjoint computation."""

    def __init__(self, g, sensealg, sol, dg, needs_jac):
        prob = sol.prob
        self.diffcache, self.y = adjoint_diff_cache(g, sensealg, sol, dg, prob.f, needs_jac)
        self.sensealg = sensealg
        self.sol = sol
        self.lam = torch.zeros_like(self.y)
        self.vjp = self.y.new_zeros(prob.p.shape, dtype=prob.p.dtype)
        self.linsolve = None if needs_jac else sensealg.linsolve
        self.strategy = DenseAdjointStrategy() if needs_jac else OperatorAdjointStrategy()

    def vecjacobian_(self, dgrad, lam, dp):
        """Writes `(df/du)^T lam` into `dgrad` and `(df/dp)^T lam` into `dp`, both at `(y, p)`."""
        with torch.enable_grad():
            u = self.y.detach().requires_grad_(True)
            p = self.sol.prob.p.detach().requires_grad_(True)
            out = self.diffcache.uf(u, p)
            if out.requires_grad:
                vjp_u, vjp_p = torch.autograd.grad(out, (u, p), lam.reshape(out.shape), allow_unused=True)
            else:
                vjp_u, vjp_p = None, None

        # autograd.grad returns None if no gradient, set to zero.
        vjp_u, vjp_p = _zeros_for_unused((vjp_u, vjp_p), (u, p))
        dgrad.copy_(vjp_u.reshape(dgrad.shape))
        dp.copy_(vjp_p)


def _fill_loss_gradient_(sense, g, dg, save_idxs):
    dg_val = sense.diffcache.dg_val
    shape = sense.sol.u.shape
    p = sense.sol.prob.p

    if callable(dg):
        dg(dg_val.view(shape), sense.y.view(shape), p, None, None)
    elif dg is not None:
        n = dg_val.numel()
        idx = _as_index(save_idxs, n, dg_val.device)
        if not torch.is_tensor(dg):
            dg = torch.as_tensor(dg, dtype=dg_val.dtype, device=dg_val.device)
        dg = dg.detach().to(dtype=dg_val.dtype, device=dg_val.device)
        if dg.numel() == 1 and n != 1:
            dg_val[idx] = dg.reshape(())
            return
        if dg.numel() != n:
            raise ValueError('The loss gradient has {} entries but the state has {}.'.format(dg.numel(), n))
        dg = dg.reshape(-1)
        dg_val[idx] = dg[idx]
    elif g is not None:
        dg_val.copy_(sense.diffcache.g_grad_config(sense.y, p))


def _param_gradient(g, y, p):
    with torch.enable_grad():
        p_ = p.detach().requires_grad_(True)
        out = g(y, p_, None)
        if not out.requires_grad:
            return torch.zeros_like(p_)
        dg_dp, = torch.autograd.grad(out.reshape(()), p_, allow_unused=True)
    return torch.zeros_like(p_) if dg_dp is None else dg_dp


def steady_state_adjoint_problem(sol, sensealg, g, dg, save_idxs=None):
    """Gradient of a loss with respect to the parameters of the steady state `sol`.

    Solves the adjoint equation `(df/du)^T lam = dg/du` at the steady state and returns
    `dg/dp - lam^T df/dp`, which is the total derivative of the loss when `f(u, p) = 0`.
    """
    _check_solution(sol)
    prob = sol.prob

    needs_jac = sensealg.needs_jacobian(sol.u.numel())

    sense = SteadyStateAdjointSensitivityFunction(g, sensealg, sol, dg, needs_jac)
    logger.debug('Steady-state adjoint for a state of size %d and %d parameters using %s.',
                 sense.y.numel(), prob.p.numel(), type(sense.strategy).__name__)

    sense.strategy.prepare(sense)
    _fill_loss_gradient_(sense, g, dg, save_idxs)
    sense.lam.copy_(sense.strategy.solve(sense).reshape(-1))
    sense.vecjacobian_(sense.diffcache.dg_val, sense.lam, sense.vjp)

    if g is not None:
        # compute dg/dp
        dg_dp_val = _param_gradient(g, sense.y.view(sol.u.shape), prob.p)
        return dg_dp_val - sense.vjp
    return -sense.vjp


def adjoint_sensitivities(sol, sensealg=None, *, g=None, dg=None, save_idxs=None):
    """Gradient of a scalar loss of a steady state with respect to the parameters `sol.prob.p`.

    Args:
        sol: a `SteadyStateSolution`, i.e. a state `u` with `f(u, p) = 0` and the problem it solves.
        sensealg: a `SteadyStateAdjoint`. Defaults to `SteadyStateAdjoint()`.
        g: optional loss `g(u, p, t)` returning a scalar Tensor. Its derivative with respect to `p` is included.
        dg: optional gradient of the loss with respect to `u`. Either a function `dg(out, u, p, t, i)` filling
            `out` in place, a Tensor with the same number of entries as `u`, or a Python number broadcast to the
            entries selected by `save_idxs`. Takes precedence over differentiating `g` with respect to `u`.
        save_idxs: optional (0-based) index or indices of the entries of `u` the loss depends on when `dg` is
            a Tensor or a number.

    Returns:
        A Tensor shaped like `p`.

    Raises:
        MissingParametersError: if the problem has no parameters.
    """
    if sensealg is None:
        sensealg = SteadyStateAdjoint()
    return steady_state_adjoint_problem(sol, sensealg, g, dg, save_idxs=save_idxs)


class SteadyStateAdjointMethod(torch.autograd.Function):

    @staticmethod
    def forward(ctx, f, sensealg, jac, inplace, u, p):
        ctx.f = f
        ctx.sensealg = sensealg
        ctx.jac = jac
        ctx.inplace = inplace
        ctx.save_for_backward(u, p)
        return u.clone()

    @staticmethod
    def backward(ctx, grad_u):
        with torch.no_grad():
            u, p = ctx.saved_tensors
            prob = SteadyStateProblem(ctx.f, u, p, jac=ctx.jac, inplace=ctx.inplace)
            sol = SteadyStateSolution(u, prob)
            grad_p = steady_state_adjoint_problem(sol, ctx.sensealg, None, grad_u)

        # The steady state does not depend on the initial guess, so `u` gets no gradient.
        return None, None, None, None, None, grad_p.to(p)


def steady_state_adjoint(f, u, p, *, sensealg=None, jac=None, inplace=None):
    """Attaches the steady state `u` of `f(u, p, t) = 0` to the autograd graph of `p`.

    The returned Tensor equals `u`. Backpropagating through it solves the adjoint equation at `u` instead of
    differentiating through the steady-state solver.

    Args:
        f: out-of-place `f(u, p, t)` or in-place `f(du, u, p, t)` right-hand side.
        u: converged steady state.
        p: parameters Tensor.
        sensealg: a `SteadyStateAdjoint`. Defaults to `SteadyStateAdjoint()`.
        jac: optional analytic Jacobian `jac(J, u, p, t)`.
        inplace: whether `f` is in-place. Detected from the signature of `f` when not given.
    """
    _check_parameters(p)
    if not callable(f):
        raise TypeError('The right-hand side `f` must be callable.')
    if sensealg is None:
        sensealg = SteadyStateAdjoint()
    return SteadyStateAdjointMethod.apply(f, sensealg, jac, _is_inplace(f, inplace), u, p)
