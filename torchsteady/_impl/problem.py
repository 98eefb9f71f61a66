import torch
from .misc import _is_inplace


class SteadyStateProblem(object):
    """Right-hand side, initial guess and parameters of a steady-state problem `f(u, p, t) = 0`.

    Args:
        f: Out-of-place `f(u, p, t) -> du` or in-place `f(du, u, p, t)` right-hand side. `t` is always `None`.
        u0: Tensor of any shape, the initial guess handed to the steady-state solver.
        p: Tensor of parameters. Gradients are taken with respect to this tensor.
        jac: optional analytic Jacobian `jac(J, u, p, t)` filling the `(n, n)` Tensor `J` in place.
        inplace: whether `f` is in-place. Detected from the signature of `f` when not given.
    """

    def __init__(self, f, u0, p=None, *, jac=None, inplace=None):
        self.f = f
        self.u0 = u0
        self.p = p
        self.jac = jac
        self.inplace = _is_inplace(f, inplace)

    @property
    def has_jac(self):
        return self.jac is not None

    def __repr__(self):
        return '{}(u0={}, p={}, inplace={})'.format(
            type(self).__name__,
            tuple(self.u0.shape) if torch.is_tensor(self.u0) else self.u0,
            tuple(self.p.shape) if torch.is_tensor(self.p) else self.p,
            self.inplace)


class SteadyStateSolution(object):
    """A converged state `u` of `prob`, as returned by an external steady-state solver."""

    def __init__(self, u, prob):
        self.u = u
        self.prob = prob

    @classmethod
    def from_rhs(cls, f, u, p, **kwargs):
        return cls(u, SteadyStateProblem(f, u, p, **kwargs))

    def residual(self):
        prob = self.prob
        with torch.no_grad():
            if prob.inplace:
                du = torch.zeros_like(self.u)
                prob.f(du, self.u, prob.p, None)
                return du
            return prob.f(self.u, prob.p, None)
