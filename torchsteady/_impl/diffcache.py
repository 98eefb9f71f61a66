import torch
from .misc import _flat_rhs


class AdjointDiffCache(object):
    """Scratch buffers and differentiation closures for one adjoint gradient computation."""

    def __init__(self, J, dg_val, uf, jac_config, g_grad_config):
        self.J = J
        self.dg_val = dg_val
        self.uf = uf
        self.jac_config = jac_config
        self.g_grad_config = g_grad_config


def _forward_jacobian(uf, y):
    return torch.func.jacfwd(uf)(y)


def _reverse_jacobian(uf, y):
    # In-place right-hand sides write into a fresh buffer, which the torch.func transforms do not allow.
    return torch.autograd.functional.jacobian(uf, y)


def _finite_difference_jacobian(uf, y):
    n = y.numel()
    J = y.new_zeros(n, n)
    scale = torch.finfo(y.dtype).eps ** (1. / 3.)
    with torch.no_grad():
        for i in range(n):
            h = scale * max(1., abs(y[i].item()))
            y_plus = y.clone()
            y_minus = y.clone()
            y_plus[i] += h
            y_minus[i] -= h
            J[:, i] = (uf(y_plus) - uf(y_minus)) / (2 * h)
    return J


def _build_jac_config(sensealg, inplace):
    if not sensealg.autodiff:
        return _finite_difference_jacobian
    if inplace:
        return _reverse_jacobian
    return _forward_jacobian


def _build_grad_config(g, shape):
    """Returns a closure computing the gradient of the scalar `g(u, p, t)` with respect to `u` (flat)."""

    def gradient(u, p):
        with torch.enable_grad():
            u = u.detach().requires_grad_(True)
            out = g(u.reshape(shape), p.detach(), None)
            if out.numel() != 1:
                raise ValueError('The loss `g` must return a scalar, got a Tensor of shape {}.'.format(
                    tuple(out.shape)))
            if not out.requires_grad:
                return torch.zeros_like(u)
            grad_u, = torch.autograd.grad(out.reshape(()), u, allow_unused=True)
        return torch.zeros_like(u) if grad_u is None else grad_u

    return gradient


def adjoint_diff_cache(g, sensealg, sol, dg, f, needs_jac):
    """Allocates the buffers of an adjoint computation at the steady state of `sol`.

    Returns:
        The `AdjointDiffCache` and `y`, a detached flat copy of the steady state.
    """
    prob = sol.prob
    shape = sol.u.shape
    y = sol.u.detach().reshape(-1).clone()
    n = y.numel()

    uf = _flat_rhs(f, shape, prob.p.detach(), prob.inplace)
    J = y.new_zeros(n, n) if needs_jac else None
    jac_config = _build_jac_config(sensealg, prob.inplace) if needs_jac and not prob.has_jac else None

    # Only needed when neither a gradient function nor an explicit gradient is given.
    g_grad_config = None
    if g is not None and dg is None:
        g_grad_config = _build_grad_config(g, shape)

    dg_val = torch.zeros_like(y)
    return AdjointDiffCache(J, dg_val, uf, jac_config, g_grad_config), y
