import pytest
import torch
from torchsteady import SteadyStateAdjoint, SteadyStateSolution, adjoint_sensitivities, steady_state_adjoint
from problems import (linear_system, linear_rhs, linear_steady_state, linear_gradient,
                      fixed_point_system, fixed_point_rhs, iterate_fixed_point)


@pytest.mark.parametrize("inplace", [False, True])
@pytest.mark.parametrize("needs_jac", [True, False])
def test_backward_matches_analytic(inplace, needs_jac):
    A, B, p = linear_system(8)
    u = linear_steady_state(A, B, p)
    p_req = p.clone().requires_grad_(True)

    y = steady_state_adjoint(linear_rhs(A, B, inplace), u, p_req, sensealg=SteadyStateAdjoint(needs_jac=needs_jac))
    assert torch.equal(y, u)

    loss = 0.5 * (y ** 2).sum()
    loss.backward()

    torch.testing.assert_close(p_req.grad, linear_gradient(A, B, p), rtol=1e-6, atol=1e-8)


def test_backward_matches_adjoint_sensitivities():
    W, p = fixed_point_system(5)
    u = iterate_fixed_point(W, p)
    f = fixed_point_rhs(W)
    weights = torch.linspace(-1., 1., 5, dtype=torch.float64)

    p_req = p.clone().requires_grad_(True)
    y = steady_state_adjoint(f, u, p_req)
    grad_p, = torch.autograd.grad((weights * torch.sin(y)).sum() + (p_req ** 2).sum(), p_req)

    def g(u, p, t):
        return (weights * torch.sin(u)).sum() + (p ** 2).sum()

    expected = adjoint_sensitivities(SteadyStateSolution.from_rhs(f, u, p), g=g)
    torch.testing.assert_close(grad_p, expected)


def test_no_gradient_for_state():
    A, B, p = linear_system(4)
    u = linear_steady_state(A, B, p).requires_grad_(True)
    p_req = p.clone().requires_grad_(True)

    y = steady_state_adjoint(linear_rhs(A, B), u, p_req)
    y.sum().backward()

    assert u.grad is None
    assert p_req.grad is not None
