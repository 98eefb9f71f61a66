import pytest
import torch
from torchsteady import SteadyStateAdjoint, SteadyStateSolution, adjoint_sensitivities
from torchsteady._impl.adjoint import SteadyStateAdjointSensitivityFunction, _fill_loss_gradient_
from problems import linear_system, linear_rhs, linear_steady_state, linear_gradient, half_square


def make_solution(n=3, seed=0):
    A, B, p = linear_system(n, seed=seed)
    return SteadyStateSolution.from_rhs(linear_rhs(A, B), linear_steady_state(A, B, p), p)


def loss_gradient_buffer(sol, g=None, dg=None, save_idxs=None):
    sense = SteadyStateAdjointSensitivityFunction(g, SteadyStateAdjoint(), sol, dg, True)
    _fill_loss_gradient_(sense, g, dg, save_idxs)
    return sense.diffcache.dg_val


@pytest.mark.parametrize("dg, save_idxs, expected", [
    (torch.tensor([1., 2., 3.], dtype=torch.float64), 1, [0., 2., 0.]),
    (5.0, [0, 2], [5., 0., 5.]),
    (torch.tensor(5.0, dtype=torch.float64), [0, 2], [5., 0., 5.]),
    (torch.tensor([1., 2., 3.], dtype=torch.float64), [0, 2], [1., 0., 3.]),
    (torch.tensor([1., 2., 3.], dtype=torch.float64), None, [1., 2., 3.]),
    ([1., 2., 3.], torch.tensor([0, 2]), [1., 0., 3.]),
])
def test_save_index_variants(dg, save_idxs, expected):
    sol = make_solution()
    dg_val = loss_gradient_buffer(sol, dg=dg, save_idxs=save_idxs)
    torch.testing.assert_close(dg_val, torch.tensor(expected, dtype=torch.float64))


def test_save_index_out_of_range():
    sol = make_solution()
    with pytest.raises(IndexError):
        loss_gradient_buffer(sol, dg=torch.ones(3, dtype=torch.float64), save_idxs=[0, 3])
    with pytest.raises(IndexError):
        loss_gradient_buffer(sol, dg=torch.ones(3, dtype=torch.float64), save_idxs=5)


def test_loss_gradient_size_mismatch():
    sol = make_solution()
    with pytest.raises(ValueError):
        loss_gradient_buffer(sol, dg=torch.ones(2, dtype=torch.float64), save_idxs=[0, 1])


def test_gradient_function_matches_autodiff():
    sol = make_solution(n=6, seed=1)

    def dg(out, u, p, t, i):
        out.copy_(u)

    grad_fn = adjoint_sensitivities(sol, dg=dg)
    grad_ad = adjoint_sensitivities(sol, g=half_square)
    grad_tensor = adjoint_sensitivities(sol, dg=sol.u.clone())

    torch.testing.assert_close(grad_fn, grad_ad)
    torch.testing.assert_close(grad_tensor, grad_ad)
    torch.testing.assert_close(
        loss_gradient_buffer(sol, dg=dg), loss_gradient_buffer(sol, g=half_square))


def test_gradient_function_takes_precedence_over_loss():
    sol = make_solution(n=4)
    calls = []

    def dg(out, u, p, t, i):
        calls.append(1)
        out.copy_(u)

    def g(u, p, t):
        return 0.5 * (u ** 2).sum() + p.sum()

    grad = adjoint_sensitivities(sol, g=g, dg=dg)

    assert len(calls) == 1
    torch.testing.assert_close(grad, adjoint_sensitivities(sol, g=half_square) + 1)


@pytest.mark.parametrize("needs_jac", [True, False])
def test_no_loss_gives_zero_gradient(needs_jac):
    sol = make_solution(n=5)

    assert not loss_gradient_buffer(sol).any()
    grad = adjoint_sensitivities(sol, SteadyStateAdjoint(needs_jac=needs_jac))
    torch.testing.assert_close(grad, torch.zeros_like(sol.prob.p))


def test_loss_without_parameter_dependence():
    A, B, p = linear_system(5)
    sol = SteadyStateSolution.from_rhs(linear_rhs(A, B), linear_steady_state(A, B, p), p)

    def g(u, p, t):
        return 0.5 * (u ** 2).sum()

    torch.testing.assert_close(adjoint_sensitivities(sol, g=g), linear_gradient(A, B, p))


def test_non_scalar_loss():
    sol = make_solution()
    with pytest.raises(ValueError):
        adjoint_sensitivities(sol, g=lambda u, p, t: u ** 2)
