import pytest
import torch
from torchsteady import PullbackMultiplyOperator, VecJacOperator
from problems import fixed_point_system, fixed_point_rhs, iterate_fixed_point


def state_jacobian(W, u, p):
    f = fixed_point_rhs(W)
    return torch.autograd.functional.jacobian(lambda x: f(x, p, None), u)


@pytest.mark.parametrize("inplace", [False, True])
def test_operator_is_jacobian_transpose(inplace):
    W, p = fixed_point_system(5)
    u = iterate_fixed_point(W, p)
    J = state_jacobian(W, u, p)
    f = fixed_point_rhs(W, inplace)

    if inplace:
        op = VecJacOperator(f, u, p)
    else:
        op = PullbackMultiplyOperator(f, u, p)

    assert op.shape == (5, 5)
    v = torch.arange(1., 6., dtype=torch.float64)
    torch.testing.assert_close(op.matvec(v), J.T @ v)
    torch.testing.assert_close(op @ (2 * v), J.T @ (2 * v))
    torch.testing.assert_close(op.to_dense(), J.T)


def test_pullback_reuses_forward_pass():
    W, p = fixed_point_system(4)
    u = iterate_fixed_point(W, p)
    calls = []
    f = fixed_point_rhs(W)

    def counted(u, p, t):
        calls.append(1)
        return f(u, p, t)

    op = PullbackMultiplyOperator(counted, u, p)
    for _ in range(3):
        op.matvec(torch.ones(4, dtype=torch.float64))
    assert len(calls) == 1

    op = VecJacOperator(counted, u, p, inplace=False)
    for _ in range(3):
        op.matvec(torch.ones(4, dtype=torch.float64))
    assert len(calls) == 4


def test_state_independent_rhs():
    p = torch.ones(3, dtype=torch.float64)
    u = torch.zeros(3, dtype=torch.float64)
    op = PullbackMultiplyOperator(lambda u, p, t: p.clone(), u, p)
    assert not op.matvec(torch.ones(3, dtype=torch.float64)).any()
