import inspect
import torch


class MissingParametersError(ValueError):
    pass


class LinearSolveError(RuntimeError):
    pass


def _is_inplace(f, inplace=None):
    # f(du, u, p, t) writes into du; f(u, p, t) returns the derivative.
    if inplace is not None:
        return bool(inplace)
    try:
        params = inspect.signature(f).parameters.values()
    except (TypeError, ValueError):
        return False
    positional = [p for p in params if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)]
    return len(positional) >= 4


def _check_parameters(p):
    if p is None or (torch.is_tensor(p) and p.numel() == 0):
        raise MissingParametersError(
            "Your model does not have parameters, and thus it is impossible to calculate the derivative of the "
            "solution with respect to the parameters. Your model must have parameters to use parameter sensitivity "
            "calculations!")
    if not torch.is_tensor(p):
        raise TypeError('`p` must be a Tensor, got {}.'.format(type(p).__name__))


def _check_solution(sol):
    prob = sol.prob
    if not callable(prob.f):
        raise TypeError('The right-hand side `f` must be callable.')
    _check_parameters(prob.p)
    if not torch.is_tensor(sol.u):
        raise TypeError('The steady state `u` must be a Tensor, got {}.'.format(type(sol.u).__name__))
    if sol.u.device != prob.p.device:
        raise ValueError('The steady state lives on {} but the parameters live on {}.'.format(
            sol.u.device, prob.p.device))


def _flat_rhs(f, shape, p, inplace):
    """Wraps `f` into an out-of-place map from a flat state to a flat derivative."""

    if inplace:
        def uf(u, p=p):
            du = u.new_zeros(shape)
            f(du, u.reshape(shape), p, None)
            return du.reshape(-1)
    else:
        def uf(u, p=p):
            return f(u.reshape(shape), p, None).reshape(-1)
    return uf


def _as_index(save_idxs, n, device):
    if save_idxs is None:
        return slice(None)
    if isinstance(save_idxs, int) or (torch.is_tensor(save_idxs) and save_idxs.dim() == 0):
        idx = int(save_idxs)
        if not -n <= idx < n:
            raise IndexError('save index {} is out of range for a state of size {}.'.format(idx, n))
        return idx
    idxs = torch.as_tensor(save_idxs, dtype=torch.long, device=device).reshape(-1)
    if idxs.numel() > 0 and (idxs.min() < -n or idxs.max() >= n):
        raise IndexError('save indices {} are out of range for a state of size {}.'.format(idxs.tolist(), n))
    return idxs


def _zeros_for_unused(grads, like):
    return tuple(torch.zeros_like(x) if g is None else g for g, x in zip(grads, like))
