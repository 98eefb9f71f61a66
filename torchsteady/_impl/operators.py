import torch
from .misc import _flat_rhs


class LinearOperator(object):
    """Matrix-free square operator acting on flat Tensors."""

    def __init__(self, n, dtype, device):
        self.shape = (n, n)
        self.dtype = dtype
        self.device = device

    def matvec(self, v):
        raise NotImplementedError

    def __matmul__(self, v):
        return self.matvec(v)

    def to_dense(self):
        n = self.shape[0]
        eye = torch.eye(n, dtype=self.dtype, device=self.device)
        return torch.stack([self.matvec(eye[i]) for i in range(n)], dim=1)


class MatrixOperator(LinearOperator):

    def __init__(self, A):
        super().__init__(A.shape[0], A.dtype, A.device)
        self.A = A

    def matvec(self, v):
        return self.A @ v

    def to_dense(self):
        return self.A


class VecJacOperator(LinearOperator):
    """v -> (df/du)^T v at a fixed (u, p).

    The right-hand side is evaluated again for every product, so this works for in-place right-hand sides whose
    autograd graph cannot be kept around between products.
    """

    def __init__(self, f, u, p, inplace=True):
        super().__init__(u.numel(), u.dtype, u.device)
        self.uf = _flat_rhs(f, u.shape, p.detach(), inplace)
        self.u = u.detach().reshape(-1)

    def matvec(self, v):
        with torch.enable_grad():
            u = self.u.detach().requires_grad_(True)
            out = self.uf(u)
            if not out.requires_grad:
                return torch.zeros_like(self.u)
            vjp_u, = torch.autograd.grad(out, u, v.reshape(out.shape), allow_unused=True)
        return torch.zeros_like(self.u) if vjp_u is None else vjp_u


class PullbackMultiplyOperator(LinearOperator):
    """v -> (df/du)^T v using a single forward pass of an out-of-place right-hand side.

    The forward graph at `u` is built once and its pullback is re-entered for every product.
    """

    def __init__(self, f, u, p):
        super().__init__(u.numel(), u.dtype, u.device)
        uf = _flat_rhs(f, u.shape, p.detach(), False)
        with torch.enable_grad():
            self._u = u.detach().reshape(-1).requires_grad_(True)
            self._out = uf(self._u)
        self.out_shape = self._out.shape

    def matvec(self, v):
        if not self._out.requires_grad:
            return torch.zeros_like(self._u)
        vjp_u, = torch.autograd.grad(self._out, self._u, v.reshape(self.out_shape), retain_graph=True,
                                     allow_unused=True)
        return torch.zeros_like(self._u) if vjp_u is None else vjp_u.detach()
