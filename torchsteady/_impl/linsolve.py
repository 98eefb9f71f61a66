import logging
import math
import warnings
import numpy as np
import torch
from scipy.sparse.linalg import LinearOperator as ScipyLinearOperator
from scipy.sparse.linalg import gmres, lgmres, bicgstab, cg
from .misc import LinearSolveError

logger = logging.getLogger(__name__)


class LinearProblem(object):
    """Linear system `A u = b`.

    `A` is either a dense `(n, n)` Tensor or an operator exposing `matvec(v)` and `shape` (see `LinearOperator`).
    """

    def __init__(self, A, b, u0=None):
        if A.shape[0] != A.shape[1] or A.shape[1] != b.numel():
            raise ValueError('Incompatible linear system: operator of shape {} and right-hand side of size {}.'.format(
                tuple(A.shape), b.numel()))
        self.A = A
        self.b = b
        self.u0 = u0

    def matvec(self, v):
        if torch.is_tensor(self.A):
            return self.A @ v
        return self.A.matvec(v)


class LinearSolution(object):

    def __init__(self, u, iterations=0, residual=0., converged=True):
        self.u = u
        self.iterations = iterations
        self.residual = residual
        self.converged = converged

    def __repr__(self):
        return 'LinearSolution(iterations={}, residual={:.3e}, converged={})'.format(
            self.iterations, self.residual, self.converged)


def _warn_not_converged(name, iterations, residual):
    warnings.warn('{} did not converge after {} iterations (residual norm {:.3e}).'.format(
        name, iterations, residual), RuntimeWarning)


def _residual_norm(r):
    norm = torch.linalg.vector_norm(r).item()
    if not math.isfinite(norm):
        raise LinearSolveError('The residual of the linear solve is not finite.')
    return norm


class GMRES(object):
    """Restarted GMRES on torch Tensors, so the solve stays on the device of the right-hand side.

    This is the default adjoint solver. `ScipyKrylov("gmres")` solves the same systems but round-trips every
    product through NumPy on the CPU, which is slow for accelerator-resident states.

    Args:
        rtol: relative tolerance on the residual norm, relative to the norm of `b`.
        atol: absolute tolerance on the residual norm.
        restart: number of Arnoldi steps between restarts.
        maxiter: maximum total number of Arnoldi steps. Defaults to `10 * n`.
    """

    def __init__(self, rtol=1e-8, atol=0., restart=20, maxiter=None):
        if restart < 1:
            raise ValueError('`restart` must be positive, got {}.'.format(restart))
        self.rtol = rtol
        self.atol = atol
        self.restart = restart
        self.maxiter = maxiter

    def __call__(self, problem):
        b = problem.b.reshape(-1)
        n = b.numel()
        x = torch.zeros_like(b) if problem.u0 is None else problem.u0.reshape(-1).clone()
        maxiter = 10 * n if self.maxiter is None else self.maxiter
        restart = min(self.restart, n)
        tol = max(self.atol, self.rtol * torch.linalg.vector_norm(b).item())

        r = b - problem.matvec(x)
        beta = _residual_norm(r)
        iterations = 0
        while beta > tol and iterations < maxiter:
            x, iterations = self._cycle(problem, x, r, beta, tol, restart, maxiter, iterations)
            r = b - problem.matvec(x)
            beta = _residual_norm(r)
            logger.debug('GMRES restart after %d iterations: residual = %.3e', iterations, beta)

        converged = beta <= tol
        if not converged:
            _warn_not_converged('GMRES', iterations, beta)
        return LinearSolution(x.reshape(problem.b.shape), iterations, beta, converged)

    @staticmethod
    def _cycle(problem, x, r, beta, tol, restart, maxiter, iterations):
        V = [r / beta]
        H = r.new_zeros(restart + 1, restart)
        g = r.new_zeros(restart + 1)
        g[0] = beta
        breakdown = torch.finfo(r.dtype).eps * beta

        for j in range(restart):
            # Arnoldi step, modified Gram-Schmidt
            w = problem.matvec(V[j])
            for i in range(j + 1):
                H[i, j] = torch.vdot(V[i], w)
                w = w - H[i, j] * V[i]
            H[j + 1, j] = torch.linalg.vector_norm(w)
            iterations += 1

            h_next = H[j + 1, j].item()
            if not math.isfinite(h_next):
                raise LinearSolveError('GMRES breakdown: the operator produced non-finite values.')

            Hj = H[:j + 2, :j + 1]
            y = torch.linalg.lstsq(Hj, g[:j + 2, None]).solution[:, 0]
            residual = torch.linalg.vector_norm(Hj @ y - g[:j + 2]).item()
            if residual <= tol or h_next <= breakdown or iterations >= maxiter:
                break
            V.append(w / h_next)

        return x + torch.stack(V[:j + 1], dim=1) @ y, iterations


class DirectSolve(object):
    """Dense LU solve. Operators are materialised column by column first."""

    def __call__(self, problem):
        A = problem.A if torch.is_tensor(problem.A) else problem.A.to_dense()
        b = problem.b.reshape(-1)
        u = torch.linalg.solve(A, b)
        residual = torch.linalg.vector_norm(A @ u - b).item()
        return LinearSolution(u.reshape(problem.b.shape), 1, residual, True)


class ScipyKrylov(object):
    """Krylov solvers from `scipy.sparse.linalg`, applied through a matrix-free `LinearOperator`.

    Tensors are moved to the CPU for the solve and the solution is moved back to the device of `b`.
    """

    METHODS = {
        'gmres': gmres,
        'lgmres': lgmres,
        'bicgstab': bicgstab,
        'cg': cg,
    }

    def __init__(self, method='gmres', rtol=1e-8, atol=0., maxiter=None, **options):
        if method not in self.METHODS:
            raise ValueError('Invalid method "{}". Must be one of {}'.format(
                method, '{"' + '", "'.join(self.METHODS.keys()) + '"}.'))
        self.method = method
        self.rtol = rtol
        self.atol = atol
        self.maxiter = maxiter
        self.options = dict(options)

    def __call__(self, problem):
        b = problem.b.reshape(-1)
        b_np = b.detach().cpu().numpy()
        n = b.numel()

        def matvec(v):
            v = torch.as_tensor(np.ravel(v), dtype=b.dtype, device=b.device)
            return problem.matvec(v).detach().cpu().numpy()

        A = ScipyLinearOperator((n, n), matvec=matvec, dtype=b_np.dtype)
        kwargs = dict(self.options, rtol=self.rtol, atol=self.atol)
        if self.maxiter is not None:
            kwargs['maxiter'] = self.maxiter
        if self.method == 'gmres':
            kwargs.setdefault('callback_type', 'pr_norm')
        if problem.u0 is not None:
            kwargs['x0'] = problem.u0.reshape(-1).detach().cpu().numpy()

        iterations = [0]

        def callback(_):
            iterations[0] += 1

        u_np, info = self.METHODS[self.method](A, b_np, callback=callback, **kwargs)
        if info < 0:
            raise LinearSolveError('scipy {} failed with illegal input or breakdown (info={}).'.format(
                self.method, info))

        u = torch.as_tensor(u_np, dtype=b.dtype, device=b.device)
        residual = torch.linalg.vector_norm(problem.matvec(u) - b).item()
        logger.debug('scipy %s finished: info = %d, residual = %.3e', self.method, info, residual)
        if info > 0:
            _warn_not_converged('scipy ' + self.method, iterations[0], residual)
        return LinearSolution(u.reshape(problem.b.shape), iterations[0], residual, info == 0)


def solve(problem, alg=None):
    """Solve `problem` with the linear solver `alg` (restarted `GMRES` by default)."""
    if alg is None:
        alg = GMRES()
    return alg(problem)
