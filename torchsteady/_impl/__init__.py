from .adjoint import SteadyStateAdjoint, adjoint_sensitivities, steady_state_adjoint, steady_state_adjoint_problem
from .linsolve import GMRES, DirectSolve, ScipyKrylov, LinearProblem, LinearSolution, solve
from .misc import MissingParametersError, LinearSolveError
from .operators import LinearOperator, MatrixOperator, VecJacOperator, PullbackMultiplyOperator
from .problem import SteadyStateProblem, SteadyStateSolution
