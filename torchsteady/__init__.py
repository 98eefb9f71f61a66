from ._impl import adjoint_sensitivities
from ._impl import steady_state_adjoint
from ._impl import steady_state_adjoint_problem
from ._impl import SteadyStateAdjoint
from ._impl import SteadyStateProblem, SteadyStateSolution
from ._impl import GMRES, DirectSolve, ScipyKrylov, LinearProblem, LinearSolution, solve
from ._impl import LinearOperator, MatrixOperator, VecJacOperator, PullbackMultiplyOperator
from ._impl import MissingParametersError, LinearSolveError

__version__ = "0.1.0"
