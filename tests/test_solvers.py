import gurobipy as gp
import pytest
from gurobipy import GRB

from Solvers import GurobiBackend, SolverNonConvergence, SolverStatus, ensure_converged


class _OptimalWithoutDuals:
    """Reports an optimal status but cannot hand out constraint duals."""
    Status = GRB.OPTIMAL
    ObjVal = 1.0
    NumConstrs = 1
    NumQConstrs = 1

    def setParam(self, name, value):
        pass

    def optimize(self):
        pass

    def getVars(self):
        return []

    def getConstrs(self):
        return []

    def getAttr(self, name, objs):
        if name == 'Pi':
            raise gp.GurobiError(10005, "Unable to retrieve attribute 'Pi'")
        return []


def test_missing_duals_are_reported_as_non_convergence():
    result = GurobiBackend().solve(_OptimalWithoutDuals(), duals=True)
    assert result.status is SolverStatus.OTHER
    with pytest.raises(SolverNonConvergence) as err:
        ensure_converged(result, 'stochastic model')
    assert err.value.status is SolverStatus.OTHER


def test_primal_only_solve_skips_duals():
    result = GurobiBackend().solve(_OptimalWithoutDuals())
    assert result.converged
    assert result.dual is None


def test_linear_duals(backend):
    Model = backend.new_model('lp')
    x = Model.addVar(name='x')
    y = Model.addVar(name='y')
    Model.addConstr(x + y >= 1, name='cover')
    Model.setObjective(x + 2*y, GRB.MINIMIZE)
    Model.update()
    result = ensure_converged(backend.solve(Model, duals=True), 'lp')
    assert result.objective == pytest.approx(1)
    assert result.primal == pytest.approx([1, 0])
    assert result.dual == pytest.approx([1])
