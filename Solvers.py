# -*- coding: utf-8 -*-
"""
Created on Wed Sep 16 09:20:55 2026

Solver boundary: the nonlinear (Weymouth) and conic solves go through a
SolverBackend, which reports a discrete status plus primal and dual values
indexed by solver position. Errors and diagnostic warnings shared by all
stages live here as well.
"""

import enum
import logging
from dataclasses import dataclass

import gurobipy as gp
from gurobipy import GRB
import numpy as np

logger = logging.getLogger(__name__)


class SolverStatus(enum.Enum):
    OPTIMAL = 'optimal'
    INFEASIBLE = 'infeasible'
    UNBOUNDED = 'unbounded'
    TIME_LIMIT = 'time_limit'
    OTHER = 'other'


class SolverNonConvergence(RuntimeError):
    def __init__(self, stage, status):
        super().__init__(f"{stage} terminated with status {status.value}")
        self.stage = stage
        self.status = status


class SingularSensitivity(RuntimeError):
    """The operating point sits on (or next to) a bifurcation point."""


class DiagnosticWarning(UserWarning):
    pass


class BifurcationWarning(DiagnosticWarning):
    pass


class LinearizationQualityWarning(DiagnosticWarning):
    pass


class StationarityMismatch(DiagnosticWarning):
    pass


class DualityGapWarning(DiagnosticWarning):
    pass


@dataclass(frozen=True)
class SolveResult:
    status: SolverStatus
    objective: float = float('nan')
    primal: np.ndarray = None  # by variable position
    dual: np.ndarray = None  # by linear constraint position

    @property
    def converged(self):
        return self.status is SolverStatus.OPTIMAL


def ensure_converged(result, stage):
    if not result.converged:
        logger.warning(f"{stage} terminates with status: {result.status.value}")
        raise SolverNonConvergence(stage, result.status)
    logger.info(f"{stage} terminates with status: {result.status.value}")
    return result


class SolverBackend:
    """Capability contract: solve(model) -> SolveResult, plus constraint
    Jacobians of a solved model at a given point."""

    def new_model(self, name):
        raise NotImplementedError

    def solve(self, model, nonconvex=False, duals=False):
        raise NotImplementedError

    def constraint_jacobian(self, model, constrs, x):
        raise NotImplementedError


_GRB_STATUS = {
    GRB.OPTIMAL: SolverStatus.OPTIMAL,
    GRB.INFEASIBLE: SolverStatus.INFEASIBLE,
    GRB.INF_OR_UNBD: SolverStatus.INFEASIBLE,
    GRB.UNBOUNDED: SolverStatus.UNBOUNDED,
    GRB.TIME_LIMIT: SolverStatus.TIME_LIMIT,
}


class GurobiBackend(SolverBackend):

    def __init__(self, time_limit=600.0, conv_tol=1e-8, params=None):
        self.time_limit = time_limit
        self.conv_tol = conv_tol
        self.params = dict(params or {})

    def new_model(self, name):
        Model = gp.Model(name)
        Model.setParam('OutputFlag', 0)
        return Model

    def solve(self, model, nonconvex=False, duals=False):
        model.setParam('TimeLimit', self.time_limit)
        if nonconvex:
            model.setParam('NonConvex', 2)
        elif model.NumQConstrs:
            model.setParam('BarQCPConvTol', self.conv_tol)
            model.setParam('BarHomogeneous', 1)
            if duals:
                model.setParam('QCPDual', 1)
        for key, value in self.params.items():
            model.setParam(key, value)
        model.optimize()

        status = _GRB_STATUS.get(model.Status, SolverStatus.OTHER)
        if status is not SolverStatus.OPTIMAL:
            return SolveResult(status)
        try:
            primal = np.array(model.getAttr('X', model.getVars()))
            dual = None
            if duals and model.NumConstrs:
                dual = np.array(model.getAttr('Pi', model.getConstrs()))
        except gp.GurobiError as err:
            logger.warning(f"solution values are not available: {err}")
            return SolveResult(SolverStatus.OTHER)
        return SolveResult(status, model.ObjVal, primal, dual)

    def constraint_jacobian(self, model, constrs, x):
        """Jacobian of the quadratic constraints `constrs` at x (rows follow
        `constrs`, columns follow variable positions).

        Variables defined through abs() general constraints are eliminated
        by the chain rule, so the columns describe the constraint as a
        function of the signed arguments.
        """
        jac = np.zeros((len(constrs), model.NumVars))
        for i, qc in enumerate(constrs):
            row = model.getQCRow(qc)
            for j in range(row.size()):
                v1, v2, coef = row.getVar1(j), row.getVar2(j), row.getCoeff(j)
                jac[i, v1.index] += coef*x[v2.index]
                jac[i, v2.index] += coef*x[v1.index]
            lin = row.getLinExpr()
            for j in range(lin.size()):
                jac[i, lin.getVar(j).index] += lin.getCoeff(j)
        for gc in model.getGenConstrs():
            if gc.GenConstrType != GRB.GENCONSTR_ABS:
                continue
            res, arg = model.getGenConstrAbs(gc)
            jac[:, arg.index] += jac[:, res.index]*np.sign(x[arg.index])
            jac[:, res.index] = 0
        return jac
