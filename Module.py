# -*- coding: utf-8 -*-
"""
Created on Thu Sep 17 14:02:19 2026

Gas network models on the nominal side of the pipeline: the non-convex
Weymouth network, its linearization around the operating point, the
linearized network, and the demand forecast model.
"""

import logging
import warnings
from dataclasses import replace

import numpy as np
from gurobipy import GRB, quicksum
from scipy.stats import norm

from Solvers import (BifurcationWarning, LinearizationQualityWarning,
                     SingularSensitivity, ensure_converged)
from SystemClasses import (ForecastData, LinearizationCoefficients,
                           LinearizedSolution, ModelHandle, OperatingPoint)

logger = logging.getLogger(__name__)


def _positions(vars):
    return np.array([v.index for v in vars.values()], dtype=int)


def safety_factor(setting, net):
    """Standard normal quantile at 1 - eps/num_con (0 for deterministic policies)."""
    if setting.det:
        return 0.0
    return float(norm.ppf(1 - setting.eps/net.num_con))


def reduce_matrix(A, ref):
    """Drop the row and column of the reference node."""
    if A.ndim != 2 or A.shape[0] != A.shape[1]:
        raise ValueError("expected a square matrix")
    keep = np.arange(A.shape[0]) != ref
    return A[np.ix_(keep, keep)]


def inflate_matrix(A, ref):
    """Reinsert a zero row and column at the reference node."""
    n = A.shape[0] + 1
    keep = np.arange(n) != ref
    V = np.zeros((n, n))
    V[np.ix_(keep, keep)] = A
    return V


def NonConvex_Flow_Model(net, backend):
    """Solve the nominal Weymouth network.
        INPUTS :
            net (NetworkData): network case
            backend (SolverBackend): nonlinear solver
        OUTPUTS :
            OperatingPoint, ModelHandle of the solved model
    """
    nN, nE = net.num_nodes, net.num_pipes
    Model = backend.new_model('gas_non_convex')
    fb = net.flow_bound()
    phi_lb = -fb.copy()
    phi_lb[net.active] = 0  # active pipes only carry flow downstream

    pi = Model.addVars(nN, lb=list(net.pi_min), ub=list(net.pi_max), name='pi')
    phi = Model.addVars(nE, lb=list(phi_lb), ub=list(fb), name='phi')
    kappa = Model.addVars(nE, lb=list(net.kappa_min), ub=list(net.kappa_max), name='kappa')
    theta = Model.addVars(nN, lb=list(net.inj_min), ub=list(net.inj_max), name='theta')
    phi_abs = Model.addVars(nE, ub=list(fb), name='phi_abs')

    # minimize gas production cost
    Model.setObjective(quicksum(net.cost[n]*theta[n]*theta[n] for n in range(nN)), GRB.MINIMIZE)

    # C1: Weymouth equation, phi*|phi| = k^2 (pi_s + kappa - pi_r)
    for l in range(nE):
        Model.addGenConstrAbs(phi_abs[l], phi[l], name=f'phi_abs[{l}]')
    w_eq = [Model.addConstr(phi_abs[l]*phi[l] == net.k[l]**2*(pi[net.n_s[l]] + kappa[l] - pi[net.n_r[l]]),
                            name=f'w_eq[{l}]') for l in range(nE)]

    # C2: nodal gas balance
    gas_bal = Model.addConstrs((theta[n]
                                - quicksum(net.B[n, l]*kappa[l] for l in range(nE) if net.B[n, l] != 0)
                                - quicksum(net.A[n, l]*phi[l] for l in range(nE) if net.A[n, l] != 0)
                                == net.demand[n] for n in range(nN)), name='gas_bal')
    Model.update()

    handle = ModelHandle(Model, backend,
                         var_index={'pi': _positions(pi), 'phi': _positions(phi),
                                    'kappa': _positions(kappa), 'theta': _positions(theta),
                                    'phi_abs': _positions(phi_abs)},
                         con_index={'gas_bal': _positions(gas_bal)},
                         qconstrs={'w_eq': w_eq})
    result = ensure_converged(backend.solve(Model, nonconvex=True), 'non_convex model')
    op = OperatingPoint(pi=handle.values(result, 'pi'), phi=handle.values(result, 'phi'),
                        kappa=handle.values(result, 'kappa'), theta=handle.values(result, 'theta'),
                        cost=result.objective, x=result.primal)
    return op, handle


def Linearize(net, handle, op, setting, check=True):
    """Extract flow and pressure sensitivities around the operating point.

    The flow Jacobian is inverted directly; the nodal pressure matrix is
    singular (pressures are defined up to the reference node), so it is
    inverted with the reference row and column removed and reinflated.
    """
    jac_all = handle.backend.constraint_jacobian(handle.model, handle.qconstrs['w_eq'], op.x)
    Jac_pi = jac_all[:, handle.var_index['pi']]
    Jac_phi = jac_all[:, handle.var_index['phi']]
    Jac_kappa = jac_all[:, handle.var_index['kappa']]

    try:
        inv_phi = np.linalg.inv(Jac_phi)
    except np.linalg.LinAlgError:
        raise SingularSensitivity("flow Jacobian is singular at the operating point "
                                  "(zero flow in some pipe)") from None
    s1 = inv_phi @ (Jac_pi @ op.pi + Jac_kappa @ op.kappa + Jac_phi @ op.phi)
    s2 = -inv_phi @ Jac_pi
    s3 = -inv_phi @ Jac_kappa

    bifurcation = bool(np.abs(s2).max(initial=0) >= setting.bifurcation_threshold
                       or np.abs(s3).max(initial=0) >= setting.bifurcation_threshold)
    if bifurcation:
        warnings.warn("most likely you are at a bifurcation point", BifurcationWarning)

    # pressure-related
    s2_hat = net.A @ s2
    s3_hat = net.B + net.A @ s3
    try:
        s2_breve = inflate_matrix(np.linalg.inv(reduce_matrix(s2_hat, net.ref)), net.ref)
    except np.linalg.LinAlgError:
        raise SingularSensitivity("reduced pressure sensitivity matrix is singular") from None
    # flow-related
    s2_grave = s2 @ s2_breve
    s3_grave = s2 @ s2_breve @ s3_hat - s3

    d = setting.digits
    lin = LinearizationCoefficients(
        jac=np.hstack([Jac_pi, Jac_phi, Jac_kappa]),
        pi_dot=op.pi, phi_dot=op.phi, kappa_dot=op.kappa,
        s1=np.round(s1, d), s2=np.round(s2, d), s3=np.round(s3, d),
        s2_hat=np.round(s2_hat, d), s3_hat=np.round(s3_hat, d),
        s2_breve=np.round(s2_breve, d),
        s2_grave=np.round(s2_grave, d), s3_grave=np.round(s3_grave, d),
        bifurcation=bifurcation)
    if not check:
        return lin

    # check linearization quality on the deterministic linearized network
    sol_lin = Linearized_Flow_Model(net, lin, handle.backend)
    gap = float(np.max(np.abs(op.pi - sol_lin.pi)))
    quality_ok = gap <= setting.linearization_tol
    if quality_ok:
        logger.info(f"linearization successful; max pressure gap: {gap:.3e}")
    else:
        warnings.warn(f"linearization fails; max pressure gap: {gap:.3e}",
                      LinearizationQualityWarning)
    return replace(lin, quality_ok=quality_ok, max_pressure_gap=gap)


def linear_network(Model, net, lin, demand):
    """Add the linearized network (limits, flow equations, balance, gauge)
    to Model and return its variables and constraints."""
    nN, nE = net.num_nodes, net.num_pipes
    phi_lb = np.full(nE, -GRB.INFINITY)
    phi_lb[net.active] = 0

    pi = Model.addVars(nN, lb=list(net.pi_min), ub=list(net.pi_max), name='pi')
    phi = Model.addVars(nE, lb=list(phi_lb), name='phi')
    kappa = Model.addVars(nE, lb=list(net.kappa_min), ub=list(net.kappa_max), name='kappa')
    theta = Model.addVars(nN, lb=list(net.inj_min), ub=list(net.inj_max), name='theta')

    # C1: linearized gas flow equations
    w_eq = Model.addConstrs((phi[l]
                             - quicksum(lin.s2[l, n]*pi[n] for n in range(nN) if lin.s2[l, n] != 0)
                             - quicksum(lin.s3[l, e]*kappa[e] for e in range(nE) if lin.s3[l, e] != 0)
                             == lin.s1[l] for l in range(nE)), name='w_eq')
    # C2: nodal gas balance
    gas_bal = Model.addConstrs((theta[n]
                                - quicksum(net.B[n, l]*kappa[l] for l in range(nE) if net.B[n, l] != 0)
                                - quicksum(net.A[n, l]*phi[l] for l in range(nE) if net.A[n, l] != 0)
                                == demand[n] for n in range(nN)), name='gas_bal')
    # C3: reference pressure
    Model.addConstr(pi[net.ref] == lin.pi_dot[net.ref], name='pi_ref')
    return pi, phi, kappa, theta, w_eq, gas_bal


def Linearized_Flow_Model(net, lin, backend):
    """Deterministic gas network optimization on the linearized flow equations."""
    Model = backend.new_model('gas_linearized')
    pi, phi, kappa, theta, w_eq, gas_bal = linear_network(Model, net, lin, net.demand)
    Model.setObjective(quicksum(net.cost[n]*theta[n]*theta[n] for n in range(net.num_nodes)),
                       GRB.MINIMIZE)
    Model.update()
    handle = ModelHandle(Model, backend,
                         var_index={'pi': _positions(pi), 'phi': _positions(phi),
                                    'kappa': _positions(kappa), 'theta': _positions(theta)},
                         con_index={'w_eq': _positions(w_eq), 'gas_bal': _positions(gas_bal)})
    result = ensure_converged(backend.solve(Model, duals=True), 'linearized model')
    return LinearizedSolution(pi=handle.values(result, 'pi'), phi=handle.values(result, 'phi'),
                              kappa=handle.values(result, 'kappa'), theta=handle.values(result, 'theta'),
                              cost=result.objective,
                              lam_c=handle.duals(result, 'gas_bal'), lam_w=handle.duals(result, 'w_eq'))


def Forecast_Model(net, setting):
    """Covariance of demand forecast errors, its factorization and a sample bank.

    Errors live on demand nodes only; their std. is sigma times the nominal
    demand and every pair shares the same correlation coefficient.
    """
    nN = net.num_nodes
    N_delta = net.demand_nodes
    N_nodelta = np.setdiff1d(np.arange(nN), N_delta)
    I_delta = np.zeros(nN)
    I_delta[N_delta] = 1

    sigma = np.zeros(nN)
    sigma[N_delta] = setting.sigma*net.demand[N_delta]
    C = np.full((len(N_delta), len(N_delta)), setting.correlation)
    np.fill_diagonal(C, 1)

    block = np.ix_(N_delta, N_delta)
    Sigma = np.zeros((nN, nN))
    Sigma[block] = np.outer(sigma[N_delta], sigma[N_delta])*C
    F = np.zeros((nN, nN))
    if np.any(Sigma[block]):
        F[block] = np.linalg.cholesky(Sigma[block])  # F F' = Sigma on the demand block

    rng = np.random.default_rng(setting.seed)
    xi = np.zeros((nN, setting.num_samples))
    xi[N_delta, :] = F[block] @ rng.standard_normal((len(N_delta), setting.num_samples))

    for a in (Sigma, F, xi, sigma, I_delta):
        a.setflags(write=False)
    logger.info(f"forecast model: {len(N_delta)} uncertain nodes, {setting.num_samples} samples")
    return ForecastData(Sigma=Sigma, F=F, xi=xi, sigma=sigma, I_delta=I_delta,
                        N_delta=N_delta, N_nodelta=N_nodelta)
