# -*- coding: utf-8 -*-
"""
Created on Wed Sep 23 11:48:03 2026

Diagnostics over a solved chance-constrained policy: out-of-sample
simulation, dual analysis (duality gap, stationarity, revenues) and the
projection of realized recourse onto re-dispatched operation.

None of these alter the solution they are given.
"""

import logging
import multiprocessing as mp
import warnings

import numpy as np
import pandas as pd
from gurobipy import GRB, quicksum

from Module import linear_network
from Solvers import (DualityGapWarning, SolverNonConvergence, StationarityMismatch,
                     ensure_converged)
from SystemClasses import DualResult, OutOfSampleResult, ProjectionResult

logger = logging.getLogger(__name__)


def _chunks(S, processes):
    bounds = np.linspace(0, S, min(processes, S) + 1).astype(int)
    return [(bounds[i], bounds[i+1]) for i in range(len(bounds) - 1)]


def _simulate(net, sol, lin, xi, tol):
    """Realized operation for a block of samples (one column per sample)."""
    R_pi = lin.pressure_response(sol.alpha, sol.beta)
    R_phi = lin.flow_response(sol.alpha, sol.beta)
    phi = sol.phi[:, None] + R_phi @ xi
    theta = sol.theta[:, None] + sol.alpha @ xi
    kappa = sol.kappa[:, None] + sol.beta @ xi
    pi = sol.pi[:, None] + R_pi @ xi
    rho = np.sqrt(np.maximum(pi, 0))
    costs = net.cost @ theta**2

    prod, act = net.producers, net.active
    infeasible = np.zeros(xi.shape[1], dtype=bool)
    infeasible |= np.any(theta[prod] >= net.inj_max[prod, None] + tol, axis=0)
    infeasible |= np.any(theta[prod] <= net.inj_min[prod, None] - tol, axis=0)
    infeasible |= np.any(rho >= net.rho_max[:, None] + tol, axis=0)
    infeasible |= np.any(rho <= net.rho_min[:, None] - tol, axis=0)
    infeasible |= np.any(phi[act] <= -tol, axis=0)
    infeasible |= np.any(kappa[act] >= net.kappa_max[act, None] + tol, axis=0)
    infeasible |= np.any(kappa[act] <= net.kappa_min[act, None] - tol, axis=0)
    return phi, theta, kappa, pi, rho, costs, infeasible


def Out_of_Sample(net, forecast, sol, lin, setting):
    """Simulate the affine policy on every sample of the forecast bank.
        INPUTS :
            net (NetworkData), forecast (ForecastData), sol (CCSolution),
            lin (LinearizationCoefficients), setting (Setting)
        OUTPUTS :
            OutOfSampleResult with realized quantities, costs and flags
    """
    S = forecast.S
    tol = setting.num_tolerance
    if setting.processes > 1 and S > 1:
        jobs = [(net, sol, lin, forecast.xi[:, a:b], tol) for a, b in _chunks(S, setting.processes)]
        with mp.Pool(processes=len(jobs)) as pool:
            parts = pool.starmap(_simulate, jobs)
        # chunks come back in sample order
        blocks = [np.concatenate([p[i] for p in parts], axis=-1) for i in range(7)]
    else:
        blocks = _simulate(net, sol, lin, forecast.xi, tol)

    ofs = OutOfSampleResult(*blocks)
    logger.info(f"empirical violation probability: {ofs.eps_stat*100:.2f}%, "
                f"mean cost: {ofs.cost:.4f}")
    return ofs


def Dual_Analysis(net, sol, lin, forecast, setting):
    """Dual objective, stationarity residuals and revenue decomposition of
    the chance-constrained solution."""
    nN = net.num_nodes
    A, B = net.A, net.B
    Ft = forecast.F.T
    D = forecast.N_delta
    P, PH = lin.s2_breve, lin.pressure_comp
    G2, G3 = lin.s2_grave, lin.s3_grave
    Phi = sol.phi_factor
    c_sqrt = net.cost_sqrt
    ones = np.ones(nN)
    lam_c, lam_w, lam_r = sol.lam_c, sol.lam_w, sol.lam_r

    # uncertainty multipliers mapped back through the covariance factor
    M_pi_var = sol.var_pi.coef @ Ft
    M_pi_lim = Phi*(sol.pi_max.coef + sol.pi_min.coef) @ Ft
    M_phi_var = sol.var_phi.coef @ Ft
    M_phi_lim = Phi*sol.phi_min.coef @ Ft
    M_theta = Phi*(sol.theta_max.coef + sol.theta_min.coef) @ Ft
    M_kappa = Phi*(sol.kappa_max.coef + sol.kappa_min.coef) @ Ft
    M_cost = (c_sqrt[:, None]*sol.cost_alpha.coef) @ Ft
    M_pi = M_pi_var + M_pi_lim
    M_phi = M_phi_var + M_phi_lim

    # stationarity conditions
    lam_pi = np.zeros(nN)
    lam_pi[net.ref] = sol.lam_pi
    stationarity = {
        'c_theta': 1 - sol.cost_theta.epigraph,
        'c_alpha': 1 - sol.cost_alpha.epigraph,
        's_pi': setting.psi_pi - sol.var_pi.slack,
        's_phi': setting.psi_phi - sol.var_phi.slack,
        'pi': lin.s2.T @ lam_w + sol.pi_max.slack - sol.pi_min.slack - lam_pi,
        'phi': A.T @ lam_c - lam_w - sol.phi_min.slack,
        'theta': -lam_c - c_sqrt*sol.cost_theta.coef[:, 0] + sol.theta_max.slack - sol.theta_min.slack,
        'kappa': B.T @ lam_c + lin.s3.T @ lam_w + sol.kappa_max.slack - sol.kappa_min.slack,
        'alpha': (-lam_r[None, :] - M_cost - P.T @ M_pi - G2.T @ M_phi - M_theta)[np.ix_(sol.alpha_rows, D)],
        'beta': (np.outer(B.T @ ones, lam_r) + PH.T @ M_pi + G3.T @ M_phi - M_kappa)[np.ix_(sol.beta_rows, D)],
    }
    mismatch = float(sum(np.abs(r).sum() for r in stationarity.values()))
    stationary = mismatch <= setting.stationarity_tol
    if stationary:
        logger.info(f"stationarity conditions hold; mismatch: {mismatch:.3e}")
    else:
        warnings.warn(f"stationarity conditions do not hold; mismatch: {mismatch:.3e}",
                      StationarityMismatch)

    # dual objective
    dual_obj = float(lam_c @ net.demand + lam_w @ lin.s1 + sol.lam_pi*lin.pi_dot[net.ref] + lam_r.sum()
                     - sol.cost_theta.head.sum() - sol.cost_alpha.head.sum()
                     - sol.pi_max.slack @ net.pi_max + sol.pi_min.slack @ net.pi_min
                     - sol.theta_max.slack @ net.inj_max + sol.theta_min.slack @ net.inj_min
                     - sol.kappa_max.slack @ net.kappa_max + sol.kappa_min.slack @ net.kappa_min
                     + np.sum(M_pi*P) + np.sum(M_phi*G2))
    duality_gap = abs(dual_obj - sol.obj)/abs(sol.obj) if sol.obj != 0 else abs(dual_obj)
    strong_duality = duality_gap <= setting.gap_tol
    if strong_duality:
        logger.info(f"strong duality holds; duality gap: {duality_gap:.3e}")
    else:
        warnings.warn(f"strong duality does not hold; duality gap: {duality_gap:.3e}",
                      DualityGapWarning)

    # revenue decomposition
    alpha, beta = sol.alpha, sol.beta
    R_inj = {'nom_bal': lam_c @ sol.theta,
             'rec_bal': lam_r @ (alpha.T @ ones),
             'net_lim': np.sum((P.T @ M_pi_lim + G2.T @ M_phi_lim)*alpha),
             'net_var': np.sum((P.T @ M_pi_var + G2.T @ M_phi_var)*alpha)}
    R_act = {'nom_bal': lam_w @ (lin.s3 @ sol.kappa) - lam_c @ (B @ sol.kappa),
             'rec_bal': -lam_r @ ((B @ beta).T @ ones),
             'net_lim': -np.sum((PH.T @ M_pi_lim + G3.T @ M_phi_lim)*beta),
             'net_var': -np.sum((PH.T @ M_pi_var + G3.T @ M_phi_var)*beta)}
    R_con = {'nom_bal': lam_c @ net.demand,
             'rec_bal': lam_r.sum(),
             'net_lim': np.sum(M_pi_lim*P) + np.sum(M_phi_lim*G2),
             'net_var': np.sum(M_pi_var*P) + np.sum(M_phi_var*G2)}
    table = pd.DataFrame({'inj': R_inj, 'act': R_act, 'con': R_con},
                         index=['nom_bal', 'rec_bal', 'net_lim', 'net_var'])
    table.loc['total'] = table.sum()

    R_rent = float(-lam_c @ (A @ sol.phi) - lam_w @ sol.phi + lam_w @ (lin.s2 @ sol.pi)
                   + sol.phi_min.slack @ sol.phi
                   + sol.pi_max.slack @ (net.pi_max - sol.pi) + sol.pi_min.slack @ (sol.pi - net.pi_min)
                   + sol.var_phi.slack @ sol.s_phi + sol.var_pi.slack @ sol.s_pi)
    R_free = float(lam_w @ lin.s1)
    R_inj_tot = float(table.loc['total', 'inj'])
    R_act_tot = float(table.loc['total', 'act'])
    R_con_tot = float(table.loc['total', 'con'])
    revenue_balance = R_con_tot - R_inj_tot - R_act_tot - R_rent - R_free
    logger.info(f"revenue balance residual: {revenue_balance:.3e}")

    # individual revenues
    R_ind_inj = lam_c*sol.theta + np.sum((lam_r[None, :] + P.T @ M_pi + G2.T @ M_phi)*alpha, axis=1)
    Pi_inj = R_ind_inj - sol.c_theta - sol.c_alpha
    R_ind_act = (-(B.T @ lam_c)*sol.kappa + (lin.s3.T @ lam_w)*sol.kappa
                 - (B.T @ ones)*(beta @ lam_r)
                 - np.sum((PH.T @ M_pi + G3.T @ M_phi)*beta, axis=1))[net.active]
    R_ind_con = lam_c*net.demand + lam_r + np.diag(P.T @ M_pi) + np.diag(G2.T @ M_phi)

    return DualResult(dual_obj=dual_obj, duality_gap=float(duality_gap), strong_duality=strong_duality,
                      stationarity=stationarity, mismatch=mismatch, stationary=stationary,
                      R_inj=R_inj_tot, R_act=R_act_tot, R_con=R_con_tot, R_rent=R_rent, R_free=R_free,
                      revenue_balance=float(revenue_balance), revenue_decomposition=table,
                      R_ind_inj=R_ind_inj, Pi_inj=Pi_inj, R_ind_act=R_ind_act, R_ind_con=R_ind_con)


def _project(net, lin, backend, demand, theta_hat, kappa_hat):
    """Closest re-dispatch to a realized injection/compression pair; NaN
    distances when the realized demand admits none."""
    prod, act = net.producers, net.active
    Model = backend.new_model('gas_projection')
    pi, phi, kappa, theta, w_eq, gas_bal = linear_network(Model, net, lin, demand)
    Model.setObjective(quicksum((theta[n] - theta_hat[n])*(theta[n] - theta_hat[n]) for n in prod)
                       + quicksum((kappa[l] - kappa_hat[l])*(kappa[l] - kappa_hat[l]) for l in act),
                       GRB.MINIMIZE)
    Model.update()
    try:
        result = ensure_converged(backend.solve(Model), 'projection model')
    except SolverNonConvergence:
        return float('nan'), float('nan')
    theta_val = np.array([result.primal[theta[n].index] for n in prod])
    kappa_val = np.array([result.primal[kappa[l].index] for l in act])
    return (float(np.abs(theta_val - theta_hat[prod]).sum()),
            float(np.abs(kappa_val - kappa_hat[act]).sum()))


def Projection_Analysis(net, lin, forecast, ofs, setting, backend):
    """Distance between the realized affine recourse and the closest
    feasible re-dispatch, over the first projection_samples samples."""
    S = min(setting.projection_samples, forecast.S)
    jobs = [(net, lin, backend, net.demand + forecast.xi[:, s], ofs.theta[:, s], ofs.kappa[:, s])
            for s in range(S)]
    if setting.processes > 1 and S > 1:
        with mp.Pool(processes=min(setting.processes, S)) as pool:
            dist = pool.starmap(_project, jobs)
    else:
        dist = [_project(*job) for job in jobs]

    proj = ProjectionResult(d_theta=np.array([d[0] for d in dist]),
                            d_kappa=np.array([d[1] for d in dist]))
    if proj.failed:
        logger.warning(f"projection: no feasible re-dispatch for {proj.failed} of {S} samples")
    logger.info(f"projection over {S} samples: mean injection deviation {proj.mean_theta:.4e}, "
                f"mean compression deviation {proj.mean_kappa:.4e}")
    return proj
