# -*- coding: utf-8 -*-
"""
Created on Mon Sep 21 09:37:12 2026

Chance-constrained gas network optimization with affine recourse.

Injections and compressions react to the demand forecast error xi as
theta + alpha xi and kappa + beta xi. Every limit is kept with probability
1 - eps/num_con through a second-order cone

    slack(x) >= Phi * || F' r(x)' ||

where r(x) is the row of the quantity's response to xi and F F' = Sigma.

Nodes with a zero-width injection range (and pipes with a zero-width
compression range) are held at their fixed value; under safety margins
they take no recourse.

The multipliers are read from the conic dual, built and solved as a model
of its own: its constraints are the stationarity conditions of the primal
and its variables are the cone multipliers, named as in CCSolution.
"""

import logging

import numpy as np
from gurobipy import GRB, Var, quicksum

from Module import safety_factor
from Solvers import ensure_converged
from SystemClasses import CCSolution, ConeDual, RotatedConeDual

logger = logging.getLogger(__name__)

FREE = -GRB.INFINITY


def _ints(a):
    return [int(i) for i in a]


class _Layout:
    """Which rows carry recourse, limit cones and cost cones."""

    def __init__(self, net, forecast, setting):
        self.nN, self.nE = net.num_nodes, net.num_pipes
        self.D = forecast.N_delta
        self.nD = len(self.D)
        self.Phi = safety_factor(setting, net)
        self.Ft = forecast.F.T[np.ix_(self.D, self.D)]
        self.uncertain = bool(np.any(self.Ft))
        self.conic = self.uncertain and self.Phi > 0

        fixed_inj = net.inj_max == net.inj_min
        fixed_comp = net.kappa_max == net.kappa_min
        self.fixed_nodes = _ints(np.flatnonzero(fixed_inj))
        self.free_nodes = _ints(np.flatnonzero(~fixed_inj))
        self.fixed_pipes = _ints(np.flatnonzero(fixed_comp))
        self.free_pipes = _ints(np.flatnonzero(~fixed_comp))
        if self.Phi > 0:
            self.alpha_rows, self.beta_rows = self.free_nodes, self.free_pipes
        else:
            self.alpha_rows, self.beta_rows = list(range(self.nN)), list(range(self.nE))
        self.active = _ints(net.active)
        self.cost_nodes = _ints(np.flatnonzero(net.cost_sqrt > 0))
        self.cost_alpha_nodes = [n for n in self.cost_nodes if n in self.alpha_rows] if self.uncertain else []


def _uncertainty(Ft, row, scale=1.0):
    """scale * F' r for a response row r given over the demand nodes."""
    nD = len(row)
    return [scale*quicksum(Ft[i, j]*row[j] for j in range(nD) if Ft[i, j] != 0) for i in range(nD)]


def _add_limit(Model, head, body, name):
    """head >= ||body||; a plain head >= 0 when there is no body."""
    if not body:
        return Model.addConstr(head >= 0, name=name)
    t = Model.addVar(name=f'{name}_t')
    y = Model.addVars(len(body), lb=FREE, name=f'{name}_y')
    Model.addConstr(t - head == 0, name=f'{name}_head')
    Model.addConstrs((y[i] - body[i] == 0 for i in range(len(body))), name=f'{name}_body')
    return Model.addConstr(quicksum(y[i]*y[i] for i in range(len(body))) <= t*t, name=name)


def _add_epigraph(Model, epigraph, body, name):
    """||body||^2 <= epigraph."""
    y = Model.addVars(len(body), lb=FREE, name=f'{name}_y')
    Model.addConstrs((y[i] - body[i] == 0 for i in range(len(body))), name=f'{name}_body')
    return Model.addConstr(quicksum(y[i]*y[i] for i in range(len(body))) <= epigraph, name=name)


def _primal_model(net, lin, lay, setting, backend):
    nN, nE, nD = lay.nN, lay.nE, lay.nD
    N, E, J = range(nN), range(nE), range(nD)
    D, Ft, Phi = lay.D, lay.Ft, lay.Phi
    P, PH = lin.s2_breve, lin.pressure_comp
    G2, G3 = lin.s2_grave, lin.s3_grave
    c_sqrt = net.cost_sqrt

    Model = backend.new_model('gas_cc')
    # variable declaration
    pi = Model.addVars(nN, lb=FREE, name='pi')
    phi = Model.addVars(nE, lb=FREE, name='phi')
    kappa = Model.addVars(nE, lb=FREE, name='kappa')
    theta = Model.addVars(nN, lb=FREE, name='theta')
    alpha = Model.addVars(lay.alpha_rows, nD, lb=FREE, name='alpha')  # columns follow the demand nodes
    beta = Model.addVars(lay.beta_rows, nD, lb=FREE, name='beta')
    c_theta = Model.addVars(nN, lb=FREE, name='c_theta')
    c_alpha = Model.addVars(nN, lb=FREE, name='c_alpha')
    s_pi = Model.addVars(nN, lb=FREE, name='s_pi') if setting.psi_pi > 0 else {}
    s_phi = Model.addVars(nE, lb=FREE, name='s_phi') if setting.psi_phi > 0 else {}

    # minimize expected gas injection cost + variance penalty
    Model.setObjective(quicksum(c_theta[n] for n in N) + quicksum(c_alpha[n] for n in N)
                       + setting.psi_pi*quicksum(s_pi.values())
                       + setting.psi_phi*quicksum(s_phi.values()), GRB.MINIMIZE)

    # response rows to the forecast error, over the demand nodes
    def pressure_row(n):
        return [quicksum(P[n, m]*alpha[m, j] for m in lay.alpha_rows if P[n, m] != 0)
                - quicksum(PH[n, l]*beta[l, j] for l in lay.beta_rows if PH[n, l] != 0)
                - P[n, D[j]] for j in J]

    def flow_row(l):
        return [quicksum(G2[l, n]*alpha[n, j] for n in lay.alpha_rows if G2[l, n] != 0)
                - quicksum(G3[l, e]*beta[e, j] for e in lay.beta_rows if G3[l, e] != 0)
                - G2[l, D[j]] for j in J]

    def margin(row):
        return _uncertainty(Ft, row, Phi) if lay.conic else []

    def spread(row):
        return _uncertainty(Ft, row) if lay.uncertain else []

    # C1: expected cost epigraphs
    for n in N:
        if n in lay.cost_nodes:
            _add_epigraph(Model, c_theta[n], [c_sqrt[n]*theta[n]], f'cost_theta[{n}]')
        else:
            Model.addConstr(c_theta[n] >= 0, name=f'cost_theta[{n}]')
        if n in lay.cost_alpha_nodes:
            _add_epigraph(Model, c_alpha[n], _uncertainty(Ft, [alpha[n, j] for j in J], c_sqrt[n]),
                          f'cost_alpha[{n}]')
        else:
            Model.addConstr(c_alpha[n] >= 0, name=f'cost_alpha[{n}]')

    # C2: gas flow equations
    Model.addConstrs((theta[n]
                      - quicksum(net.B[n, l]*kappa[l] for l in E if net.B[n, l] != 0)
                      - quicksum(net.A[n, l]*phi[l] for l in E if net.A[n, l] != 0)
                      == net.demand[n] for n in N), name='lam_c')
    Model.addConstrs((phi[l]
                      - quicksum(lin.s2[l, n]*pi[n] for n in N if lin.s2[l, n] != 0)
                      - quicksum(lin.s3[l, e]*kappa[e] for e in E if lin.s3[l, e] != 0)
                      == lin.s1[l] for l in E), name='lam_w')
    Model.addConstr(pi[net.ref] == lin.pi_dot[net.ref], name='lam_pi')
    # C3: recourse balance, the system absorbs every unit of forecast error
    Model.addConstrs((quicksum(alpha[n, j] for n in lay.alpha_rows)
                      - quicksum(net.B[n, l]*beta[l, j] for l in lay.beta_rows for n in N if net.B[n, l] != 0)
                      == 1 for j in J), name='lam_r')
    # C4: zero-width ranges
    Model.addConstrs((theta[n] == net.inj_max[n] for n in lay.fixed_nodes), name='theta_fix')
    Model.addConstrs((kappa[l] == net.kappa_max[l] for l in lay.fixed_pipes), name='kappa_fix')

    # C5: pressure limits and variance
    for n in N:
        row = pressure_row(n)
        _add_limit(Model, net.pi_max[n] - pi[n], margin(row), f'pi_max[{n}]')
        _add_limit(Model, pi[n] - net.pi_min[n], margin(row), f'pi_min[{n}]')
        if s_pi:
            _add_limit(Model, 1.0*s_pi[n], spread(row), f'var_pi[{n}]')
    # C6: flow limits on active pipes and flow variance
    for l in E:
        if l not in lay.active and not s_phi:
            continue
        row = flow_row(l)
        if l in lay.active:
            _add_limit(Model, 1.0*phi[l], margin(row), f'phi_min[{l}]')
        if s_phi:
            _add_limit(Model, 1.0*s_phi[l], spread(row), f'var_phi[{l}]')
    # C7: injection limits
    for n in lay.free_nodes:
        row = [alpha[n, j] for j in J] if lay.conic else []
        _add_limit(Model, net.inj_max[n] - theta[n], margin(row), f'theta_max[{n}]')
        _add_limit(Model, theta[n] - net.inj_min[n], margin(row), f'theta_min[{n}]')
    # C8: compression limits
    for l in lay.free_pipes:
        row = [beta[l, j] for j in J] if lay.conic else []
        _add_limit(Model, net.kappa_max[l] - kappa[l], margin(row), f'kappa_max[{l}]')
        _add_limit(Model, kappa[l] - net.kappa_min[l], margin(row), f'kappa_min[{l}]')
    Model.update()

    # solve model
    result = ensure_converged(backend.solve(Model), 'stochastic model')
    x = result.primal

    def values(vs, size):
        out = np.zeros(size)
        for key, v in vs.items():
            out[key] = x[v.index]
        return out

    alpha_val = np.zeros((nN, nN))
    for (n, j), v in alpha.items():
        alpha_val[n, D[j]] = x[v.index]
    beta_val = np.zeros((nE, nN))
    for (l, j), v in beta.items():
        beta_val[l, D[j]] = x[v.index]
    return result.objective, {
        'pi': values(pi, nN), 'phi': values(phi, nE), 'kappa': values(kappa, nE),
        'theta': values(theta, nN), 'alpha': alpha_val, 'beta': beta_val,
        'c_theta': values(c_theta, nN), 'c_alpha': values(c_alpha, nN)}


def _mix(coef, r, Ft, j):
    """sum_i coef[r, i] Ft[i, j] over the vector part of one multiplier."""
    return quicksum(Ft[i, j]*coef[r, i] for i in range(Ft.shape[0]) if Ft[i, j] != 0)


class _DualCones:
    """Multipliers (slack; vector) of one group of cones in the dual model.

    slack is either a variable per row or, for the variance cones, the
    fixed penalty weight.
    """

    def __init__(self, Model, name, rows, nD, conic, slack=None):
        self.rows = list(rows)
        if slack is None:
            self.slack = Model.addVars(self.rows, name=f'{name}_slack')
        else:
            self.slack = {r: slack for r in self.rows}
        self.coef = Model.addVars(self.rows, nD, lb=FREE, name=f'{name}_coef') if conic else {}
        if conic:
            for r in self.rows:
                Model.addConstr(quicksum(self.coef[r, i]*self.coef[r, i] for i in range(nD))
                                <= self.slack[r]*self.slack[r], name=f'{name}[{r}]')

    def slack_of(self, r):
        return self.slack[r] if r in self.slack else 0

    def mix(self, r, Ft, j):
        if not self.coef or r not in self.slack:
            return 0
        return _mix(self.coef, r, Ft, j)


class _DualEpigraphs:
    """Multipliers (head; vector) of the cost epigraphs. The epigraph
    multiplier is one at every dual feasible point."""

    def __init__(self, Model, name, rows, width):
        self.rows = list(rows)
        self.head = Model.addVars(self.rows, name=f'{name}_head')
        self.coef = Model.addVars(self.rows, width, lb=FREE, name=f'{name}_coef')
        for r in self.rows:
            Model.addConstr(quicksum(self.coef[r, i]*self.coef[r, i] for i in range(width))
                            <= 4*self.head[r], name=f'{name}[{r}]')

    def mix(self, r, Ft, j):
        if r not in self.head:
            return 0
        return _mix(self.coef, r, Ft, j)


def _dual_model(net, lin, lay, setting, backend):
    nN, nE, nD = lay.nN, lay.nE, lay.nD
    N, E, J = range(nN), range(nE), range(nD)
    D, Ft, Phi = lay.D, lay.Ft, lay.Phi
    P, PH = lin.s2_breve, lin.pressure_comp
    G2, G3 = lin.s2_grave, lin.s3_grave
    c_sqrt = net.cost_sqrt
    B_out = net.B.sum(axis=0)

    Model = backend.new_model('gas_cc_dual')
    lam_c = Model.addVars(nN, lb=FREE, name='lam_c')
    lam_w = Model.addVars(nE, lb=FREE, name='lam_w')
    lam_pi = Model.addVar(lb=FREE, name='lam_pi')
    lam_r = Model.addVars(nD, lb=FREE, name='lam_r')
    theta_fix = Model.addVars(lay.fixed_nodes, lb=FREE, name='theta_fix')
    kappa_fix = Model.addVars(lay.fixed_pipes, lb=FREE, name='kappa_fix')

    cones = {'pi_max': _DualCones(Model, 'pi_max', N, nD, lay.conic),
             'pi_min': _DualCones(Model, 'pi_min', N, nD, lay.conic),
             'phi_min': _DualCones(Model, 'phi_min', lay.active, nD, lay.conic),
             'theta_max': _DualCones(Model, 'theta_max', lay.free_nodes, nD, lay.conic),
             'theta_min': _DualCones(Model, 'theta_min', lay.free_nodes, nD, lay.conic),
             'kappa_max': _DualCones(Model, 'kappa_max', lay.free_pipes, nD, lay.conic),
             'kappa_min': _DualCones(Model, 'kappa_min', lay.free_pipes, nD, lay.conic),
             'var_pi': _DualCones(Model, 'var_pi', N if setting.psi_pi > 0 else [], nD,
                                  lay.uncertain, slack=setting.psi_pi),
             'var_phi': _DualCones(Model, 'var_phi', E if setting.psi_phi > 0 else [], nD,
                                   lay.uncertain, slack=setting.psi_phi)}
    cost_theta = _DualEpigraphs(Model, 'cost_theta', lay.cost_nodes, 1)
    cost_alpha = _DualEpigraphs(Model, 'cost_alpha', lay.cost_alpha_nodes, nD)

    # uncertainty multipliers mapped back through the covariance factor
    M_pi_var = {(n, j): cones['var_pi'].mix(n, Ft, j) for n in N for j in J}
    M_phi_var = {(l, j): cones['var_phi'].mix(l, Ft, j) for l in E for j in J}
    M_pi = {(n, j): M_pi_var[n, j] + Phi*(cones['pi_max'].mix(n, Ft, j) + cones['pi_min'].mix(n, Ft, j))
            for n in N for j in J}
    M_phi = {(l, j): M_phi_var[l, j] + Phi*cones['phi_min'].mix(l, Ft, j) for l in E for j in J}

    def limits(name, r, fixed):
        if r in fixed:
            return -fixed[r]
        return cones[f'{name}_max'].slack_of(r) - cones[f'{name}_min'].slack_of(r)

    # stationarity in pi, phi, theta and kappa
    Model.addConstrs((quicksum(lin.s2[l, n]*lam_w[l] for l in E if lin.s2[l, n] != 0)
                      + cones['pi_max'].slack_of(n) - cones['pi_min'].slack_of(n)
                      - (lam_pi if n == net.ref else 0) == 0 for n in N), name='pi')
    Model.addConstrs((quicksum(net.A[n, l]*lam_c[n] for n in N if net.A[n, l] != 0)
                      - lam_w[l] - cones['phi_min'].slack_of(l) == 0 for l in E), name='phi')
    Model.addConstrs((-lam_c[n] - (c_sqrt[n]*cost_theta.coef[n, 0] if n in cost_theta.head else 0)
                      + limits('theta', n, theta_fix) == 0 for n in N), name='theta')
    Model.addConstrs((quicksum(net.B[n, l]*lam_c[n] for n in N if net.B[n, l] != 0)
                      + quicksum(lin.s3[e, l]*lam_w[e] for e in E if lin.s3[e, l] != 0)
                      + limits('kappa', l, kappa_fix) == 0 for l in E), name='kappa')
    # stationarity in the recourse
    Model.addConstrs((-lam_r[j] - c_sqrt[n]*cost_alpha.mix(n, Ft, j)
                      - quicksum(P[m, n]*M_pi[m, j] for m in N if P[m, n] != 0)
                      - quicksum(G2[l, n]*M_phi[l, j] for l in E if G2[l, n] != 0)
                      - Phi*(cones['theta_max'].mix(n, Ft, j) + cones['theta_min'].mix(n, Ft, j)) == 0
                      for n in lay.alpha_rows for j in J), name='alpha')
    Model.addConstrs((B_out[l]*lam_r[j]
                      + quicksum(PH[n, l]*M_pi[n, j] for n in N if PH[n, l] != 0)
                      + quicksum(G3[e, l]*M_phi[e, j] for e in E if G3[e, l] != 0)
                      - Phi*(cones['kappa_max'].mix(l, Ft, j) + cones['kappa_min'].mix(l, Ft, j)) == 0
                      for l in lay.beta_rows for j in J), name='beta')

    def bounds(name, rows, upper, lower):
        return quicksum(upper[r]*cones[f'{name}_max'].slack[r] - lower[r]*cones[f'{name}_min'].slack[r]
                        for r in rows)

    Model.setObjective(quicksum(net.demand[n]*lam_c[n] for n in N) + quicksum(lin.s1[l]*lam_w[l] for l in E)
                       + lin.pi_dot[net.ref]*lam_pi + quicksum(lam_r.values())
                       - quicksum(cost_theta.head.values()) - quicksum(cost_alpha.head.values())
                       - bounds('pi', N, net.pi_max, net.pi_min)
                       - bounds('theta', lay.free_nodes, net.inj_max, net.inj_min)
                       - bounds('kappa', lay.free_pipes, net.kappa_max, net.kappa_min)
                       + quicksum(net.inj_max[n]*theta_fix[n] for n in lay.fixed_nodes)
                       + quicksum(net.kappa_max[l]*kappa_fix[l] for l in lay.fixed_pipes)
                       + quicksum(P[n, D[j]]*M_pi[n, j] for n in N for j in J if P[n, D[j]] != 0)
                       + quicksum(G2[l, D[j]]*M_phi[l, j] for l in E for j in J if G2[l, D[j]] != 0),
                       GRB.MAXIMIZE)
    Model.update()

    result = ensure_converged(backend.solve(Model), 'dual model')
    x = result.primal

    def val(v):
        return x[v.index] if isinstance(v, Var) else float(v)

    def cone(name, size, fixed=None):
        group = cones[name]
        slack = np.zeros(size)
        coef = np.zeros((size, nN))
        for r in group.rows:
            slack[r] = val(group.slack[r])
        for (r, i), v in group.coef.items():
            coef[r, D[i]] = x[v.index]
        # a fixed value splits its multiplier into the upper and lower side
        for r, v in (fixed or {}).items():
            slack[r] = max(-x[v.index], 0.0) if name.endswith('_max') else max(x[v.index], 0.0)
        return ConeDual(slack=slack, coef=coef)

    def epigraph(group, width):
        head = np.zeros(nN)
        coef = np.zeros((nN, width))
        for r, v in group.head.items():
            head[r] = x[v.index]
        for (r, i), v in group.coef.items():
            coef[r, i if width == 1 else D[i]] = x[v.index]
        return RotatedConeDual(head=head, epigraph=np.ones(nN), coef=coef)

    lam_r_val = np.zeros(nN)
    for j, v in lam_r.items():
        lam_r_val[D[j]] = x[v.index]
    logger.info(f"dual model: objective {result.objective:.4f}")
    return {'lam_c': np.array([x[lam_c[n].index] for n in N]),
            'lam_w': np.array([x[lam_w[l].index] for l in E]),
            'lam_pi': float(x[lam_pi.index]), 'lam_r': lam_r_val,
            'cost_theta': epigraph(cost_theta, 1), 'cost_alpha': epigraph(cost_alpha, nN),
            'var_pi': cone('var_pi', nN), 'var_phi': cone('var_phi', nE),
            'pi_max': cone('pi_max', nN), 'pi_min': cone('pi_min', nN),
            'phi_min': cone('phi_min', nE),
            'theta_max': cone('theta_max', nN, theta_fix), 'theta_min': cone('theta_min', nN, theta_fix),
            'kappa_max': cone('kappa_max', nE, kappa_fix), 'kappa_min': cone('kappa_min', nE, kappa_fix)}


def Chance_Constrained_Model(net, lin, forecast, setting, backend):
    """Chance-constrained gas network optimization.
        INPUTS :
            net (NetworkData), lin (LinearizationCoefficients),
            forecast (ForecastData), setting (Setting), backend (SolverBackend)
        OUTPUTS :
            CCSolution with primal values and the multipliers of every group
    """
    lay = _Layout(net, forecast, setting)
    obj, primal = _primal_model(net, lin, lay, setting, backend)
    duals = _dual_model(net, lin, lay, setting, backend)

    theta, alpha, beta = primal['theta'], primal['alpha'], primal['beta']
    F = forecast.F
    exp_cost = theta @ (net.cost*theta) + np.trace(alpha.T @ np.diag(net.cost) @ alpha @ forecast.Sigma)
    # standard deviation of the realized pressures and flows
    s_pi = np.linalg.norm(lin.pressure_response(alpha, beta) @ F, axis=1)
    s_phi = np.linalg.norm(lin.flow_response(alpha, beta) @ F, axis=1)

    solution = CCSolution(obj=obj, cost=float(exp_cost), phi_factor=lay.Phi,
                          alpha_rows=np.array(lay.alpha_rows, dtype=int),
                          beta_rows=np.array(lay.beta_rows, dtype=int),
                          s_pi=s_pi, s_phi=s_phi, **primal, **duals)
    logger.info(f"stochastic model: objective {solution.obj:.4f}, expected cost {solution.cost:.4f}, "
                f"safety factor {lay.Phi:.4f}")
    return solution
