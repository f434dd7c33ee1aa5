# -*- coding: utf-8 -*-
"""
Created on Fri Sep 25 17:44:30 2026

Main script: chance-constrained gas network policies for one network case.

    python Main.py <case_dir> [eps sigma det psi_pi psi_phi num_samples seed processes]
"""

import logging
import os
import sys
import time

import numpy as np
import pandas as pd

from Analysis import Dual_Analysis, Out_of_Sample, Projection_Analysis
from ChanceConstrained import Chance_Constrained_Model
from Module import Forecast_Model, Linearize, NonConvex_Flow_Model
from ProblemData import load_case
from Setting import Setting
from Solvers import GurobiBackend
from SystemClasses import PipelineResult

logger = logging.getLogger(__name__)


def Run_Pipeline(net, setting, backend=None, projection=True):
    """Non-convex solve, linearization, forecast, chance-constrained solve
    and the diagnostics, in that order."""
    if backend is None:
        backend = GurobiBackend(time_limit=setting.time_limit)
    op, handle = NonConvex_Flow_Model(net, backend)
    lin = Linearize(net, handle, op, setting)
    forecast = Forecast_Model(net, setting)
    sol = Chance_Constrained_Model(net, lin, forecast, setting, backend)
    ofs = Out_of_Sample(net, forecast, sol, lin, setting)
    dual = Dual_Analysis(net, sol, lin, forecast, setting)
    proj = Projection_Analysis(net, lin, forecast, ofs, setting, backend) if projection else None
    return PipelineResult(operating_point=op, linearization=lin, forecast=forecast, solution=sol,
                          out_of_sample=ofs, dual=dual, projection=proj)


def Publish_results(result, out_dir):
    os.makedirs(out_dir, exist_ok=True)
    sol = result.solution
    nN, nE = len(sol.theta), len(sol.phi)

    df_node = pd.DataFrame({'node': np.arange(1, nN+1), 'pi': sol.pi, 'rho': np.sqrt(np.maximum(sol.pi, 0)),
                            'theta': sol.theta, 'lam_c': sol.lam_c, 'lam_r': sol.lam_r,
                            'revenue': result.dual.R_ind_inj, 'profit': result.dual.Pi_inj,
                            'payment': result.dual.R_ind_con})
    df_node.to_csv(os.path.join(out_dir, 'nodes.csv'), index=False)
    df_pipe = pd.DataFrame({'pipe': np.arange(1, nE+1), 'phi': sol.phi, 'kappa': sol.kappa,
                            'lam_w': sol.lam_w})
    df_pipe.to_csv(os.path.join(out_dir, 'pipes.csv'), index=False)

    labels = [f'xi_{n+1}' for n in range(nN)]
    pd.DataFrame(sol.alpha, columns=labels).to_csv(os.path.join(out_dir, 'alpha.csv'), index=False)
    pd.DataFrame(sol.beta, columns=labels).to_csv(os.path.join(out_dir, 'beta.csv'), index=False)
    result.dual.revenue_decomposition.to_csv(os.path.join(out_dir, 'revenue.csv'))

    stats = {'non_convex_cost': result.operating_point.cost,
             'max_pressure_gap': result.linearization.max_pressure_gap,
             'objective': sol.obj,
             'expected_cost': sol.cost,
             'safety_factor': sol.phi_factor,
             'ofs_cost': result.out_of_sample.cost,
             'eps_stat': result.out_of_sample.eps_stat,
             'dual_objective': result.dual.dual_obj,
             'duality_gap': result.dual.duality_gap,
             'stationarity_mismatch': result.dual.mismatch,
             'revenue_balance': result.dual.revenue_balance}
    if result.projection is not None:
        stats['projection_theta'] = result.projection.mean_theta
        stats['projection_kappa'] = result.projection.mean_kappa
        stats['projection_failed'] = result.projection.failed
    pd.DataFrame([stats]).to_csv(os.path.join(out_dir, 'statistics.csv'), index=False)


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print(__doc__)
        return 2
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(name)s %(levelname)s: %(message)s')
    s_time = time.time()

    case_dir = argv[0]
    setting = Setting.from_argv(argv[1:])
    net = load_case(case_dir)
    result = Run_Pipeline(net, setting)
    Publish_results(result, os.path.join(case_dir, 'results'))

    print(f"non-convex cost: {format(result.operating_point.cost, '.4E')}")
    print(f"chance-constrained objective: {format(result.solution.obj, '.4E')}")
    print(f"expected cost: {format(result.solution.cost, '.4E')}")
    print(f"out-of-sample cost: {format(result.out_of_sample.cost, '.4E')}")
    print(f"empirical violation probability (%): {np.round(result.out_of_sample.eps_stat*100, 2)}")
    print(f"duality gap: {format(result.dual.duality_gap, '.2E')}")
    print(result.dual.revenue_decomposition)
    print(f"\n\n Elapsed time (seconds): {time.time()-s_time}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
