import numpy as np
import pytest

from ChanceConstrained import Chance_Constrained_Model
from Module import Forecast_Model, Linearize, NonConvex_Flow_Model, safety_factor


def _recourse_balance(net, sol):
    return sol.alpha.sum(axis=0) - (net.B @ sol.beta).sum(axis=0)


@pytest.mark.parametrize('name', ['pipeline3', 'pipeline4'])
def test_recourse_balance_identity(name, request):
    result = request.getfixturevalue(name)
    net_name = 'net3' if name == 'pipeline3' else 'net4'
    net = request.getfixturevalue(net_name)
    sol = result.solution
    assert _recourse_balance(net, sol) == pytest.approx(result.forecast.I_delta, abs=1e-5)


def test_recourse_zero_outside_demand_nodes(pipeline4):
    sol, forecast = pipeline4.solution, pipeline4.forecast
    assert not sol.alpha[:, forecast.N_nodelta].any()
    assert not sol.beta[:, forecast.N_nodelta].any()


def test_consumers_do_not_take_recourse(pipeline3):
    # zero injection range at consumers leaves no room for recourse
    assert not pipeline3.solution.alpha[1:].any()
    assert pipeline3.solution.alpha[0, 1:] == pytest.approx([1, 1], abs=1e-5)


def test_nominal_balance_and_limits(net4, pipeline4):
    sol = pipeline4.solution
    assert net4.A @ sol.phi + net4.B @ sol.kappa == pytest.approx(sol.theta - net4.demand, abs=1e-5)
    assert np.all(sol.pi <= net4.pi_max + 1e-4)
    assert np.all(sol.pi >= net4.pi_min - 1e-4)
    assert np.all(sol.theta <= net4.inj_max + 1e-4)
    assert sol.pi[net4.ref] == pytest.approx(pipeline4.linearization.pi_dot[net4.ref], abs=1e-5)


def test_expected_cost(net3, pipeline3):
    sol, forecast = pipeline3.solution, pipeline3.forecast
    expected = sol.theta @ (net3.cost*sol.theta) + np.trace(sol.alpha.T @ np.diag(net3.cost) @ sol.alpha @ forecast.Sigma)
    assert sol.cost == pytest.approx(expected)
    # objective holds the same two cost terms plus zero variance penalties
    assert sol.obj == pytest.approx(sol.cost, rel=1e-4)


def test_cone_duals_are_named_and_sized(net4, pipeline4):
    sol = pipeline4.solution
    nN, nE = net4.num_nodes, net4.num_pipes
    for cone in (sol.var_pi, sol.pi_max, sol.pi_min, sol.theta_max, sol.theta_min):
        assert cone.slack.shape == (nN,)
        assert cone.coef.shape == (nN, nN)
    for cone in (sol.var_phi, sol.phi_min, sol.kappa_max, sol.kappa_min):
        assert cone.slack.shape == (nE,)
        assert cone.coef.shape == (nE, nN)
    assert sol.cost_theta.coef.shape == (nN, 1)
    assert sol.cost_alpha.coef.shape == (nN, nN)
    # passive pipes carry no flow-sign cone
    passive = np.setdiff1d(np.arange(nE), net4.active)
    assert not sol.phi_min.slack[passive].any()
    assert np.all(sol.pi_max.slack >= -1e-6)


def test_deterministic_policy_matches_nominal_cost(net3, backend, setting):
    det = setting.with_updates(det=True)
    op, handle = NonConvex_Flow_Model(net3, backend)
    lin = Linearize(net3, handle, op, det)
    forecast = Forecast_Model(net3, det)
    sol = Chance_Constrained_Model(net3, lin, forecast, det, backend)
    assert sol.phi_factor == 0.0
    assert sol.theta[0] == pytest.approx(20, abs=1e-4)
    # without safety margins the free consumer recourse absorbs all errors
    assert sol.cost == pytest.approx(400, abs=1e-3)


def test_injection_margins_cover_recourse(net4, pipeline4, setting):
    sol, forecast = pipeline4.solution, pipeline4.forecast
    assert sol.phi_factor == pytest.approx(safety_factor(setting, net4))
    assert sol.phi_factor > 0
    spread = sol.phi_factor*np.linalg.norm(sol.alpha @ forecast.F, axis=1)
    assert np.all(net4.inj_max - sol.theta >= spread - 1e-4)
    assert np.all(sol.theta - net4.inj_min >= spread - 1e-4)


def test_zero_width_ranges_are_held(net4, pipeline4):
    sol = pipeline4.solution
    passive = np.setdiff1d(np.arange(net4.num_pipes), net4.active)
    assert list(sol.alpha_rows) == [0, 1]
    assert list(sol.beta_rows) == list(net4.active)
    assert sol.theta[2:] == pytest.approx([0, 0], abs=1e-6)
    assert sol.kappa[passive] == pytest.approx(0, abs=1e-6)
    assert not sol.alpha[2:].any() and not sol.beta[passive].any()
    # the multiplier of a held value lands on one side only
    held = np.minimum(sol.theta_max.slack[2:], sol.theta_min.slack[2:])
    assert not held.any()
