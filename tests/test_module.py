import warnings

import numpy as np
import pytest
from scipy.stats import norm

from Module import (Forecast_Model, Linearize, Linearized_Flow_Model,
                    NonConvex_Flow_Model, inflate_matrix, reduce_matrix,
                    safety_factor)
from ProblemData import NetworkData
from Setting import Setting
from Solvers import (BifurcationWarning, LinearizationQualityWarning, SingularSensitivity,
                     SolveResult, SolverBackend, SolverNonConvergence, SolverStatus,
                     GurobiBackend)
from SystemClasses import ModelHandle, OperatingPoint


@pytest.mark.parametrize('ref', [0, 2, 4])
def test_reduce_inflate_round_trip(ref):
    rng = np.random.default_rng(1)
    M = rng.normal(size=(5, 5))
    R = reduce_matrix(M, ref)
    assert R.shape == (4, 4)
    V = inflate_matrix(R, ref)
    keep = np.arange(5) != ref
    assert np.array_equal(V[np.ix_(keep, keep)], M[np.ix_(keep, keep)])
    assert not V[ref, :].any() and not V[:, ref].any()


def test_reduce_rejects_non_square():
    with pytest.raises(ValueError):
        reduce_matrix(np.zeros((2, 3)), 0)


def test_safety_factor_deterministic(net3):
    for eps in (0.001, 0.01, 0.5):
        assert safety_factor(Setting(det=True, eps=eps), net3) == 0.0


def test_safety_factor_quantile(net3):
    s = Setting(eps=0.01)
    assert safety_factor(s, net3) == pytest.approx(norm.ppf(1 - 0.01/net3.num_con))
    factors = [safety_factor(Setting(eps=eps), net3) for eps in (0.1, 0.05, 0.01, 0.001)]
    assert all(a < b for a, b in zip(factors, factors[1:]))


def test_forecast_without_uncertainty(net3):
    forecast = Forecast_Model(net3, Setting(sigma=0.0, num_samples=100))
    assert forecast.S == 100
    assert not forecast.xi.any()
    assert not forecast.F.any()
    assert list(forecast.N_delta) == [1, 2]
    assert list(forecast.N_nodelta) == [0]


def test_forecast_factor_and_samples(net3):
    s = Setting(sigma=0.1, correlation=0.3, num_samples=20000, seed=3)
    forecast = Forecast_Model(net3, s)
    assert np.allclose(forecast.F @ forecast.F.T, forecast.Sigma)
    assert np.allclose(forecast.sigma, [0, 1, 1])
    assert not forecast.xi[0].any()
    assert np.allclose(np.cov(forecast.xi[1:]), forecast.Sigma[1:, 1:], atol=0.05)
    assert not forecast.xi.flags.writeable


def test_forecast_is_reproducible(net3):
    s = Setting(num_samples=50, seed=11)
    assert np.array_equal(Forecast_Model(net3, s).xi, Forecast_Model(net3, s).xi)


def test_non_convex_operating_point(net3, backend):
    op, handle = NonConvex_Flow_Model(net3, backend)
    assert op.theta[0] == pytest.approx(20, abs=1e-4)
    assert op.cost == pytest.approx(400, rel=1e-4)
    assert np.all(op.pi >= net3.pi_min - 1e-4) and np.all(op.pi <= net3.pi_max + 1e-4)
    assert op.phi == pytest.approx([20, 10], abs=1e-4)
    # Weymouth equation holds at the operating point
    lhs = op.phi*np.abs(op.phi)
    rhs = net3.k**2*(op.pi[net3.n_s] + op.kappa - op.pi[net3.n_r])
    assert lhs == pytest.approx(rhs, abs=1e-2)
    assert set(handle.var_index) >= {'pi', 'phi', 'kappa', 'theta'}


def test_linearization_reproduces_pressures(net3, backend):
    s = Setting(det=True)
    op, handle = NonConvex_Flow_Model(net3, backend)
    lin = Linearize(net3, handle, op, s)
    assert lin.quality_ok
    assert lin.max_pressure_gap <= 1.0
    assert not lin.bifurcation
    # the flow sensitivity to pressure is 2|phi| on the diagonal of the Jacobian
    Jac_phi = lin.jac[:, net3.num_nodes:net3.num_nodes + net3.num_pipes]
    assert np.diag(Jac_phi) == pytest.approx(2*np.abs(op.phi), rel=1e-6)
    assert lin.s1 + lin.s2 @ op.pi + lin.s3 @ op.kappa == pytest.approx(op.phi, abs=1e-6)
    # the reference node is fixed, so it does not respond
    assert not lin.s2_breve[net3.ref].any()


def test_linearization_with_compressor(net4, backend):
    op, handle = NonConvex_Flow_Model(net4, backend)
    assert np.all(op.phi[net4.active] >= -1e-6)
    lin = Linearize(net4, handle, op, Setting())
    assert lin.quality_ok
    assert lin.s3[1, 1] != 0
    sol = Linearized_Flow_Model(net4, lin, backend)
    assert sol.theta.sum() == pytest.approx(net4.demand.sum() + net4.B.sum(axis=0) @ sol.kappa, abs=1e-4)


def test_poor_linearization_warns(net3, backend):
    op, handle = NonConvex_Flow_Model(net3, backend)
    with pytest.warns(LinearizationQualityWarning):
        Linearize(net3, handle, op, Setting(linearization_tol=-1.0))


class _FailingBackend(SolverBackend):

    def __init__(self):
        self.inner = GurobiBackend()

    def new_model(self, name):
        return self.inner.new_model(name)

    def solve(self, model, nonconvex=False, duals=False):
        return SolveResult(SolverStatus.INFEASIBLE)


def test_non_convergence_is_escalated(net3):
    with pytest.raises(SolverNonConvergence) as err:
        NonConvex_Flow_Model(net3, _FailingBackend())
    assert err.value.status is SolverStatus.INFEASIBLE


def test_infeasible_network_is_reported(backend):
    net = NetworkData.from_arrays(
        demand=[0, 100], rho_max=[60, 60], rho_min=[30, 30], cost=[1, 0],
        inj_max=[10, 0], inj_min=[0, 0], n_s=[0], n_r=[1], k=[2])
    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        with pytest.raises(SolverNonConvergence):
            NonConvex_Flow_Model(net, backend)


def test_large_sensitivity_warns_of_bifurcation(net3, backend):
    op, handle = NonConvex_Flow_Model(net3, backend)
    with pytest.warns(BifurcationWarning):
        lin = Linearize(net3, handle, op, Setting(bifurcation_threshold=1e-3), check=False)
    assert lin.bifurcation


class _JacobianBackend(SolverBackend):
    """Hands out a fixed Weymouth Jacobian instead of reading a solved model."""

    def __init__(self, jac):
        self.jac = jac

    def constraint_jacobian(self, model, constrs, x):
        return self.jac


def _weymouth_point(net, pi, phi):
    nN, nE = net.num_nodes, net.num_pipes
    jac = np.zeros((nE, nN + 2*nE))
    for l in range(nE):
        jac[l, net.n_s[l]] = -net.k[l]**2
        jac[l, net.n_r[l]] = net.k[l]**2
        jac[l, nN + l] = 2*abs(phi[l])
        jac[l, nN + nE + l] = -net.k[l]**2
    handle = ModelHandle(None, _JacobianBackend(jac),
                         var_index={'pi': np.arange(nN), 'phi': np.arange(nN, nN + nE),
                                    'kappa': np.arange(nN + nE, nN + 2*nE)},
                         qconstrs={'w_eq': list(range(nE))})
    op = OperatingPoint(pi=np.asarray(pi, dtype=float), phi=np.asarray(phi, dtype=float),
                        kappa=np.zeros(nE), theta=np.zeros(nN), cost=0.0, x=np.zeros(nN + 2*nE))
    return handle, op


def test_zero_flow_is_a_singular_sensitivity(net3):
    handle, op = _weymouth_point(net3, [3600, 3000, 3000], [20, 0])
    with pytest.raises(SingularSensitivity):
        Linearize(net3, handle, op, Setting(), check=False)


def test_vanishing_flow_warns_of_bifurcation(net3):
    handle, op = _weymouth_point(net3, [3600, 3000, 3000], [20, 1e-9])
    with pytest.warns(BifurcationWarning):
        lin = Linearize(net3, handle, op, Setting(), check=False)
    assert lin.bifurcation
    assert np.abs(lin.s2).max() >= Setting().bifurcation_threshold


def test_disconnected_network_is_a_singular_sensitivity():
    net = NetworkData.from_arrays(
        demand=[0, 10, 0, 10], rho_max=[60]*4, rho_min=[30]*4, cost=[1, 0, 1, 0],
        inj_max=[50, 0, 50, 0], inj_min=[0]*4, n_s=[0, 2], n_r=[1, 3], k=[2, 2])
    handle, op = _weymouth_point(net, [3600, 3000, 3600, 3000], [10, 10])
    with pytest.raises(SingularSensitivity):
        Linearize(net, handle, op, Setting(), check=False)
