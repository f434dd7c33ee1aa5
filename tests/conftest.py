import os
import sys

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from ProblemData import NetworkData  # noqa: E402
from Setting import Setting  # noqa: E402
from Solvers import GurobiBackend  # noqa: E402

CASE_DIR = os.path.join(ROOT, 'data', 'case_3')


@pytest.fixture(scope='session')
def case_dir():
    return CASE_DIR


@pytest.fixture(scope='session')
def net3():
    """Producer at node 0 feeding two consumers along a line."""
    return NetworkData.from_arrays(
        demand=[0, 10, 10], rho_max=[60, 60, 60], rho_min=[30, 30, 30],
        cost=[1, 0, 0], inj_max=[50, 0, 0], inj_min=[0, 0, 0],
        n_s=[0, 1], n_r=[1, 2], k=[2, 2])


@pytest.fixture(scope='session')
def net4():
    """Two producers, a compressor on the middle pipe and two consumers."""
    return NetworkData.from_arrays(
        demand=[0, 0, 10, 10], rho_max=[60, 60, 60, 60], rho_min=[30, 30, 30, 30],
        cost=[1, 2, 0, 0], inj_max=[50, 10, 0, 0], inj_min=[0, 0, 0, 0],
        n_s=[0, 1, 2], n_r=[1, 2, 3], k=[2, 2, 2],
        kappa_max=[0, 200, 0], kappa_min=[0, 0, 0])


@pytest.fixture(scope='session')
def backend():
    return GurobiBackend(time_limit=60)


@pytest.fixture(scope='session')
def setting():
    return Setting(sigma=0.1, num_samples=2000, seed=7, projection_samples=5)


@pytest.fixture(scope='session')
def pipeline3(net3, setting, backend):
    from Main import Run_Pipeline
    return Run_Pipeline(net3, setting, backend)


@pytest.fixture(scope='session')
def pipeline4(net4, setting, backend):
    from Main import Run_Pipeline
    return Run_Pipeline(net4, setting, backend)



@pytest.fixture(scope='session')
def pipeline4_penalized(net4, setting, backend):
    from Main import Run_Pipeline
    return Run_Pipeline(net4, setting.with_updates(psi_pi=0.01, psi_phi=0.01), backend, projection=False)


@pytest.fixture(scope='session')
def pipeline4_correlated(net4, setting, backend):
    from Main import Run_Pipeline
    return Run_Pipeline(net4, setting.with_updates(correlation=0.3), backend, projection=False)
