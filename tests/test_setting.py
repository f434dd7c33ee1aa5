import pytest

from Setting import Setting


def test_defaults():
    s = Setting()
    assert not s.det
    assert s.eps == 0.01
    assert s.correlation == 0.0
    assert s.num_samples == 10000


def test_setting_is_frozen():
    s = Setting()
    with pytest.raises(AttributeError):
        s.eps = 0.05
    assert s.with_updates(eps=0.05).eps == 0.05
    assert s.eps == 0.01


@pytest.mark.parametrize('changes', [dict(eps=0), dict(eps=1.5), dict(sigma=-0.1),
                                     dict(correlation=1.0), dict(psi_pi=-1), dict(processes=0)])
def test_invalid_settings(changes):
    with pytest.raises(ValueError):
        Setting(**changes)


def test_from_argv():
    s = Setting.from_argv(['0.05', '0.2', '1', '0.1', '0', '500', '3', '2'])
    assert s.eps == 0.05
    assert s.sigma == 0.2
    assert s.det is True
    assert s.psi_pi == 0.1
    assert s.num_samples == 500
    assert s.seed == 3
    assert s.processes == 2


def test_from_argv_keeps_trailing_defaults():
    s = Setting.from_argv(['0.02'])
    assert s.eps == 0.02
    assert s.sigma == Setting().sigma
