# -*- coding: utf-8 -*-
"""
Created on Tue Sep 15 16:05:48 2026

Result containers passed between the stages of the pipeline.

All containers are frozen; numpy members are never written after
construction.
"""

from dataclasses import dataclass, field
from typing import Dict

import numpy as np
import pandas as pd


@dataclass(frozen=True)
class ModelHandle:
    """A built (and possibly solved) solver model with its index maps.

    var_index / con_index map named groups to solver positions; they are
    filled once while the model is built.
    """
    model: object
    backend: object
    var_index: Dict[str, np.ndarray] = field(default_factory=dict)
    con_index: Dict[str, np.ndarray] = field(default_factory=dict)
    qconstrs: Dict[str, list] = field(default_factory=dict)

    def values(self, result, group):
        return result.primal[self.var_index[group]]

    def duals(self, result, group):
        return result.dual[self.con_index[group]]


@dataclass(frozen=True)
class OperatingPoint:
    pi: np.ndarray  # pressure squared
    phi: np.ndarray  # flow
    kappa: np.ndarray  # compression
    theta: np.ndarray  # injection
    cost: float
    x: np.ndarray = field(repr=False, default=None)  # full primal vector of the solved model


@dataclass(frozen=True)
class LinearizationCoefficients:
    """phi ~ s1 + s2 pi + s3 kappa around the operating point, and the
    pressure / flow responses derived from it.

    s2_hat = A s2 and s3_hat = B + A s3 are the nodal sensitivities;
    s2_breve is the gauge-reduced inverse of s2_hat reinflated to full
    size; s2_grave = s2 s2_breve and s3_grave = s2 s2_breve s3_hat - s3
    give the composite flow responses.
    """
    jac: np.ndarray
    pi_dot: np.ndarray
    phi_dot: np.ndarray
    kappa_dot: np.ndarray
    s1: np.ndarray
    s2: np.ndarray
    s3: np.ndarray
    s2_hat: np.ndarray
    s3_hat: np.ndarray
    s2_breve: np.ndarray
    s2_grave: np.ndarray
    s3_grave: np.ndarray
    bifurcation: bool = False
    quality_ok: bool = True
    max_pressure_gap: float = 0.0

    @property
    def pressure_comp(self):
        """Pressure response to compression recourse (s2_breve s3_hat)."""
        return self.s2_breve @ self.s3_hat

    def pressure_response(self, alpha, beta):
        """Pressure-squared sensitivity to demand errors under recourse (N x N)."""
        return self.s2_breve @ (alpha - self.s3_hat @ beta - np.eye(len(self.pi_dot)))

    def flow_response(self, alpha, beta):
        """Flow sensitivity to demand errors under recourse (E x N)."""
        return self.s2_grave @ (alpha - np.eye(len(self.pi_dot))) - self.s3_grave @ beta


@dataclass(frozen=True)
class LinearizedSolution:
    pi: np.ndarray
    phi: np.ndarray
    kappa: np.ndarray
    theta: np.ndarray
    cost: float
    lam_c: np.ndarray  # nodal balance duals
    lam_w: np.ndarray  # linearized flow duals


@dataclass(frozen=True)
class ForecastData:
    Sigma: np.ndarray  # covariance, zero outside demand nodes
    F: np.ndarray  # lower-triangular factor, F F' = Sigma
    xi: np.ndarray = field(repr=False)  # N x S sample bank
    sigma: np.ndarray  # per-node standard deviation
    I_delta: np.ndarray  # indicator of demand nodes
    N_delta: np.ndarray  # demand nodes
    N_nodelta: np.ndarray  # the other nodes

    @property
    def S(self):
        return self.xi.shape[1]


@dataclass(frozen=True)
class ConeDual:
    """Multipliers of a family of second-order cones (slack; vector).

    slack has one entry per cone; coef has one row per cone, laid out over
    all nodes (zero outside the demand nodes).
    """
    slack: np.ndarray
    coef: np.ndarray


@dataclass(frozen=True)
class RotatedConeDual:
    """Multipliers of the epigraph cones (head; epigraph; vector)."""
    head: np.ndarray
    epigraph: np.ndarray
    coef: np.ndarray


@dataclass(frozen=True)
class CCSolution:
    obj: float
    cost: float  # expected production cost
    phi_factor: float  # safety factor used in the cones
    pi: np.ndarray
    phi: np.ndarray
    kappa: np.ndarray
    theta: np.ndarray
    alpha: np.ndarray  # N x N injection recourse
    beta: np.ndarray  # E x N compression recourse
    alpha_rows: np.ndarray  # nodes whose recourse is a decision
    beta_rows: np.ndarray  # pipes whose recourse is a decision
    s_pi: np.ndarray
    s_phi: np.ndarray
    c_theta: np.ndarray
    c_alpha: np.ndarray
    # multipliers of the equality groups
    lam_c: np.ndarray  # nodal balance
    lam_w: np.ndarray  # linearized flow
    lam_pi: float  # reference pressure
    lam_r: np.ndarray  # recourse balance (over all nodes)
    # multipliers of the cone groups
    cost_theta: RotatedConeDual
    cost_alpha: RotatedConeDual
    var_pi: ConeDual
    var_phi: ConeDual
    pi_max: ConeDual
    pi_min: ConeDual
    phi_min: ConeDual  # rows over all pipes, zero for passive ones
    theta_max: ConeDual
    theta_min: ConeDual
    kappa_max: ConeDual
    kappa_min: ConeDual


@dataclass(frozen=True)
class OutOfSampleResult:
    phi: np.ndarray
    theta: np.ndarray
    kappa: np.ndarray
    pi: np.ndarray
    rho: np.ndarray
    costs: np.ndarray
    infeasible: np.ndarray

    @property
    def cost(self):
        return float(np.mean(self.costs))

    @property
    def eps_stat(self):
        return float(np.mean(self.infeasible))


@dataclass(frozen=True)
class DualResult:
    dual_obj: float
    duality_gap: float
    strong_duality: bool
    stationarity: Dict[str, np.ndarray]
    mismatch: float
    stationary: bool
    R_inj: float
    R_act: float
    R_con: float
    R_rent: float
    R_free: float
    revenue_balance: float
    revenue_decomposition: pd.DataFrame
    R_ind_inj: np.ndarray
    Pi_inj: np.ndarray  # producer profit
    R_ind_act: np.ndarray
    R_ind_con: np.ndarray


@dataclass(frozen=True)
class ProjectionResult:
    """Deviations per projected sample; NaN where no re-dispatch exists."""
    d_theta: np.ndarray
    d_kappa: np.ndarray

    @property
    def failed(self):
        return int(np.isnan(self.d_theta).sum())

    @property
    def mean_theta(self):
        done = self.d_theta[~np.isnan(self.d_theta)]
        return float(np.mean(done)) if len(done) else float('nan')

    @property
    def mean_kappa(self):
        done = self.d_kappa[~np.isnan(self.d_kappa)]
        return float(np.mean(done)) if len(done) else float('nan')


@dataclass(frozen=True)
class PipelineResult:
    operating_point: OperatingPoint
    linearization: LinearizationCoefficients
    forecast: ForecastData
    solution: CCSolution
    out_of_sample: OutOfSampleResult
    dual: DualResult
    projection: ProjectionResult = None
