# -*- coding: utf-8 -*-
"""
Created on Mon Sep 14 15:31:07 2026

Gas network data: nodes, producers, pipes and the incidence structures
derived from them.

The tables are read once (load_case) and turned into an immutable
NetworkData record.
"""

import logging
import os
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

COMPRESSION_FUEL = 5e-5  # gas withdrawn at the sending node per unit of compression


def _frozen(a, dtype=float):
    a = np.array(a, dtype=dtype)
    a.setflags(write=False)
    return a


@dataclass(frozen=True)
class NetworkData:
    """Nodes (N), pipes (E) and producers of one gas network case.

    Pressures are stored as pressures (rho); the models work with
    pressure squared (pi = rho**2).
    """
    demand: np.ndarray  # delta, per node
    rho_max: np.ndarray
    rho_min: np.ndarray
    cost: np.ndarray  # c, quadratic production cost per node (0 where no producer)
    inj_max: np.ndarray
    inj_min: np.ndarray
    n_s: np.ndarray  # sending node per pipe (0-based)
    n_r: np.ndarray  # receiving node per pipe (0-based)
    k: np.ndarray  # Weymouth resistance coefficient
    kappa_max: np.ndarray
    kappa_min: np.ndarray
    ref: int = 0
    A: np.ndarray = field(init=False, repr=False)
    B: np.ndarray = field(init=False, repr=False)
    active: np.ndarray = field(init=False, repr=False)
    num_con: int = field(init=False)

    def __post_init__(self):
        for name in ('demand', 'rho_max', 'rho_min', 'cost', 'inj_max', 'inj_min',
                     'k', 'kappa_max', 'kappa_min'):
            object.__setattr__(self, name, _frozen(getattr(self, name)))
        object.__setattr__(self, 'n_s', _frozen(self.n_s, int))
        object.__setattr__(self, 'n_r', _frozen(self.n_r, int))
        self._validate()

        nN, nE = len(self.demand), len(self.k)
        # node-edge incidence matrix
        A = np.zeros((nN, nE))
        A[self.n_s, np.arange(nE)] = 1
        A[self.n_r, np.arange(nE)] = -1
        # compression-injection matrix
        active = (self.kappa_max > 0) | (self.kappa_min < 0)
        B = np.zeros((nN, nE))
        for l in np.flatnonzero(active):
            B[self.n_s[l], l] = -COMPRESSION_FUEL if self.kappa_min[l] < 0 else COMPRESSION_FUEL
        object.__setattr__(self, 'A', _frozen(A))
        object.__setattr__(self, 'B', _frozen(B))
        object.__setattr__(self, 'active', _frozen(np.flatnonzero(active), int))
        # number of operational limits sharing the violation budget
        num_con = 2*nN + 2*int(np.sum(self.inj_max > 0)) + 2*nE + len(self.active)
        object.__setattr__(self, 'num_con', num_con)

    def _validate(self):
        nN, nE = len(self.demand), len(self.k)
        for name in ('rho_max', 'rho_min', 'cost', 'inj_max', 'inj_min'):
            if len(getattr(self, name)) != nN:
                raise ValueError(f"{name} has {len(getattr(self, name))} entries, expected {nN}")
        for name in ('n_s', 'n_r', 'kappa_max', 'kappa_min'):
            if len(getattr(self, name)) != nE:
                raise ValueError(f"{name} has {len(getattr(self, name))} entries, expected {nE}")
        if nE and (self.n_s.min() < 0 or self.n_r.min() < 0
                   or self.n_s.max() >= nN or self.n_r.max() >= nN):
            raise ValueError("pipe endpoints must refer to existing nodes")
        if np.any(self.n_s == self.n_r):
            raise ValueError("a pipe cannot start and end at the same node")
        if not 0 <= self.ref < nN:
            raise ValueError(f"reference node {self.ref} out of range")
        if np.any(self.rho_min > self.rho_max) or np.any(self.inj_min > self.inj_max) \
                or np.any(self.kappa_min > self.kappa_max):
            raise ValueError("lower bounds must not exceed upper bounds")
        if np.any(self.cost < 0) or np.any(self.k <= 0):
            raise ValueError("costs must be non-negative and resistances positive")

    @classmethod
    def from_arrays(cls, demand, rho_max, rho_min, cost, inj_max, inj_min,
                    n_s, n_r, k, kappa_max=None, kappa_min=None, ref=0):
        nE = len(k)
        if kappa_max is None:
            kappa_max = np.zeros(nE)
        if kappa_min is None:
            kappa_min = np.zeros(nE)
        return cls(demand=demand, rho_max=rho_max, rho_min=rho_min, cost=cost,
                   inj_max=inj_max, inj_min=inj_min, n_s=n_s, n_r=n_r, k=k,
                   kappa_max=kappa_max, kappa_min=kappa_min, ref=ref)

    @property
    def num_nodes(self):
        return len(self.demand)

    @property
    def num_pipes(self):
        return len(self.k)

    @property
    def pi_max(self):
        return self.rho_max**2

    @property
    def pi_min(self):
        return self.rho_min**2

    @property
    def cost_sqrt(self):
        return np.sqrt(self.cost)

    @property
    def producers(self):
        return np.flatnonzero(self.inj_max > 0)

    @property
    def demand_nodes(self):
        return np.flatnonzero(self.demand != 0)

    def flow_bound(self):
        """Largest |flow| any pipe can carry within the pressure and compression limits."""
        span = self.pi_max.max() - self.pi_min.min() + np.abs(np.r_[self.kappa_max, self.kappa_min]).max(initial=0)
        return self.k*np.sqrt(max(span, 0))


def load_case(case_dir, ref=None):
    """Loads a network case from gas_prod.csv, gas_node.csv and gas_pipe.csv
        INPUTS :
            case_dir (str): folder holding the three tables
            ref (int): id of the reference pressure node (first node if None)
        OUTPUTS :
            NetworkData
    """
    df_prod = pd.read_csv(os.path.join(case_dir, 'gas_prod.csv'))
    df_node = pd.read_csv(os.path.join(case_dir, 'gas_node.csv'))
    df_pipe = pd.read_csv(os.path.join(case_dir, 'gas_pipe.csv'))

    if 'node' in df_node.columns:
        node_ids = list(df_node['node'])
    else:
        node_ids = list(range(1, len(df_node)+1))
    id2pos = {nid: i for i, nid in enumerate(node_ids)}
    if len(id2pos) != len(node_ids):
        raise ValueError("duplicate node ids in gas_node.csv")

    def position(nid):
        if nid not in id2pos:
            raise ValueError(f"unknown node id {nid}")
        return id2pos[nid]

    nN = len(df_node)
    cost, inj_max, inj_min = np.zeros(nN), np.zeros(nN), np.zeros(nN)
    if 'node' in df_prod.columns:
        rows = [position(nid) for nid in df_prod['node']]
    else:
        if len(df_prod) > nN:
            raise ValueError("more producer rows than nodes")
        rows = list(range(len(df_prod)))
    cost[rows] = df_prod['c'].to_numpy(dtype=float)
    inj_max[rows] = df_prod['p_max'].to_numpy(dtype=float)
    inj_min[rows] = df_prod['p_min'].to_numpy(dtype=float)

    net = NetworkData(
        demand=df_node['demand'].to_numpy(dtype=float),
        rho_max=df_node['presh_max'].to_numpy(dtype=float),
        rho_min=df_node['presh_min'].to_numpy(dtype=float),
        cost=cost, inj_max=inj_max, inj_min=inj_min,
        n_s=[position(nid) for nid in df_pipe['n_s']],
        n_r=[position(nid) for nid in df_pipe['n_r']],
        k=df_pipe['k'].to_numpy(dtype=float),
        kappa_max=df_pipe['kappa_max'].to_numpy(dtype=float),
        kappa_min=df_pipe['kappa_min'].to_numpy(dtype=float),
        ref=0 if ref is None else position(ref))
    logger.info(f"loaded case {case_dir}: {net.num_nodes} nodes, {net.num_pipes} pipes, "
                f"{len(net.active)} active pipes")
    return net
