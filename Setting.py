# -*- coding: utf-8 -*-
"""
Created on Mon Sep 14 10:12:41 2026

Run settings for the chance-constrained gas network policies.

One record is built at start-up and handed, read-only, to every stage.
"""

from dataclasses import dataclass, fields, replace


@dataclass(frozen=True)
class Setting:
    det: bool = False  # deterministic policies (safety factor = 0)
    eps: float = 0.01  # joint violation budget, spread over all limits
    psi_pi: float = 0.0  # pressure variance penalty
    psi_phi: float = 0.0  # flow variance penalty
    sigma: float = 0.1  # forecast error std. as a fraction of nominal demand
    correlation: float = 0.0  # pairwise correlation of demand errors

    num_samples: int = 10000
    seed: int = 0
    num_tolerance: float = 1e-3
    projection_samples: int = 100
    processes: int = 1

    time_limit: float = 600.0  # seconds, per solver call
    digits: int = 10
    bifurcation_threshold: float = 1e6
    linearization_tol: float = 1.0
    gap_tol: float = 1e-3
    stationarity_tol: float = 1e-2

    def __post_init__(self):
        if not 0 < self.eps < 1:
            raise ValueError(f"eps must lie in (0, 1), got {self.eps}")
        if self.sigma < 0:
            raise ValueError(f"sigma must be non-negative, got {self.sigma}")
        if not -1 < self.correlation < 1:
            raise ValueError(f"correlation must lie in (-1, 1), got {self.correlation}")
        if self.psi_pi < 0 or self.psi_phi < 0:
            raise ValueError("variance penalties must be non-negative")
        if self.num_samples < 1 or self.processes < 1:
            raise ValueError("num_samples and processes must be positive")

    def with_updates(self, **changes):
        return replace(self, **changes)

    @classmethod
    def from_argv(cls, argv):
        """Build a setting from positional command-line values.

        Order: eps sigma det psi_pi psi_phi num_samples seed processes.
        Missing trailing values keep their defaults.
        """
        names = ['eps', 'sigma', 'det', 'psi_pi', 'psi_phi', 'num_samples', 'seed', 'processes']
        types = {f.name: f.type for f in fields(cls)}
        values = {}
        for name, raw in zip(names, argv):
            kind = types[name]
            if kind in (bool, 'bool'):
                values[name] = bool(int(raw))
            elif kind in (int, 'int'):
                values[name] = int(raw)
            else:
                values[name] = float(raw)
        return cls(**values)
