"""Two-site DMRG: environments, local operator, eigensolver, schedule and driver."""

from tndmrg.algorithms.dmrg import (
    BondReport,
    DMRGConfig,
    DMRGResult,
    SweepReport,
    dmrg,
)
from tndmrg.algorithms.eigensolver import EigenResult, lanczos
from tndmrg.algorithms.environment import EnvironmentCache
from tndmrg.algorithms.local_op import LocalOperator, LocalOperatorOrth, project_state
from tndmrg.algorithms.sweeps import SweepRow, Sweeps, sweep_next, sweep_steps

__all__ = [
    "dmrg",
    "DMRGConfig",
    "DMRGResult",
    "BondReport",
    "SweepReport",
    "lanczos",
    "EigenResult",
    "EnvironmentCache",
    "LocalOperator",
    "LocalOperatorOrth",
    "project_state",
    "Sweeps",
    "SweepRow",
    "sweep_next",
    "sweep_steps",
]
