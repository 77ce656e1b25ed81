"""Two-site Density Matrix Renormalization Group.

DMRG finds the lowest eigenstate of a 1D Hamiltonian given as an MPO by
optimizing an MPS two sites at a time.

Architecture decisions:

- The outer sweep loop is a Python loop because bond dimensions change
  after every truncation.
- Environments live in an :class:`EnvironmentCache`; after each update
  the two touched sites are invalidated and the environment on the
  vacated side is rebuilt at once, so the next bond finds it ready.
- The same code path handles dense and block-sparse chains; nothing in
  this module looks at the storage variant.
- Excluded states (``orthogonal_to``) add a penalty ``weight * |o><o|``
  to the local operator; each one keeps its own overlap cache.

One sweep visits bonds ``0, 1, ..., N-2`` moving right and then
``N-2, ..., 0`` moving left, ``2(N-1)`` updates in all.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import NamedTuple

import jax.numpy as jnp
import numpy as np

from tndmrg.algorithms.environment import EnvironmentCache
from tndmrg.algorithms.local_op import LocalOperator, LocalOperatorOrth, project_state
from tndmrg.algorithms.sweeps import Sweeps, sweep_steps
from tndmrg.contraction.contractor import contract
from tndmrg.contraction.decompose import Direction
from tndmrg.core.errors import ChainStructureError
from tndmrg.core.tensor import Tensor
from tndmrg.networks.mpo import MPO
from tndmrg.networks.mps import MPS
from tndmrg.networks.operations import check_qns, check_structure

logger = logging.getLogger(__name__)


@dataclass
class DMRGConfig:
    """Configuration for a DMRG run.

    Attributes:
        energy_errgoal:  Stop after an even-numbered sweep once the energy
                         changed by less than this since the previous sweep.
                         Zero disables the check.
        quiet:           Suppress the INFO and WARNING records of the run.
        orth_weight:     Penalty strength for excluded states.
        eigensolver_tol: Residual tolerance of the Lanczos solver.
        check_qns:       Verify charge flows and divergences after every
                         bond update (slow; for debugging).
        combine_mpo:     Pre-contract the two MPO tensors of each bond.
    """

    energy_errgoal: float = 0.0
    quiet: bool = False
    orth_weight: float = 1.0
    eigensolver_tol: float = 1e-10
    check_qns: bool = False
    combine_mpo: bool = True


class BondReport(NamedTuple):
    """Observer record emitted after every bond update."""

    sweep: int
    half_sweep: int
    bond: int
    bond_dim: int
    cutoff: float
    max_dim: int
    truncation_error: float
    kept_weights: np.ndarray
    energy: float


class SweepReport(NamedTuple):
    """Observer record emitted after every sweep."""

    sweep: int
    energy: float
    max_bond_dim: int
    max_truncation_error: float


class DMRGResult(NamedTuple):
    """Result of a DMRG run.

    Attributes:
        energy:             Final eigenvalue of the local problem.
        energies_per_sweep: Energy at the end of each sweep.
        mps:                The optimized state.
        truncation_errors:  Truncation error of every bond update.
        converged:          The energy error goal was met.
        n_sweeps:           Number of sweeps performed.
    """

    energy: float
    energies_per_sweep: list[float]
    mps: MPS
    truncation_errors: list[float]
    converged: bool
    n_sweeps: int


def dmrg(
    psi: MPS,
    H: MPO,
    sweeps: Sweeps,
    config: DMRGConfig | None = None,
    *,
    orthogonal_to: Sequence[MPS] = (),
    left_boundary: Tensor | None = None,
    right_boundary: Tensor | None = None,
    on_bond: Callable[[BondReport], None] | None = None,
    on_sweep: Callable[[SweepReport], None] | None = None,
) -> DMRGResult:
    """Run two-site DMRG.

    Args:
        psi:            Initial state; not modified.
        H:              Hamiltonian MPO acting on the sites of ``psi``.
        sweeps:         Sweep schedule.
        config:         Run options; defaults to ``DMRGConfig()``.
        orthogonal_to:  States the result should be orthogonal to.
        left_boundary:  Tensor closing open links at the left end, if any.
        right_boundary: Tensor closing open links at the right end, if any.
        on_bond:        Called with a :class:`BondReport` after every update.
        on_sweep:       Called with a :class:`SweepReport` after every sweep.

    Returns:
        DMRGResult with the energy, the sweep history and the optimized MPS.

    Raises:
        ChainStructureError: If ``psi`` has fewer than two sites, or the
            chains do not share the same sites.
    """
    config = config or DMRGConfig()
    n = len(psi)
    if n < 2:
        raise ChainStructureError(f"DMRG needs at least 2 sites, got {n}")
    check_structure(psi, H, orthogonal_to)

    psi = psi.copy()
    if H.is_complex and not psi.is_complex:
        psi = psi.astype(jnp.complex128)
    psi.position(0)

    env = EnvironmentCache.for_operator(psi, H, left_boundary, right_boundary)
    excluded = [EnvironmentCache.for_overlap(psi, other) for other in orthogonal_to]
    caches = [env, *excluded]

    energies_per_sweep: list[float] = []
    truncation_errors: list[float] = []
    energy = math.nan
    last_energy = math.inf
    converged = False
    sw = 0

    for sw in range(1, sweeps.nsweep + 1):
        row = sweeps.row(sw)
        params = row.truncation()
        sweep_trunc = 0.0

        for b, direction, half in sweep_steps(n):
            if excluded:
                others = [
                    project_state(c.left(b), c.ket.site(b), c.ket.site(b + 1), c.right(b + 1))
                    for c in excluded
                ]
                op = LocalOperatorOrth(
                    H.site(b), H.site(b + 1), env.left(b), env.right(b + 1),
                    config.combine_mpo, others, config.orth_weight,
                )
            else:
                op = LocalOperator(
                    H.site(b), H.site(b + 1), env.left(b), env.right(b + 1), config.combine_mpo
                )

            phi = contract(psi.site(b), psi.site(b + 1))
            energy, phi, result = op.solve(phi, max_iter=row.niter, tol=config.eigensolver_tol)
            if not result.converged:
                logger.debug(
                    "sweep %d bond %d: eigensolver not converged after %d steps (residual %.3e)",
                    sw, b, result.iterations, result.residual,
                )

            info = psi.svd_bond(b, phi, direction, params)
            if info.is_zero and not config.quiet:
                logger.warning("sweep %d bond %d: two-site tensor is zero", sw, b)

            for cache in caches:
                cache.invalidate(b, b + 1)
                if direction is Direction.FROM_LEFT and b != n - 2:
                    cache.left(b + 1)
                elif direction is Direction.FROM_RIGHT and b != 0:
                    cache.right(b)

            if config.check_qns:
                check_qns(psi)

            truncation_errors.append(info.truncation_error)
            sweep_trunc = max(sweep_trunc, info.truncation_error)
            if not config.quiet:
                logger.info(
                    "sweep %d/%d half %d bond %d: cutoff=%.1e maxdim=%d dim=%d "
                    "trunc_err=%.3e E=%.12f",
                    sw, sweeps.nsweep, half, b, row.cutoff, row.max_dim,
                    info.bond_dim, info.truncation_error, energy,
                )
            if on_bond is not None:
                on_bond(BondReport(
                    sweep=sw,
                    half_sweep=half,
                    bond=b,
                    bond_dim=info.bond_dim,
                    cutoff=row.cutoff,
                    max_dim=row.max_dim,
                    truncation_error=info.truncation_error,
                    kept_weights=info.kept_weights,
                    energy=energy,
                ))

        energies_per_sweep.append(energy)
        if not config.quiet:
            logger.info("Sweep %d/%d: E = %.12f", sw, sweeps.nsweep, energy)
        if on_sweep is not None:
            on_sweep(SweepReport(sw, energy, psi.max_bond_dim(), sweep_trunc))

        if (
            config.energy_errgoal > 0
            and sw % 2 == 0
            and abs(energy - last_energy) < config.energy_errgoal
        ):
            converged = True
            if not config.quiet:
                logger.info("Energy error goal met at sweep %d", sw)
            break
        last_energy = energy

    return DMRGResult(
        energy=energy,
        energies_per_sweep=energies_per_sweep,
        mps=psi,
        truncation_errors=truncation_errors,
        converged=converged,
        n_sweeps=sw,
    )
