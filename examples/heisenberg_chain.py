#!/usr/bin/env python3
"""Spin-1/2 XXZ chain via two-site DMRG with U(1) charge conservation.

The Hamiltonian on an open chain of ``L`` sites is

    H = Jz * sum_i Sz_i Sz_{i+1}
        + Jxy/2 * sum_i (S+_i S-_{i+1} + S-_i S+_{i+1})
        + hz * sum_i Sz_i

The physical legs carry the U(1) charge ``2 Sz`` (up = +1, down = -1), so
every tensor is stored block-sparse and the total magnetization of the
starting Neel state is conserved by construction.

After the ground state, the script computes the lowest state orthogonal
to it by adding the penalty ``w |psi0><psi0|`` to the Hamiltonian.

Usage::

    python examples/heisenberg_chain.py
"""

from __future__ import annotations

import logging
import time

import jax.numpy as jnp
import numpy as np

from tndmrg import (
    MPO,
    MPS,
    DMRGConfig,
    FlowDirection,
    IndexKind,
    SymmetricTensor,
    Sweeps,
    TensorIndex,
    U1Symmetry,
    dmrg,
    expectation,
    inner,
)
from tndmrg.networks.mpo import mpo_site_indices

SZ = np.array([[0.5, 0.0], [0.0, -0.5]])
SP = np.array([[0.0, 1.0], [0.0, 0.0]])
SM = SP.T
I2 = np.eye(2)

# ---------------------------------------------------------------------------
# Chain construction
# ---------------------------------------------------------------------------


def spin_half_sites(L: int) -> list[TensorIndex]:
    """Physical legs of ``L`` spin-1/2 sites with charge ``2 Sz``."""
    u1 = U1Symmetry()
    charges = np.array([1, -1], dtype=np.int32)
    return [
        TensorIndex(u1, charges, FlowDirection.IN, f"p{i}", kind=IndexKind.SITE)
        for i in range(L)
    ]


def build_xxz_mpo(
    sites: list[TensorIndex],
    Jz: float = 1.0,
    Jxy: float = 1.0,
    hz: float = 0.0,
) -> MPO:
    """Block-sparse MPO of the XXZ chain.

    The 5x5 lower-triangular transfer matrix has the states
    ``(done, S+ pending, S- pending, Sz pending, start)``. Each MPO link
    carries the charge its pending operator still owes the chain.
    """
    W = np.zeros((5, 2, 2, 5))
    # W[a, ket, bra, b] = O[bra, ket]
    W[0, :, :, 0] = I2.T
    W[1, :, :, 0] = SP.T
    W[2, :, :, 0] = SM.T
    W[3, :, :, 0] = SZ.T
    W[4, :, :, 0] = hz * SZ.T
    W[4, :, :, 1] = 0.5 * Jxy * SM.T
    W[4, :, :, 2] = 0.5 * Jxy * SP.T
    W[4, :, :, 3] = Jz * SZ.T
    W[4, :, :, 4] = I2.T
    link = np.array([0, -2, 2, 0, 0], dtype=np.int32)

    L = len(sites)
    tensors = []
    for i, site in enumerate(sites):
        if i == 0:
            data = W[4]
        elif i == L - 1:
            data = W[:, :, :, 0]
        else:
            data = W
        indices = mpo_site_indices(site, i, L, left_charges=link, right_charges=link)
        tensors.append(SymmetricTensor.from_dense(jnp.asarray(data), indices))
    return MPO(tensors)


# ---------------------------------------------------------------------------
# Exact diagonalisation reference (small systems only)
# ---------------------------------------------------------------------------


def xxz_exact(L: int, Jz: float = 1.0, Jxy: float = 1.0, hz: float = 0.0) -> np.ndarray:
    """Full spectrum of the XXZ chain; feasible for ``L <= ~12``."""

    def embed(ops: dict[int, np.ndarray]) -> np.ndarray:
        out = np.array([[1.0]])
        for k in range(L):
            out = np.kron(out, ops.get(k, I2))
        return out

    H = np.zeros((2**L, 2**L))
    for i in range(L - 1):
        H += Jz * embed({i: SZ, i + 1: SZ})
        H += 0.5 * Jxy * (embed({i: SP, i + 1: SM}) + embed({i: SM, i + 1: SP}))
    for i in range(L):
        H += hz * embed({i: SZ})
    return np.linalg.eigvalsh(H)


# ---------------------------------------------------------------------------
# Run DMRG
# ---------------------------------------------------------------------------


def run_chain(L: int, Jz: float = 1.0, max_dim: int = 64, ed_check: bool = False):
    """Ground state and lowest orthogonal state of an ``L``-site chain."""
    print(f"\n{'='*60}")
    print(f"  XXZ chain  L={L}, Jz={Jz}, max_dim={max_dim}")
    print(f"{'='*60}")

    sites = spin_half_sites(L)
    H = build_xxz_mpo(sites, Jz=Jz)
    psi = MPS.product_state(sites, [0, 1] * (L // 2) + [0] * (L % 2))
    sweeps = Sweeps.ramp(nsweep=8, start_dim=8, max_dim=max_dim, cutoff=1e-10, niter=4)

    t0 = time.perf_counter()
    ground = dmrg(psi, H, sweeps, DMRGConfig(energy_errgoal=1e-10, quiet=True))
    t_dmrg = time.perf_counter() - t0
    print(f"  Ground state:  E0 = {ground.energy:.10f}  ({t_dmrg:.1f}s, "
          f"{ground.n_sweeps} sweeps, max bond dim {ground.mps.max_bond_dim()})")
    print(f"  E0/L = {ground.energy / L:.10f}")
    print(f"  <H>  = {expectation(ground.mps, H):.10f}")

    t0 = time.perf_counter()
    excited = dmrg(
        psi,
        H,
        sweeps,
        DMRGConfig(orth_weight=10.0, quiet=True),
        orthogonal_to=[ground.mps],
    )
    t_dmrg = time.perf_counter() - t0
    print(f"  Excited state: E1 = {excited.energy:.10f}  ({t_dmrg:.1f}s)")
    print(f"  Gap: {excited.energy - ground.energy:.10f}")
    print(f"  |<psi0|psi1>| = {abs(inner(ground.mps, excited.mps)):.2e}")

    if ed_check:
        evals = xxz_exact(L, Jz=Jz)
        print(f"  ED ground state: {evals[0]:.10f}")
        print(f"  |E_dmrg - E_exact| = {abs(ground.energy - evals[0]):.2e}")

    return ground, excited


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main():
    logging.basicConfig(level=logging.WARNING)
    print("Spin-1/2 XXZ chain: two-site DMRG with U(1) symmetry")

    # --- Configuration 1: 10 sites with ED check ---
    run_chain(L=10, max_dim=32, ed_check=True)

    # --- Configuration 2: 40 sites, isotropic ---
    run_chain(L=40, max_dim=64)

    # --- Configuration 3: 40 sites, easy-axis ---
    run_chain(L=40, Jz=1.5, max_dim=64)


if __name__ == "__main__":
    main()
