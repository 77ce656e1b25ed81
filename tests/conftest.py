"""Shared fixtures for the tndmrg test suite."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from tndmrg.core.index import FlowDirection, IndexKind, TensorIndex
from tndmrg.core.symmetry import U1Symmetry, ZnSymmetry
from tndmrg.core.tensor import DenseTensor, SymmetricTensor
from tndmrg.networks.mpo import MPO, mpo_site_indices
from tndmrg.networks.store import SiteStore

# ------------------------------------------------------------------ #
# Symmetry fixtures                                                    #
# ------------------------------------------------------------------ #

@pytest.fixture
def u1():
    return U1Symmetry()


@pytest.fixture
def z2():
    return ZnSymmetry(2)


@pytest.fixture
def z3():
    return ZnSymmetry(3)


# ------------------------------------------------------------------ #
# Random key fixture                                                   #
# ------------------------------------------------------------------ #

@pytest.fixture
def rng():
    return jax.random.PRNGKey(42)


@pytest.fixture
def rng2():
    return jax.random.PRNGKey(99)


# ------------------------------------------------------------------ #
# TensorIndex fixtures                                                 #
# ------------------------------------------------------------------ #

@pytest.fixture
def u1_charges_3():
    """U(1) charges [-1, 0, 1], as on a spin-1 leg."""
    return np.array([-1, 0, 1], dtype=np.int32)


@pytest.fixture
def u1_sym_tensor_pair(u1, rng, rng2):
    """A pair of 3-leg U(1)-symmetric tensors that can be contracted on 'bond'.

    Both tensors use the SAME charge array for the shared bond leg with
    opposite flow directions (OUT for A, IN for B).
    """
    phys_c = np.array([-1, 1], dtype=np.int32)
    bond_c = np.array([-1, 0, 1], dtype=np.int32)

    indices_A = (
        TensorIndex(u1, phys_c, FlowDirection.IN, label="p0"),
        TensorIndex(u1, bond_c, FlowDirection.IN, label="bond_left"),
        TensorIndex(u1, bond_c, FlowDirection.OUT, label="bond"),
    )
    indices_B = (
        TensorIndex(u1, phys_c, FlowDirection.IN, label="p1"),
        TensorIndex(u1, bond_c, FlowDirection.IN, label="bond"),
        TensorIndex(u1, bond_c, FlowDirection.OUT, label="bond_right"),
    )
    A = SymmetricTensor.random_normal(indices_A, rng)
    B = SymmetricTensor.random_normal(indices_B, rng2)
    return A, B


# ------------------------------------------------------------------ #
# Spin-1/2 chains                                                      #
# ------------------------------------------------------------------ #

def spin_sites(n, symmetric=True):
    """Physical legs of n spin-1/2 sites; up = index 0 = charge +1."""
    sym = U1Symmetry()
    charges = np.array([1, -1] if symmetric else [0, 0], dtype=np.int32)
    return [
        TensorIndex(sym, charges, FlowDirection.IN, f"p{i}", kind=IndexKind.SITE)
        for i in range(n)
    ]


SP = np.array([[0.0, 1.0], [0.0, 0.0]])
SM = SP.T
SZ = 0.5 * np.array([[1.0, 0.0], [0.0, -1.0]])
I2 = np.eye(2)


def heisenberg_mpo(sites, Jz=1.0, Jxy=1.0, hz=0.0, symmetric=None):
    """Spin-1/2 XXZ chain as a 5x5 lower-triangular MPO.

    H = Jz sum Sz Sz + Jxy/2 sum (S+ S- + S- S+) + hz sum Sz
    """
    if symmetric is None:
        symmetric = bool(np.any(sites[0].charges != 0))
    D_w = 5
    W = np.zeros((D_w, 2, 2, D_w))
    # W[a, ket, bra, b] = O[bra, ket]
    W[0, :, :, 0] = I2.T
    W[1, :, :, 0] = SP.T
    W[2, :, :, 0] = SM.T
    W[3, :, :, 0] = SZ.T
    W[4, :, :, 0] = hz * SZ.T
    W[4, :, :, 1] = (Jxy / 2) * SM.T
    W[4, :, :, 2] = (Jxy / 2) * SP.T
    W[4, :, :, 3] = Jz * SZ.T
    W[4, :, :, 4] = I2.T
    link = np.array([0, -2, 2, 0, 0] if symmetric else [0] * D_w, dtype=np.int32)

    n = len(sites)
    tensors = []
    for i, site in enumerate(sites):
        if n == 1:
            data = W[4, :, :, 0]
        elif i == 0:
            data = W[4]
        elif i == n - 1:
            data = W[:, :, :, 0]
        else:
            data = W
        indices = mpo_site_indices(site, i, n, left_charges=link, right_charges=link)
        if symmetric:
            tensors.append(SymmetricTensor.from_dense(jnp.asarray(data), indices))
        else:
            tensors.append(DenseTensor(jnp.asarray(data), indices))
    return MPO(tensors)


def heisenberg_matrix(n, Jz=1.0, Jxy=1.0, hz=0.0):
    """Dense Hamiltonian matrix with site 0 as the most significant factor."""

    def embed(ops):
        out = np.array([[1.0]])
        for k in range(n):
            out = np.kron(out, ops.get(k, I2))
        return out

    H = np.zeros((2**n, 2**n))
    for i in range(n - 1):
        H += Jz * embed({i: SZ, i + 1: SZ})
        H += (Jxy / 2) * (embed({i: SP, i + 1: SM}) + embed({i: SM, i + 1: SP}))
    for i in range(n):
        H += hz * embed({i: SZ})
    return H


def chain_vector(psi):
    """Full state vector of a chain, site 0 most significant."""
    from tndmrg.contraction.contractor import contract

    t = None
    for i in range(len(psi)):
        t = contract(t, psi.site(i))
    order = [psi.site_index(i).key for i in range(len(psi))]
    return np.asarray(t.permute(order).todense()).ravel()


HEISENBERG_4_SITE_E0 = -(3 + 2 * np.sqrt(3)) / 4


class RecordingStore(SiteStore):
    """Implements only the required store methods and records evictions."""

    def __init__(self):
        self.tensors = {}
        self.evicted = []

    def fetch(self, site):
        return self.tensors[site]

    def store(self, site, tensor):
        self.tensors[site] = tensor

    def evict(self, site):
        self.evicted.append(site)

    def __contains__(self, site):
        return site in self.tensors
