"""Matrix product operators.

Label conventions::

    MPO site tensors:    legs = ("w{i-1}_{i}", "p{i}", "p{i}'", "w{i}_{i+1}")
                         flows = (IN, OUT, IN, OUT)
                         end sites drop the missing link leg

``p{i}`` (prime 0) is the ket side and contracts with the physical leg of
a state; ``p{i}'`` (prime 1) is the bra side. An on-site matrix ``O`` with
``O[bra, ket] = <bra|O|ket>`` is stored transposed, ``W[..., ket, bra, ...]``.
"""

from __future__ import annotations

from collections.abc import Sequence

import jax.numpy as jnp
import numpy as np

from tndmrg.core.errors import ChainStructureError
from tndmrg.core.index import FlowDirection, IndexKind, TensorIndex
from tndmrg.core.tensor import DenseTensor, SymmetricTensor, Tensor
from tndmrg.networks.mps import MPS


def mpo_link_label(b: int) -> str:
    """Label of the MPO link on bond ``b``."""
    return f"w{b}_{b + 1}"


class MPO(MPS):
    """Operator chain; shares storage, validation and orthogonalization with MPS."""

    def site_index(self, i: int) -> TensorIndex:
        """The ket-side physical leg of site ``i`` (prime 0, flow OUT)."""
        return super().site_index(i)

    def bra_index(self, i: int) -> TensorIndex:
        """The bra-side physical leg of site ``i`` (prime 1, flow IN)."""
        found = self.site(i).find_kind(IndexKind.SITE, prime=1)
        if len(found) != 1:
            raise ChainStructureError(f"site {i} has {len(found)} primed physical legs")
        return found[0]

    def scale(self, factor: complex | float) -> MPO:
        """The operator multiplied by a scalar (applied to the first site)."""
        tensors = self.tensors()
        tensors[0] = tensors[0].scale(factor)
        return self._replaced(tensors)


def mpo_site_indices(
    site: TensorIndex,
    i: int,
    n: int,
    left_charges: np.ndarray | None = None,
    right_charges: np.ndarray | None = None,
) -> tuple[TensorIndex, ...]:
    """Legs of MPO site ``i`` of ``n`` for the physical leg ``site`` of a state.

    Link charges default to a single identity state.
    """
    sym = site.symmetry
    one = np.array([sym.identity()])
    indices = []
    if i > 0:
        charges = one if left_charges is None else left_charges
        indices.append(
            TensorIndex(sym, charges, FlowDirection.IN, mpo_link_label(i - 1), kind=IndexKind.LINK)
        )
    indices.append(site.reverse().with_prime(0))
    indices.append(site.with_prime(1))
    if i < n - 1:
        charges = one if right_charges is None else right_charges
        indices.append(
            TensorIndex(sym, charges, FlowDirection.OUT, mpo_link_label(i), kind=IndexKind.LINK)
        )
    return tuple(indices)


def product_mpo(
    sites: Sequence[TensorIndex],
    ops: Sequence[jnp.ndarray],
    *,
    symmetric: bool | None = None,
) -> MPO:
    """Tensor product of on-site operators, ``ops[0] (x) ops[1] (x) ...``.

    Args:
        sites:     Physical leg of every site, as used by the states.
        ops:       ``d x d`` matrix per site, ``ops[i][bra, ket]``.
        symmetric: Build block-sparse tensors; by default whenever some site
                   carries a non-identity charge. Every operator must then
                   conserve charge.

    Raises:
        ChargeFlowError: If a block-sparse operator mixes charge sectors.
    """
    if len(sites) != len(ops):
        raise ChainStructureError(f"{len(sites)} sites but {len(ops)} operators")
    if not sites:
        raise ChainStructureError("a chain needs at least one site")
    sym = sites[0].symmetry
    if symmetric is None:
        symmetric = any(np.any(s.charges != sym.identity()) for s in sites)

    n = len(sites)
    tensors: list[Tensor] = []
    for i, (site, op) in enumerate(zip(sites, ops)):
        op = jnp.asarray(op)
        if op.shape != (site.dim, site.dim):
            raise ValueError(f"operator {i} has shape {op.shape}, site dimension is {site.dim}")
        indices = mpo_site_indices(site, i, n)
        shape = tuple(idx.dim for idx in indices)
        data = jnp.reshape(op.T, shape)
        if symmetric:
            tensors.append(SymmetricTensor.from_dense(data, indices))
        else:
            tensors.append(DenseTensor(data, indices))
    return MPO(tensors)


def identity_mpo(sites: Sequence[TensorIndex], *, symmetric: bool | None = None) -> MPO:
    """The identity operator on the given sites."""
    return product_mpo(sites, [jnp.eye(s.dim) for s in sites], symmetric=symmetric)
