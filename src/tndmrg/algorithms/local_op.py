"""Projected two-site operator for a DMRG bond update.

For the bond joining sites ``b`` and ``b+1``::

    H_eff phi = L(b) . phi . W_b . W_{b+1} . R(b+1)

followed by dropping the bra primes, so the result has exactly the legs of
``phi``. The environments come from an :class:`EnvironmentCache`; either
may be None at a chain end without a boundary tensor.
"""

from __future__ import annotations

from collections.abc import Sequence

import jax
import jax.numpy as jnp

from tndmrg.algorithms.eigensolver import EigenResult, lanczos
from tndmrg.contraction.contractor import add_scaled, contract
from tndmrg.core.tensor import Tensor


class LocalOperator:
    """Effective Hamiltonian of one bond.

    Args:
        op_l:        Operator tensor of the left site.
        op_r:        Operator tensor of the right site.
        left:        Left environment, or None.
        right:       Right environment, or None.
        combine_mpo: Pre-contract ``op_l . op_r`` once and reuse it for every
                     product. Cheaper when the operator links are small.
    """

    def __init__(
        self,
        op_l: Tensor,
        op_r: Tensor,
        left: Tensor | None = None,
        right: Tensor | None = None,
        combine_mpo: bool = True,
    ) -> None:
        self.op_l = op_l
        self.op_r = op_r
        self.left = left
        self.right = right
        self.combine_mpo = combine_mpo
        self._bond_tensor: Tensor | None = None

    @property
    def bond_tensor(self) -> Tensor:
        if self._bond_tensor is None:
            self._bond_tensor = contract(self.op_l, self.op_r)
        return self._bond_tensor

    def product(self, phi: Tensor) -> Tensor:
        """Apply the operator; the result has ``phi``'s legs in ``phi``'s order."""
        t = contract(phi, self.left)
        if self.combine_mpo:
            t = contract(t, self.bond_tensor)
        else:
            t = contract(contract(t, self.op_l), self.op_r)
        t = contract(t, self.right)
        return t.mapprime(1, 0).permute(phi.keys())

    def expect(self, phi: Tensor) -> float:
        """Rayleigh quotient ``<phi|H|phi> / <phi|phi>``."""
        v = phi.to_vector()
        hv = self.product(phi).to_vector()
        return float(jnp.vdot(v, hv).real / jnp.vdot(v, v).real)

    def size(self, phi: Tensor) -> int:
        """Length of the flat vector the eigensolver works on."""
        return int(phi.to_vector().shape[0])

    def solve(
        self,
        phi: Tensor,
        max_iter: int = 2,
        tol: float = 1e-10,
    ) -> tuple[float, Tensor, EigenResult]:
        """Lowest eigenpair, starting the Krylov space from ``phi``.

        Returns:
            ``(energy, phi_new, result)`` with ``phi_new`` normalized and
            carrying the same legs and divergence as ``phi``.
        """

        def matvec(v: jax.Array) -> jax.Array:
            return self.product(phi.from_vector(v)).to_vector()

        result = lanczos(matvec, phi.to_vector(), max_iter=max_iter, tol=tol)
        return result.value, phi.from_vector(result.vector), result


class LocalOperatorOrth(LocalOperator):
    """Local operator plus a penalty on states to be excluded.

    Adds ``weight * |o><o|`` for every projected excluded state ``o``, so the
    lowest eigenvector is pushed orthogonal to them once ``weight`` exceeds
    the relevant energy gap.

    Args:
        others: Excluded states projected onto this bond, each with the legs
                of the two-site tensor.
        weight: Penalty strength.
    """

    def __init__(
        self,
        op_l: Tensor,
        op_r: Tensor,
        left: Tensor | None = None,
        right: Tensor | None = None,
        combine_mpo: bool = True,
        others: Sequence[Tensor] = (),
        weight: float = 1.0,
    ) -> None:
        super().__init__(op_l, op_r, left, right, combine_mpo)
        self.others = list(others)
        self.weight = weight

    def product(self, phi: Tensor) -> Tensor:
        out = super().product(phi)
        v = phi.to_vector()
        for o in self.others:
            if o.divergence != phi.divergence:
                continue
            # flat layouts only line up in the same leg order
            o = o.permute(phi.keys())
            ov = complex(jnp.vdot(o.to_vector(), v))
            if ov == 0:
                continue
            coeff = self.weight * (ov if out.is_complex or o.is_complex else ov.real)
            out = add_scaled(out, o, coeff)
        return out


def project_state(
    left: Tensor | None,
    other_l: Tensor,
    other_r: Tensor,
    right: Tensor | None,
) -> Tensor:
    """An excluded state seen from one bond: ``L . other_b . other_{b+1} . R``.

    ``left`` and ``right`` come from an overlap cache, whose bra links are
    primed; the primes are dropped so the result lines up with ``phi``.
    """
    return contract(left, other_l, other_r, right).mapprime(1, 0)
