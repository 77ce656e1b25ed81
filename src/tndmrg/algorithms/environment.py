"""Cached left and right environments of a chain.

``left(i)`` is the contraction of sites ``0..i-1`` and ``right(i)`` the
contraction of sites ``i+1..N-1``; each is built lazily from its
neighbour and memoized. Every contraction step absorbs one site in the
order (environment, ket, operator, bra).

Leg conventions for an operator cache (``psi``, ``H``)::

    ket:  psi_i                       legs  v, p
    op:   H_i                         legs  w, p, p'
    bra:  conj(psi_i).prime()         legs  v', p'

so a left environment carries ``(v, w, v')`` on bond ``i-1``. An overlap
cache has no operator and primes only the bra's links.

The cache reads whatever the chains hold at the time of a rebuild. After
changing a site, call :meth:`EnvironmentCache.invalidate` with that site;
nothing is tracked automatically.
"""

from __future__ import annotations

from tndmrg.contraction.contractor import contract
from tndmrg.core.index import IndexKind
from tndmrg.core.tensor import Tensor
from tndmrg.networks.mpo import MPO
from tndmrg.networks.mps import MPS


class EnvironmentCache:
    """Memoized partial contractions of ``<bra| op |ket>`` from both ends.

    Use :meth:`for_operator` or :meth:`for_overlap` rather than the
    constructor.

    Args:
        bra:            Chain whose conjugate forms the bra.
        ket:            Chain forming the ket.
        op:             Operator chain, or None for a plain overlap.
        left_boundary:  Tensor seeding ``left(0)``; None means the identity.
        right_boundary: Tensor seeding ``right(N-1)``; None means the identity.
    """

    def __init__(
        self,
        bra: MPS,
        ket: MPS,
        op: MPO | None = None,
        left_boundary: Tensor | None = None,
        right_boundary: Tensor | None = None,
    ) -> None:
        self.bra = bra
        self.ket = ket
        self.op = op
        self._n = len(ket)
        self._left: dict[int, Tensor | None] = {0: left_boundary}
        self._right: dict[int, Tensor | None] = {self._n - 1: right_boundary}

    @classmethod
    def for_operator(
        cls,
        psi: MPS,
        H: MPO,
        left_boundary: Tensor | None = None,
        right_boundary: Tensor | None = None,
    ) -> EnvironmentCache:
        """Environments of ``<psi|H|psi>``."""
        return cls(psi, psi, H, left_boundary, right_boundary)

    @classmethod
    def for_overlap(cls, psi: MPS, other: MPS) -> EnvironmentCache:
        """Environments of ``<psi|other>``."""
        return cls(psi, other)

    def __len__(self) -> int:
        return self._n

    def bra_site(self, i: int) -> Tensor:
        t = self.bra.site(i).conj()
        if self.op is None:
            return t.prime(kind=IndexKind.LINK)
        return t.prime()

    def _absorb(self, env: Tensor | None, i: int) -> Tensor:
        op = None if self.op is None else self.op.site(i)
        return contract(env, self.ket.site(i), op, self.bra_site(i))

    def left(self, i: int) -> Tensor | None:
        """Contraction of sites ``0..i-1`` (the boundary for ``i = 0``)."""
        if not 0 <= i < self._n:
            raise IndexError(f"left environment {i} out of range for {self._n} sites")
        k = max(j for j in self._left if j <= i)
        while k < i:
            self._left[k + 1] = self._absorb(self._left[k], k)
            k += 1
        return self._left[i]

    def right(self, i: int) -> Tensor | None:
        """Contraction of sites ``i+1..N-1`` (the boundary for ``i = N-1``)."""
        if not 0 <= i < self._n:
            raise IndexError(f"right environment {i} out of range for {self._n} sites")
        k = min(j for j in self._right if j >= i)
        while k > i:
            self._right[k - 1] = self._absorb(self._right[k], k)
            k -= 1
        return self._right[i]

    def invalidate(self, *sites: int) -> None:
        """Drop every cached environment that includes one of ``sites``."""
        for site in sites:
            for k in [k for k in self._left if k > site]:
                del self._left[k]
            for k in [k for k in self._right if k < site]:
                del self._right[k]

    def cached(self) -> tuple[list[int], list[int]]:
        """Positions currently held for the left and right environments."""
        return sorted(self._left), sorted(self._right)
