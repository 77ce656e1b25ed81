"""Matrix product state chain with a tracked orthogonality window.

Label conventions (0-based sites, bond ``b`` joins sites ``b`` and ``b+1``)::

    MPS site tensors:    legs = ("v{i-1}_{i}", "p{i}", "v{i}_{i+1}")
                         flows = (IN, IN, OUT)
                         end sites drop the missing link leg

The chain records ``left_lim`` and ``right_lim``: every site ``<= left_lim``
is a left isometry and every site ``>= right_lim`` is a right isometry.
A freshly built chain makes no promise (``left_lim = -1``,
``right_lim = N``); after ``position(i)`` the window is ``(i-1, i+1)`` and
site ``i`` is the orthogonality center. For a block-sparse chain the
center is the only site whose divergence may differ from the identity.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np

from tndmrg.contraction.contractor import contract
from tndmrg.contraction.decompose import (
    EXACT,
    Direction,
    TruncationInfo,
    TruncationParams,
    factorize,
)
from tndmrg.core.errors import ChainStructureError, ResultIsZero
from tndmrg.core.index import FlowDirection, IndexKind, TensorIndex
from tndmrg.core.tensor import DenseTensor, SymmetricTensor, Tensor
from tndmrg.networks.store import MemorySiteStore, SiteStore


def link_label(b: int) -> str:
    """Label of the MPS link on bond ``b``."""
    return f"v{b}_{b + 1}"


def _shared_links(a: Tensor, b: Tensor) -> list[TensorIndex]:
    b_keys = set(b.keys())
    return [idx for idx in a.indices if idx.kind == IndexKind.LINK and idx.key in b_keys]


class MPS:
    """Open-boundary chain of site tensors.

    Site tensors are read and written through a :class:`SiteStore`; the
    chain itself only keeps the window limits and the truncation policy
    used by :meth:`position`. A site that becomes an isometry in
    :meth:`svd_bond` is handed to :meth:`SiteStore.evict`.

    Args:
        tensors:   One tensor per site. Neighbours must share exactly one
                   LINK leg, OUT on the left tensor and IN on the right one.
        left_lim:  Last site known to be a left isometry (-1 for none).
        right_lim: First site known to be a right isometry (N for none).
        params:    Default truncation policy for :meth:`position`.
        store:     Site storage backend; a fresh :class:`MemorySiteStore`
                   when omitted.

    Raises:
        ChainStructureError: On an empty chain, a missing or duplicated
            link, or a link whose two ends cannot be contracted.
    """

    def __init__(
        self,
        tensors: Sequence[Tensor],
        *,
        left_lim: int = -1,
        right_lim: int | None = None,
        params: TruncationParams | None = None,
        store: SiteStore | None = None,
    ) -> None:
        tensors = list(tensors)
        if not tensors:
            raise ChainStructureError("a chain needs at least one site")
        self._n = len(tensors)
        self._store = store if store is not None else MemorySiteStore()
        for i, t in enumerate(tensors):
            self._store.store(i, t)
        self._left_lim = left_lim
        self._right_lim = self._n if right_lim is None else right_lim
        self.params = params or TruncationParams()
        self._check_links()

    def _check_links(self) -> None:
        for b in range(self._n - 1):
            a, c = self.site(b), self.site(b + 1)
            shared = _shared_links(a, c)
            if len(shared) != 1:
                raise ChainStructureError(
                    f"bond {b}: sites {b} and {b + 1} share {len(shared)} link legs, expected 1"
                )
            left = shared[0]
            right = c.find(left.key)
            if left.flow != FlowDirection.OUT or not left.can_contract_with(right):
                raise ChainStructureError(
                    f"bond {b}: link {left.key!r} must flow OUT of site {b} and into "
                    f"site {b + 1} with identical charges"
                )

    # --- access ---

    def __len__(self) -> int:
        return self._n

    def __getitem__(self, i: int) -> Tensor:
        return self.site(i)

    def _check_site(self, i: int) -> None:
        if not 0 <= i < self._n:
            raise ChainStructureError(f"site {i} out of range for a chain of length {self._n}")

    def site(self, i: int) -> Tensor:
        self._check_site(i)
        return self._store.fetch(i)

    def set_site(self, i: int, tensor: Tensor) -> None:
        """Replace site ``i`` and shrink the orthogonality window around it."""
        self._check_site(i)
        self._store.store(i, tensor)
        if i <= self._left_lim:
            self._left_lim = i - 1
        if i >= self._right_lim:
            self._right_lim = i + 1

    def tensors(self) -> list[Tensor]:
        return [self.site(i) for i in range(self._n)]

    @property
    def store(self) -> SiteStore:
        return self._store

    @property
    def left_lim(self) -> int:
        return self._left_lim

    @property
    def right_lim(self) -> int:
        return self._right_lim

    @property
    def center(self) -> int | None:
        """The orthogonality center, or None if the window spans several sites."""
        if self._right_lim - self._left_lim == 2:
            return self._left_lim + 1
        return None

    def link_index(self, b: int) -> TensorIndex:
        """The link on bond ``b`` as seen from site ``b`` (flow OUT)."""
        if not 0 <= b < self._n - 1:
            raise ChainStructureError(f"bond {b} out of range for a chain of length {self._n}")
        return _shared_links(self.site(b), self.site(b + 1))[0]

    def site_index(self, i: int) -> TensorIndex:
        """The unprimed physical leg of site ``i``."""
        found = self.site(i).find_kind(IndexKind.SITE, prime=0)
        if len(found) != 1:
            raise ChainStructureError(f"site {i} has {len(found)} unprimed physical legs")
        return found[0]

    def sites(self) -> tuple[TensorIndex, ...]:
        return tuple(self.site_index(i) for i in range(self._n))

    def bond_dims(self) -> list[int]:
        return [self.link_index(b).dim for b in range(self._n - 1)]

    def max_bond_dim(self) -> int:
        return max(self.bond_dims(), default=1)

    @property
    def dtype(self) -> Any:
        return jnp.result_type(*[t.dtype for t in self.tensors()])

    @property
    def is_complex(self) -> bool:
        return any(t.is_complex for t in self.tensors())

    def _replaced(self, tensors: Sequence[Tensor]) -> MPS:
        return type(self)(
            tensors,
            left_lim=self._left_lim,
            right_lim=self._right_lim,
            params=self.params,
            store=self._store.copy(range(self._n)),
        )

    def astype(self, dtype: Any) -> MPS:
        return self._replaced([t.astype(dtype) for t in self.tensors()])

    def copy(self) -> MPS:
        """Chain with its own store; site tensors are shared, never mutated."""
        new = object.__new__(type(self))
        new._n = self._n
        new._store = self._store.copy(range(self._n))
        new._left_lim = self._left_lim
        new._right_lim = self._right_lim
        new.params = self.params
        return new

    # --- orthogonalization ---

    def svd_bond(
        self,
        b: int,
        phi: Tensor,
        direction: Direction,
        params: TruncationParams | None = None,
    ) -> TruncationInfo:
        """Factorize a two-site tensor back into sites ``b`` and ``b+1``.

        Args:
            b:         Bond index.
            phi:       Tensor with the free legs of sites ``b`` and ``b+1``.
            direction: FROM_LEFT leaves site ``b`` a left isometry and moves the
                       center to ``b+1``; FROM_RIGHT does the mirror image.
            params:    Truncation policy; the chain's own when omitted.

        Raises:
            ChainStructureError: If the sites on the far side of the bond are
                not orthogonal (FROM_LEFT needs ``b-1 <= left_lim``, FROM_RIGHT
                needs ``b+2 >= right_lim``).
        """
        if not 0 <= b < self._n - 1:
            raise ChainStructureError(f"bond {b} out of range for a chain of length {self._n}")
        if direction is Direction.FROM_LEFT and b - 1 > self._left_lim:
            raise ChainStructureError(
                f"svd_bond({b}, FROM_LEFT) needs sites < {b} left-orthogonal; left_lim={self._left_lim}"
            )
        if direction is Direction.FROM_RIGHT and b + 2 < self._right_lim:
            raise ChainStructureError(
                f"svd_bond({b}, FROM_RIGHT) needs sites > {b + 1} right-orthogonal; "
                f"right_lim={self._right_lim}"
            )
        old_left, old_right = self.site(b), self.site(b + 1)
        link = self.link_index(b)
        left_keys = [k for k in old_left.keys() if k != link.key]

        left, right, info = factorize(
            phi, left_keys, link.label, direction, params or self.params, bond_prime=link.prime
        )
        self._store.store(b, left.permute(old_left.keys()))
        self._store.store(b + 1, right.permute(old_right.keys()))

        if direction is Direction.FROM_LEFT:
            self._left_lim = b
            self._right_lim = max(self._right_lim, b + 2)
            self._store.evict(b)
        else:
            self._left_lim = min(self._left_lim, b - 1)
            self._right_lim = b + 1
            self._store.evict(b + 1)
        return info

    def position(self, i: int, params: TruncationParams | None = None) -> MPS:
        """Move the orthogonality center to site ``i``.

        A no-op when the chain is already centered there.
        """
        self._check_site(i)
        while self._left_lim < i - 1:
            b = self._left_lim + 1
            phi = contract(self.site(b), self.site(b + 1))
            self.svd_bond(b, phi, Direction.FROM_LEFT, params)
        while self._right_lim > i + 1:
            b = self._right_lim - 2
            phi = contract(self.site(b), self.site(b + 1))
            self.svd_bond(b, phi, Direction.FROM_RIGHT, params)
        return self

    def orthogonalize(self, params: TruncationParams | None = None) -> MPS:
        """Bring the chain to right-canonical form, truncating on the way back."""
        self.position(self._n - 1, EXACT)
        self.position(0, params)
        return self

    def check_ortho(self, i: int, left: bool = True, tol: float = 1e-10) -> bool:
        """True if site ``i`` is a left (or right) isometry within ``tol``."""
        A = self.site(i)
        neighbour = i + 1 if left else i - 1
        if 0 <= neighbour < self._n:
            open_key = _shared_links(A, self.site(neighbour))[0].key
            rho = contract(A, A.conj().prime(keys=[open_key]))
            d = A.find(open_key).dim
        else:
            rho = contract(A, A.conj())
            d = 1
        mat = np.asarray(rho.todense()).reshape(d, d)
        return bool(np.allclose(mat, np.eye(d), atol=tol))

    # --- norm ---

    def log_norm(self) -> float:
        c = self.center
        if c is not None:
            return self.site(c).log_norm()
        value = abs(_overlap_scan(self, self))
        return -math.inf if value == 0.0 else 0.5 * math.log(value)

    def norm(self) -> float:
        ln = self.log_norm()
        return 0.0 if ln == -math.inf else math.exp(ln)

    def normalize(self) -> MPS:
        """Scale the state to unit norm.

        Raises:
            ResultIsZero: If the state is identically zero.
        """
        ln = self.log_norm()
        if ln == -math.inf:
            raise ResultIsZero("cannot normalize a zero state")
        i = min(max(self._left_lim + 1, 0), self._n - 1)
        t = self.site(i)
        self.set_site(i, t.with_log_scale(t.log_scale - ln))
        return self

    # --- constructors ---

    @classmethod
    def product_state(
        cls,
        sites: Sequence[TensorIndex],
        states: Sequence[int],
        *,
        symmetric: bool | None = None,
        params: TruncationParams | None = None,
    ) -> MPS:
        """Product state with site ``i`` in basis state ``states[i]``.

        Each link carries the charge accumulated from the left, so every site
        but the last has the identity divergence and the last site holds the
        total charge. The chain comes back centered on the last site.

        Args:
            sites:     Physical leg of every site (flow IN, kind SITE).
            states:    Basis state per site.
            symmetric: Build block-sparse tensors. By default this is done
                       whenever some site carries a non-identity charge.
            params:    Default truncation policy of the chain.
        """
        if len(sites) != len(states):
            raise ChainStructureError(f"{len(sites)} sites but {len(states)} states")
        if not sites:
            raise ChainStructureError("a chain needs at least one site")
        sym = sites[0].symmetry
        if symmetric is None:
            symmetric = any(np.any(s.charges != sym.identity()) for s in sites)

        n = len(sites)
        running = sym.identity()
        left_link = None
        tensors: list[Tensor] = []
        for i, (site, state) in enumerate(zip(sites, states)):
            if not 0 <= state < site.dim:
                raise ValueError(f"state {state} out of range for site {i} of dimension {site.dim}")
            q = sym.signed(int(site.charges[state]), site.flow)
            running = sym.fuse_scalar(running, q)
            indices = [] if left_link is None else [left_link.reverse()]
            indices.append(site)
            shape = [1] * len(indices)
            shape[-1] = site.dim
            if i < n - 1:
                link_q = running if symmetric else sym.identity()
                left_link = TensorIndex(
                    sym, np.array([link_q]), FlowDirection.OUT, link_label(i), kind=IndexKind.LINK
                )
                indices.append(left_link)
                shape.append(1)
            site_axis = len(indices) - 2 if i < n - 1 else len(indices) - 1
            data = _one_hot(shape, site_axis, state)
            if symmetric:
                div = running if i == n - 1 else sym.identity()
                tensors.append(SymmetricTensor.from_dense(jnp.asarray(data), indices, div))
            else:
                tensors.append(DenseTensor(jnp.asarray(data), indices))
        return cls(tensors, left_lim=n - 2, right_lim=n, params=params)

    @classmethod
    def random(
        cls,
        sites: Sequence[TensorIndex],
        bond_dim: int,
        key: jax.Array,
        dtype: Any = jnp.float64,
        params: TruncationParams | None = None,
    ) -> MPS:
        """Dense random chain with every link of dimension ``bond_dim``.

        Nothing is orthogonal on return; call :meth:`position` or
        :meth:`orthogonalize` before use.
        """
        n = len(sites)
        if n == 0:
            raise ChainStructureError("a chain needs at least one site")
        sym = sites[0].symmetry
        tensors: list[Tensor] = []
        left_link = None
        for i, site in enumerate(sites):
            indices = [] if left_link is None else [left_link.reverse()]
            indices.append(site)
            if i < n - 1:
                left_link = TensorIndex(
                    sym,
                    np.full(bond_dim, sym.identity()),
                    FlowDirection.OUT,
                    link_label(i),
                    kind=IndexKind.LINK,
                )
                indices.append(left_link)
            shape = tuple(idx.dim for idx in indices)
            subkey = jax.random.fold_in(key, i)
            if jnp.issubdtype(dtype, jnp.complexfloating):
                kr, ki = jax.random.split(subkey)
                real_dtype = jnp.finfo(dtype).dtype
                data = (
                    jax.random.normal(kr, shape, dtype=real_dtype)
                    + 1j * jax.random.normal(ki, shape, dtype=real_dtype)
                ).astype(dtype)
            else:
                data = jax.random.normal(subkey, shape, dtype=dtype)
            tensors.append(DenseTensor(data / jnp.linalg.norm(data), indices))
        return cls(tensors, params=params)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(n={self._n}, left_lim={self._left_lim}, "
            f"right_lim={self._right_lim}, bond_dims={self.bond_dims()})"
        )


def _one_hot(shape: Sequence[int], axis: int, state: int) -> np.ndarray:
    data = np.zeros(shape)
    pos = [0] * len(shape)
    pos[axis] = state
    data[tuple(pos)] = 1.0
    return data


def _overlap_scan(bra: MPS, ket: MPS) -> complex:
    """``<bra|ket>`` by a left-to-right transfer-matrix scan."""
    env = None
    for i in range(len(ket)):
        b = bra.site(i).conj().prime(kind=IndexKind.LINK)
        env = contract(env, ket.site(i), b)
    return env.item()
