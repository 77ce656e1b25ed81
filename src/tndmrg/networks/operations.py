"""Measurements, MPO algebra and diagnostics on chains.

Primary API::

    inner(psi, phi)                 -> <psi|phi>
    overlap(psi, phi)               -> Re <psi|phi>
    expectation(psi, H, phi=None)   -> Re <psi|H|phi>
    expectation_product(psi, H, K)  -> Re <psi|H K|phi>
    apply_mpo(K, psi, params)       -> K|psi>          (MPS)
    multiply_mpo(A, B, params)      -> A B             (MPO)
    add_mps(a, b, params)           -> |a> + |b>       (MPS)
    sum_mps(terms, params)          -> sum of terms    (MPS)

The bra of every measurement is the conjugated state with its legs primed,
so it never collides with the ket or with the operator links.
"""

from __future__ import annotations

import math
import warnings
from collections.abc import Sequence

import jax.numpy as jnp
import numpy as np

from tndmrg.contraction.contractor import add, contract
from tndmrg.contraction.decompose import TruncationParams
from tndmrg.core.errors import ChainStructureError, ChargeFlowError, ResultIsZero
from tndmrg.core.index import FlowDirection, IndexKey, IndexKind, TensorIndex
from tndmrg.core.tensor import DenseTensor, SymmetricTensor, Tensor, _block_slices
from tndmrg.networks.mpo import MPO
from tndmrg.networks.mps import MPS, _overlap_scan, _shared_links

_IMAG_TOL = 1e-10


def real_part(value: complex | float, what: str = "value") -> float:
    """Real part of ``value``, warning if the imaginary part is not negligible."""
    value = complex(value)
    if abs(value.imag) > _IMAG_TOL * max(1.0, abs(value.real)):
        warnings.warn(
            f"{what} has a non-negligible imaginary part {value.imag:.3e}; "
            f"returning the real part",
            RuntimeWarning,
            stacklevel=3,
        )
    return value.real


def _check_lengths(*chains: MPS) -> None:
    n = len(chains[0])
    for c in chains[1:]:
        if len(c) != n:
            raise ChainStructureError(f"chain lengths differ: {[len(x) for x in chains]}")


# ---------- measurements ----------

def inner(psi: MPS, phi: MPS) -> complex | float:
    """``<psi|phi>``; ``psi`` is conjugated."""
    _check_lengths(psi, phi)
    return _overlap_scan(psi, phi)


def overlap(psi: MPS, phi: MPS) -> float:
    """Real part of ``<psi|phi>`` (warns on a non-negligible imaginary part)."""
    return real_part(inner(psi, phi), "overlap")


def expectation(
    psi: MPS,
    H: MPO,
    phi: MPS | None = None,
    left_boundary: Tensor | None = None,
    right_boundary: Tensor | None = None,
) -> float:
    """``<psi|H|phi>`` with ``phi = psi`` by default.

    Optional boundary tensors close the open operator links at the ends of
    the chain.
    """
    phi = psi if phi is None else phi
    _check_lengths(psi, H, phi)
    env = left_boundary
    for i in range(len(psi)):
        env = contract(env, phi.site(i), H.site(i), psi.site(i).conj().prime())
    env = contract(env, right_boundary)
    return real_part(env.item(), "expectation value")


def expectation_product(psi: MPS, H: MPO, K: MPO, phi: MPS | None = None) -> float:
    """``<psi|H K|phi>`` without forming the product operator."""
    phi = psi if phi is None else phi
    _check_lengths(psi, H, K, phi)
    env = None
    for i in range(len(psi)):
        bra = psi.site(i).conj().prime(2, kind=IndexKind.SITE).prime(1, kind=IndexKind.LINK)
        env = contract(env, phi.site(i), K.site(i), H.site(i).prime(), bra)
    return real_part(env.item(), "expectation value")


# ---------- leg fusion ----------

def _fused_index(indices: Sequence[TensorIndex], label, flow: FlowDirection) -> TensorIndex:
    """One leg spanning the row-major product basis of ``indices``."""
    sym = indices[0].symmetry
    grids = np.meshgrid(*[idx.charges.astype(np.int64) for idx in indices], indexing="ij")
    charges = sym.fuse_many([g.ravel() for g in grids])
    return TensorIndex(sym, charges, flow, label, kind=IndexKind.LINK)


def _sector_positions(idx: TensorIndex) -> np.ndarray:
    """Offset of every basis state inside the block of its own charge."""
    pos = np.zeros(idx.dim, dtype=np.int64)
    seen: dict[int, int] = {}
    for i, q in enumerate(idx.charges.tolist()):
        pos[i] = seen.get(q, 0)
        seen[q] = pos[i] + 1
    return pos


def _fuse_blocks(
    t: SymmetricTensor,
    rest: Sequence[IndexKey],
    groups: Sequence[tuple[Sequence[IndexKey], TensorIndex]],
) -> SymmetricTensor:
    """Scatter every block of ``t`` into the fused blocks it belongs to.

    The group legs share one flow, so a fused basis state carries the plain
    fusion of its component charges and the divergence is unchanged.
    """
    moved = t.permute(list(rest) + [k for keys, _ in groups for k in keys])
    indices = tuple(t.find(k) for k in rest) + tuple(new for _, new in groups)
    legs = [[t.find(k) for k in keys] for keys, _ in groups]
    positions = [_sector_positions(new) for _, new in groups]

    blocks: dict = {}
    for key, block in moved.blocks.items():
        out_key = list(key[:len(rest)])
        shape = list(block.shape[:len(rest)])
        targets = []
        offset = len(rest)
        for (_, new), group, pos in zip(groups, legs, positions):
            # fused position of every product state, in row-major order
            flat = np.zeros(1, dtype=np.int64)
            for idx, q in zip(group, key[offset:offset + len(group)]):
                flat = (flat[:, None] * idx.dim + np.flatnonzero(idx.charges == q)[None, :]).ravel()
            offset += len(group)
            out_key.append(int(new.charges[flat[0]]))
            shape.append(len(flat))
            targets.append(pos[flat])
        out_key = tuple(out_key)
        if out_key not in blocks:
            _, out_shape = _block_slices(indices, out_key)
            blocks[out_key] = jnp.zeros(out_shape, dtype=moved.dtype)
        where = (slice(None),) * len(rest) + np.ix_(*targets)
        blocks[out_key] = blocks[out_key].at[where].set(jnp.reshape(block, shape))
    return SymmetricTensor(blocks, indices, t.divergence, t.log_scale)


def _fuse_legs(t: Tensor, groups: Sequence[tuple[Sequence[IndexKey], TensorIndex]]) -> Tensor:
    """Merge each group of legs into the given fused leg (appended in group order)."""
    grouped = [k for keys, _ in groups for k in keys]
    rest = [k for k in t.keys() if k not in grouped]
    if isinstance(t, SymmetricTensor):
        return _fuse_blocks(t, rest, groups)
    moved = t.permute(rest + grouped)
    shape = [t.find(k).dim for k in rest] + [new.dim for _, new in groups]
    indices = [t.find(k) for k in rest] + [new for _, new in groups]
    return DenseTensor(jnp.reshape(moved.data, shape), indices, t.log_scale)


def _fuse_chain(sites: list[Tensor], op_links: list[IndexKey], state_links: list[IndexKey]) -> list[Tensor]:
    """Fuse the (state link, operator link) pair on every bond into one link.

    ``state_links[b]`` names the link that the fused leg is labeled after.
    """
    n = len(sites)
    fused = []
    for b in range(n - 1):
        pair = [state_links[b], op_links[b]]
        idx = [sites[b].find(k) for k in pair]
        fused.append(_fused_index(idx, state_links[b][0], FlowDirection.OUT))

    out = []
    for i, t in enumerate(sites):
        groups = []
        order = []
        if i > 0:
            groups.append(([state_links[i - 1], op_links[i - 1]], fused[i - 1].reverse()))
            order.append(fused[i - 1].key)
        order += sorted((k for k in t.keys() if t.find(k).kind != IndexKind.LINK), key=lambda k: k[1])
        if i < n - 1:
            groups.append(([state_links[i], op_links[i]], fused[i]))
            order.append(fused[i].key)
        out.append(_fuse_legs(t, groups).permute(order) if groups else t)
    return out


def _link_keys(chain: MPS) -> list[IndexKey]:
    return [chain.link_index(b).key for b in range(len(chain) - 1)]


# ---------- MPO algebra ----------

def apply_mpo(K: MPO, psi: MPS, params: TruncationParams | None = None) -> MPS:
    """``K|psi>`` by exact site-wise contraction, then orthogonalized under ``params``."""
    _check_lengths(K, psi)
    sites = [
        contract(K.site(i), psi.site(i)).mapprime(1, 0, kind=IndexKind.SITE)
        for i in range(len(psi))
    ]
    sites = _fuse_chain(sites, _link_keys(K), _link_keys(psi))
    result = MPS(sites, params=params or psi.params)
    return result.orthogonalize(params)


def _require_nonzero(chain: MPS, what: str) -> None:
    for i in range(len(chain)):
        if chain.site(i).log_norm() == -math.inf:
            raise ResultIsZero(f"{what} vanishes at site {i}")


def multiply_mpo(A: MPO, B: MPO, params: TruncationParams | None = None) -> MPO:
    """Operator product ``A B`` (``B`` acts first).

    Raises:
        ResultIsZero: If the product is identically zero.
    """
    _check_lengths(A, B)
    n = len(A)
    sites = [
        contract(A.site(i).prime(), B.site(i)).mapprime(2, 1, kind=IndexKind.SITE)
        for i in range(n)
    ]
    primed_links = [(label, prime + 1) for label, prime in _link_keys(A)]
    sites = _fuse_chain(sites, primed_links, _link_keys(B))
    product = MPO(sites, params=params or A.params)
    _require_nonzero(product, "operator product")
    product.orthogonalize(params)
    _require_nonzero(product, "operator product")
    return product


# ---------- sums ----------

def _direct_sum_site(a: Tensor, b: Tensor, summed: Sequence[IndexKey], site: int) -> Tensor:
    """Stack two site tensors along their ``summed`` links, ``a`` first.

    For block-sparse sites each summed link keeps ``a``'s states of a charge
    ahead of ``b``'s, so every output block is assembled from the one or two
    blocks with the same key.
    """
    b = b.permute(a.keys())
    indices = []
    for ia, ib in zip(a.indices, b.indices):
        if ia.key in summed:
            indices.append(ia._replace(charges=np.concatenate([ia.charges, ib.charges])))
        elif ia != ib:
            raise ChainStructureError(f"site {site}: leg {ia.key!r} differs between the terms")
        else:
            indices.append(ia)
    if a.divergence != b.divergence:
        raise ChargeFlowError(
            f"site {site}: terms carry divergences {a.divergence} and {b.divergence}"
        )
    dtype = jnp.result_type(a.dtype, b.dtype)
    top = max(float(a.log_scale), float(b.log_scale))
    fa, fb = math.exp(float(a.log_scale) - top), math.exp(float(b.log_scale) - top)
    is_summed = [idx.key in summed for idx in a.indices]

    if isinstance(a, DenseTensor):
        data = jnp.zeros(tuple(idx.dim for idx in indices), dtype=dtype)
        a_part = tuple(
            slice(0, ia.dim) if s else slice(None) for ia, s in zip(a.indices, is_summed)
        )
        b_part = tuple(
            slice(ia.dim, None) if s else slice(None) for ia, s in zip(a.indices, is_summed)
        )
        data = data.at[a_part].set(a.data * fa).at[b_part].set(b.data * fb)
        return DenseTensor(data, indices, top)

    blocks: dict = {}
    for key in sorted(set(a.blocks) | set(b.blocks)):
        _, shape = _block_slices(tuple(indices), key)
        out = jnp.zeros(shape, dtype=dtype)
        if key in a.blocks:
            block = a.blocks[key]
            out = out.at[tuple(slice(0, n) for n in block.shape)].set(block * fa)
        if key in b.blocks:
            block = b.blocks[key]
            start = [
                int(np.sum(ia.charges == q)) if s else 0
                for ia, q, s in zip(a.indices, key, is_summed)
            ]
            out = out.at[tuple(slice(s, s + n) for s, n in zip(start, block.shape))].set(block * fb)
        blocks[key] = out
    return SymmetricTensor(blocks, indices, a.divergence, top)


def add_mps(a: MPS, b: MPS, params: TruncationParams | None = None) -> MPS:
    """``|a> + |b>`` as a direct sum, orthogonalized under ``params``.

    A zero term contributes nothing, so the other term is returned.

    Raises:
        ChainStructureError: If the chains do not have the same sites and links.
        ChargeFlowError:     If the terms have different total charge.
    """
    _check_lengths(a, b)
    try:
        _require_nonzero(a, "first term")
    except ResultIsZero:
        return b.copy().orthogonalize(params)
    try:
        _require_nonzero(b, "second term")
    except ResultIsZero:
        return a.copy().orthogonalize(params)

    a = a.copy().position(0)
    b = b.copy().position(0)
    n = len(a)
    if n == 1:
        return MPS([add(a.site(0), b.site(0))], params=params or a.params)

    a_links, b_links = _link_keys(a), _link_keys(b)
    if a_links != b_links:
        raise ChainStructureError(f"link legs differ between the terms: {a_links} vs {b_links}")
    sites = []
    for i in range(n):
        summed = [a_links[j] for j in (i - 1, i) if 0 <= j < n - 1]
        sites.append(_direct_sum_site(a.site(i), b.site(i), summed, i))
    return MPS(sites, params=params or a.params).orthogonalize(params)


def sum_mps(terms: Sequence[MPS], params: TruncationParams | None = None) -> MPS:
    """Sum of several states, added pairwise so intermediate bonds stay small."""
    if not terms:
        raise ValueError("sum_mps() needs at least one term")
    if len(terms) == 1:
        return terms[0].copy()
    mid = len(terms) // 2
    return add_mps(sum_mps(terms[:mid], params), sum_mps(terms[mid:], params), params)


# ---------- diagnostics ----------

def find_center(psi: MPS) -> int:
    """Site of the orthogonality center.

    Raises:
        ChainStructureError: If the chain has no single center.
    """
    c = psi.center
    if c is None:
        raise ChainStructureError(
            f"no orthogonality center: left_lim={psi.left_lim}, right_lim={psi.right_lim}"
        )
    return c


def total_qn(psi: MPS) -> int:
    """Total charge of the state (the fused divergence of all sites)."""
    sym = psi.site_index(0).symmetry
    total = sym.identity()
    for t in psi.tensors():
        total = sym.fuse_scalar(total, t.divergence)
    return total


def check_qns(psi: MPS) -> None:
    """Verify link flows and that only the center carries a divergence.

    Raises:
        ChainStructureError: If the chain has no single center.
        ChargeFlowError:     Naming the first offending site.
    """
    center = find_center(psi)
    n = len(psi)
    for i in range(n):
        t = psi.site(i)
        if i > 0:
            left = _shared_links(psi.site(i - 1), t)[0]
            if t.find(left.key).flow != FlowDirection.IN:
                raise ChargeFlowError(f"site {i}: left link {left.key!r} must flow IN")
        if i < n - 1 and psi.link_index(i).flow != FlowDirection.OUT:
            raise ChargeFlowError(f"site {i}: right link must flow OUT")
        if i != center and t.divergence != psi.site_index(i).symmetry.identity():
            raise ChargeFlowError(
                f"site {i}: divergence {t.divergence} away from the center (site {center})"
            )


def check_structure(psi: MPS, H: MPO, others: Sequence[MPS] = ()) -> None:
    """Verify that ``H`` acts on ``psi`` and that ``others`` live on the same sites.

    Raises:
        ChainStructureError: On a length mismatch or incompatible physical legs.
    """
    _check_lengths(psi, H, *others)
    for i in range(len(psi)):
        s = psi.site_index(i)
        if not s.can_contract_with(H.site_index(i)):
            raise ChainStructureError(f"site {i}: operator ket leg does not match {s!r}")
        bra = H.bra_index(i)
        if bra.key != (s.label, 1) or not np.array_equal(bra.charges, s.charges):
            raise ChainStructureError(f"site {i}: operator bra leg does not match {s!r}")
        for k, other in enumerate(others):
            if other.site_index(i) != s:
                raise ChainStructureError(f"site {i}: state {k} has a different physical leg")
