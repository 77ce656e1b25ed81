"""Truncated SVD and two-site bond factorization.

``factorize`` splits a tensor across a cut into ``left * D * right`` with
``D`` diagonal on a new bond, keeps the largest weights under a
:class:`TruncationParams` policy and absorbs ``D`` into one side::

    FROM_LEFT   left is isometric,  D goes into right
    FROM_RIGHT  right is isometric, D goes into left

For block-sparse input the SVD runs sector by sector. A block belongs to
the bond sector ``q_b = fuse(net charge of its left legs, dual(t))``, where
``t`` is the divergence the left factor must carry: the identity when the
left factor is the isometry, the input's divergence otherwise. All
sectors' weights are pooled before truncation, so the kept set is the
global largest-weight subset.

Truncation follows the density-matrix convention: weights are squared
singular values, the discarded weight is accumulated from the smallest
upwards, and the cutoff is relative to the total weight unless
``absolute_cutoff`` is set.
"""

from __future__ import annotations

import sys
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, NamedTuple

import jax
import jax.numpy as jnp
import numpy as np

from tndmrg.core.index import FlowDirection, IndexKey, IndexKind, Label, TensorIndex
from tndmrg.core.tensor import DenseTensor, SymmetricTensor, Tensor, as_key


class Direction(Enum):
    """Which side of a bond ends up isometric after a factorization."""

    FROM_LEFT = "fromleft"
    FROM_RIGHT = "fromright"


@dataclass(frozen=True)
class TruncationParams:
    """Bond truncation policy.

    Attributes:
        cutoff:          Largest discarded weight, relative to the total
                         unless ``absolute_cutoff``.
        min_dim:         Never keep fewer states than this (nor than the full rank).
        max_dim:         Never keep more states than this; wins over ``min_dim``.
        absolute_cutoff: Compare ``cutoff`` against raw weights.
    """

    cutoff: float = 1e-12
    min_dim: int = 1
    max_dim: int = 5000
    absolute_cutoff: bool = False

    def __post_init__(self) -> None:
        if self.cutoff < 0:
            raise ValueError(f"cutoff must be non-negative, got {self.cutoff}")
        if self.min_dim < 0:
            raise ValueError(f"min_dim must be non-negative, got {self.min_dim}")
        if self.max_dim < 1:
            raise ValueError(f"max_dim must be positive, got {self.max_dim}")


# Keeps every state (zero weights included).
EXACT = TruncationParams(cutoff=0.0, min_dim=1, max_dim=sys.maxsize)


class TruncationInfo(NamedTuple):
    """Outcome of one truncated factorization.

    Attributes:
        truncation_error: Discarded weight over total weight.
        kept_weights:     Kept weights, normalized by the total, descending.
        bond_dim:         Dimension of the new bond.
        is_zero:          The input tensor was identically zero.
    """

    truncation_error: float
    kept_weights: np.ndarray
    bond_dim: int
    is_zero: bool


def truncation_rank(weights: np.ndarray, params: TruncationParams) -> tuple[int, float]:
    """Number of states to keep from descending ``weights``.

    Returns:
        ``(m, discarded)`` with ``discarded`` the dropped weight over the total.
    """
    w = np.asarray(weights, dtype=np.float64)
    full = len(w)
    if full == 0:
        return 0, 0.0
    total = float(w.sum())
    floor = min(max(params.min_dim, 1), full)
    if total <= 0.0:
        return min(floor, params.max_dim), 0.0

    scale = 1.0 if params.absolute_cutoff else total
    m = full
    discarded = 0.0
    while m > params.max_dim or (m > floor and discarded + w[m - 1] < params.cutoff * scale):
        discarded += float(w[m - 1])
        m -= 1
    return m, discarded / total


def _info(weights_desc: np.ndarray, m: int, discarded: float) -> TruncationInfo:
    total = float(np.sum(weights_desc))
    kept = weights_desc[:m] / total if total > 0 else np.zeros(m)
    return TruncationInfo(discarded, kept, m, total <= 0.0)


def _split_axes(tensor: Tensor, left_keys: Sequence[Label | IndexKey]) -> tuple[list[int], list[int]]:
    left_axes = [tensor.axis_of(k) for k in left_keys]
    if len(set(left_axes)) != len(left_axes):
        raise ValueError(f"left legs repeat: {list(left_keys)}")
    right_axes = [i for i in range(tensor.ndim) if i not in left_axes]
    return left_axes, right_axes


def _bond_pair(
    sym, charges: np.ndarray, label: Label, prime: int
) -> tuple[TensorIndex, TensorIndex]:
    out_idx = TensorIndex(sym, charges, FlowDirection.OUT, label, prime, IndexKind.LINK)
    return out_idx, out_idx.reverse()


# ---------- dense ----------

def _svd_dense(
    tensor: DenseTensor,
    left_axes: list[int],
    right_axes: list[int],
    label: Label,
    prime: int,
    params: TruncationParams,
) -> tuple[DenseTensor, jax.Array, DenseTensor, TruncationInfo]:
    left_idx = tuple(tensor.indices[i] for i in left_axes)
    right_idx = tuple(tensor.indices[i] for i in right_axes)
    lshape = tuple(idx.dim for idx in left_idx)
    rshape = tuple(idx.dim for idx in right_idx)
    matrix = jnp.transpose(tensor.data, left_axes + right_axes).reshape(
        int(np.prod(lshape)), int(np.prod(rshape))
    )

    U, s, Vh = jnp.linalg.svd(matrix, full_matrices=False)
    weights = np.asarray(s, dtype=np.float64) ** 2
    m, discarded = truncation_rank(weights, params)
    info = _info(weights, m, discarded)

    sym = tensor.indices[0].symmetry
    bond_out, bond_in = _bond_pair(sym, np.full(m, sym.identity(), dtype=np.int32), label, prime)
    left = DenseTensor(U[:, :m].reshape(lshape + (m,)), left_idx + (bond_out,))
    right = DenseTensor(Vh[:m].reshape((m,) + rshape), (bond_in,) + right_idx)
    return left, s[:m], right, info


# ---------- block-sparse ----------

class _Sector:
    """Rows, columns and blocks of one bond charge sector."""

    def __init__(self) -> None:
        self.rows: dict[tuple, tuple[int, tuple[int, ...]]] = {}
        self.cols: dict[tuple, tuple[int, tuple[int, ...]]] = {}
        self.n_rows = 0
        self.n_cols = 0
        self.entries: list[tuple[tuple, tuple, jax.Array]] = []

    def add(self, lk: tuple, lshape: tuple, rk: tuple, rshape: tuple, block: jax.Array) -> None:
        if lk not in self.rows:
            self.rows[lk] = (self.n_rows, lshape)
            self.n_rows += int(np.prod(lshape))
        if rk not in self.cols:
            self.cols[rk] = (self.n_cols, rshape)
            self.n_cols += int(np.prod(rshape))
        self.entries.append((lk, rk, block))

    def matrix(self, dtype: Any) -> jax.Array:
        mat = jnp.zeros((self.n_rows, self.n_cols), dtype=dtype)
        for lk, rk, block in self.entries:
            r0, lshape = self.rows[lk]
            c0, rshape = self.cols[rk]
            nr, nc = int(np.prod(lshape)), int(np.prod(rshape))
            mat = mat.at[r0:r0 + nr, c0:c0 + nc].set(block.reshape(nr, nc))
        return mat


def _svd_symmetric(
    tensor: SymmetricTensor,
    left_axes: list[int],
    right_axes: list[int],
    label: Label,
    prime: int,
    params: TruncationParams,
    left_divergence: int,
) -> tuple[SymmetricTensor, jax.Array, SymmetricTensor, TruncationInfo]:
    sym = tensor.symmetry
    left_idx = tuple(tensor.indices[i] for i in left_axes)
    right_idx = tuple(tensor.indices[i] for i in right_axes)
    left_flows = [idx.flow for idx in left_idx]
    shift = sym.dual_scalar(left_divergence)

    sectors: dict[int, _Sector] = {}
    for key, block in tensor.blocks.items():
        lk = tuple(key[i] for i in left_axes)
        rk = tuple(key[i] for i in right_axes)
        q = sym.fuse_scalar(sym.net_charge(lk, left_flows), shift)
        permuted = jnp.transpose(block, left_axes + right_axes)
        nl = len(left_axes)
        sectors.setdefault(q, _Sector()).add(
            lk, permuted.shape[:nl], rk, permuted.shape[nl:], permuted
        )

    charges = sorted(sectors)
    decomps = {}
    pooled_w, pooled_q = [], []
    for q in charges:
        U, s, Vh = jnp.linalg.svd(sectors[q].matrix(tensor.dtype), full_matrices=False)
        decomps[q] = (U, s, Vh)
        pooled_w.append(np.asarray(s, dtype=np.float64) ** 2)
        pooled_q.append(np.full(len(s), q))

    if pooled_w:
        weights = np.concatenate(pooled_w)
        owners = np.concatenate(pooled_q)
    else:
        weights = np.zeros(0)
        owners = np.zeros(0, dtype=np.int64)
    order = np.argsort(-weights, kind="stable")
    m, discarded = truncation_rank(weights[order], params)
    info = _info(weights[order], m, discarded)
    kept_per_sector = {q: int(np.sum(owners[order[:m]] == q)) for q in charges}

    bond_charges = np.concatenate(
        [np.full(kept_per_sector[q], q, dtype=np.int32) for q in charges]
    ) if charges else np.zeros(0, dtype=np.int32)
    bond_out, bond_in = _bond_pair(sym, bond_charges, label, prime)

    u_blocks, v_blocks, kept_s = {}, {}, []
    for q in charges:
        n = kept_per_sector[q]
        if n == 0:
            continue
        U, s, Vh = decomps[q]
        sector = sectors[q]
        for lk, (r0, lshape) in sector.rows.items():
            nr = int(np.prod(lshape))
            u_blocks[lk + (q,)] = U[r0:r0 + nr, :n].reshape(lshape + (n,))
        for rk, (c0, rshape) in sector.cols.items():
            nc = int(np.prod(rshape))
            v_blocks[(q,) + rk] = Vh[:n, c0:c0 + nc].reshape((n,) + rshape)
        kept_s.append(s[:n])

    s_kept = jnp.concatenate(kept_s) if kept_s else jnp.zeros((0,), dtype=jnp.float64)
    right_div = sym.fuse_scalar(tensor.divergence, sym.dual_scalar(left_divergence))
    left = SymmetricTensor(u_blocks, left_idx + (bond_out,), left_divergence)
    right = SymmetricTensor(v_blocks, (bond_in,) + right_idx, right_div)
    return left, s_kept, right, info


def _svd(
    tensor: Tensor,
    left_keys: Sequence[Label | IndexKey],
    bond_label: Label,
    params: TruncationParams,
    bond_prime: int,
    left_divergence: int | None,
):
    left_axes, right_axes = _split_axes(tensor, left_keys)
    if not left_axes or not right_axes:
        raise ValueError(
            f"a factorization needs legs on both sides, got left {[as_key(k) for k in left_keys]} "
            f"of {tensor.keys()}"
        )
    if isinstance(tensor, SymmetricTensor):
        target = tensor.symmetry.identity() if left_divergence is None else left_divergence
        return _svd_symmetric(tensor, left_axes, right_axes, bond_label, bond_prime, params, target)
    if isinstance(tensor, DenseTensor):
        return _svd_dense(tensor, left_axes, right_axes, bond_label, bond_prime, params)
    raise TypeError(f"Cannot factorize {type(tensor).__name__}")


def _scale_leg(tensor: Tensor, axis: int, s: jax.Array) -> Tensor:
    """Multiply the tensor by ``diag(s)`` along one leg."""
    if isinstance(tensor, DenseTensor):
        shape = [1] * tensor.ndim
        shape[axis] = -1
        return DenseTensor(tensor.data * s.reshape(shape), tensor.indices)
    idx = tensor.indices[axis]
    blocks = {}
    for key, block in tensor.blocks.items():
        sv = s[np.where(idx.charges == key[axis])[0]]
        shape = [1] * tensor.ndim
        shape[axis] = -1
        blocks[key] = block * sv.reshape(shape)
    return SymmetricTensor(blocks, tensor.indices, tensor.divergence)


def truncated_svd(
    tensor: Tensor,
    left_keys: Sequence[Label | IndexKey],
    bond_label: Label = "bond",
    params: TruncationParams | None = None,
    *,
    bond_prime: int = 0,
    left_divergence: int | None = None,
) -> tuple[Tensor, jax.Array, Tensor, TruncationInfo]:
    """Truncated SVD across the cut ``left_keys | rest``.

    Output legs::

        U:  (left legs..., bond OUT)
        Vh: (bond IN, right legs...)

    Args:
        tensor:          Tensor to decompose.
        left_keys:       Legs that go to ``U``; the rest go to ``Vh``.
        bond_label:      Label of the new bond.
        params:          Truncation policy; keeps everything nonzero by default.
        bond_prime:      Prime level of the new bond.
        left_divergence: Divergence assigned to ``U`` (block-sparse only).

    Returns:
        ``(U, s, Vh, info)``. ``s`` holds the kept singular values in bond
        order (descending within each charge sector).
    """
    params = params or TruncationParams()
    U, s, Vh, info = _svd(tensor, left_keys, bond_label, params, bond_prime, left_divergence)
    return U, s * jnp.exp(tensor.log_scale), Vh, info


def factorize(
    tensor: Tensor,
    left_keys: Sequence[Label | IndexKey],
    bond_label: Label,
    direction: Direction,
    params: TruncationParams | None = None,
    *,
    bond_prime: int = 0,
) -> tuple[Tensor, Tensor, TruncationInfo]:
    """Split ``tensor`` into two factors joined by a truncated bond.

    The factor on the side named by ``direction`` is an exact isometry; the
    other one carries the singular values, the divergence and the tensor's
    log-scale. A zero input still yields correctly shaped factors and sets
    ``info.is_zero``.

    Args:
        tensor:     Two-site tensor.
        left_keys:  Legs belonging to the left factor.
        bond_label: Label of the new bond (OUT on the left, IN on the right).
        direction:  Sweep direction.
        params:     Truncation policy.
        bond_prime: Prime level of the new bond.

    Returns:
        ``(left, right, info)``.
    """
    params = params or TruncationParams()
    if direction is Direction.FROM_LEFT:
        left_div = None
    else:
        left_div = tensor.divergence if tensor.is_graded else None
    U, s, Vh, info = _svd(tensor, left_keys, bond_label, params, bond_prime, left_div)
    if direction is Direction.FROM_LEFT:
        right = _scale_leg(Vh, 0, s)
        return U, right.with_log_scale(tensor.log_scale), info
    left = _scale_leg(U, U.ndim - 1, s)
    return left.with_log_scale(tensor.log_scale), Vh, info
