"""Tensor storage classes: DenseTensor and SymmetricTensor.

Both classes implement the :class:`Tensor` interface, so chain containers,
environments and the sweep driver are written once and never branch on the
storage variant.

- :class:`DenseTensor` wraps a plain JAX array.
- :class:`SymmetricTensor` stores only the charge sectors compatible with
  its divergence, as ``dict[BlockKey, jax.Array]``.

Numeric range:
    Every tensor holds a *mantissa* (the array or the blocks) and a scalar
    ``log_scale``; its value is ``exp(log_scale) * mantissa``. Contractions
    add the log-scales of their operands and move the mantissa norm into
    ``log_scale`` whenever it drifts out of ``[1e-30, 1e30]``, so long chains
    of products neither overflow nor underflow. ``todense()`` and ``item()``
    return true values.

Sharing:
    JAX arrays are immutable and every operation returns a new tensor.
    Tensors freely share block storage with the tensors they were derived
    from; no caller can observe the aliasing.

Both classes are registered as JAX pytrees. Leaves are the data arrays and
``log_scale``; index metadata, block keys and divergence are static aux
data.
"""

from __future__ import annotations

import functools
import math
from collections.abc import Iterable, Sequence
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np

from tndmrg.core.errors import ChargeFlowError
from tndmrg.core.index import IndexKey, IndexKind, Label, TensorIndex

# One charge per leg identifying a charge sector
BlockKey = tuple[int, ...]

_MANTISSA_LOW = 1e-30
_MANTISSA_HIGH = 1e30


def as_key(ref: Label | IndexKey) -> IndexKey:
    """Normalize a leg reference: a bare label means prime level 0."""
    if isinstance(ref, tuple):
        return ref
    return (ref, 0)


def _compute_valid_blocks(
    indices: tuple[TensorIndex, ...],
    divergence: int | None = None,
) -> list[BlockKey]:
    """All charge tuples whose signed sum equals ``divergence``.

    Partial sums are propagated one leg at a time. The charge of the last
    leg is then fixed by the running sum, so it is looked up rather than
    enumerated.

    Args:
        indices:    One TensorIndex per leg.
        divergence: Target net charge; the identity when None.

    Returns:
        Sorted list of valid block keys.
    """
    if not indices:
        return [()] if not divergence else []

    sym = indices[0].symmetry
    target = sym.identity() if divergence is None else divergence
    unique = [sorted(set(idx.charges.tolist())) for idx in indices]

    partial: dict[int, list[BlockKey]] = {sym.identity(): [()]}
    for leg, charges in zip(indices[:-1], unique[:-1]):
        nxt: dict[int, list[BlockKey]] = {}
        for q in charges:
            eff = sym.signed(q, leg.flow)
            for prev, combos in partial.items():
                fused = sym.fuse_scalar(prev, eff)
                nxt.setdefault(fused, []).extend(c + (q,) for c in combos)
        partial = nxt

    last = indices[-1]
    last_set = set(unique[-1])
    keys: list[BlockKey] = []
    for prev, combos in partial.items():
        # signed() is an involution, so it also maps the needed contribution back to a charge
        needed = sym.fuse_scalar(target, sym.dual_scalar(prev))
        q_last = sym.signed(needed, last.flow)
        if q_last in last_set:
            keys.extend(c + (q_last,) for c in combos)
    return sorted(keys)


def _block_slices(
    indices: tuple[TensorIndex, ...],
    key: BlockKey,
) -> tuple[tuple[np.ndarray, ...], tuple[int, ...]]:
    """Per-leg boolean masks selecting a block, and the block's shape."""
    masks = tuple(idx.charges == q for idx, q in zip(indices, key))
    shape = tuple(int(m.sum()) for m in masks)
    return masks, shape


@functools.lru_cache(maxsize=512)
def _sector_layout(
    indices: tuple[TensorIndex, ...],
    divergence: int,
) -> tuple[tuple[BlockKey, tuple[int, ...], int], ...]:
    """Flattening template: ``(key, shape, offset)`` for every non-empty valid block."""
    layout = []
    offset = 0
    for key in _compute_valid_blocks(indices, divergence):
        _, shape = _block_slices(indices, key)
        size = int(np.prod(shape)) if shape else 1
        if size == 0:
            continue
        layout.append((key, shape, offset))
        offset += size
    return tuple(layout)


def _check_unique_keys(indices: Sequence[TensorIndex]) -> None:
    seen: set[IndexKey] = set()
    for idx in indices:
        if idx.key in seen:
            raise ValueError(f"duplicate leg {idx.key!r} in tensor")
        seen.add(idx.key)


def _scale_factor(log_scale: Any) -> Any:
    if isinstance(log_scale, (int, float)) and log_scale == 0:
        return None
    return jnp.exp(log_scale)


def _to_python_scalar(value: jax.Array) -> float | complex:
    if jnp.iscomplexobj(value):
        return complex(value)
    return float(value)


# ---------- Tensor interface ----------

class Tensor:
    """Capability interface shared by DenseTensor and SymmetricTensor.

    Legs are addressed by key ``(label, prime)``; anywhere a key is accepted
    a bare label may be passed for prime level 0.
    """

    _indices: tuple[TensorIndex, ...]
    _log_scale: Any

    # --- abstract storage hooks ---

    @property
    def dtype(self) -> Any:
        raise NotImplementedError

    @property
    def is_graded(self) -> bool:
        raise NotImplementedError

    @property
    def divergence(self) -> int:
        raise NotImplementedError

    def todense(self) -> jax.Array:
        raise NotImplementedError

    def conj(self) -> Tensor:
        raise NotImplementedError

    def transpose(self, axes: Sequence[int]) -> Tensor:
        raise NotImplementedError

    def to_vector(self) -> jax.Array:
        raise NotImplementedError

    def from_vector(self, vec: jax.Array) -> Tensor:
        raise NotImplementedError

    def _mantissa_norm(self) -> jax.Array:
        raise NotImplementedError

    def _map_data(self, fn, log_scale: Any) -> Tensor:
        raise NotImplementedError

    def _with_indices(self, indices: tuple[TensorIndex, ...]) -> Tensor:
        raise NotImplementedError

    # --- metadata ---

    @property
    def indices(self) -> tuple[TensorIndex, ...]:
        return self._indices

    @property
    def ndim(self) -> int:
        return len(self._indices)

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(idx.dim for idx in self._indices)

    @property
    def log_scale(self) -> Any:
        return self._log_scale

    @property
    def is_complex(self) -> bool:
        return bool(jnp.issubdtype(self.dtype, jnp.complexfloating))

    def labels(self) -> tuple[Label, ...]:
        return tuple(idx.label for idx in self._indices)

    def keys(self) -> tuple[IndexKey, ...]:
        return tuple(idx.key for idx in self._indices)

    def has(self, ref: Label | IndexKey) -> bool:
        return as_key(ref) in self.keys()

    def axis_of(self, ref: Label | IndexKey) -> int:
        key = as_key(ref)
        for axis, idx in enumerate(self._indices):
            if idx.key == key:
                return axis
        raise KeyError(f"Leg {key!r} not found in tensor with legs {self.keys()}")

    def find(self, ref: Label | IndexKey) -> TensorIndex:
        return self._indices[self.axis_of(ref)]

    def find_kind(self, kind: IndexKind, prime: int | None = None) -> tuple[TensorIndex, ...]:
        return tuple(
            idx for idx in self._indices
            if idx.kind == kind and (prime is None or idx.prime == prime)
        )

    def permute(self, refs: Sequence[Label | IndexKey]) -> Tensor:
        """Reorder legs to the given keys (which must name every leg once)."""
        axes = tuple(self.axis_of(r) for r in refs)
        if sorted(axes) != list(range(self.ndim)):
            raise ValueError(f"permute needs every leg exactly once, got {list(refs)}")
        if axes == tuple(range(self.ndim)):
            return self
        return self.transpose(axes)

    # --- re-indexing ---

    def relabel(self, old: Label, new: Label) -> Tensor:
        """Rename every leg carrying label ``old``, whatever its prime level.

        Raises:
            KeyError: If no leg has label ``old``.
        """
        if old not in self.labels():
            raise KeyError(f"Label {old!r} not found in tensor with labels {self.labels()}")
        return self.relabels({old: new})

    def relabels(self, mapping: dict[Label, Label]) -> Tensor:
        new_indices = tuple(
            idx.relabel(mapping[idx.label]) if idx.label in mapping else idx
            for idx in self._indices
        )
        _check_unique_keys(new_indices)
        return self._with_indices(new_indices)

    def prime(
        self,
        inc: int = 1,
        *,
        kind: IndexKind | None = None,
        keys: Iterable[Label | IndexKey] | None = None,
    ) -> Tensor:
        """Raise the prime level of selected legs (all legs by default).

        Args:
            inc:  Amount added to the prime level.
            kind: Only legs of this kind.
            keys: Only these legs.
        """
        selected = None if keys is None else {as_key(k) for k in keys}
        new_indices = tuple(
            idx.primed(inc)
            if (kind is None or idx.kind == kind) and (selected is None or idx.key in selected)
            else idx
            for idx in self._indices
        )
        _check_unique_keys(new_indices)
        return self._with_indices(new_indices)

    def mapprime(self, old: int, new: int, *, kind: IndexKind | None = None) -> Tensor:
        """Move legs at prime level ``old`` to level ``new``."""
        new_indices = tuple(
            idx.with_prime(new)
            if idx.prime == old and (kind is None or idx.kind == kind)
            else idx
            for idx in self._indices
        )
        _check_unique_keys(new_indices)
        return self._with_indices(new_indices)

    def noprime(self, *, kind: IndexKind | None = None) -> Tensor:
        new_indices = tuple(
            idx.with_prime(0) if kind is None or idx.kind == kind else idx
            for idx in self._indices
        )
        _check_unique_keys(new_indices)
        return self._with_indices(new_indices)

    # --- values ---

    def norm(self) -> jax.Array:
        """Frobenius norm of the true values."""
        factor = _scale_factor(self._log_scale)
        n = self._mantissa_norm()
        return n if factor is None else n * factor

    def log_norm(self) -> float:
        """Natural log of the norm; ``-inf`` for a zero tensor. Never overflows."""
        n = float(self._mantissa_norm())
        if n == 0.0:
            return -math.inf
        return math.log(n) + float(self._log_scale)

    def scale(self, factor: complex | float) -> Tensor:
        """Multiply by a scalar: phase into the mantissa, magnitude into the log-scale."""
        factor = complex(factor) if np.iscomplexobj(factor) else float(factor)
        mag = abs(factor)
        if mag == 0.0:
            return self._map_data(lambda a: a * 0, 0.0)
        phase = factor / mag
        log_scale = self._log_scale + math.log(mag)
        if phase == 1:
            return self._map_data(lambda a: a, log_scale)
        return self._map_data(lambda a: a * phase, log_scale)

    def with_log_scale(self, log_scale: Any) -> Tensor:
        """Same mantissa, new external scale."""
        return self._map_data(lambda a: a, log_scale)

    def astype(self, dtype: Any) -> Tensor:
        return self._map_data(lambda a: a.astype(dtype), self._log_scale)

    def rebalanced(self) -> Tensor:
        """Move the mantissa norm into ``log_scale`` if it left the safe window."""
        n = float(self._mantissa_norm())
        if n == 0.0 or _MANTISSA_LOW <= n <= _MANTISSA_HIGH:
            return self
        return self._map_data(lambda a: a / n, self._log_scale + math.log(n))

    def item(self) -> float | complex:
        """Value of a rank-0 tensor as a Python scalar."""
        if self.ndim != 0:
            raise ValueError(f"item() needs a rank-0 tensor, got legs {self.keys()}")
        return _to_python_scalar(self.todense())


# ---------- DenseTensor ----------

@jax.tree_util.register_pytree_node_class
class DenseTensor(Tensor):
    """A tensor stored as one JAX array plus leg metadata.

    Args:
        data:      Array whose shape matches the leg dimensions.
        indices:   One TensorIndex per axis of ``data``.
        log_scale: Log of an external scale factor.

    Example:
        >>> t = DenseTensor(jnp.ones((2, 3)), (make_index(2, "a"), make_index(3, "b")))
        >>> float(t.norm())
        2.449...
    """

    def __init__(
        self,
        data: jax.Array,
        indices: Sequence[TensorIndex],
        log_scale: Any = 0.0,
    ) -> None:
        data = jnp.asarray(data)
        indices = tuple(indices)
        if data.ndim != len(indices):
            raise ValueError(f"data has {data.ndim} dims but {len(indices)} indices given")
        for i, (dim, idx) in enumerate(zip(data.shape, indices)):
            if dim != idx.dim:
                raise ValueError(f"data.shape[{i}]={dim} but indices[{i}].dim={idx.dim}")
        _check_unique_keys(indices)
        self._data = data
        self._indices = indices
        self._log_scale = log_scale

    @classmethod
    def _build(cls, data, indices, log_scale) -> DenseTensor:
        obj = object.__new__(cls)
        obj._data = data
        obj._indices = indices
        obj._log_scale = log_scale
        return obj

    # --- pytree ---

    def tree_flatten(self):
        return (self._data, self._log_scale), self._indices

    @classmethod
    def tree_unflatten(cls, aux, children) -> DenseTensor:
        return cls._build(children[0], aux, children[1])

    # --- storage ---

    @property
    def data(self) -> jax.Array:
        """The mantissa array (true values are ``exp(log_scale) * data``)."""
        return self._data

    @property
    def dtype(self) -> Any:
        return self._data.dtype

    @property
    def is_graded(self) -> bool:
        return False

    @property
    def divergence(self) -> int:
        if not self._indices:
            return 0
        return self._indices[0].symmetry.identity()

    def todense(self) -> jax.Array:
        factor = _scale_factor(self._log_scale)
        return self._data if factor is None else self._data * factor

    def conj(self) -> DenseTensor:
        return DenseTensor._build(
            jnp.conj(self._data),
            tuple(idx.reverse() for idx in self._indices),
            self._log_scale,
        )

    def transpose(self, axes: Sequence[int]) -> DenseTensor:
        axes = tuple(axes)
        return DenseTensor._build(
            jnp.transpose(self._data, axes),
            tuple(self._indices[i] for i in axes),
            self._log_scale,
        )

    def to_vector(self) -> jax.Array:
        return self.todense().ravel()

    def from_vector(self, vec: jax.Array) -> DenseTensor:
        return DenseTensor(jnp.reshape(vec, self.shape), self._indices)

    def _mantissa_norm(self) -> jax.Array:
        return jnp.linalg.norm(self._data.ravel())

    def _map_data(self, fn, log_scale) -> DenseTensor:
        return DenseTensor._build(fn(self._data), self._indices, log_scale)

    def _with_indices(self, indices) -> DenseTensor:
        return DenseTensor._build(self._data, tuple(indices), self._log_scale)

    def __repr__(self) -> str:
        return f"DenseTensor(shape={self._data.shape}, dtype={self.dtype}, keys={self.keys()})"


# ---------- SymmetricTensor ----------

@jax.tree_util.register_pytree_node_class
class SymmetricTensor(Tensor):
    """Block-sparse tensor storing only charge-compatible sectors.

    Every stored block key satisfies::

        fuse_i(flow_i * charge_i) == divergence

    States and operators in a chain are built with divergence equal to the
    identity, except for the orthogonality center of a state, which carries
    the state's total charge.

    Args:
        blocks:     Mapping from block key to the block's mantissa array.
        indices:    One TensorIndex per leg; all must share one symmetry.
        divergence: Net charge of every block; the identity when None.
        log_scale:  Log of an external scale factor.

    Raises:
        ChargeFlowError: If a block key violates the divergence.
        ValueError:      If a block has the wrong shape.
    """

    def __init__(
        self,
        blocks: dict[BlockKey, jax.Array],
        indices: Sequence[TensorIndex],
        divergence: int | None = None,
        log_scale: Any = 0.0,
    ) -> None:
        self._indices = tuple(indices)
        _check_unique_keys(self._indices)
        sym = self.symmetry
        if divergence is None:
            divergence = sym.identity() if sym is not None else 0
        self._divergence = int(divergence)
        self._blocks = {
            tuple(int(q) for q in key): jnp.asarray(block) for key, block in blocks.items()
        }
        self._log_scale = log_scale
        self._validate()

    def _validate(self) -> None:
        sym = self.symmetry
        flows = [idx.flow for idx in self._indices]
        for key, block in self._blocks.items():
            if len(key) != self.ndim:
                raise ValueError(f"Block key {key} has {len(key)} charges for {self.ndim} legs")
            net = sym.net_charge(key, flows) if sym is not None else 0
            if net != self._divergence:
                raise ChargeFlowError(
                    f"Block {key} violates charge conservation: "
                    f"net charge {net}, expected divergence {self._divergence}"
                )
            _, shape = _block_slices(self._indices, key)
            if tuple(block.shape) != shape:
                raise ValueError(f"Block {key} has shape {block.shape}, expected {shape}")

    @classmethod
    def _build(cls, blocks, indices, divergence, log_scale) -> SymmetricTensor:
        obj = object.__new__(cls)
        obj._blocks = blocks
        obj._indices = indices
        obj._divergence = divergence
        obj._log_scale = log_scale
        return obj

    # --- pytree ---

    def tree_flatten(self):
        keys = sorted(self._blocks)
        children = [self._blocks[k] for k in keys] + [self._log_scale]
        return children, (tuple(keys), self._indices, self._divergence)

    @classmethod
    def tree_unflatten(cls, aux, children) -> SymmetricTensor:
        keys, indices, divergence = aux
        children = list(children)
        return cls._build(dict(zip(keys, children[:-1])), indices, divergence, children[-1])

    # --- factories ---

    @classmethod
    def zeros(
        cls,
        indices: Sequence[TensorIndex],
        divergence: int | None = None,
        dtype: Any = jnp.float64,
    ) -> SymmetricTensor:
        """All valid sectors present, filled with zeros."""
        indices = tuple(indices)
        div = cls._default_divergence(indices, divergence)
        blocks = {
            key: jnp.zeros(shape, dtype=dtype)
            for key, shape, _ in _sector_layout(indices, div)
        }
        return cls(blocks, indices, div)

    @classmethod
    def random_normal(
        cls,
        indices: Sequence[TensorIndex],
        key: jax.Array,
        divergence: int | None = None,
        dtype: Any = jnp.float64,
        stddev: float = 1.0,
    ) -> SymmetricTensor:
        """Random sectors drawn from N(0, stddev); one folded key per block."""
        indices = tuple(indices)
        div = cls._default_divergence(indices, divergence)
        blocks = {}
        for i, (block_key, shape, _) in enumerate(_sector_layout(indices, div)):
            subkey = jax.random.fold_in(key, i)
            blocks[block_key] = jax.random.normal(subkey, shape, dtype=dtype) * stddev
        return cls(blocks, indices, div)

    @classmethod
    def from_dense(
        cls,
        data: jax.Array,
        indices: Sequence[TensorIndex],
        divergence: int | None = None,
        tol: float = 1e-12,
    ) -> SymmetricTensor:
        """Extract the sectors of a dense array.

        Raises:
            ValueError:      If the shape does not match the legs.
            ChargeFlowError: If entries outside the allowed sectors exceed ``tol``.
        """
        indices = tuple(indices)
        if tuple(data.shape) != tuple(idx.dim for idx in indices):
            raise ValueError(
                f"data.shape {tuple(data.shape)} does not match index dims "
                f"{tuple(idx.dim for idx in indices)}"
            )
        div = cls._default_divergence(indices, divergence)
        data_np = np.asarray(data)
        covered = np.zeros(data_np.shape, dtype=bool)
        blocks: dict[BlockKey, jax.Array] = {}
        for key, _, _ in _sector_layout(indices, div):
            masks, _ = _block_slices(indices, key)
            grid = np.ix_(*[np.where(m)[0] for m in masks])
            blocks[key] = jnp.asarray(data_np[grid])
            covered[grid] = True

        outside = np.abs(data_np[~covered])
        if outside.size and outside.max() > tol:
            raise ChargeFlowError(
                f"data has {int(np.sum(outside > tol))} non-zero elements outside "
                f"sectors of divergence {div} (max abs value: {outside.max():.3e})"
            )
        return cls(blocks, indices, div)

    @staticmethod
    def _default_divergence(indices, divergence) -> int:
        if divergence is not None:
            return int(divergence)
        return indices[0].symmetry.identity() if indices else 0

    # --- storage ---

    @property
    def symmetry(self):
        return self._indices[0].symmetry if self._indices else None

    @property
    def divergence(self) -> int:
        return self._divergence

    @property
    def is_graded(self) -> bool:
        return True

    @property
    def dtype(self) -> Any:
        if not self._blocks:
            return jnp.dtype(jnp.float64)
        return next(iter(self._blocks.values())).dtype

    @property
    def n_blocks(self) -> int:
        return len(self._blocks)

    @property
    def blocks(self) -> dict[BlockKey, jax.Array]:
        """Block mantissas; treat as read-only."""
        return self._blocks

    def block_shapes(self) -> dict[BlockKey, tuple[int, ...]]:
        return {k: tuple(v.shape) for k, v in self._blocks.items()}

    def todense(self) -> jax.Array:
        """Materialize the full array (debugging and small tensors only)."""
        result = jnp.zeros(self.shape, dtype=self.dtype)
        for key, block in self._blocks.items():
            masks, _ = _block_slices(self._indices, key)
            grid = np.ix_(*[np.where(m)[0] for m in masks])
            result = result.at[grid].set(block)
        factor = _scale_factor(self._log_scale)
        return result if factor is None else result * factor

    def conj(self) -> SymmetricTensor:
        """Complex-conjugate the blocks and reverse every leg.

        Keys keep their charges; with all flows flipped the divergence
        becomes its inverse.
        """
        sym = self.symmetry
        div = sym.dual_scalar(self._divergence) if sym is not None else self._divergence
        return SymmetricTensor._build(
            {k: jnp.conj(v) for k, v in self._blocks.items()},
            tuple(idx.reverse() for idx in self._indices),
            div,
            self._log_scale,
        )

    def transpose(self, axes: Sequence[int]) -> SymmetricTensor:
        axes = tuple(axes)
        blocks = {
            tuple(key[i] for i in axes): jnp.transpose(block, axes)
            for key, block in self._blocks.items()
        }
        return SymmetricTensor._build(
            blocks, tuple(self._indices[i] for i in axes), self._divergence, self._log_scale
        )

    def to_vector(self) -> jax.Array:
        """Concatenate every valid sector (zeros where absent) into one vector.

        The layout depends only on the legs and the divergence, so vectors of
        tensors with equal structure line up element by element.
        """
        layout = _sector_layout(self._indices, self._divergence)
        if not layout:
            return jnp.zeros((0,), dtype=self.dtype)
        parts = [
            self._blocks[key].ravel() if key in self._blocks
            else jnp.zeros(int(np.prod(shape)), dtype=self.dtype)
            for key, shape, _ in layout
        ]
        vec = jnp.concatenate(parts)
        factor = _scale_factor(self._log_scale)
        return vec if factor is None else vec * factor

    def from_vector(self, vec: jax.Array) -> SymmetricTensor:
        blocks = {}
        for key, shape, offset in _sector_layout(self._indices, self._divergence):
            size = int(np.prod(shape))
            blocks[key] = jnp.reshape(vec[offset:offset + size], shape)
        return SymmetricTensor._build(blocks, self._indices, self._divergence, 0.0)

    def _mantissa_norm(self) -> jax.Array:
        if not self._blocks:
            return jnp.zeros((), dtype=jnp.float64)
        return jnp.sqrt(sum(jnp.sum(jnp.abs(v) ** 2) for v in self._blocks.values()))

    def _map_data(self, fn, log_scale) -> SymmetricTensor:
        return SymmetricTensor._build(
            {k: fn(v) for k, v in self._blocks.items()},
            self._indices,
            self._divergence,
            log_scale,
        )

    def _with_indices(self, indices) -> SymmetricTensor:
        return SymmetricTensor._build(self._blocks, tuple(indices), self._divergence, self._log_scale)

    def __repr__(self) -> str:
        nnz = sum(v.size for v in self._blocks.values())
        return (
            f"SymmetricTensor(ndim={self.ndim}, n_blocks={self.n_blocks}, nnz={nnz}, "
            f"divergence={self._divergence}, dtype={self.dtype}, keys={self.keys()})"
        )
