r"""Key-based tensor contraction and tensor arithmetic.

Primary API::

    contract(\*tensors, output=None, optimize="auto") -> Tensor
    add(a, b) / add_scaled(a, b, alpha) -> Tensor

Legs are matched by key ``(label, prime)``. A key present on two operands
is summed over; keys present once become output legs, in order of first
appearance unless ``output`` fixes the order.

Dense operands are translated to an einsum subscript string, the path is
found by ``opt_einsum.contract_path`` and executed with the JAX backend.

Block-sparse operands are contracted pairwise, left to right. For each
pair the blocks of the right operand are bucketed by their *signature*
(the charges on the contracted legs) and each left block looks up only its
own bucket, so the work is a hash join over compatible sectors.
"""

from __future__ import annotations

import math
import string
from collections import Counter, defaultdict
from collections.abc import Sequence

import jax.numpy as jnp
import numpy as np
import opt_einsum

from tndmrg.core.errors import ChargeFlowError
from tndmrg.core.index import IndexKey, Label, TensorIndex
from tndmrg.core.tensor import BlockKey, DenseTensor, SymmetricTensor, Tensor, as_key

_EINSUM_CHARS = string.ascii_lowercase + string.ascii_uppercase


# ---------- key -> subscript translation ----------

def _count_keys(tensors: Sequence[Tensor]) -> tuple[Counter, dict[IndexKey, TensorIndex]]:
    counts: Counter[IndexKey] = Counter()
    first_seen: dict[IndexKey, TensorIndex] = {}
    for tensor in tensors:
        for idx in tensor.indices:
            counts[idx.key] += 1
            first_seen.setdefault(idx.key, idx)
    for key, count in counts.items():
        if count > 2:
            raise ValueError(
                f"Leg {key!r} appears {count} times across tensors. "
                f"A leg may appear at most twice (once per contracted operand)."
            )
    return counts, first_seen


def _free_keys(
    tensors: Sequence[Tensor],
    counts: Counter,
    output: Sequence[Label | IndexKey] | None,
) -> list[IndexKey]:
    free = [key for t in tensors for key in t.keys() if counts[key] == 1]
    if output is None:
        return free
    wanted = [as_key(r) for r in output]
    if sorted(wanted, key=str) != sorted(free, key=str):
        raise ValueError(f"output {wanted} does not match the free legs {free}")
    return wanted


def _keys_to_subscripts(
    tensors: Sequence[Tensor],
    output: Sequence[Label | IndexKey] | None = None,
) -> tuple[str, tuple[TensorIndex, ...]]:
    """Einsum subscripts for a list of tensors, plus the output leg metadata.

    Raises:
        ValueError: If a key appears more than twice, more than 52 distinct
            keys are involved, or ``output`` names something other than the
            free legs.
    """
    counts, first_seen = _count_keys(tensors)
    all_keys = sorted(counts, key=str)
    if len(all_keys) > len(_EINSUM_CHARS):
        raise ValueError(
            f"Too many distinct legs ({len(all_keys)}) for einsum encoding; "
            f"at most {len(_EINSUM_CHARS)} are supported."
        )
    char = {key: _EINSUM_CHARS[i] for i, key in enumerate(all_keys)}
    out_keys = _free_keys(tensors, counts, output)
    inputs = ",".join("".join(char[k] for k in t.keys()) for t in tensors)
    subscripts = inputs + "->" + "".join(char[k] for k in out_keys)
    return subscripts, tuple(first_seen[k] for k in out_keys)


# ---------- dense path ----------

def _check_dense_dims(tensors: Sequence[DenseTensor]) -> None:
    dims: dict[IndexKey, int] = {}
    for t in tensors:
        for idx in t.indices:
            if idx.key in dims and dims[idx.key] != idx.dim:
                raise ValueError(
                    f"Leg {idx.key!r} has dimension {dims[idx.key]} on one operand "
                    f"and {idx.dim} on another"
                )
            dims[idx.key] = idx.dim


def _contract_dense(
    tensors: Sequence[DenseTensor],
    output: Sequence[Label | IndexKey] | None,
    optimize: str,
) -> DenseTensor:
    _check_dense_dims(tensors)
    log_scale = sum(t.log_scale for t in tensors)
    # rank-0 operands are plain factors
    factor = None
    operands = []
    for t in tensors:
        if t.ndim == 0:
            factor = t.data if factor is None else factor * t.data
        else:
            operands.append(t)
    if not operands:
        return DenseTensor(factor, (), log_scale).rebalanced()

    subscripts, out_indices = _keys_to_subscripts(operands, output)
    arrays = [t.data for t in operands]
    _, path_info = opt_einsum.contract_path(subscripts, *arrays, optimize=optimize)
    result = opt_einsum.contract(subscripts, *arrays, optimize=path_info.path, backend="jax")
    if factor is not None:
        result = result * factor
    return DenseTensor(result, out_indices, log_scale).rebalanced()


# ---------- block-sparse path ----------

def _check_shared_legs(a: Tensor, b: Tensor, shared: Sequence[IndexKey]) -> None:
    for key in shared:
        ia, ib = a.find(key), b.find(key)
        if ia.symmetry != ib.symmetry:
            raise ChargeFlowError(f"Leg {key!r}: symmetries {ia.symmetry!r} and {ib.symmetry!r} differ")
        if ia.flow == ib.flow:
            raise ChargeFlowError(
                f"Leg {key!r}: both ends flow {ia.flow.name}; a contracted pair needs opposite flows"
            )
        if not np.array_equal(ia.charges, ib.charges):
            raise ChargeFlowError(f"Leg {key!r}: the two ends carry different charges")


def _contract_pair_symmetric(a: SymmetricTensor, b: SymmetricTensor) -> SymmetricTensor:
    b_keys = set(b.keys())
    shared = [k for k in a.keys() if k in b_keys]
    _check_shared_legs(a, b, shared)
    if a.symmetry is not None and b.symmetry is not None and a.symmetry != b.symmetry:
        raise ChargeFlowError(f"Cannot contract {a.symmetry!r} with {b.symmetry!r} tensors")

    a_axes = tuple(a.axis_of(k) for k in shared)
    b_axes = tuple(b.axis_of(k) for k in shared)
    a_free = [i for i in range(a.ndim) if i not in a_axes]
    b_free = [i for i in range(b.ndim) if i not in b_axes]

    buckets: dict[BlockKey, list[tuple[BlockKey, object]]] = defaultdict(list)
    for key, block in b.blocks.items():
        buckets[tuple(key[i] for i in b_axes)].append((key, block))

    out: dict[BlockKey, object] = {}
    for ka, block_a in a.blocks.items():
        signature = tuple(ka[i] for i in a_axes)
        for kb, block_b in buckets.get(signature, ()):
            product = jnp.tensordot(block_a, block_b, axes=(a_axes, b_axes))
            key = tuple(ka[i] for i in a_free) + tuple(kb[i] for i in b_free)
            out[key] = out[key] + product if key in out else product

    indices = tuple(a.indices[i] for i in a_free) + tuple(b.indices[i] for i in b_free)
    sym = a.symmetry or b.symmetry
    divergence = sym.fuse_scalar(a.divergence, b.divergence) if sym is not None else 0
    result = SymmetricTensor(out, indices, divergence, a.log_scale + b.log_scale)
    return result.rebalanced()


# ---------- public API ----------

def contract(
    *tensors: Tensor,
    output: Sequence[Label | IndexKey] | None = None,
    optimize: str = "auto",
) -> Tensor:
    """Contract tensors over every leg key they share.

    Args:
        *tensors: One or more tensors of the same storage variant.
        output:   Explicit order of the free legs (keys or bare labels).
        optimize: opt_einsum path strategy for dense operands.

    Returns:
        The contracted tensor; rank 0 when no legs remain (see ``Tensor.item``).

    Raises:
        ValueError:      A key appears more than twice, or dense dimensions differ.
        ChargeFlowError: A shared graded leg does not pair IN with OUT over
            identical charges.
        TypeError:       Dense and symmetric operands are mixed.

    Example:
        >>> # A has legs ('i', 'j'), B has legs ('j', 'k')
        >>> contract(A, B).labels()
        ('i', 'k')
    """
    tensors = tuple(t for t in tensors if t is not None)
    if not tensors:
        raise ValueError("contract() requires at least one tensor")

    if all(isinstance(t, DenseTensor) for t in tensors):
        if len(tensors) == 1:
            return tensors[0] if output is None else tensors[0].permute(output)
        return _contract_dense(tensors, output, optimize)

    if all(isinstance(t, SymmetricTensor) for t in tensors):
        _count_keys(tensors)
        result = tensors[0]
        for t in tensors[1:]:
            result = _contract_pair_symmetric(result, t)
        return result if output is None else result.permute(output)

    types = [type(t).__name__ for t in tensors]
    raise TypeError(
        f"Cannot mix DenseTensor and SymmetricTensor in a single contraction. Got types: {types}."
    )


def add_scaled(a: Tensor, b: Tensor, alpha: complex | float = 1.0) -> Tensor:
    """Return ``a + alpha * b``.

    ``b`` is permuted to ``a``'s leg order. The two log-scales are aligned
    to the larger one before the mantissas are summed; blocks present in
    only one operand are carried over unchanged.

    Raises:
        TypeError:       Operands of different storage variants.
        ValueError:      The operands do not have the same set of legs.
        ChargeFlowError: Legs or divergences disagree.
    """
    if type(a) is not type(b):
        raise TypeError(f"Cannot add {type(a).__name__} and {type(b).__name__}")
    if set(a.keys()) != set(b.keys()):
        raise ValueError(f"Cannot add tensors with legs {a.keys()} and {b.keys()}")
    b = b.permute(a.keys())
    for ia, ib in zip(a.indices, b.indices):
        if ia != ib:
            raise ChargeFlowError(f"Leg {ia.key!r} differs between the operands: {ia!r} vs {ib!r}")
    if alpha != 1.0:
        b = b.scale(alpha)

    la, lb = float(a.log_scale), float(b.log_scale)
    top = max(la, lb)
    fa, fb = math.exp(la - top), math.exp(lb - top)

    if isinstance(a, DenseTensor):
        return DenseTensor(a.data * fa + b.data * fb, a.indices, top).rebalanced()

    if a.divergence != b.divergence:
        raise ChargeFlowError(
            f"Cannot add tensors with divergences {a.divergence} and {b.divergence}"
        )
    blocks = {k: v * fa for k, v in a.blocks.items()}
    for k, v in b.blocks.items():
        blocks[k] = blocks[k] + v * fb if k in blocks else v * fb
    return SymmetricTensor(blocks, a.indices, a.divergence, top).rebalanced()


def add(a: Tensor, b: Tensor) -> Tensor:
    """Return ``a + b`` (see :func:`add_scaled`)."""
    return add_scaled(a, b, 1.0)
