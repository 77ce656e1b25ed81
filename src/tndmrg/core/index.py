"""Tensor legs: labels, prime levels, charges and flow.

Every leg of a tensor is described by a :class:`TensorIndex`. Contraction
matches legs by their *key*, the pair ``(label, prime)``: two legs with the
same label but different prime levels are distinct, which is how a state
and its conjugate coexist in one contraction.

A leg is charge-graded: ``charges[i]`` is the conserved charge of basis
state ``i``. Dense tensors simply use legs whose charges are all zero.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum, IntEnum

import numpy as np

from tndmrg.core.symmetry import BaseSymmetry, U1Symmetry

Label = str | int

# (label, prime level): the identity used for matching legs
IndexKey = tuple[Label, int]


class FlowDirection(IntEnum):
    """Direction of charge flow through a leg.

    IN (+1) legs add their charge to a block's divergence, OUT (-1) legs
    subtract it. A contracted pair of legs must have opposite flows.
    """

    IN = 1
    OUT = -1

    def reverse(self) -> FlowDirection:
        return FlowDirection(-int(self))


class IndexKind(Enum):
    """Role of a leg inside a chain container."""

    SITE = "site"
    LINK = "link"
    AUX = "aux"


@dataclass(frozen=True, slots=True)
class TensorIndex:
    """Metadata for one tensor leg.

    Attributes:
        symmetry: Symmetry group of the charges.
        charges:  1-D int32 array; ``charges[i]`` is the charge of state ``i``.
        flow:     IN or OUT.
        label:    Tag shared by the two ends of a bond.
        prime:    Disambiguation level; part of the matching key.
        kind:     SITE for physical legs, LINK for virtual bonds, AUX otherwise.

    Example:
        >>> idx = TensorIndex(U1Symmetry(), np.array([1, -1]), FlowDirection.IN, "p0",
        ...                   kind=IndexKind.SITE)
        >>> idx.primed().key
        ('p0', 1)
    """

    symmetry: BaseSymmetry
    charges: np.ndarray
    flow: FlowDirection
    label: Label = ""
    prime: int = 0
    kind: IndexKind = IndexKind.LINK

    def __post_init__(self) -> None:
        charges = np.asarray(self.charges)
        if charges.ndim != 1:
            raise ValueError(f"charges must be 1-D, got shape {charges.shape}")
        if charges.dtype != np.int32:
            charges = charges.astype(np.int32)
        object.__setattr__(self, "charges", charges)
        if not isinstance(self.flow, FlowDirection):
            object.__setattr__(self, "flow", FlowDirection(int(self.flow)))
        if self.prime < 0:
            raise ValueError(f"prime level must be non-negative, got {self.prime}")

    @classmethod
    def from_sectors(
        cls,
        symmetry: BaseSymmetry,
        sectors: Sequence[tuple[int, int]],
        flow: FlowDirection,
        label: Label = "",
        prime: int = 0,
        kind: IndexKind = IndexKind.LINK,
    ) -> TensorIndex:
        """Build a leg from its graded description.

        Args:
            sectors: ``(charge, sub_dim)`` pairs, in order.

        Returns:
            An index whose charges list each charge ``sub_dim`` times.
        """
        parts = [np.full(d, q, dtype=np.int32) for q, d in sectors]
        charges = np.concatenate(parts) if parts else np.zeros(0, dtype=np.int32)
        return cls(symmetry, charges, flow, label, prime, kind)

    @property
    def dim(self) -> int:
        return len(self.charges)

    @property
    def key(self) -> IndexKey:
        return (self.label, self.prime)

    def sectors(self) -> list[tuple[int, int]]:
        """Graded view: ``(charge, sub_dim)`` per distinct charge, by first appearance."""
        counts: dict[int, int] = {}
        for q in self.charges.tolist():
            counts[q] = counts.get(q, 0) + 1
        return list(counts.items())

    def _replace(self, **changes) -> TensorIndex:
        fields = {
            "symmetry": self.symmetry,
            "charges": self.charges,
            "flow": self.flow,
            "label": self.label,
            "prime": self.prime,
            "kind": self.kind,
        }
        fields.update(changes)
        return TensorIndex(**fields)

    def reverse(self) -> TensorIndex:
        """Flip the flow and keep the charges (the conjugate leg)."""
        return self._replace(flow=self.flow.reverse())

    def relabel(self, new_label: Label) -> TensorIndex:
        return self._replace(label=new_label)

    def primed(self, inc: int = 1) -> TensorIndex:
        return self._replace(prime=self.prime + inc)

    def with_prime(self, level: int) -> TensorIndex:
        return self._replace(prime=level)

    def can_contract_with(self, other: TensorIndex) -> bool:
        """True if the two legs form a valid contracted pair.

        The pair must share a symmetry, have opposite flows and carry the
        same charge for every basis state.
        """
        return (
            self.symmetry == other.symmetry
            and self.flow != other.flow
            and np.array_equal(self.charges, other.charges)
        )

    def __hash__(self) -> int:
        return hash(
            (self.symmetry, self.charges.tobytes(), int(self.flow), self.label, self.prime, self.kind)
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TensorIndex):
            return NotImplemented
        return (
            self.symmetry == other.symmetry
            and np.array_equal(self.charges, other.charges)
            and self.flow == other.flow
            and self.label == other.label
            and self.prime == other.prime
            and self.kind == other.kind
        )

    def __repr__(self) -> str:
        ticks = "'" * self.prime if self.prime <= 3 else f"^{self.prime}"
        return (
            f"TensorIndex({self.label!r}{ticks}, dim={self.dim}, "
            f"flow={self.flow.name}, kind={self.kind.value}, sym={self.symmetry!r})"
        )


def make_index(
    dim: int,
    label: Label,
    flow: FlowDirection = FlowDirection.IN,
    kind: IndexKind = IndexKind.LINK,
    prime: int = 0,
    symmetry: BaseSymmetry | None = None,
) -> TensorIndex:
    """Ungraded leg: every basis state carries the neutral charge."""
    sym = symmetry if symmetry is not None else U1Symmetry()
    charges = np.full(dim, sym.identity(), dtype=np.int32)
    return TensorIndex(sym, charges, flow, label, prime, kind)
