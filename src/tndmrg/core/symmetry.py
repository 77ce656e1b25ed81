"""Abelian symmetry groups for charge-conserving tensors.

Charges are plain integers. A symmetry knows how to combine them (``fuse``),
how to invert them (``dual``) and which charge is neutral (``identity``).
Array versions operate element-wise on numpy int arrays so that whole
index charge vectors can be processed at once; the scalar helpers are used
by the block bookkeeping in :mod:`tndmrg.core.tensor`.

No JAX dependency: charge arithmetic always happens on the host.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable

import numpy as np


class BaseSymmetry(ABC):
    """Abstract Abelian symmetry group.

    Subclasses implement the array operations; the scalar helpers
    (``fuse_scalar``, ``dual_scalar``, ``signed``, ``net_charge``) are
    derived from them. Concrete groups must be hashable and comparable so
    that indices built from separately constructed instances still match.
    """

    @abstractmethod
    def fuse(self, charges_a: np.ndarray, charges_b: np.ndarray) -> np.ndarray:
        """Combine two charge arrays element-wise.

        Args:
            charges_a: Integer charge array.
            charges_b: Integer charge array broadcastable against ``charges_a``.

        Returns:
            The fused charges.
        """

    @abstractmethod
    def dual(self, charges: np.ndarray) -> np.ndarray:
        """Return the group inverse of each charge."""

    @abstractmethod
    def identity(self) -> int:
        """Return the neutral charge."""

    # --- scalar helpers ---

    def fuse_scalar(self, a: int, b: int) -> int:
        return int(self.fuse(np.array([a], dtype=np.int64), np.array([b], dtype=np.int64))[0])

    def dual_scalar(self, q: int) -> int:
        return int(self.dual(np.array([q], dtype=np.int64))[0])

    def signed(self, q: int, flow: int) -> int:
        """Contribution of charge ``q`` on a leg with the given flow.

        IN legs contribute ``q``, OUT legs contribute its inverse.
        """
        q = int(q)
        return self.fuse_scalar(self.identity(), q) if int(flow) > 0 else self.dual_scalar(q)

    def net_charge(self, charges: Iterable[int], flows: Iterable[int]) -> int:
        """Fused signed charge of one block key.

        Args:
            charges: One charge per leg.
            flows:   One flow (+1/-1) per leg.

        Returns:
            The block's divergence.
        """
        total = self.identity()
        for q, f in zip(charges, flows):
            total = self.fuse_scalar(total, self.signed(q, f))
        return total

    def fuse_many(self, charge_list: list[np.ndarray]) -> np.ndarray:
        """Fuse a non-empty list of charge arrays left to right."""
        if not charge_list:
            raise ValueError("charge_list must be non-empty")
        result = charge_list[0]
        for c in charge_list[1:]:
            result = self.fuse(result, c)
        return result


class U1Symmetry(BaseSymmetry):
    """U(1): unbounded integer charges, fused by addition.

    Typical uses are particle number or twice the total Sz.

    Example:
        >>> U1Symmetry().fuse(np.array([0, 1, -1]), np.array([1, -1, 0]))
        array([1, 0, -1])
    """

    def fuse(self, charges_a: np.ndarray, charges_b: np.ndarray) -> np.ndarray:
        return charges_a + charges_b

    def dual(self, charges: np.ndarray) -> np.ndarray:
        return -charges

    def identity(self) -> int:
        return 0

    def __eq__(self, other: object) -> bool:
        return isinstance(other, U1Symmetry)

    def __hash__(self) -> int:
        return hash("U1Symmetry")

    def __repr__(self) -> str:
        return "U1Symmetry()"


class ZnSymmetry(BaseSymmetry):
    """Cyclic group Z_n: charges modulo n.

    Args:
        n: Group order, at least 2 (Z_2 is parity).
    """

    def __init__(self, n: int) -> None:
        if n < 2:
            raise ValueError(f"n must be >= 2, got {n}")
        self.n = n

    def fuse(self, charges_a: np.ndarray, charges_b: np.ndarray) -> np.ndarray:
        return (charges_a + charges_b) % self.n

    def dual(self, charges: np.ndarray) -> np.ndarray:
        return (-charges) % self.n

    def identity(self) -> int:
        return 0

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ZnSymmetry) and self.n == other.n

    def __hash__(self) -> int:
        return hash(("ZnSymmetry", self.n))

    def __repr__(self) -> str:
        return f"ZnSymmetry({self.n})"
