"""Tensor contraction, arithmetic and truncated factorization."""

from tndmrg.contraction.contractor import add, add_scaled, contract
from tndmrg.contraction.decompose import (
    EXACT,
    Direction,
    TruncationInfo,
    TruncationParams,
    factorize,
    truncated_svd,
    truncation_rank,
)

__all__ = [
    "contract",
    "add",
    "add_scaled",
    "Direction",
    "TruncationParams",
    "TruncationInfo",
    "EXACT",
    "factorize",
    "truncated_svd",
    "truncation_rank",
]
