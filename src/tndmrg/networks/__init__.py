"""Chain containers (MPS, MPO), site storage and chain-level operations."""

from tndmrg.networks.mpo import MPO, identity_mpo, product_mpo
from tndmrg.networks.mps import MPS
from tndmrg.networks.operations import (
    add_mps,
    apply_mpo,
    check_qns,
    check_structure,
    expectation,
    expectation_product,
    find_center,
    inner,
    multiply_mpo,
    overlap,
    sum_mps,
    total_qn,
)
from tndmrg.networks.store import MemorySiteStore, SiteStore

__all__ = [
    "MPS",
    "MPO",
    "identity_mpo",
    "product_mpo",
    "SiteStore",
    "MemorySiteStore",
    "inner",
    "overlap",
    "expectation",
    "expectation_product",
    "apply_mpo",
    "multiply_mpo",
    "add_mps",
    "sum_mps",
    "check_qns",
    "check_structure",
    "find_center",
    "total_qn",
]
