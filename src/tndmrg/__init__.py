"""tndmrg: two-site DMRG on JAX with block-sparse quantum-number tensors.

Legs are addressed by ``(label, prime)`` keys: two legs with the same key
on different tensors are contracted by :func:`contract`. Charge-conserving
tensors store only the sectors allowed by their divergence.

.. note::
    Importing ``tndmrg`` enables JAX 64-bit mode (``jax_enable_x64``).
    All tensors and algorithms default to ``float64``.

Quick start::

    import numpy as np
    from tndmrg import (
        U1Symmetry, TensorIndex, FlowDirection, IndexKind,
        MPS, Sweeps, dmrg,
    )

    u1 = U1Symmetry()
    sites = [
        TensorIndex(u1, np.array([1, -1]), FlowDirection.IN, f"p{i}", kind=IndexKind.SITE)
        for i in range(8)
    ]
    psi = MPS.product_state(sites, [0, 1] * 4)
    result = dmrg(psi, H, Sweeps.uniform(nsweep=5, max_dim=32))
    print(result.energy)
"""

import jax

jax.config.update("jax_enable_x64", True)

from tndmrg.algorithms.dmrg import (
    BondReport,
    DMRGConfig,
    DMRGResult,
    SweepReport,
    dmrg,
)
from tndmrg.algorithms.environment import EnvironmentCache
from tndmrg.algorithms.local_op import LocalOperator, LocalOperatorOrth
from tndmrg.algorithms.sweeps import SweepRow, Sweeps
from tndmrg.contraction.contractor import add, add_scaled, contract
from tndmrg.contraction.decompose import (
    Direction,
    TruncationInfo,
    TruncationParams,
    factorize,
    truncated_svd,
)
from tndmrg.core.errors import ChainStructureError, ChargeFlowError, ResultIsZero
from tndmrg.core.index import FlowDirection, IndexKind, TensorIndex, make_index
from tndmrg.core.symmetry import BaseSymmetry, U1Symmetry, ZnSymmetry
from tndmrg.core.tensor import DenseTensor, SymmetricTensor, Tensor
from tndmrg.networks.mpo import MPO, identity_mpo, product_mpo
from tndmrg.networks.mps import MPS
from tndmrg.networks.operations import (
    add_mps,
    apply_mpo,
    expectation,
    expectation_product,
    inner,
    multiply_mpo,
    overlap,
    sum_mps,
)
from tndmrg.networks.store import MemorySiteStore, SiteStore

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Core
    "BaseSymmetry",
    "U1Symmetry",
    "ZnSymmetry",
    "FlowDirection",
    "IndexKind",
    "TensorIndex",
    "make_index",
    "Tensor",
    "DenseTensor",
    "SymmetricTensor",
    "ChainStructureError",
    "ChargeFlowError",
    "ResultIsZero",
    # Contraction
    "contract",
    "add",
    "add_scaled",
    "Direction",
    "TruncationParams",
    "TruncationInfo",
    "factorize",
    "truncated_svd",
    # Networks
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
    # Algorithms
    "dmrg",
    "DMRGConfig",
    "DMRGResult",
    "BondReport",
    "SweepReport",
    "Sweeps",
    "SweepRow",
    "EnvironmentCache",
    "LocalOperator",
    "LocalOperatorOrth",
]
