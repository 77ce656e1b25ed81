"""Core tensor, index and symmetry classes."""

from tndmrg.core.errors import ChainStructureError, ChargeFlowError, ResultIsZero
from tndmrg.core.index import FlowDirection, IndexKind, Label, TensorIndex, make_index
from tndmrg.core.symmetry import BaseSymmetry, U1Symmetry, ZnSymmetry
from tndmrg.core.tensor import BlockKey, DenseTensor, SymmetricTensor, Tensor

__all__ = [
    "BaseSymmetry",
    "U1Symmetry",
    "ZnSymmetry",
    "FlowDirection",
    "IndexKind",
    "Label",
    "TensorIndex",
    "make_index",
    "Tensor",
    "DenseTensor",
    "SymmetricTensor",
    "BlockKey",
    "ChainStructureError",
    "ChargeFlowError",
    "ResultIsZero",
]
