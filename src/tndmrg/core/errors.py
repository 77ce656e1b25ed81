"""Exception types shared across the package.

Fatal conditions subclass :class:`ValueError`. :class:`ResultIsZero` is an
``ArithmeticError`` instead; it marks a recoverable outcome that callers
catch and handle.
"""

from __future__ import annotations


class ChainStructureError(ValueError):
    """Chain lengths, links or orthogonality window do not fit together."""


class ChargeFlowError(ValueError):
    """A contraction or block violates charge conservation or flow pairing."""


class ResultIsZero(ArithmeticError):
    """An operation produced an identically zero tensor or chain."""
