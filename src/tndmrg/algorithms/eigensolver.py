"""Lanczos eigensolver for the lowest eigenpair of a Hermitian operator.

The solver only sees a ``matvec`` over flat vectors; the local operator
takes care of flattening tensors against their sector layout. Krylov
vectors are fully re-orthogonalized, which is affordable at the sizes a
two-site update produces and keeps the tridiagonal projection reliable
without restarts.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import NamedTuple

import jax
import jax.numpy as jnp

logger = logging.getLogger(__name__)


class EigenResult(NamedTuple):
    """Outcome of an eigensolver call.

    Attributes:
        value:      Lowest Ritz value.
        vector:     Normalized Ritz vector.
        iterations: Number of matvecs performed.
        converged:  Residual fell below the tolerance or the Krylov space
                    was exhausted.
        residual:   Norm of ``A v - value v`` estimated from the recurrence.
    """

    value: float
    vector: jax.Array
    iterations: int
    converged: bool
    residual: float


def lanczos(
    matvec: Callable[[jax.Array], jax.Array],
    v0: jax.Array,
    max_iter: int = 50,
    tol: float = 1e-10,
) -> EigenResult:
    """Lowest eigenpair of a Hermitian operator.

    Args:
        matvec:   Function applying the operator to a flat vector.
        v0:       Starting vector; a zero vector is replaced by a uniform one.
        max_iter: Maximum number of Krylov steps.
        tol:      Convergence threshold on the residual norm.

    Returns:
        EigenResult; the best estimate is returned even when not converged.
    """
    dim = v0.shape[0]
    if dim == 0:
        return EigenResult(0.0, v0, 0, True, 0.0)

    norm = jnp.linalg.norm(v0)
    if float(norm) == 0.0:
        v = jnp.ones_like(v0) / jnp.sqrt(dim)
    else:
        v = v0 / norm

    basis = [v]
    alphas: list[jax.Array] = []
    betas: list[jax.Array] = []
    steps = min(max_iter, dim)

    value, coefs, residual, converged = 0.0, None, float("inf"), False
    for step in range(steps):
        w = matvec(basis[-1])
        alpha = jnp.vdot(basis[-1], w).real
        alphas.append(alpha)

        # Full re-orthogonalization against the whole Krylov basis
        stacked = jnp.stack(basis, axis=0)
        w = w - jnp.tensordot(jnp.conj(stacked) @ w, stacked, axes=1)
        w = w - jnp.tensordot(jnp.conj(stacked) @ w, stacked, axes=1)
        beta = jnp.linalg.norm(w)

        n = len(alphas)
        T = jnp.diag(jnp.stack(alphas))
        if n > 1:
            off = jnp.stack(betas)
            T = T + jnp.diag(off, k=1) + jnp.diag(off, k=-1)
        eigvals, eigvecs = jnp.linalg.eigh(T)
        value = float(eigvals[0])
        coefs = eigvecs[:, 0]
        residual = float(beta * jnp.abs(coefs[-1]))

        if residual < tol or float(beta) < tol or n == dim:
            converged = True
            break
        betas.append(beta)
        basis.append(w / beta)

    n = len(alphas)
    stacked = jnp.stack(basis[:n], axis=0)
    vector = jnp.tensordot(coefs.astype(stacked.dtype), stacked, axes=1)
    vector = vector / jnp.linalg.norm(vector)
    if not converged:
        logger.debug("Lanczos stopped after %d steps with residual %.3e", n, residual)
    return EigenResult(value, vector, n, converged, residual)
