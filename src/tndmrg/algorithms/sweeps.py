"""Sweep schedule and the bond visiting order of a two-site sweep.

A schedule is a table of rows, one per sweep, each giving the truncation
policy and the eigensolver budget. Sweeps past the end of the table reuse
the last row::

    sweeps = Sweeps.from_table(
        [
            (1e-8, 1, 10, 2),
            (1e-10, 1, 20, 2),
            (1e-12, 1, 40, 4),
        ],
        nsweep=6,
    )
    sweeps.row(5).max_dim    # 40
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from tndmrg.contraction.decompose import Direction, TruncationParams


@dataclass(frozen=True)
class SweepRow:
    """Settings of one sweep.

    Attributes:
        cutoff:  Relative discarded-weight cutoff.
        min_dim: Minimum number of states kept on a bond.
        max_dim: Maximum number of states kept on a bond.
        niter:   Krylov steps per bond update.
    """

    cutoff: float = 1e-12
    min_dim: int = 1
    max_dim: int = 100
    niter: int = 2

    def __post_init__(self) -> None:
        if self.cutoff < 0:
            raise ValueError(f"cutoff must be non-negative, got {self.cutoff}")
        if self.min_dim < 0:
            raise ValueError(f"min_dim must be non-negative, got {self.min_dim}")
        if self.max_dim < 1:
            raise ValueError(f"max_dim must be at least 1, got {self.max_dim}")
        if self.niter < 1:
            raise ValueError(f"niter must be at least 1, got {self.niter}")

    def truncation(self) -> TruncationParams:
        return TruncationParams(cutoff=self.cutoff, min_dim=self.min_dim, max_dim=self.max_dim)


@dataclass(frozen=True)
class Sweeps:
    """Immutable sweep schedule.

    Attributes:
        rows:   Per-sweep settings; the last row repeats past the end.
        nsweep: Total number of sweeps.
    """

    rows: tuple[SweepRow, ...]
    nsweep: int

    def __post_init__(self) -> None:
        if not self.rows:
            raise ValueError("a sweep schedule needs at least one row")
        if self.nsweep < 1:
            raise ValueError(f"nsweep must be at least 1, got {self.nsweep}")
        object.__setattr__(self, "rows", tuple(self.rows))

    @classmethod
    def from_table(
        cls,
        table: Sequence[tuple[float, int, int, int]],
        nsweep: int | None = None,
    ) -> Sweeps:
        """Schedule from ``(cutoff, min_dim, max_dim, niter)`` rows.

        ``nsweep`` defaults to the number of rows.
        """
        rows = tuple(SweepRow(float(c), int(lo), int(hi), int(it)) for c, lo, hi, it in table)
        return cls(rows, len(rows) if nsweep is None else nsweep)

    @classmethod
    def uniform(
        cls,
        nsweep: int,
        max_dim: int,
        cutoff: float = 1e-12,
        min_dim: int = 1,
        niter: int = 2,
    ) -> Sweeps:
        """Same settings on every sweep."""
        return cls((SweepRow(cutoff, min_dim, max_dim, niter),), nsweep)

    @classmethod
    def ramp(
        cls,
        nsweep: int,
        start_dim: int,
        max_dim: int,
        cutoff: float = 1e-12,
        min_dim: int = 1,
        niter: int = 2,
    ) -> Sweeps:
        """Bond dimension growing linearly from ``start_dim`` to ``max_dim``."""
        if nsweep < 1:
            raise ValueError(f"nsweep must be at least 1, got {nsweep}")
        if nsweep == 1:
            dims = [max_dim]
        else:
            step = (max_dim - start_dim) / (nsweep - 1)
            dims = [int(round(start_dim + k * step)) for k in range(nsweep)]
        rows = tuple(SweepRow(cutoff, min_dim, max(d, 1), niter) for d in dims)
        return cls(rows, nsweep)

    def row(self, sw: int) -> SweepRow:
        """Settings of sweep ``sw`` (1-based)."""
        if sw < 1:
            raise ValueError(f"sweeps are numbered from 1, got {sw}")
        return self.rows[min(sw, len(self.rows)) - 1]

    def __len__(self) -> int:
        return self.nsweep

    def __iter__(self) -> Iterator[SweepRow]:
        for sw in range(1, self.nsweep + 1):
            yield self.row(sw)


def sweep_next(b: int, direction: Direction, n: int) -> tuple[int, Direction, bool]:
    """Bond and direction after visiting ``b``.

    Right-moving half-sweeps end on bond ``n-2``, which is then revisited
    moving left; the sweep is done after bond 0 going left.

    Returns:
        ``(next_bond, next_direction, done)``.
    """
    if direction is Direction.FROM_LEFT:
        if b + 1 >= n - 1:
            return n - 2, Direction.FROM_RIGHT, False
        return b + 1, Direction.FROM_LEFT, False
    if b == 0:
        return 0, direction, True
    return b - 1, Direction.FROM_RIGHT, False


def sweep_steps(n: int) -> Iterator[tuple[int, Direction, int]]:
    """Yield ``(bond, direction, half_sweep)`` for one full sweep of ``n`` sites."""
    if n < 2:
        return
    b, direction = 0, Direction.FROM_LEFT
    while True:
        yield b, direction, 1 if direction is Direction.FROM_LEFT else 2
        b, direction, done = sweep_next(b, direction, n)
        if done:
            return
