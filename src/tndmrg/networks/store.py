"""Storage boundary for chain site tensors.

A chain never holds its site tensors directly; every read and write goes
through a :class:`SiteStore` keyed by site number. Only the in-memory store
ships with the package. A disk-backed store can implement the same
contract and page out the tensors the chain marks as evictable.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable

from tndmrg.core.tensor import Tensor


class SiteStore(ABC):
    """Key-value store from site number to site tensor.

    A chain calls :meth:`evict` on every site that leaves its orthogonality
    window. Eviction only releases the resident copy: a later :meth:`fetch`
    of the site must still return the tensor last stored for it.
    """

    @abstractmethod
    def fetch(self, site: int) -> Tensor:
        """Return the tensor of ``site``; raises KeyError if absent."""

    @abstractmethod
    def store(self, site: int, tensor: Tensor) -> None:
        """Insert or replace the tensor of ``site``."""

    @abstractmethod
    def evict(self, site: int) -> None:
        """Hint that ``site`` will not be read soon; its tensor may be paged out."""

    @abstractmethod
    def __contains__(self, site: object) -> bool: ...

    def copy(self, sites: Iterable[int]) -> SiteStore:
        """Independent store holding the tensors of ``sites``.

        The default reads every site through :meth:`fetch` into a
        :class:`MemorySiteStore`.
        """
        new = MemorySiteStore()
        for site in sites:
            new.store(site, self.fetch(site))
        return new


class MemorySiteStore(SiteStore):
    """Keeps every site tensor in a dict."""

    def __init__(self) -> None:
        self._tensors: dict[int, Tensor] = {}

    def fetch(self, site: int) -> Tensor:
        try:
            return self._tensors[site]
        except KeyError:
            raise KeyError(f"no tensor stored for site {site}") from None

    def store(self, site: int, tensor: Tensor) -> None:
        self._tensors[site] = tensor

    def evict(self, site: int) -> None:
        """Nothing to release; every tensor stays in memory."""

    def __contains__(self, site: object) -> bool:
        return site in self._tensors

    def copy(self, sites: Iterable[int]) -> MemorySiteStore:
        keep = set(sites)
        new = type(self)()
        new._tensors = {k: v for k, v in self._tensors.items() if k in keep}
        return new
