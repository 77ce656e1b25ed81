"""Tests for TensorIndex and FlowDirection."""

import numpy as np
import pytest

from tndmrg.core.index import FlowDirection, IndexKind, TensorIndex, make_index
from tndmrg.core.symmetry import U1Symmetry, ZnSymmetry


class TestFlowDirection:
    def test_values(self):
        assert FlowDirection.IN == 1
        assert FlowDirection.OUT == -1

    def test_reverse(self):
        assert FlowDirection.IN.reverse() is FlowDirection.OUT
        assert FlowDirection.OUT.reverse() is FlowDirection.IN


class TestTensorIndex:
    def test_charges_coerced_to_int32(self, u1):
        idx = TensorIndex(u1, np.array([1, -1], dtype=np.int64), FlowDirection.IN, "a")
        assert idx.charges.dtype == np.int32
        assert idx.dim == 2

    def test_flow_coerced_from_int(self, u1):
        idx = TensorIndex(u1, np.array([0]), -1, "a")
        assert idx.flow is FlowDirection.OUT

    def test_charges_must_be_1d(self, u1):
        with pytest.raises(ValueError, match="1-D"):
            TensorIndex(u1, np.zeros((2, 2)), FlowDirection.IN, "a")

    def test_negative_prime_rejected(self, u1):
        with pytest.raises(ValueError, match="prime"):
            TensorIndex(u1, np.array([0]), FlowDirection.IN, "a", prime=-1)

    def test_key_includes_prime(self, u1):
        idx = TensorIndex(u1, np.array([0]), FlowDirection.IN, "a")
        assert idx.key == ("a", 0)
        assert idx.primed().key == ("a", 1)
        assert idx.primed(3).with_prime(1).key == ("a", 1)

    def test_from_sectors_roundtrip(self, u1):
        idx = TensorIndex.from_sectors(u1, [(1, 2), (-1, 3)], FlowDirection.OUT, "v")
        np.testing.assert_array_equal(idx.charges, [1, 1, -1, -1, -1])
        assert idx.sectors() == [(1, 2), (-1, 3)]
        assert idx.dim == 5

    def test_reverse_keeps_charges(self, u1, u1_charges_3):
        idx = TensorIndex(u1, u1_charges_3, FlowDirection.IN, "a")
        rev = idx.reverse()
        assert rev.flow is FlowDirection.OUT
        np.testing.assert_array_equal(rev.charges, idx.charges)
        assert idx.can_contract_with(rev)

    def test_can_contract_requires_opposite_flow(self, u1, u1_charges_3):
        a = TensorIndex(u1, u1_charges_3, FlowDirection.IN, "a")
        b = TensorIndex(u1, u1_charges_3, FlowDirection.IN, "a")
        assert not a.can_contract_with(b)

    def test_can_contract_requires_same_symmetry(self, u1, z3):
        a = TensorIndex(u1, np.array([0, 1]), FlowDirection.IN, "a")
        b = TensorIndex(z3, np.array([0, 1]), FlowDirection.OUT, "a")
        assert not a.can_contract_with(b)

    def test_equality_and_hash(self, u1):
        a = TensorIndex(u1, np.array([1, -1]), FlowDirection.IN, "p0", kind=IndexKind.SITE)
        b = TensorIndex(U1Symmetry(), np.array([1, -1]), FlowDirection.IN, "p0", kind=IndexKind.SITE)
        assert a == b
        assert hash(a) == hash(b)
        assert a != a.primed()
        assert a != a.relabel("p1")
        assert a != TensorIndex(u1, np.array([1, -1]), FlowDirection.IN, "p0")

    def test_frozen(self, u1):
        idx = TensorIndex(u1, np.array([0]), FlowDirection.IN, "a")
        with pytest.raises(AttributeError):
            idx.label = "b"

    def test_repr_shows_primes(self, u1):
        idx = TensorIndex(u1, np.array([0]), FlowDirection.IN, "a", prime=2)
        assert "'a''" in repr(idx)


class TestMakeIndex:
    def test_neutral_charges(self):
        idx = make_index(4, "x")
        np.testing.assert_array_equal(idx.charges, np.zeros(4))
        assert idx.kind == IndexKind.LINK
        assert idx.symmetry == U1Symmetry()

    def test_custom_symmetry(self):
        idx = make_index(2, "s", FlowDirection.OUT, IndexKind.SITE, symmetry=ZnSymmetry(2))
        assert idx.symmetry == ZnSymmetry(2)
        assert idx.flow is FlowDirection.OUT
