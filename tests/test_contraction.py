"""Tests for key-based contraction and tensor addition."""

import math

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from hypothesis.extra import numpy as hnp

from tndmrg.contraction.contractor import _keys_to_subscripts, add, add_scaled, contract
from tndmrg.core.errors import ChargeFlowError
from tndmrg.core.index import FlowDirection, TensorIndex, make_index
from tndmrg.core.symmetry import U1Symmetry
from tndmrg.core.tensor import DenseTensor, SymmetricTensor


def _as_dense(t):
    return DenseTensor(t.todense(), t.indices)


def _dense(shape, labels, seed):
    data = jax.random.normal(jax.random.PRNGKey(seed), shape)
    return DenseTensor(data, tuple(make_index(d, l) for d, l in zip(shape, labels)))


class TestSubscripts:
    def test_shared_key_is_summed(self):
        A = _dense((2, 3), ("i", "j"), 0)
        B = _dense((3, 4), ("j", "k"), 1)
        subscripts, out = _keys_to_subscripts([A, B])
        inputs, result = subscripts.split("->")
        assert len(result) == 2
        assert inputs.split(",")[0][1] == inputs.split(",")[1][0]
        assert [idx.label for idx in out] == ["i", "k"]

    def test_primed_keys_are_distinct(self):
        a = make_index(2, "i")
        A = DenseTensor(jnp.eye(2), (a, a.primed()))
        subscripts, _ = _keys_to_subscripts([A])
        assert subscripts.split("->")[1] in ("ab", "ba")

    def test_output_must_match_free_legs(self):
        A = _dense((2, 3), ("i", "j"), 0)
        with pytest.raises(ValueError, match="free legs"):
            _keys_to_subscripts([A], output=["i"])


class TestDenseContract:
    def test_matrix_product(self):
        A = _dense((2, 3), ("i", "j"), 0)
        B = _dense((3, 4), ("j", "k"), 1)
        C = contract(A, B)
        assert C.labels() == ("i", "k")
        np.testing.assert_allclose(C.todense(), A.todense() @ B.todense(), rtol=1e-12)

    def test_output_order(self):
        A = _dense((2, 3), ("i", "j"), 0)
        B = _dense((3, 4), ("j", "k"), 1)
        C = contract(A, B, output=["k", "i"])
        np.testing.assert_allclose(C.todense(), (A.todense() @ B.todense()).T, rtol=1e-12)

    def test_three_operands(self):
        A = _dense((2, 3), ("i", "j"), 0)
        B = _dense((3, 4), ("j", "k"), 1)
        C = _dense((4, 2), ("k", "l"), 2)
        D = contract(A, B, C)
        expected = A.todense() @ B.todense() @ C.todense()
        np.testing.assert_allclose(D.todense(), expected, rtol=1e-12)

    def test_full_contraction_is_rank_zero(self):
        A = _dense((2, 3), ("i", "j"), 0)
        s = contract(A, A.conj())
        assert s.ndim == 0
        assert s.item() == pytest.approx(float(jnp.sum(A.todense() ** 2)))

    def test_log_scales_add(self):
        A = _dense((2, 3), ("i", "j"), 0).with_log_scale(300.0)
        B = _dense((3, 4), ("j", "k"), 1).with_log_scale(-300.0)
        C = contract(A, B)
        np.testing.assert_allclose(
            C.todense(), A.data @ B.data, rtol=1e-10
        )

    def test_none_operands_skipped(self):
        A = _dense((2, 3), ("i", "j"), 0)
        assert contract(None, A, None) is A

    def test_key_three_times(self):
        A = _dense((2,), ("i",), 0)
        with pytest.raises(ValueError, match="at most twice"):
            contract(A, A.conj(), A)

    def test_dimension_mismatch(self):
        A = _dense((2, 3), ("i", "j"), 0)
        B = _dense((4, 2), ("j", "k"), 1)
        with pytest.raises(ValueError, match="dimension"):
            contract(A, B)

    def test_empty(self):
        with pytest.raises(ValueError):
            contract()

    def test_mixed_storage(self, u1_sym_tensor_pair):
        A, _ = u1_sym_tensor_pair
        with pytest.raises(TypeError, match="mix"):
            contract(A, _dense((2,), ("p0",), 0))


class TestSymmetricContract:
    def test_matches_dense(self, u1_sym_tensor_pair):
        A, B = u1_sym_tensor_pair
        C = contract(A, B)
        expected = contract(_as_dense(A), _as_dense(B))
        assert C.keys() == expected.keys()
        np.testing.assert_allclose(C.todense(), expected.todense(), rtol=1e-12, atol=1e-12)

    def test_equal_flows_rejected(self, u1_sym_tensor_pair):
        A, B = u1_sym_tensor_pair
        bad = B.conj()
        with pytest.raises(ChargeFlowError, match="opposite flows"):
            contract(A, bad)

    def test_mismatched_charges_rejected(self, u1, rng):
        a = TensorIndex(u1, np.array([0, 1]), FlowDirection.OUT, "x")
        b = TensorIndex(u1, np.array([1, 0]), FlowDirection.IN, "x")
        A = SymmetricTensor.random_normal((TensorIndex(u1, np.array([0, 1]), FlowDirection.IN, "y"), a), rng)
        B = SymmetricTensor.random_normal((b, TensorIndex(u1, np.array([0, 1]), FlowDirection.OUT, "z")), rng)
        with pytest.raises(ChargeFlowError, match="different charges"):
            contract(A, B)

    def test_inner_product(self, u1_sym_tensor_pair):
        A, _ = u1_sym_tensor_pair
        value = contract(A, A.conj()).item()
        assert value == pytest.approx(float(A.norm()) ** 2)

    @given(
        st.data(),
        st.integers(0, 2**16),
        st.integers(1, 2),
        st.integers(1, 2),
        st.integers(1, 2),
    )
    @settings(max_examples=40, deadline=None)
    def test_divergences_fuse(self, data, seed, n_free_a, n_free_b, n_shared):
        sym = U1Symmetry()
        charges = hnp.arrays(np.int32, st.integers(1, 3), elements=st.integers(-1, 1))
        flows = st.sampled_from([FlowDirection.IN, FlowDirection.OUT])

        def legs(prefix, n):
            return [
                TensorIndex(sym, data.draw(charges), data.draw(flows), f"{prefix}{i}")
                for i in range(n)
            ]

        shared = legs("s", n_shared)
        a_legs = legs("a", n_free_a) + shared
        b_legs = data.draw(st.permutations([s.reverse() for s in shared] + legs("b", n_free_b)))
        div_a = data.draw(st.integers(-2, 2))
        div_b = data.draw(st.integers(-2, 2))
        k1, k2 = jax.random.split(jax.random.PRNGKey(seed))
        A = SymmetricTensor.random_normal(a_legs, k1, divergence=div_a)
        B = SymmetricTensor.random_normal(b_legs, k2, divergence=div_b)

        C = contract(A, B)
        assert C.divergence == sym.fuse_scalar(div_a, div_b)
        for block_key in C.blocks:
            assert sym.net_charge(block_key, [idx.flow for idx in C.indices]) == C.divergence
        expected = contract(_as_dense(A), _as_dense(B))
        assert C.keys() == expected.keys()
        np.testing.assert_allclose(C.todense(), expected.todense(), atol=1e-12)


class TestAdd:
    def test_dense_add_permutes(self):
        A = _dense((2, 3), ("i", "j"), 0)
        B = _dense((3, 2), ("j", "i"), 1)
        C = add_scaled(A, B, -0.5)
        np.testing.assert_allclose(C.todense(), A.todense() - 0.5 * B.todense().T, rtol=1e-12)

    def test_add_with_large_log_scales(self):
        A = _dense((2, 3), ("i", "j"), 0).with_log_scale(800.0)
        C = add(A, A)
        assert C.log_norm() == pytest.approx(A.log_norm() + math.log(2.0))

    def test_symmetric_add(self, u1_sym_tensor_pair, rng2):
        A, _ = u1_sym_tensor_pair
        B = SymmetricTensor.random_normal(A.indices, rng2)
        C = add(A, B)
        np.testing.assert_allclose(C.todense(), A.todense() + B.todense(), rtol=1e-12)

    def test_divergence_mismatch(self, u1, rng):
        legs = (
            TensorIndex(u1, np.array([1, -1]), FlowDirection.IN, "a"),
            TensorIndex(u1, np.array([-1, 0, 1]), FlowDirection.OUT, "b"),
        )
        A = SymmetricTensor.random_normal(legs, rng, divergence=0)
        B = SymmetricTensor.random_normal(legs, rng, divergence=1)
        with pytest.raises(ChargeFlowError, match="divergences"):
            add(A, B)

    def test_leg_sets_must_match(self):
        with pytest.raises(ValueError, match="legs"):
            add(_dense((2,), ("i",), 0), _dense((2,), ("j",), 1))

    def test_storage_must_match(self, u1_sym_tensor_pair):
        A, _ = u1_sym_tensor_pair
        with pytest.raises(TypeError):
            add(A, _as_dense(A))
