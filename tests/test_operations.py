"""Tests for chain measurements, MPO algebra and diagnostics."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from conftest import I2, SM, SP, SZ, chain_vector, heisenberg_matrix, heisenberg_mpo, spin_sites
from tndmrg.core.errors import ChainStructureError, ChargeFlowError, ResultIsZero
from tndmrg.core.index import FlowDirection, TensorIndex
from tndmrg.core.tensor import DenseTensor, SymmetricTensor
from tndmrg.networks.mpo import identity_mpo, product_mpo
from tndmrg.networks.mps import MPS
from tndmrg.networks.operations import (
    _fuse_legs,
    _fused_index,
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
    real_part,
    sum_mps,
    total_qn,
)


def _random(n=4, bond_dim=3, seed=0, dtype=jnp.float64):
    return MPS.random(spin_sites(n, symmetric=False), bond_dim, jax.random.PRNGKey(seed), dtype)


class TestInner:
    def test_product_states(self):
        sites = spin_sites(4)
        a = MPS.product_state(sites, [0, 1, 0, 1])
        b = MPS.product_state(sites, [1, 0, 0, 1])
        assert inner(a, a) == pytest.approx(1.0)
        assert inner(a, b) == pytest.approx(0.0)

    def test_matches_vectors(self):
        a, b = _random(seed=1), _random(seed=2)
        expected = np.vdot(chain_vector(a), chain_vector(b))
        assert inner(a, b) == pytest.approx(expected, rel=1e-10)

    def test_bra_is_conjugated(self):
        a = _random(seed=1, dtype=jnp.complex128)
        b = _random(seed=2, dtype=jnp.complex128)
        expected = np.vdot(chain_vector(a), chain_vector(b))
        assert inner(a, b) == pytest.approx(expected, rel=1e-10)
        assert inner(b, a) == pytest.approx(np.conj(expected), rel=1e-10)

    def test_overlap_warns_on_imaginary_part(self):
        a = _random(seed=1)
        b = a.copy().position(0)
        b.set_site(0, b.site(0).scale(1j))
        with pytest.warns(RuntimeWarning, match="imaginary"):
            overlap(a, b)

    def test_length_mismatch(self):
        with pytest.raises(ChainStructureError):
            inner(_random(3), _random(4))

    def test_real_part(self):
        assert real_part(2.0 + 1e-14j) == 2.0
        with pytest.warns(RuntimeWarning):
            assert real_part(1.0 + 0.5j) == 1.0


class TestExpectation:
    def test_identity_on_random_state(self):
        psi = _random(5, 3).position(0).normalize()
        assert expectation(psi, identity_mpo(spin_sites(5, False))) == pytest.approx(1.0)

    def test_matches_exact_matrix(self):
        psi = _random(5, 4, seed=3)
        H = heisenberg_mpo(spin_sites(5, False), Jz=1.2, Jxy=0.8, hz=-0.2)
        v = chain_vector(psi)
        expected = v @ heisenberg_matrix(5, Jz=1.2, Jxy=0.8, hz=-0.2) @ v
        assert expectation(psi, H) == pytest.approx(expected, rel=1e-10)

    def test_scalar_boundaries(self):
        psi = _random(4, 2).position(0).normalize()
        H = identity_mpo(spin_sites(4, False))
        left = DenseTensor(jnp.array(2.0), ())
        right = DenseTensor(jnp.array(1.5), ())
        assert expectation(psi, H, left_boundary=left, right_boundary=right) == pytest.approx(3.0)

    def test_expectation_product(self):
        psi = _random(4, 3, seed=5)
        sites = spin_sites(4, False)
        H = heisenberg_mpo(sites)
        H_ed = heisenberg_matrix(4)
        v = chain_vector(psi)
        assert expectation_product(psi, H, H) == pytest.approx(v @ H_ed @ H_ed @ v, rel=1e-10)

    def test_expectation_product_ordering(self):
        # <up up| S+ S- |up up> = 1 while <up up| S- S+ |up up> = 0
        sites = spin_sites(2, symmetric=False)
        psi = MPS.product_state(sites, [0, 0])
        P = product_mpo(sites, [SP, I2])
        M = product_mpo(sites, [SM, I2])
        assert expectation_product(psi, P, M) == pytest.approx(1.0)
        assert expectation_product(psi, M, P) == pytest.approx(0.0)


class TestApplyMPO:
    def test_dense_matches_matrix_vector(self):
        psi = _random(4, 2, seed=7)
        H = heisenberg_mpo(spin_sites(4, False))
        result = apply_mpo(H, psi)
        expected = heisenberg_matrix(4) @ chain_vector(psi)
        np.testing.assert_allclose(chain_vector(result), expected, atol=1e-10)
        assert result.center == 0

    def test_symmetric_product_state(self):
        sites = spin_sites(4)
        psi = MPS.product_state(sites, [0, 1, 0, 1])
        result = apply_mpo(heisenberg_mpo(sites), psi)
        expected = heisenberg_matrix(4)[:, 0b0101]
        np.testing.assert_allclose(chain_vector(result), expected, atol=1e-12)
        assert total_qn(result) == 0
        check_qns(result)

    def test_truncation_params(self):
        from tndmrg.contraction.decompose import TruncationParams

        psi = _random(6, 4, seed=8)
        result = apply_mpo(heisenberg_mpo(spin_sites(6, False)), psi, TruncationParams(max_dim=3))
        assert result.max_bond_dim() <= 3


class TestMultiplyMPO:
    def test_square_matches_matrix(self):
        sites = spin_sites(3, False)
        H = heisenberg_mpo(sites, hz=0.4)
        H2 = multiply_mpo(H, H)
        psi = _random(3, 2, seed=9)
        v = chain_vector(psi)
        H_ed = heisenberg_matrix(3, hz=0.4)
        assert expectation(psi, H2) == pytest.approx(v @ H_ed @ H_ed @ v, rel=1e-10)

    def test_order(self):
        sites = spin_sites(2, symmetric=False)
        P = product_mpo(sites, [SP, I2])
        M = product_mpo(sites, [SM, I2])
        up_up = MPS.product_state(sites, [0, 0])
        # S+ S- keeps |up up>, S- S+ annihilates it
        assert expectation(up_up, multiply_mpo(P, M)) == pytest.approx(1.0)
        assert expectation(up_up, multiply_mpo(M, P)) == pytest.approx(0.0)

    def test_zero_product(self):
        sites = spin_sites(3, symmetric=False)
        P = product_mpo(sites, [SP, I2, I2])
        with pytest.raises(ResultIsZero):
            multiply_mpo(P, P)

    def test_symmetric_product(self):
        sites = spin_sites(3)
        Z = product_mpo(sites, [SZ, SZ, I2])
        ZZ = multiply_mpo(Z, Z)
        psi = MPS.product_state(sites, [0, 1, 0])
        assert expectation(psi, ZZ) == pytest.approx(1.0 / 16.0)


class TestSums:
    def test_dense_sum(self):
        a, b = _random(4, 2, seed=10), _random(4, 3, seed=11)
        result = add_mps(a, b)
        np.testing.assert_allclose(
            chain_vector(result), chain_vector(a) + chain_vector(b), atol=1e-12
        )
        assert result.center == 0

    def test_symmetric_sum(self):
        sites = spin_sites(4)
        a = MPS.product_state(sites, [0, 1, 0, 1])
        b = MPS.product_state(sites, [1, 0, 1, 0])
        result = add_mps(a, b)
        expected = np.zeros(16)
        expected[0b0101] = expected[0b1010] = 1.0
        np.testing.assert_allclose(chain_vector(result), expected, atol=1e-12)
        assert result.bond_dims() == [2, 2, 2]
        check_qns(result)

    def test_total_charge_must_match(self):
        sites = spin_sites(4)
        a = MPS.product_state(sites, [0, 0, 0, 0])
        b = MPS.product_state(sites, [0, 1, 0, 1])
        with pytest.raises(ChargeFlowError):
            add_mps(a, b)

    def test_zero_term_is_skipped(self):
        sites = spin_sites(3)
        zero = MPS.product_state(sites, [0, 1, 0])
        zero.set_site(2, zero.site(2).scale(0.0))
        b = MPS.product_state(sites, [1, 0, 0])
        np.testing.assert_allclose(chain_vector(add_mps(zero, b)), chain_vector(b))
        np.testing.assert_allclose(chain_vector(add_mps(b, zero)), chain_vector(b))

    def test_single_site(self):
        sites = spin_sites(1, symmetric=False)
        a = MPS.product_state(sites, [0])
        b = MPS.product_state(sites, [1])
        np.testing.assert_allclose(chain_vector(add_mps(a, b)), [1.0, 1.0])

    def test_sum_of_several(self):
        terms = [_random(4, 2, seed=s) for s in range(20, 25)]
        result = sum_mps(terms)
        expected = sum(chain_vector(t) for t in terms)
        np.testing.assert_allclose(chain_vector(result), expected, atol=1e-12)

    def test_sum_of_one_is_a_copy(self):
        a = _random(3, 2, seed=30)
        result = sum_mps([a])
        assert result is not a
        np.testing.assert_allclose(chain_vector(result), chain_vector(a))

    def test_sum_of_nothing(self):
        with pytest.raises(ValueError):
            sum_mps([])


def _forbid_densify(monkeypatch):
    def refuse(*args, **kwargs):
        raise AssertionError("a block-sparse tensor went through a dense array")

    monkeypatch.setattr(SymmetricTensor, "todense", refuse)
    monkeypatch.setattr(SymmetricTensor, "from_dense", refuse)


class TestBlockSparseAlgebra:
    def test_fused_legs_match_dense_reshape(self, u1):
        a = TensorIndex(u1, np.array([1, -1, 0]), FlowDirection.OUT, "a")
        b = TensorIndex(u1, np.array([0, 1]), FlowDirection.OUT, "b")
        c = TensorIndex(u1, np.array([-1, 0, 1, 0]), FlowDirection.IN, "c")
        t = SymmetricTensor.random_normal((a, c, b), jax.random.PRNGKey(3), divergence=1)
        fused = _fused_index([a, b], "ab", FlowDirection.OUT)
        out = _fuse_legs(t.scale(1e-3), [([a.key, b.key], fused)])
        assert out.keys() == (c.key, fused.key)
        assert out.divergence == 1
        expected = 1e-3 * jnp.reshape(t.permute([c.key, a.key, b.key]).todense(), (4, 6))
        np.testing.assert_allclose(out.todense(), expected, atol=1e-12)

    def test_apply_mpo(self, monkeypatch):
        sites = spin_sites(4)
        psi = MPS.product_state(sites, [0, 1, 0, 1])
        H = heisenberg_mpo(sites)
        _forbid_densify(monkeypatch)
        result = apply_mpo(H, psi)
        monkeypatch.undo()
        assert all(isinstance(t, SymmetricTensor) for t in result.tensors())
        np.testing.assert_allclose(
            chain_vector(result), heisenberg_matrix(4)[:, 0b0101], atol=1e-12
        )

    def test_multiply_mpo(self, monkeypatch):
        sites = spin_sites(3)
        H = heisenberg_mpo(sites, hz=0.3)
        _forbid_densify(monkeypatch)
        H2 = multiply_mpo(H, H)
        monkeypatch.undo()
        assert all(isinstance(t, SymmetricTensor) for t in H2.tensors())
        psi = MPS.product_state(sites, [0, 1, 1])
        v = chain_vector(psi)
        H_ed = heisenberg_matrix(3, hz=0.3)
        assert expectation(psi, H2) == pytest.approx(v @ H_ed @ H_ed @ v, rel=1e-10)

    def test_add_mps_orders_states_within_each_charge(self, monkeypatch):
        sites = spin_sites(4)
        a = apply_mpo(heisenberg_mpo(sites), MPS.product_state(sites, [0, 1, 0, 1]))
        b = MPS.product_state(sites, [1, 1, 0, 0])
        b.set_site(3, b.site(3).scale(-2.0))
        _forbid_densify(monkeypatch)
        result = add_mps(a, b)
        monkeypatch.undo()
        assert all(isinstance(t, SymmetricTensor) for t in result.tensors())
        expected = chain_vector(a) + chain_vector(b)
        np.testing.assert_allclose(chain_vector(result), expected, atol=1e-12)
        check_qns(result)


class TestDiagnostics:
    def test_fresh_chain_has_no_center(self):
        psi = _random()
        with pytest.raises(ChainStructureError, match="no orthogonality center"):
            find_center(psi)
        with pytest.raises(ChainStructureError):
            check_qns(psi)

    def test_divergence_away_from_center(self):
        sites = spin_sites(4)
        moved = MPS.product_state(sites, [0, 0, 1, 0]).position(0)
        bad = MPS(moved.tensors(), left_lim=2, right_lim=4)
        with pytest.raises(ChargeFlowError, match="site 0"):
            check_qns(bad)

    def test_total_qn_survives_moves(self):
        psi = MPS.product_state(spin_sites(5), [0, 0, 1, 0, 0])
        assert total_qn(psi) == 3
        assert total_qn(psi.position(2)) == 3

    def test_check_structure_lengths(self):
        psi = MPS.product_state(spin_sites(4), [0, 1, 0, 1])
        with pytest.raises(ChainStructureError, match="lengths"):
            check_structure(psi, heisenberg_mpo(spin_sites(3)))

    def test_check_structure_site_mismatch(self):
        psi = MPS.product_state(spin_sites(4), [0, 1, 0, 1])
        with pytest.raises(ChainStructureError, match="ket leg"):
            check_structure(psi, heisenberg_mpo(spin_sites(4, symmetric=False)))

    def test_check_structure_excluded_states(self):
        sites = spin_sites(4)
        psi = MPS.product_state(sites, [0, 1, 0, 1])
        other = MPS.product_state(spin_sites(4, symmetric=False), [0, 1, 0, 1])
        check_structure(psi, heisenberg_mpo(sites), [psi])
        with pytest.raises(ChainStructureError, match="state 0"):
            check_structure(psi, heisenberg_mpo(sites), [other])
