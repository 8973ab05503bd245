# ruff: noqa: ANN001 ANN201

"""Unit tests for the projected-Newton box QP."""

from __future__ import annotations

import numpy as np

from ilqg_trajopt.qp.box_qp import BoxQPOptions, box_qp


class TestBoxQP:
    """Result codes and solutions on small problems."""

    def test_interior_solution(self):
        h = 2.0 * np.eye(2)
        g = np.array([-2.0, -2.0])
        res = box_qp(h, g, np.full(2, -10.0), np.full(2, 10.0))
        assert res.success
        assert res.result == 5
        np.testing.assert_allclose(res.x, [1.0, 1.0], atol=1e-10)
        assert np.all(res.free)

    def test_all_clamped(self):
        h = 2.0 * np.eye(2)
        g = np.array([-2.0, -2.0])
        res = box_qp(h, g, np.full(2, -0.5), np.full(2, 0.5))
        assert res.result == 6
        np.testing.assert_allclose(res.x, [0.5, 0.5])
        assert not np.any(res.free)

    def test_partially_clamped(self):
        h = np.eye(2)
        g = np.array([-2.0, 0.5])
        res = box_qp(h, g, np.full(2, -1.0), np.full(2, 1.0))
        assert res.success
        np.testing.assert_allclose(res.x, [1.0, -0.5], atol=1e-10)
        np.testing.assert_array_equal(res.free, [False, True])
        # Factor of the free block: H_ff = R'R
        np.testing.assert_allclose(res.factor.T @ res.factor, [[1.0]])

    def test_not_positive_definite(self):
        h = np.diag([-1.0, 1.0])
        g = np.array([1.0, 1.0])
        res = box_qp(h, g, np.full(2, -1.0), np.full(2, 1.0))
        assert res.result == -1
        assert not res.success

    def test_warm_start_clamped_into_box(self):
        h = np.eye(1)
        g = np.array([0.0])
        res = box_qp(h, g, np.array([-1.0]), np.array([1.0]), x0=np.array([5.0]))
        assert res.success
        np.testing.assert_allclose(res.x, [0.0], atol=1e-10)

    def test_unbounded_side(self):
        h = np.eye(1)
        g = np.array([3.0])
        res = box_qp(h, g, np.array([-np.inf]), np.array([1.0]))
        assert res.success
        np.testing.assert_allclose(res.x, [-3.0], atol=1e-10)

    def test_iteration_cap(self):
        h = np.array([[1.0, 0.9], [0.9, 1.0]])
        g = np.array([-1.0, 1.0])
        res = box_qp(
            h, g, np.full(2, -10.0), np.full(2, 10.0),
            options=BoxQPOptions(max_iterations=1),
        )
        assert res.result == 1
