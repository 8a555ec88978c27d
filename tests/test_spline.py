"""Tests for uniform and cumulative B-spline evaluation."""

import numpy as np
import torch
from scipy.spatial.transform import Rotation

from imu_cam_calib.utils.geometry_utils import so3_exp
from imu_cam_calib.core.spline import (
    basis_coefficients,
    blending_matrix,
    evaluate_r3,
    evaluate_so3,
    greville_offset,
    segment_index,
)


def test_cubic_blending_matrix():
    expected = np.array([
        [1.0, -3.0, 3.0, -1.0],
        [4.0, 0.0, -6.0, 3.0],
        [1.0, 3.0, 3.0, -3.0],
        [0.0, 0.0, 0.0, 1.0],
    ]) / 6.0
    np.testing.assert_allclose(blending_matrix(4), expected, atol=1e-12)


def test_cumulative_blending_matrix_first_row_is_constant_one():
    for order in (3, 4, 5):
        m = blending_matrix(order, cumulative=True)
        expected = np.zeros(order)
        expected[0] = 1.0
        np.testing.assert_allclose(m[0], expected, atol=1e-12)


def test_basis_partition_of_unity():
    u = torch.linspace(0.0, 1.0, 11, dtype=torch.float64)
    for order in (2, 3, 4, 5):
        matrix = torch.as_tensor(blending_matrix(order))
        coeffs = basis_coefficients(u, matrix)
        np.testing.assert_allclose(coeffs.sum(dim=-1).numpy(), np.ones(11), atol=1e-12)
        # Derivatives of a partition of unity vanish
        d_coeffs = basis_coefficients(u, matrix, derivative=1)
        np.testing.assert_allclose(d_coeffs.sum(dim=-1).numpy(), np.zeros(11), atol=1e-12)


def test_segment_index_clamps_to_last_segment():
    s = torch.tensor([0.0, 0.05, 0.25, 10.0], dtype=torch.float64)
    idx, u = segment_index(s, dt=0.1, num_knots=8, order=4)
    assert idx.tolist() == [0, 0, 2, 4]
    np.testing.assert_allclose(u[:3].numpy(), [0.0, 0.5, 0.5], atol=1e-12)


def test_r3_spline_reproduces_linear_motion():
    order, dt = 4, 0.1
    offset = greville_offset(order)
    start = np.array([1.0, -2.0, 0.5])
    velocity = np.array([0.3, 0.1, -0.7])
    knots = torch.as_tensor(np.stack([start + velocity * (j - offset) * dt for j in range(14)]))

    s = torch.linspace(0.0, 1.0, 37, dtype=torch.float64)
    expected = start + velocity * s.numpy()[:, None]

    np.testing.assert_allclose(evaluate_r3(knots, s, dt, order).numpy(), expected, atol=1e-12)
    np.testing.assert_allclose(evaluate_r3(knots, s, dt, order, derivative=1).numpy(),
                               np.tile(velocity, (37, 1)), atol=1e-10)
    np.testing.assert_allclose(evaluate_r3(knots, s, dt, order, derivative=2).numpy(),
                               np.zeros((37, 3)), atol=1e-8)


def test_so3_spline_reproduces_constant_rotation_rate():
    order, dt = 4, 0.1
    offset = greville_offset(order)
    omega = np.array([0.4, -0.2, 0.9])
    base = Rotation.from_rotvec([0.3, 0.1, -0.2]).as_matrix()
    knots = torch.as_tensor(np.stack([
        Rotation.from_rotvec(omega * (j - offset) * dt).as_matrix() @ base for j in range(14)
    ]))

    s = torch.linspace(0.0, 1.0, 23, dtype=torch.float64)
    R, body_rate = evaluate_so3(knots, s, dt, order)

    for i, t in enumerate(s.numpy()):
        expected = Rotation.from_rotvec(omega * t).as_matrix() @ base
        np.testing.assert_allclose(R[i].numpy(), expected, atol=1e-10)
    np.testing.assert_allclose(body_rate.numpy(), np.tile(base.T @ omega, (23, 1)), atol=1e-9)


def test_so3_spline_gradient_is_finite_for_identity_knots():
    knots = torch.eye(3, dtype=torch.float64).repeat(6, 1, 1)
    delta = torch.zeros(6, 3, dtype=torch.float64, requires_grad=True)

    s = torch.tensor([0.05, 0.12], dtype=torch.float64)
    R, body_rate = evaluate_so3(knots @ so3_exp(delta), s, 0.1, 4)
    (R.sum() + body_rate.sum()).backward()
    assert torch.isfinite(delta.grad).all()
