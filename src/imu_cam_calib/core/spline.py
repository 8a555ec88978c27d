"""
Uniform B-spline evaluation on R^3 and cumulative B-spline evaluation on SO(3).

Knots are spaced uniformly by `dt` starting at the spline epoch. A spline of
order N evaluates segment i from knots i..i+N-1 with the normalized time
u = s/dt - i, where s is the time since the epoch.
"""

import math
from functools import lru_cache
import numpy as np
import torch
from typing import Tuple

from ..utils.geometry_utils import so3_exp, so3_log


@lru_cache(maxsize=None)
def blending_matrix(order: int, cumulative: bool = False) -> np.ndarray:
    """
    Blending matrix of a uniform B-spline.

    Row j holds the polynomial coefficients (ascending powers of u) of the
    basis function weighting knot i+j. The cumulative variant sums each row
    with all rows after it.

    Args:
        order: Spline order N (degree N-1)
        cumulative: Return the cumulative blending matrix

    Returns:
        M: (N, N) matrix
    """
    n = order
    m = np.zeros((n, n))
    for i in range(n):
        for j in range(n):
            total = 0.0
            for s in range(j, n):
                total += (-1.0) ** (s - j) * math.comb(n, s - j) * (n - s - 1.0) ** (n - 1 - i)
            m[j, i] = math.comb(n - 1, n - 1 - i) * total

    if cumulative:
        for j in range(n):
            m[j] = m[j:].sum(axis=0)

    return m / math.factorial(n - 1)


def basis_coefficients(u: torch.Tensor, matrix: torch.Tensor, derivative: int = 0) -> torch.Tensor:
    """
    Evaluate the basis functions (or their u-derivatives) for each u.

    Args:
        u: (M,) normalized segment times
        matrix: (N, N) blending matrix
        derivative: Order of the derivative with respect to u

    Returns:
        coeffs: (M, N) basis weights per knot of the segment
    """
    n = matrix.shape[0]
    u_powers = [torch.ones_like(u)]
    for _ in range(1, n):
        u_powers.append(u_powers[-1] * u)

    columns = []
    for k in range(n):
        if k < derivative:
            columns.append(torch.zeros_like(u))
        else:
            scale = math.factorial(k) / math.factorial(k - derivative)
            columns.append(scale * u_powers[k - derivative])
    powers = torch.stack(columns, dim=-1)
    return powers @ matrix.T


def segment_index(s: torch.Tensor, dt: float, num_knots: int, order: int) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Locate the spline segment of each time.

    Args:
        s: (M,) times since the spline epoch [s]
        dt: Knot spacing [s]
        num_knots: Number of knots of the spline
        order: Spline order

    Returns:
        idx: (M,) first knot index of the segment
        u: (M,) normalized time within the segment (differentiable in s)
    """
    scaled = s / dt
    idx = torch.floor(scaled.detach()).long().clamp(0, max(num_knots - order, 0))
    u = scaled - idx.to(s.dtype)
    return idx, u


def evaluate_r3(knots: torch.Tensor,
                s: torch.Tensor,
                dt: float,
                order: int,
                derivative: int = 0) -> torch.Tensor:
    """
    Evaluate a uniform R^3 B-spline or one of its time derivatives.

    Args:
        knots: (K, 3) control points
        s: (M,) times since the spline epoch [s]
        dt: Knot spacing [s]
        order: Spline order
        derivative: 0 for position, 1 for velocity, 2 for acceleration

    Returns:
        values: (M, 3)
    """
    matrix = torch.as_tensor(blending_matrix(order), dtype=knots.dtype, device=knots.device)
    idx, u = segment_index(s, dt, knots.shape[0], order)

    coeffs = basis_coefficients(u, matrix, derivative) / dt ** derivative  # (M, N)
    offsets = torch.arange(order, device=knots.device)
    segment_knots = knots[idx.unsqueeze(-1) + offsets]  # (M, N, 3)
    return (coeffs.unsqueeze(-1) * segment_knots).sum(dim=1)


def evaluate_so3(knots: torch.Tensor,
                 s: torch.Tensor,
                 dt: float,
                 order: int) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Evaluate a cumulative SO(3) B-spline and its body angular velocity.

    R(t) = R_i * prod_j Exp(lambda_j(u) * Log(R_{i+j-1}^T R_{i+j}))

    Args:
        knots: (K, 3, 3) rotation control points
        s: (M,) times since the spline epoch [s]
        dt: Knot spacing [s]
        order: Spline order

    Returns:
        R: (M, 3, 3) rotations
        omega: (M, 3) angular velocity in the body frame [rad/s]
    """
    matrix = torch.as_tensor(blending_matrix(order, cumulative=True),
                             dtype=knots.dtype, device=knots.device)
    idx, u = segment_index(s, dt, knots.shape[0], order)

    lam = basis_coefficients(u, matrix, 0)
    dlam = basis_coefficients(u, matrix, 1) / dt

    # Relative rotation between consecutive knots
    increments = so3_log(knots[:-1].transpose(-1, -2) @ knots[1:])  # (K-1, 3)

    R = knots[idx]
    omega = torch.zeros(s.shape[0], 3, dtype=knots.dtype, device=knots.device)
    for j in range(1, order):
        d = increments[idx + j - 1]
        A = so3_exp(lam[:, j:j + 1] * d)
        R = R @ A
        omega = (A.transpose(-1, -2) @ omega.unsqueeze(-1)).squeeze(-1) + dlam[:, j:j + 1] * d

    return R, omega


def greville_offset(order: int) -> float:
    """
    Knot j of a uniform spline is centred at (j - offset) * dt after the epoch.

    Placing knots on these abscissae makes the spline reproduce linear motion
    exactly.
    """
    return (order - 2) / 2.0
