"""Example localizing a unicycle robot from range/bearing measures to known beacons."""

import argparse
import logging

import matplotlib.pyplot as plt
import torch

import torch_ckf


class UnicycleRobot:
    """Unicycle robot observed by range/bearing sensors.

    State: x = (p_x, p_y, θ). Control: u = (v, ω) the linear and angular velocities.

    x_k = x_{k-1} + dt * (v cos θ, v sin θ, ω)
    z_k = (|b_j - p|, atan2(b_j - p) - θ) for each beacon b_j

    Both models work on batches of column vectors (..., dim, 1).
    """

    def __init__(self, beacons: torch.Tensor, dt=0.1) -> None:
        self.beacons = beacons  # Shape: (B, 2)
        self.dt = dt

    def f(self, state: torch.Tensor, control: torch.Tensor) -> torch.Tensor:
        theta = state[..., 2:, :]
        velocity, rotation = control[..., :1, :], control[..., 1:, :]
        return state + self.dt * torch.cat((velocity * theta.cos(), velocity * theta.sin(), rotation), dim=-2)

    def h(self, state: torch.Tensor) -> torch.Tensor:
        delta = self.beacons[:, :, None] - state[..., None, :2, :]  # (..., B, 2, 1)
        ranges = delta.pow(2).sum(dim=-2).sqrt()
        bearings = torch.atan2(delta[..., 1, :], delta[..., 0, :]) - state[..., None, 2, :]
        return torch.stack((ranges, bearings), dim=-2).reshape(*state.shape[:-2], -1, 1)


def simulate(
    robot: UnicycleRobot, n: int, process_std: torch.Tensor, measurement_std: torch.Tensor
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Simulate a noisy trajectory, the controls applied and the associated measures.

    Returns:
        torch.Tensor: True states
            Shape: (T, 3, 1)
        torch.Tensor: Controls
            Shape: (T, 2, 1)
        torch.Tensor: Measures
            Shape: (T, 2B, 1)
    """
    t = torch.arange(n, dtype=torch.float64)
    controls = torch.stack((1.0 + 0.5 * torch.sin(t / 20), 0.3 * torch.cos(t / 30)), dim=-1)[..., None]

    states = torch.empty((n, 3, 1), dtype=torch.float64)
    state = torch.zeros(3, 1, dtype=torch.float64)
    for k in range(n):
        if k:
            state = robot.f(state, controls[k]) + process_std[:, None] * torch.randn(3, 1, dtype=torch.float64)
        states[k] = state

    measures = robot.h(states)
    measures = measures + measurement_std.repeat(len(robot.beacons))[:, None] * torch.randn_like(measures)
    return states, controls, measures


def main(n: int, range_std: float, bearing_std: float, dropout: float, vectorized: bool):
    # Bearings are not wrapped: beacons are placed so that they never cross ±π along the path
    beacons = torch.tensor([[20.0, 30.0], [40.0, -20.0], [60.0, 10.0]], dtype=torch.float64)
    robot = UnicycleRobot(beacons)

    process_std = torch.tensor([0.02, 0.02, 0.005], dtype=torch.float64)
    measurement_std = torch.tensor([range_std, bearing_std], dtype=torch.float64)

    states, controls, measures = simulate(robot, n, process_std, measurement_std)
    if dropout > 0:
        measures[torch.rand(n) < dropout] = torch.nan  # Skipped by the filter

    kf = torch_ckf.CubatureKalmanFilter(
        robot,
        state_dim=3,
        input_dim=2,
        measurement_dim=2 * len(beacons),
        process_noise=torch.diag(process_std**2),
        measurement_noise=torch.diag(measurement_std.repeat(len(beacons)) ** 2),
        mean=torch.tensor([1.0, -1.0, 0.2], dtype=torch.float64),
        covariance=torch.diag(torch.tensor([1.0, 1.0, 0.1], dtype=torch.float64)),
        vectorized=vectorized,
    )
    print(kf)

    estimates = kf.filter(measures, controls, update_first=True, return_all=True)

    # Dead reckoning: integrate the controls only
    reckoning = torch.empty_like(states)
    reckoning[0] = estimates.mean[0]
    for k in range(1, n):
        reckoning[k] = robot.f(reckoning[k - 1], controls[k])

    print(f"Dead reckoning position RMSE: {(reckoning - states)[:, :2].pow(2).sum(dim=1).mean().sqrt()}")
    print(f"Filtering position RMSE: {(estimates.mean - states)[:, :2].pow(2).sum(dim=1).mean().sqrt()}")

    plt.rcParams["font.size"] = 20

    plt.figure(figsize=(24, 16))
    plt.plot(states[:, 0, 0], states[:, 1, 0], color="k", label="True trajectory")
    plt.plot(reckoning[:, 0, 0], reckoning[:, 1, 0], "--", color="b", label="Dead reckoning")
    plt.plot(estimates.mean[:, 0, 0], estimates.mean[:, 1, 0], color="y", label="Filtered trajectory")
    plt.plot(beacons[:, 0], beacons[:, 1], "^", color="r", markersize=15.0, label="Beacons")
    plt.axis("equal")
    plt.xlabel("x")
    plt.ylabel("y")
    plt.legend(loc="upper right")

    plt.figure(figsize=(24, 16))
    plt.plot(states[:, 2, 0], color="k", label="True heading")
    plt.plot(estimates.mean[:, 2, 0], color="y", label="Filtered heading")
    mini = estimates.mean[:, 2, 0] - 3 * estimates.covariance[:, 2, 2].sqrt()
    maxi = estimates.mean[:, 2, 0] + 3 * estimates.covariance[:, 2, 2].sqrt()
    plt.fill_between(torch.arange(n), mini, maxi, color="y", alpha=0.5)
    plt.xlabel("t")
    plt.ylabel("θ")
    plt.legend(loc="upper right")

    plt.show()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Cubature Kalman filter example, localizing a robot with beacons")
    parser.add_argument("--n", default=500, type=int, help="Number of timesteps")
    parser.add_argument("--range-std", default=0.3, type=float, help="Range measurement noise")
    parser.add_argument("--bearing-std", default=0.05, type=float, help="Bearing measurement noise (radians)")
    parser.add_argument("--dropout", default=0.1, type=float, help="Probability to miss a measure")
    parser.add_argument("--vectorized", action="store_true", help="Evaluate the models on all points at once")
    parser.add_argument("--verbose", action="store_true", help="Log each filtering step")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    main(args.n, args.range_std, args.bearing_std, args.dropout, args.vectorized)
