"""Example with a constant velocity cubature kalman filter and compare with filterpy."""

import dataclasses
import time

import filterpy.kalman  # type: ignore[import-untyped]
import matplotlib.pyplot as plt
import numpy as np
import torch
import tqdm.auto as tqdm
import yaml

import torch_ckf

FP_DTYPE = np.float64  # Dtype for filterpy


def constant_velocity_system(dim: int, dt=1.0) -> torch_ckf.LinearSystem:
    """Constant velocity model in `dim` dimensions. State: (x_1, ..., x_dim, v_1, ..., v_dim)."""
    process_matrix = torch.eye(2 * dim)
    process_matrix[:dim, dim:] = dt * torch.eye(dim)
    measurement_matrix = torch.eye(dim, 2 * dim)
    return torch_ckf.LinearSystem(process_matrix, measurement_matrix)


def constant_velocity_ckf(measurement_std: float, process_std: float, dim: int) -> torch_ckf.CubatureKalmanFilter:
    """Build a constant velocity CKF with a large initial covariance (unknown position)."""
    system = constant_velocity_system(dim)
    return torch_ckf.CubatureKalmanFilter(
        system,
        2 * dim,
        0,
        dim,
        process_std**2 * torch.eye(2 * dim),
        measurement_std**2 * torch.eye(dim),
        torch.zeros(2 * dim),
        500 * torch.eye(2 * dim),
    )


def convert_to_filterpy(kf: torch_ckf.CubatureKalmanFilter) -> filterpy.kalman.CubatureKalmanFilter:
    """Convert a torch_ckf CubatureKalmanFilter (with a LinearSystem) into a filterpy one.

    filterpy does not augment the state with the measurement noise (R is added after the transform).
    Both rules are exact for linear systems, so the two filters should match.

    Args:
        kf (torch_ckf.CubatureKalmanFilter): The kalman filter to convert

    Returns:
        filterpy.kalman.CubatureKalmanFilter
    """
    process_matrix = kf.system.process_matrix.numpy().astype(FP_DTYPE)
    measurement_matrix = kf.system.measurement_matrix.numpy().astype(FP_DTYPE)

    kf_fp = filterpy.kalman.CubatureKalmanFilter(
        dim_x=kf.state_dim,
        dim_z=kf.measure_dim,
        dt=1.0,
        hx=lambda x: measurement_matrix @ x,
        fx=lambda x, dt: process_matrix @ x,
    )
    kf_fp.Q = kf.process_noise.numpy().astype(FP_DTYPE)
    kf_fp.R = kf.measurement_noise.numpy().astype(FP_DTYPE)
    kf_fp.x = kf.mean[:, 0].numpy().astype(FP_DTYPE)
    kf_fp.P = kf.covariance.numpy().astype(FP_DTYPE)

    return kf_fp


def simulate_trajectory(measurement_std: float, process_std: float, n=1000, dt=1.0, dim=1):
    """Create a trajectory and its observations following a constant velocity model.

    The velocity is clipped onto [-5.0, 5.0]  # A bit ugly, but just to show some examples
    """
    dims = dim, 1  # Add a trailing dimension
    x, vel = torch.zeros(dims), torch.zeros(dims)
    max_vel = 5.0
    traj, measures = torch.empty((n, *dims)), torch.empty((n, *dims))
    for t in range(n):
        vel = torch.clip(vel + torch.randn(dims) * process_std, -max_vel, max_vel)
        x = x + vel * dt
        traj[t] = x
        measures[t] = x + torch.randn(dims) * measurement_std
    return traj, measures


def filter_filterpy(
    kf: torch_ckf.CubatureKalmanFilter, measures: torch.Tensor, update_first=True
) -> torch_ckf.GaussianState:
    """Filter a signal in time with filterpy.

    See `torch_ckf.CubatureKalmanFilter.filter`
    """
    measures_np = measures[..., 0].numpy().astype(FP_DTYPE)
    estimate = np.empty((measures.shape[0], kf.state_dim, 1), dtype=FP_DTYPE)
    cov = np.empty((measures.shape[0], kf.state_dim, kf.state_dim), dtype=FP_DTYPE)

    kf_fp = convert_to_filterpy(kf)

    for t, z in enumerate(measures_np):
        if t or not update_first:  # Do not predict on the first t
            kf_fp.predict()

        kf_fp.update(z)

        estimate[t] = kf_fp.x[:, None]
        cov[t] = kf_fp.P

    return torch_ckf.GaussianState(torch.tensor(estimate), torch.tensor(cov))


@dataclasses.dataclass
class RunTimeConfig:
    """Run time config."""

    dtype: torch.dtype = torch.float64
    device: str = "cpu"
    vectorized: bool = False

    def reset(self, kf: torch_ckf.CubatureKalmanFilter) -> torch_ckf.CubatureKalmanFilter:
        """Rebuild the filter (and its linear system) with the right config."""
        device = torch.device(self.device)
        kf = kf.to(device).to(self.dtype)
        return torch_ckf.CubatureKalmanFilter(
            kf.system.to(device).to(self.dtype),
            kf.state_dim,
            kf.input_dim,
            kf.measure_dim,
            kf.process_noise,
            kf.measurement_noise,
            kf.mean,
            kf.covariance,
            vectorized=self.vectorized,
        )


def main():
    """Check that filterpy and our code produces the same results.

    And investigate the computationnal time as a function of the state dimension.
    """
    process_std = 1.5
    measurement_std = 3.0
    timesteps = 200
    dims = [1, 2, 4, 8, 16, 32]

    configs: dict[str, RunTimeConfig] = {
        "cpu32": RunTimeConfig(dtype=torch.float32, device="cpu", vectorized=False),
        "cpu32-vectorized": RunTimeConfig(dtype=torch.float32, device="cpu", vectorized=True),
        # "cpu64": RunTimeConfig(dtype=torch.float64, device="cpu", vectorized=False),
        "cpu64-vectorized": RunTimeConfig(dtype=torch.float64, device="cpu", vectorized=True),
    }
    if torch.cuda.is_available():
        configs["cuda64-vectorized"] = RunTimeConfig(dtype=torch.float64, device="cuda", vectorized=True)

    timings: dict[str, list[float]] = {name: [] for name in configs}
    timings["filterpy"] = []

    for dim in tqdm.tqdm(dims):
        _, measures = simulate_trajectory(measurement_std, process_std, n=timesteps, dim=dim)
        kf_ref = constant_velocity_ckf(measurement_std, process_std, dim)

        for name, config in tqdm.tqdm(configs.items(), leave=False):
            kf = config.reset(kf_ref)
            measures = measures.to(config.dtype).to(torch.device(config.device))

            t = time.time()
            kf.filter(measures, update_first=True, return_all=False)
            timings[name].append(time.time() - t)

        measures = measures.cpu().to(torch.float64)

        t = time.time()
        filter_filterpy(kf_ref, measures, update_first=True)
        timings["filterpy"].append(time.time() - t)

    print(yaml.dump(timings))

    print("Running with 2D data and 2000 timesteps to ensure methods are equivalent")
    dim = 2
    traj, measures = simulate_trajectory(measurement_std, process_std, n=2000, dim=dim)
    measures = measures.to(torch.float64)

    kf_ref = constant_velocity_ckf(measurement_std, process_std, dim)
    kf = RunTimeConfig(dtype=torch.float64, vectorized=True).reset(kf_ref)
    state_filterpy = filter_filterpy(kf, measures, update_first=True)
    state_cpu_p = kf.filter(measures, update_first=True, return_all=True)

    kf = RunTimeConfig(dtype=torch.float64, vectorized=False).reset(kf_ref)
    state_cpu_loop = kf.filter(measures, update_first=True, return_all=True)

    print(
        f"cpu64-vectorized VS cpu64: Diff on mean: {(state_cpu_p.mean - state_cpu_loop.mean).abs().mean()}."
        f" Diff on cov: {(state_cpu_p.covariance - state_cpu_loop.covariance).abs().mean()}"
    )
    print(
        f"cpu64-vectorized VS filterpy: Diff on mean: {(state_filterpy.mean - state_cpu_p.mean).abs().mean()}."
        f" Diff on cov: {(state_filterpy.covariance - state_cpu_p.covariance).abs().mean()}"
    )

    # Plot timings
    plt.figure()
    for key, timing in timings.items():
        plt.plot(dims[: len(timing)], timing, label=key)

    plt.xscale("log")
    plt.yscale("log")
    plt.xlabel("Spatial dimension (state dimension / 2)")
    plt.ylabel("Computational time")
    plt.grid()
    plt.legend()
    plt.savefig("computational_time.png")

    # Show filtering results (Plot max 100 timesteps)
    max_t = 100
    plt.figure(figsize=(24, 16))
    plt.plot(traj[:max_t, 0, 0], traj[:max_t, 1, 0], label="True trajectory")
    plt.plot(measures[:max_t, 0, 0], measures[:max_t, 1, 0], "o", markersize=1.0, label="Observerd trajectory")
    plt.plot(state_cpu_p.mean[:max_t, 0, 0], state_cpu_p.mean[:max_t, 1, 0], label="Filtered trajectory")
    plt.xlabel("x")
    plt.ylabel("y")

    plt.legend()

    plt.show()


if __name__ == "__main__":
    main()
