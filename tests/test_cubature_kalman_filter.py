import pytest
import torch

from torch_ckf import (
    CubatureKalmanFilter,
    DimensionError,
    FunctionalSystem,
    GaussianState,
    LinearSystem,
    NotPositiveDefiniteError,
)


def _spd_matrix(dim: int) -> torch.Tensor:
    # Construct a symmetric positive definite covariance.
    cov = torch.randn(dim, dim)
    return cov @ cov.mT + 1e-2 * torch.eye(dim)


def range_bearing_system() -> FunctionalSystem:
    """Unicycle (x, y, theta) driven by (v, w), observing range and bearing to the origin."""

    def f(state: torch.Tensor, control: torch.Tensor) -> torch.Tensor:
        x, y, theta = state[0], state[1], state[2]
        v, w = control[0], control[1]
        return torch.stack((x + v * torch.cos(theta), y + v * torch.sin(theta), theta + w))

    def h(state: torch.Tensor) -> torch.Tensor:
        return torch.stack((state[:2].norm(dim=0), torch.atan2(-state[1], -state[0]) - state[2]))

    return FunctionalSystem(f, h)


def random_ckf(dim_x: int, dim_z: int, dim_u: int = 0, **kwargs) -> CubatureKalmanFilter:
    system = LinearSystem(torch.randn(dim_x, dim_x), torch.randn(dim_z, dim_x), torch.randn(dim_x, dim_u))
    return CubatureKalmanFilter(
        system,
        dim_x,
        dim_u,
        dim_z,
        _spd_matrix(dim_x),
        _spd_matrix(dim_z),
        torch.randn(dim_x, 1),
        _spd_matrix(dim_x),
        **kwargs,
    )


def robot_ckf(**kwargs) -> CubatureKalmanFilter:
    return CubatureKalmanFilter(
        range_bearing_system(),
        3,
        2,
        2,
        torch.diag(torch.tensor([0.01, 0.01, 0.001])),
        torch.diag(torch.tensor([0.1, 0.01])),
        torch.tensor([5.0, 5.0, 0.0]),
        torch.eye(3) * 0.5,
        **kwargs,
    )


def test_initial_accessors():
    kf = random_ckf(4, 2, 3)

    assert kf.state_dim == 4
    assert kf.input_dim == 3
    assert kf.measure_dim == 2
    assert kf.dtype == torch.float64
    assert kf.mean.shape == (4, 1)
    assert kf.covariance.shape == (4, 4)
    assert kf.process_noise.shape == (4, 4)
    assert kf.measurement_noise.shape == (2, 2)
    assert kf.cubature_points.shape == (8, 4, 1)
    assert kf.propagated_points.shape == (8, 4, 1)
    assert kf.extended_cubature_points.shape == (12, 6, 1)
    assert kf.expected_measurements.shape == (12, 2, 1)
    assert kf.kalman_gain.shape == (4, 2)
    assert isinstance(kf.system, LinearSystem)
    assert isinstance(kf.state, GaussianState)


def test_flat_and_scalar_inputs_are_accepted():
    kf = CubatureKalmanFilter(
        FunctionalSystem(lambda x, u: x + u, lambda x: x), 1, 1, 1, 0.01, 0.1, [0.0], [[1.0]]
    )

    assert kf.mean.shape == (1, 1)
    assert kf.process_noise.shape == (1, 1)
    assert kf.measurement_noise.shape == (1, 1)

    kf.predict(1.0)
    kf.correct(torch.tensor([1.2]))
    assert kf.mean.shape == (1, 1)


@pytest.mark.parametrize(
    ("argument", "index", "value"),
    [
        ("process_noise", 4, torch.eye(2)),
        ("measurement_noise", 5, torch.eye(3)),
        ("mean", 6, torch.zeros(2, 1)),
        ("covariance", 7, torch.eye(2)),
    ],
)
def test_construction_reports_dimension_mismatch(argument: str, index: int, value: torch.Tensor):
    system = LinearSystem(torch.eye(3), torch.eye(2, 3))
    args = [system, 3, 0, 2, torch.eye(3), torch.eye(2), torch.zeros(3), torch.eye(3)]
    args[index] = value

    with pytest.raises(DimensionError, match=argument) as error:
        CubatureKalmanFilter(*args)

    assert error.value.name == argument
    assert error.value.actual == tuple(value.shape)
    assert str(error.value.expected) in str(error.value)


def test_construction_rejects_invalid_dimensions():
    with pytest.raises(ValueError, match="state_dim=0"):
        CubatureKalmanFilter(LinearSystem(torch.eye(1), torch.eye(1)), 0, 0, 1, torch.eye(0), torch.eye(1), [], [])


def test_construction_rejects_invalid_covariance():
    args = [LinearSystem(torch.eye(2), torch.eye(2)), 2, 0, 2, torch.eye(2), torch.eye(2), torch.zeros(2)]

    with pytest.raises(NotPositiveDefiniteError, match="symmetric"):
        CubatureKalmanFilter(*args, torch.tensor([[1.0, 0.5], [0.0, 1.0]]))

    with pytest.raises(NotPositiveDefiniteError, match="positive definite"):
        CubatureKalmanFilter(*args, torch.tensor([[1.0, 2.0], [2.0, 1.0]]))


def test_setters_check_shapes():
    kf = random_ckf(3, 2)

    kf.mean = torch.ones(3)
    assert torch.equal(kf.mean, torch.ones(3, 1))

    kf.covariance = torch.eye(3) * 2
    kf.process_noise = torch.eye(3) * 3
    kf.measurement_noise = torch.eye(2) * 4
    assert torch.equal(kf.covariance, torch.eye(3) * 2)
    assert torch.equal(kf.process_noise, torch.eye(3) * 3)
    assert torch.equal(kf.measurement_noise, torch.eye(2) * 4)

    kf.state = GaussianState(torch.zeros(3, 1), torch.eye(3))
    assert torch.equal(kf.state.mean, torch.zeros(3, 1))
    assert torch.equal(kf.state.covariance, torch.eye(3))

    with pytest.raises(DimensionError, match="mean"):
        kf.mean = torch.ones(2)
    with pytest.raises(DimensionError, match="covariance"):
        kf.covariance = torch.eye(2)
    with pytest.raises(DimensionError, match="process_noise"):
        kf.process_noise = torch.eye(2)
    with pytest.raises(DimensionError, match="measurement_noise"):
        kf.measurement_noise = torch.eye(3)


def test_state_setter_is_all_or_nothing():
    kf = random_ckf(3, 2)
    before = kf.state.clone()

    with pytest.raises(DimensionError, match="covariance"):
        kf.state = GaussianState(torch.ones(3, 1), torch.eye(2))

    assert torch.equal(kf.mean, before.mean)
    assert torch.equal(kf.covariance, before.covariance)


def test_predict_checks_control():
    kf = random_ckf(3, 2, 2)

    with pytest.raises(DimensionError, match="control"):
        kf.predict(torch.zeros(3, 1))

    with pytest.raises(DimensionError, match="control"):
        kf.predict()

    kf = random_ckf(3, 2, 0)
    kf.predict()  # No control required


def test_correct_checks_measurement():
    kf = random_ckf(3, 2)

    with pytest.raises(DimensionError, match="measurement"):
        kf.correct(torch.zeros(3, 1))


def test_wrong_model_output_leaves_belief_unchanged():
    system = FunctionalSystem(lambda x, u: torch.cat((x, u)), lambda x: x[:1])
    kf = CubatureKalmanFilter(system, 2, 1, 1, torch.eye(2), torch.eye(1), torch.zeros(2), torch.eye(2))
    before = kf.state.clone()

    with pytest.raises(DimensionError, match=r"f\(state, control\)"):
        kf.predict(torch.ones(1))

    assert torch.equal(kf.mean, before.mean)
    assert torch.equal(kf.covariance, before.covariance)

    kf = CubatureKalmanFilter(
        FunctionalSystem(lambda x, u: x, lambda x: x), 2, 1, 1, torch.eye(2), torch.eye(1), torch.zeros(2), torch.eye(2)
    )
    with pytest.raises(DimensionError, match=r"h\(state\)"):
        kf.correct(torch.ones(1))

    assert torch.equal(kf.mean, before.mean)
    assert torch.equal(kf.covariance, before.covariance)
    assert torch.equal(kf.kalman_gain, torch.zeros(2, 1))


def test_non_finite_prediction_leaves_belief_unchanged():
    system = FunctionalSystem(lambda x, u: x * torch.inf, lambda x: x)
    kf = CubatureKalmanFilter(system, 2, 0, 2, torch.eye(2), torch.eye(2), torch.zeros(2), torch.eye(2))
    before = kf.state.clone()

    with pytest.raises(NotPositiveDefiniteError, match="non-finite"):
        kf.predict()

    assert torch.equal(kf.mean, before.mean)
    assert torch.equal(kf.covariance, before.covariance)
    assert torch.equal(kf.cubature_points, torch.zeros(4, 2, 1))
    assert torch.equal(kf.propagated_points, torch.zeros(4, 2, 1))


def test_predict_stores_points():
    kf = robot_ckf()
    control = torch.tensor([1.0, 0.1])
    prior = kf.state.clone()

    kf.predict(control)

    assert kf.cubature_points.shape == (6, 3, 1)
    assert torch.allclose(kf.cubature_points.mean(dim=0), prior.mean)
    for point, propagated in zip(kf.cubature_points, kf.propagated_points):
        assert torch.allclose(propagated, kf.system.f(point, control[:, None]))


def test_correct_stores_extended_points():
    kf = robot_ckf()
    measure = torch.tensor([7.0, -2.3])
    prior = kf.state.clone()

    kf.correct(measure)

    points = kf.extended_cubature_points
    assert points.shape == (10, 5, 1)
    assert torch.allclose(points.mean(dim=0), torch.cat((prior.mean, torch.zeros(2, 1))))
    for point, expected in zip(points, kf.expected_measurements):
        assert torch.allclose(expected, kf.system.h(point[:3]) + point[3:])


def test_vectorized_is_equivalent():
    kf = random_ckf(4, 3, 2)
    kf_vec = CubatureKalmanFilter(
        kf.system,
        4,
        2,
        3,
        kf.process_noise,
        kf.measurement_noise,
        kf.mean,
        kf.covariance,
        vectorized=True,
    )

    for _ in range(3):
        control = torch.randn(2, 1)
        measure = torch.randn(3, 1)
        kf.predict(control)
        kf_vec.predict(control)
        kf.correct(measure)
        kf_vec.correct(measure)

    assert torch.allclose(kf.mean, kf_vec.mean)
    assert torch.allclose(kf.covariance, kf_vec.covariance)
    assert torch.allclose(kf.kalman_gain, kf_vec.kalman_gain)


def test_vectorized_checks_output_shape():
    system = FunctionalSystem(lambda x, u: x, lambda x: x)  # h is not a projection on 1d
    kf = CubatureKalmanFilter(
        system, 2, 0, 1, torch.eye(2), torch.eye(1), torch.zeros(2), torch.eye(2), vectorized=True
    )

    kf.predict()
    with pytest.raises(DimensionError, match=r"h\(state\)"):
        kf.correct(torch.zeros(1))


def test_project_does_not_change_the_belief():
    kf = robot_ckf()
    before = kf.state.clone()

    projection = kf.project()

    assert projection.mean.shape == (2, 1)
    assert projection.covariance.shape == (2, 2)
    assert torch.equal(kf.mean, before.mean)
    assert torch.equal(kf.covariance, before.covariance)

    # Measures close to the expectation are more likely
    assert projection.log_likelihood(projection.mean) > projection.log_likelihood(projection.mean + 1)


def test_sample_uses_generator():
    kf = robot_ckf(generator=torch.Generator().manual_seed(42))
    samples = kf.sample(20000)

    assert samples.shape == (20000, 3, 1)
    assert torch.allclose(samples.mean(dim=0), kf.mean, atol=0.05)
    centered = samples - samples.mean(dim=0)
    assert torch.allclose((centered @ centered.mT).mean(dim=0), kf.covariance, atol=0.05)

    kf.generator.manual_seed(42)
    first = kf.sample(10)
    kf.generator.manual_seed(42)
    assert torch.equal(first, kf.sample(10))


def test_filter_return_all():
    length = 10
    kf = random_ckf(2, 2, 1)
    measures = torch.randn(length, 2, 1)
    controls = torch.randn(length, 1, 1)

    out = kf.filter(measures, controls)
    assert out.mean.shape == (2, 1)
    assert torch.equal(out.mean, kf.mean)

    kf = random_ckf(2, 2, 1)
    out = kf.filter(measures, controls, return_all=True)
    assert out.mean.shape == (length, 2, 1)
    assert out.covariance.shape == (length, 2, 2)
    assert torch.equal(out[-1].mean, kf.mean)


def test_filter_matches_manual_loop():
    kf = random_ckf(3, 2, 1)
    manual = kf.to(torch.float64)
    measures = torch.randn(4, 2, 1)
    controls = torch.randn(4, 1, 1)

    out = kf.filter(measures, controls, update_first=False, return_all=True)

    for t in range(4):
        manual.predict(controls[t])
        manual.correct(measures[t])
        assert torch.allclose(out[t].mean, manual.mean)
        assert torch.allclose(out[t].covariance, manual.covariance)


def test_filter_nan_skips_correct():
    kf = random_ckf(2, 1, 0)
    manual = kf.to(torch.float64)
    measures = torch.randn(3, 1, 1)
    measures[1] = torch.nan

    out = kf.filter(measures, return_all=True)

    manual.correct(measures[0])
    assert torch.allclose(out[0].mean, manual.mean)
    manual.predict()
    assert torch.allclose(out[1].mean, manual.mean)
    assert torch.allclose(out[1].covariance, manual.covariance)
    manual.predict()
    manual.correct(measures[2])
    assert torch.allclose(out[2].mean, manual.mean)


def test_filter_checks_controls_length():
    kf = random_ckf(2, 1, 1)

    with pytest.raises(DimensionError, match="controls"):
        kf.filter(torch.randn(5, 1, 1), torch.randn(4, 1, 1))


def test_to_convert_dtype():
    kf = random_ckf(3, 2, repair_covariance=False, vectorized=True)

    kf32 = kf.to(torch.float32)

    assert kf32.dtype == torch.float32
    assert kf32.mean.dtype == torch.float32
    assert kf32.covariance.dtype == torch.float32
    assert kf32.process_noise.dtype == torch.float32
    assert kf32.measurement_noise.dtype == torch.float32
    assert kf32.kalman_gain.dtype == torch.float32
    assert kf32.repair_covariance is False
    assert kf32.vectorized is True
    assert kf32.system is kf.system

    # And it should not affect kf
    assert kf.dtype == torch.float64
    assert kf.mean.dtype == torch.float64


def test_to_keeps_the_whole_state():
    kf = random_ckf(3, 2, 1)
    kf.predict(torch.randn(1))
    kf.correct(torch.randn(2))
    kf.covariance = torch.tensor([[1.0, 2.0, 0.0], [2.0, 1.0, 0.0], [0.0, 0.0, 1.0]])  # Repaired at the next step

    kf32 = kf.to(torch.float32)

    assert torch.equal(kf32.covariance, kf.covariance.to(torch.float32))
    assert torch.equal(kf32.kalman_gain, kf.kalman_gain.to(torch.float32))
    assert torch.equal(kf32.cubature_points, kf.cubature_points.to(torch.float32))
    assert torch.equal(kf32.extended_cubature_points, kf.extended_cubature_points.to(torch.float32))
    assert kf32.expected_measurements.dtype == torch.float32

    # The copy is independent and can still run (the system is shared, keep its dtype)
    copy = kf.to(torch.float64)
    copy.predict(torch.randn(1))
    assert torch.linalg.eigvalsh(copy.covariance).min() > 0
    assert kf.covariance[0, 1].item() == 2.0


@pytest.mark.cuda
def test_cpu_cuda_close():
    kf = robot_ckf()
    kf_cuda = kf.to(torch.device("cuda"))
    control = torch.tensor([1.0, 0.1])
    measure = torch.tensor([7.0, -2.3])

    kf.predict(control)
    kf.correct(measure)
    kf_cuda.predict(control)
    kf_cuda.correct(measure)

    assert kf_cuda.device.type == "cuda"
    assert torch.allclose(kf.mean, kf_cuda.mean.cpu(), atol=1e-6)


def test_repr_short():
    kf = CubatureKalmanFilter(
        LinearSystem(torch.tensor([[1.0, 1.0], [0.0, 1.0]]), torch.tensor([[1.0, 0.0]])),
        2,
        0,
        1,
        torch.eye(2) * 0.01,
        torch.eye(1) * 0.1,
        torch.zeros(2, 1),
        torch.eye(2),
    )

    kf_repr = str(kf)
    lines = kf_repr.split("\n")

    assert len(lines) == 1 + 1 + 2 + 1 + 2
    assert lines[0] == "Cubature Kalman Filter (State dimension: 2, Input dimension: 0, Measure dimension: 1)"
    assert set(lines[1]) == {"-"}
    assert lines[2].startswith("Belief: x = tensor([[0.],")
    assert "&  P = tensor([[1., 0.]," in lines[2]
    assert lines[5].startswith("Noises: Q = tensor([[0.01, 0.00],")
    assert "&  R = tensor([[0.10]])" in lines[5]


def test_repr_long():
    dim_x, dim_z = 8, 8
    kf = random_ckf(dim_x, dim_z)

    kf_repr = str(kf)

    assert kf_repr.split("\n")[0] == (
        f"Cubature Kalman Filter (State dimension: {dim_x}, Input dimension: 0, Measure dimension: {dim_z})"
    )
    assert "Belief: x = tensor(" in kf_repr
    # Q and R are too large to be displayed side by side
    assert "Noises: Q = tensor(" in kf_repr
    assert "\n        R = tensor(" in kf_repr
