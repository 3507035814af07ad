import logging

import numpy as np
import pytest

from gcoda import (
    CoordinateDescentGlasso,
    GcodaResult,
    GcodaSubResult,
    PenalizedPrecisionSolver,
    SklearnGraphicalLasso,
    clr_covariance,
    ebic_scores,
    edge_pattern,
    gcoda,
    gcoda_objective,
    gcoda_path,
    gcoda_sub,
    lambda_sequence,
    select_ebic,
)


class DiagonalSolver(PenalizedPrecisionSolver):
    """Returns networks without any edge."""

    def solve_penalized_precision(self, matrix, lambda_):
        return np.diag(1.0 / (np.diag(matrix) + lambda_))


class RidgeSolver(PenalizedPrecisionSolver):
    """Returns dense networks and records every call."""

    def __init__(self):
        self.calls = []

    def solve_penalized_precision(self, matrix, lambda_):
        self.calls.append((np.array(matrix, copy=True), lambda_))
        return np.linalg.inv(matrix + lambda_ * np.eye(matrix.shape[0]))


def _chain_precision(p: int, diag: float = 2.0, off: float = -0.8) -> np.ndarray:
    omega = np.eye(p) * diag
    for i in range(p - 1):
        omega[i, i + 1] = omega[i + 1, i] = off
    return omega


def _compositional_sample(omega: np.ndarray, n: int, seed: int = 1234) -> np.ndarray:
    rng = np.random.default_rng(seed)
    p = omega.shape[0]
    mean = np.linspace(0.0, 2.0, p)
    y = rng.multivariate_normal(mean, np.linalg.inv(omega), size=n)
    x = np.exp(y)
    return x / x.sum(axis=1, keepdims=True)


def _exchangeable_s(p: int = 3) -> np.ndarray:
    # Rows sum to zero like a log-ratio covariance; lambda_max is 3.
    return 6.0 * np.eye(p) - 2.0 * np.ones((p, p))


def _stopping_rules(fit, p, nlambda, extra=15, floor=1e-6, ratio=0.618):
    return {
        "density": fit.df[-1] >= p * (p - 1) / 2 * ratio,
        "cap": len(fit.lambdas) == nlambda + extra,
        "floor": fit.lambdas[-1] <= floor,
    }


def test_gcoda_objective_matches_formula():
    rng = np.random.default_rng(3)
    s = clr_covariance(_compositional_sample(_chain_precision(4), 40))
    a = rng.standard_normal((4, 4))
    isig = a @ a.T + 4 * np.eye(4)
    lam = 0.2

    ones = np.ones(4)
    total = ones @ isig @ ones
    expected = (
        -np.log(np.linalg.det(isig))
        + np.trace(isig @ s)
        + np.log(total)
        - (isig @ ones) @ s @ (isig @ ones) / total
        + lam * np.abs(isig).sum()
    )

    assert gcoda_objective(isig, s, lam) == pytest.approx(expected, rel=1e-10)


def test_gcoda_objective_rejects_indefinite_matrix():
    s = _exchangeable_s(2)
    isig = np.array([[1.0, 2.0], [2.0, 1.0]])

    with pytest.raises(ValueError, match="positive definite"):
        gcoda_objective(isig, s, 0.1)


def test_first_step_feeds_shifted_covariance_to_solver():
    s = clr_covariance(_compositional_sample(_chain_precision(4), 60))
    solver = RidgeSolver()

    gcoda_sub(s, 0.1, solver=solver, k_max=1, tol_err=0.5)

    matrix, lam = solver.calls[0]
    assert lam == 0.1
    # With the identity as warm start the projection vanishes on a
    # log-ratio covariance and only the 1/p shift remains.
    np.testing.assert_allclose(matrix, s + 1.0 / 4, atol=1e-12)


def test_step_matrix_is_projected_covariance_plus_shift():
    s = clr_covariance(_compositional_sample(_chain_precision(4), 60))
    rng = np.random.default_rng(5)
    a = rng.standard_normal((4, 4))
    isig = a @ a.T + 4 * np.eye(4)
    solver = RidgeSolver()

    gcoda_sub(s, 0.1, isig=isig, solver=solver, k_max=1, tol_err=0.5)

    total = isig.sum()
    v = isig.sum(axis=1) / total
    q = np.eye(4) - np.outer(np.ones(4), v)
    expected = q @ s @ q.T + 1.0 / total
    np.testing.assert_allclose(solver.calls[0][0], expected, atol=1e-12)


def test_gcoda_sub_returns_symmetric_positive_definite_estimate():
    s = clr_covariance(_compositional_sample(_chain_precision(5), 80))
    warm_start = np.eye(5)

    result = gcoda_sub(s, 0.05, isig=warm_start)

    assert isinstance(result, GcodaSubResult)
    assert result.converged
    assert 1 <= result.n_iter <= 100
    np.testing.assert_array_equal(warm_start, np.eye(5))
    np.testing.assert_allclose(result.isig, result.isig.T, atol=1e-10)
    assert np.all(np.linalg.eigvalsh(result.isig) > 0)
    penalty = 0.05 * np.abs(result.isig).sum()
    assert result.nloglik == pytest.approx(
        gcoda_objective(result.isig, s, 0.05) - penalty, rel=1e-10
    )
    assert set(result.as_dict()) == {"iSig", "nloglik"}


def test_gcoda_sub_warns_when_iteration_cap_is_hit():
    s = clr_covariance(_compositional_sample(_chain_precision(4), 60))

    with pytest.warns(RuntimeWarning, match="k_max=1"):
        result = gcoda_sub(s, 0.05, k_max=1, tol_err=1e-12)

    assert not result.converged
    assert result.n_iter == 1
    assert result.error > 1e-12
    assert np.all(np.linalg.eigvalsh(result.isig) > 0)


@pytest.mark.filterwarnings("ignore::sklearn.exceptions.ConvergenceWarning")
def test_gcoda_sub_with_sklearn_backend():
    s = clr_covariance(_compositional_sample(_chain_precision(4), 80))

    result = gcoda_sub(s, 0.1, solver=SklearnGraphicalLasso(max_iter=1000))

    np.testing.assert_allclose(result.isig, result.isig.T, atol=1e-10)
    assert np.all(np.linalg.eigvalsh(result.isig) > 0)


@pytest.mark.parametrize("kwargs", [{"lambda_": 0.0}, {"tol_err": 0.0}, {"k_max": 0}])
def test_gcoda_sub_rejects_invalid_arguments(kwargs):
    params = {"lambda_": 0.1}
    params.update(kwargs)

    with pytest.raises(ValueError):
        gcoda_sub(_exchangeable_s(), **params)


def test_lambda_sequence_is_log_spaced_from_lambda_max():
    s = _exchangeable_s()

    lambdas = lambda_sequence(s, lambda_min_ratio=1e-2, nlambda=5)

    assert lambdas.shape == (5,)
    assert lambdas[0] == pytest.approx(3.0)
    assert lambdas[-1] == pytest.approx(3.0e-2)
    assert np.all(np.diff(lambdas) < 0)
    np.testing.assert_allclose(np.diff(np.log(lambdas)), np.full(4, np.log(1e-2) / 4))


def test_lambda_sequence_single_value_is_lambda_max():
    s = np.array([[1.5, -0.25], [-0.25, 0.2]])

    # max(s - I) is 0.5, -min(s - I) is 0.8
    np.testing.assert_allclose(lambda_sequence(s, nlambda=1), [0.8])


def test_edge_pattern_drops_diagonal_and_small_entries():
    isig = np.array([[2.0, 1e-7, -0.3], [1e-7, 2.0, 0.0], [-0.3, 0.0, 2.0]])

    pattern = edge_pattern(isig)

    np.testing.assert_array_equal(pattern, [[0, 0, 1], [0, 0, 0], [1, 0, 0]])


def test_path_without_extension_when_networks_are_dense(caplog):
    caplog.set_level(logging.INFO, logger="gcoda.solver")
    fit = gcoda_path(_exchangeable_s(), lambda_min_ratio=0.1, nlambda=4, solver=RidgeSolver())

    assert len(fit.lambdas) == 4
    assert fit.n_extended == 0
    np.testing.assert_array_equal(fit.df, [3, 3, 3, 3])
    assert not [r for r in caplog.records if "Extending" in r.getMessage()]


def test_path_extension_stops_at_length_cap(caplog):
    caplog.set_level(logging.INFO, logger="gcoda.solver")
    fit = gcoda_path(_exchangeable_s(), lambda_min_ratio=0.5, nlambda=3, solver=DiagonalSolver())

    assert len(fit.lambdas) == 3 + 15
    assert fit.n_initial == 3
    assert fit.n_extended == 15
    np.testing.assert_allclose(fit.lambdas[3:], fit.lambdas[2] / 2.0 ** np.arange(1, 16))
    np.testing.assert_array_equal(fit.df, np.zeros(18, dtype=int))
    assert len(fit.icov) == len(fit.path) == len(fit.nloglik) == 18
    extensions = [r for r in caplog.records if "Extending" in r.getMessage()]
    assert len(extensions) == 15
    assert all(r.levelno == logging.INFO for r in extensions)
    assert _stopping_rules(fit, 3, 3) == {"density": False, "cap": True, "floor": False}


def test_path_extension_stops_at_lambda_floor():
    fit = gcoda_path(_exchangeable_s(), lambda_min_ratio=1e-4, nlambda=2, solver=DiagonalSolver())

    assert len(fit.lambdas) == 11
    assert fit.lambdas[-1] <= 1e-6 < fit.lambdas[-2]
    assert _stopping_rules(fit, 3, 2) == {"density": False, "cap": False, "floor": True}


def test_path_extension_settings_are_configurable():
    fit = gcoda_path(
        _exchangeable_s(),
        lambda_min_ratio=0.5,
        nlambda=3,
        solver=DiagonalSolver(),
        density_ratio=0.0,
    )
    assert fit.n_extended == 0

    fit = gcoda_path(
        _exchangeable_s(),
        lambda_min_ratio=0.5,
        nlambda=3,
        solver=DiagonalSolver(),
        extra_lambdas=2,
    )
    assert len(fit.lambdas) == 5


def test_path_warm_starts_from_previous_estimate():
    solver = RidgeSolver()
    s = _exchangeable_s()

    fit = gcoda_path(s, lambda_min_ratio=0.1, nlambda=2, solver=solver)

    second_lambda_calls = [m for m, lam in solver.calls if lam == fit.lambdas[1]]
    isig = fit.icov[0]
    total = isig.sum()
    v = isig.sum(axis=1) / total
    q = np.eye(3) - np.outer(np.ones(3), v)
    np.testing.assert_allclose(second_lambda_calls[0], q @ s @ q.T + 1.0 / total, atol=1e-12)


def test_ebic_scores_formula():
    nloglik = np.array([1.0, 0.5, 0.2])
    df = np.array([0, 2, 5])

    scores = ebic_scores(nloglik, df, n=20, p=6, ebic_gamma=0.5)

    expected = 20 * nloglik + np.log(20) * df + 4 * 0.5 * np.log(6) * df
    np.testing.assert_allclose(scores, expected)


def test_select_ebic_takes_first_minimum():
    index, scores = select_ebic([1.0, 0.5, 0.5], [0, 1, 1], n=10, p=4, ebic_gamma=0.0)

    assert index == 1
    assert scores[1] == scores[2]


def test_gcoda_returns_consistent_selection():
    x = _compositional_sample(_chain_precision(5), 60)

    result = gcoda(x, nlambda=6, lambda_min_ratio=1e-2)

    assert isinstance(result, GcodaResult)
    k = len(result.lambdas)
    assert len(result.icov) == len(result.path) == k
    assert result.ebic_score.shape == result.df.shape == result.nloglik.shape == (k,)
    assert result.opt_index == int(np.argmin(result.ebic_score))
    assert result.opt_lambda == result.lambdas[result.opt_index]
    np.testing.assert_array_equal(result.refit, result.path[result.opt_index])
    np.testing.assert_array_equal(result.opt_icov, result.icov[result.opt_index])
    for isig, pattern, df in zip(result.icov, result.path, result.df):
        np.testing.assert_allclose(isig, isig.T, atol=1e-10)
        assert np.all(np.linalg.eigvalsh(isig) > 0)
        np.testing.assert_array_equal(pattern, pattern.T)
        assert np.all(np.diag(pattern) == 0)
        assert df == pattern.sum() // 2

    as_dict = result.as_dict()
    assert set(as_dict) == {
        "lambda",
        "nloglik",
        "df",
        "path",
        "icov",
        "ebic.score",
        "opt.index",
        "refit",
        "opt.icov",
        "opt.lambda",
    }


def test_edge_count_grows_along_initial_path():
    x = _compositional_sample(_chain_precision(5), 100, seed=21)
    nlambda = 8

    result = gcoda(x, nlambda=nlambda, lambda_min_ratio=1e-3)

    stopping = _stopping_rules(result, 5, nlambda)
    assert any(stopping.values())
    assert np.all(np.diff(result.df[:nlambda]) >= 0)
    assert result.df[nlambda - 1] > result.df[0]


def test_single_lambda_max_is_at_most_as_dense_as_small_lambda():
    x = _compositional_sample(_chain_precision(5), 100, seed=8)
    s = clr_covariance(x)

    at_max = gcoda_path(s, nlambda=1, extra_lambdas=0)
    small = gcoda_path(s, nlambda=5, lambda_min_ratio=1e-3, extra_lambdas=0)

    assert at_max.lambdas[0] == small.lambdas[0]
    assert at_max.df[0] <= small.df[-1]


def test_larger_ebic_gamma_never_selects_denser_network():
    x = _compositional_sample(_chain_precision(5), 60, seed=2)
    n, p = x.shape
    fit = gcoda_path(clr_covariance(x), nlambda=8, lambda_min_ratio=1e-3)

    selected = [
        fit.df[select_ebic(fit.nloglik, fit.df, n, p, gamma)[0]]
        for gamma in (0.0, 0.25, 0.5, 1.0, 5.0)
    ]

    assert all(a >= b for a, b in zip(selected, selected[1:]))


def test_three_component_chain_is_recovered():
    omega = _chain_precision(3, diag=1.0, off=-0.6)
    truth = (np.abs(omega) > 0).astype(int)
    np.fill_diagonal(truth, 0)
    upper = np.triu_indices(3, 1)

    matches = []
    for seed in range(20):
        result = gcoda(_compositional_sample(omega, 50, seed=seed), nlambda=5)
        matches.append(int(np.sum(result.refit[upper] == truth[upper])))

    # At least two of the three pairs agree with the chain for most draws.
    assert sum(m >= 2 for m in matches) >= 14


def test_counts_input_runs_end_to_end():
    rng = np.random.default_rng(99)
    x = _compositional_sample(_chain_precision(4), 40)
    counts = np.vstack([rng.multinomial(500, row) for row in x]).astype(float)

    result = gcoda(counts, counts=True, nlambda=4, lambda_min_ratio=1e-2)

    assert result.refit.shape == (4, 4)
    assert 0 <= result.opt_index < len(result.lambdas)


def test_identical_compositions_are_rejected():
    x = np.tile(np.array([0.25, 0.25, 0.5]), (30, 1))

    with pytest.raises(ValueError):
        gcoda(x)


def test_default_solver_is_coordinate_descent():
    s = clr_covariance(_compositional_sample(_chain_precision(4), 50))

    default = gcoda_sub(s, 0.1)
    explicit = gcoda_sub(s, 0.1, solver=CoordinateDescentGlasso())

    np.testing.assert_array_equal(default.isig, explicit.isig)
