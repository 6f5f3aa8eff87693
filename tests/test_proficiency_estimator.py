"""Tests for adaptive/proficiency_estimator.py"""

import math
import random
import threading
from datetime import datetime, timedelta, timezone

import pytest

from adaptive.errors import EstimationError, ValidationError
from adaptive.proficiency_estimator import ItemParameters, ProficiencyEstimator, SkillProficiency

MEDIUM = ItemParameters(a=1.0, b=0.0)


def test_item_parameters_from_labels():
    assert ProficiencyEstimator.get_item_parameters("easy") == ItemParameters(0.8, -1.0)
    assert ProficiencyEstimator.get_item_parameters("medium") == ItemParameters(1.0, 0.0)
    assert ProficiencyEstimator.get_item_parameters("HARD") == ItemParameters(1.2, 1.0)
    # Unknown labels fall back to medium
    assert ProficiencyEstimator.get_item_parameters("brutal") == ItemParameters(1.0, 0.0)


def test_three_correct_medium_answers():
    estimator = ProficiencyEstimator()
    thetas, sigmas = [0.0], [1.0]

    for _ in range(3):
        result = estimator.record_answer("linear_equations", True, 30000, MEDIUM)
        assert result.error is None
        thetas.append(result.new_theta)
        sigmas.append(result.new_sigma)

    assert all(b > a for a, b in zip(thetas, thetas[1:]))
    assert all(b < a for a, b in zip(sigmas, sigmas[1:]))
    assert thetas[1] == pytest.approx(0.5)
    assert sigmas[1] == pytest.approx(1 / math.sqrt(1.25))
    assert estimator.should_stop("linear_equations").stop is False

    state = estimator.get_proficiency("linear_equations")
    assert state.attempts == 3
    assert state.correct_count == 3
    assert state.streak == 3
    assert state.recent_accuracy == 1.0


def test_predicted_probability_is_taken_before_update():
    estimator = ProficiencyEstimator()
    result = estimator.record_answer("linear_equations", True, 1000, MEDIUM)
    assert result.predicted_probability == pytest.approx(0.5)
    assert result.information_gain == pytest.approx(0.25)


def test_sigma_never_increases():
    estimator = ProficiencyEstimator()
    rng = random.Random(0)
    labels = ["easy", "medium", "hard"]
    sigma = 1.0

    for _ in range(200):
        params = ProficiencyEstimator.get_item_parameters(rng.choice(labels))
        result = estimator.record_answer("percentages", rng.random() < 0.6, rng.randint(0, 90000), params)
        assert result.new_sigma <= sigma
        assert result.new_sigma >= estimator.MIN_SIGMA
        assert -3.0 <= result.new_theta <= 3.0
        sigma = result.new_sigma


def test_surprising_success_moves_theta_more():
    estimator = ProficiencyEstimator()
    hard = ItemParameters(a=1.2, b=1.0)  # p ~ 0.23 at theta 0
    trivial = ItemParameters(a=1.0, b=-3.0)  # p ~ 0.95 at theta 0

    hard_result = estimator.record_answer("skill_a", True, 1000, hard)
    trivial_result = estimator.record_answer("skill_b", True, 1000, trivial)

    assert hard_result.predicted_probability < 0.5
    assert trivial_result.predicted_probability > 0.9
    assert hard_result.new_theta > trivial_result.new_theta


def test_theta_step_is_clipped():
    estimator = ProficiencyEstimator()
    result = estimator.record_answer("skill_a", True, 1000, ItemParameters(a=2.5, b=2.5))
    assert result.new_theta == pytest.approx(0.75)


def test_invalid_inputs_rejected_before_state_changes():
    estimator = ProficiencyEstimator()

    with pytest.raises(ValidationError):
        estimator.record_answer("skill_a", True, 1000, ItemParameters(a=0.0, b=0.0))
    with pytest.raises(ValidationError):
        estimator.record_answer("skill_a", True, 1000, ItemParameters(a=-1.0, b=0.0))
    with pytest.raises(ValidationError):
        estimator.record_answer("skill_a", True, 1000, ItemParameters(a=1.0, b=float("nan")))
    with pytest.raises(ValidationError):
        estimator.record_answer("skill_a", True, -5, MEDIUM)

    assert estimator.get_proficiency("skill_a") is None


def test_numeric_failure_keeps_estimate_but_counts_attempt():
    estimator = ProficiencyEstimator()
    estimator.record_answer("skill_a", True, 1000, MEDIUM)
    before = estimator.get_proficiency("skill_a")
    theta, sigma = before.theta, before.sigma

    estimator.probability_correct = lambda theta, params: float("nan")
    result = estimator.record_answer("skill_a", True, 1000, MEDIUM)

    assert isinstance(result.error, EstimationError)
    assert result.error.skill_id == "skill_a"
    assert result.new_theta == theta
    assert result.new_sigma == sigma
    assert estimator.get_proficiency("skill_a").attempts == 2


def test_extreme_discrimination_is_contained():
    estimator = ProficiencyEstimator()
    before = estimator.record_answer("skill_a", True, 1000, MEDIUM)

    # a ** 2 overflows a float
    result = estimator.record_answer("skill_a", True, 1000, ItemParameters(a=1e200, b=0.0))

    assert isinstance(result.error, EstimationError)
    assert result.error.skill_id == "skill_a"
    assert result.new_theta == before.new_theta
    assert result.new_sigma == before.new_sigma
    assert result.information_gain == 0.0
    state = estimator.get_proficiency("skill_a")
    assert state.attempts == 2
    assert state.correct_count == 2


# ==================== Concurrency ====================

def test_concurrent_answers_on_one_skill_are_serialized():
    workers, per_worker = 8, 3
    estimator = ProficiencyEstimator()
    barrier = threading.Barrier(workers)
    results = []
    results_guard = threading.Lock()

    def answer_many():
        barrier.wait()
        for _ in range(per_worker):
            result = estimator.record_answer("linear_equations", True, 1000, MEDIUM)
            with results_guard:
                results.append(result)

    threads = [threading.Thread(target=answer_many) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    sequential = ProficiencyEstimator()
    chain = [sequential.record_answer("linear_equations", True, 1000, MEDIUM)
             for _ in range(workers * per_worker)]

    state = estimator.get_proficiency("linear_equations")
    assert state.attempts == workers * per_worker
    assert state.correct_count == workers * per_worker
    # Same updates as one thread applying them in turn, none lost
    assert state.theta == pytest.approx(chain[-1].new_theta)
    assert state.sigma == pytest.approx(chain[-1].new_sigma)
    assert sorted(r.new_sigma for r in results) == pytest.approx(sorted(r.new_sigma for r in chain))
    assert state.sigma == min(r.new_sigma for r in results)


# ==================== Stopping Rules ====================

def test_should_stop_unknown_skill():
    assert ProficiencyEstimator().should_stop("nothing").stop is False


def test_should_stop_converged():
    estimator = ProficiencyEstimator()
    estimator.record_answer("skill_a", False, 1000, MEDIUM)
    estimator.get_proficiency("skill_a").sigma = 0.25

    decision = estimator.should_stop("skill_a")
    assert decision.stop
    assert decision.reason == "converged"


def test_should_stop_budget_exhausted():
    estimator = ProficiencyEstimator()
    estimator.MAX_ITEMS_PER_SKILL = 3
    for _ in range(3):
        estimator.record_answer("skill_a", False, 1000, MEDIUM)

    decision = estimator.should_stop("skill_a")
    assert decision.stop
    assert decision.reason == "budget_exhausted"


def test_should_stop_mastery():
    estimator = ProficiencyEstimator()
    estimator.record_answer("skill_a", True, 1000, MEDIUM)
    state = estimator.get_proficiency("skill_a")
    state.theta = 1.6
    state.streak = 3
    state.sigma = 0.6

    decision = estimator.should_stop("skill_a")
    assert decision.stop
    assert decision.reason == "mastery"


def test_mastery_flag_needs_confident_estimate():
    estimator = ProficiencyEstimator()
    state = SkillProficiency(skill_id="skill_a", theta=1.7, sigma=0.5)
    assert estimator.check_mastery(state) is False

    state.sigma = 0.3
    assert estimator.check_mastery(state) is True


def test_recent_accuracy_uses_rolling_window():
    estimator = ProficiencyEstimator()
    for _ in range(8):
        estimator.record_answer("skill_a", False, 1000, MEDIUM)
    for _ in range(4):
        estimator.record_answer("skill_a", True, 1000, MEDIUM)

    state = estimator.get_proficiency("skill_a")
    assert len(state.recent_results) == 8
    assert state.recent_accuracy == pytest.approx(0.5)


# ==================== Hydration ====================

def test_load_applies_decay_to_unmastered_skills():
    now = datetime(2026, 3, 11, tzinfo=timezone.utc)
    stale = SkillProficiency(skill_id="circles", theta=1.0, sigma=5.0, attempts=4,
                             last_updated=now - timedelta(days=10))
    mastered = SkillProficiency(skill_id="ratios_rates", theta=2.0, sigma=0.25, attempts=12,
                                last_updated=now - timedelta(days=10), mastery_achieved=True)

    estimator = ProficiencyEstimator()
    estimator.load([stale, mastered], now=now)

    assert estimator.get_proficiency("circles").theta == pytest.approx(0.8)
    assert estimator.get_proficiency("circles").sigma == 2.0
    assert estimator.get_proficiency("ratios_rates").theta == 2.0


def test_snapshot_serializes_state():
    estimator = ProficiencyEstimator(user_id="u1")
    estimator.record_answer("skill_a", True, 1000, MEDIUM, subject="math")

    [record] = estimator.snapshot()
    restored = SkillProficiency.from_dict(record)
    assert restored.subject == "math"
    assert restored.attempts == 1
    assert restored.last_updated is not None
    assert list(restored.recent_results) == [True]
