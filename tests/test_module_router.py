"""Tests for adaptive/module_router.py"""

import pytest

from adaptive.errors import ValidationError
from adaptive.mock_tests import MATH_SECTION, VERBAL_SECTION, get_mock_test
from adaptive.module_router import ModuleRouter
from config import Settings, settings as default_settings


@pytest.fixture
def router():
    return ModuleRouter({"verbal": 0.70, "math": 0.75})


def test_scale_score_endpoints(router):
    assert router.scale_score(0.0, 800) == 400
    assert router.scale_score(1.0, 800) == 800
    assert router.scale_score(0.95, 800) > router.scale_score(0.85, 800)


def test_scale_score_bands(router):
    assert router.scale_score(0.78, 800) == 682
    assert 650 <= router.scale_score(0.78, 800) < 690
    assert router.scale_score(0.30, 800) == 500
    assert router.scale_score(0.60, 800) == 600
    assert router.scale_score(0.90, 800) == 750


def test_scale_score_respects_section_cap(router):
    assert router.scale_score(1.0, 400) == 400
    assert router.scale_score(0.0, 400) == 200


def test_scale_score_rejects_bad_accuracy(router):
    for bad in (-0.01, 1.01, float("nan")):
        with pytest.raises(ValidationError):
            router.scale_score(bad, 800)


def test_path_boundary_is_inclusive(router):
    at_threshold = router.build_module_result("verbal", 1, 7, 10, "baseline")
    below = router.build_module_result("verbal", 1, 6, 10, "baseline")
    assert router.decide_path(at_threshold) == "hard"
    assert router.decide_path(below) == "easy"


def test_nineteen_of_twenty_seven_verbal_goes_hard(router):
    result = router.build_module_result("verbal", 1, 19, 27, "baseline")
    assert result.performance == pytest.approx(0.7037, abs=1e-4)
    assert router.decide_path(result) == "hard"


def test_math_threshold_is_higher(router):
    result = router.build_module_result("math", 1, 16, 22, "baseline")  # 0.727
    assert router.decide_path(result) == "easy"
    assert router.decide_path(result, threshold=0.70) == "hard"


def test_default_thresholds_come_from_settings():
    router = ModuleRouter()
    assert router.thresholds == default_settings.routing_thresholds
    assert router.threshold_for("writing") == default_settings.default_routing_threshold

    custom = Settings(routing_thresholds={"verbal": 0.6}, default_routing_threshold=0.5)
    router = ModuleRouter(custom.routing_thresholds, custom.default_routing_threshold)
    assert router.threshold_for("verbal") == 0.6
    assert router.threshold_for("math") == 0.5


def test_build_module_result_validation(router):
    with pytest.raises(ValidationError):
        router.build_module_result("verbal", 1, 28, 27, "baseline")
    with pytest.raises(ValidationError):
        router.build_module_result("verbal", 1, 0, 0, "baseline")
    with pytest.raises(ValidationError):
        router.build_module_result("verbal", 2, 5, 27, "medium")


def test_module_result_is_frozen(router):
    result = router.build_module_result("math", 1, 10, 22, "baseline")
    with pytest.raises(Exception):
        result.correct_count = 22


def test_section_accuracy_and_totals(router):
    results = [
        router.build_module_result("verbal", 1, 20, 27, "baseline"),
        router.build_module_result("verbal", 2, 25, 27, "hard"),
    ]
    assert router.section_accuracy(results) == pytest.approx(45 / 54)
    assert router.section_accuracy([]) == 0.0
    assert router.combine_section_scores([780, 790], 1600) == 1570
    assert router.combine_section_scores([800, 800, 100], 1600) == 1600


def test_distribution_for_module(router):
    assert router.distribution_for(VERBAL_SECTION, 1) == VERBAL_SECTION.module1_mix
    assert router.distribution_for(MATH_SECTION, 2, "hard").hard == 0.75
    assert router.distribution_for(VERBAL_SECTION, 2, "easy").hard == 0.0


def test_mock_test_catalog():
    form = get_mock_test("digital-sat-1")
    assert form.total_score == 1600
    assert [s.id for s in form.sections] == ["verbal", "math"]
    assert form.section("math").questions_per_module == 22
    assert get_mock_test("unknown") is None
