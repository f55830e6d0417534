"""Tests for score aggregation and grading."""

import pytest

from originscore.scanner.base import ModuleName, ModuleResult, ModuleStatus, status_for_score
from originscore.utils.scoring import combine, grade_for, normalize_weights


def result(module, score, status=None):
    return ModuleResult(module=module, score=score, status=status or status_for_score(score))


class TestGradeFor:
    """Tests for grade_for()."""

    @pytest.mark.parametrize("score, grade", [
        (100, "A+"), (95, "A+"), (94, "A"), (90, "A"), (89, "B+"), (85, "B+"),
        (84, "B"), (80, "B"), (79, "C"), (70, "C"), (69, "D"), (60, "D"), (59, "F"), (0, "F"),
    ])
    def test_boundaries(self, score, grade):
        """Each threshold is inclusive."""
        assert grade_for(score) == grade

    def test_none_stays_none(self):
        """No score means no grade."""
        assert grade_for(None) is None


class TestNormalizeWeights:
    """Tests for normalize_weights()."""

    def test_redistributes_over_present_modules(self):
        """Missing modules' weight is shared proportionally."""
        weights = normalize_weights({"transport": 0.4, "headers": 0.3, "auth": 0.3}, ["transport", "auth"])
        assert weights == pytest.approx({"transport": 0.4 / 0.7, "auth": 0.3 / 0.7})
        assert sum(weights.values()) == pytest.approx(1.0, abs=1e-9)

    def test_zero_weight_modules_only(self):
        """Nothing to distribute yields an empty mapping."""
        assert normalize_weights({"transport": 0.0, "headers": 1.0}, ["transport"]) == {}


class TestCombine:
    """Tests for combine()."""

    def test_all_modules_scored(self):
        """The total is the weighted sum of module scores."""
        summary = combine([
            result(ModuleName.TRANSPORT, 100),
            result(ModuleName.HEADERS, 50),
            result(ModuleName.AUTH, 80),
        ], origin="https://example.com")

        assert summary.total_score == 79
        assert summary.grade == "C"
        assert summary.succeeded
        assert sum(summary.weights_used.values()) == pytest.approx(1.0, abs=1e-9)

    def test_failed_modules_are_excluded(self):
        """Timed out and errored modules keep their result but not their weight."""
        summary = combine([
            result(ModuleName.TRANSPORT, 90),
            result(ModuleName.HEADERS, 0, ModuleStatus.TIMEOUT),
            result(ModuleName.AUTH, 60),
        ])

        assert set(summary.weights_used) == {"transport", "auth"}
        assert summary.total_score == round(90 * 0.4 / 0.7 + 60 * 0.3 / 0.7)
        assert summary.modules["headers"].status is ModuleStatus.TIMEOUT

    def test_fail_status_still_counts(self):
        """A scored 0 is a real score, unlike an error."""
        summary = combine([result(ModuleName.TRANSPORT, 0), result(ModuleName.AUTH, 100)])
        assert summary.total_score == round(100 * 0.3 / 0.7)

    def test_nothing_scored(self):
        """No scored module means no score and no grade."""
        summary = combine([
            result(ModuleName.TRANSPORT, 0, ModuleStatus.ERROR),
            result(ModuleName.HEADERS, 0, ModuleStatus.RATE_LIMITED),
        ])

        assert summary.total_score is None
        assert summary.grade is None
        assert summary.weights_used == {}
        assert not summary.succeeded
        assert len(summary.modules) == 2

    def test_empty_results(self):
        """An empty scan produces no score."""
        assert combine([]).total_score is None

    def test_custom_weights(self):
        """Caller-supplied weights override the defaults."""
        summary = combine(
            [result(ModuleName.TRANSPORT, 100), result(ModuleName.HEADERS, 0)],
            base_weights={"transport": 1.0, "headers": 1.0, "auth": 1.0},
        )
        assert summary.total_score == 50

    @pytest.mark.parametrize("weights", [
        {"transport": -0.1, "headers": 0.5},
        {"transport": 0.0, "headers": 0.0, "auth": 0.0},
        {"dns": 1.0},
    ])
    def test_invalid_weights(self, weights):
        """Negative, all-zero and unknown weights are rejected."""
        with pytest.raises(ValueError):
            combine([result(ModuleName.TRANSPORT, 100)], base_weights=weights)

    def test_to_dict_shape(self):
        """The summary serializes to plain JSON types."""
        data = combine([result(ModuleName.AUTH, 70)], origin="https://example.com").to_dict()
        assert data["origin"] == "https://example.com"
        assert data["total_score"] == 70
        assert data["modules"]["auth"]["status"] == "warn"
        assert data["started_at"] is None
