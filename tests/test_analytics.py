"""Tests for session analytics."""

from datetime import timedelta

import pytest

from lensstate.state.analytics import SessionAnalytics
from lensstate.state.types import (
    EvolutionChain,
    EvolutionStage,
    HybridAttempt,
    Session,
    SessionMetrics,
    TrendDirection,
)
from tests.conftest import START_TIME, FakeClock, make_lens


def _session(**kwargs) -> Session:
    return Session(
        id="s1",
        user_id="u1",
        start_time=START_TIME,
        last_activity=START_TIME,
        **kwargs,
    )


def _with_lenses(*domain_lists: list[str]) -> Session:
    session = _session()
    session.context.generated_lenses = [
        make_lens(f"lens {i}", domains=domains, timestamp=START_TIME + timedelta(minutes=i))
        for i, domains in enumerate(domain_lists)
    ]
    return session


def _chain(*levels: float) -> EvolutionChain:
    return EvolutionChain(
        original_idea="idea",
        stages=[
            EvolutionStage(stage=i + 1, content="c", madness_level=level, timestamp=START_TIME)
            for i, level in enumerate(levels)
        ],
    )


def _hybrid(method: str, result: str | None = None) -> HybridAttempt:
    return HybridAttempt(
        idea_a="a", idea_b="b", method=method, timestamp=START_TIME, result=result
    )


class TestCreativityTrend:
    def test_stable_with_too_few_samples(self):
        trend = SessionAnalytics().calculate_creativity_trend(_with_lenses(["jazz"]))
        assert trend.direction == TrendDirection.STABLE
        assert trend.rate == 0.0
        assert trend.confidence == 0.0

    def test_increasing(self):
        session = _with_lenses(["a"], ["a", "b"], ["a", "b", "c"], ["a", "b", "c", "d"])
        trend = SessionAnalytics().calculate_creativity_trend(session)

        assert trend.direction == TrendDirection.INCREASING
        assert trend.rate == pytest.approx(20.5)
        assert trend.confidence == 1.0
        assert trend.recent_values == pytest.approx([20, 40.5, 61, 81.5])

    def test_decreasing(self):
        session = _with_lenses(["a", "b", "c", "d"], ["a", "b", "c"], ["a", "b"], ["a"])
        trend = SessionAnalytics().calculate_creativity_trend(session)
        assert trend.direction == TrendDirection.DECREASING
        assert trend.rate < 0

    def test_window_limits_samples(self):
        session = _with_lenses(*[["a"]] * 30)
        trend = SessionAnalytics().calculate_creativity_trend(session)
        assert len(trend.recent_values) == 20


class TestEffectiveDomains:
    def test_ranked_by_average_score(self):
        session = _with_lenses(["jazz", "biology", "chess", "origami"], ["jazz"])
        stats = SessionAnalytics().find_most_effective_domains(session)

        assert [s.domain for s in stats] == ["biology", "chess", "origami", "jazz"]
        jazz = stats[-1]
        assert jazz.usage_count == 2
        assert jazz.average_creativity_score == 50.0
        assert jazz.success_rate == 0.5
        assert jazz.last_used == START_TIME + timedelta(minutes=1)
        assert stats[0].success_rate == 1.0

    def test_empty(self):
        assert SessionAnalytics().find_most_effective_domains(_session()) == []


class TestEvolutionPatterns:
    def test_common_patterns_and_unusual_methods(self):
        session = _session()
        session.context.evolution_chains = [_chain(2, 5, 8), _chain(2, 5, 8), _chain(3)]
        session.context.hybrid_attempts = [
            _hybrid("synthesis"),
            _hybrid("synthesis"),
            _hybrid("collision", result="umbrella drone"),
        ]

        analysis = SessionAnalytics().analyze_evolution_patterns(session)

        top = analysis.common_patterns[0]
        assert top.pattern == "2-5-8"
        assert top.frequency == 2
        assert top.effectiveness == pytest.approx(0.5)
        assert [c.combination for c in analysis.unusual_combinations] == [["collision"]]
        unusual = analysis.unusual_combinations[0]
        assert unusual.uniqueness == pytest.approx(2 / 3)
        assert unusual.outcome == "umbrella drone"

    def test_empty_session(self):
        analysis = SessionAnalytics().analyze_evolution_patterns(_session())
        assert analysis.common_patterns == []
        assert analysis.unusual_combinations == []


class TestSessionReport:
    def test_highlights_for_productive_session(self):
        session = _with_lenses(["a"], ["a", "b"], ["a", "b", "c"])
        session.metrics = SessionMetrics(total_generations=25, average_madness_index=6.5)
        session.context.evolution_chains = [_chain(4, 9)]
        session.last_activity = START_TIME + timedelta(minutes=10)

        report = SessionAnalytics().generate_session_report(session)

        assert report.session_id == "s1"
        assert report.duration == 600
        assert report.summary.total_ideas_generated == 25
        assert report.summary.peak_madness_level == 9
        assert report.summary.most_used_domains == ["c", "b", "a"]
        assert "Generated 25 creative solutions" in report.highlights
        assert "Most effective domain: c" in report.highlights
        assert "Creativity trending upward" in report.highlights
        assert "Reached extreme creativity level: 9/10" in report.highlights

    def test_recommendations_for_narrow_session(self):
        report = SessionAnalytics().generate_session_report(_session())

        assert report.highlights == []
        assert report.recommendations == [
            "Try exploring more diverse domains",
            "Experiment more with hybrid combinations",
        ]

    def test_report_serializes(self):
        data = SessionAnalytics().generate_session_report(_session()).to_dict()
        assert data["summary"]["most_used_domains"] == []
        assert data["duration"] == 0


class TestSessionHealth:
    def test_low_diversity_penalty(self):
        clock = FakeClock()
        health = SessionAnalytics(now=clock).calculate_session_health(_session())
        assert health.score == 85
        assert health.issues == ["Low domain diversity"]

    def test_inactivity_penalty(self):
        clock = FakeClock()
        clock.advance(minutes=31)
        session = _session(
            metrics=SessionMetrics(unique_domains_used=frozenset("abcde")),
        )

        health = SessionAnalytics(now=clock).calculate_session_health(session)

        assert health.score == 80
        assert health.issues == ["Session has been inactive for over 30 minutes"]

    def test_large_context_penalty(self):
        clock = FakeClock()
        session = _with_lenses(*[["x" * 100]] * 400)

        health = SessionAnalytics(now=clock).calculate_session_health(session)

        assert "Context size is large, consider trimming" in health.issues
        assert health.score == 75
