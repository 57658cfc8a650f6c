"""Read-only reporting over a session's history.

Nothing here mutates a session or touches storage; every method takes a
Session and returns a fresh value object.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from lensstate.config.models import AnalyticsConfig
from lensstate.state.types import (
    CommonPattern,
    DomainStats,
    PatternAnalysis,
    ReportSummary,
    Session,
    SessionHealth,
    SessionReport,
    TrendData,
    TrendDirection,
    UnusualCombination,
)

# Lens scoring
DOMAIN_WEIGHT = 20
RECENCY_WEIGHT = 10
MAX_CREATIVITY_SCORE = 100.0
TREND_DEAD_BAND = 0.1

# Health penalties
LARGE_CONTEXT_BYTES = 50 * 1024
LARGE_CONTEXT_PENALTY = 10
INACTIVITY_LIMIT = timedelta(minutes=30)
INACTIVITY_PENALTY = 20
MIN_HEALTHY_DOMAINS = 5
LOW_DIVERSITY_PENALTY = 15

# Report rules
HIGHLIGHT_GENERATIONS = 20
HIGHLIGHT_PEAK_MADNESS = 8
RECOMMEND_MIN_DOMAINS = 10
RECOMMEND_MIN_HYBRIDS = 5

MAX_COMMON_PATTERNS = 10
MAX_UNUSUAL_COMBINATIONS = 5


class SessionAnalytics:
    """Trend, domain, pattern and health reports for one session."""

    def __init__(
        self,
        config: AnalyticsConfig | None = None,
        *,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config or AnalyticsConfig()
        self._now = now or (lambda: datetime.now(UTC))

    def calculate_creativity_trend(self, session: Session) -> TrendData:
        """Least-squares slope over the most recent lens scores.

        Each lens scores ``unique_domains * 20`` plus a recency bonus of up to
        10 for its position in the sample window.
        """
        window = self._config.sample_window_size
        recent = session.context.generated_lenses[-window:]
        values = [
            len(set(lens.domains)) * DOMAIN_WEIGHT + (index / window) * RECENCY_WEIGHT
            for index, lens in enumerate(recent)
        ]

        if len(values) < 2:
            return TrendData(
                direction=TrendDirection.STABLE,
                rate=0.0,
                confidence=0.0,
                recent_values=values,
            )

        n = len(values)
        sum_x = n * (n - 1) / 2
        sum_y = sum(values)
        sum_xy = sum(x * y for x, y in enumerate(values))
        sum_x2 = n * (n - 1) * (2 * n - 1) / 6
        slope = (n * sum_xy - sum_x * sum_y) / (n * sum_x2 - sum_x * sum_x)

        if slope > TREND_DEAD_BAND:
            direction = TrendDirection.INCREASING
        elif slope < -TREND_DEAD_BAND:
            direction = TrendDirection.DECREASING
        else:
            direction = TrendDirection.STABLE

        return TrendData(
            direction=direction,
            rate=slope,
            confidence=min(1.0, abs(slope) / 10),
            recent_values=values,
        )

    def find_most_effective_domains(self, session: Session) -> list[DomainStats]:
        """Per-domain usage, best average lens score first."""
        success_score = self._config.success_threshold * MAX_CREATIVITY_SCORE
        scores: dict[str, list[float]] = {}
        last_used: dict[str, datetime] = {}

        for lens in session.context.generated_lenses:
            lens_score = _lens_creativity(lens.domains)
            for domain in lens.domains:
                scores.setdefault(domain, []).append(lens_score)
                previous = last_used.get(domain)
                if previous is None or lens.timestamp > previous:
                    last_used[domain] = lens.timestamp

        stats = [
            DomainStats(
                domain=domain,
                usage_count=len(domain_scores),
                average_creativity_score=sum(domain_scores) / len(domain_scores),
                success_rate=sum(1 for s in domain_scores if s >= success_score)
                / len(domain_scores),
                last_used=last_used[domain],
            )
            for domain, domain_scores in scores.items()
        ]
        stats.sort(
            key=lambda s: (
                -s.average_creativity_score,
                -s.usage_count,
                -s.last_used.timestamp(),
                s.domain,
            )
        )
        return stats

    def analyze_evolution_patterns(self, session: Session) -> PatternAnalysis:
        """Common madness progressions and one-off hybrid methods."""
        pattern_counts: Counter[str] = Counter()
        pattern_effectiveness: dict[str, float] = {}
        for chain in session.context.evolution_chains:
            levels = [stage.madness_level for stage in chain.stages]
            pattern = "-".join(_format_level(level) for level in levels)
            pattern_counts[pattern] += 1
            if levels:
                pattern_effectiveness[pattern] = sum(levels) / len(levels) / 10
            else:
                pattern_effectiveness[pattern] = 0.0

        common = [
            CommonPattern(
                pattern=pattern,
                frequency=frequency,
                effectiveness=pattern_effectiveness[pattern],
            )
            for pattern, frequency in pattern_counts.most_common(MAX_COMMON_PATTERNS)
        ]

        hybrids = session.context.hybrid_attempts
        method_counts: Counter[str] = Counter()
        outcomes: dict[str, str] = {}
        for hybrid in hybrids:
            combo = "+".join(sorted([hybrid.method]))
            method_counts[combo] += 1
            if hybrid.result and combo not in outcomes:
                outcomes[combo] = hybrid.result

        uniqueness = 1 - 1 / len(hybrids) if hybrids else 0.0
        unusual = [
            UnusualCombination(
                combination=combo.split("+"),
                uniqueness=uniqueness,
                outcome=outcomes.get(combo, "Unknown"),
            )
            for combo, count in method_counts.items()
            if count == 1
        ][:MAX_UNUSUAL_COMBINATIONS]

        return PatternAnalysis(common_patterns=common, unusual_combinations=unusual)

    def generate_session_report(self, session: Session) -> SessionReport:
        domains = self.find_most_effective_domains(session)
        trend = self.calculate_creativity_trend(session)
        metrics = session.metrics

        peak_madness = max(
            (
                stage.madness_level
                for chain in session.context.evolution_chains
                for stage in chain.stages
            ),
            default=0.0,
        )

        highlights: list[str] = []
        if metrics.total_generations > HIGHLIGHT_GENERATIONS:
            highlights.append(f"Generated {metrics.total_generations} creative solutions")
        if domains:
            highlights.append(f"Most effective domain: {domains[0].domain}")
        if trend.direction == TrendDirection.INCREASING:
            highlights.append("Creativity trending upward")
        if peak_madness >= HIGHLIGHT_PEAK_MADNESS:
            highlights.append(
                f"Reached extreme creativity level: {_format_level(peak_madness)}/10"
            )

        recommendations: list[str] = []
        if len(metrics.unique_domains_used) < RECOMMEND_MIN_DOMAINS:
            recommendations.append("Try exploring more diverse domains")
        if metrics.successful_hybrids < RECOMMEND_MIN_HYBRIDS:
            recommendations.append("Experiment more with hybrid combinations")
        if trend.direction == TrendDirection.DECREASING:
            recommendations.append("Consider increasing madness levels")

        return SessionReport(
            session_id=session.id,
            duration=(session.last_activity - session.start_time).total_seconds(),
            summary=ReportSummary(
                total_ideas_generated=metrics.total_generations,
                average_creativity=metrics.average_madness_index,
                most_used_domains=[d.domain for d in domains[:3]],
                peak_madness_level=peak_madness,
            ),
            highlights=highlights,
            recommendations=recommendations,
        )

    def calculate_session_health(self, session: Session) -> SessionHealth:
        """Score out of 100 with fixed penalties, floored at 0."""
        issues: list[str] = []
        score = 100

        if session.context.serialized_size() > LARGE_CONTEXT_BYTES:
            issues.append("Context size is large, consider trimming")
            score -= LARGE_CONTEXT_PENALTY

        if self._now() - session.last_activity > INACTIVITY_LIMIT:
            issues.append("Session has been inactive for over 30 minutes")
            score -= INACTIVITY_PENALTY

        if len(session.metrics.unique_domains_used) < MIN_HEALTHY_DOMAINS:
            issues.append("Low domain diversity")
            score -= LOW_DIVERSITY_PENALTY

        return SessionHealth(score=max(0, score), issues=issues)


def _lens_creativity(domains: list[str]) -> float:
    return min(MAX_CREATIVITY_SCORE, float(len(set(domains)) * DOMAIN_WEIGHT))


def _format_level(level: float) -> str:
    return str(int(level)) if float(level).is_integer() else f"{level:g}"
