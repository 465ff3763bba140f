"""
Case Analytics

Cross-case rollups computed from the transition log: per-stage durations,
SLA delays, efficiency, bottlenecks, performer rankings and monthly trends.
Durations are reported in hours and attributed to the stage being left.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from ..observability import traced
from .models import (
    CaseAnalytics,
    CaseRecord,
    PerformerStats,
    SlaBreach,
    StageAnalytics,
    TrendPoint,
    Transition,
)
from .stages import CaseStage, StageDefinition, get_stage_definition

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600.0


def efficiency_score(avg_duration: float, delay_frequency: float, sla_hours: float) -> float:
    """100 minus a delay penalty (up to 60) and an overrun penalty (up to 40)."""
    overrun = 0.0
    if sla_hours > 0:
        overrun = min(1.0, max(0.0, avg_duration / sla_hours - 1.0))
    elif avg_duration > 0:
        overrun = 1.0
    score = 100.0 - 60.0 * delay_frequency - 40.0 * overrun
    return round(min(100.0, max(0.0, score)), 1)


def _overrun(hours: float, sla_hours: float) -> float:
    """Hours over SLA as a multiple of the SLA; a zero SLA is overrun by any wait."""
    if sla_hours > 0:
        return hours / sla_hours
    return math.inf


def _completion_hours(case: CaseRecord) -> Optional[float]:
    if case.current_state != CaseStage.CLOSED or case.closed_at is None:
        return None
    return (case.closed_at - case.created_at).total_seconds() / SECONDS_PER_HOUR


def _mean(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return round(sum(values) / len(values), 2)


@dataclass
class _ActorTally:
    cases: Set[int] = field(default_factory=set)
    transitions: int = 0


class AnalyticsAggregator:
    """Read-only aggregation over many cases and their transition logs."""

    def __init__(
        self,
        sla_hours: Mapping[str, float],
        definition: Optional[StageDefinition] = None,
    ):
        self.sla_hours = dict(sla_hours)
        self.definition = definition or get_stage_definition()

    @property
    def tracked_stages(self) -> List[CaseStage]:
        return [s for s in self.definition.pipeline if s.value in self.sla_hours]

    def stage_durations(
        self, transitions_by_case: Mapping[int, Sequence[Transition]]
    ) -> Dict[CaseStage, List[float]]:
        durations: Dict[CaseStage, List[float]] = defaultdict(list)
        for transitions in transitions_by_case.values():
            for t in transitions:
                if t.from_state is None or t.from_state.value not in self.sla_hours:
                    continue
                durations[t.from_state].append(t.duration_in_state / SECONDS_PER_HOUR)
        return durations

    def stage_analytics(
        self, transitions_by_case: Mapping[int, Sequence[Transition]]
    ) -> Dict[str, StageAnalytics]:
        durations = self.stage_durations(transitions_by_case)
        result: Dict[str, StageAnalytics] = {}
        for stage in self.tracked_stages:
            samples = durations.get(stage, [])
            sla = float(self.sla_hours[stage.value])
            if samples:
                avg = sum(samples) / len(samples)
                delay_frequency = sum(1 for d in samples if d > sla) / len(samples)
            else:
                avg = 0.0
                delay_frequency = 0.0
            result[stage.value] = StageAnalytics(
                stage=stage,
                samples=len(samples),
                avg_duration=round(avg, 2),
                delay_frequency=round(delay_frequency, 4),
                efficiency=efficiency_score(avg, delay_frequency, sla),
                sla_hours=sla,
                bottleneck_score=round(avg * delay_frequency, 4),
            )
        return result

    def bottlenecks(self, stage_analytics: Mapping[str, StageAnalytics]) -> List[StageAnalytics]:
        """Stages with data, worst first by avg_duration x delay_frequency."""
        measured = [s for s in stage_analytics.values() if s.samples > 0]
        return sorted(
            measured,
            key=lambda s: (-s.bottleneck_score, -s.avg_duration, self.definition.order_of(s.stage)),
        )

    def top_performers(
        self,
        cases: Iterable[CaseRecord],
        transitions_by_case: Mapping[int, Sequence[Transition]],
        limit: int = 10,
    ) -> List[PerformerStats]:
        cases_by_id = {c.case_id: c for c in cases}
        tallies: Dict[str, _ActorTally] = defaultdict(_ActorTally)
        for case_id, transitions in transitions_by_case.items():
            for t in transitions:
                tally = tallies[t.transitioned_by]
                tally.cases.add(case_id)
                tally.transitions += 1

        performers = []
        for actor, tally in tallies.items():
            completion = [
                hours for hours in (
                    _completion_hours(cases_by_id[cid]) for cid in tally.cases if cid in cases_by_id
                )
                if hours is not None
            ]
            performers.append(
                PerformerStats(
                    actor=actor,
                    cases_handled=len(tally.cases),
                    transitions=tally.transitions,
                    avg_completion_time=_mean(completion),
                )
            )

        performers.sort(
            key=lambda p: (
                -p.cases_handled,
                p.avg_completion_time if p.avg_completion_time is not None else float("inf"),
                -p.transitions,
                p.actor,
            )
        )
        return performers[:limit]

    def performance_trends(self, cases: Iterable[CaseRecord]) -> List[TrendPoint]:
        by_month: Dict[str, List[CaseRecord]] = defaultdict(list)
        for case in cases:
            by_month[case.created_at.strftime("%Y-%m")].append(case)

        trends = []
        for month in sorted(by_month):
            month_cases = by_month[month]
            completion = [h for h in (_completion_hours(c) for c in month_cases) if h is not None]
            trends.append(
                TrendPoint(
                    month=month,
                    case_count=len(month_cases),
                    closed_count=sum(1 for c in month_cases if c.current_state == CaseStage.CLOSED),
                    avg_completion_time=_mean(completion),
                )
            )
        return trends

    @traced("analytics.aggregate")
    def aggregate(
        self,
        cases: Sequence[CaseRecord],
        transitions_by_case: Mapping[int, Sequence[Transition]],
        now: datetime,
        top_n: int = 10,
    ) -> CaseAnalytics:
        total = len(cases)
        closed = sum(1 for c in cases if c.current_state == CaseStage.CLOSED)
        rejected = sum(1 for c in cases if c.current_state == CaseStage.REJECTED)
        completion = [h for h in (_completion_hours(c) for c in cases) if h is not None]

        per_stage = self.stage_analytics(transitions_by_case)

        logger.debug(f"Aggregated analytics over {total} cases")

        return CaseAnalytics(
            total_cases=total,
            open_cases=total - closed - rejected,
            closed_cases=closed,
            rejected_cases=rejected,
            completion_rate=round(closed / total * 100, 1) if total else 0.0,
            avg_completion_time=_mean(completion),
            stage_analytics=per_stage,
            bottleneck_analysis=self.bottlenecks(per_stage),
            top_performers=self.top_performers(cases, transitions_by_case, limit=top_n),
            performance_trends=self.performance_trends(cases),
            generated_at=now,
        )

    def sla_breaches(
        self,
        cases: Iterable[CaseRecord],
        transitions_by_case: Mapping[int, Sequence[Transition]],
        now: datetime,
    ) -> List[SlaBreach]:
        """Open cases that have sat in their current stage longer than its SLA."""
        breaches = []
        for case in cases:
            if case.is_terminal or case.current_state.value not in self.sla_hours:
                continue
            transitions = transitions_by_case.get(case.case_id) or []
            entered_at = transitions[-1].transition_date if transitions else case.created_at
            hours = (now - entered_at).total_seconds() / SECONDS_PER_HOUR
            sla = float(self.sla_hours[case.current_state.value])
            if hours > sla:
                breaches.append(
                    SlaBreach(
                        case_id=case.case_id,
                        case_number=case.case_number,
                        stage=case.current_state,
                        entered_at=entered_at,
                        hours_in_state=round(hours, 2),
                        sla_hours=sla,
                    )
                )
        breaches.sort(key=lambda b: (-_overrun(b.hours_in_state, b.sla_hours), b.case_id))
        return breaches
