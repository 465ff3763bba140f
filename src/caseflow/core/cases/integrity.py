"""
Transition Chain Integrity

Replays a case's transition log from the empty state and reports every point
where the log disagrees with the stage graph or with the case row. Out-of-band
edits to the case tables show up here.
"""

from typing import List, Optional, Sequence

from pydantic import BaseModel

from .models import CaseRecord, Transition, TransitionKind
from .stages import CaseStage, StageDefinition, get_stage_definition

# Stored durations are rounded to whole seconds at most
DURATION_TOLERANCE_SECONDS = 1.0


class IntegrityIssue(BaseModel):
    code: str
    message: str
    transition_id: Optional[int] = None
    index: Optional[int] = None


class IntegrityReport(BaseModel):
    case_id: int
    case_number: str
    current_state: CaseStage
    transition_count: int
    replayed_state: Optional[CaseStage] = None
    ok: bool
    issues: List[IntegrityIssue]


def _edge_is_legal(definition: StageDefinition, t: Transition) -> bool:
    if t.kind == TransitionKind.STAGE_DELETED:
        return t.from_state is not None and definition.predecessor_of(t.from_state) == t.to_state
    if t.kind == TransitionKind.STAGE_RECREATED:
        return t.from_state is not None and definition.successor_of(t.from_state) == t.to_state
    return definition.valid_transition(t.from_state, t.to_state)


def check_chain(
    case: CaseRecord,
    transitions: Sequence[Transition],
    definition: Optional[StageDefinition] = None,
) -> List[IntegrityIssue]:
    definition = definition or get_stage_definition()
    issues: List[IntegrityIssue] = []

    if not transitions:
        issues.append(IntegrityIssue(code="empty_log", message="Case has no transitions"))
        return issues

    first = transitions[0]
    if first.from_state is not None or first.to_state != definition.pipeline[0]:
        issues.append(
            IntegrityIssue(
                code="bad_origin",
                message=f"First transition is {first.from_state} -> {first.to_state}, expected None -> enquiry",
                transition_id=first.id,
                index=0,
            )
        )

    previous: Optional[Transition] = None
    for index, t in enumerate(transitions):
        if t.duration_in_state < 0:
            issues.append(
                IntegrityIssue(
                    code="negative_duration",
                    message=f"Negative duration {t.duration_in_state}",
                    transition_id=t.id,
                    index=index,
                )
            )

        if previous is not None:
            if t.from_state != previous.to_state:
                issues.append(
                    IntegrityIssue(
                        code="broken_chain",
                        message=f"from_state {t.from_state} does not follow {previous.to_state}",
                        transition_id=t.id,
                        index=index,
                    )
                )
            elapsed = (t.transition_date - previous.transition_date).total_seconds()
            if elapsed < 0:
                issues.append(
                    IntegrityIssue(
                        code="out_of_order",
                        message="Transition dated before its predecessor",
                        transition_id=t.id,
                        index=index,
                    )
                )
            elif abs(elapsed - t.duration_in_state) > DURATION_TOLERANCE_SECONDS:
                issues.append(
                    IntegrityIssue(
                        code="duration_mismatch",
                        message=f"Recorded {t.duration_in_state}s but {elapsed}s elapsed",
                        transition_id=t.id,
                        index=index,
                    )
                )
            if not _edge_is_legal(definition, t):
                issues.append(
                    IntegrityIssue(
                        code="illegal_edge",
                        message=f"{t.kind.value} {t.from_state} -> {t.to_state} is not reachable through the engine",
                        transition_id=t.id,
                        index=index,
                    )
                )
        previous = t

    last = transitions[-1]
    if last.to_state != case.current_state:
        issues.append(
            IntegrityIssue(
                code="state_mismatch",
                message=f"Case is in {case.current_state.value} but log ends in {last.to_state.value}",
                transition_id=last.id,
                index=len(transitions) - 1,
            )
        )

    if case.is_terminal and case.closed_at is None:
        issues.append(IntegrityIssue(code="missing_closed_at", message="Terminal case has no closed_at"))
    elif not case.is_terminal and case.closed_at is not None:
        issues.append(IntegrityIssue(code="unexpected_closed_at", message="Open case has closed_at set"))

    return issues


def build_report(
    case: CaseRecord,
    transitions: Sequence[Transition],
    definition: Optional[StageDefinition] = None,
) -> IntegrityReport:
    issues = check_chain(case, transitions, definition)
    return IntegrityReport(
        case_id=case.case_id,
        case_number=case.case_number,
        current_state=case.current_state,
        transition_count=len(transitions),
        replayed_state=transitions[-1].to_state if transitions else None,
        ok=not issues,
        issues=issues,
    )
