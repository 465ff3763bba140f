"""
Workflow Progress

Derives per-stage completion for a case from its transition log. Nothing here
touches storage; the engine hands in everything the calculation needs.
"""

from typing import AbstractSet, Dict, Optional, Sequence

from .models import CaseRecord, StageProgress, Transition, WorkflowProgress
from .stages import STAGE_DISPLAY_NAMES, CaseStage, StageDefinition, get_stage_definition


class WorkflowProgressCalculator:
    """
    Stateless progress calculator.

    A pipeline stage is completed when a live (not soft-deleted) reference was
    recorded on entering it, or when the case has moved past it. Terminal
    cases always report 100%.
    """

    def __init__(self, definition: Optional[StageDefinition] = None):
        self.definition = definition or get_stage_definition()

    def _position(self, case: CaseRecord, transitions: Sequence[Transition]) -> int:
        """Pipeline index the case has reached."""
        if case.current_state != CaseStage.REJECTED:
            return self.definition.order_of(case.current_state)
        for t in reversed(transitions):
            if t.to_state == CaseStage.REJECTED and t.from_state is not None:
                return self.definition.order_of(t.from_state)
        return 0

    def calculate(
        self,
        case: CaseRecord,
        transitions: Sequence[Transition],
        deleted_reference_ids: AbstractSet[str] = frozenset(),
    ) -> WorkflowProgress:
        position = self._position(case, transitions)

        entered_at: Dict[CaseStage, Transition] = {}
        latest_reference: Dict[CaseStage, str] = {}
        for t in transitions:
            entered_at[t.to_state] = t
            if t.reference_id:
                latest_reference[t.to_state] = t.reference_id
        live_reference = {
            stage: ref for stage, ref in latest_reference.items()
            if ref not in deleted_reference_ids
        }

        stages = []
        for stage in self.definition.pipeline:
            order = self.definition.order_of(stage)
            reached = order <= position
            if stage == CaseStage.CLOSED:
                completed = case.current_state == CaseStage.CLOSED
            else:
                completed = order < position or (reached and stage in live_reference)
            last_entry = entered_at.get(stage) if reached else None
            stages.append(
                StageProgress(
                    stage=stage,
                    name=STAGE_DISPLAY_NAMES[stage],
                    completed=completed,
                    reference_id=live_reference.get(stage) if reached else None,
                    entered_at=last_entry.transition_date if last_entry else None,
                )
            )

        completed_count = sum(1 for s in stages if s.completed)
        total = len(stages)
        if case.is_terminal:
            percentage = 100.0
        else:
            percentage = round(completed_count / total * 100, 1) if total else 0.0

        return WorkflowProgress(
            case_id=case.case_id,
            case_number=case.case_number,
            current_stage=case.current_state,
            current_stage_name=STAGE_DISPLAY_NAMES[case.current_state],
            stages=stages,
            completed_count=completed_count,
            total_stages=total,
            progress_percentage=percentage,
            definition_version=self.definition.version,
        )
