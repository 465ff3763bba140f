"""
Case Stage Definition

The single, immutable description of the case lifecycle graph. Loaded once per
process; every caller (engine, progress, analytics, API) reads the same instance.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple


class CaseStage(str, Enum):
    """Valid case stages."""
    ENQUIRY = "enquiry"
    ESTIMATION = "estimation"
    QUOTATION = "quotation"
    ORDER = "order"
    PRODUCTION = "production"
    DELIVERY = "delivery"
    CLOSED = "closed"
    REJECTED = "rejected"


# Happy path, in order
PIPELINE: Tuple[CaseStage, ...] = (
    CaseStage.ENQUIRY,
    CaseStage.ESTIMATION,
    CaseStage.QUOTATION,
    CaseStage.ORDER,
    CaseStage.PRODUCTION,
    CaseStage.DELIVERY,
    CaseStage.CLOSED,
)

TERMINAL_STAGES: FrozenSet[CaseStage] = frozenset({CaseStage.CLOSED, CaseStage.REJECTED})

STAGE_DISPLAY_NAMES: Dict[CaseStage, str] = {
    CaseStage.ENQUIRY: "Enquiry",
    CaseStage.ESTIMATION: "Estimation",
    CaseStage.QUOTATION: "Quotation",
    CaseStage.ORDER: "Sales Order",
    CaseStage.PRODUCTION: "Production",
    CaseStage.DELIVERY: "Delivery",
    CaseStage.CLOSED: "Closed",
    CaseStage.REJECTED: "Rejected",
}

STAGE_DEFINITION_VERSION = "2025.1"


def _build_transitions() -> Dict[CaseStage, FrozenSet[CaseStage]]:
    transitions: Dict[CaseStage, FrozenSet[CaseStage]] = {}
    for index, stage in enumerate(PIPELINE):
        if stage in TERMINAL_STAGES:
            transitions[stage] = frozenset()
            continue
        transitions[stage] = frozenset({PIPELINE[index + 1], CaseStage.REJECTED})
    transitions[CaseStage.REJECTED] = frozenset()
    return transitions


@dataclass(frozen=True)
class StageDefinition:
    """
    Directed graph of case stages.

    Forward edges follow the pipeline one step at a time; `rejected` is
    reachable from every non-terminal stage. Reverse edges exist only as
    predecessors, which `delete_stage` uses and `transition` never does.
    """
    version: str = STAGE_DEFINITION_VERSION
    pipeline: Tuple[CaseStage, ...] = PIPELINE
    terminal: FrozenSet[CaseStage] = TERMINAL_STAGES
    transitions: Mapping[CaseStage, FrozenSet[CaseStage]] = field(
        default_factory=lambda: MappingProxyType(_build_transitions())
    )

    def valid_transition(self, from_stage: Optional[CaseStage], to_stage: CaseStage) -> bool:
        """Whether `transition()` may move a case from `from_stage` to `to_stage`."""
        if from_stage is None:
            return CaseStage(to_stage) == self.pipeline[0]
        return CaseStage(to_stage) in self.transitions.get(CaseStage(from_stage), frozenset())

    def allowed_targets(self, stage: CaseStage) -> List[CaseStage]:
        """Targets reachable from `stage`, pipeline order first."""
        targets = self.transitions.get(CaseStage(stage), frozenset())
        return sorted(targets, key=self.order_of)

    def predecessor_of(self, stage: CaseStage) -> Optional[CaseStage]:
        stage = CaseStage(stage)
        if stage not in self.pipeline:
            return None
        index = self.pipeline.index(stage)
        return self.pipeline[index - 1] if index > 0 else None

    def successor_of(self, stage: CaseStage) -> Optional[CaseStage]:
        stage = CaseStage(stage)
        if stage not in self.pipeline or stage in self.terminal:
            return None
        return self.pipeline[self.pipeline.index(stage) + 1]

    def is_terminal(self, stage: CaseStage) -> bool:
        return CaseStage(stage) in self.terminal

    def order_of(self, stage: CaseStage) -> int:
        """Position in the pipeline; `rejected` sorts after everything."""
        stage = CaseStage(stage)
        if stage in self.pipeline:
            return self.pipeline.index(stage)
        return len(self.pipeline)

    def to_dict(self) -> Dict[str, object]:
        return {
            "version": self.version,
            "pipeline": [s.value for s in self.pipeline],
            "terminal": sorted(s.value for s in self.terminal),
            "transitions": {
                s.value: [t.value for t in self.allowed_targets(s)]
                for s in CaseStage
            },
            "display_names": {s.value: STAGE_DISPLAY_NAMES[s] for s in CaseStage},
        }


_definition: Optional[StageDefinition] = None


def get_stage_definition() -> StageDefinition:
    """Get the process-wide stage definition."""
    global _definition
    if _definition is None:
        _definition = StageDefinition()
    return _definition
