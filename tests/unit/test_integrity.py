"""
Tests for transition chain integrity checks.
"""

from datetime import timedelta

from caseflow.core.cases.integrity import check_chain
from caseflow.core.cases.models import TransitionKind
from caseflow.core.cases.stages import CaseStage


def _codes(issues):
    return [i.code for i in issues]


class TestVerifyIntegrity:

    def test_clean_case(self, engine, new_case, clock):
        case = new_case()
        clock.advance(hours=2)
        engine.transition(case.case_id, CaseStage.ESTIMATION, "alice", reference_id="E1")
        clock.advance(hours=2)
        engine.transition(case.case_id, CaseStage.QUOTATION, "alice", reference_id="Q1")
        backup = engine.delete_stage(case.case_id, CaseStage.QUOTATION, "admin").backup
        clock.advance(minutes=10)
        engine.recreate_stage(backup.id, "admin")

        report = engine.verify_integrity(case.case_id)
        assert report.ok
        assert report.issues == []
        assert report.transition_count == 5
        assert report.replayed_state == CaseStage.QUOTATION

    def test_out_of_band_state_change(self, engine, new_case):
        case = new_case()
        with engine.store.transaction("manual_backfill") as conn:
            conn.execute("UPDATE cases SET current_state='order' WHERE case_id=?", (case.case_id,))

        report = engine.verify_integrity(case.case_id)
        assert not report.ok
        assert _codes(report.issues) == ["state_mismatch"]


class TestCheckChain:
    """Direct checks against hand-edited logs."""

    def _history(self, engine, new_case, clock):
        case = new_case()
        clock.advance(hours=1)
        engine.transition(case.case_id, CaseStage.ESTIMATION, "alice")
        clock.advance(hours=1)
        engine.transition(case.case_id, CaseStage.QUOTATION, "alice")
        return engine.get_case(case.case_id), engine.get_history(case.case_id)

    def test_empty_log(self, engine, new_case, clock):
        case, _ = self._history(engine, new_case, clock)
        assert _codes(check_chain(case, [])) == ["empty_log"]

    def test_broken_chain(self, engine, new_case, clock):
        case, history = self._history(engine, new_case, clock)
        history[2] = history[2].model_copy(update={"from_state": CaseStage.ENQUIRY})
        codes = _codes(check_chain(case, history))
        assert "broken_chain" in codes
        assert "illegal_edge" in codes

    def test_bad_origin(self, engine, new_case, clock):
        case, history = self._history(engine, new_case, clock)
        assert "bad_origin" in _codes(check_chain(case, history[1:]))

    def test_duration_mismatch(self, engine, new_case, clock):
        case, history = self._history(engine, new_case, clock)
        history[1] = history[1].model_copy(update={"duration_in_state": 60.0})
        assert _codes(check_chain(case, history)) == ["duration_mismatch"]

    def test_out_of_order(self, engine, new_case, clock):
        case, history = self._history(engine, new_case, clock)
        history[2] = history[2].model_copy(
            update={"transition_date": history[0].transition_date - timedelta(minutes=1)}
        )
        assert "out_of_order" in _codes(check_chain(case, history))

    def test_deletion_must_revert_one_stage(self, engine, new_case, clock):
        case, history = self._history(engine, new_case, clock)
        forged = history[2].model_copy(
            update={
                "id": history[2].id + 1,
                "from_state": CaseStage.QUOTATION,
                "to_state": CaseStage.ENQUIRY,
                "kind": TransitionKind.STAGE_DELETED,
                "duration_in_state": 0.0,
            }
        )
        case = case.model_copy(update={"current_state": CaseStage.ENQUIRY})
        assert _codes(check_chain(case, history + [forged])) == ["illegal_edge"]

    def test_open_case_with_closed_at(self, engine, new_case, clock):
        case, history = self._history(engine, new_case, clock)
        case = case.model_copy(update={"closed_at": clock.now})
        assert _codes(check_chain(case, history)) == ["unexpected_closed_at"]
