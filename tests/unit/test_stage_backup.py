"""
Tests for stage soft-delete and one-shot recreation.
"""

import json

import pytest

from caseflow.core.cases.errors import (
    AlreadyRecreatedError,
    BackupNotFoundError,
    CaseClosedError,
    InvalidTransitionError,
    PersistenceError,
    StageNotDeletableError,
)
from caseflow.core.cases.models import (
    EstimationSnapshot,
    QuotationSnapshot,
    TransitionKind,
)
from caseflow.core.cases.stages import CaseStage


@pytest.fixture
def quoted_case(engine, new_case, clock):
    """Case C1: enquiry -> estimation (E1) -> quotation (Q1)."""
    case = new_case()
    clock.advance(hours=4)
    estimation = engine.transition(
        case.case_id, CaseStage.ESTIMATION, "alice",
        record=EstimationSnapshot(document_number="VESPL/ES/2526/001", total_final_price=1000.0),
    )
    clock.advance(hours=20)
    quotation = engine.transition(
        case.case_id, CaseStage.QUOTATION, "alice",
        record=QuotationSnapshot(
            document_number="VESPL/QT/2526/001",
            grand_total=1500.0,
            valid_until="2025-06-30",
            attributes={"terms": "30 days"},
        ),
    )
    return {
        "case": quotation.case,
        "e1": estimation.stage_record,
        "q1": quotation.stage_record,
    }


class TestDeleteStage:

    def test_delete_reverts_to_predecessor(self, engine, quoted_case, clock):
        case = quoted_case["case"]
        clock.advance(hours=1)
        result = engine.delete_stage(case.case_id, CaseStage.QUOTATION, "admin", reason="wrong pricing")

        assert result.case.current_state == CaseStage.ESTIMATION
        assert result.case.version == case.version + 1
        assert result.transition.kind == TransitionKind.STAGE_DELETED
        assert result.transition.from_state == CaseStage.QUOTATION
        assert result.transition.to_state == CaseStage.ESTIMATION
        assert result.transition.duration_in_state == 3600

        backup = result.backup
        assert backup.stage == CaseStage.QUOTATION
        assert backup.previous_state == CaseStage.QUOTATION
        assert backup.reverted_to_state == CaseStage.ESTIMATION
        assert backup.stage_record_id == quoted_case["q1"].id
        assert backup.snapshot_data == quoted_case["q1"].snapshot
        assert backup.deletion_reason == "wrong pricing"
        assert backup.deleted_by == "admin"
        assert backup.case_number == case.case_number
        assert backup.recreated is False

    def test_stage_record_is_soft_deleted(self, engine, quoted_case):
        case = quoted_case["case"]
        engine.delete_stage(case.case_id, CaseStage.QUOTATION, "admin")

        q1 = engine.store.get_stage_record(quoted_case["q1"].id)
        assert q1 is not None
        assert q1.deleted_at is not None
        assert q1.deleted_by == "admin"
        live = engine.get_stage_records(case.case_id)
        assert [r.id for r in live] == [quoted_case["e1"].id]

    def test_earlier_stage_not_deletable(self, engine, quoted_case):
        case = quoted_case["case"]
        with pytest.raises(StageNotDeletableError) as exc_info:
            engine.delete_stage(case.case_id, CaseStage.ESTIMATION, "admin")
        assert exc_info.value.context["current_state"] == "quotation"
        assert engine.get_case(case.case_id).current_state == CaseStage.QUOTATION
        assert engine.get_deleted_stages(case_id=case.case_id) == []

    def test_enquiry_not_deletable(self, engine, new_case):
        case = new_case()
        with pytest.raises(StageNotDeletableError):
            engine.delete_stage(case.case_id, CaseStage.ENQUIRY, "admin")

    def test_terminal_case(self, engine, new_case):
        case = new_case()
        engine.reject(case.case_id, "alice", reason="no budget")
        with pytest.raises(CaseClosedError):
            engine.delete_stage(case.case_id, CaseStage.REJECTED, "admin")

    def test_repeated_deletion_walks_back(self, engine, quoted_case):
        case = quoted_case["case"]
        engine.delete_stage(case.case_id, CaseStage.QUOTATION, "admin")
        result = engine.delete_stage(case.case_id, CaseStage.ESTIMATION, "admin")

        assert result.case.current_state == CaseStage.ENQUIRY
        assert result.backup.snapshot_data.total_final_price == 1000.0
        assert len(engine.get_deleted_stages(case_id=case.case_id)) == 2

    def test_external_reference_backup_has_no_snapshot(self, engine, new_case):
        case = new_case()
        engine.transition(case.case_id, CaseStage.ESTIMATION, "alice", reference_id="EXT-9")
        result = engine.delete_stage(case.case_id, CaseStage.ESTIMATION, "admin")

        assert result.backup.stage_record_id == "EXT-9"
        assert result.backup.snapshot_data is None


class TestRecreateStage:

    def test_c1_scenario(self, engine, quoted_case):
        case = quoted_case["case"]
        q1 = quoted_case["q1"]
        deleted = engine.delete_stage(case.case_id, CaseStage.QUOTATION, "admin", reason="wrong pricing")
        assert deleted.case.current_state == CaseStage.ESTIMATION

        result = engine.recreate_stage(deleted.backup.id, "admin")

        assert result.case.current_state == CaseStage.QUOTATION
        assert result.transition.kind == TransitionKind.STAGE_RECREATED
        assert result.transition.from_state == CaseStage.ESTIMATION
        assert result.transition.to_state == CaseStage.QUOTATION

        new_record = result.stage_record
        assert new_record.id != q1.id
        assert result.transition.reference_id == new_record.id
        assert new_record.snapshot.model_dump() == q1.snapshot.model_dump()
        assert new_record.restored_from_backup == deleted.backup.id

        backup = engine.get_backup(deleted.backup.id)
        assert backup.recreated is True
        assert backup.recreated_by == "admin"
        assert backup.recreated_record_id == new_record.id
        assert backup.recreated_at is not None

    def test_recreate_twice(self, engine, quoted_case):
        case = quoted_case["case"]
        backup = engine.delete_stage(case.case_id, CaseStage.QUOTATION, "admin").backup
        engine.recreate_stage(backup.id, "admin")
        history_before = engine.get_history(case.case_id)

        with pytest.raises(AlreadyRecreatedError):
            engine.recreate_stage(backup.id, "admin")

        assert engine.get_history(case.case_id) == history_before
        assert len(engine.get_stage_records(case.case_id)) == 2

    def test_missing_backup(self, engine):
        with pytest.raises(BackupNotFoundError):
            engine.recreate_stage(999, "admin")

    def test_case_moved_on_since_deletion(self, engine, quoted_case):
        case = quoted_case["case"]
        backup = engine.delete_stage(case.case_id, CaseStage.QUOTATION, "admin").backup
        engine.transition(
            case.case_id, CaseStage.QUOTATION, "alice",
            record=QuotationSnapshot(grand_total=1400.0),
        )

        with pytest.raises(InvalidTransitionError):
            engine.recreate_stage(backup.id, "admin")
        assert engine.get_backup(backup.id).recreated is False

    def test_case_rejected_since_deletion(self, engine, quoted_case):
        case = quoted_case["case"]
        backup = engine.delete_stage(case.case_id, CaseStage.QUOTATION, "admin").backup
        engine.reject(case.case_id, "alice", reason="lost")

        with pytest.raises(CaseClosedError):
            engine.recreate_stage(backup.id, "admin")

    def test_recreate_without_snapshot(self, engine, new_case):
        case = new_case()
        engine.transition(case.case_id, CaseStage.ESTIMATION, "alice", reference_id="EXT-9")
        backup = engine.delete_stage(case.case_id, CaseStage.ESTIMATION, "admin").backup

        result = engine.recreate_stage(backup.id, "admin")
        assert result.case.current_state == CaseStage.ESTIMATION
        assert result.stage_record is None
        assert result.transition.reference_id is None
        assert engine.get_backup(backup.id).recreated is True

    def test_legacy_snapshot_is_upgraded_on_recreate(self, engine, new_case):
        case = new_case()
        engine.transition(case.case_id, CaseStage.ESTIMATION, "alice")
        engine.transition(case.case_id, CaseStage.QUOTATION, "alice", reference_id="42")
        backup = engine.delete_stage(case.case_id, CaseStage.QUOTATION, "admin").backup

        legacy = {
            "stage": "quotation",
            "stage_data": {"quotation": {"quotation_id": 42, "grand_total": 880.0}},
            "deletion_info": {"reason": "imported"},
        }
        with engine.store.transaction("legacy_fixture") as conn:
            conn.execute(
                "UPDATE stage_backups SET snapshot_data=? WHERE id=?",
                (json.dumps(legacy), backup.id),
            )

        result = engine.recreate_stage(backup.id, "admin")
        assert isinstance(result.stage_record.snapshot, QuotationSnapshot)
        assert result.stage_record.snapshot.document_number == "42"
        assert result.stage_record.snapshot.grand_total == 880.0


class TestDeletedStages:

    def test_filters_and_order(self, engine, quoted_case, new_case, clock):
        case = quoted_case["case"]
        first = engine.delete_stage(case.case_id, CaseStage.QUOTATION, "admin").backup
        clock.advance(minutes=5)
        second = engine.delete_stage(case.case_id, CaseStage.ESTIMATION, "admin").backup

        other = new_case(client_id="CLIENT-002")
        engine.transition(other.case_id, CaseStage.ESTIMATION, "bob")
        clock.advance(minutes=5)
        third = engine.delete_stage(other.case_id, CaseStage.ESTIMATION, "bob").backup

        assert [b.id for b in engine.get_deleted_stages()] == [third.id, second.id, first.id]
        assert [b.id for b in engine.get_deleted_stages(case_id=case.case_id)] == [second.id, first.id]
        assert [b.id for b in engine.get_deleted_stages(stage="estimation")] == [third.id, second.id]
        assert [b.id for b in engine.get_deleted_stages(case_id=case.case_id, stage="quotation")] == [first.id]

    def test_exclude_recreated(self, engine, quoted_case):
        case = quoted_case["case"]
        backup = engine.delete_stage(case.case_id, CaseStage.QUOTATION, "admin").backup
        engine.recreate_stage(backup.id, "admin")
        assert engine.get_deleted_stages(case_id=case.case_id, include_recreated=False) == []
        assert len(engine.get_deleted_stages(case_id=case.case_id)) == 1


class TestTransitionLogIsAppendOnly:

    def test_update_is_refused(self, engine, new_case):
        case = new_case()
        with pytest.raises(PersistenceError):
            with engine.store.transaction("tamper", case_id=case.case_id) as conn:
                conn.execute("UPDATE case_transitions SET notes='edited' WHERE case_id=?", (case.case_id,))

    def test_delete_is_refused(self, engine, new_case):
        case = new_case()
        with pytest.raises(PersistenceError):
            with engine.store.transaction("tamper", case_id=case.case_id) as conn:
                conn.execute("DELETE FROM case_transitions WHERE case_id=?", (case.case_id,))
        assert len(engine.get_history(case.case_id)) == 1
