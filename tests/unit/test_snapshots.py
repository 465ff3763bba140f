"""
Tests for stage snapshots and legacy backup upgrades.
"""

import json

import pytest
from pydantic import ValidationError

from caseflow.core.cases.models import (
    SNAPSHOT_SCHEMA_VERSION,
    EstimationSnapshot,
    QuotationSnapshot,
    SalesOrderSnapshot,
    dump_snapshot,
    load_snapshot,
    snapshot_matches_stage,
)
from caseflow.core.cases.stages import CaseStage


class TestLoadSnapshot:

    def test_dispatch_on_record_type(self):
        snapshot = load_snapshot({"record_type": "quotation", "grand_total": 1500.0})
        assert isinstance(snapshot, QuotationSnapshot)
        assert snapshot.schema_version == SNAPSHOT_SCHEMA_VERSION

    def test_json_text(self):
        raw = json.dumps({"record_type": "sales_order", "total_amount": 99.5, "quotation_number": "Q-1"})
        snapshot = load_snapshot(raw)
        assert isinstance(snapshot, SalesOrderSnapshot)
        assert snapshot.quotation_number == "Q-1"

    def test_model_passthrough(self):
        snapshot = EstimationSnapshot(total_final_price=10.0)
        assert load_snapshot(snapshot) is snapshot

    def test_unknown_record_type(self):
        with pytest.raises(ValidationError):
            load_snapshot({"record_type": "invoice"})

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            load_snapshot({"record_type": "estimation", "line_items": []})

    def test_dump_roundtrip_keeps_content(self):
        original = QuotationSnapshot(document_number="VESPL/QT/2526/003", grand_total=1200.0, attributes={"terms": "30 days"})
        restored = load_snapshot(dump_snapshot(original))
        assert restored == original

    def test_unversioned_payload_is_upgraded(self):
        snapshot = load_snapshot({"record_type": "enquiry", "description": "Two pumps"})
        assert snapshot.schema_version == SNAPSHOT_SCHEMA_VERSION

    def test_matches_stage(self):
        assert snapshot_matches_stage(SalesOrderSnapshot(), CaseStage.ORDER)
        assert not snapshot_matches_stage(SalesOrderSnapshot(), CaseStage.QUOTATION)
        assert not snapshot_matches_stage(SalesOrderSnapshot(), CaseStage.CLOSED)


class TestLegacyUpgrade:
    """Backups written before snapshots were typed."""

    def test_quotation_backup(self):
        legacy = {
            "stage": "quotation",
            "stage_data": {
                "quotation": {
                    "quotation_id": 42,
                    "grand_total": 1500.0,
                    "status": "draft",
                    "terms": "30 days",
                }
            },
            "deletion_info": {"deleted_by": 3, "reason": "wrong pricing"},
        }
        snapshot = load_snapshot(legacy)
        assert isinstance(snapshot, QuotationSnapshot)
        assert snapshot.document_number == "42"
        assert snapshot.grand_total == 1500.0
        assert snapshot.status == "draft"
        assert snapshot.attributes == {"terms": "30 days"}
        assert snapshot.schema_version == SNAPSHOT_SCHEMA_VERSION

    def test_order_stage_alias(self):
        legacy = {"stage": "order", "stage_data": {"sales_order": {"sales_order_id": 7, "total_amount": 10}}}
        snapshot = load_snapshot(legacy)
        assert isinstance(snapshot, SalesOrderSnapshot)
        assert snapshot.document_number == "7"
        assert snapshot.total_amount == 10

    def test_unknown_legacy_stage(self):
        with pytest.raises(ValueError):
            load_snapshot({"stage": "invoice", "stage_data": {}})
