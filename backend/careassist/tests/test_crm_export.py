"""Tests for Lead export.

WHAT: Lead payload mapping and fallbacks, per-item failure isolation,
      single-property vs all-properties scope, export bookkeeping
WHY: One bad visitor must never abort a batch, and every attempt has to be
     visible afterwards (ExportRecord on success, an export_failed log entry
     on failure)

REFERENCES:
  - careassist/services/crm_export_service.py
"""

import json
import uuid

import pytest

from careassist.models import (
    ExportRecord,
    ExportTypeEnum,
    NotificationLogEntry,
    NotificationStatusEnum,
    Visitor,
)
from careassist.services.crm_export_service import (
    DEFAULT_FIELD_MAPPINGS,
    LeadExportService,
    build_lead_payload,
    describe_lead_fields,
    effective_mappings,
)
from careassist.services.crm_token_service import CRMNotConnectedError


def _logs(db, notification_type):
    return db.query(NotificationLogEntry).filter(NotificationLogEntry.notification_type == notification_type).all()


class TestBuildLeadPayload:

    def test_mapped_fields_and_lead_source(self):
        visitor = Visitor(name="Dana Doe", email="dana@example.com", phone="555-123-4567")
        lead = build_lead_payload(visitor, DEFAULT_FIELD_MAPPINGS, "Serenity Recovery")

        assert lead == {
            "LastName": "Dana Doe",
            "Email": "dana@example.com",
            "Phone": "555-123-4567",
            "Company": "[Not Provided]",
            "LeadSource": "Website Chat - Serenity Recovery",
        }

    def test_last_name_falls_back_to_email_local_part(self):
        lead = build_lead_payload(Visitor(email="dana.doe@example.com"), {"Email": "email"}, None)
        assert lead["LastName"] == "dana.doe"
        assert lead["LeadSource"] == "Website Chat"

    def test_last_name_falls_back_to_unknown(self):
        lead = build_lead_payload(Visitor(), {}, "Serenity Recovery")
        assert lead["LastName"] == "Unknown"
        assert lead["Company"] == "[Not Provided]"

    def test_mapped_company_kept(self):
        visitor = Visitor(name="Dana", occupation="Nurse")
        lead = build_lead_payload(visitor, {"Company": "occupation"}, None)
        assert lead["Company"] == "Nurse"

    def test_non_lead_attributes_never_exported(self):
        visitor = Visitor(name="Dana", session_id="secret-session")
        lead = build_lead_payload(visitor, {"Description": "session_id"}, None)
        assert "Description" not in lead

    def test_defaults_used_when_no_mapping_saved(self, salesforce_connector):
        crm = salesforce_connector()
        assert effective_mappings(crm) == DEFAULT_FIELD_MAPPINGS

        crm.field_mappings = {}
        assert effective_mappings(crm) == {}


class TestExportVisitors:

    def test_success_records_export_and_log(
        self, test_db_session, test_property, conversation_factory, salesforce_connector,
        salesforce_client, fake_salesforce,
    ):
        salesforce_connector()
        conversation = conversation_factory(name="Dana Doe", phone="555-123-4567")

        result = LeadExportService(salesforce_client).export_visitors(
            test_db_session, [conversation.visitor_id], property_id=test_property.id,
        )
        test_db_session.commit()

        assert (result.exported, result.total, result.errors) == (1, 1, [])
        sent = json.loads(fake_salesforce.lead_calls[0].content)
        assert sent["LastName"] == "Dana Doe"
        assert sent["Phone"] == "555-123-4567"
        assert sent["LeadSource"] == "Website Chat - Serenity Recovery"

        record = test_db_session.query(ExportRecord).one()
        assert record.conversation_id == conversation.id
        assert record.export_type == ExportTypeEnum.manual
        assert record.salesforce_lead_id == result.lead_ids[str(conversation.visitor_id)]
        (log,) = _logs(test_db_session, "salesforce_export")
        assert log.status == NotificationStatusEnum.sent

    def test_one_failure_does_not_abort_batch(
        self, test_db_session, test_property, conversation_factory, salesforce_connector,
        salesforce_client, fake_salesforce,
    ):
        salesforce_connector()
        bad = conversation_factory("bad", name="Bad Lead")
        good = conversation_factory("good", name="Good Lead")
        fake_salesforce.lead_responses.append(
            (400, [{"message": "Email: invalid email address", "errorCode": "INVALID_EMAIL_ADDRESS"}])
        )

        result = LeadExportService(salesforce_client).export_visitors(
            test_db_session, [bad.visitor_id, good.visitor_id], property_id=test_property.id,
        )
        test_db_session.commit()

        assert (result.exported, result.total) == (1, 2)
        assert result.errors == ["Failed to export Bad Lead"]
        assert test_db_session.query(ExportRecord).count() == 1
        (failed,) = _logs(test_db_session, "export_failed")
        assert failed.status == NotificationStatusEnum.failed
        assert failed.conversation_id == bad.id
        assert "INVALID_EMAIL_ADDRESS" in failed.error_message

    def test_non_json_lead_response_is_a_per_item_failure(
        self, test_db_session, test_property, conversation_factory, salesforce_connector,
        salesforce_client, fake_salesforce,
    ):
        salesforce_connector()
        first = conversation_factory("first", name="First Lead")
        second = conversation_factory("second", name="Second Lead")
        fake_salesforce.lead_responses.append((201, "<html>Service Unavailable</html>"))

        result = LeadExportService(salesforce_client).export_visitors(
            test_db_session, [first.visitor_id, second.visitor_id], property_id=test_property.id,
        )
        test_db_session.commit()

        assert (result.exported, result.total) == (1, 2)
        assert result.errors == ["Failed to export First Lead"]
        (failed,) = _logs(test_db_session, "export_failed")
        assert "Service Unavailable" in failed.error_message

    def test_missing_visitor_reported(self, test_db_session, test_property, salesforce_connector, salesforce_client):
        salesforce_connector()
        missing = uuid.uuid4()

        result = LeadExportService(salesforce_client).export_visitors(
            test_db_session, [missing], property_id=test_property.id,
        )

        assert (result.exported, result.total) == (0, 1)
        assert result.errors == [f"Visitor {missing} not found"]

    def test_duplicate_ids_exported_once(
        self, test_db_session, test_property, conversation, salesforce_connector, salesforce_client, fake_salesforce,
    ):
        salesforce_connector()
        result = LeadExportService(salesforce_client).export_visitors(
            test_db_session, [conversation.visitor_id, conversation.visitor_id], property_id=test_property.id,
        )

        assert (result.exported, result.total) == (1, 1)
        assert len(fake_salesforce.lead_calls) == 1

    def test_single_scope_without_connection_fails_whole_call(
        self, test_db_session, test_property, conversation, salesforce_client, fake_salesforce,
    ):
        with pytest.raises(CRMNotConnectedError):
            LeadExportService(salesforce_client).export_visitors(
                test_db_session, [conversation.visitor_id], property_id=test_property.id,
            )
        assert fake_salesforce.requests == []

    def test_all_scope_resolves_connection_per_visitor(
        self, test_db_session, other_property, conversation_factory, salesforce_connector, salesforce_client,
    ):
        salesforce_connector()
        connected = [conversation_factory(f"c{i}", name=f"Lead {i}") for i in range(3)]
        orphan = conversation_factory("orphan", prop=other_property, name="Harbor Visitor")

        result = LeadExportService(salesforce_client).export_visitors(
            test_db_session, [c.visitor_id for c in connected] + [orphan.visitor_id],
        )

        assert (result.exported, result.total) == (3, 4)
        assert result.errors == ["No Salesforce connection for Harbor Visitor"]

    def test_all_scope_limited_to_given_properties(
        self, test_db_session, test_property, other_property, conversation_factory, salesforce_connector,
        salesforce_client,
    ):
        salesforce_connector()
        salesforce_connector(other_property)
        mine = conversation_factory("mine", name="Mine")
        theirs = conversation_factory("theirs", prop=other_property, name="Theirs")

        result = LeadExportService(salesforce_client).export_visitors(
            test_db_session, [mine.visitor_id, theirs.visitor_id], within_properties=[test_property.id],
        )

        assert result.exported == 1
        assert result.errors == [f"Visitor {theirs.visitor_id} not found"]

    def test_record_attaches_to_given_conversation(
        self, test_db_session, test_property, conversation, salesforce_connector, salesforce_client,
    ):
        salesforce_connector()
        LeadExportService(salesforce_client).export_visitors(
            test_db_session,
            [conversation.visitor_id],
            property_id=test_property.id,
            conversation_id=conversation.id,
            export_type=ExportTypeEnum.auto_phone,
        )
        test_db_session.commit()

        record = test_db_session.query(ExportRecord).one()
        assert record.conversation_id == conversation.id
        assert record.export_type == ExportTypeEnum.auto_phone


class TestDescribe:

    def test_only_createable_fields(self, test_db_session, test_property, salesforce_connector, salesforce_client):
        salesforce_connector()

        fields = describe_lead_fields(test_db_session, test_property.id, salesforce_client)

        assert [f["name"] for f in fields] == ["LastName", "Phone"]
        assert fields[0]["required"] is True
        assert fields[1]["required"] is False
