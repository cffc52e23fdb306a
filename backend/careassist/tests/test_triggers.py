"""Tests for the auto-export trigger evaluator.

WHAT: Rule lookup per event, connection checks, outcome bookkeeping and the
      outbox path that runs evaluations
WHY: A disabled rule must cost nothing (no CRM call, no log), and an enabled
     rule must leave exactly one trace per evaluation

REFERENCES:
  - careassist/services/trigger_service.py
  - careassist/services/job_handlers.py
"""

import uuid

import pytest

from careassist.models import (
    ExportRecord,
    ExportTypeEnum,
    NotificationLogEntry,
    OutboxStatusEnum,
    SalesforceSettings,
)
from careassist.services.crm_export_service import LeadExportService
from careassist.services.handoff_service import HandoffController
from careassist.services.job_handlers import build_job_handlers
from careassist.services.notification_service import ChatOpsChannel, EmailChannel, NotificationDispatcher
from careassist.services.outbox import JOB_EVALUATE_TRIGGER, drain_outbox, enqueue_job, run_job
from careassist.services.trigger_service import TRIGGER_RULES, TriggerEvaluator, TriggerEvent


@pytest.fixture
def evaluator(salesforce_client):
    return TriggerEvaluator(LeadExportService(salesforce_client))


def _export_traces(db):
    records = db.query(ExportRecord).count()
    logs = db.query(NotificationLogEntry).filter(
        NotificationLogEntry.notification_type.in_(["salesforce_export", "export_failed"])
    ).all()
    return records, [log.notification_type for log in logs]


class TestRuleTable:

    def test_every_event_has_a_rule_and_export_type(self):
        assert set(TRIGGER_RULES) == set(TriggerEvent)
        for rule, _ in TRIGGER_RULES.values():
            assert hasattr(SalesforceSettings, rule)

    @pytest.mark.parametrize("event,export_type", [
        (TriggerEvent.escalation, ExportTypeEnum.auto_escalation),
        (TriggerEvent.conversation_end, ExportTypeEnum.auto_conversation_end),
        (TriggerEvent.insurance_detected, ExportTypeEnum.auto_insurance),
        (TriggerEvent.phone_detected, ExportTypeEnum.auto_phone),
    ])
    def test_export_type_per_event(self, event, export_type):
        assert TRIGGER_RULES[event][1] == export_type


class TestEvaluate:

    def test_disabled_rule_makes_no_call_and_no_log(
        self, test_db_session, conversation, salesforce_connector, evaluator, fake_salesforce,
    ):
        salesforce_connector(auto_export_on_phone_detected=False)

        outcome = evaluator.evaluate(test_db_session, TriggerEvent.phone_detected, conversation.id)

        assert outcome.fired is False
        assert outcome.reason == "rule_disabled"
        assert fake_salesforce.lead_calls == []
        assert _export_traces(test_db_session) == (0, [])

    def test_no_settings_row_means_disabled(self, test_db_session, conversation, evaluator):
        outcome = evaluator.evaluate(test_db_session, TriggerEvent.escalation, conversation.id)
        assert outcome.reason == "rule_disabled"

    def test_enabled_rule_exports_with_matching_type(
        self, test_db_session, conversation_factory, salesforce_connector, evaluator, fake_salesforce,
    ):
        salesforce_connector(auto_export_on_insurance_detected=True)
        conversation = conversation_factory(name="Dana", insurance_info="Aetna")

        outcome = evaluator.evaluate(test_db_session, TriggerEvent.insurance_detected, conversation.id)
        test_db_session.commit()

        assert outcome.fired is True
        assert outcome.export.exported == 1
        assert len(fake_salesforce.lead_calls) == 1
        record = test_db_session.query(ExportRecord).one()
        assert record.export_type == ExportTypeEnum.auto_insurance
        assert record.conversation_id == conversation.id
        assert _export_traces(test_db_session) == (1, ["salesforce_export"])

    def test_failed_export_leaves_one_failure_trace(
        self, test_db_session, conversation, salesforce_connector, evaluator, fake_salesforce,
    ):
        salesforce_connector(auto_export_on_insurance_detected=True)
        fake_salesforce.lead_responses.append((500, "internal error"))

        outcome = evaluator.evaluate(test_db_session, TriggerEvent.insurance_detected, conversation.id)
        test_db_session.commit()

        assert outcome.fired is True
        assert outcome.export.exported == 0
        assert _export_traces(test_db_session) == (0, ["export_failed"])

    def test_rule_on_but_not_connected(self, test_db_session, test_property, conversation, evaluator, fake_salesforce):
        test_db_session.add(SalesforceSettings(property_id=test_property.id, auto_export_on_phone_detected=True))
        test_db_session.commit()

        outcome = evaluator.evaluate(test_db_session, TriggerEvent.phone_detected, conversation.id)

        assert outcome.fired is False
        assert outcome.reason == "not_connected"
        assert fake_salesforce.requests == []

    def test_unknown_conversation(self, test_db_session, evaluator):
        outcome = evaluator.evaluate(test_db_session, TriggerEvent.escalation, uuid.uuid4())
        assert outcome.reason == "conversation_not_found"

    def test_event_accepted_as_string(self, test_db_session, conversation, salesforce_connector, evaluator):
        salesforce_connector(auto_export_on_conversation_end=True)
        outcome = evaluator.evaluate(test_db_session, "conversation_end", conversation.id)
        assert outcome.event == TriggerEvent.conversation_end
        assert outcome.fired is True


class TestThroughOutbox:

    def test_evaluate_trigger_job(self, test_db_session, conversation, salesforce_connector, evaluator):
        salesforce_connector(auto_export_on_escalation=True)
        job = enqueue_job(
            test_db_session,
            JOB_EVALUATE_TRIGGER,
            {"event": "escalation", "conversation_id": conversation.id},
        )
        test_db_session.commit()

        done = run_job(test_db_session, job.id, handlers=build_job_handlers(evaluator=evaluator))

        assert done.status == OutboxStatusEnum.succeeded
        record = test_db_session.query(ExportRecord).one()
        assert record.export_type == ExportTypeEnum.auto_escalation

    def test_handoff_escalation_exports_on_drain(
        self, test_db_session, conversation, salesforce_connector, evaluator, test_user, fake_salesforce,
    ):
        salesforce_connector(auto_export_on_escalation=True)
        HandoffController(test_db_session).record_agent_message(conversation, "Taking over", test_user)
        test_db_session.commit()
        assert fake_salesforce.lead_calls == []

        dispatcher = NotificationDispatcher(
            email=EmailChannel(api_key=None, from_email="noreply@example.com"),
            chat_ops=ChatOpsChannel(),
        )
        stats = drain_outbox(
            test_db_session,
            handlers=build_job_handlers(evaluator=evaluator, dispatcher=dispatcher),
        )

        assert stats == {"claimed": 2, "succeeded": 2, "failed": 0, "retrying": 0}
        assert len(fake_salesforce.lead_calls) == 1
        assert test_db_session.query(ExportRecord).one().export_type == ExportTypeEnum.auto_escalation
