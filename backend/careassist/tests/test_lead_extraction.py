"""Tests for lead extraction.

WHAT: Tool-call parsing, the additive merge, follow-up jobs and failure handling
WHY: Automated extraction must never overwrite a field a visitor (or a human
     edit) already set, and a failing LLM must never break the chat

REFERENCES:
  - careassist/services/lead_extraction_service.py
"""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

from sqlalchemy import update

from careassist.models import Conversation, ConversationStatusEnum, OutboxJob, SenderTypeEnum, Visitor, utcnow
from careassist.services.lead_extraction_service import (
    EXTRACT_TOOL_NAME,
    LeadExtractionService,
    LeadExtractor,
    build_transcript,
    merge_lead_fields,
    normalize_fields,
    parse_tool_arguments,
)
from careassist.services.sequencer import append_message


def _completion(arguments, name=EXTRACT_TOOL_NAME):
    """Shape of an OpenAI chat completion carrying one tool call."""
    call = SimpleNamespace(function=SimpleNamespace(name=name, arguments=arguments))
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(tool_calls=[call]))])


def _service(extracted):
    extractor = MagicMock()
    extractor.extract.return_value = extracted
    return LeadExtractionService(extractor), extractor


class TestParsing:

    def test_tool_arguments_parsed_and_normalized(self):
        response = _completion(json.dumps({"phone": " 555-123-4567 ", "name": "Dana", "favorite_color": "blue"}))
        assert parse_tool_arguments(response) == {"phone": "555-123-4567", "name": "Dana"}

    def test_invalid_json_means_nothing_extracted(self):
        assert parse_tool_arguments(_completion("{not json")) == {}

    def test_no_tool_call_means_nothing_extracted(self):
        response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(tool_calls=None))])
        assert parse_tool_arguments(response) == {}

    def test_other_tool_ignored(self):
        assert parse_tool_arguments(_completion(json.dumps({"name": "x"}), name="something_else")) == {}

    def test_normalize_drops_empty_and_non_string_values(self):
        assert normalize_fields({"name": "  ", "age": 34, "email": "d@example.com"}) == {"email": "d@example.com"}


class TestExtractor:

    def test_request_is_forced_tool_call_at_temperature_zero(self):
        client = MagicMock()
        client.chat.completions.create.return_value = _completion(json.dumps({"name": "Dana"}))
        extractor = LeadExtractor(client=client, model="test-model", timeout=5)

        result = extractor.extract([{"role": "user", "content": "I'm Dana"}])

        assert result == {"name": "Dana"}
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["temperature"] == 0
        assert kwargs["tool_choice"] == {"type": "function", "function": {"name": EXTRACT_TOOL_NAME}}
        assert kwargs["timeout"] == 5
        assert "user: I'm Dana" in kwargs["messages"][1]["content"]

    def test_backend_failure_returns_empty(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = TimeoutError("read timed out")
        extractor = LeadExtractor(client=client)

        assert extractor.extract([{"role": "user", "content": "hi"}]) == {}

    def test_empty_transcript_skips_call(self):
        client = MagicMock()
        assert LeadExtractor(client=client).extract([]) == {}
        client.chat.completions.create.assert_not_called()


class TestMerge:

    def test_only_null_fields_are_filled(self, test_db_session, conversation_factory):
        visitor = conversation_factory(name="Dana").visitor
        filled = merge_lead_fields(test_db_session, visitor, {"name": "Someone Else", "phone": "555-123-4567"})

        assert filled == ["phone"]
        assert visitor.name == "Dana"
        assert visitor.phone == "555-123-4567"

    def test_rescan_overwrites_but_reports_only_new_fields(self, test_db_session, conversation_factory):
        visitor = conversation_factory(name="Dana").visitor
        filled = merge_lead_fields(test_db_session, visitor, {"name": "Dana Smith", "phone": "555"}, overwrite=True)

        assert filled == ["phone"]
        assert visitor.name == "Dana Smith"

    def test_empty_string_counts_as_unset(self, test_db_session, conversation_factory):
        visitor = conversation_factory(email="").visitor
        assert merge_lead_fields(test_db_session, visitor, {"email": "dana@example.com"}) == ["email"]

    def test_unknown_field_ignored(self, test_db_session, conversation):
        assert merge_lead_fields(test_db_session, conversation.visitor, {"session_id": "hijack"}) == []
        assert conversation.visitor.session_id == "sess-1"

    def test_stale_session_copy_cannot_refill(self, test_db_session, conversation):
        visitor = conversation.visitor
        assert visitor.phone is None
        test_db_session.execute(
            update(Visitor).where(Visitor.id == visitor.id).values(phone="555-123-4567")
            .execution_options(synchronize_session=False)
        )

        # The session still believes phone is null
        assert visitor.phone is None
        assert merge_lead_fields(test_db_session, visitor, {"phone": "555-999-0000"}) == []
        assert visitor.phone == "555-123-4567"


class TestProcessConversation:

    def test_transcript_roles(self, test_db_session, conversation):
        append_message(test_db_session, conversation, sender_type=SenderTypeEnum.visitor, content="Hi")
        append_message(test_db_session, conversation, sender_type=SenderTypeEnum.agent, content="Hello!")
        test_db_session.commit()

        transcript = build_transcript(test_db_session, conversation.visitor)
        assert transcript == [{"role": "user", "content": "Hi"}, {"role": "assistant", "content": "Hello!"}]

    def test_new_phone_fires_one_notification_and_phone_trigger(self, test_db_session, conversation):
        append_message(test_db_session, conversation, sender_type=SenderTypeEnum.visitor,
                       content="My phone is 555-123-4567")
        test_db_session.commit()
        service, _ = _service({"phone": "555-123-4567"})

        outcome = service.process_conversation(test_db_session, conversation.id)
        test_db_session.commit()

        assert outcome.newly_filled == ["phone"]
        assert conversation.visitor.phone == "555-123-4567"
        jobs = test_db_session.query(OutboxJob).all()
        notifications = [j for j in jobs if j.job_name == "dispatch_notification"]
        triggers = [j for j in jobs if j.job_name == "evaluate_trigger"]
        assert [j.payload["event_type"] for j in notifications] == ["phone_submission"]
        assert [j.payload["event"] for j in triggers] == ["phone_detected"]

    def test_rerun_with_restated_phone_changes_nothing(self, test_db_session, conversation):
        append_message(test_db_session, conversation, sender_type=SenderTypeEnum.visitor,
                       content="My phone is 555-123-4567")
        test_db_session.commit()
        service, extractor = _service({"phone": "555-123-4567"})
        service.process_conversation(test_db_session, conversation.id)
        test_db_session.commit()

        append_message(test_db_session, conversation, sender_type=SenderTypeEnum.visitor,
                       content="Actually call 555-999-0000")
        test_db_session.commit()
        extractor.extract.return_value = {"phone": "555-999-0000"}

        outcome = service.process_conversation(test_db_session, conversation.id)
        test_db_session.commit()

        assert outcome.updated is False
        assert outcome.job_ids == []
        assert conversation.visitor.phone == "555-123-4567"
        assert test_db_session.query(OutboxJob).filter(OutboxJob.job_name == "dispatch_notification").count() == 1

    def test_new_insurance_fires_insurance_trigger_only(self, test_db_session, conversation):
        append_message(test_db_session, conversation, sender_type=SenderTypeEnum.visitor, content="I have Aetna")
        test_db_session.commit()
        service, _ = _service({"insurance_info": "Aetna"})

        outcome = service.process_conversation(test_db_session, conversation.id)
        test_db_session.commit()

        jobs = test_db_session.query(OutboxJob).all()
        assert [(j.job_name, j.payload["event"]) for j in jobs] == [("evaluate_trigger", "insurance_detected")]
        assert outcome.job_ids == [jobs[0].id]

    def test_nothing_extracted_is_not_an_error(self, test_db_session, conversation):
        append_message(test_db_session, conversation, sender_type=SenderTypeEnum.visitor, content="just browsing")
        test_db_session.commit()
        service, _ = _service({})

        outcome = service.process_conversation(test_db_session, conversation.id)

        assert outcome.updated is False
        assert test_db_session.query(OutboxJob).count() == 0

    def test_empty_transcript_skips_extractor(self, test_db_session, conversation):
        service, extractor = _service({"name": "Dana"})
        service.process_conversation(test_db_session, conversation.id)
        extractor.extract.assert_not_called()

    def test_transcript_spans_visitor_conversations(self, test_db_session, conversation_factory, test_property):
        first = conversation_factory("returning")
        append_message(test_db_session, first, sender_type=SenderTypeEnum.visitor, content="I'm Dana")
        test_db_session.commit()

        second = Conversation(
            property_id=test_property.id,
            visitor_id=first.visitor_id,
            status=ConversationStatusEnum.active,
            ai_enabled=True,
            last_sequence_number=0,
            created_at=utcnow(),
            updated_at=utcnow(),
        )
        test_db_session.add(second)
        test_db_session.flush()
        append_message(test_db_session, second, sender_type=SenderTypeEnum.visitor, content="Back again")
        test_db_session.commit()

        service, extractor = _service({})
        service.process_conversation(test_db_session, second.id)

        transcript = extractor.extract.call_args.args[0]
        assert [m["content"] for m in transcript] == ["I'm Dana", "Back again"]


class TestConcurrentExtraction:
    """Two extraction jobs for the same visitor running in separate sessions."""

    def test_late_job_with_stale_visitor_cannot_overwrite(self, shared_db):
        prop_id = shared_db.seed_property()
        conversation_id = shared_db.seed_conversation(prop_id, status=ConversationStatusEnum.active)
        seeder = shared_db.session()
        append_message(seeder, seeder.get(Conversation, conversation_id),
                       sender_type=SenderTypeEnum.visitor, content="Call me at 555-123-4567")
        seeder.commit()

        late = shared_db.session()
        assert late.get(Conversation, conversation_id).visitor.phone is None

        first = shared_db.session()
        service, _ = _service({"phone": "555-123-4567"})
        assert service.process_conversation(first, conversation_id).newly_filled == ["phone"]
        first.commit()

        service, _ = _service({"phone": "555-999-0000"})
        outcome = service.process_conversation(late, conversation_id)
        late.commit()

        assert outcome.newly_filled == []
        assert outcome.job_ids == []

        check = shared_db.session()
        assert check.get(Conversation, conversation_id).visitor.phone == "555-123-4567"
        notifications = check.query(OutboxJob).filter(OutboxJob.job_name == "dispatch_notification").all()
        assert [j.payload["event_type"] for j in notifications] == ["phone_submission"]
