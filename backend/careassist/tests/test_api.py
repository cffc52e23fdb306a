"""HTTP tests for the widget, dashboard, Salesforce and notification routers.

WHAT: Status codes, ownership checks, redirects and the outbox kick after commit
WHY: The routers are thin, but they own authentication (visitor session pair
     or dashboard JWT) and the commit-then-kick ordering

REFERENCES:
  - careassist/routers/widget.py
  - careassist/routers/conversations.py
  - careassist/routers/salesforce.py
  - careassist/routers/notifications.py
"""

from urllib.parse import parse_qs, urlparse

from careassist.models import (
    ConversationStatusEnum,
    NotificationChannelEnum,
    NotificationStatusEnum,
    OutboxJob,
    SalesforceSettings,
)
from careassist.services.notification_service import record_notification


def _start(client, prop, session_id="sess-api"):
    response = client.post("/widget/conversations", json={"property_id": str(prop.id), "session_id": session_id})
    assert response.status_code == 200
    return response.json()


def _visitor_auth(start, session_id="sess-api"):
    return {"visitor_id": start["visitor_id"], "session_id": session_id}


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestWidget:

    def test_create_then_reuse(self, client, test_property, kicked_jobs):
        first = _start(client, test_property)
        second = _start(client, test_property)

        assert first["created"] is True
        assert first["conversation"]["status"] == "pending"
        assert second["created"] is False
        assert second["conversation"]["id"] == first["conversation"]["id"]
        assert len(kicked_jobs) == 1

    def test_unknown_property(self, client):
        response = client.post(
            "/widget/conversations",
            json={"property_id": "6f1c0a6e-4a3e-4b7e-9c55-0d2f4c9b8a11", "session_id": "x"},
        )
        assert response.status_code == 404

    def test_post_message_and_poll(self, client, test_property, kicked_jobs, test_db_session):
        start = _start(client, test_property)
        conversation_id = start["conversation"]["id"]
        kicked_jobs.clear()

        response = client.post(
            f"/widget/conversations/{conversation_id}/messages",
            json={**_visitor_auth(start), "content": "Hi, I need help"},
        )
        assert response.status_code == 201
        assert response.json()["sequence_number"] == 1
        assert response.json()["sender_type"] == "visitor"

        (job_id,) = kicked_jobs
        assert test_db_session.get(OutboxJob, job_id).job_name == "lead_extraction"

        client.post(
            f"/widget/conversations/{conversation_id}/messages",
            json={**_visitor_auth(start), "content": "Are you there?"},
        )
        polled = client.get(
            f"/widget/conversations/{conversation_id}/messages",
            params={**_visitor_auth(start), "after_sequence": 1},
        )
        assert polled.status_code == 200
        assert [m["sequence_number"] for m in polled.json()] == [2]

    def test_wrong_session_forbidden(self, client, test_property):
        start = _start(client, test_property)
        response = client.post(
            f"/widget/conversations/{start['conversation']['id']}/messages",
            json={"visitor_id": start["visitor_id"], "session_id": "someone-else", "content": "hi"},
        )
        assert response.status_code == 403

    def test_closed_conversation_conflict(self, client, conversation_factory):
        closed = conversation_factory("sess-closed", status=ConversationStatusEnum.closed)
        response = client.post(
            f"/widget/conversations/{closed.id}/messages",
            json={"visitor_id": str(closed.visitor_id), "session_id": "sess-closed", "content": "hello?"},
        )
        assert response.status_code == 409

    def test_presence_closed_schedules_conversation_end(self, client, test_property, kicked_jobs, test_db_session):
        start = _start(client, test_property)
        kicked_jobs.clear()

        response = client.post("/widget/presence", json={
            **_visitor_auth(start),
            "conversation_id": start["conversation"]["id"],
            "status": "closed",
        })

        assert response.status_code == 200
        assert response.json()["status"] == "closed"
        (job_id,) = kicked_jobs
        assert test_db_session.get(OutboxJob, job_id).payload["event"] == "conversation_end"

    def test_ai_queue_actions(self, client, test_property):
        start = _start(client, test_property)
        url = f"/widget/conversations/{start['conversation']['id']}/ai-queue"

        queued = client.post(url, json={**_visitor_auth(start), "action": "queue", "preview": "Draft"})
        assert queued.json()["outcome"] == "queued"
        assert queued.json()["conversation"]["ai_queued_preview"] == "Draft"

        paused = client.post(url, json={**_visitor_auth(start), "action": "pause"})
        assert paused.json()["conversation"]["ai_queued_paused"] is True

        cleared = client.post(url, json={**_visitor_auth(start), "action": "clear"})
        assert cleared.json()["outcome"] == "cleared"

        again = client.post(url, json={**_visitor_auth(start), "action": "pause"})
        assert again.status_code == 409

    def test_ai_queue_on_closed_conversation_conflict(self, client, conversation_factory):
        closed = conversation_factory("sess-closed", status=ConversationStatusEnum.closed)

        response = client.post(
            f"/widget/conversations/{closed.id}/ai-queue",
            json={"visitor_id": str(closed.visitor_id), "session_id": "sess-closed", "action": "queue", "preview": "Draft"},
        )

        assert response.status_code == 409


class TestDashboard:

    def test_agent_reply_escalates_and_suppresses_ai(self, client, test_property, auth_headers, kicked_jobs):
        start = _start(client, test_property)
        conversation_id = start["conversation"]["id"]
        kicked_jobs.clear()

        response = client.post(
            f"/conversations/{conversation_id}/messages",
            json={"content": "Hi, this is Olivia"},
            headers=auth_headers,
        )
        assert response.status_code == 201
        body = response.json()
        assert body["escalated"] is True
        assert body["state_after"] == "HUMAN_ACTIVE"
        assert body["conversation"]["ai_enabled"] is False
        assert len(kicked_jobs) == 2

        ai = client.post(
            f"/widget/conversations/{conversation_id}/ai-reply",
            json={**_visitor_auth(start), "content": "AI answer"},
        )
        assert ai.json()["outcome"] == "suppressed"
        assert ai.json()["message"] is None

    def test_toggle_back_to_ai(self, client, conversation, auth_headers):
        client.post(f"/conversations/{conversation.id}/messages", json={"content": "mine"}, headers=auth_headers)
        response = client.post(f"/conversations/{conversation.id}/ai-toggle", json={"enabled": True}, headers=auth_headers)

        assert response.json()["state_after"] == "AI_ACTIVE"
        assert response.json()["conversation"]["ai_enabled"] is True

    def test_foreign_conversation_not_found(self, client, conversation_factory, other_property, auth_headers):
        theirs = conversation_factory("theirs", prop=other_property)
        response = client.post(f"/conversations/{theirs.id}/messages", json={"content": "hi"}, headers=auth_headers)
        assert response.status_code == 404

    def test_unauthenticated(self, client, conversation):
        response = client.post(f"/conversations/{conversation.id}/messages", json={"content": "hi"})
        assert response.status_code == 401

    def test_close_and_read(self, client, test_property, auth_headers):
        start = _start(client, test_property)
        conversation_id = start["conversation"]["id"]
        client.post(
            f"/widget/conversations/{conversation_id}/messages",
            json={**_visitor_auth(start), "content": "hello"},
        )

        read = client.post(f"/conversations/{conversation_id}/read", headers=auth_headers)
        assert read.json() == {"marked_read": 1}

        closed = client.post(f"/conversations/{conversation_id}/close", headers=auth_headers)
        assert closed.json()["status"] == "closed"

    def test_rescan_schedules_overwriting_extraction(self, client, conversation, auth_headers, test_db_session):
        response = client.post(f"/conversations/{conversation.id}/rescan", headers=auth_headers)

        assert response.status_code == 202
        job = test_db_session.query(OutboxJob).one()
        assert job.payload == {"conversation_id": str(conversation.id), "rescan": True}

    def test_visitor_edit(self, client, conversation, auth_headers):
        response = client.patch(
            f"/visitors/{conversation.visitor_id}",
            json={"name": "Dana Doe", "phone": "555-123-4567"},
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert response.json()["name"] == "Dana Doe"
        assert response.json()["phone"] == "555-123-4567"


class TestSalesforceRoutes:

    def test_oauth_start_and_callback_redirects(self, client, test_property, auth_headers, test_db_session):
        start = client.get("/salesforce/oauth/start", params={"property_id": str(test_property.id)}, headers=auth_headers)
        assert start.status_code == 200
        state = parse_qs(urlparse(start.json()["authorization_url"]).query)["state"][0]

        callback = client.get(
            "/salesforce/oauth/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )
        assert callback.status_code == 307
        location = urlparse(callback.headers["location"])
        assert location.path == "/settings"
        assert parse_qs(location.query)["salesforce"] == ["connected"]

        crm = test_db_session.query(SalesforceSettings).one()
        assert crm.is_connected

        replay = client.get(
            "/salesforce/oauth/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )
        query = parse_qs(urlparse(replay.headers["location"]).query)
        assert query["salesforce"] == ["error"]
        assert query["reason"] == ["state_replayed"]

    def test_callback_with_non_json_token_body(self, client, test_property, auth_headers, fake_salesforce):
        fake_salesforce.token_responses.append((200, "<html>Down for maintenance</html>"))
        start = client.get("/salesforce/oauth/start", params={"property_id": str(test_property.id)}, headers=auth_headers)
        state = parse_qs(urlparse(start.json()["authorization_url"]).query)["state"][0]

        callback = client.get(
            "/salesforce/oauth/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )
        assert callback.status_code == 307
        assert parse_qs(urlparse(callback.headers["location"]).query)["reason"] == ["token_exchange_failed"]

        replay = client.get(
            "/salesforce/oauth/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )
        assert parse_qs(urlparse(replay.headers["location"]).query)["reason"] == ["state_replayed"]
        assert len(fake_salesforce.token_calls) == 1

    def test_callback_provider_error(self, client):
        response = client.get(
            "/salesforce/oauth/callback",
            params={"error": "access_denied"},
            follow_redirects=False,
        )
        assert parse_qs(urlparse(response.headers["location"]).query)["reason"] == ["access_denied"]

    def test_oauth_start_for_foreign_property(self, client, other_property, auth_headers):
        response = client.get("/salesforce/oauth/start", params={"property_id": str(other_property.id)}, headers=auth_headers)
        assert response.status_code == 404

    def test_settings_default_mapping_and_update(self, client, test_property, auth_headers):
        current = client.get("/salesforce/settings", params={"property_id": str(test_property.id)}, headers=auth_headers)
        assert current.json()["connection_status"] == "disconnected"
        assert current.json()["field_mappings"] == {"LastName": "name", "Email": "email", "Phone": "phone"}

        updated = client.put(
            "/salesforce/settings",
            params={"property_id": str(test_property.id)},
            json={"auto_export_on_phone_detected": True, "field_mappings": {"LastName": "name"}},
            headers=auth_headers,
        )
        assert updated.json()["auto_export_on_phone_detected"] is True
        assert updated.json()["auto_export_on_escalation"] is False
        assert updated.json()["field_mappings"] == {"LastName": "name"}

    def test_mapping_to_unknown_visitor_field_rejected(self, client, test_property, auth_headers):
        response = client.put(
            "/salesforce/settings",
            params={"property_id": str(test_property.id)},
            json={"field_mappings": {"Description": "session_id"}},
            headers=auth_headers,
        )
        assert response.status_code == 422

    def test_export_not_connected(self, client, test_property, conversation, auth_headers):
        response = client.post(
            "/salesforce/export",
            json={"property_id": str(test_property.id), "visitor_ids": [str(conversation.visitor_id)]},
            headers=auth_headers,
        )
        assert response.status_code == 400

    def test_export_connected(self, client, test_property, conversation, salesforce_connector, auth_headers):
        salesforce_connector()
        response = client.post(
            "/salesforce/export",
            json={"property_id": str(test_property.id), "visitor_ids": [str(conversation.visitor_id)]},
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert response.json() == {"exported": 1, "total": 1, "errors": []}

    def test_export_all_skips_foreign_visitors(
        self, client, conversation_factory, other_property, salesforce_connector, auth_headers,
    ):
        salesforce_connector()
        mine = conversation_factory("mine", name="Mine")
        theirs = conversation_factory("theirs", prop=other_property)

        response = client.post(
            "/salesforce/export",
            json={"property_id": "all", "visitor_ids": [str(mine.visitor_id), str(theirs.visitor_id)]},
            headers=auth_headers,
        )

        assert response.json()["exported"] == 1
        assert response.json()["errors"] == [f"Visitor {theirs.visitor_id} not found"]

    def test_disconnect(self, client, test_property, salesforce_connector, auth_headers):
        salesforce_connector()
        response = client.post("/salesforce/disconnect", params={"property_id": str(test_property.id)}, headers=auth_headers)
        assert response.json()["connection_status"] == "disconnected"
        assert response.json()["enabled"] is False

    def test_lead_fields(self, client, test_property, salesforce_connector, auth_headers):
        salesforce_connector()
        response = client.get("/salesforce/lead-fields", params={"property_id": str(test_property.id)}, headers=auth_headers)
        assert [f["name"] for f in response.json()] == ["LastName", "Phone"]


class TestNotificationRoutes:

    def test_email_recipients_lowercased_and_deduplicated(self, client, test_property, auth_headers):
        response = client.put(
            "/notifications/settings/email",
            params={"property_id": str(test_property.id)},
            json={"recipients": ["Ops@Example.com", "ops@example.com", "intake@example.com"]},
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert response.json()["recipients"] == ["ops@example.com", "intake@example.com"]

    def test_invalid_email_rejected(self, client, test_property, auth_headers):
        response = client.put(
            "/notifications/settings/email",
            params={"property_id": str(test_property.id)},
            json={"recipients": ["not-an-email"]},
            headers=auth_headers,
        )
        assert response.status_code == 422

    def test_slack_webhook_never_returned(self, client, test_property, auth_headers):
        client.put(
            "/notifications/settings/slack",
            params={"property_id": str(test_property.id)},
            json={"enabled": True, "webhook_url": "https://hooks.slack.com/services/T000/B000/XXXX", "channel_name": "#leads"},
            headers=auth_headers,
        )

        response = client.get("/notifications/settings/slack", params={"property_id": str(test_property.id)}, headers=auth_headers)

        body = response.json()
        assert body["webhook_configured"] is True
        assert "webhook_url" not in body
        assert "hooks.slack.com" not in response.text

    def test_log_filters(self, client, test_property, test_db_session, auth_headers):
        for channel, status in [
            (NotificationChannelEnum.email, NotificationStatusEnum.sent),
            (NotificationChannelEnum.email, NotificationStatusEnum.failed),
            (NotificationChannelEnum.slack, NotificationStatusEnum.sent),
        ]:
            record_notification(
                test_db_session,
                property_id=test_property.id,
                notification_type="escalation",
                channel=channel,
                recipient="ops@example.com",
                status=status,
            )
        test_db_session.commit()

        response = client.get(
            "/notifications/log",
            params={"property_id": str(test_property.id), "channel": "email", "status": "failed"},
            headers=auth_headers,
        )

        assert response.json()["total"] == 1
        assert response.json()["items"][0]["status"] == "failed"
