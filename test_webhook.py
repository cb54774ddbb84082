"""
Tests for the POST /webhook/evolution/{instance_name} endpoint.

Tests cover:
- First contact creates instance, customer, ticket and message
- Redelivery is acknowledged as duplicate without a second write
- Invalid/missing signature (401)
- Unknown events and malformed bodies (400)
- Status, connection and QR events
- Queue mode and deferral of transient failures
- Realtime fanout, typing relay and instance notifications
- Dead-letter listing and replay
"""

import asyncio
import json
import time

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from conftest import TEST_WEBHOOK_SECRET
from crm_bridge.errors import PersistenceFailure
from crm_bridge.events import SUPPORTED_EVENTS
from crm_bridge.main import create_app
from crm_bridge.models import Customer, Instance, Message, Ticket
from crm_bridge.queue import DeadLetterRecord, Delivery, QueueEnvelope
from crm_bridge.signature import compute_signature

WEBHOOK_PATH = "/webhook/evolution/acme"


def post_event(client, event: str, data, secret: str = TEST_WEBHOOK_SECRET, path: str = WEBHOOK_PATH):
    body = json.dumps({"event": event, "instance": "acme", "data": data})
    return client.post(
        path,
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Signature": "sha256=" + compute_signature(body.encode("utf-8"), secret),
        },
    )


def counts(client) -> dict:
    with client.app.state.services.session_factory() as db:
        return {
            "instances": db.query(Instance).count(),
            "customers": db.query(Customer).count(),
            "tickets": db.query(Ticket).count(),
            "messages": db.query(Message).count(),
        }


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


class TestWebhookFirstContact:
    """A new sender on an unseen instance."""

    def test_creates_all_records(self, client, message_item):
        """Test acme / Ana / M1 creates one of each record."""
        response = post_event(client, "MESSAGES_UPSERT", [message_item()])

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["event"] == "MESSAGES_UPSERT"
        assert data["instance"] == "acme"
        assert data["result"] == "processed"
        assert data["processed"] == 1
        assert data["duplicates"] == 0
        assert data["timestamp"].endswith("Z")

        assert counts(client) == {"instances": 1, "customers": 1, "tickets": 1, "messages": 1}

        with client.app.state.services.session_factory() as db:
            instance = db.query(Instance).one()
            customer = db.query(Customer).one()
            ticket = db.query(Ticket).one()
            message = db.query(Message).one()

        assert instance.name == "acme"
        assert instance.created_via == "webhook"
        assert customer.identity_key == "5511999999999"
        assert customer.display_name == "Ana"
        assert ticket.status == "open"
        assert ticket.customer_id == customer.id
        assert ticket.unread_count == 1
        assert ticket.caught_up is False
        assert message.external_id == "M1"
        assert message.kind == "text"
        assert message.display_text == "hi"
        assert message.direction == "inbound"
        assert message.source_timestamp == "2023-11-14T22:13:20.000Z"

    def test_dotted_event_name(self, client, message_item):
        """Test the gateway's dotted lower-case event spelling."""
        response = post_event(client, "messages.upsert", message_item())

        assert response.status_code == 200
        assert response.json()["event"] == "MESSAGES_UPSERT"
        assert counts(client)["messages"] == 1

    def test_second_message_reuses_ticket(self, client, message_item):
        """Test a second message from the same sender lands on the same ticket."""
        post_event(client, "MESSAGES_UPSERT", [message_item("M1")])
        post_event(client, "MESSAGES_UPSERT", [message_item("M2", message={"imageMessage": {"caption": "look"}})])

        assert counts(client) == {"instances": 1, "customers": 1, "tickets": 1, "messages": 2}
        with client.app.state.services.session_factory() as db:
            assert db.query(Ticket).one().unread_count == 2

    def test_outbound_message_does_not_bump_unread(self, client, message_item):
        """Test fromMe messages are stored outbound and leave unread_count alone."""
        post_event(client, "SEND_MESSAGE", [message_item("OUT1", from_me=True, push_name="Agent")])

        with client.app.state.services.session_factory() as db:
            message = db.query(Message).one()
            ticket = db.query(Ticket).one()
            customer = db.query(Customer).one()
        assert message.direction == "outbound"
        assert ticket.unread_count == 0
        assert customer.display_name == "Customer 5511999999999"

    def test_status_broadcast_ignored(self, client, message_item):
        """Test status@broadcast items are not stored."""
        response = post_event(client, "MESSAGES_UPSERT", [message_item(jid="status@broadcast")])

        assert response.status_code == 200
        assert response.json()["result"] == "ignored"
        assert counts(client)["messages"] == 0


class TestWebhookIdempotency:
    """Test at-least-once delivery handling."""

    def test_duplicate_delivery(self, client, message_item):
        """Test the same delivery three times writes once and bumps activity once."""
        item = message_item()
        first = post_event(client, "MESSAGES_UPSERT", [item])
        second = post_event(client, "MESSAGES_UPSERT", [item])
        third = post_event(client, "MESSAGES_UPSERT", [item])

        assert first.json()["result"] == "processed"
        for response in (second, third):
            assert response.status_code == 200
            assert response.json()["result"] == "duplicate"
            assert response.json()["duplicates"] == 1
            assert response.json()["processed"] == 0

        assert counts(client) == {"instances": 1, "customers": 1, "tickets": 1, "messages": 1}
        with client.app.state.services.session_factory() as db:
            assert db.query(Ticket).one().unread_count == 1

    def test_mixed_batch(self, client, message_item):
        """Test a batch with one known and one new item."""
        post_event(client, "MESSAGES_UPSERT", [message_item("M1")])
        response = post_event(client, "MESSAGES_UPSERT", [message_item("M1"), message_item("M2")])

        data = response.json()
        assert data["result"] == "processed"
        assert data["processed"] == 1
        assert data["duplicates"] == 1
        assert counts(client)["messages"] == 2


class TestWebhookInvalidSignature:
    """Test webhook with invalid or missing signatures."""

    def test_missing_signature_header(self, client, message_item):
        """Test request without X-Signature header returns 401."""
        response = client.post(
            WEBHOOK_PATH,
            content=json.dumps({"event": "MESSAGES_UPSERT", "data": [message_item()]}),
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "invalid signature"}
        assert counts(client)["messages"] == 0

    def test_tampered_body(self, client, message_item):
        """Test a signature computed for a different body returns 401."""
        signed = json.dumps({"event": "MESSAGES_UPSERT", "data": [message_item(message={"conversation": "hi"})]})
        tampered = json.dumps({"event": "MESSAGES_UPSERT", "data": [message_item(message={"conversation": "pay me"})]})

        response = client.post(
            WEBHOOK_PATH,
            content=tampered,
            headers={
                "Content-Type": "application/json",
                "X-Signature": compute_signature(signed.encode("utf-8"), TEST_WEBHOOK_SECRET),
            },
        )

        assert response.status_code == 401
        assert counts(client)["messages"] == 0

    def test_wrong_secret(self, client, message_item):
        """Test signature computed with a different secret returns 401."""
        response = post_event(client, "MESSAGES_UPSERT", [message_item()], secret="wrong_secret")
        assert response.status_code == 401

    def test_sha1_signature_accepted(self, client, message_item):
        """Test an HMAC-SHA1 signature with prefix is accepted."""
        body = json.dumps({"event": "MESSAGES_UPSERT", "data": [message_item()]})
        signature = compute_signature(body.encode("utf-8"), TEST_WEBHOOK_SECRET, "sha1")

        response = client.post(
            WEBHOOK_PATH,
            content=body,
            headers={"Content-Type": "application/json", "X-Signature": f"sha1={signature}"},
        )

        assert response.status_code == 200

    def test_unsigned_accepted_without_secret(self, make_settings, message_item):
        """Test signatures are not enforced when no secret is configured."""
        settings = make_settings(WEBHOOK_SECRET=None)
        with TestClient(create_app(settings)) as client:
            response = client.post(
                WEBHOOK_PATH,
                content=json.dumps({"event": "MESSAGES_UPSERT", "data": [message_item()]}),
                headers={"Content-Type": "application/json"},
            )
            ready = client.get("/health/ready")

        assert response.status_code == 200
        assert "signature" in ready.json()["degraded"]


class TestWebhookValidationErrors:
    """Test unknown events and malformed bodies (400)."""

    def test_unknown_event(self, client):
        """Test an unknown event returns 400 with the supported list."""
        response = post_event(client, "MESSAGES_EXPLODE", {})

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert "MESSAGES_EXPLODE" in data["error"]
        assert data["supportedEvents"] == SUPPORTED_EVENTS
        assert len(data["supportedEvents"]) == 22

    def test_invalid_json(self, client):
        """Test invalid JSON returns 400."""
        body = "not valid json"
        response = client.post(
            WEBHOOK_PATH,
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Signature": compute_signature(body.encode("utf-8"), TEST_WEBHOOK_SECRET),
            },
        )

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_missing_event(self, client):
        """Test a body without an event returns 400."""
        body = json.dumps({"data": {}})
        response = client.post(
            WEBHOOK_PATH,
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Signature": compute_signature(body.encode("utf-8"), TEST_WEBHOOK_SECRET),
            },
        )

        assert response.status_code == 400

    def test_message_without_key(self, client):
        """Test a message item without key returns 400 and writes nothing."""
        response = post_event(client, "MESSAGES_UPSERT", [{"message": {"conversation": "hi"}}])

        assert response.status_code == 400
        assert counts(client)["messages"] == 0

    def test_empty_message_batch(self, client):
        """Test MESSAGES_UPSERT without items returns 400."""
        response = post_event(client, "MESSAGES_UPSERT", [])
        assert response.status_code == 400

    def test_one_bad_item_rejects_batch(self, client, message_item):
        """Test any invalid item rejects the whole delivery."""
        response = post_event(client, "MESSAGES_UPSERT", [message_item("M1"), {"key": {"id": "M2"}}])

        assert response.status_code == 400
        assert counts(client)["messages"] == 0


class TestWebhookInstanceEvents:
    """Test status, connection, QR and pass-through events."""

    def test_message_status_update(self, client, message_item):
        """Test MESSAGES_UPDATE sets the ack status of a stored message."""
        post_event(client, "MESSAGES_UPSERT", [message_item()])
        response = post_event(client, "MESSAGES_UPDATE", [{"keyId": "M1", "status": "READ"}])

        assert response.json()["result"] == "processed"
        with client.app.state.services.session_factory() as db:
            assert db.query(Message).one().ack_status == "READ"

    def test_status_update_for_unknown_message(self, client):
        """Test MESSAGES_UPDATE for a message never stored is ignored."""
        response = post_event(client, "MESSAGES_UPDATE", [{"keyId": "NOPE", "status": "READ"}])

        assert response.status_code == 200
        assert response.json()["result"] == "ignored"

    def test_connection_update(self, client):
        """Test CONNECTION_UPDATE maps gateway states onto the instance."""
        post_event(client, "CONNECTION_UPDATE", {"instance": "acme", "state": "open"})
        with client.app.state.services.session_factory() as db:
            assert db.query(Instance).one().connection_state == "connected"

        post_event(client, "CONNECTION_UPDATE", {"instance": "acme", "state": "close", "statusReason": 401})
        with client.app.state.services.session_factory() as db:
            instance = db.query(Instance).one()
        assert instance.connection_state == "disconnected"
        assert instance.status_reason == "401"

        post_event(client, "CONNECTION_UPDATE", {"instance": "acme", "state": "refused"})
        with client.app.state.services.session_factory() as db:
            assert db.query(Instance).one().connection_state == "error"

    def test_connection_update_requires_state(self, client):
        """Test CONNECTION_UPDATE without state returns 400."""
        response = post_event(client, "CONNECTION_UPDATE", {"instance": "acme"})
        assert response.status_code == 400

    def test_qrcode_updated(self, client):
        """Test QRCODE_UPDATED stores the code and pairing code."""
        response = post_event(
            client,
            "QRCODE_UPDATED",
            {"qrcode": {"base64": "data:image/png;base64,AAA", "pairingCode": "WZYEH1YY"}},
        )

        assert response.json()["result"] == "processed"
        with client.app.state.services.session_factory() as db:
            instance = db.query(Instance).one()
        assert instance.qr_code == "data:image/png;base64,AAA"
        assert instance.pairing_code == "WZYEH1YY"

    def test_application_startup(self, client):
        """Test APPLICATION_STARTUP marks the instance connecting."""
        post_event(client, "APPLICATION_STARTUP", {})
        with client.app.state.services.session_factory() as db:
            assert db.query(Instance).one().connection_state == "connecting"

    def test_passthrough_event(self, client):
        """Test a pass-through event is acknowledged without writes."""
        response = post_event(client, "CHATS_UPDATE", [{"remoteJid": "5511999999999@s.whatsapp.net"}])

        assert response.status_code == 200
        assert response.json()["result"] == "ignored"
        assert counts(client) == {"instances": 1, "customers": 0, "tickets": 0, "messages": 0}


class TestWebhookQueue:
    """Test queue mode and deferral of transient failures."""

    def test_queue_mode_processes_in_background(self, make_settings, message_item):
        """Test INGEST_MODE=queue answers queued and the worker writes the message."""
        settings = make_settings(INGEST_MODE="queue", QUEUE_BACKEND="memory")
        with TestClient(create_app(settings)) as client:
            response = post_event(client, "MESSAGES_UPSERT", [message_item()])

            assert response.status_code == 200
            assert response.json()["result"] == "queued"
            assert wait_for(lambda: counts(client)["messages"] == 1)

    def test_queue_mode_still_validates(self, make_settings):
        """Test malformed payloads are rejected before enqueueing."""
        settings = make_settings(INGEST_MODE="queue", QUEUE_BACKEND="memory")
        with TestClient(create_app(settings)) as client:
            response = post_event(client, "MESSAGES_UPSERT", [{"message": {}}])

        assert response.status_code == 400

    def test_queue_mode_without_broker_is_degraded(self, make_settings, message_item):
        """Test INGEST_MODE=queue with no broker ingests synchronously."""
        settings = make_settings(INGEST_MODE="queue", QUEUE_BACKEND="none")
        with TestClient(create_app(settings)) as client:
            response = post_event(client, "MESSAGES_UPSERT", [message_item()])
            ready = client.get("/health/ready")

        assert response.json()["result"] == "processed"
        assert ready.json()["degraded"] == ["queue"]

    def test_transient_failure_deferred_to_queue(self, make_settings, message_item, monkeypatch):
        """Test a transient store failure is enqueued and answered as deferred."""
        async def failing_delivery(*args, **kwargs):
            raise PersistenceFailure("store unavailable")

        monkeypatch.setattr("crm_bridge.main.handle_delivery", failing_delivery)
        settings = make_settings(QUEUE_BACKEND="memory")
        with TestClient(create_app(settings)) as client:
            response = post_event(client, "MESSAGES_UPSERT", [message_item()])

            assert response.status_code == 200
            assert response.json()["result"] == "deferred"
            # The worker uses the real pipeline and succeeds
            assert wait_for(lambda: counts(client)["messages"] == 1)

    def test_transient_failure_without_broker(self, client, message_item, monkeypatch):
        """Test a transient store failure with no queue returns 500."""
        async def failing_delivery(*args, **kwargs):
            raise PersistenceFailure("store unavailable")

        monkeypatch.setattr("crm_bridge.main.handle_delivery", failing_delivery)
        response = post_event(client, "MESSAGES_UPSERT", [message_item()])

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "store unavailable"}


    def test_store_error_deferred_to_queue(self, make_settings, message_item, monkeypatch):
        """Test a raw store error in the pipeline is deferred like any transient failure."""
        calls = []

        def locked_once(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError("SELECT", {}, Exception("database is locked"))
            return False

        monkeypatch.setattr("crm_bridge.pipeline.already_processed", locked_once)
        settings = make_settings(QUEUE_BACKEND="memory")
        with TestClient(create_app(settings)) as client:
            response = post_event(client, "MESSAGES_UPSERT", [message_item()])

            assert response.status_code == 200
            assert response.json()["result"] == "deferred"
            assert wait_for(lambda: counts(client)["messages"] == 1)

    def test_store_error_without_broker(self, client, message_item, monkeypatch):
        """Test a raw store error with no queue returns a JSON 500."""
        def locked(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr("crm_bridge.pipeline.already_processed", locked)
        response = post_event(client, "MESSAGES_UPSERT", [message_item()])

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "store error while handling MESSAGES_UPSERT"}


class TestWebhookOddContent:
    """Payloads that validate but carry odd values are still stored."""

    def test_malformed_context_info(self, client, message_item):
        message = {"extendedTextMessage": {"text": "hi", "contextInfo": "x"}}
        response = post_event(client, "MESSAGES_UPSERT", [message_item(message=message)])

        assert response.status_code == 200
        assert response.json()["result"] == "processed"
        with client.app.state.services.session_factory() as db:
            assert db.query(Message).one().display_text == "hi"

    def test_timestamp_out_of_range(self, client, message_item):
        """Test an unrepresentable timestamp falls back to server time."""
        response = post_event(client, "MESSAGES_UPSERT", [message_item(timestamp=10**15)])

        assert response.status_code == 200
        assert response.json()["result"] == "processed"
        with client.app.state.services.session_factory() as db:
            assert db.query(Message).one().source_timestamp.endswith("Z")


class TestWebhookRealtime:
    """Test realtime fanout through the /ws endpoint."""

    def test_new_message_reaches_ticket_room(self, client, message_item):
        """Test a subscriber of the ticket room receives new-message."""
        post_event(client, "MESSAGES_UPSERT", [message_item("M1")])
        with client.app.state.services.session_factory() as db:
            ticket_id = db.query(Ticket).one().id

        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({"action": "subscribe", "room": f"ticket:{ticket_id}"}))
            assert ws.receive_json() == {"event": "subscribed", "room": f"ticket:{ticket_id}"}

            post_event(client, "MESSAGES_UPSERT", [message_item("M2", message={"conversation": "again"})])

            event = ws.receive_json()
            assert event["event"] == "new-message"
            assert event["room"] == f"ticket:{ticket_id}"
            assert event["data"]["message"]["displayText"] == "again"
            assert event["data"]["customer"]["displayName"] == "Ana"
            assert event["timestamp"].endswith("Z")

            update = ws.receive_json()
            assert update["event"] == "ticket-updated"
            assert update["data"]["ticket"]["unreadCount"] == 2

    def test_connection_update_reaches_instance_room(self, client):
        """Test a subscriber of the instance room receives connection-update."""
        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({"action": "subscribe", "room": "instance:acme"}))
            ws.receive_json()

            post_event(client, "CONNECTION_UPDATE", {"state": "open"})

            event = ws.receive_json()
            assert event["event"] == "connection-update"
            assert event["data"]["status"] == "connected"

    def test_ping_and_invalid_room(self, client):
        """Test ping answers pong and unknown rooms are refused."""
        with client.websocket_connect("/ws") as ws:
            ws.send_text("ping")
            assert ws.receive_text() == "pong"

            ws.send_text(json.dumps({"action": "subscribe", "room": "everything"}))
            assert ws.receive_json()["event"] == "error"

    def test_typing_relayed_to_other_subscribers(self, client):
        """Test typing reaches the rest of the ticket room but not the sender."""
        with client.websocket_connect("/ws") as agent, client.websocket_connect("/ws") as peer:
            for ws in (agent, peer):
                ws.send_text(json.dumps({"action": "subscribe", "room": "ticket:7"}))
                ws.receive_json()

            agent.send_text(json.dumps({"action": "typing", "ticketId": 7, "isTyping": True, "agentName": "Bia"}))

            event = peer.receive_json()
            assert event["event"] == "user-typing"
            assert event["room"] == "ticket:7"
            assert event["data"] == {"ticketId": 7, "isTyping": True, "agentName": "Bia"}

            # The sender's next frame is the answer to its own ping, not the echo
            agent.send_text("ping")
            assert agent.receive_text() == "pong"

    def test_typing_requires_ticket_id(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({"action": "typing", "ticketId": "abc"}))
            assert ws.receive_json()["event"] == "error"

    def test_inbound_message_notifies_instance_room(self, client, message_item):
        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({"action": "subscribe", "room": "instance:acme"}))
            ws.receive_json()

            post_event(client, "MESSAGES_UPSERT", [message_item()])

            event = ws.receive_json()
            assert event["event"] == "notification"
            assert event["data"]["type"] == "new-message"
            assert event["data"]["title"] == "New message from Ana"
            assert event["data"]["message"] == "hi"


class TestDeadLetters:
    """Test listing and replaying dead-lettered envelopes."""

    def test_list_and_replay(self, make_settings, message_item):
        settings = make_settings(QUEUE_BACKEND="memory")
        with TestClient(create_app(settings)) as client:
            broker = client.app.state.services.broker
            envelope = QueueEnvelope(eventKind="MESSAGES_UPSERT", instanceName="acme", data=[message_item()], retryCount=3)
            record = DeadLetterRecord(**envelope.model_dump(), error="PersistenceFailure: store unavailable")
            asyncio.run(broker.dead_letter(Delivery(envelope, "receipt-1"), record))

            listed = client.get("/queue/dead-letters")
            assert listed.status_code == 200
            assert [r["id"] for r in listed.json()] == [envelope.id]
            assert listed.json()[0]["error"] == "PersistenceFailure: store unavailable"
            assert client.get("/health/ready").json()["queue"]["deadLettered"] == 1

            replayed = client.post(f"/queue/dead-letters/{envelope.id}/replay")
            assert replayed.status_code == 200
            assert replayed.json()["id"] == envelope.id
            assert replayed.json()["retryCount"] == 0

            assert wait_for(lambda: counts(client)["messages"] == 1)
            assert client.get("/queue/dead-letters").json() == []

            again = client.post(f"/queue/dead-letters/{envelope.id}/replay")
            assert again.status_code == 404
            assert again.json()["success"] is False

    def test_without_broker(self, client):
        assert client.get("/queue/dead-letters").status_code == 503
        assert client.post("/queue/dead-letters/abc/replay").status_code == 503
