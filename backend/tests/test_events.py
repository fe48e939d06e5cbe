"""Tests for owners, event creation rules, lookups and the organizer close action.

Covers:
- Creation: fees fixed at creation, unique slug, derived counts
- Validation errors reported per field and never persisted
- Onboarding gate driven by the account.updated webhook
- Close: releases every hold and cannot be repeated
"""
import re

from groupbooking.services import gateway as gw
from tests.conftest import (
    book,
    create_test_event,
    create_test_owner,
    event_payload,
    load_event,
    load_payment,
    send_webhook,
)


class TestOwners:

    def test_new_owner_not_onboarded(self, client):
        owner = create_test_owner(client, onboarded=False)
        assert owner["onboarding_complete"] is False

    def test_account_updated_completes_onboarding(self, client):
        owner = create_test_owner(client)
        resp = client.get(f"/api/owners/{owner['owner_id']}")
        assert resp.json()["onboarding_complete"] is True

    def test_incomplete_account_stays_pending(self, client):
        owner = create_test_owner(client, onboarded=False)
        send_webhook(client, gw.ACCOUNT_UPDATED, {
            "id": "acct_test_1", "charges_enabled": True, "payouts_enabled": False,
            "details_submitted": True,
        })
        resp = client.get(f"/api/owners/{owner['owner_id']}")
        assert resp.json()["onboarding_complete"] is False

    def test_duplicate_account(self, client):
        create_test_owner(client, onboarded=False)
        resp = client.post("/api/owners/", json={
            "name": "Someone Else", "email": "else@example.com", "stripe_account_id": "acct_test_1",
        })
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "duplicate_account"

    def test_unknown_owner(self, client):
        resp = client.get("/api/owners/nope")
        assert resp.status_code == 404
        assert resp.json()["detail"]["code"] == "owner_not_found"


class TestEventCreate:

    def test_create_event(self, client):
        owner = create_test_owner(client)
        event = create_test_event(client, owner["owner_id"], name="  Sunset Kayak Tour ")
        assert event["name"] == "Sunset Kayak Tour"
        assert event["status"] == "active"
        assert event["price_cents"] == 2000
        assert event["service_fee_cents"] == 155
        assert event["total_cents"] == 2155
        assert re.fullmatch(r"[a-z0-9]{6}", event["slug"])
        assert event["committed_count"] == 0
        assert event["spots_left"] == 3
        assert event["is_full"] is False
        assert event["deadline_passed"] is False

    def test_slugs_are_unique(self, client):
        owner = create_test_owner(client)
        slugs = {create_test_event(client, owner["owner_id"])["slug"] for _ in range(5)}
        assert len(slugs) == 5

    def test_validation_errors_by_field(self, client):
        owner = create_test_owner(client)
        payload = event_payload(owner["owner_id"], name="ab", price="0.50",
                                min_participants=1, max_participants=0,
                                deadline_in_hours=80, starts_in_hours=72)
        resp = client.post("/api/events/", json=payload)
        assert resp.status_code == 422
        detail = resp.json()["detail"]
        assert detail["code"] == "validation_error"
        assert set(detail["field_errors"]) == {
            "name", "price", "min_participants", "max_participants", "payment_deadline",
        }
        assert client.get("/api/events/").json() == []

    def test_max_equal_to_min_allowed(self, client):
        owner = create_test_owner(client)
        event = create_test_event(client, owner["owner_id"], min_participants=4, max_participants=4)
        assert event["max_participants"] == 4

    def test_owner_must_be_onboarded(self, client):
        owner = create_test_owner(client, onboarded=False)
        resp = client.post("/api/events/", json=event_payload(owner["owner_id"]))
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "owner_not_onboarded"

    def test_unknown_owner(self, client):
        resp = client.post("/api/events/", json=event_payload("missing"))
        assert resp.status_code == 404
        assert resp.json()["detail"]["code"] == "owner_not_found"


class TestEventLookup:

    def test_by_id_and_slug(self, client):
        owner = create_test_owner(client)
        event = create_test_event(client, owner["owner_id"])
        by_id = client.get(f"/api/events/{event['event_id']}")
        by_slug = client.get(f"/api/events/by-slug/{event['slug']}")
        assert by_id.status_code == 200
        assert by_slug.json()["event_id"] == event["event_id"]

    def test_not_found(self, client):
        resp = client.get("/api/events/by-slug/zzzzzz")
        assert resp.status_code == 404
        assert resp.json()["detail"]["code"] == "event_not_found"

    def test_list_filtered_by_owner(self, client):
        first = create_test_owner(client)
        second = create_test_owner(client, name="Bruno Organizer", account="acct_test_2")
        create_test_event(client, first["owner_id"])
        create_test_event(client, second["owner_id"])
        resp = client.get("/api/events/", params={"owner_id": second["owner_id"]})
        assert [e["owner_id"] for e in resp.json()] == [second["owner_id"]]

    def test_counts_follow_payments(self, client, gateway):
        owner = create_test_owner(client)
        event = create_test_event(client, owner["owner_id"], min_participants=2, max_participants=3)
        book(client, gateway, event["event_id"], "Iva")
        book(client, gateway, event["event_id"], "Marko")
        data = client.get(f"/api/events/{event['event_id']}").json()
        assert data["committed_count"] == 2
        assert data["confirmed_count"] == 0
        assert data["spots_left"] == 1
        assert data["min_reached"] is True


class TestEventClose:

    def test_close_releases_holds(self, client, gateway, dispatcher, db):
        owner = create_test_owner(client)
        event = create_test_event(client, owner["owner_id"])
        checkout = book(client, gateway, event["event_id"], "Iva")

        resp = client.post(f"/api/events/{event['event_id']}/close", json={"owner_id": owner["owner_id"]})
        assert resp.status_code == 200
        data = resp.json()
        assert data["event_status"] == "cancelled"
        assert data["settled"] == [checkout["payment_id"]]
        assert load_event(db, event["event_id"]).status.value == "cancelled"
        assert load_payment(db, checkout["payment_id"]).status.value == "cancelled"
        assert gateway.intents[checkout["authorization_reference"]]["status"] == gw.CANCELED
        assert len(dispatcher.of_kind("payment_cancelled")) == 1

    def test_only_organizer_can_close(self, client):
        owner = create_test_owner(client)
        event = create_test_event(client, owner["owner_id"])
        resp = client.post(f"/api/events/{event['event_id']}/close", json={"owner_id": "someone-else"})
        assert resp.status_code == 403

    def test_close_twice(self, client):
        owner = create_test_owner(client)
        event = create_test_event(client, owner["owner_id"])
        client.post(f"/api/events/{event['event_id']}/close", json={"owner_id": owner["owner_id"]})
        resp = client.post(f"/api/events/{event['event_id']}/close", json={"owner_id": owner["owner_id"]})
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "event_not_active"
