"""Races between settlement signals, each thread on its own database session."""
import threading
from concurrent.futures import ThreadPoolExecutor

from fastapi import HTTPException
from sqlalchemy.orm import sessionmaker

from groupbooking.models.payment import Payment
from groupbooking.models.payment_transition import PaymentTransition
from groupbooking.services import gateway as gw
from groupbooking.services.cancellation_service import self_cancel
from groupbooking.services.checkout_service import initiate_checkout
from groupbooking.services.gateway import event_from_payload
from groupbooking.services.reconciliation import fast_path_confirm, handle_webhook
from tests.conftest import (
    CRON_HEADERS,
    book,
    create_test_event,
    create_test_owner,
    expire_deadline,
    load_event,
    load_payment,
    send_webhook,
    start_checkout,
)


def _race(db_engine, calls):
    """Run every ``call(session)`` at once in its own thread and session.

    HTTP errors raised by a call are returned in its place so the caller can
    inspect who lost.
    """
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    barrier = threading.Barrier(len(calls))

    def run(call):
        session = TestingSession()
        try:
            barrier.wait(timeout=10)
            return call(session)
        except HTTPException as e:
            return e
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return list(pool.map(run, calls))


def _webhook(event_type, reference, charge_ref=None):
    obj = {"id": reference}
    if charge_ref:
        obj["latest_charge"] = charge_ref
    return event_from_payload({"type": event_type, "data": {"object": obj}})


def _deliver(dispatcher, event_type, ref, charge_ref=None):
    return lambda s: handle_webhook(s, dispatcher, _webhook(event_type, ref, charge_ref))["changed"]


def _ledger(db, payment_id, to_status):
    return (
        db.query(PaymentTransition)
        .filter(PaymentTransition.payment_id == payment_id, PaymentTransition.to_status == to_status)
        .count()
    )


def _setup(client, **kwargs):
    owner = create_test_owner(client)
    return create_test_event(client, owner["owner_id"], **kwargs)


class TestHoldSignals:

    def test_fast_path_and_webhook_notify_once(self, client, db_engine, gateway, dispatcher, db):
        event = _setup(client)
        checkout = start_checkout(client, event["event_id"], "Iva").json()
        ref = checkout["authorization_reference"]
        gateway.place_hold(ref)

        results = _race(db_engine, [
            lambda s: fast_path_confirm(s, gateway, dispatcher, ref)["changed"],
            _deliver(dispatcher, gw.HOLD_PLACED, ref),
            _deliver(dispatcher, gw.HOLD_PLACED, ref),
        ])

        assert sorted(results) == [False, False, True]
        assert load_payment(db, checkout["payment_id"]).status.value == "paid"
        assert len(dispatcher.of_kind("payment_confirmed")) == 1
        assert _ledger(db, checkout["payment_id"], "paid") == 1


class TestCaptureSignals:

    def test_confirmations_reaching_max_send_one_event_full(self, client, db_engine, gateway, dispatcher, db):
        event = _setup(client, min_participants=2, max_participants=4)
        refs = [book(client, gateway, event["event_id"], name)["authorization_reference"]
                for name in ("Iva", "Marko", "Luka", "Petra")]

        results = _race(db_engine, [_deliver(dispatcher, gw.CAPTURED, ref, f"ch_{ref}") for ref in refs])

        assert results == [True, True, True, True]
        assert load_event(db, event["event_id"]).status.value == "confirmed"
        assert len(dispatcher.of_kind("event_full")) == 1

    def test_duplicate_captured_webhook(self, client, db_engine, gateway, dispatcher, db):
        event = _setup(client, min_participants=2, max_participants=2)
        first = book(client, gateway, event["event_id"], "Iva")
        book(client, gateway, event["event_id"], "Marko")
        expire_deadline(db, event["event_id"])
        client.post(f"/api/settlement/{event['event_id']}/capture", headers=CRON_HEADERS)
        captures = gateway.count("capture")
        sent = len(dispatcher.sent)

        ref = first["authorization_reference"]
        results = _race(db_engine, [
            _deliver(dispatcher, gw.CAPTURED, ref, f"ch_{ref}"),
            _deliver(dispatcher, gw.CAPTURED, ref, f"ch_{ref}"),
        ])
        resp = send_webhook(client, gw.CAPTURED, {"id": ref, "latest_charge": f"ch_{ref}"})

        assert results == [False, False]
        assert resp.json()["changed"] is False
        assert gateway.count("capture") == captures
        assert len(dispatcher.sent) == sent
        assert len(dispatcher.of_kind("event_full")) == 1
        assert _ledger(db, first["payment_id"], "confirmed") == 1

    def test_captured_webhook_twice_from_pending(self, client, db_engine, gateway, dispatcher, db):
        event = _setup(client)
        checkout = start_checkout(client, event["event_id"], "Iva").json()
        ref = checkout["authorization_reference"]

        results = _race(db_engine, [
            _deliver(dispatcher, gw.CAPTURED, ref, "ch_1"),
            _deliver(dispatcher, gw.CAPTURED, ref, "ch_1"),
        ])

        assert sorted(results) == [False, True]
        payment = load_payment(db, checkout["payment_id"])
        assert payment.status.value == "confirmed"
        assert payment.charge_ref == "ch_1"
        assert gateway.count("capture") == 0
        assert len(dispatcher.of_kind("payment_confirmed")) == 1


class TestSelfCancelRace:

    def test_double_submit_cancels_once(self, client, db_engine, gateway, dispatcher, db):
        event = _setup(client, min_participants=2, max_participants=2)
        checkout = book(client, gateway, event["event_id"], "Iva")
        book(client, gateway, event["event_id"], "Marko")
        client.post("/api/waiting-list/join", json={
            "event_id": event["event_id"], "guest_name": "Luka", "guest_email": "luka@example.com",
        })
        client.post("/api/waiting-list/join", json={
            "event_id": event["event_id"], "guest_name": "Petra", "guest_email": "petra@example.com",
        })
        token = load_payment(db, checkout["payment_id"]).cancel_token

        results = _race(db_engine, [
            lambda s: self_cancel(s, gateway, dispatcher, token),
            lambda s: self_cancel(s, gateway, dispatcher, token),
        ])

        assert any(isinstance(r, dict) for r in results)
        for r in results:
            if isinstance(r, HTTPException):
                assert r.status_code == 409
        assert load_payment(db, checkout["payment_id"]).status.value == "cancelled"
        assert gateway.intents[checkout["authorization_reference"]]["status"] == gw.CANCELED
        assert _ledger(db, checkout["payment_id"], "cancelled") == 1
        assert len(dispatcher.of_kind("self_cancel_confirmed")) == 1
        assert [m.to for m in dispatcher.of_kind("spot_available")] == ["luka@example.com"]


class TestCheckoutRace:

    def test_same_guest_gets_one_live_payment(self, client, db_engine, gateway, db):
        event = _setup(client)

        results = _race(db_engine, [
            lambda s: initiate_checkout(s, gateway, event["event_id"], "Iva", "iva@example.com"),
            lambda s: initiate_checkout(s, gateway, event["event_id"], "Iva", "IVA@example.com"),
        ])

        db.expire_all()
        payments = db.query(Payment).filter(Payment.event_id == event["event_id"]).all()
        assert len(payments) == 1
        for r in results:
            if isinstance(r, HTTPException):
                assert r.detail["code"] == "duplicate_guest"
            else:
                assert r["payment_id"] == payments[0].payment_id
