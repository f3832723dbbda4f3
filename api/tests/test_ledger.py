import threading
from datetime import datetime, timedelta
from decimal import Decimal

from sqlmodel import Session, select

from conftest import signed
from cotravel_api import db as db_module
from cotravel_api.auth import SessionContext
from cotravel_api.errors import FundingError
from cotravel_api.models import ChainTransaction, Contribution, Invoice, InvoiceParticipant, LedgerEntry
from cotravel_api.services import ledger
from cotravel_api.services.invoices import get_invoice
from cotravel_api.services.reconcile import reconcile_transaction
from cotravel_api.utils import STROOPS_PER_XLM


def contribute(client, invoice_id, keypair, headers, amount):
    return client.post(
        f"/api/invoices/{invoice_id}/contribute",
        json={"amount": amount, "signed_xdr": signed(keypair, "contribute")},
        headers=headers,
    )


def withdraw(client, invoice_id, keypair, headers, amount=None):
    payload = {"signed_xdr": signed(keypair, "withdraw")}
    if amount is not None:
        payload["amount"] = amount
    return client.post(f"/api/invoices/{invoice_id}/withdraw", json=payload, headers=headers)


def ledger_entries(invoice_id, wallet=None):
    with Session(db_module.engine) as session:
        stmt = select(LedgerEntry).where(LedgerEntry.invoice_id == invoice_id)
        if wallet:
            stmt = stmt.where(LedgerEntry.wallet_address == wallet)
        return session.exec(stmt.order_by(LedgerEntry.id)).all()


def test_contribution_updates_totals(client, login, make_invoice):
    organizer, headers = login()
    invoice = make_invoice(headers, total=1000, link_as=organizer)
    member, member_headers = login()

    resp = contribute(client, invoice["id"], member, member_headers, 50)
    assert resp.status_code == 200
    body = resp.json()
    assert body["transaction"]["status"] == "confirmed"
    assert body["invoice"]["total_collected"] == 50
    assert body["invoice"]["remaining"] == 950
    assert body["invoice"]["progress_percent"] == 5

    participants = client.get(f"/api/invoices/{invoice['id']}/participants", headers=headers).json()
    assert participants[0]["wallet_address"] == member.public_key
    assert participants[0]["contributed"] == 50
    entries = ledger_entries(invoice["id"], member.public_key)
    assert [(e.kind, e.amount) for e in entries] == [("contribution", 50 * STROOPS_PER_XLM)]


def test_contribution_cannot_overfund(client, login, make_invoice):
    organizer, headers = login()
    invoice = make_invoice(headers, total=1000, link_as=organizer)
    member, member_headers = login()

    resp = contribute(client, invoice["id"], member, member_headers, 1300)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Funding failed: amount exceeds remaining unpaid amount"

    assert contribute(client, invoice["id"], member, member_headers, 400).status_code == 200
    over = contribute(client, invoice["id"], member, member_headers, 600.0000001)
    assert over.status_code == 400
    exact = contribute(client, invoice["id"], member, member_headers, 600)
    assert exact.status_code == 200
    assert exact.json()["invoice"]["total_collected"] == 1000
    assert exact.json()["invoice"]["remaining"] == 0
    assert exact.json()["invoice"]["status"] == "funding"

    done = contribute(client, invoice["id"], member, member_headers, 1)
    assert done.status_code == 400


def test_contribution_checks_balance_and_fee(client, login, make_invoice, fake_chain):
    organizer, headers = login()
    invoice = make_invoice(headers, total=1000, link_as=organizer)
    member, member_headers = login()
    fake_chain.balances[member.public_key] = 50 * STROOPS_PER_XLM

    resp = contribute(client, invoice["id"], member, member_headers, 50)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Funding failed: insufficient funds to cover contribution and fees"

    ok = contribute(client, invoice["id"], member, member_headers, 49)
    assert ok.status_code == 200


def test_contribution_rejects_bad_amounts(client, login, make_invoice):
    organizer, headers = login()
    invoice = make_invoice(headers, total=1000, link_as=organizer)
    member, member_headers = login()
    assert contribute(client, invoice["id"], member, member_headers, 0).status_code == 400
    assert contribute(client, invoice["id"], member, member_headers, -5).status_code == 400


def test_draft_invoice_rejects_contributions(client, login, make_invoice):
    _, headers = login()
    invoice = make_invoice(headers)
    member, member_headers = login()
    resp = contribute(client, invoice["id"], member, member_headers, 10)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Funding failed: invoice is not accepting contributions (draft)"


def test_contribution_after_deadline(client, login, make_invoice):
    organizer, headers = login()
    invoice = make_invoice(headers, link_as=organizer)
    with Session(db_module.engine) as session:
        row = session.get(Invoice, invoice["id"])
        row.deadline = datetime.utcnow() - timedelta(minutes=1)
        session.add(row)
        session.commit()
    member, member_headers = login()
    resp = contribute(client, invoice["id"], member, member_headers, 10)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Funding failed: deadline has passed"


def test_withdrawal_applies_penalty(client, login, make_invoice):
    organizer, headers = login()
    invoice = make_invoice(headers, total=1000, link_as=organizer)
    member, member_headers = login()
    assert contribute(client, invoice["id"], member, member_headers, 350).status_code == 200

    quote = client.get(f"/api/invoices/{invoice['id']}/withdrawal-quote", headers=member_headers).json()
    assert quote == {"amount": 350, "penalty": 52.5, "refund": 297.5, "penalty_percent": 15}

    resp = withdraw(client, invoice["id"], member, member_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["refund"] == 297.5
    assert body["penalty"] == 52.5
    assert body["invoice"]["total_collected"] == 0

    entries = ledger_entries(invoice["id"], member.public_key)
    assert [(e.kind, e.amount) for e in entries] == [
        ("contribution", 350 * STROOPS_PER_XLM),
        ("refund", 2_975_000_000),
        ("penalty", 525_000_000),
    ]
    with Session(db_module.engine) as session:
        participant = session.exec(
            select(InvoiceParticipant).where(InvoiceParticipant.wallet_address == member.public_key)
        ).one()
        assert participant.status == "withdrawn"
        assert participant.contributed == 0
        assert participant.penalty_amount == 525_000_000

    again = withdraw(client, invoice["id"], member, member_headers)
    assert again.status_code == 404


def test_partial_withdrawal(client, login, make_invoice):
    organizer, headers = login()
    invoice = make_invoice(headers, total=1000, link_as=organizer)
    member, member_headers = login()
    assert contribute(client, invoice["id"], member, member_headers, 100).status_code == 200
    assert contribute(client, invoice["id"], member, member_headers, 100).status_code == 200

    too_much = withdraw(client, invoice["id"], member, member_headers, amount=250)
    assert too_much.status_code == 400
    assert too_much.json()["detail"] == "Funding failed: amount exceeds your active contribution"

    resp = withdraw(client, invoice["id"], member, member_headers, amount=150)
    assert resp.status_code == 200
    assert resp.json()["invoice"]["total_collected"] == 50
    with Session(db_module.engine) as session:
        rows = session.exec(
            select(Contribution).where(Contribution.invoice_id == invoice["id"]).order_by(Contribution.id)
        ).all()
        active = sum(c.amount for c in rows if c.status == "active")
        withdrawn = sum(c.amount for c in rows if c.status == "withdrawn")
        assert active == 50 * STROOPS_PER_XLM
        assert withdrawn == 150 * STROOPS_PER_XLM


def test_cancel_refunds_everyone_in_full(client, login, make_invoice):
    organizer, headers = login()
    invoice = make_invoice(headers, total=1000, link_as=organizer)
    alice, alice_headers = login()
    bob, bob_headers = login()
    assert contribute(client, invoice["id"], alice, alice_headers, 300).status_code == 200
    assert contribute(client, invoice["id"], bob, bob_headers, 200).status_code == 200

    resp = client.post(
        f"/api/invoices/{invoice['id']}/cancel",
        json={"signed_xdr": signed(organizer, "cancel")},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["invoice"]["status"] == "cancelled"
    assert resp.json()["invoice"]["total_collected"] == 0

    refunds = {e.wallet_address: e.amount for e in ledger_entries(invoice["id"]) if e.kind == "refund"}
    assert refunds == {alice.public_key: 300 * STROOPS_PER_XLM, bob.public_key: 200 * STROOPS_PER_XLM}
    assert not [e for e in ledger_entries(invoice["id"]) if e.kind == "penalty"]

    late = contribute(client, invoice["id"], alice, alice_headers, 10)
    assert late.status_code == 400
    assert late.json()["detail"] == "Funding failed: invoice is not accepting contributions (cancelled)"
    assert withdraw(client, invoice["id"], alice, alice_headers).status_code == 400
    again = client.post(
        f"/api/invoices/{invoice['id']}/cancel",
        json={"signed_xdr": signed(organizer, "cancel")},
        headers=headers,
    )
    assert again.status_code == 400
    release = client.post(
        f"/api/invoices/{invoice['id']}/release",
        json={"signed_xdr": signed(organizer, "release")},
        headers=headers,
    )
    assert release.status_code == 400


def test_cancel_draft_without_transaction(client, login, make_invoice):
    _, headers = login()
    invoice = make_invoice(headers)
    resp = client.post(f"/api/invoices/{invoice['id']}/cancel", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["transaction"] is None
    assert resp.json()["invoice"]["status"] == "cancelled"


def test_only_organizer_cancels(client, login, make_invoice):
    organizer, headers = login()
    invoice = make_invoice(headers, link_as=organizer)
    member, member_headers = login()
    resp = client.post(
        f"/api/invoices/{invoice['id']}/cancel",
        json={"signed_xdr": signed(member, "cancel")},
        headers=member_headers,
    )
    assert resp.status_code == 403


def test_release_pays_out_and_blocks_cancel(client, login, make_invoice):
    organizer, headers = login()
    invoice = make_invoice(headers, total=200, link_as=organizer)
    member, member_headers = login()

    early = client.post(
        f"/api/invoices/{invoice['id']}/release",
        json={"signed_xdr": signed(organizer, "release")},
        headers=headers,
    )
    assert early.status_code == 400
    assert early.json()["detail"] == "Funding failed: invoice is not fully funded"

    assert contribute(client, invoice["id"], member, member_headers, 200).status_code == 200
    resp = client.post(
        f"/api/invoices/{invoice['id']}/release",
        json={"signed_xdr": signed(organizer, "release")},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["invoice"]["status"] == "released"
    payouts = [e for e in ledger_entries(invoice["id"]) if e.kind == "payout"]
    assert sum(e.amount for e in payouts) == 200 * STROOPS_PER_XLM

    cancel = client.post(
        f"/api/invoices/{invoice['id']}/cancel",
        json={"signed_xdr": signed(organizer, "cancel")},
        headers=headers,
    )
    assert cancel.status_code == 400
    assert withdraw(client, invoice["id"], member, member_headers).status_code == 400


def test_auto_release_on_full_funding(client, login, make_invoice):
    organizer, headers = login()
    invoice = make_invoice(headers, total=300, link_as=organizer, auto_release=True)
    alice, alice_headers = login()
    bob, bob_headers = login()
    assert contribute(client, invoice["id"], alice, alice_headers, 100).status_code == 200
    resp = contribute(client, invoice["id"], bob, bob_headers, 200)
    assert resp.status_code == 200
    assert resp.json()["invoice"]["status"] == "released"
    events = client.get(f"/api/invoices/{invoice['id']}/events", headers=headers).json()["events"]
    assert events[-1]["type"] == "released"


def test_release_by_contributor_confirmation(client, login, make_invoice):
    organizer, headers = login()
    invoice = make_invoice(headers, total=200, link_as=organizer)
    alice, alice_headers = login()
    bob, bob_headers = login()
    assert contribute(client, invoice["id"], alice, alice_headers, 100).status_code == 200
    assert contribute(client, invoice["id"], bob, bob_headers, 100).status_code == 200

    first = client.post(
        f"/api/invoices/{invoice['id']}/confirm",
        json={"signed_xdr": signed(alice, "confirm")},
        headers=alice_headers,
    )
    assert first.status_code == 200
    assert first.json()["invoice"]["confirmation_count"] == 1
    assert first.json()["invoice"]["status"] == "funding"

    twice = client.post(
        f"/api/invoices/{invoice['id']}/confirm",
        json={"signed_xdr": signed(alice, "confirm")},
        headers=alice_headers,
    )
    assert twice.status_code == 409

    second = client.post(
        f"/api/invoices/{invoice['id']}/confirm",
        json={"signed_xdr": signed(bob, "confirm")},
        headers=bob_headers,
    )
    assert second.status_code == 200
    assert second.json()["invoice"]["status"] == "released"


def test_no_penalty_once_fully_funded(client, login, make_invoice):
    organizer, headers = login()
    invoice = make_invoice(headers, total=100, link_as=organizer)
    member, member_headers = login()
    assert contribute(client, invoice["id"], member, member_headers, 100).status_code == 200
    quote = client.get(f"/api/invoices/{invoice['id']}/withdrawal-quote", headers=member_headers).json()
    assert quote["penalty"] == 0
    assert quote["refund"] == 100


def test_claim_deadline_refunds(client, login, make_invoice):
    organizer, headers = login()
    invoice = make_invoice(headers, total=1000, link_as=organizer)
    member, member_headers = login()
    assert contribute(client, invoice["id"], member, member_headers, 100).status_code == 200

    early = client.post(
        f"/api/invoices/{invoice['id']}/claim-deadline",
        json={"signed_xdr": signed(member, "claim")},
        headers=member_headers,
    )
    assert early.status_code == 400
    assert early.json()["detail"] == "Validation failed: deadline has not passed"

    with Session(db_module.engine) as session:
        row = session.get(Invoice, invoice["id"])
        row.deadline = datetime.utcnow() - timedelta(minutes=1)
        session.add(row)
        session.commit()
    resp = client.post(
        f"/api/invoices/{invoice['id']}/claim-deadline",
        json={"signed_xdr": signed(member, "claim")},
        headers=member_headers,
    )
    assert resp.status_code == 200
    assert resp.json()["invoice"]["status"] == "cancelled"
    refunds = [e for e in ledger_entries(invoice["id"]) if e.kind == "refund"]
    assert [e.amount for e in refunds] == [100 * STROOPS_PER_XLM]


def test_pending_contribution_then_refresh(client, login, make_invoice, fake_chain):
    organizer, headers = login()
    invoice = make_invoice(headers, total=1000, link_as=organizer)
    member, member_headers = login()
    fake_chain.hold = True

    resp = contribute(client, invoice["id"], member, member_headers, 50)
    assert resp.status_code == 202
    body = resp.json()
    tx_hash = body["transaction"]["tx_hash"]
    assert body["transaction"]["status"] == "pending"
    assert body["invoice"]["total_collected"] == 0
    assert body["invoice"]["total_pending"] == 50
    assert body["invoice"]["remaining"] == 950

    still = client.post(f"/api/transactions/{tx_hash}/refresh", headers=member_headers)
    assert still.status_code == 202

    fake_chain.pending.clear()
    done = client.post(f"/api/transactions/{tx_hash}/refresh", headers=member_headers)
    assert done.status_code == 200
    assert done.json()["transaction"]["status"] == "confirmed"
    assert done.json()["invoice"]["total_collected"] == 50
    assert done.json()["invoice"]["total_pending"] == 0

    repeat = client.post(f"/api/transactions/{tx_hash}/refresh", headers=member_headers)
    assert repeat.status_code == 200
    assert repeat.json()["invoice"]["total_collected"] == 50

    lookup = client.get(f"/api/transactions/{tx_hash}", headers=headers)
    assert lookup.status_code == 200
    assert lookup.json()["type"] == "contribute"


def test_pending_reservation_blocks_overfund(client, login, make_invoice, fake_chain):
    organizer, headers = login()
    invoice = make_invoice(headers, total=100, link_as=organizer)
    alice, alice_headers = login()
    bob, bob_headers = login()
    fake_chain.hold = True
    assert contribute(client, invoice["id"], alice, alice_headers, 80).status_code == 202
    resp = contribute(client, invoice["id"], bob, bob_headers, 30)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Funding failed: amount exceeds remaining unpaid amount"


def test_concurrent_contributions_never_overfund(client, login, make_invoice, fake_chain):
    organizer, headers = login()
    invoice = make_invoice(headers, total=100, link_as=organizer)
    members = []
    for _ in range(2):
        keypair, member_headers = login()
        me = client.get("/api/auth/me", headers=member_headers).json()
        members.append((keypair, SessionContext(user_id=me["id"], wallet_address=keypair.public_key)))

    barrier = threading.Barrier(len(members))
    outcomes = []

    def contribute_sixty(keypair, ctx):
        with Session(db_module.engine) as session:
            current = get_invoice(session, invoice["id"])
            barrier.wait()
            try:
                ledger.contribute(session, ctx, current, Decimal("60"), signed(keypair, "contribute"))
                outcomes.append("ok")
            except FundingError as exc:
                outcomes.append(exc.reason)

    threads = [threading.Thread(target=contribute_sixty, args=member) for member in members]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ["amount exceeds remaining unpaid amount", "ok"]
    with Session(db_module.engine) as session:
        stored = session.get(Invoice, invoice["id"])
        assert stored.total_collected + stored.total_reserved <= stored.total_required
        assert stored.total_reserved == 60 * STROOPS_PER_XLM
        pending = session.exec(select(ChainTransaction).where(ChainTransaction.type == "contribute")).all()
        assert len(pending) == 1


def test_failed_contribution_releases_reservation(client, login, make_invoice, fake_chain):
    organizer, headers = login()
    invoice = make_invoice(headers, total=100, link_as=organizer)
    member, member_headers = login()
    fake_chain.fail_next = True
    resp = contribute(client, invoice["id"], member, member_headers, 100)
    assert resp.status_code == 502
    assert resp.json()["category"] == "Transaction"
    detail = client.get(f"/api/invoices/{invoice['id']}", headers=headers).json()
    assert detail["total_collected"] == 0
    assert detail["total_pending"] == 0
    assert detail["remaining"] == 100
    assert contribute(client, invoice["id"], member, member_headers, 100).status_code == 200


def test_reconcile_is_idempotent(client, login, make_invoice, fake_chain):
    organizer, headers = login()
    invoice = make_invoice(headers, total=1000, link_as=organizer)
    member, member_headers = login()
    fake_chain.hold = True
    tx_hash = contribute(client, invoice["id"], member, member_headers, 70).json()["transaction"]["tx_hash"]
    fake_chain.pending.clear()

    with Session(db_module.engine) as session:
        tx = session.exec(select(ChainTransaction).where(ChainTransaction.tx_hash == tx_hash)).one()
        reconcile_transaction(session, tx, client=fake_chain, attempts=1, interval=0)
        reconcile_transaction(session, tx, client=fake_chain, attempts=1, interval=0)
        row = session.get(Invoice, invoice["id"])
        assert row.total_collected == 70 * STROOPS_PER_XLM
        assert row.total_reserved == 0
        contributions = session.exec(select(Contribution).where(Contribution.invoice_id == invoice["id"])).all()
        assert len(contributions) == 1


def test_resubmitting_same_envelope_conflicts(client, login, make_invoice):
    organizer, headers = login()
    invoice = make_invoice(headers, total=1000, link_as=organizer)
    member, member_headers = login()
    envelope = signed(member, "contribute")
    first = client.post(
        f"/api/invoices/{invoice['id']}/contribute",
        json={"amount": 10, "signed_xdr": envelope},
        headers=member_headers,
    )
    assert first.status_code == 200
    second = client.post(
        f"/api/invoices/{invoice['id']}/contribute",
        json={"amount": 10, "signed_xdr": envelope},
        headers=member_headers,
    )
    assert second.status_code == 409
    detail = client.get(f"/api/invoices/{invoice['id']}", headers=headers).json()
    assert detail["total_collected"] == 10
    assert detail["total_pending"] == 0
