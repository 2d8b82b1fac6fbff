from datetime import timedelta
from decimal import Decimal

import pytest
import requests

from blueprints.withdraw_helpers import WithdrawalProcessor
from extensions import db
from models import User, Withdrawal, PayoutQueue, Transaction
from mlm.gateway import PayoutGateway, PayoutGatewayError
from mlm.payout_processor import PayoutProcessor
from utils import utcnow

WALLET_ADDRESS = "0x" + "cd" * 20


class FailingGateway:
    def __init__(self):
        self.calls = 0

    def disburse(self, withdrawal):
        self.calls += 1
        raise PayoutGatewayError("gateway down")


class RecordingGateway:
    def __init__(self):
        self.paid = []

    def disburse(self, withdrawal):
        self.paid.append((withdrawal.id, Decimal(withdrawal.net_amount)))
        return True, "0xabc123"


@pytest.fixture
def withdrawal(make_user, activate):
    user = make_user()
    activate(user)
    user = db.session.get(User, user.id)
    user.available_balance = Decimal("100.00")
    db.session.commit()

    success, message, data = WithdrawalProcessor.process_withdrawal_request(
        user.id, 50, "usdt_bep20", wallet_address=WALLET_ADDRESS
    )
    assert success, message
    return db.session.get(Withdrawal, data["withdrawal"]["id"])


def test_entries_wait_for_schedule(withdrawal):
    gateway = RecordingGateway()
    stats = PayoutProcessor(gateway=gateway).process_payout_queue()
    assert stats["processed"] == 0
    assert gateway.paid == []


def test_due_payout_completes(withdrawal):
    gateway = RecordingGateway()
    stats = PayoutProcessor(gateway=gateway).process_payout_queue(now=utcnow() + timedelta(hours=1))

    assert stats["processed"] == 1
    assert stats["succeeded"] == 1
    assert gateway.paid == [(withdrawal.id, Decimal("47.50"))]

    withdrawal = db.session.get(Withdrawal, withdrawal.id)
    assert withdrawal.status == "completed"
    assert withdrawal.transaction_hash == "0xabc123"
    assert PayoutQueue.query.count() == 0

    transaction = db.session.get(Transaction, withdrawal.transaction_id)
    assert transaction.status == "completed"
    assert transaction.transaction_hash == "0xabc123"


def test_simulated_gateway_by_default(app, withdrawal):
    processor = PayoutProcessor()
    assert processor.gateway.simulated

    stats = processor.process_payout_queue(now=utcnow() + timedelta(hours=1))
    assert stats["succeeded"] == 1
    assert db.session.get(Withdrawal, withdrawal.id).transaction_hash.startswith("0x")


def test_failures_back_off_then_refund(withdrawal):
    gateway = FailingGateway()
    processor = PayoutProcessor(gateway=gateway)
    user_id = withdrawal.user_id
    now = utcnow() + timedelta(hours=1)

    stats = processor.process_payout_queue(now=now)
    assert stats["retry_scheduled"] == 1
    entry = PayoutQueue.query.one()
    assert entry.attempts == 1
    assert entry.scheduled_at == now + timedelta(minutes=2)
    assert entry.last_error == "gateway down"
    assert db.session.get(Withdrawal, withdrawal.id).status == "pending"

    now += timedelta(hours=1)
    processor.process_payout_queue(now=now)
    entry = PayoutQueue.query.one()
    assert entry.attempts == 2
    assert entry.scheduled_at == now + timedelta(minutes=4)

    now += timedelta(hours=1)
    stats = processor.process_payout_queue(now=now)
    assert stats["rejected"] == 1
    assert gateway.calls == 3

    withdrawal = db.session.get(Withdrawal, withdrawal.id)
    assert withdrawal.status == "rejected"
    assert withdrawal.rejection_reason == "Payout failed after 3 attempts: gateway down"
    assert PayoutQueue.query.count() == 0
    # The gross amount, fee included, goes back
    assert db.session.get(User, user_id).available_balance == Decimal("100.00")


def test_approved_withdrawal_keeps_status_on_retry(withdrawal, admin):
    WithdrawalProcessor.approve_withdrawal(withdrawal.id, admin.id)

    PayoutProcessor(gateway=FailingGateway()).process_payout_queue(now=utcnow() + timedelta(minutes=1))

    assert db.session.get(Withdrawal, withdrawal.id).status == "approved"


def test_entries_for_finished_withdrawals_are_removed(withdrawal):
    withdrawal.status = "completed"
    db.session.commit()

    gateway = RecordingGateway()
    stats = PayoutProcessor(gateway=gateway).process_payout_queue(now=utcnow() + timedelta(hours=1))

    assert stats["removed"] == 1
    assert gateway.paid == []
    assert PayoutQueue.query.count() == 0


def test_interrupted_processing_counts_as_failed_attempt(withdrawal):
    user_id = withdrawal.user_id
    withdrawal.status = "processing"
    db.session.commit()

    gateway = RecordingGateway()
    processor = PayoutProcessor(gateway=gateway)
    now = utcnow() + timedelta(hours=1)

    stats = processor.process_payout_queue(now=now)
    assert stats["retry_scheduled"] == 1
    assert gateway.paid == []
    entry = PayoutQueue.query.one()
    assert entry.attempts == 1
    assert entry.scheduled_at == now + timedelta(minutes=2)
    assert db.session.get(Withdrawal, withdrawal.id).status == "pending"

    # Stuck again on the last allowed attempt: rejected and refunded
    entry.attempts = 2
    db.session.get(Withdrawal, withdrawal.id).status = "processing"
    db.session.commit()

    stats = processor.process_payout_queue(now=now + timedelta(hours=1))
    assert stats["rejected"] == 1
    assert db.session.get(Withdrawal, withdrawal.id).status == "rejected"
    assert PayoutQueue.query.count() == 0
    assert db.session.get(User, user_id).available_balance == Decimal("100.00")


def test_claimed_entries_are_skipped_by_a_parallel_sweep(withdrawal):
    now = utcnow() + timedelta(hours=1)
    entry = PayoutQueue.query.one()
    entry.scheduled_at = now + timedelta(minutes=10)
    db.session.commit()

    gateway = RecordingGateway()
    stats = PayoutProcessor(gateway=gateway).process_payout_queue(now=now)

    assert stats["processed"] == 0
    assert gateway.paid == []
    assert PayoutQueue.query.count() == 1


def test_sweep_leases_entries_before_paying(withdrawal):
    now = utcnow() + timedelta(hours=1)
    seen = []

    class LeaseCheckingGateway(RecordingGateway):
        def disburse(self, withdrawal):
            seen.append(PayoutQueue.query.filter_by(withdrawal_id=withdrawal.id).one().scheduled_at)
            return super().disburse(withdrawal)

    stats = PayoutProcessor(gateway=LeaseCheckingGateway()).process_payout_queue(now=now)

    assert stats["succeeded"] == 1
    assert seen == [now + timedelta(minutes=10)]


def test_withdrawal_stats(withdrawal):
    stats = PayoutProcessor.get_withdrawal_stats(withdrawal.user_id)
    assert stats["totalWithdrawals"] == 1
    assert stats["pendingWithdrawals"] == 1
    assert stats["pendingAmount"] == 50.0


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


def test_gateway_posts_usdt_payout(monkeypatch):
    gateway = PayoutGateway(base_url="https://payouts.example.com/", api_key="key")
    captured = {}

    def fake_post(url, json=None, headers=None, timeout=None):
        captured.update(url=url, json=json, headers=headers)
        return FakeResponse(200, {"success": True, "transactionHash": "0xhash"})

    monkeypatch.setattr(gateway._get_session(), "post", fake_post)

    assert gateway.send_usdt(WALLET_ADDRESS, Decimal("47.50"), "ref-1") == "0xhash"
    assert captured["url"] == "https://payouts.example.com/payouts/usdt"
    assert captured["json"]["network"] == "BEP20"
    assert captured["headers"]["Authorization"] == "Bearer key"


def test_gateway_errors(monkeypatch):
    gateway = PayoutGateway(base_url="https://payouts.example.com")
    session = gateway._get_session()

    monkeypatch.setattr(session, "post", lambda *a, **k: FakeResponse(502, {"error": "bad gateway"}))
    with pytest.raises(PayoutGatewayError, match="API error: 502"):
        gateway.send_usdt(WALLET_ADDRESS, Decimal("1"), "ref")

    monkeypatch.setattr(session, "post", lambda *a, **k: FakeResponse(200, {"success": False, "error": "blocked"}))
    with pytest.raises(PayoutGatewayError, match="blocked"):
        gateway.send_p2p({"recipientCode": "WG000001"}, Decimal("1"), "ref")

    def timeout(*args, **kwargs):
        raise requests.exceptions.Timeout()

    monkeypatch.setattr(session, "post", timeout)
    with pytest.raises(PayoutGatewayError, match="timeout"):
        gateway.convert_funds({"bankName": "Bank"}, Decimal("1"), "ref")
