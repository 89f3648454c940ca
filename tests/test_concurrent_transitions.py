"""
Concurrent transitions on one deal: the row lock lets exactly one of two
racing requests apply a milestone, the other observes it as already done.

Runs against a file-backed SQLite database so every thread gets its own
connection.
"""

from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest
from sqlalchemy.orm import sessionmaker

from database import build_engine
from models import Base
from services.deal_lifecycle_engine import DealLifecycleEngine, FeePaymentEvent
from services.notification_service import NotificationEmitter
from services.payment_rails import CardRail, CryptoRail, PaymentRailRegistry
from utils.exception_handler import AlreadyDone

from tests.conftest import START_TIME, DealFlow


@pytest.fixture
def file_backed_engine(tmp_path, clock, chat_gateway, crypto_client):
    bind = build_engine(f"sqlite:///{tmp_path / 'deals.db'}")
    Base.metadata.create_all(bind=bind)
    session_factory = sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)
    yield DealLifecycleEngine(
        session_factory=session_factory,
        clock=clock,
        rails=PaymentRailRegistry([CardRail(), CryptoRail(client=crypto_client)]),
        emitter=NotificationEmitter(chat_gateway),
    )
    bind.dispose()


@pytest.fixture
def file_flow(file_backed_engine, buyer, seller):
    return DealFlow(file_backed_engine, buyer, seller)


def run_concurrently(*calls):
    """Start every call at the same moment; returns (result, error) per call"""
    barrier = Barrier(len(calls))

    def run(call):
        barrier.wait()
        try:
            return call(), None
        except Exception as e:
            return None, e

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return list(pool.map(run, calls))


def confirmed_ipn(deal_id: int) -> dict:
    order_id = f"deal_{deal_id}_{int(START_TIME.timestamp())}"
    return {"payment_id": f"np_{order_id}", "payment_status": "finished", "order_id": order_id}


def history_actions(engine, actor, deal_id):
    return [entry["action_type"] for entry in engine.get_history(actor, deal_id)["history"]]


class TestConcurrentTransitions:

    def test_racing_seller_agree_succeeds_once(self, file_backed_engine, file_flow, seller, buyer):
        deal_id = file_flow.create()

        outcomes = run_concurrently(
            lambda: file_backed_engine.seller_agree(seller, deal_id),
            lambda: file_backed_engine.seller_agree(seller, deal_id),
        )

        successes = [result for result, error in outcomes if error is None]
        errors = [error for result, error in outcomes if error is not None]
        assert len(successes) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], AlreadyDone)
        assert history_actions(file_backed_engine, buyer, deal_id).count("seller_agreed") == 1

    def test_racing_card_payments_charge_once(self, file_backed_engine, file_flow, buyer, chat_gateway):
        deal_id = file_flow.agreed()

        outcomes = run_concurrently(
            lambda: file_backed_engine.pay_transaction_fee(buyer, deal_id, "card", "buyer"),
            lambda: file_backed_engine.pay_transaction_fee(buyer, deal_id, "card", "buyer"),
        )

        errors = [error for result, error in outcomes if error is not None]
        assert len(errors) == 1
        assert isinstance(errors[0], AlreadyDone)
        assert history_actions(file_backed_engine, buyer, deal_id).count("fee_paid") == 1
        assert chat_gateway.categories == ["agent_email"]

    def test_webhook_and_card_payment_race(self, file_backed_engine, file_flow, buyer, chat_gateway):
        deal_id = file_flow.agreed()
        file_backed_engine.pay_transaction_fee(buyer, deal_id, "crypto", "buyer")
        event = FeePaymentEvent.from_nowpayments(confirmed_ipn(deal_id))

        (webhook_result, webhook_error), (card_result, card_error) = run_concurrently(
            lambda: file_backed_engine.apply_fee_payment_event(event),
            lambda: file_backed_engine.pay_transaction_fee(buyer, deal_id, "card", "buyer"),
        )

        assert webhook_error is None
        if card_error is None:
            assert webhook_result["action"] == "fee_already_paid"
        else:
            assert isinstance(card_error, AlreadyDone)
            assert webhook_result["action"] == "fee_confirmed"

        status = file_backed_engine.get_status(buyer, deal_id)
        assert status["status"] == "agent_access_pending"
        assert history_actions(file_backed_engine, buyer, deal_id).count("fee_paid") == 1
        assert chat_gateway.categories == ["agent_email"]

    def test_racing_webhook_redeliveries_apply_once(self, file_backed_engine, file_flow, buyer, chat_gateway):
        deal_id = file_flow.agreed()
        file_backed_engine.pay_transaction_fee(buyer, deal_id, "crypto", "buyer")
        event = FeePaymentEvent.from_nowpayments(confirmed_ipn(deal_id))

        outcomes = run_concurrently(
            lambda: file_backed_engine.apply_fee_payment_event(event),
            lambda: file_backed_engine.apply_fee_payment_event(event),
        )

        assert all(error is None for result, error in outcomes)
        assert sorted(result["duplicate"] for result, error in outcomes) == [False, True]
        assert history_actions(file_backed_engine, buyer, deal_id).count("fee_paid") == 1
        assert chat_gateway.categories == ["agent_email"]
