"""
Tests for Payment Callback Module

Drives PaymentCallbackProcessor end to end: archiving, validation, dedup,
matching, allocation, SMS receipts, the failed callbacks holding area and
replay.
"""

import pytest
from decimal import Decimal
from unittest.mock import AsyncMock

import pydantic

from loan_servicing.config import ServicingConfig
from loan_servicing.callbacks import CallbackOutcome, MpesaCallback
from loan_servicing.loans import LoanStatus
from loan_servicing.exceptions import TransactionRetryExhaustedError


def c2b_payload(trans_id="QKX1ABC123", amount="1500.00", bill_ref="", msisdn="254712345678"):
    return {
        "TransactionType": "Pay Bill",
        "TransID": trans_id,
        "TransTime": "20261018143015",
        "TransAmount": amount,
        "BusinessShortCode": "600000",
        "BillRefNumber": bill_ref,
        "InvoiceNumber": "",
        "OrgAccountBalance": "49197.00",
        "ThirdPartyTransID": "",
        "MSISDN": msisdn,
        "FirstName": "WANJIRU",
        "MiddleName": "",
        "LastName": "KAMAU",
    }


class TestMpesaCallbackSchema:
    """Test payload validation"""

    def test_parses_gateway_payload(self):
        callback = MpesaCallback.model_validate(c2b_payload())

        assert callback.TransID == "QKX1ABC123"
        assert callback.TransAmount == Decimal("1500.00")
        assert callback.MSISDN == "254712345678"
        assert callback.payer_name == "WANJIRU KAMAU"

    def test_numeric_fields_coerced(self):
        payload = c2b_payload(amount=250)
        payload["MSISDN"] = 254712345678
        callback = MpesaCallback.model_validate(payload)

        assert callback.TransAmount == Decimal("250")
        assert callback.MSISDN == "254712345678"

    def test_unknown_fields_kept(self):
        payload = {**c2b_payload(), "ExtraGatewayField": "x"}
        callback = MpesaCallback.model_validate(payload)

        assert callback.model_extra == {
            "InvoiceNumber": "",
            "OrgAccountBalance": "49197.00",
            "ThirdPartyTransID": "",
            "ExtraGatewayField": "x",
        }

    @pytest.mark.parametrize("payload", [
        {"TransAmount": "100"},
        {"TransID": "", "TransAmount": "100"},
        {"TransID": "   ", "TransAmount": "100"},
        {"TransID": "QK1", "TransAmount": "abc"},
        {"TransID": "QK1", "TransAmount": ""},
        {"TransID": "QK1"},
        {"TransID": "QK1", "TransAmount": True},
    ])
    def test_rejects_unusable_payloads(self, payload):
        with pytest.raises(pydantic.ValidationError):
            MpesaCallback.model_validate(payload)


class TestHandleCallback:
    """Test the processing pipeline"""

    @pytest.mark.asyncio
    async def test_matched_payment_applied_and_receipted(self, system, active_loan, sms_provider, storage):
        borrower, loan, _ = active_loan

        result = await system.callback_processor.handle_callback(c2b_payload())

        assert result.outcome == CallbackOutcome.APPLIED
        assert result.accepted
        assert result.allocation.balance_after_payment.amount == Decimal("1800.00")
        assert result.notified is True

        repayment = await system.repayment_ledger.get_by_trans_id("QKX1ABC123")
        assert repayment.loan_id == loan.id
        assert repayment.borrower_id == borrower.id
        assert repayment.collected_by_id == "mpesa_system"

        assert storage.count("mpesa_callbacks") == 1
        assert storage.count("failed_mpesa_callbacks") == 0

        [sms] = sms_provider.sent
        assert sms.to == "0712345678"
        assert sms.message == (
            "Payment Received: KES 1,500.00.\n"
            f"Loan ID: {loan.id[:8]}...\n"
            "Remaining Balance: KES 1,800.00.\n"
            "Status: Active.\n"
            "Thank you for your payment."
        )

    @pytest.mark.asyncio
    async def test_reference_match_notifies_registered_phone(self, system, active_loan, sms_provider):
        _, loan, _ = active_loan

        result = await system.callback_processor.handle_callback(
            c2b_payload(bill_ref=loan.id, msisdn="254799888777")
        )

        assert result.outcome == CallbackOutcome.APPLIED
        assert sms_provider.sent[0].to == "0712345678"

    @pytest.mark.asyncio
    async def test_final_payment_completes_loan(self, system, active_loan, sms_provider):
        _, loan, _ = active_loan

        await system.callback_processor.handle_callback(c2b_payload(amount="3300"))

        assert (await system.loan_manager.get_loan(loan.id)).status == LoanStatus.COMPLETED
        assert "Status: Completed." in sms_provider.sent[0].message

    @pytest.mark.asyncio
    async def test_duplicate_delivery_applied_once(self, system, active_loan, sms_provider, storage):
        _, loan, _ = active_loan

        first = await system.callback_processor.handle_callback(c2b_payload())
        second = await system.callback_processor.handle_callback(c2b_payload())

        assert first.outcome == CallbackOutcome.APPLIED
        assert second.outcome == CallbackOutcome.DUPLICATE
        assert second.accepted
        assert len(await system.repayment_ledger.get_loan_repayments(loan.id)) == 1
        assert len(sms_provider.sent) == 1
        # Both deliveries are archived
        assert storage.count("mpesa_callbacks") == 2

    @pytest.mark.asyncio
    async def test_unmatched_payment_parked(self, system, active_loan, sms_provider, storage):
        _, loan, _ = active_loan
        loan_before = await system.loan_manager.get_loan(loan.id)
        installments_before = [
            (i.id, i.paid_amount, i.status)
            for i in await system.installment_manager.get_installments(loan.id)
        ]

        result = await system.callback_processor.handle_callback(
            c2b_payload(trans_id="QKUNKNOWN1", bill_ref="NOT-A-LOAN", msisdn="254700000001")
        )

        assert result.outcome == CallbackOutcome.UNMATCHED
        assert result.accepted
        assert sms_provider.sent == []

        [entry] = await system.callback_processor.list_failed_callbacks()
        assert entry["reason"] == "unmatched"
        assert entry["resolved"] is False
        assert entry["payload"]["TransID"] == "QKUNKNOWN1"
        assert await system.repayment_ledger.get_by_trans_id("QKUNKNOWN1") is None
        assert storage.count("repayments") == 0

        # No loan or installment was touched
        loan_after = await system.loan_manager.get_loan(loan.id)
        assert loan_after.status == loan_before.status
        assert loan_before.last_payment_date is None
        assert loan_after.last_payment_date is None
        installments_after = [
            (i.id, i.paid_amount, i.status)
            for i in await system.installment_manager.get_installments(loan.id)
        ]
        assert installments_after == installments_before

    @pytest.mark.asyncio
    async def test_invalid_payload(self, system, storage):
        result = await system.callback_processor.handle_callback({"TransAmount": "100"})

        assert result.outcome == CallbackOutcome.INVALID
        assert not result.accepted
        # Archived even though it was rejected
        assert storage.count("mpesa_callbacks") == 1
        assert storage.count("failed_mpesa_callbacks") == 0

    @pytest.mark.asyncio
    async def test_zero_amount_parked_as_processing_error(self, system, active_loan):
        result = await system.callback_processor.handle_callback(c2b_payload(amount="0"))

        assert result.outcome == CallbackOutcome.FAILED
        assert result.accepted
        [entry] = await system.callback_processor.list_failed_callbacks()
        assert entry["reason"] == "processing_error"

    @pytest.mark.asyncio
    async def test_fractional_amount_parked_as_processing_error(self, system, active_loan, storage):
        result = await system.callback_processor.handle_callback(c2b_payload(amount="1500.005"))

        assert result.outcome == CallbackOutcome.FAILED
        assert result.accepted
        [entry] = await system.callback_processor.list_failed_callbacks()
        assert entry["reason"] == "processing_error"
        assert storage.count("repayments") == 0

    @pytest.mark.asyncio
    async def test_internal_error_parked(self, system, active_loan):
        system.allocation_engine.apply_payment = AsyncMock(
            side_effect=TransactionRetryExhaustedError("too much contention")
        )

        result = await system.callback_processor.handle_callback(c2b_payload())

        assert result.outcome == CallbackOutcome.FAILED
        assert result.accepted
        [entry] = await system.callback_processor.list_failed_callbacks()
        assert entry["reason"] == "processing_error"
        assert "too much contention" in entry["error"]

    @pytest.mark.asyncio
    async def test_archive_failure_does_not_block_processing(self, system, active_loan):
        processor = system.callback_processor
        original_add = processor.store.add

        async def add(table, data):
            if table == processor.callbacks_table:
                raise RuntimeError("disk full")
            return await original_add(table, data)

        processor.store.add = add

        result = await processor.handle_callback(c2b_payload())

        assert result.outcome == CallbackOutcome.APPLIED

    @pytest.mark.asyncio
    async def test_sms_failure_does_not_affect_result(self, system, active_loan, sms_provider):
        sms_provider.send = AsyncMock(side_effect=RuntimeError("gateway down"))

        result = await system.callback_processor.handle_callback(c2b_payload())

        assert result.outcome == CallbackOutcome.APPLIED
        assert result.notified is False
        assert await system.repayment_ledger.get_by_trans_id("QKX1ABC123") is not None


class TestWholeUnitCurrency:
    """Callbacks against a deployment whose currency has no minor unit"""

    @pytest.fixture
    def servicing_config(self):
        return ServicingConfig(database_url="memory://", sms_provider="log", sms_enabled=True, currency="UGX")

    @pytest.mark.asyncio
    async def test_fraction_of_a_shilling_is_not_rounded(self, system, active_loan, storage):
        _, loan, _ = active_loan

        result = await system.callback_processor.handle_callback(c2b_payload(amount="150.5"))

        assert result.outcome == CallbackOutcome.FAILED
        assert storage.count("repayments") == 0
        installments = await system.installment_manager.get_installments(loan.id)
        assert all(i.paid_amount.is_zero() for i in installments)

    @pytest.mark.asyncio
    async def test_whole_amount_applied(self, system, active_loan):
        _, loan, _ = active_loan

        result = await system.callback_processor.handle_callback(c2b_payload(amount="150"))

        assert result.outcome == CallbackOutcome.APPLIED
        [repayment] = await system.repayment_ledger.get_loan_repayments(loan.id)
        assert repayment.amount.amount == Decimal("150")
        assert repayment.amount.currency.code == "UGX"


class TestReplay:
    """Test re-running the holding area"""

    @pytest.mark.asyncio
    async def test_replay_after_borrower_registered(self, system, loan_factory, sms_provider):
        processor = system.callback_processor
        await processor.handle_callback(c2b_payload(msisdn="254722111222"))
        assert len(await processor.list_failed_callbacks()) == 1

        # Staff register the payer and disburse their loan, then replay
        _, loan, _ = await loan_factory(phone="0722111222")
        results = await processor.replay_failed_callbacks()

        assert [r.outcome for r in results] == [CallbackOutcome.APPLIED]
        assert await processor.list_failed_callbacks() == []
        [entry] = await processor.list_failed_callbacks(include_resolved=True)
        assert entry["resolved"] is True
        assert entry["resolution"] == "applied"
        assert (await system.repayment_ledger.get_by_trans_id("QKX1ABC123")).loan_id == loan.id

    @pytest.mark.asyncio
    async def test_replay_still_unmatched_stays_parked(self, system):
        processor = system.callback_processor
        await processor.handle_callback(c2b_payload(msisdn="254722111222"))

        results = await processor.replay_failed_callbacks()

        assert [r.outcome for r in results] == [CallbackOutcome.UNMATCHED]
        [entry] = await processor.list_failed_callbacks()
        assert entry["attempts"] == 2
        assert entry["resolved"] is False

    @pytest.mark.asyncio
    async def test_replay_of_already_applied_payment_resolves(self, system, active_loan, storage):
        processor = system.callback_processor
        _, loan, _ = active_loan
        payload = c2b_payload()
        await processor.handle_callback(payload)
        # Same payment parked separately, e.g. by an earlier failed delivery
        await processor.store.add(processor.failed_table, {
            "payload": payload, "trans_id": payload["TransID"], "reason": "processing_error",
            "attempts": 1, "resolved": False,
            "created_at": "2026-10-18T00:00:00+00:00", "updated_at": "2026-10-18T00:00:00+00:00",
        })

        results = await processor.replay_failed_callbacks()

        assert [r.outcome for r in results] == [CallbackOutcome.DUPLICATE]
        assert await processor.list_failed_callbacks() == []
        assert len(await system.repayment_ledger.get_loan_repayments(loan.id)) == 1

    @pytest.mark.asyncio
    async def test_replay_limit(self, system):
        processor = system.callback_processor
        for n in range(3):
            await processor.handle_callback(c2b_payload(trans_id=f"QK{n}", msisdn="254722111222"))

        results = await processor.replay_failed_callbacks(limit=2)

        assert len(results) == 2
