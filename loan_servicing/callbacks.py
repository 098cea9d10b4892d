"""
Payment Callback Module

The inbound mobile-money (M-Pesa C2B) confirmation pipeline:

    archive raw payload -> validate -> dedup -> match loan -> allocate -> SMS

Every payload is archived before anything else. Once it is archived the
gateway is always told the payment was accepted; anything that cannot be
applied (no matching loan, or an internal failure) is parked in the failed
callbacks holding area for staff to reconcile or replay.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator
import pydantic

from .async_storage import LedgerStore
from .allocation import AllocationEngine, AllocationResult
from .matching import PaymentMatcher
from .notifications import PaymentNotifier
from .repayments import RepaymentLedger, RepaymentMethod
from .currency import Money, decimal_from_string
from .exceptions import DuplicateTransactionError
from .logging_config import get_logger, log_action

logger = get_logger("loan_servicing.callbacks")


class MpesaCallback(BaseModel):
    """C2B confirmation payload as posted by the gateway"""
    TransactionType: Optional[str] = None
    TransID: str
    TransTime: Optional[str] = None
    TransAmount: Decimal
    BusinessShortCode: Optional[str] = None
    BillRefNumber: Optional[str] = None
    MSISDN: Optional[str] = None
    FirstName: Optional[str] = None
    MiddleName: Optional[str] = None
    LastName: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @field_validator(
        "TransactionType", "TransID", "TransTime", "BusinessShortCode",
        "BillRefNumber", "MSISDN", mode="before"
    )
    @classmethod
    def coerce_to_string(cls, value):
        # The gateway sends some identifiers as JSON numbers
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("TransID")
    @classmethod
    def require_trans_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("TransID is required")
        return value

    @field_validator("TransAmount", mode="before")
    @classmethod
    def parse_amount(cls, value):
        if isinstance(value, bool):
            raise ValueError("TransAmount must be a number")
        if isinstance(value, (int, float)):
            value = str(value)
        if isinstance(value, str):
            return decimal_from_string(value)
        raise ValueError("TransAmount must be a number")

    @property
    def payer_name(self) -> str:
        parts = [self.FirstName, self.MiddleName, self.LastName]
        return " ".join(p for p in parts if p)


class CallbackOutcome(Enum):
    """What happened to an inbound payment"""
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNMATCHED = "unmatched"
    FAILED = "failed"
    INVALID = "invalid"


@dataclass
class CallbackResult:
    """Result of handling one callback"""
    outcome: CallbackOutcome
    trans_id: Optional[str] = None
    allocation: Optional[AllocationResult] = None
    notified: bool = False
    error: Optional[str] = None

    @property
    def accepted(self) -> bool:
        """Whether the gateway should be told the payment was accepted"""
        return self.outcome != CallbackOutcome.INVALID


class PaymentCallbackProcessor:
    """
    Orchestrates inbound payment callbacks end to end
    """

    def __init__(
        self,
        store: LedgerStore,
        repayment_ledger: RepaymentLedger,
        matcher: PaymentMatcher,
        allocation_engine: AllocationEngine,
        notifier: PaymentNotifier,
        collector_id: str = "mpesa_system"
    ):
        self.store = store
        self.repayment_ledger = repayment_ledger
        self.matcher = matcher
        self.allocation_engine = allocation_engine
        self.notifier = notifier
        self.collector_id = collector_id

        self.callbacks_table = "mpesa_callbacks"
        self.failed_table = "failed_mpesa_callbacks"

    async def handle_callback(self, payload: Dict[str, Any]) -> CallbackResult:
        """
        Handle one inbound callback

        Returns INVALID only for payloads without a transaction id or with an
        amount that is not a number; every other outcome is to be
        acknowledged to the gateway as accepted.
        """
        await self._archive(payload)

        try:
            callback = MpesaCallback.model_validate(payload)
        except pydantic.ValidationError as e:
            log_action(
                logger, "error", "Invalid callback data received",
                action="callback_rejected", correlation_id=str(payload.get("TransID") or "") or None,
                extra={"errors": e.errors(include_url=False, include_context=False)}
            )
            return CallbackResult(outcome=CallbackOutcome.INVALID, error=str(e))

        return await self.process(callback, payload)

    async def reject_unreadable(self, raw: str) -> CallbackResult:
        """Archive a body that is not a JSON object and reject it"""
        await self._archive({"raw": raw})
        log_action(
            logger, "error", "Callback body is not a JSON object",
            action="callback_rejected", extra={"length": len(raw)}
        )
        return CallbackResult(outcome=CallbackOutcome.INVALID, error="Body is not a JSON object")

    async def process(self, callback: MpesaCallback, payload: Dict[str, Any],
                      failed_entry_id: Optional[str] = None) -> CallbackResult:
        """
        Dedup, match and allocate a validated callback

        Args:
            callback: Validated payload
            payload: Raw payload, kept verbatim in the holding area on failure
            failed_entry_id: Holding-area entry being replayed, updated in
                place instead of adding a new one
        """
        trans_id = callback.TransID
        try:
            if await self.repayment_ledger.is_processed(trans_id):
                log_action(logger, "warning", "Duplicate transaction ID received",
                           action="callback_duplicate", correlation_id=trans_id)
                return CallbackResult(outcome=CallbackOutcome.DUPLICATE, trans_id=trans_id)

            match = await self.matcher.match(callback.BillRefNumber, callback.MSISDN)
            if not match:
                log_action(
                    logger, "warning", "Could not match payment to any loan",
                    action="callback_unmatched", correlation_id=trans_id,
                    extra={"bill_ref_number": callback.BillRefNumber, "msisdn": callback.MSISDN}
                )
                await self._record_failed(payload, "unmatched", failed_entry_id=failed_entry_id)
                return CallbackResult(outcome=CallbackOutcome.UNMATCHED, trans_id=trans_id)

            allocation = await self.allocation_engine.apply_payment(
                loan_id=match.loan.id,
                borrower_id=match.borrower_id,
                trans_id=trans_id,
                amount=callback.TransAmount,
                phone=callback.MSISDN,
                method=RepaymentMethod.MOBILE_MONEY,
                collected_by_id=self.collector_id
            )
        except DuplicateTransactionError:
            log_action(logger, "warning", "Transaction applied concurrently, treating as duplicate",
                       action="callback_duplicate", correlation_id=trans_id)
            return CallbackResult(outcome=CallbackOutcome.DUPLICATE, trans_id=trans_id)
        except Exception as e:
            logger.exception(f"Critical error processing payment callback {trans_id}")
            await self._record_failed(payload, "processing_error", error=str(e),
                                      failed_entry_id=failed_entry_id)
            return CallbackResult(outcome=CallbackOutcome.FAILED, trans_id=trans_id, error=str(e))

        notified = False
        if match.borrower_phone:
            notified = await self.notifier.notify_payment(
                phone=match.borrower_phone,
                amount=Money(callback.TransAmount, allocation.balance_after_payment.currency),
                loan_id=allocation.loan_id,
                balance=allocation.balance_after_payment,
                status=allocation.status.value
            )

        return CallbackResult(
            outcome=CallbackOutcome.APPLIED,
            trans_id=trans_id,
            allocation=allocation,
            notified=notified
        )

    async def list_failed_callbacks(self, include_resolved: bool = False) -> List[Dict[str, Any]]:
        """Holding-area entries, oldest first"""
        filters = {} if include_resolved else {"resolved": False}
        return await self.store.find(self.failed_table, filters, order_by="created_at")

    async def replay_failed_callbacks(self, limit: Optional[int] = None) -> List[CallbackResult]:
        """
        Re-run unresolved holding-area entries through the pipeline

        Entries that get applied, or turn out to be duplicates of a payment
        applied since, are marked resolved. The rest stay in the holding area
        with their attempt count bumped.
        """
        entries = await self.list_failed_callbacks()
        if limit is not None:
            entries = entries[:limit]

        results = []
        for entry in entries:
            payload = entry["payload"]
            try:
                callback = MpesaCallback.model_validate(payload)
            except pydantic.ValidationError as e:
                result = CallbackResult(outcome=CallbackOutcome.INVALID, error=str(e))
            else:
                result = await self.process(callback, payload, failed_entry_id=entry["id"])

            if result.outcome in (CallbackOutcome.APPLIED, CallbackOutcome.DUPLICATE):
                now = datetime.now(timezone.utc).isoformat()
                await self.store.set(self.failed_table, entry["id"], {
                    **entry,
                    "resolved": True,
                    "resolved_at": now,
                    "resolution": result.outcome.value,
                    "updated_at": now,
                })
            results.append(result)

        log_action(
            logger, "info", "Replayed failed callbacks",
            action="callbacks_replayed",
            extra={
                "replayed": len(results),
                "resolved": sum(1 for r in results if r.outcome in (CallbackOutcome.APPLIED, CallbackOutcome.DUPLICATE))
            }
        )
        return results

    async def _archive(self, payload: Dict[str, Any]) -> None:
        try:
            await self.store.add(self.callbacks_table, {
                "payload": payload,
                "received_at": datetime.now(timezone.utc).isoformat(),
            })
        except Exception:
            # Archiving is diagnostic only; processing goes ahead without it
            logger.exception("Failed to save raw callback")

    async def _record_failed(self, payload: Dict[str, Any], reason: str,
                             error: Optional[str] = None,
                             failed_entry_id: Optional[str] = None) -> None:
        now = datetime.now(timezone.utc).isoformat()
        try:
            if failed_entry_id:
                entry = await self.store.get(self.failed_table, failed_entry_id) or {}
                await self.store.set(self.failed_table, failed_entry_id, {
                    **entry,
                    "reason": reason,
                    "error": error,
                    "attempts": entry.get("attempts", 1) + 1,
                    "updated_at": now,
                })
            else:
                await self.store.add(self.failed_table, {
                    "payload": payload,
                    "trans_id": payload.get("TransID"),
                    "reason": reason,
                    "error": error,
                    "attempts": 1,
                    "resolved": False,
                    "created_at": now,
                    "updated_at": now,
                })
        except Exception:
            logger.exception(f"Failed to record callback {payload.get('TransID')} for manual review")
