"""
Tests for Notification Module

Tests the payment receipt text, the Africa's Talking provider against a
mocked HTTP transport, and that the notifier never raises.
"""

import pytest
from decimal import Decimal
from unittest.mock import AsyncMock
from urllib.parse import parse_qs

import httpx

from loan_servicing.config import ServicingConfig
from loan_servicing.currency import Money, Currency
from loan_servicing.notifications import (
    AfricasTalkingSMSProvider,
    LogSMSProvider,
    PaymentNotifier,
    SMSMessage,
    create_sms_provider,
    format_payment_message
)
from loan_servicing.exceptions import NotificationError


def kes(amount: str) -> Money:
    return Money(Decimal(amount), Currency.KES)


def provider_with(handler, username="sandbox", api_key="secret"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AfricasTalkingSMSProvider(username=username, api_key=api_key, client=client)


class TestPaymentMessage:
    """Test receipt formatting"""

    def test_message_text(self):
        message = format_payment_message(
            amount=kes("1500"),
            loan_id="a1b2c3d4-e5f6-7890-abcd-ef1234567890",
            balance=kes("1800"),
            status="Active"
        )

        assert message == (
            "Payment Received: KES 1,500.00.\n"
            "Loan ID: a1b2c3d4...\n"
            "Remaining Balance: KES 1,800.00.\n"
            "Status: Active.\n"
            "Thank you for your payment."
        )

    def test_negative_balance_shown_as_is(self):
        message = format_payment_message(kes("4000"), "loan-0001", kes("-700"), "Completed")
        assert "Remaining Balance: KES -700.00." in message
        assert "Status: Completed." in message


class TestAfricasTalkingProvider:
    """Test the HTTP gateway client"""

    @pytest.mark.asyncio
    async def test_posts_form_with_api_key(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["request"] = request
            return httpx.Response(201, json={"SMSMessageData": {"Message": "Sent to 1/1"}})

        provider = provider_with(handler)
        await provider.send(SMSMessage(to="0712345678", message="hello"))
        await provider.close()

        request = captured["request"]
        assert request.method == "POST"
        assert str(request.url) == "https://api.africastalking.com/version1/messaging"
        assert request.headers["apiKey"] == "secret"
        assert request.headers["Accept"] == "application/json"
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        form = parse_qs(request.content.decode())
        assert form == {"username": ["sandbox"], "to": ["0712345678"], "message": ["hello"]}

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        provider = provider_with(lambda request: httpx.Response(401, text="invalid key"))

        with pytest.raises(NotificationError):
            await provider.send(SMSMessage(to="0712345678", message="hello"))

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = provider_with(handler)

        with pytest.raises(NotificationError):
            await provider.send(SMSMessage(to="0712345678", message="hello"))

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        handler = AsyncMock()
        provider = provider_with(handler, api_key="")

        with pytest.raises(NotificationError):
            await provider.send(SMSMessage(to="0712345678", message="hello"))
        handler.assert_not_called()


class TestProviderFactory:
    """Test provider selection from configuration"""

    def test_log_provider(self):
        assert isinstance(create_sms_provider(ServicingConfig(sms_provider="log")), LogSMSProvider)

    def test_africastalking_provider(self):
        provider = create_sms_provider(ServicingConfig(
            sms_provider="africastalking",
            africastalking_username="lender",
            africastalking_api_key="key"
        ))
        assert isinstance(provider, AfricasTalkingSMSProvider)
        assert provider.username == "lender"

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_sms_provider(ServicingConfig(sms_provider="carrier-pigeon"))


class TestPaymentNotifier:
    """Test best-effort delivery"""

    @pytest.mark.asyncio
    async def test_sends_receipt(self):
        provider = LogSMSProvider()
        notifier = PaymentNotifier(provider)

        sent = await notifier.notify_payment("0712345678", kes("500"), "loan-0001", kes("2800"), "Active")

        assert sent is True
        assert provider.sent[0].to == "0712345678"
        assert provider.sent[0].message.startswith("Payment Received: KES 500.00.")

    @pytest.mark.asyncio
    async def test_provider_failure_is_swallowed(self):
        provider = LogSMSProvider()
        provider.send = AsyncMock(side_effect=NotificationError("gateway down"))
        notifier = PaymentNotifier(provider)

        sent = await notifier.notify_payment("0712345678", kes("500"), "loan-0001", kes("2800"), "Active")

        assert sent is False

    @pytest.mark.asyncio
    async def test_disabled(self):
        provider = LogSMSProvider()
        notifier = PaymentNotifier(provider, enabled=False)

        assert await notifier.notify_payment("0712345678", kes("1"), "loan", kes("0"), "Active") is False
        assert provider.sent == []
