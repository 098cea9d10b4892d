"""
Notification Module

Outbound SMS to borrowers. Providers deliver a single text message; the
PaymentNotifier formats the payment receipt and makes delivery
best-effort, since by the time it runs the payment is already committed.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

import httpx

from .currency import Money
from .config import ServicingConfig
from .exceptions import NotificationError
from .logging_config import get_logger

logger = get_logger("loan_servicing.notifications")


PAYMENT_RECEIVED_TEMPLATE = (
    "Payment Received: {amount}.\n"
    "Loan ID: {loan_ref}...\n"
    "Remaining Balance: {balance}.\n"
    "Status: {status}.\n"
    "Thank you for your payment."
)


@dataclass
class SMSMessage:
    """A text message handed to a provider"""
    to: str
    message: str


class SMSProvider(ABC):
    """Abstract base class for SMS gateways"""

    @abstractmethod
    async def send(self, message: SMSMessage) -> None:
        """Deliver a message. Raises NotificationError on failure."""
        pass

    async def close(self) -> None:
        pass


class LogSMSProvider(SMSProvider):
    """Logs messages instead of sending them (development and tests)"""

    def __init__(self):
        self.sent: List[SMSMessage] = []

    async def send(self, message: SMSMessage) -> None:
        self.sent.append(message)
        logger.info(f"SMS to {message.to}: {message.message}")


class AfricasTalkingSMSProvider(SMSProvider):
    """Africa's Talking bulk messaging API"""

    def __init__(
        self,
        username: str,
        api_key: str,
        url: str = "https://api.africastalking.com/version1/messaging",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.username = username
        self.api_key = api_key
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, message: SMSMessage) -> None:
        """POST a form-encoded message with the API key header"""
        if not self.username or not self.api_key:
            raise NotificationError("Africa's Talking credentials are not configured")

        try:
            response = await self._client.post(
                self.url,
                data={"username": self.username, "to": message.to, "message": message.message},
                headers={
                    "apiKey": self.api_key,
                    "Accept": "application/json",
                }
            )
        except httpx.HTTPError as e:
            raise NotificationError(f"SMS gateway request failed: {e}") from e

        if response.status_code >= 400:
            raise NotificationError(
                f"SMS gateway returned {response.status_code}: {response.text}"
            )
        logger.info(f"SMS sent to {message.to}")

    async def close(self) -> None:
        await self._client.aclose()


def create_sms_provider(config: ServicingConfig) -> SMSProvider:
    """Create the SMS provider selected by configuration"""
    if config.sms_provider == "log":
        return LogSMSProvider()
    if config.sms_provider == "africastalking":
        return AfricasTalkingSMSProvider(
            username=config.africastalking_username,
            api_key=config.africastalking_api_key,
            url=config.africastalking_url,
            timeout=config.sms_timeout
        )
    raise ValueError(f"Unknown SMS provider: {config.sms_provider}")


def format_payment_message(amount: Money, loan_id: str, balance: Money, status: str) -> str:
    return PAYMENT_RECEIVED_TEMPLATE.format(
        amount=amount.to_string(),
        loan_ref=loan_id[:8],
        balance=balance.to_string(),
        status=status
    )


class PaymentNotifier:
    """Best-effort payment receipts by SMS"""

    def __init__(self, provider: SMSProvider, enabled: bool = True):
        self.provider = provider
        self.enabled = enabled

    async def notify_payment(self, phone: str, amount: Money, loan_id: str,
                             balance: Money, status: str) -> bool:
        """
        Send a payment receipt

        Returns:
            True if the provider accepted the message. Failures are logged,
            never raised.
        """
        if not self.enabled:
            return False

        message = SMSMessage(to=phone, message=format_payment_message(amount, loan_id, balance, status))
        try:
            await self.provider.send(message)
            return True
        except Exception as e:
            logger.error(f"Failed to send payment SMS to {phone}: {e}")
            return False
