import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Protocol

from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from .errors import DispatchError
from .models import OrderStatus
from .state_machine import message_template, parse_status

logger = logging.getLogger(__name__)


class MessagingGateway(Protocol):
    def send(self, to: str, body: str) -> None:
        ...


class LoggingGateway:
    """Development gateway: writes the message to the log instead of sending it."""

    def send(self, to: str, body: str) -> None:
        logger.info("WhatsApp (simulated) to %s:\n%s", to, body)


class TwilioWhatsAppGateway:
    def __init__(self, account_sid: str, auth_token: str, from_number: str, *, timeout: float = 5.0, client: Client | None = None) -> None:
        self.from_number = from_number
        self.timeout = timeout
        self._client = client or Client(account_sid, auth_token, http_client=TwilioHttpClient(timeout=timeout))

    def send(self, to: str, body: str) -> None:
        try:
            message = self._client.messages.create(
                body=body,
                from_=_whatsapp_address(self.from_number),
                to=_whatsapp_address(to),
            )
        except Exception as exc:  # noqa: BLE001
            raise DispatchError(f"Failed to send WhatsApp message: {exc}") from exc
        logger.debug("Twilio accepted message %s", message.sid)


def _whatsapp_address(number: str) -> str:
    return number if number.startswith("whatsapp:") else f"whatsapp:{number}"


def build_gateway(settings) -> MessagingGateway:
    if settings.messaging_backend == "twilio":
        missing = [
            name
            for name in ("twilio_account_sid", "twilio_auth_token", "twilio_whatsapp_number")
            if not getattr(settings, name)
        ]
        if missing:
            raise ValueError(f"Twilio messaging needs {', '.join(missing)}")
        return TwilioWhatsAppGateway(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            settings.twilio_whatsapp_number,
            timeout=settings.gateway_timeout,
        )
    return LoggingGateway()


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 1
    backoff: float = 0.5


class NotificationDispatcher:
    """Delivers status notifications without ever failing the caller's transition."""

    def __init__(
        self,
        gateway: MessagingGateway,
        *,
        default_recipient: str | None = None,
        retry: RetryPolicy | None = None,
        workers: int = 4,
        remember: int = 1024,
    ) -> None:
        self.gateway = gateway
        self.default_recipient = default_recipient
        self.retry = retry or RetryPolicy()
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dispatch")
        self._lock = threading.Lock()
        self._pending: set[Future] = set()
        self._delivered: OrderedDict[tuple[int, OrderStatus], None] = OrderedDict()
        self._in_flight: set[tuple[int, OrderStatus]] = set()
        self._remember = remember

    def send(self, order_number: int, status, to: str | None = None) -> bool:
        """Render and deliver one notification, raising :class:`DispatchError` on failure.

        Returns False when this (order number, status) pair was already delivered
        or another call is delivering it right now.
        """
        status = parse_status(status)
        key = (order_number, status)
        recipient = to or self.default_recipient
        if not recipient:
            raise DispatchError(f"No recipient for order #{order_number}")
        with self._lock:
            if key in self._delivered or key in self._in_flight:
                logger.info("Notification for order #%s (%s) already sent or in flight", order_number, status)
                return False
            self._in_flight.add(key)
        try:
            return self._deliver(key, recipient)
        finally:
            with self._lock:
                self._in_flight.discard(key)

    def _deliver(self, key: tuple[int, OrderStatus], recipient: str) -> bool:
        order_number, status = key
        body = message_template(status, order_number)

        last_error: Exception | None = None
        for attempt in range(1, self.retry.attempts + 1):
            try:
                self.gateway.send(recipient, body)
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning(
                    "Notification for order #%s (%s) failed on attempt %s/%s: %s",
                    order_number,
                    status,
                    attempt,
                    self.retry.attempts,
                    exc,
                )
                if attempt < self.retry.attempts and self.retry.backoff:
                    time.sleep(self.retry.backoff * attempt)
                continue
            self._mark_delivered(key)
            logger.info("Notified %s about order #%s (%s)", recipient, order_number, status)
            return True

        if isinstance(last_error, DispatchError):
            raise last_error
        raise DispatchError(str(last_error)) from last_error

    def notify(self, order_number: int, status, to: str | None = None) -> None:
        """Best-effort variant of :meth:`send`; failures are logged and dropped."""
        try:
            self.send(order_number, status, to)
        except DispatchError as exc:
            logger.warning("Dropped notification for order #%s (%s): %s", order_number, status, exc)

    def dispatch(self, order_number: int, status, to: str | None = None) -> Future:
        """Run :meth:`notify` in the background and return immediately."""
        future = self._executor.submit(self.notify, order_number, status, to)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def flush(self, timeout: float | None = None) -> bool:
        """Wait for background notifications; True when none are left pending."""
        with self._lock:
            pending = list(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_pending)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _mark_delivered(self, key: tuple[int, OrderStatus]) -> None:
        with self._lock:
            self._delivered[key] = None
            while len(self._delivered) > self._remember:
                self._delivered.popitem(last=False)
