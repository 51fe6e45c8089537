"""
Mail Delivery Core
==================

Sends customer mail through a primary transport (SMTP) with retries, then
falls back once to the Brevo HTTPS API.

Attempt plan for one message:
- primary configured: primary x `retries` (linear back-off `delay * attempt`
  between tries), then fallback x1 if configured
- primary missing or disabled: fallback x `retries`

Delivery never raises into the caller. The outcome is returned as a
`DeliveryResult`; total failure carries a `DeliveryFailure` and is logged.
"""

import html as html_lib
import logging
import re
import smtplib
import ssl
import time
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Dict, List, Optional

import httpx

from .config import Settings, get_settings
from .errors import DeliveryFailure

logger = logging.getLogger(__name__)

BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"

_FROM_RE = re.compile(r"^(.*?)\s*<([^>]+)>$")


class TransportError(Exception):
    """A single transport attempt failed."""


@dataclass
class MailMessage:
    to: Optional[str]
    subject: str
    text: str
    html: Optional[str] = None


def parse_from(from_str: str) -> Dict[str, str]:
    """'Name <addr>' -> {"name": ..., "email": ...}; a bare address -> {"email": ...}"""
    match = _FROM_RE.match(from_str.strip())
    if match:
        return {"name": match.group(1).strip(), "email": match.group(2).strip()}
    return {"email": from_str.strip()}


# =============================================================================
# TRANSPORTS
# =============================================================================

class SmtpTransport:
    """SMTP via stdlib smtplib: implicit SSL on port 465, STARTTLS otherwise."""

    name = "smtp"

    def __init__(self, host: str, port: int, user: str, password: str, sender: str, timeout: int = 20):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.timeout = timeout

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.port == 465:
            server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout, context=context)
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            server.starttls(context=context)
        server.login(self.user, self.password)
        return server

    def verify(self) -> None:
        try:
            with self._connect() as server:
                server.noop()
        except (smtplib.SMTPException, OSError) as e:
            raise TransportError(f"SMTP verify failed: {e}") from e

    def send(self, message: MailMessage) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = self.sender
        msg["To"] = message.to

        msg.attach(MIMEText(message.text or "", "plain", "utf-8"))
        if message.html:
            msg.attach(MIMEText(message.html, "html", "utf-8"))

        try:
            with self._connect() as server:
                server.sendmail(parse_from(self.sender)["email"], [message.to], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise TransportError(f"SMTP send failed: {e}") from e


class BrevoTransport:
    """Brevo transactional email API over HTTPS."""

    name = "brevo"

    def __init__(
        self,
        api_key: str,
        sender: str,
        api_url: str = BREVO_API_URL,
        timeout: float = 20.0,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.sender = sender
        self.api_url = api_url
        self.timeout = timeout
        self._client = client

    def build_payload(self, message: MailMessage) -> dict:
        payload = {
            "sender": parse_from(self.sender),
            "to": [{"email": message.to}],
            "subject": message.subject,
            "textContent": message.text,
        }
        if message.html:
            payload["htmlContent"] = message.html
        return payload

    def send(self, message: MailMessage) -> None:
        headers = {"api-key": self.api_key, "Content-Type": "application/json"}
        payload = self.build_payload(message)
        try:
            if self._client is not None:
                response = self._client.post(self.api_url, json=payload, headers=headers)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(f"Brevo request failed: {e}") from e

        if response.status_code >= 400:
            raise TransportError(f"Brevo API {response.status_code}: {response.text[:500]}")


# =============================================================================
# DELIVERY
# =============================================================================

@dataclass(frozen=True)
class AttemptDescriptor:
    """One planned delivery attempt: which transport, and how long to wait first"""
    transport: str  # primary | fallback
    attempt: int
    delay_before: float


@dataclass
class DeliveryResult:
    delivered: bool
    transport: Optional[str] = None
    attempts: int = 0
    skipped: bool = False
    errors: List[str] = field(default_factory=list)
    error: Optional[DeliveryFailure] = None


def plan_attempts(has_primary: bool, has_fallback: bool, retries: int, base_delay: float) -> List[AttemptDescriptor]:
    """
    Ordered attempt plan.

    The back-off before retry N (N >= 2) is `base_delay * (N - 1)`, i.e. the
    wait after failed attempt k is `base_delay * k`. The single fallback after
    the primary runs immediately.
    """
    retries = max(1, retries)
    plan: List[AttemptDescriptor] = []
    routed = "primary" if has_primary else ("fallback" if has_fallback else None)
    if routed is None:
        return plan

    for attempt in range(1, retries + 1):
        delay = base_delay * (attempt - 1) if attempt > 1 else 0.0
        plan.append(AttemptDescriptor(routed, attempt, delay))

    if has_primary and has_fallback:
        plan.append(AttemptDescriptor("fallback", 1, 0.0))
    return plan


class MailDelivery:
    """
    Delivery core with an explicit attempt plan.

    Args:
        primary: Transport with `send(message)` (usually SmtpTransport)
        fallback: Transport used once after the primary gives up
        retries: Attempts on the routed transport
        retry_delay: Base back-off in seconds
        sleep: Injected for tests
    """

    def __init__(
        self,
        primary=None,
        fallback=None,
        retries: int = 2,
        retry_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.primary = primary
        self.fallback = fallback
        self.retries = retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "MailDelivery":
        settings = settings or get_settings()
        primary = None
        if settings.smtp_configured:
            primary = SmtpTransport(
                host=settings.smtp_host,
                port=settings.smtp_port,
                user=settings.smtp_user,
                password=settings.smtp_password,
                sender=settings.smtp_from,
                timeout=settings.smtp_timeout,
            )
        fallback = None
        if settings.brevo_api_key:
            fallback = BrevoTransport(
                api_key=settings.brevo_api_key,
                sender=settings.smtp_from,
                api_url=settings.brevo_api_url,
            )
        return cls(
            primary=primary,
            fallback=fallback,
            retries=settings.mail_retries,
            retry_delay=settings.mail_retry_delay_seconds,
        )

    @property
    def configured(self) -> bool:
        return self.primary is not None or self.fallback is not None

    def verify_primary(self) -> bool:
        """
        Advisory connectivity check. On failure the primary is disabled for
        the rest of the process lifetime and all mail goes to the fallback.
        """
        if self.primary is None:
            logger.info("No primary mail transport configured; using fallback only")
            return False
        verify = getattr(self.primary, "verify", None)
        if verify is None:
            return True
        try:
            verify()
        except TransportError as e:
            logger.warning(f"Primary mail transport disabled: {e}")
            self.primary = None
            return False
        logger.info(f"Primary mail transport ready ({self.primary.name})")
        return True

    def send(self, message: MailMessage) -> DeliveryResult:
        if not message.to:
            logger.warning(f"Skipping mail '{message.subject}': no recipient")
            return DeliveryResult(delivered=False, skipped=True)

        plan = plan_attempts(self.primary is not None, self.fallback is not None, self.retries, self.retry_delay)
        if not plan:
            logger.info(f"[DEV MODE] Mail would be sent to {message.to}: {message.subject}")
            failure = DeliveryFailure("No mail transport configured", details={"to": message.to})
            return DeliveryResult(delivered=False, error=failure)

        result = DeliveryResult(delivered=False)
        for step in plan:
            transport = self.primary if step.transport == "primary" else self.fallback
            if step.transport == "fallback" and self.primary is not None:
                logger.warning(f"Falling back to {transport.name} for '{message.subject}' -> {message.to}")
            if step.delay_before > 0:
                self._sleep(step.delay_before)

            result.attempts += 1
            try:
                transport.send(message)
            except TransportError as e:
                result.errors.append(f"{transport.name}: {e}")
                logger.error(
                    f"Mail attempt {result.attempts}/{len(plan)} via {transport.name} "
                    f"failed for '{message.subject}' -> {message.to}: {e}"
                )
                continue

            result.delivered = True
            result.transport = transport.name
            logger.info(f"Mail '{message.subject}' -> {message.to} sent via {transport.name}")
            return result

        result.error = DeliveryFailure(
            "All delivery attempts failed",
            details={"to": message.to, "subject": message.subject, "errors": result.errors},
        )
        logger.error(f"All delivery attempts failed for '{message.subject}' -> {message.to}")
        return result


# =============================================================================
# CASE MAIL
# =============================================================================

def build_case_update_message(to: Optional[str], customer_name: Optional[str], case_id: str, state_label: str) -> MailMessage:
    """Mail sent to the customer after every successful state transition."""
    greeting = f"Dear {customer_name}," if customer_name else "Dear client,"
    text = (
        f"{greeting}\n\n"
        f"Your case {case_id} has moved to: {state_label}.\n\n"
        "Our team will contact you if anything is needed from your side.\n"
    )
    html = (
        f"<p>{html_lib.escape(greeting)}</p>"
        f"<p>Your case <strong>{case_id}</strong> has moved to: <strong>{state_label}</strong>.</p>"
        "<p>Our team will contact you if anything is needed from your side.</p>"
    )
    return MailMessage(to=to, subject=f"Case {case_id} update", text=text, html=html)
