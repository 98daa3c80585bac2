"""
Email transports.

Two interchangeable implementations of the same small protocol:

- SmtpTransport: an SMTP relay reached with aiosmtplib (implicit TLS on 465,
  STARTTLS on 587)
- HttpEmailApiTransport: a SendGrid v3 compatible HTTP API reached with httpx

Both expose ``probe(timeout)`` for the startup connectivity check and
``send(message, timeout)`` for one delivery attempt. Library specific errors
are translated into DeliveryFailure / DeliveryTimeout so the dispatcher only
deals with one error family.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from email import encoders
from email.errors import MessageError
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid, parseaddr
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

import aiosmtplib
import httpx

from .exceptions import DeliveryFailure, DeliveryTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class OutboundMessage:
    sender: str
    recipients: Sequence[str]
    subject: str
    html: Optional[str] = None
    text: Optional[str] = None
    attachments: Sequence[Attachment] = field(default_factory=tuple)
    reply_to: Optional[str] = None


@runtime_checkable
class Transport(Protocol):
    name: str
    kind: str

    async def probe(self, timeout: float) -> None: ...

    async def send(self, message: OutboundMessage, timeout: float) -> None: ...


def single_line(value: str) -> str:
    """Join the lines of a header value with spaces."""
    return " ".join(value.splitlines())


def build_mime_message(message: OutboundMessage) -> MIMEMultipart:
    """Assemble a multipart/mixed message with an alternative body part."""
    root = MIMEMultipart("mixed")
    root["From"] = message.sender
    root["To"] = ", ".join(message.recipients)
    root["Subject"] = single_line(message.subject)
    root["Date"] = formatdate(localtime=True)
    root["Message-ID"] = make_msgid()
    if message.reply_to:
        root["Reply-To"] = single_line(message.reply_to)

    body = MIMEMultipart("alternative")
    if message.text:
        body.attach(MIMEText(message.text, "plain", "utf-8"))
    if message.html:
        body.attach(MIMEText(message.html, "html", "utf-8"))
    root.attach(body)

    for attachment in message.attachments:
        maintype, _, subtype = attachment.content_type.partition("/")
        part = MIMEBase(maintype or "application", subtype or "octet-stream")
        part.set_payload(attachment.content)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
        root.attach(part)
    return root


class SmtpTransport:
    kind = "smtp"

    def __init__(
        self,
        name: str,
        host: str,
        port: int,
        username: str = "",
        password: str = "",
        use_tls: bool = False,
        start_tls: bool = False,
        validate_certs: bool = True,
    ) -> None:
        self.name = name
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.start_tls = start_tls
        self.validate_certs = validate_certs

    def __repr__(self) -> str:
        return f"SmtpTransport(name={self.name!r}, host={self.host!r}, port={self.port})"

    def _connection_options(self, timeout: float) -> Dict[str, Any]:
        return {
            "hostname": self.host,
            "port": self.port,
            "timeout": timeout,
            "use_tls": self.use_tls,
            "start_tls": self.start_tls,
            "validate_certs": self.validate_certs,
        }

    async def probe(self, timeout: float) -> None:
        """Connect, negotiate TLS, authenticate and quit."""
        try:
            async with aiosmtplib.SMTP(**self._connection_options(timeout)) as smtp:
                if self.username:
                    await smtp.login(self.username, self.password)
                else:
                    await smtp.noop()
        except aiosmtplib.SMTPTimeoutError as exc:
            raise DeliveryTimeout(f"{self.name}: connection timed out") from exc
        except (aiosmtplib.SMTPException, OSError) as exc:
            raise DeliveryFailure(f"{self.name}: {exc}") from exc

    async def send(self, message: OutboundMessage, timeout: float) -> None:
        try:
            mime = build_mime_message(message)
            errors, response = await aiosmtplib.send(
                mime,
                sender=parseaddr(message.sender)[1] or message.sender,
                recipients=list(message.recipients),
                username=self.username or None,
                password=self.password or None,
                **self._connection_options(timeout),
            )
        except aiosmtplib.SMTPTimeoutError as exc:
            raise DeliveryTimeout(f"{self.name}: send timed out") from exc
        except (aiosmtplib.SMTPException, OSError, MessageError) as exc:
            raise DeliveryFailure(f"{self.name}: {exc}") from exc
        if errors:
            rejected = ", ".join(sorted(errors))
            raise DeliveryFailure(f"{self.name}: recipients rejected: {rejected}", {"response": response})


class HttpEmailApiTransport:
    kind = "http_api"

    def __init__(
        self,
        name: str,
        api_key: str,
        base_url: str = "https://api.sendgrid.com",
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.name = name
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        # Injected in tests (httpx.MockTransport)
        self._http_transport = http_transport

    def __repr__(self) -> str:
        return f"HttpEmailApiTransport(name={self.name!r}, base_url={self.base_url!r})"

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "User-Agent": "school-forms-backend/mailer",
            },
            transport=self._http_transport,
        )

    @staticmethod
    def build_payload(message: OutboundMessage) -> Dict[str, Any]:
        sender_name, sender_email = parseaddr(message.sender)
        sender: Dict[str, str] = {"email": sender_email or message.sender}
        if sender_name:
            sender["name"] = sender_name

        content: List[Dict[str, str]] = []
        # text/plain must come first when both are present
        if message.text:
            content.append({"type": "text/plain", "value": message.text})
        if message.html:
            content.append({"type": "text/html", "value": message.html})

        payload: Dict[str, Any] = {
            "personalizations": [{"to": [{"email": address} for address in message.recipients]}],
            "from": sender,
            "subject": message.subject,
            "content": content,
        }
        if message.reply_to:
            payload["reply_to"] = {"email": parseaddr(message.reply_to)[1] or message.reply_to}
        if message.attachments:
            payload["attachments"] = [
                {
                    "content": base64.b64encode(attachment.content).decode("ascii"),
                    "type": attachment.content_type,
                    "filename": attachment.filename,
                    "disposition": "attachment",
                }
                for attachment in message.attachments
            ]
        return payload

    async def probe(self, timeout: float) -> None:
        try:
            async with self._client(timeout) as client:
                response = await client.get("/v3/scopes")
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise DeliveryTimeout(f"{self.name}: probe timed out") from exc
        except httpx.HTTPError as exc:
            raise DeliveryFailure(f"{self.name}: {exc}") from exc

    async def send(self, message: OutboundMessage, timeout: float) -> None:
        try:
            async with self._client(timeout) as client:
                response = await client.post("/v3/mail/send", json=self.build_payload(message))
        except httpx.TimeoutException as exc:
            raise DeliveryTimeout(f"{self.name}: send timed out") from exc
        except httpx.HTTPError as exc:
            raise DeliveryFailure(f"{self.name}: {exc}") from exc
        if not response.is_success:
            raise DeliveryFailure(
                f"{self.name}: API responded {response.status_code}",
                {"body": response.text[:500]},
            )


def transports_from_config(candidates) -> List[Transport]:
    """
    Instantiate the configured transport candidates, in priority order.

    Candidates without credentials are skipped so an unconfigured deployment
    starts directly in fallback mode instead of probing relays it cannot use.
    """
    transports: List[Transport] = []
    for candidate in candidates or []:
        kind = candidate.get("kind")
        name = candidate.get("name") or kind
        if kind == "smtp":
            if not (candidate.get("username") and candidate.get("password")):
                logger.info(f"Skipping transport {name}: no SMTP credentials configured")
                continue
            transports.append(
                SmtpTransport(
                    name=name,
                    host=candidate.get("host"),
                    port=int(candidate.get("port")),
                    username=candidate.get("username"),
                    password=candidate.get("password"),
                    use_tls=bool(candidate.get("use_tls", False)),
                    start_tls=bool(candidate.get("start_tls", False)),
                    validate_certs=bool(candidate.get("validate_certs", True)),
                )
            )
        elif kind == "http_api":
            if not candidate.get("api_key"):
                logger.info(f"Skipping transport {name}: no API key configured")
                continue
            transports.append(
                HttpEmailApiTransport(
                    name=name,
                    api_key=candidate.get("api_key"),
                    base_url=candidate.get("base_url") or "https://api.sendgrid.com",
                )
            )
        else:
            logger.warning(f"Skipping transport {name}: unknown kind {kind!r}")
    return transports
