"""
Delivery of operator notification emails.

The DeliveryDispatcher owns the list of transport candidates and the result
of probing them. Probing happens once (at startup, or lazily on first use):
candidates are tried in priority order and the first one that answers within
the probe timeout is cached as the active transport. When none answers the
dispatcher stays in the "no transport" state until ``reset()`` is called.

Each send attempt is bounded by its own timeout and retried a small, fixed
number of times with linear backoff. Failures are reported as a
DeliveryOutcome rather than raised, so callers can fall back to storage.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

from .configuration import split_csv
from .exceptions import DeliveryFailure, DeliveryTimeout, TransportUnavailable
from .transports import Attachment, OutboundMessage, Transport, single_line, transports_from_config

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    NO_TRANSPORT = "no_transport"


@dataclass(frozen=True)
class DeliveryOutcome:
    status: DeliveryStatus
    transport: Optional[str] = None
    attempts: int = 0
    reason: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.status is DeliveryStatus.DELIVERED


class DeliveryDispatcher:
    """
    Sends OutboundMessages through the first working transport candidate.

    Attributes:
        candidates: Transports in priority order
        sender: From address used by ``compose``
        recipients: Operator mailbox(es) used by ``compose``
    """

    def __init__(
        self,
        candidates: Sequence[Transport],
        sender: str,
        recipients: Sequence[str],
        probe_timeout: float = 10.0,
        send_timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.candidates: List[Transport] = list(candidates)
        self.sender = sender
        self.recipients = list(recipients)
        self.probe_timeout = probe_timeout
        self.send_timeout = send_timeout
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._resolved = False
        self._active: Optional[Transport] = None

    @classmethod
    def from_settings(cls, settings, candidates: Optional[Sequence[Transport]] = None) -> "DeliveryDispatcher":
        mail = settings.mail
        return cls(
            candidates=transports_from_config(settings.transports) if candidates is None else candidates,
            sender=mail.sender,
            recipients=split_csv(mail.recipients),
            probe_timeout=float(mail.probe_timeout),
            send_timeout=float(mail.send_timeout),
            max_attempts=int(mail.max_attempts),
            backoff_seconds=float(mail.backoff_seconds),
        )

    @property
    def resolved(self) -> bool:
        return self._resolved

    @property
    def active_transport(self) -> Optional[Transport]:
        return self._active

    @property
    def status_label(self) -> str:
        if not self._resolved:
            return "probing"
        return "configured" if self._active else "fallback-mode"

    def reset(self) -> None:
        """Forget the cached resolution; the next delivery probes again."""
        self._resolved = False
        self._active = None

    async def resolve(self) -> Optional[Transport]:
        """
        Probe candidates in order and cache the first that answers.

        Concurrent callers wait on the same probe run, so the first
        resolution wins and is never overwritten by a later one.
        """
        if self._resolved:
            return self._active
        async with self._lock:
            if self._resolved:
                return self._active

            logger.info(f"Testing {len(self.candidates)} email transport candidate(s)")
            active: Optional[Transport] = None
            for candidate in self.candidates:
                try:
                    await asyncio.wait_for(candidate.probe(self.probe_timeout), timeout=self.probe_timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"Transport {candidate.name} did not answer within {self.probe_timeout}s")
                    continue
                except DeliveryFailure as exc:
                    logger.warning(f"Transport {candidate.name} failed probe: {exc.message}")
                    continue
                except Exception:
                    logger.exception(f"Transport {candidate.name} raised an unexpected error during probe")
                    continue
                active = candidate
                break

            if active:
                logger.info(f"Using email transport: {active.name}")
            else:
                logger.warning("No working email transport found; submissions will be stored on disk")
            self._active = active
            self._resolved = True
            return active

    def compose(
        self,
        subject: str,
        html: Optional[str] = None,
        text: Optional[str] = None,
        attachments: Sequence[Attachment] = (),
        reply_to: Optional[str] = None,
    ) -> OutboundMessage:
        return OutboundMessage(
            sender=self.sender,
            recipients=tuple(self.recipients),
            subject=single_line(subject),
            html=html,
            text=text,
            attachments=tuple(attachments),
            reply_to=reply_to,
        )

    async def require_transport(self) -> Transport:
        """Resolved transport, or TransportUnavailable when every candidate failed."""
        transport = await self.resolve()
        if transport is None:
            raise TransportUnavailable("No email transport available", {"candidates": [c.name for c in self.candidates]})
        return transport

    async def deliver(self, message: OutboundMessage, max_attempts: Optional[int] = None) -> DeliveryOutcome:
        try:
            transport = await self.require_transport()
        except TransportUnavailable as exc:
            return DeliveryOutcome(status=DeliveryStatus.NO_TRANSPORT, reason=exc.message)

        attempts = max_attempts or self.max_attempts
        status = DeliveryStatus.FAILED
        reason: Optional[str] = None
        for attempt in range(1, attempts + 1):
            try:
                await asyncio.wait_for(transport.send(message, self.send_timeout), timeout=self.send_timeout)
            except (asyncio.TimeoutError, DeliveryTimeout):
                status = DeliveryStatus.TIMED_OUT
                reason = f"Send timed out after {self.send_timeout}s"
            except DeliveryFailure as exc:
                status = DeliveryStatus.FAILED
                reason = exc.message
            except Exception as exc:
                logger.exception(f"Unexpected error sending via {transport.name}")
                status = DeliveryStatus.FAILED
                reason = f"{type(exc).__name__}: {exc}"
            else:
                logger.info(f"Email '{message.subject}' delivered via {transport.name} (attempt {attempt})")
                return DeliveryOutcome(status=DeliveryStatus.DELIVERED, transport=transport.name, attempts=attempt)

            logger.warning(f"Delivery attempt {attempt}/{attempts} via {transport.name} failed: {reason}")
            if attempt < attempts:
                await self._sleep(self.backoff_seconds * attempt)

        return DeliveryOutcome(status=status, transport=transport.name, attempts=attempts, reason=reason)

    async def send_test_message(self) -> DeliveryOutcome:
        message = self.compose(
            subject="Test Email",
            text="If you receive this, email is working!",
        )
        return await self.deliver(message, max_attempts=1)
