"""
Tests for transport resolution, send timeouts and retries.
"""

import asyncio

import pytest

from conftest import FakeTransport, build_dispatcher
from school_forms_backend.dispatcher import DeliveryStatus
from school_forms_backend.exceptions import TransportUnavailable


def _message(dispatcher):
    return dispatcher.compose(subject="Hello", text="body")


class TestResolution:
    def test_first_working_candidate_in_order_is_adopted(self):
        broken = FakeTransport("primary", probe_ok=False)
        working = FakeTransport("secondary")
        spare = FakeTransport("tertiary")
        dispatcher = build_dispatcher([broken, working, spare])

        active = asyncio.run(dispatcher.resolve())

        assert active is working
        assert (broken.probes, working.probes, spare.probes) == (1, 1, 0)
        assert dispatcher.status_label == "configured"

    def test_resolution_is_cached(self):
        working = FakeTransport()
        dispatcher = build_dispatcher([working])

        async def scenario():
            await dispatcher.resolve()
            await dispatcher.resolve()

        asyncio.run(scenario())
        assert working.probes == 1

    def test_concurrent_first_requests_share_one_probe(self):
        slow = FakeTransport("slow", probe_delay=0.05)
        dispatcher = build_dispatcher([slow])

        async def scenario():
            return await asyncio.gather(*(dispatcher.resolve() for _ in range(5)))

        results = asyncio.run(scenario())
        assert all(result is slow for result in results)
        assert slow.probes == 1

    def test_probe_timeout_skips_candidate(self):
        hanging = FakeTransport("hanging", probe_delay=5)
        working = FakeTransport("working")
        dispatcher = build_dispatcher([hanging, working], probe_timeout=0.05)

        assert asyncio.run(dispatcher.resolve()) is working

    def test_no_candidates_means_no_transport(self):
        dispatcher = build_dispatcher([])
        assert dispatcher.status_label == "probing"

        outcome = asyncio.run(dispatcher.deliver(_message(dispatcher)))

        assert outcome.status is DeliveryStatus.NO_TRANSPORT
        assert outcome.attempts == 0
        assert dispatcher.status_label == "fallback-mode"

    def test_require_transport_raises_when_unresolved(self):
        dispatcher = build_dispatcher([FakeTransport(probe_ok=False)])

        with pytest.raises(TransportUnavailable) as excinfo:
            asyncio.run(dispatcher.require_transport())
        assert excinfo.value.details == {"candidates": ["fake"]}

    def test_reset_probes_again(self):
        flaky = FakeTransport(probe_ok=False)
        dispatcher = build_dispatcher([flaky])

        assert asyncio.run(dispatcher.resolve()) is None
        flaky.probe_ok = True
        assert asyncio.run(dispatcher.resolve()) is None

        dispatcher.reset()
        assert asyncio.run(dispatcher.resolve()) is flaky
        assert flaky.probes == 2


class TestDelivery:
    def test_successful_delivery_sends_once(self, transport):
        dispatcher = build_dispatcher([transport])
        outcome = asyncio.run(dispatcher.deliver(_message(dispatcher)))

        assert outcome.delivered
        assert outcome.attempts == 1
        assert outcome.transport == "fake"
        assert len(transport.sent) == 1
        assert transport.sent[0].recipients == ("office@school.test",)

    def test_transient_failure_is_retried_with_linear_backoff(self):
        sleeps = []

        async def record_sleep(seconds):
            sleeps.append(seconds)

        flaky = FakeTransport(failures=2)
        dispatcher = build_dispatcher([flaky], max_attempts=3, backoff_seconds=1.5, sleep=record_sleep)

        outcome = asyncio.run(dispatcher.deliver(_message(dispatcher)))

        assert outcome.delivered
        assert outcome.attempts == 3
        assert sleeps == [1.5, 3.0]
        assert len(flaky.sent) == 1

    def test_gives_up_after_bounded_attempts(self):
        sleeps = []

        async def record_sleep(seconds):
            sleeps.append(seconds)

        broken = FakeTransport(failures=10)
        dispatcher = build_dispatcher([broken], max_attempts=3, backoff_seconds=1, sleep=record_sleep)

        outcome = asyncio.run(dispatcher.deliver(_message(dispatcher)))

        assert outcome.status is DeliveryStatus.FAILED
        assert outcome.attempts == 3
        assert broken.attempts == 3
        assert "451" in outcome.reason
        assert sleeps == [1, 2]

    def test_hanging_send_times_out(self):
        hanging = FakeTransport(hang=True)
        dispatcher = build_dispatcher([hanging], send_timeout=0.05, max_attempts=2)

        outcome = asyncio.run(dispatcher.deliver(_message(dispatcher)))

        assert outcome.status is DeliveryStatus.TIMED_OUT
        assert outcome.attempts == 2
        assert hanging.sent == []

    def test_explicit_attempt_budget_overrides_default(self):
        broken = FakeTransport(failures=10)
        dispatcher = build_dispatcher([broken], max_attempts=3)

        outcome = asyncio.run(dispatcher.deliver(_message(dispatcher), max_attempts=1))
        assert outcome.attempts == 1
        assert broken.attempts == 1

    def test_test_message_uses_single_attempt(self):
        broken = FakeTransport(failures=10)
        dispatcher = build_dispatcher([broken], max_attempts=3)

        outcome = asyncio.run(dispatcher.send_test_message())
        assert not outcome.delivered
        assert broken.attempts == 1

    def test_rejects_zero_attempt_budget(self):
        with pytest.raises(ValueError):
            build_dispatcher([], max_attempts=0)


class TestCompose:
    def test_compose_fills_sender_and_recipients(self):
        dispatcher = build_dispatcher([], recipients=["a@school.test", "b@school.test"])
        message = dispatcher.compose(subject="S", html="<p>x</p>", reply_to="parent@example.com")

        assert message.sender == "Admissions <forms@school.test>"
        assert message.recipients == ("a@school.test", "b@school.test")
        assert message.reply_to == "parent@example.com"
        assert message.attachments == ()


class TestUnexpectedErrors:
    def test_unexpected_send_error_is_a_failed_outcome(self):
        buggy = FakeTransport(error=ValueError("bad header"))
        dispatcher = build_dispatcher([buggy], max_attempts=2)

        outcome = asyncio.run(dispatcher.deliver(_message(dispatcher)))

        assert outcome.status is DeliveryStatus.FAILED
        assert outcome.attempts == 2
        assert "ValueError" in outcome.reason
        assert buggy.sent == []

    def test_unexpected_probe_error_skips_candidate(self):
        class ExplodingProbe(FakeTransport):
            async def probe(self, timeout):
                self.probes += 1
                raise RuntimeError("driver bug")

        exploding = ExplodingProbe("exploding")
        working = FakeTransport("working")
        dispatcher = build_dispatcher([exploding, working])

        assert asyncio.run(dispatcher.resolve()) is working
        assert exploding.probes == 1

    def test_compose_keeps_subject_on_one_line(self):
        dispatcher = build_dispatcher([])
        message = dispatcher.compose(subject="New Contact: Kiran\r\nBcc: victim@evil.test")
        assert message.subject == "New Contact: Kiran Bcc: victim@evil.test"
