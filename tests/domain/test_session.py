import asyncio
import base64

import pytest

from voice_session.domain.errors import CaptureUnavailable, ConnectFailed, ErrorKind
from voice_session.domain.events import closed_event, error_event, text_event
from voice_session.domain.session import VoiceSession
from voice_session.domain.state import InvalidTransitionError, SessionStatus

from conftest import FakeAudioCapture, FakeTransport, make_frame, wait_until


def _recording_session(capture, transport, options):
    session = VoiceSession(capture=capture, transport=transport, options=options)
    history: list[SessionStatus] = [session.status.status]
    session.subscribe(lambda state: history.append(state.status))
    return session, history


class TestStart:
    @pytest.mark.asyncio
    async def test_connect_success_goes_active(self, session, fake_capture, fake_transport, options):
        state = await session.start()

        assert state.status == SessionStatus.ACTIVE
        assert fake_transport.options == options
        assert fake_capture.start_calls == 1
        assert fake_capture.sample_rate_hz == options.sample_rate_hz
        assert fake_capture.frame_sample_count == options.frame_sample_count
        await session.stop()

    @pytest.mark.asyncio
    async def test_connect_failure(self, fake_capture, options):
        transport = FakeTransport(connect_error=ConnectFailed("refused"))
        session, history = _recording_session(fake_capture, transport, options)

        state = await session.start()

        assert history == [SessionStatus.IDLE, SessionStatus.CONNECTING, SessionStatus.FAILED]
        assert state.reason == ErrorKind.CONNECT_FAILED
        assert state.detail == "refused"
        assert session.transcript() == []
        assert fake_capture.start_calls == 0

    @pytest.mark.asyncio
    async def test_unexpected_connect_error_fails_session(self, fake_capture, options):
        transport = FakeTransport(connect_error=RuntimeError("boom"))
        session = VoiceSession(capture=fake_capture, transport=transport, options=options)

        state = await session.start()

        assert state.status == SessionStatus.FAILED
        assert state.reason == ErrorKind.CONNECT_FAILED

    @pytest.mark.asyncio
    async def test_capture_unavailable_fails_and_closes_transport(self, fake_transport, options):
        capture = FakeAudioCapture(fail_with=CaptureUnavailable("permission denied"))
        session, history = _recording_session(capture, fake_transport, options)

        state = await session.start()

        assert history == [SessionStatus.IDLE, SessionStatus.CONNECTING, SessionStatus.FAILED]
        assert state.reason == ErrorKind.CAPTURE_UNAVAILABLE
        assert fake_transport.close_calls >= 1
        assert capture.stop_calls == 0

    @pytest.mark.asyncio
    async def test_unexpected_capture_error_fails_and_closes_transport(self, fake_transport, options):
        capture = FakeAudioCapture(fail_with=RuntimeError("Audio capture already started"))
        session, history = _recording_session(capture, fake_transport, options)

        state = await session.start()

        assert history == [SessionStatus.IDLE, SessionStatus.CONNECTING, SessionStatus.FAILED]
        assert state.reason == ErrorKind.CAPTURE_UNAVAILABLE
        assert fake_transport.close_calls >= 1
        assert not fake_transport.connected
        assert (await session.stop()).status == SessionStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancelled_capture_start_releases_transport(self, fake_transport, options):
        entered = asyncio.Event()

        class HangingCapture(FakeAudioCapture):
            async def start(self, sample_rate_hz, frame_sample_count):
                entered.set()
                await asyncio.Event().wait()

        session = VoiceSession(capture=HangingCapture(), transport=fake_transport, options=options)
        starting = asyncio.create_task(session.start())
        await asyncio.wait_for(entered.wait(), timeout=1.0)

        starting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await starting

        assert session.status.status == SessionStatus.FAILED
        assert session.status.reason == ErrorKind.CAPTURE_UNAVAILABLE
        assert fake_transport.close_calls >= 1

    @pytest.mark.asyncio
    async def test_second_start_while_active_is_rejected(self, session, fake_capture, fake_transport):
        await session.start()

        with pytest.raises(InvalidTransitionError):
            await session.start()

        assert session.status.status == SessionStatus.ACTIVE
        assert fake_capture.start_calls == 1
        assert fake_transport.connect_calls == 1
        await session.stop()

    @pytest.mark.asyncio
    async def test_start_while_connecting_is_rejected(self, fake_capture, options):
        gate = asyncio.Event()

        class SlowTransport(FakeTransport):
            async def connect(self, connect_options):
                await gate.wait()
                await super().connect(connect_options)

        transport = SlowTransport()
        session = VoiceSession(capture=fake_capture, transport=transport, options=options)
        first = asyncio.create_task(session.start())
        await wait_until(lambda: session.status.status == SessionStatus.CONNECTING)

        with pytest.raises(InvalidTransitionError):
            await session.start()

        gate.set()
        assert (await first).status == SessionStatus.ACTIVE
        assert fake_capture.start_calls == 1
        await session.stop()

    @pytest.mark.asyncio
    async def test_start_after_terminal_requires_reset(self, session, fake_capture):
        await session.start()
        await session.stop()

        with pytest.raises(InvalidTransitionError):
            await session.start()

        await session.reset()
        assert (await session.start()).status == SessionStatus.ACTIVE
        assert fake_capture.start_calls == 2
        await session.stop()


class TestOutboundAudio:
    @pytest.mark.asyncio
    async def test_n_ticks_produce_n_ordered_sends(self, fake_transport, options):
        capture = FakeAudioCapture(frame_count=25)
        session = VoiceSession(capture=capture, transport=fake_transport, options=options, outbound_queue_size=64)

        await session.start()
        await wait_until(lambda: len(fake_transport.sent) == 25)

        expected = [base64.b64encode(make_frame(i).pcm).decode("ascii") for i in range(25)]
        assert [payload.data for payload in fake_transport.sent] == expected
        assert all(p.mime_type == "audio/pcm;rate=16000" for p in fake_transport.sent)
        assert session.frames_captured == 25
        assert session.frames_sent == 25
        await session.stop()

    @pytest.mark.asyncio
    async def test_slow_send_does_not_stall_capture(self, options):
        capture = FakeAudioCapture(frame_count=20)
        transport = FakeTransport(send_delay=0.05)
        session = VoiceSession(capture=capture, transport=transport, options=options, outbound_queue_size=4)

        await session.start()
        await wait_until(lambda: capture.ticks == 20, timeout=0.5)

        assert session.frames_captured == 20
        assert session.frames_dropped > 0
        await session.stop()
        sent_order = [payload.data for payload in transport.sent]
        all_frames = [base64.b64encode(make_frame(i).pcm).decode("ascii") for i in range(20)]
        positions = [all_frames.index(data) for data in sent_order]
        assert positions == sorted(positions)

    @pytest.mark.asyncio
    async def test_capture_side_drops_are_counted(self, fake_capture, fake_transport, options):
        session = VoiceSession(capture=fake_capture, transport=fake_transport, options=options)
        await session.start()

        fake_capture.frames_dropped = 5
        assert session.frames_dropped == 5

        await session.stop()
        assert session.frames_dropped == 5

    @pytest.mark.asyncio
    async def test_out_of_order_frames_are_dropped(self, fake_transport, options):
        class ReplayingCapture(FakeAudioCapture):
            async def frames(self):
                for sequence in (0, 1, 1, 0, 2):
                    yield make_frame(sequence)
                while self.running:
                    await asyncio.sleep(0.01)

        session = VoiceSession(capture=ReplayingCapture(), transport=fake_transport, options=options)
        await session.start()
        await wait_until(lambda: len(fake_transport.sent) == 3)
        await asyncio.sleep(0.02)

        assert session.frames_captured == 3
        assert len(fake_transport.sent) == 3
        await session.stop()


class TestInboundTranscript:
    @pytest.mark.asyncio
    async def test_three_deltas_in_order(self, session, fake_transport):
        await session.start()
        for text in ["Hi", " there", "!"]:
            fake_transport.push(text_event(text))

        await wait_until(lambda: len(session.transcript()) == 3)
        assert [entry.text for entry in session.transcript()] == ["Hi", " there", "!"]
        assert session.transcript_text() == "Hi there!"
        await session.stop()

    @pytest.mark.asyncio
    async def test_k_deltas_while_capturing(self, fake_transport, options):
        capture = FakeAudioCapture(frame_count=None, interval=0.001)
        session = VoiceSession(capture=capture, transport=fake_transport, options=options)
        await session.start()

        for i in range(50):
            fake_transport.push(text_event(f"w{i} "))
            if i % 5 == 0:
                await asyncio.sleep(0.002)

        await wait_until(lambda: len(session.transcript()) == 50)
        transcript = session.transcript()
        assert [entry.text for entry in transcript] == [f"w{i} " for i in range(50)]
        assert [entry.arrival_order for entry in transcript] == list(range(50))
        assert capture.ticks > 0
        await session.stop()

    @pytest.mark.asyncio
    async def test_transcript_observer(self, session, fake_transport):
        seen: list[int] = []
        session.subscribe_transcript(lambda entries: seen.append(len(entries)))
        await session.start()
        fake_transport.push(text_event("a"))
        fake_transport.push(text_event("b"))

        await wait_until(lambda: seen == [1, 2])
        await session.stop()

    @pytest.mark.asyncio
    async def test_reset_starts_a_fresh_transcript(self, session, fake_transport):
        seen: list[int] = []
        session.subscribe_transcript(lambda entries: seen.append(len(entries)))
        await session.start()
        fake_transport.push(text_event("first session"))
        await wait_until(lambda: len(session.transcript()) == 1)
        await session.stop()

        await session.reset()
        assert session.transcript() == []

        await session.start()
        fake_transport.push(text_event("second"))
        await wait_until(lambda: len(session.transcript()) == 1)
        assert seen == [1, 1]
        await session.stop()


class TestBackendTermination:
    @pytest.mark.asyncio
    async def test_backend_error_fails_and_stops_capture(self, fake_transport, options):
        capture = FakeAudioCapture(frame_count=None, interval=0.005)
        session, history = _recording_session(capture, fake_transport, options)
        await session.start()
        await wait_until(lambda: capture.ticks > 0)

        fake_transport.push(error_event(ErrorKind.BACKEND_ERROR, "internal error"))
        await wait_until(lambda: session.status.status == SessionStatus.FAILED)

        assert session.status.reason == ErrorKind.BACKEND_ERROR
        assert session.status.detail == "internal error"
        assert capture.stop_calls == 1
        assert not capture.running
        assert fake_transport.close_calls >= 1
        ticks = capture.ticks
        await asyncio.sleep(0.03)
        assert capture.ticks == ticks
        assert history[-1] == SessionStatus.FAILED

    @pytest.mark.asyncio
    async def test_backend_closed(self, session, fake_capture, fake_transport):
        await session.start()
        fake_transport.push(text_event("bye"))
        fake_transport.push(closed_event("closed by server"))

        await wait_until(lambda: session.status.status == SessionStatus.CLOSED)
        assert fake_capture.stop_calls == 1
        assert session.transcript_text() == "bye"

    @pytest.mark.asyncio
    async def test_capture_lost_while_active(self, fake_transport, options):
        class FlakyCapture(FakeAudioCapture):
            async def frames(self):
                yield make_frame(0)
                raise CaptureUnavailable("device unplugged")

        capture = FlakyCapture()
        session = VoiceSession(capture=capture, transport=fake_transport, options=options)
        await session.start()

        await wait_until(lambda: session.status.status == SessionStatus.FAILED)
        assert session.status.reason == ErrorKind.CAPTURE_UNAVAILABLE
        assert capture.stop_calls == 1
        assert fake_transport.close_calls >= 1

    @pytest.mark.asyncio
    async def test_inbound_stream_crash_is_backend_error(self, fake_capture, options):
        class CrashingTransport(FakeTransport):
            async def events(self):
                raise RuntimeError("decoder exploded")
                yield

        session = VoiceSession(capture=fake_capture, transport=CrashingTransport(), options=options)
        await session.start()

        await wait_until(lambda: session.status.status == SessionStatus.FAILED)
        assert session.status.reason == ErrorKind.BACKEND_ERROR


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_from_active(self, fake_transport, options):
        capture = FakeAudioCapture(frame_count=None, interval=0.005)
        session, history = _recording_session(capture, fake_transport, options)
        await session.start()
        await wait_until(lambda: capture.ticks >= 2)

        state = await asyncio.wait_for(session.stop(), timeout=1.0)

        assert state.status == SessionStatus.CLOSED
        assert history == [
            SessionStatus.IDLE,
            SessionStatus.CONNECTING,
            SessionStatus.ACTIVE,
            SessionStatus.CLOSING,
            SessionStatus.CLOSED,
        ]
        assert capture.stop_calls == 1
        assert fake_transport.close_calls >= 1

    @pytest.mark.asyncio
    async def test_ticks_cease_after_stop(self, fake_transport, options):
        cadence = 0.01
        capture = FakeAudioCapture(frame_count=None, interval=cadence)
        session = VoiceSession(capture=capture, transport=fake_transport, options=options)
        await session.start()
        await wait_until(lambda: capture.ticks >= 3)

        await session.stop()
        ticks = capture.ticks
        await asyncio.sleep(cadence * 5)

        assert capture.ticks == ticks
        assert session.status.status == SessionStatus.CLOSED

    @pytest.mark.asyncio
    async def test_capture_stopped_before_transport_closed(self, fake_capture, options):
        order: list[str] = []

        class OrderedCapture(FakeAudioCapture):
            async def stop(self):
                order.append("capture")
                await super().stop()

        class OrderedTransport(FakeTransport):
            async def close(self):
                order.append("transport")
                await super().close()

        session = VoiceSession(capture=OrderedCapture(), transport=OrderedTransport(), options=options)
        await session.start()
        await session.stop()

        assert order[0] == "capture"
        assert "transport" in order

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, session, fake_capture):
        await session.start()
        await session.stop()
        state = await session.stop()

        assert state.status == SessionStatus.CLOSED
        assert fake_capture.stop_calls == 1

    @pytest.mark.asyncio
    async def test_stop_from_idle_is_noop(self, session, fake_transport):
        state = await session.stop()
        assert state.status == SessionStatus.IDLE
        assert fake_transport.close_calls == 0

    @pytest.mark.asyncio
    async def test_stop_after_failure_is_noop(self, fake_capture, options):
        transport = FakeTransport(connect_error=ConnectFailed("nope"))
        session = VoiceSession(capture=fake_capture, transport=transport, options=options)
        await session.start()

        state = await session.stop()
        assert state.status == SessionStatus.FAILED
        assert state.reason == ErrorKind.CONNECT_FAILED

    @pytest.mark.asyncio
    async def test_concurrent_stops_release_once(self, fake_capture, session):
        await session.start()
        results = await asyncio.gather(session.stop(), session.stop(), session.stop())

        assert all(state.status == SessionStatus.CLOSED for state in results)
        assert fake_capture.stop_calls == 1

    @pytest.mark.asyncio
    async def test_stop_while_connecting_waits_for_connect(self, fake_capture, options):
        gate = asyncio.Event()

        class SlowTransport(FakeTransport):
            async def connect(self, connect_options):
                await gate.wait()
                await super().connect(connect_options)

        session = VoiceSession(capture=fake_capture, transport=SlowTransport(), options=options)
        starting = asyncio.create_task(session.start())
        await wait_until(lambda: session.status.status == SessionStatus.CONNECTING)

        stopping = asyncio.create_task(session.stop())
        await asyncio.sleep(0.01)
        assert not stopping.done()

        gate.set()
        await starting
        state = await asyncio.wait_for(stopping, timeout=1.0)

        assert state.status == SessionStatus.CLOSED
        assert fake_capture.stop_calls == 1
        assert not fake_capture.running

    @pytest.mark.asyncio
    async def test_stop_during_in_flight_send(self, options):
        capture = FakeAudioCapture(frame_count=None, interval=0.001)
        transport = FakeTransport(send_delay=0.2)
        session = VoiceSession(capture=capture, transport=transport, options=options)
        await session.start()
        await wait_until(lambda: capture.ticks >= 1)

        state = await asyncio.wait_for(session.stop(), timeout=1.0)
        assert state.status == SessionStatus.CLOSED
        assert capture.stop_calls == 1

    @pytest.mark.asyncio
    async def test_state_observer_failure_is_contained(self, session):
        def broken(state):
            raise RuntimeError("indicator crashed")

        session.subscribe(broken)
        assert (await session.start()).status == SessionStatus.ACTIVE
        assert (await session.stop()).status == SessionStatus.CLOSED
