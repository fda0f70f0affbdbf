"""
Tests for the session engine state machine.

A FakeTransport stands in for the adapter: tests report transport state
changes and feed response lines by hand, and inspect the commands the
engine sent. Timings are shrunk to milliseconds.
"""

import asyncio

import pytest

from obd_monitor.demo import DemoTransport
from obd_monitor.engine import (
    INIT_COMMANDS,
    DiagnosticKind,
    SessionEngine,
    SessionState,
)
from obd_monitor.errors import (
    NotConnectedError,
    OperationInProgressError,
    ProtocolTimeoutError,
    TransportError,
    VehicleRejectedError,
)
from obd_monitor.parameters import CATALOG, UNAVAILABLE
from obd_monitor.transport import TransportState

from tests.helpers import FakeTransport, fast_timings, settle, start_polling, wait_until


def _value(engine, parameter_id):
    return engine.snapshot().parameter(parameter_id).value


class TestInitialization:
    """Connect and handshake."""

    @pytest.mark.asyncio
    async def test_connect_starts_transport(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            transport = FakeTransport()
            engine.connect(transport)
            assert engine.state == SessionState.CONNECTING
            assert transport.connect_calls == 1
            assert transport.sent == []

    @pytest.mark.asyncio
    async def test_init_sequence_then_first_poll(self):
        """Six AT commands in order, then the first catalog request."""
        async with SessionEngine(timings=fast_timings()) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)
            assert transport.sent[:6] == list(INIT_COMMANDS)
            assert transport.sent[6] == "010C"
            assert engine.poll_index == 0
            assert engine.awaiting_response

    @pytest.mark.asyncio
    async def test_responses_during_init_do_not_start_polling(self):
        timings = fast_timings(init_finish_delay=0.2)
        async with SessionEngine(timings=timings) as engine:
            transport = FakeTransport()
            engine.connect(transport)
            transport.report(TransportState.CONNECTED)
            await wait_until(lambda: len(transport.sent) == 6)
            transport.feed("ELM327 v1.5", "OK", "NO DATA", "STOPPED")
            await settle(0.05)
            assert engine.state == SessionState.INITIALIZING
            assert transport.sent == list(INIT_COMMANDS)
            await wait_until(lambda: engine.state == SessionState.POLLING)

    @pytest.mark.asyncio
    async def test_connect_failure_returns_to_idle(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            transport = FakeTransport()
            engine.connect(transport)
            transport.report(TransportState.FAILED, "Connection refused")
            await wait_until(lambda: engine.state == SessionState.IDLE)
            assert engine.last_error == "Connection refused"
            assert engine.transport_state == TransportState.FAILED
            await settle(0.05)
            assert transport.sent == []


class TestPolling:
    """Round-robin parameter polling and response classification."""

    @pytest.mark.asyncio
    async def test_response_updates_sample_and_advances(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            transport.feed("41 0C 1A F8")
            await wait_until(lambda: transport.sent[-1] == "010D")
            assert _value(engine, "rpm") == "1726"
            assert engine.poll_index == 1

    @pytest.mark.asyncio
    async def test_contiguous_response(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            transport.feed("410C1AF8")
            await wait_until(lambda: transport.sent[-1] == "010D")
            assert _value(engine, "rpm") == "1726"

    @pytest.mark.asyncio
    async def test_full_cycle_wraps(self):
        """After the last catalog entry polling starts over."""
        async with SessionEngine(timings=fast_timings()) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            for spec in CATALOG:
                await wait_until(lambda: transport.sent[-1] == spec.request_code)
                transport.feed(spec.encode_response(20))
            await wait_until(lambda: transport.sent.count("010C") == 2)
            assert engine.poll_index == 0
            assert all(s.available for s in engine.parameters)
            assert _value(engine, "coolant_temp") == "20"

    @pytest.mark.asyncio
    async def test_no_data_skips_parameter(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            transport.feed("NO DATA")
            await wait_until(lambda: transport.sent[-1] == "010D")
            assert _value(engine, "rpm") == UNAVAILABLE

    @pytest.mark.asyncio
    async def test_negative_response_skips_parameter(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            transport.feed("7F 01 12")
            await wait_until(lambda: transport.sent[-1] == "010D")
            assert _value(engine, "rpm") == UNAVAILABLE

    @pytest.mark.asyncio
    async def test_echo_is_ignored(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            transport.feed("010C")
            await settle(0.05)
            assert engine.awaiting_response
            assert transport.sent[-1] == "010C"

    @pytest.mark.asyncio
    async def test_searching_is_ignored(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            transport.feed("SEARCHING...")
            await settle(0.05)
            assert engine.awaiting_response
            assert transport.sent[-1] == "010C"

    @pytest.mark.asyncio
    async def test_ack_clears_awaiting_without_advancing(self):
        """An OK line does not advance, but the timeout still recovers."""
        async with SessionEngine(timings=fast_timings()) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)
            sent_before = len(transport.sent)

            transport.feed("OK")
            await settle(0.05)
            assert not engine.awaiting_response
            assert len(transport.sent) == sent_before

            await wait_until(lambda: transport.sent[-1] == "010D")

    @pytest.mark.asyncio
    async def test_searching_then_stopped(self):
        """STOPPED clears awaiting and waits the long settle before the next send."""
        async with SessionEngine(timings=fast_timings(stopped_settle_delay=0.15)) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)
            sent_before = len(transport.sent)

            transport.feed("SEARCHING...", "STOPPED")
            await settle(0.05)
            assert not engine.awaiting_response
            assert engine.poll_index == 0
            assert len(transport.sent) == sent_before
            assert all(not s.available for s in engine.parameters)

            await wait_until(lambda: len(transport.sent) == sent_before + 1)
            assert transport.sent[-1] == "010D"
            assert engine.poll_index == 1
            assert all(not s.available for s in engine.parameters)

    @pytest.mark.asyncio
    async def test_timeout_moves_to_next_parameter(self):
        async with SessionEngine(timings=fast_timings(command_timeout=0.05)) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)
            generation = engine.generation

            await wait_until(lambda: transport.sent[-1] == "010D")
            assert engine.generation == generation + 1
            assert engine.awaiting_response

    @pytest.mark.asyncio
    async def test_stale_timeout_is_noop(self):
        """A timeout for an older generation changes nothing."""
        async with SessionEngine(timings=fast_timings()) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)
            transport.feed("41 0C 1A F8")
            await wait_until(lambda: transport.sent[-1] == "010D")

            before = (engine.state, engine.generation, engine.poll_index,
                      engine.awaiting_response, len(transport.sent))
            engine._on_command_timeout(engine.generation - 1)
            after = (engine.state, engine.generation, engine.poll_index,
                     engine.awaiting_response, len(transport.sent))
            assert before == after
            await settle(0.05)
            assert len(transport.sent) == before[4]

    @pytest.mark.asyncio
    async def test_duplicate_responses_send_once(self):
        """Two responses to one request schedule only one follow-up."""
        async with SessionEngine(timings=fast_timings()) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)
            sent_before = len(transport.sent)

            transport.feed("41 0C 1A F8", "41 0C 1A F8")
            await wait_until(lambda: transport.sent[-1] == "010D")
            await settle(0.03)
            assert transport.sent[sent_before:] == ["010D"]

    @pytest.mark.asyncio
    async def test_decode_failures_do_not_crash(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            transport.feed("41 0C 1A")  # too short
            await wait_until(lambda: transport.sent[-1] == "010D")
            transport.feed("41 0D ZZ")  # not hex
            await wait_until(lambda: transport.sent[-1] == "0105")
            transport.feed("41 05 5A")
            await wait_until(lambda: transport.sent[-1] == "0104")
            assert _value(engine, "coolant_temp") == "50"
            assert engine.state == SessionState.POLLING

    @pytest.mark.asyncio
    async def test_stray_dtc_response_ignored(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            transport.feed("43 01 33 00 00 00 00", "44")
            await settle(0.05)
            assert engine.dtcs == ()
            assert engine.awaiting_response


class TestDiagnostics:
    """Scan and clear interleaved with polling."""

    @pytest.mark.asyncio
    async def test_scan_while_poll_outstanding(self):
        """Defers, sends exactly one 03, then resumes at the next parameter."""
        timings = fast_timings(diagnostic_busy_delay=0.08)
        async with SessionEngine(timings=timings, fetch_freeze_frame=False) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)
            assert engine.awaiting_response

            future = engine.scan_codes()
            assert engine.state == SessionState.DIAGNOSTIC_PENDING
            assert engine.snapshot().scanning
            await settle(0.03)
            assert "03" not in transport.sent

            await wait_until(lambda: transport.sent[-1] == "03")
            transport.feed("43 01 33 00 00 00 00")
            result = await asyncio.wait_for(future, 1.0)

            assert result.ok
            assert result.kind == DiagnosticKind.SCAN
            assert [d.code for d in result.dtcs] == ["P0133"]
            assert [d.code for d in engine.dtcs] == ["P0133"]

            await wait_until(lambda: transport.sent[-1] == "010D")
            assert transport.sent.count("03") == 1
            assert engine.state == SessionState.POLLING

    @pytest.mark.asyncio
    async def test_scan_when_idle_uses_short_delay(self):
        timings = fast_timings(diagnostic_idle_delay=0.01, diagnostic_busy_delay=1.0)
        async with SessionEngine(timings=timings, fetch_freeze_frame=False) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)
            transport.feed("OK")
            await wait_until(lambda: not engine.awaiting_response)

            engine.scan_codes()
            await wait_until(lambda: transport.sent[-1] == "03", timeout=0.5)

    @pytest.mark.asyncio
    async def test_scan_no_data_means_no_codes(self):
        async with SessionEngine(timings=fast_timings(), fetch_freeze_frame=False) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            future = engine.scan_codes()
            await wait_until(lambda: transport.sent[-1] == "03")
            transport.feed("NO DATA")
            result = await asyncio.wait_for(future, 1.0)
            assert result.ok
            assert result.dtcs == ()
            assert engine.snapshot().last_scan is not None

    @pytest.mark.asyncio
    async def test_no_data_for_outstanding_poll_is_not_scan_result(self):
        """Only a response after 03 is on the wire completes the scan."""
        timings = fast_timings(diagnostic_busy_delay=0.08)
        async with SessionEngine(timings=timings, fetch_freeze_frame=False) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            future = engine.scan_codes()
            transport.feed("NO DATA")
            await settle(0.03)
            assert not future.done()

            await wait_until(lambda: transport.sent[-1] == "03")
            transport.feed("43 03 00 00 00 00 00")
            result = await asyncio.wait_for(future, 1.0)
            assert [d.code for d in result.dtcs] == ["P0300"]

    @pytest.mark.asyncio
    async def test_scan_rejected_by_vehicle(self):
        async with SessionEngine(timings=fast_timings(), fetch_freeze_frame=False) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            future = engine.scan_codes()
            await wait_until(lambda: transport.sent[-1] == "03")
            transport.feed("7F 03 11")
            result = await asyncio.wait_for(future, 1.0)
            assert not result.ok
            assert isinstance(result.error, VehicleRejectedError)
            assert engine.last_error == result.message
            await wait_until(lambda: transport.sent[-1] == "010D")

    @pytest.mark.asyncio
    async def test_scan_timeout_resumes_polling(self):
        timings = fast_timings(command_timeout=0.1, diagnostic_timeout=0.15)
        async with SessionEngine(timings=timings, fetch_freeze_frame=False) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            future = engine.scan_codes()
            result = await asyncio.wait_for(future, 1.0)
            assert not result.ok
            assert isinstance(result.error, ProtocolTimeoutError)
            assert transport.sent.count("03") == 1

            await wait_until(lambda: transport.sent[-1] == "010D")
            assert engine.state == SessionState.POLLING

    @pytest.mark.asyncio
    async def test_clear_codes(self):
        async with SessionEngine(timings=fast_timings(), fetch_freeze_frame=False) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            future = engine.scan_codes()
            await wait_until(lambda: transport.sent[-1] == "03")
            transport.feed("43 03 00 04 20 00 00")
            await asyncio.wait_for(future, 1.0)
            assert len(engine.dtcs) == 2

            await wait_until(lambda: transport.sent[-1] == "010D")
            future = engine.clear_codes()
            assert engine.snapshot().clearing
            await wait_until(lambda: transport.sent[-1] == "04")
            transport.feed("44")
            result = await asyncio.wait_for(future, 1.0)
            assert result.ok
            assert result.kind == DiagnosticKind.CLEAR
            assert engine.dtcs == ()

    @pytest.mark.asyncio
    async def test_clear_rejected(self):
        async with SessionEngine(timings=fast_timings(), fetch_freeze_frame=False) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            future = engine.clear_codes()
            await wait_until(lambda: transport.sent[-1] == "04")
            transport.feed("7F 04 22")
            result = await asyncio.wait_for(future, 1.0)
            assert isinstance(result.error, VehicleRejectedError)

    @pytest.mark.asyncio
    async def test_scan_rejected_when_not_polling(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            result = await engine.scan_codes()
            assert not result.ok
            assert isinstance(result.error, NotConnectedError)

            transport = FakeTransport()
            engine.connect(transport)
            result = await engine.clear_codes()
            assert isinstance(result.error, NotConnectedError)
            assert "04" not in transport.sent

    @pytest.mark.asyncio
    async def test_second_operation_rejected(self):
        async with SessionEngine(timings=fast_timings(), fetch_freeze_frame=False) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            first = engine.scan_codes()
            second = await engine.clear_codes()
            assert isinstance(second.error, OperationInProgressError)
            assert not first.done()

    @pytest.mark.asyncio
    async def test_freeze_frame_after_scan(self):
        timings = fast_timings(diagnostic_timeout=1.5)
        async with SessionEngine(timings=timings, fetch_freeze_frame=True) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            future = engine.scan_codes()
            await wait_until(lambda: transport.sent[-1] == "03")
            transport.feed("43 03 00 04 20 00 00")
            result = await asyncio.wait_for(future, 1.0)
            assert result.ok

            answers = {
                "0202": "42 02 04 20",
                "020C": "42 0C 1A F8",
                "0205": "42 05 5A",
            }
            for request in ["0202"] + ["02%02X" % spec.pid for spec in CATALOG]:
                await wait_until(lambda: transport.sent[-1] == request)
                transport.feed(answers.get(request, "NO DATA"))

            await wait_until(lambda: transport.sent[-1] == "010D")
            by_code = {d.code: d for d in engine.dtcs}
            assert by_code["P0300"].freeze_frame is None
            frame = by_code["P0420"].freeze_frame
            assert frame.values == {"rpm": "1726", "coolant_temp": "50"}
            assert engine.snapshot().last_result.kind == DiagnosticKind.FREEZE_FRAME

    @pytest.mark.asyncio
    async def test_snapshot_freeze_frame_is_a_copy(self):
        """Observers mutating a snapshot never reach engine state."""
        timings = fast_timings(diagnostic_timeout=1.5)
        async with SessionEngine(timings=timings, fetch_freeze_frame=True) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)

            engine.scan_codes()
            await wait_until(lambda: transport.sent[-1] == "03")
            transport.feed("43 03 00 00 00 00 00")
            await wait_until(lambda: transport.sent[-1] == "0202")
            transport.feed("42 02 03 00")
            await wait_until(lambda: transport.sent[-1] == "020C")
            transport.feed("42 0C 1A F8")
            for spec in CATALOG[1:]:
                request = "02%02X" % spec.pid
                await wait_until(lambda: transport.sent[-1] == request)
                transport.feed("NO DATA")
            await wait_until(lambda: engine.state == SessionState.POLLING)

            snapshot = engine.snapshot()
            snapshot.dtcs[0].freeze_frame.values["rpm"] = "0"
            snapshot.dtcs[0].freeze_frame.dtc = "P9999"
            frame = engine.dtcs[0].freeze_frame
            assert frame.values["rpm"] == "1726"
            assert frame.dtc == "P0300"


class TestDisconnect:
    """Teardown from every state."""

    @pytest.mark.asyncio
    async def test_disconnect_during_initialization(self):
        async with SessionEngine(timings=fast_timings(init_finish_delay=0.05)) as engine:
            transport = FakeTransport()
            engine.connect(transport)
            transport.report(TransportState.CONNECTED)
            await wait_until(lambda: engine.state == SessionState.INITIALIZING)

            engine.disconnect()
            assert engine.state == SessionState.IDLE
            assert engine.transport_state == TransportState.DISCONNECTED
            assert transport.disconnect_calls == 1
            sent = len(transport.sent)
            await settle(0.15)
            assert len(transport.sent) == sent
            assert "010C" not in transport.sent

    @pytest.mark.asyncio
    async def test_disconnect_during_polling_resets_samples(self):
        async with SessionEngine(timings=fast_timings(command_timeout=0.05)) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)
            transport.feed("41 0C 1A F8")
            await wait_until(lambda: transport.sent[-1] == "010D")
            assert _value(engine, "rpm") == "1726"

            engine.disconnect()
            assert engine.state == SessionState.IDLE
            assert all(s.value == UNAVAILABLE for s in engine.parameters)
            sent = len(transport.sent)
            await settle(0.15)
            assert len(transport.sent) == sent

    @pytest.mark.asyncio
    async def test_disconnect_fails_pending_scan(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)
            future = engine.scan_codes()

            engine.disconnect()
            result = await asyncio.wait_for(future, 1.0)
            assert not result.ok
            await settle(0.1)
            assert "03" not in transport.sent

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            engine.disconnect()
            engine.disconnect()
            assert engine.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_transport_failure_halts_polling(self):
        async with SessionEngine(timings=fast_timings(command_timeout=0.05)) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)
            transport.feed("41 0C 1A F8")
            await wait_until(lambda: transport.sent[-1] == "010D")
            future = engine.scan_codes()

            transport.report(TransportState.FAILED, "Bluetooth is off")
            await wait_until(lambda: engine.state == SessionState.IDLE)
            result = await asyncio.wait_for(future, 1.0)
            assert isinstance(result.error, TransportError)
            assert engine.last_error == "Bluetooth is off"
            assert all(not s.available for s in engine.parameters)

            sent = len(transport.sent)
            await settle(0.15)
            assert len(transport.sent) == sent

    @pytest.mark.asyncio
    async def test_reconnect_ignores_old_transport(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            old = FakeTransport()
            await start_polling(engine, old)

            new = FakeTransport()
            engine.connect(new)
            assert old.disconnect_calls == 1
            old.feed("41 0C 1A F8")
            old.report(TransportState.FAILED, "late")
            await settle(0.03)
            assert engine.state == SessionState.CONNECTING
            assert _value(engine, "rpm") == UNAVAILABLE

            new.report(TransportState.CONNECTED)
            await wait_until(lambda: new.sent[-1:] == ["010C"])
            assert new.sent[:6] == list(INIT_COMMANDS)
            assert old.sent.count("010C") == 1

    @pytest.mark.asyncio
    async def test_reconnect_on_same_transport(self):
        """A transport handed back to connect() right after teardown comes up again."""
        async with SessionEngine(timings=fast_timings(command_timeout=0.5)) as engine:
            transport = DemoTransport(latency=0.001)
            engine.connect(transport)
            await wait_until(lambda: engine.snapshot().parameter("rpm").available)

            engine.connect(transport)
            assert transport.state == TransportState.CONNECTING
            await wait_until(lambda: engine.snapshot().parameter("rpm").available)
            await settle(0.1)
            assert engine.state == SessionState.POLLING
            assert transport.state == TransportState.CONNECTED


class TestObservation:
    """Snapshots and subscriptions."""

    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            seen = []
            unsubscribe = engine.subscribe(seen.append)
            transport = FakeTransport()
            await start_polling(engine, transport)
            transport.feed("41 0C 1A F8")
            await wait_until(lambda: any(
                s.parameter("rpm").value == "1726" for s in seen
            ))
            states = [s.state for s in seen]
            assert SessionState.CONNECTING in states
            assert SessionState.POLLING in states

            unsubscribe()
            count = len(seen)
            transport.feed("41 0D 3C")
            await settle(0.05)
            assert len(seen) == count

    @pytest.mark.asyncio
    async def test_observer_errors_do_not_break_engine(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            def broken(snapshot):
                raise RuntimeError("observer bug")

            engine.subscribe(broken)
            transport = FakeTransport()
            await start_polling(engine, transport)
            transport.feed("41 0C 1A F8")
            await wait_until(lambda: transport.sent[-1] == "010D")

    @pytest.mark.asyncio
    async def test_snapshot_to_dict(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            data = engine.snapshot().to_dict()
            assert data["state"] == "idle"
            assert data["connected"] is False
            assert len(data["parameters"]) == len(CATALOG)
            assert data["dtcs"] == []


class TestDemoMode:
    """The engine running against the simulated adapter."""

    @pytest.mark.asyncio
    async def test_demo_session(self):
        timings = fast_timings(diagnostic_timeout=3.0, command_timeout=0.5)
        async with SessionEngine(timings=timings, fetch_freeze_frame=True) as engine:
            engine.start_demo()
            assert engine.demo
            await wait_until(lambda: engine.snapshot().parameter("rpm").available, timeout=3.0)

            result = await asyncio.wait_for(engine.scan_codes(), 3.0)
            assert [d.code for d in result.dtcs] == ["P0300", "P0420", "P0171"]
            await wait_until(lambda: engine.dtcs and engine.dtcs[0].freeze_frame is not None, timeout=5.0)
            assert engine.dtcs[0].freeze_frame.values["rpm"]

            await wait_until(lambda: engine.state == SessionState.POLLING, timeout=3.0)
            result = await asyncio.wait_for(engine.clear_codes(), 3.0)
            assert result.ok
            await wait_until(lambda: engine.state == SessionState.POLLING, timeout=3.0)
            result = await asyncio.wait_for(engine.scan_codes(), 3.0)
            assert result.ok and result.dtcs == ()

    @pytest.mark.asyncio
    async def test_demo_replaces_real_connection(self):
        async with SessionEngine(timings=fast_timings()) as engine:
            transport = FakeTransport()
            await start_polling(engine, transport)
            engine.start_demo()
            assert transport.disconnect_calls == 1
            assert engine.demo
            engine.disconnect()
            assert not engine.demo
