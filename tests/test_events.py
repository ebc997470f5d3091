"""
Tests for the progress event channel and SSE framing.
"""

import json

from conftest import FakeClock

from deepex.core.events import KEEPALIVE_FRAME, EventChannel, EventType, sse_frame


async def drain(channel: EventChannel) -> list[dict]:
    return [event async for event in channel.events()]


class TestEmission:
    """Event emission rules."""

    async def test_events_carry_type_and_timestamp(self):
        """Test each event has its type and a millisecond timestamp."""
        channel = EventChannel(clock=FakeClock(1700000000.5))
        channel.emit_layer_start("decomposition", "Decomposing problem")
        channel.close()

        (event,) = await drain(channel)
        assert event == {
            "type": "layer_start",
            "timestamp": 1700000000500,
            "layer": "decomposition",
            "label": "Decomposing problem",
        }

    async def test_timestamps_never_decrease(self):
        """Test a clock going backwards does not produce decreasing timestamps."""
        clock = FakeClock(2000.0)
        channel = EventChannel(clock=clock)
        channel.emit_final_start()
        clock.advance(-5.0)
        channel.emit_final_chunk("x")
        channel.close()

        first, second = await drain(channel)
        assert second["timestamp"] >= first["timestamp"]

    async def test_single_terminal_event(self):
        """Test everything after the first terminal event is dropped."""
        channel = EventChannel()
        assert channel.emit_final_complete(90)
        assert not channel.emit_error("late error")
        assert not channel.emit_final_chunk("late chunk")
        channel.close()

        events = await drain(channel)
        assert [e["type"] for e in events] == ["final_complete"]
        assert channel.terminated
        assert channel.dropped == 2

    async def test_checkpoint_is_terminal(self):
        """Test a stage_data checkpoint counts as the terminal event."""
        channel = EventChannel()
        channel.emit_checkpoint("continue_deep", {"kind": "deep"})

        assert channel.terminated
        assert not channel.emit_final_complete(80)

    async def test_emit_after_close_is_dropped(self):
        """Test emission after close is a silent no-op."""
        channel = EventChannel()
        channel.close()

        assert not channel.emit_escalation("low confidence", 40)
        assert await drain(channel) == []

    async def test_double_close(self):
        """Test closing twice ends the stream once."""
        channel = EventChannel()
        channel.emit_final_start()
        channel.close()
        channel.close()

        assert len(await drain(channel)) == 1
        assert channel.closed

    async def test_final_complete_defaults(self):
        """Test final_complete fills empty lists for omitted fields."""
        channel = EventChannel()
        channel.emit_final_complete(75)
        channel.close()

        (event,) = await drain(channel)
        assert event["confidence"] == 75
        assert event["assumptions"] == []
        assert event["uncertainty_notes"] == []
        assert event["sources"] == []

    async def test_parallel_layer_events(self):
        """Test parallel layers carry their group."""
        channel = EventChannel()
        channel.emit_parallel_start("ultra_solvers", ["solver_a_standard"])
        channel.emit_layer_complete("solver_a_standard", "Solver A", "ultra_solvers")
        channel.close()

        start, complete = await drain(channel)
        assert start["layers"] == ["solver_a_standard"]
        assert complete["parallel_group"] == "ultra_solvers"


class TestSSE:
    """Server-Sent Event serialization."""

    def test_frame_format(self):
        """Test a frame is a single data line followed by a blank line."""
        frame = sse_frame({"type": "final_chunk", "content": "hi\nthere"})

        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        assert frame.count("\n") == 2
        assert json.loads(frame[len("data: ") :]) == {"type": "final_chunk", "content": "hi\nthere"}

    async def test_sse_stream_until_close(self):
        """Test the SSE iterator yields frames and ends on close."""
        channel = EventChannel()
        channel.emit(EventType.MODE_SELECTED, mode="deep", complexity="high")
        channel.close()

        frames = [frame async for frame in channel.sse()]

        assert len(frames) == 1
        assert json.loads(frames[0][6:])["mode"] == "deep"

    async def test_keepalive_while_idle(self):
        """Test a keepalive comment is written when no event arrives in time."""
        channel = EventChannel(keepalive_interval=0.01)
        stream = channel.sse()

        assert await anext(stream) == KEEPALIVE_FRAME

        channel.emit_final_complete(90)
        channel.close()
        rest = [frame async for frame in stream]
        assert rest[-1].startswith("data: ")
