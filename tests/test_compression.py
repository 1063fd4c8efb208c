"""
Tests for driftwatch.compression — Context Compressor.

Covers tier layout, verbatim instruction preservation, size bounds,
idempotency, the compression trigger and pluggable summarizers.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import T0, make_schedule
from driftwatch.compression import ContextCompressor, top_keywords
from driftwatch.events import SessionCompressedEvent
from driftwatch.types import Action


OPERATOR_AT = {3: "Always cite sources", 22: "Switch to weekly digests"}


def _actions(n: int) -> list[Action]:
    actions = []
    for i in range(n):
        if i in OPERATOR_AT:
            actions.append(Action.instruction(OPERATOR_AT[i], timestamp=T0 + i * 60))
        else:
            actions.append(Action.agent(f"status update {i}: checked inbox", timestamp=T0 + i * 60))
    return actions


async def _session(store, n: int, instructions=("Post a status update",)) -> str:
    snap = await store.create(make_schedule(), instructions, created_at=T0 - 60)
    for action in _actions(n):
        await store.append(snap.session_id, action)
    return snap.session_id


@pytest.fixture()
def event_bus() -> MagicMock:
    return MagicMock()


@pytest.fixture()
def compressor(store, compression_config, event_bus) -> ContextCompressor:
    return ContextCompressor(store, compression_config, event_bus=event_bus)


# ---------------------------------------------------------------------------
# Tier layout
# ---------------------------------------------------------------------------

class TestTiers:
    @pytest.mark.asyncio
    async def test_three_tiers_oldest_first(self, store, compressor):
        sid = await _session(store, 30)
        levels = await compressor.compress(sid)
        assert [lvl.tier for lvl in levels] == ["historical", "recent", "immediate"]
        assert [lvl.action_count for lvl in levels] == [15, 10, 5]
        assert levels[-1].as_of == T0 + 29 * 60
        assert levels[0].as_of == T0 + 14 * 60

    @pytest.mark.asyncio
    async def test_short_history_only_immediate(self, store, compressor):
        sid = await _session(store, 3)
        levels = await compressor.compress(sid)
        assert [lvl.tier for lvl in levels] == ["immediate"]
        # The original instructions ride on the oldest tier, here the only one.
        assert levels[0].instructions == ["Post a status update"]

    @pytest.mark.asyncio
    async def test_empty_session(self, store, compressor):
        snap = await store.create(make_schedule(), ["Post a status update"], created_at=T0)
        (level,) = await compressor.compress(snap.session_id)
        assert level.tier == "immediate"
        assert level.summary == ""
        assert level.action_count == 0
        assert level.as_of == T0

    @pytest.mark.asyncio
    async def test_immediate_tier_is_verbatim(self, store, compressor):
        sid = await _session(store, 30)
        levels = await compressor.compress(sid)
        immediate = levels[-1]
        for i in range(25, 30):
            assert f"status update {i}: checked inbox" in immediate.summary

    @pytest.mark.asyncio
    async def test_summarized_tier_describes_its_actions(self, store, compressor):
        sid = await _session(store, 30)
        historical = (await compressor.compress(sid))[0]
        assert "15 actions (14 agent, 1 operator)" in historical.summary
        assert "Keywords:" in historical.summary
        assert "status" in historical.summary


# ---------------------------------------------------------------------------
# Instruction preservation
# ---------------------------------------------------------------------------

class TestInstructions:
    @pytest.mark.asyncio
    async def test_every_instruction_kept_verbatim(self, store, compressor):
        sid = await _session(store, 30)
        levels = await compressor.compress(sid)

        kept = [text for level in levels for text in level.instructions]
        for text in OPERATOR_AT.values():
            assert text in kept
        assert "Post a status update" in kept

    @pytest.mark.asyncio
    async def test_instructions_land_in_the_covering_tier(self, store, compressor):
        sid = await _session(store, 30)
        historical, recent, immediate = await compressor.compress(sid)
        assert historical.instructions == ["Post a status update", "Always cite sources"]
        assert recent.instructions == ["Switch to weekly digests"]
        assert immediate.instructions == []

    @pytest.mark.asyncio
    async def test_duplicate_instruction_listed_once(self, store, compressor):
        snap = await store.create(make_schedule(), ["Always cite sources"], created_at=T0)
        for action in _actions(30):
            await store.append(snap.session_id, action)
        historical = (await compressor.compress(snap.session_id))[0]
        assert historical.instructions == ["Always cite sources"]

    @pytest.mark.asyncio
    async def test_long_instruction_never_truncated(self, store, compressor):
        long_text = "Always " + "cite every source carefully " * 20
        sid = await _session(store, 30, instructions=[long_text])
        historical = (await compressor.compress(sid))[0]
        assert len(long_text) > historical.size_bound
        assert long_text in historical.instructions


# ---------------------------------------------------------------------------
# Size bounds
# ---------------------------------------------------------------------------

class TestSizeBounds:
    @pytest.mark.asyncio
    async def test_summaries_within_bound(self, store, compressor):
        sid = await _session(store, 60)
        for level in await compressor.compress(sid):
            assert len(level.summary) <= level.size_bound

    @pytest.mark.asyncio
    async def test_immediate_keeps_newest_lines(self, store, compressor):
        snap = await store.create(make_schedule(), created_at=T0)
        for i in range(5):
            await store.append(
                snap.session_id, Action.agent(f"{i} " + "x" * 200, timestamp=T0 + i)
            )
        (immediate,) = await compressor.compress(snap.session_id)
        assert len(immediate.summary) <= immediate.size_bound
        assert immediate.summary.endswith("4 " + "x" * 200)
        assert "0 xxx" not in immediate.summary

    @pytest.mark.asyncio
    async def test_custom_summarizer_is_bounded(self, store, compression_config):
        summarizer = AsyncMock(return_value="y" * 1000)
        compressor = ContextCompressor(store, compression_config, summarizer=summarizer)
        sid = await _session(store, 30)
        historical, recent, _ = await compressor.compress(sid)

        assert len(historical.summary) == historical.size_bound
        assert historical.summary.endswith("...")
        assert len(recent.summary) == recent.size_bound
        tiers = [call.args[0] for call in summarizer.await_args_list]
        assert tiers == ["historical", "recent"]
        assert len(summarizer.await_args_list[0].args[1]) == 15


# ---------------------------------------------------------------------------
# Idempotency and persistence
# ---------------------------------------------------------------------------

class TestIdempotency:
    @pytest.mark.asyncio
    async def test_recompress_unchanged_history_is_equivalent(self, store, compressor):
        sid = await _session(store, 45)
        first = await compressor.compress(sid)
        second = await compressor.compress(sid)
        assert len(first) == len(second)
        assert all(a.equivalent(b) for a, b in zip(first, second))

    @pytest.mark.asyncio
    async def test_levels_are_stored(self, store, compressor):
        sid = await _session(store, 30)
        levels = await compressor.compress(sid)
        snap = await store.snapshot(sid)
        assert len(snap.compressed_context) == len(levels)
        assert all(a.equivalent(b) for a, b in zip(levels, snap.compressed_context))

    @pytest.mark.asyncio
    async def test_raw_history_untouched(self, store, compressor):
        sid = await _session(store, 30)
        await compressor.compress(sid)
        assert len(await store.get_history(sid)) == 30

    @pytest.mark.asyncio
    async def test_emits_compressed_event(self, store, compressor, event_bus):
        sid = await _session(store, 30)
        await compressor.compress(sid)
        event_bus.emit.assert_called_once()
        event = event_bus.emit.call_args.args[0]
        assert isinstance(event, SessionCompressedEvent)
        assert event.session_id == sid
        assert event.tiers == ["historical", "recent", "immediate"]
        assert event.action_count == 30


# ---------------------------------------------------------------------------
# Trigger
# ---------------------------------------------------------------------------

class TestShouldCompress:
    @pytest.mark.asyncio
    async def test_under_bound(self, store, compressor):
        sid = await _session(store, 20)
        assert compressor.should_compress(await store.snapshot(sid)) is False

    @pytest.mark.asyncio
    async def test_over_bound_until_compressed(self, store, compressor):
        sid = await _session(store, 21)
        assert compressor.should_compress(await store.snapshot(sid)) is True
        await compressor.compress(sid)
        assert compressor.should_compress(await store.snapshot(sid)) is False

        await store.append(sid, Action.agent("one more", timestamp=T0 + 10_000))
        assert compressor.should_compress(await store.snapshot(sid)) is True


class TestTopKeywords:
    def test_ranked_by_frequency_then_alphabetically(self):
        actions = [
            Action.agent("deploy service alpha"),
            Action.agent("deploy service beta"),
            Action.agent("deploy the gamma"),
        ]
        assert top_keywords(actions, 3) == ["deploy", "service", "alpha"]

    def test_zero_limit(self):
        assert top_keywords([Action.agent("deploy")], 0) == []
