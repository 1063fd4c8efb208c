"""
Context Compressor — keeps a long session's history re-injectable.

A long-running session accumulates far more history than fits in a model's
context window. The compressor folds it into three bounded tiers:

  immediate:   the newest actions, verbatim
  recent:      the actions before those, summarized
  historical:  everything older, summarized harder

Summaries may be lossy for routine agent output, but instructions are never
summarized away: every operator instruction a tier covers is carried verbatim
in that tier's ``instructions`` list, and the session's original instruction
set rides on the oldest tier. The raw action log itself is left untouched in
the store.

The default summarizer is extractive and deterministic, so compressing
unchanged history yields equivalent levels. An async summarizer callable can be
plugged in (for example one that asks a model), at the cost of that guarantee
being only as good as the summarizer's.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Sequence

import structlog

from driftwatch._utils import words
from driftwatch.config import CompressionConfig
from driftwatch.events import EventBus, SessionCompressedEvent
from driftwatch.store import SessionStore
from driftwatch.types import (
    Action,
    ActionSource,
    CompressionLevel,
    CompressionTier,
    SessionSnapshot,
)

logger = structlog.get_logger(__name__)

Summarizer = Callable[[CompressionTier, Sequence[Action], int], Awaitable[str]]

_ELLIPSIS = "..."

_STOPWORDS = frozenset(
    "the and for with that this from into have has was were are not but you your "
    "its it's all any can will would should could then than them they their there "
    "what when where which while who why how about after before over under again".split()
)


def _fit(text: str, bound: int) -> str:
    if len(text) <= bound:
        return text
    if bound <= len(_ELLIPSIS):
        return text[:bound]
    return text[: bound - len(_ELLIPSIS)] + _ELLIPSIS


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="seconds")


def _dedupe(items: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


def top_keywords(actions: Sequence[Action], limit: int) -> list[str]:
    """Most frequent non-trivial words, ties broken alphabetically."""
    if limit <= 0:
        return []
    counts: Counter[str] = Counter()
    for action in actions:
        for word in words(action.payload):
            if len(word) >= 3 and word not in _STOPWORDS:
                counts[word] += 1
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return [word for word, _ in ranked[:limit]]


class ContextCompressor:
    """Builds and stores tiered summaries of a session's history."""

    def __init__(
        self,
        store: SessionStore,
        config: Optional[CompressionConfig] = None,
        summarizer: Optional[Summarizer] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self._store = store
        self._config = config or CompressionConfig()
        self._summarizer = summarizer
        self._event_bus = event_bus

    def should_compress(self, snap: SessionSnapshot) -> bool:
        """Raw history is over the bound and the stored levels don't cover it."""
        if len(snap.actions) <= self._config.max_raw_actions:
            return False
        if not snap.compressed_context:
            return True
        covered = max(level.as_of for level in snap.compressed_context)
        return covered < snap.last_timestamp

    async def compress(self, session_id: str) -> list[CompressionLevel]:
        """Compress one session's history and store the result."""
        snap = await self._store.snapshot(session_id)
        levels = await self.build_levels(snap)
        await self._store.save_compressed(session_id, levels)

        logger.info(
            "compression.complete",
            session_id=session_id,
            action_count=len(snap.actions),
            tiers=[level.tier for level in levels],
        )
        if self._event_bus is not None:
            self._event_bus.emit(SessionCompressedEvent(
                session_id=session_id,
                tiers=[level.tier for level in levels],
                action_count=len(snap.actions),
            ))
        return levels

    async def build_levels(self, snap: SessionSnapshot) -> list[CompressionLevel]:
        """Split a snapshot into tiers, oldest first. Empty tiers are omitted."""
        cfg = self._config
        actions = list(snap.actions)
        immediate = actions[-cfg.immediate_actions:]
        rest = actions[: len(actions) - len(immediate)]
        recent = rest[-cfg.recent_actions:]
        historical = rest[: len(rest) - len(recent)]

        levels: list[CompressionLevel] = []
        if historical:
            levels.append(await self._summarized_level(
                "historical", historical, cfg.historical_size_bound
            ))
        if recent:
            levels.append(await self._summarized_level(
                "recent", recent, cfg.recent_size_bound
            ))
        levels.append(self._immediate_level(immediate, snap))

        # The original instruction set rides on the oldest tier.
        if snap.instructions:
            oldest = levels[0]
            oldest.instructions = _dedupe(list(snap.instructions) + oldest.instructions)

        for level in levels:
            instruction_chars = sum(len(text) for text in level.instructions)
            if instruction_chars > level.size_bound:
                # Instructions are never truncated, so the tier outgrows its bound.
                logger.warning(
                    "compression.instructions_exceed_bound",
                    session_id=snap.session_id,
                    tier=level.tier,
                    instruction_chars=instruction_chars,
                    size_bound=level.size_bound,
                )
        return levels

    def _immediate_level(
        self, actions: Sequence[Action], snap: SessionSnapshot
    ) -> CompressionLevel:
        bound = self._config.immediate_size_bound
        lines = [f"[{a.source.value} {_iso(a.timestamp)}] {a.payload}" for a in actions]
        # Keep the newest lines when the verbatim tail is too large.
        kept: list[str] = []
        used = 0
        for line in reversed(lines):
            cost = len(line) + (1 if kept else 0)
            if used + cost > bound:
                if not kept:
                    kept.append(_fit(line, bound))
                break
            kept.append(line)
            used += cost
        kept.reverse()
        return CompressionLevel(
            tier="immediate",
            summary="\n".join(kept),
            instructions=self._instructions_in(actions),
            action_count=len(actions),
            size_bound=bound,
            as_of=actions[-1].timestamp if actions else snap.created_at,
        )

    async def _summarized_level(
        self, tier: CompressionTier, actions: Sequence[Action], bound: int
    ) -> CompressionLevel:
        if self._summarizer is not None:
            summary = await self._summarizer(tier, actions, bound)
        else:
            summary = self._extractive_summary(actions)
        return CompressionLevel(
            tier=tier,
            summary=_fit(summary.strip(), bound),
            instructions=self._instructions_in(actions),
            action_count=len(actions),
            size_bound=bound,
            as_of=actions[-1].timestamp,
        )

    def _extractive_summary(self, actions: Sequence[Action]) -> str:
        agent = [a for a in actions if a.source is ActionSource.AGENT]
        operator_count = len(actions) - len(agent)
        parts = [
            f"{len(actions)} actions ({len(agent)} agent, {operator_count} operator) "
            f"from {_iso(actions[0].timestamp)} to {_iso(actions[-1].timestamp)}."
        ]
        keywords = top_keywords(agent, self._config.summary_keywords)
        if keywords:
            parts.append("Keywords: " + ", ".join(keywords) + ".")
        if agent:
            parts.append(f"First: {_fit(agent[0].payload, 120)!r}.")
            if len(agent) > 1:
                parts.append(f"Last: {_fit(agent[-1].payload, 120)!r}.")
        return " ".join(parts)

    @staticmethod
    def _instructions_in(actions: Sequence[Action]) -> list[str]:
        return _dedupe([a.payload for a in actions if a.source is ActionSource.OPERATOR])
