"""
driftwatch — consistency monitoring and recovery for long-running agent sessions.

Autonomous agents lose behavioral consistency over long runs: they slip off
their schedule, forget instructions that scrolled out of the context window,
or quietly stop acting. driftwatch watches a session from the outside, treating
the agent as a black box that emits actions and accepts instructions.

Layers (bottom to top):
    1. Session store (durable per-session history)
    2. Drift detector (timing, omission and content deviations)
    3. Context compressor (tiered, bounded summaries for re-injection)
    4. Recovery controller (re-inject, escalate, alert)
    5. Monitor (the periodic trigger that drives the layers above)
"""

__version__ = "0.1.0"
