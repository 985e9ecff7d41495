"""Autonomous feature orchestrator for CLI coding agents.

Why asyncio and not a task queue?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Each feature run is one long streaming subprocess plus a handful of git
commands, and at most a few run at once. The hard parts are local state:
the running map that guarantees one execution per feature, pending plan
approvals that a reviewer settles later, and a failure window that pauses
dispatching. A single event loop owns all of it, so the busy check and the
registration of a run happen with no await in between and need no locks.

SQLite work runs through ``asyncio.to_thread``; provider calls and git
commands are asyncio subprocesses. A broker would add an operational
dependency to a single-machine, per-project tool without removing any of
that logic.
"""
