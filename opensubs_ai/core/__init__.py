"""Core session, polling, error, and language modules.

WHY: The core package is the engineering heart of the client: the error
taxonomy, the language consolidator, the session manager, and the job
poller. None of it does HTTP directly; the client object is injected.

RULES:
- errors and languages are pure (no I/O)
- session and poller take their clock as a parameter
"""
