"""Orchestration: progress events, chunk dispatch and the session controller.

WHY: The audio and pipeline packages each do one job. This package wires
them into the end-to-end flow from an audio file to a processed result.

HOW: events.py defines the typed progress messages; dispatcher.py submits
chunks in order with retries; session.py runs the whole flow as a
cancellable task.

RULES:
- Only session.py knows about every stage
- Progress leaves the core only as events
"""
