"""scribeflow: audio-to-text preparation and post-processing core.

WHY: Remote transcription APIs reject large uploads and return raw text
that users usually want cleaned up, summarized or reformatted. This
package turns an audio file into a final processed text under those
constraints.

HOW: Five stages: pre-flight analysis and strategy selection, silence
removal, chunked transcription with ordered merge, a post-processing
pipeline with a call-folding optimizer, and a session-scoped result
history. Each stage is independently testable.

RULES:
- Configuration is one Settings value passed into each component
- Long operations report progress as typed events on a queue
- The CLI and HTTP API only render core results
"""

__version__ = "0.1.0"
