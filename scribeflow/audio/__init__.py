"""Audio analysis and preparation modules.

WHY: Everything that touches samples or audio containers lives here, kept
apart from network and pipeline code so it can be tested without a
backend.

HOW: buffer.py holds decoded PCM; silence.py finds and splices out quiet
regions; preflight.py inspects files and picks a strategy; chunking.py and
compressor.py bring oversized files under the backend limit, using
ffmpeg.py when an external decoder is needed.

RULES:
- Pure audio math is synchronous; only ffmpeg calls are awaited
- PCM WAV never requires ffmpeg
"""
