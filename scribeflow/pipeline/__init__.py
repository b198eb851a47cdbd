"""Post-processing pipeline: units, optimizer, executor and history.

WHY: Raw transcripts need cleanup, formatting or summarizing before they
are useful. Users compose those steps into named pipelines of reusable
units.

HOW: models.py defines units and pipelines; library.py stores them as
JSON; optimizer.py folds compatible prompt runs; executor.py runs a
pipeline; history.py keeps the results for the current transcript.

RULES:
- Unit and pipeline definitions are never mutated by a run
- ExecutionHistory is the only mutable shared state
"""
