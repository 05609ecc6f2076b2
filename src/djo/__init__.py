"""Document Job Orchestrator.

Job-lifecycle engine for document conversion, export, and AI-assisted
operations: durable job state, progress events, retries with backoff,
idempotent submission, and dead-letter handling.
"""

__version__ = "0.1.0"
