"""
Error taxonomy for the survival learner.

Connection problems are split into transient (retried with backoff) and
fatal (agent stops). Learning invariant violations point at a bug in the
reward function or state encoder and are never absorbed.
"""


class SurvivalAIError(Exception):
    """Base class for every error raised by survival_ai."""


class TransientConnectionError(SurvivalAIError):
    """Timeouts, resets and refused connections. Retried with backoff."""


class FatalConnectionError(SurvivalAIError):
    """Protocol/version mismatch or exhausted retries. Requires a human."""


class LearningInvariantError(SurvivalAIError):
    """Non-finite reward or an unusable state key."""


class MalformedSnapshotError(LearningInvariantError):
    """Snapshot is missing fields or carries non-finite vitals."""
