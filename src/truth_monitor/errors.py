"""Sampling error taxonomy for truth-monitor."""


class SampleError(Exception):
    """Base class for sampling failures."""


class SampleInvalid(SampleError):
    """Payload could not be decoded into a sample.

    The caller retries immediately. Never surfaced to consumers.
    """


class SampleUnavailable(SampleError):
    """Backend call failed or timed out.

    The scheduler keeps the previous values and marks the state stale.
    """


class BackendUnreachable(SampleUnavailable):
    """Backend could not produce a single sample at startup (fatal)."""
