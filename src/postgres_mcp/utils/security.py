"""Timing-safe credential comparison."""

import secrets


def safe_compare(provided: str | None, expected: str | None) -> bool:
    """Compare a supplied credential against a configured secret.

    Runs in time independent of the position of the first differing byte
    and of the supplied value's length. A value of the wrong length is
    padded or truncated to the expected length and still compared before
    ``False`` is returned.

    Args:
        provided: Value supplied by the caller.
        expected: Configured secret.

    Returns:
        True only if both are non-empty and equal.
    """
    if not provided or not expected:
        return False

    provided_bytes = provided.encode("utf-8")
    expected_bytes = expected.encode("utf-8")

    if len(provided_bytes) != len(expected_bytes):
        normalized = provided_bytes[: len(expected_bytes)].ljust(
            len(expected_bytes), b"\0"
        )
        secrets.compare_digest(normalized, expected_bytes)
        return False

    return secrets.compare_digest(provided_bytes, expected_bytes)
