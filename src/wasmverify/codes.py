"""Failure code constants for the verification pipeline.

These constants prevent stringly-typed error codes and ensure
client code (and the surrounding automation) matches on stable values.
"""

from enum import Enum


class FailureCode(str, Enum):
    """Failure codes attached to every pipeline error."""

    # Terminal request failures
    FETCH_ERROR = "FETCH_ERROR"
    BUILD_ERROR = "BUILD_ERROR"
    NON_DETERMINISTIC_BUILD = "NON_DETERMINISTIC_BUILD"
    LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"
    CANCELLED = "CANCELLED"
    STORAGE_ERROR = "STORAGE_ERROR"

    # Internal, never surfaced to requesters
    STORE_CONFLICT = "STORE_CONFLICT"
    INVALID_TRANSITION = "INVALID_TRANSITION"

    # Input problems
    INVALID_REQUEST = "INVALID_REQUEST"
    RECORD_NOT_FOUND = "RECORD_NOT_FOUND"
