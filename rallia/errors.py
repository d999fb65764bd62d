"""
rallia.errors — Exception hierarchy
====================================

Only caller contract violations are exceptions.  Delivery failures and
missing contact details are recorded as delivery attempts instead.
"""

from __future__ import annotations


class RalliaError(Exception):
    """Base class for all engine errors."""


class ValidationError(RalliaError):
    """Raised when a caller hands the engine malformed input.

    Examples: a reputation event without an ``event_type``, an unknown
    notification type, tier thresholds that are not strictly ascending.
    """
