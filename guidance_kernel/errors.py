"""Error taxonomy for the guidance engine.

Only configuration errors are raised to callers. Not-found conditions
(unknown arm, unknown learner, missing passage index) are steady-state and
return None or empty results instead.
"""

from __future__ import annotations


class GuidanceError(Exception):
    """Base class for all guidance engine errors."""


class EmptyBanditError(GuidanceError):
    """Raised when an arm is requested from a bandit with zero arms."""


class ContentGenerationError(GuidanceError):
    """Raised by content generator clients.

    The content builder always catches this and falls back to templates.
    """


class StoreError(GuidanceError):
    """Raised when a storage backend cannot complete an operation."""
