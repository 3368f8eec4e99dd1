"""
Exception types for the recovery engines.

Only misconfiguration raises. A search that finds nothing is a normal
outcome and is reported through the result objects instead.
"""


class RecoveryError(Exception):
    """Base class for all hdkrecover errors."""


class ConfigurationError(RecoveryError):
    """Invalid request or configuration, detected before any search runs."""


class MissingDisambiguatorError(ConfigurationError):
    """Object-scoped templates were requested without an object UUID."""

    def __init__(self, message: str = "object-scoped templates require a UUID"):
        super().__init__(message)


class UnexpectedDisambiguatorError(ConfigurationError):
    """A UUID was supplied for templates that never use one (scenes)."""

    def __init__(self, message: str = "scene templates do not take a UUID"):
        super().__init__(message)
