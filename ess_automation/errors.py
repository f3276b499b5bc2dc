"""Error taxonomy for the automation cycle"""

from typing import Optional


class AutomationError(Exception):
    """Base class for all automation errors"""


class SignalUnavailable(AutomationError):
    """A signal source could not be fetched (failure or timeout)"""

    def __init__(self, source: str, reason: str = "unavailable"):
        super().__init__(f"{source} signal unavailable: {reason}")
        self.source = source
        self.reason = reason


class InvalidSegment(AutomationError):
    """A built segment failed final validation and must not be dispatched"""


class DeviceWriteFailure(AutomationError):
    """The device rejected a scheduler write or the call failed outright"""

    def __init__(self, message: str, errno: Optional[int] = None):
        super().__init__(message)
        self.errno = errno


class RateLimited(DeviceWriteFailure):
    """An upstream API refused the call because of rate limiting"""


class AmbiguousWriteResult(AutomationError):
    """The write call returned but the segment could not be confirmed on the device"""


class ConfigurationError(AutomationError):
    """Nothing to do: missing device, no rules, or an unusable rule definition"""
