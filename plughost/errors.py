"""Exception taxonomy for the plugin host.

Only :class:`DeactivationError` ever reaches callers of the public API.
Load and activation failures are turned into fault events and a degraded
consumer API; unexpected runtime errors stop at the fault monitor.
"""

from __future__ import annotations


class HostError(Exception):
    """Base exception for plugin host errors."""


class LoadError(HostError):
    """Raised when the plugin module cannot be loaded (fatal)."""


class ActivationError(HostError):
    """Raised when the plugin's ``activate`` hook fails."""


class ExpectedRuntimeError(HostError):
    """Raised by plugins for cooperative interruptions such as task aborts.

    The fault monitor treats instances as benign: logged at debug level,
    never reported as fault events.
    """


class DeactivationError(HostError):
    """Raised when the plugin's ``deactivate`` hook fails."""
