class SessionWatchError(Exception):
    """Base class for errors raised inside the traffic pipeline."""


class ConfigurationError(SessionWatchError):
    """Invalid thresholds or flags; the pipeline degrades to pass-through."""


class StoreUnavailable(SessionWatchError):
    """The traffic store could not be read or written."""


class LockUnavailable(SessionWatchError):
    """The per-client lock could not be acquired in time."""


class NotificationUnavailable(SessionWatchError):
    """The behavior classifier could not be reached."""
