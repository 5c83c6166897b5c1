"""Domain exceptions."""


class TaxminderError(Exception):
    """Base class for engine errors."""


class NotFoundError(TaxminderError):
    """A referenced client, template or entry does not exist."""


class RolloverError(TaxminderError):
    """A rollover cannot be executed for one client/filing pair."""


class LockHeldError(TaxminderError):
    """An advisory lock is held by another process."""
