"""Exception types used across the service."""


class LedgerWatchError(Exception):
    """Base class for all service errors."""


class UpstreamUnavailable(LedgerWatchError):
    """The ledger API could not be reached or answered with an error."""


class MalformedUpstreamPayload(LedgerWatchError):
    """The ledger API answered but the payload has no balance."""


class DeliveryFailure(LedgerWatchError):
    """A channel could not deliver a notification."""


class PersistenceFailure(LedgerWatchError):
    """The tracked-account store could not be read or written."""


class SubscriptionRequestInvalid(LedgerWatchError):
    """A subscription request is missing an identifier."""


class StaleAccountState(LedgerWatchError):
    """An account changed between reading its state and applying an update."""
