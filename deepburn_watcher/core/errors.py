"""Error taxonomy shared by the watcher engine and its ledger collaborator."""


class BurnWatcherError(Exception):
    """Base class for every error raised by the watcher."""


class RpcError(BurnWatcherError):
    """A ledger RPC call did not produce a usable result."""


class TransientRpcError(RpcError):
    """Network, timeout or rate-limit failure that is worth retrying."""


class NotFoundError(RpcError):
    """The requested token or object does not exist on the ledger."""


class InvalidShapeError(RpcError):
    """The ledger returned an object that is not of the expected kind."""


class SubscriptionError(RpcError):
    """The ledger refused or failed to open an event subscription."""


class MalformedPayload(BurnWatcherError):
    """An event payload could not be interpreted."""


class SubscriptionUnavailable(BurnWatcherError):
    """No monitored topic could be subscribed to."""


class ConfigurationError(BurnWatcherError):
    """A setting was out of range and has been corrected."""


class StartupError(BurnWatcherError):
    """The watcher could not build its initial state."""
