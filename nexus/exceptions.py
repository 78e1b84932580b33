"""
Exception hierarchy shared by the relay, the negotiator and the engines.

Nothing here is fatal to a process; at worst one message is dropped, one
transfer abandoned or one peer removed from the live set.
"""


class NexusError(Exception):
    pass


class ProtocolError(NexusError):
    """A malformed or unknown message; the single message is dropped."""


class StorageError(NexusError):
    """The local item or blob store refused a write."""


class ChannelClosedError(NexusError):
    """A send was attempted on a data channel that is not open."""
