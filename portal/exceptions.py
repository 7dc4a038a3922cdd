class PortalError(Exception):
    """Base class for errors raised by the portal state layer."""


class StoreError(PortalError):
    """The local durable store could not read or write an entry."""


class SerializationError(PortalError):
    """A slice value could not be converted to or from JSON."""


class SnapshotError(PortalError):
    """A state snapshot is missing, unparsable or has the wrong shape."""
