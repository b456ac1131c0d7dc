"""Exceptions raised by the virtual network."""


class VNetError(Exception):
    """Base class for every error raised by the virtual network."""


class AddressAlreadyInUseError(VNetError):
    """The transport address is already bound by another connection."""


class NoSuchConnError(VNetError, LookupError):
    """No connection is bound to the given address."""


class AlreadyClosedError(VNetError):
    """The connection has already been closed."""


class NoRouterLinkedError(VNetError):
    """The network is not attached to a router."""


class NotFoundError(VNetError, LookupError):
    """The requested interface, host or resource does not exist."""


class BindError(VNetError):
    """A local address could not be bound or assigned."""


class PortSpaceExhaustedError(VNetError):
    """Every port in the requested range is in use."""


class NatError(VNetError):
    """A chunk could not be translated by the NAT."""


class RouterStateError(VNetError):
    """The router is not in a state that allows the operation."""