class FramedSocketError(Exception):
    """ Base class for errors caused by using a connection or acceptor in a
    state that does not allow the requested operation.
    """


class ConnectionClosedError(FramedSocketError):
    """ The connection has been closed and can no longer be used """


class NotConnectedError(FramedSocketError):
    """ The operation requires an established connection """


class AlreadyConnectedError(FramedSocketError):
    """ The connection is already connected or is in the middle of connecting """


class AcceptorStateError(FramedSocketError):
    """ The acceptor was started while running or stopped while not running """
