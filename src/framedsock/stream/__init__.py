from .acceptor import ConnectionAcceptor
from .connection import FramedConnection
from .framing import FrameReceiver, ReceiveStates, encode_header, frame
