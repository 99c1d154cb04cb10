"""Line-delimited JSON IPC between the client and the privileged engine."""

from .client import EngineClient, RequestLost, TransportError
from .protocol import ProtocolError, Response
from .server import EngineServer, EngineServerHandle, start_engine_server

__all__ = [
    "EngineClient",
    "EngineServer",
    "EngineServerHandle",
    "ProtocolError",
    "RequestLost",
    "Response",
    "TransportError",
    "start_engine_server",
]
