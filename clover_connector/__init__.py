# Clover Connector
# Drives Clover payment terminals over a persistent WebSocket connection

__version__ = '0.1.0'

from .errors import CloverError, ErrorCode, MessageDecodeError
from .messages import Envelope, LanMethod, MessageBuilder, MessageType, decode, encode
from .config import CloverConfig, ConfigStore, ConnectionSettings
from .scheduler import ManualScheduler, ThreadScheduler
from .transport import StubTransport, WebSocketTransport
from .connection import ConnectionManager
from .discovery import DiscoveryController
from .transactions import Completion, TransactionController, build_pay_intent
from .device_resolver import DeviceResolver, StubDeviceResolver
from .clover import Clover, encode_image

__all__ = [
    'Clover',
    'CloverConfig',
    'CloverError',
    'Completion',
    'ConfigStore',
    'ConnectionManager',
    'ConnectionSettings',
    'DeviceResolver',
    'DiscoveryController',
    'Envelope',
    'ErrorCode',
    'LanMethod',
    'ManualScheduler',
    'MessageBuilder',
    'MessageDecodeError',
    'MessageType',
    'StubDeviceResolver',
    'StubTransport',
    'ThreadScheduler',
    'TransactionController',
    'WebSocketTransport',
    'build_pay_intent',
    'decode',
    'encode',
    'encode_image',
]
