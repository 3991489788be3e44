from . import kv, proto
from .core import Client, WatchStream, properties
from .exceptions import EtcdError, ConnectionError, TimeoutError
from .kv import range_prefix
from .model import Config, BackoffOptions, LogLevel
from .utils import exponential_backoff

from ._version import __version__
