import builtins
from contextlib import contextmanager

__all__ = ('EtcdError',
           'ConnectionError',
           'TimeoutError')


class EtcdError(Exception):
    """Base class for etcdrpc specific exceptions.

    Failed RPCs are raised as this class (or a subclass), carrying the gRPC
    status of the failed call.

    Parameters
    ----------
    details : str
        The status message.
    code : grpc.StatusCode, optional
        The status code of the failed call.
    """
    def __init__(self, details, code=None):
        super(EtcdError, self).__init__(details)
        self.details = details
        self.code = code


class ConnectionError(EtcdError, builtins.ConnectionError):
    """Failed to connect to the etcd cluster"""


class TimeoutError(EtcdError, builtins.TimeoutError):
    """Request to the etcd cluster exceeded its deadline"""


class _Context(object):
    def __init__(self):
        self.is_cli = False

    @contextmanager
    def set_cli(self):
        old = self.is_cli
        self.is_cli = True
        yield
        self.is_cli = old

    @classmethod
    def register_wrapper(cls, typ):
        name = typ.__name__
        typ2 = type(name, (typ, EtcdError), {})

        def wrap(self, msg):
            return typ2(msg) if self.is_cli else typ(msg)

        setattr(cls, name, wrap)


for exc in [ValueError, KeyError, TypeError]:
    _Context.register_wrapper(exc)


context = _Context()
