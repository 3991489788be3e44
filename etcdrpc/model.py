import json
import os

import yaml

from .exceptions import context
from .objects import Enum, Specification
from .utils import implements

__all__ = ('Config', 'BackoffOptions', 'LogLevel')


def _infer_format(path, format='infer'):
    if format == 'infer':
        _, ext = os.path.splitext(path)
        if ext == '.json':
            format = 'json'
        elif ext in {'.yaml', '.yml'}:
            format = 'yaml'
        else:
            if context.is_cli:
                msg = "Unsupported file type %r" % ext
            else:
                msg = ("Can't infer format from filepath %r, please "
                       "specify manually" % path)
            raise context.ValueError(msg)
    elif format not in {'json', 'yaml'}:
        raise ValueError("Unknown file format: %r" % format)
    return format


class LogLevel(Enum):
    """Enum of log levels.

    Corresponds with the standard library ``logging`` levels.

    Attributes
    ----------
    DEBUG : LogLevel
        Detailed information, including every failed RPC and retry.
    INFO : LogLevel
        Confirmation that things are working as expected.
    WARNING : LogLevel
        Something unexpected happened. The default LogLevel.
    ERROR : LogLevel
        A failure prevented an operation from completing.
    CRITICAL : LogLevel
        A failure prevented the program from continuing.
    """
    _values = ('DEBUG',
               'INFO',
               'WARNING',
               'ERROR',
               'CRITICAL')


class BackoffOptions(Specification):
    """Settings for ``exponential_backoff``.

    Parameters
    ----------
    interval : float, optional
        The initial sleep between attempts, in seconds. Default is 0.5.
    timeout : float, optional
        The budget of total time slept, in seconds. Once exceeded the last
        failure is raised. Default is 30.
    multiplier : float, optional
        The factor applied to the interval after every attempt. Default is 2.
    """
    __slots__ = ('interval', 'timeout', 'multiplier')

    def __init__(self, interval=0.5, timeout=30.0, multiplier=2.0):
        self.interval = interval
        self.timeout = timeout
        self.multiplier = multiplier

        self._validate()

    def __repr__(self):
        return ('BackoffOptions<interval=%r, timeout=%r, multiplier=%r>'
                % (self.interval, self.timeout, self.multiplier))

    def _validate(self):
        self._check_is_bounded_number('interval', min=0, inclusive=False)
        self._check_is_bounded_number('timeout', min=0)
        self._check_is_bounded_number('multiplier', min=1)


class Config(Specification):
    """Client configuration.

    Parameters
    ----------
    endpoint : str, optional
        The ``host:port`` address of an etcd member. Default is
        ``'localhost:2379'``.
    timeout : float, optional
        The default deadline for each RPC, in seconds. Default is no
        deadline.
    backoff : BackoffOptions or dict, optional
        Settings used when retrying failed requests.
    """
    __slots__ = ('endpoint', 'timeout', '_backoff')
    _params = ('endpoint', 'timeout', 'backoff')

    def __init__(self, endpoint='localhost:2379', timeout=None, backoff=None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.backoff = backoff

        self._validate()

    def __repr__(self):
        return 'Config<endpoint=%r, timeout=%r>' % (self.endpoint, self.timeout)

    @property
    def backoff(self):
        return self._backoff

    @backoff.setter
    def backoff(self, value):
        if value is None:
            value = BackoffOptions()
        elif isinstance(value, dict):
            value = BackoffOptions.from_dict(value)
        elif not isinstance(value, BackoffOptions):
            raise context.TypeError("backoff must be a BackoffOptions, dict, "
                                    "or None")
        self._backoff = value

    def _validate(self):
        self._check_is_type('endpoint', str)
        if not self.endpoint:
            raise context.ValueError("endpoint must be non-empty")
        self._check_is_bounded_number('timeout', min=0, inclusive=False,
                                      nullable=True)
        self.backoff._validate()

    @classmethod
    @implements(Specification.from_dict)
    def from_dict(cls, obj):
        cls._check_keys(obj)
        obj = dict(obj)
        backoff = obj.pop('backoff', None)
        if backoff is not None:
            backoff = BackoffOptions.from_dict(backoff)
        return cls(backoff=backoff, **obj)

    @classmethod
    def from_file(cls, path, format='infer'):
        """Create an instance from a json or yaml file.

        Parameters
        ----------
        path : str
            The path to the file to load.
        format : {'infer', 'json', 'yaml'}, optional
            The file format. By default the format is inferred from the file
            extension.
        """
        format = _infer_format(path, format=format)

        with open(path) as f:
            data = f.read()
        if format == 'json':
            obj = json.loads(data)
        else:
            obj = yaml.safe_load(data)
        return cls.from_dict(obj or {})

    def to_file(self, path, format='infer', skip_nulls=True):
        """Write object to a file.

        Parameters
        ----------
        path : str
            The path to the file to write.
        format : {'infer', 'json', 'yaml'}, optional
            The file format. By default the format is inferred from the file
            extension.
        skip_nulls : bool, optional
            By default null values are skipped in the output. Set to False to
            output all fields.
        """
        format = _infer_format(path, format=format)
        data = getattr(self, 'to_' + format)(skip_nulls=skip_nulls)
        with open(path, mode='w') as f:
            f.write(data)

    @classmethod
    def from_default(cls):
        """The default configuration.

        Loads ``config.yaml`` from the configuration directory (``~/.etcdrpc``
        by default, set ``ETCDRPC_CONFIG`` to change) if it exists. The
        ``ETCDRPC_ENDPOINT`` and ``ETCDRPC_TIMEOUT`` environment variables
        take precedence over values in the file.
        """
        from .core import properties

        path = os.path.join(properties.config_dir, 'config.yaml')
        if os.path.exists(path):
            config = cls.from_file(path, format='yaml')
        else:
            config = cls()

        if properties.endpoint is not None:
            config.endpoint = properties.endpoint
        if properties.timeout is not None:
            config.timeout = properties.timeout
        config._validate()
        return config
