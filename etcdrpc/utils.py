import logging
import time

from .exceptions import EtcdError


logger = logging.getLogger(__name__)


def exponential_backoff(job, options=None):
    """Call ``job`` until it succeeds or the backoff budget is exhausted.

    After every attempt, successful or not, the caller's thread sleeps for
    the current interval, which is then multiplied by
    ``options.multiplier``. A success is returned once that pause is over.
    A failure is re-raised once the total time slept exceeds
    ``options.timeout``, otherwise ``job`` is called again.

    The elapsed time is the sum of the requested sleep durations, not a
    reading of a clock. Under scheduling delays the true wall time spent in
    this function may be longer than ``options.timeout``.

    Parameters
    ----------
    job : callable
        A function taking no arguments. Returning normally is treated as
        success, raising an ``EtcdError`` as a failure. Any other exception
        is propagated immediately.
    options : BackoffOptions, optional
        The backoff settings. Defaults to ``BackoffOptions()`` (0.5 second
        initial interval, doubled after each attempt, 30 second budget).

    Returns
    -------
    result
        The value returned by the first successful call to ``job``.

    Examples
    --------
    >>> from etcdrpc import BackoffOptions, exponential_backoff
    >>> resp = exponential_backoff(lambda: client.range(req),
    ...                            BackoffOptions(interval=0.1, timeout=5))
    """
    if options is None:
        from .model import BackoffOptions
        options = BackoffOptions()

    interval = options.interval
    elapsed = 0
    attempt = 1
    while True:
        try:
            result = job()
        except EtcdError as _exc:
            exc = _exc
            logger.debug("Attempt %d failed (%s), sleeping %.3fs",
                         attempt, exc, interval)
        else:
            exc = None

        time.sleep(interval)
        elapsed += interval
        interval *= options.multiplier

        if exc is None:
            return result
        if elapsed > options.timeout:
            logger.debug("Giving up after %d attempts", attempt)
            raise exc
        attempt += 1


def format_list(x):
    return "\n".join("- %s" % s for s in sorted(x))


def humanize_timedelta(td):
    """Pretty-print a timedelta in a human readable format."""
    secs = int(td.total_seconds())
    hours, secs = divmod(secs, 60 * 60)
    mins, secs = divmod(secs, 60)
    if hours:
        return '%dh %dm' % (hours, mins)
    if mins:
        return '%dm' % mins
    return '%ds' % secs


def format_table(columns, rows):
    """Formats an ascii table for given columns and rows.

    Parameters
    ----------
    columns : list
        The column names
    rows : list of tuples
        The rows in the table. Each tuple must be the same length as
        ``columns``.
    """
    rows = [tuple(str(i) for i in r) for r in rows]
    columns = tuple(str(i).upper() for i in columns)
    if rows:
        widths = tuple(max(max(map(len, x)), len(c))
                       for x, c in zip(zip(*rows), columns))
    else:
        widths = tuple(map(len, columns))
    row_template = ('    '.join('%%-%ds' for _ in columns)) % widths
    header = (row_template % tuple(columns)).strip()
    if rows:
        data = '\n'.join((row_template % r).strip() for r in rows)
        return '\n'.join([header, data])
    else:
        return header


def implements(f):
    def decorator(g):
        g.__doc__ = f.__doc__
        return g
    return decorator
