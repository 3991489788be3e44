"""Helpers for building key-value requests and transactions.

Keys and values are ``bytes``; no encoding is ever applied implicitly.

Examples
--------
Create ``key`` only if it doesn't already exist, otherwise read the current
value (the conditional-create idiom):

>>> from etcdrpc import kv
>>> req = kv.build_txn_request(
...     compare=[kv.key_not_exists_compare(b'key')],   # if key is missing
...     success=[kv.build_put_request(b'key', b'value')],   # then create it
...     failure=[kv.build_get_request(b'key')])   # else read it
>>> resp = client.transaction(req)   # doctest: +SKIP
>>> resp.succeeded   # doctest: +SKIP
True
"""
from . import proto as _proto
from .exceptions import context as _context


__all__ = ('range_prefix',
           'key_exists_compare', 'key_not_exists_compare',
           'build_put_request', 'build_get_request',
           'build_delete_request', 'build_range_request',
           'build_txn_request')


def _check_bytes(name, x):
    if not isinstance(x, bytes):
        raise _context.TypeError("%s must be bytes" % name)


def range_prefix(key):
    """The exclusive upper bound of all keys starting with ``key``.

    Use as the ``range_end`` of a request to select every key that has
    ``key`` as a prefix. Trailing ``0xff`` bytes are dropped before the last
    remaining byte is incremented, so ``b'a\\xff'`` maps to ``b'b'``.

    Parameters
    ----------
    key : bytes
        The key prefix. Must contain at least one byte other than ``0xff``;
        there is no upper bound for an empty or all ``0xff`` prefix and a
        ``ValueError`` is raised.

    Returns
    -------
    range_end : bytes

    Examples
    --------
    >>> range_prefix(b'foo')
    b'fop'
    >>> range_prefix(b'a\\xff\\xff')
    b'b'
    """
    _check_bytes('key', key)
    stripped = key.rstrip(b'\xff')
    if not stripped:
        raise _context.ValueError("No prefix range exists for key %r" % key)
    return stripped[:-1] + bytes([stripped[-1] + 1])


def key_exists_compare(key):
    """A comparison that holds if ``key`` currently exists.

    Compares the creation revision of ``key`` to be greater than 0.

    Parameters
    ----------
    key : bytes

    Returns
    -------
    Compare
    """
    _check_bytes('key', key)
    return _proto.Compare(key=key,
                          target=_proto.Compare.CREATE,
                          result=_proto.Compare.GREATER,
                          create_revision=0)


def key_not_exists_compare(key):
    """A comparison that holds if ``key`` doesn't currently exist.

    Compares the creation revision of ``key`` to be less than 1, the first
    revision ever assigned to a key.

    Parameters
    ----------
    key : bytes

    Returns
    -------
    Compare
    """
    _check_bytes('key', key)
    return _proto.Compare(key=key,
                          target=_proto.Compare.CREATE,
                          result=_proto.Compare.LESS,
                          create_revision=1)


def build_put_request(key, value):
    """A ``RequestOp`` setting ``key`` to ``value``."""
    _check_bytes('key', key)
    _check_bytes('value', value)
    return _proto.RequestOp(request_put=_proto.PutRequest(key=key,
                                                          value=value))


def build_get_request(key):
    """A ``RequestOp`` reading the single key ``key``."""
    _check_bytes('key', key)
    return _proto.RequestOp(request_range=_proto.RangeRequest(key=key))


def build_delete_request(key):
    """A ``RequestOp`` deleting the single key ``key``."""
    _check_bytes('key', key)
    return _proto.RequestOp(
        request_delete_range=_proto.DeleteRangeRequest(key=key))


def build_range_request(key, range_end):
    """A ``RequestOp`` reading all keys in ``[key, range_end)``.

    Parameters
    ----------
    key : bytes
        The lower bound of the range, inclusive.
    range_end : bytes
        The upper bound of the range, exclusive. Use ``range_prefix(key)``
        to read all keys with prefix ``key``, ``b'\\x00'`` to read all keys
        greater than or equal to ``key``, or ``b''`` to read ``key`` alone.
    """
    _check_bytes('key', key)
    _check_bytes('range_end', range_end)
    return _proto.RequestOp(
        request_range=_proto.RangeRequest(key=key, range_end=range_end))


def build_txn_request(compare=None, success=None, failure=None):
    """Build a transaction request.

    Parameters
    ----------
    compare : sequence of Compare, optional
        Comparisons evaluated together. The transaction succeeds if all of
        them hold, or if none are given.
    success : sequence of RequestOp, optional
        Operations applied if the transaction succeeds.
    failure : sequence of RequestOp, optional
        Operations applied otherwise.

    Returns
    -------
    TxnRequest
    """
    compare = list(compare or ())
    success = list(success or ())
    failure = list(failure or ())
    if not all(isinstance(c, _proto.Compare) for c in compare):
        raise _context.TypeError("compare must be a sequence of Compare")
    if not all(isinstance(o, _proto.RequestOp) for o in success):
        raise _context.TypeError("success must be a sequence of RequestOp")
    if not all(isinstance(o, _proto.RequestOp) for o in failure):
        raise _context.TypeError("failure must be a sequence of RequestOp")
    return _proto.TxnRequest(compare=compare, success=success,
                             failure=failure)
