import logging
import os
import queue
import threading
import weakref
from collections.abc import Mapping

import grpc

from . import proto
from .exceptions import context, EtcdError, ConnectionError, TimeoutError
from .kv import _check_bytes
from .model import Config


__all__ = ('Client', 'WatchStream', 'properties')


logger = logging.getLogger(__name__)


class Properties(Mapping):
    """etcdrpc runtime properties.

    This class implements an immutable mapping type, exposing properties
    determined at import time.

    Attributes
    ----------
    config_dir : str
        The path to the configuration directory.
    endpoint : str or None
        The ``host:port`` address of the etcd member to connect to, overriding
        the configuration file. None if not set.
    timeout : float or None
        The default per-call deadline in seconds, overriding the configuration
        file. None if not set.
    log_level : str
        The log level used by the command line tool.
    """
    def __init__(self):
        config_dir = os.environ.get('ETCDRPC_CONFIG',
                                    os.path.join(os.path.expanduser('~'),
                                                 '.etcdrpc'))
        endpoint = os.environ.get('ETCDRPC_ENDPOINT') or None
        try:
            timeout = float(os.environ.get('ETCDRPC_TIMEOUT'))
        except (ValueError, TypeError):
            timeout = None
        log_level = os.environ.get('ETCDRPC_LOG_LEVEL', 'WARNING')

        mapping = dict(config_dir=config_dir,
                       endpoint=endpoint,
                       timeout=timeout,
                       log_level=log_level)

        object.__setattr__(self, '_mapping', mapping)

    def __getitem__(self, key):
        return self._mapping[key]

    def __getattr__(self, key):
        try:
            return self[key]
        except KeyError:
            raise AttributeError("%r object has no attribute %r"
                                 % (type(self).__name__, key))

    def __setattr__(self, key, val):
        raise AttributeError("%r object has no attribute %r"
                             % (type(self).__name__, key))

    def __dir__(self):
        o = set(dir(type(self)))
        o.update(self.__dict__)
        o.update(c for c in self._mapping if c.isidentifier())
        return list(o)

    def __iter__(self):
        return iter(self._mapping)

    def __len__(self):
        return len(self._mapping)


properties = Properties()


def _error_from_rpc(exc):
    """Convert a ``grpc.RpcError`` into the matching ``EtcdError``"""
    code = exc.code()
    details = exc.details()
    if code == grpc.StatusCode.UNAVAILABLE:
        return ConnectionError(details, code)
    elif code == grpc.StatusCode.DEADLINE_EXCEEDED:
        return TimeoutError(details, code)
    return EtcdError(details, code)


def _request_iter(requests):
    while True:
        req = requests.get()
        if req is None:
            break
        yield req


class WatchStream(object):
    """A bidirectional watch stream.

    Requests written to the stream are sent in order on a background thread
    managed by gRPC. Responses are read in order with ``read`` or by
    iterating over the stream. The first response for each created watch
    reports the registration (``created`` is set and ``watch_id`` assigned)
    before any change events for that watch.

    Not created directly, use ``Client.make_watch_stream``.

    Writes are thread-safe, reads are not.

    Examples
    --------
    >>> with client.make_watch_stream(req) as stream:
    ...     created = stream.read()
    ...     for resp in stream:
    ...         for event in resp.events:
    ...             print(event.kv.key, event.kv.value)
    """
    __slots__ = ('_requests', '_writes_done', '_cancelled', '_call',
                 '__weakref__')

    def __init__(self, watch_stub, timeout=None):
        self._requests = queue.Queue()
        self._writes_done = False
        self._cancelled = False
        self._call = watch_stub.Watch(_request_iter(self._requests),
                                      timeout=timeout)
        # End the request iterator if the stream is dropped without being
        # closed, releasing the thread gRPC uses to consume it
        weakref.finalize(self, self._requests.put, None)

    def __repr__(self):
        return 'WatchStream<closed=%r>' % self._cancelled

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def __iter__(self):
        while True:
            resp = self.read()
            if resp is None:
                return
            yield resp

    def write(self, req):
        """Write a request to the stream.

        Parameters
        ----------
        req : WatchRequest
        """
        if self._writes_done:
            raise context.ValueError("Can't write to a stream after "
                                     "writes_done or close")
        if not isinstance(req, proto.WatchRequest):
            raise context.TypeError("req must be a WatchRequest")
        self._requests.put(req)

    def writes_done(self):
        """Signal that no more requests will be written. Idempotent."""
        if not self._writes_done:
            self._writes_done = True
            self._requests.put(None)

    def read(self):
        """Read the next response from the stream.

        Blocks until a response is available.

        Returns
        -------
        response : WatchResponse or None
            The next response, or None if the stream has ended or was closed
            locally.
        """
        try:
            return next(self._call)
        except StopIteration:
            return None
        except grpc.RpcError as _exc:
            exc = _exc

        if self._cancelled and exc.code() == grpc.StatusCode.CANCELLED:
            return None
        logger.debug("Watch stream failed: %s", exc.details())
        raise _error_from_rpc(exc)

    def create_watch(self, key, range_end=b'', start_revision=0,
                     prev_kv=False):
        """Register a new watch on this stream.

        Parameters
        ----------
        key : bytes
            The key to watch, or the start of the range to watch.
        range_end : bytes, optional
            The exclusive end of the range to watch. Use
            ``range_prefix(key)`` to watch all keys with prefix ``key``.
            Default is to watch ``key`` alone.
        start_revision : int, optional
            Replay events starting at this revision. Default is to only
            report new events.
        prev_kv : bool, optional
            If True, events include the previous key-value pair.
        """
        _check_bytes('key', key)
        _check_bytes('range_end', range_end)
        req = proto.WatchCreateRequest(key=key, range_end=range_end,
                                       start_revision=start_revision,
                                       prev_kv=prev_kv)
        self.write(proto.WatchRequest(create_request=req))

    def cancel_watch(self, watch_id):
        """Cancel a watch registered on this stream.

        The service acknowledges with a response having ``canceled`` set.

        Parameters
        ----------
        watch_id : int
            The id of the watch, as reported when it was created.
        """
        req = proto.WatchCancelRequest(watch_id=watch_id)
        self.write(proto.WatchRequest(cancel_request=req))

    def close(self):
        """Stop writing and cancel the stream. Idempotent."""
        self.writes_done()
        if not self._cancelled:
            self._cancelled = True
            self._call.cancel()
            logger.debug("Watch stream closed")

    cancel = close


class Client(object):
    """A client for an etcd v3 cluster.

    Wraps the ``KV``, ``Watch``, ``Lease`` and ``Lock`` services behind a
    single object, with one method per call. Every method performs exactly
    one round trip and returns the response message unchanged. Failed calls
    raise ``EtcdError`` (or a subclass) and are never retried, see
    ``exponential_backoff`` for retrying.

    Parameters
    ----------
    channel : grpc.Channel
        The channel to the cluster. The client takes ownership of the
        channel, closing it on ``close``.
    timeout : float, optional
        The default deadline in seconds for each call. Watch streams never
        use the default deadline. Default is no deadline.

    Examples
    --------
    >>> import grpc
    >>> from etcdrpc import Client, proto
    >>> with Client(grpc.insecure_channel('localhost:2379')) as client:
    ...     client.put(proto.PutRequest(key=b'key', value=b'value'))
    ...     resp = client.range(proto.RangeRequest(key=b'key'))
    """
    __slots__ = ('timeout', '_channel', '_kv', '_watch', '_lease', '_lock',
                 '__weakref__')

    def __init__(self, channel, timeout=None):
        self._init(proto.KVStub(channel),
                   proto.WatchStub(channel),
                   proto.LeaseStub(channel),
                   proto.LockStub(channel),
                   timeout=timeout)
        self._channel = channel

    def _init(self, kv_stub, watch_stub, lease_stub, lock_stub, timeout=None):
        if timeout is not None and timeout <= 0:
            raise context.ValueError("timeout must be > 0, or None")
        self._kv = kv_stub
        self._watch = watch_stub
        self._lease = lease_stub
        self._lock = lock_stub
        self._channel = None
        self.timeout = timeout

    @classmethod
    def from_stubs(cls, kv_stub, watch_stub, lease_stub, lock_stub,
                   timeout=None):
        """Create a client from existing service stubs.

        The stubs may be any objects providing the methods of the generated
        stubs (e.g. test doubles). No channel is owned.

        Parameters
        ----------
        kv_stub, watch_stub, lease_stub, lock_stub : object
            Stubs for the ``KV``, ``Watch``, ``Lease``, and ``Lock``
            services.
        timeout : float, optional
            The default deadline in seconds for each call.
        """
        self = object.__new__(cls)
        self._init(kv_stub, watch_stub, lease_stub, lock_stub,
                   timeout=timeout)
        return self

    @classmethod
    def from_config(cls, config=None):
        """Create a client connected to the configured endpoint.

        Opens a plaintext channel to ``config.endpoint``.

        Parameters
        ----------
        config : Config, optional
            The configuration. Defaults to ``Config.from_default()``.
        """
        if config is None:
            config = Config.from_default()
        elif not isinstance(config, Config):
            raise context.TypeError("config must be a Config")
        logger.debug("Connecting to %s", config.endpoint)
        return cls(grpc.insecure_channel(config.endpoint),
                   timeout=config.timeout)

    def __repr__(self):
        return 'Client<timeout=%r>' % self.timeout

    def close(self):
        """Closes the channel if owned by this client. No-op otherwise."""
        if self._channel is not None:
            self._channel.close()
            self._channel = None

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def _call(self, stub, method, req, timeout=None):
        if timeout is None:
            timeout = self.timeout
        try:
            return getattr(stub, method)(req, timeout=timeout)
        except grpc.RpcError as _exc:
            exc = _exc

        logger.debug("%s failed with %s: %s", method, exc.code(), exc.details())
        raise _error_from_rpc(exc)

    def put(self, req, timeout=None):
        """Store a key-value pair.

        Parameters
        ----------
        req : PutRequest
        timeout : float, optional
            The deadline for this call in seconds. Defaults to the client's
            ``timeout``.

        Returns
        -------
        PutResponse
        """
        return self._call(self._kv, 'Put', req, timeout=timeout)

    def range(self, req, timeout=None):
        """Read a key or range of keys.

        Parameters
        ----------
        req : RangeRequest
        timeout : float, optional
            The deadline for this call in seconds.

        Returns
        -------
        RangeResponse
        """
        return self._call(self._kv, 'Range', req, timeout=timeout)

    def delete_range(self, req, timeout=None):
        """Delete a key or range of keys.

        Parameters
        ----------
        req : DeleteRangeRequest
        timeout : float, optional
            The deadline for this call in seconds.

        Returns
        -------
        DeleteRangeResponse
        """
        return self._call(self._kv, 'DeleteRange', req, timeout=timeout)

    def transaction(self, req, timeout=None):
        """Atomically apply a compare-and-branch transaction.

        If all comparisons in ``req.compare`` hold, the operations in
        ``req.success`` are applied, otherwise those in ``req.failure``.
        ``succeeded`` on the response reports which branch ran. See
        ``etcdrpc.kv`` for helpers for building transactions.

        Parameters
        ----------
        req : TxnRequest
        timeout : float, optional
            The deadline for this call in seconds.

        Returns
        -------
        TxnResponse
        """
        return self._call(self._kv, 'Txn', req, timeout=timeout)

    def lease_grant(self, req, timeout=None):
        """Create a lease.

        Parameters
        ----------
        req : LeaseGrantRequest
        timeout : float, optional
            The deadline for this call in seconds.

        Returns
        -------
        LeaseGrantResponse
        """
        return self._call(self._lease, 'LeaseGrant', req, timeout=timeout)

    def lease_revoke(self, req, timeout=None):
        """Revoke a lease, deleting all keys attached to it.

        Parameters
        ----------
        req : LeaseRevokeRequest
        timeout : float, optional
            The deadline for this call in seconds.

        Returns
        -------
        LeaseRevokeResponse
        """
        return self._call(self._lease, 'LeaseRevoke', req, timeout=timeout)

    def lease_keep_alive(self, req, timeout=None):
        """Refresh a lease once.

        Opens a keep-alive stream, sends a single request, reads the single
        response, then waits for the stream to finish. No further refreshes
        are scheduled; call again to refresh again.

        Parameters
        ----------
        req : LeaseKeepAliveRequest
        timeout : float, optional
            The deadline for the whole exchange in seconds.

        Returns
        -------
        LeaseKeepAliveResponse
        """
        if timeout is None:
            timeout = self.timeout
        try:
            call = self._lease.LeaseKeepAlive(iter([req]), timeout=timeout)
            resp = next(call, None)
            # Drain the stream to surface its final status
            for _ in call:
                pass
        except grpc.RpcError as _exc:
            exc = _exc
        else:
            if resp is None:
                raise EtcdError("Lease keep-alive stream ended without a "
                                "response")
            return resp

        logger.debug("LeaseKeepAlive failed with %s: %s",
                     exc.code(), exc.details())
        raise _error_from_rpc(exc)

    def lease_time_to_live(self, req, timeout=None):
        """Get the remaining time to live of a lease.

        Parameters
        ----------
        req : LeaseTimeToLiveRequest
        timeout : float, optional
            The deadline for this call in seconds.

        Returns
        -------
        LeaseTimeToLiveResponse
        """
        return self._call(self._lease, 'LeaseTimeToLive', req,
                          timeout=timeout)

    def lock(self, req, timeout=None):
        """Acquire a distributed lock.

        Blocks until the lock is held. The returned ``key`` identifies
        ownership and is needed to release the lock.

        Parameters
        ----------
        req : LockRequest
        timeout : float, optional
            The deadline for this call in seconds.

        Returns
        -------
        LockResponse
        """
        return self._call(self._lock, 'Lock', req, timeout=timeout)

    def unlock(self, req, timeout=None):
        """Release a distributed lock.

        Parameters
        ----------
        req : UnlockRequest
        timeout : float, optional
            The deadline for this call in seconds.

        Returns
        -------
        UnlockResponse
        """
        return self._call(self._lock, 'Unlock', req, timeout=timeout)

    def make_watch_stream(self, req, timeout=None):
        """Open a watch stream and send an initial request.

        Parameters
        ----------
        req : WatchRequest
            The first request to write to the stream, usually a create
            request.
        timeout : float, optional
            The deadline for the life of the stream in seconds. The client's
            default timeout is not applied. Default is no deadline.

        Returns
        -------
        WatchStream
        """
        stream = WatchStream(self._watch, timeout=timeout)
        stream.write(req)
        logger.debug("Watch stream opened")
        return stream

    def watch_cancel(self, watch_id, timeout=None):
        """Cancel a watch by id on a new stream.

        Opens a new stream, sends a single cancel request and signals the
        end of writes. With a timeout, the service is then given until the
        deadline to end the stream before it's cancelled, so the request
        can't be cut off in transit. Without one, the stream is cancelled as
        soon as the request is written.

        Note that etcd scopes watch ids to the stream that created them, so
        against etcd this won't cancel a watch created on another stream.
        etcd also keeps the stream open after the end of writes, so with a
        timeout this call takes the full timeout. Use
        ``WatchStream.cancel_watch`` on the originating stream instead.

        Parameters
        ----------
        watch_id : int
            The watch to cancel.
        timeout : float, optional
            The deadline for this call in seconds.
        """
        if timeout is None:
            timeout = self.timeout
        req = proto.WatchRequest(
            cancel_request=proto.WatchCancelRequest(watch_id=watch_id))
        sent = threading.Event()
        finished = threading.Event()
        progress = threading.Event()

        def requests():
            yield req
            # resumed only once the request has been written to the transport
            sent.set()
            progress.set()

        def on_done(_):
            finished.set()
            progress.set()

        call = self._watch.Watch(requests(), timeout=timeout)
        call.add_done_callback(on_done)
        if timeout is None:
            progress.wait()
        else:
            finished.wait(timeout)
        call.cancel()

        code = call.code()
        if code == grpc.StatusCode.DEADLINE_EXCEEDED and sent.is_set():
            # the service held the stream open until the deadline
            return
        if code not in (grpc.StatusCode.OK, grpc.StatusCode.CANCELLED):
            logger.debug("Watch cancel failed with %s: %s",
                         code, call.details())
            raise _error_from_rpc(call)
