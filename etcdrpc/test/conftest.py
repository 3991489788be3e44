import queue
import threading
import time
from concurrent import futures
from contextlib import contextmanager

import grpc
import pytest

import etcdrpc
from etcdrpc import proto


class _Abort(Exception):
    def __init__(self, code, details):
        super(_Abort, self).__init__(details)
        self.code = code
        self.details = details


def _in_range(key, start, end):
    if not end:
        return key == start
    if end == b'\x00':
        return key >= start
    return start <= key < end


def _compare(result, actual, expected):
    if result == proto.Compare.EQUAL:
        return actual == expected
    elif result == proto.Compare.GREATER:
        return actual > expected
    elif result == proto.Compare.LESS:
        return actual < expected
    return actual != expected


class _Lease(object):
    def __init__(self, ttl):
        self.ttl = ttl
        self.expires = time.monotonic() + ttl
        self.keys = set()

    def remaining(self):
        return max(int(round(self.expires - time.monotonic())), 0)


class _Watcher(object):
    def __init__(self, watch_id, key, range_end, prev_kv, out):
        self.watch_id = watch_id
        self.key = key
        self.range_end = range_end
        self.prev_kv = prev_kv
        self.out = out


class FakeEtcd(proto.KVServicer, proto.WatchServicer, proto.LeaseServicer,
               proto.LockServicer):
    """An in-memory etcd, good enough for tests.

    Revisions, transactions, stream-scoped watches, leases (without
    expiration), and locks follow etcd's semantics.
    """
    def __init__(self):
        self.cond = threading.Condition(threading.RLock())
        self.revision = 1
        self.data = {}
        self.leases = {}
        self.watchers = set()
        self.watch_cancels = []
        self._next_lease = 0x1000
        self._next_lock = 0
        self.address = None

    def _header(self):
        return proto.ResponseHeader(cluster_id=1, member_id=1,
                                    revision=self.revision, raft_term=1)

    def _abort(self, context, exc):
        context.abort(exc.code, exc.details)

    # Storage operations, all called with ``cond`` held

    def _range(self, req):
        keys = sorted(k for k in self.data
                      if _in_range(k, req.key, req.range_end))
        resp = proto.RangeResponse(count=len(keys))
        if req.count_only:
            return resp
        if req.limit and len(keys) > req.limit:
            keys = keys[:req.limit]
            resp.more = True
        for k in keys:
            kv = resp.kvs.add()
            kv.CopyFrom(self.data[k])
            if req.keys_only:
                kv.value = b''
        return resp

    def _put(self, req, rev, events):
        if req.lease and req.lease not in self.leases:
            raise _Abort(grpc.StatusCode.NOT_FOUND,
                         'etcdserver: requested lease not found')
        prev = self.data.get(req.key)
        kv = proto.KeyValue(key=req.key, value=req.value, lease=req.lease,
                            mod_revision=rev)
        if prev is None:
            kv.create_revision = rev
            kv.version = 1
        else:
            kv.create_revision = prev.create_revision
            kv.version = prev.version + 1
            if prev.lease:
                self.leases[prev.lease].keys.discard(req.key)
        if req.lease:
            self.leases[req.lease].keys.add(req.key)
        self.data[req.key] = kv
        event = proto.Event(type=proto.Event.PUT, kv=kv)
        if prev is not None:
            event.prev_kv.CopyFrom(prev)
        events.append(event)
        resp = proto.PutResponse()
        if req.prev_kv and prev is not None:
            resp.prev_kv.CopyFrom(prev)
        return resp

    def _delete(self, req, rev, events):
        keys = sorted(k for k in self.data
                      if _in_range(k, req.key, req.range_end))
        resp = proto.DeleteRangeResponse(deleted=len(keys))
        for k in keys:
            prev = self.data.pop(k)
            if prev.lease and prev.lease in self.leases:
                self.leases[prev.lease].keys.discard(k)
            events.append(proto.Event(type=proto.Event.DELETE,
                                      kv=proto.KeyValue(key=k,
                                                        mod_revision=rev),
                                      prev_kv=prev))
            if req.prev_kv:
                resp.prev_kvs.add().CopyFrom(prev)
        return resp

    def _check(self, compare):
        kv = self.data.get(compare.key)
        target = compare.target
        if target == proto.Compare.VALUE:
            if kv is None:
                return False
            return _compare(compare.result, kv.value, compare.value)
        field = {proto.Compare.VERSION: 'version',
                 proto.Compare.CREATE: 'create_revision',
                 proto.Compare.MOD: 'mod_revision',
                 proto.Compare.LEASE: 'lease'}[target]
        actual = getattr(kv, field) if kv is not None else 0
        return _compare(compare.result, actual, getattr(compare, field))

    def _apply(self, op, rev, events):
        which = op.WhichOneof('request')
        if which == 'request_range':
            return proto.ResponseOp(response_range=self._range(op.request_range))
        elif which == 'request_put':
            return proto.ResponseOp(
                response_put=self._put(op.request_put, rev, events))
        elif which == 'request_delete_range':
            return proto.ResponseOp(
                response_delete_range=self._delete(op.request_delete_range,
                                                   rev, events))
        raise _Abort(grpc.StatusCode.UNIMPLEMENTED,
                     'nested transactions are not supported')

    def _commit(self, events):
        if not events:
            return
        self.revision += 1
        for w in list(self.watchers):
            matched = []
            for event in events:
                if _in_range(event.kv.key, w.key, w.range_end):
                    event = proto.Event.FromString(event.SerializeToString())
                    if not w.prev_kv:
                        event.ClearField('prev_kv')
                    matched.append(event)
            if matched:
                w.out.put(proto.WatchResponse(header=self._header(),
                                              watch_id=w.watch_id,
                                              events=matched))
        self.cond.notify_all()

    def _revoke(self, lease_id):
        lease = self.leases.pop(lease_id, None)
        if lease is None:
            raise _Abort(grpc.StatusCode.NOT_FOUND,
                         'etcdserver: requested lease not found')
        events = []
        rev = self.revision + 1
        for k in sorted(lease.keys):
            self._delete(proto.DeleteRangeRequest(key=k), rev, events)
        self._commit(events)

    # KV

    def Range(self, request, context):
        with self.cond:
            resp = self._range(request)
            resp.header.CopyFrom(self._header())
            return resp

    def Put(self, request, context):
        with self.cond:
            events = []
            try:
                resp = self._put(request, self.revision + 1, events)
            except _Abort as exc:
                self._abort(context, exc)
            self._commit(events)
            resp.header.CopyFrom(self._header())
            return resp

    def DeleteRange(self, request, context):
        with self.cond:
            events = []
            resp = self._delete(request, self.revision + 1, events)
            self._commit(events)
            resp.header.CopyFrom(self._header())
            return resp

    def Txn(self, request, context):
        with self.cond:
            succeeded = all(self._check(c) for c in request.compare)
            ops = request.success if succeeded else request.failure
            events = []
            rev = self.revision + 1
            try:
                responses = [self._apply(op, rev, events) for op in ops]
            except _Abort as exc:
                self._abort(context, exc)
            self._commit(events)
            return proto.TxnResponse(header=self._header(),
                                     succeeded=succeeded,
                                     responses=responses)

    # Watch

    def Watch(self, request_iterator, context):
        out = queue.Queue()
        watchers = {}
        next_id = [0]
        context.add_callback(lambda: out.put(None))

        def consume():
            try:
                for req in request_iterator:
                    self._handle_watch_request(req, watchers, next_id, out)
            except grpc.RpcError:
                pass

        consumer = threading.Thread(target=consume, daemon=True)
        consumer.start()
        try:
            while True:
                resp = out.get()
                if resp is None:
                    break
                yield resp
        finally:
            with self.cond:
                self.watchers.difference_update(watchers.values())

    def _handle_watch_request(self, req, watchers, next_id, out):
        which = req.WhichOneof('request_union')
        with self.cond:
            if which == 'create_request':
                create = req.create_request
                watcher = _Watcher(next_id[0], create.key, create.range_end,
                                   create.prev_kv, out)
                next_id[0] += 1
                watchers[watcher.watch_id] = watcher
                self.watchers.add(watcher)
                out.put(proto.WatchResponse(header=self._header(),
                                            watch_id=watcher.watch_id,
                                            created=True))
            elif which == 'cancel_request':
                watch_id = req.cancel_request.watch_id
                self.watch_cancels.append(watch_id)
                watcher = watchers.pop(watch_id, None)
                if watcher is not None:
                    self.watchers.discard(watcher)
                    out.put(proto.WatchResponse(header=self._header(),
                                                watch_id=watch_id,
                                                canceled=True))
            elif which == 'progress_request':
                out.put(proto.WatchResponse(header=self._header(),
                                            watch_id=-1))

    # Lease

    def LeaseGrant(self, request, context):
        with self.cond:
            lease_id = request.ID
            if not lease_id:
                lease_id = self._next_lease
                self._next_lease += 1
            if lease_id in self.leases:
                context.abort(grpc.StatusCode.FAILED_PRECONDITION,
                              'etcdserver: lease already exists')
            self.leases[lease_id] = _Lease(request.TTL)
            return proto.LeaseGrantResponse(header=self._header(),
                                            ID=lease_id, TTL=request.TTL)

    def LeaseRevoke(self, request, context):
        with self.cond:
            try:
                self._revoke(request.ID)
            except _Abort as exc:
                self._abort(context, exc)
            return proto.LeaseRevokeResponse(header=self._header())

    def LeaseKeepAlive(self, request_iterator, context):
        for req in request_iterator:
            with self.cond:
                lease = self.leases.get(req.ID)
                resp = proto.LeaseKeepAliveResponse(header=self._header(),
                                                    ID=req.ID)
                if lease is not None:
                    lease.expires = time.monotonic() + lease.ttl
                    resp.TTL = lease.ttl
            yield resp

    def LeaseTimeToLive(self, request, context):
        with self.cond:
            resp = proto.LeaseTimeToLiveResponse(header=self._header(),
                                                 ID=request.ID)
            lease = self.leases.get(request.ID)
            if lease is None:
                resp.TTL = -1
                return resp
            resp.TTL = lease.remaining()
            resp.grantedTTL = lease.ttl
            if request.keys:
                resp.keys.extend(sorted(lease.keys))
            return resp

    # Lock

    def _lock_owner(self, prefix):
        owners = [kv for k, kv in self.data.items() if k.startswith(prefix)]
        return min(owners, key=lambda kv: kv.create_revision).key

    def Lock(self, request, context):
        prefix = request.name + b'/'
        with self.cond:
            if request.lease:
                suffix = request.lease
            else:
                suffix = self._next_lock
                self._next_lock += 1
            key = prefix + b'%x' % suffix
            events = []
            try:
                self._put(proto.PutRequest(key=key, lease=request.lease),
                          self.revision + 1, events)
            except _Abort as exc:
                self._abort(context, exc)
            self._commit(events)

            while key in self.data and self._lock_owner(prefix) != key:
                if not context.is_active():
                    break
                self.cond.wait(0.05)

            if key not in self.data or not context.is_active():
                events = []
                self._delete(proto.DeleteRangeRequest(key=key),
                             self.revision + 1, events)
                self._commit(events)
                context.abort(grpc.StatusCode.CANCELLED,
                              'lock acquisition abandoned')
            return proto.LockResponse(header=self._header(), key=key)

    def Unlock(self, request, context):
        with self.cond:
            events = []
            self._delete(proto.DeleteRangeRequest(key=request.key),
                         self.revision + 1, events)
            self._commit(events)
            return proto.UnlockResponse(header=self._header())


@pytest.fixture
def etcd():
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=16))
    fake = FakeEtcd()
    proto.add_KVServicer_to_server(fake, server)
    proto.add_WatchServicer_to_server(fake, server)
    proto.add_LeaseServicer_to_server(fake, server)
    proto.add_LockServicer_to_server(fake, server)
    port = server.add_insecure_port('127.0.0.1:0')
    server.start()
    fake.address = '127.0.0.1:%d' % port
    try:
        yield fake
    finally:
        server.stop(None)


@pytest.fixture
def client(etcd):
    with etcdrpc.Client(grpc.insecure_channel(etcd.address),
                        timeout=10) as client:
        yield client


@contextmanager
def set_etcdrpc_config(tmpdir, endpoint=None, timeout=None):
    mapping = etcdrpc.properties._mapping
    old = dict(mapping)
    try:
        mapping['config_dir'] = str(tmpdir)
        mapping['endpoint'] = endpoint
        mapping['timeout'] = timeout
        yield str(tmpdir)
    finally:
        mapping.clear()
        mapping.update(old)


@pytest.fixture
def etcdrpc_config(tmpdir_factory):
    with set_etcdrpc_config(tmpdir_factory.mktemp('config')) as config:
        yield config
