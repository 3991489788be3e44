from .kv_pb2 import KeyValue, Event
from .rpc_pb2 import (ResponseHeader,
                      RangeRequest, RangeResponse,
                      PutRequest, PutResponse,
                      DeleteRangeRequest, DeleteRangeResponse,
                      RequestOp, ResponseOp, Compare,
                      TxnRequest, TxnResponse)
from .rpc_pb2 import (WatchRequest, WatchCreateRequest, WatchCancelRequest,
                      WatchProgressRequest, WatchResponse)
from .rpc_pb2 import (LeaseGrantRequest, LeaseGrantResponse,
                      LeaseRevokeRequest, LeaseRevokeResponse,
                      LeaseKeepAliveRequest, LeaseKeepAliveResponse,
                      LeaseTimeToLiveRequest, LeaseTimeToLiveResponse)
from .v3lock_pb2 import LockRequest, LockResponse, UnlockRequest, UnlockResponse
from .rpc_pb2_grpc import (KVStub, WatchStub, LeaseStub,
                           KVServicer, WatchServicer, LeaseServicer,
                           add_KVServicer_to_server,
                           add_WatchServicer_to_server,
                           add_LeaseServicer_to_server)
from .v3lock_pb2_grpc import (LockStub, LockServicer,
                              add_LockServicer_to_server)
