import argparse
import datetime
import logging
import sys
import traceback

from . import __version__, proto
from .core import Client, properties
from .exceptions import context, EtcdError
from .kv import range_prefix
from .model import Config, LogLevel
from .utils import exponential_backoff, format_table, humanize_timedelta


class _Formatter(argparse.HelpFormatter):
    """Format with a fixed argument width, due to bug in argparse measuring
    argument widths"""
    @property
    def _action_max_length(self):
        return 16

    @_action_max_length.setter
    def _action_max_length(self, value):
        pass


class _VersionAction(argparse.Action):
    def __init__(self, option_strings, version=None, dest=argparse.SUPPRESS,
                 default=argparse.SUPPRESS, help="Show version then exit"):
        super(_VersionAction, self).__init__(option_strings=option_strings,
                                             dest=dest, default=default,
                                             nargs=0, help=help)
        self.version = version

    def __call__(self, parser, namespace, values, option_string=None):
        print(self.version % {'prog': parser.prog})
        sys.exit(0)


def fail(msg, prefix=True):
    if prefix:
        msg = 'Error: %s' % msg
    print(msg, file=sys.stderr)
    context.is_cli = False  # contextmanager skipped by SystemExit
    sys.exit(1)


def add_help(parser):
    parser.add_argument("--help", "-h", action='help',
                        help="Show this help message then exit")


def arg(*args, **kwargs):
    return (args, kwargs)


def subcommand(subparsers, name, help, *args):
    def _(func):
        parser = subparsers.add_parser(name,
                                       help=help,
                                       formatter_class=_Formatter,
                                       description=help,
                                       add_help=False)
        parser.set_defaults(func=func)
        for arg in args:
            parser.add_argument(*arg[0], **arg[1])
        add_help(parser)
        func.parser = parser
        return func
    return _


def node(subs, name, help):
    @subcommand(subs, name, help)
    def f():
        fail(f.parser.format_usage(), prefix=False)
    f.subs = f.parser.add_subparsers(metavar='command', dest='command')
    f.subs.required = True
    return f


def write_stdout_bytes(b):
    sys.stdout.flush()
    sys.stdout.buffer.write(b)
    sys.stdout.flush()


def read_stdin_bytes():
    return sys.stdin.buffer.read()


def lease_id(x):
    """Parse a hex lease id"""
    return int(x, 16)


def encoded(x):
    return x.encode('utf-8')


def positive_int(x):
    n = int(x)
    if n < 1:
        raise argparse.ArgumentTypeError("must be at least 1, got %s" % x)
    return n


entry = argparse.ArgumentParser(prog="etcdrpc",
                                description="Interact with an etcd cluster",
                                formatter_class=_Formatter,
                                add_help=False)
add_help(entry)
entry.add_argument("--version", action=_VersionAction,
                   version='%(prog)s ' + __version__,
                   help="Show version then exit")
entry.add_argument("--log-level", type=LogLevel,
                   default=properties.log_level,
                   help=("The log level, one of {DEBUG, INFO, WARNING, ERROR, "
                         "CRITICAL}. Default is WARNING, set "
                         "ETCDRPC_LOG_LEVEL to change"))
entry.set_defaults(func=lambda: fail(entry.format_usage(), prefix=False))
entry_subs = entry.add_subparsers(metavar='command', dest='command')
entry_subs.required = True

# Common arguments
key = arg('key', type=encoded, metavar='KEY', help='The key')
retry = arg('--retry', action='store_true',
            help=('If set, retry failed requests with exponential backoff, '
                  'using the backoff settings from the configuration'))
lease_opt = arg('--lease', type=lease_id, default=0, metavar='ID',
                help='Attach to this lease (hex id)')
lease_id_arg = arg('id', type=lease_id, metavar='ID',
                   help='The lease id, in hex')


def get_client():
    return Client.from_config(Config.from_default())


def _run(job, retry=False):
    if retry:
        return exponential_backoff(job, Config.from_default().backoff)
    return job()


# Nodes, in order they should be in docs
kv = node(entry_subs, 'kv', 'Manage keys')
lease = node(entry_subs, 'lease', 'Manage leases')
lock = node(entry_subs, 'lock', 'Manage distributed locks')
config = node(entry_subs, 'config', 'Manage configuration')


######################
# KEY-VALUE COMMANDS #
######################

@subcommand(kv.subs,
            'get', 'Get the value of a key',
            key, retry)
def kv_get(key, retry=False):
    with get_client() as client:
        resp = _run(lambda: client.range(proto.RangeRequest(key=key)), retry)
    if not resp.kvs:
        raise context.KeyError(key.decode('utf-8', 'replace'))
    write_stdout_bytes(resp.kvs[0].value + b'\n')


@subcommand(kv.subs,
            'put', 'Set the value of a key',
            key,
            arg('--value',
                type=encoded,
                default=None,
                help='The value to put. If not provided, will be read from stdin.'),
            lease_opt,
            retry)
def kv_put(key, value=None, lease=0, retry=False):
    if value is None:
        value = read_stdin_bytes()
    req = proto.PutRequest(key=key, value=value, lease=lease)
    with get_client() as client:
        _run(lambda: client.put(req), retry)


@subcommand(kv.subs,
            'del', 'Delete a key',
            key,
            arg('--prefix', action='store_true',
                help='Delete all keys starting with KEY'))
def kv_del(key, prefix=False):
    req = proto.DeleteRangeRequest(key=key)
    if prefix:
        req.range_end = range_prefix(key)
    with get_client() as client:
        resp = client.delete_range(req)
    if not prefix and not resp.deleted:
        raise context.KeyError(key.decode('utf-8', 'replace'))


@subcommand(kv.subs,
            'ls', 'List keys',
            arg('--prefix', type=encoded, default=None,
                help='Only list keys starting with this prefix'))
def kv_ls(prefix=None):
    if prefix:
        req = proto.RangeRequest(key=prefix, range_end=range_prefix(prefix),
                                 keys_only=True)
    else:
        req = proto.RangeRequest(key=b'\x00', range_end=b'\x00',
                                 keys_only=True)
    with get_client() as client:
        resp = client.range(req)
    header = ['key', 'revision', 'lease']
    data = [(kv.key.decode('utf-8', 'replace'), kv.mod_revision,
             '%x' % kv.lease if kv.lease else '-')
            for kv in resp.kvs]
    print(format_table(header, data))


##################
# LEASE COMMANDS #
##################

@subcommand(lease.subs,
            'grant', 'Create a lease, printing its id',
            arg('ttl', type=int, metavar='TTL',
                help='The lease time to live, in seconds'))
def lease_grant(ttl):
    with get_client() as client:
        resp = client.lease_grant(proto.LeaseGrantRequest(TTL=ttl))
    if resp.error:
        fail(resp.error)
    print('%x' % resp.ID)


@subcommand(lease.subs,
            'revoke', 'Revoke a lease, deleting all attached keys',
            lease_id_arg)
def lease_revoke(id):
    with get_client() as client:
        client.lease_revoke(proto.LeaseRevokeRequest(ID=id))


@subcommand(lease.subs,
            'keepalive', 'Refresh a lease once, printing the new TTL',
            lease_id_arg)
def lease_keepalive(id):
    with get_client() as client:
        resp = client.lease_keep_alive(proto.LeaseKeepAliveRequest(ID=id))
    if resp.TTL <= 0:
        fail("Lease %x has expired or been revoked" % id)
    print(resp.TTL)


@subcommand(lease.subs,
            'ttl', 'Time remaining on a lease',
            lease_id_arg)
def lease_ttl(id):
    with get_client() as client:
        resp = client.lease_time_to_live(proto.LeaseTimeToLiveRequest(ID=id))
    if resp.TTL < 0:
        fail("Lease %x has expired or been revoked" % id)
    header = ['id', 'ttl', 'granted']
    data = [('%x' % resp.ID,
             humanize_timedelta(datetime.timedelta(seconds=resp.TTL)),
             humanize_timedelta(datetime.timedelta(seconds=resp.grantedTTL)))]
    print(format_table(header, data))


#################
# LOCK COMMANDS #
#################

@subcommand(lock.subs,
            'acquire', 'Acquire a lock, printing the ownership key',
            arg('name', type=encoded, metavar='NAME',
                help='The lock name'),
            lease_opt)
def lock_acquire(name, lease=0):
    with get_client() as client:
        resp = client.lock(proto.LockRequest(name=name, lease=lease))
    write_stdout_bytes(resp.key + b'\n')


@subcommand(lock.subs,
            'release', 'Release a lock',
            arg('key', type=encoded, metavar='KEY',
                help='The ownership key returned when acquiring the lock'))
def lock_release(key):
    with get_client() as client:
        client.unlock(proto.UnlockRequest(key=key))


#################
# WATCH COMMAND #
#################

@subcommand(entry_subs,
            'watch', 'Watch a key for changes, printing each event',
            key,
            arg('--prefix', action='store_true',
                help='Watch all keys starting with KEY'),
            arg('--count', type=positive_int, default=None,
                help='Exit after this many events. Default is to run forever'))
def watch(key, prefix=False, count=None):
    req = proto.WatchCreateRequest(key=key)
    if prefix:
        req.range_end = range_prefix(key)
    with get_client() as client:
        with client.make_watch_stream(
                proto.WatchRequest(create_request=req)) as stream:
            seen = 0
            for resp in stream:
                if resp.canceled:
                    fail(resp.cancel_reason or "Watch was canceled")
                for event in resp.events:
                    print('%s %s %s' % (proto.Event.EventType.Name(event.type),
                                        event.kv.key.decode('utf-8', 'replace'),
                                        event.kv.value.decode('utf-8',
                                                              'replace')))
                    seen += 1
                    if count is not None and seen >= count:
                        return


##################
# CONFIG COMMAND #
##################

@subcommand(config.subs,
            'show', 'Show the current configuration')
def config_show():
    print(Config.from_default().to_yaml(skip_nulls=True), end='')


def main(args=None):
    kwargs = vars(entry.parse_args(args=args))
    kwargs.pop('command', None)  # Drop unnecessary `command` arg
    log_level = kwargs.pop('log_level')
    logging.basicConfig(level=getattr(logging, str(log_level)),
                        format='%(asctime)s %(levelname)s %(name)s: '
                               '%(message)s')
    func = kwargs.pop('func')
    try:
        with context.set_cli():
            func(**kwargs)
    except KeyError as exc:
        fail("Key %s is not set" % str(exc))
    except EtcdError as exc:
        fail(str(exc))
    except Exception:
        fail("Unexpected Error:\n%s" % traceback.format_exc(), prefix=False)
    sys.exit(0)


if __name__ == '__main__':
    main()
