# coilnet

Building blocks for a node-level pod networking agent: a CNI request
handler, a garbage collector for address blocks and a route synchroniser,
all working against an in-memory store of cluster objects.

## Modules

- `coilnet.coild_server.CoildServer` handles CNI requests through `add`,
  `delete` and `check`, each taking a `CNIArgs`.
  - With `CoildConfig.enable_ipam` set, `add` reads the pool name from the
    pod's namespace annotation (`default` if absent), asks the node IPAM
    object to allocate addresses, and sets up the pod network; on failure it
    frees what it allocated. Being called in a chain (`IS_CHAINED=true`) is
    refused when IPAM is enabled.
  - Without IPAM, addresses are taken from `CNIArgs.ips` (see
    `get_pod_ips`).
  - With `CoildConfig.enable_egress` set, `add` reads the pod's
    `egress.coil.cybozu.com/<namespace>` annotations, looks up each `Egress`
    and its `Service`, keeps the destinations of the service's IP family,
    and passes the resulting `GWNets` list to the NAT setup object's
    `hook`; a returned hook is handed to the pod network's `setup_egress`.
  - Failures are raised as `coilnet.rpc.CNIError`.
  - Every call is logged with per-request fields and counted in
    `CoildServer.handled`, keyed by method name and status code name.
  - `run_gc(stop_event)` calls the node IPAM object's `gc` every
    `address_block_gc_interval` seconds until the event is set.

  The node IPAM, pod network and NAT setup objects are supplied by the
  caller: IPAM provides `allocate`, `free` and `gc`; the pod network provides
  `setup_ipam`, `setup_egress`, `destroy` and `check`; the NAT setup provides
  `hook(gwlist, logger)`.
- `coilnet.garbage_collector.GarbageCollector(store, interval)` deletes
  `AddressBlock` objects whose `coil.cybozu.com/node` label names a node that
  no longer exists. `delete_block` drops the block's finalizer first,
  retrying on conflicts. `collect` runs one pass; `start(stop_event)` runs a
  pass every `interval` seconds.
- `coilnet.router.Router(store, node_name, syncer, interval)` groups the
  address blocks of other nodes by those nodes' internal IPs into
  `GatewayInfo` entries and passes them to `syncer.sync`. `sync` runs once
  and records the number of routes in `routes_synced`. `start(stop_event,
  notify)` syncs whenever `notify` is set or the interval passes, counting
  runs in `sync_count`.
- `coilnet.resources` defines the objects (`Pod`, `Namespace`, `Service`,
  `Egress`, `AddressBlock`, `Node`, `NodeAddress`, `ObjectKey`) and
  `ObjectStore`, a thread-safe store with `get`, `list`, `create`, `update`
  and `delete`. Updates use optimistic locking by resource version, and
  deleting an object with finalizers only marks it for deletion. The store
  raises `NotFoundError` and `ConflictError`; `retry_on_conflict(func,
  backoff)` and `ignore_not_found(func)` wrap calls around them.
- `coilnet.rpc` holds `CNIArgs`, `AddResponse`, `StatusCode`, `ErrorCode`,
  `CNIError`, and the helpers `new_error` and `new_internal_error`.
- `coilnet.logfields` provides `logging_fields` (fields describing a
  `CNIArgs` request), `to_fields` (key/value list to dictionary) and
  `InterceptorLogger`.
- `coilnet.version.version()` returns the package version.

## Install

    pip install .

## Example

    from coilnet.resources import AddressBlock, Node, ObjectStore
    from coilnet.garbage_collector import GarbageCollector

    store = ObjectStore()
    store.create(Node(name="node1"))
    store.create(AddressBlock(name="default-0", labels={"coil.cybozu.com/node": "node2"}))

    GarbageCollector(store, interval=60.0).collect()
    print([b.name for b in store.list(AddressBlock)])   # []

## What it does not do

The package has no network listener and no command: `CoildServer` is called
directly from Python rather than served over a socket. It does not talk to a
cluster API server; objects live only in `ObjectStore`. It does not touch
kernel routes, links or NAT rules itself; that work belongs to the syncer,
pod network and NAT setup objects the caller supplies. Metrics are kept as
plain attributes, not exported.

## Tests

    pip install .[test]
    pytest