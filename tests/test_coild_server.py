import ipaddress
import json
import logging
import threading

import pytest

from coilnet.coild_server import (
    CoildConfig,
    CoildServer,
    GWNets,
    PodNetConf,
    get_pod_ips,
    get_settings,
)
from coilnet.resources import Egress, Namespace, ObjectKey, ObjectStore, Pod, Service
from coilnet.rpc import CNIArgs, CNIError, StatusCode

LOGGER_NAME = "tests.coild"


class MockNodeIPAM:
    def __init__(self, fail_gc=False):
        self.n_allocate = 0
        self.n_free = 0
        self.n_gc = 0
        self.err_free = False
        self.fail_gc = fail_gc
        self.gc_twice = threading.Event()

    def allocate(self, pool_name, container_id, iface):
        self.n_allocate += 1
        table = {
            ("default", "pod1"): ("10.1.2.3", "fd02::1"),
            ("default", "nat-client1"): ("10.1.2.4", "fd02::2"),
            ("default", "nat-client2"): ("10.1.2.5", "fd02::3"),
            ("global", "dns1"): ("8.8.8.8", None),
        }
        if (pool_name, container_id) not in table:
            raise RuntimeError("some error")
        v4, v6 = table[(pool_name, container_id)]
        return ipaddress.ip_address(v4), (ipaddress.ip_address(v6) if v6 else None)

    def free(self, container_id, iface):
        self.n_free += 1
        if self.err_free:
            raise RuntimeError("free failure")

    def gc(self):
        self.n_gc += 1
        if self.n_gc >= 2:
            self.gc_twice.set()
        if self.fail_gc:
            raise RuntimeError("gc failure")


class MockPodNetwork:
    def __init__(self):
        self.n_setup = 0
        self.n_check = 0
        self.n_destroy = 0
        self.err_setup = False
        self.err_destroy = False
        self.expected = ""
        self.egress_calls = []

    def setup_ipam(self, ns_path, pod_name, pod_ns, conf):
        self.n_setup += 1
        if self.err_setup:
            raise RuntimeError("setup failure")
        ips = [
            {"address": f"{ip}/{ip.max_prefixlen}"}
            for ip in (conf.ipv4, conf.ipv6)
            if ip is not None
        ]
        return {"ips": ips}

    def setup_egress(self, ns_path, conf, hook):
        self.egress_calls.append((ns_path, conf))

    def check(self, container_id, iface):
        self.n_check += 1
        if container_id in ("pod1", "dns1", self.expected):
            return
        raise RuntimeError("check failure")

    def destroy(self, container_id, iface):
        self.n_destroy += 1
        if self.err_destroy:
            raise RuntimeError("destroy failure")


class MockNATSetup:
    def __init__(self):
        self.gwnets = None

    def hook(self, gwnets, logger):
        self.gwnets = gwnets
        return None


@pytest.fixture
def store():
    s = ObjectStore()
    s.create(Namespace(name="ns1"))
    s.create(Namespace(name="ns2", annotations={"coil.cybozu.com/pool": "global"}))
    return s


def make_server(store, ipam=True, egress=True, alias_calls=None, interval=10.0, fail_gc=False):
    node_ipam = MockNodeIPAM(fail_gc=fail_gc)
    pod_net = MockPodNetwork()
    nat = MockNATSetup()

    def alias(conf, pod, if_name):
        if alias_calls is not None:
            alias_calls.append((conf, pod.name, if_name))

    server = CoildServer(
        store,
        node_ipam,
        pod_net,
        nat,
        CoildConfig(enable_ipam=ipam, enable_egress=egress, address_block_gc_interval=interval),
        logger=logging.getLogger(LOGGER_NAME),
        alias_func=alias,
    )
    return server, node_ipam, pod_net, nat


def cni_args(name=None, namespace=None, container_id="pod1", netns="/run/netns/foo", **kw):
    args = {}
    if name is not None:
        args["K8S_POD_NAME"] = name
    if namespace is not None:
        args["K8S_POD_NAMESPACE"] = namespace
    return CNIArgs(container_id=container_id, ifname="eth0", netns=netns, args=args, **kw)


def test_add_without_pod_fails(store):
    server, *_ = make_server(store)
    with pytest.raises(CNIError) as info:
        server.add(cni_args("foo", "ns1"))
    assert info.value.code == StatusCode.INTERNAL
    assert info.value.msg == "failed to get pod"
    assert server.handled[("Add", "INTERNAL")] == 1


def test_add_full_flow(store, caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    store.create(Pod(name="foo", namespace="ns1"))
    server, node_ipam, pod_net, _ = make_server(store)

    response = server.add(cni_args("foo", "ns1", interfaces={"eth0": False}))
    result = json.loads(response.result)
    assert len(result["ips"]) == 2

    finished = [r for r in caplog.records if r.getMessage().startswith("finished call")]
    assert len(finished) == 1
    fields = finished[0].fields
    assert fields["grpc.method"] == "Add"
    assert fields["grpc.code"] == "OK"
    assert fields["grpc.request.netns"] == "/run/netns/foo"
    assert fields["grpc.request.container_id"] == "pod1"
    assert fields["grpc.request.ifname"] == "eth0"
    assert fields["grpc.request.pod.name"] == "foo"
    assert fields["grpc.request.pod.namespace"] == "ns1"
    assert server.handled[("Add", "OK")] == 1

    store.create(Pod(name="bar", namespace="ns2"))
    bar = dict(name="bar", namespace="ns2", container_id="dns1", netns="/run/netns/bar")

    pod_net.err_setup = True
    with pytest.raises(CNIError) as info:
        server.add(cni_args(**bar))
    assert info.value.msg == "failed to setup pod network IPAM"
    assert node_ipam.n_free == 1

    pod_net.err_setup = False
    result = json.loads(server.add(cni_args(**bar)).result)
    assert result["ips"] == [{"address": "8.8.8.8/32"}]

    store.create(Pod(name="zot", namespace="ns1"))
    zot = dict(name="zot", namespace="ns1", container_id="hoge", netns="/run/netns/zot")
    with pytest.raises(CNIError) as info:
        server.add(cni_args(**zot))
    assert info.value.msg == "failed to allocate address"

    server.check(cni_args(**bar))
    with pytest.raises(CNIError) as info:
        server.check(cni_args(**zot))
    assert info.value.msg == "check failed"

    server.delete(cni_args(**bar))
    assert pod_net.n_destroy == 1

    node_ipam.err_free = True
    with pytest.raises(CNIError) as info:
        server.delete(cni_args(**bar))
    assert info.value.msg == "failed to free addresses"

    node_ipam.err_free = False
    pod_net.err_destroy = True
    with pytest.raises(CNIError) as info:
        server.delete(cni_args(**bar))
    assert info.value.msg == "failed to destroy pod network"


def test_egress_only_check_uses_pod_uid(store):
    store.create(Pod(name="bar", namespace="ns2"))
    store.create(Pod(name="zot", namespace="ns1"))
    server, _, pod_net, _ = make_server(store, ipam=False)

    pod_net.expected = store.get(Pod, ObjectKey("bar", "ns2")).uid
    server.check(cni_args("bar", "ns2", container_id="other"))
    assert pod_net.n_check == 1

    pod_net.expected = "forced error"
    with pytest.raises(CNIError) as info:
        server.check(cni_args("zot", "ns1", container_id="hoge"))
    assert info.value.msg == "check failed"


def test_egress_only_add_sets_alias_and_uses_given_ips(store):
    store.create(Pod(name="foo", namespace="ns1"))
    calls = []
    server, node_ipam, _, _ = make_server(store, ipam=False, alias_calls=calls)
    response = server.add(
        cni_args(
            "foo", "ns1",
            interfaces={"lo": True, "veth1": False},
            ips=["10.1.2.3", "fd02::1"],
        )
    )
    assert json.loads(response.result) == {"cniVersion": "1.0.0"}
    assert node_ipam.n_allocate == 0
    conf, pod_name, if_name = calls[0]
    assert pod_name == "foo"
    assert if_name == "veth1"
    assert conf == PodNetConf(
        container_id="pod1",
        iface="eth0",
        ipv4=ipaddress.ip_address("10.1.2.3"),
        ipv6=ipaddress.ip_address("fd02::1"),
        pool_name="",
    )


def test_chained_with_ipam_is_rejected(store):
    store.create(Pod(name="foo", namespace="ns1"))
    server, node_ipam, *_ = make_server(store)
    args = cni_args("foo", "ns1")
    args.args["IS_CHAINED"] = "true"
    with pytest.raises(CNIError) as info:
        server.add(args)
    assert info.value.details == "configuration error"
    assert node_ipam.n_allocate == 0


def test_foo_over_udp_nat(store):
    store.create(
        Pod(
            name="nat-client1",
            namespace="ns1",
            annotations={"egress.coil.cybozu.com/ns2": "egress"},
        )
    )
    server, _, _, nat = make_server(store)
    args = cni_args("nat-client1", "ns1", container_id="nat-client1",
                    netns="/run/netns/nat-client1", interfaces={"eth0": False})

    with pytest.raises(CNIError) as info:
        server.add(args)
    assert info.value.msg == "failed to setup NAT hook"
    assert "failed to get Egress ns2/egress" in info.value.details

    store.create(
        Egress(name="egress", namespace="ns2", destinations=["192.168.0.0/16", "fd20::/112"])
    )
    with pytest.raises(CNIError) as info:
        server.add(args)
    assert "failed to get Service ns2/egress" in info.value.details

    store.create(Service(name="egress", namespace="ns2", cluster_ip="10.0.0.5"))
    server.add(args)
    assert nat.gwnets == [
        GWNets(
            gateway=ipaddress.ip_address("10.0.0.5"),
            networks=[ipaddress.ip_network("192.168.0.0/16")],
            sport_auto=False,
        )
    ]


def test_invalid_cluster_ip(store):
    store.create(Pod(name="p", namespace="ns1", annotations={"egress.coil.cybozu.com/ns2": "eg"}))
    store.create(Egress(name="eg", namespace="ns2", destinations=["0.0.0.0/0"]))
    store.create(Service(name="eg", namespace="ns2", cluster_ip="None"))
    server, *_ = make_server(store, ipam=False)
    with pytest.raises(CNIError) as info:
        server.add(cni_args("p", "ns1"))
    assert "invalid ClusterIP in Service ns2/eg" in info.value.details


def test_run_gc_keeps_running_after_failures(store):
    server, node_ipam, *_ = make_server(store, interval=0.01, fail_gc=True)
    stop = threading.Event()
    worker = threading.Thread(target=server.run_gc, args=(stop,))
    worker.start()
    reached = node_ipam.gc_twice.wait(2)
    stop.set()
    worker.join(2)
    assert reached
    assert node_ipam.n_gc >= 2
    assert not worker.is_alive()


def test_need_leader_election(store):
    server, *_ = make_server(store)
    assert server.need_leader_election() is False


def test_get_pod_ips():
    v4, v6 = get_pod_ips(["bad", "fd02::1", "10.1.2.3", "10.1.2.4"])
    assert v4 == ipaddress.ip_address("10.1.2.3")
    assert v6 == ipaddress.ip_address("fd02::1")
    assert get_pod_ips([]) == (None, None)


@pytest.mark.parametrize(
    "value,expected", [(None, False), ("true", True), ("1", True), ("F", False)]
)
def test_get_settings(value, expected):
    args = CNIArgs(args={} if value is None else {"IS_CHAINED": value})
    assert get_settings(args) is expected


def test_get_settings_invalid():
    with pytest.raises(CNIError) as info:
        get_settings(CNIArgs(args={"IS_CHAINED": "maybe"}))
    assert info.value.code == StatusCode.INTERNAL