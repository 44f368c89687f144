"""CNI request handling for the node daemon."""

from __future__ import annotations

import ipaddress
import json
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from coilnet.logfields import InterceptorLogger, logging_fields, to_fields
from coilnet.resources import (
    ANN_EGRESS_PREFIX,
    ANN_POOL,
    DEFAULT_POOL,
    Egress,
    Namespace,
    NotFoundError,
    ObjectKey,
    ObjectStore,
    Pod,
    Service,
)
from coilnet.rpc import (
    IS_CHAINED_KEY,
    POD_NAME_KEY,
    POD_NAMESPACE_KEY,
    AddResponse,
    CNIArgs,
    CNIError,
    ErrorCode,
    StatusCode,
    new_error,
    new_internal_error,
)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
SetupHook = Callable[[Optional[IPAddress], Optional[IPAddress]], None]
AliasFunc = Callable[["PodNetConf", Pod, str], None]

CNI_VERSION = "1.0.0"
SERVICE_NAME = "pkg.cnirpc.CNI"

_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False"}


@dataclass
class GWNets:
    """An egress gateway and the networks routed through it."""

    gateway: IPAddress
    networks: list[IPNetwork] = field(default_factory=list)
    sport_auto: bool = False


@dataclass
class PodNetConf:
    """Network configuration of one pod interface."""

    container_id: str
    iface: str
    ipv4: Optional[IPAddress] = None
    ipv6: Optional[IPAddress] = None
    pool_name: str = ""


@dataclass
class CoildConfig:
    """Settings of the node daemon that the CNI server reads."""

    enable_ipam: bool = True
    enable_egress: bool = True
    address_block_gc_interval: float = 60.0


def _to4(addr: IPAddress) -> Optional[ipaddress.IPv4Address]:
    if isinstance(addr, ipaddress.IPv4Address):
        return addr
    return addr.ipv4_mapped


def get_pod_ips(ips: list[str]) -> tuple[Optional[IPAddress], Optional[IPAddress]]:
    """Pick the first IPv4 and the first other address from a list of strings."""
    ipv4: Optional[IPAddress] = None
    ipv6: Optional[IPAddress] = None
    for text in ips:
        try:
            addr = ipaddress.ip_address(text)
        except ValueError:
            addr = None
        if addr is not None:
            v4 = _to4(addr)
            if ipv4 is None and v4 is not None:
                ipv4 = v4
            elif ipv6 is None:
                ipv6 = addr
        if ipv4 is not None and ipv6 is not None:
            break
    return ipv4, ipv6


def get_settings(args: CNIArgs) -> bool:
    """Return whether the plugin is called in a chain."""
    value = args.args.get(IS_CHAINED_KEY)
    if value is None:
        return False
    if value in _TRUE_WORDS:
        return True
    if value in _FALSE_WORDS:
        return False
    raise new_internal_error(
        f'parsing "{value}": invalid syntax', "error parsing CNI chaining bool value "
    )


class CoildServer:
    """Serves CNI ADD, DEL and CHECK requests on a node.

    ``node_ipam`` provides allocate, free and gc; ``pod_net`` provides
    setup_ipam, setup_egress, destroy and check; ``nat_setup`` provides
    hook(gwlist, logger) returning a setup hook or None.
    """

    def __init__(
        self,
        store: ObjectStore,
        node_ipam: Any,
        pod_net: Any,
        nat_setup: Any,
        config: CoildConfig,
        logger: Optional[logging.Logger] = None,
        alias_func: Optional[AliasFunc] = None,
        api_reader: Optional[ObjectStore] = None,
    ) -> None:
        self._store = store
        self._api_reader = api_reader if api_reader is not None else store
        self._node_ipam = node_ipam
        self._pod_net = pod_net
        self._nat_setup = nat_setup
        self.config = config
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._interceptor = InterceptorLogger(self._logger)
        self._alias_func = alias_func
        self.handled: Counter[tuple[str, str]] = Counter()

    def need_leader_election(self) -> bool:
        return False

    def add(self, args: CNIArgs) -> AddResponse:
        """Set up the network of a pod and return the CNI result."""
        return self._serve("Add", args, self._add)

    def delete(self, args: CNIArgs) -> None:
        """Tear down the network of a pod."""
        self._serve("Del", args, self._delete)

    def check(self, args: CNIArgs) -> None:
        """Verify the network of a pod."""
        self._serve("Check", args, self._check)

    def run_gc(self, stop_event: threading.Event) -> None:
        """Run address-block GC periodically until stop_event is set."""
        self._logger.info("start periodic nodeIPAM GC")
        while not stop_event.wait(self.config.address_block_gc_interval):
            try:
                self._node_ipam.gc()
            except Exception as exc:
                self._logger.error("failed to run GC", extra={"fields": {"error": str(exc)}})

    def _serve(self, method: str, args: CNIArgs, handler: Callable[[CNIArgs], Any]) -> Any:
        code = StatusCode.UNKNOWN
        try:
            result = handler(args)
        except CNIError as exc:
            code = exc.code
            raise
        else:
            code = StatusCode.OK
            return result
        finally:
            self._finish(method, args, code)

    def _finish(self, method: str, args: CNIArgs, code: StatusCode) -> None:
        self.handled[(method, code.name)] += 1
        fields = [
            "grpc.service", SERVICE_NAME,
            "grpc.method", method,
            "grpc.code", code.name,
            *logging_fields(args),
        ]
        level = logging.INFO if code is StatusCode.OK else logging.ERROR
        self._interceptor.log(level, f"finished call with code {code.name}", *fields)

    def _log(self, args: CNIArgs, level: int, msg: str, **extra: Any) -> None:
        fields = to_fields(logging_fields(args))
        fields.update(extra)
        self._logger.log(level, msg, extra={"fields": fields})

    def _add(self, args: CNIArgs) -> AddResponse:
        ipam = self.config.enable_ipam
        try:
            chained = get_settings(args)
        except CNIError as exc:
            raise new_internal_error("runtime error", "failed to get CNI arguments") from exc

        if ipam and chained:
            raise new_internal_error(
                "configuration error",
                "coil must be called as the first plugin when IPAM related features are enabled",
            )

        try:
            pod = self._get_pod(args)
        except CNIError as exc:
            raise new_internal_error(exc, "failed to get pod") from exc

        pool_name = ""
        if ipam:
            try:
                ns = self._store.get(Namespace, ObjectKey(pod.namespace))
            except Exception as exc:
                self._log(args, logging.ERROR, "failed to get namespace",
                          name=pod.namespace, error=str(exc))
                raise new_internal_error(exc, "failed to get namespace") from exc
            pool_name = ns.annotations.get(ANN_POOL, DEFAULT_POOL)
            try:
                ipv4, ipv6 = self._node_ipam.allocate(pool_name, args.container_id, args.ifname)
            except Exception as exc:
                self._log(args, logging.ERROR, "failed to allocate address", error=str(exc))
                raise new_internal_error(exc, "failed to allocate address") from exc
        else:
            ipv4, ipv6 = get_pod_ips(args.ips)

        result: Any = {"cniVersion": CNI_VERSION}
        conf = PodNetConf(
            container_id=args.container_id,
            iface=args.ifname,
            ipv4=ipv4,
            ipv6=ipv6,
            pool_name=pool_name,
        )

        if ipam:
            try:
                result = self._pod_net.setup_ipam(args.netns, pod.name, pod.namespace, conf)
            except Exception as exc:
                self._free_quietly(args)
                self._log(args, logging.ERROR, "failed to setup pod network", error=str(exc))
                raise new_internal_error(exc, "failed to setup pod network IPAM") from exc

        if self.config.enable_egress:
            if not ipam:
                self._set_interface_alias(args.interfaces, conf, pod)
            try:
                hook = self._get_hook(args, pod)
            except CNIError as exc:
                self._log(args, logging.ERROR, "failed to setup NAT hook", error=str(exc))
                raise new_internal_error(exc, "failed to setup NAT hook") from exc
            if hook is not None:
                self._log(args, logging.INFO, "enabling NAT")
                try:
                    self._pod_net.setup_egress(args.netns, conf, hook)
                except Exception as exc:
                    raise new_internal_error(exc, "failed to setup pod network egress") from exc

        try:
            data = json.dumps(result).encode()
        except (TypeError, ValueError) as exc:
            if ipam:
                try:
                    self._pod_net.destroy(args.container_id, args.ifname)
                except Exception as destroy_exc:
                    self._log(args, logging.WARNING, "failed to destroy pod network",
                              error=str(destroy_exc))
                self._free_quietly(args)
            self._log(args, logging.ERROR, "failed to marshal the result", error=str(exc))
            raise new_internal_error(exc, "failed to marshal the result") from exc
        return AddResponse(result=data)

    def _free_quietly(self, args: CNIArgs) -> None:
        try:
            self._node_ipam.free(args.container_id, args.ifname)
        except Exception as exc:
            self._log(args, logging.WARNING, "failed to deallocate address", error=str(exc))

    def _set_interface_alias(self, interfaces: dict[str, bool], conf: PodNetConf, pod: Pod) -> None:
        if_name = next((name for name, sandbox in interfaces.items() if not sandbox), "")
        if self._alias_func is None:
            return
        try:
            self._alias_func(conf, pod, if_name)
        except Exception as exc:
            raise RuntimeError(
                f"failed to set interface alias: failed to add link alias: {exc}"
            ) from exc

    def _delete(self, args: CNIArgs) -> None:
        if not self.config.enable_ipam:
            return
        try:
            self._pod_net.destroy(args.container_id, args.ifname)
        except Exception as exc:
            self._log(args, logging.ERROR, "failed to destroy pod network", error=str(exc))
            raise new_internal_error(exc, "failed to destroy pod network") from exc
        try:
            self._node_ipam.free(args.container_id, args.ifname)
        except Exception as exc:
            self._log(args, logging.ERROR, "failed to free addresses", error=str(exc))
            raise new_internal_error(exc, "failed to free addresses") from exc

    def _check(self, args: CNIArgs) -> None:
        if self.config.enable_ipam:
            container_id = args.container_id
        elif self.config.enable_egress:
            try:
                pod = self._get_pod(args)
            except CNIError as exc:
                raise new_internal_error(exc, "unable to get pod") from exc
            container_id = pod.uid
        else:
            return
        try:
            self._pod_net.check(container_id, args.ifname)
        except Exception as exc:
            self._log(args, logging.ERROR, "check failed", error=str(exc))
            raise new_internal_error(exc, "check failed") from exc

    def _get_pod(self, args: CNIArgs) -> Pod:
        pod_name = args.args.get(POD_NAME_KEY, "")
        pod_ns = args.args.get(POD_NAMESPACE_KEY, "")
        if not pod_name or not pod_ns:
            self._log(args, logging.ERROR, "missing pod name/namespace", args=dict(args.args))
            raise new_error(
                StatusCode.INVALID_ARGUMENT,
                ErrorCode.INVALID_ENVIRONMENT_VARIABLES,
                "missing pod name/namespace",
                repr(args.args),
            )
        try:
            return self._api_reader.get(Pod, ObjectKey(pod_name, pod_ns))
        except NotFoundError as exc:
            self._log(args, logging.ERROR, "pod not found", name=pod_name, namespace=pod_ns)
            raise new_error(
                StatusCode.NOT_FOUND, ErrorCode.UNKNOWN_CONTAINER, "pod not found", str(exc)
            ) from exc
        except Exception as exc:
            self._log(args, logging.ERROR, "failed to get pod",
                      name=pod_name, namespace=pod_ns, error=str(exc))
            raise new_internal_error(exc, "failed to get pod") from exc

    def _get_hook(self, args: CNIArgs, pod: Pod) -> Optional[SetupHook]:
        if pod.host_network:
            # Pods in the host network never use egress NAT.
            return None

        keys = [
            ObjectKey(name, annotation[len(ANN_EGRESS_PREFIX):])
            for annotation, value in pod.annotations.items()
            if annotation.startswith(ANN_EGRESS_PREFIX)
            for name in value.split(",")
        ]
        if not keys:
            return None

        gwlist: list[GWNets] = []
        for key in keys:
            try:
                egress = self._store.get(Egress, key)
            except Exception as exc:
                raise new_error(StatusCode.FAILED_PRECONDITION, ErrorCode.INTERNAL,
                                f"failed to get Egress {key}", str(exc)) from exc
            try:
                service = self._store.get(Service, key)
            except Exception as exc:
                raise new_error(StatusCode.FAILED_PRECONDITION, ErrorCode.INTERNAL,
                                f"failed to get Service {key}", str(exc)) from exc

            try:
                svc_ip: IPAddress = ipaddress.ip_address(service.cluster_ip)
            except ValueError as exc:
                raise new_error(StatusCode.INTERNAL, ErrorCode.INTERNAL,
                                f"invalid ClusterIP in Service {key}", service.cluster_ip) from exc

            svc_v4 = _to4(svc_ip)
            if svc_v4 is not None:
                svc_ip = svc_v4
            want_version = 4 if svc_v4 is not None else 6
            subnets: list[IPNetwork] = []
            for destination in egress.destinations:
                try:
                    subnet = ipaddress.ip_network(destination, strict=False)
                except ValueError as exc:
                    raise new_internal_error(exc, f"invalid network in Egress {key}") from exc
                if subnet.version == want_version:
                    subnets.append(subnet)

            if subnets:
                gwlist.append(GWNets(svc_ip, subnets, egress.fou_source_port_auto))

        if not gwlist:
            return None
        self._log(args, logging.INFO, f"gwlist: {gwlist}",
                  pod_name=pod.name, pod_namespace=pod.namespace)
        return self._nat_setup.hook(gwlist, self._logger)