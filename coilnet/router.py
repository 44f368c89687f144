"""Routing of address blocks owned by other nodes."""

from __future__ import annotations

import ipaddress
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from coilnet.resources import (
    LABEL_NODE,
    NODE_INTERNAL_IP,
    AddressBlock,
    Node,
    ObjectStore,
)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


@dataclass
class GatewayInfo:
    """A gateway and the networks reachable through it."""

    gateway: IPAddress
    networks: list[IPNetwork] = field(default_factory=list)


def _to4(addr: IPAddress) -> Optional[ipaddress.IPv4Address]:
    if isinstance(addr, ipaddress.IPv4Address):
        return addr
    return addr.ipv4_mapped


class Router:
    """Keeps kernel routes to other nodes' address blocks in sync.

    ``syncer`` provides sync(list of GatewayInfo).
    """

    def __init__(
        self,
        store: ObjectStore,
        node_name: str,
        syncer: Any,
        interval: float,
        logger: Optional[logging.Logger] = None,
        api_reader: Optional[ObjectStore] = None,
    ) -> None:
        self._store = store
        self._api_reader = api_reader if api_reader is not None else store
        self.node_name = node_name
        self._syncer = syncer
        self.interval = interval
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self.sync_count = 0
        self.routes_synced = 0

    def need_leader_election(self) -> bool:
        return False

    def start(self, stop_event: threading.Event, notify: threading.Event) -> None:
        """Synchronize on every notification or interval until stop_event is set.

        Set notify after stop_event to stop without waiting for the interval.
        """
        while True:
            notify.wait(self.interval)
            notify.clear()
            if stop_event.is_set():
                return
            try:
                self.sync()
            except Exception:
                self._logger.exception("synchronizing block information failed")
                raise
            self.sync_count += 1

    def _node_addresses(self) -> dict[str, tuple[Optional[IPAddress], Optional[IPAddress]]]:
        try:
            nodes = self._api_reader.list(Node)
        except Exception as exc:
            raise RuntimeError(f"failed to list Nodes: {exc}") from exc
        result = {}
        for node in nodes:
            if node.name == self.node_name:
                continue
            ipv4: Optional[IPAddress] = None
            ipv6: Optional[IPAddress] = None
            for address in node.addresses:
                if address.type != NODE_INTERNAL_IP:
                    continue
                try:
                    ip = ipaddress.ip_address(address.address)
                except ValueError:
                    continue
                v4 = _to4(ip)
                if v4 is not None:
                    ipv4 = v4
                else:
                    ipv6 = ip
            result[node.name] = (ipv4, ipv6)
        return result

    def sync(self) -> None:
        """Compute routes from nodes and blocks and hand them to the syncer."""
        node_map = self._node_addresses()
        try:
            blocks = self._store.list(AddressBlock)
        except Exception as exc:
            raise RuntimeError(f"failed to list AddressBlocks: {exc}") from exc

        n_routes = 0
        gateways: dict[str, GatewayInfo] = {}
        for block in blocks:
            node_name = block.labels.get(LABEL_NODE, "")
            if node_name not in node_map:
                # the node might have been deleted
                continue
            ipv4, ipv6 = node_map[node_name]
            for cidr, gateway, family in ((block.ipv4, ipv4, "IPv4"), (block.ipv6, ipv6, "IPv6")):
                if cidr is None:
                    continue
                if gateway is None:
                    self._logger.info(
                        f"node has no {family} address", extra={"fields": {"node": node_name}}
                    )
                    continue
                try:
                    network = ipaddress.ip_network(cidr, strict=False)
                except ValueError:
                    self._logger.info(
                        "invalid block address", extra={"fields": {"block": block.name}}
                    )
                    continue
                n_routes += 1
                gateways.setdefault(str(gateway), GatewayInfo(gateway)).networks.append(network)

        self.routes_synced = n_routes
        self._syncer.sync(list(gateways.values()))