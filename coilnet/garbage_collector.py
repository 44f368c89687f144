"""Removal of address blocks owned by nodes that no longer exist."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from coilnet.resources import (
    FIN_COIL,
    LABEL_NODE,
    AddressBlock,
    Node,
    ObjectKey,
    ObjectStore,
    ignore_not_found,
    retry_on_conflict,
)


class GarbageCollector:
    """Periodically deletes orphaned AddressBlocks."""

    def __init__(
        self,
        store: ObjectStore,
        interval: float,
        logger: Optional[logging.Logger] = None,
        api_reader: Optional[ObjectStore] = None,
    ) -> None:
        self._store = store
        self._api_reader = api_reader if api_reader is not None else store
        self.interval = interval
        self._logger = logger if logger is not None else logging.getLogger(__name__)

    def need_leader_election(self) -> bool:
        return True

    def start(self, stop_event: threading.Event) -> None:
        """Collect garbage every interval until stop_event is set."""
        while not stop_event.wait(self.interval):
            self.collect()

    def collect(self) -> None:
        """Delete every block whose node is gone."""
        self._logger.info("start garbage collection")
        try:
            blocks = self._store.list(AddressBlock)
        except Exception as exc:
            raise RuntimeError(f"failed to list address blocks: {exc}") from exc
        try:
            nodes = self._api_reader.list(Node)
        except Exception as exc:
            raise RuntimeError(f"failed to list nodes: {exc}") from exc

        node_names = {node.name for node in nodes}
        for block in blocks:
            node = block.labels.get(LABEL_NODE, "")
            if node in node_names:
                continue
            try:
                self.delete_block(block.name)
            except Exception as exc:
                raise RuntimeError(f"failed to delete a block: {exc}") from exc
            self._logger.info(
                "deleted an orphan block",
                extra={"fields": {"block": block.name, "node": node}},
            )

    def delete_block(self, name: str) -> None:
        """Drop the finalizer of a block and delete it; a missing block is fine."""

        def remove_finalizer() -> None:
            block = ignore_not_found(lambda: self._api_reader.get(AddressBlock, ObjectKey(name)))
            if block is None or FIN_COIL not in block.finalizers:
                return
            block.finalizers = [f for f in block.finalizers if f != FIN_COIL]
            self._store.update(block)

        try:
            retry_on_conflict(remove_finalizer)
        except Exception as exc:
            raise RuntimeError(f"failed to remove finalizer from {name}: {exc}") from exc

        ignore_not_found(lambda: self._store.delete(AddressBlock, ObjectKey(name)))