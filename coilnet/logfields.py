"""Structured logging fields for RPC calls."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from coilnet.rpc import POD_NAME_KEY, POD_NAMESPACE_KEY, CNIArgs

_LEVELS = {logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR}


def to_fields(fields: Sequence[Any]) -> dict[str, Any]:
    """Turn a flat key/value sequence into a dictionary."""
    if len(fields) % 2:
        raise ValueError("fields must come in key/value pairs")
    result: dict[str, Any] = {}
    pairs = iter(fields)
    for key, value in zip(pairs, pairs):
        if not isinstance(key, str):
            raise TypeError(f"field key must be a string, not {type(key).__name__}")
        result[key] = value
    return result


def logging_fields(request: object) -> list[Any]:
    """Return the key/value fields that describe a CNI request."""
    if not isinstance(request, CNIArgs):
        return []
    fields: list[Any] = []
    if POD_NAME_KEY in request.args:
        fields += ["grpc.request.pod.name", request.args[POD_NAME_KEY]]
    if POD_NAMESPACE_KEY in request.args:
        fields += ["grpc.request.pod.namespace", request.args[POD_NAMESPACE_KEY]]
    fields += ["grpc.request.netns", request.netns]
    fields += ["grpc.request.ifname", request.ifname]
    fields += ["grpc.request.container_id", request.container_id]
    return fields


class InterceptorLogger:
    """Logs RPC events with key/value fields attached to each record."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def log(self, level: int, msg: str, *args: Any) -> None:
        fields = to_fields(args)
        if level in _LEVELS:
            self._logger.log(level, msg, extra={"fields": fields})
        else:
            self._logger.warning(
                "unknown level %s, msg: %s", level, msg, extra={"fields": fields}
            )