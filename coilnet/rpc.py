"""Request, response and error types of the CNI RPC service."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

POD_NAME_KEY = "K8S_POD_NAME"
POD_NAMESPACE_KEY = "K8S_POD_NAMESPACE"
IS_CHAINED_KEY = "IS_CHAINED"


class StatusCode(enum.IntEnum):
    """RPC status codes."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class ErrorCode(enum.IntEnum):
    """CNI error codes."""

    UNKNOWN = 0
    INCOMPATIBLE_CNI_VERSION = 1
    UNSUPPORTED_FIELD = 2
    UNKNOWN_CONTAINER = 3
    INVALID_ENVIRONMENT_VARIABLES = 4
    IO_FAILURE = 5
    DECODING_FAILURE = 6
    INVALID_NETWORK_CONFIG = 7
    TRY_AGAIN_LATER = 11
    INTERNAL = 999


@dataclass
class CNIArgs:
    """Arguments of a CNI call."""

    container_id: str = ""
    netns: str = ""
    ifname: str = ""
    args: dict[str, str] = field(default_factory=dict)
    path: str = ""
    stdin_data: bytes = b""
    ips: list[str] = field(default_factory=list)
    interfaces: dict[str, bool] = field(default_factory=dict)


@dataclass
class AddResponse:
    """Result of a successful ADD, as JSON bytes."""

    result: bytes


class CNIError(Exception):
    """An RPC failure carrying a CNI error code and details."""

    def __init__(self, code: StatusCode, cni_code: ErrorCode, msg: str, details: str) -> None:
        super().__init__(msg)
        self.code = code
        self.cni_code = cni_code
        self.msg = msg
        self.details = details

    def __str__(self) -> str:
        return f"rpc error: code = {self.code.name} desc = {self.msg}"


def new_error(code: StatusCode, cni_code: ErrorCode, msg: str, details: str) -> CNIError:
    """Build an RPC error with CNI details."""
    return CNIError(code, cni_code, msg, details)


def new_internal_error(err: object, msg: str) -> CNIError:
    """Build an internal error whose details are the text of err."""
    return new_error(StatusCode.INTERNAL, ErrorCode.INTERNAL, msg, str(err))