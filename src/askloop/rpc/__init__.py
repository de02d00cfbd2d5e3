"""RPC module for askloop.

JSON-RPC 2.0 types and utilities for rpc_server.py and http_rpc.py.
"""

from __future__ import annotations

from askloop.rpc.types import (
    JSON,
    JSONRPC_VERSION,
    RpcError,
    PARSE_ERROR,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    INVALID_PARAMS,
    INTERNAL_ERROR,
    UNKNOWN_TOOL_ERROR,
    COLLABORATOR_ERROR,
    WAITER_ERROR,
    DIALOG_ERROR,
    encode_line,
    jsonrpc_error,
    jsonrpc_notification,
    jsonrpc_result,
)

__all__ = [
    # Types
    "JSON",
    "JSONRPC_VERSION",
    "RpcError",
    # Error codes
    "PARSE_ERROR",
    "INVALID_REQUEST",
    "METHOD_NOT_FOUND",
    "INVALID_PARAMS",
    "INTERNAL_ERROR",
    "UNKNOWN_TOOL_ERROR",
    "COLLABORATOR_ERROR",
    "WAITER_ERROR",
    "DIALOG_ERROR",
    # Utilities
    "encode_line",
    "jsonrpc_error",
    "jsonrpc_notification",
    "jsonrpc_result",
]
