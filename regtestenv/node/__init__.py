"""Node client capability and its JSON-RPC implementation."""

from regtestenv.node.client import JsonRpcNodeClient, NodeClient

__all__ = ["JsonRpcNodeClient", "NodeClient"]
