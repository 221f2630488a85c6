"""
Node client capability.

The pipelines talk to the node only through :class:`NodeClient`.
Subclasses implement :meth:`NodeClient.call`; the named helpers are thin
wrappers over it so fakes only need to answer raw method calls.
"""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import quote

import httpx

from regtestenv.core.config import BitcoinRpcConfig
from regtestenv.core.errors import RpcError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class NodeClient(ABC):
    """Abstract JSON-RPC access to a running node."""

    @abstractmethod
    def call(
        self,
        method: str,
        params: list[Any] | None = None,
        wallet: str | None = None,
    ) -> Any:
        """
        Execute one RPC call.

        Args:
            method: RPC method name.
            params: Positional parameters.
            wallet: Wallet scope, if any.

        Returns:
            The ``result`` member of the response.

        Raises:
            RpcError: If the call fails or the node returns an error object.
        """
        ...

    def list_wallets(self) -> list[str]:
        return list(self.call("listwallets") or [])

    def get_wallet_info(self, wallet: str) -> dict[str, Any]:
        return self.call("getwalletinfo", [], wallet)

    def get_blockchain_info(self) -> dict[str, Any]:
        return self.call("getblockchaininfo")

    def get_block_hash(self, height: int) -> str:
        return self.call("getblockhash", [height])

    def get_network_info(self) -> dict[str, Any]:
        return self.call("getnetworkinfo")

    def get_new_address(self, wallet: str) -> str:
        return self.call("getnewaddress", [], wallet)

    def generate_to_address(self, n: int, address: str) -> list[str]:
        return self.call("generatetoaddress", [n, address])

    def list_descriptors(self, wallet: str, include_private: bool = False) -> list[dict[str, Any]]:
        params = [True] if include_private else []
        result = self.call("listdescriptors", params, wallet) or {}
        return list(result.get("descriptors", []))

    def import_descriptors(
        self, wallet: str, descriptors: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        return self.call("importdescriptors", [descriptors], wallet)

    def create_wallet(
        self,
        name: str,
        disable_private_keys: bool = False,
        blank: bool = False,
        descriptors: bool = True,
    ) -> dict[str, Any]:
        return self.call(
            "createwallet",
            [name, disable_private_keys, blank, "", False, descriptors, True],
        )

    def load_wallet(self, name: str) -> dict[str, Any]:
        return self.call("loadwallet", [name])

    def ping(self) -> bool:
        """Return True if the node answers ``getblockchaininfo``."""
        try:
            self.get_blockchain_info()
            return True
        except RpcError:
            return False


class JsonRpcNodeClient(NodeClient):
    """
    Node client over HTTP JSON-RPC.

    Example:
        >>> client = JsonRpcNodeClient.from_config(config.bitcoin)
        >>> client.get_blockchain_info()["blocks"]
        150
    """

    def __init__(
        self,
        base_url: str,
        user: str,
        password: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            auth=(user, password),
            timeout=timeout,
            transport=transport,
        )
        self._ids = itertools.count(1)

    @classmethod
    def from_config(cls, config: BitcoinRpcConfig, **kwargs: Any) -> JsonRpcNodeClient:
        return cls(config.base_url, config.user, config.password, **kwargs)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> JsonRpcNodeClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _url_for(self, wallet: str | None) -> str:
        if wallet is None:
            return self.base_url
        return f"{self.base_url}/wallet/{quote(wallet, safe='')}"

    def call(
        self,
        method: str,
        params: list[Any] | None = None,
        wallet: str | None = None,
    ) -> Any:
        payload = {
            "jsonrpc": "1.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        url = self._url_for(wallet)
        logger.debug("rpc %s wallet=%s", method, wallet)

        try:
            response = self._client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise RpcError(
                f"Connection to Bitcoin Core at {self.base_url} timed out",
                method=method,
                raw_error=e,
                suggestions=["Bitcoin Core might be busy (reindex, initial load)"],
            ) from e
        except httpx.HTTPError as e:
            raise RpcError(
                f"Cannot connect to Bitcoin Core at {self.base_url}",
                method=method,
                raw_error=e,
                suggestions=[
                    "Is Bitcoin Core running? Check: bitcoin-cli -regtest getblockchaininfo",
                    "If using Docker: docker ps",
                ],
            ) from e

        if response.status_code == 401:
            raise RpcError(
                "RPC authentication failed: wrong username or password",
                method=method,
                code=401,
                suggestions=["Check rpcUser/rpcPassword in the profile configuration"],
            )

        try:
            body = response.json()
        except ValueError as e:
            raise RpcError(
                f"RPC {method} returned HTTP {response.status_code}: {response.text[:200]}",
                method=method,
                code=response.status_code,
                raw_error=e,
            ) from e

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            raise RpcError(f"RPC {method} failed: {message}", method=method, code=code)

        return body.get("result")
