# app/x402/chain.py
"""
Chain JSON-RPC access for the facilitator.

Only the four reads the verifier needs are exposed: receipt by hash,
transaction by hash, current block number and chain id. All quantities
come back from the node as hex strings and are converted to ints here so
amount comparisons downstream never touch floating point.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from app.x402.errors import ChainRpcError

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


@dataclass(frozen=True)
class TokenTransfer:
    """A decoded ERC-20 Transfer event."""
    token: str
    sender: str
    recipient: str
    value: int


def hex_to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(value, 16)


def topic_to_address(topic: str) -> str:
    """Take the low 20 bytes of a 32-byte indexed topic as an address."""
    return "0x" + topic[-40:].lower()


def decode_transfer_logs(logs: List[Dict[str, Any]]) -> List[TokenTransfer]:
    """
    Decode ERC-20 Transfer events from receipt logs.

    Logs that are not well-formed Transfer events are skipped.
    """
    transfers = []
    for log in logs or []:
        topics = log.get("topics") or []
        if len(topics) != 3 or topics[0].lower() != TRANSFER_TOPIC:
            continue
        data = log.get("data") or "0x"
        try:
            value = int(data, 16) if data != "0x" else 0
        except ValueError:
            logger.debug(f"chain: skipping Transfer log with malformed data: {data}")
            continue
        transfers.append(
            TokenTransfer(
                token=(log.get("address") or "").lower(),
                sender=topic_to_address(topics[1]),
                recipient=topic_to_address(topics[2]),
                value=value,
            )
        )
    return transfers


class ChainClient:
    """
    Minimal Ethereum-compatible JSON-RPC client.

    Args:
        rpc_url: HTTP endpoint of the node
        timeout: Per-call timeout in seconds
        session: Optional requests session (tests inject a fake)
    """

    def __init__(self, rpc_url: str, timeout: float = 15.0, session: Optional[requests.Session] = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._request_id = 0

    def _call(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        try:
            response = self._session.post(
                self.rpc_url,
                json={
                    "jsonrpc": "2.0",
                    "method": method,
                    "params": params,
                    "id": self._request_id
                },
                timeout=self.timeout
            )
            response.raise_for_status()
            result = response.json()
        except (requests.RequestException, ValueError) as e:
            raise ChainRpcError(f"{method} failed: {e}") from e

        if "error" in result:
            raise ChainRpcError(f"RPC error from {method}: {result['error']}")
        if "result" not in result:
            raise ChainRpcError(f"Invalid RPC response from {method}: missing 'result' field")
        return result["result"]

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Receipt for a mined transaction, or None if unknown or pending."""
        return self._call("eth_getTransactionReceipt", [tx_hash])

    def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self._call("eth_getTransactionByHash", [tx_hash])

    def get_block_number(self) -> int:
        return hex_to_int(self._call("eth_blockNumber", []))

    def get_chain_id(self) -> int:
        return hex_to_int(self._call("eth_chainId", []))
