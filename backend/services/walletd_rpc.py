"""JSON-RPC client for the wallet daemon (walletd / zum-service).

One method per daemon RPC. Amounts cross this boundary in human units: replies
are divided by the configured decimal divisor and request amounts are
multiplied back to atomic units before they are sent.
"""

from __future__ import annotations

import itertools
from typing import Any, Optional

import httpx

from config import settings
from models.wallet import Balance, StatusSnapshot, TransactionRecord
from utils.logger import rpc_logger as logger


class WalletdRpcError(Exception):
    """The daemon answered with a JSON-RPC error or an unusable reply."""

    def __init__(self, message: str, code: Optional[int] = None, method: str = ""):
        super().__init__(message)
        self.code = code
        self.method = method

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} (code {self.code})" if self.code is not None else base


class WalletdRpcClient:
    """Client for the wallet daemon's ``/json_rpc`` endpoint."""

    def __init__(
        self,
        host: str = settings.BIND_ADDRESS,
        port: int = settings.BIND_PORT,
        timeout: float = settings.RPC_TIMEOUT_SECONDS,
        rpc_password: Optional[str] = settings.RPC_PASSWORD,
        default_mixin: int = settings.DEFAULT_MIXIN,
        default_fee: float = settings.DEFAULT_FEE,
        default_block_count: int = settings.DEFAULT_BLOCK_COUNT,
        decimal_divisor: int = settings.DECIMAL_DIVISOR,
        default_first_block_index: int = settings.DEFAULT_FIRST_BLOCK_INDEX,
        default_unlock_time: int = settings.DEFAULT_UNLOCK_TIME,
        default_fusion_threshold: int = settings.DEFAULT_FUSION_THRESHOLD,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = f"http://{host}:{port}/json_rpc"
        self.timeout = timeout
        self.rpc_password = rpc_password
        self.default_mixin = default_mixin
        self.default_fee = default_fee
        self.default_block_count = default_block_count
        self.decimal_divisor = decimal_divisor
        self.default_first_block_index = default_first_block_index
        self.default_unlock_time = default_unlock_time
        self.default_fusion_threshold = default_fusion_threshold
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _call(self, method: str, params: Optional[dict] = None) -> Any:
        body: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or {},
        }
        if self.rpc_password:
            body["password"] = self.rpc_password

        client = await self._get_client()
        response = await client.post(self.url, json=body)
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as exc:
            raise WalletdRpcError(f"Malformed reply to {method}", method=method) from exc

        if not isinstance(payload, dict):
            raise WalletdRpcError(f"Malformed reply to {method}", method=method)
        error = payload.get("error")
        if error:
            if isinstance(error, dict):
                raise WalletdRpcError(
                    str(error.get("message") or "Unknown error"),
                    code=error.get("code"),
                    method=method,
                )
            raise WalletdRpcError(str(error), method=method)
        if "result" not in payload:
            raise WalletdRpcError(f"Reply to {method} carries no result", method=method)

        logger.debug("RPC call completed", method=method)
        return payload["result"]

    # ==================== UNIT CONVERSION ====================

    def _to_human(self, atomic: Any) -> float:
        return int(atomic or 0) / self.decimal_divisor

    def _to_atomic(self, amount: Any) -> int:
        return int(round(float(amount) * self.decimal_divisor))

    def _scaled_transfers(self, transfers: list[dict]) -> list[dict]:
        scaled = []
        for transfer in transfers:
            if not transfer.get("address"):
                raise WalletdRpcError("Every transfer needs an address")
            if float(transfer.get("amount", 0) or 0) <= 0:
                raise WalletdRpcError("Every transfer needs a positive amount")
            scaled.append(
                {"address": transfer["address"], "amount": self._to_atomic(transfer["amount"])}
            )
        return scaled

    # ==================== NODE / STATUS ====================

    async def get_status(self) -> StatusSnapshot:
        result = await self._call("getStatus")
        return StatusSnapshot.from_rpc(result)

    async def get_node_fee_info(self) -> dict:
        result = await self._call("getFeeInfo")
        return {
            "address": result.get("address", ""),
            "amount": self._to_human(result.get("amount", 0)),
        }

    async def save(self) -> dict:
        await self._call("save")
        return {}

    async def reset(self, scan_height: Optional[int] = None) -> dict:
        params = {} if scan_height is None else {"scanHeight": int(scan_height)}
        await self._call("reset", params)
        return {}

    # ==================== KEYS ====================

    async def get_view_key(self) -> str:
        result = await self._call("getViewKey")
        return result.get("viewSecretKey", "")

    async def get_spend_keys(self, address: str) -> dict:
        result = await self._call("getSpendKeys", {"address": address})
        return {
            "spendSecretKey": result.get("spendSecretKey", ""),
            "spendPublicKey": result.get("spendPublicKey", ""),
        }

    async def get_mnemonic_seed(self, address: str) -> str:
        result = await self._call("getMnemonicSeed", {"address": address})
        return result.get("mnemonicSeed", "")

    # ==================== ADDRESSES ====================

    async def get_addresses(self) -> list[str]:
        result = await self._call("getAddresses")
        return list(result.get("addresses", []))

    async def create_address(
        self,
        secret_spend_key: Optional[str] = None,
        public_spend_key: Optional[str] = None,
        scan_height: Optional[int] = None,
        new_address: Optional[bool] = None,
    ) -> str:
        params: dict[str, Any] = {}
        if secret_spend_key:
            params["spendSecretKey"] = secret_spend_key
        if public_spend_key:
            params["spendPublicKey"] = public_spend_key
        if scan_height is not None:
            params["scanHeight"] = int(scan_height)
        if new_address is not None:
            params["newAddress"] = bool(new_address)
        result = await self._call("createAddress", params)
        return result.get("address", "")

    async def delete_address(self, address: str) -> dict:
        await self._call("deleteAddress", {"address": address})
        return {}

    async def get_balance(self, address: Optional[str] = None) -> Balance:
        params = {"address": address} if address else {}
        result = await self._call("getBalance", params)
        return Balance(
            available_balance=self._to_human(result.get("availableBalance", 0)),
            locked_amount=self._to_human(result.get("lockedAmount", 0)),
        )

    # ==================== BLOCKS / HISTORY ====================

    def _range_params(
        self,
        first_block_index: Optional[int],
        block_count: Optional[int],
        block_hash: Optional[str],
        addresses: Optional[list[str]],
        payment_id: Optional[str],
    ) -> dict:
        params: dict[str, Any] = {
            "blockCount": int(block_count if block_count is not None else self.default_block_count),
        }
        if block_hash:
            params["blockHash"] = block_hash
        else:
            params["firstBlockIndex"] = int(
                first_block_index if first_block_index is not None else self.default_first_block_index
            )
        if addresses:
            params["addresses"] = list(addresses)
        if payment_id:
            params["paymentId"] = payment_id
        return params

    async def get_block_hashes(
        self,
        first_block_index: Optional[int] = None,
        block_count: Optional[int] = None,
    ) -> list[str]:
        result = await self._call(
            "getBlockHashes",
            {
                "firstBlockIndex": int(
                    first_block_index if first_block_index is not None else self.default_first_block_index
                ),
                "blockCount": int(block_count if block_count is not None else self.default_block_count),
            },
        )
        return list(result.get("blockHashes", []))

    async def get_transaction_hashes(
        self,
        first_block_index: Optional[int] = None,
        block_count: Optional[int] = None,
        block_hash: Optional[str] = None,
        addresses: Optional[list[str]] = None,
        payment_id: Optional[str] = None,
    ) -> list[dict]:
        params = self._range_params(first_block_index, block_count, block_hash, addresses, payment_id)
        result = await self._call("getTransactionHashes", params)
        return list(result.get("items", []))

    async def get_transactions(
        self,
        first_block_index: Optional[int] = None,
        block_count: Optional[int] = None,
        block_hash: Optional[str] = None,
        addresses: Optional[list[str]] = None,
        payment_id: Optional[str] = None,
    ) -> list[TransactionRecord]:
        """Fetch transactions in a block range, one record per owned transfer leg."""
        params = self._range_params(first_block_index, block_count, block_hash, addresses, payment_id)
        owned = set(addresses) if addresses else set(await self.get_addresses())
        result = await self._call("getTransactions", params)

        records: list[TransactionRecord] = []
        for block in result.get("items", []):
            block_hash_value = block.get("blockHash", "")
            for transaction in block.get("transactions", []):
                for transfer in transaction.get("transfers", []):
                    if transfer.get("address") not in owned:
                        continue
                    if int(transfer.get("amount", 0) or 0) == 0:
                        continue
                    records.append(
                        TransactionRecord.from_transfer(
                            transaction,
                            transfer,
                            block_hash=block_hash_value,
                            divisor=self.decimal_divisor,
                        )
                    )
        return records

    async def get_unconfirmed_transaction_hashes(
        self, addresses: Optional[list[str]] = None
    ) -> list[str]:
        params = {"addresses": list(addresses)} if addresses else {}
        result = await self._call("getUnconfirmedTransactionHashes", params)
        return list(result.get("transactionHashes", []))

    async def get_transaction(self, transaction_hash: str) -> dict:
        result = await self._call("getTransaction", {"transactionHash": transaction_hash})
        transaction = dict(result.get("transaction", {}))
        transaction["amount"] = self._to_human(transaction.get("amount", 0))
        transaction["fee"] = self._to_human(transaction.get("fee", 0))
        transaction["transfers"] = [
            {**transfer, "amount": self._to_human(transfer.get("amount", 0))}
            for transfer in transaction.get("transfers", [])
        ]
        return transaction

    # ==================== TRANSFERS ====================

    def new_transfer(self, address: str, amount: float) -> dict:
        """Build one transfer entry for ``send_transaction``."""
        return {"address": address, "amount": amount}

    def _send_params(
        self,
        transfers: list[dict],
        fee: Optional[float],
        anonymity: Optional[int],
        unlock_time: Optional[int],
        payment_id: Optional[str],
        extra: Optional[str],
        addresses: Optional[list[str]],
        change_address: Optional[str],
    ) -> dict:
        if not transfers:
            raise WalletdRpcError("At least one transfer is required")
        if payment_id and extra:
            raise WalletdRpcError("Provide either a payment id or extra data, not both")
        params: dict[str, Any] = {
            "transfers": self._scaled_transfers(transfers),
            "fee": self._to_atomic(fee if fee is not None else self.default_fee),
            "anonymity": int(anonymity if anonymity is not None else self.default_mixin),
            "unlockTime": int(unlock_time if unlock_time is not None else self.default_unlock_time),
        }
        if payment_id:
            params["paymentId"] = payment_id
        if extra:
            params["extra"] = extra
        if addresses:
            params["addresses"] = list(addresses)
        if change_address:
            params["changeAddress"] = change_address
        return params

    async def send_transaction(
        self,
        transfers: list[dict],
        fee: Optional[float] = None,
        anonymity: Optional[int] = None,
        unlock_time: Optional[int] = None,
        payment_id: Optional[str] = None,
        extra: Optional[str] = None,
        addresses: Optional[list[str]] = None,
        change_address: Optional[str] = None,
    ) -> str:
        params = self._send_params(
            transfers, fee, anonymity, unlock_time, payment_id, extra, addresses, change_address
        )
        result = await self._call("sendTransaction", params)
        return result.get("transactionHash", "")

    async def create_delayed_transaction(
        self,
        transfers: list[dict],
        fee: Optional[float] = None,
        anonymity: Optional[int] = None,
        unlock_time: Optional[int] = None,
        payment_id: Optional[str] = None,
        extra: Optional[str] = None,
        addresses: Optional[list[str]] = None,
        change_address: Optional[str] = None,
    ) -> str:
        params = self._send_params(
            transfers, fee, anonymity, unlock_time, payment_id, extra, addresses, change_address
        )
        result = await self._call("createDelayedTransaction", params)
        return result.get("transactionHash", "")

    async def get_delayed_transaction_hashes(self) -> list[str]:
        result = await self._call("getDelayedTransactionHashes")
        return list(result.get("transactionHashes", []))

    async def delete_delayed_transaction(self, transaction_hash: str) -> dict:
        await self._call("deleteDelayedTransaction", {"transactionHash": transaction_hash})
        return {}

    async def send_delayed_transaction(self, transaction_hash: str) -> dict:
        await self._call("sendDelayedTransaction", {"transactionHash": transaction_hash})
        return {}

    # ==================== FUSION ====================

    async def send_fusion_transaction(
        self,
        threshold: Optional[float] = None,
        anonymity: Optional[int] = None,
        addresses: Optional[list[str]] = None,
        destination_address: Optional[str] = None,
    ) -> str:
        params: dict[str, Any] = {
            "threshold": self._fusion_threshold(threshold),
            "anonymity": int(anonymity if anonymity is not None else self.default_mixin),
        }
        if addresses:
            params["addresses"] = list(addresses)
        if destination_address:
            params["destinationAddress"] = destination_address
        result = await self._call("sendFusionTransaction", params)
        return result.get("transactionHash", "")

    async def estimate_fusion(
        self,
        threshold: Optional[float] = None,
        addresses: Optional[list[str]] = None,
    ) -> dict:
        params: dict[str, Any] = {"threshold": self._fusion_threshold(threshold)}
        if addresses:
            params["addresses"] = list(addresses)
        result = await self._call("estimateFusion", params)
        return {
            "fusionReadyCount": int(result.get("fusionReadyCount", 0) or 0),
            "totalOutputCount": int(result.get("totalOutputCount", 0) or 0),
        }

    def _fusion_threshold(self, threshold: Optional[float]) -> int:
        # Configured default is already atomic; caller-supplied values are human units.
        if threshold is None:
            return int(self.default_fusion_threshold)
        return self._to_atomic(threshold)
