from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _WireModel(BaseModel):
    """Snake-case in Python, camelCase on the wire (matches walletd JSON-RPC)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class StatusSnapshot(_WireModel):
    """One ``getStatus`` reply."""

    block_count: int
    known_block_count: int
    last_block_hash: str = ""
    peer_count: int = 0

    @property
    def blocks_behind(self) -> int:
        return self.known_block_count - self.block_count

    @classmethod
    def from_rpc(cls, data: dict) -> "StatusSnapshot":
        return cls(
            block_count=int(data.get("blockCount", 0) or 0),
            known_block_count=int(data.get("knownBlockCount", 0) or 0),
            last_block_hash=str(data.get("lastBlockHash", "") or ""),
            peer_count=int(data.get("peerCount", 0) or 0),
        )


class Balance(_WireModel):
    available_balance: float
    locked_amount: float


class TransactionRecord(_WireModel):
    """One wallet-owned transfer leg of a daemon transaction.

    Amounts are already divided by the configured decimal divisor.
    """

    transaction_hash: str
    block_hash: str = ""
    block_index: int = 0
    timestamp: int = 0
    is_base: bool = False
    unlock_time: int = 0
    amount: float = 0.0
    fee: float = 0.0
    extra: str = ""
    payment_id: str = ""
    address: str = ""
    inbound: bool = True

    @classmethod
    def from_transfer(
        cls,
        transaction: dict,
        transfer: dict,
        *,
        block_hash: str,
        divisor: int,
    ) -> "TransactionRecord":
        raw_amount = int(transfer.get("amount", 0) or 0)
        return cls(
            transaction_hash=str(transaction.get("transactionHash", "")),
            block_hash=block_hash or "",
            block_index=int(transaction.get("blockIndex", 0) or 0),
            timestamp=int(transaction.get("timestamp", 0) or 0),
            is_base=bool(transaction.get("isBase", False)),
            unlock_time=int(transaction.get("unlockTime", 0) or 0),
            amount=abs(raw_amount) / divisor,
            fee=int(transaction.get("fee", 0) or 0) / divisor,
            extra=str(transaction.get("extra", "") or ""),
            payment_id=str(transaction.get("paymentId", "") or ""),
            address=str(transfer.get("address", "") or ""),
            inbound=raw_amount > 0,
        )
