"""Chain Mirror: records lifecycle events on the HelpChain contract.

Each operation performs exactly one contract transaction, signed with the
backend key, and waits for its receipt. Success yields a LedgerReceipt;
anything else (missing configuration, RPC error, revert, timeout) raises
LedgerCallError. Whether that error is fatal is decided by the caller.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from web3 import Web3
from web3.exceptions import TimeExhausted
from web3.logs import DISCARD

from errors import LedgerCallError
from models import DeliveryStatus, ITEM_TYPES
from units import gwei_to_wei

logger = logging.getLogger(__name__)

# On-chain enum order of the contract's DeliveryStatus
DELIVERY_STATUS_CODES = {
    DeliveryStatus.PLEDGED.value: 0,
    DeliveryStatus.PICKED_UP.value: 1,
    DeliveryStatus.IN_TRANSIT.value: 2,
    DeliveryStatus.DELIVERED.value: 3,
    DeliveryStatus.FAILED.value: 4,
    DeliveryStatus.CANCELLED.value: 5,
}


def _fn(name: str, inputs: list, payable: bool = False) -> dict:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [],
        "stateMutability": "payable" if payable else "nonpayable",
    }


def _event(name: str, inputs: list) -> dict:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": idx} for n, t, idx in inputs],
    }


HELPCHAIN_ABI = [
    _fn("createAidPackage", [("description", "string"), ("itemType", "uint8"),
                             ("quantity", "uint256"), ("fundingGoal", "uint256")]),
    _fn("donateToPackage", [("packageId", "uint256")], payable=True),
    _fn("pledgeDelivery", [("packageId", "uint256")]),
    _fn("updateDeliveryStatus", [("packageId", "uint256"), ("status", "uint8")]),
    _fn("confirmDelivery", [("packageId", "uint256"), ("deliveryProof", "string")]),
    _event("AidPackageCreated", [("packageId", "uint256", True), ("ngo", "address", True),
                                 ("description", "string", False), ("itemType", "uint8", False),
                                 ("quantity", "uint256", False), ("fundingGoal", "uint256", False)]),
    _event("DonationReceived", [("donationId", "uint256", True), ("packageId", "uint256", True),
                                ("donor", "address", True), ("amount", "uint256", False)]),
    _event("DeliveryPledged", [("deliveryId", "uint256", True), ("packageId", "uint256", True),
                               ("volunteer", "address", True)]),
    _event("StatusUpdated", [("deliveryId", "uint256", True), ("packageId", "uint256", True),
                             ("status", "uint8", False)]),
    _event("DeliveryConfirmed", [("deliveryId", "uint256", True), ("packageId", "uint256", True),
                                 ("volunteer", "address", True), ("deliveryProof", "string", False)]),
]


@dataclass(frozen=True)
class LedgerReceipt:
    tx_hash: str
    block_number: Optional[int] = None
    # Id assigned by the contract, when the call emits one
    ledger_id: Optional[int] = None


class ChainMirror:
    """Adapter between local lifecycle events and the HelpChain contract.

    Built once per process by ``create_app`` and handed to the state
    machines. With no web3 client, contract or signing account every call
    raises LedgerCallError.
    """

    def __init__(self, w3: Optional[Web3], contract: Any = None, account: Any = None,
                 timeout: float = 30.0, chain_name: str = ""):
        self._w3 = w3
        self._contract = contract
        self._account = account
        self.timeout = timeout
        self.chain_name = chain_name

    @classmethod
    def from_config(cls, config: Dict[str, Any], w3: Optional[Web3]) -> "ChainMirror":
        timeout = float(config.get("LEDGER_TIMEOUT", 30))
        address = config.get("CONTRACT_ADDRESS", "")
        private_key = config.get("LEDGER_PRIVATE_KEY", "")
        contract = account = None
        if w3 is not None and address and private_key:
            contract = w3.eth.contract(address=Web3.to_checksum_address(address), abi=HELPCHAIN_ABI)
            account = w3.eth.account.from_key(private_key)
        else:
            logger.warning("Chain mirror disabled: ETH_RPC_URL, CONTRACT_ADDRESS or LEDGER_PRIVATE_KEY missing")
        return cls(w3, contract, account, timeout=timeout, chain_name=config.get("ETH_CHAIN_NAME", ""))

    @property
    def enabled(self) -> bool:
        return self._w3 is not None and self._contract is not None and self._account is not None

    # ------------------
    # Mirror operations
    # ------------------
    def create_package(self, description: str, item_type: str, quantity: int,
                       funding_goal_gwei: int) -> LedgerReceipt:
        def call():
            return self._contract.functions.createAidPackage(
                description, ITEM_TYPES.index(item_type), quantity, gwei_to_wei(funding_goal_gwei)
            )
        return self._transact("createPackage", call, event=("AidPackageCreated", "packageId"))

    def record_donation(self, package_ledger_id: Optional[int], amount_gwei: int) -> LedgerReceipt:
        self._require_id("recordDonation", package_ledger_id)
        return self._transact(
            "recordDonation",
            lambda: self._contract.functions.donateToPackage(package_ledger_id),
            value=gwei_to_wei(amount_gwei),
            event=("DonationReceived", "donationId"),
        )

    def pledge(self, package_ledger_id: Optional[int]) -> LedgerReceipt:
        self._require_id("pledge", package_ledger_id)
        return self._transact(
            "pledge",
            lambda: self._contract.functions.pledgeDelivery(package_ledger_id),
            event=("DeliveryPledged", "deliveryId"),
        )

    def update_status(self, package_ledger_id: Optional[int], status: str) -> LedgerReceipt:
        self._require_id("updateStatus", package_ledger_id)
        code = DELIVERY_STATUS_CODES[status]
        return self._transact(
            "updateStatus",
            lambda: self._contract.functions.updateDeliveryStatus(package_ledger_id, code),
        )

    def confirm(self, package_ledger_id: Optional[int], proof: str) -> LedgerReceipt:
        self._require_id("confirm", package_ledger_id)
        return self._transact(
            "confirm",
            lambda: self._contract.functions.confirmDelivery(package_ledger_id, proof),
        )

    def status(self) -> dict:
        info = {
            "configured": self.enabled,
            "connected": False,
            "chain_name": self.chain_name or None,
            "chain_id": None,
            "latest_block": None,
            "contract_address": getattr(self._contract, "address", None),
            "error": None,
        }
        if self._w3 is None:
            return info
        try:
            info["connected"] = self._w3.is_connected()
            if info["connected"]:
                info["chain_id"] = self._w3.eth.chain_id
                info["latest_block"] = self._w3.eth.block_number
        except Exception as e:  # noqa: BLE001
            info["error"] = str(e)
        return info

    # ------------------
    # Internals
    # ------------------
    @staticmethod
    def _require_id(operation: str, ledger_id: Optional[int]) -> None:
        if ledger_id is None:
            raise LedgerCallError(operation, "aid package has no ledger id")

    def _transact(self, operation: str, build_call, value: int = 0, event=None) -> LedgerReceipt:
        if not self.enabled:
            raise LedgerCallError(operation, "ledger client is not configured")
        try:
            call = build_call()
            sender = self._account.address
            tx = call.build_transaction(
                {
                    "from": sender,
                    "nonce": self._w3.eth.get_transaction_count(sender, "pending"),
                    "value": value,
                }
            )
            signed = self._account.sign_transaction(tx)
            sent = self._w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = self._w3.eth.wait_for_transaction_receipt(sent, timeout=self.timeout)
        except TimeExhausted as e:
            raise LedgerCallError(operation, f"no receipt after {self.timeout}s") from e
        except Exception as e:  # noqa: BLE001
            raise LedgerCallError(operation, str(e)) from e

        if receipt["status"] != 1:
            raise LedgerCallError(operation, "transaction reverted")

        ledger_id = None
        if event is not None:
            ledger_id = self._event_arg(receipt, *event)
        tx_hash = Web3.to_hex(receipt["transactionHash"])
        logger.info("Ledger %s mined in block %s: %s", operation, receipt["blockNumber"], tx_hash)
        return LedgerReceipt(tx_hash=tx_hash, block_number=receipt["blockNumber"], ledger_id=ledger_id)

    def _event_arg(self, receipt, event_name: str, arg: str) -> Optional[int]:
        try:
            events = getattr(self._contract.events, event_name)().process_receipt(receipt, errors=DISCARD)
        except Exception:  # noqa: BLE001
            logger.warning("Could not decode %s from receipt", event_name, exc_info=True)
            return None
        for ev in events:
            return int(ev["args"][arg])
        return None
