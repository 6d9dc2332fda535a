"""Tests for the contract adapter, with web3 replaced by mocks."""
from unittest.mock import MagicMock

import pytest
from web3.exceptions import TimeExhausted

from chain_mirror import DELIVERY_STATUS_CODES, ChainMirror
from errors import LedgerCallError

TX_HASH = bytes.fromhex("ab" * 32)
SENDER = "0x" + "12" * 20


def receipt(status=1, block=42):
    return {"status": status, "transactionHash": TX_HASH, "blockNumber": block}


@pytest.fixture
def w3():
    w3 = MagicMock()
    w3.eth.get_transaction_count.return_value = 3
    w3.eth.wait_for_transaction_receipt.return_value = receipt()
    return w3


@pytest.fixture
def contract():
    contract = MagicMock()
    contract.address = "0x" + "c0" * 20
    return contract


@pytest.fixture
def mirror(w3, contract):
    account = MagicMock()
    account.address = SENDER
    return ChainMirror(w3, contract, account, timeout=5.0, chain_name="sepolia")


def test_unconfigured_mirror_raises():
    mirror = ChainMirror(None)

    assert mirror.enabled is False
    with pytest.raises(LedgerCallError) as exc:
        mirror.create_package("Rice", "Food", 10, 1)
    assert exc.value.operation == "createPackage"
    assert "not configured" in exc.value.reason


def test_from_config_without_client_is_disabled():
    mirror = ChainMirror.from_config({"CONTRACT_ADDRESS": "", "LEDGER_PRIVATE_KEY": ""}, None)
    assert mirror.enabled is False


def test_create_package_reads_ledger_id(mirror, w3, contract):
    contract.events.AidPackageCreated.return_value.process_receipt.return_value = [
        {"args": {"packageId": 7}}
    ]

    result = mirror.create_package("Antibiotics", "Medicine", 20, 2_500_000_000)

    contract.functions.createAidPackage.assert_called_once_with("Antibiotics", 1, 20, 2_500_000_000 * 10**9)
    tx = contract.functions.createAidPackage.return_value.build_transaction.call_args.args[0]
    assert tx == {"from": SENDER, "nonce": 3, "value": 0}
    w3.eth.wait_for_transaction_receipt.assert_called_once()
    assert w3.eth.wait_for_transaction_receipt.call_args.kwargs["timeout"] == 5.0
    assert result.tx_hash == "0x" + "ab" * 32
    assert result.block_number == 42
    assert result.ledger_id == 7


def test_donation_sends_value_in_wei(mirror, contract):
    contract.events.DonationReceived.return_value.process_receipt.return_value = [
        {"args": {"donationId": 3}}
    ]

    result = mirror.record_donation(7, 1_500_000_000)

    contract.functions.donateToPackage.assert_called_once_with(7)
    tx = contract.functions.donateToPackage.return_value.build_transaction.call_args.args[0]
    assert tx["value"] == 1_500_000_000 * 10**9
    assert result.ledger_id == 3


def test_missing_ledger_id_is_not_sent(mirror, contract, w3):
    with pytest.raises(LedgerCallError) as exc:
        mirror.pledge(None)

    assert exc.value.operation == "pledge"
    contract.functions.pledgeDelivery.assert_not_called()
    w3.eth.send_raw_transaction.assert_not_called()


@pytest.mark.parametrize("status", list(DELIVERY_STATUS_CODES))
def test_update_status_uses_contract_codes(mirror, contract, status):
    mirror.update_status(5, status)
    contract.functions.updateDeliveryStatus.assert_called_once_with(5, DELIVERY_STATUS_CODES[status])


def test_status_codes_match_contract_order():
    assert DELIVERY_STATUS_CODES["InTransit"] == 2
    assert DELIVERY_STATUS_CODES["Cancelled"] == 5


def test_reverted_transaction(mirror, w3):
    w3.eth.wait_for_transaction_receipt.return_value = receipt(status=0)

    with pytest.raises(LedgerCallError) as exc:
        mirror.confirm(5, "GPS: 1,2")
    assert exc.value.reason == "transaction reverted"


def test_receipt_timeout(mirror, w3):
    w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("timed out")

    with pytest.raises(LedgerCallError) as exc:
        mirror.update_status(5, "PickedUp")
    assert "no receipt" in exc.value.reason
    assert exc.value.status_code == 502


def test_rpc_error_is_wrapped(mirror, w3):
    w3.eth.send_raw_transaction.side_effect = ConnectionError("connection refused")

    with pytest.raises(LedgerCallError) as exc:
        mirror.pledge(5)
    assert "connection refused" in exc.value.reason


def test_undecodable_event_leaves_id_empty(mirror, contract):
    contract.events.DeliveryPledged.return_value.process_receipt.side_effect = ValueError("bad log")

    result = mirror.pledge(5)

    assert result.tx_hash == "0x" + "ab" * 32
    assert result.ledger_id is None


def test_status_reports_chain(mirror, w3, contract):
    w3.is_connected.return_value = True
    w3.eth.chain_id = 11155111
    w3.eth.block_number = 123

    info = mirror.status()

    assert info == {
        "configured": True,
        "connected": True,
        "chain_name": "sepolia",
        "chain_id": 11155111,
        "latest_block": 123,
        "contract_address": contract.address,
        "error": None,
    }


def test_status_reports_rpc_error(mirror, w3):
    w3.is_connected.side_effect = ConnectionError("node down")

    info = mirror.status()

    assert info["connected"] is False
    assert info["error"] == "node down"


def test_status_without_client():
    info = ChainMirror(None).status()
    assert info["configured"] is False
    assert info["connected"] is False
    assert info["contract_address"] is None
