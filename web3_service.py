import logging
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

logger = logging.getLogger(__name__)


def init_web3(rpc_url: str, timeout: float = 10) -> Optional[Web3]:
    """Build a Web3 client for ``rpc_url`` or return None when unset/unreachable."""
    if not rpc_url:
        return None
    try:
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        # Attempt a lightweight call
        if not w3.is_connected():
            logger.warning("RPC node at %s is not reachable yet", rpc_url)
        return w3
    except Exception:  # noqa: BLE001
        logger.exception("Could not initialise web3 client")
        return None


def recover_signer(message: str, signature: str) -> Optional[str]:
    """Checksum address that signed ``message`` (EIP-191 personal_sign), or None."""
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:  # noqa: BLE001
        logger.info("Signature could not be recovered: %s", e)
        return None


def signed_by(message: str, signature: str, address: Optional[str]) -> bool:
    if not address:
        return False
    signer = recover_signer(message, signature)
    return signer is not None and signer.lower() == address.lower()
