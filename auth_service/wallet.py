"""
Wallet funding through an ERC-20 token contract.

Builds a `transfer(address,uint256)` call, estimates its gas, signs it with the
service's private key and broadcasts it through a JSON-RPC node. Returns as
soon as the node accepts the raw transaction; the receipt is not awaited.
"""

import os
import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from dotenv import load_dotenv
from eth_account import Account
from web3 import AsyncWeb3, AsyncHTTPProvider, Web3
from web3.exceptions import ContractLogicError

load_dotenv()

logger = logging.getLogger(__name__)

FAILURE_MESSAGE = "Failed to allocate tokens to the wallet"

EIP1559 = "eip1559"
LEGACY = "legacy"
FEE_MODELS = (EIP1559, LEGACY)

PRIVATE_KEY_LENGTH = 66  # "0x" + 32 bytes hex

TRANSFER_ABI = [
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    }
]


# --- Errors ---

class WalletFundingError(Exception):
    """Base error for a failed token allocation."""

    def __init__(self, reason: str):
        super().__init__(f"{FAILURE_MESSAGE}: {reason}")
        self.reason = reason


class FundingConfigurationError(WalletFundingError):
    """Raised when the funder is misconfigured (key, contract, provider, fee model)."""


class FundingNetworkError(WalletFundingError):
    """Raised when the node cannot be reached or rejects the transaction."""


class FundingRevertedError(WalletFundingError):
    """Raised when the contract call reverts during gas estimation."""


class FundingBroadcastError(WalletFundingError):
    """
    Raised when sending the signed transaction fails or stalls.

    The node may still have accepted it, so the transfer must not be retried.
    `tx_hash` is computed locally from the signed payload.
    """

    def __init__(self, reason: str, tx_hash: str):
        super().__init__(reason)
        self.tx_hash = tx_hash


# --- Configuration ---

@dataclass(frozen=True)
class FundingSettings:
    network: str
    api_key: Optional[str]
    rpc_url: Optional[str]
    contract_address: Optional[str]
    private_key: Optional[str]
    fee_model: str = EIP1559
    max_priority_fee_gwei: Decimal = Decimal("2")
    max_fee_gwei: Decimal = Decimal("100")
    timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "FundingSettings":
        """Reads the funding settings from the environment at call time."""
        try:
            return cls(
                network=os.getenv("NETWORK") or "sepolia",
                api_key=os.getenv("INFURA_API_KEY"),
                rpc_url=os.getenv("RPC_URL"),
                contract_address=os.getenv("CONTRACT_ADDRESS"),
                private_key=os.getenv("PRIVATE_KEY"),
                fee_model=(os.getenv("FEE_MODEL") or EIP1559).strip().lower(),
                max_priority_fee_gwei=Decimal(os.getenv("MAX_PRIORITY_FEE_GWEI", "2")),
                max_fee_gwei=Decimal(os.getenv("MAX_FEE_GWEI", "100")),
                timeout=float(os.getenv("RPC_TIMEOUT_SECONDS", "30")),
            )
        except (ArithmeticError, ValueError) as e:
            raise FundingConfigurationError(f"invalid numeric setting ({e})")

    def endpoint_url(self) -> str:
        if self.rpc_url:
            return self.rpc_url
        if not self.api_key:
            raise FundingConfigurationError("INFURA_API_KEY is not set")
        return f"https://{self.network}.infura.io/v3/{self.api_key}"


def validate_private_key(private_key: Optional[str]) -> str:
    """Checks the key is present, 0x-prefixed and 66 characters long."""
    if not private_key or not private_key.startswith("0x") or len(private_key) != PRIVATE_KEY_LENGTH:
        raise FundingConfigurationError("Invalid private key format")
    return private_key


def to_base_units(amount: Union[int, Decimal, str]) -> int:
    """Converts whole tokens to the contract's 18-decimal base unit."""
    return Web3.to_wei(Decimal(str(amount)), "ether")


# --- Funder ---

class WalletFunder:
    """
    Sends ERC-20 tokens from the service account to user wallets.

    `web3` may be passed in (tests, shared clients); otherwise an AsyncWeb3
    client is created for the configured endpoint.
    """

    def __init__(self, settings: FundingSettings = None, web3: AsyncWeb3 = None):
        self.settings = settings or FundingSettings.from_env()
        self._web3 = web3

    def _check_settings(self):
        """Validates the settings and derives the signing account. No network access."""
        settings = self.settings
        try:
            account = Account.from_key(validate_private_key(settings.private_key))
        except (ValueError, TypeError) as e:
            raise FundingConfigurationError("Invalid private key format") from e
        if settings.fee_model not in FEE_MODELS:
            raise FundingConfigurationError(f"Unknown fee model '{settings.fee_model}'")
        if not settings.contract_address or not Web3.is_address(settings.contract_address):
            raise FundingConfigurationError("CONTRACT_ADDRESS is missing or invalid")
        if self._web3 is None:
            self._web3 = AsyncWeb3(AsyncHTTPProvider(settings.endpoint_url()))
        return account

    async def allocate_tokens(self, wallet_address: str, amount: Union[int, Decimal]) -> str:
        """
        Transfers `amount` whole tokens to `wallet_address`.

        Returns:
            The transaction hash as a 0x-prefixed hex string.

        Raises:
            FundingConfigurationError: bad key, contract, provider or fee model.
                Raised before any network call.
            FundingRevertedError: the transfer reverts on estimation.
            FundingNetworkError: any RPC or signing failure before broadcast.
            FundingBroadcastError: the broadcast failed or timed out; the
                transaction may be on-chain and carries its hash.
        """
        try:
            account = self._check_settings()
            if not Web3.is_address(wallet_address):
                raise FundingConfigurationError(f"Invalid recipient address {wallet_address}")
            signed = await asyncio.wait_for(
                self._build_signed_transfer(account, Web3.to_checksum_address(wallet_address), amount),
                timeout=self.settings.timeout,
            )
        except FundingConfigurationError as e:
            logger.error(f"Wallet funding misconfigured: {e.reason}")
            raise
        except ContractLogicError as e:
            logger.error(f"Token transfer to {wallet_address} reverted: {e}", exc_info=True)
            raise FundingRevertedError(str(e)) from e
        except asyncio.TimeoutError as e:
            logger.error(f"Token transfer to {wallet_address} timed out after {self.settings.timeout}s")
            raise FundingNetworkError("node did not answer in time") from e
        except Exception as e:
            logger.error(f"Failed to allocate tokens to wallet {wallet_address}: {e}", exc_info=True)
            raise FundingNetworkError(str(e)) from e

        return await self._broadcast(signed, wallet_address, amount)

    async def _build_signed_transfer(self, account, recipient: str, amount):
        w3 = self._web3
        settings = self.settings

        w3.eth.default_account = account.address

        contract_address = Web3.to_checksum_address(settings.contract_address)
        contract = w3.eth.contract(address=contract_address, abi=TRANSFER_ABI)
        data = contract.encode_abi("transfer", args=[recipient, to_base_units(amount)])

        gas_estimate = await w3.eth.estimate_gas({
            "from": account.address,
            "to": contract_address,
            "data": data,
        })

        tx = {
            "from": account.address,
            "to": contract_address,
            "gas": gas_estimate,
            "data": data,
            "value": 0,
            "nonce": await w3.eth.get_transaction_count(account.address),
            "chainId": await w3.eth.chain_id,
        }
        if settings.fee_model == EIP1559:
            tx["type"] = 2
            tx["maxPriorityFeePerGas"] = Web3.to_wei(settings.max_priority_fee_gwei, "gwei")
            tx["maxFeePerGas"] = Web3.to_wei(settings.max_fee_gwei, "gwei")
        else:
            tx["gasPrice"] = await w3.eth.gas_price

        return account.sign_transaction(tx)

    async def _broadcast(self, signed, wallet_address: str, amount) -> str:
        tx_hash = Web3.to_hex(signed.hash)
        try:
            await asyncio.wait_for(
                self._web3.eth.send_raw_transaction(signed.raw_transaction),
                timeout=self.settings.timeout,
            )
        except Exception as e:
            logger.error(f"Broadcast of {tx_hash} to {wallet_address} failed, it may still be mined: {e}", exc_info=True)
            raise FundingBroadcastError(str(e) or "node did not answer in time", tx_hash) from e

        logger.info(f"Token transfer of {amount} to {wallet_address} broadcast: {tx_hash}")
        return tx_hash


async def allocate_tokens_to_wallet(wallet_address: str, amount) -> str:
    """Funds `wallet_address` using settings read from the environment."""
    return await WalletFunder().allocate_tokens(wallet_address, amount)
