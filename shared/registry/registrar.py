"""Client for the ERC-8004 IdentityRegistry contract."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

try:  # pragma: no cover - optional dependency
    from web3 import Web3
    from web3.types import TxReceipt
except ModuleNotFoundError as exc:  # pragma: no cover - optional dependency
    Web3 = None  # type: ignore[assignment]
    TxReceipt = Dict[str, Any]  # type: ignore[assignment]
    _WEB3_IMPORT_ERROR = exc
else:  # pragma: no cover - exercised in integration
    _WEB3_IMPORT_ERROR = None

try:  # pragma: no cover - optional dependency
    from eth_account import Account
    from eth_account.signers.local import LocalAccount
except ModuleNotFoundError as exc:  # pragma: no cover - optional dependency
    Account = None  # type: ignore[assignment]
    LocalAccount = Any  # type: ignore[assignment]
    _ACCOUNT_IMPORT_ERROR = exc
else:
    _ACCOUNT_IMPORT_ERROR = None


class AgentRegistryConfigError(RuntimeError):
    """Raised when registry configuration (env, ABI, deps) is invalid."""


class AgentRegistryRegistrationError(RuntimeError):
    """Raised when on-chain registration fails."""


@dataclass
class RegistrationReceipt:
    """Identity minted by the registry."""

    external_id: str
    tx_ref: str
    token_uri: Optional[str] = None


@dataclass
class AgentRegistrySettings:
    """Environment-driven configuration for the registry client."""

    rpc_url: str
    private_key: str
    contract_address: str
    chain_id: int
    abi_path: Path

    @classmethod
    def from_env(cls) -> "AgentRegistrySettings":
        rpc_url = os.getenv("HEDERA_RPC_URL", "https://testnet.hashio.io/api")
        private_key = os.getenv("HEDERA_MANAGER_PRIVATE_KEY") or os.getenv("HEDERA_PRIVATE_KEY")
        contract_address = os.getenv("IDENTITY_REGISTRY_ADDRESS")
        network = os.getenv("HEDERA_NETWORK", "testnet")
        abi_env_path = os.getenv("IDENTITY_REGISTRY_ABI")

        if not private_key:
            raise AgentRegistryConfigError("HEDERA_MANAGER_PRIVATE_KEY is not configured")
        if not contract_address:
            raise AgentRegistryConfigError("IDENTITY_REGISTRY_ADDRESS is not configured")

        abi_path = Path(abi_env_path) if abi_env_path else Path(__file__).resolve().parent / "IdentityRegistry.json"
        if not abi_path.exists():
            raise AgentRegistryConfigError(f"IdentityRegistry ABI not found at {abi_path}")

        # HIP-30: eip155:296 is testnet, eip155:295 is mainnet
        chain_id = int(os.getenv("HEDERA_CHAIN_ID", "296" if network == "testnet" else "295"))

        return cls(
            rpc_url=rpc_url,
            private_key=private_key,
            contract_address=contract_address,
            chain_id=chain_id,
            abi_path=abi_path,
        )

    @property
    def registry_ref(self) -> str:
        return f"eip155:{self.chain_id}:{self.contract_address}"


class AgentRegistryClient:
    """Wrapper around the ERC-8004 IdentityRegistry ``register``/``setAgentUri`` calls.

    Calls are blocking; async callers run them in a worker thread.
    """

    def __init__(self, settings: AgentRegistrySettings):
        self.settings = settings
        if Web3 is None:
            raise AgentRegistryConfigError("web3.py is required for registry access") from _WEB3_IMPORT_ERROR
        if Account is None:
            raise AgentRegistryConfigError("eth-account is required for registry access") from _ACCOUNT_IMPORT_ERROR

        self.web3 = Web3(Web3.HTTPProvider(settings.rpc_url))
        if not self.web3.is_connected():
            raise AgentRegistryConfigError("Failed to connect to registry RPC endpoint")

        self.account: LocalAccount = self.web3.eth.account.from_key(settings.private_key)
        self.wallet_address = self.account.address
        self.identity_registry = self._load_contract(settings.abi_path, settings.contract_address)
        self._lock = threading.Lock()

    @property
    def registry_ref(self) -> str:
        return self.settings.registry_ref

    def _load_contract(self, abi_path: Path, contract_address: str):
        with abi_path.open("r", encoding="utf-8") as fh:
            contract_data = json.load(fh)
        abi = contract_data.get("abi") if isinstance(contract_data, dict) else contract_data
        if not abi:
            raise AgentRegistryConfigError(f"ABI definition missing in {abi_path}")
        return self.web3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=abi)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def register(self, token_uri: str = "") -> RegistrationReceipt:
        """Mint a new agent identity; the token URI may be set later."""

        with self._lock:
            receipt, tx_hash = self._transact(self.identity_registry.functions.register(token_uri))

        external_id = self._minted_agent_id(receipt)
        if external_id is None:
            raise AgentRegistryRegistrationError(f"Registration tx {tx_hash} emitted no agent id")
        logger.info("Registry minted agent %s (tx %s)", external_id, tx_hash)
        return RegistrationReceipt(external_id=str(external_id), tx_ref=tx_hash, token_uri=token_uri or None)

    def set_token_uri(self, external_id: str, token_uri: str) -> str:
        """Point ``external_id`` at its published registration file."""

        with self._lock:
            _receipt, tx_hash = self._transact(
                self.identity_registry.functions.setAgentUri(int(external_id), token_uri)
            )
        logger.info("Registry token URI for agent %s set to %s", external_id, token_uri)
        return tx_hash

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _transact(self, call) -> tuple:
        try:
            gas_estimate = call.estimate_gas({"from": self.wallet_address})
        except Exception as exc:  # noqa: BLE001
            raise AgentRegistryRegistrationError(f"Gas estimation failed: {exc}") from exc

        tx = call.build_transaction({
            "from": self.wallet_address,
            "nonce": self.web3.eth.get_transaction_count(self.wallet_address),
            "gas": min(800_000, gas_estimate + 50_000),
            "gasPrice": self.web3.eth.gas_price,
        })

        try:
            signed_tx = self.web3.eth.account.sign_transaction(tx, self.settings.private_key)
            tx_hash = self.web3.eth.send_raw_transaction(signed_tx.raw_transaction)
            receipt: TxReceipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=180)
        except Exception as exc:  # noqa: BLE001
            raise AgentRegistryRegistrationError(f"Failed to submit registry tx: {exc}") from exc

        if int(receipt.get("status", 0)) != 1:
            raise AgentRegistryRegistrationError(
                f"Registry transaction reverted (gas used {receipt.get('gasUsed')})"
            )
        return receipt, tx_hash.hex()

    def _minted_agent_id(self, receipt) -> Optional[int]:
        for event_name in ("Registered", "Transfer"):
            event = getattr(self.identity_registry.events, event_name, None)
            if event is None:
                continue
            try:
                logs = event().process_receipt(receipt)
            except Exception as exc:  # noqa: BLE001
                logger.debug("Could not decode %s logs: %s", event_name, exc)
                continue
            for log in logs:
                args = log.get("args", {})
                value = args.get("agentId", args.get("tokenId"))
                if value is not None:
                    return int(value)
        return None


_default_client: Optional[AgentRegistryClient] = None
_client_lock = threading.Lock()


def get_registry_client(force_refresh: bool = False) -> AgentRegistryClient:
    """Return a cached registry client configured from environment variables."""

    global _default_client
    with _client_lock:
        if force_refresh or _default_client is None:
            settings = AgentRegistrySettings.from_env()
            _default_client = AgentRegistryClient(settings)
        return _default_client
