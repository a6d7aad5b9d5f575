from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from eth_account import Account
from eth_keys import keys

# Same base path the deployment scripts use: m/44'/60'/0'/0/<index>.
VAULT_BASE_DERIVE_PATH = "m/44'/60'/0'/0"

Account.enable_unaudited_hdwallet_features()


class KeyDerivationError(RuntimeError):
    pass


def privkey32_to_web3_hex(privkey32: bytes) -> str:
    """
    0x + 64 lowercase hex chars (always zero-padded to 32 bytes).
    """
    if len(privkey32) != 32:
        raise KeyDerivationError("privkey must be 32 bytes")
    return keys.PrivateKey(bytes(privkey32)).to_hex()


def derive_privkey32_from_mnemonic(mnemonic: str, index: int, *, base_path: str = VAULT_BASE_DERIVE_PATH) -> bytes:
    phrase = " ".join(str(mnemonic or "").split())
    if not phrase:
        raise KeyDerivationError("mnemonic is empty")
    if int(index) < 0:
        raise KeyDerivationError("derivation index must be >= 0")
    try:
        acct = Account.from_mnemonic(phrase, account_path=f"{base_path}/{int(index)}")
    except Exception as exc:
        raise KeyDerivationError(f"failed to derive key at index {index}: {exc}") from exc
    priv = bytes(acct.key)
    # Validate by constructing eth_keys object (raises on invalid).
    _ = keys.PrivateKey(priv)
    return priv


def derive_vault_private_key_hex(mnemonic: str, index: int) -> str:
    return privkey32_to_web3_hex(derive_privkey32_from_mnemonic(mnemonic, index))


@dataclass(frozen=True)
class VaultIdentityV1:
    index: int
    address: str

    def to_json_obj(self) -> Dict[str, Any]:
        return {"index": int(self.index), "address": str(self.address)}


def vault_identity_v1(mnemonic: str, index: int) -> VaultIdentityV1:
    pk = keys.PrivateKey(derive_privkey32_from_mnemonic(mnemonic, index))
    return VaultIdentityV1(index=int(index), address=pk.public_key.to_checksum_address())
