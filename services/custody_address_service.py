"""
Custody Address Service
=======================

Derives the 2-of-3 multisig custody address for every escrow.

For a derivation index ``i`` three public keys are derived from the platform
master mnemonic (BIP39 → BIP44), one per account:

    platform  m/44'/coin'/0'/0/i
    buyer     m/44'/coin'/1'/0/i
    seller    m/44'/coin'/2'/0/i

coin is 0 on mainnet and 1 on testnet. The keys are sorted by raw byte value
(BIP67) before building ``OP_2 <k1> <k2> <k3> OP_3 OP_CHECKMULTISIG``, so the
address depends only on the key set, never on role order. The address is the
base58check P2SH encoding of HASH160(redeem script).

Without a mnemonic the service runs in simulation mode and hands out
well-formed but unspendable placeholder addresses.
"""

import logging
import secrets
import threading
from typing import Iterable, List, NamedTuple, Optional

from bip_utils import (
    Base58Encoder,
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
    Bip44,
    Bip44Changes,
    Bip44Coins,
    Hash160,
)

from config import Config

logger = logging.getLogger(__name__)

# Script opcodes
OP_2 = 0x52
OP_3 = 0x53
OP_CHECKMULTISIG = 0xAE
PUSH_33_BYTES = 0x21

# P2SH version bytes
P2SH_VERSION = {"mainnet": b"\x05", "testnet": b"\xc4"}

COMPRESSED_PUBKEY_LENGTH = 33


class CustodyConfigError(Exception):
    """Master key material is present but unusable"""
    pass


class CustodyBundle(NamedTuple):
    """Custody fields stored verbatim on an escrow at creation"""

    derivation_index: int
    escrow_address: str
    buyer_pubkey: Optional[str] = None
    seller_pubkey: Optional[str] = None
    platform_pubkey: Optional[str] = None
    redeem_script: Optional[str] = None

    @property
    def is_simulated(self) -> bool:
        return self.redeem_script is None


def build_redeem_script(pubkeys: Iterable[bytes]) -> bytes:
    """
    Build a BIP67 2-of-3 multisig redeem script.

    Keys are sorted lexicographically by their raw bytes; the input order is
    irrelevant.
    """
    keys = sorted(bytes(k) for k in pubkeys)
    if len(keys) != 3:
        raise ValueError(f"2-of-3 multisig needs exactly 3 public keys, got {len(keys)}")
    for key in keys:
        if len(key) != COMPRESSED_PUBKEY_LENGTH or key[0] not in (0x02, 0x03):
            raise ValueError(f"Not a compressed public key: {key.hex()}")

    script = bytearray([OP_2])
    for key in keys:
        script.append(PUSH_33_BYTES)
        script.extend(key)
    script.extend([OP_3, OP_CHECKMULTISIG])
    return bytes(script)


def script_to_p2sh_address(redeem_script: bytes, network: str) -> str:
    """Base58check P2SH address for a redeem script"""
    version = P2SH_VERSION.get(network)
    if version is None:
        raise ValueError(f"Unknown network: {network}")
    return Base58Encoder.CheckEncode(version + Hash160.QuickDigest(redeem_script))


def multisig_address_from_pubkeys(pubkeys_hex: Iterable[str], network: str) -> tuple:
    """
    Rebuild (address, redeem_script_hex) from three hex public keys in any order.

    Used to verify a stored custody address against its stored keys.
    """
    redeem_script = build_redeem_script(bytes.fromhex(k) for k in pubkeys_hex)
    return script_to_p2sh_address(redeem_script, network), redeem_script.hex()


def placeholder_address(network: str) -> str:
    """
    Syntactically valid P2SH address over a random 20-byte payload.

    Nobody knows a script hashing to it, so funds sent there are unspendable.
    """
    version = P2SH_VERSION.get(network, P2SH_VERSION["testnet"])
    return Base58Encoder.CheckEncode(version + secrets.token_bytes(20))


class CustodyAddressService:
    """Deterministic per-escrow key derivation and multisig address construction"""

    PLATFORM_ACCOUNT = 0
    BUYER_ACCOUNT = 1
    SELLER_ACCOUNT = 2

    def __init__(self, mnemonic: Optional[str] = None, passphrase: str = "", network: str = "testnet"):
        if network not in P2SH_VERSION:
            raise CustodyConfigError(f"Unsupported network '{network}' (expected mainnet or testnet)")

        self.network = network
        self._coin_ctx = None

        mnemonic = (mnemonic or "").strip()
        if not mnemonic:
            logger.warning("⚠️ CUSTODY_SIMULATION_MODE: no master mnemonic configured - addresses are placeholders")
            return

        try:
            Bip39MnemonicValidator().Validate(mnemonic)
        except Exception as exc:
            raise CustodyConfigError(
                "BTC_MASTER_MNEMONIC is not a valid BIP-39 seed phrase. Double-check words and spacing."
            ) from exc

        seed_bytes = Bip39SeedGenerator(mnemonic).Generate(passphrase)
        coin = Bip44Coins.BITCOIN if network == "mainnet" else Bip44Coins.BITCOIN_TESTNET
        # m/44'/coin' is shared by all three roles
        self._coin_ctx = Bip44.FromSeed(seed_bytes, coin).Purpose().Coin()
        logger.info(f"✅ CUSTODY_READY: HD multisig custody on {network}")

    @property
    def simulation_mode(self) -> bool:
        return self._coin_ctx is None

    def derive_public_key(self, account: int, index: int) -> bytes:
        """Compressed public key at m/44'/coin'/account'/0/index"""
        if self.simulation_mode:
            raise CustodyConfigError("Cannot derive keys in simulation mode")
        if index < 0:
            raise ValueError(f"Derivation index must be non-negative, got {index}")

        ctx = (
            self._coin_ctx
            .Account(account)
            .Change(Bip44Changes.CHAIN_EXT)
            .AddressIndex(index)
        )
        return ctx.PublicKey().RawCompressed().ToBytes()

    def generate(self, derivation_index: int) -> CustodyBundle:
        """Custody fields for the escrow holding `derivation_index`"""
        if self.simulation_mode:
            address = placeholder_address(self.network)
            logger.info(f"🧪 CUSTODY_PLACEHOLDER: index {derivation_index} → {address}")
            return CustodyBundle(derivation_index=derivation_index, escrow_address=address)

        platform_key = self.derive_public_key(self.PLATFORM_ACCOUNT, derivation_index)
        buyer_key = self.derive_public_key(self.BUYER_ACCOUNT, derivation_index)
        seller_key = self.derive_public_key(self.SELLER_ACCOUNT, derivation_index)

        redeem_script = build_redeem_script([platform_key, buyer_key, seller_key])
        address = script_to_p2sh_address(redeem_script, self.network)

        logger.info(f"🔐 CUSTODY_ADDRESS_GENERATED: index {derivation_index} → {address}")
        return CustodyBundle(
            derivation_index=derivation_index,
            escrow_address=address,
            buyer_pubkey=buyer_key.hex(),
            seller_pubkey=seller_key.hex(),
            platform_pubkey=platform_key.hex(),
            redeem_script=redeem_script.hex(),
        )

    def verify(self, bundle: CustodyBundle) -> bool:
        """True when the stored address matches its stored keys"""
        if bundle.is_simulated:
            return False
        keys: List[str] = [bundle.buyer_pubkey, bundle.seller_pubkey, bundle.platform_pubkey]
        address, redeem_hex = multisig_address_from_pubkeys(keys, self.network)
        return address == bundle.escrow_address and redeem_hex == bundle.redeem_script


_custody_service: Optional[CustodyAddressService] = None
_custody_service_lock = threading.Lock()


def get_custody_service() -> CustodyAddressService:
    """Process-wide custody service built from Config"""
    global _custody_service
    with _custody_service_lock:
        if _custody_service is None:
            _custody_service = CustodyAddressService(
                mnemonic=Config.BTC_MASTER_MNEMONIC,
                passphrase=Config.BTC_MNEMONIC_PASSPHRASE,
                network=Config.BTC_NETWORK,
            )
        return _custody_service


def set_custody_service(service: Optional[CustodyAddressService]) -> None:
    """Replace the process-wide custody service (startup wiring and tests)"""
    global _custody_service
    with _custody_service_lock:
        _custody_service = service
