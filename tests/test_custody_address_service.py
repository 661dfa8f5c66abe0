"""
Custody address derivation tests
Covers BIP44 key derivation, BIP67 key ordering, P2SH encoding and simulation mode
"""

from itertools import permutations

import pytest
from bip_utils import Base58Decoder

from services.custody_address_service import (
    CustodyAddressService,
    CustodyBundle,
    CustodyConfigError,
    build_redeem_script,
    multisig_address_from_pubkeys,
    placeholder_address,
    script_to_p2sh_address,
)


TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)


class TestHDCustody:
    """Deterministic 2-of-3 multisig generation"""

    def test_generate_returns_complete_bundle(self, hd_custody):
        bundle = hd_custody.generate(0)

        assert bundle.derivation_index == 0
        assert not bundle.is_simulated
        for key in (bundle.buyer_pubkey, bundle.seller_pubkey, bundle.platform_pubkey):
            assert len(key) == 66
            assert key[:2] in ("02", "03")
        assert len({bundle.buyer_pubkey, bundle.seller_pubkey, bundle.platform_pubkey}) == 3

    def test_redeem_script_layout(self, hd_custody):
        script = hd_custody.generate(3).redeem_script

        # OP_2 <33> <33> <33> OP_3 OP_CHECKMULTISIG
        assert len(script) == 210
        assert script.startswith("52")
        assert script.endswith("53ae")

    def test_testnet_address_is_p2sh(self, hd_custody):
        address = hd_custody.generate(0).escrow_address
        assert address.startswith("2")
        assert Base58Decoder.CheckDecode(address)[:1] == b"\xc4"

    def test_mainnet_address_is_p2sh(self):
        service = CustodyAddressService(mnemonic=TEST_MNEMONIC, network="mainnet")
        address = service.generate(0).escrow_address
        assert address.startswith("3")
        assert Base58Decoder.CheckDecode(address)[:1] == b"\x05"

    def test_same_seed_same_index_is_reproducible(self, hd_custody):
        other = CustodyAddressService(mnemonic=TEST_MNEMONIC, network="testnet")
        assert hd_custody.generate(7) == other.generate(7)

    def test_distinct_indices_give_distinct_addresses(self, hd_custody):
        addresses = {hd_custody.generate(i).escrow_address for i in range(5)}
        assert len(addresses) == 5

    def test_passphrase_changes_keys(self, hd_custody):
        with_passphrase = CustodyAddressService(mnemonic=TEST_MNEMONIC, passphrase="TREZOR", network="testnet")
        assert with_passphrase.generate(0).escrow_address != hd_custody.generate(0).escrow_address

    def test_address_is_independent_of_key_order(self, hd_custody):
        bundle = hd_custody.generate(1)
        keys = [bundle.buyer_pubkey, bundle.seller_pubkey, bundle.platform_pubkey]

        results = {multisig_address_from_pubkeys(list(p), "testnet") for p in permutations(keys)}

        assert results == {(bundle.escrow_address, bundle.redeem_script)}

    def test_verify_accepts_genuine_bundle(self, hd_custody):
        assert hd_custody.verify(hd_custody.generate(2)) is True

    def test_verify_rejects_tampered_address(self, hd_custody):
        bundle = hd_custody.generate(2)
        tampered = bundle._replace(escrow_address=hd_custody.generate(3).escrow_address)
        assert hd_custody.verify(tampered) is False

    def test_negative_index_rejected(self, hd_custody):
        with pytest.raises(ValueError):
            hd_custody.derive_public_key(CustodyAddressService.BUYER_ACCOUNT, -1)

    def test_invalid_mnemonic_rejected(self):
        with pytest.raises(CustodyConfigError):
            CustodyAddressService(mnemonic="not a real seed phrase at all", network="testnet")

    def test_unknown_network_rejected(self):
        with pytest.raises(CustodyConfigError):
            CustodyAddressService(mnemonic=TEST_MNEMONIC, network="regtest")


class TestRedeemScript:
    """Script construction without a seed"""

    def test_requires_three_keys(self):
        key = bytes.fromhex("02" + "11" * 32)
        with pytest.raises(ValueError):
            build_redeem_script([key, key])

    def test_rejects_uncompressed_keys(self):
        keys = [bytes.fromhex("04" + "11" * 32), bytes.fromhex("02" + "22" * 32), bytes.fromhex("03" + "33" * 32)]
        with pytest.raises(ValueError):
            build_redeem_script(keys)

    def test_keys_sorted_lexicographically(self):
        low = bytes.fromhex("02" + "00" * 32)
        mid = bytes.fromhex("02" + "ff" * 32)
        high = bytes.fromhex("03" + "00" * 32)

        script = build_redeem_script([high, low, mid])

        assert script[2:35] == low
        assert script[36:69] == mid
        assert script[70:103] == high

    def test_unknown_network_rejected(self):
        with pytest.raises(ValueError):
            script_to_p2sh_address(b"\x52", "signet")


class TestSimulationMode:
    """No mnemonic: placeholder addresses, no keys"""

    def test_service_without_mnemonic_is_simulated(self):
        service = CustodyAddressService(mnemonic=None, network="testnet")
        assert service.simulation_mode

    def test_generate_returns_placeholder(self):
        service = CustodyAddressService(mnemonic="", network="testnet")
        bundle = service.generate(4)

        assert isinstance(bundle, CustodyBundle)
        assert bundle.is_simulated
        assert bundle.derivation_index == 4
        assert bundle.redeem_script is None
        assert bundle.buyer_pubkey is None
        assert bundle.escrow_address.startswith("2")
        assert service.verify(bundle) is False

    def test_placeholders_are_unique_and_well_formed(self):
        addresses = {placeholder_address("testnet") for _ in range(20)}
        assert len(addresses) == 20
        for address in addresses:
            assert len(Base58Decoder.CheckDecode(address)) == 21

    def test_derivation_refused(self):
        service = CustodyAddressService(mnemonic=None, network="testnet")
        with pytest.raises(CustodyConfigError):
            service.derive_public_key(0, 0)
