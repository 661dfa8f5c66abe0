#!/usr/bin/env python3
"""
Generate a fresh 24-word BIP39 master mnemonic for BTC_MASTER_MNEMONIC.

Store the output in your secret manager; anyone holding it can co-sign
every escrow's platform key.
"""

from bip_utils import Bip39MnemonicGenerator, Bip39WordsNum


def main():
    mnemonic = Bip39MnemonicGenerator().FromWordsNum(Bip39WordsNum.WORDS_NUM_24)
    print(mnemonic.ToStr())


if __name__ == "__main__":
    main()
