"""
Hierarchical deterministic derivation of ghost wallet keypairs

entropy -> BIP39 mnemonic (24 words) -> BIP39 seed -> SLIP-10 ed25519
at m/44'/501'/{index}' -> solders Keypair
"""

from mnemonic import Mnemonic
from solders.keypair import Keypair


SOLANA_COIN_TYPE = 501
HARDENED_OFFSET = 0x80000000

_mnemo = Mnemonic("english")


def derivation_path(index: int) -> str:
    """Path for a ghost wallet index (index in the account component)"""
    if index < 0 or index >= HARDENED_OFFSET:
        raise ValueError(f"Wallet index out of range: {index}")
    return f"m/44'/{SOLANA_COIN_TYPE}'/{index}'"


def entropy_to_mnemonic(entropy: bytes) -> str:
    return _mnemo.to_mnemonic(entropy)


def mnemonic_to_seed(words: str, passphrase: str = "") -> bytes:
    return Mnemonic.to_seed(words, passphrase=passphrase)


def derive_keypair(entropy: bytes, index: int) -> Keypair:
    """
    Derive the ghost wallet keypair for an index

    Pure function of (entropy, index). SLIP-10 ed25519 derivation is done
    by solders; every path component is hardened.
    """
    seed = mnemonic_to_seed(entropy_to_mnemonic(entropy))
    return Keypair.from_seed_and_derivation_path(seed, derivation_path(index))
