"""
pda.py - Program-derived addresses for the ORE program.

Seeds follow the on-chain program: round PDAs are keyed by the little-endian
u64 round id, automation and miner PDAs by the authority's 32 key bytes.
"""

from functools import lru_cache
from typing import Union

from solders.pubkey import Pubkey

ORE_PROGRAM_ID = Pubkey.from_string("oreV3EG1i9BEgiAJ8b177Z2S2rMarzak4NMv1kULvWv")
DEFAULT_PUBKEY = str(Pubkey.default())


def _as_pubkey(key: Union[str, Pubkey]) -> Pubkey:
    if isinstance(key, Pubkey):
        return key
    return Pubkey.from_string(key)


def _find(*seeds: bytes) -> Pubkey:
    address, _bump = Pubkey.find_program_address(list(seeds), ORE_PROGRAM_ID)
    return address


@lru_cache(maxsize=4096)
def round_pda(round_id: int) -> str:
    return str(_find(b"round", round_id.to_bytes(8, "little")))


@lru_cache(maxsize=4096)
def automation_pda(authority: str) -> str:
    return str(_find(b"automation", bytes(_as_pubkey(authority))))


@lru_cache(maxsize=4096)
def miner_pda(authority: str) -> str:
    return str(_find(b"miner", bytes(_as_pubkey(authority))))


def board_pda() -> str:
    return str(_find(b"board"))


def config_pda() -> str:
    return str(_find(b"config"))


def treasury_pda() -> str:
    return str(_find(b"treasury"))


def pubkey_from_bytes(raw) -> str:
    """Render 32 raw key bytes (bytes or a list of ints) as base58."""
    return str(Pubkey.from_bytes(bytes(raw)))
