"""
test_decoder.py - Instruction decoding for the programs the analyzer knows.

Covers ORE Deploy/Automate layouts, the remaining System, ComputeBudget,
Token and ORE variants, round scoping through the round PDA, malformed
payloads (typed but flagged), unknown programs and tags, and the
account-table writable/signer derivation.
"""

import struct

import base58
import pytest

from orerecon.decoder import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    COMPUTE_BUDGET_PROGRAM_ID,
    MEMO_PROGRAM_ID,
    ORE_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    AccountRef,
    AccountTable,
    OreAutomate,
    OreCheckpoint,
    OreClaimOre,
    OreClaimSol,
    OreDeploy,
    OreLog,
    OreReset,
    RequestHeapFrame,
    SetComputeUnitLimit,
    SetComputeUnitPrice,
    SystemAdvanceNonce,
    SystemAllocate,
    SystemAssign,
    SystemCreateAccount,
    SystemTransfer,
    TokenApprove,
    TokenBurn,
    TokenCloseAccount,
    TokenInitializeAccount,
    TokenMintTo,
    TokenTransfer,
    TokenTransferChecked,
    Unknown,
    decode_instruction,
    decode_raw_instruction,
    mask_to_squares,
)
from orerecon.errors import DecodeError
from orerecon.pda import DEFAULT_PUBKEY, round_pda

from tx_factory import automate_data, deploy_data, new_key


def refs(*keys):
    return [AccountRef(index=i, pubkey=k) for i, k in enumerate(keys)]


def deploy_accounts(round_id=42):
    signer = new_key()
    return refs(signer, signer, new_key(), new_key(), new_key(), new_key(), round_pda(round_id))


# ── ORE Deploy ──────────────────────────────────────────────────────────────

class TestDeploy:
    def test_fields_and_squares(self):
        accounts = deploy_accounts()
        parsed = decode_instruction(ORE_PROGRAM_ID, accounts, deploy_data(1_000_000, [0, 5, 24]))
        assert parsed.instruction_type == "Deploy"
        assert parsed.parse_error is None
        d = parsed.data
        assert isinstance(d, OreDeploy)
        assert d.amount_per_square == 1_000_000
        assert d.squares == [0, 5, 24]
        assert d.total_lamports == 3_000_000
        assert d.authority == accounts[1].pubkey
        assert d.miner == accounts[5].pubkey
        assert d.round == accounts[6].pubkey

    def test_round_id_set_when_round_pda_matches(self):
        parsed = decode_instruction(
            ORE_PROGRAM_ID, deploy_accounts(42), deploy_data(1, [1]),
            expected_round_id=42, expected_round_pda=round_pda(42),
        )
        assert parsed.data.round_id == 42

    def test_round_id_unset_for_other_round(self):
        parsed = decode_instruction(
            ORE_PROGRAM_ID, deploy_accounts(41), deploy_data(1, [1]),
            expected_round_id=42, expected_round_pda=round_pda(42),
        )
        assert parsed.data.round_id is None

    def test_round_id_unset_without_expectation(self):
        parsed = decode_instruction(ORE_PROGRAM_ID, deploy_accounts(42), deploy_data(1, [1]))
        assert parsed.data.round_id is None

    def test_account_roles(self):
        parsed = decode_instruction(ORE_PROGRAM_ID, deploy_accounts(), deploy_data(1, [1]))
        roles = [a.role for a in parsed.accounts]
        assert roles[:7] == ["signer", "authority", "automation", "board", "config", "miner", "round"]

    def test_short_data_keeps_type_with_error(self):
        parsed = decode_instruction(ORE_PROGRAM_ID, deploy_accounts(), bytes([6, 1, 2, 3]))
        assert parsed.instruction_type == "Deploy"
        assert isinstance(parsed.data, Unknown)
        assert "expected at least 13 data bytes" in parsed.parse_error

    def test_too_few_accounts(self):
        parsed = decode_instruction(ORE_PROGRAM_ID, refs(new_key(), new_key()), deploy_data(1, [1]))
        assert parsed.instruction_type == "Deploy"
        assert "expected at least 7 accounts" in parsed.parse_error

    def test_empty_mask(self):
        parsed = decode_instruction(ORE_PROGRAM_ID, deploy_accounts(), deploy_data(5, []))
        assert parsed.data.squares == []
        assert parsed.data.total_lamports == 0


# ── ORE Automate ────────────────────────────────────────────────────────────

class TestAutomate:
    def _accounts(self, executor=None):
        return refs(new_key(), new_key(), executor or new_key(), new_key())

    def test_fields(self):
        parsed = decode_instruction(
            ORE_PROGRAM_ID, self._accounts(), automate_data(1_000, 50_000, 10, 0b111, 2),
        )
        a = parsed.data
        assert isinstance(a, OreAutomate)
        assert (a.amount, a.deposit, a.fee, a.mask, a.strategy) == (1_000, 50_000, 10, 0b111, 2)
        assert a.reload is None
        assert a.is_close is False

    def test_reload_tail(self):
        parsed = decode_instruction(
            ORE_PROGRAM_ID, self._accounts(), automate_data(1, 2, 3, 4, 1, reload=7),
        )
        assert parsed.data.reload == 7

    def test_default_executor_closes(self):
        parsed = decode_instruction(
            ORE_PROGRAM_ID, self._accounts(executor=DEFAULT_PUBKEY), automate_data(0, 0, 0, 0, 0),
        )
        assert parsed.data.is_close is True

    def test_truncated(self):
        parsed = decode_instruction(ORE_PROGRAM_ID, self._accounts(), bytes([0]) + b"\x00" * 20)
        assert parsed.instruction_type == "Automate"
        assert parsed.parse_error


# ── Other ORE tags ──────────────────────────────────────────────────────────

def test_unknown_ore_tag():
    parsed = decode_instruction(ORE_PROGRAM_ID, refs(new_key()), bytes([99, 1, 2]))
    assert parsed.instruction_type == "Unknown(99)"
    assert isinstance(parsed.data, Unknown)
    assert "99" in parsed.parse_error


def test_named_but_undecoded_ore_tag():
    parsed = decode_instruction(ORE_PROGRAM_ID, refs(new_key()), bytes([11]))
    assert parsed.instruction_type == "Withdraw"
    assert parsed.data.kind == "ore_other"
    assert parsed.parse_error is None


def test_empty_ore_data():
    parsed = decode_instruction(ORE_PROGRAM_ID, refs(new_key()), b"")
    assert parsed.parse_error is not None


# ── Non-ORE programs ────────────────────────────────────────────────────────

class TestOtherPrograms:
    def test_system_transfer(self):
        a, b = new_key(), new_key()
        parsed = decode_instruction(SYSTEM_PROGRAM_ID, refs(a, b), struct.pack("<IQ", 2, 123))
        assert parsed.instruction_type == "Transfer"
        assert parsed.data == SystemTransfer(a, b, 123)

    def test_compute_budget(self):
        limit = decode_instruction(COMPUTE_BUDGET_PROGRAM_ID, [], bytes([2]) + struct.pack("<I", 400_000))
        price = decode_instruction(COMPUTE_BUDGET_PROGRAM_ID, [], bytes([3]) + struct.pack("<Q", 5_000))
        assert limit.data == SetComputeUnitLimit(400_000)
        assert price.data == SetComputeUnitPrice(5_000)

    def test_token_transfer_checked(self):
        keys = [new_key() for _ in range(4)]
        parsed = decode_instruction(TOKEN_PROGRAM_ID, refs(*keys), bytes([12]) + struct.pack("<Q", 9) + bytes([11]))
        assert isinstance(parsed.data, TokenTransferChecked)
        assert parsed.data.amount == 9
        assert parsed.data.decimals == 11

    def test_ata_create_idempotent(self):
        keys = [new_key() for _ in range(4)]
        parsed = decode_instruction(ASSOCIATED_TOKEN_PROGRAM_ID, refs(*keys), bytes([1]))
        assert parsed.instruction_type == "CreateIdempotent"
        assert parsed.data.idempotent is True

    def test_memo(self):
        parsed = decode_instruction(MEMO_PROGRAM_ID, [], b"hello")
        assert parsed.data.text == "hello"

    def test_unknown_program(self):
        parsed = decode_instruction(new_key(), [], bytes(range(40)))
        assert parsed.program_name == "Unknown Program"
        assert parsed.instruction_type == "Unknown"
        assert parsed.parse_error is None
        assert parsed.data.data_preview.endswith("...")

    def test_unknown_system_tag(self):
        parsed = decode_instruction(SYSTEM_PROGRAM_ID, [], struct.pack("<I", 77))
        assert parsed.instruction_type == "Unknown(77)"
        assert parsed.parse_error



# ── Remaining known variants ───────────────────────────────────────────────

class TestSystemVariants:
    def test_create_account(self):
        src, new, owner = new_key(), new_key(), new_key()
        data = struct.pack("<IQQ", 0, 2_039_280, 165) + base58.b58decode(owner)
        parsed = decode_instruction(SYSTEM_PROGRAM_ID, refs(src, new), data)
        assert parsed.instruction_type == "CreateAccount"
        assert parsed.data == SystemCreateAccount(src, new, 2_039_280, 165, owner)

    def test_assign(self):
        account, owner = new_key(), new_key()
        data = struct.pack("<I", 1) + base58.b58decode(owner)
        parsed = decode_instruction(SYSTEM_PROGRAM_ID, refs(account), data)
        assert parsed.data == SystemAssign(account, owner)

    def test_allocate(self):
        account = new_key()
        parsed = decode_instruction(SYSTEM_PROGRAM_ID, refs(account), struct.pack("<IQ", 8, 200))
        assert parsed.instruction_type == "Allocate"
        assert parsed.data == SystemAllocate(account, 200)

    def test_advance_nonce(self):
        nonce, blockhashes, authority = new_key(), new_key(), new_key()
        parsed = decode_instruction(SYSTEM_PROGRAM_ID, refs(nonce, blockhashes, authority), struct.pack("<I", 4))
        assert parsed.data == SystemAdvanceNonce(nonce, authority)
        assert [a.role for a in parsed.accounts] == ["nonce_account", "recent_blockhashes", "authority"]

    def test_short_create_account(self):
        parsed = decode_instruction(SYSTEM_PROGRAM_ID, refs(new_key(), new_key()), struct.pack("<IQ", 0, 1))
        assert parsed.instruction_type == "CreateAccount"
        assert isinstance(parsed.data, Unknown)
        assert parsed.parse_error


def test_request_heap_frame():
    parsed = decode_instruction(COMPUTE_BUDGET_PROGRAM_ID, [], bytes([1]) + struct.pack("<I", 256 * 1024))
    assert parsed.instruction_type == "RequestHeapFrame"
    assert parsed.data == RequestHeapFrame(256 * 1024)


class TestTokenVariants:
    def setup_method(self):
        self.keys = [new_key() for _ in range(3)]

    def decode(self, data):
        return decode_instruction(TOKEN_PROGRAM_ID, refs(*self.keys), data)

    def test_transfer(self):
        parsed = self.decode(bytes([3]) + struct.pack("<Q", 50))
        assert parsed.data == TokenTransfer(*self.keys, 50)

    def test_initialize_account(self):
        parsed = self.decode(bytes([1]))
        assert parsed.data == TokenInitializeAccount(*self.keys)

    def test_approve(self):
        parsed = self.decode(bytes([4]) + struct.pack("<Q", 7))
        assert parsed.data == TokenApprove(*self.keys, 7)

    def test_mint_to(self):
        parsed = self.decode(bytes([7]) + struct.pack("<Q", 1_000))
        assert parsed.instruction_type == "MintTo"
        assert parsed.data == TokenMintTo(*self.keys, 1_000)

    def test_burn(self):
        parsed = self.decode(bytes([8]) + struct.pack("<Q", 3))
        assert parsed.data == TokenBurn(*self.keys, 3)

    def test_close_account(self):
        parsed = self.decode(bytes([9]))
        assert parsed.data == TokenCloseAccount(*self.keys)
        assert [a.role for a in parsed.accounts] == ["account", "destination", "owner"]

    def test_short_amount(self):
        parsed = self.decode(bytes([3, 1, 2]))
        assert parsed.instruction_type == "Transfer"
        assert parsed.parse_error


class TestOreVariants:
    def test_checkpoint(self):
        signer, board, miner, rnd = (new_key() for _ in range(4))
        parsed = decode_instruction(ORE_PROGRAM_ID, refs(signer, board, miner, rnd), bytes([2]))
        assert parsed.instruction_type == "Checkpoint"
        assert parsed.data == OreCheckpoint(signer, miner, rnd)

    def test_claim_sol(self):
        signer, miner = new_key(), new_key()
        parsed = decode_instruction(ORE_PROGRAM_ID, refs(signer, miner), bytes([3]) + struct.pack("<Q", 5))
        assert parsed.instruction_type == "ClaimSOL"
        assert parsed.data == OreClaimSol(signer, miner)

    def test_claim_ore(self):
        signer, miner, mint, recipient = (new_key() for _ in range(4))
        parsed = decode_instruction(ORE_PROGRAM_ID, refs(signer, miner, mint, recipient), bytes([4]))
        assert parsed.instruction_type == "ClaimORE"
        assert parsed.data == OreClaimOre(signer, miner, recipient)

    def test_reset(self):
        keys = [new_key() for _ in range(9)]
        parsed = decode_instruction(ORE_PROGRAM_ID, refs(*keys), bytes([9]))
        assert parsed.instruction_type == "Reset"
        assert parsed.data == OreReset(keys[0], keys[5], keys[6], keys[7])
        assert parsed.accounts[7].role == "top_miner"

    def test_log(self):
        parsed = decode_instruction(ORE_PROGRAM_ID, [], bytes([8, 2, 0xAB, 0xCD]))
        assert parsed.instruction_type == "Log"
        assert parsed.data == OreLog("Event(2)", "02abcd")

    def test_reset_with_too_few_accounts(self):
        parsed = decode_instruction(ORE_PROGRAM_ID, refs(new_key(), new_key()), bytes([9]))
        assert parsed.instruction_type == "Reset"
        assert isinstance(parsed.data, Unknown)
        assert parsed.parse_error


# ── Account table & raw instructions ───────────────────────────────────────

class TestAccountTable:
    def test_flags_with_loaded_addresses(self):
        keys = [new_key() for _ in range(5)]
        loaded_w, loaded_r = new_key(), new_key()
        table = AccountTable.from_message(
            {
                "accountKeys": keys,
                "header": {
                    "numRequiredSignatures": 2,
                    "numReadonlySignedAccounts": 1,
                    "numReadonlyUnsignedAccounts": 1,
                },
            },
            {"loadedAddresses": {"writable": [loaded_w], "readonly": [loaded_r]}},
        )
        assert len(table) == 7
        assert [table.is_signer(i) for i in range(7)] == [True, True, False, False, False, False, False]
        assert [table.is_writable(i) for i in range(7)] == [True, False, True, True, False, True, False]

    def test_json_parsed_keys(self):
        key = new_key()
        table = AccountTable.from_message({"accountKeys": [{"pubkey": key, "signer": True}]})
        assert table.keys == [key]

    def test_missing_keys(self):
        with pytest.raises(DecodeError):
            AccountTable.from_message({})


class TestRawInstruction:
    def _table(self, *keys):
        return AccountTable.from_message({"accountKeys": list(keys), "header": {"numRequiredSignatures": 1}})

    def test_resolves_program_and_accounts(self):
        a, b = new_key(), new_key()
        table = self._table(a, b, SYSTEM_PROGRAM_ID)
        ix = {"programIdIndex": 2, "accounts": [0, 1],
              "data": base58.b58encode(struct.pack("<IQ", 2, 5)).decode()}
        parsed = decode_raw_instruction(ix, table)
        assert parsed.data == SystemTransfer(a, b, 5)
        assert parsed.accounts[0].is_signer is True

    def test_account_index_out_of_range(self):
        table = self._table(new_key(), SYSTEM_PROGRAM_ID)
        with pytest.raises(DecodeError):
            decode_raw_instruction({"programIdIndex": 1, "accounts": [9], "data": ""}, table)

    def test_invalid_base58(self):
        table = self._table(new_key(), SYSTEM_PROGRAM_ID)
        with pytest.raises(DecodeError):
            decode_raw_instruction({"programIdIndex": 1, "accounts": [], "data": "0OIl"}, table)

    def test_missing_program_index(self):
        with pytest.raises(DecodeError):
            decode_raw_instruction({"accounts": []}, self._table(new_key()))


def test_mask_to_squares_ignores_high_bits():
    assert mask_to_squares((1 << 25) | (1 << 3) | 1) == [0, 3]
