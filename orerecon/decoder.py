"""
decoder.py - Instruction decoder.

Decodes one raw instruction (program id, resolved accounts, opaque data) into a
ParsedInstruction whose payload is one member of a closed set of variants.

 - Unrecognized programs decode to Unknown with a hex preview of the data.
 - Unrecognized discriminators of known programs decode to Unknown and carry
   a parse_error naming the tag.
 - Payloads shorter than the known layout (or too few accounts) keep their
   instruction type and carry a parse_error; decoding never raises for bad data.

Numeric fields are fixed-width little-endian.
"""

import struct
from dataclasses import asdict, dataclass, field, replace
from typing import ClassVar, Dict, List, Optional, Sequence, Union

import base58

from orerecon.errors import DecodeError
from orerecon.pda import DEFAULT_PUBKEY

# ---------------------------------------------------------------------------
# Program ids
# ---------------------------------------------------------------------------

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
COMPUTE_BUDGET_PROGRAM_ID = "ComputeBudget111111111111111111111111111111"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
MEMO_PROGRAM_ID = "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr"
MEMO_V1_PROGRAM_ID = "Memo1UhkJRfHyvLMcVucJwxXeuD728EqVDDwQDxFMNo"
ORE_PROGRAM_ID = "oreV3EG1i9BEgiAJ8b177Z2S2rMarzak4NMv1kULvWv"
ORE_MINT_PROGRAM_ID = "mintzxW6Kckmeyh1h6Zfdj9QcYgCzhPSGiC8ChZ6fCx"
ENTROPY_PROGRAM_ID = "3jSkUuYBoJzQPMEzTvkDFXCZUBksPamrVhrnHR9igu2X"
EVORE_PROGRAM_ID = "8jaLKWLJAj5jVCZbxpe3zRUvLB3LD48MRtaQ2AjfCfxa"

PROGRAM_NAMES: Dict[str, str] = {
    SYSTEM_PROGRAM_ID: "System Program",
    COMPUTE_BUDGET_PROGRAM_ID: "Compute Budget",
    TOKEN_PROGRAM_ID: "Token Program",
    TOKEN_2022_PROGRAM_ID: "Token-2022",
    ASSOCIATED_TOKEN_PROGRAM_ID: "Associated Token",
    MEMO_PROGRAM_ID: "Memo",
    MEMO_V1_PROGRAM_ID: "Memo",
    ORE_PROGRAM_ID: "ORE Program",
    EVORE_PROGRAM_ID: "EVORE Program",
    ENTROPY_PROGRAM_ID: "Entropy Program",
    ORE_MINT_PROGRAM_ID: "ORE Mint Program",
}

ORE_INSTRUCTIONS: Dict[int, str] = {
    0: "Automate",
    2: "Checkpoint",
    3: "ClaimSOL",
    4: "ClaimORE",
    5: "Close",
    6: "Deploy",
    8: "Log",
    9: "Reset",
    10: "Deposit",
    11: "Withdraw",
    12: "ClaimYield",
    13: "Bury",
    14: "Wrap",
    15: "SetAdmin",
    16: "SetFeeCollector",
    17: "SetSwapProgram",
    18: "SetVarAddress",
    19: "NewVar",
    20: "SetAdminFee",
    21: "ReloadSOL",
    22: "MigrateAutomation",
}

ORE_DEPLOY = 6
ORE_AUTOMATE = 0
BOARD_SQUARES = 25
DATA_PREVIEW_BYTES = 32

# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@dataclass
class AccountRef:
    index: int
    pubkey: str
    is_signer: bool = False
    is_writable: bool = False
    role: Optional[str] = None


@dataclass
class AccountTable:
    """A transaction's full account list with header-derived flags."""

    keys: List[str]
    num_required_signatures: int = 0
    num_readonly_signed: int = 0
    num_readonly_unsigned: int = 0
    num_static_keys: int = 0
    num_loaded_writable: int = 0

    @classmethod
    def from_message(cls, message: dict, meta: Optional[dict] = None) -> "AccountTable":
        raw_keys = message.get("accountKeys")
        if not isinstance(raw_keys, list):
            raise DecodeError("message has no accountKeys")
        keys = []
        for k in raw_keys:
            # jsonParsed encoding wraps keys in objects
            if isinstance(k, dict):
                k = k.get("pubkey")
            if not isinstance(k, str):
                raise DecodeError("account key is not a string")
            keys.append(k)
        header = message.get("header") or {}
        static = len(keys)
        loaded = (meta or {}).get("loadedAddresses") or {}
        writable = list(loaded.get("writable") or [])
        readonly = list(loaded.get("readonly") or [])
        return cls(
            keys=keys + writable + readonly,
            num_required_signatures=int(header.get("numRequiredSignatures", 0)),
            num_readonly_signed=int(header.get("numReadonlySignedAccounts", 0)),
            num_readonly_unsigned=int(header.get("numReadonlyUnsignedAccounts", 0)),
            num_static_keys=static,
            num_loaded_writable=len(writable),
        )

    def is_signer(self, idx: int) -> bool:
        return idx < self.num_required_signatures

    def is_writable(self, idx: int) -> bool:
        if idx < self.num_required_signatures:
            return idx < self.num_required_signatures - self.num_readonly_signed
        if idx < self.num_static_keys:
            return idx < self.num_static_keys - self.num_readonly_unsigned
        return idx < self.num_static_keys + self.num_loaded_writable

    def ref(self, idx: int) -> AccountRef:
        if idx < 0 or idx >= len(self.keys):
            raise DecodeError(f"account index {idx} out of range ({len(self.keys)} keys)")
        return AccountRef(
            index=idx,
            pubkey=self.keys[idx],
            is_signer=self.is_signer(idx),
            is_writable=self.is_writable(idx),
        )

    def __len__(self):
        return len(self.keys)


# ---------------------------------------------------------------------------
# Payload variants
# ---------------------------------------------------------------------------


@dataclass
class SystemTransfer:
    kind: ClassVar[str] = "system_transfer"
    source: str
    destination: str
    lamports: int


@dataclass
class SystemCreateAccount:
    kind: ClassVar[str] = "system_create_account"
    source: str
    new_account: str
    lamports: int
    space: int
    owner: str


@dataclass
class SystemAssign:
    kind: ClassVar[str] = "system_assign"
    account: str
    owner: str


@dataclass
class SystemAllocate:
    kind: ClassVar[str] = "system_allocate"
    account: str
    space: int


@dataclass
class SystemAdvanceNonce:
    kind: ClassVar[str] = "system_advance_nonce"
    nonce_account: str
    authority: str


@dataclass
class SetComputeUnitLimit:
    kind: ClassVar[str] = "compute_unit_limit"
    units: int


@dataclass
class SetComputeUnitPrice:
    kind: ClassVar[str] = "compute_unit_price"
    micro_lamports: int


@dataclass
class RequestHeapFrame:
    kind: ClassVar[str] = "request_heap_frame"
    heap_bytes: int


@dataclass
class OreDeploy:
    kind: ClassVar[str] = "ore_deploy"
    signer: str
    authority: str
    automation: str
    miner: str
    round: str
    amount_per_square: int
    squares_mask: int
    squares: List[int] = field(default_factory=list)
    total_lamports: int = 0
    round_id: Optional[int] = None


@dataclass
class OreCheckpoint:
    kind: ClassVar[str] = "ore_checkpoint"
    signer: str
    miner: str
    round: str


@dataclass
class OreClaimSol:
    kind: ClassVar[str] = "ore_claim_sol"
    signer: str
    miner: str


@dataclass
class OreClaimOre:
    kind: ClassVar[str] = "ore_claim_ore"
    signer: str
    miner: str
    recipient: str


@dataclass
class OreAutomate:
    kind: ClassVar[str] = "ore_automate"
    signer: str
    automation: str
    executor: str
    miner: str
    amount: int
    deposit: int
    fee: int
    mask: int
    strategy: int
    reload: Optional[int] = None
    is_close: bool = False


@dataclass
class OreReset:
    kind: ClassVar[str] = "ore_reset"
    signer: str
    round: str
    round_next: str
    top_miner: str


@dataclass
class OreLog:
    kind: ClassVar[str] = "ore_log"
    event_type: str
    data_hex: str


@dataclass
class OreOther:
    kind: ClassVar[str] = "ore_other"
    instruction: str


@dataclass
class TokenTransfer:
    kind: ClassVar[str] = "token_transfer"
    source: str
    destination: str
    authority: str
    amount: int


@dataclass
class TokenTransferChecked:
    kind: ClassVar[str] = "token_transfer_checked"
    source: str
    mint: str
    destination: str
    authority: str
    amount: int
    decimals: int


@dataclass
class TokenInitializeAccount:
    kind: ClassVar[str] = "token_initialize_account"
    account: str
    mint: str
    owner: str


@dataclass
class TokenApprove:
    kind: ClassVar[str] = "token_approve"
    source: str
    delegate: str
    owner: str
    amount: int


@dataclass
class TokenMintTo:
    kind: ClassVar[str] = "token_mint_to"
    mint: str
    destination: str
    authority: str
    amount: int


@dataclass
class TokenBurn:
    kind: ClassVar[str] = "token_burn"
    account: str
    mint: str
    authority: str
    amount: int


@dataclass
class TokenCloseAccount:
    kind: ClassVar[str] = "token_close_account"
    account: str
    destination: str
    owner: str


@dataclass
class AtaCreate:
    kind: ClassVar[str] = "ata_create"
    payer: str
    associated_account: str
    wallet: str
    mint: str
    idempotent: bool = False


@dataclass
class Memo:
    kind: ClassVar[str] = "memo"
    text: str


@dataclass
class Unknown:
    kind: ClassVar[str] = "unknown"
    data: bytes
    data_preview: str


Payload = Union[
    SystemTransfer, SystemCreateAccount, SystemAssign, SystemAllocate,
    SystemAdvanceNonce, SetComputeUnitLimit, SetComputeUnitPrice,
    RequestHeapFrame, OreDeploy, OreCheckpoint, OreClaimSol, OreClaimOre,
    OreAutomate, OreReset, OreLog, OreOther, TokenTransfer,
    TokenTransferChecked, TokenInitializeAccount, TokenApprove, TokenMintTo,
    TokenBurn, TokenCloseAccount, AtaCreate, Memo, Unknown,
]


def payload_to_dict(payload: Payload) -> dict:
    if isinstance(payload, Unknown):
        return {"kind": payload.kind, "data_preview": payload.data_preview, "data_len": len(payload.data)}
    d = asdict(payload)
    d["kind"] = payload.kind
    return d


@dataclass
class ParsedInstruction:
    program_id: str
    program_name: str
    instruction_type: str
    accounts: List[AccountRef]
    data: Payload
    parse_error: Optional[str] = None

    @property
    def kind(self) -> str:
        return self.data.kind

    def to_dict(self) -> dict:
        return {
            "program_id": self.program_id,
            "program_name": self.program_name,
            "instruction_type": self.instruction_type,
            "accounts": [asdict(a) for a in self.accounts],
            "data": payload_to_dict(self.data),
            "parse_error": self.parse_error,
        }


# ---------------------------------------------------------------------------
# Layout helpers
# ---------------------------------------------------------------------------


class _Malformed(Exception):
    def __init__(self, instruction_type: str, message: str):
        super().__init__(message)
        self.instruction_type = instruction_type


def data_preview(data: bytes) -> str:
    preview = data[:DATA_PREVIEW_BYTES].hex()
    if len(data) > DATA_PREVIEW_BYTES:
        preview += "..."
    return preview


def _need_data(name: str, data: bytes, size: int):
    if len(data) < size:
        raise _Malformed(name, f"{name}: expected at least {size} data bytes, got {len(data)}")


def _need_accounts(name: str, accounts: Sequence[AccountRef], count: int):
    if len(accounts) < count:
        raise _Malformed(name, f"{name}: expected at least {count} accounts, got {len(accounts)}")


def _u32(data: bytes, offset: int) -> int:
    return struct.unpack_from("<I", data, offset)[0]


def _u64(data: bytes, offset: int) -> int:
    return struct.unpack_from("<Q", data, offset)[0]


def _pubkey(data: bytes, offset: int) -> str:
    return base58.b58encode(data[offset:offset + 32]).decode("ascii")


def _with_roles(accounts: Sequence[AccountRef], roles: Sequence[str]) -> List[AccountRef]:
    out = []
    for i, acc in enumerate(accounts):
        out.append(replace(acc, role=roles[i]) if i < len(roles) else acc)
    return out


def mask_to_squares(mask: int) -> List[int]:
    return [i for i in range(BOARD_SQUARES) if mask & (1 << i)]


# ---------------------------------------------------------------------------
# Per-program decoders: each returns (instruction_type, payload, accounts)
# ---------------------------------------------------------------------------


def _decode_system(accounts, data, ctx):
    _need_data("System", data, 4)
    tag = _u32(data, 0)
    pk = [a.pubkey for a in accounts]
    if tag == 2:
        _need_data("Transfer", data, 12)
        _need_accounts("Transfer", accounts, 2)
        return "Transfer", SystemTransfer(pk[0], pk[1], _u64(data, 4)), \
            _with_roles(accounts, ["source", "destination"])
    if tag == 0:
        _need_data("CreateAccount", data, 52)
        _need_accounts("CreateAccount", accounts, 2)
        payload = SystemCreateAccount(pk[0], pk[1], _u64(data, 4), _u64(data, 12), _pubkey(data, 20))
        return "CreateAccount", payload, _with_roles(accounts, ["source", "new_account"])
    if tag == 1:
        _need_data("Assign", data, 36)
        _need_accounts("Assign", accounts, 1)
        return "Assign", SystemAssign(pk[0], _pubkey(data, 4)), _with_roles(accounts, ["account"])
    if tag == 8:
        _need_data("Allocate", data, 12)
        _need_accounts("Allocate", accounts, 1)
        return "Allocate", SystemAllocate(pk[0], _u64(data, 4)), _with_roles(accounts, ["account"])
    if tag == 4:
        _need_accounts("AdvanceNonce", accounts, 3)
        return "AdvanceNonce", SystemAdvanceNonce(pk[0], pk[2]), \
            _with_roles(accounts, ["nonce_account", "recent_blockhashes", "authority"])
    raise _Malformed(f"Unknown({tag})", f"unrecognized system instruction {tag}")


def _decode_compute_budget(accounts, data, ctx):
    _need_data("ComputeBudget", data, 1)
    tag = data[0]
    if tag == 2:
        _need_data("SetComputeUnitLimit", data, 5)
        return "SetComputeUnitLimit", SetComputeUnitLimit(_u32(data, 1)), accounts
    if tag == 3:
        _need_data("SetComputeUnitPrice", data, 9)
        return "SetComputeUnitPrice", SetComputeUnitPrice(_u64(data, 1)), accounts
    if tag == 1:
        _need_data("RequestHeapFrame", data, 5)
        return "RequestHeapFrame", RequestHeapFrame(_u32(data, 1)), accounts
    raise _Malformed(f"ComputeBudget({tag})", f"unrecognized compute budget instruction {tag}")


def _decode_token(accounts, data, ctx):
    _need_data("Token", data, 1)
    tag = data[0]
    pk = [a.pubkey for a in accounts]
    if tag == 3:
        _need_data("Transfer", data, 9)
        _need_accounts("Transfer", accounts, 3)
        return "Transfer", TokenTransfer(pk[0], pk[1], pk[2], _u64(data, 1)), \
            _with_roles(accounts, ["source", "destination", "authority"])
    if tag == 12:
        _need_data("TransferChecked", data, 10)
        _need_accounts("TransferChecked", accounts, 4)
        payload = TokenTransferChecked(pk[0], pk[1], pk[2], pk[3], _u64(data, 1), data[9])
        return "TransferChecked", payload, \
            _with_roles(accounts, ["source", "mint", "destination", "authority"])
    if tag == 1:
        _need_accounts("InitializeAccount", accounts, 3)
        return "InitializeAccount", TokenInitializeAccount(pk[0], pk[1], pk[2]), \
            _with_roles(accounts, ["account", "mint", "owner"])
    if tag == 4:
        _need_data("Approve", data, 9)
        _need_accounts("Approve", accounts, 3)
        return "Approve", TokenApprove(pk[0], pk[1], pk[2], _u64(data, 1)), \
            _with_roles(accounts, ["source", "delegate", "owner"])
    if tag == 7:
        _need_data("MintTo", data, 9)
        _need_accounts("MintTo", accounts, 3)
        return "MintTo", TokenMintTo(pk[0], pk[1], pk[2], _u64(data, 1)), \
            _with_roles(accounts, ["mint", "destination", "authority"])
    if tag == 8:
        _need_data("Burn", data, 9)
        _need_accounts("Burn", accounts, 3)
        return "Burn", TokenBurn(pk[0], pk[1], pk[2], _u64(data, 1)), \
            _with_roles(accounts, ["account", "mint", "authority"])
    if tag == 9:
        _need_accounts("CloseAccount", accounts, 3)
        return "CloseAccount", TokenCloseAccount(pk[0], pk[1], pk[2]), \
            _with_roles(accounts, ["account", "destination", "owner"])
    raise _Malformed(f"Token({tag})", f"unrecognized token instruction {tag}")


def _decode_ata(accounts, data, ctx):
    # data is empty (Create) or a single tag byte: 0 Create, 1 CreateIdempotent
    tag = data[0] if data else 0
    if tag not in (0, 1):
        raise _Malformed(f"AssociatedToken({tag})", f"unrecognized associated token instruction {tag}")
    name = "CreateIdempotent" if tag == 1 else "Create"
    _need_accounts(name, accounts, 4)
    pk = [a.pubkey for a in accounts]
    payload = AtaCreate(pk[0], pk[1], pk[2], pk[3], idempotent=(tag == 1))
    return name, payload, _with_roles(accounts, ["payer", "associated_account", "wallet", "mint"])


def _decode_memo(accounts, data, ctx):
    return "Memo", Memo(data.decode("utf-8", errors="replace")), accounts


def _decode_ore(accounts, data, ctx):
    _need_data("ORE", data, 1)
    tag = data[0]
    name = ORE_INSTRUCTIONS.get(tag)
    if name is None:
        raise _Malformed(f"Unknown({tag})", f"unrecognized ORE instruction tag {tag}")
    pk = [a.pubkey for a in accounts]

    if tag == ORE_DEPLOY:
        _need_data(name, data, 13)
        _need_accounts(name, accounts, 7)
        amount = _u64(data, 1)
        mask = _u32(data, 9)
        squares = mask_to_squares(mask)
        round_id = None
        if ctx.get("expected_round_pda") and pk[6] == ctx["expected_round_pda"]:
            round_id = ctx.get("expected_round_id")
        payload = OreDeploy(
            signer=pk[0], authority=pk[1], automation=pk[2], miner=pk[5], round=pk[6],
            amount_per_square=amount, squares_mask=mask, squares=squares,
            total_lamports=amount * len(squares), round_id=round_id,
        )
        roles = ["signer", "authority", "automation", "board", "config", "miner", "round",
                 "system_program", "ore_program", "entropy_var", "entropy_program"]
        return name, payload, _with_roles(accounts, roles)

    if tag == ORE_AUTOMATE:
        _need_data(name, data, 34)
        _need_accounts(name, accounts, 4)
        payload = OreAutomate(
            signer=pk[0], automation=pk[1], executor=pk[2], miner=pk[3],
            amount=_u64(data, 1), deposit=_u64(data, 9), fee=_u64(data, 17),
            mask=_u64(data, 25), strategy=data[33],
            reload=_u64(data, 34) if len(data) >= 42 else None,
            is_close=(pk[2] == DEFAULT_PUBKEY),
        )
        return name, payload, _with_roles(accounts, ["signer", "automation", "executor", "miner"])

    if tag == 2:
        _need_accounts(name, accounts, 4)
        return name, OreCheckpoint(pk[0], pk[2], pk[3]), \
            _with_roles(accounts, ["signer", "board", "miner", "round", "treasury"])
    if tag == 3:
        _need_accounts(name, accounts, 2)
        return name, OreClaimSol(pk[0], pk[1]), _with_roles(accounts, ["signer", "miner"])
    if tag == 4:
        _need_accounts(name, accounts, 4)
        return name, OreClaimOre(pk[0], pk[1], pk[3]), \
            _with_roles(accounts, ["signer", "miner", "mint", "recipient", "treasury"])
    if tag == 9:
        _need_accounts(name, accounts, 8)
        return name, OreReset(pk[0], pk[5], pk[6], pk[7]), _with_roles(
            accounts,
            ["signer", "board", "config", "fee_collector", "mint", "round",
             "round_next", "top_miner", "treasury"],
        )
    if tag == 8:
        _need_data(name, data, 2)
        return name, OreLog(f"Event({data[1]})", data[1:].hex()), accounts
    return name, OreOther(name), accounts


def _decode_tagged_only(accounts, data, ctx):
    # Programs we recognize by name but do not decode.
    if not data:
        return "Empty", Unknown(data, ""), accounts
    return f"Instruction({data[0]})", Unknown(data, data_preview(data)), accounts


_DECODERS = {
    SYSTEM_PROGRAM_ID: _decode_system,
    COMPUTE_BUDGET_PROGRAM_ID: _decode_compute_budget,
    TOKEN_PROGRAM_ID: _decode_token,
    TOKEN_2022_PROGRAM_ID: _decode_token,
    ASSOCIATED_TOKEN_PROGRAM_ID: _decode_ata,
    MEMO_PROGRAM_ID: _decode_memo,
    MEMO_V1_PROGRAM_ID: _decode_memo,
    ORE_PROGRAM_ID: _decode_ore,
    EVORE_PROGRAM_ID: _decode_tagged_only,
    ENTROPY_PROGRAM_ID: _decode_tagged_only,
    ORE_MINT_PROGRAM_ID: _decode_tagged_only,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def decode_instruction(
    program_id: str,
    accounts: Sequence[AccountRef],
    data: bytes,
    expected_round_id: Optional[int] = None,
    expected_round_pda: Optional[str] = None,
) -> ParsedInstruction:
    """Decode one instruction whose accounts are already resolved."""
    program_name = PROGRAM_NAMES.get(program_id, "Unknown Program")
    decoder = _DECODERS.get(program_id)
    accounts = list(accounts)
    if decoder is None:
        return ParsedInstruction(
            program_id=program_id,
            program_name=program_name,
            instruction_type="Unknown",
            accounts=accounts,
            data=Unknown(data, data_preview(data)),
        )
    ctx = {"expected_round_id": expected_round_id, "expected_round_pda": expected_round_pda}
    try:
        instruction_type, payload, accounts = decoder(accounts, data, ctx)
    except _Malformed as e:
        return ParsedInstruction(
            program_id=program_id,
            program_name=program_name,
            instruction_type=e.instruction_type,
            accounts=accounts,
            data=Unknown(data, data_preview(data)),
            parse_error=str(e),
        )
    return ParsedInstruction(
        program_id=program_id,
        program_name=program_name,
        instruction_type=instruction_type,
        accounts=accounts,
        data=payload,
    )


def decode_raw_instruction(
    ix: dict,
    table: AccountTable,
    expected_round_id: Optional[int] = None,
    expected_round_pda: Optional[str] = None,
) -> ParsedInstruction:
    """Resolve a JSON-encoded instruction against its account table and decode it.

    Raises DecodeError only when the instruction itself is structurally broken
    (missing programIdIndex, out-of-range account index, invalid base58).
    """
    program_idx = ix.get("programIdIndex")
    if not isinstance(program_idx, int):
        raise DecodeError("instruction has no programIdIndex")
    program_id = table.ref(program_idx).pubkey
    accounts = [table.ref(i) for i in ix.get("accounts") or []]
    raw = ix.get("data") or ""
    try:
        data = base58.b58decode(raw)
    except ValueError as e:
        raise DecodeError(f"instruction data is not base58: {e}")
    return decode_instruction(
        program_id, accounts, data,
        expected_round_id=expected_round_id,
        expected_round_pda=expected_round_pda,
    )
