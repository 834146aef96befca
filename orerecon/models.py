"""Pydantic request models for the REST API."""

from typing import List, Optional

from pydantic import BaseModel, Field


class RoundSummary(BaseModel):
    start_slot: int = 0
    end_slot: int = 0
    winning_square: int = Field(default=0, ge=0, le=24)
    top_miner: str = ""
    total_deployed: int = Field(default=0, ge=0)
    total_vaulted: int = 0
    total_winnings: int = 0
    total_minted: int = 0
    unique_miners: int = 0
    motherlode: int = 0
    motherlode_hit: bool = False
    ts: int = 0


class VerifyRequest(BaseModel):
    notes: str = ""
    override: bool = False


class BulkVerifyRequest(BaseModel):
    start_round: int = Field(ge=0)
    end_round: int = Field(ge=0)
    notes: str = ""


class BulkDeleteRequest(BaseModel):
    round_ids: List[int] = Field(min_length=1, max_length=10000)
    delete_rounds: bool = False
    delete_deployments: bool = False


class AddToWorkflowRequest(BaseModel):
    round_ids: List[int] = Field(min_length=1, max_length=10000)


class EnqueueRequest(BaseModel):
    start_round: int = Field(ge=0)
    end_round: int = Field(ge=0)
    action: str = Field(pattern="^(fetch_txns|reconstruct|finalize)$")
    skip_if_done: bool = True
    only_in_workflow: bool = True


class BackfillStartRequest(BaseModel):
    stop_at_round: int = Field(default=0, ge=0)
    max_pages: int = Field(default=100, ge=1, le=10000)


class AutomationEnqueueRequest(BaseModel):
    round_id: int = Field(ge=0)
    miner_pubkey: str
    authority_pubkey: str
    automation_pda: Optional[str] = None
    deploy_signature: str
    deploy_ix_index: int = 0
    deploy_slot: int = Field(ge=0)
    priority: int = 1000
