"""Maps team operations to a model through qualitative tiers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from team_conductor.config import ModelTierSettings


class ModelTier(str, Enum):
    CREATIVE = "creative"
    ANALYTICAL = "analytical"
    ROUTINE = "routine"


class TeamOperation(str, Enum):
    SOUL_EVOLVE = "soul:evolve"
    SELF_REFLECT = "self:reflect"
    TASK_ANALYZE = "task:analyze"
    CODE_IMPROVE = "code:improve"
    COMMS_SUMMARIZE = "comms:summarize"
    INBOX_PARSE = "inbox:parse"


OPERATION_TIERS: dict[TeamOperation, ModelTier] = {
    TeamOperation.SOUL_EVOLVE: ModelTier.CREATIVE,
    TeamOperation.SELF_REFLECT: ModelTier.ANALYTICAL,
    TeamOperation.TASK_ANALYZE: ModelTier.ANALYTICAL,
    TeamOperation.CODE_IMPROVE: ModelTier.CREATIVE,
    TeamOperation.COMMS_SUMMARIZE: ModelTier.ROUTINE,
    TeamOperation.INBOX_PARSE: ModelTier.ROUTINE,
}


@dataclass(frozen=True, slots=True)
class ResolvedModel:
    runtime: str
    model: str


class ModelResolver:
    def __init__(self, tiers: ModelTierSettings) -> None:
        self.tiers = tiers

    def resolve(self, operation: TeamOperation | str) -> ResolvedModel:
        tier = OPERATION_TIERS[TeamOperation(operation)]
        return ResolvedModel(runtime=self.tiers.team_runtime, model=getattr(self.tiers, tier.value))
