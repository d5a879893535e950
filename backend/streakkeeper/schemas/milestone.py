"""Milestone reward table schemas (loaded from YAML)."""

from pydantic import BaseModel, Field, model_validator

from streakkeeper.domain import RewardKind


class MilestoneRewardConfig(BaseModel):
    """One row of the milestone table: crossing ``days`` earns this reward."""
    days: int = Field(gt=0)
    reward: RewardKind
    value: str | None = None  # feature name; points rewards leave it empty
    amount: int = Field(default=1, ge=0)

    @model_validator(mode="after")
    def _feature_needs_value(self):
        if self.reward == RewardKind.FEATURE and not self.value:
            raise ValueError(f"feature reward at {self.days} days needs a value")
        return self

    @property
    def reward_label(self) -> str:
        """What gets stored on the milestone row as its reward type."""
        if self.reward == RewardKind.FEATURE:
            return self.value
        return self.reward.value


class MilestoneTable(BaseModel):
    milestones: list[MilestoneRewardConfig]

    def highest_reached(self, length: int) -> MilestoneRewardConfig | None:
        """The single highest threshold that ``length`` has reached, if any."""
        reached = [m for m in self.milestones if m.days <= length]
        if not reached:
            return None
        return max(reached, key=lambda m: m.days)
