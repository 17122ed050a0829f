from pydantic import BaseModel, Field
from typing import Any, Optional
from datetime import datetime
from enum import Enum

from utils.utcnow import utcnow


class TradeableState(str, Enum):
    TRADEABLE = "TRADEABLE"
    NOT_TRADEABLE = "NOT_TRADEABLE"


class Strategy(BaseModel):
    """Strategy fixture the generator draws from."""

    strategy_id: str
    name: str = ""
    description: Optional[str] = None


class MarketSnapshot(BaseModel):
    """Market snapshot fixture the generator draws from."""

    snapshot_id: str
    market_id: str = "default"
    price: Optional[float] = None
    spread: Optional[float] = None
    volume: Optional[float] = None


class ScoreComponents(BaseModel):
    spread_edge: float = 0.0  # 0..30
    liquidity: float = 0.0  # 0..20
    volatility: float = 0.0  # 0..20
    risk_reward: float = 0.0  # 0..30


class LLMSummary(BaseModel):
    """Result of one LLM summarize call, cached per prompt and time bucket."""

    provider: str
    model: str
    summary: str
    confidence: float = 0.0
    tags: list[str] = []
    latency_ms: int = 0
    error: Optional[str] = None
    json_payload: Optional[dict[str, Any]] = Field(default=None, alias="json")
    input_prompt: Optional[str] = None

    model_config = {"populate_by_name": True}

    @property
    def is_fallback(self) -> bool:
        return any(tag.startswith("fallback") for tag in self.tags)


class Opportunity(BaseModel):
    """A generated, scored and LLM-enriched opportunity.

    Created in gen_opps, scored in score_baseline and enriched once in
    llm_analyze. Never mutated after its scan finishes.
    """

    opp_id: str
    topic_key: str
    scan_id: str
    strategy_id: str
    snapshot_id: str
    score: float = 0.0
    score_baseline: Optional[float] = None
    score_components: ScoreComponents = Field(default_factory=ScoreComponents)
    tradeable_state: TradeableState = TradeableState.NOT_TRADEABLE
    tradeable_reason: str = ""

    llm_provider: Optional[str] = None
    llm_model: Optional[str] = None
    llm_summary: Optional[str] = None
    llm_confidence: Optional[float] = None
    llm_tags: list[str] = []
    llm_latency_ms: Optional[int] = None
    llm_error: Optional[str] = None
    llm_input_prompt: Optional[str] = None
    llm_json: Optional[dict[str, Any]] = None

    created_at: datetime = Field(default_factory=utcnow)

    def apply_llm(self, result: LLMSummary) -> None:
        self.llm_provider = result.provider
        self.llm_model = result.model
        self.llm_summary = result.summary
        self.llm_confidence = result.confidence
        self.llm_tags = list(result.tags)
        self.llm_latency_ms = result.latency_ms
        self.llm_error = result.error
        self.llm_input_prompt = result.input_prompt
        self.llm_json = result.json_payload
