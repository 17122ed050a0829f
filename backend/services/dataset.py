"""LLM dataset rows: provenance records for every scan and reeval summary."""

import hashlib
import json
from typing import Any, Optional

from models.opportunity import Opportunity
from utils.utcnow import utcnow

PROMPT_VERSION = "v1"
ROW_TYPE_SCAN = "scan_row"
ROW_TYPE_REEVAL = "reeval_row"
_PROMPT_PREVIEW_CHARS = 100
_RAW_TEXT_CHARS = 200


def build_dataset_row(
    opp: Opportunity,
    *,
    row_type: str = ROW_TYPE_SCAN,
    scan_id: Optional[str] = None,
    batch_id: Optional[str] = None,
    reeval_job_id: Optional[str] = None,
    trigger_reason: Optional[str] = None,
    news_refs: Optional[list[Any]] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    summary: Optional[str] = None,
    confidence: Optional[float] = None,
    tags: Optional[list[str]] = None,
    market_prob: Optional[float] = None,
) -> dict[str, Any]:
    """Build one dataset row.

    Reeval rows pass their own provider/model/summary; scan rows take them
    from the enriched opportunity. The ``hash`` is the first 8 hex chars of
    sha256 over the row without it.
    """
    tags = list(tags if tags is not None else opp.llm_tags)
    summary_text = summary if summary is not None else (opp.llm_summary or "")
    prompt = opp.llm_input_prompt or ""
    baseline = opp.score_baseline or 0

    row: dict[str, Any] = {
        "row_type": row_type,
        "ids": {
            "batch_id": batch_id,
            "scan_id": scan_id or opp.scan_id or "unknown",
            "opp_id": opp.opp_id,
            "market_id": "default",
            "reeval_job_id": reeval_job_id,
        },
        "provider": {
            "provider_name": provider or opp.llm_provider or "unknown",
            "model": model or opp.llm_model or "unknown",
            "fallback_used": any(tag.startswith("fallback") for tag in tags),
            "latency_ms": (opp.llm_latency_ms or 0) if provider is None else 0,
        },
        "input": {
            "prompt_version": PROMPT_VERSION,
            "prompt_compact": prompt[:_PROMPT_PREVIEW_CHARS] + "...",
            "extracted_context": "",
        },
        "output": {
            "llm_raw_text": summary_text[:_RAW_TEXT_CHARS],
            "llm_schema_json": opp.llm_json if provider is None else None,
            "confidence": confidence if confidence is not None else (opp.llm_confidence or 0),
            "tags": tags,
        },
        "snapshot": {
            "market_prob": market_prob if market_prob is not None else baseline,
            "best_bid_ask": None,
            "timestamp": utcnow().isoformat() + "Z",
        },
        "scoring": {
            "score_baseline": baseline,
            "score_components": opp.score_components.model_dump(),
        },
        "trigger": {"trigger_reason": trigger_reason or "initial"},
        "news_refs": list(news_refs or []),
    }
    content = json.dumps(row, sort_keys=True, default=str)
    row["hash"] = hashlib.sha256(content.encode("utf-8")).hexdigest()[:8]
    return row


def find_linked_batch_id(rows: list[dict[str, Any]], opp_id: str) -> Optional[str]:
    """Batch id of the newest scan row for ``opp_id`` that carries one."""
    for row in reversed(rows):
        if row.get("row_type") != ROW_TYPE_SCAN:
            continue
        ids = row.get("ids") or {}
        if ids.get("opp_id") == opp_id and ids.get("batch_id"):
            return ids["batch_id"]
    return None


def rows_to_jsonl(rows: list[dict[str, Any]]) -> str:
    return "".join(json.dumps(row, default=str) + "\n" for row in rows)
