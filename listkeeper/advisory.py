#!/usr/bin/env python3
"""
advisory.py

Boundary to the external inference service that proposes suppression and
rebalancing plans.

The service is untrusted. Its JSON is parsed into pydantic models and every
call ends in an AdvisoryOutcome: ok, schema_error or timeout. Any schema
violation, out-of-range confidence or missing field rejects the whole
payload; nothing is partially trusted. The client never raises, so callers
switch to the rule-based plans below on any non-ok outcome.
"""

import json
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from . import config
from .errors import AdvisoryTimeoutOrSchemaError
from .models import BounceEvent, ListHandle, Movement, RebalancingPlan, SuppressionEntry, SuppressionPlan

logger = logging.getLogger(__name__)

OK = "ok"
SCHEMA_ERROR = AdvisoryTimeoutOrSchemaError.SCHEMA_ERROR
TIMEOUT = AdvisoryTimeoutOrSchemaError.TIMEOUT

SUPPRESSION_CONTEXT = (
    "You review email bounce events for a list maintenance system. Propose contacts to suppress. "
    "Respond with JSON only: {\"summary\": str, \"confidence\": 0-1, \"suppressions\": "
    "[{\"contactId\": int, \"email\": str, \"reason\": str, \"evidence\": object, \"confidence\": 0-1}]}"
)

REBALANCING_CONTEXT = (
    "You balance three campaign lists to equal thirds within the stated tolerance, moving as few "
    "contacts as possible and preferring the oldest-enrolled contacts. Respond with JSON only: "
    "{\"summary\": str, \"confidence\": 0-1, \"targetCounts\": {list: int}, \"movements\": "
    "[{\"contactId\": int|null, \"fromList\": str|null, \"toList\": str, \"reason\": str}]}"
)


# =============================================================================
# 📐 PAYLOAD SCHEMAS
# =============================================================================

class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SuppressionItem(_Payload):
    contact_id: Union[int, str] = Field(alias="contactId")
    email: Optional[str] = None
    reason: str = Field(min_length=1)
    evidence: Any
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class SuppressionPlanPayload(_Payload):
    summary: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    suppressions: List[SuppressionItem] = Field(default_factory=list)


class MovementItem(_Payload):
    contact_id: Optional[Union[int, str]] = Field(default=None, alias="contactId")
    from_list: Optional[str] = Field(default=None, alias="fromList")
    to_list: str = Field(alias="toList", min_length=1)
    reason: str = ""


class RebalancingPlanPayload(_Payload):
    summary: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    target_counts: Dict[str, int] = Field(default_factory=dict, alias="targetCounts")
    movements: List[MovementItem] = Field(default_factory=list)


# =============================================================================
# 🏷️ TAGGED OUTCOME
# =============================================================================

@dataclass
class AdvisoryOutcome:
    kind: str
    plan: Union[SuppressionPlan, RebalancingPlan, None] = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.kind == OK

    def as_error(self) -> AdvisoryTimeoutOrSchemaError:
        return AdvisoryTimeoutOrSchemaError(self.error, kind=self.kind)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` block if present"""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned[3:]
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    return cleaned.strip()


# =============================================================================
# 🤖 CLIENT
# =============================================================================

class AdvisoryClient:
    """One request/response per workflow invocation, bounded by the advisory timeout"""

    def __init__(self, url: str = None, api_key: str = None, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.url = config.ADVISORY_URL if url is None else url
        self.api_key = config.ADVISORY_API_KEY if api_key is None else api_key
        self.timeout = timeout
        self.session = session or requests.Session()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="lk-advisory")

    def request_suppression_plan(self, structured_input: Dict[str, Any]) -> AdvisoryOutcome:
        outcome = self._call(SUPPRESSION_CONTEXT, structured_input, SuppressionPlanPayload)
        if not outcome.ok:
            return outcome
        payload: SuppressionPlanPayload = outcome.plan
        plan = SuppressionPlan(
            entries=[SuppressionEntry(contact_id=item.contact_id, reason=item.reason,
                                      evidence=item.evidence, email=item.email)
                     for item in payload.suppressions],
            source="advisory",
            summary=payload.summary,
            confidence=payload.confidence,
        )
        logger.info(f"🤖 Advisory suppression plan: {len(plan.entries)} entries (confidence {payload.confidence:.2f})")
        return AdvisoryOutcome(OK, plan)

    def request_rebalancing_plan(self, structured_input: Dict[str, Any]) -> AdvisoryOutcome:
        outcome = self._call(REBALANCING_CONTEXT, structured_input, RebalancingPlanPayload)
        if not outcome.ok:
            return outcome
        payload: RebalancingPlanPayload = outcome.plan
        targets = {}
        for key, count in payload.target_counts.items():
            handle = ListHandle.parse(key)
            if handle is not None:
                targets[handle] = count
        plan = RebalancingPlan(
            target_counts=targets,
            movements=[Movement(to_list=item.to_list, from_list=item.from_list,
                                contact_id=item.contact_id, reason=item.reason)
                       for item in payload.movements],
            source="advisory",
            summary=payload.summary,
            confidence=payload.confidence,
        )
        logger.info(f"🤖 Advisory rebalancing plan: {len(plan.movements)} movements (confidence {payload.confidence:.2f})")
        return AdvisoryOutcome(OK, plan)

    def _post(self, headers: Dict[str, str], body: Dict[str, Any]) -> str:
        response = self.session.post(self.url, headers=headers,
                                     data=json.dumps(body, default=str), timeout=self.timeout)
        response.raise_for_status()
        return response.text

    def _call(self, system_context: str, structured_input: Dict[str, Any], schema) -> AdvisoryOutcome:
        if not self.url:
            return AdvisoryOutcome(TIMEOUT, error="advisory service not configured")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = {"systemContext": system_context, "structuredInput": structured_input}

        # requests bounds each socket read, not the whole call; the future bounds the total
        future = self._executor.submit(self._post, headers, body)
        try:
            text = future.result(timeout=self.timeout)
        except FuturesTimeoutError:
            future.cancel()
            logger.warning(f"⏱️ Advisory service exceeded {self.timeout:.0f}s")
            return AdvisoryOutcome(TIMEOUT, error=f"no complete response within {self.timeout:.0f}s")
        except requests.exceptions.RequestException as e:
            logger.warning(f"⏱️ Advisory service unavailable or timed out: {e}")
            return AdvisoryOutcome(TIMEOUT, error=str(e))

        try:
            data = json.loads(strip_code_fences(text))
            if isinstance(data, dict) and isinstance(data.get("plan"), dict):
                data = data["plan"]
            payload = schema.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.warning(f"⚠️ Advisory payload rejected: {str(e)[:300]}")
            return AdvisoryOutcome(SCHEMA_ERROR, error=str(e)[:1000])
        return AdvisoryOutcome(OK, payload)


# =============================================================================
# 📏 RULE-BASED FALLBACKS
# =============================================================================

def rule_based_suppression_plan(bounce_events: List[BounceEvent]) -> SuppressionPlan:
    """Hard bounces only, one entry per contact"""
    entries = []
    seen = set()
    for event in bounce_events:
        if not event.is_hard or event.contact_id in seen:
            continue
        seen.add(event.contact_id)
        entries.append(SuppressionEntry(
            contact_id=event.contact_id,
            reason="hard_bounce",
            evidence={
                "campaign_id": event.campaign_id,
                "bounced_at": event.bounced_at.isoformat() if event.bounced_at else None,
                "error": event.error,
            },
            email=event.email,
        ))
    logger.info(f"📏 Rule-based suppression plan: {len(entries)} hard bounces "
                f"out of {len(bounce_events)} bounce events")
    return SuppressionPlan(entries=entries, source="fallback", summary="Hard bounces only")


def rule_based_rebalancing_plan() -> RebalancingPlan:
    return RebalancingPlan(source="fallback", summary="No rebalancing without advisory plan")
