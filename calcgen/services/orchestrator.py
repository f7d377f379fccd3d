"""
Calc Plan Orchestrator
======================
Acquires a plan for one character and turns it into an accepted module.

Each generator attempt runs validate -> repair -> render -> check. A failed
attempt feeds its error message back into the next prompt as a hint, at a
lower temperature. When the attempts are used up (or no generator is
configured) the heuristic plan goes through the same pipeline; its check
failure is reported next to the artifact instead of being raised.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from calcgen.errors import CalcGenError, GeneratorError, RuntimeCheckError
from calcgen.llm.json_extract import parse_json_from_llm_text
from calcgen.llm.llm_connector import LLMConnector
from calcgen.llm.response_cache import ResponseCache
from calcgen.models.message import Message
from calcgen.models.plan import Plan
from calcgen.models.request import CalcRequest
from calcgen.prompts.builder import build_messages
from calcgen.repair.engine import repair
from calcgen.services.heuristic import heuristic_plan
from calcgen.services.plan_validator import validate
from calcgen.services.renderer import DEFAULT_CREATED_BY, render
from calcgen.services.runtime_checker import CheckReport, check_rendered

logger = logging.getLogger(__name__)

TEMPERATURES = (0.2, 0.1, 0.0)
CACHE_PURPOSE = "calc-plan"


@dataclass
class CalcBuildResult:
    source: str
    used_llm: bool
    attempts: int
    error: Optional[str] = None
    plan: Optional[Plan] = None
    report: Optional[CheckReport] = None


def _is_plan_text(text: str) -> bool:
    """Cache gate: the reply must at least contain a plan-shaped JSON object."""
    try:
        data = parse_json_from_llm_text(text)
    except GeneratorError:
        return False
    return isinstance(data.get("details"), list)


class CalcPlanOrchestrator:
    def __init__(
        self,
        connector: Optional[LLMConnector] = None,
        cache: Optional[ResponseCache] = None,
        max_attempts: int = len(TEMPERATURES),
        created_by: str = DEFAULT_CREATED_BY,
    ):
        self.connector = connector
        self.cache = cache
        self.max_attempts = max(1, max_attempts)
        self.created_by = created_by

    def temperature_for(self, attempt: int) -> float:
        return TEMPERATURES[min(attempt, len(TEMPERATURES) - 1)]

    def _chat(self, messages: List[Message], temperature: float, attempt: int) -> str:
        def produce() -> str:
            try:
                return self.connector.chat(messages, temperature=temperature)
            except Exception as e:
                logger.error(f"Generator call failed: {e}", exc_info=True)
                raise GeneratorError(f"generator call failed: {e}") from e

        if self.cache is None:
            return produce()
        return self.cache.fetch_or_populate(
            self.connector.model_name,
            messages,
            temperature,
            CACHE_PURPOSE,
            attempt,
            produce,
            validate=_is_plan_text,
        )

    def _render_plan(self, request: CalcRequest, raw) -> Tuple[Plan, str]:
        plan = repair(request, validate(request, raw))
        return plan, render(request, plan, created_by=self.created_by)

    def _attempt(self, request: CalcRequest, attempt: int, hint: Optional[str]) -> CalcBuildResult:
        temperature = self.temperature_for(attempt)
        logger.info(f"Plan attempt {attempt + 1}/{self.max_attempts} for {request.name} (temperature={temperature})")
        messages = build_messages(request, hint=hint, attempt=attempt)
        raw = parse_json_from_llm_text(self._chat(messages, temperature, attempt))
        plan, source = self._render_plan(request, raw)
        report = check_rendered(request, source)
        return CalcBuildResult(source=source, used_llm=True, attempts=attempt + 1, plan=plan, report=report)

    def _fallback(self, request: CalcRequest, attempts: int, last_error: Optional[str]) -> CalcBuildResult:
        """Heuristic plan, best effort. Raises only when not even a renderable plan comes out."""
        plan, source = self._render_plan(request, heuristic_plan(request))
        error = last_error
        report = None
        try:
            report = check_rendered(request, source)
        except RuntimeCheckError as e:
            logger.warning(f"Heuristic module for {request.name} failed its check: {e}")
            error = f"{last_error}; fallback: {e}" if last_error else f"fallback: {e}"
        return CalcBuildResult(source=source, used_llm=False, attempts=attempts, error=error, plan=plan, report=report)

    def build(self, request: CalcRequest) -> CalcBuildResult:
        if self.connector is None:
            logger.info(f"No generator configured; using the heuristic plan for {request.name}")
            return self._fallback(request, attempts=0, last_error=None)

        hint = None
        for attempt in range(self.max_attempts):
            try:
                result = self._attempt(request, attempt, hint)
            except CalcGenError as e:
                hint = str(e)
                logger.warning(f"Attempt {attempt + 1}/{self.max_attempts} for {request.name} rejected: {hint}")
                continue
            logger.info(f"Accepted generated plan for {request.name} after {result.attempts} attempt(s)")
            return result

        logger.warning(f"All {self.max_attempts} attempts failed for {request.name}; falling back to the heuristic plan")
        return self._fallback(request, attempts=self.max_attempts, last_error=hint)
