import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional

import anthropic

from resolution_config import ResolutionConfig, DEFAULT_CONFIG

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert accounts-payable analyst who diagnoses why invoices are blocked. "
    "Be concise. Only suggest a correction when the document evidence supports it."
)


# =============================================================================
# OUTCOMES
# =============================================================================

class OutcomeKind(Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    BLOCKED = "blocked"
    ERROR = "error"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class InferenceOutcome:
    kind: OutcomeKind
    text: str = ""
    error: str = ""
    suggested_wait: Optional[float] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    def as_text(self) -> str:
        """Response text, or a typed failure string suitable as a diagnosis."""
        if self.kind == OutcomeKind.SUCCESS:
            return self.text
        if self.kind == OutcomeKind.BLOCKED:
            return f"AI_BLOCKED: response withheld by the model's safety filter ({self.error or 'refusal'})."
        if self.kind == OutcomeKind.EXHAUSTED:
            return f"AI_CALL_FAILED: rate limited after {self.attempts} attempt(s). Last error: {self.error}"
        return f"AI_CALL_FAILED: {self.error}"


def parse_retry_after(error: anthropic.APIStatusError) -> Optional[float]:
    """Wait suggested by the service, from the retry-after header."""
    headers = getattr(getattr(error, "response", None), "headers", None) or {}
    value = headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value.strip()))
    except ValueError:
        return None


# =============================================================================
# PACING
# =============================================================================

class CallPacer:
    """Minimum interval between consecutive inference calls. The first call is never delayed."""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.min_interval = min_interval
        self.clock = clock
        self.sleep = sleep
        self._last_call: Optional[float] = None

    def wait(self) -> float:
        if self._last_call is None or self.min_interval <= 0:
            return 0.0
        remaining = self.min_interval - (self.clock() - self._last_call)
        if remaining > 0:
            logger.info(f"Waiting {remaining:.1f}s before next AI call")
            self.sleep(remaining)
            return remaining
        return 0.0

    def mark(self) -> None:
        self._last_call = self.clock()


# =============================================================================
# CLIENT
# =============================================================================

class InferenceClient:
    """Anthropic Messages API wrapper with rate-limit backoff and safety-block handling."""

    def __init__(
        self,
        config: ResolutionConfig = DEFAULT_CONFIG,
        client=None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.config = config
        self.sleep = sleep
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.api_calls = 0
        if client is None and config.anthropic_api_key:
            # retries are owned by generate()
            client = anthropic.Anthropic(api_key=config.anthropic_api_key, max_retries=0)
        self.client = client

    def generate(self, prompt: str, record_id: str) -> InferenceOutcome:
        if self.client is None:
            logger.error("Anthropic client not initialized. Check ANTHROPIC_API_KEY.")
            return InferenceOutcome(OutcomeKind.ERROR, error="Anthropic client not initialized (ANTHROPIC_API_KEY missing)")

        rate_limit_retries = 0
        last_error = ""
        for attempt in range(1, self.config.max_attempts + 1):
            logger.info(f"[{record_id}] AI call attempt {attempt}/{self.config.max_attempts} using {self.config.model}")
            outcome = replace(self._attempt(prompt, record_id), attempts=attempt)

            if outcome.kind != OutcomeKind.RATE_LIMITED:
                return outcome

            last_error = outcome.error
            if attempt == self.config.max_attempts:
                break

            if outcome.suggested_wait is not None:
                wait = outcome.suggested_wait
            else:
                wait = self.config.rate_limit_wait_sec * (2 ** rate_limit_retries)
            rate_limit_retries += 1
            logger.warning(f"[{record_id}] Rate limited. Retrying in {wait:.0f}s")
            self.sleep(wait)

        logger.error(f"[{record_id}] Giving up after {self.config.max_attempts} rate-limited attempts")
        return InferenceOutcome(OutcomeKind.EXHAUSTED, error=last_error, attempts=self.config.max_attempts)

    def _attempt(self, prompt: str, record_id: str) -> InferenceOutcome:
        try:
            message = self.client.messages.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}]
            )
        except anthropic.RateLimitError as e:
            return InferenceOutcome(OutcomeKind.RATE_LIMITED, error=str(e), suggested_wait=parse_retry_after(e))
        except anthropic.APIError as e:
            logger.error(f"[{record_id}] Anthropic API error: {e}")
            return InferenceOutcome(OutcomeKind.ERROR, error=str(e))

        self.api_calls += 1
        usage = getattr(message, "usage", None)
        if usage is not None:
            self.total_input_tokens += usage.input_tokens
            self.total_output_tokens += usage.output_tokens

        if getattr(message, "stop_reason", None) == "refusal":
            logger.warning(f"[{record_id}] Response blocked by safety filter")
            return InferenceOutcome(OutcomeKind.BLOCKED, error="refusal")

        text = "".join(block.text for block in message.content if block.type == "text").strip()
        logger.debug(f"[{record_id}] Raw response preview: {text[:200]}...")
        return InferenceOutcome(OutcomeKind.SUCCESS, text=text)


def health_check(config: ResolutionConfig = DEFAULT_CONFIG) -> dict:
    return {
        "anthropic_configured": bool(config.anthropic_api_key),
        "model": config.model,
        "max_attempts": config.max_attempts,
        "inter_call_delay_sec": config.inter_call_delay_sec,
    }
