"""
Insight generation through the generative-text collaborator.

Key architectural decisions:
- The collaborator is opaque: prompt in, text out (InsightGenerator protocol)
- Pydantic AI agent as the production generator
- Fallback strategies: a failing or slow provider never fails a tick, it yields static text
- Circuit breaker so a dead provider is not hammered by every subscriber's tick
"""

import asyncio
import time
from collections import Counter
from collections.abc import Sequence
from typing import Any, Literal, Protocol, cast

import structlog
from pydantic_ai import Agent

from healthstream.config import InsightConfig
from healthstream.domain.errors import InsightGenerationFailure
from healthstream.domain.models import Reminder, Sample, TrendResult

logger = structlog.get_logger(__name__)

BATCH_INSIGHT_FALLBACK = (
    "Keep up the great work tracking your health data! "
    "Consistent monitoring helps maintain better health outcomes."
)
DETAILED_INSIGHT_FALLBACK = (
    "Your consistent health tracking shows great dedication to your wellness journey. "
    "Keep monitoring your health metrics for better insights over time."
)
RECORD_ADVICE_FALLBACK = (
    "Great job tracking your health! Keep it up and remember to consult "
    "a healthcare professional for personalised advice."
)
REMINDER_FALLBACK = "Friendly reminder: {title}. Take care of yourself!"

SYSTEM_PROMPT = """You are a helpful health care assistant. Your role is to:
1. Provide general health and wellness information
2. Help users keep track of their health data
3. Encourage healthy habits
4. Remind users to consult medical professionals about serious concerns
5. Be empathetic and supportive

Important: always remind users that this is general information and that they should
consult a healthcare professional for personalised advice."""


class InsightGenerator(Protocol):
    """Opaque generative-text collaborator."""

    async def generate(self, prompt: str) -> str: ...


class PydanticAIInsightGenerator:
    """Generator backed by a free-form pydantic-ai agent."""

    def __init__(self, config: InsightConfig) -> None:
        self.config = config
        self.logger = logger.bind(component="insight_generator", model=config.model_name)

        self.agent = Agent(
            model=self.config.model_name,
            output_type=str,
            system_prompt=SYSTEM_PROMPT,
            defer_model_check=True,
        )

    async def generate(self, prompt: str) -> str:
        result = await self.agent.run(prompt)
        text = cast(str, cast(Any, result).output)
        if not text or not text.strip():
            raise InsightGenerationFailure("empty response from insight model")
        return text.strip()


class CircuitBreakerState:
    """
    Guards the generator: after `failure_threshold` consecutive failures the circuit
    opens and every call gets the fallback until `recovery_timeout` seconds pass.
    The first call after that is a trial call; its outcome closes or reopens the circuit.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.opened_at: float | None = None
        self.state: Literal["closed", "open", "half-open"] = "closed"

    def can_execute(self) -> bool:
        if self.state != "open":
            return True
        if self.opened_at is not None and time.monotonic() - self.opened_at >= self.recovery_timeout:
            self.state = "half-open"
            return True
        return False

    def record_success(self) -> None:
        self.failure_count = 0
        self.opened_at = None
        self.state = "closed"

    def record_failure(self) -> None:
        self.failure_count += 1
        if self.state == "half-open" or self.failure_count >= self.failure_threshold:
            self.state = "open"
            self.opened_at = time.monotonic()


class InsightRequester:
    """
    Formats prompts and forwards them to the generator, substituting fallbacks.

    Never raises: every public method returns text.
    """

    def __init__(
        self,
        generator: InsightGenerator | None,
        config: InsightConfig | None = None,
    ) -> None:
        self.config = config or InsightConfig()
        self.generator = generator
        self.circuit_breaker = CircuitBreakerState(
            failure_threshold=self.config.failure_threshold,
            recovery_timeout=self.config.recovery_timeout_seconds,
        )
        self.logger = logger.bind(component="insight_requester")

    @classmethod
    def from_config(cls, config: InsightConfig) -> "InsightRequester":
        """Build with a pydantic-ai generator when a key is configured, fallback-only otherwise."""
        generator = PydanticAIInsightGenerator(config) if config.enabled else None
        return cls(generator, config)

    async def _generate(self, prompt: str, fallback: str, purpose: str) -> str:
        if self.generator is None:
            self.logger.debug("insight_generation_disabled", purpose=purpose)
            return fallback

        if not self.circuit_breaker.can_execute():
            self.logger.warning("insight_circuit_open", purpose=purpose)
            return fallback

        try:
            text = await asyncio.wait_for(
                self.generator.generate(prompt), timeout=self.config.timeout_seconds
            )
        except TimeoutError:
            self.circuit_breaker.record_failure()
            self.logger.error(
                "insight_generation_timeout",
                purpose=purpose,
                timeout_seconds=self.config.timeout_seconds,
            )
            return fallback
        except Exception as e:
            self.circuit_breaker.record_failure()
            self.logger.error(
                "insight_generation_failed",
                purpose=purpose,
                error=str(e),
                circuit_state=self.circuit_breaker.state,
            )
            return fallback

        self.circuit_breaker.record_success()
        return text

    async def batch_insight(self, samples: Sequence[Sample], trends: Sequence[TrendResult]) -> str:
        """Short insight for one tick's sample window."""
        return await self._generate(
            build_batch_prompt(samples, trends), BATCH_INSIGHT_FALLBACK, "batch_insight"
        )

    async def detailed_insight(
        self, samples: Sequence[Sample], trends: Sequence[TrendResult], days: int
    ) -> str:
        """Longer, multi-day insight for the on-demand insights endpoint."""
        prompt = f"""Provide detailed health insights based on the last {days} days of data:

Data Summary:
Analyzed {len(samples)} health records across {len(trends)} categories

Trends:
{format_trends(trends)}

Provide comprehensive insights including:
1. Overall health patterns
2. Areas of improvement
3. Positive trends to continue
4. Actionable recommendations

Keep it encouraging and informative (300-400 words)."""
        return await self._generate(prompt, DETAILED_INSIGHT_FALLBACK, "detailed_insight")

    async def record_advice(self, sample: Sample) -> str:
        """Encouraging feedback for a freshly recorded sample."""
        prompt = f"""Based on the following health data, give a short, encouraging response
with general wellness advice:

Type: {sample.category}
Value: {sample.value}
Notes: {sample.notes or "None"}

Acknowledge their effort in tracking their health. Keep it under 200 words."""
        return await self._generate(prompt, RECORD_ADVICE_FALLBACK, "record_advice")

    async def reminder_message(self, reminder: Reminder) -> str:
        """Friendly motivational text for a due reminder."""
        prompt = (
            f"Write a friendly, motivating reminder message for: {reminder.title}. "
            "Keep it encouraging and short (under 100 words), focusing on the positive "
            "side of staying healthy."
        )
        return await self._generate(
            prompt, REMINDER_FALLBACK.format(title=reminder.title), "reminder_message"
        )


def format_trends(trends: Sequence[TrendResult]) -> str:
    if not trends:
        return "No trend data"
    return "\n".join(f"{t.category}: {t.direction.value} ({t.describe()})" for t in trends)


def build_batch_prompt(samples: Sequence[Sample], trends: Sequence[TrendResult]) -> str:
    """Compact textual summary of a sample window."""
    counts = Counter(s.category for s in samples)
    latest = sorted(samples, key=lambda s: s.recorded_at, reverse=True)[:3]

    return f"""Analyze the following health data and provide a brief insight:

Records: {len(samples)}
Types: {", ".join(f"{category}: {count}" for category, count in counts.items())}
Latest entries: {", ".join(f"{s.category}: {s.value}" for s in latest)}
Trends:
{format_trends(trends)}

Provide a 2-3 sentence health insight focusing on patterns and recommendations."""
