"""
Optional LLM narration of issue descriptions.

Narration only rewrites the reviewer-facing text. Priority, severity and
lifecycle never depend on it, and any failure falls back to the
deterministic description built by the prioritizer.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field
from pydantic_ai import Agent

from caresignal.config import NarrationConfig
from caresignal.domain.models import Anomaly, PrioritizedIssue, utc_now

logger = structlog.get_logger(__name__)


class IssueNarrative(BaseModel):
    """Structured output expected from the narration agent."""

    description: str = Field(min_length=1, max_length=1200)


class CircuitBreakerState:
    """Simple circuit breaker for narration calls."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time: datetime | None = None
        self.state = "closed"  # closed, open, half-open
        self._clock = clock

    def can_execute(self) -> bool:
        if self.state == "open":
            if self.last_failure_time is not None:
                elapsed = (self._clock() - self.last_failure_time).total_seconds()
                if elapsed >= self.recovery_timeout:
                    self.state = "half-open"
                    return True
            return False
        return True

    def record_success(self) -> None:
        self.failure_count = 0
        self.state = "closed"

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.state == "half-open" or self.failure_count >= self.failure_threshold:
            self.state = "open"


class IssueNarrator:
    """
    Rewrites issue descriptions for reviewers with a pydantic-ai agent.

    The agent is built lazily so a disabled narrator never touches the model
    provider; tests inject any object with an async `run(prompt)`.
    """

    def __init__(self, config: NarrationConfig | None = None, agent: Any | None = None) -> None:
        self.config = config or NarrationConfig()
        self._agent = agent
        self.circuit_breaker = CircuitBreakerState(
            failure_threshold=self.config.failure_threshold,
            recovery_timeout=self.config.recovery_timeout_seconds,
        )
        self.logger = logger.bind(component="issue_narrator")

    @property
    def enabled(self) -> bool:
        return self.config.enabled or self._agent is not None

    @property
    def agent(self) -> Any:
        if self._agent is None:
            self._agent = Agent(
                self.config.model_name,
                output_type=IssueNarrative,
                system_prompt=self._build_system_prompt(),
                model_settings={"temperature": self.config.temperature},
                defer_model_check=True,
            )
        return self._agent

    def _build_system_prompt(self) -> str:
        return """You are an experienced care operations supervisor writing short notes
for the person who will review a flagged issue in a residential care agency.

Rules:
1. Use only the facts provided. Never invent measurements, names or diagnoses.
2. State what was observed and how it compares with the subject's usual values.
3. Keep it to two or three plain sentences. No headings, no lists.
4. Do not recommend treatment; the reviewer decides what happens next."""

    def _build_user_prompt(self, issue: PrioritizedIssue, anomalies: list[Anomaly]) -> str:
        lines = [
            f"Issue: {issue.title}",
            f"Subject: {issue.subject_type.value} {issue.subject_id}",
            f"Risk score: {issue.severity_score}/100, priority {issue.priority_score}",
            f"Current description: {issue.description}",
            "Anomalies:",
        ]
        for anomaly in anomalies:
            lines.append(
                f"- {anomaly.anomaly_type.value}/{anomaly.subtype}, severity {anomaly.severity.value}, "
                f"observed {anomaly.observed_value}, baseline {anomaly.baseline_value}, "
                f"deviation {anomaly.deviation_magnitude}"
            )
        return "\n".join(lines)

    async def narrate(self, issue: PrioritizedIssue, anomalies: list[Anomaly]) -> str:
        """Return a narrated description, or the issue's own description on any failure."""
        if not self.enabled:
            return issue.description

        if not self.circuit_breaker.can_execute():
            self.logger.warning("narration_circuit_open", issue_id=str(issue.id))
            return issue.description

        try:
            result = await asyncio.wait_for(
                self.agent.run(self._build_user_prompt(issue, anomalies)),
                timeout=self.config.timeout_seconds,
            )
            narrative = result.output
            description = (
                narrative.description if isinstance(narrative, IssueNarrative) else str(narrative)
            )
            if not description.strip():
                raise ValueError("empty narration")
        except TimeoutError:
            self.logger.error("narration_timeout", timeout_seconds=self.config.timeout_seconds)
            self.circuit_breaker.record_failure()
            return issue.description
        except Exception as e:
            self.logger.error("narration_failed", issue_id=str(issue.id), error=str(e))
            self.circuit_breaker.record_failure()
            return issue.description

        self.circuit_breaker.record_success()
        self.logger.debug("issue_narrated", issue_id=str(issue.id))
        return description
