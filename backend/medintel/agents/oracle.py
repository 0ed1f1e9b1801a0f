"""Oracle capability contract: the external embedding / generation collaborator.

The engine never depends on a concrete oracle. Every consumer catches
``OracleError`` (and timeouts) and degrades to its deterministic fallback.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Literal, Protocol

from medintel.config import settings

logger = logging.getLogger(__name__)

TermKind = Literal["medications", "conditions"]


class OracleError(Exception):
    """Raised when the oracle cannot produce a usable result."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)


class OracleUnavailableError(OracleError):
    """The oracle is disabled or could not be reached."""


class OracleResponseError(OracleError):
    """The oracle answered, but the output failed shape validation."""


class Oracle(Protocol):
    """What the engine needs from an oracle. Raw outputs are parsed by callers."""

    async def embed(self, text: str) -> list[float]: ...

    async def generate_events(
        self, document_text: str, document_date: datetime.date
    ) -> Any: ...

    async def generate_text(self, prompt_facts: str) -> str: ...

    async def check_interaction(self, drug_a: str, drug_b: str) -> Any: ...

    async def extract_terms(self, kind: TermKind, text: str) -> Any: ...

    async def analyze_treatment(self, condition: str, history: str) -> Any: ...


class NullOracle:
    """Oracle that is never available; every call routes to the fallback."""

    def _unavailable(self, operation: str) -> OracleUnavailableError:
        return OracleUnavailableError(
            code="ORACLE_DISABLED",
            message=f"No oracle configured for {operation}",
        )

    async def embed(self, text: str) -> list[float]:
        raise self._unavailable("embed")

    async def generate_events(
        self, document_text: str, document_date: datetime.date
    ) -> Any:
        raise self._unavailable("generate_events")

    async def generate_text(self, prompt_facts: str) -> str:
        raise self._unavailable("generate_text")

    async def check_interaction(self, drug_a: str, drug_b: str) -> Any:
        raise self._unavailable("check_interaction")

    async def extract_terms(self, kind: TermKind, text: str) -> Any:
        raise self._unavailable("extract_terms")

    async def analyze_treatment(self, condition: str, history: str) -> Any:
        raise self._unavailable("analyze_treatment")


def get_oracle() -> Oracle:
    """Build the configured oracle: the agent adapter, or NullOracle when disabled."""
    if not settings.oracle_enabled:
        logger.info("Oracle disabled by configuration, using deterministic fallbacks")
        return NullOracle()

    from medintel.agents.agent_oracle import AgentOracle

    return AgentOracle()
