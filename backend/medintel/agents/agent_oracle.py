"""Oracle adapter backed by Google GenAI embeddings and the Claude Agent SDK."""

from __future__ import annotations

import datetime
import json
import logging
from typing import Any

import httpx
from claude_agent_sdk import (
    AssistantMessage,
    CLIConnectionError,
    CLIJSONDecodeError,
    CLINotFoundError,
    ClaudeAgentOptions,
    ClaudeSDKError,
    ProcessError,
    ResultMessage,
    query,
)
from google import genai
from google.auth import exceptions as auth_exceptions
from google.genai import errors, types

from medintel.agents.oracle import OracleError, OracleResponseError, TermKind
from medintel.agents.parsing import (
    OracleEventList,
    OracleInteraction,
    OracleTermList,
    OracleTreatmentPattern,
)
from medintel.config import settings

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You are a medical records assistant working for a patient. You only use \
information present in the text you are given. Never invent dates, values, \
medications or diagnoses. When the text does not contain what is asked, \
say so or return an empty result.
"""

EVENTS_PROMPT = """\
Extract medical events from this document. Return a JSON object with an \
"events" array. Each event has:
- date (ISO date, use the document date when the text gives none)
- description (short description of the event)
- type (medication|diagnosis|lab_result|vital_signs|procedure|visit)
- value (if applicable, e.g. "120/80" for BP, "200 mg/dL" for glucose)

Document date: {document_date}
Content:
{document_text}
"""

INTERACTION_PROMPT = """\
Check for a clinically significant drug interaction between {drug_a} and \
{drug_b}. Return JSON with has_interaction, and when true also severity \
(mild|moderate|severe|contraindicated), description and recommendation.
"""

TERMS_PROMPT = """\
Extract the patient's current {kind} from this document. Return a JSON \
object with a "terms" array of lower-case names only.

Content:
{text}
"""

TREATMENT_PROMPT = """\
Analyze the treatment pattern for {condition} based on these dated document \
summaries. Return a JSON object with medications (list), duration, \
effectiveness (improving|stable|declining|unknown), adherence \
(good|moderate|poor|unknown), side_effects (list) and recommendations (list).

{history}
"""

# --- Clients (lazy init) ---

_genai_client: genai.Client | None = None


def get_genai_client() -> genai.Client:
    """Get or create the Google GenAI client (Vertex AI via ADC)."""
    global _genai_client
    if _genai_client is None:
        _genai_client = genai.Client(
            vertexai=True,
            project=settings.gcp_project_id,
            location=settings.gcp_location,
        )
    return _genai_client


_VERTEX_PREDICT_URL = (
    "https://{location}-aiplatform.googleapis.com/v1/projects/{project}"
    "/locations/{location}/publishers/google/models/{model}:predict"
)


async def _async_vertex_embed_via_api_key(text: str) -> list[float]:
    """Call the Vertex AI embedding endpoint directly using a GCP API key."""
    url = _VERTEX_PREDICT_URL.format(
        location=settings.gcp_location,
        project=settings.gcp_project_id,
        model=settings.embedding_model,
    )
    body = {
        "instances": [{"content": text, "task_type": "RETRIEVAL_DOCUMENT"}],
        "parameters": {"outputDimensionality": settings.embedding_dimensions},
    }
    async with httpx.AsyncClient() as client:
        resp = await client.post(
            url, params={"key": settings.google_api_key}, json=body, timeout=30
        )
    resp.raise_for_status()
    return resp.json()["predictions"][0]["embeddings"]["values"]


class AgentOracle:
    """Real oracle. Every failure surfaces as ``OracleError``."""

    def __init__(self, model: str | None = None) -> None:
        self.model = model or settings.ai_model

    # --- Embedding ---

    async def embed(self, text: str) -> list[float]:
        logger.debug(
            "Oracle embedding (%d chars): %r",
            len(text),
            text[:100] + ("..." if len(text) > 100 else ""),
        )
        try:
            if settings.google_api_key:
                vector = await _async_vertex_embed_via_api_key(text)
            else:
                client = get_genai_client()
                response = await client.aio.models.embed_content(
                    model=settings.embedding_model,
                    contents=[text],
                    config=types.EmbedContentConfig(
                        output_dimensionality=settings.embedding_dimensions,
                        task_type="RETRIEVAL_DOCUMENT",
                    ),
                )
                vector = list(response.embeddings[0].values)
        except (httpx.HTTPError, errors.APIError, auth_exceptions.GoogleAuthError) as e:
            raise OracleError(code="EMBEDDING_FAILED", message=str(e)) from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise OracleResponseError(
                code="EMBEDDING_FAILED",
                message=f"Malformed embedding response: {e!r}",
            ) from e
        logger.debug("Oracle embedded text -> %d-dim vector", len(vector))
        return vector

    # --- Generation ---

    async def generate_events(
        self, document_text: str, document_date: datetime.date
    ) -> Any:
        prompt = EVENTS_PROMPT.format(
            document_date=document_date.isoformat(), document_text=document_text
        )
        return await self._run(prompt, schema=OracleEventList.model_json_schema())

    async def generate_text(self, prompt_facts: str) -> str:
        result = await self._run(prompt_facts)
        if not isinstance(result, str) or not result.strip():
            raise OracleResponseError(
                code="EMPTY_TEXT", message="Oracle returned no narrative text"
            )
        return result

    async def check_interaction(self, drug_a: str, drug_b: str) -> Any:
        prompt = INTERACTION_PROMPT.format(drug_a=drug_a, drug_b=drug_b)
        return await self._run(prompt, schema=OracleInteraction.model_json_schema())

    async def extract_terms(self, kind: TermKind, text: str) -> Any:
        prompt = TERMS_PROMPT.format(kind=kind, text=text)
        return await self._run(prompt, schema=OracleTermList.model_json_schema())

    async def analyze_treatment(self, condition: str, history: str) -> Any:
        prompt = TREATMENT_PROMPT.format(condition=condition, history=history)
        return await self._run(prompt, schema=OracleTreatmentPattern.model_json_schema())

    async def _run(self, prompt: str, schema: dict | None = None) -> Any:
        """Single-turn agent call. Returns structured output when a schema is given."""
        options = ClaudeAgentOptions(
            system_prompt=SYSTEM_PROMPT,
            model=self.model,
            output_format=(
                {"type": "json_schema", "schema": schema} if schema is not None else None
            ),
            max_turns=2,
            permission_mode="bypassPermissions",
        )

        logger.debug("Oracle query: model=%s structured=%s", self.model, schema is not None)
        result: Any = None
        try:
            async for message in query(prompt=prompt, options=options):
                if isinstance(message, AssistantMessage):
                    logger.debug("Oracle AssistantMessage received (model=%s)", message.model)
                elif isinstance(message, ResultMessage):
                    logger.debug(
                        "Oracle ResultMessage: num_turns=%d duration=%dms is_error=%s",
                        message.num_turns,
                        message.duration_ms,
                        message.is_error,
                    )
                    if message.is_error:
                        raise OracleError(
                            code="AGENT_ERROR",
                            message=message.result or "Agent returned an error",
                        )
                    if schema is not None and message.structured_output is not None:
                        result = message.structured_output
                    else:
                        result = message.result
        except OracleError:
            raise
        except CLINotFoundError as e:
            raise OracleError(
                code="CLI_NOT_FOUND",
                message="Claude Code CLI not found. Ensure it is installed.",
            ) from e
        except CLIConnectionError as e:
            if result is not None:
                logger.warning("CLIConnectionError after result received (ignoring): %s", e)
            else:
                raise OracleError(
                    code="CLI_CONNECTION_ERROR",
                    message=f"Failed to connect to Claude CLI: {e}",
                ) from e
        except ProcessError as e:
            raise OracleError(
                code="PROCESS_ERROR",
                message=f"Agent process failed: {e}",
            ) from e
        except CLIJSONDecodeError as e:
            raise OracleError(
                code="JSON_DECODE_ERROR",
                message=f"Failed to parse agent response: {e}",
            ) from e
        except ClaudeSDKError as e:
            raise OracleError(
                code="SDK_ERROR",
                message=f"Agent SDK error: {e}",
            ) from e
        except BaseExceptionGroup as eg:
            # The SDK's anyio task group wraps transport failures on teardown.
            cli_errors = eg.subgroup(CLIConnectionError)
            if cli_errors and result is not None:
                logger.warning(
                    "CLIConnectionError in task group after result (ignoring): %s",
                    cli_errors.exceptions[0],
                )
            elif cli_errors:
                raise OracleError(
                    code="CLI_CONNECTION_ERROR",
                    message=f"Failed to connect to Claude CLI: {cli_errors.exceptions[0]}",
                ) from eg
            else:
                raise

        if result is None:
            raise OracleError(
                code="NO_RESULT",
                message="Agent did not return a result message",
            )
        logger.debug("Oracle result: %s", json.dumps(result, default=str)[:300])
        return result
