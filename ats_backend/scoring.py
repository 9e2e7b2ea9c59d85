from __future__ import annotations

import json
import re
from typing import Annotated, Any

import openai
from openai import OpenAI
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StringConstraints
from pydantic import ValidationError as SchemaError

from .errors import MalformedScoreResponse, ScoringUnavailable
from .logs import get_logger

logger = get_logger("scoring")

SYSTEM_PROMPT = (
    "You are an ATS expert. Return only valid JSON with score, missingKeywords array, and suggestions array."
)
USER_PROMPT_TEMPLATE = """Analyze this resume against the job description.

Resume: {resume}

Job: {description}

Provide ATS score (0-100), top 5 missing keywords, and 3-4 improvement tips."""

CODE_FENCE_RE = re.compile(r"```(?:json)?\n?|\n?```")

# Strict so a model reply is never coerced into shape.
ScoreItem = Annotated[str, StringConstraints(strict=True, strip_whitespace=True, min_length=1)]


class ScoreResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    score: StrictInt = Field(ge=0, le=100)
    missing_keywords: list[ScoreItem] = Field(alias="missingKeywords", max_length=5)
    suggestions: list[ScoreItem] = Field(min_length=3, max_length=4)


def build_user_prompt(resume_text: str, job_description: str) -> str:
    return USER_PROMPT_TEMPLATE.format(resume=resume_text, description=job_description)


def strip_code_fences(raw: str) -> str:
    return CODE_FENCE_RE.sub("", raw).strip()


def extract_llm_text(message_content: Any) -> str:
    if isinstance(message_content, str):
        return message_content.strip()

    if isinstance(message_content, list):
        parts: list[str] = []
        for item in message_content:
            if isinstance(item, str):
                parts.append(item)
                continue
            text = item.get("text") if isinstance(item, dict) else getattr(item, "text", None)
            if isinstance(text, str):
                parts.append(text)
        return "\n".join(parts).strip()

    return ""


def parse_score_reply(raw: str) -> ScoreResult:
    cleaned = strip_code_fences(raw)
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise MalformedScoreResponse() from exc
    if not isinstance(payload, dict):
        raise MalformedScoreResponse()
    try:
        return ScoreResult.model_validate(payload)
    except SchemaError as exc:
        logger.warning("Scorer reply failed validation: %s", exc.errors(include_url=False))
        raise MalformedScoreResponse() from exc


class ScoringClient:
    """Sends one résumé/job pair to the chat model and validates its JSON reply.

    Exactly one request is made per :meth:`score` call; the OpenAI client is
    expected to be built with ``max_retries=0`` and a timeout.
    """

    def __init__(self, client: OpenAI | None, model: str = "gpt-4o-mini", temperature: float = 0.7, max_tokens: int = 600):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    def score(self, resume_text: str, job_description: str) -> ScoreResult:
        if self.client is None:
            logger.error("Scoring requested but OPENAI_API_KEY is not configured.")
            raise ScoringUnavailable()

        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_user_prompt(resume_text, job_description)},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.OpenAIError as exc:
            logger.exception("OpenAI request failed for model '%s'.", self.model)
            raise ScoringUnavailable() from exc

        raw = extract_llm_text(completion.choices[0].message.content if completion.choices else "")
        if not raw:
            logger.error("OpenAI returned empty content for model '%s'.", self.model)
            raise MalformedScoreResponse()
        return parse_score_reply(raw)
