from __future__ import annotations

from typing import Callable

from pydantic import BaseModel

from . import documents
from .documents import UploadedDocument
from .errors import (
    JobDescriptionTooShort,
    MissingFile,
    MissingJobDescription,
    NoTextExtracted,
    QuotaExhausted,
)
from .logs import get_logger
from .scoring import ScoringClient
from .store import Account, AccountStore

logger = get_logger("analysis")

MIN_JOB_DESCRIPTION_CHARS = 50
UNMETERED_CREDITS = 999


class AnalysisOutcome(BaseModel):
    id: int
    score: int
    missing_keywords: list[str]
    suggestions: list[str]
    credits_remaining: int

    def as_payload(self) -> dict:
        return {
            "id": self.id,
            "score": self.score,
            "missingKeywords": self.missing_keywords,
            "suggestions": self.suggestions,
            "creditsRemaining": self.credits_remaining,
        }


def validate_inputs(upload: UploadedDocument | None, job_description: str | None) -> None:
    if upload is None:
        raise MissingFile()
    trimmed = (job_description or "").strip()
    if not trimmed:
        raise MissingJobDescription()
    if len(trimmed) < MIN_JOB_DESCRIPTION_CHARS:
        raise JobDescriptionTooShort()


def check_quota(account: Account) -> None:
    if account.is_metered and account.credits_remaining <= 0:
        raise QuotaExhausted()


class AnalysisWorkflow:
    """Validate, gate on credits, extract, score, then persist and charge.

    The caller hands over an account already resolved from its bearer token.
    The credit check before extraction only avoids paying for a scorer call
    that cannot be charged; the binding check is the conditional debit that
    runs in the same transaction as the insert, so a credit spent by a
    concurrent request surfaces here as :class:`QuotaExhausted` and nothing
    is stored.
    """

    def __init__(
        self,
        store: AccountStore,
        scorer: ScoringClient,
        extractor: Callable[[bytes, str], str] = documents.extract,
    ):
        self.store = store
        self.scorer = scorer
        self.extractor = extractor

    def run(self, account: Account, upload: UploadedDocument | None, job_description: str | None) -> AnalysisOutcome:
        validate_inputs(upload, job_description)
        check_quota(account)

        resume_text = self.extractor(upload.contents, upload.content_type)
        if not resume_text or not resume_text.strip():
            raise NoTextExtracted()

        result = self.scorer.score(resume_text, job_description)

        try:
            record, balance = self.store.record_analysis(
                account,
                resume_text=resume_text,
                job_description=job_description,
                score=result.score,
                missing_keywords=result.missing_keywords,
                suggestions=result.suggestions,
            )
        except QuotaExhausted:
            logger.warning("Account %s ran out of credits while its analysis was scored.", account.id)
            raise

        logger.info("Analysis %s stored for account %s (score=%s).", record.id, account.id, record.score)
        return AnalysisOutcome(
            id=record.id,
            score=record.score,
            missing_keywords=record.missing_keywords,
            suggestions=record.suggestions,
            credits_remaining=UNMETERED_CREDITS if balance is None else balance,
        )
