from typing import List, Literal

from pydantic import BaseModel, Field


class StatusUpdate(BaseModel):
    status: Literal["confirmed", "cancelled"]


class AnswerSubmission(BaseModel):
    code: str = Field(min_length=1, max_length=16)


class SessionCreated(BaseModel):
    token: str
    expiresAt: int
    verifyUrl: str
    pollIntervalSeconds: int
    maxPolls: int


class MobileView(BaseModel):
    status: str
    challengeCode: str


class PollView(BaseModel):
    status: str


class ChallengeView(BaseModel):
    choices: List[str]


class RateLimitView(BaseModel):
    allowed: bool
    retryAfterMinutes: int
