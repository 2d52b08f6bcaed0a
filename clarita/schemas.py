from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

# Generation order; the advisory distribution follows it.
QUESTION_TYPES = ("mcq", "tf", "fill")
LEGACY_QUESTION_TYPES = ("short",)

AnswerValue = Union[StrictBool, StrictInt, StrictStr, None]


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Citation(ApiModel):
    page: int = Field(ge=1)
    snippet: str = ""


class _QuestionBase(ApiModel):
    id: str
    prompt: str
    explanation: str = ""
    citations: List[Citation] = Field(default_factory=list)


class McqQuestion(_QuestionBase):
    type: Literal["mcq"] = "mcq"
    options: List[str] = Field(min_length=4, max_length=4)
    answer: StrictInt = Field(ge=0, le=3)

    @field_validator("options")
    @classmethod
    def options_not_blank(cls, value: List[str]):
        if any(not option.strip() for option in value):
            raise ValueError("MCQ options must not be empty")
        return value


class TrueFalseQuestion(_QuestionBase):
    type: Literal["tf"] = "tf"
    options: List[str] = Field(default_factory=list, max_length=0)
    answer: StrictBool


class FillQuestion(_QuestionBase):
    type: Literal["fill"] = "fill"
    options: List[str] = Field(default_factory=list, max_length=0)
    answer: StrictStr

    @field_validator("answer")
    @classmethod
    def answer_not_blank(cls, value: str):
        if not value.strip():
            raise ValueError("Fill-in-the-blank answer must not be empty")
        return value


class ShortAnswerQuestion(_QuestionBase):
    """Deprecated free-text question kept readable for older stored quizzes."""

    type: Literal["short"] = "short"
    options: List[str] = Field(default_factory=list)
    answer: StrictStr
    confidence: Optional[float] = None


Question = Annotated[
    Union[McqQuestion, TrueFalseQuestion, FillQuestion, ShortAnswerQuestion],
    Field(discriminator="type"),
]
QuestionList = TypeAdapter(List[Question])


class QuizMeta(ApiModel):
    upload_id: str
    created_at: str
    counts_by_type: Dict[str, int] = Field(default_factory=dict)


class QuestionTypesIn(ApiModel):
    mcq: bool = True
    tf: bool = True
    fill: bool = True

    def enabled(self) -> List[str]:
        return [question_type for question_type in QUESTION_TYPES if getattr(self, question_type)]


class GenerateQuizRequest(ApiModel):
    upload_id: str
    num_questions: int = Field(default=10, ge=1, le=50)
    question_types: QuestionTypesIn = Field(default_factory=QuestionTypesIn)
    name: Optional[str] = None
    folder: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator("upload_id")
    @classmethod
    def upload_id_required(cls, value: str):
        if not value.strip():
            raise ValueError("uploadId is required")
        return value


class QuizOut(ApiModel):
    quiz_id: str
    upload_id: str
    name: str
    folder: Optional[str]
    tags: List[str]
    questions: List[Question]
    meta: QuizMeta
    created_at: datetime
    updated_at: datetime


class QuizSummaryOut(ApiModel):
    quiz_id: str
    upload_id: str
    name: str
    folder: Optional[str]
    tags: List[str]
    question_count: int
    meta: QuizMeta
    created_at: datetime
    updated_at: datetime


class QuizUpdateRequest(ApiModel):
    """Fields present in the body are applied, even when empty or null."""

    name: Optional[str] = None
    folder: Optional[str] = None
    tags: Optional[List[str]] = None
    questions: Optional[List[Question]] = None
    meta: Optional[QuizMeta] = None


class QuizFolderOut(ApiModel):
    folder: str
    quiz_count: int


class UploadStatsOut(ApiModel):
    chars: int
    pages_with_text: int


class UploadOut(ApiModel):
    upload_id: str
    file_name: str
    file_size: int
    page_count: int
    uploaded_at: datetime
    stats: Optional[UploadStatsOut] = None


class AttemptAnswerIn(ApiModel):
    question_id: str
    user_answer: AnswerValue = None
    correct_answer: AnswerValue = None
    is_correct: bool


class QuizAttemptCreate(ApiModel):
    quiz_id: str
    score: int = Field(ge=0)
    total_questions: int = Field(ge=0)
    percentage: float = Field(ge=0, le=100)
    answers: List[AttemptAnswerIn] = Field(default_factory=list)

    @model_validator(mode="after")
    def score_within_total(self):
        if self.score > self.total_questions:
            raise ValueError("score cannot exceed totalQuestions")
        return self


class QuizAttemptOut(ApiModel):
    attempt_id: str
    quiz_id: str
    score: int
    total_questions: int
    percentage: float
    answers: List[AttemptAnswerIn]
    completed_at: datetime


class CheckAnswersRequest(ApiModel):
    # questionId -> submitted answer
    answers: Dict[str, AnswerValue] = Field(default_factory=dict)


class CheckAnswersResponse(ApiModel):
    score: int
    total_questions: int
    percentage: float
    answers: List[AttemptAnswerIn]


class UserStatisticsOut(ApiModel):
    quizzes_completed_this_month: int
    current_streak: int
    max_streak: int
    accuracy_rate: float
    average_score: float
    total_quizzes_taken: int
    total_quizzes_generated: int


class SignUpRequest(ApiModel):
    email: str
    password: str
    full_name: str = ""

    @model_validator(mode="after")
    def credentials_required(self):
        if not self.email.strip() or not self.password:
            raise ValueError("email and password are required")
        return self


class SignInRequest(ApiModel):
    email: str
    password: str


class UserOut(ApiModel):
    id: str
    email: str
    full_name: str
    profile_image_url: str


class AuthSessionOut(ApiModel):
    user: UserOut
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None


class ProfileUpdateRequest(ApiModel):
    full_name: Optional[str] = None
    profile_image_url: Optional[str] = None
