import json
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Sequence, Tuple

from openai import APIError, AuthenticationError, OpenAI, RateLimitError

from clarita.config import settings
from clarita.errors import (
    ClaritaError,
    QuizGenerationError,
    QuizValidationError,
    QuotaExceededError,
    UpstreamError,
    ValidationError,
    is_quota_message,
)
from clarita.schemas import (
    QUESTION_TYPES,
    Citation,
    FillQuestion,
    McqQuestion,
    QuizMeta,
    TrueFalseQuestion,
)

logger = logging.getLogger(__name__)

MCQ_OPTION_COUNT = 4
BLANK_MARKERS = ("_____", "______")
MAX_FILL_ANSWER_CHARS = 50
MAX_EXPLANATION_CHARS = 200
MAX_SNIPPET_CHARS = 120

TYPE_DESCRIPTIONS = {
    "mcq": "Multiple Choice Questions (4 options each)",
    "tf": "True/False Questions",
    "fill": "Fill in the Blank Questions",
}


@dataclass
class GeneratedQuiz:
    questions: list
    meta: QuizMeta

    def questions_payload(self) -> List[dict]:
        return dump_questions(self.questions)

    def meta_payload(self) -> dict:
        return self.meta.model_dump(by_alias=True, mode="json")


def dump_questions(questions: Iterable) -> List[dict]:
    return [q.model_dump(by_alias=True, mode="json", exclude_none=True) for q in questions]


def normalize_enabled_types(question_types: Iterable[str]) -> List[str]:
    requested = set(question_types)
    unknown = requested - set(QUESTION_TYPES)
    if unknown:
        raise ValidationError(f"Unsupported question types: {', '.join(sorted(unknown))}")
    enabled = [question_type for question_type in QUESTION_TYPES if question_type in requested]
    if not enabled:
        raise ValidationError("At least one question type must be selected")
    return enabled


def plan_distribution(num_questions: int, enabled_types: Sequence[str]) -> Dict[str, int]:
    """Spread ``num_questions`` across types; earlier types absorb the remainder."""
    if not enabled_types:
        raise ValidationError("At least one question type must be selected")
    base, remainder = divmod(num_questions, len(enabled_types))
    return {
        question_type: base + (1 if index < remainder else 0)
        for index, question_type in enumerate(enabled_types)
    }


def build_response_schema(enabled_types: Sequence[str]) -> dict:
    citation = {
        "type": "object",
        "properties": {"page": {"type": "number"}, "snippet": {"type": "string"}},
        "required": ["page", "snippet"],
        "additionalProperties": False,
    }
    question = {
        "type": "object",
        "properties": {
            "id": {"type": "string"},
            "type": {"type": "string", "enum": list(enabled_types)},
            "prompt": {"type": "string"},
            "options": {"type": "array", "items": {"type": "string"}},
            "answer": {"anyOf": [{"type": "number"}, {"type": "boolean"}, {"type": "string"}]},
            "explanation": {"type": "string"},
            "citations": {"type": "array", "items": citation},
        },
        "required": ["id", "type", "prompt", "options", "answer", "explanation", "citations"],
        "additionalProperties": False,
    }
    return {
        "type": "object",
        "properties": {"questions": {"type": "array", "items": question}},
        "required": ["questions"],
        "additionalProperties": False,
    }


def build_generation_prompt(
    text_by_page: Sequence[str],
    num_questions: int,
    enabled_types: Sequence[str],
    distribution: Dict[str, int],
) -> str:
    distribution_text = "\n".join(f"- {t}: {count} questions" for t, count in distribution.items())
    type_list = ", ".join(TYPE_DESCRIPTIONS[t] for t in enabled_types)
    content = "\n\n".join(f"Page {index}:\n{text}" for index, text in enumerate(text_by_page, start=1))
    instructions = (
        f"You are an expert quiz generator. Create a {num_questions}-question quiz from the provided lecture slides.\n"
        f"Allowed question types: {type_list}.\n\n"
        "Generate unique, varied questions drawn from different parts of the material, mixing difficulty levels "
        "and testing understanding rather than memorization.\n\n"
        f"Question type distribution:\n{distribution_text}\n\n"
        "For each question provide:\n"
        "- id: unique identifier\n"
        f'- type: one of "{", ".join(enabled_types)}"\n'
        "- prompt: clear question text\n"
        "- options: exactly 4 non-empty choices for mcq; an empty array [] for every other type\n"
        "- answer: correct option index 0-3 (mcq), boolean (tf), or the missing text (fill)\n"
        f"- explanation: 1-2 sentences (max {MAX_EXPLANATION_CHARS} chars)\n"
        f"- citations: array of {{page, snippet}} pointing at the source pages (max {MAX_SNIPPET_CHARS} chars per snippet)\n"
    )
    if "fill" in enabled_types:
        instructions += (
            "\nFill-in-the-blank questions must mark the blank with \"_____\" in the prompt and use an answer of "
            "1-4 words. Answers are matched case-insensitively.\n"
        )
    return f"{instructions}\nMATERIAL:\n{content}\n\nREQUEST ID: {uuid.uuid4().hex}"


class OpenAIQuizGenerator:
    """Calls the OpenAI Responses API with a strict JSON schema and returns raw JSON text."""

    def __init__(self, api_key: str | None = None, model: str | None = None):
        self.api_key = api_key or settings.openai_api_key
        self.model = model or settings.openai_model
        self.client = (
            OpenAI(api_key=self.api_key, timeout=settings.openai_timeout_seconds) if self.api_key else None
        )

    def generate(self, prompt: str, schema: dict) -> str:
        if not self.client:
            raise UpstreamError("OPENAI_API_KEY is required to generate quizzes")

        try:
            response = self.client.responses.create(
                model=self.model,
                input=prompt,
                text={"format": {"type": "json_schema", "name": "quiz", "schema": schema, "strict": True}},
            )
        except AuthenticationError as exc:
            raise UpstreamError("Invalid OpenAI API key") from exc
        except RateLimitError as exc:
            raise QuotaExceededError(f"OpenAI quota or rate limit exceeded: {exc}") from exc
        except APIError as exc:
            if is_quota_message(str(exc)):
                raise QuotaExceededError(f"OpenAI quota or rate limit exceeded: {exc}") from exc
            raise UpstreamError(f"OpenAI request failed: {exc}") from exc

        text = response.output_text or ""
        logger.info("OpenAI generation response length=%s", len(text))
        return text


class QuizGenerationService:
    def __init__(self, generator=None):
        self.generator = generator if generator is not None else OpenAIQuizGenerator()

    def generate_quiz(
        self,
        *,
        text_by_page: Sequence[str],
        num_questions: int,
        question_types: Iterable[str],
        upload_id: str,
    ) -> GeneratedQuiz:
        enabled_types = normalize_enabled_types(question_types)
        if num_questions < 1:
            raise ValidationError("numQuestions must be at least 1")

        distribution = plan_distribution(num_questions, enabled_types)
        prompt = build_generation_prompt(text_by_page, num_questions, enabled_types, distribution)
        schema = build_response_schema(enabled_types)

        logger.info(
            "Generating quiz (upload_id=%s, num_questions=%s, types=%s, pages=%s)",
            upload_id,
            num_questions,
            enabled_types,
            len(text_by_page),
        )
        try:
            raw = self.generator.generate(prompt, schema)
        except QuotaExceededError:
            raise
        except Exception as exc:  # noqa: BLE001
            message = exc.message if isinstance(exc, ClaritaError) else str(exc)
            error_cls = QuotaExceededError if is_quota_message(message) else UpstreamError
            raise error_cls(f"Failed to generate quiz: {message}") from exc

        payload = parse_generator_payload(raw)
        questions = validate_generated_questions(payload["questions"], num_questions, enabled_types, distribution)
        meta = QuizMeta(
            upload_id=upload_id,
            created_at=datetime.now(timezone.utc).isoformat(),
            counts_by_type=count_by_type(questions, enabled_types),
        )
        logger.info("Generated quiz for upload %s with counts %s", upload_id, meta.counts_by_type)
        return GeneratedQuiz(questions=questions, meta=meta)


_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


def parse_generator_payload(text: str) -> dict:
    """Decode the generator's JSON object; a fenced ```json block is also accepted."""
    if not text or not text.strip():
        raise QuizGenerationError("Empty response from quiz generator")

    candidate = text.strip()
    fenced = _FENCED_BLOCK.search(candidate)
    if fenced and not candidate.startswith("{"):
        candidate = fenced.group(1)

    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise QuizGenerationError(
            f"Quiz generator returned invalid JSON ({exc.msg} at char {exc.pos}): {candidate[:200]!r}"
        ) from exc

    if not isinstance(payload, dict) or not isinstance(payload.get("questions"), list):
        raise QuizGenerationError("Quiz generator response is missing the questions array")
    return payload


def validate_generated_questions(
    raw_questions: list,
    num_questions: int,
    enabled_types: Sequence[str],
    distribution: Dict[str, int] | None = None,
) -> list:
    """Apply the hard structural rules; any violation rejects the whole set."""
    if len(raw_questions) != num_questions:
        raise QuizValidationError(f"Expected {num_questions} questions, but received {len(raw_questions)}")

    questions = [
        _validate_question(raw, position, enabled_types) for position, raw in enumerate(raw_questions, start=1)
    ]

    if distribution:
        actual = count_by_type(questions, enabled_types)
        for question_type, expected in distribution.items():
            if abs(actual[question_type] - expected) > 1:
                logger.warning(
                    "Question type %s: expected %s, got %s", question_type, expected, actual[question_type]
                )
    return questions


def _validate_question(raw, position: int, enabled_types: Sequence[str]):
    if not isinstance(raw, dict):
        raise QuizValidationError(f"Question {position} is not an object")

    question_id = str(raw.get("id") or "").strip() or str(uuid.uuid4())
    question_type = raw.get("type")
    if question_type not in enabled_types:
        raise QuizValidationError(f'Question type "{question_type}" is not enabled')

    options = raw.get("options")
    if not isinstance(options, list):
        raise QuizValidationError(f"Question {question_id} is missing options array")

    prompt = raw.get("prompt")
    if not isinstance(prompt, str):
        raise QuizValidationError(f"Question {question_id} prompt must be a string")
    if not prompt.strip():
        logger.warning("Question %s has an empty prompt", question_id)

    explanation = raw.get("explanation")
    if not isinstance(explanation, str):
        logger.warning("Question %s has no explanation", question_id)
        explanation = ""
    elif len(explanation) > MAX_EXPLANATION_CHARS:
        logger.warning("Question %s explanation is too long: %s chars", question_id, len(explanation))

    common = {
        "id": question_id,
        "prompt": prompt,
        "explanation": explanation,
        "citations": _clean_citations(raw.get("citations"), question_id),
    }
    answer = raw.get("answer")

    if question_type == "mcq":
        if len(options) != MCQ_OPTION_COUNT:
            raise QuizValidationError(
                f"MCQ question {question_id} must have exactly {MCQ_OPTION_COUNT} options, got {len(options)}"
            )
        for index, option in enumerate(options):
            if not isinstance(option, str) or not option.strip():
                raise QuizValidationError(f"MCQ question {question_id} option {index} is empty")
        answer_index = _mcq_answer_index(answer)
        if answer_index is None:
            raise QuizValidationError(f"MCQ question {question_id} answer must be a number between 0-3, got {answer!r}")
        return McqQuestion(options=list(options), answer=answer_index, **common)

    if options:
        logger.warning("Non-MCQ question %s has options but should have empty array", question_id)

    if question_type == "tf":
        value = _true_false_answer(answer, question_id)
        return TrueFalseQuestion(answer=value, **common)

    if not isinstance(answer, str):
        raise QuizValidationError(f"Fill-in-the-blank question {question_id} answer must be a string")
    if not answer.strip():
        raise QuizValidationError(f"Fill-in-the-blank question {question_id} has empty answer")
    if not any(marker in prompt for marker in BLANK_MARKERS):
        logger.warning("Fill-in-the-blank question %s missing blank indicators", question_id)
    if len(answer) > MAX_FILL_ANSWER_CHARS:
        logger.warning("Fill-in-the-blank question %s answer is too long: %s chars", question_id, len(answer))
    return FillQuestion(answer=answer, **common)


def _mcq_answer_index(answer):
    if isinstance(answer, bool):
        return None
    if isinstance(answer, float) and answer.is_integer():
        answer = int(answer)
    if isinstance(answer, int) and 0 <= answer < MCQ_OPTION_COUNT:
        return answer
    return None


def _true_false_answer(answer, question_id: str) -> bool:
    if isinstance(answer, bool):
        return answer
    if isinstance(answer, str) and answer.strip().lower() in ("true", "false"):
        logger.warning("True/False question %s answer given as string %r", question_id, answer)
        return answer.strip().lower() == "true"
    raise QuizValidationError(f"True/False question {question_id} answer must be a boolean, got {answer!r}")


def _clean_citations(raw_citations, question_id: str) -> List[Citation]:
    if raw_citations is None:
        logger.warning("Question %s is missing citations", question_id)
        return []
    if not isinstance(raw_citations, list):
        logger.warning("Question %s citations is not an array", question_id)
        return []

    citations = []
    for raw in raw_citations:
        page = raw.get("page") if isinstance(raw, dict) else None
        if isinstance(page, float) and page.is_integer():
            page = int(page)
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            logger.warning("Dropping citation with invalid page on question %s: %r", question_id, raw)
            continue
        snippet = raw.get("snippet")
        snippet = snippet if isinstance(snippet, str) else ""
        if len(snippet) > MAX_SNIPPET_CHARS:
            logger.warning("Question %s citation snippet is too long: %s chars", question_id, len(snippet))
        citations.append(Citation(page=page, snippet=snippet))
    return citations


def count_by_type(questions: Iterable, enabled_types: Sequence[str]) -> Dict[str, int]:
    counts = {question_type: 0 for question_type in enabled_types}
    for question in questions:
        counts[question.type] = counts.get(question.type, 0) + 1
    return counts


def regeneration_parameters(questions: Sequence[dict], meta: dict | None) -> Tuple[int, List[str]]:
    """Recover the question count and enabled types a stored quiz was generated with."""
    counts = (meta or {}).get("countsByType") or {}
    if not counts:
        for question in questions:
            counts[question.get("type")] = counts.get(question.get("type"), 0) + 1

    enabled_types = [question_type for question_type in QUESTION_TYPES if counts.get(question_type, 0) > 0]
    if not questions or not enabled_types:
        raise ValidationError("Quiz has no regenerable questions")
    return len(questions), enabled_types
