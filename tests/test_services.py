import json
import logging

import pytest

from clarita.errors import QuizGenerationError, QuizValidationError, QuotaExceededError, UpstreamError, ValidationError
from clarita.schemas import FillQuestion, McqQuestion, TrueFalseQuestion
from clarita.services import (
    QuizGenerationService,
    build_generation_prompt,
    build_response_schema,
    parse_generator_payload,
    plan_distribution,
    regeneration_parameters,
    validate_generated_questions,
)
from fakes import FailingGenerator, build_question

ALL_TYPES = ["mcq", "tf", "fill"]


class StaticGenerator:
    def __init__(self, payload):
        self.payload = payload
        self.calls = 0

    def generate(self, prompt, schema):
        self.calls += 1
        return self.payload if isinstance(self.payload, str) else json.dumps(self.payload)


def valid_set():
    return [build_question("mcq", 0), build_question("tf", 0), build_question("fill", 0)]


@pytest.mark.parametrize("num_questions", [1, 2, 3, 7, 10, 11, 50])
@pytest.mark.parametrize("enabled", [["mcq"], ["mcq", "tf"], ["tf", "fill"], ALL_TYPES])
def test_distribution_sums_to_total_with_spread_of_one(num_questions, enabled):
    distribution = plan_distribution(num_questions, enabled)

    assert sum(distribution.values()) == num_questions
    assert max(distribution.values()) - min(distribution.values()) <= 1
    assert list(distribution) == enabled


def test_distribution_gives_remainder_to_first_types():
    assert plan_distribution(10, ALL_TYPES) == {"mcq": 4, "tf": 3, "fill": 3}
    assert plan_distribution(5, ["tf", "fill"]) == {"tf": 3, "fill": 2}


def test_generate_quiz_returns_questions_and_meta(fake_generator):
    service = QuizGenerationService(generator=fake_generator)

    result = service.generate_quiz(
        text_by_page=["ACID stands for atomicity, consistency, isolation, durability."],
        num_questions=10,
        question_types=["fill", "mcq", "tf"],
        upload_id="upload-1",
    )

    assert len(result.questions) == 10
    assert result.meta.upload_id == "upload-1"
    assert result.meta.counts_by_type == {"mcq": 4, "tf": 3, "fill": 3}
    assert sum(result.meta.counts_by_type.values()) == 10
    assert result.meta.created_at
    assert isinstance(result.questions[0], McqQuestion)
    assert "Page 1:\nACID stands for" in fake_generator.calls[0]["prompt"]
    assert fake_generator.calls[0]["schema"]["properties"]["questions"]["items"]["properties"]["type"]["enum"] == [
        "mcq",
        "tf",
        "fill",
    ]


def test_generate_quiz_counts_only_enabled_types(fake_generator):
    service = QuizGenerationService(generator=fake_generator)

    result = service.generate_quiz(text_by_page=["text"], num_questions=4, question_types=["tf"], upload_id="u")

    assert result.meta.counts_by_type == {"tf": 4}
    assert all(isinstance(q, TrueFalseQuestion) for q in result.questions)
    payload = result.questions_payload()
    assert payload[0]["options"] == []
    assert result.meta_payload()["countsByType"] == {"tf": 4}


def test_empty_type_set_is_rejected_before_calling_generator(fake_generator):
    service = QuizGenerationService(generator=fake_generator)

    with pytest.raises(ValidationError, match="At least one question type"):
        service.generate_quiz(text_by_page=["text"], num_questions=3, question_types=[], upload_id="u")

    assert fake_generator.calls == []


def test_unknown_question_type_is_rejected():
    with pytest.raises(ValidationError, match="Unsupported question types"):
        QuizGenerationService(generator=StaticGenerator({})).generate_quiz(
            text_by_page=["text"], num_questions=3, question_types=["short"], upload_id="u"
        )


@pytest.mark.parametrize("payload", ["", "   ", "not json at all", '{"questions": "nope"}', "[1, 2, 3]"])
def test_empty_or_unparseable_payload_is_a_generation_error(payload):
    service = QuizGenerationService(generator=StaticGenerator(payload))

    with pytest.raises(QuizGenerationError):
        service.generate_quiz(text_by_page=["text"], num_questions=3, question_types=ALL_TYPES, upload_id="u")


def test_fenced_json_is_accepted():
    text = "```json\n" + json.dumps({"questions": valid_set()}) + "\n```"

    assert len(parse_generator_payload(text)["questions"]) == 3


def test_fenced_json_inside_prose_is_accepted():
    text = "Here is your quiz:\n```\n" + json.dumps({"questions": valid_set()}) + "\n```\nGood luck!"

    assert len(parse_generator_payload(text)["questions"]) == 3


def test_invalid_json_error_includes_position():
    with pytest.raises(QuizGenerationError, match=r"invalid JSON \(.* at char \d+\)"):
        parse_generator_payload('{"questions": [}')


def test_generator_failure_is_upstream_error():
    service = QuizGenerationService(generator=FailingGenerator("connection reset by peer"))

    with pytest.raises(UpstreamError) as excinfo:
        service.generate_quiz(text_by_page=["text"], num_questions=3, question_types=ALL_TYPES, upload_id="u")

    assert not isinstance(excinfo.value, QuotaExceededError)
    assert excinfo.value.quota is False


@pytest.mark.parametrize(
    "message",
    ["You exceeded your current quota", "429 Too Many Requests", "RESOURCE_EXHAUSTED", "Rate limit reached"],
)
def test_quota_failures_are_flagged(message):
    service = QuizGenerationService(generator=FailingGenerator(message))

    with pytest.raises(QuotaExceededError) as excinfo:
        service.generate_quiz(text_by_page=["text"], num_questions=3, question_types=ALL_TYPES, upload_id="u")

    assert excinfo.value.quota is True
    assert excinfo.value.to_payload()["quota"] is True


def test_valid_set_is_accepted():
    questions = validate_generated_questions(valid_set(), 3, ALL_TYPES)

    assert [type(q) for q in questions] == [McqQuestion, TrueFalseQuestion, FillQuestion]


def test_wrong_total_is_rejected():
    with pytest.raises(QuizValidationError, match="Expected 4 questions, but received 3"):
        validate_generated_questions(valid_set(), 4, ALL_TYPES)


def test_disabled_type_is_rejected():
    with pytest.raises(QuizValidationError, match='"fill" is not enabled'):
        validate_generated_questions(valid_set(), 3, ["mcq", "tf"])


def _mutated(index, **changes):
    questions = valid_set()
    questions[index] = {**questions[index], **changes}
    return questions


@pytest.mark.parametrize(
    "questions, match",
    [
        (_mutated(1, options=None), "missing options array"),
        (_mutated(0, options=["a", "b", "c"]), "exactly 4 options"),
        (_mutated(0, options=["a", "b", "c", "d", "e"]), "exactly 4 options"),
        (_mutated(0, options=["a", "  ", "c", "d"]), "option 1 is empty"),
        (_mutated(0, answer=4), "between 0-3"),
        (_mutated(0, answer=-1), "between 0-3"),
        (_mutated(0, answer="2"), "between 0-3"),
        (_mutated(0, answer=True), "between 0-3"),
        (_mutated(0, answer=1.5), "between 0-3"),
        (_mutated(2, answer=3), "must be a string"),
        (_mutated(2, answer="   "), "empty answer"),
        (_mutated(1, answer="maybe"), "must be a boolean"),
    ],
)
def test_single_hard_violation_rejects_whole_set(questions, match):
    with pytest.raises(QuizValidationError, match=match):
        validate_generated_questions(questions, 3, ALL_TYPES)


def test_options_key_missing_is_rejected():
    questions = valid_set()
    del questions[2]["options"]

    with pytest.raises(QuizValidationError, match="missing options array"):
        validate_generated_questions(questions, 3, ALL_TYPES)


def test_non_mcq_options_are_cleared_with_warning(caplog):
    questions = _mutated(1, options=["True", "False"])

    with caplog.at_level(logging.WARNING, logger="clarita.services"):
        result = validate_generated_questions(questions, 3, ALL_TYPES)

    assert result[1].options == []
    assert "has options but should have empty array" in caplog.text


def test_soft_fill_issues_only_warn(caplog):
    questions = _mutated(2, prompt="Transactions are all-or-nothing because of what?", answer="a" * 60)

    with caplog.at_level(logging.WARNING, logger="clarita.services"):
        result = validate_generated_questions(questions, 3, ALL_TYPES)

    assert result[2].answer == "a" * 60
    assert "missing blank indicators" in caplog.text
    assert "answer is too long" in caplog.text


def test_distribution_drift_only_warns(caplog):
    questions = [build_question("mcq", index) for index in range(5)] + [build_question("tf", 0)]
    distribution = plan_distribution(6, ["mcq", "tf"])

    with caplog.at_level(logging.WARNING, logger="clarita.services"):
        result = validate_generated_questions(questions, 6, ["mcq", "tf"], distribution)

    assert len(result) == 6
    assert "Question type mcq: expected 3, got 5" in caplog.text


def test_missing_ids_are_generated_and_unique():
    questions = valid_set()
    for question in questions:
        question["id"] = ""

    result = validate_generated_questions(questions, 3, ALL_TYPES)

    ids = [q.id for q in result]
    assert all(ids)
    assert len(set(ids)) == 3


def test_integral_float_answer_and_string_booleans_are_coerced():
    questions = _mutated(0, answer=3.0)
    questions[1]["answer"] = "False"

    result = validate_generated_questions(questions, 3, ALL_TYPES)

    assert result[0].answer == 3
    assert result[1].answer is False


def test_bad_citations_are_dropped():
    questions = _mutated(0, citations=[{"page": 0, "snippet": "x"}, {"page": 2.0, "snippet": "ok"}, "junk"])
    del questions[1]["citations"]

    result = validate_generated_questions(questions, 3, ALL_TYPES)

    assert [c.page for c in result[0].citations] == [2]
    assert result[1].citations == []


def test_prompt_embeds_pages_and_distribution():
    distribution = plan_distribution(5, ["mcq", "fill"])
    prompt = build_generation_prompt(["first page", "second page"], 5, ["mcq", "fill"], distribution)

    assert "Page 1:\nfirst page" in prompt
    assert "Page 2:\nsecond page" in prompt
    assert "- mcq: 3 questions" in prompt
    assert "- fill: 2 questions" in prompt
    assert "_____" in prompt


def test_response_schema_requires_every_question_field():
    schema = build_response_schema(["tf"])
    item = schema["properties"]["questions"]["items"]

    assert set(item["required"]) == {"id", "type", "prompt", "options", "answer", "explanation", "citations"}
    assert item["properties"]["type"]["enum"] == ["tf"]


def test_regeneration_parameters_follow_stored_counts():
    questions = [build_question("mcq", 0), build_question("mcq", 1), build_question("fill", 0)]
    meta = {"uploadId": "u", "createdAt": "2024-01-01T00:00:00", "countsByType": {"mcq": 2, "tf": 0, "fill": 1}}

    assert regeneration_parameters(questions, meta) == (3, ["mcq", "fill"])


def test_regeneration_parameters_fall_back_to_question_types():
    questions = [build_question("tf", 0), build_question("mcq", 0)]

    assert regeneration_parameters(questions, {"uploadId": "u", "createdAt": ""}) == (2, ["mcq", "tf"])


def test_regeneration_parameters_reject_legacy_only_quiz():
    questions = [{"id": "q", "type": "short", "prompt": "Explain", "options": [], "answer": "because"}]

    with pytest.raises(ValidationError):
        regeneration_parameters(questions, {"countsByType": {"short": 1}})
