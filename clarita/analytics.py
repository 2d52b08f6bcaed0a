from datetime import date, datetime
from typing import Dict, Iterable, List, Sequence

from clarita.errors import ValidationError


def _local_naive(value: datetime) -> datetime:
    # Stored timestamps are naive server-local time
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def _streaks(days: Sequence[date], today: date) -> tuple[int, int]:
    max_streak = 0
    temp_streak = 0
    previous = None
    for day in days:
        if previous is None:
            temp_streak = 1
        else:
            gap = (day - previous).days
            if gap == 1:
                temp_streak += 1
            elif gap > 1:
                max_streak = max(max_streak, temp_streak)
                temp_streak = 1
        previous = day
    max_streak = max(max_streak, temp_streak)

    current_streak = 0
    if days and (today - days[-1]).days in (0, 1):
        distinct = sorted(set(days))
        current_streak = 1
        for index in range(len(distinct) - 1, 0, -1):
            if (distinct[index] - distinct[index - 1]).days != 1:
                break
            current_streak += 1
    return current_streak, max_streak


def compute_user_statistics(attempts: Iterable, quiz_count: int, now: datetime | None = None) -> Dict:
    """Summarize a user's full attempt history.

    ``attempts`` may arrive in any order; each needs ``completed_at``, ``score``,
    ``total_questions`` and ``percentage``. Calendar days and the current month
    are evaluated in server-local time.
    """
    now = _local_naive(now) if now is not None else datetime.now()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    ordered = sorted(attempts, key=lambda attempt: _local_naive(attempt.completed_at))
    completed = [_local_naive(attempt.completed_at) for attempt in ordered]

    current_streak, max_streak = _streaks([moment.date() for moment in completed], now.date())

    total_score = sum(attempt.score for attempt in ordered)
    total_questions = sum(attempt.total_questions for attempt in ordered)
    accuracy_rate = round(total_score / total_questions * 100, 2) if total_questions else 0
    average_score = round(sum(attempt.percentage for attempt in ordered) / len(ordered), 2) if ordered else 0

    return {
        "quizzes_completed_this_month": sum(1 for moment in completed if moment >= month_start),
        "current_streak": current_streak,
        "max_streak": max_streak,
        "accuracy_rate": accuracy_rate,
        "average_score": average_score,
        "total_quizzes_taken": len(ordered),
        "total_quizzes_generated": quiz_count,
    }


def normalize_text_answer(value) -> str:
    return str(value).strip().lower()


def _as_bool(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def answers_match(question: dict, user_answer) -> bool:
    if user_answer is None:
        return False

    question_type = question.get("type")
    correct = question.get("answer")
    if question_type == "mcq":
        if isinstance(user_answer, str) and user_answer.strip().isdigit():
            user_answer = int(user_answer.strip())
        return not isinstance(user_answer, bool) and isinstance(user_answer, int) and user_answer == correct
    if question_type == "tf":
        submitted = _as_bool(user_answer)
        return submitted is not None and submitted == correct
    # fill and legacy short answers
    if not isinstance(user_answer, str) or not isinstance(correct, str):
        return False
    return normalize_text_answer(user_answer) == normalize_text_answer(correct)


def score_answers(questions: List[dict], submitted: Dict[str, object]) -> Dict:
    question_ids = {question["id"] for question in questions}
    unknown_ids = set(submitted) - question_ids
    if unknown_ids:
        raise ValidationError("Submission includes unknown questionId values")

    results = []
    for question in questions:
        user_answer = submitted.get(question["id"])
        results.append(
            {
                "question_id": question["id"],
                "user_answer": user_answer,
                "correct_answer": question.get("answer"),
                "is_correct": answers_match(question, user_answer),
            }
        )

    score = sum(1 for row in results if row["is_correct"])
    total = len(questions)
    return {
        "score": score,
        "total_questions": total,
        "percentage": round(score / total * 100, 2) if total else 0,
        "answers": results,
    }
