import logging
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clarita.analytics import compute_user_statistics, score_answers
from clarita.auth import CurrentUser, SupabaseAuthProvider, upsert_user
from clarita.config import settings
from clarita.database import Base, engine, get_db
from clarita.errors import AuthError, AuthorizationError, ClaritaError, NotFoundError, PersistenceError, ValidationError
from clarita.models import Quiz, QuizAttempt, Upload, User
from clarita.pdf import extract_pdf_text
from clarita.schemas import (
    QUESTION_TYPES,
    LEGACY_QUESTION_TYPES,
    AuthSessionOut,
    CheckAnswersRequest,
    CheckAnswersResponse,
    GenerateQuizRequest,
    ProfileUpdateRequest,
    QuizAttemptCreate,
    QuizAttemptOut,
    QuizFolderOut,
    QuizOut,
    QuizSummaryOut,
    QuizUpdateRequest,
    SignInRequest,
    SignUpRequest,
    UploadOut,
    UserOut,
    UserStatisticsOut,
)
from clarita.services import QuizGenerationService, dump_questions, regeneration_parameters

app = FastAPI(title="ClariTA")
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger = logging.getLogger(__name__)
service = QuizGenerationService()
auth_provider = SupabaseAuthProvider()
bearer = HTTPBearer(auto_error=False)

Base.metadata.create_all(bind=engine)


@app.exception_handler(ClaritaError)
async def clarita_error_handler(request: Request, exc: ClaritaError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(SQLAlchemyError)
async def persistence_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Database error during %s %s", request.method, request.url.path, exc_info=exc)
    error = PersistenceError("Database operation failed")
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


def _bearer_token(credentials: Optional[HTTPAuthorizationCredentials]) -> str:
    if credentials is None or not credentials.credentials:
        raise AuthError("No token provided")
    return credentials.credentials


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Session = Depends(get_db),
) -> CurrentUser:
    token = _bearer_token(credentials)
    provider_user = auth_provider.get_user(token)
    if provider_user is None:
        raise AuthError("Invalid token")
    upsert_user(db, provider_user, overwrite=False)
    return CurrentUser(id=provider_user.id, email=provider_user.email, role=provider_user.role, token=token)


def _get_owned_upload(db: Session, upload_id: str, user: CurrentUser) -> Upload:
    upload = db.get(Upload, upload_id)
    if not upload:
        raise NotFoundError("Upload not found")
    if upload.user_id != user.id:
        raise AuthorizationError("Unauthorized access to upload")
    return upload


def _get_owned_quiz(db: Session, quiz_id: str, user: CurrentUser) -> Quiz:
    quiz = db.get(Quiz, quiz_id)
    if not quiz:
        raise NotFoundError("Quiz not found")
    if quiz.user_id != user.id:
        raise AuthorizationError("Unauthorized access to quiz")
    return quiz


def _user_out(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name or "",
        "profile_image_url": user.profile_image_url or "",
    }


def _upload_out(upload: Upload, pdf=None) -> dict:
    row = {
        "upload_id": upload.id,
        "file_name": upload.file_name,
        "file_size": upload.file_size,
        "page_count": upload.page_count,
        "uploaded_at": upload.uploaded_at,
    }
    if pdf is not None:
        row["stats"] = {"chars": pdf.total_chars, "pages_with_text": pdf.pages_with_text}
    return row


def _quiz_out(quiz: Quiz) -> dict:
    return {
        "quiz_id": quiz.id,
        "upload_id": quiz.upload_id,
        "name": quiz.name,
        "folder": quiz.folder,
        "tags": quiz.tags or [],
        "questions": quiz.questions,
        "meta": quiz.meta,
        "created_at": quiz.created_at,
        "updated_at": quiz.updated_at,
    }


def _quiz_summary(quiz: Quiz) -> dict:
    return {
        "quiz_id": quiz.id,
        "upload_id": quiz.upload_id,
        "name": quiz.name,
        "folder": quiz.folder,
        "tags": quiz.tags or [],
        "question_count": len(quiz.questions or []),
        "meta": quiz.meta,
        "created_at": quiz.created_at,
        "updated_at": quiz.updated_at,
    }


def _attempt_out(attempt: QuizAttempt) -> dict:
    return {
        "attempt_id": attempt.id,
        "quiz_id": attempt.quiz_id,
        "score": attempt.score,
        "total_questions": attempt.total_questions,
        "percentage": attempt.percentage,
        "answers": attempt.answers,
        "completed_at": attempt.completed_at,
    }


def _question_type_counts(questions: List[dict]) -> dict:
    counts = {}
    for question in questions:
        counts[question["type"]] = counts.get(question["type"], 0) + 1
    return counts


def _clean_tags(tags: List[str]) -> List[str]:
    cleaned = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in cleaned:
            cleaned.append(tag)
    return cleaned


@app.get("/api/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}


@app.post("/api/auth/signup", response_model=AuthSessionOut)
def signup(payload: SignUpRequest, db: Session = Depends(get_db)):
    provider_user = auth_provider.sign_up(payload.email.strip(), payload.password, payload.full_name)
    user = upsert_user(db, provider_user)
    logger.info("Signed up user %s", user.id)
    return {"user": _user_out(user)}


@app.post("/api/auth/signin", response_model=AuthSessionOut)
def signin(payload: SignInRequest, db: Session = Depends(get_db)):
    session = auth_provider.sign_in(payload.email.strip(), payload.password)
    user = upsert_user(db, session.user)
    return {
        "user": _user_out(user),
        "access_token": session.access_token,
        "refresh_token": session.refresh_token,
        "expires_in": session.expires_in,
    }


@app.post("/api/auth/signout")
def signout(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)):
    auth_provider.sign_out(_bearer_token(credentials))
    return {"message": "Signed out successfully"}


@app.get("/api/auth/me", response_model=UserOut)
@app.get("/api/auth/user", response_model=UserOut)
def me(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    row = db.get(User, user.id)
    if not row:
        raise NotFoundError("User not found")
    return _user_out(row)


@app.put("/api/auth/profile", response_model=UserOut)
def update_profile(
    payload: ProfileUpdateRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    row = db.get(User, user.id)
    if not row:
        raise NotFoundError("User not found")
    if payload.full_name is not None:
        row.full_name = payload.full_name.strip()
    if payload.profile_image_url is not None:
        row.profile_image_url = payload.profile_image_url.strip()
    db.commit()
    db.refresh(row)
    return _user_out(row)


@app.post("/api/upload", response_model=UploadOut)
def upload_pdf(
    file: UploadFile = File(...),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if file.content_type != "application/pdf":
        raise ValidationError("Only PDF files are allowed")

    data = file.file.read(settings.max_upload_bytes + 1)
    if len(data) > settings.max_upload_bytes:
        raise ValidationError(f"File exceeds the {settings.max_upload_bytes // (1024 * 1024)}MB upload limit")

    pdf = extract_pdf_text(data)
    upload = Upload(
        user_id=user.id,
        file_name=file.filename or "upload.pdf",
        file_size=len(data),
        page_count=pdf.page_count,
        text_by_page=pdf.text_by_page,
    )
    db.add(upload)
    db.commit()
    db.refresh(upload)
    logger.info("Stored upload %s (%s pages) for user %s", upload.id, upload.page_count, user.id)
    return _upload_out(upload, pdf)


@app.get("/api/uploads/{upload_id}", response_model=UploadOut)
def get_upload(upload_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    return _upload_out(_get_owned_upload(db, upload_id, user))


@app.get("/api/user/uploads", response_model=List[UploadOut])
def list_user_uploads(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    uploads = db.query(Upload).filter(Upload.user_id == user.id).order_by(Upload.uploaded_at.desc()).all()
    return [_upload_out(upload) for upload in uploads]


@app.post("/api/quizzes", response_model=QuizOut)
def create_quiz(
    payload: GenerateQuizRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    logger.info(
        "Quiz generation request (upload_id=%s, num_questions=%s, types=%s)",
        payload.upload_id,
        payload.num_questions,
        payload.question_types.enabled(),
    )
    upload = _get_owned_upload(db, payload.upload_id, user)
    result = service.generate_quiz(
        text_by_page=upload.text_by_page,
        num_questions=payload.num_questions,
        question_types=payload.question_types.enabled(),
        upload_id=upload.id,
    )

    quiz = Quiz(
        user_id=user.id,
        upload_id=upload.id,
        name=(payload.name or "").strip() or f"Quiz: {upload.file_name}",
        folder=(payload.folder or "").strip() or None,
        tags=_clean_tags(payload.tags),
        questions=result.questions_payload(),
        meta=result.meta_payload(),
    )
    db.add(quiz)
    db.commit()
    db.refresh(quiz)
    logger.info("Created quiz %s with %s questions", quiz.id, len(quiz.questions))
    return _quiz_out(quiz)


@app.get("/api/quizzes/{quiz_id}", response_model=QuizOut)
def get_quiz(quiz_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    return _quiz_out(_get_owned_quiz(db, quiz_id, user))


@app.patch("/api/quizzes/{quiz_id}", response_model=QuizOut)
def update_quiz(
    quiz_id: str,
    payload: QuizUpdateRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    quiz = _get_owned_quiz(db, quiz_id, user)
    fields = payload.model_fields_set

    if "name" in fields:
        name = (payload.name or "").strip()
        if not name:
            raise ValidationError("Quiz name cannot be empty")
        quiz.name = name
    if "folder" in fields:
        quiz.folder = (payload.folder or "").strip() or None
    if "tags" in fields:
        quiz.tags = _clean_tags(payload.tags or [])

    questions = quiz.questions
    meta = quiz.meta
    if "questions" in fields:
        if payload.questions is None:
            raise ValidationError("questions cannot be null")
        questions = dump_questions(payload.questions)
        counts = {question_type: 0 for question_type in (meta or {}).get("countsByType", {})}
        counts.update(_question_type_counts(questions))
        meta = {**(meta or {}), "countsByType": counts}
    if "meta" in fields:
        if payload.meta is None:
            raise ValidationError("meta cannot be null")
        meta = payload.meta.model_dump(by_alias=True)

    if meta.get("uploadId") != quiz.upload_id:
        raise ValidationError("meta.uploadId must match the quiz upload")
    counts = meta.get("countsByType", {})
    known_types = set(QUESTION_TYPES) | set(LEGACY_QUESTION_TYPES)
    if any(question_type not in known_types or count < 0 for question_type, count in counts.items()):
        raise ValidationError("meta.countsByType contains invalid entries")
    if sum(counts.values()) != len(questions):
        raise ValidationError("meta.countsByType must sum to the number of questions")
    stated = {question_type: count for question_type, count in counts.items() if count}
    if stated != _question_type_counts(questions):
        raise ValidationError("meta.countsByType does not match the question types")

    if questions is not quiz.questions:
        quiz.questions = questions
    if meta is not quiz.meta:
        quiz.meta = meta
    quiz.updated_at = datetime.now()
    db.commit()
    db.refresh(quiz)
    return _quiz_out(quiz)


@app.delete("/api/quizzes/{quiz_id}")
def delete_quiz(quiz_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    quiz = _get_owned_quiz(db, quiz_id, user)
    deleted_attempts = len(quiz.attempts)
    db.delete(quiz)
    db.commit()
    logger.info("Deleted quiz %s and %s attempts", quiz_id, deleted_attempts)
    return {"quizId": quiz_id, "deletedAttempts": deleted_attempts}


@app.post("/api/quizzes/{quiz_id}/regenerate", response_model=QuizOut)
def regenerate_quiz(quiz_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    quiz = _get_owned_quiz(db, quiz_id, user)
    upload = db.get(Upload, quiz.upload_id)
    if not upload:
        raise NotFoundError("Original upload not found")

    num_questions, enabled_types = regeneration_parameters(quiz.questions, quiz.meta)
    logger.info("Regenerating quiz %s (num_questions=%s, types=%s)", quiz.id, num_questions, enabled_types)
    result = service.generate_quiz(
        text_by_page=upload.text_by_page,
        num_questions=num_questions,
        question_types=enabled_types,
        upload_id=upload.id,
    )

    quiz.questions = result.questions_payload()
    quiz.meta = result.meta_payload()
    quiz.updated_at = datetime.now()
    db.commit()
    db.refresh(quiz)
    return _quiz_out(quiz)


@app.post("/api/quizzes/{quiz_id}/check", response_model=CheckAnswersResponse)
def check_answers(
    quiz_id: str,
    payload: CheckAnswersRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    quiz = _get_owned_quiz(db, quiz_id, user)
    return score_answers(quiz.questions, payload.answers)


@app.get("/api/quizzes/{quiz_id}/latest-attempt", response_model=QuizAttemptOut)
def get_latest_attempt(quiz_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    _get_owned_quiz(db, quiz_id, user)
    attempt = (
        db.query(QuizAttempt)
        .filter(QuizAttempt.quiz_id == quiz_id, QuizAttempt.user_id == user.id)
        .order_by(QuizAttempt.completed_at.desc())
        .first()
    )
    if not attempt:
        raise NotFoundError("No attempts found for this quiz")
    return _attempt_out(attempt)


@app.get("/api/quizzes/{quiz_id}/attempts", response_model=List[QuizAttemptOut])
def list_quiz_attempts(quiz_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    _get_owned_quiz(db, quiz_id, user)
    attempts = (
        db.query(QuizAttempt)
        .filter(QuizAttempt.quiz_id == quiz_id, QuizAttempt.user_id == user.id)
        .order_by(QuizAttempt.completed_at.desc())
        .all()
    )
    return [_attempt_out(attempt) for attempt in attempts]


@app.post("/api/quiz-attempts", response_model=QuizAttemptOut)
def create_attempt(
    payload: QuizAttemptCreate,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    quiz = _get_owned_quiz(db, payload.quiz_id, user)
    attempt = QuizAttempt(
        quiz_id=quiz.id,
        user_id=user.id,
        score=payload.score,
        total_questions=payload.total_questions,
        percentage=payload.percentage,
        answers=[answer.model_dump(by_alias=True) for answer in payload.answers],
    )
    db.add(attempt)
    db.commit()
    db.refresh(attempt)
    logger.info("Recorded attempt %s on quiz %s (%s/%s)", attempt.id, quiz.id, attempt.score, attempt.total_questions)
    return _attempt_out(attempt)


@app.get("/api/quiz-attempts/{attempt_id}", response_model=QuizAttemptOut)
def get_attempt(attempt_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    attempt = db.get(QuizAttempt, attempt_id)
    if not attempt:
        raise NotFoundError("Attempt not found")
    if attempt.user_id != user.id:
        raise AuthorizationError("Unauthorized access to attempt")
    return _attempt_out(attempt)


@app.get("/api/user/quizzes", response_model=List[QuizSummaryOut])
def list_user_quizzes(
    folder: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = db.query(Quiz).filter(Quiz.user_id == user.id)
    if folder is not None:
        # Cleared folders are stored as NULL
        folder = folder.strip()
        query = query.filter(Quiz.folder == folder if folder else Quiz.folder.is_(None))
    return [_quiz_summary(quiz) for quiz in query.order_by(Quiz.created_at.desc()).all()]


@app.get("/api/user/quiz-folders", response_model=List[QuizFolderOut])
def list_quiz_folders(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    rows = (
        db.query(Quiz.folder, func.count(Quiz.id))
        .filter(Quiz.user_id == user.id, Quiz.folder.isnot(None))
        .group_by(Quiz.folder)
        .order_by(Quiz.folder.asc())
        .all()
    )
    return [{"folder": folder, "quiz_count": count} for folder, count in rows]


@app.get("/api/user/statistics", response_model=UserStatisticsOut)
def get_user_statistics(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    attempts = db.query(QuizAttempt).filter(QuizAttempt.user_id == user.id).all()
    quiz_count = db.query(Quiz).filter(Quiz.user_id == user.id).count()
    return compute_user_statistics(attempts, quiz_count)
