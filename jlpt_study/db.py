from __future__ import annotations
from sqlalchemy import (
    create_engine, inspect, or_, func,
    Boolean, Date, DateTime, Float, ForeignKey, Integer, JSON, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, sessionmaker, relationship, Session, Mapped, mapped_column
import datetime
import logging
import math
import os
import random
import re
import uuid
from typing import Optional, List, Any, Dict, Iterable, Tuple, Type

from . import scheduler
from .errors import NotFoundError, ValidationError
from .scheduler import MasteryLevel, MasteryPolicy, DEFAULT_MASTERY_POLICY, utc_today

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass
DB_PATH: str = os.environ.get("JLPT_DB", "jlpt_study.db")
engine = create_engine(f"sqlite:///{DB_PATH}")
# Prevent attribute expiration on commit so returned objects remain accessible
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

ITEM_TYPES = ("vocab", "grammar")
VOCAB_SECTIONS = ("kanji", "word", "phrase")
FLASHCARD_FILTERS = ("due", "new", "mastered", "all")
QUESTION_FILTERS = ("due", "new", "all")
REVIEW_ACTIVITY_TYPES = ("quiz_answer", "flashcard_review")
TEST_DIFFICULTIES = ("easy", "medium", "hard", "mixed")
MAX_TEST_QUESTIONS = 100
QUEUE_STATUSES = ("pending", "generating", "completed", "failed")
TIP_SECTIONS = ("vocabulary", "reading", "listening")


def _utcnow() -> datetime.datetime:
    # Naive UTC, matching what SQLite hands back
    return datetime.datetime.now(datetime.UTC).replace(tzinfo=None)


class VocabularyItem(Base):
    __tablename__ = "vocabulary_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    term: Mapped[str] = mapped_column(String, nullable=False)
    reading: Mapped[Optional[str]] = mapped_column(String)
    meaning_en: Mapped[Optional[str]] = mapped_column(Text)
    meaning_vi: Mapped[Optional[str]] = mapped_column(Text)
    example_jp: Mapped[Optional[str]] = mapped_column(Text)
    example_en: Mapped[Optional[str]] = mapped_column(Text)
    section: Mapped[str] = mapped_column(String, nullable=False, default="word")  # kanji, word, phrase
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=_utcnow)


class GrammarItem(Base):
    __tablename__ = "grammar_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pattern: Mapped[str] = mapped_column(String, nullable=False)
    reading: Mapped[Optional[str]] = mapped_column(String)
    meaning_en: Mapped[Optional[str]] = mapped_column(Text)
    meaning_vi: Mapped[Optional[str]] = mapped_column(Text)
    description: Mapped[Optional[str]] = mapped_column(Text)
    example: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=_utcnow)


class ReviewState(Base):
    """Spaced-repetition state for one user and one learning item."""
    __tablename__ = "review_states"
    __table_args__ = (UniqueConstraint("user", "item_type", "item_id", name="uq_review_state_item"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user: Mapped[str] = mapped_column(String, nullable=False)
    item_type: Mapped[str] = mapped_column(String, nullable=False)  # vocab, grammar
    item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    interval: Mapped[int] = mapped_column(Integer, default=scheduler.DEFAULT_INTERVAL)
    ease_factor: Mapped[float] = mapped_column(Float, default=scheduler.DEFAULT_EASE_FACTOR)
    correct_count: Mapped[int] = mapped_column(Integer, default=0)
    incorrect_count: Mapped[int] = mapped_column(Integer, default=0)
    mastery_level: Mapped[str] = mapped_column(String, default=MasteryLevel.NEW.value)
    next_review: Mapped[datetime.date] = mapped_column(Date, default=utc_today)
    last_reviewed: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)


class ActivityLog(Base):
    __tablename__ = "activity_log"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user: Mapped[str] = mapped_column(String, nullable=False)
    activity_type: Mapped[str] = mapped_column(String, nullable=False)
    item_id: Mapped[Optional[int]] = mapped_column(Integer)
    item_type: Mapped[Optional[str]] = mapped_column(String)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    session_id: Mapped[str] = mapped_column(String, nullable=False)
    response_time_ms: Mapped[Optional[int]] = mapped_column(Integer)
    confidence_level: Mapped[Optional[int]] = mapped_column(Integer)
    timestamp: Mapped[datetime.datetime] = mapped_column(DateTime, default=_utcnow)


class UserVocabulary(Base):
    __tablename__ = "user_vocabulary"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user: Mapped[str] = mapped_column(String, nullable=False)
    term: Mapped[str] = mapped_column(String, nullable=False)
    reading: Mapped[str] = mapped_column(String, nullable=False)
    meaning_en: Mapped[str] = mapped_column(Text, nullable=False)
    meaning_vi: Mapped[Optional[str]] = mapped_column(Text)
    example_jp: Mapped[str] = mapped_column(Text, nullable=False)
    example_en: Mapped[Optional[str]] = mapped_column(Text)
    example_vi: Mapped[Optional[str]] = mapped_column(Text)
    tags: Mapped[List[str]] = mapped_column(JSON, default=list)
    source: Mapped[Optional[str]] = mapped_column(String)
    is_public: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=_utcnow)


class UserGrammar(Base):
    __tablename__ = "user_grammar"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user: Mapped[str] = mapped_column(String, nullable=False)
    pattern: Mapped[str] = mapped_column(String, nullable=False)
    reading: Mapped[str] = mapped_column(String, nullable=False)
    meaning_en: Mapped[str] = mapped_column(Text, nullable=False)
    meaning_vi: Mapped[Optional[str]] = mapped_column(Text)
    example_jp: Mapped[str] = mapped_column(Text, nullable=False)
    example_en: Mapped[Optional[str]] = mapped_column(Text)
    example_vi: Mapped[Optional[str]] = mapped_column(Text)
    usage_notes: Mapped[Optional[str]] = mapped_column(Text)
    tags: Mapped[List[str]] = mapped_column(JSON, default=list)
    difficulty_level: Mapped[str] = mapped_column(String, default="intermediate")
    is_public: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=_utcnow)


class PracticeList(Base):
    __tablename__ = "practice_lists"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)
    items: Mapped[List["PracticeListItem"]] = relationship(
        back_populates="practice_list", cascade="all, delete-orphan"
    )


class PracticeListItem(Base):
    __tablename__ = "practice_list_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    practice_list_id: Mapped[int] = mapped_column(ForeignKey("practice_lists.id", ondelete="CASCADE"), nullable=False)
    item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    item_type: Mapped[str] = mapped_column(String, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=1)
    added_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=_utcnow)
    practice_list: Mapped[PracticeList] = relationship(back_populates="items")


class Question(Base):
    """Multiple-choice question. `user` is NULL for the shared quiz bank."""
    __tablename__ = "questions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user: Mapped[Optional[str]] = mapped_column(String)
    item_type: Mapped[str] = mapped_column(String, nullable=False)
    item_id: Mapped[Optional[int]] = mapped_column(Integer)
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    options: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    answer_index: Mapped[int] = mapped_column(Integer, nullable=False)
    explanation: Mapped[Optional[str]] = mapped_column(Text)
    difficulty_level: Mapped[Optional[str]] = mapped_column(String)
    ai_model: Mapped[Optional[str]] = mapped_column(String)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=_utcnow)


class PracticeTest(Base):
    """A personalized test assembled from the shared quiz bank."""
    __tablename__ = "practice_tests"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user: Mapped[str] = mapped_column(String, nullable=False)
    test_name: Mapped[str] = mapped_column(String, nullable=False)
    test_type: Mapped[str] = mapped_column(String, default="practice_test")
    difficulty_level: Mapped[str] = mapped_column(String, default="mixed")
    total_questions: Mapped[int] = mapped_column(Integer, default=0)
    estimated_time_minutes: Mapped[int] = mapped_column(Integer, default=0)
    focus_areas: Mapped[List[str]] = mapped_column(JSON, default=list)
    ai_analysis: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=_utcnow)
    started_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)
    score: Mapped[Optional[float]] = mapped_column(Float)
    time_taken_ms: Mapped[Optional[int]] = mapped_column(Integer)
    test_results: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    questions: Mapped[List["PracticeTestQuestion"]] = relationship(
        back_populates="test", cascade="all, delete-orphan",
        order_by="PracticeTestQuestion.question_order",
    )


class PracticeTestQuestion(Base):
    __tablename__ = "practice_test_questions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    test_id: Mapped[int] = mapped_column(ForeignKey("practice_tests.id", ondelete="CASCADE"), nullable=False)
    question_id: Mapped[int] = mapped_column(Integer, nullable=False)
    question_type: Mapped[str] = mapped_column(String, nullable=False)  # vocab, grammar
    question_order: Mapped[int] = mapped_column(Integer, nullable=False)
    correct_answer: Mapped[int] = mapped_column(Integer, nullable=False)
    test: Mapped[PracticeTest] = relationship(back_populates="questions")


class MissingQuestion(Base):
    """Queue entry for an item that has no quiz-bank question yet."""
    __tablename__ = "missing_questions_queue"
    __table_args__ = (UniqueConstraint("user", "item_type", "item_id", name="uq_missing_question_item"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user: Mapped[str] = mapped_column(String, nullable=False)
    item_type: Mapped[str] = mapped_column(String, nullable=False)
    item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=3)
    status: Mapped[str] = mapped_column(String, default="pending")  # pending, generating, completed, failed
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    question_id: Mapped[Optional[int]] = mapped_column(Integer)
    requested_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=_utcnow)
    generated_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)


class SectionTip(Base):
    __tablename__ = "section_tips"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    section: Mapped[str] = mapped_column(String, nullable=False)  # vocabulary, reading, listening
    tip_text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=_utcnow)


_ITEM_MODELS: Dict[str, Type[Base]] = {"vocab": VocabularyItem, "grammar": GrammarItem}


def is_db_initialized() -> bool:
    """Check if the database is already initialized by checking if tables exist."""
    inspector = inspect(engine)
    table_names = inspector.get_table_names()
    required_tables = {'vocabulary_items', 'grammar_items', 'review_states', 'activity_log'}
    return required_tables.issubset(set(table_names))


def init_db() -> None:
    """Initialize the database by creating all tables."""
    Base.metadata.create_all(bind=engine)


def get_session() -> Session:
    return SessionLocal()


__all__ = [
    "get_session", "init_db", "is_db_initialized", "to_dict",
    "add_vocabulary_item", "add_grammar_item", "add_question", "list_items", "delete_item",
    "delete_user_data", "parse_quality", "get_review_state", "record_review",
    "get_flashcards", "get_quiz_questions", "log_activity", "get_activities",
    "create_user_vocabulary", "list_user_vocabulary", "update_user_vocabulary", "delete_user_vocabulary",
    "create_user_grammar", "list_user_grammar", "update_user_grammar", "delete_user_grammar",
    "create_practice_list", "list_practice_lists", "get_practice_list",
    "update_practice_list", "delete_practice_list",
    "save_generated_questions", "get_generated_questions",
    "get_weak_items", "get_recent_items", "get_mistake_items", "get_progress_summary",
    "get_recent_review_activity", "get_dashboard_stats", "get_analytics_data",
    "get_item", "validate_test_options", "create_personalized_test", "list_personalized_tests",
    "get_personalized_test", "start_personalized_test", "get_test_questions", "complete_personalized_test",
    "enqueue_missing_question", "list_missing_questions", "get_missing_question", "update_missing_question",
    "add_section_tip", "list_section_tips",
    "get_latest_activity", "get_latest_focus_areas", "get_chat_context", "get_chat_history",
]


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def to_dict(row: Base) -> Dict[str, Any]:
    """Serialize a mapped row to a JSON-friendly dict."""
    data: Dict[str, Any] = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if isinstance(value, (datetime.date, datetime.datetime)):
            value = value.isoformat()
        data[column.key] = value
    return data


def _check_item_type(item_type: Any) -> str:
    if item_type not in ITEM_TYPES:
        raise ValidationError('item_type must be either "vocab" or "grammar"')
    return item_type


def _coerce_id(value: Any, field: str = "item_id") -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer") from None


def _item_label(item: Base) -> str:
    if isinstance(item, VocabularyItem):
        return item.term
    if isinstance(item, GrammarItem):
        return item.pattern
    return ""


def _item_summary(item_type: str, item: Base) -> Dict[str, Any]:
    return {
        "id": item.id,
        "term": _item_label(item),
        "reading": item.reading or "",
        "meaning_en": item.meaning_en or "",
        "type": item_type,
    }


def _items_by_id(session: Session, item_type: str, ids: Iterable[int]) -> Dict[int, Base]:
    id_list = list(set(ids))
    if not id_list:
        return {}
    model = _ITEM_MODELS[item_type]
    return {row.id: row for row in session.query(model).filter(model.id.in_(id_list)).all()}


def _review_state_map(session: Session, user: str, item_type: str) -> Dict[int, ReviewState]:
    rows = (
        session.query(ReviewState)
        .filter(ReviewState.user == user, ReviewState.item_type == item_type)
        .all()
    )
    return {row.item_id: row for row in rows}


def _matches_filter(state: Optional[ReviewState], filter_: str, today: datetime.date) -> bool:
    if filter_ == "new":
        return state is None
    if filter_ == "due":
        if state is None:
            return True
        return state.next_review <= today and state.mastery_level != MasteryLevel.MASTERED.value
    if filter_ == "mastered":
        return state is not None and state.mastery_level == MasteryLevel.MASTERED.value
    return True


# ----------------------------------------------------------------------
# Study items (shared bank)
# ----------------------------------------------------------------------
def add_vocabulary_item(session: Session, term: str, reading: str = "", meaning_en: str = "",
                        section: str = "word", **extra: Any) -> VocabularyItem:
    if section not in VOCAB_SECTIONS:
        raise ValidationError(f"section must be one of {', '.join(VOCAB_SECTIONS)}")
    item = VocabularyItem(term=term, reading=reading, meaning_en=meaning_en, section=section, **extra)
    session.add(item)
    session.commit()
    return item


def add_grammar_item(session: Session, pattern: str, reading: str = "", meaning_en: str = "",
                     **extra: Any) -> GrammarItem:
    item = GrammarItem(pattern=pattern, reading=reading, meaning_en=meaning_en, **extra)
    session.add(item)
    session.commit()
    return item


def add_question(session: Session, item_type: str, item_id: Optional[int], question_text: str,
                 options: List[str], answer_index: int, explanation: str = "",
                 difficulty_level: str = "medium") -> Question:
    """Add a question to the shared quiz bank."""
    _check_item_type(item_type)
    question = Question(
        user=None, item_type=item_type, item_id=item_id, question_text=question_text,
        options=list(options), answer_index=answer_index, explanation=explanation,
        difficulty_level=difficulty_level,
    )
    session.add(question)
    session.commit()
    return question


def list_items(session: Session, section: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Newest items of a section: kanji, word, phrase or grammar."""
    if section in VOCAB_SECTIONS:
        rows = (
            session.query(VocabularyItem)
            .filter(VocabularyItem.section == section)
            .order_by(VocabularyItem.created_at.desc(), VocabularyItem.id.desc())
            .limit(limit)
            .all()
        )
    elif section == "grammar":
        rows = (
            session.query(GrammarItem)
            .order_by(GrammarItem.created_at.desc(), GrammarItem.id.desc())
            .limit(limit)
            .all()
        )
    else:
        raise ValidationError("Invalid section")
    return [to_dict(r) for r in rows]


def get_item(session: Session, item_type: str, item_id: Any) -> Base:
    _check_item_type(item_type)
    item_id = _coerce_id(item_id)
    item = session.get(_ITEM_MODELS[item_type], item_id)
    if item is None:
        raise NotFoundError(f"{item_type} item {item_id} not found")
    return item


def delete_item(session: Session, item_type: str, item_id: int) -> None:
    """Delete an item together with every review state and list entry pointing at it."""
    _check_item_type(item_type)
    item = session.get(_ITEM_MODELS[item_type], item_id)
    if item is None:
        raise NotFoundError(f"{item_type} item {item_id} not found")
    (session.query(ReviewState)
     .filter(ReviewState.item_type == item_type, ReviewState.item_id == item_id)
     .delete(synchronize_session=False))
    (session.query(PracticeListItem)
     .filter(PracticeListItem.item_type == item_type, PracticeListItem.item_id == item_id)
     .delete(synchronize_session=False))
    bank_ids = [
        q.id for q in session.query(Question)
        .filter(Question.user.is_(None), Question.item_type == item_type, Question.item_id == item_id)
    ]
    if bank_ids:
        (session.query(PracticeTestQuestion)
         .filter(PracticeTestQuestion.question_id.in_(bank_ids))
         .delete(synchronize_session=False))
        session.query(Question).filter(Question.id.in_(bank_ids)).delete(synchronize_session=False)
    (session.query(MissingQuestion)
     .filter(MissingQuestion.item_type == item_type, MissingQuestion.item_id == item_id)
     .delete(synchronize_session=False))
    session.delete(item)
    session.commit()
    logger.info("Deleted %s item %s and its review history", item_type, item_id)


def delete_user_data(session: Session, user: str) -> None:
    """Remove every row owned by a user."""
    for model in (ReviewState, ActivityLog, UserVocabulary, UserGrammar, Question, MissingQuestion):
        session.query(model).filter(model.user == user).delete(synchronize_session=False)
    for owned in (PracticeList, PracticeTest):
        for row in session.query(owned).filter(owned.user == user).all():
            session.delete(row)
    session.commit()
    logger.info("Deleted all study data for user %s", user)


# ----------------------------------------------------------------------
# Reviews
# ----------------------------------------------------------------------
_QUALITY_DIGITS = re.compile(r"[0-9]+")


def parse_quality(outcome: Any) -> int:
    """Validate a review outcome: a known/unknown boolean or a 0-5 quality grade."""
    if isinstance(outcome, bool):
        return scheduler.quality_from_known(outcome)
    if isinstance(outcome, int):
        quality = outcome
    elif isinstance(outcome, str) and _QUALITY_DIGITS.fullmatch(outcome.strip()):
        quality = int(outcome.strip())
    else:
        raise ValidationError("outcome must be a boolean or an integer quality between 0 and 5")
    if not 0 <= quality <= 5:
        raise ValidationError("quality must be between 0 and 5")
    return quality


def get_review_state(session: Session, user: str, item_type: str, item_id: int) -> Optional[ReviewState]:
    return (
        session.query(ReviewState)
        .filter_by(user=user, item_type=item_type, item_id=item_id)
        .one_or_none()
    )


def record_review(
    session: Session,
    user: str,
    item_type: str,
    item_id: Any,
    outcome: Any,
    mark_mastered: bool = False,
    today: Optional[datetime.date] = None,
    policy: MasteryPolicy = DEFAULT_MASTERY_POLICY,
    commit: bool = True,
) -> ReviewState:
    """Apply one review event to the (user, item) review state.

    Every flow that changes review state (flashcards, quizzes) goes through
    here so interval, ease and mastery are computed one way.
    """
    _check_item_type(item_type)
    item_id = _coerce_id(item_id)
    quality = parse_quality(outcome)
    if session.get(_ITEM_MODELS[item_type], item_id) is None:
        raise NotFoundError(f"{item_type} item {item_id} not found")

    state = get_review_state(session, user, item_type, item_id)
    result = scheduler.apply_review(quality, prior=state, flagged=mark_mastered, today=today, policy=policy)

    if state is None:
        state = ReviewState(user=user, item_type=item_type, item_id=item_id)
        session.add(state)
    state.interval = result.interval
    state.ease_factor = result.ease_factor
    state.correct_count = result.correct_count
    state.incorrect_count = result.incorrect_count
    state.mastery_level = result.mastery_level.value
    state.next_review = result.next_review
    state.last_reviewed = _utcnow()

    if commit:
        session.commit()
    else:
        session.flush()
    logger.debug(
        "Review %s/%s for %s: q=%d interval=%d ease=%.2f mastery=%s",
        item_type, item_id, user, quality, result.interval, result.ease_factor, result.mastery_level.value,
    )
    return state


def get_flashcards(session: Session, user: str, section: str, filter_: str = "due",
                   limit: int = 20, today: Optional[datetime.date] = None) -> List[Dict[str, Any]]:
    """Items of a section with the user's review state attached under `progress`."""
    _check_item_type(section)
    if filter_ not in FLASHCARD_FILTERS:
        raise ValidationError(f"filter must be one of {', '.join(FLASHCARD_FILTERS)}")
    today = today or utc_today()
    model = _ITEM_MODELS[section]
    states = _review_state_map(session, user, section)

    cards: List[Dict[str, Any]] = []
    for item in session.query(model).order_by(model.id.asc()).all():
        state = states.get(item.id)
        if not _matches_filter(state, filter_, today):
            continue
        card = to_dict(item)
        card["progress"] = to_dict(state) if state else None
        cards.append(card)
        if len(cards) >= limit:
            break
    return cards


def get_quiz_questions(session: Session, user: str, section: str, filter_: str = "all",
                       limit: int = 20, today: Optional[datetime.date] = None) -> List[Dict[str, Any]]:
    """Quiz-bank questions for a section, filtered by the user's review state of their item."""
    _check_item_type(section)
    if filter_ not in QUESTION_FILTERS:
        raise ValidationError(f"filter must be one of {', '.join(QUESTION_FILTERS)}")
    today = today or utc_today()
    rows = (
        session.query(Question)
        .filter(Question.user.is_(None), Question.item_type == section)
        .order_by(Question.id.asc())
        .all()
    )
    states = _review_state_map(session, user, section)
    items = _items_by_id(session, section, (q.item_id for q in rows if q.item_id is not None))

    questions: List[Dict[str, Any]] = []
    for q in rows:
        if not _matches_filter(states.get(q.item_id), filter_, today):
            continue
        entry = to_dict(q)
        item = items.get(q.item_id)
        entry["item"] = to_dict(item) if item else None
        questions.append(entry)
        if len(questions) >= limit:
            break
    return questions


# ----------------------------------------------------------------------
# Activity log
# ----------------------------------------------------------------------
def log_activity(
    session: Session,
    user: str,
    activity_type: str,
    item_id: Any = None,
    item_type: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    session_id: Optional[str] = None,
    response_time_ms: Optional[int] = None,
    confidence_level: Optional[int] = None,
    today: Optional[datetime.date] = None,
) -> Tuple[ActivityLog, Optional[ReviewState]]:
    """Record a study activity. Quiz answers and flashcard reviews also update review state."""
    if not activity_type:
        raise ValidationError("activity_type is required")
    details = dict(details or {})
    state: Optional[ReviewState] = None

    if activity_type in REVIEW_ACTIVITY_TYPES:
        if item_id is None or not item_type:
            raise ValidationError("item_id and item_type required for progress tracking")
        if "quality" in details:
            outcome = details["quality"]
        else:
            outcome = details.get("correct") is True
        state = record_review(
            session, user, item_type, item_id, outcome,
            mark_mastered=bool(details.get("mark_mastered")), today=today, commit=False,
        )
        quality = parse_quality(outcome)
        details["quality"] = quality
        details["correct"] = quality >= scheduler.PASSING_QUALITY

    activity = ActivityLog(
        user=user,
        activity_type=activity_type,
        item_id=_coerce_id(item_id) if item_id is not None else None,
        item_type=item_type,
        details=details,
        session_id=session_id or str(uuid.uuid4()),
        response_time_ms=response_time_ms,
        confidence_level=confidence_level,
    )
    session.add(activity)
    session.commit()
    return activity, state


def get_activities(session: Session, user: str, activity_type: Optional[str] = None,
                   item_type: Optional[str] = None, session_id: Optional[str] = None,
                   limit: int = 50) -> List[Dict[str, Any]]:
    query = session.query(ActivityLog).filter(ActivityLog.user == user)
    if activity_type:
        query = query.filter(ActivityLog.activity_type == activity_type)
    if item_type:
        query = query.filter(ActivityLog.item_type == item_type)
    if session_id:
        query = query.filter(ActivityLog.session_id == session_id)
    rows = query.order_by(ActivityLog.timestamp.desc(), ActivityLog.id.desc()).limit(limit).all()
    return [to_dict(r) for r in rows]


# ----------------------------------------------------------------------
# User-authored vocabulary and grammar
# ----------------------------------------------------------------------
_USER_CONTENT: Dict[str, Tuple[Type[Base], Tuple[str, ...], str]] = {
    "vocab": (UserVocabulary, ("term", "reading", "meaning_en", "example_jp"), "add_vocab"),
    "grammar": (UserGrammar, ("pattern", "reading", "meaning_en", "example_jp"), "add_grammar"),
}
_READONLY_FIELDS = {"id", "user", "created_at"}


def _editable_fields(model: Type[Base]) -> set[str]:
    return {c.key for c in model.__table__.columns} - _READONLY_FIELDS


def _create_user_content(session: Session, user: str, kind: str, data: Dict[str, Any]) -> Base:
    model, required, activity_type = _USER_CONTENT[kind]
    missing = [f for f in required if not data.get(f)]
    if missing:
        raise ValidationError(f"{', '.join(required)} are required")
    fields = {k: v for k, v in data.items() if k in _editable_fields(model)}
    fields["tags"] = list(fields.get("tags") or [])
    entry = model(user=user, **fields)
    session.add(entry)
    session.flush()

    label_field = required[0]
    details = {label_field: data[label_field], "reading": data["reading"],
               "meaning_en": data["meaning_en"], "source": data.get("source") or "user_input"}
    session.add(ActivityLog(user=user, activity_type=activity_type, item_id=entry.id,
                            item_type=kind, details=details, session_id=str(uuid.uuid4())))
    session.commit()
    return entry


def _list_user_content(session: Session, user: str, kind: str, include_public: bool = False,
                       tags: Optional[List[str]] = None, search: Optional[str] = None,
                       limit: int = 50) -> List[Dict[str, Any]]:
    model, required, _ = _USER_CONTENT[kind]
    label_column = getattr(model, required[0])
    query = session.query(model)
    if include_public:
        query = query.filter(or_(model.user == user, model.is_public.is_(True)))
    else:
        query = query.filter(model.user == user)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(label_column.ilike(pattern), model.reading.ilike(pattern),
                                 model.meaning_en.ilike(pattern)))
    rows = query.order_by(model.created_at.desc(), model.id.desc()).all()
    if tags:
        wanted = set(tags)
        rows = [r for r in rows if wanted.intersection(r.tags or [])]
    return [to_dict(r) for r in rows[:limit]]


def _owned_user_content(session: Session, user: str, kind: str, entry_id: Any) -> Base:
    model = _USER_CONTENT[kind][0]
    entry = session.get(model, _coerce_id(entry_id, "id"))
    if entry is None or entry.user != user:
        label = "Vocabulary" if kind == "vocab" else "Grammar"
        raise NotFoundError(f"{label} entry not found or not owned by user")
    return entry


def _update_user_content(session: Session, user: str, kind: str, entry_id: Any,
                         data: Dict[str, Any]) -> Base:
    entry = _owned_user_content(session, user, kind, entry_id)
    required = _USER_CONTENT[kind][1]
    if any(key in data and not data[key] for key in required):
        raise ValidationError(f"{', '.join(required)} cannot be empty")
    editable = _editable_fields(_USER_CONTENT[kind][0])
    for key, value in data.items():
        if key in editable:
            setattr(entry, key, value)
    session.commit()
    return entry


def _delete_user_content(session: Session, user: str, kind: str, entry_id: Any) -> None:
    entry = _owned_user_content(session, user, kind, entry_id)
    session.delete(entry)
    session.commit()


def create_user_vocabulary(session: Session, user: str, data: Dict[str, Any]) -> UserVocabulary:
    return _create_user_content(session, user, "vocab", data)  # type: ignore[return-value]


def list_user_vocabulary(session: Session, user: str, **filters: Any) -> List[Dict[str, Any]]:
    return _list_user_content(session, user, "vocab", **filters)


def update_user_vocabulary(session: Session, user: str, entry_id: Any, data: Dict[str, Any]) -> UserVocabulary:
    return _update_user_content(session, user, "vocab", entry_id, data)  # type: ignore[return-value]


def delete_user_vocabulary(session: Session, user: str, entry_id: Any) -> None:
    _delete_user_content(session, user, "vocab", entry_id)


def create_user_grammar(session: Session, user: str, data: Dict[str, Any]) -> UserGrammar:
    return _create_user_content(session, user, "grammar", data)  # type: ignore[return-value]


def list_user_grammar(session: Session, user: str, **filters: Any) -> List[Dict[str, Any]]:
    return _list_user_content(session, user, "grammar", **filters)


def update_user_grammar(session: Session, user: str, entry_id: Any, data: Dict[str, Any]) -> UserGrammar:
    return _update_user_content(session, user, "grammar", entry_id, data)  # type: ignore[return-value]


def delete_user_grammar(session: Session, user: str, entry_id: Any) -> None:
    _delete_user_content(session, user, "grammar", entry_id)


# ----------------------------------------------------------------------
# Practice lists
# ----------------------------------------------------------------------
def _build_list_item(payload: Any) -> PracticeListItem:
    if not isinstance(payload, dict):
        raise ValidationError("Each list item must be an object with item_id and item_type")
    return PracticeListItem(
        item_id=_coerce_id(payload.get("item_id")),
        item_type=_check_item_type(payload.get("item_type")),
        priority=_coerce_id(payload.get("priority") or 1, "priority"),
    )


def _owned_list(session: Session, user: str, list_id: Any) -> PracticeList:
    practice_list = session.get(PracticeList, _coerce_id(list_id, "list_id"))
    if practice_list is None or practice_list.user != user:
        raise NotFoundError("Practice list not found")
    return practice_list


def create_practice_list(session: Session, user: str, name: Any, description: Optional[str] = None,
                         items: Optional[List[Dict[str, Any]]] = None) -> PracticeList:
    if not name or not isinstance(name, str):
        raise ValidationError("Name is required")
    practice_list = PracticeList(user=user, name=name, description=description or None)
    for payload in items or []:
        practice_list.items.append(_build_list_item(payload))
    session.add(practice_list)
    session.commit()
    return practice_list


def list_practice_lists(session: Session, user: str) -> List[Dict[str, Any]]:
    rows = (
        session.query(PracticeList)
        .filter(PracticeList.user == user)
        .order_by(PracticeList.updated_at.desc(), PracticeList.id.desc())
        .all()
    )
    result = []
    for row in rows:
        entry = to_dict(row)
        entry["item_count"] = len(row.items)
        result.append(entry)
    return result


def get_practice_list(session: Session, user: str, list_id: Any, include_items: bool = False) -> Dict[str, Any]:
    practice_list = _owned_list(session, user, list_id)
    result = to_dict(practice_list)
    result["item_count"] = len(practice_list.items)
    if include_items:
        ordered = sorted(practice_list.items, key=lambda i: (-i.priority, i.added_at, i.id))
        lookups = {
            item_type: _items_by_id(session, item_type, (i.item_id for i in ordered if i.item_type == item_type))
            for item_type in ITEM_TYPES
        }
        entries = []
        for list_item in ordered:
            entry = to_dict(list_item)
            item = lookups[list_item.item_type].get(list_item.item_id)
            entry["item"] = to_dict(item) if item else None
            entries.append(entry)
        result["items"] = entries
    return result


def update_practice_list(session: Session, user: str, list_id: Any, name: Optional[str] = None,
                         description: Optional[str] = None, is_active: Optional[bool] = None,
                         add_items: Optional[List[Dict[str, Any]]] = None,
                         remove_items: Optional[List[Dict[str, Any]]] = None) -> PracticeList:
    practice_list = _owned_list(session, user, list_id)
    if name:
        practice_list.name = name
    if description is not None:
        practice_list.description = description
    if is_active is not None:
        practice_list.is_active = bool(is_active)
    for payload in add_items or []:
        practice_list.items.append(_build_list_item(payload))
    for payload in remove_items or []:
        item_id = _coerce_id(payload.get("item_id"))
        item_type = payload.get("item_type")
        for list_item in list(practice_list.items):
            if list_item.item_id == item_id and list_item.item_type == item_type:
                practice_list.items.remove(list_item)
    practice_list.updated_at = _utcnow()
    session.commit()
    return practice_list


def delete_practice_list(session: Session, user: str, list_id: Any) -> None:
    practice_list = _owned_list(session, user, list_id)
    session.delete(practice_list)
    session.commit()


# ----------------------------------------------------------------------
# Generated questions
# ----------------------------------------------------------------------
def save_generated_questions(session: Session, user: str, item_type: str, questions: List[Dict[str, Any]],
                             item_ids: Optional[List[Optional[int]]] = None, difficulty: str = "medium",
                             ai_model: Optional[str] = None) -> List[Question]:
    _check_item_type(item_type)
    item_ids = item_ids or []
    rows: List[Question] = []
    for index, q in enumerate(questions):
        row = Question(
            user=user,
            item_type=item_type,
            item_id=item_ids[index] if index < len(item_ids) else None,
            question_text=q["question_text"],
            options=list(q["options"]),
            answer_index=int(q["answer_index"]),
            explanation=q.get("explanation"),
            difficulty_level=q.get("difficulty_level") or difficulty,
            ai_model=ai_model,
        )
        session.add(row)
        rows.append(row)
    session.commit()
    return rows


def get_generated_questions(session: Session, user: str, item_type: Optional[str] = None,
                            difficulty: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
    query = session.query(Question).filter(Question.user == user)
    if item_type:
        query = query.filter(Question.item_type == item_type)
    if difficulty:
        query = query.filter(Question.difficulty_level == difficulty)
    rows = query.order_by(Question.created_at.desc(), Question.id.desc()).limit(limit).all()
    return [to_dict(r) for r in rows]


# ----------------------------------------------------------------------
# Targeting data for generated content
# ----------------------------------------------------------------------
def get_weak_items(session: Session, user: str, item_type: str, limit: int = 20) -> List[Dict[str, Any]]:
    """Items the user is still learning, hardest (lowest ease) first."""
    _check_item_type(item_type)
    states = (
        session.query(ReviewState)
        .filter(ReviewState.user == user, ReviewState.item_type == item_type,
                ReviewState.mastery_level.in_([MasteryLevel.NEW.value, MasteryLevel.LEARNING.value]))
        .order_by(ReviewState.ease_factor.asc(), ReviewState.incorrect_count.desc())
        .limit(limit)
        .all()
    )
    items = _items_by_id(session, item_type, (s.item_id for s in states))
    return [_item_summary(item_type, items[s.item_id]) for s in states if s.item_id in items]


def get_recent_items(session: Session, item_type: str, limit: int = 10) -> List[Dict[str, Any]]:
    _check_item_type(item_type)
    model = _ITEM_MODELS[item_type]
    rows = session.query(model).order_by(model.created_at.desc(), model.id.desc()).limit(limit).all()
    return [_item_summary(item_type, r) for r in rows]


def get_mistake_items(session: Session, user: str, min_incorrect: int = 2, limit: int = 8) -> List[Dict[str, Any]]:
    """Items missed more than `min_incorrect` times, most-missed first."""
    states = (
        session.query(ReviewState)
        .filter(ReviewState.user == user, ReviewState.incorrect_count > min_incorrect)
        .order_by(ReviewState.incorrect_count.desc())
        .all()
    )
    result = []
    for item_type in ITEM_TYPES:
        typed = [s for s in states if s.item_type == item_type]
        items = _items_by_id(session, item_type, (s.item_id for s in typed))
        for s in typed:
            item = items.get(s.item_id)
            if item is None:
                continue
            entry = _item_summary(item_type, item)
            entry["meaning"] = entry.pop("meaning_en")
            entry["mistake_count"] = s.incorrect_count
            result.append(entry)
    result.sort(key=lambda e: e["mistake_count"], reverse=True)
    return result[:limit]


def get_progress_summary(session: Session, user: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Per-item review counts with accuracy, least accurate first."""
    states = session.query(ReviewState).filter(ReviewState.user == user).all()
    labels: Dict[Tuple[str, int], str] = {}
    for item_type in ITEM_TYPES:
        items = _items_by_id(session, item_type, (s.item_id for s in states if s.item_type == item_type))
        labels.update({(item_type, i): _item_label(row) for i, row in items.items()})

    summary = []
    for s in states:
        attempts = s.correct_count + s.incorrect_count
        summary.append({
            "item_type": s.item_type,
            "item_id": s.item_id,
            "item_term": labels.get((s.item_type, s.item_id), "Unknown"),
            "correct_count": s.correct_count,
            "incorrect_count": s.incorrect_count,
            "mastery_level": s.mastery_level,
            "accuracy": s.correct_count / max(1, attempts),
        })
    summary.sort(key=lambda e: e["accuracy"])
    return summary[:limit]


def get_recent_review_activity(session: Session, user: str, days_back: int = 30,
                               limit: int = 100) -> List[Dict[str, Any]]:
    start = _utcnow() - datetime.timedelta(days=days_back)
    rows = (
        session.query(ActivityLog)
        .filter(ActivityLog.user == user,
                ActivityLog.activity_type.in_(REVIEW_ACTIVITY_TYPES),
                ActivityLog.timestamp >= start)
        .order_by(ActivityLog.timestamp.desc())
        .limit(limit)
        .all()
    )
    labels: Dict[Tuple[str, int], str] = {}
    for item_type in ITEM_TYPES:
        items = _items_by_id(session, item_type,
                             (r.item_id for r in rows if r.item_type == item_type and r.item_id is not None))
        labels.update({(item_type, i): _item_label(row) for i, row in items.items()})
    return [
        {
            "item_type": r.item_type,
            "correct": (r.details or {}).get("correct") is True,
            "item_term": labels.get((r.item_type, r.item_id), "Unknown"),
            "timestamp": r.timestamp.isoformat(),
        }
        for r in rows
    ]


# ----------------------------------------------------------------------
# Progress analytics
# ----------------------------------------------------------------------
def _review_days(session: Session, user: str, since: datetime.date) -> Dict[datetime.date, List[ActivityLog]]:
    start = datetime.datetime.combine(since, datetime.time.min)
    rows = (
        session.query(ActivityLog)
        .filter(ActivityLog.user == user,
                ActivityLog.activity_type.in_(REVIEW_ACTIVITY_TYPES),
                ActivityLog.timestamp >= start)
        .all()
    )
    days: Dict[datetime.date, List[ActivityLog]] = {}
    for row in rows:
        days.setdefault(row.timestamp.date(), []).append(row)
    return days


def _current_streak(studied_dates: set[datetime.date], today: datetime.date, cap: Optional[int] = None) -> int:
    # A streak may start today or yesterday
    streak = 0
    check = today
    if check not in studied_dates:
        check = today - datetime.timedelta(days=1)
    while check in studied_dates:
        streak += 1
        if cap is not None and streak >= cap:
            break
        check -= datetime.timedelta(days=1)
    return streak


def _count_states(session: Session, user: str, item_type: str, *criteria: Any) -> int:
    return (
        session.query(func.count(ReviewState.id))
        .filter(ReviewState.user == user, ReviewState.item_type == item_type, *criteria)
        .scalar() or 0
    )


def get_dashboard_stats(session: Session, user: str, today: Optional[datetime.date] = None) -> Dict[str, Any]:
    """Headline numbers for the dashboard."""
    today = today or utc_today()
    not_mastered = ReviewState.mastery_level != MasteryLevel.MASTERED.value
    is_mastered = ReviewState.mastery_level == MasteryLevel.MASTERED.value
    due = ReviewState.next_review <= today

    days = _review_days(session, user, today - datetime.timedelta(days=30))
    week_start = today - datetime.timedelta(days=7)
    weekly = [a for d, acts in days.items() if d >= week_start for a in acts]
    answered = [a for a in weekly if isinstance((a.details or {}).get("correct"), bool)]
    correct = sum(1 for a in answered if a.details["correct"])
    weekly_accuracy = (correct / len(answered) * 100) if answered else 0

    return {
        "vocab_due": _count_states(session, user, "vocab", due, not_mastered),
        "grammar_due": _count_states(session, user, "grammar", due, not_mastered),
        "vocab_mastered": _count_states(session, user, "vocab", is_mastered),
        "grammar_mastered": _count_states(session, user, "grammar", is_mastered),
        "streak_days": _current_streak(set(days), today, cap=30),
        "total_studied_today": len(days.get(today, [])),
        "weekly_studied": len(weekly),
        "weekly_accuracy": round(weekly_accuracy),
    }


def get_analytics_data(session: Session, user: str, today: Optional[datetime.date] = None) -> Dict[str, Any]:
    """Compute analytics for the progress page.

    Returns a dict with keys:
        streak            – {current, longest}
        heatmap           – [{date, count}, …] for last 90 days
        mastery           – {new, learning, review, mastered}
        mastery_by_type   – [{type, new, learning, review, mastered}, …]
        forecast          – [{date, count}, …] for today and the next 14 days
        weakest           – [{item_type, item_id, label, ease_factor, interval, next_review}, …]
        averages          – {avg_ease, avg_interval, mastered_count}
    """
    today = today or utc_today()
    result: Dict[str, Any] = {}

    # ── Streak ────────────────────────────────────────────────────────
    all_days = _review_days(session, user, datetime.date.min)
    studied_dates = set(all_days)
    longest_streak = 0
    if studied_dates:
        sorted_dates = sorted(studied_dates)
        run = 1
        for i in range(1, len(sorted_dates)):
            if sorted_dates[i] - sorted_dates[i - 1] == datetime.timedelta(days=1):
                run += 1
            else:
                longest_streak = max(longest_streak, run)
                run = 1
        longest_streak = max(longest_streak, run)
    result["streak"] = {"current": _current_streak(studied_dates, today), "longest": longest_streak}

    # ── Heatmap (last 90 days) ────────────────────────────────────────
    heatmap_start = today - datetime.timedelta(days=89)
    result["heatmap"] = [
        {"date": d.isoformat(), "count": len(all_days.get(d, []))}
        for d in (heatmap_start + datetime.timedelta(days=offset) for offset in range(90))
    ]

    # ── Mastery distribution ──────────────────────────────────────────
    states = session.query(ReviewState).filter(ReviewState.user == user).all()
    levels = [level.value for level in MasteryLevel]
    mastery = {level: 0 for level in levels}
    by_type: Dict[str, Dict[str, int]] = {}
    for s in states:
        mastery[s.mastery_level] = mastery.get(s.mastery_level, 0) + 1
        bucket = by_type.setdefault(s.item_type, {level: 0 for level in levels})
        bucket[s.mastery_level] = bucket.get(s.mastery_level, 0) + 1
    result["mastery"] = mastery
    result["mastery_by_type"] = [{"type": k, **v} for k, v in sorted(by_type.items())]

    # ── Review forecast (next 14 days) ────────────────────────────────
    forecast_map = {today + datetime.timedelta(days=offset): 0 for offset in range(15)}
    for s in states:
        if s.mastery_level == MasteryLevel.MASTERED.value:
            continue
        if s.next_review <= today:
            forecast_map[today] += 1
        elif s.next_review in forecast_map:
            forecast_map[s.next_review] += 1
    result["forecast"] = [{"date": d.isoformat(), "count": c} for d, c in sorted(forecast_map.items())]

    # ── Weakest items (lowest ease factor) ────────────────────────────
    weakest_states = sorted(states, key=lambda s: (s.ease_factor, -s.incorrect_count))[:10]
    labels: Dict[Tuple[str, int], str] = {}
    for item_type in ITEM_TYPES:
        items = _items_by_id(session, item_type, (s.item_id for s in weakest_states if s.item_type == item_type))
        labels.update({(item_type, i): _item_label(row) for i, row in items.items()})
    result["weakest"] = [
        {
            "item_type": s.item_type,
            "item_id": s.item_id,
            "label": labels.get((s.item_type, s.item_id), f"{s.item_type} #{s.item_id}"),
            "ease_factor": round(s.ease_factor, 2),
            "interval": s.interval,
            "next_review": s.next_review.isoformat(),
        }
        for s in weakest_states
    ]

    # ── Averages ──────────────────────────────────────────────────────
    if states:
        avg_ease = sum(s.ease_factor for s in states) / len(states)
        avg_interval = sum(s.interval for s in states) / len(states)
    else:
        avg_ease = avg_interval = 0.0
    result["averages"] = {
        "avg_ease": round(avg_ease, 2),
        "avg_interval": round(avg_interval, 1),
        "mastered_count": mastery[MasteryLevel.MASTERED.value],
    }
    return result


# ----------------------------------------------------------------------
# Personalized tests
# ----------------------------------------------------------------------
def validate_test_options(test_name: Any, question_count: Any, difficulty_level: Any) -> None:
    if not test_name or not isinstance(test_name, str):
        raise ValidationError("Test name is required")
    if isinstance(question_count, bool) or not isinstance(question_count, int):
        raise ValidationError("question_count must be an integer")
    if not 1 <= question_count <= MAX_TEST_QUESTIONS:
        raise ValidationError(f"question_count must be between 1 and {MAX_TEST_QUESTIONS}")
    if difficulty_level not in TEST_DIFFICULTIES:
        raise ValidationError(f"difficulty_level must be one of {', '.join(TEST_DIFFICULTIES)}")


def _accuracy(state: Optional[ReviewState]) -> float:
    # Unseen items sit between struggling and known ones
    if state is None:
        return 0.5
    attempts = state.correct_count + state.incorrect_count
    return state.correct_count / attempts if attempts else 0.5


def _bank_question_for(session: Session, item_type: str, item_id: int) -> Optional[Question]:
    return (
        session.query(Question)
        .filter(Question.user.is_(None), Question.item_type == item_type, Question.item_id == item_id)
        .order_by(Question.id.asc())
        .first()
    )


def _recommended_target(entry: Any) -> Optional[Tuple[str, int, int]]:
    if not isinstance(entry, dict):
        return None
    item_type = entry.get("item_type") or entry.get("type")
    if item_type not in ITEM_TYPES:
        return None
    try:
        item_id = _coerce_id(entry.get("item_id", entry.get("id")))
    except ValidationError:
        return None
    priority = entry.get("priority")
    if isinstance(priority, bool) or not isinstance(priority, int):
        priority = 3
    return item_type, item_id, priority


def _select_test_questions(session: Session, user: str, question_count: int,
                           recommended: List[Any], rng: random.Random) -> List[Question]:
    """Bank questions for recommended items first, then the user's least accurate items.

    Recommended items without a bank question are queued for generation.
    """
    chosen: List[Question] = []
    seen: set[int] = set()
    for entry in recommended[:question_count]:
        target = _recommended_target(entry)
        if target is None:
            logger.warning("Ignoring malformed recommended item: %r", entry)
            continue
        item_type, item_id, priority = target
        if session.get(_ITEM_MODELS[item_type], item_id) is None:
            continue
        question = _bank_question_for(session, item_type, item_id)
        if question is None:
            enqueue_missing_question(session, user, item_type, item_id, priority=priority, commit=False)
        elif question.id not in seen:
            chosen.append(question)
            seen.add(question.id)

    remaining = question_count - len(chosen)
    if remaining > 0:
        vocab_count = math.ceil(remaining / 2)
        for item_type, wanted in (("vocab", vocab_count), ("grammar", remaining - vocab_count)):
            if wanted <= 0:
                continue
            states = _review_state_map(session, user, item_type)
            candidates = [
                q for q in session.query(Question)
                .filter(Question.user.is_(None), Question.item_type == item_type)
                .order_by(Question.id.asc())
                if q.id not in seen
            ]
            candidates.sort(key=lambda q: _accuracy(states.get(q.item_id)))
            for question in candidates[:wanted]:
                chosen.append(question)
                seen.add(question.id)

    rng.shuffle(chosen)
    return chosen


def _test_dict(test: PracticeTest, include_questions: bool = False) -> Dict[str, Any]:
    result = to_dict(test)
    if include_questions:
        result["questions"] = [to_dict(q) for q in test.questions]
    return result


def create_personalized_test(
    session: Session,
    user: str,
    test_name: Any,
    question_count: Any = 20,
    test_type: str = "practice_test",
    difficulty_level: str = "mixed",
    focus_areas: Optional[List[str]] = None,
    analysis: Optional[Dict[str, Any]] = None,
    rng: Optional[random.Random] = None,
) -> PracticeTest:
    """Assemble a test from the quiz bank, guided by an analysis's recommended_items."""
    validate_test_options(test_name, question_count, difficulty_level)
    analysis = dict(analysis or {})
    recommended = analysis.get("recommended_items")
    if not isinstance(recommended, list):
        recommended = []

    questions = _select_test_questions(session, user, question_count, recommended, rng or random.Random())
    test = PracticeTest(
        user=user,
        test_name=test_name,
        test_type=test_type or "practice_test",
        difficulty_level=difficulty_level,
        total_questions=len(questions),
        estimated_time_minutes=math.ceil(len(questions) * 1.5),
        focus_areas=list(focus_areas or []),
        ai_analysis=analysis,
    )
    for order, question in enumerate(questions, start=1):
        test.questions.append(PracticeTestQuestion(
            question_id=question.id,
            question_type=question.item_type,
            question_order=order,
            correct_answer=question.answer_index,
        ))
    session.add(test)
    session.commit()
    logger.info("Created test %r for %s with %d of %d questions",
                test_name, user, len(questions), question_count)
    return test


def list_personalized_tests(session: Session, user: str) -> List[Dict[str, Any]]:
    rows = (
        session.query(PracticeTest)
        .filter(PracticeTest.user == user)
        .order_by(PracticeTest.created_at.desc(), PracticeTest.id.desc())
        .all()
    )
    return [_test_dict(r) for r in rows]


def _owned_test(session: Session, user: str, test_id: Any) -> PracticeTest:
    test = session.get(PracticeTest, _coerce_id(test_id, "test_id"))
    if test is None or test.user != user:
        raise NotFoundError("Test not found")
    return test


def get_personalized_test(session: Session, user: str, test_id: Any) -> Dict[str, Any]:
    return _test_dict(_owned_test(session, user, test_id), include_questions=True)


def start_personalized_test(session: Session, user: str, test_id: Any) -> PracticeTest:
    test = _owned_test(session, user, test_id)
    if test.completed_at is not None:
        raise ValidationError("Test has already been completed")
    test.started_at = _utcnow()
    session.commit()
    return test


def get_test_questions(session: Session, user: str, test_id: Any) -> Tuple[PracticeTest, List[Dict[str, Any]]]:
    """The test's questions in order, each with its study item attached under `item`."""
    test = _owned_test(session, user, test_id)
    rows = (
        session.query(PracticeTestQuestion)
        .filter(PracticeTestQuestion.test_id == test.id)
        .order_by(PracticeTestQuestion.question_order.asc())
        .all()
    )
    bank = {
        q.id: q for q in session.query(Question).filter(Question.id.in_([r.question_id for r in rows]))
    }
    questions: List[Dict[str, Any]] = []
    for test_question in rows:
        question = bank.get(test_question.question_id)
        if question is None:
            continue
        entry = to_dict(question)
        entry["question_order"] = test_question.question_order
        item = None
        if question.item_id is not None and question.item_type in _ITEM_MODELS:
            item = session.get(_ITEM_MODELS[question.item_type], question.item_id)
        entry["item"] = to_dict(item) if item else None
        questions.append(entry)
    if not questions:
        raise NotFoundError("No questions found for this test")
    return test, questions


def complete_personalized_test(session: Session, user: str, test_id: Any, score: Any,
                               time_taken_ms: Any = None,
                               quiz_results: Optional[List[Any]] = None) -> PracticeTest:
    test = _owned_test(session, user, test_id)
    if isinstance(score, bool) or not isinstance(score, (int, float)) or score < 0:
        raise ValidationError("score must be a non-negative number")
    if time_taken_ms is not None:
        time_taken_ms = _coerce_id(time_taken_ms, "time_taken_ms")
    test.completed_at = _utcnow()
    test.score = float(score)
    test.time_taken_ms = time_taken_ms
    test.test_results = {
        "quiz_results": list(quiz_results or []),
        "final_score": score,
        "completion_time": time_taken_ms,
    }
    session.commit()
    logger.info("Test %s completed by %s with score %s", test.id, user, score)
    return test


# ----------------------------------------------------------------------
# Missing-questions queue
# ----------------------------------------------------------------------
def enqueue_missing_question(session: Session, user: str, item_type: Any, item_id: Any,
                             priority: Any = 3, commit: bool = True) -> MissingQuestion:
    """Queue an item for question generation; re-queueing resets it to pending."""
    item = get_item(session, item_type, item_id)
    priority = _coerce_id(priority, "priority")
    entry = (
        session.query(MissingQuestion)
        .filter_by(user=user, item_type=item_type, item_id=item.id)
        .one_or_none()
    )
    if entry is None:
        entry = MissingQuestion(user=user, item_type=item_type, item_id=item.id, priority=priority)
        session.add(entry)
    else:
        entry.priority = priority
        entry.status = "pending"
        entry.error_message = None
    if commit:
        session.commit()
    else:
        session.flush()
    return entry


def list_missing_questions(session: Session, user: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
    query = session.query(MissingQuestion).filter(MissingQuestion.user == user)
    if status:
        if status not in QUEUE_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(QUEUE_STATUSES)}")
        query = query.filter(MissingQuestion.status == status)
    rows = query.order_by(MissingQuestion.priority.desc(), MissingQuestion.requested_at.asc(),
                          MissingQuestion.id.asc()).all()
    lookups = {
        item_type: _items_by_id(session, item_type, (r.item_id for r in rows if r.item_type == item_type))
        for item_type in ITEM_TYPES
    }
    result = []
    for row in rows:
        entry = to_dict(row)
        item = lookups.get(row.item_type, {}).get(row.item_id)
        entry["item"] = to_dict(item) if item else None
        result.append(entry)
    return result


def get_missing_question(session: Session, user: str, queue_id: Any) -> MissingQuestion:
    entry = session.get(MissingQuestion, _coerce_id(queue_id, "queue_id"))
    if entry is None or entry.user != user:
        raise NotFoundError("Queue item not found")
    return entry


def update_missing_question(session: Session, entry: MissingQuestion, status: str,
                            error_message: Optional[str] = None,
                            question_id: Optional[int] = None) -> MissingQuestion:
    if status not in QUEUE_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(QUEUE_STATUSES)}")
    entry.status = status
    entry.error_message = error_message
    if question_id is not None:
        entry.question_id = question_id
    if status == "completed":
        entry.generated_at = _utcnow()
    session.commit()
    return entry


# ----------------------------------------------------------------------
# Section tips
# ----------------------------------------------------------------------
def _check_tip_section(section: Any) -> str:
    if section not in TIP_SECTIONS:
        raise ValidationError("Invalid section parameter")
    return section


def add_section_tip(session: Session, section: Any, tip_text: Any) -> SectionTip:
    _check_tip_section(section)
    if not tip_text or not isinstance(tip_text, str):
        raise ValidationError("tip_text is required")
    tip = SectionTip(section=section, tip_text=tip_text)
    session.add(tip)
    session.commit()
    return tip


def list_section_tips(session: Session, section: Any) -> List[Dict[str, Any]]:
    _check_tip_section(section)
    rows = (
        session.query(SectionTip)
        .filter(SectionTip.section == section)
        .order_by(SectionTip.created_at.asc(), SectionTip.id.asc())
        .all()
    )
    return [to_dict(r) for r in rows]


# ----------------------------------------------------------------------
# Assistant context
# ----------------------------------------------------------------------
def get_latest_activity(session: Session, user: str, activity_type: str) -> Optional[ActivityLog]:
    return (
        session.query(ActivityLog)
        .filter(ActivityLog.user == user, ActivityLog.activity_type == activity_type)
        .order_by(ActivityLog.timestamp.desc(), ActivityLog.id.desc())
        .first()
    )


def get_latest_focus_areas(session: Session, user: str) -> List[str]:
    """Focus areas from the user's most recent weakness analysis, if any."""
    latest = get_latest_activity(session, user, "weakness_analysis_generated")
    if latest is None:
        return []
    analysis = (latest.details or {}).get("analysis") or {}
    focus_areas = analysis.get("focus_areas") if isinstance(analysis, dict) else None
    return [str(a) for a in focus_areas] if isinstance(focus_areas, list) else []


def get_chat_context(session: Session, user: str, today: Optional[datetime.date] = None) -> Dict[str, Any]:
    """Performance snapshot the study assistant answers against."""
    stats = get_dashboard_stats(session, user, today=today)
    states = (
        session.query(ReviewState)
        .filter(ReviewState.user == user)
        .order_by(ReviewState.last_reviewed.desc(), ReviewState.id.desc())
        .limit(20)
        .all()
    )
    return {
        "weekly_accuracy": stats["weekly_accuracy"],
        "streak_days": stats["streak_days"],
        "weak_areas": get_latest_focus_areas(session, user),
        "study_history": [
            {"topic": s.item_type, "correct": s.correct_count, "total": s.correct_count + s.incorrect_count}
            for s in states
        ],
    }


def get_chat_history(session: Session, user: str, session_id: Optional[str] = None,
                     limit: int = 20) -> List[Dict[str, Any]]:
    rows = (
        session.query(ActivityLog)
        .filter(ActivityLog.user == user, ActivityLog.activity_type == "ai_chat")
        .order_by(ActivityLog.timestamp.desc(), ActivityLog.id.desc())
        .all()
    )
    if session_id:
        rows = [r for r in rows if r.session_id == session_id]
    return [
        {
            "user_message": (r.details or {}).get("message"),
            "ai_response": (r.details or {}).get("response"),
            "session_id": r.session_id,
            "timestamp": r.timestamp.isoformat(),
        }
        for r in rows[:limit]
    ]
