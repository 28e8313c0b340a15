import json
import logging
import re
from dataclasses import asdict
from typing import Any, Dict, Iterator, List, Optional

from .errors import AIResponseError, ValidationError
from .structured import (
    StudyItemRow, QuestionRow,
    QUESTION_PROMPT, EXPLANATION_PROMPT, HINT_PROMPT, WEAKNESS_PROMPT,
    INTENSIVE_REVIEW_PROMPT, STUDY_ITEMS_PROMPT, TEST_STRATEGY_PROMPT, ITEM_QUESTION_PROMPT,
    CHAT_PROMPT, EMERGENCY_PLAN_PROMPT, READING_PRACTICE_PROMPT,
)

logger = logging.getLogger(__name__)

DIFFICULTIES = ("easy", "medium", "hard")
STUDY_CATEGORIES = ("vocab", "grammar", "mixed")

SYSTEM_PROMPT = (
    "You are a Japanese language tutor preparing students for the JLPT N1 exam. "
    "Explanations are written predominantly in English so an English native speaker can follow them."
)
JSON_SYSTEM_PROMPT = SYSTEM_PROMPT + " Return ONLY valid JSON. Do not include commentary outside the JSON."

_FENCED_JSON = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```", re.IGNORECASE)
_JSON_SPAN = re.compile(r"(\{[\s\S]*\}|\[[\s\S]*\])")


def _require_model(model: Any, purpose: str) -> None:
    if model is None:
        raise ValueError(f"AI model is required for {purpose}. Please ensure OpenAI API key is configured.")


def _ask(model: Any, prompt: str, system: str) -> str:
    logger.debug("Prompt: %d chars (system %d chars)", len(prompt), len(system))
    response = model.prompt(prompt, system=system)
    text = response.text().strip()
    logger.debug("Response: %d chars", len(text))
    return text


def extract_json(text: str) -> Any:
    """Parse JSON from a model response.

    Accepts a bare JSON document, a fenced ```json block, or the first
    {...} / [...] span found inside surrounding prose.
    """
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        pass

    cleaned = (text or "").strip()
    match = _FENCED_JSON.search(cleaned)
    if match:
        try:
            return json.loads(match.group(1).strip())
        except ValueError as e:
            raise AIResponseError(f"Invalid JSON in code block: {e}") from e

    match = _JSON_SPAN.search(cleaned)
    if match:
        try:
            return json.loads(match.group(1))
        except ValueError as e:
            raise AIResponseError(f"Invalid JSON object: {e}") from e

    logger.warning("No valid JSON found in response: %s...", cleaned[:200])
    raise AIResponseError("No valid JSON found in response text")


def _valid_question(entry: Any) -> Optional[QuestionRow]:
    if not isinstance(entry, dict):
        return None
    text = entry.get("question_text")
    options = entry.get("options")
    answer_index = entry.get("answer_index")
    if not text or not isinstance(options, list) or len(options) < 2:
        return None
    if isinstance(answer_index, bool) or not isinstance(answer_index, int):
        return None
    if not 0 <= answer_index < len(options):
        return None
    return QuestionRow(
        question_text=str(text),
        options=[str(o) for o in options],
        answer_index=answer_index,
        explanation=entry.get("explanation"),
        difficulty_level=entry.get("difficulty_level"),
    )


def generate_practice_questions(
    items: List[Dict[str, Any]],
    model: Any,
    count: int = 5,
    difficulty: str = "medium",
) -> List[Dict[str, Any]]:
    """Generate JLPT N1 multiple-choice questions for the given study items.

    Args:
        items: dicts with keys term, reading, meaning_en (and optionally type)
        model: LLM model exposing prompt(text, system=...)
        count: number of questions to request
        difficulty: easy, medium or hard

    Returns:
        List of question dicts: question_text, options, answer_index,
        explanation, difficulty_level. Malformed entries are dropped.

    Raises:
        ValueError: If no model is provided
        AIResponseError: If the response holds no usable question
    """
    _require_model(model, "question generation")
    if difficulty not in DIFFICULTIES:
        raise ValidationError(f"difficulty must be one of {', '.join(DIFFICULTIES)}")
    if not items:
        raise ValidationError("At least one study item is required")

    item_lines = "\n".join(
        f"- {i.get('term', '')} ({i.get('reading', '')}): {i.get('meaning_en', '')}" for i in items
    )
    prompt = QUESTION_PROMPT.format(count=count, difficulty=difficulty, items=item_lines)
    raw = extract_json(_ask(model, prompt, JSON_SYSTEM_PROMPT))
    if isinstance(raw, dict):
        raw = raw.get("questions", [])
    if not isinstance(raw, list):
        raise AIResponseError("Expected a list of questions")

    questions = []
    for entry in raw:
        row = _valid_question(entry)
        if row is None:
            logger.warning("Dropping malformed generated question: %r", entry)
            continue
        if not row.difficulty_level:
            row.difficulty_level = difficulty
        questions.append(asdict(row))

    if not questions:
        raise AIResponseError("Model returned no valid questions")
    logger.info("Generated %d of %d requested questions", len(questions), count)
    return questions[:count]


def generate_explanation(
    question: str,
    user_answer: str,
    correct_answer: str,
    options: List[str],
    item_type: str,
    model: Any,
) -> str:
    """Explain why the correct answer beats the one the student picked."""
    _require_model(model, "answer explanations")
    prompt = EXPLANATION_PROMPT.format(
        question=question,
        options=", ".join(str(o) for o in options or []),
        user_answer=user_answer,
        correct=correct_answer,
        item_type=item_type,
    )
    return _ask(model, prompt, SYSTEM_PROMPT)


def generate_study_hint(
    term: str,
    reading: str,
    meaning: str,
    item_type: str,
    model: Any,
    example: Optional[str] = None,
    mistakes: Optional[List[str]] = None,
) -> str:
    _require_model(model, "study hints")
    context_lines = []
    if example:
        context_lines.append(f"Example: {example}")
    if mistakes:
        context_lines.append(f"Struggles with: {', '.join(mistakes[:2])}")
    prompt = HINT_PROMPT.format(
        term=term, reading=reading or "", meaning=meaning or "",
        context="\n".join(context_lines) + ("\n" if context_lines else ""),
    )
    logger.debug("Hint requested for %s item %s", item_type, term)
    return _ask(model, prompt, SYSTEM_PROMPT)


def analyze_weaknesses(
    activity_data: List[Dict[str, Any]],
    progress_data: List[Dict[str, Any]],
    model: Any,
) -> Dict[str, Any]:
    """Ask the model for weakness areas, patterns and recommendations.

    The returned dict always carries the keys weakness_areas,
    learning_patterns, recommendations, focus_areas and strengths.
    """
    _require_model(model, "weakness analysis")
    activity = "\n".join(
        f"- {a.get('item_term')} ({a.get('item_type')}): "
        f"{'Correct' if a.get('correct') else 'Incorrect'} at {a.get('timestamp')}"
        for a in activity_data[:50]
    ) or "- none"
    progress = "\n".join(
        f"- {p.get('item_term')} ({p.get('item_type')}): {p.get('correct_count', 0)} correct, "
        f"{p.get('incorrect_count', 0)} incorrect, level: {p.get('mastery_level')}"
        for p in progress_data
    ) or "- none"

    result = extract_json(_ask(model, WEAKNESS_PROMPT.format(activity=activity, progress=progress), JSON_SYSTEM_PROMPT))
    if not isinstance(result, dict):
        raise AIResponseError("Expected a JSON object for weakness analysis")
    result.setdefault("weakness_areas", [])
    result.setdefault("learning_patterns", {})
    result.setdefault("recommendations", [])
    result.setdefault("focus_areas", [])
    result.setdefault("strengths", [])
    return result


def generate_intensive_review(weak_items: List[Dict[str, Any]], session_length: int, model: Any) -> Dict[str, Any]:
    """Build a timed review session plan around the most-missed items."""
    _require_model(model, "intensive review")
    if not weak_items:
        raise ValidationError("No weak items found. Complete some practice sessions first to identify weak areas.")
    lines = "\n".join(
        f"- {i.get('term')} ({i.get('reading', '')}): {i.get('meaning', i.get('meaning_en', ''))} "
        f"[{i.get('type')}, missed {i.get('mistake_count', 0)} times]"
        for i in weak_items
    )
    result = extract_json(_ask(model, INTENSIVE_REVIEW_PROMPT.format(minutes=session_length, items=lines),
                               JSON_SYSTEM_PROMPT))
    if not isinstance(result, dict):
        raise AIResponseError("Expected a JSON object for the review session")
    return result


def generate_study_items(
    category: str,
    model: Any,
    count: int = 10,
    difficulty: str = "medium",
    focus_areas: Optional[List[str]] = None,
    level: str = "N1",
) -> List[Dict[str, Any]]:
    _require_model(model, "flashcard generation")
    if category not in STUDY_CATEGORIES:
        raise ValidationError(f"category must be one of {', '.join(STUDY_CATEGORIES)}")
    if difficulty not in DIFFICULTIES:
        raise ValidationError(f"difficulty must be one of {', '.join(DIFFICULTIES)}")

    focus = f"Focus: {', '.join(focus_areas)}" if focus_areas else ""
    prompt = STUDY_ITEMS_PROMPT.format(count=count, level=level, category=category,
                                       difficulty=difficulty, focus=focus)
    raw = extract_json(_ask(model, prompt, JSON_SYSTEM_PROMPT))
    if isinstance(raw, dict):
        raw = raw.get("items", [])
    if not isinstance(raw, list):
        raise AIResponseError("Expected a list of study items")

    items = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("term"):
            continue
        item_type = entry.get("type")
        if item_type not in ("vocab", "grammar"):
            item_type = "vocab" if category == "mixed" else category
        items.append(asdict(StudyItemRow(
            term=entry["term"],
            reading=entry.get("reading"),
            meaning_en=entry.get("meaning_en"),
            type=item_type,
            example_sentence=entry.get("example_sentence"),
            example_translation=entry.get("example_translation"),
            grammar_point=entry.get("grammar_point"),
        )))
    if not items:
        raise AIResponseError("Model returned no usable study items")
    return items[:count]


def generate_test_strategy(
    progress_data: List[Dict[str, Any]],
    activity_data: List[Dict[str, Any]],
    focus_areas: Optional[List[str]],
    model: Any,
) -> Dict[str, Any]:
    """Ask the model which items a personalized test should cover.

    The result always carries performance_summary, recommended_focus,
    difficulty_distribution, recommended_items (a list), test_strategy
    and estimated_difficulty.
    """
    _require_model(model, "personalized tests")
    progress = "\n".join(
        f"- [{p.get('item_type')} #{p.get('item_id')}] {p.get('item_term')}: "
        f"{p.get('correct_count', 0)} correct, {p.get('incorrect_count', 0)} incorrect, "
        f"level: {p.get('mastery_level')}"
        for p in progress_data[:20]
    ) or "- none"
    activity = "\n".join(
        f"- {a.get('item_term')} ({a.get('item_type')}): {'Correct' if a.get('correct') else 'Incorrect'}"
        for a in activity_data[:20]
    ) or "- none"
    focus = ", ".join(focus_areas or []) or "General review"

    prompt = TEST_STRATEGY_PROMPT.format(progress=progress, activity=activity, focus=focus)
    result = extract_json(_ask(model, prompt, JSON_SYSTEM_PROMPT))
    if not isinstance(result, dict):
        raise AIResponseError("Expected a JSON object for the test strategy")
    if not isinstance(result.get("recommended_items"), list):
        result["recommended_items"] = []
    result.setdefault("performance_summary", "")
    result.setdefault("recommended_focus", [])
    result.setdefault("difficulty_distribution", {})
    result.setdefault("test_strategy", "")
    result.setdefault("estimated_difficulty", "mixed")
    return result


def generate_item_question(item: Dict[str, Any], item_type: str, model: Any) -> Dict[str, Any]:
    """One multiple-choice question for a single study item."""
    _require_model(model, "question generation")
    prompt = ITEM_QUESTION_PROMPT.format(
        kind="vocabulary" if item_type == "vocab" else "grammar",
        term=item.get("term") or item.get("pattern") or "",
        reading=item.get("reading") or "",
        meaning_en=item.get("meaning_en") or "",
        meaning_vi=item.get("meaning_vi") or "N/A",
        example=item.get("example_jp") or item.get("example") or "N/A",
    )
    raw = extract_json(_ask(model, prompt, JSON_SYSTEM_PROMPT))
    if isinstance(raw, dict) and "question_text" not in raw and "question" in raw:
        raw["question_text"] = raw["question"]
    row = _valid_question(raw)
    if row is None:
        raise AIResponseError("Model returned no valid question")
    return asdict(row)


def _chat_prompt(
    message: str,
    context: Dict[str, Any],
    history: Optional[List[Dict[str, Any]]],
    days_remaining: Optional[int],
) -> str:
    if not isinstance(message, str) or not message.strip():
        raise ValidationError("Message is required")

    turns = []
    for turn in (history or [])[-10:]:
        if not isinstance(turn, dict) or not turn.get("content"):
            continue
        speaker = "Assistant" if turn.get("role") == "assistant" else "Student"
        turns.append(f"{speaker}: {turn['content']}")
    study_history = ", ".join(
        f"{h.get('topic')} {h.get('correct')}/{h.get('total')}" for h in context.get("study_history", [])[:10]
    )
    return CHAT_PROMPT.format(
        days=f"The exam is in {days_remaining} days.\n" if days_remaining else "",
        weekly_accuracy=context.get("weekly_accuracy", 0),
        streak_days=context.get("streak_days", 0),
        weak_areas=", ".join(context.get("weak_areas") or []) or "not analyzed yet",
        study_history=study_history or "no reviews yet",
        history="\n".join(turns) or "(new conversation)",
        message=message.strip(),
    )


def chat_with_assistant(
    message: str,
    context: Dict[str, Any],
    model: Any,
    history: Optional[List[Dict[str, Any]]] = None,
    days_remaining: Optional[int] = None,
) -> str:
    _require_model(model, "the study assistant")
    prompt = _chat_prompt(message, context, history, days_remaining)
    return _ask(model, prompt, SYSTEM_PROMPT)


def stream_chat_with_assistant(
    message: str,
    context: Dict[str, Any],
    model: Any,
    history: Optional[List[Dict[str, Any]]] = None,
    days_remaining: Optional[int] = None,
) -> Iterator[str]:
    """Same prompt as chat_with_assistant, answered as a stream of text chunks.

    Validates before the first chunk is requested.
    """
    _require_model(model, "the study assistant")
    prompt = _chat_prompt(message, context, history, days_remaining)
    return iter(model.stream(prompt, system=SYSTEM_PROMPT))


def generate_reading_practice(
    passage: str,
    model: Any,
    difficulty: str = "N1",
    question_count: int = 5,
) -> Dict[str, Any]:
    _require_model(model, "reading practice")
    if not isinstance(passage, str) or len(passage.strip()) < 100:
        raise ValidationError("Passage must be at least 100 characters")
    if isinstance(question_count, bool) or not isinstance(question_count, int) or not 1 <= question_count <= 10:
        raise ValidationError("question_count must be between 1 and 10")

    prompt = READING_PRACTICE_PROMPT.format(level=difficulty, passage=passage.strip(), count=question_count)
    result = extract_json(_ask(model, prompt, JSON_SYSTEM_PROMPT))
    if not isinstance(result, dict):
        raise AIResponseError("Expected a JSON object for reading practice")

    questions = []
    for entry in result.get("questions") or []:
        row = _valid_question(entry)
        if row is None:
            logger.warning("Dropping malformed reading question: %r", entry)
            continue
        questions.append(asdict(row))
    if not questions:
        raise AIResponseError("Model returned no usable reading questions")

    result["questions"] = questions[:question_count]
    result.setdefault("summary", "")
    if not isinstance(result.get("vocabulary"), list):
        result["vocabulary"] = []
    return result


def generate_emergency_study_plan(
    scores: Dict[str, Any],
    days_remaining: int,
    hours_per_day: int,
    weak_areas: List[str],
    model: Any,
) -> Dict[str, Any]:
    """Day-by-day cram plan for the last days before the exam."""
    _require_model(model, "study planning")
    if days_remaining < 1:
        raise ValidationError("days_remaining must be at least 1")
    if not 1 <= hours_per_day <= 24:
        raise ValidationError("hours_per_day must be between 1 and 24")

    prompt = EMERGENCY_PLAN_PROMPT.format(
        days_remaining=days_remaining,
        hours_per_day=hours_per_day,
        vocabulary_grammar=scores.get("vocabulary_grammar", "unknown"),
        reading=scores.get("reading", "unknown"),
        weak_areas=", ".join(weak_areas) or "not identified",
    )
    result = extract_json(_ask(model, prompt, JSON_SYSTEM_PROMPT))
    if not isinstance(result, dict):
        raise AIResponseError("Expected a JSON object for the study plan")
    result.setdefault("priority_areas", [])
    result.setdefault("daily_schedule", [])
    return result
