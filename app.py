#!/usr/bin/env python3
"""
JLPT Study - Flask API
JSON backend for JLPT N1 study: flashcards and quizzes scheduled with SM-2,
progress analytics, user-authored content, practice lists and AI-generated
practice material. Identity is provided upstream through the X-User-Id header.
"""

import os
import json
import logging
import argparse
from dataclasses import dataclass
from typing import Iterator, List, Optional, Dict, Any

from flask import Flask, Response, request, session, jsonify, g, stream_with_context
from openai import OpenAI
from sqlalchemy.orm import Session
from werkzeug.exceptions import HTTPException

from jlpt_study import db, exercises
from jlpt_study.structured import SAMPLE_PASSAGES
from jlpt_study.errors import AIResponseError, NotFoundError, ValidationError

# Check for test mode
TEST_MODE = os.environ.get("TEST_MODE", "0") == "1"
DEBUG = os.environ.get("DEBUG", "0") == "1"
DEFAULT_MODEL = os.environ.get("OPENAI_MODEL", "gpt-5.2")
MAX_COMPLETION_TOKENS = 32768

logging.basicConfig(
    level=logging.DEBUG if DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Global variables for AI clients
client = None
ai_model = None


class AIUnavailableError(RuntimeError):
    """No AI model has been configured for this process."""


class ModelResponse:
    def __init__(self, content: str) -> None:
        self.content = content

    def text(self) -> str:
        return self.content


class OpenAIModel:
    """Wrapper for OpenAI API to match expected interface."""
    def __init__(self, client: Any, model_name: str = DEFAULT_MODEL):
        self.client = client
        self.model_name = model_name

    def prompt(self, prompt_text: str, system: str = "") -> ModelResponse:
        """Send prompt to OpenAI and return response."""
        messages: List[Dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt_text})

        logger.debug("OpenAI call: model=%s system=%d chars prompt=%d chars",
                     self.model_name, len(system), len(prompt_text))
        response = self.client.chat.completions.create(
            model=self.model_name,
            messages=messages,  # type: ignore
            temperature=1.0,
            max_completion_tokens=MAX_COMPLETION_TOKENS,
        )
        content = response.choices[0].message.content or ""
        logger.debug("OpenAI response: %d chars, usage %s", len(content), response.usage)
        return ModelResponse(content)

    def stream(self, prompt_text: str, system: str = "") -> Iterator[str]:
        """Send prompt to OpenAI and yield the reply as it arrives."""
        messages: List[Dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt_text})

        response = self.client.chat.completions.create(
            model=self.model_name,
            messages=messages,  # type: ignore
            temperature=1.0,
            max_completion_tokens=MAX_COMPLETION_TOKENS,
            stream=True,
        )
        for chunk in response:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content


def init_ai(api_key: Optional[str] = None,
            base_url: Optional[str] = None,
            model_name: str = DEFAULT_MODEL) -> None:
    """Initialize the OpenAI client and model."""
    global client, ai_model

    if TEST_MODE:
        return

    if not api_key:
        api_key = os.environ.get("OPENAI_API_KEY")

    if not api_key:
        logger.warning("No API key provided. AI features will be disabled.")
        return

    client_kwargs = {"api_key": api_key}
    if base_url:
        client_kwargs["base_url"] = base_url

    client = OpenAI(**client_kwargs)
    ai_model = OpenAIModel(client, model_name=model_name)
    logger.info("AI initialized with model: %s", model_name)


def require_ai() -> OpenAIModel:
    if ai_model is None:
        raise AIUnavailableError("AI features are not configured. Set OPENAI_API_KEY to enable them.")
    return ai_model


app = Flask(__name__)
app.secret_key = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')

# Try to initialize with environment variables by default
if not TEST_MODE:
    init_ai()

PUBLIC_ENDPOINTS = {"ai_status", "static"}


@dataclass
class RequestContext:
    user: str
    db: Session


def ctx() -> RequestContext:
    return g.ctx


@app.before_request
def initialize_app() -> None:
    """Initialize the database if needed."""
    if not hasattr(app, '_database_initialized'):
        if not db.is_db_initialized():
            db.init_db()
            logger.info("Database initialized on startup")
        setattr(app, "_database_initialized", True)


@app.before_request
def attach_request_context() -> Any:
    """Resolve the caller's identity and open a DB session for the request."""
    if request.endpoint in PUBLIC_ENDPOINTS:
        return None
    user = request.headers.get("X-User-Id") or session.get("user_id")
    if not user:
        return jsonify({'status': 'error', 'message': 'Unauthorized'}), 401
    g.ctx = RequestContext(user=user, db=db.get_session())
    return None


@app.teardown_request
def close_request_context(exc: Optional[BaseException]) -> None:
    request_ctx = g.pop("ctx", None)
    if request_ctx is not None:
        if exc is not None:
            request_ctx.db.rollback()
        request_ctx.db.close()


# ----------------------------------------------------------------------
# Error handling
# ----------------------------------------------------------------------
def _error(message: str, status: int) -> Any:
    return jsonify({'status': 'error', 'message': message}), status


@app.errorhandler(ValidationError)
def handle_validation_error(e: ValidationError) -> Any:
    return _error(str(e), 400)


@app.errorhandler(NotFoundError)
def handle_not_found(e: NotFoundError) -> Any:
    return _error(str(e), 404)


@app.errorhandler(AIResponseError)
def handle_ai_response_error(e: AIResponseError) -> Any:
    logger.warning("Unusable AI response: %s", e)
    return _error(f"AI response could not be used: {e}", 502)


@app.errorhandler(AIUnavailableError)
def handle_ai_unavailable(e: AIUnavailableError) -> Any:
    return _error(str(e), 503)


@app.errorhandler(Exception)
def handle_unexpected(e: Exception) -> Any:
    if isinstance(e, HTTPException):
        return _error(e.description or e.name, e.code or 500)
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return _error("Internal server error", 500)


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _flag(name: str) -> bool:
    return request.args.get(name, "false").lower() in ("1", "true", "yes")


def _int_field(data: Dict[str, Any], name: str, default: int) -> int:
    value = data.get(name, default)
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer") from None


def _require_fields(data: Dict[str, Any], *fields: str) -> None:
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


# ----------------------------------------------------------------------
# Study items, flashcards and quizzes
# ----------------------------------------------------------------------
@app.route('/api/items')
def api_items() -> Any:
    section = request.args.get('section', 'word')
    limit = request.args.get('limit', 50, type=int)
    items = db.list_items(ctx().db, section, limit=limit)
    return jsonify({'status': 'success', 'items': items})


@app.route('/api/flashcards', methods=['GET'])
def api_flashcards() -> Any:
    c = ctx()
    cards = db.get_flashcards(
        c.db, c.user,
        section=request.args.get('section', 'vocab'),
        filter_=request.args.get('filter', 'due'),
        limit=request.args.get('limit', 20, type=int),
    )
    return jsonify({'status': 'success', 'flashcards': cards})


@app.route('/api/flashcards', methods=['PATCH'])
def api_flashcard_review() -> Any:
    """Record a flashcard answer and return the rescheduled review state."""
    c = ctx()
    data = _json_body()
    _require_fields(data, 'item_id', 'item_type')
    if 'quality' in data:
        details: Dict[str, Any] = {'quality': data['quality']}
    elif isinstance(data.get('known'), bool):
        details = {'correct': data['known'], 'mark_mastered': data['known']}
    else:
        raise ValidationError("Missing required fields: item_id, item_type, known")

    _, state = db.log_activity(
        c.db, c.user, 'flashcard_review',
        item_id=data['item_id'], item_type=data['item_type'],
        details=details, session_id=data.get('session_id'),
    )
    return jsonify({'status': 'success', 'progress': db.to_dict(state)})


@app.route('/api/questions')
def api_questions() -> Any:
    c = ctx()
    questions = db.get_quiz_questions(
        c.db, c.user,
        section=request.args.get('section', 'vocab'),
        filter_=request.args.get('filter', 'all'),
        limit=request.args.get('limit', 20, type=int),
    )
    return jsonify({'status': 'success', 'questions': questions})


# ----------------------------------------------------------------------
# Activity and progress
# ----------------------------------------------------------------------
@app.route('/api/activity', methods=['POST'])
def api_log_activity() -> Any:
    c = ctx()
    data = _json_body()
    details = data.get('details') or {}
    if not isinstance(details, dict):
        raise ValidationError("details must be an object")
    activity, state = db.log_activity(
        c.db, c.user, data.get('activity_type'),
        item_id=data.get('item_id'),
        item_type=data.get('item_type'),
        details=details,
        session_id=data.get('session_id'),
        response_time_ms=data.get('response_time_ms'),
        confidence_level=data.get('confidence_level'),
    )
    return jsonify({
        'status': 'success',
        'activity': db.to_dict(activity),
        'progress': db.to_dict(state) if state else None,
    })


@app.route('/api/activity', methods=['GET'])
def api_get_activity() -> Any:
    c = ctx()
    activities = db.get_activities(
        c.db, c.user,
        activity_type=request.args.get('activity_type'),
        item_type=request.args.get('item_type'),
        session_id=request.args.get('session_id'),
        limit=request.args.get('limit', 50, type=int),
    )
    return jsonify({'status': 'success', 'activities': activities})


@app.route('/api/dashboard-stats')
def api_dashboard_stats() -> Any:
    c = ctx()
    return jsonify({'status': 'success', 'stats': db.get_dashboard_stats(c.db, c.user)})


@app.route('/api/analytics')
def api_analytics() -> Any:
    """Return advanced analytics data as JSON."""
    c = ctx()
    return jsonify(db.get_analytics_data(c.db, c.user))


# ----------------------------------------------------------------------
# User-authored content
# ----------------------------------------------------------------------
_USER_CONTENT_OPS = {
    'vocab': (db.create_user_vocabulary, db.list_user_vocabulary,
              db.update_user_vocabulary, db.delete_user_vocabulary),
    'grammar': (db.create_user_grammar, db.list_user_grammar,
                db.update_user_grammar, db.delete_user_grammar),
}


def _user_content(kind: str) -> Any:
    create, list_, update, delete = _USER_CONTENT_OPS[kind]
    key = 'vocabulary' if kind == 'vocab' else 'grammar'
    c = ctx()

    if request.method == 'GET':
        tags = [t for t in request.args.get('tags', '').split(',') if t]
        entries = list_(
            c.db, c.user,
            include_public=_flag('include_public'),
            tags=tags or None,
            search=request.args.get('search') or None,
            limit=request.args.get('limit', 50, type=int),
        )
        return jsonify({'status': 'success', key: entries})

    if request.method == 'POST':
        entry = create(c.db, c.user, _json_body())
        return jsonify({'status': 'success', key: db.to_dict(entry)}), 201

    if request.method == 'PUT':
        data = _json_body()
        _require_fields(data, 'id')
        entry = update(c.db, c.user, data.pop('id'), data)
        return jsonify({'status': 'success', key: db.to_dict(entry)})

    entry_id = request.args.get('id')
    if not entry_id:
        raise ValidationError("id is required")
    delete(c.db, c.user, entry_id)
    return jsonify({'status': 'success'})


@app.route('/api/user-vocabulary', methods=['GET', 'POST', 'PUT', 'DELETE'])
def api_user_vocabulary() -> Any:
    return _user_content('vocab')


@app.route('/api/user-grammar', methods=['GET', 'POST', 'PUT', 'DELETE'])
def api_user_grammar() -> Any:
    return _user_content('grammar')


# ----------------------------------------------------------------------
# Practice lists
# ----------------------------------------------------------------------
@app.route('/api/practice-lists', methods=['GET'])
def api_practice_lists() -> Any:
    c = ctx()
    list_id = request.args.get('id')
    if list_id:
        practice_list = db.get_practice_list(c.db, c.user, list_id, include_items=_flag('include_items'))
        return jsonify({'status': 'success', 'practice_list': practice_list})
    return jsonify({'status': 'success', 'practice_lists': db.list_practice_lists(c.db, c.user)})


@app.route('/api/practice-lists', methods=['POST'])
def api_create_practice_list() -> Any:
    c = ctx()
    data = _json_body()
    practice_list = db.create_practice_list(
        c.db, c.user, data.get('name'),
        description=data.get('description'),
        items=data.get('items'),
    )
    result = db.get_practice_list(c.db, c.user, practice_list.id)
    return jsonify({'status': 'success', 'practice_list': result}), 201


@app.route('/api/practice-lists', methods=['PATCH'])
def api_update_practice_list() -> Any:
    c = ctx()
    data = _json_body()
    _require_fields(data, 'id')
    practice_list = db.update_practice_list(
        c.db, c.user, data['id'],
        name=data.get('name'),
        description=data.get('description'),
        is_active=data.get('is_active'),
        add_items=data.get('add_items'),
        remove_items=data.get('remove_items'),
    )
    result = db.get_practice_list(c.db, c.user, practice_list.id)
    return jsonify({'status': 'success', 'practice_list': result})


@app.route('/api/practice-lists', methods=['DELETE'])
def api_delete_practice_list() -> Any:
    c = ctx()
    list_id = request.args.get('id')
    if not list_id:
        raise ValidationError("List ID is required")
    db.delete_practice_list(c.db, c.user, list_id)
    return jsonify({'status': 'success'})


# ----------------------------------------------------------------------
# AI-generated content
# ----------------------------------------------------------------------
@app.route('/api/ai-questions', methods=['POST'])
def api_generate_questions() -> Any:
    """Generate questions targeting the user's weak items, falling back to recent ones."""
    model = require_ai()
    c = ctx()
    data = _json_body()
    item_type = data.get('item_type', 'vocab')
    count = _int_field(data, 'count', 5)
    difficulty = data.get('difficulty', 'medium')

    items = db.get_weak_items(c.db, c.user, item_type, limit=count * 2)
    if not items:
        items = db.get_recent_items(c.db, item_type, limit=10)
    if not items:
        raise ValidationError(f"No {item_type} items available to generate questions from")

    questions = exercises.generate_practice_questions(items, model, count=count, difficulty=difficulty)
    saved = db.save_generated_questions(
        c.db, c.user, item_type, questions, difficulty=difficulty, ai_model=model.model_name
    )
    return jsonify({
        'status': 'success',
        'questions': [db.to_dict(q) for q in saved],
        'source_items': items,
    })


@app.route('/api/ai-questions', methods=['GET'])
def api_list_generated_questions() -> Any:
    c = ctx()
    questions = db.get_generated_questions(
        c.db, c.user,
        item_type=request.args.get('item_type'),
        difficulty=request.args.get('difficulty'),
        limit=request.args.get('limit', 20, type=int),
    )
    return jsonify({'status': 'success', 'questions': questions})


@app.route('/api/ai-explanation', methods=['POST'])
def api_ai_explanation() -> Any:
    model = require_ai()
    data = _json_body()
    _require_fields(data, 'question', 'user_answer', 'correct_answer')
    explanation = exercises.generate_explanation(
        data['question'], data['user_answer'], data['correct_answer'],
        data.get('options') or [], data.get('item_type', 'vocab'), model,
    )
    return jsonify({'status': 'success', 'explanation': explanation})


@app.route('/api/ai-hint', methods=['POST'])
def api_ai_hint() -> Any:
    model = require_ai()
    c = ctx()
    data = _json_body()
    _require_fields(data, 'term', 'item_type')

    mistakes = None
    if data.get('item_id') is not None:
        state = db.get_review_state(c.db, c.user, data['item_type'], data['item_id'])
        if state is not None and state.incorrect_count:
            mistakes = [f"missed {state.incorrect_count} of {state.correct_count + state.incorrect_count} reviews"]

    hint = exercises.generate_study_hint(
        data['term'], data.get('reading', ''), data.get('meaning', ''), data['item_type'], model,
        example=data.get('example'), mistakes=mistakes,
    )
    return jsonify({'status': 'success', 'hint': hint})


@app.route('/api/weakness-analysis', methods=['POST'])
def api_weakness_analysis() -> Any:
    model = require_ai()
    c = ctx()
    data = _json_body()
    days_back = _int_field(data, 'days_back', 30)

    activity = db.get_recent_review_activity(c.db, c.user, days_back=days_back)
    progress = db.get_progress_summary(c.db, c.user)
    if not activity and not progress:
        raise ValidationError("Not enough study data yet. Complete some reviews first.")

    analysis = exercises.analyze_weaknesses(activity, progress, model)
    db.log_activity(c.db, c.user, 'weakness_analysis_generated',
                    details={'days_back': days_back, 'analysis': analysis})
    return jsonify({
        'status': 'success',
        'analysis': analysis,
        'data_points': {'activities': len(activity), 'tracked_items': len(progress)},
    })


@app.route('/api/intensive-review', methods=['POST'])
def api_intensive_review() -> Any:
    model = require_ai()
    c = ctx()
    data = _json_body()
    session_length = _int_field(data, 'session_length', 30)
    focus_type = data.get('focus_type', 'weakest')

    weak_items = db.get_mistake_items(c.db, c.user)
    review_session = exercises.generate_intensive_review(weak_items, session_length, model)
    session_info = {'length': session_length, 'focus_type': focus_type, 'items_count': len(weak_items)}
    activity, _ = db.log_activity(
        c.db, c.user, 'intensive_review_generated',
        details={'session_info': session_info, 'review_session': review_session, 'target_items': weak_items},
    )
    return jsonify({
        'status': 'success',
        'review_session': review_session,
        'target_items': weak_items,
        'session_info': session_info,
        'generated_at': activity.timestamp.isoformat(),
    })


@app.route('/api/intensive-review', methods=['GET'])
def api_intensive_review_history() -> Any:
    c = ctx()
    logs = db.get_activities(c.db, c.user, activity_type='intensive_review_generated',
                             limit=request.args.get('limit', 5, type=int))
    sessions = [
        {
            'review_session': log['details'].get('review_session'),
            'target_items': log['details'].get('target_items'),
            'session_info': log['details'].get('session_info'),
            'generated_at': log['timestamp'],
        }
        for log in logs
    ]
    return jsonify({'status': 'success', 'review_sessions': sessions})


@app.route('/api/ai-flashcards', methods=['POST'])
def api_ai_flashcards() -> Any:
    """Generate new study items; with save=true they are added to the shared bank."""
    model = require_ai()
    c = ctx()
    data = _json_body()
    items = exercises.generate_study_items(
        data.get('category', 'vocab'), model,
        count=_int_field(data, 'count', 10),
        difficulty=data.get('difficulty', 'medium'),
        focus_areas=data.get('focus_areas'),
        level=data.get('level', 'N1'),
    )

    saved_ids: List[Dict[str, Any]] = []
    if data.get('save'):
        for item in items:
            if item['type'] == 'grammar':
                row = db.add_grammar_item(
                    c.db, item['term'], reading=item['reading'] or '', meaning_en=item['meaning_en'] or '',
                    description=item['grammar_point'], example=item['example_sentence'],
                )
            else:
                row = db.add_vocabulary_item(
                    c.db, item['term'], reading=item['reading'] or '', meaning_en=item['meaning_en'] or '',
                    example_jp=item['example_sentence'], example_en=item['example_translation'],
                )
            saved_ids.append({'item_type': item['type'], 'item_id': row.id})
        logger.info("Saved %d generated study items for %s", len(saved_ids), c.user)

    return jsonify({'status': 'success', 'items': items, 'saved': saved_ids})


def _string_list(data: Dict[str, Any], name: str) -> List[str]:
    value = data.get(name) or []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{name} must be a list of strings")
    return value


# ----------------------------------------------------------------------
# Personalized tests
# ----------------------------------------------------------------------
@app.route('/api/personalized-tests', methods=['GET'])
def api_personalized_tests() -> Any:
    c = ctx()
    test_id = request.args.get('test_id')
    if test_id:
        return jsonify({'status': 'success', 'test': db.get_personalized_test(c.db, c.user, test_id)})
    return jsonify({'status': 'success', 'tests': db.list_personalized_tests(c.db, c.user)})


@app.route('/api/personalized-tests', methods=['POST'])
def api_create_personalized_test() -> Any:
    """Build a test around the items an AI analysis of the user's progress recommends."""
    c = ctx()
    data = _json_body()
    question_count = _int_field(data, 'question_count', 20)
    difficulty_level = data.get('difficulty_level', 'mixed')
    focus_areas = _string_list(data, 'focus_areas')
    db.validate_test_options(data.get('test_name'), question_count, difficulty_level)
    model = require_ai()

    analysis = exercises.generate_test_strategy(
        db.get_progress_summary(c.db, c.user, limit=20),
        db.get_recent_review_activity(c.db, c.user, limit=20),
        focus_areas, model,
    )
    test = db.create_personalized_test(
        c.db, c.user, data['test_name'],
        question_count=question_count,
        test_type=data.get('test_type', 'practice_test'),
        difficulty_level=difficulty_level,
        focus_areas=focus_areas,
        analysis=analysis,
    )
    result = db.get_personalized_test(c.db, c.user, test.id)
    return jsonify({'status': 'success', 'test': result}), 201


@app.route('/api/personalized-tests/<int:test_id>/start', methods=['POST'])
def api_start_personalized_test(test_id: int) -> Any:
    c = ctx()
    test = db.start_personalized_test(c.db, c.user, test_id)
    return jsonify({'status': 'success', 'started_at': test.started_at.isoformat()})


@app.route('/api/personalized-tests/<int:test_id>/questions')
def api_personalized_test_questions(test_id: int) -> Any:
    c = ctx()
    test, questions = db.get_test_questions(c.db, c.user, test_id)
    return jsonify({'status': 'success', 'questions': questions, 'test_record': db.to_dict(test)})


@app.route('/api/personalized-tests/<int:test_id>/complete', methods=['POST'])
def api_complete_personalized_test(test_id: int) -> Any:
    c = ctx()
    data = _json_body()
    _require_fields(data, 'score')
    quiz_results = data.get('quiz_results') or []
    if not isinstance(quiz_results, list):
        raise ValidationError("quiz_results must be a list")
    test = db.complete_personalized_test(
        c.db, c.user, test_id, data['score'],
        time_taken_ms=data.get('time_taken_ms'),
        quiz_results=quiz_results,
    )
    return jsonify({'status': 'success', 'score': test.score, 'time_taken_ms': test.time_taken_ms})


# ----------------------------------------------------------------------
# Missing-questions queue
# ----------------------------------------------------------------------
@app.route('/api/missing-questions', methods=['GET'])
def api_missing_questions() -> Any:
    c = ctx()
    entries = db.list_missing_questions(c.db, c.user, status=request.args.get('status') or None)
    return jsonify({'status': 'success', 'missing_questions': entries})


@app.route('/api/missing-questions', methods=['POST'])
def api_enqueue_missing_question() -> Any:
    c = ctx()
    data = _json_body()
    _require_fields(data, 'item_id', 'item_type')
    entry = db.enqueue_missing_question(
        c.db, c.user, data['item_type'], data['item_id'], priority=data.get('priority', 3)
    )
    return jsonify({'status': 'success', 'queue_item': db.to_dict(entry)})


@app.route('/api/missing-questions', methods=['PATCH'])
def api_generate_missing_question() -> Any:
    """Generate a bank question for a queued item (generate_now=true)."""
    c = ctx()
    data = _json_body()
    _require_fields(data, 'queue_id')
    if not data.get('generate_now'):
        raise ValidationError("No action specified")
    entry = db.get_missing_question(c.db, c.user, data['queue_id'])
    item = db.get_item(c.db, entry.item_type, entry.item_id)
    model = require_ai()

    db.update_missing_question(c.db, entry, 'generating')
    try:
        question = exercises.generate_item_question(db.to_dict(item), entry.item_type, model)
    except Exception as e:
        db.update_missing_question(c.db, entry, 'failed', error_message=str(e))
        raise
    row = db.add_question(
        c.db, entry.item_type, entry.item_id, question['question_text'], question['options'],
        question['answer_index'], explanation=question['explanation'] or '',
    )
    db.update_missing_question(c.db, entry, 'completed', question_id=row.id)
    logger.info("Generated bank question %s for queued %s item %s", row.id, entry.item_type, entry.item_id)
    return jsonify({'status': 'success', 'question': db.to_dict(row), 'queue_item': db.to_dict(entry)})


# ----------------------------------------------------------------------
# Section tips
# ----------------------------------------------------------------------
@app.route('/api/tips', methods=['GET'])
def api_tips() -> Any:
    tips = db.list_section_tips(ctx().db, request.args.get('section'))
    return jsonify({'status': 'success', 'tips': tips})


@app.route('/api/tips', methods=['POST'])
def api_add_tip() -> Any:
    data = _json_body()
    tip = db.add_section_tip(ctx().db, data.get('section'), data.get('tip_text'))
    return jsonify({'status': 'success', 'tip': db.to_dict(tip)}), 201


# ----------------------------------------------------------------------
# Study assistant
# ----------------------------------------------------------------------
def _chat_request(data: Dict[str, Any]) -> tuple:
    message = data.get('message')
    if not isinstance(message, str) or not message.strip():
        raise ValidationError("Message is required")
    history = data.get('chat_history') or []
    if not isinstance(history, list):
        raise ValidationError("chat_history must be a list")
    return message, history, _int_field(data, 'days_remaining', 0) or None


@app.route('/api/ai-chat', methods=['POST'])
def api_ai_chat() -> Any:
    c = ctx()
    data = _json_body()
    message, history, days_remaining = _chat_request(data)
    model = require_ai()

    context = db.get_chat_context(c.db, c.user)
    reply = exercises.chat_with_assistant(message, context, model, history=history,
                                          days_remaining=days_remaining)
    activity, _ = db.log_activity(
        c.db, c.user, 'ai_chat', session_id=data.get('session_id'),
        details={'message': message, 'response': reply, 'context_used': sorted(context)},
    )
    return jsonify({
        'status': 'success',
        'response': reply,
        'context_used': context,
        'session_id': activity.session_id,
        'timestamp': activity.timestamp.isoformat(),
    })


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


@app.route('/api/ai-chat-stream', methods=['POST'])
def api_ai_chat_stream() -> Any:
    """Same conversation as /api/ai-chat, sent as server-sent events."""
    c = ctx()
    data = _json_body()
    message, history, days_remaining = _chat_request(data)
    model = require_ai()

    context = db.get_chat_context(c.db, c.user)
    chunks = exercises.stream_chat_with_assistant(message, context, model, history=history,
                                                  days_remaining=days_remaining)

    def generate() -> Iterator[str]:
        parts: List[str] = []
        try:
            for chunk in chunks:
                parts.append(chunk)
                yield _sse({'content': chunk})
        except Exception:
            # headers already sent; report the failure in-band
            logger.exception("Chat stream failed after %d chunks", len(parts))
            yield _sse({'error': 'Stream error occurred'})
            return
        activity, _ = db.log_activity(
            c.db, c.user, 'ai_chat', session_id=data.get('session_id'),
            details={'message': message, 'response': ''.join(parts),
                     'context_used': sorted(context), 'streamed': True},
        )
        yield _sse({'done': True, 'session_id': activity.session_id})

    return Response(stream_with_context(generate()), mimetype='text/event-stream',
                    headers={'Cache-Control': 'no-cache'})


@app.route('/api/ai-chat', methods=['GET'])
def api_ai_chat_history() -> Any:
    c = ctx()
    history = db.get_chat_history(
        c.db, c.user,
        session_id=request.args.get('session_id'),
        limit=request.args.get('limit', 20, type=int),
    )
    return jsonify({'status': 'success', 'chat_history': history})


@app.route('/api/emergency-study-plan', methods=['POST'])
def api_emergency_study_plan() -> Any:
    c = ctx()
    data = _json_body()
    days_remaining = _int_field(data, 'days_remaining', 4)
    hours_per_day = _int_field(data, 'hours_per_day', 8)
    scores = {
        'vocabulary_grammar': data.get('vocabulary_grammar_score'),
        'reading': data.get('reading_score'),
    }
    weak_areas = _string_list(data, 'weak_areas') or db.get_latest_focus_areas(c.db, c.user)
    model = require_ai()

    plan = exercises.generate_emergency_study_plan(scores, days_remaining, hours_per_day, weak_areas, model)
    user_context = {
        'vocabulary_grammar_score': scores['vocabulary_grammar'],
        'reading_score': scores['reading'],
        'days_remaining': days_remaining,
        'hours_per_day': hours_per_day,
        'weak_areas': weak_areas,
    }
    activity, _ = db.log_activity(c.db, c.user, 'emergency_study_plan_generated',
                                  details={'plan': plan, 'user_context': user_context})
    return jsonify({
        'status': 'success',
        'study_plan': plan,
        'user_context': user_context,
        'generated_at': activity.timestamp.isoformat(),
    })


@app.route('/api/emergency-study-plan', methods=['GET'])
def api_latest_study_plan() -> Any:
    c = ctx()
    latest = db.get_latest_activity(c.db, c.user, 'emergency_study_plan_generated')
    if latest is None:
        raise NotFoundError("No study plan found")
    return jsonify({
        'status': 'success',
        'study_plan': latest.details.get('plan'),
        'user_context': latest.details.get('user_context'),
        'generated_at': latest.timestamp.isoformat(),
    })


# ----------------------------------------------------------------------
# Reading practice
# ----------------------------------------------------------------------
@app.route('/api/reading-practice', methods=['POST'])
def api_reading_practice() -> Any:
    c = ctx()
    data = _json_body()
    passage = data.get('passage')
    if not isinstance(passage, str) or len(passage.strip()) < 100:
        raise ValidationError("Passage must be at least 100 characters")
    difficulty = data.get('difficulty') or 'N1'
    question_count = _int_field(data, 'question_count', 5)
    model = require_ai()

    practice = exercises.generate_reading_practice(passage, model, difficulty=difficulty,
                                                   question_count=question_count)
    db.log_activity(c.db, c.user, 'reading_practice_generated', details={
        'passage_length': len(passage.strip()),
        'question_count': len(practice['questions']),
        'difficulty': difficulty,
    })
    return jsonify({'status': 'success', 'reading_practice': practice})


@app.route('/api/reading-practice', methods=['GET'])
def api_reading_passages() -> Any:
    topic = request.args.get('topic')
    passages = [p for p in SAMPLE_PASSAGES if not topic or p['topic'] == topic]
    return jsonify({'status': 'success', 'passages': passages})


@app.route('/ai_status')
def ai_status() -> Any:
    """Report whether AI features are available."""
    return jsonify({
        'status': 'success',
        'ai_enabled': ai_model is not None,
        'model': ai_model.model_name if ai_model is not None else None,
    })


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='JLPT Study API')
    parser.add_argument('--host', default='127.0.0.1', help='Host IP to bind to (default: 127.0.0.1)')
    parser.add_argument('--port', type=int, default=5000, help='Port to bind to (default: 5000)')
    parser.add_argument('--openai-key', help='OpenAI API Key')
    parser.add_argument('--openrouter-key', help='OpenRouter API Key (overrides OpenAI key)')
    parser.add_argument('--model', default=DEFAULT_MODEL, help='AI model name')
    parser.add_argument('--debug', action='store_true', help='Enable debug mode')

    args = parser.parse_args()

    if args.debug:
        DEBUG = True
        logging.getLogger().setLevel(logging.DEBUG)

    # Re-initialize AI if arguments are provided
    if args.openai_key or args.openrouter_key or args.model != DEFAULT_MODEL:
        api_key = args.openrouter_key or args.openai_key
        base_url = "https://openrouter.ai/api/v1" if args.openrouter_key else None
        init_ai(api_key=api_key, base_url=base_url, model_name=args.model)

    if not db.is_db_initialized():
        db.init_db()
        logger.info("Database initialized")

    logger.info("Starting server on http://%s:%s", args.host, args.port)
    app.run(debug=DEBUG, host=args.host, port=args.port)
