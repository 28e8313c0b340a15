"""
Tests for the Flask JSON API.
AI routes run against a mock model patched onto the app module.
"""

import os
import json
import tempfile
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from typing import Any, Generator
from unittest.mock import MagicMock

from jlpt_study import db

USER = {"X-User-Id": "student-1"}


@pytest.fixture(scope="function")
def temp_db() -> Generator[None, None, None]:
    """Setup transient SQLite DB for testing."""
    fd, path = tempfile.mkstemp()
    os.close(fd)
    db.engine = create_engine(f"sqlite:///{path}")
    db.SessionLocal = sessionmaker(bind=db.engine, expire_on_commit=False)
    db.Base.metadata.create_all(bind=db.engine)
    yield
    db.engine.dispose()
    os.unlink(path)


@pytest.fixture
def flask_app(temp_db: Any) -> Any:
    os.environ["TEST_MODE"] = "1"
    # Import app after setting TEST_MODE
    import app as flask_app
    flask_app.app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(flask_app: Any) -> Any:
    with flask_app.app.test_client() as c:
        yield c


@pytest.fixture
def items(temp_db: Any) -> dict:
    session = db.get_session()
    vocab = db.add_vocabulary_item(session, "曖昧", reading="あいまい", meaning_en="vague")
    grammar = db.add_grammar_item(session, "〜ものの", reading="ものの", meaning_en="although")
    db.add_question(session, "vocab", vocab.id, "彼の説明は___だった。", ["曖昧", "明確", "具体的", "詳細"], 0)
    ids = {"vocab": vocab.id, "grammar": grammar.id}
    session.close()
    return ids


class MockResponse:
    def __init__(self, content: str) -> None:
        self.content = content

    def text(self) -> str:
        return self.content


@pytest.fixture
def mock_model(flask_app: Any, monkeypatch: Any) -> MagicMock:
    model = MagicMock()
    model.model_name = "mock-model"
    monkeypatch.setattr(flask_app, "ai_model", model)
    return model


def _respond_with(model: MagicMock, payload: Any) -> None:
    content = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    model.prompt.return_value = MockResponse(content)


class TestIdentity:
    def test_missing_identity_is_401(self, client: Any) -> None:
        resp = client.get("/api/flashcards")
        assert resp.status_code == 401
        assert resp.get_json()["status"] == "error"

    def test_session_user_id_accepted(self, client: Any) -> None:
        with client.session_transaction() as sess:
            sess["user_id"] = "student-2"
        resp = client.get("/api/dashboard-stats")
        assert resp.status_code == 200

    def test_ai_status_is_public(self, client: Any) -> None:
        resp = client.get("/ai_status")
        assert resp.status_code == 200
        assert resp.get_json()["ai_enabled"] is False


class TestFlashcardRoutes:
    def test_list_due_flashcards(self, client: Any, items: dict) -> None:
        resp = client.get("/api/flashcards?section=vocab&filter=due", headers=USER)
        assert resp.status_code == 200
        cards = resp.get_json()["flashcards"]
        assert [c["id"] for c in cards] == [items["vocab"]]

    def test_known_review_schedules_six_days(self, client: Any, items: dict) -> None:
        resp = client.patch("/api/flashcards", headers=USER,
                            json={"item_id": items["vocab"], "item_type": "vocab", "known": True})
        assert resp.status_code == 200
        progress = resp.get_json()["progress"]
        assert progress["interval"] == 6
        assert progress["ease_factor"] == pytest.approx(2.5)
        assert progress["mastery_level"] == "learning"

        due = client.get("/api/flashcards?section=vocab&filter=due", headers=USER).get_json()["flashcards"]
        assert due == []
        activity = client.get("/api/activity?activity_type=flashcard_review", headers=USER).get_json()
        assert len(activity["activities"]) == 1

    def test_quality_review(self, client: Any, items: dict) -> None:
        resp = client.patch("/api/flashcards", headers=USER,
                            json={"item_id": items["grammar"], "item_type": "grammar", "quality": 1})
        assert resp.get_json()["progress"]["interval"] == 1

    def test_missing_known_is_400(self, client: Any, items: dict) -> None:
        resp = client.patch("/api/flashcards", headers=USER, json={"item_id": items["vocab"], "item_type": "vocab"})
        assert resp.status_code == 400

    def test_invalid_quality_is_400(self, client: Any, items: dict) -> None:
        resp = client.patch("/api/flashcards", headers=USER,
                            json={"item_id": items["vocab"], "item_type": "vocab", "quality": 9})
        assert resp.status_code == 400
        assert "quality" in resp.get_json()["message"]

    @pytest.mark.parametrize("quality", [None, "²"])
    def test_unusable_quality_is_400_and_leaves_state_alone(self, client: Any, items: dict, quality: Any) -> None:
        resp = client.patch("/api/flashcards", headers=USER,
                            json={"item_id": items["vocab"], "item_type": "vocab", "quality": quality})
        assert resp.status_code == 400
        cards = client.get("/api/flashcards?section=vocab&filter=new", headers=USER).get_json()["flashcards"]
        assert [c["id"] for c in cards] == [items["vocab"]]

    def test_unknown_item_is_404(self, client: Any, items: dict) -> None:
        resp = client.patch("/api/flashcards", headers=USER,
                            json={"item_id": 999, "item_type": "vocab", "known": True})
        assert resp.status_code == 404


class TestStudyRoutes:
    def test_items_by_section(self, client: Any, items: dict) -> None:
        resp = client.get("/api/items?section=grammar", headers=USER)
        assert [i["pattern"] for i in resp.get_json()["items"]] == ["〜ものの"]
        assert client.get("/api/items?section=idiom", headers=USER).status_code == 400

    def test_questions(self, client: Any, items: dict) -> None:
        resp = client.get("/api/questions?section=vocab&filter=new", headers=USER)
        questions = resp.get_json()["questions"]
        assert len(questions) == 1
        assert questions[0]["item"]["term"] == "曖昧"

    def test_quiz_answer_activity(self, client: Any, items: dict) -> None:
        resp = client.post("/api/activity", headers=USER, json={
            "activity_type": "quiz_answer", "item_id": items["vocab"], "item_type": "vocab",
            "details": {"correct": True}, "response_time_ms": 2300,
        })
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["progress"]["correct_count"] == 1
        assert body["activity"]["details"]["quality"] == 4

        stats = client.get("/api/dashboard-stats", headers=USER).get_json()["stats"]
        assert stats["total_studied_today"] == 1
        assert stats["streak_days"] == 1

    def test_quiz_answer_without_item_is_400(self, client: Any) -> None:
        resp = client.post("/api/activity", headers=USER, json={"activity_type": "quiz_answer"})
        assert resp.status_code == 400

    def test_activity_type_required(self, client: Any) -> None:
        assert client.post("/api/activity", headers=USER, json={}).status_code == 400


class TestUserContentRoutes:
    ENTRY = {"term": "懸念", "reading": "けねん", "meaning_en": "concern", "example_jp": "健康を懸念する。"}

    def test_crud_cycle(self, client: Any) -> None:
        resp = client.post("/api/user-vocabulary", headers=USER, json=self.ENTRY)
        assert resp.status_code == 201
        entry_id = resp.get_json()["vocabulary"]["id"]

        resp = client.put("/api/user-vocabulary", headers=USER, json={"id": entry_id, "meaning_en": "worry"})
        assert resp.get_json()["vocabulary"]["meaning_en"] == "worry"

        listed = client.get("/api/user-vocabulary?search=WORRY", headers=USER).get_json()["vocabulary"]
        assert [e["id"] for e in listed] == [entry_id]

        other = {"X-User-Id": "student-2"}
        assert client.delete(f"/api/user-vocabulary?id={entry_id}", headers=other).status_code == 404
        assert client.delete(f"/api/user-vocabulary?id={entry_id}", headers=USER).status_code == 200
        assert client.get("/api/user-vocabulary", headers=USER).get_json()["vocabulary"] == []

    def test_put_blank_required_field_is_400(self, client: Any) -> None:
        entry_id = client.post("/api/user-vocabulary", headers=USER, json=self.ENTRY).get_json()["vocabulary"]["id"]
        resp = client.put("/api/user-vocabulary", headers=USER, json={"id": entry_id, "reading": ""})
        assert resp.status_code == 400
        listed = client.get("/api/user-vocabulary", headers=USER).get_json()["vocabulary"]
        assert listed[0]["reading"] == "けねん"

    def test_missing_fields_is_400(self, client: Any) -> None:
        resp = client.post("/api/user-grammar", headers=USER, json={"pattern": "〜ものの"})
        assert resp.status_code == 400


class TestPracticeListRoutes:
    def test_list_lifecycle(self, client: Any, items: dict) -> None:
        resp = client.post("/api/practice-lists", headers=USER, json={
            "name": "Weak", "items": [{"item_id": items["vocab"], "item_type": "vocab"}],
        })
        assert resp.status_code == 201
        list_id = resp.get_json()["practice_list"]["id"]

        resp = client.patch("/api/practice-lists", headers=USER, json={
            "id": list_id, "add_items": [{"item_id": items["grammar"], "item_type": "grammar", "priority": 2}],
        })
        assert resp.get_json()["practice_list"]["item_count"] == 2

        detail = client.get(f"/api/practice-lists?id={list_id}&include_items=true", headers=USER).get_json()
        assert detail["practice_list"]["items"][0]["item"]["pattern"] == "〜ものの"

        assert client.delete("/api/practice-lists", headers=USER).status_code == 400
        assert client.delete(f"/api/practice-lists?id={list_id}", headers=USER).status_code == 200
        assert client.get("/api/practice-lists", headers=USER).get_json()["practice_lists"] == []


    def test_non_numeric_priority_is_400(self, client: Any, items: dict) -> None:
        resp = client.post("/api/practice-lists", headers=USER, json={
            "name": "Weak", "items": [{"item_id": items["vocab"], "item_type": "vocab", "priority": "high"}],
        })
        assert resp.status_code == 400
        assert "priority" in resp.get_json()["message"]


class TestAIRoutes:
    def test_ai_not_configured_is_503(self, client: Any) -> None:
        resp = client.post("/api/ai-hint", headers=USER, json={"term": "懸念", "item_type": "vocab"})
        assert resp.status_code == 503

    def test_generate_questions_saves_them(self, client: Any, items: dict, mock_model: MagicMock) -> None:
        _respond_with(mock_model, [{
            "question_text": "Complete: 彼の説明は___だった。",
            "options": ["曖昧", "明確", "具体的", "詳細"],
            "answer_index": 0,
        }])
        resp = client.post("/api/ai-questions", headers=USER, json={"item_type": "vocab", "count": 1})
        assert resp.status_code == 200
        saved = resp.get_json()["questions"]
        assert saved[0]["ai_model"] == "mock-model"

        listed = client.get("/api/ai-questions?item_type=vocab", headers=USER).get_json()["questions"]
        assert [q["id"] for q in listed] == [saved[0]["id"]]

    def test_unusable_ai_output_is_502(self, client: Any, items: dict, mock_model: MagicMock) -> None:
        _respond_with(mock_model, "Sorry, I can't do that.")
        resp = client.post("/api/ai-questions", headers=USER, json={"item_type": "vocab"})
        assert resp.status_code == 502

    def test_hint_and_explanation(self, client: Any, mock_model: MagicMock) -> None:
        _respond_with(mock_model, "Memory trick")
        hint = client.post("/api/ai-hint", headers=USER, json={"term": "懸念", "item_type": "vocab"})
        assert hint.get_json()["hint"] == "Memory trick"

        resp = client.post("/api/ai-explanation", headers=USER, json={
            "question": "Q", "user_answer": "明確", "correct_answer": "曖昧", "options": ["曖昧", "明確"],
        })
        assert resp.get_json()["explanation"] == "Memory trick"
        missing = client.post("/api/ai-explanation", headers=USER, json={"question": "Q"})
        assert missing.status_code == 400

    def test_weakness_analysis_needs_data(self, client: Any, mock_model: MagicMock) -> None:
        resp = client.post("/api/weakness-analysis", headers=USER, json={})
        assert resp.status_code == 400

    def test_weakness_analysis(self, client: Any, items: dict, mock_model: MagicMock) -> None:
        client.patch("/api/flashcards", headers=USER,
                     json={"item_id": items["vocab"], "item_type": "vocab", "known": False})
        _respond_with(mock_model, {"focus_areas": ["vocabulary nuance"]})
        resp = client.post("/api/weakness-analysis", headers=USER, json={})
        body = resp.get_json()
        assert body["analysis"]["focus_areas"] == ["vocabulary nuance"]
        assert body["data_points"] == {"activities": 1, "tracked_items": 1}

    def test_intensive_review_round_trip(self, client: Any, items: dict, mock_model: MagicMock) -> None:
        for _ in range(3):
            client.patch("/api/flashcards", headers=USER,
                         json={"item_id": items["vocab"], "item_type": "vocab", "known": False})
        _respond_with(mock_model, {"session_title": "Focus on 曖昧", "phases": []})
        resp = client.post("/api/intensive-review", headers=USER, json={"session_length": 20})
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["target_items"][0]["term"] == "曖昧"
        assert body["session_info"]["length"] == 20

        history = client.get("/api/intensive-review", headers=USER).get_json()["review_sessions"]
        assert len(history) == 1
        assert history[0]["review_session"]["session_title"] == "Focus on 曖昧"

    def test_intensive_review_without_mistakes_is_400(self, client: Any, items: dict, mock_model: MagicMock) -> None:
        resp = client.post("/api/intensive-review", headers=USER, json={})
        assert resp.status_code == 400

    def test_ai_flashcards_saved_to_bank(self, client: Any, mock_model: MagicMock) -> None:
        _respond_with(mock_model, [
            {"term": "語彙", "reading": "ごい", "meaning_en": "vocabulary", "type": "vocab",
             "example_sentence": "語彙を増やす。"},
            {"term": "に関して", "reading": "にかんして", "meaning_en": "regarding", "type": "grammar"},
        ])
        resp = client.post("/api/ai-flashcards", headers=USER, json={"category": "mixed", "save": True})
        body = resp.get_json()
        assert [s["item_type"] for s in body["saved"]] == ["vocab", "grammar"]
        words = client.get("/api/items?section=word", headers=USER).get_json()["items"]
        assert words[0]["term"] == "語彙"
        assert words[0]["example_jp"] == "語彙を増やす。"


class TestPersonalizedTestRoutes:
    def test_full_lifecycle(self, client: Any, items: dict, mock_model: MagicMock) -> None:
        _respond_with(mock_model, {
            "performance_summary": "New learner",
            "recommended_items": [
                {"item_id": items["vocab"], "item_type": "vocab", "priority": 5},
                {"item_id": items["grammar"], "item_type": "grammar", "priority": 4},
            ],
        })
        resp = client.post("/api/personalized-tests", headers=USER,
                           json={"test_name": "Week 1", "question_count": 2, "focus_areas": ["nuance"]})
        assert resp.status_code == 201
        test = resp.get_json()["test"]
        assert test["total_questions"] == 1
        assert test["focus_areas"] == ["nuance"]
        assert test["ai_analysis"]["performance_summary"] == "New learner"

        queued = client.get("/api/missing-questions", headers=USER).get_json()["missing_questions"]
        assert [(q["item_type"], q["item_id"]) for q in queued] == [("grammar", items["grammar"])]

        assert client.post(f"/api/personalized-tests/{test['id']}/start", headers=USER).status_code == 200
        body = client.get(f"/api/personalized-tests/{test['id']}/questions", headers=USER).get_json()
        assert body["questions"][0]["item"]["term"] == "曖昧"
        assert body["test_record"]["started_at"] is not None

        resp = client.post(f"/api/personalized-tests/{test['id']}/complete", headers=USER,
                           json={"score": 100, "time_taken_ms": 45000, "quiz_results": []})
        assert resp.get_json()["score"] == 100

        listed = client.get("/api/personalized-tests", headers=USER).get_json()["tests"]
        assert listed[0]["completed_at"] is not None
        detail = client.get(f"/api/personalized-tests?test_id={test['id']}", headers=USER).get_json()["test"]
        assert len(detail["questions"]) == 1

    def test_name_checked_before_ai(self, client: Any, mock_model: MagicMock) -> None:
        resp = client.post("/api/personalized-tests", headers=USER, json={"question_count": 5})
        assert resp.status_code == 400
        mock_model.prompt.assert_not_called()

    def test_other_users_test_is_404(self, client: Any, items: dict, mock_model: MagicMock) -> None:
        _respond_with(mock_model, {"recommended_items": []})
        test_id = client.post("/api/personalized-tests", headers=USER,
                              json={"test_name": "Mine", "question_count": 1}).get_json()["test"]["id"]
        other = {"X-User-Id": "student-2"}
        assert client.get(f"/api/personalized-tests/{test_id}/questions", headers=other).status_code == 404
        resp = client.post(f"/api/personalized-tests/{test_id}/complete", headers=USER, json={})
        assert resp.status_code == 400


class TestMissingQuestionRoutes:
    def test_generate_now_adds_bank_question(self, client: Any, items: dict, mock_model: MagicMock) -> None:
        resp = client.post("/api/missing-questions", headers=USER,
                           json={"item_id": items["grammar"], "item_type": "grammar", "priority": 4})
        queue_id = resp.get_json()["queue_item"]["id"]
        _respond_with(mock_model, {"question_text": "約束した___、行けなかった。",
                                   "options": ["ものの", "ので", "から", "のに"], "answer_index": 0})

        assert client.patch("/api/missing-questions", headers=USER, json={"queue_id": queue_id}).status_code == 400
        resp = client.patch("/api/missing-questions", headers=USER,
                            json={"queue_id": queue_id, "generate_now": True})
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["queue_item"]["status"] == "completed"
        assert body["queue_item"]["question_id"] == body["question"]["id"]

        bank = client.get("/api/questions?section=grammar", headers=USER).get_json()["questions"]
        assert [q["id"] for q in bank] == [body["question"]["id"]]

    def test_failed_generation_is_recorded(self, client: Any, items: dict, mock_model: MagicMock) -> None:
        queue_id = client.post("/api/missing-questions", headers=USER,
                               json={"item_id": items["vocab"], "item_type": "vocab"}).get_json()["queue_item"]["id"]
        _respond_with(mock_model, "no idea")
        resp = client.patch("/api/missing-questions", headers=USER, json={"queue_id": queue_id, "generate_now": True})
        assert resp.status_code == 502
        failed = client.get("/api/missing-questions?status=failed", headers=USER).get_json()["missing_questions"]
        assert failed[0]["error_message"]

    def test_unknown_item_is_404(self, client: Any, items: dict) -> None:
        resp = client.post("/api/missing-questions", headers=USER, json={"item_id": 999, "item_type": "vocab"})
        assert resp.status_code == 404


class TestTipRoutes:
    def test_add_and_list(self, client: Any) -> None:
        resp = client.post("/api/tips", headers=USER, json={"section": "listening", "tip_text": "Preview the choices."})
        assert resp.status_code == 201
        tips = client.get("/api/tips?section=listening", headers=USER).get_json()["tips"]
        assert [t["tip_text"] for t in tips] == ["Preview the choices."]

    def test_invalid_section_is_400(self, client: Any) -> None:
        assert client.get("/api/tips", headers=USER).status_code == 400
        assert client.get("/api/tips?section=grammar", headers=USER).status_code == 400


class TestAssistantRoutes:
    def test_chat_is_logged_per_session(self, client: Any, mock_model: MagicMock) -> None:
        _respond_with(mock_model, "Review 〜ものの today.")
        resp = client.post("/api/ai-chat", headers=USER,
                           json={"message": "What should I study?", "session_id": "chat-1", "days_remaining": 4})
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["response"] == "Review 〜ものの today."
        assert body["session_id"] == "chat-1"
        assert set(body["context_used"]) == {"weekly_accuracy", "streak_days", "weak_areas", "study_history"}

        history = client.get("/api/ai-chat?session_id=chat-1", headers=USER).get_json()["chat_history"]
        assert history[0]["user_message"] == "What should I study?"
        assert client.get("/api/ai-chat?session_id=other", headers=USER).get_json()["chat_history"] == []

    def test_empty_message_is_400(self, client: Any, mock_model: MagicMock) -> None:
        assert client.post("/api/ai-chat", headers=USER, json={"message": " "}).status_code == 400

    def test_emergency_plan_falls_back_to_latest_focus_areas(self, client: Any, mock_model: MagicMock) -> None:
        assert client.get("/api/emergency-study-plan", headers=USER).status_code == 404
        client.post("/api/activity", headers=USER, json={
            "activity_type": "weakness_analysis_generated",
            "details": {"analysis": {"focus_areas": ["conditionals"]}},
        })
        _respond_with(mock_model, {"strategy_summary": "Drill conditionals"})
        resp = client.post("/api/emergency-study-plan", headers=USER,
                           json={"vocabulary_grammar_score": 17, "reading_score": 21, "days_remaining": 3})
        body = resp.get_json()
        assert body["user_context"]["weak_areas"] == ["conditionals"]
        assert body["study_plan"]["strategy_summary"] == "Drill conditionals"

        latest = client.get("/api/emergency-study-plan", headers=USER).get_json()
        assert latest["study_plan"]["strategy_summary"] == "Drill conditionals"
        assert latest["user_context"]["days_remaining"] == 3

    def test_streamed_chat_sends_chunks_then_logs(self, client: Any, mock_model: MagicMock) -> None:
        mock_model.stream.return_value = iter(["Review ", "〜ものの", " today."])
        resp = client.post("/api/ai-chat-stream", headers=USER,
                           json={"message": "What now?", "session_id": "s-1"})
        assert resp.status_code == 200
        assert resp.mimetype == "text/event-stream"
        events = [json.loads(line[len("data: "):])
                  for line in resp.get_data(as_text=True).split("\n\n") if line]
        assert [e["content"] for e in events[:-1]] == ["Review ", "〜ものの", " today."]
        assert events[-1] == {"done": True, "session_id": "s-1"}

        history = client.get("/api/ai-chat?session_id=s-1", headers=USER).get_json()["chat_history"]
        assert history[0]["ai_response"] == "Review 〜ものの today."

    def test_stream_failure_is_reported_as_event(self, client: Any, mock_model: MagicMock) -> None:
        def broken() -> Any:
            yield "Partial"
            raise RuntimeError("connection reset")

        mock_model.stream.return_value = broken()
        resp = client.post("/api/ai-chat-stream", headers=USER, json={"message": "Hi"})
        body = resp.get_data(as_text=True)
        assert '"content": "Partial"' in body
        assert '"error": "Stream error occurred"' in body
        assert client.get("/api/ai-chat", headers=USER).get_json()["chat_history"] == []

    def test_streamed_chat_validates_before_streaming(self, client: Any, mock_model: MagicMock) -> None:
        resp = client.post("/api/ai-chat-stream", headers=USER, json={"message": ""})
        assert resp.status_code == 400
        mock_model.stream.assert_not_called()


class TestReadingPracticeRoutes:
    def test_generate_practice_and_log(self, client: Any, mock_model: MagicMock) -> None:
        from jlpt_study.structured import SAMPLE_PASSAGES
        _respond_with(mock_model, {
            "summary": "Japan's ageing society",
            "questions": [{"question_text": "筆者の主張は何か。", "options": ["A", "B", "C", "D"], "answer_index": 2}],
        })
        resp = client.post("/api/reading-practice", headers=USER,
                           json={"passage": SAMPLE_PASSAGES[0]["content"], "question_count": 3})
        practice = resp.get_json()["reading_practice"]
        assert resp.status_code == 200
        assert practice["questions"][0]["answer_index"] == 2
        assert practice["vocabulary"] == []

        activities = client.get("/api/activity", headers=USER).get_json()["activities"]
        assert activities[0]["activity_type"] == "reading_practice_generated"
        assert activities[0]["details"]["question_count"] == 1

    def test_short_passage_is_400_before_ai(self, client: Any, mock_model: MagicMock) -> None:
        resp = client.post("/api/reading-practice", headers=USER, json={"passage": "短い文章。"})
        assert resp.status_code == 400
        mock_model.prompt.assert_not_called()

    def test_sample_passages_filtered_by_topic(self, client: Any) -> None:
        passages = client.get("/api/reading-practice?topic=technology", headers=USER).get_json()["passages"]
        assert [p["id"] for p in passages] == ["passage_2"]
        assert len(client.get("/api/reading-practice", headers=USER).get_json()["passages"]) == 2
