from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class StudyItemRow:
    term: str
    reading: Optional[str]
    meaning_en: Optional[str]
    type: str = "vocab"
    example_sentence: Optional[str] = None
    example_translation: Optional[str] = None
    grammar_point: Optional[str] = None


@dataclass
class QuestionRow:
    question_text: str
    options: List[str] = field(default_factory=list)
    answer_index: int = 0
    explanation: Optional[str] = None
    difficulty_level: Optional[str] = None


QUESTION_PROMPT = """Generate {count} JLPT N1 multiple-choice questions ({difficulty} level) for these items:

{items}

OUTPUT FORMAT (JSON array only):
[{{
  "question_text": "Complete: 彼の説明は___だった。",
  "options": ["曖昧", "明確", "具体的", "詳細"],
  "answer_index": 0,
  "explanation": "曖昧 means 'vague', fitting unclear explanations.",
  "difficulty_level": "{difficulty}"
}}]

RULES:
- Exactly 4 options per question; answer_index is the 0-based index of the correct option.
- Test practical usage and understanding, not just translation.
- Randomize the position of the correct answer.
"""

EXPLANATION_PROMPT = """Briefly explain why "{correct}" is correct and "{user_answer}" is wrong for this JLPT {item_type} question.

Question: {question}
Options: {options}
Your answer: {user_answer} ❌
Correct: {correct} ✅

Provide a concise explanation in this format:
**Why "{correct}" is correct:** [1-2 sentences]
**Why "{user_answer}" is wrong:** [1-2 sentences]
**💡 Memory tip:** [1 short tip]

Keep it under 100 words total. Use simple language and be encouraging."""

HINT_PROMPT = """Quick study hint for: **{term}** ({reading}) - {meaning}
{context}
Give a concise hint in this format:
**🧠 Memory trick:** [1 sentence mnemonic]
**📝 Usage:** [When/how to use - 1 sentence]
**⚠️ Don't confuse with:** [Similar item - 1 sentence]

Keep under 60 words total. Use emojis and markdown formatting."""

WEAKNESS_PROMPT = """Analyze this JLPT student's learning data and provide personalized recommendations.

Recent Activity:
{activity}

Overall Progress Summary:
{progress}

Return ONLY valid JSON in this format:
{{
  "weakness_areas": [
    {{"category": "Grammar Pattern Recognition", "severity": "high",
      "description": "Struggles with identifying correct grammar patterns in context",
      "examples": ["に関して vs について"]}}
  ],
  "learning_patterns": {{"mistake_types": ["kanji reading confusion"], "improvement_rate": "steady"}},
  "recommendations": [
    {{"priority": "high", "action": "Focus on grammar pattern drills",
      "specific_steps": ["Practice 10 conditional grammar patterns daily"],
      "estimated_time": "15-20 minutes daily"}}
  ],
  "focus_areas": ["grammar patterns"],
  "strengths": ["vocabulary retention"]
}}"""

INTENSIVE_REVIEW_PROMPT = """Create a {minutes}-minute intensive review session for a JLPT N1 student
targeting the items they miss most often:

{items}

Return ONLY valid JSON in this format:
{{
  "session_title": "...",
  "total_minutes": {minutes},
  "phases": [
    {{"name": "Warm-up recall", "minutes": 5, "activities": ["..."], "items": ["..."]}}
  ],
  "item_drills": [
    {{"term": "...", "mnemonic": "...", "practice_sentences": ["..."], "common_mistake": "..."}}
  ],
  "closing_tip": "..."
}}"""

STUDY_ITEMS_PROMPT = """Generate {count} JLPT {level} {category} items ({difficulty} level). {focus}

OUTPUT FORMAT (JSON array only):
[{{
  "term": "に関して",
  "reading": "にかんして",
  "meaning_en": "regarding, concerning",
  "example_sentence": "この問題に関して議論しましょう。",
  "example_translation": "Let's discuss regarding this problem.",
  "grammar_point": "Used to indicate the topic of discussion (grammar items only)",
  "type": "vocab or grammar"
}}]

Make sure all items are appropriate for {level} level and practical for daily use.
Vocabulary items ALWAYS include a reading in hiragana/katakana and an English meaning."""

TEST_STRATEGY_PROMPT = """Analyze this JLPT N1 student's performance and design a personalized practice test.

Progress by item (least accurate first):
{progress}

Recent review activity:
{activity}

Focus areas requested: {focus}

Return ONLY valid JSON in this format:
{{
  "performance_summary": "Brief analysis of strengths and weaknesses",
  "recommended_focus": ["area1", "area2"],
  "difficulty_distribution": {{"easy": 30, "medium": 50, "hard": 20}},
  "recommended_items": [
    {{"item_id": 12, "item_type": "vocab", "priority": 5, "reason": "missed in most recent reviews"}}
  ],
  "test_strategy": "How the test is designed",
  "estimated_difficulty": "easy|medium|hard|mixed"
}}

Only recommend item_id/item_type pairs listed above. Priority runs from 1 (low) to 5 (high)."""

ITEM_QUESTION_PROMPT = """Create one multiple-choice question for this Japanese {kind} item:

Term: {term}
Reading: {reading}
English meaning: {meaning_en}
Vietnamese meaning: {meaning_vi}
Example: {example}

The question should test understanding of the item, be clear, and have 4 plausible options.

Return ONLY a JSON object in this format:
{{
  "question_text": "Question text here",
  "options": ["Option A", "Option B", "Option C", "Option D"],
  "answer_index": 0,
  "explanation": "Why this is the correct answer"
}}"""

CHAT_PROMPT = """You are a study assistant for a student preparing for the JLPT N1.
{days}
Student context:
- Weekly accuracy: {weekly_accuracy}%
- Current streak: {streak_days} days
- Weak areas: {weak_areas}
- Recent study: {study_history}

Conversation so far:
{history}

Student: {message}

Reply as the assistant. Be concise, specific to the student's data, and encouraging."""

EMERGENCY_PLAN_PROMPT = """A JLPT N1 student has {days_remaining} days left before the exam and can study {hours_per_day} hours per day.
Current section scores: vocabulary/grammar {vocabulary_grammar}, reading {reading}.
Weak areas: {weak_areas}

Create an intensive study plan that maximizes the score gain in the time left.

Return ONLY valid JSON in this format:
{{
  "strategy_summary": "...",
  "priority_areas": ["..."],
  "daily_schedule": [
    {{"day": 1, "focus": "...", "blocks": [{{"hours": 2, "activity": "...", "materials": "..."}}]}}
  ],
  "exam_day_tips": ["..."]
}}"""

READING_PRACTICE_PROMPT = """Create JLPT {level} reading comprehension practice for this passage:

{passage}

Write {count} multiple-choice questions that test main idea, detail, inference and the
author's intent, the way the JLPT reading section does.

Return ONLY valid JSON in this format:
{{
  "summary": "One-sentence English summary of the passage",
  "questions": [
    {{"question_text": "筆者の主張として最も適切なものはどれか。",
      "options": ["...", "...", "...", "..."],
      "answer_index": 0,
      "explanation": "..."}}
  ],
  "vocabulary": [
    {{"term": "...", "reading": "...", "meaning_en": "..."}}
  ]
}}"""

SAMPLE_PASSAGES = [
    {
        "id": "passage_1",
        "title": "日本の少子高齢化社会",
        "topic": "society",
        "difficulty": "N1",
        "content": (
            "日本は現在、世界で類を見ない速度で少子高齢化が進行している。65歳以上の高齢者人口が全人口の"
            "約三割を占め、出生率も低下を続けている。この現象は、労働力不足、社会保障費の増大、地域経済の"
            "衰退など、多方面にわたって深刻な影響を及ぼしている。政府は働き方改革や子育て支援の充実を図って"
            "いるが、根本的な解決には至っていない。専門家の間では、移民政策の見直しや、技術の活用による"
            "生産性向上が議論されているものの、いずれも即効性に欠け、長期的な視点での社会構造の変革が"
            "求められている。"
        ),
    },
    {
        "id": "passage_2",
        "title": "人工知能と労働市場の変化",
        "topic": "technology",
        "difficulty": "N1",
        "content": (
            "人工知能の急速な発達は、労働市場に大きな変化をもたらしている。従来、人間にしかできないとされて"
            "いた創造的な作業や複雑な判断を要する業務においても、AIが人間と同等の性能を発揮する例が増えて"
            "いる。多くの職種が自動化の波にさらされる一方で、新たな雇用機会も生まれている。企業にとっては"
            "効率化が期待される反面、従業員の再教育が急務となっており、技術の進歩に教育制度が追いついて"
            "いないのが現状である。"
        ),
    },
]
