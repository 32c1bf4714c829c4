"""
AI assistant mediator.

Builds prompts from platform data, picks an upstream model per task, and
normalizes the model's JSON. Recommendation requests always return something
useful (a fixed fallback when the model misbehaves); the other structured
tasks raise ``UpstreamServiceError`` instead. Conversation transcripts live
in the ``chathistory`` collection and only ever grow.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional

from openai import OpenAI

import config
import policy
from database import DataStore, now_utc
from errors import NotFoundError, UpstreamServiceError, ValidationError
from schemas import ChatHistory, ChatHistoryMessage

logger = logging.getLogger(__name__)

REASONING_TASKS = ("recommendation", "research")

FALLBACK_RECOMMENDATIONS = [
    {
        "title": "Stay Consistent",
        "description": "Set aside regular study time each day to build a habit.",
        "priority": "high",
        "category": "study_habit",
        "estimatedTime": "30",
    },
    {
        "title": "Review Past Material",
        "description": "Go over previous lessons to reinforce your understanding.",
        "priority": "medium",
        "category": "concept_review",
        "estimatedTime": "20",
    },
]

FALLBACK_RESOURCES = [
    {
        "title": "Official documentation",
        "type": "documentation",
        "author": "Course technology maintainers",
        "url": "Search online",
        "description": "The primary reference for the tools used in this course.",
        "difficulty": "beginner",
        "isFree": True,
    },
    {
        "title": "Practice exercises",
        "type": "practice",
        "author": "Various",
        "url": "Search online",
        "description": "Short daily exercises to turn the lessons into skills.",
        "difficulty": "intermediate",
        "isFree": True,
    },
]

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_json(text: Optional[str]) -> Any:
    """Parse model output as JSON, unwrapping a Markdown code fence if there is one."""
    if text is None:
        raise ValueError("empty completion")
    text = text.strip()
    match = _FENCE.match(text)
    if match:
        text = match.group(1)
    return json.loads(text)


def partition_recommendations(recommendations: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Split recommendations into course links, book titles and a study-plan string."""
    courses, books, plan = [], [], []
    for r in recommendations:
        title = str(r.get("title", ""))
        category = r.get("category")
        if category in ("resource", "course"):
            courses.append({"title": title, "reason": r.get("description")})
        elif category == "book" or (not category and "book" in title.lower()):
            books.append(title)
        else:
            plan.append(f"• {title}: {r.get('description', '')} ({r.get('estimatedTime', '?')} min)")
    return {"courses": courses, "books": books, "studyPlan": "\n".join(plan)}


def build_client() -> Optional[OpenAI]:
    if not config.OPENROUTER_API_KEY:
        logger.warning("OPENROUTER_API_KEY not set; AI features are disabled")
        return None
    return OpenAI(
        api_key=config.OPENROUTER_API_KEY,
        base_url=config.OPENROUTER_BASE_URL,
        timeout=config.AI_TIMEOUT_SECONDS,
    )


class AIAssistant:
    def __init__(self, client=None, coding_model: str = config.CODING_MODEL, general_model: str = config.GENERAL_MODEL):
        self.client = client
        self.models = {"coding": coding_model, "general": general_model}

    def select_model(self, task: str) -> str:
        if task == "coding":
            return self.models["coding"]
        return self.models["general"]

    def chat(self, messages: List[Dict[str, str]], task: str = "general",
             reasoning_details: Optional[List[Any]] = None) -> str:
        if self.client is None:
            raise UpstreamServiceError("AI service is not configured")
        payload: Dict[str, Any] = {"model": self.select_model(task), "messages": messages}
        if task in REASONING_TASKS and reasoning_details:
            payload["extra_body"] = {"reasoning_details": reasoning_details}
        try:
            response = self.client.chat.completions.create(**payload)
            content = response.choices[0].message.content
        except Exception as e:
            logger.error("AI completion failed (task=%s): %s", task, e)
            raise UpstreamServiceError("AI service request failed") from e
        if not (content or "").strip():
            logger.error("AI completion returned no content (task=%s)", task)
            raise UpstreamServiceError("AI service returned an empty response")
        return content

    def _structured(self, system: str, prompt: str, task: str, what: str) -> Any:
        content = self.chat([{"role": "system", "content": system}, {"role": "user", "content": prompt}], task=task)
        try:
            return parse_json(content)
        except ValueError as e:
            logger.error("AI %s returned unparseable output: %s", what, e)
            raise UpstreamServiceError(f"Failed to {what}") from e

    # ----------------------
    # Free-form
    # ----------------------
    def answer_question(self, question: str, context: Optional[str] = None, task: str = "general",
                        reasoning_details: Optional[List[Any]] = None) -> str:
        if not (question or "").strip():
            raise ValidationError("Question is required")
        return self.chat(
            [
                {"role": "system", "content": f"You are a helpful tutor for the course: {context or 'general studies'}. Provide clear, educational answers."},
                {"role": "user", "content": question},
            ],
            task=task or "general",
            reasoning_details=reasoning_details,
        )

    def summarize_transcript(self, transcript: str) -> str:
        if not (transcript or "").strip():
            raise ValidationError("Transcript is required")
        return self.chat([
            {"role": "system", "content": "You are an expert at summarizing educational content into clear, concise notes."},
            {"role": "user", "content": f"Summarize this class transcript into key points and actionable notes:\n\n{transcript}"},
        ])

    # ----------------------
    # Recommendations (never raise)
    # ----------------------
    def study_recommendations(self, progress: Dict[str, Any]) -> Dict[str, Any]:
        prompt = f"""
You are an expert learning advisor. Based on the following student information, provide 5 personalized study recommendations.

Student Progress: {progress.get('completedLessons', 0)}% complete
Recent Grades: {', '.join(str(g) for g in progress.get('recentGrades') or []) or 'No grades yet'}
Struggling Areas: {', '.join(progress.get('strugglingAreas') or []) or 'None identified'}
Learning Pace: {progress.get('pace') or 'Normal'}

Provide recommendations in the following JSON format:
{{
  "recommendations": [
    {{
      "title": "Recommendation title",
      "description": "Brief description",
      "priority": "high|medium|low",
      "category": "study_habit|resource|book|practice|concept_review",
      "estimatedTime": "time in minutes"
    }}
  ]
}}
"""
        recommendations = None
        try:
            content = self.chat(
                [
                    {"role": "system", "content": "You are a helpful learning advisor specializing in personalized education."},
                    {"role": "user", "content": prompt},
                ],
                task="recommendation",
            )
            parsed = parse_json(content)
            if isinstance(parsed, dict) and isinstance(parsed.get("recommendations"), list):
                recommendations = [r for r in parsed["recommendations"] if isinstance(r, dict)]
        except (UpstreamServiceError, ValueError) as e:
            logger.warning("Study recommendations fell back to defaults: %s", e)
        if not recommendations:
            recommendations = [dict(r) for r in FALLBACK_RECOMMENDATIONS]
        return {**partition_recommendations(recommendations), "recommendations": recommendations}

    def resource_recommendations(self, course_title: str, course_description: str, topic: Optional[str] = None) -> Dict[str, Any]:
        prompt = f"""
You are an expert educator. Recommend 5 high-quality learning resources for a student studying:

Course: {course_title}
Description: {course_description}
Current Topic: {topic or 'General course content'}

Return in JSON format:
{{
  "resources": [
    {{
      "title": "Resource title",
      "type": "textbook|video|course|documentation|practice",
      "author": "Author/Creator name",
      "url": "URL if available or 'Search online'",
      "description": "Why this resource is helpful",
      "difficulty": "beginner|intermediate|advanced",
      "isFree": true
    }}
  ]
}}
"""
        try:
            content = self.chat(
                [
                    {"role": "system", "content": "You are a knowledgeable education resource curator."},
                    {"role": "user", "content": prompt},
                ],
                task="recommendation",
            )
            parsed = parse_json(content)
            if isinstance(parsed, dict) and isinstance(parsed.get("resources"), list):
                return {"resources": parsed["resources"]}
            logger.warning("Resource recommendations missing 'resources'; using defaults")
        except (UpstreamServiceError, ValueError) as e:
            logger.warning("Resource recommendations fell back to defaults: %s", e)
        return {"resources": [dict(r) for r in FALLBACK_RESOURCES]}

    # ----------------------
    # Structured tasks that surface failures
    # ----------------------
    def generate_study_plan(self, course: Dict[str, Any], hours_per_week: float, level: str) -> Dict[str, Any]:
        prompt = f"""
Create a personalized study plan for:

Course: {course.get('title')}
Description: {course.get('description')}
Duration: {course.get('duration') or 'Flexible'}
Student Level: {level}
Available Hours/Week: {hours_per_week}

Provide a week-by-week study plan in JSON format:
{{
  "totalWeeks": 0,
  "weeklyPlan": [
    {{"week": 1, "topics": ["topic1"], "goals": ["goal1"], "studyHours": 0, "activities": ["activity1"]}}
  ],
  "tips": ["tip1", "tip2", "tip3"]
}}
"""
        return self._structured(
            "You are an expert learning strategist creating effective study plans.",
            prompt, "recommendation", "generate study plan",
        )

    def analyze_performance(self, records: List[Dict[str, Any]]) -> Dict[str, Any]:
        prompt = f"""
Analyze the following student performance data and provide insights:

{json.dumps(records, indent=2, default=str)}

Provide analysis in JSON format:
{{
  "overallPerformance": "excellent|good|average|needs_improvement",
  "strengths": ["strength1", "strength2"],
  "weaknesses": ["weakness1", "weakness2"],
  "improvementAreas": ["area1", "area2"],
  "motivationalMessage": "Encouraging message for the student",
  "nextSteps": ["step1", "step2", "step3"]
}}
"""
        return self._structured(
            "You are an educational analyst providing constructive feedback.",
            prompt, "recommendation", "analyze performance",
        )

    def pre_grade(self, assignment_description: str, rubric: Any, submission_text: str, max_score: float) -> Dict[str, Any]:
        prompt = f"""
You are a teaching assistant. Pre-grade the following student submission based on the assignment criteria.

Assignment: {assignment_description}
Maximum score: {max_score}

Rubric:
{json.dumps(rubric, indent=2, default=str)}

Student Submission:
{submission_text}

Provide grading in JSON format:
{{
  "suggestedScore": 0,
  "maxScore": {max_score},
  "feedback": "Detailed constructive feedback",
  "strengths": ["strength1", "strength2"],
  "improvements": ["area1", "area2"],
  "confidence": 0
}}
"""
        result = self._structured(
            "You are a fair and constructive grading assistant. Provide honest, helpful feedback.",
            prompt, "coding", "pre-grade submission",
        )
        if not isinstance(result, dict) or "suggestedScore" not in result:
            raise UpstreamServiceError("Failed to pre-grade submission")
        return result


assistant = AIAssistant(build_client())


def get_assistant() -> AIAssistant:
    return assistant


# ----------------------
# Platform context for prompts
# ----------------------
def student_progress(store: DataStore, student: Dict[str, Any], course: Dict[str, Any]) -> Dict[str, Any]:
    sid = policy.user_id(student)
    record = next((e for e in course.get("enrolled_students", []) if e.get("student_id") == sid), {})
    assignment_ids = [str(a["_id"]) for a in store.find("assignment", {"course_id": str(course["_id"])}, projection={"_id": 1})]
    graded = store.find(
        "submission",
        {"student_id": sid, "assignment_id": {"$in": assignment_ids}, "status": "graded"},
        sort=[("graded_at", -1)], limit=5,
    )
    late = sum(1 for s in graded if s.get("is_late"))
    return {
        "completedLessons": record.get("progress", 0),
        "recentGrades": [s.get("score") for s in graded],
        "strugglingAreas": [],
        "pace": "Behind" if late > len(graded) / 2 else "Normal",
    }


def performance_records(store: DataStore, student_id: str) -> List[Dict[str, Any]]:
    subs = store.find("submission", {"student_id": student_id, "status": "graded"}, sort=[("graded_at", -1)], limit=20)
    assignments = store.related("assignment", [s["assignment_id"] for s in subs], {"title": 1, "max_score": 1})
    records = []
    for s in subs:
        a = assignments.get(s["assignment_id"], {})
        records.append({
            "assignment": a.get("title"),
            "score": s.get("score"),
            "maxScore": a.get("max_score"),
            "isLate": s.get("is_late", False),
            "feedback": s.get("feedback"),
        })
    return records


# ----------------------
# Conversation transcripts
# ----------------------
def create_conversation(store: DataStore, user: Dict[str, Any], name: Optional[str] = None) -> Dict[str, Any]:
    history = ChatHistory(user_id=policy.user_id(user), conversation_name=(name or "").strip() or "Untitled Chat")
    return store.insert("chathistory", history)


def list_conversations(store: DataStore, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    return store.find("chathistory", {"user_id": policy.user_id(user)}, sort=[("updated_at", -1)])


def get_conversation(store: DataStore, user: Dict[str, Any], conversation_id: str) -> Dict[str, Any]:
    conversation = store.get("chathistory", conversation_id)
    # someone else's conversation looks the same as a missing one
    if not conversation or not policy.owns_conversation(user, conversation):
        raise NotFoundError("Chat not found")
    return conversation


def _history_entry(sender: str, content: str) -> Dict[str, Any]:
    if sender not in ("user", "ai"):
        raise ValidationError("sender must be 'user' or 'ai'")
    if not (content or "").strip():
        raise ValidationError("Message content is required")
    return ChatHistoryMessage(sender=sender, content=content, timestamp=now_utc()).model_dump()


def append_message(store: DataStore, user: Dict[str, Any], conversation_id: str, sender: str, content: str) -> Dict[str, Any]:
    entry = _history_entry(sender, content)
    conversation = get_conversation(store, user, conversation_id)
    return store.update("chathistory", conversation["_id"], {}, push={"messages": entry})


def append_exchange(store: DataStore, user: Dict[str, Any], conversation_id: str, question: str, answer: str) -> Dict[str, Any]:
    """Record a question and its answer in one write, so a transcript never holds an unanswered question."""
    entries = [_history_entry("user", question), _history_entry("ai", answer)]
    conversation = get_conversation(store, user, conversation_id)
    return store.update("chathistory", conversation["_id"], {}, push={"messages": {"$each": entries}})
