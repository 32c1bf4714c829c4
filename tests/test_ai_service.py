import json

import pytest

import ai_service
from ai_service import AIAssistant, parse_json, partition_recommendations
from conftest import FakeAIClient, auth_headers
from errors import NotFoundError, UpstreamServiceError, ValidationError


def assistant(*replies):
    client = FakeAIClient(*replies)
    return AIAssistant(client, "coder-model", "general-model"), client


def test_model_selection_by_task():
    ai, _ = assistant()
    assert ai.select_model("coding") == "coder-model"
    assert ai.select_model("general") == "general-model"
    assert ai.select_model("recommendation") == "general-model"


def test_reasoning_details_only_forwarded_for_reasoning_tasks():
    ai, client = assistant("a", "b")
    details = [{"type": "reasoning.text", "text": "earlier"}]
    ai.chat([{"role": "user", "content": "hi"}], task="research", reasoning_details=details)
    ai.chat([{"role": "user", "content": "hi"}], task="coding", reasoning_details=details)

    assert client.calls[0]["extra_body"] == {"reasoning_details": details}
    assert "extra_body" not in client.calls[1]
    assert client.calls[1]["model"] == "coder-model"


def test_chat_without_client_is_an_upstream_error():
    with pytest.raises(UpstreamServiceError):
        AIAssistant(None).chat([{"role": "user", "content": "hi"}])


def test_chat_wraps_client_failures():
    ai, _ = assistant(RuntimeError("502 from provider"))
    with pytest.raises(UpstreamServiceError):
        ai.answer_question("What is a closure?")


def test_empty_completion_is_an_upstream_error():
    ai, _ = assistant("", "   ", None)
    for _ in range(3):
        with pytest.raises(UpstreamServiceError, match="empty response"):
            ai.answer_question("What is a closure?")


def test_parse_json_unwraps_code_fences():
    assert parse_json('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json('  {"a": 2} ') == {"a": 2}
    with pytest.raises(ValueError):
        parse_json("definitely not json")


def test_partition_prefers_category_over_title():
    result = partition_recommendations([
        {"title": "Read the Python book", "category": "book"},
        {"title": "Fluent Python (book)"},
        {"title": "Notebook practice", "category": "practice", "description": "Solve five problems", "estimatedTime": "45"},
        {"title": "Real Python", "category": "resource", "description": "Tutorials"},
    ])
    assert result["books"] == ["Read the Python book", "Fluent Python (book)"]
    assert result["courses"] == [{"title": "Real Python", "reason": "Tutorials"}]
    assert result["studyPlan"] == "• Notebook practice: Solve five problems (45 min)"


def test_study_recommendations_fall_back_on_unparseable_reply():
    ai, client = assistant("Sure! Here are some ideas...")
    result = ai.study_recommendations({"completedLessons": 40, "recentGrades": [70]})

    assert [r["title"] for r in result["recommendations"]] == ["Stay Consistent", "Review Past Material"]
    assert "Stay Consistent" in result["studyPlan"]
    assert client.calls[0]["model"] == "general-model"


def test_study_recommendations_fall_back_when_upstream_fails():
    ai, _ = assistant(RuntimeError("timeout"))
    result = ai.study_recommendations({})
    assert len(result["recommendations"]) == 2


def test_study_recommendations_use_model_output():
    reply = json.dumps({"recommendations": [{"title": "Graph theory book", "category": "book"}]})
    ai, _ = assistant(reply)
    result = ai.study_recommendations({})
    assert result["books"] == ["Graph theory book"]


def test_resource_recommendations_fall_back():
    ai, _ = assistant('{"unexpected": true}')
    result = ai.resource_recommendations("Python", "Basics")
    assert result["resources"] == ai_service.FALLBACK_RESOURCES


def test_study_plan_surfaces_bad_output():
    ai, _ = assistant("no plan today")
    with pytest.raises(UpstreamServiceError):
        ai.generate_study_plan({"title": "Python"}, 5, "beginner")


def test_pre_grade_requires_suggested_score():
    ai, client = assistant('{"feedback": "nice"}', '{"suggestedScore": 7, "feedback": "solid"}')
    with pytest.raises(UpstreamServiceError):
        ai.pre_grade("Write a loop", None, "for i in range(3): print(i)", 10)

    result = ai.pre_grade("Write a loop", None, "for i in range(3): print(i)", 10)
    assert result["suggestedScore"] == 7
    assert client.calls[1]["model"] == "coder-model"


def test_summarize_rejects_empty_transcript():
    ai, _ = assistant()
    with pytest.raises(ValidationError):
        ai.summarize_transcript("  ")


def test_conversations_belong_to_their_owner(store, make_user):
    owner, other = make_user("student"), make_user("student")
    conversation = ai_service.create_conversation(store, owner, "  ")
    assert conversation["conversation_name"] == "Untitled Chat"

    cid = str(conversation["_id"])
    ai_service.append_message(store, owner, cid, "user", "hello")
    updated = ai_service.append_message(store, owner, cid, "ai", "hi there")
    assert [m["sender"] for m in updated["messages"]] == ["user", "ai"]

    with pytest.raises(NotFoundError):
        ai_service.get_conversation(store, other, cid)
    with pytest.raises(ValidationError):
        ai_service.append_message(store, owner, cid, "system", "sneaky")


# ----------------------
# HTTP
# ----------------------
def test_ask_records_exchange_in_conversation(client, store, ai_client, make_user):
    user = make_user("student")
    ai_client.replies.append("A closure captures variables.")
    conversation = client.post("/chat/ai", json={"conversationName": "Closures"}, headers=auth_headers(user)).json()["data"]

    res = client.post("/ai/ask", json={"question": "What is a closure?", "conversationId": conversation["id"]},
                      headers=auth_headers(user))
    assert res.status_code == 200
    assert res.json()["data"]["answer"] == "A closure captures variables."

    stored = client.get(f"/chat/ai/{conversation['id']}", headers=auth_headers(user)).json()["data"]
    assert [m["content"] for m in stored["messages"]] == ["What is a closure?", "A closure captures variables."]


def test_ask_in_someone_elses_conversation_is_not_found(client, ai_client, make_user):
    owner, other = make_user("student"), make_user("student")
    conversation = client.post("/chat/ai", json={}, headers=auth_headers(owner)).json()["data"]
    res = client.post("/ai/ask", json={"question": "hi", "conversation_id": conversation["id"]}, headers=auth_headers(other))
    assert res.status_code == 404
    assert ai_client.calls == []


def test_upstream_failure_maps_to_bad_gateway(client, ai_client, make_user):
    ai_client.replies.append(RuntimeError("provider down"))
    res = client.post("/ai/ask", json={"question": "hi"}, headers=auth_headers(make_user("student")))
    assert res.status_code == 502
    assert res.json()["error"] == "upstream_error"


def test_empty_answer_leaves_conversation_untouched(client, ai_client, make_user):
    user = make_user("student")
    ai_client.replies.append("")
    conversation = client.post("/chat/ai", json={}, headers=auth_headers(user)).json()["data"]

    res = client.post("/ai/ask", json={"question": "hi", "conversationId": conversation["id"]}, headers=auth_headers(user))
    assert res.status_code == 502
    assert res.json()["error"] == "upstream_error"
    stored = client.get(f"/chat/ai/{conversation['id']}", headers=auth_headers(user)).json()["data"]
    assert stored["messages"] == []


def test_append_exchange_writes_both_entries_or_neither(store, make_user):
    user = make_user("student")
    conversation = ai_service.create_conversation(store, user)
    cid = str(conversation["_id"])

    with pytest.raises(ValidationError):
        ai_service.append_exchange(store, user, cid, "hi", "  ")
    assert store.get("chathistory", cid)["messages"] == []

    updated = ai_service.append_exchange(store, user, cid, "hi", "hello")
    assert [(m["sender"], m["content"]) for m in updated["messages"]] == [("user", "hi"), ("ai", "hello")]


def test_recommend_requires_enrollment_and_falls_back(client, make_user, make_course, enroll):
    student = make_user("student")
    course = make_course(make_user("tutor"))
    res = client.post("/ai/recommend", json={"courseId": str(course["_id"])}, headers=auth_headers(student))
    assert res.status_code == 403

    enroll(student, course)
    res = client.post("/ai/recommend", json={"courseId": str(course["_id"])}, headers=auth_headers(student))
    assert res.status_code == 200
    assert len(res.json()["data"]["recommendations"]) == 2
