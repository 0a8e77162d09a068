"""Local deterministic node handlers for demos and integration tests.

Handlers derive everything from the baton, so re-running a node on the same
input yields the same patch.
"""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from typing import Any

from taskrelay.graph.routing import NodeHandler, State, WorkflowRegistry
from taskrelay.graph.workflows import (
    DAILY,
    ORCHESTRATOR,
    ROOT,
    ROUTE_END,
    WORKFLOWS,
)

ESCALATION_MARKERS = ("ask ai", "deep dive", "research")


def _message(state: State) -> str:
    return str(state.get("message", "")).strip()


def _stable_id(prefix: str, *parts: Any) -> str:
    digest = hashlib.sha256("|".join(str(part) for part in parts).encode("utf-8")).hexdigest()
    return f"{prefix}-{digest[:12]}"


def save_user_message(state: State) -> dict[str, Any]:
    return {"user_message_id": _stable_id("msg", state.get("session_id"), _message(state))}


def memory_retriever(state: State) -> dict[str, Any]:
    query = str(state.get("query") or _message(state))
    memories = [
        {"id": _stable_id("mem", word), "text": word}
        for word in dict.fromkeys(query.lower().split())
        if len(word) > 3
    ]
    return {"memories": memories[:5]}


def response_agent(state: State) -> dict[str, Any]:
    memories = state.get("memories") or []
    return {
        "response": f"Echo: {_message(state)}",
        "memories_used": len(memories),
    }


def save_assistant_message(state: State) -> dict[str, Any]:
    return {
        "assistant_message_id": _stable_id(
            "msg",
            state.get("user_message_id"),
            state.get("response"),
        ),
    }


def router(state: State) -> dict[str, Any]:
    """Use tools unless the caller asked for a direct answer."""

    iteration_count = int(state.get("iteration_count", 0)) + 1
    if state.get("skip_reply"):
        next_route = ROUTE_END
    elif state.get("direct_answer"):
        next_route = "synthesize"
    else:
        next_route = "tool_executor"
    return {"iteration_count": iteration_count, "next_route": next_route}


def tool_executor(state: State) -> dict[str, Any]:
    query = str(state.get("query") or _message(state))
    documents = [{"id": _stable_id("doc", query), "text": query}] if query else []
    tools_used = [*state.get("tools_used", []), "memory_search"]
    return {
        "documents": documents,
        "tools_used": tools_used,
        "next_route": "grade_documents" if documents else "synthesize",
    }


def grade_documents(state: State) -> dict[str, Any]:
    """Relevant once `relevant_after_rewrites` rewrites happened (default immediately)."""

    required = int(state.get("relevant_after_rewrites", 0))
    relevant = int(state.get("rewrite_count", 0)) >= required
    return {"grading_result": "relevant" if relevant else "irrelevant"}


def rewrite_query(state: State) -> dict[str, Any]:
    rewrite_count = int(state.get("rewrite_count", 0)) + 1
    query = str(state.get("query") or _message(state))
    return {
        "rewrite_count": rewrite_count,
        "query": f"{query} (refined {rewrite_count})",
        "next_route": "router",
    }


def synthesize(state: State) -> dict[str, Any]:
    documents = state.get("documents") or []
    return {
        "response": f"Echo: {_message(state)}",
        "sources": [document["id"] for document in documents if isinstance(document, dict)],
    }


def save_messages(state: State) -> dict[str, Any]:
    return {
        **save_user_message(state),
        "assistant_message_id": _stable_id("msg", _message(state), state.get("response")),
        "next_route": ROUTE_END,
    }


def classifier_agent(state: State) -> dict[str, Any]:
    """Honour an explicit `classification`, else classify by simple markers."""

    if state.get("classification"):
        return {"classification": state["classification"]}
    message = _message(state)
    lowered = message.lower()
    if any(marker in lowered for marker in ESCALATION_MARKERS):
        classification = "ESCALATE_TO_ASK"
    elif message.endswith("?"):
        classification = "NOTE_PLUS_QUESTION" if "." in message[:-1] else "QUESTION"
    else:
        classification = "NOTE"
    return {"classification": classification}


def note_acknowledgment(state: State) -> dict[str, Any]:
    return {"response": "Noted.", "events": [{"type": "note", "text": _message(state)}]}


def suggest_ask_ai(state: State) -> dict[str, Any]:
    return {
        "response": "This looks like a bigger question. Try asking the assistant directly.",
        "events": [{"type": "escalation", "text": _message(state)}],
    }


def daily_response_agent(state: State) -> dict[str, Any]:
    patch = response_agent(state)
    patch["events"] = [{"type": "question", "text": _message(state)}]
    return patch


def save_events(state: State) -> dict[str, Any]:
    events = state.get("events") or []
    return {
        "saved_event_ids": [
            _stable_id("evt", state.get("session_id"), index, event)
            for index, event in enumerate(events)
        ],
    }


ECHO_HANDLERS: dict[str, NodeHandler] = {
    f"{ROOT}.save_user_message": save_user_message,
    f"{ROOT}.memory_retriever": memory_retriever,
    f"{ROOT}.response_agent": response_agent,
    f"{ROOT}.save_assistant_message": save_assistant_message,
    f"{ORCHESTRATOR}.router": router,
    f"{ORCHESTRATOR}.tool_executor": tool_executor,
    f"{ORCHESTRATOR}.grade_documents": grade_documents,
    f"{ORCHESTRATOR}.rewrite_query": rewrite_query,
    f"{ORCHESTRATOR}.synthesize": synthesize,
    f"{ORCHESTRATOR}.save_messages": save_messages,
    f"{DAILY}.classifier_agent": classifier_agent,
    f"{DAILY}.note_acknowledgment": note_acknowledgment,
    f"{DAILY}.memory_retriever": memory_retriever,
    f"{DAILY}.response_agent": daily_response_agent,
    f"{DAILY}.suggest_ask_ai": suggest_ask_ai,
    f"{DAILY}.save_events": save_events,
}


def build_registry(handlers: Mapping[str, NodeHandler] | None = None) -> WorkflowRegistry:
    """Registry over the built-in workflows; `handlers` override the echo ones."""

    merged = dict(ECHO_HANDLERS)
    if handlers:
        merged.update(handlers)
    return WorkflowRegistry(WORKFLOWS, merged)
