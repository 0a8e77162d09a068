"""The three workflow families and their routing functions."""

from __future__ import annotations

from taskrelay.graph.routing import END, State, Workflow, goto

MAX_ITERATIONS = 5
MAX_REWRITES = 2

ROOT = "root"
ORCHESTRATOR = "orchestrator"
DAILY = "daily"

ROUTER_DESTINATIONS = frozenset({"tool_executor", "synthesize", "save_messages"})
ROUTE_END = "end"


def _int(state: State, key: str, default: int) -> int:
    value = state.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def route_after_router(state: State) -> str | None:
    """Follow `next_route`, unless the loop budget is spent.

    Unknown or missing routes fall through to `synthesize`.
    """

    if _int(state, "iteration_count", 0) >= _int(state, "max_iterations", MAX_ITERATIONS):
        return "synthesize"
    next_route = state.get("next_route")
    if next_route == ROUTE_END:
        return END
    if next_route in ROUTER_DESTINATIONS:
        return str(next_route)
    return "synthesize"


def route_after_tool_executor(state: State) -> str | None:
    if state.get("next_route") == "grade_documents":
        return "grade_documents"
    return "synthesize"


def route_after_grading(state: State) -> str | None:
    """Corrective retrieval: rewrite the query on a poor grade, within budget."""

    if _int(state, "rewrite_count", 0) >= _int(state, "max_rewrites", MAX_REWRITES):
        return "synthesize"
    if state.get("grading_result") == "relevant":
        return "synthesize"
    return "rewrite_query"


def route_after_classifier(state: State) -> str | None:
    classification = state.get("classification")
    if classification in {"QUESTION", "NOTE_PLUS_QUESTION"}:
        return "memory_retriever"
    if classification == "ESCALATE_TO_ASK":
        return "suggest_ask_ai"
    return "note_acknowledgment"


ROOT_WORKFLOW = Workflow(
    name=ROOT,
    entry_node="save_user_message",
    routes={
        "save_user_message": goto("memory_retriever"),
        "memory_retriever": goto("response_agent"),
        "response_agent": goto("save_assistant_message"),
        "save_assistant_message": goto(END),
    },
    step_labels={
        "save_user_message": "Processing your message",
        "memory_retriever": "Searching memories",
        "response_agent": "Generating response",
        "save_assistant_message": "Saving response",
    },
)

ORCHESTRATOR_WORKFLOW = Workflow(
    name=ORCHESTRATOR,
    entry_node="router",
    routes={
        "router": route_after_router,
        "tool_executor": route_after_tool_executor,
        "grade_documents": route_after_grading,
        "rewrite_query": goto("router"),
        "synthesize": goto("save_messages"),
        "save_messages": goto(END),
    },
    step_labels={
        "router": "Analyzing your request",
        "tool_executor": "Gathering information",
        "grade_documents": "Evaluating results",
        "rewrite_query": "Refining search",
        "synthesize": "Crafting response",
        "save_messages": "Saving conversation",
    },
)

DAILY_WORKFLOW = Workflow(
    name=DAILY,
    entry_node="classifier_agent",
    routes={
        "classifier_agent": route_after_classifier,
        "note_acknowledgment": goto("save_events"),
        "memory_retriever": goto("response_agent"),
        "response_agent": goto("save_events"),
        "suggest_ask_ai": goto("save_events"),
        "save_events": goto(END),
    },
    step_labels={
        "classifier_agent": "Understanding your entry",
        "note_acknowledgment": "Noting it down",
        "memory_retriever": "Searching memories",
        "response_agent": "Answering your question",
        "suggest_ask_ai": "Suggesting a deeper look",
        "save_events": "Saving your day",
    },
)

WORKFLOWS: tuple[Workflow, ...] = (ROOT_WORKFLOW, ORCHESTRATOR_WORKFLOW, DAILY_WORKFLOW)
