"""Workflow tasks for one completion request.

``router`` picks the path, ``completion`` and ``pro-search`` produce the
answer, ``suggestions`` optionally adds follow-up questions.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from .modes import CHAT_MODE_OPTIONS, ChatMode, get_model_from_chat_mode, trim_message_history
from .search_helpers import ChunkBuffer, get_humanized_date, needs_freshness, prepare_web_page_content
from .workflow import (
    END,
    EventSender,
    Task,
    TaskParams,
    TaskResult,
    Workflow,
    WorkflowContext,
    WorkflowEvents,
    raise_if_aborted,
)

logger = logging.getLogger("uvicorn.error")

MAX_SUGGESTIONS = 5
SEARCH_MODES = (ChatMode.PRO, ChatMode.DEEP)


def _system_prompt(custom_instructions: Optional[str]) -> str:
    prompt = (
        f"Today is {get_humanized_date()}. You are a helpful assistant. "
        "Answer in well-structured markdown and be concise unless asked for depth."
    )
    if custom_instructions:
        prompt += f"\n\nFollow these user instructions:\n{custom_instructions}"
    return prompt


def _analysis_prompt(question: str, findings: List[Dict[str, Any]]) -> str:
    blocks = []
    for index, finding in enumerate(findings, start=1):
        blocks.append(
            f"## Finding {index}\n"
            f"<title>{finding.get('title') or 'No title available'}</title>\n"
            f"<content>{finding.get('content') or 'No content available'}</content>\n"
            f"<link>{finding.get('link') or 'No link available'}</link>"
        )
    joined = "\n\n".join(blocks)
    return (
        f"Today is {get_humanized_date()}.\n\n"
        f'You are a web research assistant answering "{question}".\n\n'
        f"<research_findings>\n{joined}\n</research_findings>\n\n"
        "Write a scannable report with headings and bullet points, most relevant findings first. "
        "Cite findings inline as [1], [2]. A reference list at the end is not required."
    )


def _conversation(context: WorkflowContext) -> List[Dict[str, Any]]:
    messages = [
        m
        for m in (context.get("messages") or [])
        if m.get("role") in ("user", "assistant") and m.get("content")
    ]
    if not messages:
        messages = [{"role": "user", "content": context.get("question") or ""}]
    return messages


def _finish(params: TaskParams, answer: str) -> None:
    params.context.set("answer", answer)
    on_finish: Optional[Callable[[Dict[str, Any]], Any]] = params.config.get("on_finish")
    if on_finish is not None:
        on_finish(
            {
                "answer": answer,
                "thread_id": params.context.get("thread_id"),
                "thread_item_id": params.context.get("thread_item_id"),
            }
        )


async def handle_error(exc: Exception, params: TaskParams) -> TaskResult:
    message = str(exc) or exc.__class__.__name__
    logger.warning("Task failed for item %s: %s", params.context.get("thread_item_id"), message)
    EventSender(params.events).report_error(message)
    return TaskResult(result="error", error=message)


def _route_after_answer(params: TaskParams, result: TaskResult) -> str:
    if params.context.get("show_suggestions") and params.context.get("answer"):
        return "suggestions"
    return END


async def _router(params: TaskParams) -> TaskResult:
    context = params.context
    mode = ChatMode(context.get("mode"))
    search = params.config.get("search")
    search_ready = bool(search is not None and search.enabled)

    if mode in SEARCH_MODES:
        if not search_ready:
            return TaskResult(result="error", error="Pro Search needs TAVILY_API_KEY to be configured.")
        return TaskResult(data="pro-search")
    if context.get("web_search") and CHAT_MODE_OPTIONS[mode]["web_search"] and search_ready:
        return TaskResult(data="pro-search")
    hint = needs_freshness(context.get("question") or "") if search_ready else None
    if hint:
        context.merge(
            {
                "auto_web_search_enabled": True,
                "auto_web_search_reason": f'the question asks for live information ("{hint}")',
            }
        )
        return TaskResult(data="pro-search")
    return TaskResult(data="completion")


async def _completion(params: TaskParams) -> TaskResult:
    context = params.context
    llm = params.config["llm"]
    sender = EventSender(params.events)
    mode = ChatMode(context.get("mode"))
    model = get_model_from_chat_mode(mode)
    messages, _ = trim_message_history(_conversation(context), mode)

    raise_if_aborted(params.signal)
    sender.update_status("PENDING")
    answer_buffer = ChunkBuffer(lambda chunk, full: sender.update_answer({"text": chunk, "status": "PENDING"}))
    reasoning_buffer = ChunkBuffer(
        lambda chunk, full: sender.update_step(
            "reasoning", {"stepStatus": "PENDING", "steps": {"reasoning": {"status": "PENDING", "data": full}}}
        )
    )
    started = time.perf_counter()
    result = await llm.generate_text(
        model=model,
        messages=messages,
        prompt=_system_prompt(context.get("custom_instructions")),
        on_chunk=lambda chunk, full: answer_buffer.add(chunk),
        on_reasoning=reasoning_buffer.add,
        signal=params.signal,
    )
    raise_if_aborted(params.signal)
    answer_buffer.end()
    reasoning_buffer.end()
    if not result.text.strip():
        raise ValueError("The model returned an empty response")

    sender.update_answer({"text": "", "finalText": result.text, "status": "COMPLETED"})
    sender.update_metrics(
        {
            "model": model,
            "totalTokens": result.total_tokens,
            "durationMs": round((time.perf_counter() - started) * 1000, 2),
        }
    )
    sender.update_status("COMPLETED")
    _finish(params, result.text)
    return TaskResult()


async def _pro_search(params: TaskParams) -> TaskResult:
    context = params.context
    llm = params.config["llm"]
    search = params.config["search"]
    sender = EventSender(params.events)
    question = context.get("question")
    if not question:
        raise ValueError("No question provided for search")
    mode = ChatMode(context.get("mode"))
    model = get_model_from_chat_mode(mode)
    messages = _conversation(context)
    query_budget = max(1, int(context.get("max_iterations") or 1)) if mode == ChatMode.DEEP else 1

    if context.get("auto_web_search_enabled"):
        sender.update_step(
            "auto",
            {
                "stepStatus": "COMPLETED",
                "steps": {
                    "autoEnabled": {
                        "status": "COMPLETED",
                        "data": {
                            "message": f"Web search automatically enabled: {context.get('auto_web_search_reason')}",
                            "type": "info",
                        },
                    }
                },
            },
        )

    sender.update_status("PENDING")
    raise_if_aborted(params.signal)
    try:
        generated = await llm.generate_object(
            model=model,
            messages=messages,
            prompt=(
                f"Today is {get_humanized_date()}. Generate up to {query_budget} specific web search "
                'queries for the latest message. Reply as {"queries": ["..."]}.'
            ),
        )
    except Exception as exc:
        raise RuntimeError(f"Failed to generate search query: {exc}") from exc
    queries = [str(q).strip() for q in (generated.get("queries") or [generated.get("query")]) if q]
    queries = [q for q in queries if q][:query_budget] or [question]

    results: List[Dict[str, Any]] = []
    for query in queries:
        raise_if_aborted(params.signal)
        sender.add_tool_call({"tool": "web_search", "query": query})
        hits = await search.search_results(query)
        sender.add_tool_result({"tool": "web_search", "query": query, "count": len(hits)})
        results.extend(hits)
    if not results:
        raise RuntimeError("Failed to get search results: No search results found")

    sender.update_step("search", {"stepStatus": "PENDING", "steps": {"search": {"status": "COMPLETED", "data": queries}}})
    sender.update_step("search", {"steps": {"read": {"status": "PENDING", "data": results}}})
    raise_if_aborted(params.signal)
    pages = await search.read_pages(results[:8])
    sender.update_step("search", {"stepStatus": "COMPLETED", "steps": {"read": {"status": "COMPLETED"}}})
    sender.add_sources(results)

    findings = prepare_web_page_content(pages)
    if not findings:
        findings = [
            {"title": r.get("title") or "Untitled Result", "link": r.get("link") or "", "content": r.get("snippet") or ""}
            for r in results[:6]
        ]

    answer_buffer = ChunkBuffer(lambda chunk, full: sender.update_answer({"text": chunk, "status": "PENDING"}))
    reasoning_buffer = ChunkBuffer(
        lambda chunk, full: sender.update_step(
            "analysis", {"stepStatus": "PENDING", "steps": {"reasoning": {"status": "COMPLETED", "data": full}}}
        )
    )
    started = time.perf_counter()
    raise_if_aborted(params.signal)
    result = await llm.generate_text(
        model=model,
        messages=messages,
        prompt=_analysis_prompt(question, findings),
        on_chunk=lambda chunk, full: answer_buffer.add(chunk),
        on_reasoning=reasoning_buffer.add,
        signal=params.signal,
    )
    raise_if_aborted(params.signal)
    answer_buffer.end()
    reasoning_buffer.end()
    if not result.text.strip():
        raise RuntimeError("Failed to generate analysis")

    sender.update_step(
        "analysis",
        {"stepStatus": "COMPLETED", "steps": {"reasoning": {"status": "COMPLETED"}, "wrapup": {"status": "COMPLETED"}}},
    )
    sender.update_answer({"text": "", "finalText": result.text, "status": "COMPLETED"})
    sender.update_metrics(
        {
            "model": model,
            "totalTokens": result.total_tokens,
            "durationMs": round((time.perf_counter() - started) * 1000, 2),
            "searchQueries": len(queries),
        }
    )
    sender.update_status("COMPLETED")
    _finish(params, result.text)
    return TaskResult()


async def _suggestions(params: TaskParams) -> TaskResult:
    context = params.context
    llm = params.config["llm"]
    model = get_model_from_chat_mode(context.get("mode"))
    raise_if_aborted(params.signal)
    conversation = _conversation(context) + [{"role": "assistant", "content": context.get("answer") or ""}]
    try:
        generated = await llm.generate_object(
            model=model,
            messages=conversation,
            prompt=(
                f"Suggest up to {MAX_SUGGESTIONS} short follow-up questions the user might ask next. "
                'Reply as {"questions": ["..."]}.'
            ),
        )
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        # Follow-ups are optional; the answer already succeeded.
        logger.warning("Suggestion generation failed: %s", exc)
        return TaskResult()
    raise_if_aborted(params.signal)
    questions = [str(q).strip() for q in generated.get("questions") or [] if str(q).strip()]
    if questions:
        EventSender(params.events).set_suggestions(questions[:MAX_SUGGESTIONS])
    return TaskResult()


def build_tasks() -> List[Task]:
    return [
        Task(name="router", execute=_router, route=lambda params, result: result.data or END),
        Task(name="completion", execute=_completion, route=_route_after_answer, on_error=handle_error),
        Task(name="pro-search", execute=_pro_search, route=_route_after_answer, on_error=handle_error),
        Task(name="suggestions", execute=_suggestions),
    ]


def build_workflow(
    *,
    mode: ChatMode,
    question: str,
    thread_id: str,
    thread_item_id: str,
    messages: List[Dict[str, Any]],
    llm: Any,
    search: Any = None,
    custom_instructions: Optional[str] = None,
    web_search: bool = False,
    show_suggestions: bool = False,
    max_iterations: int = 3,
    signal: Optional[asyncio.Event] = None,
    on_finish: Optional[Callable[[Dict[str, Any]], Any]] = None,
    max_steps: int = 25,
) -> Workflow:
    context = WorkflowContext(
        {
            "mode": mode,
            "question": question,
            "thread_id": thread_id,
            "thread_item_id": thread_item_id,
            "messages": messages,
            "custom_instructions": custom_instructions,
            "web_search": web_search,
            "show_suggestions": show_suggestions,
            "max_iterations": max_iterations,
        }
    )
    return Workflow(
        build_tasks(),
        events=WorkflowEvents(),
        context=context,
        signal=signal,
        config={"llm": llm, "search": search, "on_finish": on_finish},
        max_steps=max_steps,
    )
