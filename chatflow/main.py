import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .db import Database
from .llm import ProviderClient, ProviderRequestError
from .modes import (
    PROVIDER_GOOGLE,
    PROVIDER_OPENROUTER,
    ChatMode,
    ProviderConfigError,
    describe_modes,
    get_chat_mode_name,
    get_model_from_chat_mode,
    get_model_selection_reason,
    resolve_request_mode,
    select_mode_for_query,
)
from .schemas import CompletionRequest, ModeSelectRequest, TitleRequest
from .streaming import StreamSink, execute_stream
from .tavily import TavilyClient

logger = logging.getLogger("uvicorn.error")

SERVER_CONFIG_KEY = "server-settings"
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
MAX_TITLE_LENGTH = 80


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_lm_client(request: Request) -> ProviderClient:
    return request.app.state.lm_client


def get_tavily_client(request: Request) -> TavilyClient:
    return request.app.state.tavily_client


def get_active_runs(request: Request) -> Dict[str, asyncio.Event]:
    return request.app.state.active_runs


def get_run_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.run_tasks


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def _clean_title(value: Any) -> str:
    title = " ".join(str(value or "").split()).strip().strip('"').strip("'")
    return title[:MAX_TITLE_LENGTH].rstrip()


router = APIRouter()


@router.get("/health")
async def health(
    settings: AppSettings = Depends(get_settings),
    tavily_client: TavilyClient = Depends(get_tavily_client),
):
    keys = settings.provider_keys()
    return {
        "ok": True,
        "providers": {PROVIDER_GOOGLE: bool(keys.get(PROVIDER_GOOGLE)), PROVIDER_OPENROUTER: bool(keys.get(PROVIDER_OPENROUTER))},
        "search": tavily_client.enabled,
    }


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    lm_client: ProviderClient = Depends(get_lm_client),
    tavily_client: TavilyClient = Depends(get_tavily_client),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings must be a JSON object.")
    new_settings = AppSettings(**{**settings.model_dump(), **body})
    save_settings(new_settings, config_path=config_path)
    await db.save_config(SERVER_CONFIG_KEY, new_settings.to_safe_dict())
    request.app.state.settings = new_settings
    lm_client.update_keys(new_settings.provider_keys())
    tavily_client.api_key = new_settings.tavily_api_key
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.get("/api/modes")
async def list_modes(settings: AppSettings = Depends(get_settings)):
    return {"default": ChatMode.AUTO.value, "modes": describe_modes(settings.provider_keys())}


@router.post("/api/modes/select")
async def select_mode(payload: ModeSelectRequest, settings: AppSettings = Depends(get_settings)):
    heuristic = select_mode_for_query(payload.query, payload.has_image)
    result: Dict[str, Any] = {
        "mode": heuristic.value,
        "name": get_chat_mode_name(heuristic),
        "model": get_model_from_chat_mode(heuristic),
        "reason": get_model_selection_reason(payload.query, heuristic),
        "resolvedMode": None,
        "resolvedReason": None,
        "error": None,
    }
    try:
        resolved, reason = resolve_request_mode(ChatMode.AUTO, payload.query, payload.has_image, settings.provider_keys())
    except ProviderConfigError as exc:
        result["error"] = str(exc)
        return result
    result["resolvedMode"] = resolved.value
    result["resolvedReason"] = reason
    return result


@router.post("/api/completion")
async def completion(
    payload: CompletionRequest,
    settings: AppSettings = Depends(get_settings),
    lm_client: ProviderClient = Depends(get_lm_client),
    tavily_client: TavilyClient = Depends(get_tavily_client),
    active_runs: Dict[str, asyncio.Event] = Depends(get_active_runs),
    run_tasks: Dict[str, asyncio.Task] = Depends(get_run_tasks),
):
    if not payload.prompt.strip():
        raise HTTPException(status_code=400, detail="Prompt is required.")
    item_id = payload.thread_item_id
    previous = active_runs.get(item_id)
    if previous is not None:
        previous.set()
    signal = asyncio.Event()
    active_runs[item_id] = signal
    sink = StreamSink()

    async def produce() -> None:
        try:
            await execute_stream(
                sink,
                payload,
                api_keys=settings.provider_keys(),
                llm=lm_client,
                search=tavily_client,
                signal=signal,
                max_iterations_default=settings.max_iterations_default,
                max_steps=settings.workflow_max_steps,
            )
        finally:
            sink.finish()
            if active_runs.get(item_id) is signal:
                active_runs.pop(item_id, None)

    async def event_generator():
        task = asyncio.create_task(produce())
        run_tasks[item_id] = task
        task.add_done_callback(lambda t: run_tasks.pop(item_id, None) if run_tasks.get(item_id) is t else None)
        try:
            async for chunk in sink:
                yield chunk
        finally:
            sink.close()
            if not task.done():
                # Client went away mid-run.
                signal.set()

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/api/completion/{thread_item_id}/abort")
async def abort_completion(thread_item_id: str, active_runs: Dict[str, asyncio.Event] = Depends(get_active_runs)):
    signal = active_runs.get(thread_item_id)
    if signal is None:
        raise HTTPException(status_code=404, detail="No active run for this item")
    signal.set()
    return {"ok": True, "status": "aborting"}


@router.post("/api/title")
async def generate_title(
    payload: TitleRequest,
    settings: AppSettings = Depends(get_settings),
    lm_client: ProviderClient = Depends(get_lm_client),
):
    first_user = next((m.get("content") for m in payload.conversation if m.get("role") == "user"), "")
    fallback = _clean_title(payload.fallback_title or first_user) or "New Thread"
    keys = settings.provider_keys()
    if not keys or not payload.conversation:
        return {"title": fallback, "stage": payload.stage, "fallback": True}
    mode = ChatMode.GEMINI_2_5_FLASH if keys.get(PROVIDER_GOOGLE) else ChatMode.GLM_4_5_AIR
    detail = "a short title (max 6 words)" if payload.stage == "initial" else "a refined short title (max 8 words)"
    try:
        data = await lm_client.generate_object(
            model=get_model_from_chat_mode(mode),
            messages=payload.conversation,
            prompt=f'Write {detail} for this conversation. Reply as {{"title": "..."}}.',
        )
    except (ProviderRequestError, ProviderConfigError, ValueError) as exc:
        logger.warning("Title generation failed for %s: %s", payload.thread_id, exc)
        return {"title": fallback, "stage": payload.stage, "fallback": True}
    title = _clean_title(data.get("title"))
    return {"title": title or fallback, "stage": payload.stage, "fallback": not title}


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    lm_client: Optional[ProviderClient] = None,
    tavily_client: Optional[TavilyClient] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.save_config(SERVER_CONFIG_KEY, app.state.settings.to_safe_dict())
        try:
            yield
        finally:
            for signal in list(app.state.active_runs.values()):
                signal.set()
            await app.state.lm_client.close()
            await app.state.tavily_client.close()

    app = FastAPI(title="chatflow", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.lm_client = lm_client or ProviderClient.from_settings(settings)
    app.state.tavily_client = tavily_client or TavilyClient(settings.tavily_api_key, timeout=settings.request_timeout_s)
    app.state.active_runs = {}
    app.state.run_tasks = {}
    app.state.config_path = config_path or CONFIG_PATH

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("CHATFLOW_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "chatflow.main:app",
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
