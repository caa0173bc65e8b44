import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from forge.chain import GenerationChain, default_chain
from forge.config import Settings, get_settings
from forge.orchestrator import ProcessOrchestrator
from forge.pipeline import run_generation_streaming
from forge.sessions import SessionStore
from forge.templates import TemplateStore

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    "Access-Control-Allow-Origin": "*",
}


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class GenerateRequest(BaseModel):
    prompt: str
    subdomain: str | None = None


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    settings: Settings | None = None,
    chain: GenerationChain | None = None,
    orchestrator: ProcessOrchestrator | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        orch = orchestrator or ProcessOrchestrator(settings)
        app.state.settings = settings
        app.state.orchestrator = orch
        app.state.sessions = SessionStore(
            settings.logs_dir, teardown=orch.teardown, max_closed=settings.max_closed_sessions,
        )
        app.state.templates = TemplateStore(settings.templates_dir)
        app.state.chain = chain or default_chain(settings)
        logger.info("[startup] projects_root=%s nginx=%s", settings.projects_root, settings.nginx_enabled)
        yield
        # Shutdown: stop every spawned server
        await app.state.sessions.shutdown()

    app = FastAPI(title="Game Forge API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------

    @app.get("/")
    def root():
        return {"message": "Game Forge is running"}

    @app.get("/health")
    async def health(request: Request):
        return {
            "status": "ok",
            "servers": len(request.app.state.sessions.servers()),
        }

    @app.post("/api/generate")
    async def generate(request: GenerateRequest, http_request: Request):
        """
        Generate a game project with streaming progress via SSE.
        Input problems (blank prompt, bad subdomain) arrive as an error event.
        """
        state = http_request.app.state

        async def event_stream():
            async for event in run_generation_streaming(
                request.prompt,
                request.subdomain,
                store=state.sessions,
                chain=state.chain,
                orchestrator=state.orchestrator,
                templates=state.templates,
                settings=state.settings,
            ):
                yield event

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get("/api/sessions")
    async def list_sessions(request: Request):
        sessions = request.app.state.sessions.list()
        return {"sessions": [s.to_dict() for s in sessions]}

    @app.get("/api/sessions/{chat_id}")
    async def get_session(chat_id: int, request: Request):
        store = request.app.state.sessions
        data = store.describe(chat_id)
        if data is None:
            raise HTTPException(status_code=404, detail="Session not found")
        project_id = data.get("project_id")
        handle = store.server(project_id) if project_id else None
        data["server"] = handle.to_dict() if handle else None
        return data

    @app.post("/api/projects/{project_id}/stop")
    async def stop_project(project_id: str, request: Request):
        """Stop the server running for a project."""
        released = await request.app.state.sessions.release_project(project_id)
        if not released:
            raise HTTPException(status_code=404, detail="No running server for project")
        return {"status": "stopped", "projectId": project_id}

    return app


app = create_app()
