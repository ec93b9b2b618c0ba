import logging
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from core.errors import (
    ArenaError,
    BotNotFoundError,
    InvalidTransitionError,
    OperatorAuthError,
    ProvisionNotFoundError,
    SourceUnavailableError,
    TransactionRevertedError,
)

logger = logging.getLogger("DashboardServer")


def _error_status(exc: ArenaError) -> int:
    if isinstance(exc, (ProvisionNotFoundError, BotNotFoundError)):
        return 404
    if isinstance(exc, (InvalidTransitionError, TransactionRevertedError)):
        return 409
    if isinstance(exc, OperatorAuthError):
        return 401
    if isinstance(exc, SourceUnavailableError):
        return 502
    return 400


def create_app(ctx: Any) -> FastAPI:
    """
    Read-mostly status API over an AppContext (or anything exposing
    `discovery`, `intents` and `actions`).
    """
    app = FastAPI(title="Bot Arena Tracker")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ArenaError)
    async def _arena_error(_request, exc: ArenaError):
        return JSONResponse(status_code=_error_status(exc), content={"error": str(exc)})

    @app.exception_handler(ValueError)
    async def _value_error(_request, exc: ValueError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.get("/api/bots")
    async def get_bots():
        return {"bots": [b.to_dict() for b in ctx.discovery.bots]}

    @app.get("/api/provisions")
    async def get_provisions(owner: Optional[str] = None):
        items = ctx.intents.list_for_owner(owner) if owner else ctx.intents.list_all()
        return {"provisions": [p.to_dict() for p in items]}

    @app.post("/api/provisions", status_code=201)
    async def create_provision(body: Dict[str, Any] = Body(...)):
        p = await ctx.actions.submit_provision(
            owner=body.get("owner"),
            name=body.get("name"),
            strategy_type=body.get("strategy_type"),
            tx_hash=body.get("tx_hash"),
            provision_id=body.get("id"),
            service_id=body.get("service_id"),
            blueprint_id=body.get("blueprint_id"),
            operators=body.get("operators") or (),
            job_index=body.get("job_index"),
            cost_wei=body.get("cost_wei"),
            chain_id=body.get("chain_id"),
        )
        return {"provision": p.to_dict()}

    @app.get("/api/provisions/stuck")
    async def get_stuck():
        return {"provisions": [p.to_dict() for p in ctx.actions.stuck_provisions()]}

    @app.post("/api/provisions/clear-failed")
    async def clear_failed():
        return {"removed": await ctx.actions.clear_failed()}

    @app.post("/api/provisions/{provision_id}/recheck")
    async def recheck(provision_id: str):
        p = await ctx.actions.recheck_provision(provision_id)
        return {"provision": p.to_dict()}

    @app.get("/api/provisions/{provision_id}/activation")
    async def activation(provision_id: str, bot_id: Optional[str] = None):
        return {"progress": await ctx.actions.activation_progress(provision_id, bot_id=bot_id)}

    @app.post("/api/provisions/{provision_id}/secrets")
    async def submit_secrets(provision_id: str, body: Dict[str, Any] = Body(...)):
        env = body.get("env_json") or {}
        p = await ctx.actions.submit_secrets(provision_id, env, bot_id=body.get("bot_id"))
        return {"provision": p.to_dict()}

    @app.delete("/api/provisions/{provision_id}")
    async def dismiss_provision(provision_id: str):
        await ctx.actions.dismiss_provision(provision_id)
        return {"status": "removed"}

    @app.post("/api/bots/{bot_id}/dismiss")
    async def dismiss_bot(bot_id: str):
        await ctx.actions.dismiss_bot(bot_id)
        return {"status": "dismissed"}

    @app.delete("/api/bots/{bot_id}/dismiss")
    async def undismiss_bot(bot_id: str):
        await ctx.actions.undismiss_bot(bot_id)
        return {"status": "restored"}

    return app


class DashboardServer:
    """Runs the status API with uvicorn alongside the tracker's event loop."""

    def __init__(self, ctx: Any, host: str = "127.0.0.1", port: int = 8000):
        self.ctx = ctx
        self.host = host
        self.port = port
        self.app = create_app(ctx)
        self._server: Optional[uvicorn.Server] = None

    async def start(self):
        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="warning")
        self._server = uvicorn.Server(config)
        logger.info(f"🚀 Dashboard Server starting at http://{self.host}:{self.port}")
        await self._server.serve()

    def stop(self):
        if self._server is not None:
            self._server.should_exit = True
