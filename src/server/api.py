import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.core.paths import ProjectPaths
from src.server.session import GameSession
from src.shared.actions import ActionCreateOrder, ActionCancelOrder
from src.shared.config import GameConfig
from src.shared.errors import SimulationError


class OrderRequest(BaseModel):
    listing_type: str
    resource_type: str
    quantity: float
    price_per_unit: float
    territory_id: Optional[str] = None


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


async def _auto_tick_loop(session: GameSession, interval: float):
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(session.run_scheduled_tick)
        except SimulationError as e:
            print(f"[API] Scheduled tick failed: {e.message}")


def create_app(session: Optional[GameSession] = None) -> FastAPI:
    """
    Builds the HTTP surface around one GameSession.

    The session is created lazily from the project root unless one is
    injected. A fixed-interval auto trigger runs in the background when
    `tick_interval_seconds` is positive.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.session is None:
            config = GameConfig(ProjectPaths.root())
            app.state.session = GameSession.create_local(config)

        task = None
        interval = app.state.session.state.config.tick_interval_seconds
        if interval > 0:
            print(f"[API] Auto tick every {interval}s")
            task = asyncio.create_task(_auto_tick_loop(app.state.session, interval))
        try:
            yield
        finally:
            if task:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    app = FastAPI(title="Planet Economy", lifespan=lifespan)
    app.state.session = session

    @app.exception_handler(SimulationError)
    async def simulation_error_handler(request: Request, exc: SimulationError):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})

    @app.get("/")
    def health():
        world = app.state.session.state.world
        return {"ok": True, "world_id": world.world_id, "tick_number": world.tick_number,
                "last_tick_at": world.last_tick_at}

    @app.post("/tick")
    def trigger_tick(authorization: Optional[str] = Header(default=None)):
        return app.state.session.run_tick(_bearer(authorization))

    @app.post("/orders")
    def place_order(order: OrderRequest, authorization: Optional[str] = Header(default=None)):
        session: GameSession = app.state.session
        principal = session.authenticate(_bearer(authorization))
        return session.submit(ActionCreateOrder(player_id=principal.user_id, **order.model_dump()))

    @app.post("/orders/{listing_id}/cancel")
    def cancel(listing_id: str, authorization: Optional[str] = Header(default=None)):
        session: GameSession = app.state.session
        principal = session.authenticate(_bearer(authorization))
        return session.submit(ActionCancelOrder(player_id=principal.user_id, listing_id=listing_id))

    @app.get("/ticks")
    def recent_ticks(limit: int = 10):
        return {"ticks": app.state.session.recent_ticks(limit)}

    return app
