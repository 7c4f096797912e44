import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .exceptions import TriviaError
from .handlers import IntentHandler, build_handler
from .questions import QuestionProvider
from .schemas import IntentEnvelope


def get_handler(request: Request) -> IntentHandler:
    return request.app.state.handler


def create_app(settings: Optional[Settings] = None, provider: Optional[QuestionProvider] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    handler = build_handler(settings, provider)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(
            handler.registry.run_sweeper(settings.SWEEP_INTERVAL_SECONDS, handler.on_sweep)
        )
        yield
        sweeper.cancel()
        handler.games.shutdown()

    app = FastAPI(title="Trivia Sessions API", lifespan=lifespan)
    app.state.handler = handler

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_origin_regex=settings.CORS_ORIGIN_REGEX or None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/api/intents")
    async def dispatch(payload: IntentEnvelope, handler: IntentHandler = Depends(get_handler)):
        try:
            return await handler.handle(payload.session_id, payload.intent)
        except TriviaError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    @app.get("/api/events/{channel}")
    async def list_events(
        channel: str,
        after: int | None = None,
        limit: int | None = None,
        player_id: str | None = None,
        handler: IntentHandler = Depends(get_handler),
    ):
        limit = min(limit or settings.EVENT_PAGE_LIMIT, settings.EVENT_PAGE_LIMIT)
        events = await handler.events.list(channel, after=after, limit=limit, player_id=player_id)
        latest_seq = events[-1]["seq"] if events else after
        return {"events": events, "latest_seq": latest_seq}

    @app.get("/api/lobbies")
    async def list_lobbies(handler: IntentHandler = Depends(get_handler)):
        lobbies = handler.lobbies.list_public_lobbies()
        return {"lobbies": lobbies, "total": len(lobbies)}

    @app.get("/api/lobbies/{lobby_id}")
    async def get_lobby(lobby_id: str, handler: IntentHandler = Depends(get_handler)):
        lobby = handler.registry.find_lobby(lobby_id)
        if not lobby:
            raise HTTPException(404, "Lobby not found")
        return handler.lobbies.describe(lobby)

    @app.get("/api/games/{game_id}")
    async def get_game(game_id: str, handler: IntentHandler = Depends(get_handler)):
        game = handler.registry.find_game(game_id)
        if not game:
            raise HTTPException(404, "Game not found")
        return game.public_view()

    @app.get("/api/games/{game_id}/end-conditions")
    async def end_conditions(game_id: str, handler: IntentHandler = Depends(get_handler)):
        return handler.games.check_game_end_conditions(game_id).model_dump()

    @app.get("/api/games/{game_id}/questions/{question_index}/explanation")
    async def explanation(game_id: str, question_index: int, handler: IntentHandler = Depends(get_handler)):
        try:
            return handler.games.answer_explanation(game_id, question_index)
        except TriviaError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    @app.get("/api/stats")
    async def stats(handler: IntentHandler = Depends(get_handler)):
        return handler.registry.stats()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
