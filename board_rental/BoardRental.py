import logging
import os
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException

try:
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:
    pass

from db.base import Base
from db.deps import get_rental_db
from db.session import engine_rental
from schemas.games import Complexity, GameCreateDto, GameListQuery, GameSortField, GameUpdateDto
from schemas.rentals import (
    CreateRentalDto,
    ExtensionRequest,
    RentalListQuery,
    RentalSortField,
    RentalStatusFilter,
    UpdateRentalDto,
)
from services.errors import DEFAULT_USER_MESSAGES, NotFoundError, RentalServiceError
from services.game_service import create_game, get_game, list_games, update_game
from services.rental_service import (
    create_rental,
    delete_game,
    delete_rental,
    extend_rental,
    get_rental,
    list_rentals,
    return_rental,
    serialize_rental,
    update_rental,
)

API_NAME = "Board Game Rental API"
API_VERSION = "1.0.0"


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _parse_bool_env(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


_LOG_LEVEL = (os.environ.get("LOG_LEVEL") or "INFO").strip().upper()
logging.basicConfig(
    level=getattr(logging, _LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
API_LOGGER = logging.getLogger("board_rental.api")

_DEBUG = _parse_bool_env("BOARD_RENTAL_DEBUG", "false")
_CREATE_TABLES = _parse_bool_env("BOARD_RENTAL_CREATE_TABLES", "true")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if _CREATE_TABLES:
        Base.metadata.create_all(bind=engine_rental)
        API_LOGGER.info("Schema ensured on %s", engine_rental.url.render_as_string(hide_password=True))
    yield


app = FastAPI(title=API_NAME, version=API_VERSION, lifespan=lifespan)

_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = _parse_bool_env("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

_HTTP_ERROR_CODES = {
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    503: "SERVICE_UNAVAILABLE",
}


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _success(data, pagination: dict | None = None) -> dict:
    meta = {"timestamp": _timestamp()}
    if pagination is not None:
        meta["pagination"] = pagination
    return {"data": data, "meta": meta}


def _error_response(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    body = {
        "code": code,
        "message": message,
        "userMessage": DEFAULT_USER_MESSAGES.get(code, DEFAULT_USER_MESSAGES["INTERNAL_ERROR"]),
        "timestamp": _timestamp(),
    }
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content={"error": body})


async def rental_service_error_handler(request: Request, exc: RentalServiceError) -> JSONResponse:
    API_LOGGER.info(
        "Request rejected method=%s path=%s code=%s status=%s",
        request.method,
        request.url.path,
        exc.code,
        exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        fields.append(
            {
                "field": ".".join(location) or "body",
                "message": error.get("msg", "Invalid value"),
                "type": error.get("type", "value_error"),
            }
        )
    API_LOGGER.info("Validation failed method=%s path=%s fields=%s", request.method, request.url.path, len(fields))
    message = fields[0]["message"] if fields else "Invalid request"
    return _error_response(400, "VALIDATION_ERROR", message, {"fields": fields})


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code = _HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    message = exc.detail if isinstance(exc.detail, str) else code
    if exc.status_code == 404 and message == "Not Found":
        message = "API endpoint not found"
    return _error_response(exc.status_code, code, message)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    API_LOGGER.exception("Unhandled error method=%s path=%s", request.method, request.url.path)
    message = str(exc) if _DEBUG else "Internal server error"
    return _error_response(500, "INTERNAL_ERROR", message)


app.add_exception_handler(RentalServiceError, rental_service_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_error_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)


def game_list_filters(
    query: Optional[str] = Query(None, max_length=200),
    min_players: Optional[int] = Query(None, ge=1, le=50),
    max_players: Optional[int] = Query(None, ge=1, le=50),
    min_play_time: Optional[int] = Query(None, ge=1, le=1440),
    max_play_time: Optional[int] = Query(None, ge=1, le=1440),
    complexity: Optional[Complexity] = Query(None),
    availability: Literal["available", "rented", "all"] = Query("all"),
    sort_by: GameSortField = Query("created_at"),
    sort_order: Literal["asc", "desc"] = Query("desc"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
) -> GameListQuery:
    return GameListQuery(
        query=query,
        min_players=min_players,
        max_players=max_players,
        min_play_time=min_play_time,
        max_play_time=max_play_time,
        complexity=complexity,
        availability=availability,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )


def rental_list_filters(
    query: Optional[str] = Query(None, max_length=200),
    game_id: Optional[int] = Query(None, gt=0),
    status: RentalStatusFilter = Query("all"),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    sort_by: RentalSortField = Query("rented_at"),
    sort_order: Literal["asc", "desc"] = Query("desc"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
) -> RentalListQuery:
    return RentalListQuery(
        query=query,
        game_id=game_id,
        status=status,
        date_from=date_from,
        date_to=date_to,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        API_LOGGER.error("Health check failed: %s", exc)
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api")
def api_info():
    return {
        "name": API_NAME,
        "version": API_VERSION,
        "status": "healthy",
        "timestamp": _timestamp(),
    }


@app.get("/api/games")
def get_games(filters: GameListQuery = Depends(game_list_filters), db: Session = Depends(get_rental_db)):
    data, pagination = list_games(db, filters)
    return _success(data, pagination)


@app.post("/api/games", status_code=201)
def post_game(payload: GameCreateDto, db: Session = Depends(get_rental_db)):
    return _success(create_game(db, payload))


@app.get("/api/games/{game_id}")
def get_game_item(game_id: int, db: Session = Depends(get_rental_db)):
    game = get_game(db, game_id)
    if not game:
        raise NotFoundError.for_record("Game", game_id)
    return _success(game)


@app.put("/api/games/{game_id}")
def put_game(game_id: int, payload: GameUpdateDto, db: Session = Depends(get_rental_db)):
    game = update_game(db, game_id, payload)
    if not game:
        raise NotFoundError.for_record("Game", game_id)
    return _success(game)


@app.delete("/api/games/{game_id}", status_code=204)
def remove_game(game_id: int, db: Session = Depends(get_rental_db)):
    if not delete_game(db, game_id):
        raise NotFoundError.for_record("Game", game_id)
    return Response(status_code=204)


@app.get("/api/rentals")
def get_rentals(filters: RentalListQuery = Depends(rental_list_filters), db: Session = Depends(get_rental_db)):
    data, pagination = list_rentals(db, filters)
    return _success(data, pagination)


@app.post("/api/rentals", status_code=201)
def post_rental(payload: CreateRentalDto, db: Session = Depends(get_rental_db)):
    rental = create_rental(db, payload)
    return _success(serialize_rental(rental))


@app.get("/api/rentals/{rental_id}")
def get_rental_item(rental_id: int, db: Session = Depends(get_rental_db)):
    rental = get_rental(db, rental_id)
    if not rental:
        raise NotFoundError.for_record("Rental", rental_id)
    return _success(serialize_rental(rental))


@app.put("/api/rentals/{rental_id}")
def put_rental(rental_id: int, payload: UpdateRentalDto, db: Session = Depends(get_rental_db)):
    rental = update_rental(db, rental_id, payload)
    if not rental:
        raise NotFoundError.for_record("Rental", rental_id)
    return _success(serialize_rental(rental))


@app.delete("/api/rentals/{rental_id}", status_code=204)
def remove_rental(rental_id: int, db: Session = Depends(get_rental_db)):
    if not delete_rental(db, rental_id):
        raise NotFoundError.for_record("Rental", rental_id)
    return Response(status_code=204)


@app.post("/api/rentals/{rental_id}/return")
def post_return_rental(rental_id: int, db: Session = Depends(get_rental_db)):
    rental = return_rental(db, rental_id)
    return _success(serialize_rental(rental))


@app.post("/api/rentals/{rental_id}/extend")
def post_extend_rental(rental_id: int, payload: ExtensionRequest, db: Session = Depends(get_rental_db)):
    rental = extend_rental(db, rental_id, payload.new_due_date)
    return _success(serialize_rental(rental))


if __name__ == "__main__":
    import uvicorn

    host = os.environ.get("BOARD_RENTAL_HOST", "127.0.0.1")
    port = int(os.environ.get("BOARD_RENTAL_PORT", "8000"))
    API_LOGGER.info("Starting server at %s:%s", host, port)
    uvicorn.run("BoardRental:app", host=host, port=port, log_level=_LOG_LEVEL.lower())
