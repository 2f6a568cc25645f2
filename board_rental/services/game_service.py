from __future__ import annotations

import logging
import math
from datetime import datetime, timezone

from sqlalchemy import asc, desc, func, select
from sqlalchemy.orm import Session

from models.rental_models import Game, Rental
from services.errors import ValidationError


LOGGER = logging.getLogger("board_rental.games")

GAME_SORT_COLUMNS = {
    "title": Game.title,
    "min_players": Game.min_players,
    "max_players": Game.max_players,
    "play_time": Game.play_time,
    "created_at": Game.created_at,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to the naive timestamps stored in the database."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def build_pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }


def active_rentals_by_game(db: Session, game_ids: list[int]) -> dict[int, Rental]:
    if not game_ids:
        return {}
    rows = db.execute(
        select(Rental)
        .where(Rental.game_id.in_(game_ids))
        .where(Rental.returned_at.is_(None))
    ).scalars().all()
    return {rental.game_id: rental for rental in rows}


def serialize_game(game: Game, active_rental: Rental | None = None) -> dict:
    return {
        "id": game.id,
        "title": game.title,
        "min_players": game.min_players,
        "max_players": game.max_players,
        "play_time": game.play_time,
        "complexity": game.complexity,
        "description": game.description,
        "image_url": game.image_url,
        "koreaboardgames_url": game.koreaboardgames_url,
        "created_at": as_utc(game.created_at),
        "updated_at": as_utc(game.updated_at),
        "is_rented": active_rental is not None,
        "return_date": active_rental.due_date if active_rental else None,
    }


def get_game(db: Session, game_id: int) -> dict | None:
    game = db.get(Game, game_id)
    if not game:
        return None
    active = active_rentals_by_game(db, [game.id]).get(game.id)
    return serialize_game(game, active)


def list_games(db: Session, filters) -> tuple[list[dict], dict]:
    """Filtered, sorted, paginated catalog listing.

    Availability depends on the rental join, so when an availability filter is
    requested every matching game is loaded, filtered in Python and paginated
    afterwards. Otherwise pagination happens in SQL.
    """
    stmt = select(Game)
    if filters.query:
        stmt = stmt.where(Game.title.ilike(f"%{filters.query.strip()}%"))
    if filters.min_players is not None:
        stmt = stmt.where(Game.min_players >= filters.min_players)
    if filters.max_players is not None:
        stmt = stmt.where(Game.max_players <= filters.max_players)
    if filters.min_play_time is not None:
        stmt = stmt.where(Game.play_time >= filters.min_play_time)
    if filters.max_play_time is not None:
        stmt = stmt.where(Game.play_time <= filters.max_play_time)
    if filters.complexity:
        stmt = stmt.where(Game.complexity == filters.complexity)

    column = GAME_SORT_COLUMNS[filters.sort_by]
    direction = asc if filters.sort_order == "asc" else desc
    stmt = stmt.order_by(direction(column), direction(Game.id))

    offset = (filters.page - 1) * filters.limit

    if filters.availability in ("available", "rented"):
        games = db.execute(stmt).scalars().all()
        active = active_rentals_by_game(db, [game.id for game in games])
        want_rented = filters.availability == "rented"
        matching = [game for game in games if (game.id in active) == want_rented]
        page_rows = matching[offset: offset + filters.limit]
        total = len(matching)
    else:
        total = db.execute(select(func.count()).select_from(stmt.order_by(None).subquery())).scalar() or 0
        page_rows = db.execute(stmt.offset(offset).limit(filters.limit)).scalars().all()
        active = active_rentals_by_game(db, [game.id for game in page_rows])

    data = [serialize_game(game, active.get(game.id)) for game in page_rows]
    return data, build_pagination(filters.page, filters.limit, total)


def create_game(db: Session, payload, logger: logging.Logger | None = None) -> dict:
    log = logger or LOGGER
    now = utc_now()
    game = Game(created_at=now, updated_at=now)
    for field, value in payload.model_dump(exclude_unset=True, mode="json").items():
        setattr(game, field, value)

    db.add(game)
    db.commit()
    db.refresh(game)
    log.info("Game created game_id=%s title=%s", game.id, game.title)
    return serialize_game(game)


def update_game(db: Session, game_id: int, payload, logger: logging.Logger | None = None) -> dict | None:
    log = logger or LOGGER
    game = db.get(Game, game_id)
    if not game:
        return None

    changes = payload.model_dump(exclude_unset=True, mode="json")
    min_players = changes.get("min_players", game.min_players)
    max_players = changes.get("max_players", game.max_players)
    if min_players is not None and max_players is not None and min_players > max_players:
        raise ValidationError(
            "min_players must be less than or equal to max_players",
            field="max_players",
            value=max_players,
        )
    if "title" in changes and not changes["title"]:
        raise ValidationError("title cannot be empty", field="title", value=changes["title"])

    for field, value in changes.items():
        setattr(game, field, value)
    game.updated_at = utc_now()

    db.commit()
    db.refresh(game)
    log.info("Game updated game_id=%s fields=%s", game.id, ",".join(sorted(changes)) or "-")
    active = active_rentals_by_game(db, [game.id]).get(game.id)
    return serialize_game(game, active)
