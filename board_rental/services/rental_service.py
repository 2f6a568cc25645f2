from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import asc, delete, desc, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from models.rental_models import Game, Rental
from services.errors import ConflictError, InvalidOperationError, NotFoundError, ValidationError
from services.game_service import as_utc, build_pagination, utc_now


LOGGER = logging.getLogger("board_rental.rentals")

DEFAULT_RENTAL_DAYS = 14

RENTAL_SORT_COLUMNS = {
    "name": Rental.name,
    "rented_at": Rental.rented_at,
    "due_date": Rental.due_date,
    "returned_at": Rental.returned_at,
    "created_at": Rental.created_at,
}


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def default_due_date(rented_at: date) -> date:
    return rented_at + timedelta(days=DEFAULT_RENTAL_DAYS)


def rental_status(rental: Rental, today: date | None = None) -> str:
    if rental.returned_at is not None:
        return "returned"
    current_day = today or utc_today()
    if rental.due_date and rental.due_date < current_day:
        return "overdue"
    return "active"


def _game_summary(game: Game) -> dict:
    return {
        "id": game.id,
        "title": game.title,
        "min_players": game.min_players,
        "max_players": game.max_players,
        "play_time": game.play_time,
        "complexity": game.complexity,
        "image_url": game.image_url,
    }


def serialize_rental(rental: Rental, today: date | None = None) -> dict:
    status = rental_status(rental, today)
    game = rental.game
    return {
        "id": rental.id,
        "game_id": rental.game_id,
        "name": rental.name,
        "email": rental.email,
        "phone": rental.phone,
        "rented_at": rental.rented_at,
        "due_date": rental.due_date,
        "returned_at": as_utc(rental.returned_at),
        "notes": rental.notes,
        "created_at": as_utc(rental.created_at),
        "updated_at": as_utc(rental.updated_at),
        "status": status,
        "is_overdue": status == "overdue",
        "game": _game_summary(game) if game else None,
    }


def is_available(db: Session, game_id: int) -> bool:
    active_id = db.execute(
        select(Rental.id)
        .where(Rental.game_id == game_id)
        .where(Rental.returned_at.is_(None))
        .limit(1)
    ).scalar()
    return active_id is None


def get_rental(db: Session, rental_id: int) -> Rental | None:
    return db.execute(
        select(Rental).options(selectinload(Rental.game)).where(Rental.id == rental_id)
    ).scalars().first()


def _require_rental(db: Session, rental_id: int) -> Rental:
    rental = get_rental(db, rental_id)
    if not rental:
        raise NotFoundError.for_record("Rental", rental_id)
    return rental


def list_rentals(db: Session, filters, today: date | None = None) -> tuple[list[dict], dict]:
    current_day = today or utc_today()
    stmt = select(Rental)
    if filters.query:
        stmt = stmt.where(Rental.name.ilike(f"%{filters.query.strip()}%"))
    if filters.game_id is not None:
        stmt = stmt.where(Rental.game_id == filters.game_id)
    if filters.status == "active":
        stmt = stmt.where(Rental.returned_at.is_(None))
    elif filters.status == "returned":
        stmt = stmt.where(Rental.returned_at.is_not(None))
    elif filters.status == "overdue":
        stmt = stmt.where(Rental.returned_at.is_(None)).where(Rental.due_date < current_day)
    if filters.date_from:
        stmt = stmt.where(Rental.rented_at >= filters.date_from)
    if filters.date_to:
        stmt = stmt.where(Rental.rented_at <= filters.date_to)

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0

    column = RENTAL_SORT_COLUMNS[filters.sort_by]
    direction = asc if filters.sort_order == "asc" else desc
    offset = (filters.page - 1) * filters.limit
    rows = db.execute(
        stmt.options(selectinload(Rental.game))
        .order_by(direction(column), direction(Rental.id))
        .offset(offset)
        .limit(filters.limit)
    ).scalars().all()

    data = [serialize_rental(rental, current_day) for rental in rows]
    return data, build_pagination(filters.page, filters.limit, total)


def _game_not_available(game_id: int) -> ConflictError:
    return ConflictError(
        "Game is not available for rent",
        user_message="This game is already rented out.",
        details={"game_id": game_id},
    )


def create_rental(db: Session, payload, logger: logging.Logger | None = None) -> Rental:
    """Open a rental for a game that has no active rental.

    ``due_date`` defaults to ``rented_at`` plus fourteen days. The availability
    pre-check gives a readable error; the partial unique index on active
    rentals rejects a concurrent insert that slipped past it.
    """
    log = logger or LOGGER
    if not payload.email and not payload.phone:
        raise ValidationError("Either email or phone is required", field="email", value=None)

    game = db.get(Game, payload.game_id)
    if not game:
        raise NotFoundError.for_record("Game", payload.game_id)

    due_date = payload.due_date or default_due_date(payload.rented_at)
    if due_date < payload.rented_at:
        raise ValidationError(
            "due_date must be on or after rented_at",
            field="due_date",
            value=due_date.isoformat(),
        )

    if not is_available(db, payload.game_id):
        log.warning("Rental rejected game_id=%s reason=already_rented", payload.game_id)
        raise _game_not_available(payload.game_id)

    now = utc_now()
    rental = Rental(
        game_id=payload.game_id,
        name=payload.name,
        email=payload.email,
        phone=payload.phone,
        rented_at=payload.rented_at,
        due_date=due_date,
        returned_at=None,
        notes=payload.notes,
        created_at=now,
        updated_at=now,
    )
    db.add(rental)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        log.warning("Rental rejected game_id=%s reason=active_rental_constraint", payload.game_id)
        raise _game_not_available(payload.game_id) from exc

    log.info(
        "Rental created rental_id=%s game_id=%s due_date=%s",
        rental.id,
        rental.game_id,
        rental.due_date,
    )
    return _require_rental(db, rental.id)


def _already_returned(rental_id: int, returned_at: datetime | None) -> NotFoundError:
    return NotFoundError(
        f"Active rental not found with id: {rental_id}; it has already been returned",
        user_message="This rental has already been returned.",
        details={"rental_id": rental_id, "returned_at": as_utc(returned_at).isoformat() if returned_at else None},
        code="RENTAL_NOT_FOUND",
    )


def _returned_cannot_extend(rental_id: int) -> InvalidOperationError:
    return InvalidOperationError(
        "Cannot extend a returned rental",
        user_message="A returned rental cannot be extended.",
        details={"rental_id": rental_id},
    )


def _due_date_not_advanced(rental_id: int, due_date: date, new_due_date: date) -> InvalidOperationError:
    return InvalidOperationError(
        "New due date must be after the current due date",
        user_message="The new due date must be later than the current due date.",
        details={
            "rental_id": rental_id,
            "due_date": due_date.isoformat(),
            "new_due_date": new_due_date.isoformat(),
        },
    )


def return_rental(db: Session, rental_id: int, logger: logging.Logger | None = None) -> Rental:
    """Stamp ``returned_at`` on an active rental.

    The write is conditional on ``returned_at IS NULL`` so two concurrent
    returns cannot both succeed.
    """
    log = logger or LOGGER
    rental = _require_rental(db, rental_id)
    if rental.returned_at is not None:
        raise _already_returned(rental_id, rental.returned_at)

    now = utc_now()
    result = db.execute(
        update(Rental)
        .where(Rental.id == rental_id)
        .where(Rental.returned_at.is_(None))
        .values(returned_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(rental)
        raise _already_returned(rental_id, rental.returned_at)
    db.commit()
    db.refresh(rental)
    log.info("Rental returned rental_id=%s game_id=%s", rental.id, rental.game_id)
    return rental


def extend_rental(
    db: Session,
    rental_id: int,
    new_due_date: date,
    logger: logging.Logger | None = None,
) -> Rental:
    log = logger or LOGGER
    rental = _require_rental(db, rental_id)
    if rental.returned_at is not None:
        raise _returned_cannot_extend(rental_id)
    if new_due_date <= rental.due_date:
        raise _due_date_not_advanced(rental_id, rental.due_date, new_due_date)

    previous = rental.due_date
    result = db.execute(
        update(Rental)
        .where(Rental.id == rental_id)
        .where(Rental.returned_at.is_(None))
        .where(Rental.due_date < new_due_date)
        .values(due_date=new_due_date, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(rental)
        if rental.returned_at is not None:
            raise _returned_cannot_extend(rental_id)
        raise _due_date_not_advanced(rental_id, rental.due_date, new_due_date)
    db.commit()
    db.refresh(rental)
    log.info("Rental extended rental_id=%s from=%s to=%s", rental.id, previous, new_due_date)
    return rental


def update_rental(db: Session, rental_id: int, payload, logger: logging.Logger | None = None) -> Rental | None:
    """Edit renter details and notes.

    Due date and return state are only changed through extend and return.
    """
    log = logger or LOGGER
    rental = get_rental(db, rental_id)
    if not rental:
        return None

    changes = payload.model_dump(exclude_unset=True)
    if "name" in changes and not changes["name"]:
        raise ValidationError("name cannot be empty", field="name", value=changes["name"])
    email = changes.get("email", rental.email)
    phone = changes.get("phone", rental.phone)
    if not email and not phone:
        raise ValidationError("Either email or phone is required", field="email", value=None)

    for field, value in changes.items():
        setattr(rental, field, value)
    rental.updated_at = utc_now()
    db.commit()
    log.info("Rental updated rental_id=%s fields=%s", rental.id, ",".join(sorted(changes)) or "-")
    return rental


def delete_rental(db: Session, rental_id: int, logger: logging.Logger | None = None) -> bool:
    log = logger or LOGGER
    rental = db.get(Rental, rental_id)
    if not rental:
        return False
    db.delete(rental)
    db.commit()
    log.info("Rental deleted rental_id=%s game_id=%s", rental_id, rental.game_id)
    return True


def _game_in_use(game_id: int) -> InvalidOperationError:
    return InvalidOperationError(
        "Cannot delete game with active rentals",
        user_message="A game that is currently rented out cannot be deleted.",
        details={"game_id": game_id},
    )


def delete_game(db: Session, game_id: int, logger: logging.Logger | None = None) -> bool:
    """Delete a game unless it is currently rented out.

    Returns False when the game does not exist. Returned rentals go with it.
    The game row is locked where the backend supports it, and the delete
    itself only matches while no active rental exists, so a rental opened
    after the availability check is never removed.
    """
    log = logger or LOGGER
    game = db.execute(select(Game).where(Game.id == game_id).with_for_update()).scalars().first()
    if not game:
        db.rollback()
        return False
    if not is_available(db, game_id):
        db.rollback()
        log.warning("Game delete rejected game_id=%s reason=active_rental", game_id)
        raise _game_in_use(game_id)

    active_rental = (
        select(Rental.id)
        .where(Rental.game_id == game_id)
        .where(Rental.returned_at.is_(None))
        .exists()
    )
    db.execute(
        delete(Rental)
        .where(Rental.game_id == game_id)
        .where(Rental.returned_at.is_not(None))
        .execution_options(synchronize_session=False)
    )
    result = db.execute(
        delete(Game)
        .where(Game.id == game_id)
        .where(~active_rental)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        log.warning("Game delete rejected game_id=%s reason=active_rental_constraint", game_id)
        raise _game_in_use(game_id)
    db.commit()
    db.expunge(game)
    log.info("Game deleted game_id=%s", game_id)
    return True
