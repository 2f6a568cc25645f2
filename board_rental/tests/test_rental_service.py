import logging
import os
import sys
import unittest
from datetime import date, timedelta
from pathlib import Path
from unittest import mock

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


os.environ.setdefault("BOARD_RENTAL_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from models.rental_models import Game, Rental
from schemas.games import GameCreateDto, GameUpdateDto
from schemas.rentals import CreateRentalDto, RentalListQuery, UpdateRentalDto
from services import rental_service
from services.errors import ConflictError, InvalidOperationError, NotFoundError, ValidationError
from services.game_service import create_game, update_game


def _make_session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


class RentalLifecycleTests(unittest.TestCase):
    def setUp(self):
        self.db = _make_session_factory()()
        self.logger = logging.getLogger("board_rental.tests.rentals")
        self.game_id = create_game(self.db, GameCreateDto(title="Azul", min_players=2, max_players=4))["id"]

    def tearDown(self):
        self.db.close()

    def _rent(self, game_id=None, **overrides):
        payload = {
            "game_id": game_id or self.game_id,
            "name": "John",
            "email": "j@x.com",
            "rented_at": "2025-01-01",
        }
        payload.update(overrides)
        return rental_service.create_rental(self.db, CreateRentalDto(**payload), logger=self.logger)

    def _active_count(self, game_id):
        return self.db.execute(
            select(func.count(Rental.id)).where(Rental.game_id == game_id).where(Rental.returned_at.is_(None))
        ).scalar()

    def test_due_date_defaults_to_fourteen_days(self):
        rental = self._rent(rented_at="2025-11-08")
        self.assertEqual(rental.due_date, date(2025, 11, 22))
        self.assertIsNone(rental.returned_at)

    def test_explicit_due_date_is_kept(self):
        rental = self._rent(due_date="2025-01-05")
        self.assertEqual(rental.due_date, date(2025, 1, 5))

    def test_due_date_before_rented_at_is_rejected(self):
        with self.assertRaises(ValidationError):
            self._rent(rented_at="2025-01-10", due_date="2025-01-05")
        self.assertEqual(self._active_count(self.game_id), 0)

    def test_availability_follows_active_rental(self):
        self.assertTrue(rental_service.is_available(self.db, self.game_id))
        rental = self._rent()
        self.assertFalse(rental_service.is_available(self.db, self.game_id))
        rental_service.return_rental(self.db, rental.id, logger=self.logger)
        self.assertTrue(rental_service.is_available(self.db, self.game_id))

    def test_second_rental_conflicts_and_inserts_nothing(self):
        self._rent()
        with self.assertLogs(self.logger, level="WARNING") as captured:
            with self.assertRaises(ConflictError) as ctx:
                self._rent(name="Jane", phone="010-1234-5678", email=None)
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(ctx.exception.code, "GAME_ALREADY_RENTED")
        self.assertIn("reason=already_rented", captured.output[0])
        total = self.db.execute(select(func.count(Rental.id))).scalar()
        self.assertEqual(total, 1)

    def test_unique_index_rejects_race_past_the_precheck(self):
        self._rent()
        with mock.patch.object(rental_service, "is_available", return_value=True):
            with self.assertRaises(ConflictError):
                self._rent(name="Racer")
        self.assertEqual(self._active_count(self.game_id), 1)
        # The session is usable again after the rollback.
        self.assertFalse(rental_service.is_available(self.db, self.game_id))

    def test_database_refuses_two_active_rentals(self):
        for name in ("A", "B"):
            self.db.add(
                Rental(
                    game_id=self.game_id,
                    name=name,
                    email="a@x.com",
                    rented_at=date(2025, 1, 1),
                    due_date=date(2025, 1, 15),
                )
            )
        with self.assertRaises(IntegrityError):
            self.db.commit()
        self.db.rollback()

    def test_rental_for_missing_game_is_not_found(self):
        with self.assertRaises(NotFoundError) as ctx:
            self._rent(game_id=999)
        self.assertEqual(ctx.exception.code, "RECORD_NOT_FOUND")

    def test_return_twice_fails_without_touching_returned_at(self):
        rental = self._rent()
        returned = rental_service.return_rental(self.db, rental.id, logger=self.logger)
        stamped = returned.returned_at
        self.assertIsNotNone(stamped)

        with self.assertRaises(NotFoundError) as ctx:
            rental_service.return_rental(self.db, rental.id, logger=self.logger)
        self.assertEqual(ctx.exception.code, "RENTAL_NOT_FOUND")
        self.assertIn("already been returned", ctx.exception.message)
        self.db.expire_all()
        self.assertEqual(self.db.get(Rental, rental.id).returned_at, stamped)

    def test_return_missing_rental_is_not_found(self):
        with self.assertRaises(NotFoundError) as ctx:
            rental_service.return_rental(self.db, 404)
        self.assertEqual(ctx.exception.code, "RENTAL_NOT_FOUND")

    def test_extend_requires_a_later_date(self):
        rental = self._rent()
        for candidate in (date(2025, 1, 15), date(2025, 1, 10)):
            with self.assertRaises(InvalidOperationError):
                rental_service.extend_rental(self.db, rental.id, candidate)
        self.db.expire_all()
        self.assertEqual(self.db.get(Rental, rental.id).due_date, date(2025, 1, 15))

        extended = rental_service.extend_rental(self.db, rental.id, date(2025, 1, 16), logger=self.logger)
        self.assertEqual(extended.due_date, date(2025, 1, 16))
        extended = rental_service.extend_rental(self.db, rental.id, date(2025, 2, 1), logger=self.logger)
        self.assertEqual(extended.due_date, date(2025, 2, 1))

    def test_extend_returned_rental_is_invalid(self):
        rental = self._rent()
        rental_service.return_rental(self.db, rental.id)
        with self.assertRaises(InvalidOperationError) as ctx:
            rental_service.extend_rental(self.db, rental.id, date(2025, 3, 1))
        self.assertEqual(ctx.exception.message, "Cannot extend a returned rental")

    def test_extend_missing_rental_is_not_found(self):
        with self.assertRaises(NotFoundError):
            rental_service.extend_rental(self.db, 77, date(2025, 3, 1))

    def test_delete_game_blocked_by_active_rental(self):
        self._rent()
        with self.assertRaises(InvalidOperationError) as ctx:
            rental_service.delete_game(self.db, self.game_id, logger=self.logger)
        self.assertEqual(ctx.exception.message, "Cannot delete game with active rentals")
        self.assertIsNotNone(self.db.get(Game, self.game_id))

    def test_delete_game_keeps_rental_opened_after_the_check(self):
        rental = self._rent()
        with mock.patch.object(rental_service, "is_available", return_value=True):
            with self.assertRaises(InvalidOperationError):
                rental_service.delete_game(self.db, self.game_id, logger=self.logger)
        self.db.expire_all()
        self.assertIsNotNone(self.db.get(Game, self.game_id))
        survivor = self.db.get(Rental, rental.id)
        self.assertIsNotNone(survivor)
        self.assertIsNone(survivor.returned_at)

    def test_delete_game_with_history_and_race_keeps_history(self):
        old = self._rent(rented_at="2024-12-01")
        rental_service.return_rental(self.db, old.id)
        current = self._rent()
        with mock.patch.object(rental_service, "is_available", return_value=True):
            with self.assertRaises(InvalidOperationError):
                rental_service.delete_game(self.db, self.game_id)
        self.db.expire_all()
        self.assertIsNotNone(self.db.get(Rental, old.id))
        self.assertIsNotNone(self.db.get(Rental, current.id))

    def test_serialized_timestamps_carry_utc_offset(self):
        rental = rental_service.return_rental(self.db, self._rent().id)
        body = rental_service.serialize_rental(rental)
        for field in ("returned_at", "created_at", "updated_at"):
            self.assertEqual(body[field].utcoffset(), timedelta(0), field)
            self.assertTrue(body[field].isoformat().endswith("+00:00"), field)

    def test_delete_game_removes_returned_history(self):
        rental = self._rent()
        rental_service.return_rental(self.db, rental.id)
        self.assertTrue(rental_service.delete_game(self.db, self.game_id, logger=self.logger))
        self.db.expire_all()
        self.assertIsNone(self.db.get(Game, self.game_id))
        self.assertIsNone(self.db.get(Rental, rental.id))

    def test_delete_missing_game_returns_false(self):
        self.assertFalse(rental_service.delete_game(self.db, 12345))

    def test_delete_rental(self):
        rental = self._rent()
        self.assertTrue(rental_service.delete_rental(self.db, rental.id, logger=self.logger))
        self.assertFalse(rental_service.delete_rental(self.db, rental.id))
        self.assertTrue(rental_service.is_available(self.db, self.game_id))

    def test_update_rental_keeps_a_contact_channel(self):
        rental = self._rent()
        updated = rental_service.update_rental(
            self.db, rental.id, UpdateRentalDto(phone="010-1111-2222", notes="Sleeves missing")
        )
        self.assertEqual(updated.phone, "010-1111-2222")
        self.assertEqual(updated.notes, "Sleeves missing")

        updated = rental_service.update_rental(self.db, rental.id, UpdateRentalDto(email=None))
        self.assertIsNone(updated.email)

        with self.assertRaises(ValidationError):
            rental_service.update_rental(self.db, rental.id, UpdateRentalDto(phone=None))
        self.assertIsNone(rental_service.update_rental(self.db, 999, UpdateRentalDto(notes="x")))

    def test_at_most_one_active_rental_after_mixed_sequence(self):
        second_game = create_game(self.db, GameCreateDto(title="Carcassonne"))["id"]
        for _ in range(3):
            first = self._rent()
            with self.assertRaises(ConflictError):
                self._rent(name="Other")
            other = self._rent(game_id=second_game)
            rental_service.return_rental(self.db, first.id)
            rental_service.return_rental(self.db, other.id)
            self.assertLessEqual(self._active_count(self.game_id), 1)
            self.assertLessEqual(self._active_count(second_game), 1)
        self._rent()
        self.assertEqual(self._active_count(self.game_id), 1)
        self.assertEqual(self._active_count(second_game), 0)


class RentalListingTests(unittest.TestCase):
    def setUp(self):
        self.db = _make_session_factory()()
        self.azul = create_game(self.db, GameCreateDto(title="Azul"))["id"]
        self.catan = create_game(self.db, GameCreateDto(title="Catan"))["id"]
        self.dixit = create_game(self.db, GameCreateDto(title="Dixit"))["id"]

        def rent(game_id, name, rented_at):
            return rental_service.create_rental(
                self.db,
                CreateRentalDto(game_id=game_id, name=name, email=f"{name.lower()}@x.com", rented_at=rented_at),
            )

        returned = rent(self.azul, "Alice", "2025-03-01")
        rental_service.return_rental(self.db, returned.id)
        rent(self.azul, "Bob", "2025-03-20")
        rent(self.catan, "Bobby", "2025-04-02")
        rent(self.dixit, "Carol", "2025-05-10")

    def tearDown(self):
        self.db.close()

    def _list(self, today=date(2025, 4, 10), **filters):
        return rental_service.list_rentals(self.db, RentalListQuery(**filters), today=today)

    def test_status_filters(self):
        active, _ = self._list(status="active")
        self.assertEqual({row["name"] for row in active}, {"Bob", "Bobby", "Carol"})

        returned, _ = self._list(status="returned")
        self.assertEqual([row["name"] for row in returned], ["Alice"])
        self.assertEqual(returned[0]["status"], "returned")

        overdue, pagination = self._list(status="overdue")
        self.assertEqual([row["name"] for row in overdue], ["Bob"])
        self.assertTrue(overdue[0]["is_overdue"])
        self.assertEqual(pagination["total"], 1)

    def test_name_query_and_game_filter(self):
        rows, _ = self._list(query="bob")
        self.assertEqual({row["name"] for row in rows}, {"Bob", "Bobby"})

        rows, _ = self._list(game_id=self.azul, sort_by="rented_at", sort_order="asc")
        self.assertEqual([row["name"] for row in rows], ["Alice", "Bob"])
        self.assertEqual(rows[0]["game"]["title"], "Azul")

    def test_date_range_is_inclusive(self):
        rows, _ = self._list(date_from="2025-03-20", date_to="2025-04-02")
        self.assertEqual({row["name"] for row in rows}, {"Bob", "Bobby"})

    def test_pagination(self):
        rows, pagination = self._list(sort_by="name", sort_order="asc", page=2, limit=3)
        self.assertEqual([row["name"] for row in rows], ["Carol"])
        self.assertEqual(pagination, {"page": 2, "limit": 3, "total": 4, "totalPages": 2})


class GameUpdateTests(unittest.TestCase):
    def setUp(self):
        self.db = _make_session_factory()()
        self.game_id = create_game(self.db, GameCreateDto(title="Azul", min_players=2, max_players=4))["id"]

    def tearDown(self):
        self.db.close()

    def test_partial_update_checks_stored_player_range(self):
        with self.assertRaises(ValidationError) as ctx:
            update_game(self.db, self.game_id, GameUpdateDto(min_players=5))
        self.assertEqual(ctx.exception.details["field"], "max_players")

        updated = update_game(self.db, self.game_id, GameUpdateDto(min_players=3, play_time=45))
        self.assertEqual(updated["min_players"], 3)
        self.assertEqual(updated["max_players"], 4)
        self.assertEqual(updated["play_time"], 45)

    def test_update_missing_game_returns_none(self):
        self.assertIsNone(update_game(self.db, 999, GameUpdateDto(title="Nope")))


if __name__ == "__main__":
    unittest.main()
