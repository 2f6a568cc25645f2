from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


COMPLEXITY_LEVELS = ("low", "medium", "high")

PARTIAL_INDEX_DIALECTS = ("sqlite", "postgresql", "mssql")


class Game(Base):
    __tablename__ = "games"
    __table_args__ = (
        CheckConstraint("length(title) > 0", name="ck_games_title_not_empty"),
        CheckConstraint("min_players IS NULL OR min_players > 0", name="ck_games_min_players"),
        CheckConstraint(
            "max_players IS NULL OR min_players IS NULL OR max_players >= min_players",
            name="ck_games_player_range",
        ),
        CheckConstraint("play_time IS NULL OR play_time > 0", name="ck_games_play_time"),
        CheckConstraint(
            "complexity IS NULL OR complexity IN ('low', 'medium', 'high')",
            name="ck_games_complexity",
        ),
        Index("idx_games_title", "title"),
        Index("idx_games_complexity", "complexity"),
        Index("idx_games_players", "min_players", "max_players"),
        Index("idx_games_created_at", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(200), nullable=False)
    min_players = Column(Integer)
    max_players = Column(Integer)
    play_time = Column(Integer)
    complexity = Column(String(10))
    description = Column(Text)
    image_url = Column(String(1000))
    koreaboardgames_url = Column(String(1000))
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now())

    rentals = relationship(
        "Rental",
        back_populates="game",
        cascade="all, delete-orphan",
        order_by="Rental.rented_at",
    )


class Rental(Base):
    __tablename__ = "rentals"
    __table_args__ = (
        CheckConstraint("length(name) > 0", name="ck_rentals_name_not_empty"),
        Index("idx_rentals_game_id", "game_id"),
        Index("idx_rentals_returned_at", "returned_at"),
        Index("idx_rentals_rented_at", "rented_at"),
        Index("idx_rentals_due_date", "due_date"),
        # At most one active rental per game. Only created where partial indexes exist.
        Index(
            "ux_rentals_active_game",
            "game_id",
            unique=True,
            sqlite_where=text("returned_at IS NULL"),
            postgresql_where=text("returned_at IS NULL"),
            mssql_where=text("returned_at IS NULL"),
        ).ddl_if(dialect=PARTIAL_INDEX_DIALECTS),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    game_id = Column(Integer, ForeignKey("games.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(100), nullable=False)
    email = Column(String(255))
    phone = Column(String(20))
    rented_at = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    returned_at = Column(DateTime)
    notes = Column(String(500))
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now())

    game = relationship("Game", back_populates="rentals")
