from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, model_validator


Complexity = Literal["low", "medium", "high"]
GameSortField = Literal["title", "min_players", "max_players", "play_time", "created_at"]


class GameCreateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = Field(min_length=1, max_length=200)
    min_players: Optional[int] = Field(default=None, ge=1, le=20)
    max_players: Optional[int] = Field(default=None, ge=1, le=50)
    play_time: Optional[int] = Field(default=None, ge=1, le=1440)
    complexity: Optional[Complexity] = None
    description: Optional[str] = Field(default=None, max_length=1000)
    image_url: Optional[HttpUrl] = None
    koreaboardgames_url: Optional[HttpUrl] = None

    @model_validator(mode="after")
    def _check_player_range(self):
        if self.min_players is not None and self.max_players is not None and self.min_players > self.max_players:
            raise ValueError("min_players must be less than or equal to max_players")
        return self


class GameUpdateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    min_players: Optional[int] = Field(default=None, ge=1, le=20)
    max_players: Optional[int] = Field(default=None, ge=1, le=50)
    play_time: Optional[int] = Field(default=None, ge=1, le=1440)
    complexity: Optional[Complexity] = None
    description: Optional[str] = Field(default=None, max_length=1000)
    image_url: Optional[HttpUrl] = None
    koreaboardgames_url: Optional[HttpUrl] = None

    @model_validator(mode="after")
    def _check_player_range(self):
        if self.min_players is not None and self.max_players is not None and self.min_players > self.max_players:
            raise ValueError("min_players must be less than or equal to max_players")
        return self


class GameListQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    query: Optional[str] = Field(default=None, max_length=200)
    min_players: Optional[int] = Field(default=None, ge=1, le=50)
    max_players: Optional[int] = Field(default=None, ge=1, le=50)
    min_play_time: Optional[int] = Field(default=None, ge=1, le=1440)
    max_play_time: Optional[int] = Field(default=None, ge=1, le=1440)
    complexity: Optional[Complexity] = None
    availability: Literal["available", "rented", "all"] = "all"
    sort_by: GameSortField = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
