from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from fastapi import Request
from pymongo.database import Database

from config import Settings

if TYPE_CHECKING:
    from mailer import Mailer
    from relay import Relay
    from slowapi import Limiter


@dataclass
class AppContext:
    """Everything a request handler may reach for; built once by create_app()."""

    settings: Settings
    db: Database
    relay: Relay
    mailer: Mailer
    limiter: Limiter


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_db(request: Request) -> Database:
    return request.app.state.context.db


def get_settings(request: Request) -> Settings:
    return request.app.state.context.settings
