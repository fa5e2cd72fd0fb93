import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pymongo.database import Database

import auth
import content
import uploads
import users
from config import Settings
from context import AppContext, get_context
from database import connect, create_document, ensure_indexes
from errors import ServerError, register_error_handlers
from mailer import Mailer
from ratelimit import create_limiter, install_rate_limiting
from relay import Relay, asgi_app
from schemas import ContactRequest, Role, UserStatus
from security import hash_password

logger = logging.getLogger(__name__)


# =========
# Bootstrap
# =========
def seed_admin(db: Database, settings: Settings) -> None:
    """Create the admin account from ADMIN_EMAIL / ADMIN_PASSWORD when it does not exist yet."""
    if not settings.admin_email or not settings.admin_password:
        return
    email = settings.admin_email.lower()
    if db["users"].find_one({"email": email}):
        return
    create_document(
        db,
        "users",
        {
            "firstName": "Admin",
            "lastName": "User",
            "email": email,
            "password": hash_password(settings.admin_password),
            "role": Role.ADMIN.value,
            "status": UserStatus.ACTIVE.value,
            "isEmailVerified": True,
            "loginAttempts": 0,
        },
    )
    logger.info(f"Seeded admin account {email}")


# ==================
# FastAPI app config
# ==================
def create_app(
    settings: Optional[Settings] = None,
    db: Optional[Database] = None,
    mailer: Optional[Mailer] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if db is None:
        db = connect(settings.database_url, settings.database_name)

    ctx = AppContext(
        settings=settings,
        db=db,
        relay=Relay(settings, db),
        mailer=mailer or Mailer(settings),
        limiter=create_limiter(settings),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ensure_indexes(ctx.db)
        seed_admin(ctx.db, settings)
        logger.info(f"{settings.app_name} started ({settings.environment})")
        yield
        await ctx.relay.close_all()
        logger.info(f"{settings.app_name} stopped")

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.context = ctx

    register_error_handlers(app)

    os.makedirs(settings.upload_dir, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=settings.upload_dir), name="uploads")

    app.include_router(auth.router)
    app.include_router(users.router)
    for router in content.routers:
        app.include_router(router)
    app.include_router(uploads.router)

    # ======
    # Routes
    # ======
    @app.get("/")
    def root():
        return {"status": "ok", "service": "portfolio-api"}

    @app.get("/api/health")
    def health(ctx: AppContext = Depends(get_context)):
        try:
            ctx.db.command("ping")
            database = "connected"
        except Exception as e:
            logger.warning(f"Database ping failed: {e}")
            database = "not-available"
        return {
            "success": True,
            "status": "ok",
            "environment": ctx.settings.environment,
            "database": database,
            "relayClients": ctx.relay.connection_count,
        }

    @app.post("/api/v1/contact")
    def contact(payload: ContactRequest, ctx: AppContext = Depends(get_context)):
        if not ctx.mailer.send_contact_email(payload.name, payload.email, payload.subject, payload.message):
            raise ServerError("Message could not be sent, please try again later", status_code=503)
        return {"success": True, "message": "Message sent", "data": {}}

    install_rate_limiting(app, ctx.limiter)
    # outermost, so refusals still carry CORS headers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


def create_server(settings: Optional[Settings] = None):
    """ASGI entry point: the API plus the relay under /ws."""
    return asgi_app(create_app(settings))


if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    uvicorn.run(create_server(settings), host="0.0.0.0", port=settings.port)
