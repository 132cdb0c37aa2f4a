from __future__ import annotations
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import redis.asyncio as redis
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi import Form
from fastapi.responses import HTMLResponse, RedirectResponse, ORJSONResponse
from fastapi.templating import Jinja2Templates
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from . import config
from .audio import AudioAlertGenerator, sounddevice_context, no_audio
from .detectors import OrderWatch, PollingDetector, RealtimeDetector
from .helpers import ct_equal, to_iso
from .infra import timings
from .infra.sql import make_async_engine, plain_postgres_dsn
from .logs import configure_logging
from .model.db import Base
from .model import changefeed
from .model.notifications import NotificationStore
from .model.orderdetails import OrderDetailFetcher, OrderPayload
from .model.orders import (
    InvalidOrder, OrderLookup, OrderNotFound, confirm_order, create_order,
    list_recent_orders,
)
from .presenter import (
    NotificationPresenter, ConfirmFailed, ConfirmUnavailable,
)

logger = structlog.get_logger(__name__)

templates = Jinja2Templates(
    directory=str(Path(__file__).parent / "templates")
)


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")


def create_app(
    database_url: str = config.DATABASE_URL,
    *,
    feed=None,
    audio: Optional[AudioAlertGenerator] = None,
    watch_mode: str = config.WATCH_MODE,
    poll_interval: float = config.POLL_INTERVAL_SECONDS,
    poll_coalesce: bool = config.POLL_COALESCE,
    settle_seconds: float = config.REALTIME_SETTLE_SECONDS,
) -> FastAPI:
    """Composition root: every long-lived object is built here once."""
    configure_logging(config.LOG_LEVEL)

    engine, SessionAsync, gated = make_async_engine(database_url)

    if audio is None:
        audio = AudioAlertGenerator(
            sounddevice_context if config.AUDIO_ENABLED else no_audio,
            repeat_interval=config.ALERT_REPEAT_SECONDS,
        )

    async def get_db() -> AsyncSession:
        async with SessionAsync() as session:
            yield session

    async def confirm(order_id: str) -> None:
        async with gated():
            async with SessionAsync() as db:
                await confirm_order(db, order_id)

    async def record_shown(payload: OrderPayload) -> None:
        async with gated():
            async with SessionAsync() as db:
                await NotificationStore(db).record_new_order(
                    payload.id, payload.order_number, payload.total_amount
                )

    presenter = NotificationPresenter(
        audio, confirm_order=confirm, on_shown=record_shown
    )
    fetcher = OrderDetailFetcher(SessionAsync, gated)
    lookup = OrderLookup(SessionAsync, gated)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await _startup(app)
        try:
            yield
        finally:
            await _shutdown(app)

    async def _startup(app: FastAPI) -> None:
        logger.info("orderwatch_starting", watch_mode=watch_mode,
                    feed_backend=changefeed.BACKEND)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            if feed is None and changefeed.BACKEND == "pg":
                from .model.changefeed._postgres import create_schema
                await create_schema(conn)

        app.state.redis = None
        if feed is not None:
            app.state.feed = feed
        elif changefeed.BACKEND == "pg":
            app.state.feed = changefeed.new_feed(
                dsn=plain_postgres_dsn(database_url)
            )
        else:
            app.state.redis = redis.from_url(
                config.REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )
            app.state.feed = changefeed.new_feed(r=app.state.redis)

        def make_realtime() -> RealtimeDetector:
            return RealtimeDetector(
                app.state.feed, lookup, fetcher, presenter.show,
                vibrate=presenter.request_vibration,
                settle_seconds=settle_seconds,
            )

        polling = PollingDetector(
            lookup, fetcher, presenter.show,
            vibrate=presenter.request_vibration,
            interval=poll_interval, coalesce=poll_coalesce,
        )
        app.state.watch = OrderWatch(
            make_realtime, polling, mode=watch_mode,
            base_delay=config.RECONNECT_BASE_SECONDS,
            max_delay=config.RECONNECT_MAX_SECONDS,
            max_attempts=config.RECONNECT_MAX_ATTEMPTS,
        )
        await app.state.watch.start()

    async def _shutdown(app: FastAPI) -> None:
        watch = getattr(app.state, "watch", None)
        if watch is not None:
            await watch.stop()
        audio.stop_alert()
        r = getattr(app.state, "redis", None)
        if r is not None:
            await r.aclose()
            app.state.redis = None
        await engine.dispose()
        logger.info("orderwatch_stopped")

    app = FastAPI(
        title="Akanda Apéro order watch",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.add_middleware(SessionMiddleware, secret_key=config.SESSION_SECRET)
    app.state.presenter = presenter
    app.state.audio = audio
    app.state.engine = engine
    app.state.sessions = SessionAsync

    # ----------------------------
    # Admin pages
    # ----------------------------
    @app.get("/admin/login", response_class=HTMLResponse)
    async def admin_login_get(request: Request, next: str | None = "/admin"):
        return templates.TemplateResponse(
            request, "login.html", {"next": next, "error": None}
        )

    @app.post("/admin/login", response_class=HTMLResponse)
    async def admin_login_post(
        request: Request,
        username: str = Form(...),
        password: str = Form(...),
        next: str = Form("/admin"),
    ):
        ok_user = ct_equal(username.strip(), config.ADMIN_USERNAME)
        ok_pass = ct_equal(password, config.ADMIN_PASSWORD)
        if ok_user and ok_pass:
            request.session["admin_user"] = username.strip()
            return RedirectResponse(
                url=(next or "/admin"),
                status_code=HTTP_303_SEE_OTHER
            )
        return templates.TemplateResponse(
            request, "login.html",
            {"next": next, "error": "Invalid credentials."},
            status_code=401,
        )

    @app.get("/admin/logout")
    async def admin_logout(request: Request):
        request.session.clear()
        return RedirectResponse(url="/admin/login",
                                status_code=HTTP_303_SEE_OTHER)

    @app.get("/admin", response_class=HTMLResponse)
    async def admin_page(request: Request):
        if not is_admin(request):
            dest = request.url.path
            return RedirectResponse(
                url=f"/admin/login?next={dest}",
                status_code=307
            )
        return templates.TemplateResponse(
            request, "admin.html", {"site_name": "Akanda Apéro"}
        )

    # ----------------------------
    # API: new-order overlay
    # ----------------------------
    @app.get("/api/notifications/current",
             dependencies=[Depends(require_admin)])
    async def current_notification(request: Request):
        out = presenter.snapshot()
        out["watch"] = request.app.state.watch.status()
        return out

    @app.post("/api/notifications/dismiss",
              dependencies=[Depends(require_admin)])
    async def dismiss_notification():
        presenter.dismiss()
        return presenter.snapshot()

    @app.post("/api/notifications/confirm",
              dependencies=[Depends(require_admin)])
    async def confirm_notification():
        try:
            order_id = await presenter.confirm()
        except ConfirmUnavailable as e:
            raise HTTPException(409, detail=str(e))
        except ConfirmFailed as e:
            raise HTTPException(502, detail=str(e))
        return {"ok": True, "order_id": order_id}

    @app.post("/api/notifications/polling",
              dependencies=[Depends(require_admin)])
    async def toggle_polling(request: Request, payload: dict):
        enabled = payload.get("enabled")
        if not isinstance(enabled, bool):
            raise HTTPException(400, detail="enabled must be a boolean")
        try:
            request.app.state.watch.set_polling(enabled)
        except ValueError as e:
            raise HTTPException(409, detail=str(e))
        return request.app.state.watch.status()

    @app.get("/api/notifications/alert.wav")
    async def alert_sound():
        return Response(content=audio.render_phrase_wav(),
                        media_type="audio/wav")

    # ----------------------------
    # API: notification history
    # ----------------------------
    @app.get("/api/notifications/history",
             dependencies=[Depends(require_admin)])
    async def notification_history(limit: int = 50,
                                   unread_only: bool = False,
                                   db: AsyncSession = Depends(get_db)):
        store = NotificationStore(db)
        items = await store.list_notifications(limit=limit,
                                               unread_only=unread_only)
        return {"items": items, "unread": await store.unread_count()}

    @app.post("/api/notifications/read-all",
              dependencies=[Depends(require_admin)])
    async def notifications_read_all(db: AsyncSession = Depends(get_db)):
        return {"updated": await NotificationStore(db).mark_all_as_read()}

    @app.post("/api/notifications/{notification_id}/read",
              dependencies=[Depends(require_admin)])
    async def notification_read(notification_id: int,
                                db: AsyncSession = Depends(get_db)):
        if not await NotificationStore(db).mark_as_read(notification_id):
            raise HTTPException(404, detail="notification not found")
        return {"ok": True}

    @app.delete("/api/notifications/{notification_id}",
                dependencies=[Depends(require_admin)])
    async def notification_delete(notification_id: int,
                                  db: AsyncSession = Depends(get_db)):
        if not await NotificationStore(db).delete_notification(
                notification_id):
            raise HTTPException(404, detail="notification not found")
        return {"ok": True}

    @app.delete("/api/notifications", dependencies=[Depends(require_admin)])
    async def notifications_clear(db: AsyncSession = Depends(get_db)):
        return {"deleted": await NotificationStore(db).clear_all()}

    # ----------------------------
    # API: orders
    # ----------------------------
    @app.post("/api/orders", dependencies=[Depends(require_admin)])
    async def api_create_order(request: Request, payload: dict,
                               db: AsyncSession = Depends(get_db)):
        items = payload.get("items")
        if not isinstance(items, list) or not items:
            raise HTTPException(400, detail="items must be a non-empty list")
        if not all(isinstance(i, dict) for i in items):
            raise HTTPException(400, detail="each item must be an object")
        try:
            order = await create_order(
                db,
                items=items,
                customer_id=payload.get("customer_id"),
                first_name=payload.get("customer_first_name"),
                last_name=payload.get("customer_last_name"),
                email=payload.get("customer_email"),
                order_number=payload.get("order_number"),
                total_amount=payload.get("total_amount"),
            )
        except InvalidOrder as e:
            raise HTTPException(400, detail=str(e))
        try:
            await request.app.state.feed.publish(order.id)
        except RedisError as e:
            # polling still picks it up
            logger.error("insert_publish_failed", order_id=order.id,
                         error=str(e))
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "total_amount": order.total_amount,
        }

    @app.get("/api/admin/orders", dependencies=[Depends(require_admin)])
    async def api_admin_orders(limit: int = 200,
                               db: AsyncSession = Depends(get_db)):
        rows = await list_recent_orders(db, limit=limit)
        items = []
        for r in rows:
            items.append({
                "id": r["id"],
                "order_number": r["order_number"],
                "status": r["status"],
                "total_amount": r["total_amount"],
                "created_at": to_iso(r["created_at"]),
                "confirmed_at": to_iso(r["confirmed_at"]),
            })
        return {"items": items, "limit": limit}

    @app.post("/api/admin/orders/{order_id}/confirm",
              dependencies=[Depends(require_admin)])
    async def api_confirm_order(order_id: str,
                                db: AsyncSession = Depends(get_db)):
        try:
            confirmed_at = await confirm_order(db, order_id)
        except OrderNotFound:
            raise HTTPException(404, detail="order not found")
        return {"ok": True, "confirmed_at": to_iso(confirmed_at)}

    @app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
    async def api_admin_timings():
        return {"items": timings.snapshot()}

    return app


app = create_app()
