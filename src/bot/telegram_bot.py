"""
Household Coordinator — Operator Bot.

Hosts the long-running process: the Telegram application owns the job queue
that fires the scheduled handlers, and exposes a small set of operator
commands for provisioning households, seeding members, exchanging QR tokens
and toggling chores.

Handlers are stateless: the store and ports are constructed once in
build_app() and reach every handler through bot_data.

Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import time as dt_time
from datetime import timedelta
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import Update
from telegram.ext import Application, ApplicationBuilder, CommandHandler, ContextTypes
from telegram.helpers import escape_markdown

from src.config import settings
from src.core.errors import CoordinatorError

if TYPE_CHECKING:
    from src.data.db import HouseholdStore
    from src.ports.identity_port import IdentityPort
    from src.ports.notification_port import PushPort

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores messages from unauthorized users."""

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


def _store(context: ContextTypes.DEFAULT_TYPE) -> HouseholdStore:
    return context.bot_data["store"]


def _format_error(exc: CoordinatorError) -> str:
    return f"Failed ({exc.code}): {exc.message}"


# ---------------------------------------------------------------------------
# Basic commands
# ---------------------------------------------------------------------------


_HELP_TEXT = (
    "Commands:\n"
    "/newhousehold — provision a household and founding member\n"
    "/seed <household> <member> <qr> — upsert a member with an exact QR token\n"
    "/signin <qr> <household> <member> — exchange a QR token for a credential\n"
    "/addchore <household> <due_in_minutes> <a,b,...> <points> <title>\n"
    "/members <household> — list members and points\n"
    "/done <household> <chore> — complete a chore\n"
    "/undo <household> <chore> — reopen a chore"
)


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start."""
    await update.message.reply_text("Household coordinator is running.\n\n" + _HELP_TEXT)


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help."""
    await update.message.reply_text(_HELP_TEXT)


# ---------------------------------------------------------------------------
# Provisioning and sign-in
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_newhousehold(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /newhousehold — create a household and its founding member."""
    from src.core.qr_exchange import provision_household

    try:
        result = provision_household(_store(context), token_bytes=settings.QR_TOKEN_BYTES)
    except CoordinatorError as exc:
        await update.message.reply_text(_format_error(exc))
        return

    await update.message.reply_text(
        f"Household: {result.household_id}\n"
        f"Member: {result.member_id}\n"
        f"QR: {result.qr_id}"
    )


@authorized_only
async def cmd_seed(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /seed <household> <member> <qr>."""
    from src.core.qr_exchange import seed_member

    args = context.args or []
    if len(args) != 3:
        await update.message.reply_text("Usage: /seed <household> <member> <qr>")
        return

    try:
        seed_member(_store(context), *args)
    except CoordinatorError as exc:
        await update.message.reply_text(_format_error(exc))
        return
    await update.message.reply_text("Member seeded.")


@authorized_only
async def cmd_signin(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /signin <qr> <household> <member> — exchange a QR token."""
    from src.core.qr_exchange import exchange_qr_token

    args = context.args or []
    if len(args) != 3:
        await update.message.reply_text("Usage: /signin <qr> <household> <member>")
        return

    qr_id, household_id, member_id = args
    try:
        custom_token = exchange_qr_token(
            _store(context), context.bot_data["identity"],
            qr_id, household_id, member_id,
            token_bytes=settings.QR_TOKEN_BYTES,
        )
    except CoordinatorError as exc:
        await update.message.reply_text(_format_error(exc))
        return
    await update.message.reply_text(f"Custom token:\n{custom_token}")


# ---------------------------------------------------------------------------
# Chores
# ---------------------------------------------------------------------------


def _parse_addchore_args(args: list[str]) -> tuple[str, int, list[str], int, str] | None:
    """Parse `<household> <due_in_minutes> <a,b,...> <points> <title...>`."""
    if len(args) < 5:
        return None
    household_id, minutes, assignees, points = args[:4]
    title = " ".join(args[4:]).strip()
    try:
        due_in = int(minutes)
        pts = int(points)
    except ValueError:
        return None
    if due_in < 0 or pts < 0 or not title:
        return None
    ids = [a.strip() for a in assignees.split(",") if a.strip()]
    return household_id, due_in, ids, pts, title


@authorized_only
async def cmd_addchore(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /addchore — create an open chore."""
    from src.data.models import utcnow

    parsed = _parse_addchore_args(context.args or [])
    if parsed is None:
        await update.message.reply_text(
            "Usage: /addchore <household> <due_in_minutes> <a,b,...> <points> <title>"
        )
        return

    household_id, due_in, assignees, points, title = parsed
    store = _store(context)
    if store.get_household(household_id) is None:
        await update.message.reply_text("Household not found.")
        return

    chore = store.add_chore(
        household_id, title,
        due_at=utcnow() + timedelta(minutes=due_in),
        assignees=assignees,
        points=points,
        created_by=str(update.effective_user.id),
    )
    await update.message.reply_text(f"Chore added: `{chore.id}` {escape_markdown(chore.title)}", parse_mode="Markdown")


@authorized_only
async def cmd_members(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /members <household> — list members with their points."""
    args = context.args or []
    if len(args) != 1:
        await update.message.reply_text("Usage: /members <household>")
        return

    store = _store(context)
    members = store.list_members(args[0])
    if not members and store.get_household(args[0]) is None:
        await update.message.reply_text("Household not found.")
        return

    lines = [f"*Members of {escape_markdown(args[0])}:*"]
    for m in members:
        lines.append(f"`{m.id}` {escape_markdown(m.display_name or '(unnamed)')} — {m.points} pts")
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


async def _toggle_chore(update: Update, context: ContextTypes.DEFAULT_TYPE, done: bool) -> None:
    from src.core.completion import on_chore_written

    args = context.args or []
    if len(args) != 2:
        command = "done" if done else "undo"
        await update.message.reply_text(f"Usage: /{command} <household> <chore>")
        return

    store = _store(context)
    household_id, chore_id = args
    try:
        if done:
            event = store.complete_chore(household_id, chore_id)
        else:
            event = store.reopen_chore(household_id, chore_id)
    except CoordinatorError as exc:
        await update.message.reply_text(_format_error(exc))
        return

    # Deliver the write event to the reactor as the trigger platform would.
    try:
        awarded = on_chore_written(store, event)
    except (CoordinatorError, sqlite3.Error):
        logger.exception("Award failed for %s", event.path)
        # Reopen so a retried /done is a fresh completion the ledger can guard.
        store.reopen_chore(household_id, chore_id)
        await update.message.reply_text("Could not award points; chore left open, try /done again.")
        return

    if done:
        await update.message.reply_text(f"Done! Points awarded to {awarded} member(s).")
    else:
        await update.message.reply_text("Chore reopened.")


@authorized_only
async def cmd_done(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /done <household> <chore>."""
    await _toggle_chore(update, context, done=True)


@authorized_only
async def cmd_undo(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /undo <household> <chore>."""
    await _toggle_chore(update, context, done=False)


# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------


async def _due_soon_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    from src.core.scheduler import send_due_notifications

    try:
        await send_due_notifications(
            context.bot_data["store"],
            context.bot_data["push"],
            window=timedelta(minutes=settings.DUE_SOON_WINDOW_MINUTES),
            title=settings.DUE_SOON_TITLE,
            body=settings.DUE_SOON_BODY,
        )
    except Exception:
        logger.exception("Due-soon notification run failed; next run will retry")


async def _rotation_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    from src.core.scheduler import rotate_qr_codes

    try:
        rotate_qr_codes(context.bot_data["store"], token_bytes=settings.QR_TOKEN_BYTES)
    except Exception:
        logger.exception("QR rotation run failed; next run will retry")


async def _repeat_rules_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    from src.core.scheduler import apply_repeat_rules

    try:
        apply_repeat_rules(context.bot_data["store"])
    except Exception:
        logger.exception("Repeat-rule run failed; next run will retry")


def _setup_jobs(app: Application, push_enabled: bool) -> None:
    """Register QR rotation, repeat-rule and due-soon jobs in one time zone."""
    tz = ZoneInfo(settings.TIMEZONE)

    app.job_queue.run_daily(
        _rotation_job,
        time=dt_time(hour=settings.QR_ROTATION_HOUR, minute=0, tzinfo=tz),
        name="rotate_qr_codes",
    )
    app.job_queue.run_daily(
        _repeat_rules_job,
        time=dt_time(hour=settings.REPEAT_RULES_HOUR, minute=0, tzinfo=tz),
        name="apply_repeat_rules",
    )
    if push_enabled:
        app.job_queue.run_repeating(
            _due_soon_job,
            interval=timedelta(minutes=settings.DUE_SOON_INTERVAL_MINUTES),
            name="send_due_notifications",
        )
    else:
        logger.warning("No push transport configured; due-soon notifications disabled")

    logger.info(
        "Jobs scheduled: QR rotation %02d:00, repeat rules %02d:00, due-soon every %d min (%s)",
        settings.QR_ROTATION_HOUR,
        settings.REPEAT_RULES_HOUR,
        settings.DUE_SOON_INTERVAL_MINUTES,
        settings.TIMEZONE,
    )


# ---------------------------------------------------------------------------
# App wiring
# ---------------------------------------------------------------------------


def build_app(
    store: HouseholdStore | None = None,
    identity: IdentityPort | None = None,
    push: PushPort | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers and jobs.

    Args:
        store: Document store. Defaults to a HouseholdStore at DATABASE_PATH.
        identity: Identity port. Defaults to JwtIdentityIssuer from settings.
        push: Push port. Defaults to FcmNotifier when FCM is configured.
    """
    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    if store is None:
        from src.data.db import HouseholdStore
        store = HouseholdStore(settings.DATABASE_PATH)

    if identity is None:
        from src.adapters.jwt_identity import JwtIdentityIssuer
        identity = JwtIdentityIssuer(
            settings.IDENTITY_SIGNING_KEY,
            issuer=settings.IDENTITY_ISSUER,
            ttl_minutes=settings.CUSTOM_TOKEN_TTL_MINUTES,
        )

    if push is None and settings.FCM_PROJECT_ID and settings.FCM_CREDENTIALS_PATH:
        from src.adapters.fcm_notifier import FcmNotifier
        push = FcmNotifier.from_service_account_file(
            settings.FCM_PROJECT_ID, settings.FCM_CREDENTIALS_PATH,
        )

    app.bot_data["store"] = store
    app.bot_data["identity"] = identity
    app.bot_data["push"] = push

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("newhousehold", cmd_newhousehold))
    app.add_handler(CommandHandler("seed", cmd_seed))
    app.add_handler(CommandHandler("signin", cmd_signin))
    app.add_handler(CommandHandler("addchore", cmd_addchore))
    app.add_handler(CommandHandler("members", cmd_members))
    app.add_handler(CommandHandler("done", cmd_done))
    app.add_handler(CommandHandler("undo", cmd_undo))

    _setup_jobs(app, push_enabled=push is not None)

    logger.info("Operator bot built with %d handlers", len(app.handlers[0]))
    return app


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting household coordinator...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
