"""
interfaces/telegram.py — JulesBridge Telegram Bot Interface

Chat transport built on python-telegram-bot (async Application).
Lets a developer drive Jules coding sessions from a phone.

Features:
  - Authorized user whitelist (TELEGRAM_USER_ID in .env)
  - Plain text → routed to the conversation's Jules session
  - /status  — what this chat is bound to
  - /reset   — forget this chat's session or pending choice
  - /resume  — follow an existing Jules session in this chat
  - /wake    — keep one Cloud Run instance warm
  - /sleep   — let the service scale to zero
  - /help    — show this list
  - Inline "Approve plan" button on proposed plans
  - Messages from bots are ignored; in groups the bot only answers mentions
    and replies to its own messages

Usage:
    python -m julesbridge
"""

from __future__ import annotations

import asyncio
import re
from typing import Optional

from telegram import (
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    InputFile,
    Update,
)
from telegram.constants import ChatType, ParseMode
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from julesbridge.agent.formatter import Notification
from julesbridge.agent.router import ConversationPhase, SessionRouter
from julesbridge.config.settings import Settings
from julesbridge.exceptions import RemoteServiceError
from julesbridge.infra.scaling import CloudRunScaler
from julesbridge.observability.logger import bind_conversation, clear_context, get_logger

log = get_logger(__name__)


_MAX_MESSAGE_LEN = 4000  # Telegram limit is 4096 chars
APPROVE_PREFIX = "approve:"


class TelegramChannel:
    """Outbound side of one chat: the router's and monitors' sink."""

    def __init__(self, bot, chat_id: int):
        self._bot = bot
        self.chat_id = chat_id

    async def send_text(self, text: str) -> None:
        await self._safe_send(text)

    async def send(self, notification: Notification) -> None:
        reply_markup = None
        if notification.needs_approval_control:
            reply_markup = approval_keyboard(notification.approval_session_id)

        if notification.text:
            await self._safe_send(
                notification.text,
                parse_mode=ParseMode.MARKDOWN,
                reply_markup=reply_markup,
            )

        for attachment in notification.attachments:
            payload = InputFile(attachment.data, filename=attachment.filename)
            try:
                if attachment.is_image:
                    await self._bot.send_photo(chat_id=self.chat_id, photo=payload)
                else:
                    await self._bot.send_document(chat_id=self.chat_id, document=payload)
            except TelegramError as e:
                log.warning(
                    "telegram.attachment_failed",
                    chat_id=self.chat_id,
                    filename=attachment.filename,
                    error=str(e),
                )

    async def _safe_send(
        self,
        text: str,
        parse_mode: Optional[str] = None,
        reply_markup=None,
    ) -> None:
        """Send a message, splitting if over Telegram's limit."""
        chunks = _split_message(text)
        for i, chunk in enumerate(chunks):
            markup = reply_markup if i == len(chunks) - 1 else None
            try:
                await self._bot.send_message(
                    chat_id=self.chat_id,
                    text=chunk,
                    parse_mode=parse_mode,
                    reply_markup=markup,
                )
            except TelegramError as e:
                log.warning("telegram.send_failed", error=str(e), chat_id=self.chat_id)
                # Fallback: send as plain text
                try:
                    await self._bot.send_message(
                        chat_id=self.chat_id,
                        text=_strip_markdown(chunk)[:_MAX_MESSAGE_LEN],
                        reply_markup=markup,
                    )
                except TelegramError as _send_err:
                    log.warning(
                        "telegram.send_plaintext_fallback_failed",
                        error=str(_send_err),
                        chat_id=self.chat_id,
                    )


class TelegramBot:
    """
    JulesBridge Telegram Bot.

    One TelegramChannel per chat_id; the SessionRouter keeps the rest.
    """

    def __init__(
        self,
        settings: Settings,
        router: SessionRouter,
        scaler: Optional[CloudRunScaler] = None,
    ):
        self._settings = settings
        self._router = router
        self._scaler = scaler
        self._authorized_ids: set[int] = set(settings.authorized_telegram_ids)
        self._channels: dict[int, TelegramChannel] = {}
        self._app: Optional[Application] = None
        self._stopped = asyncio.Event()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Initialize and run the polling loop until stop() is called."""
        token = self._settings.telegram_bot_token
        if not token:
            raise RuntimeError("TELEGRAM_BOT_TOKEN is not set.")

        self._app = Application.builder().token(token).build()
        self._register_handlers()

        log.info("telegram.starting", authorized_ids=list(self._authorized_ids))

        await self._app.initialize()
        await self._app.start()
        await self._app.updater.start_polling()

        await self._stopped.wait()

    async def stop(self) -> None:
        self._stopped.set()
        if self._app:
            if self._app.updater and self._app.updater.running:
                await self._app.updater.stop()
            if self._app.running:
                await self._app.stop()
            await self._app.shutdown()
        log.info("telegram.stopped")

    # ── Handler registration ──────────────────────────────────────────────────

    def _register_handlers(self) -> None:
        app = self._app
        app.add_handler(CommandHandler("start", self._cmd_start))
        app.add_handler(CommandHandler("help", self._cmd_help))
        app.add_handler(CommandHandler("status", self._cmd_status))
        app.add_handler(CommandHandler("reset", self._cmd_reset))
        app.add_handler(CommandHandler("resume", self._cmd_resume))
        app.add_handler(CommandHandler("wake", self._cmd_wake))
        app.add_handler(CommandHandler("sleep", self._cmd_sleep))

        app.add_handler(CallbackQueryHandler(self._on_callback))

        app.add_handler(
            MessageHandler(filters.TEXT & ~filters.COMMAND, self._on_text)
        )

    # ── Auth helper ───────────────────────────────────────────────────────────

    def _is_authorized(self, user_id: int) -> bool:
        if not self._authorized_ids:
            return True  # no restriction configured
        return user_id in self._authorized_ids

    async def _auth_check(self, update: Update) -> bool:
        """Return True if authorized; send error and return False otherwise."""
        user = update.effective_user
        if not user or not self._is_authorized(user.id):
            if update.effective_message:
                await update.effective_message.reply_text("⛔ Unauthorized.")
            log.warning("telegram.unauthorized", user_id=user.id if user else None)
            return False
        return True

    def _channel(self, chat_id: int) -> TelegramChannel:
        if chat_id not in self._channels:
            self._channels[chat_id] = TelegramChannel(self._app.bot, chat_id)
        return self._channels[chat_id]

    # ── Plain text ────────────────────────────────────────────────────────────

    async def _on_text(self, update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        user = update.effective_user
        if message is None or user is None or user.is_bot:
            return

        bot_username = ctx.bot.username or ""
        if not self._addressed_to_bot(update, bot_username, ctx.bot.id):
            return
        if not await self._auth_check(update):
            return

        text = _strip_mention(message.text or "", bot_username) or "Hello"
        chat_id = update.effective_chat.id
        bind_conversation(chat_id)
        try:
            await ctx.bot.send_chat_action(chat_id=chat_id, action="typing")
            await self._router.handle_message(str(chat_id), text, self._channel(chat_id))
        except Exception as e:
            log.exception("telegram.message_failed", chat_id=chat_id, error=str(e))
            await message.reply_text(f"❌ Error: {e}")
        finally:
            clear_context()

    @staticmethod
    def _addressed_to_bot(update: Update, bot_username: str, bot_id: int) -> bool:
        chat = update.effective_chat
        if chat is None or chat.type == ChatType.PRIVATE:
            return True
        message = update.effective_message
        text = message.text or ""
        if bot_username and f"@{bot_username}".lower() in text.lower():
            return True
        reply_to = message.reply_to_message
        return bool(reply_to and reply_to.from_user and reply_to.from_user.id == bot_id)

    # ── Commands ──────────────────────────────────────────────────────────────

    async def _cmd_start(self, update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._auth_check(update):
            return
        await update.message.reply_text(
            "🤖 *JulesBridge is ready.*\n\n"
            "Tell me what to build or fix and I'll hand it to Jules, "
            "then post its plan and progress here.\n"
            "/help — full command list",
            parse_mode=ParseMode.MARKDOWN,
        )

    async def _cmd_help(self, update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._auth_check(update):
            return
        await update.message.reply_text(
            "🤖 *JulesBridge Commands*\n\n"
            "/status — Session bound to this chat\n"
            "/reset — Forget this chat's session\n"
            "/resume `<session-id>` — Follow an existing Jules session\n"
            "/wake — Keep the bot's instance warm\n"
            "/sleep — Let the bot's instance scale to zero\n"
            "/help — This message\n\n"
            "_Just type normally to talk to Jules._",
            parse_mode=ParseMode.MARKDOWN,
        )

    async def _cmd_status(self, update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._auth_check(update):
            return
        conversation_id = str(update.effective_chat.id)
        phase = self._router.phase(conversation_id)

        if phase == ConversationPhase.ACTIVE_SESSION:
            session = self._router.session_for(conversation_id)
            watching = "yes" if self._router.is_monitoring(conversation_id) else "no"
            text = (
                f"🔗 Session: `{session.session_id}`\n"
                f"Source: {session.source_name or 'unknown'}\n"
                f"Watching for updates: {watching}"
            )
        elif phase == ConversationPhase.PENDING_SELECTION:
            pending = self._router.pending_for(conversation_id)
            text = f"❓ Waiting for you to pick one of {len(pending.candidates)} repositories."
        else:
            text = "💤 No Jules session in this chat. Send a request to start one."
        await update.message.reply_text(text, parse_mode=ParseMode.MARKDOWN)

    async def _cmd_reset(self, update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._auth_check(update):
            return
        dropped = self._router.reset(str(update.effective_chat.id))
        await update.message.reply_text(
            "✓ Session forgotten. The next message starts a new one."
            if dropped else "Nothing to reset."
        )

    async def _cmd_resume(self, update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._auth_check(update):
            return
        session_id = ctx.args[0].strip() if ctx.args else ""
        if not session_id:
            await update.message.reply_text("Usage: /resume <session-id>")
            return
        chat_id = update.effective_chat.id
        bind_conversation(chat_id, session_id)
        try:
            await self._router.resume(str(chat_id), session_id, self._channel(chat_id))
        except Exception as e:
            log.exception("telegram.resume_failed", chat_id=chat_id, error=str(e))
            await update.message.reply_text(f"❌ Error: {e}")
        finally:
            clear_context()

    async def _cmd_wake(self, update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
        await self._scale(update, 1, "☀️ Waking up — keeping one instance warm.")

    async def _cmd_sleep(self, update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
        await self._scale(update, 0, "🌙 Going to sleep — the service may scale to zero.")

    async def _scale(self, update: Update, count: int, reply: str) -> None:
        if not await self._auth_check(update):
            return
        if self._scaler is None or not self._scaler.enabled:
            await update.message.reply_text("Scaling control is not configured.")
            return
        self._scaler.request_min_instances(count)
        await update.message.reply_text(reply)

    # ── Inline buttons ────────────────────────────────────────────────────────

    async def _on_callback(self, update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle the "Approve plan" button."""
        query = update.callback_query
        user = update.effective_user
        if not user or not self._is_authorized(user.id):
            await query.answer("⛔ Unauthorized.", show_alert=True)
            return

        session_id = parse_approval(query.data or "")
        if session_id is None:
            await query.answer()
            return

        try:
            await self._router.approve_plan(session_id)
        except RemoteServiceError as e:
            log.warning("telegram.approve_failed", session_id=session_id, error=str(e))
            await query.answer(f"Could not approve the plan (HTTP {e.status}).", show_alert=True)
            return

        await query.answer("Plan approved")
        try:
            original = query.message.text if query.message else ""
            await query.edit_message_text(
                f"{original}\n\n✅ Plan approved.",
                reply_markup=None,
            )
        except TelegramError as e:
            log.debug("telegram.approve_edit_failed", error=str(e))


# ── Helpers ───────────────────────────────────────────────────────────────────


def approval_keyboard(session_id: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("✅ Approve plan", callback_data=f"{APPROVE_PREFIX}{session_id}")]
    ])


def parse_approval(data: str) -> Optional[str]:
    """Extract the session id from "approve:<session-id>", else None."""
    if not data.startswith(APPROVE_PREFIX):
        return None
    session_id = data[len(APPROVE_PREFIX):].strip()
    return session_id or None


def _strip_mention(text: str, bot_username: str) -> str:
    if bot_username:
        text = re.sub(rf"@{re.escape(bot_username)}\b", "", text, flags=re.IGNORECASE)
    return text.strip()


def _split_message(text: str, max_len: int = _MAX_MESSAGE_LEN) -> list[str]:
    """Split long messages into chunks at newline boundaries."""
    if len(text) <= max_len:
        return [text]

    chunks = []
    while len(text) > max_len:
        split_at = text.rfind("\n", 0, max_len)
        if split_at == -1:
            split_at = max_len
        chunks.append(text[:split_at])
        text = text[split_at:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks


def _strip_markdown(text: str) -> str:
    """Very light markdown stripping for fallback sends."""
    for ch in ("*", "_", "`", "[", "]"):
        text = text.replace(ch, "")
    return text


async def run_telegram(
    settings: Settings,
    router: SessionRouter,
    scaler: Optional[CloudRunScaler],
    log,
) -> None:
    """Entry point called from main.py."""
    bot = TelegramBot(settings=settings, router=router, scaler=scaler)
    log.info("telegram_bot.starting")
    try:
        await bot.start()
    except KeyboardInterrupt:
        log.info("telegram_bot.interrupted")
    finally:
        await bot.stop()
        log.info("telegram_bot.stopped")
