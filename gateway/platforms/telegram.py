"""
Telegram channel plugin.

Talks to the Bot API through python-telegram-bot:
- Long-polls getUpdates for inbound messages
- Sends text, photos/documents and polls
- Probes the token with getMe
"""

import logging
import re
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

from telegram import Bot, TelegramObject
from telegram.error import BadRequest, Conflict, Forbidden, InvalidToken, RetryAfter, TelegramError
from telegram.request import HTTPXRequest

from gateway.accounts import ChannelAccount
from gateway.platforms.base import (
    AccountSnapshot,
    ChannelPlugin,
    CommandAdapter,
    DeliveryResult,
    DirectoryAdapter,
    DirectoryEntry,
    GatewayAdapter,
    GatewayContext,
    HeartbeatAdapter,
    InboundMessage,
    MessageType,
    OutboundAdapter,
    OutboundContext,
    PairingAdapter,
    PollInput,
    SetupInput,
    StatusAdapter,
    StatusIssue,
    chunk_markdown,
    default_resolve_target,
    make_dm_security_adapter,
    make_group_adapter,
    make_section_config_adapter,
    make_section_setup_adapter,
    read_credential,
    resolve_heartbeat_recipients,
    wait_or_abort,
)
from gateway.platforms.http import TransportError

logger = logging.getLogger(__name__)

CHANNEL_ID = "telegram"
TELEGRAM_API_BASE = "https://api.telegram.org"
TOKEN_ENV = "TELEGRAM_BOT_TOKEN"

TEXT_CHUNK_LIMIT = 4000
POLL_MAX_OPTIONS = 10
CAPTION_LIMIT = 1024
LONG_POLL_TIMEOUT_S = 25
MAX_BACKOFF_S = 30.0

_IMAGE_EXTS = (".jpg", ".jpeg", ".png", ".gif", ".webp")
_TARGET_PREFIX_RE = re.compile(r"^(telegram|tg):", re.IGNORECASE)
_NUMERIC_RE = re.compile(r"^-?\d+$")
_USERNAME_RE = re.compile(r"^@?[A-Za-z][A-Za-z0-9_]{3,31}$")
_ERROR_STATUS = ((InvalidToken, 401), (Forbidden, 403), (Conflict, 409), (BadRequest, 400))


class TelegramBotApi:
    """Bot API transport on python-telegram-bot.

    Keeps the plugin's ``call(token, method, payload)`` seam: each Bot API
    method name maps onto the matching ``telegram.Bot`` coroutine, results
    come back as plain dicts and library errors are raised as
    ``TransportError``.
    """

    METHODS = {
        "getMe": "get_me",
        "getUpdates": "get_updates",
        "sendMessage": "send_message",
        "sendPhoto": "send_photo",
        "sendDocument": "send_document",
        "sendPoll": "send_poll",
    }

    def __init__(self, base_url: str = TELEGRAM_API_BASE):
        self.base_url = base_url.rstrip("/")
        self.bots: Dict[str, Bot] = {}

    def bot_for(self, token: str) -> Bot:
        bot = self.bots.get(token)
        if bot is None:
            bot = Bot(
                token,
                base_url=f"{self.base_url}/bot",
                request=HTTPXRequest(connection_pool_size=8),
            )
            self.bots[token] = bot
        return bot

    async def call(self, token: str, method: str, payload: Optional[Dict[str, Any]] = None,
                   timeout_s: float = 30) -> Any:
        name = self.METHODS.get(method)
        if name is None:
            raise TransportError(f"unsupported Bot API method: {method}")
        kwargs = dict(payload or {})
        if method != "getUpdates":
            # getUpdates adds its long-poll timeout to the read timeout itself
            kwargs["read_timeout"] = timeout_s
        try:
            result = await getattr(self.bot_for(token), name)(**kwargs)
        except RetryAfter as e:
            raise TransportError(e.message, status=429, retry_after=_seconds(e.retry_after)) from e
        except TelegramError as e:
            raise TransportError(e.message, status=_error_status(e)) from e
        return _plain(result)


def _seconds(value: Any) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _error_status(error: TelegramError) -> Optional[int]:
    for kind, status in _ERROR_STATUS:
        if isinstance(error, kind):
            return status
    return None


def _plain(result: Any) -> Any:
    if isinstance(result, TelegramObject):
        return result.to_dict()
    if isinstance(result, (list, tuple)):
        return [_plain(item) for item in result]
    return result


def normalize_target(value: str) -> str:
    text = _TARGET_PREFIX_RE.sub("", str(value).strip())
    if _NUMERIC_RE.match(text):
        return text
    if _USERNAME_RE.match(text):
        return text if text.startswith("@") else f"@{text}"
    return ""


def normalize_allow_entry(entry: str) -> str:
    text = _TARGET_PREFIX_RE.sub("", str(entry).strip())
    return text.lower() if text.startswith("@") else text


def _bot_token(account: ChannelAccount) -> Optional[str]:
    return read_credential(account, "botToken", TOKEN_ENV)


def _chat_type(chat: Dict[str, Any]) -> str:
    kind = chat.get("type")
    if kind == "private":
        return "direct"
    if kind == "channel":
        return "channel"
    return "group"


def update_to_inbound(update: Dict[str, Any], account_id: str,
                      bot_username: Optional[str] = None) -> Optional[InboundMessage]:
    """Convert one getUpdates entry; None for updates we do not handle."""
    message = update.get("message") or update.get("channel_post")
    if not isinstance(message, dict):
        return None
    text = message.get("text") or message.get("caption") or ""
    msg_type = MessageType.TEXT
    if message.get("photo"):
        msg_type = MessageType.PHOTO
    elif message.get("voice"):
        msg_type = MessageType.VOICE
    elif message.get("document"):
        msg_type = MessageType.DOCUMENT
    elif text.startswith("/"):
        msg_type = MessageType.COMMAND
    if not text and msg_type == MessageType.TEXT:
        return None

    chat = message.get("chat") or {}
    sender = message.get("from") or {}
    chat_type = _chat_type(chat)
    mentioned = False
    if bot_username:
        mentioned = f"@{bot_username}".lower() in text.lower()
        reply = message.get("reply_to_message") or {}
        if (reply.get("from") or {}).get("username", "").lower() == bot_username.lower():
            mentioned = True

    sender_name = " ".join(p for p in (sender.get("first_name"), sender.get("last_name")) if p) or None
    return InboundMessage(
        channel=CHANNEL_ID,
        account_id=account_id,
        sender_id=str(sender.get("id") or chat.get("id")),
        sender_name=sender_name or sender.get("username"),
        text=text,
        chat_type=chat_type,
        chat_id=str(chat.get("id")) if chat.get("id") is not None else None,
        chat_name=chat.get("title"),
        thread_id=str(message["message_thread_id"]) if message.get("message_thread_id") else None,
        message_id=str(message.get("message_id")) if message.get("message_id") is not None else None,
        was_mentioned=mentioned,
        message_type=msg_type,
        raw=update,
    )


def create_telegram_plugin(transport: Optional[TelegramBotApi] = None) -> ChannelPlugin:
    api = transport or TelegramBotApi()

    config = make_section_config_adapter(
        CHANNEL_ID,
        credential_keys=("botToken",),
        env_keys=(TOKEN_ENV,),
        normalize_allow_entry=normalize_allow_entry,
        unconfigured_reason="missing botToken (set channels.telegram.botToken or TELEGRAM_BOT_TOKEN)",
    )

    def validate_setup(cfg: Dict[str, Any], account_id: str, setup: SetupInput) -> Optional[str]:
        if setup.use_env and account_id != "default":
            return f"{TOKEN_ENV} can only be used for the default account"
        if not (setup.use_env or setup.token or setup.bot_token or setup.token_file):
            return "Telegram requires --token (or --token-file / --use-env)"
        return None

    setup = make_section_setup_adapter(
        CHANNEL_ID,
        field_map={"token": "botToken", "bot_token": "botToken", "token_file": "botTokenFile"},
        validate=validate_setup,
    )

    def _missing_token() -> DeliveryResult:
        return DeliveryResult(ok=False, channel=CHANNEL_ID, error="missing bot token")

    async def send_text(ctx: OutboundContext) -> DeliveryResult:
        token = _bot_token(ctx.account)
        if not token:
            return _missing_token()
        payload: Dict[str, Any] = {"chat_id": ctx.to, "text": ctx.text, "parse_mode": "Markdown"}
        if ctx.reply_to:
            payload["reply_to_message_id"] = int(ctx.reply_to)
        if ctx.thread_id:
            payload["message_thread_id"] = int(ctx.thread_id)
        if ctx.silent:
            payload["disable_notification"] = True
        try:
            try:
                result = await api.call(token, "sendMessage", payload)
            except TransportError as e:
                # Markdown parsing failed, retry as plain text
                if "parse" not in str(e).lower():
                    raise
                payload.pop("parse_mode", None)
                result = await api.call(token, "sendMessage", payload)
        except TransportError as e:
            logger.warning("Telegram send failed (account %s): %s", ctx.account_id, e)
            return DeliveryResult(ok=False, channel=CHANNEL_ID, error=str(e))
        return DeliveryResult(ok=True, channel=CHANNEL_ID, message_id=str((result or {}).get("message_id")))

    async def send_media(ctx: OutboundContext) -> DeliveryResult:
        token = _bot_token(ctx.account)
        if not token:
            return _missing_token()
        url = ctx.media_url or ""
        is_image = url.lower().split("?", 1)[0].endswith(_IMAGE_EXTS)
        method, field_name = ("sendPhoto", "photo") if is_image else ("sendDocument", "document")
        payload: Dict[str, Any] = {"chat_id": ctx.to, field_name: url}
        if ctx.text:
            payload["caption"] = ctx.text[:CAPTION_LIMIT]
        if ctx.reply_to:
            payload["reply_to_message_id"] = int(ctx.reply_to)
        if ctx.thread_id:
            payload["message_thread_id"] = int(ctx.thread_id)
        try:
            result = await api.call(token, method, payload)
        except TransportError as e:
            logger.warning("Telegram %s failed (account %s): %s", method, ctx.account_id, e)
            return DeliveryResult(ok=False, channel=CHANNEL_ID, error=str(e))
        return DeliveryResult(ok=True, channel=CHANNEL_ID, message_id=str((result or {}).get("message_id")))

    async def send_poll(ctx: OutboundContext, poll: PollInput) -> DeliveryResult:
        token = _bot_token(ctx.account)
        if not token:
            return _missing_token()
        payload: Dict[str, Any] = {
            "chat_id": ctx.to,
            "question": poll.question,
            "options": list(poll.options),
            "is_anonymous": False,
            "allows_multiple_answers": poll.max_selections > 1,
        }
        if ctx.thread_id:
            payload["message_thread_id"] = int(ctx.thread_id)
        try:
            result = await api.call(token, "sendPoll", payload)
        except TransportError as e:
            return DeliveryResult(ok=False, channel=CHANNEL_ID, error=str(e))
        result = result or {}
        return DeliveryResult(
            ok=True,
            channel=CHANNEL_ID,
            message_id=str(result.get("message_id")),
            meta={"pollId": (result.get("poll") or {}).get("id")},
        )

    outbound = OutboundAdapter(
        delivery_mode="direct",
        chunker=chunk_markdown,
        chunker_mode="markdown",
        text_chunk_limit=TEXT_CHUNK_LIMIT,
        poll_max_options=POLL_MAX_OPTIONS,
        resolve_target=default_resolve_target(normalize_target),
        send_text=send_text,
        send_media=send_media,
        send_poll=send_poll,
    )

    async def probe_account(account: ChannelAccount, timeout_ms: int, cfg: Dict[str, Any]) -> Dict[str, Any]:
        token = _bot_token(account)
        if not token:
            return {"ok": False, "error": "missing bot token"}
        started = time.monotonic()
        try:
            me = await api.call(token, "getMe", timeout_s=timeout_ms / 1000)
        except TransportError as e:
            return {"ok": False, "error": str(e), "status": e.status}
        return {
            "ok": True,
            "elapsedMs": int((time.monotonic() - started) * 1000),
            "bot": {
                "id": me.get("id"),
                "username": me.get("username"),
                "canReadAllGroupMessages": me.get("can_read_all_group_messages"),
            },
        }

    async def audit_account(account: ChannelAccount, timeout_ms: int, cfg: Dict[str, Any],
                            probe: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        bot = (probe or {}).get("bot") or {}
        if not bot:
            return {"ok": False, "error": "probe unavailable"}
        privacy_mode = bot.get("canReadAllGroupMessages") is False
        return {"ok": True, "privacyMode": privacy_mode, "groupPolicy": account.group_policy}

    def collect_status_issues(snapshots: List[AccountSnapshot]) -> List[StatusIssue]:
        issues = []
        for snap in snapshots:
            if snap.probe and not snap.probe.get("ok") and snap.configured:
                issues.append(StatusIssue(
                    channel=CHANNEL_ID,
                    account_id=snap.account_id,
                    kind="auth",
                    message=f"getMe failed: {snap.probe.get('error')}",
                    fix="Check the bot token with @BotFather",
                ))
            audit = snap.audit or {}
            if audit.get("privacyMode") and audit.get("groupPolicy") != "closed":
                issues.append(StatusIssue(
                    channel=CHANNEL_ID,
                    account_id=snap.account_id,
                    kind="intent",
                    message="Bot privacy mode is on: in groups it only sees commands and mentions",
                    fix="Disable privacy mode with /setprivacy in @BotFather",
                ))
        return issues

    status = StatusAdapter(
        probe_account=probe_account,
        audit_account=audit_account,
        collect_status_issues=collect_status_issues,
    )

    async def start_account(ctx: GatewayContext) -> None:
        """Long-poll getUpdates until the abort event fires."""
        token = _bot_token(ctx.account)
        if not token:
            raise TransportError("missing bot token")
        me: Optional[Dict[str, Any]] = None
        username: Optional[str] = None
        offset: Optional[int] = None
        backoff = 1.0
        while not ctx.abort_event.is_set():
            payload: Dict[str, Any] = {"timeout": LONG_POLL_TIMEOUT_S, "allowed_updates": ["message", "channel_post"]}
            if offset is not None:
                payload["offset"] = offset
            try:
                if me is None:
                    me = await api.call(token, "getMe") or {}
                    username = me.get("username")
                    ctx.set_status(connected=True, last_error=None,
                                   extra={"bot": f"@{username}" if username else None})
                    logger.info("Telegram account %s polling as @%s", ctx.account_id, username)
                updates = await api.call(token, "getUpdates", payload, timeout_s=LONG_POLL_TIMEOUT_S + 10)
            except TransportError as e:
                delay = min(MAX_BACKOFF_S, e.retry_after or backoff)
                logger.warning("Telegram poll error (account %s), retrying in %.0fs: %s",
                               ctx.account_id, delay, e)
                ctx.set_status(connected=False, last_error=str(e))
                if await wait_or_abort(ctx.abort_event, delay):
                    break
                backoff = min(MAX_BACKOFF_S, backoff * 2)
                continue
            backoff = 1.0
            ctx.set_status(connected=True, last_error=None)
            for update in updates or []:
                offset = int(update.get("update_id", 0)) + 1
                message = update_to_inbound(update, ctx.account_id, username)
                if message is not None:
                    await ctx.emit(message)
        ctx.set_status(connected=False)

    async def self_entry(cfg: Dict[str, Any], account_id: Optional[str] = None) -> Optional[DirectoryEntry]:
        token = _bot_token(config.resolve_account(cfg, account_id))
        if not token:
            return None
        me = await api.call(token, "getMe")
        return DirectoryEntry(
            kind="user",
            id=str(me.get("id")),
            name=me.get("first_name"),
            handle=f"@{me['username']}" if me.get("username") else None,
        )

    async def check_ready(cfg: Dict[str, Any], account_id: Optional[str] = None) -> Dict[str, Any]:
        account = config.resolve_account(cfg, account_id)
        if not account.enabled:
            return {"ok": False, "reason": "disabled"}
        if not _bot_token(account):
            return {"ok": False, "reason": "missing bot token"}
        return {"ok": True, "reason": "ok"}

    async def notify_approval(cfg: Dict[str, Any], sender_id: str) -> None:
        token = _bot_token(config.resolve_account(cfg, None))
        if not token:
            raise TransportError("missing bot token")
        await api.call(token, "sendMessage", {
            "chat_id": sender_id,
            "text": "Your access has been approved. You can now chat with the assistant.",
        })

    return ChannelPlugin(
        id=CHANNEL_ID,
        label="Telegram",
        aliases=("tg",),
        meta={"docs": "https://core.telegram.org/bots/api", "tokenEnv": TOKEN_ENV},
        setup=setup,
        config=config,
        group=make_group_adapter("Telegram"),
        outbound=outbound,
        status=status,
        gateway=GatewayAdapter(start_account=start_account),
        heartbeat=HeartbeatAdapter(
            check_ready=check_ready,
            resolve_recipients=resolve_heartbeat_recipients(config.resolve_account),
        ),
        directory=DirectoryAdapter(self_entry=self_entry),
        commands=CommandAdapter(enforce_owner_for_commands=True, skip_when_config_empty=True),
        security=make_dm_security_adapter(CHANNEL_ID),
        pairing=PairingAdapter(
            id_label="telegramUserId",
            normalize_allow_entry=normalize_allow_entry,
            notify_approval=notify_approval,
        ),
    )
