"""
Discord channel plugin.

Direct delivery through the REST API (aiohttp). Targets are
``channel:<id>`` or ``user:<id>``; a bare numeric id is a channel. DMs
open (or reuse) the user's DM channel before sending.
"""

import logging
import re
import time
from typing import Any, Dict, List, Optional

from gateway.accounts import ChannelAccount, normalize_allow_entries
from gateway.platforms.base import (
    AccountSnapshot,
    ChannelPlugin,
    DeliveryResult,
    ElevatedAdapter,
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
)
from gateway.platforms.http import TransportError, request_json

logger = logging.getLogger(__name__)

CHANNEL_ID = "discord"
DISCORD_API_BASE = "https://discord.com/api/v10"
TOKEN_ENV = "DISCORD_BOT_TOKEN"

TEXT_CHUNK_LIMIT = 2000
POLL_MAX_OPTIONS = 10
DEFAULT_POLL_HOURS = 24

# Application flags for the privileged message content intent
_FLAG_MESSAGE_CONTENT = 1 << 18
_FLAG_MESSAGE_CONTENT_LIMITED = 1 << 19

_TARGET_PREFIX_RE = re.compile(r"^discord:", re.IGNORECASE)
_SNOWFLAKE_RE = re.compile(r"^\d{15,21}$")
_MENTION_RE = re.compile(r"^<@!?(\d+)>$")


class DiscordRestApi:
    """Minimal Discord REST client."""

    def __init__(self, base_url: str = DISCORD_API_BASE):
        self.base_url = base_url.rstrip("/")

    async def request(self, token: str, method: str, path: str, payload: Optional[Dict[str, Any]] = None,
                      timeout_s: float = 30) -> Any:
        resp = await request_json(
            method,
            f"{self.base_url}{path}",
            json=payload,
            headers={"Authorization": f"Bot {token}"},
            timeout_s=timeout_s,
        )
        if resp.status == 429:
            retry_after = (resp.data or {}).get("retry_after") if isinstance(resp.data, dict) else None
            raise TransportError("rate limited", status=429, retry_after=retry_after)
        if not resp.ok:
            message = resp.data.get("message") if isinstance(resp.data, dict) else None
            raise TransportError(message or f"HTTP {resp.status}", status=resp.status)
        return resp.data


def normalize_target(value: str) -> str:
    text = _TARGET_PREFIX_RE.sub("", str(value).strip())
    mention = _MENTION_RE.match(text)
    if mention:
        return f"user:{mention.group(1)}"
    kind, _, ident = text.partition(":")
    if ident and kind.lower() in ("channel", "user") and _SNOWFLAKE_RE.match(ident):
        return f"{kind.lower()}:{ident}"
    if _SNOWFLAKE_RE.match(text):
        return f"channel:{text}"
    return ""


def normalize_allow_entry(entry: str) -> str:
    text = _TARGET_PREFIX_RE.sub("", str(entry).strip())
    mention = _MENTION_RE.match(text)
    if mention:
        return mention.group(1)
    if text.lower().startswith("user:"):
        return text[5:]
    return text.lower()


def _bot_token(account: ChannelAccount) -> Optional[str]:
    return read_credential(account, "token", TOKEN_ENV)


def create_discord_plugin(transport: Optional[DiscordRestApi] = None) -> ChannelPlugin:
    api = transport or DiscordRestApi()

    config = make_section_config_adapter(
        CHANNEL_ID,
        credential_keys=("token",),
        env_keys=(TOKEN_ENV,),
        normalize_allow_entry=normalize_allow_entry,
        unconfigured_reason="missing token (set channels.discord.token or DISCORD_BOT_TOKEN)",
    )

    def validate_setup(cfg: Dict[str, Any], account_id: str, setup: SetupInput) -> Optional[str]:
        if setup.use_env and account_id != "default":
            return f"{TOKEN_ENV} can only be used for the default account"
        if not (setup.use_env or setup.token or setup.bot_token or setup.token_file):
            return "Discord requires --token (or --token-file / --use-env)"
        return None

    setup = make_section_setup_adapter(
        CHANNEL_ID,
        field_map={"token": "token", "bot_token": "token", "token_file": "tokenFile"},
        validate=validate_setup,
    )

    async def _channel_for(token: str, target: str) -> str:
        kind, _, ident = target.partition(":")
        if kind != "user":
            return ident or target
        dm = await api.request(token, "POST", "/users/@me/channels", {"recipient_id": ident})
        return str(dm["id"])

    async def _post_message(ctx: OutboundContext, body: Dict[str, Any]) -> DeliveryResult:
        token = _bot_token(ctx.account)
        if not token:
            return DeliveryResult(ok=False, channel=CHANNEL_ID, error="missing bot token")
        if ctx.reply_to:
            body["message_reference"] = {"message_id": str(ctx.reply_to), "fail_if_not_exists": False}
        if ctx.silent:
            body["flags"] = 1 << 12  # SUPPRESS_NOTIFICATIONS
        try:
            # Threads are channels of their own
            target = f"channel:{ctx.thread_id}" if ctx.thread_id else ctx.to
            channel_id = await _channel_for(token, target)
            data = await api.request(token, "POST", f"/channels/{channel_id}/messages", body)
        except TransportError as e:
            logger.warning("Discord send failed (account %s): %s", ctx.account_id, e)
            return DeliveryResult(ok=False, channel=CHANNEL_ID, error=str(e))
        return DeliveryResult(ok=True, channel=CHANNEL_ID, message_id=str(data.get("id")),
                              meta={"channelId": channel_id})

    async def send_text(ctx: OutboundContext) -> DeliveryResult:
        return await _post_message(ctx, {"content": ctx.text})

    async def send_media(ctx: OutboundContext) -> DeliveryResult:
        content = f"{ctx.text}\n{ctx.media_url}" if ctx.text else (ctx.media_url or "")
        return await _post_message(ctx, {"content": content[:TEXT_CHUNK_LIMIT]})

    async def send_poll(ctx: OutboundContext, poll: PollInput) -> DeliveryResult:
        return await _post_message(ctx, {
            "poll": {
                "question": {"text": poll.question},
                "answers": [{"poll_media": {"text": option}} for option in poll.options],
                "duration": poll.duration_hours or DEFAULT_POLL_HOURS,
                "allow_multiselect": poll.max_selections > 1,
            }
        })

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
            me = await api.request(token, "GET", "/users/@me", timeout_s=timeout_ms / 1000)
        except TransportError as e:
            return {"ok": False, "error": str(e), "status": e.status}
        return {
            "ok": True,
            "elapsedMs": int((time.monotonic() - started) * 1000),
            "bot": {"id": me.get("id"), "username": me.get("username")},
        }

    async def audit_account(account: ChannelAccount, timeout_ms: int, cfg: Dict[str, Any],
                            probe: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if probe is not None and not probe.get("ok"):
            return {"ok": False, "error": "probe failed"}
        token = _bot_token(account)
        if not token:
            return {"ok": False, "error": "missing bot token"}
        try:
            app = await api.request(token, "GET", "/applications/@me", timeout_s=timeout_ms / 1000)
        except TransportError as e:
            return {"ok": False, "error": str(e)}
        flags = int(app.get("flags") or 0)
        content_intent = bool(flags & (_FLAG_MESSAGE_CONTENT | _FLAG_MESSAGE_CONTENT_LIMITED))
        return {"ok": content_intent, "messageContentIntent": content_intent}

    def collect_status_issues(snapshots: List[AccountSnapshot]) -> List[StatusIssue]:
        issues = []
        for snap in snapshots:
            if snap.probe and not snap.probe.get("ok") and snap.configured:
                issues.append(StatusIssue(
                    channel=CHANNEL_ID,
                    account_id=snap.account_id,
                    kind="auth",
                    message=f"/users/@me failed: {snap.probe.get('error')}",
                ))
            if (snap.audit or {}).get("messageContentIntent") is False:
                issues.append(StatusIssue(
                    channel=CHANNEL_ID,
                    account_id=snap.account_id,
                    kind="intent",
                    message="Message Content intent is disabled: the bot cannot read guild messages",
                    fix="Enable it under Bot > Privileged Gateway Intents in the developer portal",
                ))
        return issues

    def allow_from_fallback(cfg: Dict[str, Any], account_id: Optional[str] = None) -> Optional[List[str]]:
        account = config.resolve_account(cfg, account_id)
        entries = [normalize_allow_entry(e) for e in normalize_allow_entries(account.allow_from) if e != "*"]
        return entries or None

    async def notify_approval(cfg: Dict[str, Any], sender_id: str) -> None:
        token = _bot_token(config.resolve_account(cfg, None))
        if not token:
            raise TransportError("missing bot token")
        channel_id = await _channel_for(token, f"user:{sender_id}")
        await api.request(token, "POST", f"/channels/{channel_id}/messages", {
            "content": "Your access has been approved. You can now chat with the assistant.",
        })

    return ChannelPlugin(
        id=CHANNEL_ID,
        label="Discord",
        meta={"docs": "https://discord.com/developers/docs", "tokenEnv": TOKEN_ENV},
        setup=setup,
        config=config,
        group=make_group_adapter("Discord"),
        outbound=outbound,
        status=StatusAdapter(
            probe_account=probe_account,
            audit_account=audit_account,
            collect_status_issues=collect_status_issues,
        ),
        elevated=ElevatedAdapter(allow_from_fallback=allow_from_fallback),
        security=make_dm_security_adapter(CHANNEL_ID),
        pairing=PairingAdapter(
            id_label="discordUserId",
            normalize_allow_entry=normalize_allow_entry,
            notify_approval=notify_approval,
        ),
    )
