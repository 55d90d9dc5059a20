"""
WhatsApp channel plugin.

WhatsApp has no bot API for personal accounts, so delivery goes through a
local bridge process (whatsapp-web.js or Baileys) that keeps the logged-in
web session alive and exposes a small HTTP API:

    GET  /health                 bridge up?
    GET  /messages?accountId=    drain queued inbound messages
    POST /send, /send-media, /poll
    POST /login/qr/start, /login/qr/wait, /logout, /disconnect

The bridge itself is not managed here. Because the session only exists
while the account is started, outbound delivery mode is "gateway": the
router refuses to send for accounts that are not running.
"""

import asyncio
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from oni_constants import get_state_dir
from gateway.accounts import ChannelAccount
from gateway.platforms.base import (
    AccountSnapshot,
    ChannelPlugin,
    DeliveryResult,
    GatewayAdapter,
    GatewayContext,
    HeartbeatAdapter,
    InboundMessage,
    LogoutResult,
    MessageType,
    OutboundAdapter,
    OutboundContext,
    PairingAdapter,
    PollInput,
    QrStartResult,
    QrWaitResult,
    SetupInput,
    StatusAdapter,
    StatusIssue,
    chunk_text,
    default_resolve_target,
    make_dm_security_adapter,
    make_group_adapter,
    make_section_config_adapter,
    make_section_setup_adapter,
    resolve_heartbeat_recipients,
    wait_or_abort,
)
from gateway.platforms.http import TransportError, request_json

logger = logging.getLogger(__name__)

CHANNEL_ID = "whatsapp"
DEFAULT_BRIDGE_URL = "http://localhost:3000"

TEXT_CHUNK_LIMIT = 4000
POLL_MAX_OPTIONS = 12
POLL_INTERVAL_S = 1.0
MAX_BACKOFF_S = 30.0

_TARGET_PREFIX_RE = re.compile(r"^(whatsapp|wa):", re.IGNORECASE)
_JID_RE = re.compile(r"^[\w.+-]+@(g\.us|s\.whatsapp\.net|lid)$")
_PHONE_CHARS_RE = re.compile(r"[\s().-]")


class WhatsAppBridge:
    """HTTP client for the local WhatsApp bridge."""

    async def call(self, bridge_url: str, method: str, path: str, payload: Optional[Dict[str, Any]] = None,
                   params: Optional[Dict[str, Any]] = None, timeout_s: float = 30) -> Any:
        resp = await request_json(
            method,
            f"{bridge_url.rstrip('/')}{path}",
            json=payload,
            params=params,
            timeout_s=timeout_s,
        )
        if not resp.ok:
            message = resp.data.get("error") if isinstance(resp.data, dict) else resp.data
            raise TransportError(str(message or f"HTTP {resp.status}"), status=resp.status)
        return resp.data


def normalize_target(value: str) -> str:
    text = _TARGET_PREFIX_RE.sub("", str(value).strip())
    if _JID_RE.match(text):
        return text
    digits = _PHONE_CHARS_RE.sub("", text)
    if digits.startswith("+"):
        digits = digits[1:]
    if digits.isdigit() and 7 <= len(digits) <= 15:
        return f"+{digits}"
    return ""


def normalize_allow_entry(entry: str) -> str:
    return normalize_target(entry) or str(entry).strip()


def _bridge_url(account: ChannelAccount) -> str:
    url = (account.config or {}).get("bridgeUrl")
    return url.strip() if isinstance(url, str) and url.strip() else DEFAULT_BRIDGE_URL


def resolve_auth_dir(account: ChannelAccount) -> Path:
    configured = (account.config or {}).get("authDir")
    if isinstance(configured, str) and configured.strip():
        return Path(os.path.expanduser(configured.strip()))
    return get_state_dir() / "credentials" / CHANNEL_ID / account.account_id


def bridge_message_to_inbound(data: Dict[str, Any], account_id: str) -> Optional[InboundMessage]:
    """Build an InboundMessage from one bridge queue entry."""
    msg_type = MessageType.TEXT
    if data.get("hasMedia"):
        media_type = data.get("mediaType", "")
        if "image" in media_type:
            msg_type = MessageType.PHOTO
        elif "video" in media_type:
            msg_type = MessageType.VIDEO
        elif "audio" in media_type or "ptt" in media_type:  # ptt = voice note
            msg_type = MessageType.VOICE
        else:
            msg_type = MessageType.DOCUMENT
    body = data.get("body") or ""
    sender = data.get("senderId") or data.get("chatId")
    if not sender or (not body and msg_type == MessageType.TEXT):
        return None
    is_group = bool(data.get("isGroup"))
    return InboundMessage(
        channel=CHANNEL_ID,
        account_id=account_id,
        sender_id=normalize_allow_entry(sender),
        sender_name=data.get("senderName"),
        text=body,
        chat_type="group" if is_group else "direct",
        chat_id=data.get("chatId"),
        chat_name=data.get("chatName"),
        message_id=data.get("messageId"),
        was_mentioned=bool(data.get("mentionedMe")),
        message_type=msg_type,
        media_urls=list(data.get("mediaUrls") or []),
        raw=data,
    )


def create_whatsapp_plugin(transport: Optional[WhatsAppBridge] = None) -> ChannelPlugin:
    bridge = transport or WhatsAppBridge()

    async def is_configured(account: ChannelAccount, cfg: Dict[str, Any]) -> bool:
        creds = resolve_auth_dir(account) / "creds.json"
        return await asyncio.to_thread(creds.exists)

    config = make_section_config_adapter(
        CHANNEL_ID,
        normalize_allow_entry=normalize_allow_entry,
        is_configured=is_configured,
        unconfigured_reason="not linked (run: oni channels login whatsapp)",
    )

    def validate_setup(cfg: Dict[str, Any], account_id: str, setup: SetupInput) -> Optional[str]:
        if setup.bridge_url and not setup.bridge_url.startswith(("http://", "https://")):
            return "bridgeUrl must be an http(s) URL"
        return None

    setup = make_section_setup_adapter(
        CHANNEL_ID,
        field_map={"auth_dir": "authDir", "bridge_url": "bridgeUrl"},
        validate=validate_setup,
    )

    async def _send(ctx: OutboundContext, path: str, payload: Dict[str, Any]) -> DeliveryResult:
        payload = {"accountId": ctx.account_id, "chatId": ctx.to, **payload}
        try:
            data = await bridge.call(_bridge_url(ctx.account), "POST", path, payload)
        except TransportError as e:
            logger.warning("WhatsApp %s failed (account %s): %s", path, ctx.account_id, e)
            return DeliveryResult(ok=False, channel=CHANNEL_ID, error=str(e))
        data = data if isinstance(data, dict) else {}
        return DeliveryResult(ok=True, channel=CHANNEL_ID, message_id=data.get("messageId"))

    async def send_text(ctx: OutboundContext) -> DeliveryResult:
        payload: Dict[str, Any] = {"message": ctx.text}
        if ctx.reply_to:
            payload["replyTo"] = ctx.reply_to
        return await _send(ctx, "/send", payload)

    async def send_media(ctx: OutboundContext) -> DeliveryResult:
        return await _send(ctx, "/send-media", {"mediaUrl": ctx.media_url, "caption": ctx.text or None})

    async def send_poll(ctx: OutboundContext, poll: PollInput) -> DeliveryResult:
        return await _send(ctx, "/poll", {
            "question": poll.question,
            "options": list(poll.options),
            "selectableCount": poll.max_selections,
        })

    outbound = OutboundAdapter(
        delivery_mode="gateway",
        chunker=chunk_text,
        chunker_mode="text",
        text_chunk_limit=TEXT_CHUNK_LIMIT,
        poll_max_options=POLL_MAX_OPTIONS,
        resolve_target=default_resolve_target(normalize_target),
        send_text=send_text,
        send_media=send_media,
        send_poll=send_poll,
    )

    async def probe_account(account: ChannelAccount, timeout_ms: int, cfg: Dict[str, Any]) -> Dict[str, Any]:
        try:
            data = await bridge.call(_bridge_url(account), "GET", "/health",
                                     params={"accountId": account.account_id}, timeout_s=timeout_ms / 1000)
        except TransportError as e:
            return {"ok": False, "error": f"bridge unreachable: {e}"}
        data = data if isinstance(data, dict) else {}
        return {"ok": True, "linked": data.get("linked"), "me": data.get("me")}

    def collect_status_issues(snapshots: List[AccountSnapshot]) -> List[StatusIssue]:
        issues = []
        for snap in snapshots:
            if snap.probe and not snap.probe.get("ok"):
                issues.append(StatusIssue(
                    channel=CHANNEL_ID,
                    account_id=snap.account_id,
                    kind="runtime",
                    message=str(snap.probe.get("error")),
                    fix="Start the WhatsApp bridge or fix channels.whatsapp.bridgeUrl",
                ))
            elif snap.probe and snap.probe.get("linked") is False:
                issues.append(StatusIssue(
                    channel=CHANNEL_ID,
                    account_id=snap.account_id,
                    kind="auth",
                    message="Bridge is up but the account is not linked",
                    fix="oni channels login whatsapp",
                ))
        return issues

    async def start_account(ctx: GatewayContext) -> None:
        """Drain the bridge queue until the abort event fires."""
        url = _bridge_url(ctx.account)
        await bridge.call(url, "GET", "/health", params={"accountId": ctx.account_id}, timeout_s=5)
        ctx.set_status(connected=True)
        logger.info("WhatsApp account %s connected to bridge %s", ctx.account_id, url)

        backoff = 1.0
        while not ctx.abort_event.is_set():
            try:
                messages = await bridge.call(url, "GET", "/messages", params={"accountId": ctx.account_id})
            except TransportError as e:
                delay = min(MAX_BACKOFF_S, backoff)
                logger.warning("WhatsApp poll error (account %s), retrying in %.0fs: %s",
                               ctx.account_id, delay, e)
                ctx.set_status(connected=False, last_error=str(e))
                if await wait_or_abort(ctx.abort_event, delay):
                    break
                backoff = min(MAX_BACKOFF_S, backoff * 2)
                continue
            backoff = 1.0
            ctx.set_status(connected=True, last_error=None)
            for item in messages or []:
                message = bridge_message_to_inbound(item, ctx.account_id) if isinstance(item, dict) else None
                if message is not None:
                    await ctx.emit(message)
            if await wait_or_abort(ctx.abort_event, POLL_INTERVAL_S):
                break
        ctx.set_status(connected=False)

    async def stop_account(ctx: GatewayContext) -> None:
        try:
            await bridge.call(_bridge_url(ctx.account), "POST", "/disconnect",
                              {"accountId": ctx.account_id}, timeout_s=5)
        except TransportError as e:
            logger.debug("WhatsApp bridge disconnect failed (account %s): %s", ctx.account_id, e)

    def _account(cfg: Optional[Dict[str, Any]], account_id: Optional[str]) -> ChannelAccount:
        return config.resolve_account(cfg or {}, account_id)

    async def login_with_qr_start(account_id: Optional[str] = None, force: bool = False,
                                  timeout_ms: int = 30000, cfg: Optional[Dict[str, Any]] = None) -> QrStartResult:
        account = _account(cfg, account_id)
        data = await bridge.call(_bridge_url(account), "POST", "/login/qr/start", {
            "accountId": account.account_id,
            "authDir": str(resolve_auth_dir(account)),
            "force": force,
        }, timeout_s=timeout_ms / 1000)
        data = data if isinstance(data, dict) else {}
        return QrStartResult(message=data.get("message") or "Scan the QR code with WhatsApp",
                             qr_data_url=data.get("qrDataUrl"))

    async def login_with_qr_wait(account_id: Optional[str] = None, timeout_ms: int = 120000,
                                 cfg: Optional[Dict[str, Any]] = None) -> QrWaitResult:
        account = _account(cfg, account_id)
        data = await bridge.call(_bridge_url(account), "POST", "/login/qr/wait", {
            "accountId": account.account_id,
            "timeoutMs": timeout_ms,
        }, timeout_s=timeout_ms / 1000 + 5)
        data = data if isinstance(data, dict) else {}
        connected = bool(data.get("connected"))
        return QrWaitResult(connected=connected,
                            message=data.get("message") or ("Linked" if connected else "Not linked yet"))

    async def logout_account(cfg: Dict[str, Any], account: ChannelAccount) -> LogoutResult:
        logged_out = False
        try:
            data = await bridge.call(_bridge_url(account), "POST", "/logout", {"accountId": account.account_id})
            logged_out = bool((data or {}).get("loggedOut", True)) if isinstance(data, dict) else True
        except TransportError as e:
            logger.warning("WhatsApp bridge logout failed (account %s): %s", account.account_id, e)
        auth_dir = resolve_auth_dir(account)
        cleared = auth_dir.exists()
        if cleared:
            await asyncio.to_thread(shutil.rmtree, auth_dir, True)
        return LogoutResult(cleared=cleared, logged_out=logged_out,
                            message="Local session cleared" if cleared else "No local session")

    async def check_ready(cfg: Dict[str, Any], account_id: Optional[str] = None) -> Dict[str, Any]:
        account = _account(cfg, account_id)
        if not account.enabled:
            return {"ok": False, "reason": "disabled"}
        if not await is_configured(account, cfg):
            return {"ok": False, "reason": "not linked"}
        probe = await probe_account(account, 5000, cfg)
        return {"ok": bool(probe.get("ok")), "reason": "ok" if probe.get("ok") else probe.get("error")}

    return ChannelPlugin(
        id=CHANNEL_ID,
        label="WhatsApp",
        aliases=("wa",),
        meta={"bridge": DEFAULT_BRIDGE_URL},
        setup=setup,
        config=config,
        group=make_group_adapter("WhatsApp"),
        outbound=outbound,
        status=StatusAdapter(probe_account=probe_account, collect_status_issues=collect_status_issues),
        gateway=GatewayAdapter(
            start_account=start_account,
            stop_account=stop_account,
            login_with_qr_start=login_with_qr_start,
            login_with_qr_wait=login_with_qr_wait,
            logout_account=logout_account,
        ),
        heartbeat=HeartbeatAdapter(
            check_ready=check_ready,
            resolve_recipients=resolve_heartbeat_recipients(config.resolve_account),
        ),
        security=make_dm_security_adapter(CHANNEL_ID),
        pairing=PairingAdapter(id_label="phoneNumber", normalize_allow_entry=normalize_allow_entry),
    )
