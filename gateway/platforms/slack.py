"""
Slack channel plugin.

Outbound-only over the Web API (aiohttp). Inbound Socket Mode is not
wired here; Slack accounts are probed, audited for OAuth scopes and used
for direct delivery, directory listing and name-to-id resolution.
"""

import logging
import re
import time
from typing import Any, Dict, List, Optional

from gateway.accounts import ChannelAccount
from gateway.platforms.base import (
    AccountSnapshot,
    ChannelPlugin,
    DeliveryResult,
    DirectoryAdapter,
    DirectoryEntry,
    OutboundAdapter,
    OutboundContext,
    PairingAdapter,
    ResolveResult,
    ResolverAdapter,
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

CHANNEL_ID = "slack"
SLACK_API_BASE = "https://slack.com/api"
BOT_TOKEN_ENV = "SLACK_BOT_TOKEN"
APP_TOKEN_ENV = "SLACK_APP_TOKEN"

TEXT_CHUNK_LIMIT = 4000
DIRECTORY_PAGE_LIMIT = 200

REQUIRED_SCOPES = ("chat:write", "channels:read", "im:history", "users:read")

_TARGET_PREFIX_RE = re.compile(r"^slack:", re.IGNORECASE)
_KIND_PREFIX_RE = re.compile(r"^(channel|user|group):", re.IGNORECASE)
_SLACK_ID_RE = re.compile(r"^[CDGUW][A-Z0-9]{6,}$")


class SlackWebApi:
    """Minimal Slack Web API client."""

    def __init__(self, base_url: str = SLACK_API_BASE):
        self.base_url = base_url.rstrip("/")

    async def _post(self, token: str, method: str, payload: Optional[Dict[str, Any]], timeout_s: float):
        resp = await request_json(
            "POST",
            f"{self.base_url}/{method}",
            json=payload or {},
            headers={"Authorization": f"Bearer {token}"},
            timeout_s=timeout_s,
        )
        data = resp.data if isinstance(resp.data, dict) else {}
        if resp.status == 429:
            retry_after = resp.headers.get("Retry-After")
            raise TransportError("rate_limited", status=429,
                                 retry_after=float(retry_after) if retry_after else None)
        if not data.get("ok"):
            raise TransportError(data.get("error") or f"HTTP {resp.status}", status=resp.status)
        return data, resp.headers

    async def call(self, token: str, method: str, payload: Optional[Dict[str, Any]] = None,
                   timeout_s: float = 30) -> Dict[str, Any]:
        data, _ = await self._post(token, method, payload, timeout_s)
        return data

    async def granted_scopes(self, token: str, timeout_s: float = 10) -> List[str]:
        """OAuth scopes of ``token`` as reported by the auth.test response header."""
        _, headers = await self._post(token, "auth.test", None, timeout_s)
        raw = headers.get("x-oauth-scopes") or headers.get("X-OAuth-Scopes") or ""
        return [s.strip() for s in raw.split(",") if s.strip()]


def normalize_target(value: str) -> str:
    text = _TARGET_PREFIX_RE.sub("", str(value).strip())
    text = _KIND_PREFIX_RE.sub("", text)
    if text.startswith("#") and len(text) > 1:
        return text
    if text.startswith("<@") and text.endswith(">"):
        text = text[2:-1]
    return text.upper() if _SLACK_ID_RE.match(text.upper()) else ""


def normalize_allow_entry(entry: str) -> str:
    text = _TARGET_PREFIX_RE.sub("", str(entry).strip())
    text = _KIND_PREFIX_RE.sub("", text)
    return text.upper() if _SLACK_ID_RE.match(text.upper()) else text.lower()


def _bot_token(account: ChannelAccount) -> Optional[str]:
    return read_credential(account, "botToken", BOT_TOKEN_ENV)


def create_slack_plugin(transport: Optional[SlackWebApi] = None) -> ChannelPlugin:
    api = transport or SlackWebApi()

    config = make_section_config_adapter(
        CHANNEL_ID,
        credential_keys=("botToken",),
        env_keys=(BOT_TOKEN_ENV,),
        normalize_allow_entry=normalize_allow_entry,
        unconfigured_reason="missing botToken (xoxb-...)",
    )

    def validate_setup(cfg: Dict[str, Any], account_id: str, setup: SetupInput) -> Optional[str]:
        if setup.use_env:
            if account_id != "default":
                return f"{BOT_TOKEN_ENV} can only be used for the default account"
            return None
        token = setup.bot_token or setup.token
        if not token and not setup.token_file:
            return "Slack requires --bot-token (xoxb-...)"
        if token and not token.startswith("xoxb-"):
            return "Slack bot tokens start with xoxb-"
        if setup.app_token and not setup.app_token.startswith("xapp-"):
            return "Slack app tokens start with xapp-"
        return None

    setup = make_section_setup_adapter(
        CHANNEL_ID,
        field_map={
            "token": "botToken",
            "bot_token": "botToken",
            "token_file": "botTokenFile",
            "app_token": "appToken",
        },
        validate=validate_setup,
    )

    async def send_text(ctx: OutboundContext) -> DeliveryResult:
        token = _bot_token(ctx.account)
        if not token:
            return DeliveryResult(ok=False, channel=CHANNEL_ID, error="missing bot token")
        payload: Dict[str, Any] = {"channel": ctx.to, "text": ctx.text, "mrkdwn": True}
        thread_ts = ctx.thread_id or ctx.reply_to
        if thread_ts:
            payload["thread_ts"] = str(thread_ts)
        try:
            data = await api.call(token, "chat.postMessage", payload)
        except TransportError as e:
            logger.warning("Slack send failed (account %s): %s", ctx.account_id, e)
            return DeliveryResult(ok=False, channel=CHANNEL_ID, error=str(e))
        return DeliveryResult(ok=True, channel=CHANNEL_ID, message_id=data.get("ts"),
                              meta={"channelId": data.get("channel")})

    async def send_media(ctx: OutboundContext) -> DeliveryResult:
        # Slack unfurls links; uploads need files.uploadV2 which is out of scope here
        text = f"{ctx.text}\n{ctx.media_url}" if ctx.text else (ctx.media_url or "")
        return await send_text(OutboundContext(
            cfg=ctx.cfg, channel=ctx.channel, account=ctx.account, to=ctx.to, text=text,
            reply_to=ctx.reply_to, thread_id=ctx.thread_id, silent=ctx.silent,
        ))

    outbound = OutboundAdapter(
        delivery_mode="direct",
        chunker=chunk_markdown,
        chunker_mode="markdown",
        text_chunk_limit=TEXT_CHUNK_LIMIT,
        poll_max_options=None,
        resolve_target=default_resolve_target(normalize_target),
        send_text=send_text,
        send_media=send_media,
    )

    async def probe_account(account: ChannelAccount, timeout_ms: int, cfg: Dict[str, Any]) -> Dict[str, Any]:
        token = _bot_token(account)
        if not token:
            return {"ok": False, "error": "missing bot token"}
        started = time.monotonic()
        try:
            data = await api.call(token, "auth.test", timeout_s=timeout_ms / 1000)
        except TransportError as e:
            return {"ok": False, "error": str(e), "status": e.status}
        return {
            "ok": True,
            "elapsedMs": int((time.monotonic() - started) * 1000),
            "bot": {"id": data.get("user_id"), "name": data.get("user")},
            "team": {"id": data.get("team_id"), "name": data.get("team")},
        }

    async def audit_account(account: ChannelAccount, timeout_ms: int, cfg: Dict[str, Any],
                            probe: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if probe is not None and not probe.get("ok"):
            return {"ok": False, "error": "probe failed"}
        token = _bot_token(account)
        if not token:
            return {"ok": False, "error": "missing bot token"}
        try:
            scopes = await api.granted_scopes(token, timeout_s=timeout_ms / 1000)
        except TransportError as e:
            return {"ok": False, "error": str(e)}
        missing = [s for s in REQUIRED_SCOPES if s not in scopes]
        return {"ok": not missing, "scopes": scopes, "missingScopes": missing}

    def collect_status_issues(snapshots: List[AccountSnapshot]) -> List[StatusIssue]:
        issues = []
        for snap in snapshots:
            if snap.probe and not snap.probe.get("ok") and snap.configured:
                issues.append(StatusIssue(
                    channel=CHANNEL_ID,
                    account_id=snap.account_id,
                    kind="auth",
                    message=f"auth.test failed: {snap.probe.get('error')}",
                ))
            missing = (snap.audit or {}).get("missingScopes") or []
            if missing:
                issues.append(StatusIssue(
                    channel=CHANNEL_ID,
                    account_id=snap.account_id,
                    kind="permissions",
                    message=f"Missing OAuth scopes: {', '.join(missing)}",
                    fix="Add the scopes under OAuth & Permissions and reinstall the app",
                ))
        return issues

    status = StatusAdapter(
        probe_account=probe_account,
        audit_account=audit_account,
        collect_status_issues=collect_status_issues,
    )

    async def _list(token: str, method: str, key: str, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        data = await api.call(token, method, payload)
        return [item for item in data.get(key) or [] if isinstance(item, dict)]

    def _token_for(cfg: Dict[str, Any], account_id: Optional[str]) -> str:
        token = _bot_token(config.resolve_account(cfg, account_id))
        if not token:
            raise TransportError("missing bot token")
        return token

    def _matches(query: Optional[str], *values: Optional[str]) -> bool:
        if not query:
            return True
        needle = query.lower().lstrip("@#")
        return any(v and needle in v.lower() for v in values)

    async def list_peers(cfg: Dict[str, Any], account_id: Optional[str] = None,
                         query: Optional[str] = None, limit: Optional[int] = None) -> List[DirectoryEntry]:
        users = await _list(_token_for(cfg, account_id), "users.list", "members", {"limit": DIRECTORY_PAGE_LIMIT})
        entries = []
        for user in users:
            if user.get("deleted") or user.get("is_bot"):
                continue
            profile = user.get("profile") or {}
            display = profile.get("display_name") or user.get("real_name")
            if _matches(query, user.get("name"), display):
                entries.append(DirectoryEntry(kind="user", id=user["id"], name=display, handle=f"@{user.get('name')}"))
        return entries[:limit] if limit else entries

    async def list_groups(cfg: Dict[str, Any], account_id: Optional[str] = None,
                          query: Optional[str] = None, limit: Optional[int] = None) -> List[DirectoryEntry]:
        channels = await _list(_token_for(cfg, account_id), "conversations.list", "channels", {
            "limit": DIRECTORY_PAGE_LIMIT,
            "types": "public_channel,private_channel",
            "exclude_archived": True,
        })
        entries = [
            DirectoryEntry(kind="channel", id=ch["id"], name=ch.get("name"), handle=f"#{ch.get('name')}")
            for ch in channels
            if _matches(query, ch.get("name"))
        ]
        return entries[:limit] if limit else entries

    async def list_group_members(cfg: Dict[str, Any], account_id: Optional[str] = None,
                                 group_id: str = "", limit: Optional[int] = None) -> List[DirectoryEntry]:
        data = await api.call(_token_for(cfg, account_id), "conversations.members",
                              {"channel": group_id, "limit": limit or DIRECTORY_PAGE_LIMIT})
        return [DirectoryEntry(kind="user", id=member) for member in data.get("members") or []]

    async def resolve_targets(cfg: Dict[str, Any], account_id: Optional[str], inputs: List[str],
                              kind: str) -> List[ResolveResult]:
        lister = list_groups if kind == "group" else list_peers
        entries = await lister(cfg, account_id)
        results = []
        for raw in inputs:
            direct = normalize_target(raw)
            if direct and not direct.startswith("#"):
                results.append(ResolveResult(input=raw, resolved=True, id=direct, note="already an id"))
                continue
            needle = raw.strip().lstrip("@#").lower()
            exact = [e for e in entries if needle in {(e.name or "").lower(), (e.handle or "").lstrip("@#").lower()}]
            if len(exact) == 1:
                results.append(ResolveResult(input=raw, resolved=True, id=exact[0].id, name=exact[0].name))
            elif len(exact) > 1:
                results.append(ResolveResult(input=raw, resolved=False, note=f"ambiguous ({len(exact)} matches)"))
            else:
                results.append(ResolveResult(input=raw, resolved=False, note="not found"))
        return results

    async def notify_approval(cfg: Dict[str, Any], sender_id: str) -> None:
        await api.call(_token_for(cfg, None), "chat.postMessage", {
            "channel": sender_id,
            "text": "Your access has been approved. You can now chat with the assistant.",
        })

    return ChannelPlugin(
        id=CHANNEL_ID,
        label="Slack",
        meta={"docs": "https://api.slack.com/web", "tokenEnv": BOT_TOKEN_ENV, "requiredScopes": list(REQUIRED_SCOPES)},
        setup=setup,
        config=config,
        group=make_group_adapter("Slack"),
        outbound=outbound,
        status=status,
        directory=DirectoryAdapter(list_peers=list_peers, list_groups=list_groups,
                                   list_group_members=list_group_members),
        resolver=ResolverAdapter(resolve_targets=resolve_targets),
        security=make_dm_security_adapter(CHANNEL_ID),
        pairing=PairingAdapter(
            id_label="slackUserId",
            normalize_allow_entry=normalize_allow_entry,
            notify_approval=notify_approval,
        ),
    )
