"""
Skill discovery for ``skills.list``.

A skill is a directory holding a SKILL.md whose YAML frontmatter gives at
least a name and description:

    ---
    name: weather
    description: Look up the forecast
    tags: [web, daily]
    ---
    Instructions...

Skills are looked up in the agent workspace (``<workspace>/skills``) and
in ``<state>/skills``; a workspace skill shadows a state skill with the
same name. ``skills.entries.<name>.enabled: false`` in config hides one.
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from agent.scope import resolve_agent_workspace_dir
from oni_constants import get_state_dir

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 64
MAX_DESCRIPTION_LENGTH = 1024

_FRONTMATTER_END_RE = re.compile(r"\n---\s*(\n|$)")


def parse_frontmatter(content: str) -> Tuple[Dict[str, Any], str]:
    """Split a markdown file into (frontmatter dict, body)."""
    if not content.startswith("---"):
        return {}, content
    end = _FRONTMATTER_END_RE.search(content, 3)
    if not end:
        return {}, content
    raw = content[3:end.start()]
    body = content[end.end():]
    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        logger.debug("Bad skill frontmatter: %s", e)
        return {}, body
    return (data if isinstance(data, dict) else {}), body


def _first_paragraph(body: str) -> str:
    for line in body.strip().split("\n"):
        line = line.strip()
        if line and not line.startswith("#"):
            return line
    return ""


def _parse_tags(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(t).strip() for t in value if str(t).strip()]
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    return []


def _skill_entries_config(cfg: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    skills = (cfg or {}).get("skills")
    if isinstance(skills, dict) and isinstance(skills.get("entries"), dict):
        return skills["entries"]
    return {}


def _scan(root: Path, source: str) -> List[Dict[str, Any]]:
    skills = []
    if not root.is_dir():
        return skills
    for skill_md in sorted(root.glob("*/SKILL.md")):
        try:
            content = skill_md.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Skipping unreadable skill %s: %s", skill_md, e)
            continue
        frontmatter, body = parse_frontmatter(content)
        name = str(frontmatter.get("name") or skill_md.parent.name)[:MAX_NAME_LENGTH]
        description = str(frontmatter.get("description") or _first_paragraph(body))
        if len(description) > MAX_DESCRIPTION_LENGTH:
            description = description[:MAX_DESCRIPTION_LENGTH - 3] + "..."
        skills.append({
            "name": name,
            "description": description,
            "tags": _parse_tags(frontmatter.get("tags")),
            "source": source,
            "path": str(skill_md.parent),
        })
    return skills


def list_skills(
    cfg: Optional[Dict[str, Any]],
    agent_id: Optional[str] = None,
    state_dir: Optional[Path] = None,
) -> List[Dict[str, Any]]:
    state = Path(state_dir) if state_dir else get_state_dir()
    roots = [
        (resolve_agent_workspace_dir(cfg, agent_id) / "skills", "workspace"),
        (state / "skills", "managed"),
    ]
    entries = _skill_entries_config(cfg)
    seen = set()
    result = []
    for root, source in roots:
        for skill in _scan(root, source):
            if skill["name"] in seen:
                continue
            seen.add(skill["name"])
            entry = entries.get(skill["name"])
            skill["enabled"] = not (isinstance(entry, dict) and entry.get("enabled") is False)
            result.append(skill)
    result.sort(key=lambda s: s["name"])
    return result
