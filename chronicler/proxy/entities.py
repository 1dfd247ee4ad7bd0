"""Entity collaborators: the campaign database as seen by the agent.

The agent never owns entity storage. Tools read through an ``EntityGateway``
and accepted proposals write through it. Two gateways ship here: an
in-memory store (tests, offline demos, optional JSON seed) and an HTTP
gateway for a campaign REST service.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import httpx

from .content import field_to_markdown

logger = logging.getLogger("chronicler.entities")

_PLURALS = {"hero": "heroes", "timeline_event": "timeline_events"}

# Fields searched by the in-memory store besides the name
_SEARCH_FIELDS = ("description", "summary", "content", "personality", "backstory", "notes", "goals", "title")


class EntityNotFoundError(LookupError):
    def __init__(self, entity_type: str, entity_id: str) -> None:
        super().__init__(f"{entity_type} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


def collection_name(entity_type: str) -> str:
    return _PLURALS.get(entity_type, f"{entity_type}s")


class EntityGateway(Protocol):
    async def get(self, entity_type: str, entity_id: str) -> dict[str, Any] | None: ...

    async def list(self, campaign_id: str, entity_type: str) -> list[dict[str, Any]]: ...

    async def search(
        self,
        campaign_id: str,
        query: str,
        entity_types: list[str] | None = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]: ...

    async def create(self, entity_type: str, data: dict[str, Any]) -> dict[str, Any]: ...

    async def update(self, entity_type: str, entity_id: str, changes: dict[str, Any]) -> dict[str, Any]: ...

    async def create_relationship(self, data: dict[str, Any]) -> dict[str, Any]: ...

    async def relationships_for(self, entity_type: str, entity_id: str) -> list[dict[str, Any]]: ...

    async def location_children(self, location_id: str) -> list[dict[str, Any]]: ...


# ─── In-memory store ─────────────────────────────────────────────────

class InMemoryEntityStore:
    """Dict-backed gateway. Records are plain dicts keyed by UUID strings."""

    def __init__(self) -> None:
        self._entities: dict[str, dict[str, dict[str, Any]]] = {}
        self._relationships: list[dict[str, Any]] = []

    @classmethod
    def from_file(cls, path: str | Path) -> InMemoryEntityStore:
        """Load a seed file: ``{"entities": {type: [records]}, "relationships": [...]}``."""
        store = cls()
        with open(path, "r", encoding="utf-8") as f:
            seed = json.load(f)
        for entity_type, records in (seed.get("entities") or {}).items():
            for record in records:
                store.add(entity_type, record)
        for rel in seed.get("relationships") or []:
            store._relationships.append(dict(rel, id=rel.get("id") or str(uuid.uuid4())))
        logger.info(f"Seeded entity store from {path}: {store.count()} entities")
        return store

    def add(self, entity_type: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert a record as-is (keeping its id when it has one)."""
        entity = dict(record)
        entity.setdefault("id", str(uuid.uuid4()))
        self._entities.setdefault(entity_type, {})[entity["id"]] = entity
        return entity

    def count(self, entity_type: str | None = None) -> int:
        if entity_type is not None:
            return len(self._entities.get(entity_type, {}))
        return sum(len(v) for v in self._entities.values())

    async def get(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        entity = self._entities.get(entity_type, {}).get(entity_id)
        return dict(entity) if entity else None

    async def list(self, campaign_id: str, entity_type: str) -> list[dict[str, Any]]:
        return [
            dict(e) for e in self._entities.get(entity_type, {}).values()
            if e.get("campaign_id") == campaign_id
        ]

    async def search(
        self,
        campaign_id: str,
        query: str,
        entity_types: list[str] | None = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        needle = query.strip().lower()
        if not needle:
            return []

        name_hits: list[dict[str, Any]] = []
        text_hits: list[dict[str, Any]] = []
        for entity_type, records in self._entities.items():
            if entity_type == "campaign" or (entity_types and entity_type not in entity_types):
                continue
            for entity in records.values():
                if entity.get("campaign_id") != campaign_id:
                    continue
                name = str(entity.get("name") or entity.get("title") or "")
                if needle in name.lower():
                    name_hits.append(_search_hit(entity_type, entity, name, _brief(entity)))
                    continue
                snippet = _match_snippet(entity, needle)
                if snippet is not None:
                    text_hits.append(_search_hit(entity_type, entity, name, snippet))

        return (name_hits + text_hits)[:limit]

    async def create(self, entity_type: str, data: dict[str, Any]) -> dict[str, Any]:
        now = datetime.now().isoformat()
        entity = self.add(entity_type, dict(data, id=str(uuid.uuid4()), created_at=now, updated_at=now))
        logger.debug(f"Created {entity_type} {entity['id']}")
        return dict(entity)

    async def update(self, entity_type: str, entity_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        entity = self._entities.get(entity_type, {}).get(entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_type, entity_id)
        entity.update(changes)
        entity["updated_at"] = datetime.now().isoformat()
        return dict(entity)

    async def create_relationship(self, data: dict[str, Any]) -> dict[str, Any]:
        for side in ("source", "target"):
            etype, eid = data[f"{side}_type"], data[f"{side}_id"]
            if eid not in self._entities.get(etype, {}):
                raise EntityNotFoundError(etype, eid)
        rel = {
            "strength": None,
            "description": None,
            "is_bidirectional": True,
            **data,
            "id": str(uuid.uuid4()),
        }
        self._relationships.append(rel)
        return dict(rel)

    async def relationships_for(self, entity_type: str, entity_id: str) -> list[dict[str, Any]]:
        return [
            dict(r) for r in self._relationships
            if (r["source_type"] == entity_type and r["source_id"] == entity_id)
            or (r["target_type"] == entity_type and r["target_id"] == entity_id)
        ]

    async def location_children(self, location_id: str) -> list[dict[str, Any]]:
        return [
            dict(loc) for loc in self._entities.get("location", {}).values()
            if loc.get("parent_id") == location_id
        ]


def _search_hit(entity_type: str, entity: dict[str, Any], name: str, snippet: str | None) -> dict[str, Any]:
    return {"entity_type": entity_type, "entity_id": entity["id"], "name": name, "snippet": snippet}


def _field_text(entity: dict[str, Any], key: str) -> str:
    value = field_to_markdown(entity.get(key))
    return value if isinstance(value, str) else ""


def _brief(entity: dict[str, Any], max_length: int = 100) -> str | None:
    text = _field_text(entity, "description") or _field_text(entity, "summary")
    if not text:
        return None
    return text if len(text) <= max_length else text[:max_length].rstrip() + "..."


def _match_snippet(entity: dict[str, Any], needle: str, radius: int = 40) -> str | None:
    for key in _SEARCH_FIELDS:
        text = _field_text(entity, key)
        pos = text.lower().find(needle)
        if pos < 0:
            continue
        start, end = max(0, pos - radius), min(len(text), pos + len(needle) + radius)
        return ("..." if start else "") + text[start:end] + ("..." if end < len(text) else "")
    return None


# ─── HTTP gateway ────────────────────────────────────────────────────

class HttpEntityGateway:
    """Gateway for a campaign REST service.

    Routes: ``GET/PATCH /{collection}/{id}``, ``GET/POST
    /campaigns/{id}/{collection}``, ``GET /campaigns/{id}/search``,
    ``POST /relationships``, ``GET /{collection}/{id}/relationships`` and
    ``GET /locations/{id}/children``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._http = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        response = await self._http.request(method, url, **kwargs)
        response.raise_for_status()
        return response.json()

    async def get(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        response = await self._http.get(f"/{collection_name(entity_type)}/{entity_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    async def list(self, campaign_id: str, entity_type: str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/campaigns/{campaign_id}/{collection_name(entity_type)}")

    async def search(
        self,
        campaign_id: str,
        query: str,
        entity_types: list[str] | None = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"q": query, "limit": limit}
        if entity_types:
            params["types"] = ",".join(entity_types)
        return await self._request("GET", f"/campaigns/{campaign_id}/search", params=params)

    async def create(self, entity_type: str, data: dict[str, Any]) -> dict[str, Any]:
        campaign_id = data.get("campaign_id")
        if not campaign_id:
            raise ValueError(f"Cannot create {entity_type} without campaign_id")
        return await self._request("POST", f"/campaigns/{campaign_id}/{collection_name(entity_type)}", json=data)

    async def update(self, entity_type: str, entity_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        response = await self._http.patch(f"/{collection_name(entity_type)}/{entity_id}", json=changes)
        if response.status_code == 404:
            raise EntityNotFoundError(entity_type, entity_id)
        response.raise_for_status()
        return response.json()

    async def create_relationship(self, data: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/relationships", json=data)

    async def relationships_for(self, entity_type: str, entity_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/{collection_name(entity_type)}/{entity_id}/relationships")

    async def location_children(self, location_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/locations/{location_id}/children")


def create_gateway(entities_api_url: str = "", seed_file: str = "") -> EntityGateway:
    if entities_api_url:
        logger.info(f"Using entity service at {entities_api_url}")
        return HttpEntityGateway(entities_api_url)
    if seed_file:
        return InMemoryEntityStore.from_file(seed_file)
    logger.info("Using empty in-memory entity store")
    return InMemoryEntityStore()


# ─── Campaign summary cache ──────────────────────────────────────────

MAX_LOCATIONS = 10
MAX_ORGANIZATIONS = 10
MAX_QUESTS = 10
MAX_SESSIONS = 3


class CampaignSummaryCache:
    """Per-campaign world summary for the system prompt, cached for ``ttl`` seconds."""

    def __init__(self, gateway: EntityGateway, ttl: float = 300.0) -> None:
        self.gateway = gateway
        self.ttl = ttl
        self._cache: dict[str, tuple[float, dict[str, Any]]] = {}

    async def get(self, campaign_id: str) -> dict[str, Any]:
        cached = self._cache.get(campaign_id)
        if cached and cached[0] > time.monotonic():
            return cached[1]

        summary = await self._build(campaign_id)
        self._cache[campaign_id] = (time.monotonic() + self.ttl, summary)
        return summary

    def invalidate(self, campaign_id: str) -> None:
        self._cache.pop(campaign_id, None)

    def clear_all(self) -> None:
        self._cache.clear()

    async def _build(self, campaign_id: str) -> dict[str, Any]:
        campaign = await self.gateway.get("campaign", campaign_id)
        if campaign is None:
            raise EntityNotFoundError("campaign", campaign_id)

        locations, orgs, quests, sessions, heroes, players = await asyncio.gather(
            self.gateway.list(campaign_id, "location"),
            self.gateway.list(campaign_id, "organization"),
            self.gateway.list(campaign_id, "quest"),
            self.gateway.list(campaign_id, "session"),
            self.gateway.list(campaign_id, "hero"),
            self.gateway.list(campaign_id, "player"),
        )

        active = ("active", "in_progress")
        quests = sorted(quests, key=lambda q: q.get("status") not in active)
        sessions = sorted(sessions, key=lambda s: s.get("session_number") or 0, reverse=True)
        player_names = {p["id"]: p.get("name") for p in players}

        return {
            "id": campaign["id"],
            "name": campaign.get("name", ""),
            "system": campaign.get("system"),
            "description": _brief(campaign, 500),
            "top_locations": [
                {"id": loc["id"], "name": loc.get("name"), "type": loc.get("location_type"), "brief": _brief(loc)}
                for loc in locations if not loc.get("parent_id")
            ][:MAX_LOCATIONS],
            "organizations": [
                {"id": o["id"], "name": o.get("name"), "type": o.get("org_type"), "brief": _brief(o)}
                for o in orgs[:MAX_ORGANIZATIONS]
            ],
            "quests": [
                {"id": q["id"], "name": q.get("name"), "status": q.get("status"), "brief": _brief(q)}
                for q in quests[:MAX_QUESTS]
            ],
            "recent_sessions": [
                {
                    "id": s["id"],
                    "session_number": s.get("session_number"),
                    "title": s.get("title"),
                    "summary": _field_text(s, "summary") or None,
                }
                for s in sessions[:MAX_SESSIONS]
            ],
            "heroes": [
                {
                    "id": h["id"],
                    "name": h.get("name"),
                    "classes": h.get("classes"),
                    "player_name": player_names.get(h.get("player_id")) or "Unknown Player",
                }
                for h in heroes if h.get("is_active") is not False
            ],
            "generated_at": datetime.now().isoformat(),
        }


def format_summary(summary: dict[str, Any]) -> str:
    """Render a campaign summary as markdown for the system prompt."""
    lines = [f"# {summary['name']}"]
    if summary.get("system"):
        lines.append(f"**System:** {summary['system']}")
    if summary.get("description"):
        lines += ["", summary["description"]]

    def section(title: str, items: list[dict[str, Any]], render) -> None:
        if items:
            lines.extend(["", f"## {title}"])
            lines.extend(render(i) for i in items)

    def brief_line(item: dict[str, Any]) -> str:
        kind = f" ({item['type']})" if item.get("type") else ""
        brief = f" - {item['brief']}" if item.get("brief") else ""
        return f"- **{item['name']}**{kind}{brief}"

    def quest_line(quest: dict[str, Any]) -> str:
        status = f" [{quest['status']}]" if quest.get("status") else ""
        brief = f" - {quest['brief']}" if quest.get("brief") else ""
        return f"- **{quest['name']}**{status}{brief}"

    def hero_line(hero: dict[str, Any]) -> str:
        classes = f" ({hero['classes']})" if hero.get("classes") else ""
        return f"- **{hero['name']}**{classes} - played by {hero['player_name']}"

    def session_line(session: dict[str, Any]) -> str:
        title = session.get("title") or f"Session {session.get('session_number')}"
        line = f"- **{title}**"
        text = session.get("summary")
        if text:
            line += "\n  " + (text[:200] + "..." if len(text) > 200 else text)
        return line

    section("Major Locations", summary.get("top_locations", []), brief_line)
    section("Factions & Organizations", summary.get("organizations", []), brief_line)
    section("Active Quests", summary.get("quests", []), quest_line)
    section("The Party", summary.get("heroes", []), hero_line)
    section("Recent Sessions", summary.get("recent_sessions", []), session_line)
    return "\n".join(lines)
