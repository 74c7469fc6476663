"""
Built-in role catalog.

Loaded once from a versioned JSON file when the app starts and treated as read-only
for the lifetime of the process. Display metadata (name/color/icon) is presentation
only and must never be used for an authorization decision; use `resolve_builtin` and
`level` for that.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from app.fieldops.errors import UnknownCapability, UnknownRole
from app.fieldops.permissions import ALL_CAPABILITIES, PermissionSet

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).with_name("role_catalog.json")


class CatalogError(RuntimeError):
    pass


@dataclass(frozen=True)
class BuiltInRoleSpec:
    name: str
    level: int
    display_name: str
    color: str
    icon: str
    description: str
    permissions: PermissionSet


class RoleCatalog:
    def __init__(self, roles: Mapping[str, BuiltInRoleSpec], version: int) -> None:
        if not roles:
            raise CatalogError("Role catalog is empty.")
        levels = [r.level for r in roles.values()]
        if len(set(levels)) != len(levels):
            raise CatalogError("Built-in role levels must be unique.")
        self._roles = MappingProxyType(dict(roles))
        self.version = version
        self._lowest = min(roles.values(), key=lambda r: r.level)
        self._top_level = max(levels)

    def __contains__(self, role_name: object) -> bool:
        return role_name in self._roles

    def names(self) -> list[str]:
        """Built-in role names, highest authority first."""
        return [r.name for r in sorted(self._roles.values(), key=lambda r: r.level, reverse=True)]

    def spec(self, role_name: str) -> BuiltInRoleSpec:
        try:
            return self._roles[role_name]
        except KeyError:
            raise UnknownRole(f"Unknown role: {role_name!r}", role=role_name) from None

    def resolve_builtin(self, role_name: str) -> PermissionSet:
        return self.spec(role_name).permissions

    def level(self, role_name: str) -> int:
        return self.spec(role_name).level

    @property
    def top_level(self) -> int:
        return self._top_level

    @property
    def lowest_level(self) -> int:
        return self._lowest.level

    def lowest_privilege(self) -> BuiltInRoleSpec:
        return self._lowest

    # Presentation lookups

    def display_name(self, role_name: str) -> str:
        return self.spec(role_name).display_name

    def color(self, role_name: str) -> str:
        return self.spec(role_name).color

    def icon(self, role_name: str) -> str:
        return self.spec(role_name).icon

    def description(self, role_name: str) -> str:
        return self.spec(role_name).description


def _parse_role(name: str, raw: Any) -> BuiltInRoleSpec:
    if not isinstance(raw, Mapping):
        raise CatalogError(f"Role {name!r}: entry must be an object.")
    try:
        level = int(raw["level"])
    except (KeyError, TypeError, ValueError):
        raise CatalogError(f"Role {name!r}: 'level' must be an integer.") from None

    grants = raw.get("grants") or []
    if not isinstance(grants, list):
        raise CatalogError(f"Role {name!r}: 'grants' must be a list.")
    try:
        if grants == ["*"]:
            permissions = PermissionSet.grants(ALL_CAPABILITIES)
        else:
            permissions = PermissionSet.grants(grants)
    except UnknownCapability as e:
        raise CatalogError(f"Role {name!r}: {e.message}") from e

    return BuiltInRoleSpec(
        name=name,
        level=level,
        display_name=str(raw.get("display_name") or name.replace("_", " ").title()),
        color=str(raw.get("color") or "#6B7280"),
        icon=str(raw.get("icon") or ""),
        description=str(raw.get("description") or ""),
        permissions=permissions,
    )


def load_role_catalog(path: str | Path | None = None) -> RoleCatalog:
    path = Path(path) if path else DEFAULT_CATALOG_PATH
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise CatalogError(f"Cannot load role catalog from {path}: {e}") from e

    if not isinstance(data, dict):
        raise CatalogError("Role catalog must be a JSON object.")
    roles_raw = data.get("roles")
    if not isinstance(roles_raw, dict):
        raise CatalogError("Role catalog must define a 'roles' object.")
    roles = {name: _parse_role(name, raw) for name, raw in roles_raw.items()}
    catalog = RoleCatalog(roles, version=int(data.get("version") or 0))
    logger.info("Loaded role catalog v%s (%d built-in roles) from %s", catalog.version, len(roles), path)
    return catalog


def current_catalog() -> RoleCatalog:
    from flask import current_app

    return current_app.extensions["role_catalog"]


def get_role_display_name(role_name: str) -> str:
    return current_catalog().display_name(role_name)


def get_role_color(role_name: str) -> str:
    return current_catalog().color(role_name)


def get_role_icon(role_name: str) -> str:
    return current_catalog().icon(role_name)


def get_role_level(role_name: str) -> int:
    return current_catalog().level(role_name)
