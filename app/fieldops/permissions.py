from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from enum import Enum
from types import MappingProxyType
from typing import Any

from app.fieldops.errors import UnknownCapability, ValidationError


class Capability(str, Enum):
    # Projects
    VIEW_ALL_PROJECTS = "canViewAllProjects"
    EDIT_PROJECTS = "canEditProjects"
    DELETE_PROJECTS = "canDeleteProjects"
    CREATE_PROJECTS = "canCreateProjects"
    # Team
    MANAGE_TEAM = "canManageTeam"
    MANAGE_USERS = "canManageUsers"
    INVITE_MEMBERS = "canInviteMembers"
    REMOVE_MEMBERS = "canRemoveMembers"
    CHANGE_ROLES = "canChangeRoles"
    MANAGE_ALL_ROLES = "canManageAllRoles"
    # Photos
    VIEW_ALL_PHOTOS = "canViewAllPhotos"
    UPLOAD_PHOTOS = "canUploadPhotos"
    DELETE_PHOTOS = "canDeletePhotos"
    SHARE_PHOTOS = "canSharePhotos"
    EDIT_PHOTO_METADATA = "canEditPhotoMetadata"
    # Analytics & reporting
    VIEW_ANALYTICS = "canViewAnalytics"
    EXPORT_DATA = "canExportData"
    VIEW_REPORTS = "canViewReports"
    # AI
    MANAGE_AI = "canManageAI"
    RUN_AI_ANALYSIS = "canRunAIAnalysis"
    VIEW_AI_INSIGHTS = "canViewAIInsights"
    # Tasks
    MANAGE_TASKS = "canManageTasks"
    ASSIGN_TASKS = "canAssignTasks"
    VIEW_ALL_TASKS = "canViewAllTasks"
    # Punch list
    MANAGE_PUNCH_LIST = "canManagePunchList"
    RESOLVE_PUNCH_ITEMS = "canResolvePunchItems"
    VIEW_PUNCH_LIST = "canViewPunchList"
    # Financial
    MANAGE_FINANCES = "canManageFinances"
    APPROVE_EXPENSES = "canApproveExpenses"
    VIEW_FINANCIALS = "canViewFinancials"
    # Documents
    UPLOAD_DOCUMENTS = "canUploadDocuments"
    DELETE_DOCUMENTS = "canDeleteDocuments"
    SHARE_DOCUMENTS = "canShareDocuments"
    # Settings
    MANAGE_COMPANY_SETTINGS = "canManageCompanySettings"
    MANAGE_INTEGRATIONS = "canManageIntegrations"
    # Compliance
    MANAGE_COMPLIANCE = "canManageCompliance"
    VIEW_AUDIT_LOG = "canViewAuditLog"

    @classmethod
    def parse(cls, value: "Capability | str") -> "Capability":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownCapability(f"Unknown capability: {value!r}", capability=str(value)) from None


ALL_CAPABILITIES: tuple[Capability, ...] = tuple(Capability)


class PermissionSet(Mapping[Capability, bool]):
    """
    Immutable, exhaustive mapping of every Capability to a boolean.

    Construction is strict about names: anything outside `Capability` raises
    UnknownCapability. Capabilities not mentioned default to False.
    """

    __slots__ = ("_flags",)

    def __init__(self, flags: Mapping[Capability, bool] | None = None) -> None:
        resolved = {cap: False for cap in ALL_CAPABILITIES}
        for cap, value in (flags or {}).items():
            resolved[Capability.parse(cap)] = bool(value)
        self._flags = MappingProxyType(resolved)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any] | None) -> "PermissionSet":
        if mapping is None:
            return cls.deny_all()
        if not isinstance(mapping, Mapping):
            raise ValidationError("Permissions must be an object of capability flags.")
        flags: dict[Capability, bool] = {}
        for name, value in mapping.items():
            cap = Capability.parse(name)
            if not isinstance(value, bool):
                raise ValidationError(
                    f"Capability {cap.value} must be true or false.",
                    field=f"permissions.{cap.value}",
                )
            flags[cap] = value
        return cls(flags)

    @classmethod
    def grants(cls, capabilities: Iterable[Capability | str]) -> "PermissionSet":
        return cls({Capability.parse(c): True for c in capabilities})

    @classmethod
    def deny_all(cls) -> "PermissionSet":
        return cls()

    def has(self, capability: Capability | str) -> bool:
        return self._flags.get(Capability.parse(capability), False)

    def granted(self) -> list[Capability]:
        return [cap for cap, on in self._flags.items() if on]

    def missing(self, capabilities: Iterable[Capability | str]) -> list[Capability]:
        return [cap for cap in (Capability.parse(c) for c in capabilities) if not self._flags.get(cap, False)]

    def to_dict(self) -> dict[str, bool]:
        return {cap.value: on for cap, on in self._flags.items()}

    def __getitem__(self, key: Capability | str) -> bool:
        return self._flags[Capability.parse(key)]

    def __iter__(self) -> Iterator[Capability]:
        return iter(self._flags)

    def __len__(self) -> int:
        return len(self._flags)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, PermissionSet):
            return dict(self._flags) == dict(other._flags)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(frozenset(self.granted()))

    def __repr__(self) -> str:
        return f"PermissionSet({', '.join(c.value for c in self.granted()) or '-'})"
