"""In-memory cache of the tools, resources and prompts a server advertises."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mcp_debug.client.notifications import Notification, NotificationKind

logger = logging.getLogger(__name__)


class ToolDescriptor(BaseModel):
    """Tool as advertised by ``tools/list``."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    name: str
    title: Optional[str] = None
    description: Optional[str] = None
    input_schema: dict[str, Any] = Field(default_factory=dict, alias="inputSchema")


class ResourceDescriptor(BaseModel):
    """Resource as advertised by ``resources/list``."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    uri: str
    name: Optional[str] = None
    description: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class PromptArgument(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    name: str
    description: Optional[str] = None
    required: Optional[bool] = None


class PromptDescriptor(BaseModel):
    """Prompt as advertised by ``prompts/list``."""

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    name: str
    description: Optional[str] = None
    arguments: Optional[tuple[PromptArgument, ...]] = None

    @property
    def required_arguments(self) -> list[str]:
        return [arg.name for arg in self.arguments or () if arg.required]


class CapabilityKind(str, Enum):
    TOOLS = "tools"
    RESOURCES = "resources"
    PROMPTS = "prompts"

    @property
    def list_method(self) -> str:
        return f"{self.value}/list"

    @property
    def key_field(self) -> str:
        return "uri" if self is CapabilityKind.RESOURCES else "name"

    @property
    def descriptor(self) -> Type[BaseModel]:
        return _DESCRIPTORS[self]

    @property
    def label(self) -> str:
        """Singular, capitalized name for log lines (``Tool``, ``Resource``...)."""
        return self.value[:-1].capitalize()


_DESCRIPTORS: dict[CapabilityKind, Type[BaseModel]] = {
    CapabilityKind.TOOLS: ToolDescriptor,
    CapabilityKind.RESOURCES: ResourceDescriptor,
    CapabilityKind.PROMPTS: PromptDescriptor,
}

_KIND_BY_NOTIFICATION = {
    NotificationKind.TOOLS_CHANGED: CapabilityKind.TOOLS,
    NotificationKind.RESOURCES_CHANGED: CapabilityKind.RESOURCES,
    NotificationKind.PROMPTS_CHANGED: CapabilityKind.PROMPTS,
}

_EMPTY: Mapping[str, Any] = MappingProxyType({})


@dataclass(frozen=True)
class CapabilitySet:
    """Immutable view of everything the server advertises."""

    tools: Mapping[str, ToolDescriptor] = field(default_factory=lambda: _EMPTY)
    resources: Mapping[str, ResourceDescriptor] = field(default_factory=lambda: _EMPTY)
    prompts: Mapping[str, PromptDescriptor] = field(default_factory=lambda: _EMPTY)

    def get(self, kind: CapabilityKind) -> Mapping[str, BaseModel]:
        return getattr(self, kind.value)

    def to_json(self) -> str:
        """Canonical rendering: equal sets always produce identical strings."""
        data = {
            kind.value: {
                key: descriptor.model_dump(mode="json", by_alias=True, exclude_none=True)
                for key, descriptor in self.get(kind).items()
            }
            for kind in CapabilityKind
        }
        return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True)
class CapabilityDiff:
    """Keys added, removed and kept by one refresh of one kind."""

    kind: CapabilityKind
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    unchanged: tuple[str, ...] = ()
    skipped: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)

    @classmethod
    def between(
        cls,
        kind: CapabilityKind,
        old: Mapping[str, Any],
        new: Mapping[str, Any]
    ) -> "CapabilityDiff":
        return cls(
            kind=kind,
            added=tuple(sorted(new.keys() - old.keys())),
            removed=tuple(sorted(old.keys() - new.keys())),
            unchanged=tuple(sorted(old.keys() & new.keys())),
        )


class CapabilityCache:
    """
    Per-kind capability mappings, replaced wholesale on every refresh.

    Readers never observe a partially refreshed kind: the new mapping is built
    completely and then swapped in as a single reference.
    """

    def __init__(
        self,
        fetch: Callable[[str], Awaitable[dict[str, Any]]],
        supports: Callable[[CapabilityKind], bool]
    ):
        """
        Args:
            fetch: Issues one (paginated) list request, e.g. ``fetch("tools/list")``
            supports: Whether the server advertises a capability kind
        """
        self._fetch = fetch
        self._supports = supports
        self._items: dict[CapabilityKind, Mapping[str, Any]] = {kind: _EMPTY for kind in CapabilityKind}
        self._locks = {kind: asyncio.Lock() for kind in CapabilityKind}

    async def refresh(self, kind: CapabilityKind) -> CapabilityDiff:
        """
        Re-list one kind and replace its mapping.

        Returns:
            What changed compared to the previous mapping; ``skipped`` is set
            when the server does not advertise the kind
        """
        if not self._supports(kind):
            return CapabilityDiff(kind=kind, skipped=True)

        async with self._locks[kind]:
            result = await self._fetch(kind.list_method)
            fresh: dict[str, Any] = {}
            for entry in result.get(kind.value) or []:
                try:
                    descriptor = kind.descriptor.model_validate(entry)
                except ValidationError as e:
                    logger.warning("Ignoring malformed %s entry: %s", kind.value, e)
                    continue
                fresh[getattr(descriptor, kind.key_field)] = descriptor

            mapping = MappingProxyType(fresh)
            diff = CapabilityDiff.between(kind, self._items[kind], mapping)
            self._items[kind] = mapping
            return diff

    async def refresh_all(self) -> list[CapabilityDiff]:
        return [await self.refresh(kind) for kind in CapabilityKind]

    async def apply(self, notification: Notification) -> Optional[CapabilityDiff]:
        """Refresh the kind a ``list_changed`` notification names; ignore anything else."""
        kind = _KIND_BY_NOTIFICATION.get(notification.kind)
        if kind is None:
            return None
        return await self.refresh(kind)

    def snapshot(self) -> CapabilitySet:
        return CapabilitySet(
            tools=self._items[CapabilityKind.TOOLS],
            resources=self._items[CapabilityKind.RESOURCES],
            prompts=self._items[CapabilityKind.PROMPTS],
        )
