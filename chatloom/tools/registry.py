from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Iterator

import yaml

from chatloom.tools.base import HttpMethod, NativeRoutine, ToolDeclaration
from chatloom.tools.validation import SchemaValidator

logger = logging.getLogger(__name__)


class ToolSet:
    """The declarations active for one turn.  Immutable once built."""

    def __init__(self, declarations: Iterable[ToolDeclaration]) -> None:
        self._by_name = {d.name: d for d in declarations}

    def get(self, name: str) -> ToolDeclaration | None:
        return self._by_name.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[ToolDeclaration]:
        return iter(sorted(self._by_name.values(), key=lambda d: d.name))

    def __len__(self) -> int:
        return len(self._by_name)

    def to_function_declarations(self) -> list[dict]:
        return [d.to_function_declaration() for d in self]


class ToolRegistry:
    def __init__(self):
        self._platform: dict[str, ToolDeclaration] = {}
        self._user: dict[str, ToolDeclaration] = {}
        self._natives: dict[str, NativeRoutine] = {}

    def register(self, declaration: ToolDeclaration, *, overwrite: bool = False) -> None:
        bucket = self._platform if declaration.platform_provided else self._user
        if declaration.name in bucket and not overwrite:
            raise ValueError(f"Tool already registered: {declaration.name}")
        if declaration.name in self._platform and not declaration.platform_provided:
            logger.warning(
                "User tool %s is shadowed by a platform tool of the same name",
                declaration.name,
            )
        bucket[declaration.name] = declaration

    def register_native(self, routine: NativeRoutine, *, overwrite: bool = False) -> None:
        if routine.identifier in self._natives and not overwrite:
            raise ValueError(f"Native routine already registered: {routine.identifier}")
        self._natives[routine.identifier] = routine

    def get(self, name: str) -> ToolDeclaration | None:
        # Platform-provided declarations win on name collision.
        return self._platform.get(name) or self._user.get(name)

    def require(self, name: str) -> ToolDeclaration:
        d = self.get(name)
        if not d:
            raise KeyError(name)
        return d

    def native(self, identifier: str) -> NativeRoutine | None:
        return self._natives.get(identifier)

    def list(self) -> list[ToolDeclaration]:
        merged = dict(self._user)
        merged.update(self._platform)
        return sorted(merged.values(), key=lambda d: d.name)

    def active(
        self,
        *,
        incognito: bool = False,
        disabled: Iterable[str] = (),
    ) -> ToolSet:
        """
        Build the tool set for one turn.

        Memory-mutating tools are withheld in incognito conversations.
        """
        skip = set(disabled)
        selected = [
            d
            for d in self.list()
            if d.name not in skip and not (incognito and d.mutates_memory)
        ]
        return ToolSet(selected)

    def load_declarations(self, path: str | Path) -> int:
        """
        Register user-declared HTTP tools from a YAML file.

        The file holds a list of mappings with ``name``, ``description``,
        ``parameters`` (mapping or JSON string), ``endpoint_url`` and
        ``http_method``.  Malformed entries are skipped with a warning.
        """
        p = Path(path).expanduser()
        if not p.is_file():
            logger.warning("Tool declarations file not found: %s", p)
            return 0
        with p.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or []
        if isinstance(raw, dict):
            raw = raw.get("tools", [])

        loaded = 0
        for entry in raw:
            try:
                declaration = declaration_from_dict(entry)
                self.register(declaration, overwrite=True)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning("Skipping tool declaration %r: %s", entry, e)
                continue
            loaded += 1
        return loaded


def declaration_from_dict(entry: dict) -> ToolDeclaration:
    name = entry["name"]
    return ToolDeclaration(
        name=name,
        description=entry.get("description", ""),
        parameters=SchemaValidator.parse(entry.get("parameters"), name),
        endpoint_url=entry["endpoint_url"],
        http_method=HttpMethod(str(entry.get("http_method", "GET")).upper()),
        memory_mutating=bool(entry.get("memory_mutating", False)),
    )
