"""Component discovery for the audit pipeline.

This module contains the ComponentInventory class, which walks each root once,
classifies files into typed components through the configured layout, and
computes a content hash per component for change detection.
"""

import json
import os
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from agentaudit.errors import DiscoveryError
from agentaudit.utils.helpers import compute_bytes_hash
from agentaudit.utils.logging import logger

MCP_PATH_SEPARATOR = "#"
SKILL_ENTRY_FILE = "SKILL.md"

_FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*(?:\n|$)", re.DOTALL)


class ComponentKind(Enum):
    """Kinds of discoverable configuration units."""

    COMMAND = "command"
    AGENT = "agent"
    SKILL = "skill"
    HOOK = "hook"
    MCP = "mcp"

    @classmethod
    def parse(cls, value: "str | ComponentKind") -> "ComponentKind":
        """Accept enum members, values ("agent") or plurals ("agents")."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for member in cls:
            if text in (member.value, member.value + "s", member.name.lower()):
                return member
        if text in ("mcpserver", "mcp_server", "mcp-server", "mcpservers"):
            return cls.MCP
        raise ValueError(f"Unknown component kind: {value!r}")


@dataclass(frozen=True)
class Component:
    """One discoverable unit. Immutable for the duration of a run."""

    id: str
    kind: ComponentKind
    name: str
    path: str
    content_hash: str
    last_modified: float
    member_paths: tuple[str, ...] = ()
    inline_content: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_virtual(self) -> bool:
        """True for generated entries such as MCP servers inside a manifest."""
        return self.inline_content is not None

    def read_content(self) -> str:
        """Read the text used for edge extraction and analysis.

        Skills concatenate their member files in path order.

        Raises:
            OSError: the file vanished or became unreadable after discovery.
        """
        if self.inline_content is not None:
            return self.inline_content
        if self.member_paths:
            parts = []
            for member in self.member_paths:
                parts.append(Path(member).read_text(encoding="utf-8", errors="replace"))
            return "\n".join(parts)
        return Path(self.path).read_text(encoding="utf-8", errors="replace")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "path": self.path,
            "content_hash": self.content_hash,
            "last_modified": self.last_modified,
            "member_paths": list(self.member_paths),
            "inline_content": self.inline_content,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Component":
        return cls(
            id=data["id"],
            kind=ComponentKind(data["kind"]),
            name=data["name"],
            path=data["path"],
            content_hash=data["content_hash"],
            last_modified=float(data.get("last_modified", 0.0)),
            member_paths=tuple(data.get("member_paths") or ()),
            inline_content=data.get("inline_content"),
            metadata=dict(data.get("metadata") or {}),
        )


def component_id(kind: ComponentKind, name: str) -> str:
    """Type-qualified, stable component id."""
    return f"{kind.value}:{name}"


def parse_frontmatter(text: str) -> dict[str, Any]:
    """Extract YAML frontmatter from markdown; malformed or absent yields {}."""
    match = _FRONTMATTER_RE.match(text)
    if not match:
        return {}
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        logger.debug(f"Invalid YAML frontmatter ignored: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def make_exclude_predicate(exclude_dirs: Iterable[str]) -> Callable[[Path], bool]:
    """Build the default exclusion predicate: True means skip this directory."""
    names = frozenset(exclude_dirs)

    def _exclude(path: Path) -> bool:
        return path.name in names

    return _exclude


def _json_default(value: Any) -> str:
    return str(value)


class ComponentInventory:
    """Scans component trees into typed, hashed Component records.

    The layout maps each kind to a path relative to a root: a directory for
    commands, agents, skills and hooks, and a JSON manifest file for MCP
    servers. The layout is configuration, never a hardcoded constant.
    """

    def __init__(
        self,
        layout: dict[str, Any],
        exclude: Callable[[Path], bool] | None = None,
    ):
        self.kind_paths: dict[ComponentKind, str] = {}
        for key, value in layout.items():
            if key == "exclude_dirs":
                continue
            try:
                kind = ComponentKind.parse(key)
            except ValueError:
                logger.warning(f"Ignoring unknown layout entry {key!r}")
                continue
            self.kind_paths[kind] = str(value).strip("/").replace("\\", "/")

        self.exclude = exclude or make_exclude_predicate(layout.get("exclude_dirs", []))

        self.stats = {
            "roots": 0,
            "files_seen": 0,
            "skipped_dirs": 0,
            "components": 0,
            "duplicates": 0,
        }

    def scan(
        self,
        root_paths: Iterable[Path | str],
        kind_filters: Iterable[ComponentKind | str] | None = None,
    ) -> list[Component]:
        """Discover components under each root.

        Args:
            root_paths: One or more root directories
            kind_filters: Optional kinds to keep; None or empty keeps all

        Returns:
            Components sorted by id. Zero matches is an empty list, not an error.

        Raises:
            DiscoveryError: a root does not exist or is not a directory
        """
        kinds = {ComponentKind.parse(k) for k in kind_filters} if kind_filters else set(ComponentKind)

        roots = [Path(p) for p in root_paths]
        for root in roots:
            if not root.exists():
                raise DiscoveryError(root)
            if not root.is_dir():
                raise DiscoveryError(root, "root path is not a directory")

        found: dict[str, Component] = {}
        for root in roots:
            self.stats["roots"] += 1
            for component in self._scan_root(root, kinds):
                if component.id in found:
                    self.stats["duplicates"] += 1
                    logger.warning(
                        f"Duplicate component {component.id} at {component.path} "
                        f"(keeping {found[component.id].path})"
                    )
                    continue
                found[component.id] = component

        self.stats["components"] = len(found)
        return [found[key] for key in sorted(found)]

    def _classify(self, rel_path: str) -> tuple[ComponentKind, str] | None:
        """Return (kind, path relative to the kind directory) for a file."""
        for kind, kind_path in self.kind_paths.items():
            if kind is ComponentKind.MCP:
                if rel_path == kind_path:
                    return kind, ""
                continue
            prefix = kind_path + "/"
            if rel_path.startswith(prefix):
                return kind, rel_path[len(prefix):]
        return None

    def _scan_root(self, root: Path, kinds: set[ComponentKind]) -> list[Component]:
        singles: list[tuple[ComponentKind, str, Path]] = []
        skill_files: dict[str, list[tuple[str, Path]]] = {}
        manifests: list[Path] = []

        try:
            walker = os.walk(root, topdown=True, onerror=self._on_walk_error)
            for dirpath, dirnames, filenames in walker:
                current = Path(dirpath)
                kept = []
                for dirname in sorted(dirnames):
                    if self.exclude(current / dirname):
                        self.stats["skipped_dirs"] += 1
                    else:
                        kept.append(dirname)
                dirnames[:] = kept

                for filename in sorted(filenames):
                    file_path = current / filename
                    rel = file_path.relative_to(root).as_posix()
                    self.stats["files_seen"] += 1
                    classified = self._classify(rel)
                    if classified is None:
                        continue
                    kind, inner = classified
                    if kind not in kinds:
                        continue
                    if kind is ComponentKind.MCP:
                        manifests.append(file_path)
                    elif kind is ComponentKind.SKILL:
                        if "/" not in inner:
                            # Loose files directly under skills/ are not skills
                            continue
                        skill_name, member = inner.split("/", 1)
                        skill_files.setdefault(skill_name, []).append((member, file_path))
                    elif kind in (ComponentKind.COMMAND, ComponentKind.AGENT):
                        if file_path.suffix.lower() == ".md":
                            singles.append((kind, inner, file_path))
                    else:
                        singles.append((kind, inner, file_path))
        except OSError as e:
            raise DiscoveryError(root, f"root path unreadable ({e})") from e

        components: list[Component] = []
        for kind, inner, file_path in singles:
            component = self._single_file_component(kind, inner, file_path)
            if component is not None:
                components.append(component)
        for skill_name, members in skill_files.items():
            component = self._skill_component(skill_name, members)
            if component is not None:
                components.append(component)
        for manifest in manifests:
            components.extend(self._mcp_components(manifest))
        return components

    @staticmethod
    def _on_walk_error(error: OSError) -> None:
        logger.warning(f"Skipping unreadable directory {error.filename}: {error.strerror}")

    @staticmethod
    def _component_name(kind: ComponentKind, inner: str) -> str:
        stem = inner.rsplit(".", 1)[0] if "." in inner.rsplit("/", 1)[-1] else inner
        if kind is ComponentKind.COMMAND:
            # Nested commands are namespaced the way they are invoked: /dir:name
            return stem.replace("/", ":")
        if kind is ComponentKind.AGENT:
            return stem.rsplit("/", 1)[-1]
        return stem

    def _single_file_component(self, kind: ComponentKind, inner: str, file_path: Path) -> Component | None:
        try:
            data = file_path.read_bytes()
            mtime = file_path.stat().st_mtime
        except OSError as e:
            logger.warning(f"Skipping unreadable {kind.value} file {file_path}: {e}")
            return None

        name = self._component_name(kind, inner)
        metadata = {}
        if file_path.suffix.lower() == ".md":
            metadata = parse_frontmatter(data.decode("utf-8", errors="replace"))

        return Component(
            id=component_id(kind, name),
            kind=kind,
            name=name,
            path=file_path.as_posix(),
            content_hash=compute_bytes_hash(data),
            last_modified=mtime,
            metadata=metadata,
        )

    def _skill_component(self, skill_name: str, members: list[tuple[str, Path]]) -> Component | None:
        members = sorted(members, key=lambda m: m[0])
        buffer = bytearray()
        last_modified = 0.0
        metadata: dict[str, Any] = {}
        try:
            for member, file_path in members:
                data = file_path.read_bytes()
                last_modified = max(last_modified, file_path.stat().st_mtime)
                buffer += member.encode("utf-8") + b"\0" + data + b"\0"
                if member == SKILL_ENTRY_FILE:
                    metadata = parse_frontmatter(data.decode("utf-8", errors="replace"))
        except OSError as e:
            logger.warning(f"Skipping unreadable skill {skill_name}: {e}")
            return None

        entry = [p for m, p in members if m == SKILL_ENTRY_FILE]
        base_path = entry[0].parent if entry else members[0][1].parent

        return Component(
            id=component_id(ComponentKind.SKILL, skill_name),
            kind=ComponentKind.SKILL,
            name=skill_name,
            path=base_path.as_posix(),
            content_hash=compute_bytes_hash(bytes(buffer)),
            last_modified=last_modified,
            member_paths=tuple(p.as_posix() for _, p in members),
            metadata=metadata,
        )

    def _mcp_components(self, manifest: Path) -> list[Component]:
        try:
            data = json.loads(manifest.read_text(encoding="utf-8"))
            mtime = manifest.stat().st_mtime
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Skipping unreadable MCP manifest {manifest}: {e}")
            return []

        servers = data.get("mcpServers", {}) if isinstance(data, dict) else {}
        if not isinstance(servers, dict):
            logger.warning(f"MCP manifest {manifest} has no mcpServers mapping")
            return []

        components = []
        for name in sorted(servers):
            canonical = json.dumps(servers[name], sort_keys=True, default=_json_default)
            entry = servers[name] if isinstance(servers[name], dict) else {}
            components.append(
                Component(
                    id=component_id(ComponentKind.MCP, name),
                    kind=ComponentKind.MCP,
                    name=name,
                    path=f"{manifest.as_posix()}{MCP_PATH_SEPARATOR}{name}",
                    content_hash=compute_bytes_hash(canonical.encode("utf-8")),
                    last_modified=mtime,
                    inline_content=canonical,
                    metadata={k: v for k, v in entry.items() if k in ("command", "type", "url")},
                )
            )
        return components
