"""Pipeline topology: an immutable, validated DAG of sources, transforms and sinks.

The YAML layout mirrors a log agent's declarative config::

    sources:
      g_auth:
        type: file
        include: [/collection/var/log/auth*log*]
    transforms:
      remap_auth:
        inputs: [g_auth]
        parser: linux_authorization
    sinks:
      sink_auth:
        type: file
        inputs: [remap_auth]
        path: /tmp/auth.json
        encoding: {codec: json}

Validation happens once, at load time. Anything wrong is a ConfigError raised
before a single worker starts.
"""

import glob
import logging
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

import jsonschema

from lognorm.errors import ConfigError
from lognorm.models import DEFAULT_EXCLUDES, Route, SinkTarget, SourceSpec, TransformSpec
from lognorm.parsers import get_parser, validate_hint

logger = logging.getLogger(__name__)

_ID_MAP = {"type": "object", "propertyNames": {"pattern": r"^[A-Za-z0-9_\-.]+$"}}
_INPUTS = {"type": "array", "items": {"type": "string"}, "minItems": 1}

TOPOLOGY_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["sources", "sinks"],
    "properties": {
        "data_dir": {"type": "string"},
        "settings": {"type": "object"},
        "sources": {
            **_ID_MAP,
            "minProperties": 1,
            "additionalProperties": {
                "type": "object",
                "required": ["type", "include"],
                "properties": {
                    "type": {"enum": ["file"]},
                    "include": {"type": "array", "items": {"type": "string"}, "minItems": 1},
                    "exclude": {"type": "array", "items": {"type": "string"}},
                    "read_from": {"enum": ["beginning", "end"]},
                },
                "additionalProperties": False,
            },
        },
        "transforms": {
            **_ID_MAP,
            "additionalProperties": {
                "type": "object",
                "required": ["inputs", "parser"],
                "properties": {
                    "type": {"enum": ["remap", "parse"]},
                    "inputs": _INPUTS,
                    "parser": {"type": "string"},
                    "format": {"type": "string"},
                },
                "additionalProperties": False,
            },
        },
        "sinks": {
            **_ID_MAP,
            "minProperties": 1,
            "additionalProperties": {
                "type": "object",
                "required": ["inputs", "path"],
                "properties": {
                    "type": {"enum": ["file"]},
                    "inputs": _INPUTS,
                    "path": {"type": "string", "minLength": 1},
                    "encoding": {
                        "type": "object",
                        "properties": {"codec": {"enum": ["json"]}},
                    },
                },
                "additionalProperties": False,
            },
        },
    },
    "additionalProperties": False,
}

_validator = jsonschema.Draft202012Validator(TOPOLOGY_SCHEMA)


@dataclass(frozen=True)
class Topology:
    sources: Mapping[str, SourceSpec]
    transforms: Mapping[str, TransformSpec]
    sinks: Mapping[str, SinkTarget]
    routes: Mapping[str, tuple[Route, ...]] = field(default_factory=dict)

    def sinks_for(self, source_id: str) -> set[str]:
        return {sid for route in self.routes.get(source_id, ()) for sid in route.sink_ids}

    def sources_for_sink(self, sink_id: str) -> set[str]:
        return {src for src, routes in self.routes.items()
                for route in routes if sink_id in route.sink_ids}


def load_topology(data: dict, check_paths: bool = True) -> Topology:
    """Validate raw YAML data and build the immutable Topology."""
    errors = sorted(_validator.iter_errors(data), key=lambda e: list(e.absolute_path))
    if errors:
        details = "; ".join(
            f"{'/'.join(str(p) for p in e.absolute_path) or '<root>'}: {e.message}" for e in errors
        )
        raise ConfigError(f"invalid pipeline config: {details}")

    sources = {
        sid: SourceSpec(
            id=sid,
            include_patterns=tuple(spec["include"]),
            exclude_patterns=tuple(spec.get("exclude", DEFAULT_EXCLUDES)),
            read_from=spec.get("read_from"),
        )
        for sid, spec in data["sources"].items()
    }
    transforms = {
        tid: TransformSpec(
            id=tid,
            inputs=tuple(spec["inputs"]),
            parser=spec["parser"],
            hint=spec.get("format"),
        )
        for tid, spec in (data.get("transforms") or {}).items()
    }
    sinks = {
        sid: SinkTarget(
            id=sid,
            inputs=tuple(spec["inputs"]),
            destination_uri=spec["path"],
            encoding=(spec.get("encoding") or {}).get("codec", "json"),
        )
        for sid, spec in data["sinks"].items()
    }

    _check_unique_ids(sources, transforms, sinks)
    _check_references(sources, transforms, sinks)
    _check_acyclic(transforms)
    for t in transforms.values():
        validate_hint(get_parser(t.parser), t.hint)
    if check_paths:
        for source in sources.values():
            _check_glob_roots(source)

    routes = _resolve_routes(sources, transforms, sinks)
    for sid in sources:
        if not routes.get(sid):
            logger.warning("Source %s does not feed any sink; its lines will be discarded", sid)

    return Topology(
        sources=MappingProxyType(sources),
        transforms=MappingProxyType(transforms),
        sinks=MappingProxyType(sinks),
        routes=MappingProxyType(routes),
    )


def _check_unique_ids(sources, transforms, sinks):
    seen: dict[str, str] = {}
    for kind, ids in (("source", sources), ("transform", transforms), ("sink", sinks)):
        for node_id in ids:
            if node_id in seen:
                raise ConfigError(f"duplicate id {node_id!r} (used by a {seen[node_id]} and a {kind})")
            seen[node_id] = kind


def _check_references(sources, transforms, sinks):
    for kind, nodes in (("transform", transforms), ("sink", sinks)):
        for node in nodes.values():
            for ref in node.inputs:
                if ref in sinks:
                    raise ConfigError(f"{kind} {node.id!r} takes sink {ref!r} as input")
                if ref not in sources and ref not in transforms:
                    raise ConfigError(f"{kind} {node.id!r} references unknown input {ref!r}")


def _check_acyclic(transforms):
    # only transforms can form cycles: sources have no inputs, sinks have no consumers
    state: dict[str, int] = {}   # 1 = on stack, 2 = done

    def visit(tid: str, path: list[str]):
        state[tid] = 1
        for ref in transforms[tid].inputs:
            if ref not in transforms:
                continue
            if state.get(ref) == 1:
                cycle = path[path.index(ref):] + [ref] if ref in path else [tid, ref]
                raise ConfigError(f"cycle in pipeline graph: {' -> '.join(cycle)}")
            if ref not in state:
                visit(ref, path + [ref])
        state[tid] = 2

    for tid in transforms:
        if tid not in state:
            visit(tid, [tid])


def _glob_root(pattern: str) -> str:
    """The longest leading directory of ``pattern`` that contains no glob magic."""
    parts = pattern.split(os.sep)
    root: list[str] = []
    for part in parts[:-1]:
        if glob.has_magic(part):
            break
        root.append(part)
    return os.sep.join(root) or (os.sep if pattern.startswith(os.sep) else ".")


def _check_glob_roots(source: SourceSpec):
    for pattern in source.include_patterns:
        root = _glob_root(pattern)
        if not os.path.exists(root):
            logger.warning("Source %s: include root %s does not exist yet (pattern %s)",
                           source.id, root, pattern)
            continue
        if not os.access(root, os.R_OK | os.X_OK):
            raise ConfigError(f"source {source.id!r}: include root {root!r} is not readable")


def _resolve_routes(sources, transforms, sinks) -> dict[str, tuple[Route, ...]]:
    """Walk every path source -> transform* -> sink and group sinks by transform chain."""
    consumers: dict[str, list[str]] = {}
    for node in list(transforms.values()) + list(sinks.values()):
        for ref in node.inputs:
            consumers.setdefault(ref, []).append(node.id)

    routes: dict[str, tuple[Route, ...]] = {}
    for source_id in sources:
        by_chain: dict[tuple[str, ...], list[str]] = {}

        def walk(node_id: str, chain: tuple[str, ...]):
            for consumer in consumers.get(node_id, []):
                if consumer in sinks:
                    sink_ids = by_chain.setdefault(chain, [])
                    if consumer not in sink_ids:
                        sink_ids.append(consumer)
                else:
                    walk(consumer, chain + (consumer,))

        walk(source_id, ())
        routes[source_id] = tuple(
            Route(chain=tuple(transforms[t] for t in chain), sink_ids=tuple(sink_ids))
            for chain, sink_ids in by_chain.items()
        )
    return routes
