"""
SummaryV1: the structured snapshot that replaces compacted history.

Parsing is strict. Unknown keys, wrong types or a missing task are schema
errors; list fields that are absent default to empty.
"""

import json
from dataclasses import asdict, dataclass, field

from .errors import SynthesisSchemaError
from .messages import SNAPSHOT_ID_PREFIX, Message, Role

SNAPSHOT_HEADER = "[Context Snapshot]"

# Shown to the model verbatim; keep in sync with SummaryV1.
JSON_SCHEMA = {
    "task": "string, one sentence describing the current task",
    "decisions": ["string"],
    "constraints": ["string"],
    "open_questions": ["string"],
    "todo": ["string"],
    "files_in_scope": [{"path": "string", "why": "string"}],
    "symbols": [{"name": "string", "file": "string", "role": "string"}],
    "env": {"KEY": "string value"},
    "assumptions": ["string"],
    "known_failures": ["string"],
}

_LIST_FIELDS = (
    "decisions",
    "constraints",
    "open_questions",
    "todo",
    "assumptions",
    "known_failures",
)


@dataclass(frozen=True)
class FileInScope:
    path: str
    why: str = ""


@dataclass(frozen=True)
class Symbol:
    name: str
    file: str = ""
    role: str = ""


@dataclass
class SummaryV1:
    task: str
    decisions: list[str] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)
    open_questions: list[str] = field(default_factory=list)
    todo: list[str] = field(default_factory=list)
    files_in_scope: list[FileInScope] = field(default_factory=list)
    symbols: list[Symbol] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    assumptions: list[str] = field(default_factory=list)
    known_failures: list[str] = field(default_factory=list)
    last_compact_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> str:
        """Deterministic serialization (sorted keys, stable indentation)."""
        return json.dumps(self.to_dict(), indent=2, sort_keys=True, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data) -> "SummaryV1":
        if not isinstance(data, dict):
            raise SynthesisSchemaError("snapshot must be a JSON object")

        allowed = set(JSON_SCHEMA) | {"last_compact_at"}
        unknown = sorted(set(data) - allowed)
        if unknown:
            raise SynthesisSchemaError(f"unknown snapshot fields: {', '.join(unknown)}")

        task = data.get("task")
        if not isinstance(task, str) or not task.strip():
            raise SynthesisSchemaError("'task' must be a non-empty string")

        kwargs = {"task": task}
        for name in _LIST_FIELDS:
            kwargs[name] = _string_list(data.get(name, []), name)

        kwargs["files_in_scope"] = [
            FileInScope(**_record(item, "files_in_scope", ("path", "why"), "path"))
            for item in _list(data.get("files_in_scope", []), "files_in_scope")
        ]
        kwargs["symbols"] = [
            Symbol(**_record(item, "symbols", ("name", "file", "role"), "name"))
            for item in _list(data.get("symbols", []), "symbols")
        ]

        env = data.get("env", {})
        if env is None:
            env = {}
        if not isinstance(env, dict):
            raise SynthesisSchemaError("'env' must be an object")
        clean_env = {}
        for key, value in env.items():
            if isinstance(value, (dict, list)) or value is None:
                raise SynthesisSchemaError(f"'env.{key}' must be a scalar value")
            clean_env[str(key)] = value if isinstance(value, str) else json.dumps(value)
        kwargs["env"] = clean_env

        last = data.get("last_compact_at", "")
        if not isinstance(last, str):
            raise SynthesisSchemaError("'last_compact_at' must be a string")
        kwargs["last_compact_at"] = last
        return cls(**kwargs)

    @classmethod
    def from_json(cls, text: str) -> "SummaryV1":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise SynthesisSchemaError(f"snapshot is not valid JSON: {e}") from e
        return cls.from_dict(data)


def _list(value, name: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise SynthesisSchemaError(f"'{name}' must be a list")
    return value


def _string_list(value, name: str) -> list[str]:
    items = _list(value, name)
    for item in items:
        if not isinstance(item, str):
            raise SynthesisSchemaError(f"'{name}' must contain only strings")
    return list(items)


def _record(item, name: str, keys: tuple, required: str) -> dict:
    if not isinstance(item, dict):
        raise SynthesisSchemaError(f"'{name}' entries must be objects")
    extra = sorted(set(item) - set(keys))
    if extra:
        raise SynthesisSchemaError(f"'{name}' entries have unknown keys: {', '.join(extra)}")
    record = {}
    for key in keys:
        value = item.get(key, "")
        if not isinstance(value, str):
            raise SynthesisSchemaError(f"'{name}.{key}' must be a string")
        record[key] = value
    if not record[required].strip():
        raise SynthesisSchemaError(f"'{name}.{required}' must not be empty")
    return record


def snapshot_message(snapshot: SummaryV1) -> Message:
    """Materialize a snapshot as the single system message that leads history."""
    stamp = snapshot.last_compact_at or "initial"
    return Message(
        id=f"{SNAPSHOT_ID_PREFIX}{stamp}",
        role=Role.SYSTEM,
        content=f"{SNAPSHOT_HEADER}\n{snapshot.to_json()}",
    )


def parse_snapshot_message(msg: Message):
    """Inverse of snapshot_message(); None if msg is not a snapshot message."""
    if not msg.is_snapshot:
        return None
    _, _, body = msg.content.partition("\n")
    return SummaryV1.from_json(body)
