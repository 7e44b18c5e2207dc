"""
A small record pipeline: match, lookup, unwind, project, sort, then reduce.

Records are plain dicts. Stages never talk to a store directly; `lookup`
receives a loader callable that fetches foreign records for a batch of keys,
so the same pipeline runs over MongoDB, SQL or in-memory fixtures.
"""
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

Record = Dict[str, Any]
Loader = Callable[[List[Any]], Iterable[Record]]

_MISSING = object()


def get_path(record: Any, path: str, default: Any = None) -> Any:
    """Resolve a dotted path. Lists along the way are mapped over and flattened."""
    value = _resolve(record, path.split("."))
    return default if value is _MISSING else value


def _resolve(value: Any, parts: List[str]) -> Any:
    if not parts:
        return value
    if isinstance(value, list):
        found = []
        for item in value:
            sub = _resolve(item, parts)
            if sub is _MISSING:
                continue
            if isinstance(sub, list):
                found.extend(sub)
            else:
                found.append(sub)
        return found
    if isinstance(value, dict) and parts[0] in value:
        return _resolve(value[parts[0]], parts[1:])
    return _MISSING


def _as_key(value: Any) -> Any:
    # ObjectIds and their hex strings must meet on the same key
    return value if isinstance(value, (int, float)) else str(value)


class Pipeline:
    def __init__(self, source: Iterable[Record]):
        self._source = source
        self._stages: List[Callable[[List[Record]], List[Record]]] = []

    def match(self, condition: Union[Callable[[Record], bool], Dict[str, Any]]) -> "Pipeline":
        if callable(condition):
            predicate = condition
        else:
            expected = dict(condition)

            def predicate(record: Record) -> bool:
                return all(
                    _as_key(get_path(record, path)) == _as_key(value)
                    for path, value in expected.items()
                )

        self._stages.append(lambda records: [r for r in records if predicate(r)])
        return self

    def lookup(self, loader: Loader, local_field: str, as_field: str, foreign_field: str = "_id") -> "Pipeline":
        def stage(records: List[Record]) -> List[Record]:
            keys = []
            seen = set()
            for record in records:
                value = get_path(record, local_field)
                for key in value if isinstance(value, list) else [value]:
                    if key is None or _as_key(key) in seen:
                        continue
                    seen.add(_as_key(key))
                    keys.append(key)
            index: Dict[Any, List[Record]] = {}
            if keys:
                for foreign in loader(keys):
                    index.setdefault(_as_key(get_path(foreign, foreign_field)), []).append(foreign)
            joined = []
            for record in records:
                value = get_path(record, local_field)
                matches = []
                for key in value if isinstance(value, list) else [value]:
                    if key is not None:
                        matches.extend(index.get(_as_key(key), []))
                joined.append({**record, as_field: matches})
            return joined

        self._stages.append(stage)
        return self

    def unwind(self, field: str) -> "Pipeline":
        def stage(records: List[Record]) -> List[Record]:
            out = []
            for record in records:
                for item in record.get(field) or []:
                    out.append({**record, field: item})
            return out

        self._stages.append(stage)
        return self

    def project(self, mapping: Dict[str, Union[str, Callable[[Record], Any]]]) -> "Pipeline":
        def build(record: Record) -> Record:
            return {
                name: spec(record) if callable(spec) else get_path(record, spec)
                for name, spec in mapping.items()
            }

        self._stages.append(lambda records: [build(r) for r in records])
        return self

    def sort(self, key: str, descending: bool = False) -> "Pipeline":
        def stage(records: List[Record]) -> List[Record]:
            present = [r for r in records if get_path(r, key) is not None]
            absent = [r for r in records if get_path(r, key) is None]
            present.sort(key=lambda r: get_path(r, key), reverse=descending)
            return present + absent

        self._stages.append(stage)
        return self

    def run(self) -> List[Record]:
        records = list(self._source)
        for stage in self._stages:
            records = stage(records)
        return records

    def reduce(self, fn: Callable[[Any, Record], Any], initial: Any, records: Optional[List[Record]] = None) -> Any:
        acc = initial
        for record in self.run() if records is None else records:
            acc = fn(acc, record)
        return acc
