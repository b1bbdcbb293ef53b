from __future__ import annotations
import re
import logging
import datetime
import dill
import os
import time
import json
import jsonschema
import threading
from abc import abstractmethod
from collections.abc import Callable
from typing import Any, Iterable, Literal, TypeAlias
from copy import deepcopy
from hashlib import sha1

import semver
from prometheus_client import Histogram

from .events import (
    CustomEvent,
    Event,
    EventProcessor,
    EventQueue,
    FeatureEvent,
    IdentifyEvent,
    PipelineState,
)


logger = logging.getLogger(__name__)

Value: TypeAlias = Any
AttributeScalar: TypeAlias = None | str | bool | int | float
AttributeValue: TypeAlias = AttributeScalar | list[AttributeScalar] | tuple[AttributeScalar, ...] | set[AttributeScalar]
Attributes: TypeAlias = dict[str, AttributeValue]
DictFlag: TypeAlias = dict[str, Any]
Reason: TypeAlias = Literal[
    "off",
    "target_match",
    "rule_match",
    "fallthrough",
    "prerequisite_failed",
    "no_match",
    "user_not_specified",
    "flag_not_found",
    "error",
]

# Rollout weights are expressed in thousandths of a percent.
_WEIGHT_SCALE = 100_000.0

# Largest value of the 15 hex character digest prefix used for bucketing.
_BUCKET_SCALE = float(0xFFFFFFFFFFFFFFF)


class EvaluationError(Exception):
    """
    Raised when a flag definition references a variation that does not exist.
    This signals corrupt flag data and is distinct from a flag legitimately
    producing no value.
    """


def _bucketable_value(v: AttributeValue) -> str | None:
    if isinstance(v, bool):
        return None
    if isinstance(v, str):
        return v
    if isinstance(v, int):
        return str(v)
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    return None


def bucket(
    key: str,
    flag_key: str,
    salt: str,
    bucket_by: str | None = None,
    attributes: Attributes | None = None,
) -> float:
    """
    Hashes the context into a float in the range [0, 1) for the given flag.

    Stability of this function is crucial. Percentage rollouts depend on it
    assigning the same context to the same bucket across processes, python
    versions and edits to the flag's targeting. Only changing the flag's salt
    is allowed to reshuffle contexts.

    The value hashed is the bucket_by attribute when it is present and is a
    string or integer, otherwise the context key.
    """
    value = None
    if bucket_by is not None and bucket_by != "key" and attributes:
        value = _bucketable_value(attributes.get(bucket_by))
    if value is None:
        value = key
    digest = sha1(f"{flag_key}.{salt}.{value}".encode("utf-8")).hexdigest()
    return int(digest[:15], 16) / _BUCKET_SCALE


class Context:
    """
    The entity a flag is evaluated for. A context is identified by its key and
    carries a flat mapping of named attributes.
    """

    __slots__ = ("key", "attributes")
    key: str | None
    attributes: Attributes

    def __init__(self, key: str | None, attributes: Attributes | None = None):
        if key is not None and not isinstance(key, str):
            raise TypeError(f"key must be a string, not {type(key).__name__}")
        attributes = {} if attributes is None else attributes
        self._validate_attributes_type(attributes)
        self.key = key
        self.attributes = deepcopy(attributes)

    @staticmethod
    def _validate_attributes_type(attributes: Attributes):
        if not isinstance(attributes, dict):
            raise TypeError(f"attributes must be a dict, not {type(attributes).__name__}")
        for k, v in attributes.items():
            if not isinstance(k, str):
                raise TypeError(f"attribute key must be a string, not {type(k).__name__}")
            if isinstance(v, (list, tuple, set)):
                for e in v:
                    if not isinstance(e, (str, int, float, bool, type(None))):
                        raise TypeError(f"attribute list values must be strings, numbers, bools or None, not {type(e).__name__}")
            elif not isinstance(v, (str, int, float, bool, type(None))):
                raise TypeError(f"attribute value must be a string, int, float, bool, None, list, tuple or set, not {type(v).__name__}")

    def get(self, attribute: str) -> AttributeValue:
        if attribute == "key":
            return self.key
        return self.attributes.get(attribute)

    def to_dict(self) -> dict[str, Any]:
        custom = {k: list(v) if isinstance(v, (tuple, set)) else v for k, v in self.attributes.items()}
        d: dict[str, Any] = {"key": self.key}
        if custom:
            d["custom"] = custom
        return d


# Clause operators.
#
# Every operator takes the context's attribute value on the left and one clause
# value on the right, and must return a boolean without raising for any
# combination of JSON values. A type mismatch is simply a non-match.


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _values_equal(a: Any, b: Any) -> bool:
    # bool is a subclass of int; True must not equal 1.
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    return a == b


def _string_op(fn: Callable[[str, str], bool]) -> Callable[[Any, Any], bool]:
    return lambda a, b: isinstance(a, str) and isinstance(b, str) and fn(a, b)


def _numeric_op(fn: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    return lambda a, b: _is_number(a) and _is_number(b) and fn(a, b)


def _regex_search(a: str, b: str) -> bool:
    try:
        return re.search(b, a) is not None
    except re.error:
        return False


def _unix_millis(v: Any) -> float | None:
    """
    Convert a clause or attribute value to milliseconds since the unix epoch.
    Numbers are taken to be milliseconds already. Strings must be ISO 8601
    times with a timezone.
    """
    if _is_number(v):
        return float(v)
    if not isinstance(v, str):
        return None
    try:
        t = datetime.datetime.fromisoformat(v)
    except ValueError:
        return None
    if t.tzinfo is None:
        return None
    return t.timestamp() * 1000


def _date_op(fn: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def op(a: Any, b: Any) -> bool:
        ta, tb = _unix_millis(a), _unix_millis(b)
        return ta is not None and tb is not None and fn(ta, tb)

    return op


def _semver(v: Any) -> semver.Version | None:
    """
    Parse a semantic version. A missing minor or patch counts as 0 so "1.2"
    equals "1.2.0". Build metadata takes no part in comparisons.
    """
    if not isinstance(v, str):
        return None
    try:
        return semver.Version.parse(v, optional_minor_and_patch=True)
    except ValueError:
        return None


def _semver_op(fn: Callable[[semver.Version, semver.Version], bool]) -> Callable[[Any, Any], bool]:
    def op(a: Any, b: Any) -> bool:
        va, vb = _semver(a), _semver(b)
        return va is not None and vb is not None and fn(va, vb)

    return op


_operators: dict[str, Callable[[Any, Any], bool]] = {
    "in": _values_equal,
    "contains": _string_op(lambda a, b: b in a),
    "startsWith": _string_op(lambda a, b: a.startswith(b)),
    "endsWith": _string_op(lambda a, b: a.endswith(b)),
    "matches": _string_op(_regex_search),
    "lessThan": _numeric_op(lambda a, b: a < b),
    "lessThanOrEqual": _numeric_op(lambda a, b: a <= b),
    "greaterThan": _numeric_op(lambda a, b: a > b),
    "greaterThanOrEqual": _numeric_op(lambda a, b: a >= b),
    "before": _date_op(lambda a, b: a < b),
    "after": _date_op(lambda a, b: a > b),
    "semVerEqual": _semver_op(lambda a, b: a == b),
    "semVerLessThan": _semver_op(lambda a, b: a < b),
    "semVerGreaterThan": _semver_op(lambda a, b: a > b),
}


class Clause:
    __slots__ = ("attribute", "op", "values", "negate")
    attribute: str
    op: str
    values: tuple[Value, ...]
    negate: bool

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Clause:
        c = Clause()
        c.attribute = d["attribute"]
        c.op = d["op"]
        c.values = tuple(d["values"])
        c.negate = d.get("negate", False)
        return c

    def matches(self, context: Context) -> bool:
        fn = _operators.get(self.op)
        if fn is None:
            logger.debug("Unknown clause operator %r", self.op)
            return False
        v = context.get(self.attribute)
        if v is None:
            # A missing attribute never matches, negated or not.
            return False
        if isinstance(v, (list, tuple, set)):
            matched = any(fn(e, cv) for e in v for cv in self.values)
        else:
            matched = any(fn(v, cv) for cv in self.values)
        return matched != self.negate


class WeightedVariation:
    __slots__ = ("variation", "weight")
    variation: int
    weight: int


class Rollout:
    __slots__ = ("variations", "bucket_by")
    variations: tuple[WeightedVariation, ...]
    bucket_by: str | None

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Rollout:
        r = Rollout()
        wvs = []
        for wd in d["variations"]:
            wv = WeightedVariation()
            wv.variation = wd["variation"]
            wv.weight = wd["weight"]
            wvs.append(wv)
        r.variations = tuple(wvs)
        r.bucket_by = d.get("bucketBy")
        return r


class VariationOrRollout:
    """
    Either a fixed variation index or a percentage rollout across several
    variations.
    """

    __slots__ = ("variation", "rollout")
    variation: int | None
    rollout: Rollout | None

    @staticmethod
    def from_dict(d: dict[str, Any]) -> VariationOrRollout:
        vr = VariationOrRollout()
        vr.variation = d.get("variation")
        vr.rollout = Rollout.from_dict(d["rollout"]) if d.get("rollout") is not None else None
        return vr

    def variation_index(self, context: Context, flag_key: str, salt: str) -> int | None:
        """
        Return the variation index for the context, or None if neither a
        variation nor a usable rollout is set.

        The rollout walks the cumulative weights in declared order. Weights
        that sum to less than 100% leave residual mass that goes to the last
        variation.
        """
        if self.variation is not None:
            return self.variation
        if self.rollout is None or not self.rollout.variations:
            return None
        assert context.key is not None
        b = bucket(context.key, flag_key, salt, self.rollout.bucket_by, context.attributes)
        cumulative = 0.0
        for wv in self.rollout.variations:
            cumulative += wv.weight / _WEIGHT_SCALE
            if b < cumulative:
                return wv.variation
        return self.rollout.variations[-1].variation


class Rule:
    __slots__ = ("clauses", "outcome")
    clauses: tuple[Clause, ...]
    outcome: VariationOrRollout

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Rule:
        r = Rule()
        r.clauses = tuple(Clause.from_dict(c) for c in d.get("clauses", []))
        r.outcome = VariationOrRollout.from_dict({k: d[k] for k in ("variation", "rollout") if k in d})
        return r

    def matches(self, context: Context) -> bool:
        # all() of no clauses is True.
        return all(c.matches(context) for c in self.clauses)


class Target:
    __slots__ = ("variation", "values")
    variation: int
    values: frozenset[str]


class Prerequisite:
    __slots__ = ("key", "variation")
    key: str
    variation: int


class EvaluationResult:
    """
    The result of evaluating a flag.

    value is None when the flag served nothing and the caller should use its
    own default. prerequisite_events holds one event per prerequisite visited,
    in the order they were visited, across the whole prerequisite tree.
    """

    __slots__ = ("value", "variation", "reason", "prerequisite_events")
    value: Value
    variation: int | None
    reason: Reason
    prerequisite_events: list[FeatureEvent]

    def __init__(self, reason: Reason, value: Value = None, variation: int | None = None):
        self.value = value
        self.variation = variation
        self.reason = reason
        self.prerequisite_events = []


with open(os.path.join(os.path.dirname(__file__), "flag_schema.json")) as f:
    _flag_schema = json.load(f)


class FlagDefinition:
    __slots__ = (
        "key",
        "version",
        "on",
        "salt",
        "deleted",
        "prerequisites",
        "targets",
        "rules",
        "fallthrough",
        "off_variation",
        "variations",
    )
    key: str
    version: int
    on: bool
    salt: str
    deleted: bool
    prerequisites: tuple[Prerequisite, ...]
    targets: tuple[Target, ...]
    rules: tuple[Rule, ...]
    fallthrough: VariationOrRollout
    off_variation: int | None
    variations: tuple[Value, ...]

    @staticmethod
    def from_dict(d: DictFlag) -> FlagDefinition:
        """
        Build a flag definition from its JSON form. Variation indices are not
        range checked here; an out of range index is reported when it is
        served.
        """
        jsonschema.validate(d, _flag_schema)

        flag = FlagDefinition()
        flag.key = d["key"]
        flag.version = d.get("version", 0)
        flag.on = d.get("on", False)
        flag.salt = d.get("salt", "")
        flag.deleted = d.get("deleted", False)

        prereqs = []
        for pd in d.get("prerequisites", []):
            p = Prerequisite()
            p.key = pd["key"]
            p.variation = pd["variation"]
            prereqs.append(p)
        flag.prerequisites = tuple(prereqs)

        targets = []
        for td in d.get("targets", []):
            t = Target()
            t.variation = td["variation"]
            t.values = frozenset(td["values"])
            targets.append(t)
        flag.targets = tuple(targets)

        flag.rules = tuple(Rule.from_dict(r) for r in d.get("rules", []))
        flag.fallthrough = VariationOrRollout.from_dict(d.get("fallthrough", {}))
        flag.off_variation = d.get("offVariation")
        flag.variations = tuple(d.get("variations", []))
        return flag

    @staticmethod
    def tombstone(key: str, version: int) -> FlagDefinition:
        return FlagDefinition.from_dict({"key": key, "version": version, "deleted": True})

    def _variation(self, index: int) -> Value:
        if index < 0 or index >= len(self.variations):
            raise EvaluationError(f"flag {self.key} has no variation at index {index}")
        return self.variations[index]

    def eval(self, context: Context | None, store: FlagStore) -> EvaluationResult:
        """
        Evaluate the flag for the context. Prerequisites are looked up in the
        store. Raises EvaluationError if the flag data references a variation
        that does not exist.
        """
        if context is None or context.key is None:
            logger.warning("Context or context key is missing when evaluating flag %s, returning no value", self.key)
            return EvaluationResult("user_not_specified")

        if self.on:
            events: list[FeatureEvent] = []
            index, reason = self._eval_on(context, store, events, {self.key})
            if index is not None:
                e = EvaluationResult(reason, self._variation(index), index)
                e.prerequisite_events = events
                return e
        else:
            events = []
            reason = "off"

        e = EvaluationResult(reason)
        if self.off_variation is not None:
            e.value = self._variation(self.off_variation)
            e.variation = self.off_variation
        e.prerequisite_events = events
        return e

    def _eval_on(
        self,
        context: Context,
        store: FlagStore,
        events: list[FeatureEvent],
        path: set[str],
    ) -> tuple[int | None, Reason]:
        """
        Evaluate an on flag. Returns the index to serve, or None if a
        prerequisite failed or nothing matched. path holds the keys of the
        flags currently being evaluated up the prerequisite chain and is used
        to stop on circular prerequisites.
        """
        prereqs_ok = True
        for prereq in self.prerequisites:
            prereq_flag = store.get(prereq.key)
            if prereq_flag is None:
                logger.error("Could not retrieve prerequisite flag %s when evaluating %s", prereq.key, self.key)
                return None, "prerequisite_failed"

            value = None
            if prereq_flag.key in path:
                logger.warning("Circular prerequisite %s referenced by %s", prereq_flag.key, self.key)
                prereqs_ok = False
            elif prereq_flag.on:
                path.add(prereq_flag.key)
                try:
                    index, _ = prereq_flag._eval_on(context, store, events, path)
                finally:
                    path.discard(prereq_flag.key)
                if index is None:
                    prereqs_ok = False
                else:
                    value = prereq_flag._variation(index)
                    try:
                        required = prereq_flag._variation(prereq.variation)
                    except EvaluationError as e:
                        logger.warning("Error evaluating prerequisites of %s: %s", self.key, e)
                        prereqs_ok = False
                    else:
                        if not _values_equal(value, required):
                            prereqs_ok = False
            else:
                prereqs_ok = False

            # Every visited prerequisite gets an event, whether or not it was
            # satisfied.
            events.append(
                FeatureEvent(
                    key=prereq_flag.key,
                    context=context,
                    value=value,
                    version=prereq_flag.version,
                    prereq_of=self.key,
                )
            )

        if not prereqs_ok:
            return None, "prerequisite_failed"

        index, reason = self._match_index(context)
        if index is None:
            return None, "no_match"
        return index, reason

    def _match_index(self, context: Context) -> tuple[int | None, Reason]:
        for target in self.targets:
            if context.key in target.values:
                return target.variation, "target_match"
        for rule in self.rules:
            if rule.matches(context):
                return rule.outcome.variation_index(context, self.key, self.salt), "rule_match"
        return self.fallthrough.variation_index(context, self.key, self.salt), "fallthrough"


def evaluate(flag: FlagDefinition, context: Context | None, store: FlagStore) -> EvaluationResult:
    """
    Evaluate the flag for the context, resolving prerequisites from the store.
    """
    return flag.eval(context, store)


class FlagStore:
    """
    Read access to flag definitions, used to resolve prerequisites.
    Implementations must replace definitions wholesale so that readers never
    observe a partially updated flag.
    """

    @abstractmethod
    def get(self, key: str) -> FlagDefinition | None: ...


class InMemoryFlagStore(FlagStore):
    """
    Flag store kept in process memory. Updates are version guarded: a flag is
    only replaced by a strictly newer version. Deleted flags are kept as
    tombstones so a stale update can't resurrect them. InMemoryFlagStore is
    thread-safe.
    """

    def __init__(self, flags: Iterable[FlagDefinition] = ()):
        self._mu = threading.RLock()
        self._flags: dict[str, FlagDefinition] = {}
        self.init(flags)

    @staticmethod
    def from_dicts(flags: Iterable[DictFlag]) -> InMemoryFlagStore:
        return InMemoryFlagStore(FlagDefinition.from_dict(d) for d in flags)

    @staticmethod
    def from_bytes(b: bytes) -> InMemoryFlagStore:
        obj = dill.loads(b)
        assert isinstance(obj, dict)
        return InMemoryFlagStore(obj.values())

    def to_bytes(self) -> bytes:
        with self._mu:
            flags = dict(self._flags)
        return dill.dumps(flags)

    def init(self, flags: Iterable[FlagDefinition]):
        """
        Replace the whole content of the store.
        """
        new_flags = {f.key: f for f in flags}
        with self._mu:
            self._flags = new_flags

    def get(self, key: str) -> FlagDefinition | None:
        with self._mu:
            flag = self._flags.get(key)
        if flag is None or flag.deleted:
            return None
        return flag

    def all(self) -> dict[str, FlagDefinition]:
        with self._mu:
            flags = dict(self._flags)
        return {k: f for k, f in flags.items() if not f.deleted}

    def upsert(self, flag: FlagDefinition) -> bool:
        """
        Insert or replace the flag unless the store already holds the same or
        a newer version. Returns whether the store was updated.
        """
        with self._mu:
            existing = self._flags.get(flag.key)
            if existing is not None and existing.version >= flag.version:
                return False
            self._flags[flag.key] = flag
        return True

    def delete(self, key: str, version: int) -> bool:
        return self.upsert(FlagDefinition.tombstone(key, version))


_prom_eval_duration = Histogram(
    "flagpole_evaluation_seconds",
    "Flag evaluation duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=["flag", "reason"],
)


class Evaluator:
    """
    The evaluator evaluates flags held in a store and, if given an event
    processor, reports every evaluation and its prerequisite evaluations as
    feature events. The evaluator is thread-safe.
    """

    def __init__(self, store: FlagStore, event_processor: EventProcessor | None = None):
        self._store = store
        self._event_processor = event_processor

    def _send(self, event: Event):
        if self._event_processor is not None:
            self._event_processor.send_event(event)

    def detailed_evaluate(self, key: str, context: Context | None, default: Value = None) -> EvaluationResult:
        """
        Evaluate the flag and return the full EvaluationResult. Never raises
        for bad flag data; such evaluations come back with reason "error" and
        no value.
        """
        flag = self._store.get(key)
        if flag is None:
            logger.warning("Unknown flag %s, returning default", key)
            return EvaluationResult("flag_not_found")

        start = time.perf_counter()
        try:
            e = flag.eval(context, self._store)
        except EvaluationError:
            logger.exception("Error evaluating flag %s, returning default", key)
            e = EvaluationResult("error")
        _prom_eval_duration.labels(flag=key, reason=e.reason).observe(time.perf_counter() - start)

        if context is not None and context.key is not None:
            for pe in e.prerequisite_events:
                self._send(pe)
            self._send(
                FeatureEvent(
                    key=key,
                    context=context,
                    value=default if e.value is None else e.value,
                    default=default,
                    version=flag.version,
                    variation=e.variation,
                )
            )
        return e

    def evaluate(self, key: str, context: Context | None, default: Value = None) -> Value:
        """
        Evaluate the given flag and return its value, or default if the flag
        served nothing. evaluate is thread-safe.
        """
        e = self.detailed_evaluate(key, context, default)
        return default if e.value is None else e.value

    def evaluate_all(self, keys: Iterable[str], context: Context | None, default: Value = None) -> dict[str, Value]:
        return {k: self.evaluate(k, context, default) for k in keys}

    def identify(self, context: Context):
        if context is None or context.key is None:
            logger.warning("Missing context or context key when calling identify")
            return
        self._send(IdentifyEvent(context=context))

    def track(self, event_key: str, context: Context, data: Any = None):
        if context is None or context.key is None:
            logger.warning("Missing context or context key when calling track")
            return
        self._send(CustomEvent(key=event_key, context=context, data=data))

    def close(self):
        if self._event_processor is not None:
            self._event_processor.close()


__all__ = [
    "Attributes",
    "Clause",
    "Context",
    "CustomEvent",
    "EvaluationError",
    "EvaluationResult",
    "Evaluator",
    "Event",
    "EventProcessor",
    "EventQueue",
    "FeatureEvent",
    "FlagDefinition",
    "FlagStore",
    "IdentifyEvent",
    "InMemoryFlagStore",
    "PipelineState",
    "Rule",
    "VariationOrRollout",
    "bucket",
    "evaluate",
]
