from __future__ import annotations
import asyncio
import copy
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from .errors import ValidationError
from .kinds import check_max, check_min, check_pattern, check_type
from .utils import MISSING

logger = logging.getLogger(__name__)

Validator = Callable[[Any, str], Any]

# Keys that make a dict a single-value spec rather than a field map
SPEC_KEYS = ("type", "required", "default", "min", "max", "pattern", "validator", "validatorName")


def check_key(key: Any, what: str = "key") -> str:
    if not isinstance(key, str) or not key:
        raise ValidationError(f"{what} must be a non-empty string", path=repr(key))
    return key


def is_value_spec(spec: Dict[str, Any]) -> bool:
    return any(k in spec and not isinstance(spec[k], dict) for k in SPEC_KEYS)


def validator_ref(fn: Validator) -> str:
    module = getattr(fn, "__module__", None) or "?"
    name = getattr(fn, "__qualname__", None) or type(fn).__name__
    return f"{module}:{name}"


def _absent(v: Any) -> bool:
    return v is MISSING or v is None


class ValidationEngine:
    """
    Schema registry plus named-validator registry.

    Schemas are registered under a key or a key prefix. A schema is either a
    single-value spec ({"type", "required", "default", "min", "max",
    "pattern", "validator"}) or a field map {field: spec} applied to dict
    values. Nested dict fields use {"type": "object", "fields": {...}}.

    Validators are in-process callables `(value, field_path) -> bool`, sync
    or async. Only their names (with a module:qualname reference) are
    persisted; a name loaded from disk stays unbound until add_validator()
    supplies the callable again.
    """

    def __init__(self) -> None:
        self._schemas: Dict[str, Dict[str, Any]] = {}
        self._validators: Dict[str, Optional[Validator]] = {}
        self._validator_refs: Dict[str, str] = {}

    # ----- Schema registry -----

    def set_schema(self, key: str, spec: Dict[str, Any]) -> bool:
        check_key(key)
        if not isinstance(spec, dict):
            raise ValidationError("schema must be a mapping", path=key)
        self._schemas[key] = copy.deepcopy(spec)
        return True

    def get_schema(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Exact key first, else the first registered schema key that is a
        prefix of `key`, in registration order. Returns a copy.
        """
        return copy.deepcopy(self._resolve_schema(key))

    def _resolve_schema(self, key: str) -> Optional[Dict[str, Any]]:
        check_key(key)
        if key in self._schemas:
            return self._schemas[key]
        matches = [k for k in self._schemas if key.startswith(k)]
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(
                "schema lookup for %r is ambiguous: prefixes %s match; using %r",
                key, matches, matches[0],
            )
        return self._schemas[matches[0]]

    def remove_schema(self, key: str) -> bool:
        check_key(key)
        return self._schemas.pop(key, None) is not None

    def get_all_schemas(self) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(self._schemas)

    def clear_schemas(self) -> bool:
        self._schemas = {}
        return True

    # ----- Validator registry -----

    def add_validator(self, name: str, fn: Validator) -> bool:
        check_key(name, "validator name")
        if not callable(fn):
            raise ValidationError("validator must be callable", path=name)
        self._validators[name] = fn
        self._validator_refs[name] = validator_ref(fn)
        return True

    def remove_validator(self, name: str) -> bool:
        check_key(name, "validator name")
        self._validator_refs.pop(name, None)
        return self._validators.pop(name, MISSING) is not MISSING

    def get_all_validators(self) -> Dict[str, str]:
        return dict(self._validator_refs)

    def unbound_validators(self) -> List[str]:
        return [n for n, fn in self._validators.items() if fn is None]

    def clear_validators(self) -> bool:
        self._validators = {}
        self._validator_refs = {}
        return True

    # ----- Persistence -----

    def export_data(self) -> Dict[str, Any]:
        return {"schemas": self._schemas, "validators": self._validator_refs}

    def import_data(self, data: Dict[str, Any], bound: Optional[Dict[str, Validator]] = None) -> None:
        """
        Install persisted schemas and validator names. Callables from
        `bound` (normally the currently registered ones) are kept for names
        that reappear; other names are installed unbound.
        """
        bound = bound or {}
        self._schemas = dict(data.get("schemas") or {})
        refs = data.get("validators") or {}
        self._validators = {}
        self._validator_refs = {}
        for name, ref in refs.items():
            self._validators[name] = bound.get(name)
            self._validator_refs[name] = ref
        for name, fn in bound.items():
            if name not in self._validators and fn is not None:
                self._validators[name] = fn
                self._validator_refs[name] = validator_ref(fn)
        missing = self.unbound_validators()
        if missing:
            logger.warning("validators %s are referenced but not registered", missing)

    def bound_validators(self) -> Dict[str, Validator]:
        return {n: fn for n, fn in self._validators.items() if fn is not None}

    # ----- Validation -----

    def validate_and_process(self, key: str, value: Any) -> Any:
        schema = self._resolve_schema(key)
        if schema is None:
            return value
        if isinstance(value, dict) and not is_value_spec(schema):
            return self._validate_fields(key, value, schema)
        return self._validate_value(key, value, schema)

    def _validate_fields(self, path: str, obj: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
        out = dict(obj)
        for name, spec in fields.items():
            if not isinstance(spec, dict):
                continue
            processed = self._validate_value(f"{path}.{name}", out.get(name, MISSING), spec)
            if processed is not MISSING:
                out[name] = processed
        return out

    def _validate_value(self, path: str, value: Any, spec: Dict[str, Any]) -> Any:
        # default -> required -> type -> validator -> min -> max -> pattern
        if value is MISSING and "default" in spec:
            value = copy.deepcopy(spec["default"])

        if spec.get("required") and _absent(value):
            raise ValidationError(f"field '{path}' is required", path=path)

        if _absent(value):
            return value

        tp = spec.get("type")
        if tp and not check_type(value, tp):
            raise ValidationError(f"field '{path}' must be of type '{tp}'", path=path)

        vname = spec.get("validator") or spec.get("validatorName")
        if vname and not self._run_validator(vname, value, path):
            raise ValidationError(f"validation failed for field '{path}'", path=path)

        if "min" in spec and not check_min(value, spec["min"]):
            raise ValidationError(f"field '{path}' must be at least {spec['min']}", path=path)

        if "max" in spec and not check_max(value, spec["max"]):
            raise ValidationError(f"field '{path}' must be at most {spec['max']}", path=path)

        if spec.get("pattern") and not check_pattern(value, spec["pattern"]):
            raise ValidationError(f"field '{path}' does not match required pattern", path=path)

        sub = spec.get("fields")
        if isinstance(sub, dict) and isinstance(value, dict):
            value = self._validate_fields(path, value, sub)
        return value

    def _run_validator(self, name: str, value: Any, path: str) -> bool:
        if name not in self._validators:
            raise ValidationError(f"validator '{name}' not found", path=path)
        fn = self._validators[name]
        if fn is None:
            raise ValidationError(f"validator '{name}' is not bound to a callable", path=path)
        try:
            result = fn(value, path)
            if inspect.isawaitable(result):
                result = _resolve(result)
            return bool(result)
        except Exception:
            logger.debug("validator %r raised for %r", name, path, exc_info=True)
            return False


def _resolve(awaitable: Any) -> Any:
    async def _wait():
        return await awaitable
    return asyncio.run(_wait())
