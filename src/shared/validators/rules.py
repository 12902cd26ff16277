"""Declarative input validation driven by a registry of named rules.

Rules are configured per field as ``{rule_name: params}``::

    {
        "username": {"required": True, "min": 3, "max": 50, "regex": r"^[a-zA-Z0-9_-]+$"},
        "email": {"required": True, "email": True, "unique": {"collection": "users"}},
    }

New rule types are added with ``@registry.register("name")`` without touching
the validator itself.
"""

import inspect
import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from email_validator import EmailNotValidError, validate_email
from pydantic import AnyUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from src.features.auth.exceptions import ValidationError

from .password import validate_password_strength

logger = logging.getLogger(__name__)

NUMERIC_PATTERN = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?\s*$")
INTEGER_PATTERN = re.compile(r"^\s*[+-]?\d+\s*$")

_url_adapter = TypeAdapter(AnyUrl)


class UniquenessChecker(Protocol):
    async def exists(self, collection: str, column: str, value: object, exclude_id: int | None = None) -> bool: ...


@dataclass(frozen=True)
class RuleContext:
    """Everything a rule needs to judge one field."""

    field: str
    value: Any
    params: Any
    data: Mapping[str, Any]
    uniqueness: UniquenessChecker | None = None

    @property
    def label(self) -> str:
        return self.field[:1].upper() + self.field[1:]


RuleCheck = Callable[[RuleContext], str | None | Awaitable[str | None]]


class RuleRegistry:
    """Maps rule names to check functions returning an error message or None."""

    def __init__(self):
        self._rules: dict[str, RuleCheck] = {}

    def register(self, name: str) -> Callable[[RuleCheck], RuleCheck]:
        def decorator(check: RuleCheck) -> RuleCheck:
            self._rules[name] = check
            return check

        return decorator

    def get(self, name: str) -> RuleCheck:
        try:
            return self._rules[name]
        except KeyError:
            raise KeyError(f"Unknown validation rule: {name}") from None

    def names(self) -> list[str]:
        return sorted(self._rules)

    def copy(self) -> "RuleRegistry":
        clone = RuleRegistry()
        clone._rules = dict(self._rules)
        return clone


registry = RuleRegistry()


def _present(ctx: RuleContext) -> bool:
    return ctx.field in ctx.data and ctx.value is not None


@registry.register("required")
def required(ctx: RuleContext) -> str | None:
    if not _present(ctx) or (isinstance(ctx.value, str) and not ctx.value.strip()):
        return f"{ctx.label} is required"
    return None


@registry.register("email")
def email(ctx: RuleContext) -> str | None:
    if not _present(ctx):
        return None
    if not isinstance(ctx.value, str):
        return "Invalid email format"
    try:
        validate_email(ctx.value, check_deliverability=False)
    except EmailNotValidError:
        return "Invalid email format"
    return None


@registry.register("min")
def min_length(ctx: RuleContext) -> str | None:
    if _present(ctx) and len(str(ctx.value)) < ctx.params:
        return f"{ctx.label} must be at least {ctx.params} characters"
    return None


@registry.register("max")
def max_length(ctx: RuleContext) -> str | None:
    if _present(ctx) and len(str(ctx.value)) > ctx.params:
        return f"{ctx.label} must not exceed {ctx.params} characters"
    return None


@registry.register("password")
def password(ctx: RuleContext) -> str | None:
    if not _present(ctx):
        return None
    try:
        validate_password_strength(str(ctx.value))
    except ValueError as exc:
        return str(exc)
    return None


@registry.register("matches")
def matches(ctx: RuleContext) -> str | None:
    other = ctx.params
    if _present(ctx) and other in ctx.data and ctx.value != ctx.data[other]:
        return f"{ctx.label} must match {other}"
    return None


@registry.register("in")
def one_of(ctx: RuleContext) -> str | None:
    if _present(ctx) and ctx.value not in ctx.params:
        allowed = ", ".join(str(v) for v in ctx.params)
        return f"{ctx.label} must be one of: {allowed}"
    return None


@registry.register("url")
def url(ctx: RuleContext) -> str | None:
    if not _present(ctx):
        return None
    try:
        _url_adapter.validate_python(ctx.value)
    except PydanticValidationError:
        return "Invalid URL format"
    return None


@registry.register("regex")
def regex(ctx: RuleContext) -> str | None:
    if _present(ctx) and not re.fullmatch(ctx.params, str(ctx.value)):
        return f"{ctx.label} format is invalid"
    return None


@registry.register("numeric")
def numeric(ctx: RuleContext) -> str | None:
    if not _present(ctx):
        return None
    if isinstance(ctx.value, bool) or not (
        isinstance(ctx.value, int | float) or (isinstance(ctx.value, str) and NUMERIC_PATTERN.match(ctx.value))
    ):
        return f"{ctx.label} must be numeric"
    return None


@registry.register("integer")
def integer(ctx: RuleContext) -> str | None:
    if not _present(ctx):
        return None
    if isinstance(ctx.value, bool) or not (
        isinstance(ctx.value, int) or (isinstance(ctx.value, str) and INTEGER_PATTERN.match(ctx.value))
    ):
        return f"{ctx.label} must be an integer"
    return None


@registry.register("unique")
async def unique(ctx: RuleContext) -> str | None:
    """Reject values already stored in ``params["collection"]``.

    ``params``: ``{"collection": str, "column": str (defaults to the field), "exclude_id": int | None}``
    """
    if not _present(ctx):
        return None
    if ctx.uniqueness is None:
        raise RuntimeError("The 'unique' rule needs a uniqueness checker")

    column = ctx.params.get("column", ctx.field)
    try:
        taken = await ctx.uniqueness.exists(
            ctx.params["collection"], column, ctx.value, exclude_id=ctx.params.get("exclude_id")
        )
    except SQLAlchemyError as exc:
        logger.error(f"Database error in unique validation for {ctx.field}: {exc}")
        return "Unable to validate uniqueness"

    if taken:
        return f"{ctx.label} already exists"
    return None


class InputValidator:
    """Run rule configurations against input and collect per-field messages."""

    def __init__(self, rules: RuleRegistry | None = None, uniqueness: UniquenessChecker | None = None):
        self.rules = rules or registry
        self.uniqueness = uniqueness

    async def errors_for(self, data: Mapping[str, Any], rules: Mapping[str, Mapping[str, Any]]) -> dict[str, list[str]]:
        errors: dict[str, list[str]] = {}
        for field, field_rules in rules.items():
            for rule_name, params in field_rules.items():
                check = self.rules.get(rule_name)
                ctx = RuleContext(field, data.get(field), params, data, self.uniqueness)
                message = check(ctx)
                if inspect.isawaitable(message):
                    message = await message
                if message:
                    errors.setdefault(field, []).append(message)
        return errors

    async def validate(self, data: Any, rules: Mapping[str, Mapping[str, Any]]) -> dict[str, Any]:
        """Validate ``data`` and return it unchanged when every rule passes.

        Raises:
            ValidationError: With a field -> messages map on failure, or when
                ``data`` is not a JSON object.

        """
        if not isinstance(data, Mapping):
            raise ValidationError("Invalid JSON input")

        errors = await self.errors_for(data, rules)
        if errors:
            raise ValidationError("Validation failed", errors=errors)
        return dict(data)
