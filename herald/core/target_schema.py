# herald/core/target_schema.py
"""
Per-channel target type registry.

Each target type registers an explicit accessor for its base field value,
a normaliser used for de-duplication, and the validation rules a value must
pass before it is used as a delivery address.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional, Tuple

from email_validator import validate_email, EmailNotValidError

from herald.core.models import Target

Accessor = Callable[[Target], Optional[str]]
Normalizer = Callable[[str], str]


@dataclass(frozen=True)
class ValidationRule:
    """A single required/pattern/email rule"""
    kind: str  # 'required', 'pattern' or 'email'
    value: Optional[str] = None
    message: str = ""

    def check(self, value: Optional[str]) -> bool:
        if self.kind == 'required':
            return bool(value and value.strip())
        if value is None:
            return False
        if self.kind == 'pattern':
            return re.search(self.value or '', value) is not None
        if self.kind == 'email':
            try:
                validate_email(value, check_deliverability=False)
            except EmailNotValidError:
                return False
            return True
        raise ValueError(f"Unknown validation rule kind: {self.kind}")


def field_accessor(name: str) -> Accessor:
    """Accessor returning the stripped string value of one target field"""
    def access(target: Target) -> Optional[str]:
        value = target.fields.get(name)
        if not isinstance(value, str):
            return None
        return value.strip() or None
    access.__name__ = f"access_{name}"
    return access


def normalize_email(value: str) -> str:
    return value.strip().lower()


def normalize_subreddit(value: str) -> str:
    value = value.strip().lower()
    for prefix in ('/r/', 'r/', '/'):
        if value.startswith(prefix):
            value = value[len(prefix):]
            break
    return value


def normalize_username(value: str) -> str:
    value = value.strip()
    for prefix in ('/u/', 'u/'):
        if value.lower().startswith(prefix):
            value = value[len(prefix):]
            break
    return value.lower()


@dataclass(frozen=True)
class TargetTypeSpec:
    """How one target type exposes and validates its base field"""
    name: str
    base_field: str
    accessor: Accessor
    normalize: Normalizer = normalize_email
    rules: Tuple[ValidationRule, ...] = ()

    def validate(self, value: Optional[str]) -> bool:
        return all(rule.check(value) for rule in self.rules)


@dataclass
class ChannelTargetSchema:
    """Strategy table of target types for one channel"""
    channel: str
    types: Dict[str, TargetTypeSpec] = field(default_factory=dict)

    def register(self, spec: TargetTypeSpec) -> 'ChannelTargetSchema':
        self.types[spec.name] = spec
        return self

    def spec_for(self, target_type: Optional[str]) -> Optional[TargetTypeSpec]:
        if not target_type:
            return None
        return self.types.get(target_type)

    def base_field(self, target_type: str) -> str:
        spec = self.spec_for(target_type)
        if spec is None:
            raise KeyError(f"Target type '{target_type}' is not registered for channel '{self.channel}'")
        return spec.base_field

    def validate(self, value: Optional[str], target_type: str) -> bool:
        spec = self.spec_for(target_type)
        return spec is not None and spec.validate(value)

    def normalize(self, value: str, target_type: str) -> str:
        spec = self.spec_for(target_type)
        return spec.normalize(value) if spec else value.strip()


def _schema(channel: str, specs: Iterable[TargetTypeSpec]) -> ChannelTargetSchema:
    schema = ChannelTargetSchema(channel)
    for spec in specs:
        schema.register(spec)
    return schema


def email_schema() -> ChannelTargetSchema:
    """Mailing-list recipients"""
    return _schema('email', [
        TargetTypeSpec(
            name='email',
            base_field='email',
            accessor=field_accessor('email'),
            normalize=normalize_email,
            rules=(
                ValidationRule('required', message='Email is required'),
                ValidationRule('email', message='Invalid email format'),
            ),
        ),
    ])


def reddit_schema() -> ChannelTargetSchema:
    """Forum-style targets: subreddits and users"""
    return _schema('reddit', [
        TargetTypeSpec(
            name='subreddit',
            base_field='subreddit',
            accessor=field_accessor('subreddit'),
            normalize=normalize_subreddit,
            rules=(
                ValidationRule('required', message='Subreddit is required'),
                ValidationRule('pattern', r'^(?:/?r/)?[A-Za-z0-9_]{3,21}$', 'Invalid subreddit name'),
            ),
        ),
        TargetTypeSpec(
            name='user',
            base_field='username',
            accessor=field_accessor('username'),
            normalize=normalize_username,
            rules=(
                ValidationRule('required', message='Username is required'),
                ValidationRule('pattern', r'^(?:/?u/)?[A-Za-z0-9_-]{3,20}$', 'Invalid username'),
            ),
        ),
    ])


_SCHEMA_FACTORIES: Dict[str, Callable[[], ChannelTargetSchema]] = {
    'email': email_schema,
    'reddit': reddit_schema,
}


def schema_for_channel(channel: str) -> ChannelTargetSchema:
    try:
        return _SCHEMA_FACTORIES[channel]()
    except KeyError:
        raise KeyError(f"No target schema registered for channel '{channel}'") from None
