# herald/core/target_resolver.py
"""
Target Resolver

Expands a TargetSelection into a de-duplicated list of delivery addresses.
The algorithm is channel-agnostic: the channel schema supplies the per-type
field accessor, normaliser and validation rules.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Union

from herald.core.errors import Skipped, SkipReason
from herald.core.models import ResolvedAddress, SelectionMode, Target, TargetSelection
from herald.core.target_schema import ChannelTargetSchema
from herald.core.target_store import TargetStore

logger = logging.getLogger(__name__)


@dataclass
class TargetResolution:
    """Resolved addresses plus every target that was left out"""
    channel: str
    addresses: List[ResolvedAddress] = field(default_factory=list)
    skipped: List[Skipped] = field(default_factory=list)

    def values(self) -> List[str]:
        return [address.value for address in self.addresses]

    def __len__(self) -> int:
        return len(self.addresses)


class TargetResolver:
    """
    Resolve target selections for one channel.

    Args:
        schema: Target type strategy table of the channel
        target_types: Optional subset of registered types to accept
            (e.g. only ``subreddit`` for a forum post)
    """

    def __init__(self, schema: ChannelTargetSchema, target_types: Optional[Iterable[str]] = None):
        self.schema = schema
        self.target_types = set(target_types) if target_types is not None else None

    @property
    def channel(self) -> str:
        return self.schema.channel

    def resolve(self,
                selection: TargetSelection,
                store: TargetStore,
                include_personalization: bool = False) -> TargetResolution:
        resolution = TargetResolution(channel=self.channel)

        if selection.mode is None:
            logger.info(f"No target mode selected for channel {self.channel}; nothing to resolve")
            return resolution

        targets = store.list_targets(self.channel)
        by_id: Dict[str, Target] = {}
        for target in targets:
            by_id.setdefault(target.id, target)

        if selection.mode == SelectionMode.ALL:
            candidates = list(targets)
        elif selection.mode == SelectionMode.GROUPS:
            candidates = self._group_members(selection.ids, store, by_id, resolution)
        else:
            candidates = self._lookup(selection.ids, by_id, resolution, source='individual selection')

        seen = set()
        for target in candidates:
            outcome = self._address_for(target, include_personalization)
            if isinstance(outcome, Skipped):
                resolution.skipped.append(outcome)
                continue
            # Subreddit and user names share a namespace only within their type
            key = (target.target_type, self.schema.normalize(outcome.value, target.target_type))
            if key in seen:
                continue
            seen.add(key)
            resolution.addresses.append(outcome)

        logger.info(
            f"Resolved {len(resolution.addresses)} {self.channel} address(es) "
            f"from {selection.mode.value} selection ({len(resolution.skipped)} skipped)"
        )
        return resolution

    def _group_members(self,
                       group_ids: Iterable[str],
                       store: TargetStore,
                       by_id: Dict[str, Target],
                       resolution: TargetResolution) -> List[Target]:
        groups = store.list_groups(self.channel)
        members: List[Target] = []
        for identifier in group_ids:
            # Groups are addressable by id or by display name
            group = next((g for g in groups if g.id == identifier or g.name == identifier), None)
            if group is None:
                logger.warning(f"Group not found in channel {self.channel}: {identifier}")
                resolution.skipped.append(Skipped(SkipReason.NOT_FOUND, identifier, 'group not found'))
                continue
            members.extend(self._lookup(group.target_ids, by_id, resolution, source=f"group {group.name or group.id}"))
        return members

    def _lookup(self,
                target_ids: Iterable[str],
                by_id: Dict[str, Target],
                resolution: TargetResolution,
                source: str) -> List[Target]:
        found = []
        for target_id in target_ids:
            target = by_id.get(target_id)
            if target is None:
                logger.warning(f"Target {target_id} referenced by {source} does not exist")
                resolution.skipped.append(Skipped(SkipReason.NOT_FOUND, target_id, f"referenced by {source}"))
                continue
            found.append(target)
        return found

    def _address_for(self, target: Target, include_personalization: bool) -> Union[ResolvedAddress, Skipped]:
        if not target.target_type:
            logger.error(f"Target {target.id} missing targetType; excluded")
            return Skipped(SkipReason.MISSING_TARGET_TYPE, target.id, 'targetType is required')

        spec = self.schema.spec_for(target.target_type)
        if spec is None or (self.target_types is not None and target.target_type not in self.target_types):
            logger.warning(f"Target {target.id} has unsupported type {target.target_type} for {self.channel}")
            return Skipped(SkipReason.UNSUPPORTED_TARGET_TYPE, target.id, target.target_type)

        value = spec.accessor(target)
        if not spec.validate(value):
            logger.warning(f"Target {target.id} has an invalid {spec.base_field}: {value!r}")
            return Skipped(SkipReason.INVALID_VALUE, target.id, f"invalid {spec.base_field}")

        return ResolvedAddress(
            value=value,
            target_id=target.id,
            personalization=target.personalization if include_personalization else None,
        )
