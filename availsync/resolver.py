from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from typing import Iterable

from availsync.intervals import SupportsInterval, overlap_seconds, overlaps, weekly_window
from availsync.models import Availability, ScheduleBlock, ScheduleTemplate, TemplateSource

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

TEMPLATE_SOURCE_RANK = {
    TemplateSource.MANUAL: 0,
    TemplateSource.LEARNED: 1,
}


def _updated_key(block: ScheduleBlock) -> datetime:
    return block.updated_at or _EPOCH


def exact_block(target: SupportsInterval, blocks: Iterable[ScheduleBlock]) -> ScheduleBlock | None:
    matches = [block for block in blocks if block.start == target.start and block.end == target.end]
    if not matches:
        return None
    return max(matches, key=_updated_key)


def most_relevant_block(target: SupportsInterval, blocks: Iterable[ScheduleBlock]) -> ScheduleBlock | None:
    overlapping = [block for block in blocks if overlaps(block, target)]
    if not overlapping:
        return None
    return max(overlapping, key=lambda block: (overlap_seconds(block, target), _updated_key(block)))


def matching_template(
    target: SupportsInterval,
    templates: Iterable[ScheduleTemplate],
    tz: tzinfo = timezone.utc,
) -> ScheduleTemplate | None:
    window = weekly_window(target, tz)
    if window is None:
        return None
    matches = [template for template in templates if template.key == window]
    if not matches:
        return None
    return min(matches, key=lambda template: TEMPLATE_SOURCE_RANK[template.source])


def resolve(
    target: SupportsInterval,
    blocks: Iterable[ScheduleBlock],
    templates: Iterable[ScheduleTemplate],
    tz: tzinfo = timezone.utc,
) -> Availability:
    block_list = list(blocks)
    block = exact_block(target, block_list) or most_relevant_block(target, block_list)
    if block is not None:
        return Availability.from_bool(block.availability)
    template = matching_template(target, templates, tz)
    if template is not None:
        return Availability.from_bool(template.availability)
    return Availability.UNKNOWN


def resolve_blocks_only(target: SupportsInterval, blocks: Iterable[ScheduleBlock]) -> Availability:
    return resolve(target, blocks, [])
