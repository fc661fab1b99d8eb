"""
Version Differ

Compares two SAR snapshots section by section. Sections are matched by
identity (section id); content is compared as plain text.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from database.snapshots import SarSnapshot

ADDED = "added"
MODIFIED = "modified"
REMOVED = "removed"


@dataclass
class SectionChange:
    """One section-level difference between two snapshots"""
    type: str
    section_id: int
    section_type: str
    old_content: Optional[str] = None
    new_content: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'type': self.type,
            'section_id': self.section_id,
            'section_type': self.section_type,
        }
        if self.type != ADDED:
            result['old_content'] = self.old_content
        if self.type != REMOVED:
            result['new_content'] = self.new_content
        return result


@dataclass
class ChangeSet:
    """Differences between two versions of a report"""
    current_version: int
    previous_version: int
    changes: List[SectionChange] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'current_version': self.current_version,
            'previous_version': self.previous_version,
            'changes': [change.to_dict() for change in self.changes]
        }


def diff_snapshots(previous: SarSnapshot, current: SarSnapshot) -> ChangeSet:
    """Compare the sections of two snapshots

    Added and modified sections are listed first, in the current snapshot's
    section order, followed by removed sections in the previous snapshot's
    order. Sections with identical content produce no entry.

    Args:
        previous: Older snapshot
        current: Newer snapshot

    Returns:
        ChangeSet labelled with both snapshots' version numbers
    """
    previous_by_id = {section.id: section for section in previous.sections}
    current_ids = {section.id for section in current.sections}
    changes: List[SectionChange] = []

    for section in current.sections:
        old = previous_by_id.get(section.id)
        if old is None:
            changes.append(SectionChange(
                type=ADDED,
                section_id=section.id,
                section_type=section.section_type,
                new_content=section.content
            ))
        elif old.content != section.content:
            changes.append(SectionChange(
                type=MODIFIED,
                section_id=section.id,
                section_type=section.section_type,
                old_content=old.content,
                new_content=section.content
            ))

    for section in previous.sections:
        if section.id not in current_ids:
            changes.append(SectionChange(
                type=REMOVED,
                section_id=section.id,
                section_type=section.section_type,
                old_content=section.content
            ))

    return ChangeSet(
        current_version=current.version,
        previous_version=previous.version,
        changes=changes
    )
