"""
Point-in-time SAR snapshots stored in `sar_versions.snapshot_data`.

A snapshot is a denormalized copy of a report and its sections at one
version number. It is kept as a tagged document rather than re-normalized
into relational rows, so the version history is never affected by later
schema changes to the live tables.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

SNAPSHOT_KIND = "sar_snapshot/v1"


class SnapshotFormatError(ValueError):
    """Raised when stored snapshot data cannot be decoded."""
    pass


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class SectionSnapshot:
    """Section state captured in a snapshot."""
    id: int
    section_type: str
    content: str
    confidence_level: str
    sequence: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "section_type": self.section_type,
            "content": self.content,
            "confidence_level": self.confidence_level,
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SectionSnapshot":
        return cls(
            id=int(data["id"]),
            section_type=str(data["section_type"]),
            content=str(data["content"]),
            confidence_level=str(data["confidence_level"]),
            sequence=int(data["sequence"]),
        )


@dataclass(frozen=True)
class SarSnapshot:
    """Report state captured at one version number."""
    sar_id: int
    customer_id: int
    title: str
    status: str
    version: int
    generated_by: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    sections: List[SectionSnapshot] = field(default_factory=list)

    @classmethod
    def capture(cls, sar, sections) -> "SarSnapshot":
        """
        Build a snapshot from a persisted report and its sections.

        Args:
            sar: Sar model instance (must already have an id)
            sections: SarSection instances belonging to the report

        Returns:
            SarSnapshot with sections ordered by sequence
        """
        ordered = sorted(sections, key=lambda s: s.sequence)
        return cls(
            sar_id=sar.id,
            customer_id=sar.customer_id,
            title=sar.title,
            status=_enum_value(sar.status),
            version=sar.version,
            generated_by=_enum_value(sar.generated_by),
            created_at=sar.created_at,
            updated_at=sar.updated_at,
            sections=[
                SectionSnapshot(
                    id=section.id,
                    section_type=_enum_value(section.section_type),
                    content=section.content,
                    confidence_level=_enum_value(section.confidence_level),
                    sequence=section.sequence,
                )
                for section in ordered
            ],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": SNAPSHOT_KIND,
            "sar": {
                "id": self.sar_id,
                "customer_id": self.customer_id,
                "title": self.title,
                "status": self.status,
                "version": self.version,
                "generated_by": self.generated_by,
                "created_at": _iso(self.created_at),
                "updated_at": _iso(self.updated_at),
            },
            "sections": [section.to_dict() for section in self.sections],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SarSnapshot":
        """
        Decode stored snapshot data.

        Raises:
            SnapshotFormatError: If the tag is unknown or fields are missing
        """
        if not isinstance(data, dict) or data.get("kind") != SNAPSHOT_KIND:
            raise SnapshotFormatError(
                f"Unsupported snapshot kind: {data.get('kind') if isinstance(data, dict) else type(data).__name__}"
            )
        try:
            sar = data["sar"]
            return cls(
                sar_id=int(sar["id"]),
                customer_id=int(sar["customer_id"]),
                title=str(sar["title"]),
                status=str(sar["status"]),
                version=int(sar["version"]),
                generated_by=str(sar["generated_by"]),
                created_at=_parse_iso(sar.get("created_at")),
                updated_at=_parse_iso(sar.get("updated_at")),
                sections=[SectionSnapshot.from_dict(s) for s in data.get("sections", [])],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SnapshotFormatError(f"Malformed snapshot data: {e}") from e


def _enum_value(value: Any) -> str:
    return value.value if hasattr(value, "value") else str(value)
