from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Literal, Mapping, Optional

Operation = Literal["create", "insert", "update", "delete"]


@dataclass(frozen=True, slots=True)
class Change:
    """
    Immutable record of one executed mutation.

    - `row` is the full row for create/insert/delete, and the primary key
      plus the changed fields for update.
    - `changed_fields` is only set for updates, in column order.
    """
    entity: str
    row: Mapping[str, Any]
    operation: Operation
    changed_fields: Optional[tuple[str, ...]] = None

    @classmethod
    def of(
        cls,
        entity: str,
        row: Mapping[str, Any],
        operation: Operation,
        changed_fields: Optional[tuple[str, ...]] = None,
    ) -> "Change":
        return cls(entity, MappingProxyType(dict(row)), operation, changed_fields)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "entity": self.entity,
            "row": dict(self.row),
            "operation": self.operation,
        }
        if self.changed_fields is not None:
            data["changedFields"] = list(self.changed_fields)
        return data
