import re
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError as SchemaError

from app.models import GroupMember, ProcedureItem
from app.services.errors import ValidationError

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def clean_procedures(procedures: Iterable[Any], *, required: bool = True) -> List[Dict[str, Any]]:
    cleaned: List[Dict[str, Any]] = []
    for item in procedures or []:
        try:
            procedure = item if isinstance(item, ProcedureItem) else ProcedureItem.model_validate(item)
        except SchemaError as exc:
            raise ValidationError(f"Invalid procedure entry: {item!r}", field="procedures") from exc
        name = procedure.name.strip()
        if not name:
            raise ValidationError("Procedure name is required", field="procedures")
        if procedure.quantity < 1:
            raise ValidationError(f"Quantity for {name} must be at least 1", field="procedures")
        cleaned.append({"name": name, "quantity": procedure.quantity})
    if required and not cleaned:
        raise ValidationError("At least one procedure is required", field="procedures")
    return cleaned


def clean_group_members(members: Iterable[Any]) -> List[Dict[str, Any]]:
    cleaned: List[Dict[str, Any]] = []
    for item in members or []:
        try:
            member = item if isinstance(item, GroupMember) else GroupMember.model_validate(item)
        except SchemaError as exc:
            raise ValidationError(f"Invalid group member entry: {item!r}", field="group_members") from exc
        name = member.name.strip()
        if not name:
            raise ValidationError("Group member name is required", field="group_members")
        cleaned.append(
            {
                "name": name,
                "procedures": [p.strip() for p in member.procedures if p.strip()],
                "notes": member.notes.strip(),
            }
        )
    return cleaned


def parse_optional_date(value: Optional[str], *, field: str) -> Optional[str]:
    if value is None or not str(value).strip():
        return None
    try:
        return date.fromisoformat(str(value).strip()).isoformat()
    except ValueError as exc:
        raise ValidationError(f"Invalid {field}; expected YYYY-MM-DD", field=field) from exc


def check_window(start: Optional[str], end: Optional[str], *, field: str = "travel_window") -> None:
    if start and end and end < start:
        raise ValidationError("Travel window end must be on or after its start", field=field)


def clean_email(value: str, *, field: str = "contact_email") -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError("Contact email is required", field=field)
    if not EMAIL_PATTERN.match(cleaned):
        raise ValidationError("Contact email is not a valid address", field=field)
    return cleaned
