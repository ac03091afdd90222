"""Per-category searchable fields and field relevance weights."""

from typing import Any, Dict, Optional

FIELD_WEIGHTS: Dict[str, float] = {
    "name": 3.0,
    "title": 3.0,
    "identifier": 2.5,
    "id": 2.0,
    "email": 2.0,
    "description": 1.5,
    "tags": 1.5,
    "status": 1.0,
    "type": 1.0,
}

CONTAINS_BOOST = 1.5
PREFIX_BOOST = 2.0


def _joined(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return " ".join(str(v) for v in value.values() if v is not None)
    if isinstance(value, (list, tuple)):
        return " ".join(str(v) for v in value if v is not None)
    return None


def _first(data: Dict[str, Any], *names: str) -> Any:
    for name in names:
        value = data.get(name)
        if value:
            return value
    return None


def get_searchable_fields(
    category: str, data: Dict[str, Any], record_id: Optional[str] = None
) -> Dict[str, Optional[str]]:
    """Field name -> text for the fields of *data* that are indexed for *category*.

    Only string values end up indexed; other values are returned as None.
    """
    fields: Dict[str, Any] = {
        "id": data.get("id") or record_id,
        "name": _first(data, "name", "title"),
        "description": data.get("description"),
        "status": data.get("status"),
        "type": _first(data, "type", "kind"),
    }

    if category == "clients":
        fields.update(
            identifier=data.get("registeredNumber") or fields["id"],
            registeredNumber=data.get("registeredNumber"),
            mainEmail=data.get("mainEmail"),
            mainPhone=data.get("mainPhone"),
            address=_joined(data.get("address")),
        )
    elif category == "people":
        fields.update(
            firstName=data.get("firstName"),
            lastName=data.get("lastName"),
            email=data.get("email"),
            phone=data.get("phone"),
            role=data.get("role"),
        )
    elif category == "services":
        fee = data.get("fee")
        fields.update(
            clientId=data.get("clientId"),
            frequency=data.get("frequency"),
            fee=None if fee is None else str(fee),
        )
    elif category == "tasks":
        fields.update(
            clientId=data.get("clientId"),
            assignee=data.get("assignee"),
            priority=data.get("priority"),
            tags=_joined(data.get("tags")),
        )
    elif category == "documents":
        fields.update(
            clientId=data.get("clientId"),
            fileName=data.get("fileName"),
            tags=_joined(data.get("tags")),
            category=data.get("category"),
        )

    return {name: value if isinstance(value, str) else None for name, value in fields.items()}


def calculate_field_score(field: str, term: str, value: str) -> float:
    """Relevance of *term* found in *field* whose text is *value*."""
    score = FIELD_WEIGHTS.get(field, 1.0)
    lowered = value.lower()
    if term in lowered:
        score *= CONTAINS_BOOST
    if lowered.startswith(term):
        score *= PREFIX_BOOST
    return score
