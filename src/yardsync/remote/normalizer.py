"""
Remote shipment normalizer.

Converts raw shipment dicts from the warehouse system into clean field dicts
that map directly onto Customer / Package columns. No DB access here:
callers (the repository and the sync services) handle persistence.

All functions return plain dicts so they're easy to test without any
SQLModel or DB dependencies.

The remote system is not consistent about a few keys:

  - the receiving party is called "receiver" on list responses and
    "consignee" on some detail responses
  - the declared value is "value" or "declared_value"
  - a shipment may carry an "items" list; each item becomes its own
    package (1:N), otherwise the shipment itself is one package (1:1)

Anything that makes a record unusable raises MappingError with the
shipment id attached so the caller can log and count it.
"""
import json
from typing import Any, Dict, List, Optional, Tuple

from yardsync.sync.errors import MappingError


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _to_float(value: Any, field: str, external_id: Optional[str]) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise MappingError(f"{field} is not numeric: {value!r}", external_id=external_id)


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def shipment_id(raw: Dict[str, Any]) -> Optional[str]:
    """Return the remote id of a shipment, or None when it has none."""
    return _clean(raw.get("shipment_id") or raw.get("id"))


def normalize_consignee(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extract the parent (Customer) fields from a shipment.

    Returns:
        Dict with external_id, full_name, address, email, phone_number.

    Raises:
        MappingError: if the shipment has no receiver name.
    """
    sid = shipment_id(raw)
    party = raw.get("receiver") or raw.get("consignee") or {}
    if not isinstance(party, dict):
        raise MappingError("receiver is not an object", external_id=sid)

    full_name = _clean(party.get("name"))
    if not full_name:
        raise MappingError("shipment has no receiver name", external_id=sid)

    return {
        "external_id": _clean(party.get("id") or party.get("customer_id")),
        "full_name": full_name,
        "address": _clean(party.get("address")),
        "email": _clean(party.get("email")),
        "phone_number": _clean(party.get("phone")),
    }


def normalize_packages(raw: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Extract child (Package) field dicts from a shipment, one per item.

    Each dict carries its own external_id: the item id, or
    "<shipment_id>-<index>" for items without one, or the shipment id when the
    shipment has no items.

    Raises:
        MappingError: if the shipment id or a tracking number is missing, or a
            numeric field can't be parsed.
    """
    sid = shipment_id(raw)
    if not sid:
        raise MappingError("shipment has no shipment_id")

    sender = raw.get("sender") or {}
    receiver = raw.get("receiver") or raw.get("consignee") or {}
    shared = {
        "warehouse_location": _clean(raw.get("warehouse_location")),
        "consolidation_status": _clean(raw.get("status")),
        "remote_reference_number": _clean(raw.get("reference_number")),
        "sender_name": _clean(sender.get("name")),
        "sender_address": _clean(sender.get("address")),
        "delivery_address": _clean(receiver.get("address")),
        "raw_remote_json": json.dumps(raw, sort_keys=True, default=str),
    }

    items = raw.get("items") or [raw]
    packages = []
    for i, item in enumerate(items):
        if item is raw:
            external_id = sid
        else:
            external_id = _clean(item.get("id")) or f"{sid}-{i}"

        tracking = _clean(
            item.get("tracking_number") or raw.get("tracking_number") or raw.get("reference_number")
        )
        if not tracking:
            raise MappingError("shipment has no tracking or reference number", external_id=sid)

        fields = dict(shared)
        fields.update(
            external_id=external_id,
            tracking_number=tracking,
            description=_clean(item.get("description")) or _clean(raw.get("description")) or "",
            weight=_to_float(item.get("weight"), "weight", sid),
            dimensions=_clean(item.get("dimensions")),
            package_value=_to_float(
                _first(item, "value", "declared_value"), "value", sid
            ),
        )
        packages.append(fields)
    return packages


def normalize_shipment(raw: Dict[str, Any]) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    """Normalize one shipment into (parent_fields, [child_fields, ...])."""
    if not isinstance(raw, dict):
        raise MappingError(f"shipment is not an object: {type(raw).__name__}")
    children = normalize_packages(raw)
    parent = normalize_consignee(raw)
    return parent, children
