"""Payload builders for the Resource API.

Pure functions mapping draft fields onto request bodies. Only keys the
user actually filled in are emitted, so partial updates leave the rest of
the remote state alone.
"""

from typing import Any

from .models import Draft, Room

# Details keys share their name with the remote attribute
DETAIL_ATTRIBUTES = (
    "surface_m2",
    "rooms_count",
    "floor",
    "elevator",
    "dpe_energy_class",
    "dpe_climate_class",
    "dpe_consumption",
    "dpe_emissions",
    "rental_permit_required",
    "rental_permit_number",
    "rental_permit_date",
)

REQUIRED_ADDRESS_FIELDS = ("line1", "postal_code", "city")


def missing_primary_fields(draft: Draft) -> list[str]:
    """List the minimal fields still missing to create the primary resource."""
    missing = []
    if not draft.kind:
        missing.append("kind")
    address = draft.address
    missing.extend(
        f"address.{name}" for name in REQUIRED_ADDRESS_FIELDS if not address.get(name)
    )
    return missing


def create_primary_address(draft: Draft) -> dict[str, Any]:
    """Create the minimal address block sent with the creation call."""
    address = draft.address
    return {
        "line1": address.get("line1", ""),
        "city": address.get("city", ""),
        "postal_code": address.get("postal_code", ""),
        "country_code": address.get("country_code") or "FR",
    }


def create_attribute_update_payload(draft: Draft) -> dict[str, Any]:
    """Create the full attribute update applied right after creation."""
    address = draft.address
    payload: dict[str, Any] = {
        "address_line1": address.get("line1"),
        "address_complement": address.get("complement") or None,
        "postal_code": address.get("postal_code"),
        "city": address.get("city"),
        "department": address.get("department") or None,
    }

    details = draft.details
    for attribute in DETAIL_ATTRIBUTES:
        value = details.get(attribute)
        # Zero floors and False flags are real answers; only absent/empty is skipped.
        if value is None or value == "":
            continue
        payload[attribute] = value

    return payload


def create_room_payload(room: Room) -> dict[str, Any]:
    """Create payload for one room."""
    return {
        "room_type": room.room_type,
        "label": room.name or room.room_type,
        "sort_order": room.sort_order,
        "is_private": room.is_private,
    }


def create_features_payload(features: list[str]) -> dict[str, Any]:
    """Create payload for the bulk tag write."""
    return {"features": [{"feature": feature, "value": True} for feature in features]}


def create_publication_payload(draft: Draft) -> dict[str, Any]:
    """Create the combined publication/visibility update.

    Returns an empty dict when the user touched none of the options.
    """
    publication = draft.publication
    payload: dict[str, Any] = {}

    if publication.get("visibility"):
        payload["visibility"] = publication["visibility"]
    if publication.get("available_from"):
        payload["available_from"] = publication["available_from"]
    if publication.get("is_published") is True:
        payload["state"] = "published"

    return payload
